"""CLA-dwight: a caching proxy exposing CLA assistant signatures of an organization."""

__version__ = "1.0.0"
