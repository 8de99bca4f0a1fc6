"""API routes."""

from .signatures import router as signatures_router

__all__ = [
    "signatures_router",
]
