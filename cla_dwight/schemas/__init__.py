"""Pydantic schemas for signatures, CLA documents and durable files."""

from .signature import (
    LOCAL_ORIGIN,
    UPSTREAM_ORIGIN,
    DocumentIdentity,
    DocumentVersion,
    FallbackDocumentFile,
    FallbackSignatoriesFile,
    HealthResponse,
    LocalSignatureCreate,
    LocalSignatureFile,
    Signature,
)

__all__ = [
    "LOCAL_ORIGIN",
    "UPSTREAM_ORIGIN",
    "DocumentIdentity",
    "DocumentVersion",
    "FallbackDocumentFile",
    "FallbackSignatoriesFile",
    "HealthResponse",
    "LocalSignatureCreate",
    "LocalSignatureFile",
    "Signature",
]
