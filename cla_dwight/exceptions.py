"""Custom exception hierarchy for CLA-dwight."""

from enum import Enum
from typing import Optional, Dict, Any, List


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # Upstream (CLA assistant) errors
    UPSTREAM_ERROR = "UPSTREAM_ERROR"

    # Durable storage errors
    CACHE_READ_ERROR = "CACHE_READ_ERROR"
    CACHE_WRITE_ERROR = "CACHE_WRITE_ERROR"
    LOCAL_STORE_DISABLED = "LOCAL_STORE_DISABLED"

    # Combined failures
    AGGREGATE_ERROR = "AGGREGATE_ERROR"

    # Validation errors
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Cache state
    NOT_READY = "NOT_READY"

    # Auth
    UNAUTHORIZED = "UNAUTHORIZED"

    # Generic errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ClaException(Exception):
    """
    Base exception for all CLA-dwight errors.

    Provides structured error responses with:
    - Human-readable message
    - Machine-readable error code
    - HTTP status code
    - Optional additional details
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary for JSON response.

        Returns:
            Dictionary with error, message, and details fields
        """
        return {
            "error": self.error_code.value,
            "message": self.message,
            "details": self.details
        }


class UpstreamError(ClaException):
    """The CLA assistant call failed, timed out, or returned unusable data."""

    def __init__(self, message: str, version: Optional[str] = None, original_error: Optional[Exception] = None):
        details: Dict[str, Any] = {}
        if version is not None:
            details["version"] = version
        if original_error is not None:
            details["original_error"] = str(original_error)
        super().__init__(
            message,
            ErrorCode.UPSTREAM_ERROR,
            status_code=502,
            details=details
        )
        self.version = version
        self.original_error = original_error


class _StoreError(ClaException):
    """Shared shape of file-store failures: the path and the OS or parse error."""

    error_code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, path: Optional[str] = None, original_error: Optional[Exception] = None):
        details: Dict[str, Any] = {}
        if path:
            details["path"] = path
        if original_error is not None:
            details["original_error"] = str(original_error)
        super().__init__(message, type(self).error_code, status_code=500, details=details)
        self.path = path
        self.original_error = original_error


class CacheReadError(_StoreError):
    """A durable cache file is absent, unreadable, or malformed."""

    error_code = ErrorCode.CACHE_READ_ERROR


class CacheWriteError(_StoreError):
    """Writing a durable cache file failed."""

    error_code = ErrorCode.CACHE_WRITE_ERROR


class ValidationError(ClaException):
    """Validation failed for a submitted local signature."""

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(
            message,
            ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )


class AggregateError(ClaException):
    """Upstream failed and the file fallback failed too. Keeps both causes."""

    def __init__(self, message: str, errors: List[Exception]):
        super().__init__(
            message,
            ErrorCode.AGGREGATE_ERROR,
            status_code=503,
            details={"errors": [str(e) for e in errors]}
        )
        self.errors = list(errors)


class NotReadyError(ClaException):
    """No snapshot has been published, or the cache is degraded."""

    def __init__(self, reason: str = "Signature cache is not ready"):
        super().__init__(
            reason,
            ErrorCode.NOT_READY,
            status_code=503,
        )


class LocalStoreDisabledError(ClaException):
    """Local signatures were submitted but no local store is configured."""

    def __init__(self):
        super().__init__(
            "Local signature storage is not configured (set CLA_LOCALSTORE)",
            ErrorCode.LOCAL_STORE_DISABLED,
            status_code=501,
        )


class AuthenticationError(ClaException):
    """Request lacks valid basic-auth credentials."""

    def __init__(self, message: str = "Authorization required"):
        super().__init__(
            message,
            ErrorCode.UNAUTHORIZED,
            status_code=401,
        )
