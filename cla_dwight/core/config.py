"""Application configuration with validation."""

import os

from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import List, Optional


class ConfigurationError(Exception):
    """Raised when application configuration is invalid."""
    pass


def _split_words(value: str) -> List[str]:
    """Split a space-separated environment value into its non-empty words."""
    return [word for word in value.split() if word]


class Settings(BaseSettings):
    """
    Application settings with validation.

    Names follow the environment variables the proxy has always read
    (``GITHUB_ORGID``, ``CLA_FILECACHE`` ...), so an existing ``.env``
    keeps working.
    """

    # HTTP server
    port: int = Field(default=3000, description="Web server port")
    base: str = Field(default="/", description="URL prefix to serve (e.g. /cla/)")

    # Upstream CLA assistant
    cla_assistant_url: str = Field(
        default="https://cla-assistant.io/",
        description="Base URI of the CLA assistant"
    )
    # TIMEOUT is in milliseconds, applied to every single upstream call.
    timeout: int = Field(
        default=30000,
        description="CLA assistant per-call timeout in milliseconds"
    )

    # GitHub organization; both are required for any upstream call.
    github_orgid: str = Field(default="", description="GitHub organization id")
    github_orgtoken: str = Field(
        default="",
        description="PAT with admin:org access, passed through to the CLA assistant"
    )

    # Access control for the listing
    cla_list_auth: str = Field(
        default="",
        description="Space-separated base64 user:password values guarding /list"
    )
    cla_auth_fields: str = Field(
        default="",
        description="Space-separated custom fields hidden from unauthorized /list/{user} callers"
    )

    # Durable stores; empty string disables the store.
    cla_filecache: str = Field(
        default="",
        description="Directory for the last-known-good fallback copy"
    )
    cla_localstore: str = Field(
        default="",
        description="Directory for offline-signed (local) signatures"
    )

    # Alternate lookup
    cla_lookup_fields: str = Field(
        default="",
        description="Space-separated custom fields that can also identify a signee"
    )
    cla_lookup_coalesce: bool = Field(
        default=True,
        description="Merge signees sharing a lookup value under that value (False = drop ambiguous values)"
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_format: str = Field(
        default="json",
        description="Log output format: 'json' for structured, 'text' for human-readable"
    )

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper

    @field_validator('timeout')
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("TIMEOUT must be a positive number of milliseconds")
        return v

    @field_validator('base')
    @classmethod
    def normalize_base(cls, v: str) -> str:
        """Always start and end the prefix with a slash."""
        v = "/" + v.strip().strip("/")
        return v if v == "/" else v + "/"

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000.0

    def get_list_auth(self) -> List[str]:
        return _split_words(self.cla_list_auth)

    def get_auth_fields(self) -> List[str]:
        return _split_words(self.cla_auth_fields)

    def get_lookup_fields(self) -> List[str]:
        return _split_words(self.cla_lookup_fields)

    def missing_configuration(self) -> Optional[str]:
        """Return why upstream calls are impossible, or None when configured.

        The service still starts without these; it just stays degraded.
        """
        if not self.github_orgid:
            return "GITHUB_ORGID environment variable not set."
        if not self.github_orgtoken:
            return "GITHUB_ORGTOKEN environment variable not set."
        return None

    def validate_stores(self) -> None:
        """
        Reject store settings that would corrupt each other.

        The local store reads every ``*.json`` in its directory, so it cannot
        share one with the file cache.

        Raises:
            ConfigurationError: If both stores point at the same directory
        """
        if self.cla_filecache and self.cla_localstore:
            if os.path.abspath(self.cla_filecache) == os.path.abspath(self.cla_localstore):
                raise ConfigurationError(
                    "CLA_FILECACHE and CLA_LOCALSTORE must be different directories"
                )

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        # Allow reading from environment variables with different case
        case_sensitive = False


def get_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()
