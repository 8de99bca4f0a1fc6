"""Signature and CLA document schemas."""

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

# Origin tag of every record that came from the CLA assistant.
UPSTREAM_ORIGIN = "upstream"
# Prefix of the origin tag of offline-signed records ("local" or "local:<uploader>").
LOCAL_ORIGIN = "local"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC so every timestamp in a snapshot is comparable."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Signature(BaseModel):
    """One person's agreement to one version of the CLA document.

    Immutable once created; a revocation sets ``revoked_at`` on a new copy of
    the record instead of removing it. Unknown upstream attributes (repo,
    org_id, ...) are kept as extra fields and passed through unchanged.
    """

    model_config = ConfigDict(extra="allow", frozen=True, populate_by_name=True)

    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("id", "_id"))
    user: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    gist_version: str = ""
    gist_committed_at: Optional[datetime] = None
    gist_filename: Optional[str] = None
    custom_fields: Optional[Dict[str, Any]] = None
    origin: str = UPSTREAM_ORIGIN

    @field_validator("created_at", "updated_at", "revoked_at", "gist_committed_at")
    @classmethod
    def normalize_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    @property
    def is_local(self) -> bool:
        return self.origin == LOCAL_ORIGIN or self.origin.startswith(LOCAL_ORIGIN + ":")


class DocumentVersion(BaseModel):
    """One published revision of the CLA document."""

    model_config = ConfigDict(frozen=True)

    version: str
    committed_at: Optional[datetime] = None
    url: Optional[str] = None

    @field_validator("committed_at")
    @classmethod
    def normalize_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class DocumentIdentity(BaseModel):
    """The CLA document (gist) of the organization with its version history.

    ``versions`` keeps the order the CLA assistant returned, which is not
    guaranteed to be chronological.
    """

    model_config = ConfigDict(frozen=True)

    url: str
    filename: Optional[str] = None
    versions: List[DocumentVersion]

    def committed_at(self, version: str) -> Optional[datetime]:
        for item in self.versions:
            if item.version == version:
                return item.committed_at
        return None

    @property
    def latest_version(self) -> Optional[DocumentVersion]:
        """The most recently committed version, or None without history."""
        dated = [v for v in self.versions if v.committed_at is not None]
        if dated:
            return max(dated, key=lambda v: v.committed_at)
        return self.versions[0] if self.versions else None


# ---------------------------------------------------------------------------
# Durable formats. Each file carries an explicit schema version so a format
# change is detected on load instead of being half-parsed.
# ---------------------------------------------------------------------------

STORE_SCHEMA_VERSION = 1


class FallbackDocumentFile(BaseModel):
    """Contents of the fallback document-identity file."""
    schema_version: Literal[1] = STORE_SCHEMA_VERSION
    saved_at: datetime
    identity: DocumentIdentity


class FallbackSignatoriesFile(BaseModel):
    """Contents of the fallback signatory-map file."""
    schema_version: Literal[1] = STORE_SCHEMA_VERSION
    saved_at: datetime
    signatories: Dict[str, List[Signature]]


class LocalSignatureFile(BaseModel):
    """One offline-signed record on disk."""
    schema_version: Literal[1] = STORE_SCHEMA_VERSION
    session_id: str
    signature: Signature


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class LocalSignatureCreate(BaseModel):
    """Submission of an offline-signed CLA."""
    user: str = Field(description="GitHub username (or lookup value) of the signee")
    name: str = Field(description="Full name of the signee")
    email: str = Field(description="E-mail address of the signee")
    signed_at: datetime = Field(description="Date the paper/offline CLA was signed")
    gist_version: Optional[str] = Field(
        default=None,
        description="Signed document version; defaults to the latest known version"
    )
    custom_fields: Dict[str, Any] = {}

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user": "octocat",
                    "name": "Mona Lisa Octocat",
                    "email": "mona@example.com",
                    "signed_at": "2024-03-01T00:00:00Z",
                    "custom_fields": {"company": "GitHub"},
                }
            ]
        }
    }


class HealthResponse(BaseModel):
    """Schema for the /health endpoint."""
    status: str
    reason: Optional[str] = None
    uptime_seconds: int
    snapshot_built_at: Optional[datetime] = None
    snapshot_source: Optional[str] = None
    snapshot_age: Optional[str] = None
    signatory_count: int = 0
    signature_count: int = 0
