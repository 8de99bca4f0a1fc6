"""Local signature store: offline-signed CLAs the CLA assistant does not know about.

One JSON file per signature. The filename joins a sanitized form of the
signee identifier with the upload session id, so the same person can hand
in several signatures without overwriting earlier ones.
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..exceptions import CacheWriteError, ValidationError
from ..schemas.signature import LOCAL_ORIGIN, DocumentIdentity, LocalSignatureCreate, LocalSignatureFile, Signature
from .fallback_store import write_json_atomic

logger = logging.getLogger(__name__)

# Characters allowed verbatim in the user part of a filename.
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
# Fields every local signature must carry in custom_fields.
REQUIRED_CUSTOM_FIELDS = ("name", "email")


def local_origin(uploader: Optional[str] = None) -> str:
    """Origin tag of a locally sourced signature, naming the uploader when known."""
    return f"{LOCAL_ORIGIN}:{uploader}" if uploader else LOCAL_ORIGIN


def make_local_signature(
    submission: LocalSignatureCreate,
    identity: Optional[DocumentIdentity] = None,
    uploader: Optional[str] = None,
) -> Signature:
    """Turn a submission into a Signature ready for the store.

    The signed version defaults to the latest version of *identity*; its commit
    date and the gist filename are copied over just like for upstream records.
    """
    version = submission.gist_version
    if not version and identity is not None and identity.latest_version is not None:
        version = identity.latest_version.version

    custom_fields = dict(submission.custom_fields)
    custom_fields["name"] = submission.name
    custom_fields["email"] = submission.email

    return Signature(
        id=uuid.uuid4().hex,
        user=submission.user,
        created_at=submission.signed_at,
        updated_at=datetime.now(timezone.utc),
        gist_version=version or "",
        gist_committed_at=identity.committed_at(version) if identity and version else None,
        gist_filename=identity.filename if identity else None,
        custom_fields=custom_fields,
        origin=local_origin(uploader),
    )


def validate_local_signature(signature: Signature) -> None:
    """Check the fields an offline signature cannot do without.

    Raises:
        ValidationError: naming the first offending field.
    """
    if not signature.user or not signature.user.strip():
        raise ValidationError("Signee identifier is required", field="user")

    custom_fields = signature.custom_fields or {}
    for name in REQUIRED_CUSTOM_FIELDS:
        value = custom_fields.get(name)
        if value is None or not str(value).strip():
            raise ValidationError(f"Signee {name} is required", field=name)

    if "@" not in str(custom_fields["email"]):
        raise ValidationError("Signee email is not a valid address", field="email")

    if signature.created_at > datetime.now(timezone.utc):
        raise ValidationError("Signed date lies in the future", field="signed_at")

    if not signature.is_local:
        raise ValidationError("Local signatures must carry a local origin tag", field="origin")


class LocalSignatureStore:
    """Directory of offline-signed records."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    def list_all(self) -> List[Signature]:
        """Read every stored signature.

        A file that fails to parse is logged and skipped; it never hides the
        others. A missing directory simply means nothing was stored yet.
        """
        if not self.directory.is_dir():
            return []

        signatures: List[Signature] = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                record = LocalSignatureFile.model_validate_json(path.read_bytes())
            except (OSError, UnicodeDecodeError, PydanticValidationError) as exc:
                logger.warning("Skipping unreadable local signature %s: %s", path.name, exc)
                continue
            signatures.append(record.signature)

        logger.debug("Loaded %d local signatures", len(signatures))
        return signatures

    def append(self, signature: Signature, session_id: Optional[str] = None) -> Path:
        """Validate and durably write one signature. Returns the file written.

        Raises:
            ValidationError: a required field is missing or invalid.
            CacheWriteError: the file could not be written.
        """
        validate_local_signature(signature)

        session_id = session_id or uuid.uuid4().hex
        path = self.directory / self._filename(signature.user, session_id)
        record = LocalSignatureFile(session_id=session_id, signature=signature)

        try:
            write_json_atomic(path, record.model_dump_json())
        except OSError as exc:
            raise CacheWriteError(
                f"Failed to write local signature {path.name}", path=str(path), original_error=exc
            ) from exc

        logger.info(
            "Local signature stored",
            extra={"user": signature.user, "origin": signature.origin, "file": path.name},
        )
        return path

    @staticmethod
    def _filename(user: str, session_id: str) -> str:
        safe_user = _UNSAFE_FILENAME_CHARS.sub("_", user.strip()).strip("._") or "signee"
        safe_session = _UNSAFE_FILENAME_CHARS.sub("_", session_id)
        return f"{safe_user}-{safe_session}.json"
