"""File fallback store: last-known-good copy of the upstream data.

Written after every successful upstream reload, read when the CLA assistant
cannot be reached. Two files live in the configured directory:

    gist.json      the document identity (gist URL, filename, versions)
    signees.json   the signatory map (user -> signatures, newest first)

Both are versioned pydantic documents, so timestamps and nested custom
fields come back typed. Loading is all-or-nothing.
"""

import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, NamedTuple, Sequence, Type, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import CacheReadError, CacheWriteError
from ..schemas.signature import (
    DocumentIdentity,
    FallbackDocumentFile,
    FallbackSignatoriesFile,
    Signature,
)

logger = logging.getLogger(__name__)

DOCUMENT_FILE = "gist.json"
SIGNATORIES_FILE = "signees.json"

_M = TypeVar("_M", bound=BaseModel)


class FallbackData(NamedTuple):
    """What the file cache holds: the identity, the signatory map, and when it was saved."""
    identity: DocumentIdentity
    signatories: Dict[str, List[Signature]]
    saved_at: datetime


def write_json_atomic(path: Path, payload: str) -> None:
    """Replace *path* with *payload* so readers never see a half-written file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class FileFallbackStore:
    """Durable copy of the last snapshot built from upstream data."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)

    @property
    def document_path(self) -> Path:
        return self.directory / DOCUMENT_FILE

    @property
    def signatories_path(self) -> Path:
        return self.directory / SIGNATORIES_FILE

    def save(self, identity: DocumentIdentity, signatories: Mapping[str, Sequence[Signature]]) -> None:
        """Persist the identity and the signatory map, creating the directory if needed.

        Raises:
            CacheWriteError: the directory or one of the files could not be written.
        """
        saved_at = datetime.now(timezone.utc)
        document = FallbackDocumentFile(saved_at=saved_at, identity=identity)
        signees = FallbackSignatoriesFile(
            saved_at=saved_at,
            signatories={user: list(signatures) for user, signatures in signatories.items()},
        )

        for path, model in ((self.document_path, document), (self.signatories_path, signees)):
            try:
                write_json_atomic(path, model.model_dump_json())
            except OSError as exc:
                raise CacheWriteError(
                    f"Failed to write file cache {path}", path=str(path), original_error=exc
                ) from exc

        logger.info(
            "File cache written",
            extra={"directory": str(self.directory), "signatories": len(signatories)},
        )

    def load(self) -> FallbackData:
        """Read the last saved identity and signatory map.

        Raises:
            CacheReadError: either file is missing, unreadable, malformed or of
                an unknown schema version, or the two files come from
                different saves.
        """
        document = self._read(self.document_path, FallbackDocumentFile)
        signees = self._read(self.signatories_path, FallbackSignatoriesFile)
        if document.saved_at != signees.saved_at:
            raise CacheReadError(
                f"File cache in {self.directory} mixes two saves",
                path=str(self.directory),
            )

        logger.info(
            "File cache loaded",
            extra={"directory": str(self.directory), "saved_at": signees.saved_at.isoformat()},
        )
        return FallbackData(document.identity, signees.signatories, signees.saved_at)

    @staticmethod
    def _read(path: Path, model: Type[_M]) -> _M:
        try:
            raw = path.read_bytes()
        except OSError as exc:
            raise CacheReadError(
                f"Failed to read file cache {path}", path=str(path), original_error=exc
            ) from exc

        try:
            return model.model_validate_json(raw)
        except (UnicodeDecodeError, PydanticValidationError) as exc:
            raise CacheReadError(
                f"Malformed file cache {path}", path=str(path), original_error=exc
            ) from exc
