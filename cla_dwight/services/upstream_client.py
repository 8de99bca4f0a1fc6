"""HTTP client for the CLA assistant API.

Two calls are needed to read the signatures of an organization: one that
resolves the CLA gist with its version history, and one per version that
lists the signatures recorded against it. The client only normalizes the
responses; retrying is left to whoever triggers the next reload.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from ..core.config import Settings
from ..exceptions import UpstreamError
from ..schemas.signature import UPSTREAM_ORIGIN, DocumentIdentity, DocumentVersion, Signature

logger = logging.getLogger(__name__)

RESOLVE_DOCUMENT_PATH = "/cla/getGist"
FETCH_SIGNATURES_PATH = "/cla/getAll"

# The gist also carries a metadata file next to the CLA text.
_METADATA_FILE = "metadata"


class UpstreamClient:
    """Synchronous client wrapping the two CLA assistant calls.

    Args:
        base_url: CLA assistant base URL (``CLA_ASSISTANT_URL``).
        org_id: GitHub organization id (``GITHUB_ORGID``).
        org_token: Admin token of the organization (``GITHUB_ORGTOKEN``). It is
                   passed through in the request body and never inspected.
        timeout: Per-call timeout in seconds.
        transport: Optional httpx transport, used by tests to fake the API.
    """

    def __init__(
        self,
        base_url: str,
        org_id: str,
        org_token: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url
        self.org_id = org_id
        self.org_token = org_token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> "UpstreamClient":
        return cls(
            base_url=settings.cla_assistant_url,
            org_id=settings.github_orgid,
            org_token=settings.github_orgtoken,
            timeout=settings.timeout_seconds,
            transport=transport,
        )

    def _get_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _post(self, path: str, payload: Dict[str, Any]) -> Any:
        """POST *payload* and return the decoded JSON body. Raises httpx errors as-is."""
        resp = self._get_client().post(path, json=payload)
        resp.raise_for_status()
        return resp.json()

    # ----- resolve document ------------------------------------------------

    def resolve_document(self) -> DocumentIdentity:
        """Find the CLA gist of the organization and its version history.

        Raises:
            UpstreamError: the call failed, timed out, returned an unexpected
                shape, or the gist has no versions at all.
        """
        logger.info("Getting gist for the organization...")
        try:
            data = self._post(RESOLVE_DOCUMENT_PATH, {"orgId": self.org_id})
        except (httpx.HTTPError, ValueError) as exc:
            raise UpstreamError(
                "Failed to receive gist for the organization.", original_error=exc
            ) from exc

        identity = self._parse_document(data)

        logger.debug("Found gist at: %s", identity.url)
        for version in identity.versions:
            logger.debug(" - version %s from %s", version.version, version.committed_at)
        return identity

    @staticmethod
    def _parse_document(data: Any) -> DocumentIdentity:
        if not isinstance(data, dict):
            raise UpstreamError("Failed to receive gist for the organization: unexpected response.")

        try:
            files = data.get("files") or {}
            filename = next((name for name in files if name != _METADATA_FILE), None)
            versions = [
                DocumentVersion(
                    version=item["version"],
                    committed_at=item.get("committed_at"),
                    url=item.get("url"),
                )
                for item in data.get("history") or []
            ]
            identity = DocumentIdentity(url=data["html_url"], filename=filename, versions=versions)
        except (AttributeError, KeyError, TypeError, PydanticValidationError) as exc:
            raise UpstreamError(
                "Failed to receive gist for the organization: malformed gist.", original_error=exc
            ) from exc

        # An organization without any published version is a misconfiguration,
        # not an empty-but-valid result.
        if not identity.versions:
            raise UpstreamError("No gist history available.")
        return identity

    # ----- fetch signatures ------------------------------------------------

    def fetch_signatures(self, identity: DocumentIdentity, version: str) -> List[Signature]:
        """List every signature recorded against one version of the gist.

        Each record gets the version commit date and the gist filename attached,
        and its ``custom_fields`` JSON string decoded into a dict.

        Raises:
            UpstreamError: with the version in its details.
        """
        logger.debug("Getting signees for version %s...", version)
        payload = {
            "orgId": self.org_id,
            "gist": {"gist_url": identity.url, "gist_version": version},
            "token": self.org_token,
        }
        message = f"Failed to receive list of signees for version {version}."
        try:
            records = self._post(FETCH_SIGNATURES_PATH, payload)
        except (httpx.HTTPError, ValueError) as exc:
            raise UpstreamError(message, version=version, original_error=exc) from exc

        if not isinstance(records, list):
            raise UpstreamError(message + " Unexpected response.", version=version)

        try:
            signatures = [self._parse_signature(record, identity, version) for record in records]
        except (TypeError, ValueError) as exc:
            raise UpstreamError(message + " Malformed signature.", version=version, original_error=exc) from exc

        logger.debug(" - found %d signatures for %s", len(signatures), version)
        return signatures

    @staticmethod
    def _parse_signature(record: Dict[str, Any], identity: DocumentIdentity, version: str) -> Signature:
        data = dict(record)
        signed_version = data.get("gist_version") or version
        data["gist_version"] = signed_version
        data["gist_committed_at"] = identity.committed_at(signed_version)
        data["gist_filename"] = identity.filename
        data["origin"] = UPSTREAM_ORIGIN

        custom_fields = data.get("custom_fields")
        if isinstance(custom_fields, str):
            data["custom_fields"] = json.loads(custom_fields) if custom_fields.strip() else None
        elif not custom_fields:
            data["custom_fields"] = None

        # pydantic's ValidationError is a ValueError subclass.
        return Signature.model_validate(data)

    def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None and not self._client.is_closed:
            self._client.close()
