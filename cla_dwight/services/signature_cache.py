"""Signature cache: the read/write surface used by the HTTP layer.

Deep module: routes read the current snapshot and health, trigger reloads
and hand in offline signatures. Building, persisting and publishing are
handled internally by the orchestrator and the stores.
"""

import logging
from typing import Optional

import httpx

from ..core.config import Settings
from ..exceptions import LocalStoreDisabledError
from ..schemas.signature import LocalSignatureCreate, Signature
from .fallback_store import FileFallbackStore
from .local_store import LocalSignatureStore, make_local_signature
from .reload_orchestrator import HealthState, ReloadOptions, ReloadOrchestrator
from .snapshot_builder import Snapshot, SnapshotBuilder
from .upstream_client import UpstreamClient

logger = logging.getLogger(__name__)


class SignatureCache:
    """Facade over one ReloadOrchestrator and the optional local store."""

    def __init__(
        self,
        orchestrator: ReloadOrchestrator,
        local_store: Optional[LocalSignatureStore] = None,
        upstream: Optional[UpstreamClient] = None,
    ):
        self._orchestrator = orchestrator
        self._local_store = local_store
        self._upstream = upstream

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> "SignatureCache":
        """Wire up client, stores and builder from configuration.

        Without an org id or token the cache is created degraded and never
        calls upstream; the file cache can still serve data.
        """
        missing = settings.missing_configuration()
        upstream = None
        if missing is None:
            upstream = UpstreamClient.from_settings(settings, transport=transport)
        else:
            logger.error("CLA assistant disabled: %s", missing)

        fallback_store = FileFallbackStore(settings.cla_filecache) if settings.cla_filecache else None
        local_store = LocalSignatureStore(settings.cla_localstore) if settings.cla_localstore else None
        builder = SnapshotBuilder(
            lookup_fields=settings.get_lookup_fields(),
            coalesce_lookup=settings.cla_lookup_coalesce,
        )
        orchestrator = ReloadOrchestrator(
            upstream=upstream,
            builder=builder,
            fallback_store=fallback_store,
            local_store=local_store,
            unavailable_reason=missing,
        )
        return cls(orchestrator, local_store=local_store, upstream=upstream)

    # ----- read side ---------------------------------------------------------

    def current_snapshot(self) -> Optional[Snapshot]:
        """Latest published snapshot; None until the first successful load."""
        return self._orchestrator.snapshot

    def status(self) -> HealthState:
        return self._orchestrator.health

    # ----- write side --------------------------------------------------------

    def trigger_reload(self, force: bool = False) -> None:
        """Reload now. A forced reload skips the file cache so real upstream
        failures reach the caller instead of stale data being served.
        """
        self._orchestrator.reload(ReloadOptions(allow_fallback=not force))

    def reload_on_startup(self) -> None:
        """Initial load; failures only degrade the cache, they never raise."""
        self._orchestrator.reload(ReloadOptions(allow_fallback=True, fail_silently=True))

    def add_local_signature(self, signature: Signature) -> Signature:
        """Validate, store and immediately publish an offline signature.

        Raises:
            LocalStoreDisabledError: no local store is configured.
            ValidationError: a required field is missing.
            CacheWriteError: the record could not be written.
        """
        if self._local_store is None:
            raise LocalStoreDisabledError()

        self._local_store.append(signature)
        self._orchestrator.publish_local(signature)
        return signature

    def submit_local_signature(self, submission: LocalSignatureCreate, uploader: Optional[str] = None) -> Signature:
        """Build a local signature against the current CLA document and add it."""
        snapshot = self.current_snapshot()
        signature = make_local_signature(
            submission,
            identity=snapshot.identity if snapshot is not None else None,
            uploader=uploader,
        )
        return self.add_local_signature(signature)

    def close(self) -> None:
        self._orchestrator.close()
        if self._upstream is not None:
            self._upstream.close()
