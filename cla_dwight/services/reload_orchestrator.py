"""Reload orchestrator: owns the published snapshot and the cache health.

Health states:
  UNINITIALIZED -- nothing loaded yet
  HEALTHY       -- the last reload published data (from upstream or the file cache)
  DEGRADED      -- the last reload failed and nothing usable replaced the data

A reload resolves the CLA document, then fetches the signatures of every
version one after another (the CLA assistant rate-limits concurrent
connections), reads local signatures in the background meanwhile, and
finally swaps in the new snapshot. When upstream fails the file cache is
tried, unless the caller forced a fresh reload.

Overlapping reload requests share one in-flight reload instead of calling
upstream twice.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Protocol, Sequence, Tuple

from ..exceptions import AggregateError, CacheReadError, CacheWriteError, ClaException, UpstreamError
from ..schemas.signature import DocumentIdentity, Signature
from .fallback_store import FileFallbackStore
from .local_store import LocalSignatureStore
from .snapshot_builder import SOURCE_FALLBACK, Snapshot, SnapshotBuilder

logger = logging.getLogger(__name__)


class Upstream(Protocol):
    def resolve_document(self) -> DocumentIdentity: ...

    def fetch_signatures(self, identity: DocumentIdentity, version: str) -> List[Signature]: ...


class HealthStatus(Enum):
    UNINITIALIZED = "uninitialized"
    HEALTHY = "healthy"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class HealthState:
    status: HealthStatus
    reason: Optional[str] = None
    error: Optional[Exception] = field(default=None, compare=False)
    since: datetime = field(default_factory=lambda: datetime.now(timezone.utc), compare=False)

    @classmethod
    def uninitialized(cls) -> "HealthState":
        return cls(HealthStatus.UNINITIALIZED)

    @classmethod
    def healthy(cls) -> "HealthState":
        return cls(HealthStatus.HEALTHY)

    @classmethod
    def degraded(cls, reason: str, error: Optional[Exception] = None) -> "HealthState":
        return cls(HealthStatus.DEGRADED, reason=reason, error=error)

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


@dataclass(frozen=True)
class ReloadOptions:
    allow_fallback: bool = True
    fail_silently: bool = False


class ReloadOrchestrator:
    """Drives reloads and publishes snapshots.

    Thread-safe: readers take ``snapshot``/``health`` without locking (both are
    replaced, never mutated); writers serialize on a publish lock that is held
    only for the swap itself.

    Args:
        upstream: CLA assistant client, or None when it cannot be configured.
        builder: SnapshotBuilder carrying the lookup configuration.
        fallback_store: Optional file cache.
        local_store: Optional offline-signature store.
        unavailable_reason: Why *upstream* is None; reported as the degraded reason.
    """

    def __init__(
        self,
        upstream: Optional[Upstream],
        builder: SnapshotBuilder,
        fallback_store: Optional[FileFallbackStore] = None,
        local_store: Optional[LocalSignatureStore] = None,
        unavailable_reason: Optional[str] = None,
    ) -> None:
        self._upstream = upstream
        self._builder = builder
        self._fallback_store = fallback_store
        self._local_store = local_store
        self._unavailable_reason = unavailable_reason or "CLA assistant client is not configured"

        self._snapshot: Optional[Snapshot] = None
        self._health = (
            HealthState.uninitialized() if upstream is not None
            else HealthState.degraded(self._unavailable_reason)
        )
        self._publish_lock = threading.Lock()

        self._flight_lock = threading.Lock()
        self._in_flight: Optional[Tuple[bool, Future]] = None

        # Local additions published since process start, tagged with a sequence
        # number so a reload knows which of them its own local read may miss.
        self._local_seq = 0
        self._local_additions: List[Tuple[int, Signature]] = []

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cla-local-load")

    @property
    def snapshot(self) -> Optional[Snapshot]:
        return self._snapshot

    @property
    def health(self) -> HealthState:
        return self._health

    # ----- reload ------------------------------------------------------------

    def reload(self, options: Optional[ReloadOptions] = None) -> None:
        """Run a reload, or wait for an equivalent one already in flight.

        Raises:
            UpstreamError | AggregateError: the reload failed and
                ``options.fail_silently`` is False.
        """
        options = options or ReloadOptions()
        future, leader = self._join_or_lead(options.allow_fallback)

        if leader:
            try:
                error = self._run_reload(options.allow_fallback)
            except BaseException as exc:
                self._end_flight()
                future.set_exception(exc)
                raise
            self._end_flight()
            future.set_result(error)
        else:
            logger.info("Reload already in progress, waiting for its result")
            error = future.result()

        if error is not None and not options.fail_silently:
            raise error

    def _join_or_lead(self, allow_fallback: bool) -> Tuple[Future, bool]:
        """Return the future to wait on and whether the caller must run the reload.

        A forced reload never joins a fallback-allowing one (and vice versa);
        it waits for that one to end and then runs its own.
        """
        while True:
            with self._flight_lock:
                if self._in_flight is None:
                    future: Future = Future()
                    self._in_flight = (allow_fallback, future)
                    return future, True
                in_flight_allows_fallback, future = self._in_flight
            if in_flight_allows_fallback == allow_fallback:
                return future, False
            wait([future])

    def _end_flight(self) -> None:
        with self._flight_lock:
            self._in_flight = None

    def _run_reload(self, allow_fallback: bool) -> Optional[ClaException]:
        with self._publish_lock:
            start_seq = self._local_seq
        local_future = (
            self._executor.submit(self._local_store.list_all) if self._local_store is not None else None
        )

        snapshot: Optional[Snapshot] = None
        error: Optional[ClaException] = None
        upstream_error: Optional[UpstreamError] = None
        try:
            snapshot = self._fetch_upstream()
        except UpstreamError as exc:
            upstream_error = exc
        except Exception as exc:
            logger.exception("Unexpected error while reloading from CLA assistant")
            upstream_error = UpstreamError(
                "Failed to receive signatures from the CLA assistant.", original_error=exc
            )
        else:
            self._save_fallback(snapshot)

        if upstream_error is not None:
            logger.error(
                "Reload from CLA assistant failed: %s", upstream_error,
                extra={"details": upstream_error.details},
            )
            if allow_fallback and self._fallback_store is not None:
                snapshot, error = self._load_fallback(upstream_error)
            else:
                error = upstream_error

        local, local_complete = self._collect_local(local_future)

        if error is not None:
            self._set_health(HealthState.degraded(error.message, error))
            return error

        self._publish(snapshot, local, start_seq, local_complete)
        return None

    def _fetch_upstream(self) -> Snapshot:
        if self._upstream is None:
            raise UpstreamError(self._unavailable_reason)

        identity = self._upstream.resolve_document()

        logger.info("Getting list of signees...")
        per_version: List[List[Signature]] = []
        # Strictly one version at a time: the CLA assistant rejects concurrent requests.
        for version in identity.versions:
            per_version.append(self._upstream.fetch_signatures(identity, version.version))

        return self._builder.build(identity, per_version)

    def _load_fallback(self, upstream_error: UpstreamError) -> Tuple[Optional[Snapshot], Optional[ClaException]]:
        logger.info("Trying data from file cache instead...")
        try:
            data = self._fallback_store.load()
        except CacheReadError as exc:
            logger.error("File cache failed: %s", exc, extra={"details": exc.details})
            return None, AggregateError("Both CLA and file cache failed.", [upstream_error, exc])

        snapshot = self._builder.from_signatories(
            data.identity, data.signatories, source=SOURCE_FALLBACK, built_at=data.saved_at,
        )
        logger.warning(
            "Serving signatures from file cache",
            extra={"saved_at": data.saved_at.isoformat(), "signatories": len(snapshot.signatories)},
        )
        return snapshot, None

    def _save_fallback(self, snapshot: Snapshot) -> None:
        """Refresh the file cache; a failure here never fails the reload."""
        if self._fallback_store is None:
            return
        try:
            self._fallback_store.save(snapshot.identity, snapshot.signatories)
        except CacheWriteError as exc:
            logger.error("Writing file cache failed: %s", exc, extra={"details": exc.details})

    @staticmethod
    def _collect_local(local_future: Optional[Future]) -> Tuple[Sequence[Signature], bool]:
        """Local signatures read during the reload, and whether the read completed."""
        if local_future is None:
            return [], True
        try:
            return local_future.result(), True
        except Exception as exc:
            logger.warning("Loading local signatures failed, continuing without them: %s", exc)
            return [], False

    def _publish(self, snapshot: Snapshot, local: Sequence[Signature], start_seq: int, local_complete: bool) -> None:
        with self._publish_lock:
            # Additions made after the local read started may be missing from it.
            pending = [
                signature for seq, signature in self._local_additions
                if seq > start_seq or not local_complete
            ]
            snapshot = self._builder.merge_local(snapshot, [*local, *pending])
            if local_complete:
                self._local_additions = [
                    (seq, signature) for seq, signature in self._local_additions if seq > start_seq
                ]
            self._snapshot = snapshot

        self._set_health(HealthState.healthy())
        logger.info(
            "Snapshot published",
            extra={
                "source": snapshot.source,
                "signatories": len(snapshot.signatories),
                "signatures": snapshot.signature_count,
            },
        )

    def _set_health(self, state: HealthState) -> None:
        previous = self._health
        self._health = state
        if previous.status != state.status:
            logger.info("Cache health: %s -> %s", previous.status.value, state.status.value)

    # ----- local additions ---------------------------------------------------

    def publish_local(self, signature: Signature) -> Optional[Snapshot]:
        """Merge an already stored local signature into the current snapshot.

        The signature is also remembered so a reload that started before it
        was stored still publishes it.
        """
        with self._publish_lock:
            self._local_seq += 1
            self._local_additions.append((self._local_seq, signature))
            if self._snapshot is not None:
                self._snapshot = self._builder.merge_local(self._snapshot, [signature])
            return self._snapshot

    def close(self) -> None:
        self._executor.shutdown(wait=False)
