"""Tests for reloads: health transitions, file fallback, local signatures, single-flight."""

import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from cla_dwight.exceptions import AggregateError, LocalStoreDisabledError, UpstreamError, ValidationError
from cla_dwight.schemas.signature import LocalSignatureCreate
from cla_dwight.services import HealthStatus, SignatureCache
from cla_dwight.services.fallback_store import SIGNATORIES_FILE
from cla_dwight.services.snapshot_builder import SOURCE_FALLBACK, SOURCE_UPSTREAM
from cla_dwight.services.upstream_client import UpstreamClient

from conftest import make_record


def _submission(user="dave") -> LocalSignatureCreate:
    return LocalSignatureCreate(
        user=user,
        name="Dave Example",
        email="dave@example.com",
        signed_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )


def _signatories(cache):
    snapshot = cache.current_snapshot()
    return {user: [s.id for s in signatures] for user, signatures in snapshot.signatories.items()}


class TestHealthTransitions:

    def test_starts_uninitialized(self, cache):
        assert cache.status().status == HealthStatus.UNINITIALIZED
        assert cache.current_snapshot() is None

    def test_first_reload_becomes_healthy(self, cache):
        cache.trigger_reload()
        assert cache.status().status == HealthStatus.HEALTHY
        snapshot = cache.current_snapshot()
        assert snapshot.source == SOURCE_UPSTREAM
        assert set(snapshot.signatories) == {"alice", "bob", "carol"}

    def test_versions_fetched_sequentially_in_upstream_order(self, cache, fake_cla):
        cache.trigger_reload()
        assert fake_cla.calls == ["/cla/getGist", "/cla/getAll", "/cla/getAll"]
        assert [b["gist"]["gist_version"] for b in fake_cla.bodies[1:]] == ["v2", "v1"]
        assert fake_cla.max_concurrent == 1

    def test_empty_history_degrades_without_fallback(self, settings_factory, fake_cla):
        cache = SignatureCache.from_settings(settings_factory(cla_filecache=""), transport=fake_cla.transport)
        fake_cla.gist["history"] = []
        with pytest.raises(UpstreamError):
            cache.trigger_reload()
        assert cache.status().status == HealthStatus.DEGRADED
        assert cache.status().reason == "No gist history available."
        cache.close()

    def test_failure_without_fallback_keeps_previous_snapshot(self, settings_factory, fake_cla):
        cache = SignatureCache.from_settings(settings_factory(cla_filecache=""), transport=fake_cla.transport)
        cache.trigger_reload()
        before = cache.current_snapshot()

        fake_cla.fail()
        with pytest.raises(UpstreamError):
            cache.trigger_reload()
        assert cache.status().status == HealthStatus.DEGRADED
        assert cache.current_snapshot() is before
        cache.close()

    def test_degraded_recovers_on_next_success(self, cache, fake_cla):
        fake_cla.fail()
        with pytest.raises(AggregateError):
            cache.trigger_reload()
        assert cache.status().status == HealthStatus.DEGRADED

        fake_cla.recover()
        cache.trigger_reload()
        assert cache.status().is_healthy

    def test_missing_org_configuration_is_degraded(self, settings_factory, fake_cla):
        cache = SignatureCache.from_settings(settings_factory(github_orgid=""), transport=fake_cla.transport)
        assert cache.status().status == HealthStatus.DEGRADED
        assert cache.status().reason == "GITHUB_ORGID environment variable not set."
        cache.reload_on_startup()
        assert fake_cla.calls == []
        cache.close()

    def test_malformed_gist_degrades_silently(self, cache, fake_cla):
        fake_cla.gist["files"] = 5
        cache.reload_on_startup()
        assert cache.status().status == HealthStatus.DEGRADED
        assert cache.current_snapshot() is None

    def test_unexpected_error_becomes_upstream_error(self, cache, fake_cla, monkeypatch):
        def boom(self, identity, version):
            raise RuntimeError("boom")

        monkeypatch.setattr(UpstreamClient, "fetch_signatures", boom)
        with pytest.raises(UpstreamError) as exc_info:
            cache.trigger_reload(force=True)
        assert isinstance(exc_info.value.original_error, RuntimeError)
        assert cache.status().status == HealthStatus.DEGRADED


class TestFallback:

    def test_fallback_serves_last_known_good(self, cache, fake_cla):
        cache.trigger_reload()
        expected = _signatories(cache)

        fake_cla.fail("/cla/getAll")
        cache.trigger_reload()

        assert cache.status().is_healthy
        snapshot = cache.current_snapshot()
        assert snapshot.source == SOURCE_FALLBACK
        assert _signatories(cache) == expected

    def test_fallback_on_cold_start(self, settings, fake_cla):
        warm = SignatureCache.from_settings(settings, transport=fake_cla.transport)
        warm.trigger_reload()
        warm.close()

        fake_cla.fail()
        cold = SignatureCache.from_settings(settings, transport=fake_cla.transport)
        cold.reload_on_startup()
        assert cold.status().status == HealthStatus.HEALTHY
        assert cold.current_snapshot().source == SOURCE_FALLBACK
        assert "alice" in cold.current_snapshot().signatories
        cold.close()

    def test_forced_reload_skips_fallback(self, cache, fake_cla):
        cache.trigger_reload()
        fake_cla.fail()
        with pytest.raises(UpstreamError):
            cache.trigger_reload(force=True)
        assert cache.status().status == HealthStatus.DEGRADED

    def test_both_failing_aggregates_causes(self, cache, fake_cla):
        fake_cla.fail()
        with pytest.raises(AggregateError) as exc_info:
            cache.trigger_reload()
        first, second = exc_info.value.errors
        assert isinstance(first, UpstreamError)
        assert second.error_code.value == "CACHE_READ_ERROR"

    def test_fail_silently_swallows_error(self, cache, fake_cla):
        fake_cla.fail()
        cache.reload_on_startup()
        assert cache.status().status == HealthStatus.DEGRADED
        assert cache.current_snapshot() is None

    def test_unreadable_file_cache_degrades_silently(self, cache, settings, fake_cla):
        cache.trigger_reload()
        (Path(settings.cla_filecache) / SIGNATORIES_FILE).write_bytes(b"\xff\xfe\x00garbage")

        fake_cla.fail()
        cache.reload_on_startup()
        assert cache.status().status == HealthStatus.DEGRADED
        with pytest.raises(AggregateError):
            cache.trigger_reload()

    def test_reload_is_idempotent(self, cache):
        cache.trigger_reload()
        first = _signatories(cache)
        cache.trigger_reload()
        assert _signatories(cache) == first


class TestLocalSignatures:

    def test_local_signature_appears_immediately(self, cache):
        cache.trigger_reload()
        signature = cache.submit_local_signature(_submission(), uploader="admin")
        found = cache.current_snapshot().get("dave")
        assert found[0].id == signature.id
        assert found[0].origin.startswith("local")

    def test_local_signature_survives_reload(self, cache):
        cache.trigger_reload()
        signature = cache.submit_local_signature(_submission())
        cache.trigger_reload(force=True)
        assert [s.id for s in cache.current_snapshot().get("dave")] == [signature.id]

    def test_local_signatures_loaded_from_disk(self, settings, fake_cla):
        first = SignatureCache.from_settings(settings, transport=fake_cla.transport)
        signature = first.submit_local_signature(_submission())
        first.close()

        second = SignatureCache.from_settings(settings, transport=fake_cla.transport)
        second.trigger_reload()
        assert [s.id for s in second.current_snapshot().get("dave")] == [signature.id]
        second.close()

    def test_local_signature_before_first_snapshot(self, cache):
        signature = cache.submit_local_signature(_submission())
        assert cache.current_snapshot() is None
        cache.trigger_reload()
        assert cache.current_snapshot().get("dave")[0].id == signature.id

    def test_local_merged_with_upstream_signee(self, cache):
        cache.trigger_reload()
        cache.submit_local_signature(_submission(user="alice"))
        origins = [s.origin for s in cache.current_snapshot().get("alice")]
        assert origins == ["local", "upstream"]

    def test_invalid_submission_propagates(self, cache):
        cache.trigger_reload()
        with pytest.raises(ValidationError):
            cache.submit_local_signature(_submission(user=" "))

    def test_disabled_local_store(self, settings_factory, fake_cla):
        cache = SignatureCache.from_settings(settings_factory(cla_localstore=""), transport=fake_cla.transport)
        with pytest.raises(LocalStoreDisabledError):
            cache.submit_local_signature(_submission())
        cache.close()

    def test_addition_during_reload_is_kept(self, cache, fake_cla):
        fake_cla.release = threading.Event()
        reloader = threading.Thread(target=cache.trigger_reload)
        reloader.start()

        while not fake_cla.calls:
            threading.Event().wait(0.01)
        signature = cache.submit_local_signature(_submission())

        fake_cla.release.set()
        reloader.join(timeout=5)
        assert [s.id for s in cache.current_snapshot().get("dave")] == [signature.id]


class TestSingleFlight:

    def test_concurrent_reloads_share_one_upstream_pass(self, cache, fake_cla):
        fake_cla.release = threading.Event()
        errors = []

        def reload():
            try:
                cache.trigger_reload()
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=reload) for _ in range(5)]
        for thread in threads:
            thread.start()
        while not fake_cla.calls:
            threading.Event().wait(0.01)
        threading.Event().wait(0.1)
        fake_cla.release.set()
        for thread in threads:
            thread.join(timeout=5)

        assert errors == []
        assert fake_cla.count("/cla/getGist") == 1
        assert cache.status().is_healthy

    def test_joined_callers_see_the_same_error(self, cache, fake_cla):
        fake_cla.fail()
        fake_cla.release = threading.Event()
        errors = []

        def reload():
            try:
                cache.trigger_reload(force=True)
            except UpstreamError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=reload) for _ in range(3)]
        for thread in threads:
            thread.start()
        while not fake_cla.calls:
            threading.Event().wait(0.01)
        threading.Event().wait(0.1)
        fake_cla.release.set()
        for thread in threads:
            thread.join(timeout=5)

        assert len(errors) == 3
        assert fake_cla.count("/cla/getGist") == 1

    def test_sequential_reloads_each_call_upstream(self, cache, fake_cla):
        cache.trigger_reload()
        cache.trigger_reload()
        assert fake_cla.count("/cla/getGist") == 2

    def test_upstream_data_change_is_picked_up(self, cache, fake_cla):
        cache.trigger_reload()
        fake_cla.signatures["v2"].append(make_record("erin", "2024-05-01T00:00:00Z", "v2"))
        cache.trigger_reload()
        assert "erin" in cache.current_snapshot().signatories
