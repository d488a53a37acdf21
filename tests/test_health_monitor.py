"""
Tests for health.py — status transitions with hysteresis, probing,
admin disable/enable and the system health summary.
"""
from __future__ import annotations

import asyncio
import random

import pytest

from fakes import FakeAdapter
from headshot_orchestrator.config import HealthPolicy
from headshot_orchestrator.errors import ConfigError, ProviderError
from headshot_orchestrator.health import (
    HealthMonitor,
    ProbeSample,
    _tail_run,
    next_status,
    percentile,
)
from headshot_orchestrator.hooks import EventType, HookRegistry
from headshot_orchestrator.models import ErrorKind, ProviderStatus

ONLINE = ProviderStatus.ONLINE
DEGRADED = ProviderStatus.DEGRADED
OFFLINE = ProviderStatus.OFFLINE

POLICY = HealthPolicy(probe_timeout=0.2)


def _window(*oks: bool, latency: float = 100.0) -> tuple[ProbeSample, ...]:
    return tuple(ProbeSample(ok=ok, latency_ms=latency, at=float(i)) for i, ok in enumerate(oks))


def _monitor(*adapters, policy=POLICY, hooks=None):
    return HealthMonitor({a.provider_id: a for a in adapters}, policy, hooks=hooks)


# ─────────────────────────────────────────────────────────────────────────────
# Pure transitions
# ─────────────────────────────────────────────────────────────────────────────

class TestNextStatus:

    def test_empty_window_keeps_status(self):
        assert next_status(DEGRADED, (), POLICY) is DEGRADED

    def test_online_stays_online_after_one_failure(self):
        assert next_status(ONLINE, _window(True, False), POLICY) is ONLINE

    def test_online_degrades_after_two_failures(self):
        assert next_status(ONLINE, _window(True, False, False), POLICY) is DEGRADED

    def test_online_degrades_when_p95_too_slow(self):
        assert next_status(ONLINE, _window(True, True, latency=25_000.0), POLICY) is DEGRADED

    def test_degraded_goes_offline_after_five_failures(self):
        assert next_status(DEGRADED, _window(*[False] * 4), POLICY) is DEGRADED
        assert next_status(DEGRADED, _window(*[False] * 5), POLICY) is OFFLINE

    def test_degraded_recovers_after_three_successes(self):
        assert next_status(DEGRADED, _window(False, True, True), POLICY) is DEGRADED
        assert next_status(DEGRADED, _window(False, True, True, True), POLICY) is ONLINE

    def test_degraded_does_not_recover_while_slow(self):
        window = _window(True, True, True, latency=30_000.0)
        assert next_status(DEGRADED, window, POLICY) is DEGRADED

    def test_offline_returns_to_degraded_on_success(self):
        assert next_status(OFFLINE, _window(False, False, True), POLICY) is DEGRADED
        assert next_status(OFFLINE, _window(True, False), POLICY) is OFFLINE

    def test_failed_probe_latency_ignored_for_p95(self):
        window = (ProbeSample(True, 100.0, 0.0), ProbeSample(False, 60_000.0, 1.0))
        assert next_status(ONLINE, window, POLICY) is ONLINE

    def test_never_jumps_between_online_and_offline(self):
        """
        Seeded random sample streams: every step moves at most one level, and
        entering online or offline needs the full run of successes or failures.
        """
        rng = random.Random(1234)
        for _ in range(200):
            status = ONLINE
            window: tuple[ProbeSample, ...] = ()
            for i in range(60):
                sample = ProbeSample(
                    ok=rng.random() < 0.5,
                    latency_ms=rng.choice([50.0, 500.0, 30_000.0]),
                    at=float(i),
                )
                window = (window + (sample,))[-POLICY.window:]
                new = next_status(status, window, POLICY)
                assert abs(new.weight - status.weight) <= 1
                if new is ONLINE and status is not ONLINE:
                    assert _tail_run(window, True) >= POLICY.recover_after_successes
                if new is OFFLINE and status is not OFFLINE:
                    assert _tail_run(window, False) >= POLICY.offline_after_failures
                status = new


class TestPercentile:

    def test_empty(self):
        assert percentile([], 95) is None

    def test_nearest_rank(self):
        values = [float(v) for v in range(1, 21)]
        assert percentile(values, 50) == 10.0
        assert percentile(values, 95) == 19.0
        assert percentile([7.0], 95) == 7.0


class TestHealthPolicy:

    def test_window_must_hold_offline_run(self):
        with pytest.raises(ConfigError):
            HealthPolicy(window=3, offline_after_failures=5)


# ─────────────────────────────────────────────────────────────────────────────
# Monitor
# ─────────────────────────────────────────────────────────────────────────────

class TestMonitor:

    def test_providers_start_online(self):
        monitor = _monitor(FakeAdapter("fal"), FakeAdapter("leonardo"))
        snapshot = monitor.snapshot()
        assert set(snapshot) == {"fal", "leonardo"}
        assert all(r.status is ONLINE for r in snapshot.values())

    @pytest.mark.asyncio
    async def test_successful_probe_records_latency(self):
        fal = FakeAdapter("fal")
        monitor = _monitor(fal)
        record = await monitor.probe_once("fal")
        assert fal.probes == 1
        assert record.status is ONLINE
        assert record.success_rate == 1.0
        assert record.p95_ms is not None
        assert record.last_probe is not None

    @pytest.mark.asyncio
    async def test_failed_probes_degrade_and_fire_hook(self):
        hooks = HookRegistry()
        changes = []
        hooks.add(EventType.HEALTH_CHANGED,
                  lambda **kw: changes.append((kw["previous"], kw["current"])))
        fal = FakeAdapter("fal")
        fal.probe_error = ProviderError(ErrorKind.UPSTREAM_UNAVAILABLE, "503")
        monitor = _monitor(fal, hooks=hooks)

        await monitor.probe_once("fal")
        assert monitor.record("fal").status is ONLINE
        await monitor.probe_once("fal")
        assert monitor.record("fal").status is DEGRADED
        assert monitor.record("fal").consecutive_failures == 2
        assert changes == [(ONLINE, DEGRADED)]

    @pytest.mark.asyncio
    async def test_probe_timeout_counts_as_failure(self):
        class SlowAdapter(FakeAdapter):
            async def probe(self):
                await asyncio.sleep(5)

        monitor = _monitor(SlowAdapter("fal"), policy=HealthPolicy(probe_timeout=0.01))
        record = await monitor.probe_once("fal")
        assert record.consecutive_failures == 1
        assert record.success_rate == 0.0

    @pytest.mark.asyncio
    async def test_probe_all_covers_every_provider(self):
        fal, leo = FakeAdapter("fal"), FakeAdapter("leonardo")
        monitor = _monitor(fal, leo)
        snapshot = await monitor.probe_all()
        assert fal.probes == 1 and leo.probes == 1
        assert set(snapshot) == {"fal", "leonardo"}

    def test_window_is_bounded(self):
        monitor = _monitor(FakeAdapter("fal"), policy=HealthPolicy(window=5))
        for _ in range(12):
            monitor.observe("fal", True, 10.0)
        assert len(monitor.record("fal").window) == 5

    def test_full_outage_and_recovery_path(self):
        monitor = _monitor(FakeAdapter("fal"))
        statuses = []
        for ok in [False] * 7 + [True] * 4:
            statuses.append(monitor.observe("fal", ok, 100.0).status)
        assert statuses == [
            ONLINE, DEGRADED, DEGRADED, DEGRADED, OFFLINE, OFFLINE, OFFLINE,
            DEGRADED, DEGRADED, ONLINE, ONLINE,
        ]

    @pytest.mark.asyncio
    async def test_start_and_stop_background_loops(self):
        fal = FakeAdapter("fal")
        monitor = _monitor(fal, policy=HealthPolicy(interval=0.01, probe_timeout=0.2))
        monitor.start()
        assert monitor.running
        await asyncio.sleep(0.05)
        await monitor.stop()
        assert not monitor.running
        assert fal.probes >= 2

    @pytest.mark.asyncio
    async def test_background_loop_survives_unexpected_errors(self, caplog):
        fal = FakeAdapter("fal")
        fal.probe_error = RuntimeError("driver bug")
        monitor = _monitor(fal, policy=HealthPolicy(interval=0.01, probe_timeout=0.2))
        with caplog.at_level("ERROR", logger="headshot_orchestrator.health"):
            monitor.start()
            await asyncio.sleep(0.05)
            assert monitor.running
            assert fal.probes >= 2
            fal.probe_error = None
            await asyncio.sleep(0.05)
        await monitor.stop()
        assert "fal health probe crashed" in caplog.text
        assert len(monitor.record("fal").window) >= 1


class TestDisable:

    def test_disable_forces_offline_and_fires_hooks(self):
        hooks = HookRegistry()
        events = []
        hooks.add(EventType.PROVIDER_DISABLED, lambda **kw: events.append(("disabled", kw["reason"])))
        hooks.add(EventType.HEALTH_CHANGED, lambda **kw: events.append(("health", kw["current"])))
        monitor = _monitor(FakeAdapter("fal"), hooks=hooks)

        monitor.disable("fal", "auth failure: 401")
        record = monitor.record("fal")
        assert record.status is OFFLINE
        assert record.disabled
        assert not record.usable
        assert events == [("disabled", "auth failure: 401"), ("health", OFFLINE)]

    def test_disable_is_idempotent(self):
        hooks = HookRegistry()
        events = []
        hooks.add(EventType.PROVIDER_DISABLED, lambda **kw: events.append(kw))
        monitor = _monitor(FakeAdapter("fal"), hooks=hooks)
        monitor.disable("fal", "x")
        monitor.disable("fal", "y")
        assert len(events) == 1
        assert monitor.record("fal").disabled_reason == "x"

    def test_disabled_provider_stays_offline_on_success(self):
        monitor = _monitor(FakeAdapter("fal"))
        monitor.disable("fal", "auth")
        for _ in range(5):
            monitor.observe("fal", True, 10.0)
        assert monitor.record("fal").status is OFFLINE

    def test_enable_reenters_as_degraded(self):
        monitor = _monitor(FakeAdapter("fal"))
        monitor.disable("fal", "auth")
        monitor.enable("fal")
        record = monitor.record("fal")
        assert record.status is DEGRADED
        assert not record.disabled


class TestSystemHealth:

    def test_all_online_is_healthy(self):
        report = _monitor(FakeAdapter("fal"), FakeAdapter("leonardo")).system_health()
        assert report["overall"] == "healthy"
        assert report["online"] == 2
        assert report["recommendations"] == []

    def test_one_disabled_is_degraded_with_recommendation(self):
        monitor = _monitor(FakeAdapter("fal"), FakeAdapter("leonardo"))
        monitor.disable("fal", "auth failure")
        report = monitor.system_health()
        assert report["overall"] == "degraded"
        assert report["usable"] == 1
        assert any("fal is disabled" in r for r in report["recommendations"])
        assert report["providers"]["fal"]["disabled"] is True

    def test_everything_offline_is_critical(self):
        monitor = _monitor(FakeAdapter("fal"))
        for _ in range(5):
            monitor.observe("fal", False, 100.0)
        report = monitor.system_health()
        assert report["overall"] == "critical"
        assert any("no_capacity" in r for r in report["recommendations"])
