"""
Health Monitor — background probes with hysteresis.
===================================================
One probe loop per provider (default every 30 s, 5 s probe timeout). Each
probe appends a sample to a sliding window (last 20); the provider's status
is then recomputed by next_status(), a pure function of the previous status
and the window:

    online   → degraded   2 consecutive failures, or p95 above threshold
    degraded → offline    5 consecutive failures
    offline  → degraded   any success
    degraded → online     3 consecutive successes and p95 within threshold

A provider therefore never goes online ↔ offline on a single probe.

Records are frozen and replaced whole, so snapshot() is a plain dict copy
with no lock; the selector always reads a consistent record per provider.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Callable, Mapping, Optional, Sequence

from .adapters import ProviderAdapter
from .config import HealthPolicy
from .errors import ProviderError
from .hooks import EventType, HookRegistry
from .models import ProviderStatus
from .tracing import traced_probe

logger = logging.getLogger("headshot_orchestrator.health")


@dataclass(frozen=True)
class ProbeSample:
    ok: bool
    latency_ms: float
    at: float


@dataclass(frozen=True)
class HealthRecord:
    provider: str
    status: ProviderStatus = ProviderStatus.ONLINE
    success_rate: float = 1.0
    p50_ms: Optional[float] = None
    p95_ms: Optional[float] = None
    last_probe: Optional[float] = None
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    window: tuple[ProbeSample, ...] = ()
    disabled: bool = False
    disabled_reason: str = ""

    @property
    def usable(self) -> bool:
        return not self.disabled

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "status": self.status.value,
            "success_rate": round(self.success_rate, 4),
            "p50_ms": self.p50_ms,
            "p95_ms": self.p95_ms,
            "last_probe": self.last_probe,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "samples": len(self.window),
            "disabled": self.disabled,
            "disabled_reason": self.disabled_reason,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Pure helpers
# ─────────────────────────────────────────────────────────────────────────────

def percentile(values: Sequence[float], pct: float) -> Optional[float]:
    """Nearest-rank percentile; None for an empty sequence."""
    if not values:
        return None
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100.0 * len(ordered)))
    return ordered[rank - 1]


def _tail_run(window: Sequence[ProbeSample], ok: bool) -> int:
    run = 0
    for sample in reversed(window):
        if sample.ok is not ok:
            break
        run += 1
    return run


def _latency_p95(window: Sequence[ProbeSample]) -> Optional[float]:
    return percentile([s.latency_ms for s in window if s.ok], 95)


def next_status(previous: ProviderStatus, window: Sequence[ProbeSample],
                policy: HealthPolicy) -> ProviderStatus:
    """Status after the newest sample in ``window``."""
    if not window:
        return previous
    failures = _tail_run(window, ok=False)
    successes = _tail_run(window, ok=True)
    p95 = _latency_p95(window)
    slow = p95 is not None and p95 > policy.p95_threshold_ms

    if previous is ProviderStatus.ONLINE:
        if failures >= policy.degrade_after_failures or slow:
            return ProviderStatus.DEGRADED
        return ProviderStatus.ONLINE
    if previous is ProviderStatus.DEGRADED:
        if failures >= policy.offline_after_failures:
            return ProviderStatus.OFFLINE
        if successes >= policy.recover_after_successes and not slow:
            return ProviderStatus.ONLINE
        return ProviderStatus.DEGRADED
    # offline
    return ProviderStatus.DEGRADED if window[-1].ok else ProviderStatus.OFFLINE


def _summarise(record: HealthRecord, window: tuple[ProbeSample, ...],
               status: ProviderStatus, at: float) -> HealthRecord:
    latencies = [s.latency_ms for s in window if s.ok]
    return replace(
        record,
        status=status,
        window=window,
        success_rate=sum(1 for s in window if s.ok) / len(window),
        p50_ms=percentile(latencies, 50),
        p95_ms=percentile(latencies, 95),
        last_probe=at,
        consecutive_failures=_tail_run(window, ok=False),
        consecutive_successes=_tail_run(window, ok=True),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Monitor
# ─────────────────────────────────────────────────────────────────────────────

class HealthMonitor:
    """
    Owns every HealthRecord. The probe loops are the only writers besides
    disable()/enable(); readers take snapshot().
    """

    def __init__(self, adapters: Mapping[str, ProviderAdapter], policy: HealthPolicy,
                 hooks: Optional[HookRegistry] = None,
                 clock: Callable[[], float] = time.time) -> None:
        self._adapters = dict(adapters)
        self._policy = policy
        self._hooks = hooks or HookRegistry()
        self._clock = clock
        self._records: dict[str, HealthRecord] = {
            pid: HealthRecord(provider=pid) for pid in self._adapters
        }
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def policy(self) -> HealthPolicy:
        return self._policy

    # ── Loop management ──────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    def start(self) -> None:
        for pid in self._adapters:
            task = self._tasks.get(pid)
            if task is None or task.done():
                self._tasks[pid] = asyncio.create_task(
                    self._loop(pid), name=f"health-probe:{pid}",
                )
        logger.info("Health probes started for %s (every %.0fs)",
                    ", ".join(self._adapters), self._policy.interval)

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _loop(self, provider: str) -> None:
        while True:
            try:
                await self.probe_once(provider)
            except Exception:
                logger.exception("%s health probe crashed; retrying next interval", provider)
            await asyncio.sleep(self._policy.interval)

    # ── Probing ──────────────────────────────────────────────────────────────

    async def probe_once(self, provider: str) -> HealthRecord:
        adapter = self._adapters[provider]
        started = time.monotonic()
        ok = True
        with traced_probe(provider) as span:
            try:
                await asyncio.wait_for(adapter.probe(), timeout=self._policy.probe_timeout)
            except asyncio.TimeoutError:
                ok = False
                logger.debug("%s probe timed out after %.1fs", provider, self._policy.probe_timeout)
            except ProviderError as exc:
                ok = False
                logger.debug("%s probe failed: %s", provider, exc.kind.value)
            span.set_attribute("probe.ok", ok)
        latency_ms = (time.monotonic() - started) * 1000.0
        return self.observe(provider, ok, latency_ms)

    async def probe_all(self) -> dict[str, HealthRecord]:
        await asyncio.gather(*(self.probe_once(pid) for pid in self._adapters))
        return self.snapshot()

    def observe(self, provider: str, ok: bool, latency_ms: float) -> HealthRecord:
        """Fold one probe sample into the provider's record."""
        record = self._records[provider]
        sample = ProbeSample(ok=ok, latency_ms=latency_ms, at=self._clock())
        window = (record.window + (sample,))[-self._policy.window:]
        if record.disabled:
            status = ProviderStatus.OFFLINE
        else:
            status = next_status(record.status, window, self._policy)
        updated = _summarise(record, window, status, sample.at)
        self._records[provider] = updated
        if status is not record.status:
            self._announce(provider, record.status, status)
        return updated

    def _announce(self, provider: str, previous: ProviderStatus,
                  current: ProviderStatus) -> None:
        if current.weight > previous.weight:
            logger.warning("Provider %s %s → %s", provider, previous.value, current.value)
        else:
            logger.info("Provider %s %s → %s", provider, previous.value, current.value)
        self._hooks.fire(EventType.HEALTH_CHANGED,
                         provider=provider, previous=previous, current=current)

    # ── Reads ────────────────────────────────────────────────────────────────

    def snapshot(self) -> dict[str, HealthRecord]:
        return dict(self._records)

    def record(self, provider: str) -> HealthRecord:
        return self._records[provider]

    # ── Admin ────────────────────────────────────────────────────────────────

    def disable(self, provider: str, reason: str) -> None:
        """Force a provider offline until enable(). Used for auth failures."""
        record = self._records[provider]
        if record.disabled:
            return
        self._records[provider] = replace(
            record, status=ProviderStatus.OFFLINE, disabled=True, disabled_reason=reason,
        )
        logger.error("Provider %s disabled: %s", provider, reason)
        self._hooks.fire(EventType.PROVIDER_DISABLED, provider=provider, reason=reason)
        if record.status is not ProviderStatus.OFFLINE:
            self._announce(provider, record.status, ProviderStatus.OFFLINE)

    def enable(self, provider: str) -> None:
        """Lift a disable. The provider re-enters as degraded and must recover."""
        record = self._records[provider]
        if not record.disabled:
            return
        self._records[provider] = replace(
            record, status=ProviderStatus.DEGRADED, disabled=False, disabled_reason="",
        )
        logger.info("Provider %s re-enabled (degraded until it recovers)", provider)
        self._announce(provider, record.status, ProviderStatus.DEGRADED)

    def system_health(self) -> dict:
        """Overall verdict plus operator recommendations."""
        records = list(self._records.values())
        online = [r for r in records if r.status is ProviderStatus.ONLINE]
        usable = [r for r in records if r.status is not ProviderStatus.OFFLINE]
        if records and len(online) == len(records):
            overall = "healthy"
        elif not usable:
            overall = "critical"
        else:
            overall = "degraded"

        recommendations: list[str] = []
        for r in records:
            if r.disabled:
                recommendations.append(
                    f"{r.provider} is disabled ({r.disabled_reason}); check its credentials "
                    f"and re-enable it"
                )
            elif r.status is ProviderStatus.OFFLINE:
                recommendations.append(
                    f"{r.provider} is offline after {r.consecutive_failures} failed probes; "
                    f"traffic is failing over"
                )
            elif r.p95_ms is not None and r.p95_ms > self._policy.p95_threshold_ms:
                recommendations.append(
                    f"{r.provider} p95 latency {r.p95_ms:.0f}ms exceeds "
                    f"{self._policy.p95_threshold_ms:.0f}ms"
                )
        if overall == "critical":
            recommendations.append("No provider is available; new jobs will fail with no_capacity")

        return {
            "overall": overall,
            "online": len(online),
            "usable": len(usable),
            "total": len(records),
            "providers": {r.provider: r.to_dict() for r in records},
            "recommendations": recommendations,
        }
