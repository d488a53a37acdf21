"""
Orchestrator Engine — per-job state machine
===========================================
Drives one GenerationRequest from submission to settlement:

    Queued → Selecting → Submitting → Polling → Succeeded | PartialSuccess | Failed → Settled

submit() does everything that can reject a request synchronously (request
validation, idempotency, budget authorization) and then hands the job to a
driver task. The driver walks the ranked candidates: each provider gets
retries according to RetryPolicy, then the job falls back to the next
candidate. A provider is never tried twice in one job.

Retry rules per classified error:
  rate_limited          wait min(Retry-After, max_backoff), retry once, then fall back
  timeout / upstream_unavailable / unknown_transient
                        exponential backoff with jitter, 3 calls per provider
  attempt deadline      cancel upstream (best effort), fall back immediately
  auth_failure          disable the provider, fall back
  invalid_request       terminal; no provider will accept it

Every terminal outcome settles exactly once: budget hold converted (or
released), actual cost recorded, settlement written, one notification sent.
Ledger, notifier and hook failures are logged and never change the job.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from collections import OrderedDict, defaultdict
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Mapping, Optional

from .adapters import ProviderAdapter
from .budget import BudgetGate, utcnow
from .config import OrchestratorConfig
from .cost import CostModel
from .errors import (
    AlreadyInProgressError,
    BudgetExceededError,
    ConfigError,
    ProviderError,
    UnknownJobError,
)
from .health import HealthMonitor
from .hooks import EventType, HookRegistry
from .ledger import Ledger, MemoryLedger
from .metrics import MetricsExporter
from .models import (
    PARTIAL_OUTCOME,
    SUCCEEDED_OUTCOME,
    Attempt,
    ErrorKind,
    Failed,
    GenerationRequest,
    GenerationResult,
    JobPhase,
    JobSnapshot,
    JobState,
    Pending,
    RateLimited,
    Succeeded,
)
from .notifications import LoggingNotifier, Notifier, TerminalEvent
from .selector import Candidate, ProviderSelector
from .tracing import traced_job, traced_provider_call

logger = logging.getLogger("headshot_orchestrator.engine")

ZERO = Decimal("0")


class _DeadlineExceeded(ProviderError):
    """The per-attempt polling deadline passed; the upstream job was abandoned."""

    def __init__(self, message: str):
        super().__init__(ErrorKind.TIMEOUT, message)


class JobHandle:
    """What submit() returns: a job id plus shortcuts back into the orchestrator."""

    def __init__(self, orchestrator: "Orchestrator", job_id: str) -> None:
        self._orchestrator = orchestrator
        self.job_id = job_id

    def status(self) -> JobSnapshot:
        return self._orchestrator.status(self.job_id)

    async def result(self) -> GenerationResult:
        return await self._orchestrator.result(self.job_id)

    async def cancel(self) -> bool:
        return await self._orchestrator.cancel(self.job_id)

    def __repr__(self) -> str:
        return f"JobHandle({self.job_id!r})"


class Orchestrator:
    """
    Multi-provider generation orchestrator.

    Usage:
        async with Orchestrator.from_config(default_config()) as orch:
            handle = await orch.submit(request)
            result = await handle.result()

    Everything is injected; nothing is looked up from the environment while
    requests are being handled.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        adapters: Mapping[str, ProviderAdapter],
        *,
        ledger: Optional[Ledger] = None,
        notifier: Optional[Notifier] = None,
        hooks: Optional[HookRegistry] = None,
        health: Optional[HealthMonitor] = None,
        cost_model: Optional[CostModel] = None,
        budget_gate: Optional[BudgetGate] = None,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ) -> None:
        configured = {p.id for p in config.providers}
        missing = configured - set(adapters)
        if missing:
            raise ConfigError(f"No adapter for configured providers: {sorted(missing)}")
        unknown = set(adapters) - configured
        if unknown:
            raise ConfigError(f"Adapters for unconfigured providers: {sorted(unknown)}")

        self._config = config
        self._adapters = dict(adapters)
        self.hooks = hooks or HookRegistry()
        self.costs = cost_model or CostModel()
        self.health = health or HealthMonitor(self._adapters, config.health, hooks=self.hooks)
        self.budget = budget_gate or BudgetGate(config.budget, hooks=self.hooks, clock=clock)
        self.ledger = ledger or MemoryLedger()
        self.notifier = notifier or LoggingNotifier()
        self.selector = ProviderSelector(
            [self._adapters[p.id].capabilities() for p in config.providers],
            config.priority,
            self.costs,
        )
        self._clock = clock
        self._rng = rng or random.Random()
        self._limits = {
            p.id: asyncio.Semaphore(p.max_concurrency) for p in config.providers
        }
        self._jobs: dict[str, JobState] = {}
        self._archive: dict[str, JobState] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._inflight: dict[tuple[str, str], str] = {}
        # dedupe key → (job id, settled at) for jobs that delivered assets
        self._delivered: OrderedDict[tuple[str, str], tuple[str, datetime]] = OrderedDict()
        self._started: set[str] = set()
        self._cancel_requested: set[str] = set()
        self._settling: set[str] = set()
        self._call_stats: dict[str, dict[str, int]] = defaultdict(
            lambda: {"calls": 0, "failures": 0}
        )
        self._metrics_exporter: Optional[MetricsExporter] = None

    @classmethod
    def from_config(cls, config: OrchestratorConfig, **kwargs) -> "Orchestrator":
        """Build HTTP adapters for every configured provider, then the orchestrator."""
        from .providers import build_adapters
        return cls(config, build_adapters(config), **kwargs)

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def __aenter__(self) -> "Orchestrator":
        self.health.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Cancel in-flight jobs (they still settle), stop probes, close clients."""
        if self._jobs:
            await asyncio.gather(*(self.cancel(job_id) for job_id in list(self._jobs)))
        if self._tasks:
            await asyncio.wait(list(self._tasks.values()))
        await self.health.stop()
        for adapter in self._adapters.values():
            await adapter.aclose()
        await self.ledger.close()

    # ── Public API ───────────────────────────────────────────────────────────

    async def submit(self, request: GenerationRequest) -> JobHandle:
        """
        Accept a request or reject it before any provider is called.

        Raises InvalidRequestError, AlreadyInProgressError or
        BudgetExceededError. On success the job is Queued and running.

        Resubmitting the (account, key) of a job that delivered assets within
        the idempotency retention returns that job's handle; nothing is
        authorized or called again.
        """
        request.validate()
        key = request.dedupe_key
        delivered = self._delivered_job(key)
        if delivered is not None:
            logger.info("Key %s/%s already delivered by %s, replaying its result",
                        request.account_id, request.idempotency_key, delivered)
            return JobHandle(self, delivered)
        existing = self._inflight.get(key)
        if existing is not None:
            raise AlreadyInProgressError(existing, self._jobs[existing].phase)

        job_id = f"job_{uuid.uuid4().hex[:16]}"
        state = JobState(job_id=job_id, request=request)
        # registered before the first await so a concurrent duplicate sees it
        self._inflight[key] = job_id
        self._jobs[job_id] = state
        try:
            await self._authorize(state)
        except BaseException:
            self._inflight.pop(key, None)
            self._jobs.pop(job_id, None)
            raise

        logger.info(
            "Job %s queued for %s: %d × %s %s (hold %s)",
            job_id, request.account_id, state.request.image_count,
            state.request.model_class.value, state.request.resolution, state.reserved,
        )
        self.hooks.fire(EventType.JOB_QUEUED, job_id=job_id, request=state.request,
                        reserved=state.reserved)
        self._tasks[job_id] = asyncio.create_task(self._drive(state), name=f"job:{job_id}")
        return JobHandle(self, job_id)

    def status(self, job_id: str) -> JobSnapshot:
        return self._lookup(job_id).snapshot()

    async def result(self, job_id: str) -> GenerationResult:
        """Wait for the job to settle. Cancelling the waiter leaves the job running."""
        state = self._lookup(job_id)
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return self._result(state)

    async def cancel(self, job_id: str) -> bool:
        """
        Cancel a job that has not reached a terminal state. Returns False if
        it already had; the job still settles as Failed(cancelled).
        """
        state = self._jobs.get(job_id)
        if state is None:
            if job_id in self._archive:
                return False
            raise UnknownJobError(job_id)
        task = self._tasks.get(job_id)
        if state.outcome is not None or task is None:
            return False
        if job_id in self._started:
            task.cancel()
        else:
            self._cancel_requested.add(job_id)
        await asyncio.wait([task])
        return True

    def active_jobs(self) -> list[JobSnapshot]:
        return [state.snapshot() for state in self._jobs.values()]

    # ── Metrics ──────────────────────────────────────────────────────────────

    def metrics(self) -> dict:
        """Per-provider health and spend, shaped for the metrics exporters."""
        spend = self.costs.spend_by_provider()
        metrics = {}
        for pid, record in self.health.snapshot().items():
            stats = self._call_stats.get(pid, {})
            metrics[pid] = {
                "status": record.status.value,
                "status_weight": record.status.weight,
                "success_rate": record.success_rate,
                "p50_ms": record.p50_ms,
                "p95_ms": record.p95_ms,
                "consecutive_failures": record.consecutive_failures,
                "calls": stats.get("calls", 0),
                "failures": stats.get("failures", 0),
                "spend_usd": float(spend.get(pid, ZERO)),
                "disabled": record.disabled,
            }
        return metrics

    def set_metrics_exporter(self, exporter: MetricsExporter) -> None:
        self._metrics_exporter = exporter

    def export_metrics(self) -> None:
        if self._metrics_exporter is None:
            logger.debug("export_metrics() called with no exporter set")
            return
        self._metrics_exporter.export(self.metrics())

    # ── Submission helpers ───────────────────────────────────────────────────

    def _lookup(self, job_id: str) -> JobState:
        state = self._jobs.get(job_id) or self._archive.get(job_id)
        if state is None:
            raise UnknownJobError(job_id)
        return state

    def _delivered_job(self, key: tuple[str, str]) -> Optional[str]:
        self._prune_delivered()
        entry = self._delivered.get(key)
        return entry[0] if entry is not None else None

    def _prune_delivered(self) -> None:
        """Drop expired entries, then the oldest ones beyond max_entries."""
        policy = self._config.idempotency
        cutoff = self._clock() - timedelta(seconds=policy.retention_seconds)
        while self._delivered:
            key, (_job_id, settled_at) = next(iter(self._delivered.items()))
            if settled_at > cutoff and len(self._delivered) <= policy.max_entries:
                break
            del self._delivered[key]

    def _preview_cost(self, request: GenerationRequest) -> Decimal:
        candidates = self.selector.rank(request, self.health.snapshot())
        return candidates[0].estimated_cost if candidates else ZERO

    async def _authorize(self, state: JobState) -> None:
        request = state.request
        estimate = self._preview_cost(request)
        decision = await self.budget.authorize(
            request.account_id, state.job_id, estimate,
            downgrade=lambda affordable: self.costs.cheapest_class(
                self.selector.profiles, request, affordable),
        )
        if decision.suggestion is not None and request.allow_downgrade:
            degraded = replace(request, model_class=decision.suggestion)
            estimate = self._preview_cost(degraded)
            decision = await self.budget.authorize(request.account_id, state.job_id, estimate)
            if decision.allowed:
                logger.info("Job %s downgraded %s → %s to fit the budget",
                            state.job_id, request.model_class.value, degraded.model_class.value)
                state.request = degraded
        if not decision.allowed:
            raise BudgetExceededError(decision.reason, decision.suggestion)
        state.reserved = estimate

    # ── Driver ───────────────────────────────────────────────────────────────

    async def _drive(self, state: JobState) -> None:
        self._started.add(state.job_id)
        request = state.request
        try:
            if state.job_id in self._cancel_requested:
                self._finish(state, JobPhase.FAILED, ErrorKind.CANCELLED, "cancelled before start")
            else:
                with traced_job(state.job_id, request.account_id,
                                request.model_class.value) as span:
                    await self._run(state)
                    span.set_attribute("job.outcome", state.outcome.value)
        except asyncio.CancelledError:
            logger.info("Job %s cancelled during %s", state.job_id, state.phase.value)
            self._finish(state, JobPhase.FAILED, ErrorKind.CANCELLED, "cancelled by caller")
        except Exception as exc:
            logger.exception("Job %s failed unexpectedly", state.job_id)
            self._finish(state, JobPhase.FAILED, ErrorKind.UNKNOWN_TRANSIENT,
                         f"internal error: {exc}")
        finally:
            self._started.discard(state.job_id)
            self._cancel_requested.discard(state.job_id)
        await self._settle(state)

    async def _run(self, state: JobState) -> None:
        request = state.request
        loop = asyncio.get_running_loop()
        deadline = (loop.time() + request.max_latency_seconds
                    if request.max_latency_seconds is not None else None)
        tried: set[str] = set()
        last_reason = ""

        while True:
            if deadline is not None and loop.time() >= deadline:
                self._finish(state, JobPhase.FAILED, ErrorKind.TIMEOUT,
                             f"max latency of {request.max_latency_seconds}s exceeded")
                return

            state.phase = JobPhase.SELECTING
            missing = request.image_count - state.delivered
            candidates = self.selector.rank(
                request, self.health.snapshot(), count=missing, exclude=tried,
                spent=state.spent,
            )
            if candidates and self._config.health.preflight_probe:
                candidates = await self._preflight(candidates)
            if not candidates:
                self._exhausted(state, tried, last_reason)
                return

            candidate = candidates[0]
            tried.add(candidate.provider)
            if not await self._hold(state, candidate):
                last_reason = f"{candidate.provider} would exceed the budget"
                continue

            try:
                assets, cost = await self._attempt_provider(state, candidate, missing, deadline)
            except ProviderError as exc:
                last_reason = f"{candidate.provider}: {exc.kind.value}"
                if exc.kind is ErrorKind.INVALID_REQUEST:
                    self._finish(state, JobPhase.FAILED, ErrorKind.INVALID_REQUEST, exc.message)
                    return
                if exc.kind is ErrorKind.AUTH_FAILURE:
                    self.health.disable(candidate.provider, f"auth failure: {exc.message}")
                logger.warning("Job %s: falling back from %s after %s",
                               state.job_id, candidate.provider, exc.kind.value)
                continue

            state.assets.extend(assets)
            state.spent += cost
            if state.provider_used is None:
                state.provider_used = candidate.provider
            if state.delivered >= request.image_count:
                self._finish(state, JobPhase.SUCCEEDED)
                return
            if not request.complete_or_fail:
                self._finish(state, JobPhase.PARTIAL_SUCCESS, reason=(
                    f"delivered {state.delivered} of {request.image_count}"
                ))
                return
            logger.info("Job %s: %s delivered %d of %d, topping up",
                        state.job_id, candidate.provider, state.delivered, request.image_count)

    def _exhausted(self, state: JobState, tried: set[str], last_reason: str) -> None:
        request = state.request
        if state.delivered:
            reason = (f"only {state.delivered} of {request.image_count} delivered "
                      f"and no provider left to complete the batch")
        elif tried:
            reason = f"all candidate providers failed (last: {last_reason})"
        else:
            reason = "no provider can serve this request"
        logger.warning("Job %s: no capacity — %s", state.job_id, reason)
        self._finish(state, JobPhase.FAILED, ErrorKind.NO_CAPACITY, reason)

    async def _hold(self, state: JobState, candidate: Candidate) -> bool:
        """Grow the budget hold to cover this candidate; False if it can't."""
        needed = state.spent + candidate.estimated_cost
        if needed <= state.reserved:
            return True
        if await self.budget.adjust(state.job_id, needed):
            state.reserved = needed
            return True
        logger.info("Job %s: skipping %s, a hold of %s exceeds the budget",
                    state.job_id, candidate.provider, needed)
        return False

    async def _preflight(self, candidates: list[Candidate]) -> list[Candidate]:
        """Probe the top two concurrently; non-responders move to the back."""
        head = candidates[:2]

        async def answers(candidate: Candidate) -> bool:
            try:
                await asyncio.wait_for(self._adapters[candidate.provider].probe(),
                                       timeout=self._config.health.probe_timeout)
            except (ProviderError, asyncio.TimeoutError):
                return False
            return True

        results = await asyncio.gather(*(answers(c) for c in head))
        good = [c for c, ok in zip(head, results) if ok]
        bad = [c for c, ok in zip(head, results) if not ok]
        return good + candidates[2:] + bad

    # ── One provider: retries ────────────────────────────────────────────────

    async def _attempt_provider(self, state: JobState, candidate: Candidate, units: int,
                                deadline: Optional[float]) -> tuple[tuple[str, ...], Decimal]:
        """
        Call one provider until it delivers or its retry allowance is spent.
        Returns the delivered asset refs and their cost; raises the last
        ProviderError otherwise.
        """
        provider = candidate.provider
        adapter = self._adapters[provider]
        profile = adapter.capabilities()
        request = state.request
        if units != request.image_count:
            request = replace(request, image_count=units)
        rate_limited = 0

        self.hooks.fire(EventType.PROVIDER_SELECTED, job_id=state.job_id, provider=provider,
                        model_id=candidate.model_id, estimated_cost=candidate.estimated_cost)
        while True:
            call_number = state.calls_to(provider) + 1
            failure: Optional[ProviderError] = None
            assets: tuple[str, ...] = ()
            state.phase = JobPhase.QUEUED
            async with self._limits[provider]:
                started = time.monotonic()
                try:
                    with traced_provider_call(provider, candidate.model_id, call_number) as span:
                        assets = await self._call(state, adapter, candidate.model_id,
                                                  request, deadline)
                        span.set_attribute("provider.assets", len(assets))
                except ProviderError as exc:
                    failure = exc
                latency = time.monotonic() - started

            if failure is None:
                delivered = tuple(assets[:units])
                cost = self.costs.estimate(profile, candidate.model_id, len(delivered),
                                           request.resolution, request.steps)
                label = SUCCEEDED_OUTCOME if len(delivered) >= units else PARTIAL_OUTCOME
                await self._record(state, Attempt(provider, candidate.model_id, label,
                                                  latency, cost, call_number))
                return delivered, cost

            await self._record(state, Attempt(provider, candidate.model_id, failure.kind.value,
                                              latency, ZERO, call_number, failure.message))
            wait = self._retry_delay(failure, call_number, rate_limited, deadline)
            if wait is None:
                raise failure
            if failure.kind is ErrorKind.RATE_LIMITED:
                rate_limited += 1
            logger.info("Job %s: %s %s on call %d, retrying in %.2fs",
                        state.job_id, provider, failure.kind.value, call_number, wait)
            await asyncio.sleep(wait)

    def _retry_delay(self, failure: ProviderError, call_number: int, rate_limited: int,
                     deadline: Optional[float]) -> Optional[float]:
        """Seconds to wait before calling the same provider again, or None to fall back."""
        retry = self._config.retry
        if not failure.kind.retryable or isinstance(failure, _DeadlineExceeded):
            return None
        if failure.kind is ErrorKind.RATE_LIMITED:
            if rate_limited >= retry.rate_limit_retries:
                return None
            wait = retry.rate_limit_wait(failure.retry_after)
        else:
            if call_number >= retry.max_attempts_per_provider:
                return None
            wait = retry.backoff(call_number, self._rng)
        if deadline is not None and asyncio.get_running_loop().time() + wait >= deadline:
            return None
        return wait

    # ── One provider: submit + poll ──────────────────────────────────────────

    async def _call(self, state: JobState, adapter: ProviderAdapter, model_id: str,
                    request: GenerationRequest, deadline: Optional[float]) -> tuple[str, ...]:
        loop = asyncio.get_running_loop()
        profile = adapter.capabilities()
        state.phase = JobPhase.SUBMITTING
        state.current_provider = adapter.provider_id

        submit_timeout = self._config.retry.submit_timeout
        if deadline is not None:
            submit_timeout = max(0.0, min(submit_timeout, deadline - loop.time()))
        try:
            upstream_id = await asyncio.wait_for(adapter.submit(request, model_id),
                                                 timeout=submit_timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderError(ErrorKind.TIMEOUT,
                                f"submit took longer than {submit_timeout:.1f}s") from exc

        state.provider_job_id = upstream_id
        state.phase = JobPhase.POLLING
        expires = loop.time() + min(profile.base_timeout, self._config.poll.request_timeout)
        if deadline is not None:
            expires = min(expires, deadline)
        try:
            return await self._poll_until_done(adapter, upstream_id, expires)
        except asyncio.CancelledError:
            await self._cancel_upstream(adapter, upstream_id)
            raise
        finally:
            state.provider_job_id = None

    async def _poll_until_done(self, adapter: ProviderAdapter, upstream_id: str,
                               expires: float) -> tuple[str, ...]:
        loop = asyncio.get_running_loop()
        poll = self._config.poll
        interval = poll.initial_interval
        errors = 0
        while True:
            remaining = expires - loop.time()
            if remaining <= 0:
                await self._cancel_upstream(adapter, upstream_id)
                raise _DeadlineExceeded(
                    f"{adapter.provider_id}: no result for {upstream_id} before the attempt deadline"
                )
            await asyncio.sleep(min(interval, remaining))

            try:
                outcome = await asyncio.wait_for(adapter.poll(upstream_id),
                                                 timeout=poll.poll_timeout)
            except (ProviderError, asyncio.TimeoutError) as exc:
                error = exc if isinstance(exc, ProviderError) else ProviderError(
                    ErrorKind.TIMEOUT, f"poll took longer than {poll.poll_timeout:.1f}s")
                errors += 1
                if not error.kind.retryable or errors >= poll.max_poll_errors:
                    await self._cancel_upstream(adapter, upstream_id)
                    raise error
                logger.debug("%s: poll error %d/%d for %s: %s", adapter.provider_id,
                             errors, poll.max_poll_errors, upstream_id, error.kind.value)
                interval = poll.next_interval(interval)
                continue

            errors = 0
            if isinstance(outcome, Pending):
                interval = poll.next_interval(interval)
            elif isinstance(outcome, RateLimited):
                interval = self._config.retry.rate_limit_wait(outcome.retry_after)
            elif isinstance(outcome, Failed):
                raise ProviderError(outcome.kind, outcome.message)
            elif isinstance(outcome, Succeeded):
                if not outcome.asset_refs:
                    raise ProviderError(ErrorKind.UNKNOWN_TRANSIENT,
                                        f"{adapter.provider_id}: completed without assets")
                return outcome.asset_refs
            else:
                raise ProviderError(ErrorKind.UNKNOWN_TRANSIENT,
                                    f"{adapter.provider_id}: unrecognised outcome {outcome!r}")

    async def _cancel_upstream(self, adapter: ProviderAdapter, upstream_id: str) -> None:
        if not adapter.capabilities().supports_cancel:
            return
        try:
            await asyncio.wait_for(adapter.cancel(upstream_id),
                                   timeout=self._config.retry.submit_timeout)
        except (ProviderError, asyncio.TimeoutError) as exc:
            logger.warning("%s: cancel of %s failed: %s", adapter.provider_id, upstream_id, exc)

    # ── Bookkeeping ──────────────────────────────────────────────────────────

    async def _record(self, state: JobState, attempt: Attempt) -> None:
        state.attempts.append(attempt)
        stats = self._call_stats[attempt.provider]
        stats["calls"] += 1
        if attempt.error_kind is not None:
            stats["failures"] += 1
        self.hooks.fire(EventType.ATTEMPT_RECORDED, job_id=state.job_id, attempt=attempt)
        try:
            await self.ledger.record_attempt(state.job_id, attempt)
        except Exception as exc:
            logger.warning("Ledger attempt write failed for job %s: %s", state.job_id, exc)

    @staticmethod
    def _finish(state: JobState, phase: JobPhase, error: Optional[ErrorKind] = None,
                reason: str = "") -> None:
        state.phase = phase
        state.outcome = phase
        state.error = error
        state.reason = reason
        state.current_provider = None
        state.finished_at = time.monotonic()

    @staticmethod
    def _spend_breakdown(state: JobState) -> dict[str, Decimal]:
        breakdown: dict[str, Decimal] = defaultdict(lambda: ZERO)
        for attempt in state.attempts:
            if attempt.cost > 0:
                breakdown[attempt.provider] += attempt.cost
        return dict(breakdown)

    @staticmethod
    def _result(state: JobState) -> GenerationResult:
        return GenerationResult(
            job_id=state.job_id,
            outcome=state.outcome or state.phase,
            assets=tuple(state.assets),
            cost=state.spent,
            provider_used=state.provider_used,
            error=state.error,
            reason=state.reason,
            attempts=tuple(state.attempts),
        )

    async def _settle(self, state: JobState) -> None:
        job_id = state.job_id
        if job_id in self._settling or state.phase is JobPhase.SETTLED:
            return
        self._settling.add(job_id)
        request = state.request
        amount = state.spent

        if amount > 0:
            await self.budget.settle(job_id, amount)
            self.costs.record_actual_cost(job_id, amount, provider=state.provider_used or "",
                                          breakdown=self._spend_breakdown(state))
        else:
            await self.budget.release(job_id)

        try:
            await self.ledger.record_settlement(
                job_id, amount, state.outcome.value,
                account_id=request.account_id, provider_used=state.provider_used,
            )
        except Exception as exc:
            logger.warning("Ledger settlement write failed for job %s: %s", job_id, exc)

        state.phase = JobPhase.SETTLED
        result = self._result(state)
        try:
            await self.notifier.notify(TerminalEvent(
                job_id=job_id,
                account_id=request.account_id,
                outcome=result.outcome.value,
                cost=amount,
                provider_used=state.provider_used,
                assets=result.assets,
                reason=state.reason,
            ))
        except Exception as exc:
            logger.warning("Notification failed for job %s: %s", job_id, exc)
        self.hooks.fire(EventType.JOB_SETTLED, job_id=job_id, result=result)

        if self._inflight.get(request.dedupe_key) == job_id:
            del self._inflight[request.dedupe_key]
        if result.ok:
            self._delivered[request.dedupe_key] = (job_id, self._clock())
            self._prune_delivered()
        self._jobs.pop(job_id, None)
        self._archive[job_id] = state
        self._tasks.pop(job_id, None)
        self._settling.discard(job_id)
        logger.info("Job %s settled: %s, cost %s, %d attempt(s)%s",
                    job_id, result.outcome.value, amount, len(state.attempts),
                    f" — {state.reason}" if state.reason else "")
