"""
HookRegistry — lifecycle event hooks for the generation orchestrator.
=====================================================================
A small pub-sub mechanism for observing routing, health and budget events
without touching orchestration logic. Callbacks are synchronous and run
inline; async callers can wrap with asyncio.create_task() if needed.

Events (see EventType):
  JOB_QUEUED         — a request passed the budget gate
  PROVIDER_SELECTED  — the orchestrator is about to submit to a candidate
  ATTEMPT_RECORDED   — one provider call finished (success or classified error)
  PROVIDER_DISABLED  — a provider was forced offline (auth failure / admin)
  HEALTH_CHANGED     — a provider's status changed after a probe
  BUDGET_WARNING     — an account crossed its warning or critical ratio
  JOB_SETTLED        — a job reached Settled
"""
from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger("headshot_orchestrator.hooks")


class EventType(str, Enum):
    """
    Callback signatures (all kwargs):
      JOB_QUEUED        — job_id: str, request: GenerationRequest, reserved: Decimal
      PROVIDER_SELECTED — job_id: str, provider: str, model_id: str, estimated_cost: Decimal
      ATTEMPT_RECORDED  — job_id: str, attempt: Attempt
      PROVIDER_DISABLED — provider: str, reason: str
      HEALTH_CHANGED    — provider: str, previous: ProviderStatus, current: ProviderStatus
      BUDGET_WARNING    — account_id: str, period: str, spent: Decimal, ceiling: Decimal,
                          ratio: float, level: str
      JOB_SETTLED       — job_id: str, result: GenerationResult
    """
    JOB_QUEUED = "job_queued"
    PROVIDER_SELECTED = "provider_selected"
    ATTEMPT_RECORDED = "attempt_recorded"
    PROVIDER_DISABLED = "provider_disabled"
    HEALTH_CHANGED = "health_changed"
    BUDGET_WARNING = "budget_warning"
    JOB_SETTLED = "job_settled"


class HookRegistry:
    """
    Maps event names to lists of callbacks.

    Usage:
        registry = HookRegistry()
        registry.add(EventType.JOB_SETTLED, lambda job_id, result, **_: print(job_id))

    A callback that raises is logged and skipped; it never stops the next
    callback or the orchestrator.
    """

    def __init__(self) -> None:
        self._hooks: dict[str, list[Callable]] = defaultdict(list)

    def add(self, event: str | EventType, callback: Callable) -> None:
        key = event.value if isinstance(event, EventType) else str(event)
        self._hooks[key].append(callback)

    def fire(self, event: str | EventType, **kwargs) -> None:
        key = event.value if isinstance(event, EventType) else str(event)
        for cb in self._hooks.get(key, []):
            try:
                cb(**kwargs)
            except Exception as exc:  # noqa: BLE001 — one bad hook must not break routing
                logger.warning("Hook callback %r raised for event %r: %s", cb, key, exc)

    def clear(self, event: Optional[str | EventType] = None) -> None:
        if event is None:
            self._hooks.clear()
        else:
            key = event.value if isinstance(event, EventType) else str(event)
            self._hooks.pop(key, None)

    def registered_events(self) -> list[str]:
        return [k for k, v in self._hooks.items() if v]

    def __len__(self) -> int:
        return sum(len(v) for v in self._hooks.values())
