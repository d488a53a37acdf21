"""
Terminal-state notifications.

The orchestrator emits exactly one TerminalEvent per job, after settlement.
Delivery (email, webhooks) lives behind the Notifier interface; a notifier
that raises is logged by the orchestrator and never changes the job.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("headshot_orchestrator.notifications")


@dataclass(frozen=True)
class TerminalEvent:
    job_id: str
    account_id: str
    outcome: str
    cost: Decimal
    provider_used: Optional[str]
    assets: tuple[str, ...] = ()
    reason: str = ""


class Notifier(ABC):
    @abstractmethod
    async def notify(self, event: TerminalEvent) -> None:
        ...


class LoggingNotifier(Notifier):
    async def notify(self, event: TerminalEvent) -> None:
        logger.info(
            "Job %s for %s finished: %s (cost %s via %s)%s",
            event.job_id, event.account_id, event.outcome, event.cost,
            event.provider_used or "-",
            f" — {event.reason}" if event.reason else "",
        )


class CallbackNotifier(Notifier):
    """Adapts a coroutine function, e.g. an email or webhook sender."""

    def __init__(self, callback: Callable[[TerminalEvent], Awaitable[None]]) -> None:
        self._callback = callback

    async def notify(self, event: TerminalEvent) -> None:
        await self._callback(event)
