"""
Budget Gate — per-account spend ceilings with pessimistic reservation.
======================================================================
Every account maps to a tier; every tier has one or more ceilings
(daily / weekly / monthly, calendar periods in UTC). The gate keeps one
BudgetLedger per (account, period).

The TOCTOU gap: two concurrent requests from one account can both see the
same remaining budget before either settles. authorize() closes it by
reserving the estimate as a soft hold under the account's lock, so the
second request already sees the first one's hold. settle() converts the
hold into spend; release() drops it when nothing was spent.

Locks are per account. Two accounts never contend.

    gate = BudgetGate(BudgetPolicy(tiers={"pro": {"monthly": Decimal("200")}},
                                   default_tier="pro"))
    decision = await gate.authorize("acct_1", "job_1", Decimal("0.10"))
    if decision.allowed:
        ...
        await gate.settle("job_1", Decimal("0.05"))
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from .config import BudgetPolicy
from .hooks import EventType, HookRegistry
from .models import ModelClass

logger = logging.getLogger("headshot_orchestrator.budget")

ZERO = Decimal("0")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# Periods
# ─────────────────────────────────────────────────────────────────────────────

class BudgetPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    def bounds(self, now: datetime) -> tuple[datetime, datetime]:
        """[start, end) of the calendar period containing ``now``."""
        day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if self is BudgetPeriod.DAILY:
            return day, day + timedelta(days=1)
        if self is BudgetPeriod.WEEKLY:
            start = day - timedelta(days=day.weekday())
            return start, start + timedelta(days=7)
        start = day.replace(day=1)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return start, end


# ─────────────────────────────────────────────────────────────────────────────
# Ledger
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class BudgetLedger:
    """
    Spend counters for one account in one period.

    ``spent`` only grows within a period and resets to zero exactly when the
    clock crosses ``period_end``. Outstanding reservations carry over into
    the new period.
    """
    account_id: str
    tier: str
    period: BudgetPeriod
    ceiling: Decimal
    period_start: datetime
    period_end: datetime
    spent: Decimal = ZERO
    reservations: dict[str, Decimal] = field(default_factory=dict)

    @property
    def reserved(self) -> Decimal:
        return sum(self.reservations.values(), ZERO)

    @property
    def committed(self) -> Decimal:
        return self.spent + self.reserved

    @property
    def remaining(self) -> Decimal:
        return max(ZERO, self.ceiling - self.committed)

    @property
    def utilization(self) -> float:
        return float(self.spent / self.ceiling) if self.ceiling > 0 else 1.0

    def fits(self, amount: Decimal, replacing: Decimal = ZERO) -> bool:
        return self.committed - replacing + amount <= self.ceiling

    def roll(self, now: datetime) -> bool:
        """Start a new period if ``now`` crossed the boundary."""
        if now < self.period_end:
            return False
        self.period_start, self.period_end = self.period.bounds(now)
        self.spent = ZERO
        return True

    def to_dict(self) -> dict:
        return {
            "tier": self.tier,
            "ceiling": str(self.ceiling),
            "spent": str(self.spent),
            "reserved": str(self.reserved),
            "remaining": str(self.remaining),
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
        }


# ─────────────────────────────────────────────────────────────────────────────
# Decisions
# ─────────────────────────────────────────────────────────────────────────────

class Verdict(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    DEGRADE = "degrade"


@dataclass(frozen=True)
class BudgetDecision:
    verdict: Verdict
    reason: str = ""
    suggestion: Optional[ModelClass] = None

    @property
    def allowed(self) -> bool:
        return self.verdict is Verdict.ALLOW

    @classmethod
    def allow(cls) -> "BudgetDecision":
        return cls(Verdict.ALLOW)

    @classmethod
    def deny(cls, reason: str) -> "BudgetDecision":
        return cls(Verdict.DENY, reason)

    @classmethod
    def degrade(cls, suggestion: ModelClass, reason: str) -> "BudgetDecision":
        return cls(Verdict.DEGRADE, reason, suggestion)


# ─────────────────────────────────────────────────────────────────────────────
# Gate
# ─────────────────────────────────────────────────────────────────────────────

class BudgetGate:
    """
    Authorize / adjust / settle / release under one asyncio.Lock per account.

    ``clock`` returns an aware UTC datetime; tests pin it to cross period
    boundaries deterministically.
    """

    def __init__(self, policy: BudgetPolicy,
                 hooks: Optional[HookRegistry] = None,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self._policy = policy
        self._hooks = hooks or HookRegistry()
        self._clock = clock
        self._ledgers: dict[str, dict[BudgetPeriod, BudgetLedger]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._job_accounts: dict[str, str] = {}
        self._warned: set[tuple[str, BudgetPeriod, datetime, str]] = set()

    # ── Internals ────────────────────────────────────────────────────────────

    def _lock(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    def _account_ledgers(self, account_id: str) -> dict[BudgetPeriod, BudgetLedger]:
        now = self._clock()
        ledgers = self._ledgers.get(account_id)
        if ledgers is None:
            tier = self._policy.tier_for(account_id)
            ledgers = {}
            for period_name, ceiling in self._policy.tiers[tier].items():
                period = BudgetPeriod(period_name)
                start, end = period.bounds(now)
                ledgers[period] = BudgetLedger(
                    account_id=account_id, tier=tier, period=period,
                    ceiling=ceiling, period_start=start, period_end=end,
                )
            self._ledgers[account_id] = ledgers
        for ledger in ledgers.values():
            if ledger.roll(now):
                logger.info(
                    "Budget period rolled for %s (%s): new period %s → %s",
                    account_id, ledger.period.value,
                    ledger.period_start.isoformat(), ledger.period_end.isoformat(),
                )
        return ledgers

    def _check_thresholds(self, ledger: BudgetLedger) -> None:
        ratio = ledger.utilization
        if ratio >= self._policy.critical_ratio:
            level = "critical"
        elif ratio >= self._policy.warning_ratio:
            level = "warning"
        else:
            return
        key = (ledger.account_id, ledger.period, ledger.period_start, level)
        if key in self._warned:
            return
        self._warned.add(key)
        logger.warning(
            "Account %s at %.0f%% of its %s budget (%s / %s) — %s",
            ledger.account_id, ratio * 100, ledger.period.value,
            ledger.spent, ledger.ceiling, level,
        )
        self._hooks.fire(
            EventType.BUDGET_WARNING,
            account_id=ledger.account_id, period=ledger.period.value,
            spent=ledger.spent, ceiling=ledger.ceiling, ratio=ratio, level=level,
        )

    # ── Public API ───────────────────────────────────────────────────────────

    async def authorize(
        self,
        account_id: str,
        job_id: str,
        estimated_cost: Decimal,
        downgrade: Optional[Callable[[Decimal], Optional[ModelClass]]] = None,
    ) -> BudgetDecision:
        """
        Allow and reserve ``estimated_cost`` for ``job_id``, or explain why not.

        ``downgrade`` receives the amount still affordable and may return a
        cheaper ModelClass; when it does the decision is Degrade instead of
        Deny. Nothing is reserved unless the verdict is Allow.
        """
        if estimated_cost < 0:
            raise ValueError("estimated_cost must not be negative")
        async with self._lock(account_id):
            if job_id in self._job_accounts:
                raise ValueError(f"Job {job_id!r} already holds a reservation")
            ledgers = self._account_ledgers(account_id)
            breached = [l for l in ledgers.values() if not l.fits(estimated_cost)]
            if breached:
                tightest = min(breached, key=lambda l: l.remaining)
                reason = (
                    f"{tightest.period.value} budget of {tightest.ceiling} would be exceeded "
                    f"(spent {tightest.spent}, reserved {tightest.reserved}, "
                    f"requested {estimated_cost})"
                )
                affordable = min(l.remaining for l in ledgers.values())
                suggestion = downgrade(affordable) if downgrade else None
                if suggestion is not None:
                    logger.info("Budget degrade for %s/%s → %s: %s",
                                account_id, job_id, suggestion.value, reason)
                    return BudgetDecision.degrade(suggestion, reason)
                logger.info("Budget denied for %s/%s: %s", account_id, job_id, reason)
                return BudgetDecision.deny(reason)

            for ledger in ledgers.values():
                ledger.reservations[job_id] = estimated_cost
            self._job_accounts[job_id] = account_id
            logger.debug("Reserved %s for %s/%s", estimated_cost, account_id, job_id)
            return BudgetDecision.allow()

    async def adjust(self, job_id: str, new_amount: Decimal) -> bool:
        """Resize an existing hold. Returns False (and changes nothing) on breach."""
        account_id = self._job_accounts.get(job_id)
        if account_id is None:
            return False
        async with self._lock(account_id):
            ledgers = self._account_ledgers(account_id)
            for ledger in ledgers.values():
                current = ledger.reservations.get(job_id, ZERO)
                if new_amount > current and not ledger.fits(new_amount, replacing=current):
                    logger.info(
                        "Hold increase for %s denied by %s budget (%s → %s)",
                        job_id, ledger.period.value, current, new_amount,
                    )
                    return False
            for ledger in ledgers.values():
                ledger.reservations[job_id] = new_amount
            return True

    async def settle(self, job_id: str, actual_cost: Decimal) -> None:
        """Replace the hold with actual spend. Unknown or settled jobs are a no-op."""
        if actual_cost < 0:
            raise ValueError("actual_cost must not be negative")
        account_id = self._job_accounts.get(job_id)
        if account_id is None:
            logger.debug("settle(%s): no reservation held", job_id)
            return
        async with self._lock(account_id):
            if self._job_accounts.pop(job_id, None) is None:
                return
            for ledger in self._account_ledgers(account_id).values():
                ledger.reservations.pop(job_id, None)
                ledger.spent += actual_cost
                self._check_thresholds(ledger)

    async def release(self, job_id: str) -> None:
        """Drop the hold without spending. Idempotent."""
        account_id = self._job_accounts.get(job_id)
        if account_id is None:
            return
        async with self._lock(account_id):
            if self._job_accounts.pop(job_id, None) is None:
                return
            for ledger in self._account_ledgers(account_id).values():
                ledger.reservations.pop(job_id, None)

    # ── Queries ──────────────────────────────────────────────────────────────

    def ledger(self, account_id: str, period: BudgetPeriod | str) -> BudgetLedger:
        return self._account_ledgers(account_id)[BudgetPeriod(period)]

    def remaining(self, account_id: str) -> Decimal:
        return min(l.remaining for l in self._account_ledgers(account_id).values())

    def usage(self, account_id: str) -> dict:
        return {
            period.value: ledger.to_dict()
            for period, ledger in self._account_ledgers(account_id).items()
        }
