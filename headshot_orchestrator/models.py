"""
Headshot Orchestrator — Core Models & Types
===========================================
All data structures shared by the orchestration layer: enums, requests,
provider profiles, outcome variants, attempt history and job state.

Money is always ``decimal.Decimal``. Budget conservation is checked with
exact arithmetic; a float sum drifting by 1e-17 is enough to let one
request too many through the gate.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from .errors import InvalidRequestError


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class ModelClass(str, Enum):
    FAST = "fast"
    BALANCED = "balanced"
    PREMIUM = "premium"

    def cheaper(self) -> list["ModelClass"]:
        """Classes below this one, most capable first."""
        order = list(ModelClass)
        return list(reversed(order[:order.index(self)]))


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    AUTH_FAILURE = "auth_failure"
    INVALID_REQUEST = "invalid_request"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    TIMEOUT = "timeout"
    UNKNOWN_TRANSIENT = "unknown_transient"
    NO_CAPACITY = "no_capacity"
    BUDGET_EXCEEDED = "budget_exceeded"
    ALREADY_IN_PROGRESS = "already_in_progress"
    CANCELLED = "cancelled"

    @property
    def retryable(self) -> bool:
        return self not in (ErrorKind.INVALID_REQUEST, ErrorKind.AUTH_FAILURE)


class ProviderStatus(str, Enum):
    ONLINE = "online"
    DEGRADED = "degraded"
    OFFLINE = "offline"

    @property
    def weight(self) -> int:
        return _STATUS_WEIGHT[self]


_STATUS_WEIGHT = {
    ProviderStatus.ONLINE: 0,
    ProviderStatus.DEGRADED: 1,
    ProviderStatus.OFFLINE: 2,
}


class JobPhase(str, Enum):
    QUEUED = "queued"
    SELECTING = "selecting"
    SUBMITTING = "submitting"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"
    SETTLED = "settled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset({
    JobPhase.SUCCEEDED, JobPhase.PARTIAL_SUCCESS, JobPhase.FAILED, JobPhase.SETTLED,
})


# ─────────────────────────────────────────────
# Resolution helpers
# ─────────────────────────────────────────────

_RESOLUTION_RE = re.compile(r"^(\d{2,5})x(\d{2,5})$")


def parse_resolution(resolution: str) -> tuple[int, int]:
    """Split a ``"WxH"`` resolution string into integers."""
    match = _RESOLUTION_RE.match(resolution or "")
    if not match:
        raise InvalidRequestError(f"Malformed resolution {resolution!r}, expected 'WxH'")
    return int(match.group(1)), int(match.group(2))


# ─────────────────────────────────────────────
# Request
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class GenerationRequest:
    """
    Immutable description of one generation job.

    ``idempotency_key`` is supplied by the caller and is unique per account;
    a second submission with the same key while the first is in flight is
    rejected rather than merged.
    """
    account_id: str
    idempotency_key: str
    prompt: str
    model_class: ModelClass = ModelClass.BALANCED
    image_count: int = 1
    resolution: str = "1024x1024"
    steps: int = 28
    asset_refs: tuple[str, ...] = ()
    media: MediaKind = MediaKind.IMAGE
    max_cost: Optional[Decimal] = None
    max_latency_seconds: Optional[float] = None
    allow_overage: bool = False
    complete_or_fail: bool = False
    allow_downgrade: bool = False

    @property
    def dedupe_key(self) -> tuple[str, str]:
        return (self.account_id, self.idempotency_key)

    def validate(self) -> None:
        """Raise InvalidRequestError for anything no provider could serve."""
        if not self.account_id:
            raise InvalidRequestError("account_id is required")
        if not self.idempotency_key:
            raise InvalidRequestError("idempotency_key is required")
        if not self.prompt or not self.prompt.strip():
            raise InvalidRequestError("prompt must not be empty")
        if self.image_count <= 0:
            raise InvalidRequestError(f"image_count must be > 0, got {self.image_count}")
        if self.steps <= 0:
            raise InvalidRequestError(f"steps must be > 0, got {self.steps}")
        parse_resolution(self.resolution)
        if self.max_cost is not None and self.max_cost < 0:
            raise InvalidRequestError("max_cost must not be negative")
        if self.max_latency_seconds is not None and self.max_latency_seconds <= 0:
            raise InvalidRequestError("max_latency_seconds must be > 0")


# ─────────────────────────────────────────────
# Provider profile & pricing
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class PriceTable:
    """
    Price per delivered unit keyed by ``(model_id, resolution, step_tier)``.

    ``step_tier`` is the number of inference steps the price covers; a
    request is billed at the smallest tier that covers its step count.
    """
    prices: dict[tuple[str, str, int], Decimal] = field(default_factory=dict)

    def tiers(self, model_id: str, resolution: str) -> list[int]:
        return sorted(
            tier for (m, r, tier) in self.prices
            if m == model_id and r == resolution
        )

    def unit_price(self, model_id: str, resolution: str, tier: int) -> Decimal:
        return self.prices[(model_id, resolution, tier)]


@dataclass(frozen=True)
class ProviderProfile:
    """Static description of one upstream generation service."""
    provider_id: str
    models: dict[ModelClass, str]
    pricing: PriceTable
    resolutions: tuple[str, ...] = ("1024x1024",)
    media: tuple[MediaKind, ...] = (MediaKind.IMAGE,)
    max_batch_size: int = 4
    base_timeout: float = 300.0
    supports_cancel: bool = True

    def model_for(self, model_class: ModelClass) -> Optional[str]:
        return self.models.get(model_class)


# ─────────────────────────────────────────────
# Outcome variants returned by ProviderAdapter.poll()
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class Pending:
    progress: Optional[float] = None


@dataclass(frozen=True)
class Succeeded:
    asset_refs: tuple[str, ...]


@dataclass(frozen=True)
class Failed:
    kind: ErrorKind
    message: str = ""


@dataclass(frozen=True)
class RateLimited:
    retry_after: float


JobOutcome = Union[Pending, Succeeded, Failed, RateLimited]


# ─────────────────────────────────────────────
# Attempt history & job state
# ─────────────────────────────────────────────

SUCCEEDED_OUTCOME = "succeeded"
PARTIAL_OUTCOME = "partial"


@dataclass(frozen=True)
class Attempt:
    provider: str
    model_id: str
    outcome: str            # "succeeded", "partial", or an ErrorKind value
    latency: float          # seconds
    cost: Decimal = Decimal("0")
    call_number: int = 1    # nth call against this provider within the job
    detail: str = ""

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        try:
            return ErrorKind(self.outcome)
        except ValueError:
            return None

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "model_id": self.model_id,
            "outcome": self.outcome,
            "latency": round(self.latency, 4),
            "cost": str(self.cost),
            "call_number": self.call_number,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only copy of a JobState handed to callers."""
    job_id: str
    account_id: str
    phase: JobPhase
    outcome: Optional[JobPhase]
    attempts: tuple[Attempt, ...]
    spent: Decimal
    assets: tuple[str, ...]
    provider_used: Optional[str]
    error: Optional[ErrorKind]
    reason: str


@dataclass
class JobState:
    """
    Mutable per-job state. Owned by the orchestrator's driver task for the
    job; everything else reads it through snapshot().
    """
    job_id: str
    request: GenerationRequest
    phase: JobPhase = JobPhase.QUEUED
    outcome: Optional[JobPhase] = None
    attempts: list[Attempt] = field(default_factory=list)
    spent: Decimal = Decimal("0")
    assets: list[str] = field(default_factory=list)
    error: Optional[ErrorKind] = None
    reason: str = ""
    reserved: Decimal = Decimal("0")
    current_provider: Optional[str] = None
    provider_job_id: Optional[str] = None
    provider_used: Optional[str] = None
    created_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def delivered(self) -> int:
        return len(self.assets)

    def calls_to(self, provider: str) -> int:
        return sum(1 for a in self.attempts if a.provider == provider)

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            job_id=self.job_id,
            account_id=self.request.account_id,
            phase=self.phase,
            outcome=self.outcome,
            attempts=tuple(self.attempts),
            spent=self.spent,
            assets=tuple(self.assets),
            provider_used=self.provider_used,
            error=self.error,
            reason=self.reason,
        )


@dataclass(frozen=True)
class GenerationResult:
    job_id: str
    outcome: JobPhase
    assets: tuple[str, ...]
    cost: Decimal
    provider_used: Optional[str]
    error: Optional[ErrorKind]
    reason: str
    attempts: tuple[Attempt, ...]

    @property
    def ok(self) -> bool:
        return self.outcome in (JobPhase.SUCCEEDED, JobPhase.PARTIAL_SUCCESS)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "outcome": self.outcome.value,
            "assets": list(self.assets),
            "cost": str(self.cost),
            "provider_used": self.provider_used,
            "error": self.error.value if self.error else None,
            "reason": self.reason,
            "attempts": [a.to_dict() for a in self.attempts],
        }
