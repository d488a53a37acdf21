"""
Error taxonomy.

Adapters raise ProviderError only, always carrying a classified ErrorKind.
Submission-time rejections (invalid request, budget, duplicate key) are
raised synchronously by Orchestrator.submit() before any provider call.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import ErrorKind, JobPhase, ModelClass


class OrchestratorError(Exception):
    """Base class for every error this package raises on purpose."""


class ConfigError(OrchestratorError, ValueError):
    """Configuration is missing or inconsistent."""


class ProviderError(OrchestratorError):
    """A classified upstream failure."""

    def __init__(self, kind: "ErrorKind", message: str = "",
                 retry_after: Optional[float] = None):
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value
        self.retry_after = retry_after

    def __repr__(self) -> str:
        return f"ProviderError({self.kind.value!r}, {self.message!r})"


class InvalidRequestError(OrchestratorError, ValueError):
    """The caller's request can never be served as written."""


class BudgetExceededError(OrchestratorError):
    def __init__(self, reason: str, suggestion: Optional["ModelClass"] = None):
        super().__init__(reason)
        self.reason = reason
        self.suggestion = suggestion


class AlreadyInProgressError(OrchestratorError):
    """Duplicate submission for an idempotency key that is still in flight."""

    def __init__(self, job_id: str, phase: "JobPhase"):
        super().__init__(f"Job {job_id} already in progress (phase={phase.value})")
        self.job_id = job_id
        self.phase = phase


class UnknownJobError(OrchestratorError, KeyError):
    def __init__(self, job_id: str):
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"Unknown job {self.job_id!r}"
