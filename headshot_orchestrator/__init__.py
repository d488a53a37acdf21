"""
Headshot Orchestrator
=====================
Routes AI image-generation jobs across fal.ai, Leonardo and Replicate with
health-aware provider selection, per-account budget ceilings, classified
retries, fallback, and exactly-once settlement of every job.

Basic usage:
    from headshot_orchestrator import GenerationRequest, Orchestrator, default_config

    async with Orchestrator.from_config(default_config()) as orch:
        handle = await orch.submit(GenerationRequest(
            account_id="acct_42",
            idempotency_key="order-1001",
            prompt="studio headshot, soft light",
            image_count=4,
        ))
        result = await handle.result()

With a custom config and a persistent ledger:
    from headshot_orchestrator import Orchestrator, SQLiteLedger, load_config

    orch = Orchestrator.from_config(load_config("routing.yaml"),
                                    ledger=SQLiteLedger("ledger.db"))
"""

from .adapters import HTTPProviderAdapter, ProviderAdapter, classify_exception, classify_status
from .budget import BudgetDecision, BudgetGate, BudgetLedger, BudgetPeriod, Verdict
from .config import (
    BudgetPolicy, HealthPolicy, OrchestratorConfig, PollPolicy, ProviderConfig,
    RetryPolicy, default_config, load_config,
)
from .cost import CostModel, estimate_cost
from .engine import JobHandle, Orchestrator
from .errors import (
    AlreadyInProgressError, BudgetExceededError, ConfigError, InvalidRequestError,
    OrchestratorError, ProviderError, UnknownJobError,
)
from .health import HealthMonitor, HealthRecord, next_status
from .hooks import EventType, HookRegistry
from .ledger import Ledger, MemoryLedger, SQLiteLedger
from .models import (
    Attempt, ErrorKind, Failed, GenerationRequest, GenerationResult, JobOutcome,
    JobPhase, JobSnapshot, MediaKind, ModelClass, Pending, PriceTable,
    ProviderProfile, ProviderStatus, RateLimited, Succeeded,
)
from .notifications import CallbackNotifier, LoggingNotifier, Notifier, TerminalEvent
from .providers import ADAPTER_KINDS, FalAdapter, LeonardoAdapter, ReplicateAdapter, build_adapters
from .selector import Candidate, ProviderSelector

__all__ = [
    # ── Orchestration ───────────────────────────────────────────────────────
    "Orchestrator", "JobHandle",
    "GenerationRequest", "GenerationResult", "JobSnapshot", "JobPhase", "Attempt",
    "ModelClass", "MediaKind", "ErrorKind",
    # ── Configuration ───────────────────────────────────────────────────────
    "OrchestratorConfig", "ProviderConfig", "RetryPolicy", "PollPolicy",
    "HealthPolicy", "BudgetPolicy", "default_config", "load_config",
    # ── Providers ───────────────────────────────────────────────────────────
    "ProviderAdapter", "HTTPProviderAdapter", "FalAdapter", "LeonardoAdapter",
    "ReplicateAdapter", "ADAPTER_KINDS", "build_adapters",
    "classify_status", "classify_exception",
    "ProviderProfile", "PriceTable", "JobOutcome", "Pending", "Succeeded",
    "Failed", "RateLimited",
    # ── Components ──────────────────────────────────────────────────────────
    "CostModel", "estimate_cost",
    "BudgetGate", "BudgetLedger", "BudgetPeriod", "BudgetDecision", "Verdict",
    "HealthMonitor", "HealthRecord", "ProviderStatus", "next_status",
    "ProviderSelector", "Candidate",
    "Ledger", "MemoryLedger", "SQLiteLedger",
    "Notifier", "LoggingNotifier", "CallbackNotifier", "TerminalEvent",
    "HookRegistry", "EventType",
    # ── Errors ──────────────────────────────────────────────────────────────
    "OrchestratorError", "ProviderError", "InvalidRequestError",
    "BudgetExceededError", "AlreadyInProgressError", "UnknownJobError", "ConfigError",
]
