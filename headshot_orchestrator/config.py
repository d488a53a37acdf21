"""
Configuration — immutable routing policy loaded once at process start
=====================================================================
Everything the orchestrator needs to route a request lives here: provider
profiles and priority order, pricing tables, budget ceilings per tier, and
the retry / poll / health constants. Objects are frozen dataclasses built
once and passed into Orchestrator(); changing routing policy requires a
restart.

YAML schema (all sections optional except ``providers``):

    priority: [fal, leonardo, replicate]
    retry:
      base_delay: 0.5
      factor: 2.0
      max_attempts_per_provider: 3
      max_backoff: 30
    poll:
      initial_interval: 2
      max_interval: 15
      request_timeout: 300
    health:
      interval: 30
      probe_timeout: 5
      p95_threshold_ms: 20000
    budget:
      default_tier: free
      tiers:
        free:    {monthly: 5.00}
        pro:     {daily: 20, monthly: 200}
      account_tiers:
        acct_42: pro
    idempotency:
      retention_seconds: 86400
      max_entries: 10000
    providers:
      - id: fal
        kind: fal
        api_key_env: FAL_KEY
        max_concurrency: 4
        models: {fast: fal-ai/flux/schnell, balanced: fal-ai/flux/dev}
        resolutions: ["1024x1024"]
        pricing:
          fal-ai/flux/dev:
            1024x1024: {28: 0.025, 50: 0.04}
"""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import ConfigError
from .models import MediaKind, ModelClass, PriceTable, ProviderProfile


# ─────────────────────────────────────────────────────────────────────────────
# Policies
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RetryPolicy:
    base_delay: float = 0.5
    factor: float = 2.0
    max_attempts_per_provider: int = 3
    max_backoff: float = 30.0
    jitter: float = 0.1
    rate_limit_retries: int = 1
    submit_timeout: float = 30.0

    def backoff(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay before retry number ``attempt`` (1-based), capped, with jitter."""
        delay = min(self.max_backoff, self.base_delay * (self.factor ** max(0, attempt - 1)))
        if self.jitter > 0:
            delay += (rng or random).uniform(0.0, self.jitter * delay)
        return min(delay, self.max_backoff)

    def rate_limit_wait(self, retry_after: Optional[float]) -> float:
        if retry_after is None or retry_after < 0:
            retry_after = self.base_delay
        return min(retry_after, self.max_backoff)


@dataclass(frozen=True)
class PollPolicy:
    initial_interval: float = 2.0
    max_interval: float = 15.0
    factor: float = 1.5
    request_timeout: float = 300.0
    poll_timeout: float = 10.0
    max_poll_errors: int = 3

    def next_interval(self, current: float) -> float:
        return min(self.max_interval, current * self.factor)


@dataclass(frozen=True)
class HealthPolicy:
    interval: float = 30.0
    probe_timeout: float = 5.0
    window: int = 20
    degrade_after_failures: int = 2
    offline_after_failures: int = 5
    recover_after_successes: int = 3
    p95_threshold_ms: float = 20_000.0
    preflight_probe: bool = False

    def __post_init__(self):
        if self.window < self.offline_after_failures:
            raise ConfigError(
                f"health.window ({self.window}) must hold at least "
                f"offline_after_failures ({self.offline_after_failures}) probes"
            )
        if self.window < self.recover_after_successes:
            raise ConfigError("health.window must hold recover_after_successes probes")


@dataclass(frozen=True)
class IdempotencyPolicy:
    """How long a delivered job answers resubmissions of its (account, key)."""
    retention_seconds: float = 86_400.0
    max_entries: int = 10_000

    def __post_init__(self):
        if self.retention_seconds < 0:
            raise ConfigError("idempotency.retention_seconds must not be negative")
        if self.max_entries < 0:
            raise ConfigError("idempotency.max_entries must not be negative")


@dataclass(frozen=True)
class BudgetPolicy:
    # tier → period name ("daily" | "weekly" | "monthly") → ceiling
    tiers: dict[str, dict[str, Decimal]] = field(
        default_factory=lambda: {"default": {"monthly": Decimal("100")}}
    )
    default_tier: str = "default"
    account_tiers: dict[str, str] = field(default_factory=dict)
    warning_ratio: float = 0.8
    critical_ratio: float = 0.95

    def __post_init__(self):
        if self.default_tier not in self.tiers:
            raise ConfigError(f"budget.default_tier {self.default_tier!r} is not a configured tier")
        for account, tier in self.account_tiers.items():
            if tier not in self.tiers:
                raise ConfigError(f"Account {account!r} mapped to unknown tier {tier!r}")
        for tier, ceilings in self.tiers.items():
            if not ceilings:
                raise ConfigError(f"Tier {tier!r} has no ceilings")
            for period, ceiling in ceilings.items():
                if period not in ("daily", "weekly", "monthly"):
                    raise ConfigError(f"Tier {tier!r}: unknown period {period!r}")
                if ceiling <= 0:
                    raise ConfigError(f"Tier {tier!r}: {period} ceiling must be > 0")

    def tier_for(self, account_id: str) -> str:
        return self.account_tiers.get(account_id, self.default_tier)


# ─────────────────────────────────────────────────────────────────────────────
# Providers
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProviderConfig:
    id: str
    kind: str
    models: dict[ModelClass, str]
    pricing: dict[tuple[str, str, int], Decimal]
    api_key_env: str = ""
    base_url: str = ""
    resolutions: tuple[str, ...] = ("1024x1024",)
    media: tuple[MediaKind, ...] = (MediaKind.IMAGE,)
    max_batch_size: int = 4
    base_timeout: float = 300.0
    max_concurrency: int = 4
    supports_cancel: bool = True

    def profile(self) -> ProviderProfile:
        return ProviderProfile(
            provider_id=self.id,
            models=dict(self.models),
            pricing=PriceTable(dict(self.pricing)),
            resolutions=self.resolutions,
            media=self.media,
            max_batch_size=self.max_batch_size,
            base_timeout=self.base_timeout,
            supports_cancel=self.supports_cancel,
        )


@dataclass(frozen=True)
class OrchestratorConfig:
    providers: tuple[ProviderConfig, ...]
    priority: tuple[str, ...] = ()
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    poll: PollPolicy = field(default_factory=PollPolicy)
    health: HealthPolicy = field(default_factory=HealthPolicy)
    budget: BudgetPolicy = field(default_factory=BudgetPolicy)
    idempotency: IdempotencyPolicy = field(default_factory=IdempotencyPolicy)

    def __post_init__(self):
        ids = [p.id for p in self.providers]
        if len(set(ids)) != len(ids):
            raise ConfigError(f"Duplicate provider ids: {ids}")
        if not self.priority:
            # declaration order doubles as priority order
            object.__setattr__(self, "priority", tuple(ids))
        unknown = [p for p in self.priority if p not in ids]
        if unknown:
            raise ConfigError(f"priority lists unknown providers: {unknown}")
        missing = [p for p in ids if p not in self.priority]
        if missing:
            object.__setattr__(self, "priority", tuple(self.priority) + tuple(missing))

    def provider(self, provider_id: str) -> ProviderConfig:
        for p in self.providers:
            if p.id == provider_id:
                return p
        raise KeyError(provider_id)


# ─────────────────────────────────────────────────────────────────────────────
# Defaults (prices per image, USD)
# ─────────────────────────────────────────────────────────────────────────────

def _flat_pricing(per_model: dict[str, str], resolutions: tuple[str, ...],
                  tiers: dict[int, str] | None = None) -> dict[tuple[str, str, int], Decimal]:
    """Same unit price at every resolution; ``tiers`` multiplies by step tier."""
    tiers = tiers or {28: "1", 50: "1.5"}
    table: dict[tuple[str, str, int], Decimal] = {}
    for model_id, price in per_model.items():
        for res in resolutions:
            for steps, mult in tiers.items():
                table[(model_id, res, steps)] = Decimal(price) * Decimal(mult)
    return table


_SQUARE = ("1024x1024",)
_PORTRAIT = ("1024x1024", "896x1152")


def default_config() -> OrchestratorConfig:
    """fal (primary) → Leonardo (secondary) → Replicate (legacy)."""
    fal_models = {
        ModelClass.FAST: "fal-ai/flux/schnell",
        ModelClass.BALANCED: "fal-ai/flux/dev",
        ModelClass.PREMIUM: "fal-ai/flux-pro/v1.1-ultra",
    }
    leonardo_models = {
        ModelClass.FAST: "dreamshaper-v7",
        ModelClass.BALANCED: "leonardo-diffusion-xl",
        ModelClass.PREMIUM: "leonardo-phoenix",
    }
    replicate_models = {
        ModelClass.FAST: "sdxl-lightning",
        ModelClass.BALANCED: "sdxl",
        ModelClass.PREMIUM: "flux-dev",
    }
    return OrchestratorConfig(
        providers=(
            ProviderConfig(
                id="fal", kind="fal", api_key_env="FAL_KEY",
                base_url="https://queue.fal.run",
                models=fal_models,
                pricing=_flat_pricing({
                    "fal-ai/flux/schnell": "0.003",
                    "fal-ai/flux/dev": "0.025",
                    "fal-ai/flux-pro/v1.1-ultra": "0.06",
                }, _PORTRAIT),
                resolutions=_PORTRAIT,
                max_batch_size=4,
                base_timeout=180.0,
                max_concurrency=8,
            ),
            ProviderConfig(
                id="leonardo", kind="leonardo", api_key_env="LEONARDO_API_KEY",
                base_url="https://cloud.leonardo.ai/api/rest/v1",
                models=leonardo_models,
                pricing=_flat_pricing({
                    "dreamshaper-v7": "0.012",
                    "leonardo-diffusion-xl": "0.015",
                    "leonardo-phoenix": "0.02",
                }, _PORTRAIT),
                resolutions=_PORTRAIT,
                max_batch_size=8,
                base_timeout=360.0,
                max_concurrency=4,
            ),
            ProviderConfig(
                id="replicate", kind="replicate", api_key_env="REPLICATE_API_TOKEN",
                base_url="https://api.replicate.com/v1",
                models=replicate_models,
                pricing=_flat_pricing({
                    "sdxl-lightning": "0.001",
                    "sdxl": "0.0025",
                    "flux-dev": "0.003",
                }, _SQUARE),
                resolutions=_SQUARE,
                max_batch_size=4,
                base_timeout=300.0,
                max_concurrency=2,
            ),
        ),
        priority=("fal", "leonardo", "replicate"),
    )


# ─────────────────────────────────────────────────────────────────────────────
# YAML loader
# ─────────────────────────────────────────────────────────────────────────────

def _money(value: Any, where: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ConfigError(f"{where}: {value!r} is not a valid amount") from exc
    if amount < 0:
        raise ConfigError(f"{where}: amount must not be negative")
    return amount


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return value


def _build_policy(cls, raw: dict, name: str):
    section = _section(raw, name)
    known = set(cls.__dataclass_fields__)
    unknown = set(section) - known
    if unknown:
        raise ConfigError(f"Unknown keys in '{name}': {sorted(unknown)}")
    try:
        return cls(**section)
    except TypeError as exc:
        raise ConfigError(f"Invalid '{name}' section: {exc}") from exc


def _parse_provider(raw: dict, index: int) -> ProviderConfig:
    where = f"providers[{index}]"
    if not isinstance(raw, dict):
        raise ConfigError(f"{where} must be a mapping")
    for key in ("id", "kind", "models", "pricing"):
        if not raw.get(key):
            raise ConfigError(f"{where}: '{key}' is required")

    try:
        models = {ModelClass(k): str(v) for k, v in raw["models"].items()}
    except ValueError as exc:
        raise ConfigError(f"{where}.models: {exc}") from exc

    pricing: dict[tuple[str, str, int], Decimal] = {}
    for model_id, by_res in raw["pricing"].items():
        if not isinstance(by_res, dict):
            raise ConfigError(f"{where}.pricing.{model_id} must map resolution → tiers")
        for res, tiers in by_res.items():
            if not isinstance(tiers, dict):
                tiers = {28: tiers}
            for steps, price in tiers.items():
                try:
                    tier = int(steps)
                except (TypeError, ValueError) as exc:
                    raise ConfigError(f"{where}.pricing: bad step tier {steps!r}") from exc
                pricing[(str(model_id), str(res), tier)] = _money(
                    price, f"{where}.pricing.{model_id}.{res}.{steps}"
                )

    priced = {m for (m, _r, _t) in pricing}
    unpriced = [m for m in models.values() if m not in priced]
    if unpriced:
        raise ConfigError(f"{where}: models without pricing: {unpriced}")

    try:
        media = tuple(MediaKind(m) for m in raw.get("media", ["image"]))
    except ValueError as exc:
        raise ConfigError(f"{where}.media: {exc}") from exc

    return ProviderConfig(
        id=str(raw["id"]),
        kind=str(raw["kind"]),
        models=models,
        pricing=pricing,
        api_key_env=str(raw.get("api_key_env", "")),
        base_url=str(raw.get("base_url", "")),
        resolutions=tuple(str(r) for r in raw.get("resolutions", ["1024x1024"])),
        media=media,
        max_batch_size=int(raw.get("max_batch_size", 4)),
        base_timeout=float(raw.get("base_timeout", 300.0)),
        max_concurrency=int(raw.get("max_concurrency", 4)),
        supports_cancel=bool(raw.get("supports_cancel", True)),
    )


def _parse_budget(raw: dict) -> BudgetPolicy:
    section = _section(raw, "budget")
    if not section:
        return BudgetPolicy()
    tiers_raw = section.get("tiers") or {}
    if not isinstance(tiers_raw, dict) or not tiers_raw:
        raise ConfigError("budget.tiers must be a non-empty mapping")
    tiers = {
        str(tier): {
            str(period): _money(amount, f"budget.tiers.{tier}.{period}")
            for period, amount in (ceilings or {}).items()
        }
        for tier, ceilings in tiers_raw.items()
    }
    return BudgetPolicy(
        tiers=tiers,
        default_tier=str(section.get("default_tier", next(iter(tiers)))),
        account_tiers={str(k): str(v) for k, v in (section.get("account_tiers") or {}).items()},
        warning_ratio=float(section.get("warning_ratio", 0.8)),
        critical_ratio=float(section.get("critical_ratio", 0.95)),
    )


def load_config(path: str | Path) -> OrchestratorConfig:
    """
    Parse a YAML configuration file into an OrchestratorConfig.

    Raises
    ------
    FileNotFoundError  — file doesn't exist
    ConfigError        — required fields missing or values invalid
    yaml.YAMLError     — malformed YAML
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a mapping")

    providers_raw = raw.get("providers")
    if not providers_raw or not isinstance(providers_raw, list):
        raise ConfigError("'providers' must be a non-empty list")

    return OrchestratorConfig(
        providers=tuple(_parse_provider(p, i) for i, p in enumerate(providers_raw)),
        priority=tuple(str(p) for p in raw.get("priority", [])),
        retry=_build_policy(RetryPolicy, raw, "retry"),
        poll=_build_policy(PollPolicy, raw, "poll"),
        health=_build_policy(HealthPolicy, raw, "health"),
        budget=_parse_budget(raw),
        idempotency=_build_policy(IdempotencyPolicy, raw, "idempotency"),
    )
