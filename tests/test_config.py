"""
Tests for config.py — built-in defaults, YAML loading and strict validation.
"""
from __future__ import annotations

import random
import textwrap
from decimal import Decimal

import pytest

from headshot_orchestrator.config import (
    BudgetPolicy,
    IdempotencyPolicy,
    OrchestratorConfig,
    PollPolicy,
    ProviderConfig,
    RetryPolicy,
    default_config,
    load_config,
)
from headshot_orchestrator.errors import ConfigError
from headshot_orchestrator.models import MediaKind, ModelClass

MINIMAL = """
providers:
  - id: fal
    kind: fal
    api_key_env: FAL_KEY
    models: {fast: fal-ai/flux/schnell, balanced: fal-ai/flux/dev}
    resolutions: ["1024x1024"]
    pricing:
      fal-ai/flux/schnell:
        1024x1024: 0.003
      fal-ai/flux/dev:
        1024x1024: {28: 0.025, 50: 0.04}
"""


def _write(tmp_path, text: str):
    path = tmp_path / "headshots.yaml"
    path.write_text(textwrap.dedent(text))
    return path


# ─────────────────────────────────────────────────────────────────────────────
# Defaults
# ─────────────────────────────────────────────────────────────────────────────

class TestDefaults:

    def test_default_providers_and_priority(self):
        config = default_config()
        assert [p.id for p in config.providers] == ["fal", "leonardo", "replicate"]
        assert config.priority == ("fal", "leonardo", "replicate")

    def test_every_default_model_is_priced(self):
        for provider in default_config().providers:
            priced = {m for (m, _r, _t) in provider.pricing}
            assert set(provider.models.values()) <= priced

    def test_policy_defaults(self):
        config = default_config()
        assert config.retry.max_attempts_per_provider == 3
        assert config.retry.max_backoff == 30.0
        assert config.poll.initial_interval == 2.0
        assert config.poll.max_interval == 15.0
        assert config.health.interval == 30.0
        assert config.health.window == 20

    def test_provider_profile(self):
        profile = default_config().provider("leonardo").profile()
        assert profile.provider_id == "leonardo"
        assert profile.model_for(ModelClass.PREMIUM) == "leonardo-phoenix"
        assert profile.max_batch_size == 8

    def test_unknown_provider_lookup(self):
        with pytest.raises(KeyError):
            default_config().provider("midjourney")


class TestPolicies:

    def test_backoff_grows_and_caps(self):
        retry = RetryPolicy(base_delay=1.0, factor=2.0, max_backoff=5.0, jitter=0.0)
        assert [retry.backoff(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_backoff_jitter_stays_within_cap(self):
        retry = RetryPolicy(base_delay=1.0, max_backoff=3.0, jitter=0.5)
        rng = random.Random(7)
        for n in range(1, 6):
            assert 0 < retry.backoff(n, rng) <= 3.0

    def test_rate_limit_wait_is_capped(self):
        retry = RetryPolicy(base_delay=0.5, max_backoff=30.0)
        assert retry.rate_limit_wait(12) == 12
        assert retry.rate_limit_wait(3600) == 30.0
        assert retry.rate_limit_wait(None) == 0.5

    def test_poll_interval_grows_to_max(self):
        poll = PollPolicy(initial_interval=2.0, max_interval=5.0, factor=2.0)
        assert poll.next_interval(2.0) == 4.0
        assert poll.next_interval(4.0) == 5.0

    def test_budget_policy_validation(self):
        with pytest.raises(ConfigError):
            BudgetPolicy(tiers={"default": {"yearly": Decimal("1")}})
        with pytest.raises(ConfigError):
            BudgetPolicy(tiers={"default": {"monthly": Decimal("0")}})
        with pytest.raises(ConfigError):
            BudgetPolicy(default_tier="missing")
        with pytest.raises(ConfigError):
            BudgetPolicy(account_tiers={"acct": "missing"})

    def test_priority_validation(self):
        fal = default_config().provider("fal")
        with pytest.raises(ConfigError):
            OrchestratorConfig(providers=(fal,), priority=("leonardo",))
        with pytest.raises(ConfigError):
            OrchestratorConfig(providers=(fal, fal))

    def test_partial_priority_appends_the_rest(self):
        base = default_config()
        config = OrchestratorConfig(providers=base.providers, priority=("replicate",))
        assert config.priority == ("replicate", "fal", "leonardo")


# ─────────────────────────────────────────────────────────────────────────────
# YAML loading
# ─────────────────────────────────────────────────────────────────────────────

class TestLoadConfig:

    def test_minimal_file(self, tmp_path):
        config = load_config(_write(tmp_path, MINIMAL))
        fal = config.provider("fal")
        assert isinstance(fal, ProviderConfig)
        assert fal.models[ModelClass.FAST] == "fal-ai/flux/schnell"
        assert fal.pricing[("fal-ai/flux/schnell", "1024x1024", 28)] == Decimal("0.003")
        assert fal.pricing[("fal-ai/flux/dev", "1024x1024", 50)] == Decimal("0.04")
        assert fal.media == (MediaKind.IMAGE,)
        assert config.priority == ("fal",)
        assert config.budget == BudgetPolicy()
        assert config.idempotency == IdempotencyPolicy()

    def test_full_file(self, tmp_path):
        text = MINIMAL + """
priority: [fal]
retry:
  base_delay: 1.0
  max_attempts_per_provider: 2
poll:
  initial_interval: 1
health:
  interval: 10
  preflight_probe: true
budget:
  default_tier: free
  tiers:
    free: {monthly: 5.00}
    pro: {daily: 20, monthly: 200}
  account_tiers:
    acct_42: pro
idempotency:
  retention_seconds: 3600
  max_entries: 500
"""
        config = load_config(_write(tmp_path, text))
        assert config.retry.max_attempts_per_provider == 2
        assert config.poll.initial_interval == 1
        assert config.health.preflight_probe is True
        assert config.budget.tier_for("acct_42") == "pro"
        assert config.budget.tier_for("anyone") == "free"
        assert config.budget.tiers["pro"]["daily"] == Decimal("20")
        assert config.idempotency == IdempotencyPolicy(retention_seconds=3600, max_entries=500)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_providers_required(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, "priority: [fal]\n"))

    def test_unknown_policy_keys_rejected(self, tmp_path):
        with pytest.raises(ConfigError, match="retry"):
            load_config(_write(tmp_path, MINIMAL + "retry:\n  max_retries: 9\n"))

    def test_idempotency_section_validated(self, tmp_path):
        with pytest.raises(ConfigError, match="idempotency"):
            load_config(_write(tmp_path, MINIMAL + "idempotency:\n  ttl: 60\n"))
        with pytest.raises(ConfigError, match="retention_seconds"):
            load_config(_write(tmp_path, MINIMAL + "idempotency:\n  retention_seconds: -1\n"))

    def test_unknown_model_class_rejected(self, tmp_path):
        text = MINIMAL.replace("fast: fal-ai/flux/schnell", "ultra: fal-ai/flux/schnell")
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, text))

    def test_unpriced_model_rejected(self, tmp_path):
        text = MINIMAL.replace("balanced: fal-ai/flux/dev", "balanced: fal-ai/flux/other")
        with pytest.raises(ConfigError, match="without pricing"):
            load_config(_write(tmp_path, text))

    def test_negative_price_rejected(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, MINIMAL.replace("0.003", "-0.003")))

    def test_root_must_be_mapping(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, "- just\n- a list\n"))
