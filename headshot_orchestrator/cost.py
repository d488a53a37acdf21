"""
Cost Layer — per-unit pricing and actual-spend tracking.
========================================================
Two pieces:

estimate_cost()
    Pure function over a ProviderProfile pricing table. Deterministic and
    side-effect free, so the selector can call it speculatively for every
    candidate on every request.

CostModel
    Wraps estimate_cost() and owns the single mutator,
    record_actual_cost(), which is called exactly once per terminal outcome
    that delivered at least one unit. Partial success is billed only for the
    delivered units.

Pricing is linear per delivered unit. A request is billed at the smallest
configured step tier that covers its step count; past the largest tier the
price scales linearly with steps.

Usage:
    from headshot_orchestrator.cost import CostModel

    costs = CostModel()
    est = costs.estimate(profile, "fal-ai/flux/dev", count=4,
                         resolution="1024x1024", steps=28)
    costs.record_actual_cost("job_1", est, provider="fal")
"""
from __future__ import annotations

import logging
from collections import defaultdict
from decimal import ROUND_UP, Decimal
from typing import Iterable, Mapping, Optional

from .models import GenerationRequest, ModelClass, ProviderProfile

logger = logging.getLogger("headshot_orchestrator.cost")

# Sub-cent image prices; six places keeps 0.0025 × n exact.
_QUANTUM = Decimal("0.000001")
ZERO = Decimal("0")


def estimate_cost(profile: ProviderProfile, model_id: str, count: int,
                  resolution: str, steps: int) -> Decimal:
    """
    Estimated cost of ``count`` units of ``model_id`` at ``resolution`` and
    ``steps`` on this provider.

    Raises KeyError if the provider has no price for the model/resolution.
    """
    if count <= 0:
        return ZERO
    tiers = profile.pricing.tiers(model_id, resolution)
    if not tiers:
        raise KeyError(f"{profile.provider_id}: no price for {model_id} at {resolution}")

    covering = [t for t in tiers if t >= steps]
    if covering:
        unit = profile.pricing.unit_price(model_id, resolution, covering[0])
    else:
        top = tiers[-1]
        unit = profile.pricing.unit_price(model_id, resolution, top) * Decimal(steps) / Decimal(top)

    return (unit * count).quantize(_QUANTUM, rounding=ROUND_UP)


class CostModel:
    """
    Cost estimation plus the actual-spend ledger.

    Not thread-safe; the asyncio event loop serialises every call.
    """

    def __init__(self) -> None:
        self._actual: dict[str, Decimal] = {}
        self._by_provider: dict[str, Decimal] = defaultdict(lambda: ZERO)

    # ── Estimation (pure) ────────────────────────────────────────────────────

    def estimate(self, profile: ProviderProfile, model_id: str, count: int,
                 resolution: str, steps: int) -> Decimal:
        return estimate_cost(profile, model_id, count, resolution, steps)

    def estimate_request(self, profile: ProviderProfile, request: GenerationRequest,
                         count: Optional[int] = None) -> Optional[Decimal]:
        """Estimate for a request on one provider, None if it can't serve it."""
        model_id = profile.model_for(request.model_class)
        if model_id is None:
            return None
        try:
            return estimate_cost(
                profile, model_id,
                request.image_count if count is None else count,
                request.resolution, request.steps,
            )
        except KeyError:
            return None

    def cheapest_class(self, profiles: Iterable[ProviderProfile],
                       request: GenerationRequest,
                       affordable: Decimal) -> Optional[ModelClass]:
        """
        The most capable model class cheaper than the requested one whose
        cheapest estimate fits within ``affordable``.
        """
        profiles = list(profiles)
        for model_class in request.model_class.cheaper():
            estimates = []
            for profile in profiles:
                if model_class not in profile.models:
                    continue
                try:
                    estimates.append(estimate_cost(
                        profile, profile.models[model_class], request.image_count,
                        request.resolution, request.steps,
                    ))
                except KeyError:
                    continue
            if estimates and min(estimates) <= affordable:
                return model_class
        return None

    # ── Actual spend (the only mutator) ──────────────────────────────────────

    def record_actual_cost(self, job_id: str, amount: Decimal, provider: str = "",
                           breakdown: Optional[Mapping[str, Decimal]] = None) -> None:
        """
        Record the final spend for a job. Called once per job.

        ``breakdown`` splits the amount across providers when more than one
        delivered units; otherwise the whole amount goes to ``provider``.
        """
        if job_id in self._actual:
            raise ValueError(f"Actual cost for job {job_id!r} already recorded")
        if amount < 0:
            raise ValueError(f"Actual cost must not be negative (job {job_id!r})")
        self._actual[job_id] = amount
        if breakdown:
            for name, part in breakdown.items():
                self._by_provider[name] += part
        elif provider:
            self._by_provider[provider] += amount
        logger.debug("Recorded actual cost %s for %s (%s)", amount, job_id, provider or "-")

    def actual_cost(self, job_id: str) -> Optional[Decimal]:
        return self._actual.get(job_id)

    @property
    def total_spend(self) -> Decimal:
        return sum(self._actual.values(), ZERO)

    def spend_by_provider(self) -> dict[str, Decimal]:
        return dict(self._by_provider)

    def to_dict(self) -> dict:
        return {
            "total": str(self.total_spend),
            "jobs": len(self._actual),
            "by_provider": {k: str(v) for k, v in sorted(self._by_provider.items())},
        }
