"""
Provider Selector — rank providers for one request.
===================================================
Hard constraints first (capability, batch size, caller cost and latency
limits, admin disable), then a stable sort on

    (status weight, estimated cost, p95 latency, configured priority)

Status weight puts every online candidate before every degraded one and
offline candidates last, where they remain as final attempts. Unknown p95
(no successful probe yet) sorts after any measured latency.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Sequence

from .cost import CostModel
from .health import HealthRecord
from .models import GenerationRequest, ProviderProfile, ProviderStatus

logger = logging.getLogger("headshot_orchestrator.selector")


@dataclass(frozen=True)
class Candidate:
    provider: str
    model_id: str
    estimated_cost: Decimal
    status: ProviderStatus
    p95_ms: Optional[float]
    priority: int

    @property
    def sort_key(self) -> tuple:
        p95 = self.p95_ms if self.p95_ms is not None else math.inf
        return (self.status.weight, self.estimated_cost, p95, self.priority)


class ProviderSelector:
    def __init__(self, profiles: Iterable[ProviderProfile], priority: Sequence[str],
                 cost_model: Optional[CostModel] = None) -> None:
        self._profiles = {p.provider_id: p for p in profiles}
        self._priority = {pid: i for i, pid in enumerate(priority)}
        self._costs = cost_model or CostModel()

    @property
    def profiles(self) -> list[ProviderProfile]:
        return list(self._profiles.values())

    def profile(self, provider: str) -> ProviderProfile:
        return self._profiles[provider]

    def rank(self, request: GenerationRequest,
             snapshot: Mapping[str, HealthRecord],
             *, count: Optional[int] = None,
             exclude: Iterable[str] = (),
             spent: Decimal = Decimal("0")) -> list[Candidate]:
        """
        Candidates able to serve ``count`` units (default: the whole
        request), best first. An empty list means no capacity.

        ``spent`` is what the job already paid for earlier units; it counts
        against ``request.max_cost`` together with the new estimate.
        """
        units = request.image_count if count is None else count
        excluded = set(exclude)
        candidates: list[Candidate] = []
        for pid, profile in self._profiles.items():
            if pid in excluded:
                continue
            reason = self._reject(profile, request, units)
            if reason:
                logger.debug("%s rejected for %s: %s", pid, request.idempotency_key, reason)
                continue
            record = snapshot.get(pid) or HealthRecord(provider=pid)
            if record.disabled:
                continue
            if (request.max_latency_seconds is not None and record.p95_ms is not None
                    and record.p95_ms / 1000.0 > request.max_latency_seconds):
                continue
            model_id = profile.models[request.model_class]
            estimate = self._costs.estimate_request(profile, request, count=units)
            if estimate is None:
                continue
            if (request.max_cost is not None and not request.allow_overage
                    and spent + estimate > request.max_cost):
                continue
            candidates.append(Candidate(
                provider=pid,
                model_id=model_id,
                estimated_cost=estimate,
                status=record.status,
                p95_ms=record.p95_ms,
                priority=self._priority.get(pid, len(self._priority)),
            ))
        candidates.sort(key=lambda c: c.sort_key)
        return candidates

    @staticmethod
    def _reject(profile: ProviderProfile, request: GenerationRequest, units: int) -> str:
        if request.model_class not in profile.models:
            return f"no {request.model_class.value} model"
        if request.resolution not in profile.resolutions:
            return f"resolution {request.resolution} unsupported"
        if request.media not in profile.media:
            return f"media {request.media.value} unsupported"
        if units > profile.max_batch_size:
            return f"batch of {units} exceeds {profile.max_batch_size}"
        return ""
