"""Downgrade eligibility checks against a tenant's current usage."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from .models import DowngradeVerdict, Plan

logger = logging.getLogger(__name__)


class DowngradeGate(Protocol):
    """Decides whether a tenant may move to a cheaper plan."""

    def validate_downgrade(self, tenant_id: str, target_plan: Plan) -> DowngradeVerdict:
        ...


class UsageReader(Protocol):
    """Reports how much of a limited resource a tenant currently uses."""

    def count(self, tenant_id: str, resource: str) -> int:
        ...


@dataclass(frozen=True)
class ResourceUsageEvaluation:
    """Outcome of comparing one resource's usage with a plan limit."""

    resource: str
    usage: int
    limit: Optional[int]

    @property
    def exceeded(self) -> bool:
        return self.limit is not None and self.usage > self.limit

    @property
    def at_limit(self) -> bool:
        return self.limit is not None and self.usage == self.limit

    def to_dict(self) -> Dict[str, Optional[int]]:
        return {"usage": self.usage, "limit": self.limit}


def evaluate_resource_usage(*, resource: str, usage: int, limit: Optional[int]) -> ResourceUsageEvaluation:
    """Compare usage with a limit; ``None`` or non-positive limits are unlimited."""

    if limit is not None and limit <= 0:
        limit = None
    return ResourceUsageEvaluation(resource=resource, usage=max(usage, 0), limit=limit)


class UsageLimitDowngradeGate:
    """:class:`DowngradeGate` that blocks downgrades below current usage."""

    def __init__(self, usage_reader: UsageReader) -> None:
        self._usage_reader = usage_reader

    def validate_downgrade(self, tenant_id: str, target_plan: Plan) -> DowngradeVerdict:
        blockers = []
        warnings = []
        for resource in sorted(target_plan.limits):
            limit = target_plan.limit_for(resource)
            if limit is None:
                continue
            evaluation = evaluate_resource_usage(
                resource=resource,
                usage=self._usage_reader.count(tenant_id, resource),
                limit=limit,
            )
            if evaluation.exceeded:
                blockers.append(f"{resource}_limit_exceeded")
            elif evaluation.at_limit:
                warnings.append(f"{resource}_at_limit")

        if blockers:
            logger.info(
                "Downgrade of tenant %s to %s blocked: %s",
                tenant_id,
                target_plan.key,
                ", ".join(blockers),
            )
        return DowngradeVerdict(can_downgrade=not blockers, blockers=blockers, warnings=warnings)


__all__ = [
    "DowngradeGate",
    "ResourceUsageEvaluation",
    "UsageLimitDowngradeGate",
    "UsageReader",
    "evaluate_resource_usage",
]
