"""Static catalog of subscription plans."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Protocol

from .exceptions import BillingNotFoundError
from .models import BillingInterval, Plan


class PlanCatalog(Protocol):
    """Read-only lookup of plans by key or id."""

    def get_by_key(self, plan_key: str) -> Plan:
        ...

    def get_by_id(self, plan_id: str) -> Plan:
        ...

    def list_plans(self) -> List[Plan]:
        ...


@dataclass(frozen=True)
class PlanDefinition:
    """Describes a plan tier independent of gateway price ids."""

    key: str
    display_name: str
    price_minor_units: int
    teams: Optional[int] = None
    members: Optional[int] = None
    standup_configs: Optional[int] = None

    def limits(self) -> Dict[str, Optional[int]]:
        return {
            "teams": self.teams,
            "members": self.members,
            "standup_configs": self.standup_configs,
        }


PLAN_DEFINITIONS = (
    PlanDefinition("free", "Free", 0, teams=1, members=5, standup_configs=1),
    PlanDefinition("starter", "Starter", 999, teams=10, members=25),
    PlanDefinition("professional", "Professional", 2999, teams=50, members=100),
    PlanDefinition("enterprise", "Enterprise", 9999),
)


def build_default_plans(
    price_ids: Optional[Mapping[str, str]] = None,
    *,
    currency: str = "USD",
) -> List[Plan]:
    """Materialize :data:`PLAN_DEFINITIONS` with gateway price ids attached.

    Paid tiers without a configured price id are listed but not purchasable.
    """

    price_ids = price_ids or {}
    plans = []
    for definition in PLAN_DEFINITIONS:
        external_price_id = price_ids.get(definition.key) if definition.price_minor_units else None
        plans.append(
            Plan(
                id=f"plan_{definition.key}",
                key=definition.key,
                name=definition.display_name,
                price_minor_units=definition.price_minor_units,
                currency=currency,
                interval=BillingInterval.MONTHLY,
                external_price_id=external_price_id,
                limits=definition.limits(),
            )
        )
    return plans


class StaticPlanCatalog:
    """In-memory :class:`PlanCatalog` over a fixed list of plans."""

    def __init__(self, plans: Iterable[Plan]) -> None:
        self._plans = list(plans)
        self._by_key = {plan.key: plan for plan in self._plans}
        self._by_id = {plan.id: plan for plan in self._plans}
        if len(self._by_key) != len(self._plans) or len(self._by_id) != len(self._plans):
            raise ValueError("Plan keys and ids must be unique")

    def get_by_key(self, plan_key: str) -> Plan:
        try:
            return self._by_key[plan_key]
        except KeyError:
            raise BillingNotFoundError(
                code="plan_not_found", message=f"Unknown plan {plan_key!r}"
            ) from None

    def get_by_id(self, plan_id: str) -> Plan:
        try:
            return self._by_id[plan_id]
        except KeyError:
            raise BillingNotFoundError(
                code="plan_not_found", message=f"Unknown plan id {plan_id!r}"
            ) from None

    def list_plans(self) -> List[Plan]:
        return list(self._plans)


__all__ = [
    "PLAN_DEFINITIONS",
    "PlanCatalog",
    "PlanDefinition",
    "StaticPlanCatalog",
    "build_default_plans",
]
