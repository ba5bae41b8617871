"""Read-only catalog of purchasable plans."""
from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Protocol

from .models import PackagePlan, PackageType


class PlanCatalog(Protocol):
    """Lookup of plan definitions consulted at purchase and renewal time."""

    def get_plan(self, plan_id: str) -> Optional[PackagePlan]:
        ...

    def list_active_plans(self) -> List[PackagePlan]:
        ...


DEFAULT_PLANS: Dict[str, PackagePlan] = {
    "plan_single": PackagePlan(
        id="plan_single",
        name="Single Session",
        type=PackageType.SINGLE,
        price=15,
        duration_days=3,
        max_uses=2,
        description="A single session with two prescriptions.",
    ),
    "plan_basic": PackagePlan(
        id="plan_basic",
        name="Basic Plan",
        type=PackageType.BASIC,
        price=25,
        duration_days=15,
        max_uses=4,
        description="Foundational access for common needs.",
    ),
    "plan_enhanced": PackagePlan(
        id="plan_enhanced",
        name="Enhanced Plan",
        type=PackageType.ENHANCED,
        price=45,
        duration_days=30,
        max_uses=7,
        description="Expanded access with additional prescriptions.",
    ),
    "plan_premium": PackagePlan(
        id="plan_premium",
        name="Premium Plan",
        type=PackageType.PREMIUM,
        price=75,
        duration_days=30,
        max_uses=0,
        description="Full library access with unlimited prescriptions.",
    ),
}


class StaticPlanCatalog:
    """Catalog backed by an in-process mapping of plans."""

    def __init__(self, plans: Optional[Mapping[str, PackagePlan]] = None) -> None:
        self._plans: Dict[str, PackagePlan] = dict(DEFAULT_PLANS if plans is None else plans)

    def get_plan(self, plan_id: str) -> Optional[PackagePlan]:
        return self._plans.get(plan_id)

    def list_active_plans(self) -> List[PackagePlan]:
        return sorted(
            (plan for plan in self._plans.values() if plan.active),
            key=lambda plan: plan.price,
        )


def get_default_catalog() -> StaticPlanCatalog:
    return StaticPlanCatalog(DEFAULT_PLANS)


__all__ = ["DEFAULT_PLANS", "PlanCatalog", "StaticPlanCatalog", "get_default_catalog"]
