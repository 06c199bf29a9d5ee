"""
Pricing System

Rate plan and addon catalogs. Plans are immutable; revising a plan publishes
a new version so invoices already priced against the old one are unaffected.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from .base import Addon, CallType, NotFoundError, RatePlan


logger = structlog.get_logger(__name__)


DEFAULT_CALL_TYPE_MULTIPLIERS: Dict[CallType, Decimal] = {
    CallType.LOCAL: Decimal("1.0"),
    CallType.STD: Decimal("1.5"),
    CallType.ISD: Decimal("4.0"),
}


# Default plan definitions

def get_default_plans() -> List[RatePlan]:
    """Get default rate plans."""
    return [
        RatePlan(
            id="starter",
            name="Starter",
            description="For small teams getting started",
            monthly_price_paise=34900,
            annual_price_paise=334800,
            included_minutes=100,
            overage_rate_paise=199,
            call_type_multipliers=dict(DEFAULT_CALL_TYPE_MULTIPLIERS),
        ),
        RatePlan(
            id="professional",
            name="Professional",
            description="For growing businesses",
            monthly_price_paise=99900,
            annual_price_paise=959040,
            included_minutes=500,
            overage_rate_paise=160,
            setup_fee_paise=19900,
            call_type_multipliers=dict(DEFAULT_CALL_TYPE_MULTIPLIERS),
        ),
        RatePlan(
            id="call_center",
            name="Call Center",
            description="For high-volume call centers",
            monthly_price_paise=499900,
            annual_price_paise=4799040,
            included_minutes=1500,
            overage_rate_paise=145,
            setup_fee_paise=49900,
            call_type_multipliers=dict(DEFAULT_CALL_TYPE_MULTIPLIERS),
        ),
    ]


def get_default_addons() -> List[Addon]:
    """Get default addons."""
    return [
        Addon(code="toll_free_number", name="Toll-free number", price_paise=19900),
        Addon(code="extension", name="Additional extension", price_paise=9900),
        Addon(code="call_recording", name="Call recording", price_paise=14900, recurring=True),
    ]


@dataclass
class RatePlanCatalog:
    """Catalog of rate plans with version history."""

    plans: Dict[str, List[RatePlan]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Initialize with default plans if empty."""
        if not self.plans:
            for plan in get_default_plans():
                self.add_plan(plan)

    def add_plan(self, plan: RatePlan) -> None:
        """Add a new plan. Existing plan IDs must be changed with ``revise``."""
        if plan.id in self.plans:
            raise ValueError(f"Plan already exists: {plan.id}")
        self.plans[plan.id] = [plan]

    def get_plan(self, plan_id: str) -> Optional[RatePlan]:
        """Get the current version of a plan."""
        versions = self.plans.get(plan_id)
        return versions[-1] if versions else None

    def require(self, plan_id: str) -> RatePlan:
        """Get the current version of a plan or raise NotFoundError."""
        plan = self.get_plan(plan_id)
        if plan is None:
            raise NotFoundError("RatePlan", plan_id)
        return plan

    def get_version(self, plan_id: str, version: int) -> Optional[RatePlan]:
        """Get a specific published version of a plan."""
        for plan in self.plans.get(plan_id, []):
            if plan.version == version:
                return plan
        return None

    def revise(self, plan_id: str, **changes: Any) -> RatePlan:
        """Publish a new version of a plan with the given field changes."""
        current = self.require(plan_id)
        if "id" in changes or "version" in changes:
            raise ValueError("Plan id and version cannot be revised")

        revised = replace(current, version=current.version + 1, **changes)
        self.plans[plan_id].append(revised)

        logger.info(
            "Rate plan revised",
            plan_id=plan_id,
            version=revised.version,
            changes=sorted(changes),
        )
        return revised

    def list_active_plans(self) -> List[RatePlan]:
        """List current versions of active plans."""
        return [
            versions[-1] for versions in self.plans.values()
            if versions[-1].is_active
        ]


@dataclass
class AddonCatalog:
    """Catalog of purchasable addons."""

    addons: Dict[str, Addon] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.addons:
            for addon in get_default_addons():
                self.addons[addon.code] = addon

    def get(self, code: str) -> Optional[Addon]:
        """Get addon by code."""
        return self.addons.get(code)

    def require(self, code: str) -> Addon:
        addon = self.get(code)
        if addon is None:
            raise NotFoundError("Addon", code)
        return addon

    def list_addons(self) -> List[Addon]:
        return list(self.addons.values())
