"""Shared pytest fixtures for testing."""

from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pytest

from telebill_core.billing.base import (
    CDR,
    CallDirection,
    CallType,
    Customer,
    RatePlan,
)
from telebill_core.billing.config import BillingSettings
from telebill_core.billing.engine import BillingEngine
from telebill_core.billing.metrics import InMemoryMetricsRecorder
from telebill_core.billing.pricing import DEFAULT_CALL_TYPE_MULTIPLIERS
from telebill_core.billing.tax import TaxEngine
from telebill_core.billing.usage import CallTypeClassifier, UsageRater
from telebill_core.billing.validation import (
    CDRRecordRequest,
    CreateSubscriptionRequest,
    ValidationError,
)


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def settings() -> BillingSettings:
    """Default settings, ignoring any local .env file."""
    return BillingSettings(_env_file=None)


@pytest.fixture
def metrics() -> InMemoryMetricsRecorder:
    return InMemoryMetricsRecorder()


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def plan_500() -> RatePlan:
    """Plan with 500 included minutes and 50 paise/minute overage."""
    return RatePlan(
        id="test_500",
        name="Test 500",
        monthly_price_paise=34900,
        annual_price_paise=334800,
        included_minutes=500,
        overage_rate_paise=50,
        call_type_multipliers=dict(DEFAULT_CALL_TYPE_MULTIPLIERS),
    )


@pytest.fixture
def small_plan() -> RatePlan:
    """Plan with 10 included minutes and ₹1/minute overage."""
    return RatePlan(
        id="small",
        name="Small",
        monthly_price_paise=10000,
        annual_price_paise=100000,
        included_minutes=10,
        overage_rate_paise=100,
        call_type_multipliers=dict(DEFAULT_CALL_TYPE_MULTIPLIERS),
    )


@pytest.fixture
def classifier() -> CallTypeClassifier:
    return CallTypeClassifier(home_country_code="91")


@pytest.fixture
def rater(classifier, metrics) -> UsageRater:
    return UsageRater(classifier, metrics)


@pytest.fixture
def tax_engine() -> TaxEngine:
    return TaxEngine(company_state="Karnataka")


@pytest.fixture
def engine(settings, metrics) -> BillingEngine:
    return BillingEngine(settings=settings, metrics=metrics)


# =============================================================================
# Data Fixtures
# =============================================================================


CALL_NUMBERS = {
    CallType.LOCAL: "9876543210",
    CallType.STD: "08012345678",
    CallType.ISD: "+14155551234",
}


@pytest.fixture
def karnataka_customer() -> Customer:
    return Customer(id="cus_ka", name="Bengaluru Traders", state="Karnataka")


@pytest.fixture
def maharashtra_customer() -> Customer:
    return Customer(id="cus_mh", name="Pune Logistics", state="Maharashtra")


@pytest.fixture
def export_customer() -> Customer:
    return Customer(id="cus_sg", name="Lion City Pte", country="Singapore")


@pytest.fixture
def make_cdr():
    """Factory for CDRs. Successive CDRs are one minute apart by default."""
    counter = {"n": 0}
    base = datetime(2024, 1, 10, 9, 0, tzinfo=timezone.utc)

    def _make(
        minutes: Optional[int] = None,
        seconds: Optional[int] = None,
        call_type: CallType = CallType.LOCAL,
        callee: Optional[str] = "",
        at: Optional[datetime] = None,
        subscription_id: Optional[str] = "sub_1",
        account_id: str = "acc_1",
        direction: CallDirection = CallDirection.OUTBOUND,
        cdr_id: Optional[str] = None,
    ) -> CDR:
        counter["n"] += 1
        billable = seconds if seconds is not None else (minutes or 0) * 60
        return CDR(
            id=cdr_id or f"cdr_{counter['n']}",
            subscription_id=subscription_id,
            account_id=account_id,
            duration_seconds=max(billable, 0),
            billable_seconds=billable,
            callee_number=CALL_NUMBERS[call_type] if callee == "" else callee,
            direction=direction,
            timestamp=at or base + timedelta(minutes=counter["n"]),
            sequence=counter["n"],
        )

    return _make


@pytest.fixture
def subscribe(engine):
    """Create a customer and a monthly subscription on the engine."""

    async def _subscribe(
        customer: Customer,
        plan_id: str = "starter",
        start: date = date(2024, 1, 1),
        subscription_id: str = "sub_1",
        account_id: str = "acc_1",
        **request_fields,
    ):
        try:
            await engine.add_customer(customer)
        except ValidationError:
            pass  # already registered by an earlier call
        return await engine.create_subscription(CreateSubscriptionRequest(
            id=subscription_id,
            customer_id=customer.id,
            account_id=account_id,
            rate_plan_id=plan_id,
            billing_cycle=request_fields.pop("billing_cycle", "monthly"),
            start_date=start,
            **request_fields,
        ))

    return _subscribe


@pytest.fixture
def record_call(engine):
    """Record a CDR on the engine through the validated request path."""

    async def _record(
        subscription_id: Optional[str],
        minutes: int,
        at: datetime,
        callee: Optional[str] = "9876543210",
        account_id: str = "acc_1",
        direction: str = "outbound",
        cdr_id: Optional[str] = None,
    ):
        return await engine.record_cdr(CDRRecordRequest(
            id=cdr_id,
            subscription_id=subscription_id,
            account_id=account_id,
            duration_seconds=minutes * 60,
            billable_seconds=minutes * 60,
            direction=direction,
            timestamp=at,
            callee_number=callee,
        ))

    return _record


def utc(year: int, month: int, day: int, hour: int = 12) -> datetime:
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


@pytest.fixture
def at():
    """Build timezone-aware call timestamps: ``at(2024, 1, 15)``."""
    return utc

