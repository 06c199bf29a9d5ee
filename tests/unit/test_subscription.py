"""Unit tests for subscriptions and the engine's intake operations."""

from datetime import date, datetime

import pytest

from telebill_core.billing.base import (
    CDRStatus,
    Customer,
    LineItemType,
    NotFoundError,
    SubscriptionError,
    SubscriptionStatus,
)
from telebill_core.billing.validation import CreateSubscriptionRequest, ValidationError


class TestSubscriptionLifecycle:
    """Tests for SubscriptionManager."""

    @pytest.mark.asyncio
    async def test_create_monthly(self, engine, subscribe, karnataka_customer):
        subscription = await subscribe(karnataka_customer, start=date(2024, 1, 16))

        assert subscription.current_period_start == date(2024, 1, 16)
        assert subscription.current_period_end == date(2024, 2, 15)
        assert subscription.activated_on == date(2024, 1, 16)
        assert subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_align_to_month(self, engine, subscribe, karnataka_customer):
        subscription = await subscribe(karnataka_customer, start=date(2024, 1, 16), align_to_month=True)

        assert subscription.current_period_start == date(2024, 1, 1)
        assert subscription.current_period_end == date(2024, 1, 31)
        assert subscription.activated_on == date(2024, 1, 16)

    @pytest.mark.asyncio
    async def test_annual(self, engine, subscribe, karnataka_customer):
        subscription = await subscribe(karnataka_customer, billing_cycle="annual")

        assert subscription.current_period_end == date(2024, 12, 31)

    @pytest.mark.asyncio
    async def test_unknown_customer_plan_or_addon(self, engine, subscribe, karnataka_customer):
        with pytest.raises(NotFoundError):
            await engine.create_subscription(CreateSubscriptionRequest(
                customer_id="cus_missing",
                account_id="acc_1",
                rate_plan_id="starter",
                billing_cycle="monthly",
                start_date=date(2024, 1, 1),
            ))

        with pytest.raises(NotFoundError):
            await subscribe(karnataka_customer, plan_id="enterprise")

        with pytest.raises(NotFoundError):
            await subscribe(karnataka_customer, addons=[{"code": "fax_line"}])

    @pytest.mark.asyncio
    async def test_inactive_plan_rejected(self, engine, subscribe, karnataka_customer):
        engine.catalog.revise("starter", is_active=False)

        with pytest.raises(SubscriptionError):
            await subscribe(karnataka_customer)

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)

        with pytest.raises(ValidationError) as exc_info:
            await subscribe(karnataka_customer)
        assert exc_info.value.errors[0].code == "duplicate"

    @pytest.mark.asyncio
    async def test_suspend_and_resume(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)
        manager = engine.subscription_manager

        suspended = await manager.suspend("sub_1")
        assert suspended.status == SubscriptionStatus.SUSPENDED
        with pytest.raises(SubscriptionError):
            await manager.suspend("sub_1")

        resumed = await manager.resume("sub_1")
        assert resumed.status == SubscriptionStatus.ACTIVE
        with pytest.raises(SubscriptionError):
            await manager.resume("sub_1")

    @pytest.mark.asyncio
    async def test_cancel_rules(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)
        manager = engine.subscription_manager

        with pytest.raises(SubscriptionError):
            await manager.cancel("sub_1", date(2023, 12, 31))

        cancelled = await manager.cancel("sub_1", date(2024, 1, 20))
        assert cancelled.cancelled_on == date(2024, 1, 20)
        assert cancelled.status == SubscriptionStatus.ACTIVE

        closed = await manager.advance_period("sub_1")
        assert closed.status == SubscriptionStatus.CANCELLED
        with pytest.raises(SubscriptionError):
            await manager.cancel("sub_1", date(2024, 1, 25))

    @pytest.mark.asyncio
    async def test_cancellation_after_period_end_advances(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)
        manager = engine.subscription_manager
        await manager.cancel("sub_1", date(2024, 2, 10))

        advanced = await manager.advance_period("sub_1")

        assert advanced.status == SubscriptionStatus.ACTIVE
        assert advanced.current_period_start == date(2024, 2, 1)

    @pytest.mark.asyncio
    async def test_missing_subscription(self, engine):
        with pytest.raises(NotFoundError):
            await engine.subscription_manager.get_subscription("sub_missing")


class TestEngineIntake:
    """Tests for customer and CDR intake through the engine."""

    @pytest.mark.asyncio
    async def test_add_customer_validation(self, engine, karnataka_customer):
        await engine.add_customer(karnataka_customer)

        with pytest.raises(ValidationError):
            await engine.add_customer(karnataka_customer)
        with pytest.raises(ValidationError):
            await engine.add_customer(Customer(id=" ", name="Blank"))
        with pytest.raises(ValidationError):
            await engine.add_customer(Customer(id="cus_x", name="No country", country=""))

    @pytest.mark.asyncio
    async def test_record_cdr(self, engine, subscribe, record_call, karnataka_customer, at):
        await subscribe(karnataka_customer)

        cdr = await record_call("sub_1", 3, at(2024, 1, 5), cdr_id="cdr_a")

        stored = await engine.get_cdr("cdr_a")
        assert stored.processing_status == CDRStatus.PENDING
        assert stored.billable_seconds == 180
        assert cdr.id == "cdr_a"

    @pytest.mark.asyncio
    async def test_record_cdr_rejects_duplicates_and_unknown_subscriptions(
        self, engine, subscribe, record_call, karnataka_customer, at
    ):
        await subscribe(karnataka_customer)
        await record_call("sub_1", 3, at(2024, 1, 5), cdr_id="cdr_a")

        with pytest.raises(ValidationError):
            await record_call("sub_1", 3, at(2024, 1, 5), cdr_id="cdr_a")
        with pytest.raises(NotFoundError):
            await record_call("sub_missing", 3, at(2024, 1, 5))
        with pytest.raises(ValidationError):
            await record_call("sub_1", -1, at(2024, 1, 5))
        with pytest.raises(ValidationError):
            await record_call("sub_1", 3, datetime(2024, 1, 6, 10))

    @pytest.mark.asyncio
    async def test_get_unknown_cdr(self, engine):
        with pytest.raises(NotFoundError):
            await engine.get_cdr("cdr_missing")

    @pytest.mark.asyncio
    async def test_retry_failed_cdrs(self, engine, subscribe, record_call, karnataka_customer, at):
        await subscribe(karnataka_customer)
        await record_call("sub_1", 90, at(2024, 1, 5))
        bad = await record_call("sub_1", 30, at(2024, 1, 3), callee="not-a-number")

        first = await engine.retry_failed_cdrs("sub_1")
        assert [f.cdr_id for f in first.failures] == [bad.id]
        assert (await engine.get_cdr(bad.id)).processing_status == CDRStatus.FAILED

        second = await engine.retry_failed_cdrs("sub_1")
        assert len(second.failures) == 1
        assert second.free_minutes_used == 90


class TestPlanChange:
    """Tests for switching a subscription's rate plan."""

    @pytest.mark.asyncio
    async def test_upgrade_now_charges_difference(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)

        changed = await engine.change_plan("sub_1", "professional", "now", date(2024, 1, 16))
        assert changed.rate_plan_id == "professional"

        result = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))

        lines = result.invoice.line_items
        assert [(i.item_type, i.amount_paise) for i in lines] == [
            (LineItemType.SUBSCRIPTION, 34900),
            (LineItemType.PLAN_CHANGE, 33548),
        ]
        change = lines[1]
        assert change.metadata["days_remaining"] == 16
        assert change.metadata["old_remaining_paise"] == 18013
        assert change.metadata["new_remaining_paise"] == 51561
        assert result.invoice.subtotal_paise == 68448

    @pytest.mark.asyncio
    async def test_downgrade_now_credits_difference(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer, plan_id="professional")

        await engine.change_plan("sub_1", "starter", "now", date(2024, 1, 16))
        result = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))

        assert [(i.item_type, i.amount_paise) for i in result.invoice.line_items] == [
            (LineItemType.SUBSCRIPTION, 99900),
            (LineItemType.PLAN_CHANGE, -33548),
            (LineItemType.SETUP_FEE, 19900),
        ]
        assert "credit" in result.invoice.line_items[1].description
        assert result.invoice.subtotal_paise == 86252
        assert result.invoice.is_reconciled()

    @pytest.mark.asyncio
    async def test_later_cancellation_narrows_difference(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)
        await engine.change_plan("sub_1", "professional", "now", date(2024, 1, 16))
        await engine.subscription_manager.cancel("sub_1", date(2024, 1, 20))

        result = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))

        assert [i.amount_paise for i in result.invoice.line_items] == [22516, 10484]
        assert result.invoice.line_items[1].metadata["days_remaining"] == 5

    @pytest.mark.asyncio
    async def test_changes_settle_once(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)
        await engine.change_plan("sub_1", "professional", "now", date(2024, 1, 16))
        await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))

        advanced = await engine.subscription_manager.advance_period("sub_1")
        assert advanced.plan_changes == []

        result = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 3, 1))
        assert [(i.item_type, i.amount_paise) for i in result.invoice.line_items] == [
            (LineItemType.SUBSCRIPTION, 99900),
        ]

    @pytest.mark.asyncio
    async def test_next_cycle_applies_on_advance(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)

        scheduled = await engine.change_plan("sub_1", "professional", "next_cycle")
        assert scheduled.rate_plan_id == "starter"
        assert scheduled.scheduled_plan_id == "professional"

        january = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))
        assert january.invoice.subtotal_paise == 34900

        advanced = await engine.subscription_manager.advance_period("sub_1")
        assert advanced.rate_plan_id == "professional"
        assert advanced.scheduled_plan_id is None

        february = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 3, 1))
        assert february.invoice.subtotal_paise == 99900

    @pytest.mark.asyncio
    async def test_change_rules(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)

        with pytest.raises(ValidationError):
            await engine.change_plan("sub_1", "professional", "tomorrow")
        with pytest.raises(SubscriptionError):
            await engine.change_plan("sub_1", "starter", "now", date(2024, 1, 10))
        with pytest.raises(SubscriptionError):
            await engine.change_plan("sub_1", "professional", "now", date(2024, 2, 1))
        with pytest.raises(NotFoundError):
            await engine.change_plan("sub_1", "enterprise", "now", date(2024, 1, 10))

        await engine.subscription_manager.suspend("sub_1")
        with pytest.raises(SubscriptionError):
            await engine.change_plan("sub_1", "professional", "now", date(2024, 1, 10))

    @pytest.mark.asyncio
    async def test_change_before_activation_rejected(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer, start=date(2024, 1, 16), align_to_month=True)

        with pytest.raises(SubscriptionError):
            await engine.change_plan("sub_1", "professional", "now", date(2024, 1, 10))
