"""Unit tests for invoice assembly and generation."""

import asyncio
from dataclasses import replace
from datetime import date, timedelta

import pytest

from telebill_core.billing.base import (
    BillingCycle,
    CallType,
    CDRStatus,
    InvoiceError,
    InvoiceStatus,
    InvoiceType,
    LineItemType,
    NotFoundError,
    Subscription,
    SubscriptionAddon,
)
from telebill_core.billing.engine import BillingEngine
from telebill_core.billing.invoice import (
    InMemoryInvoiceStore,
    InvoiceBuilder,
    InvoiceContext,
    KeyedLockRegistry,
)
from telebill_core.billing.metrics import INVOICES_GENERATED_TOTAL
from telebill_core.billing.pricing import RatePlanCatalog
from telebill_core.billing.usage import UsageRatingResult
from telebill_core.billing.validation import CreateSubscriptionRequest


class YieldingInvoiceStore(InMemoryInvoiceStore):
    """Invoice store that yields to the event loop on every period lookup."""

    async def find_for_period(self, subscription_id, invoice_type, period_start):
        await asyncio.sleep(0)
        return await super().find_for_period(subscription_id, invoice_type, period_start)


def empty_rating(plan) -> UsageRatingResult:
    return UsageRatingResult(
        plan_id=plan.id,
        plan_version=plan.version,
        included_minutes=plan.included_minutes,
    )


def january_subscription(plan_id: str = "starter", **overrides) -> Subscription:
    fields = dict(
        id="sub_1",
        customer_id="cus_ka",
        account_id="acc_1",
        rate_plan_id=plan_id,
        billing_cycle=BillingCycle.MONTHLY,
        current_period_start=date(2024, 1, 1),
        current_period_end=date(2024, 1, 31),
        activated_on=date(2024, 1, 1),
    )
    fields.update(overrides)
    return Subscription(**fields)


class TestInvoiceBuilder:
    """Tests for building finalized invoices from a context."""

    def setup_method(self):
        self.catalog = RatePlanCatalog()

    def _context(self, customer, plan_id="starter", first_invoice=False, **overrides):
        plan = self.catalog.require(plan_id)
        subscription = january_subscription(plan_id, **overrides)
        return InvoiceContext(
            customer=customer,
            account_id=subscription.account_id,
            plan=plan,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            rating=empty_rating(plan),
            subscription=subscription,
            first_invoice=first_invoice,
        )

    def test_subscription_invoice_scenario(self, tax_engine, karnataka_customer):
        """Test the ₹349 Karnataka invoice totals."""
        builder = InvoiceBuilder(tax_engine)

        invoice = builder.build(
            InvoiceType.SUBSCRIPTION,
            self._context(karnataka_customer),
            issue_date=date(2024, 2, 1),
        )

        assert invoice.status == InvoiceStatus.FINALIZED
        assert invoice.subtotal_paise == 34900
        assert invoice.tax_paise == 6282
        assert invoice.total_paise == 41182
        assert invoice.balance_paise == 41182
        assert invoice.paid_paise == 0
        assert invoice.tax_breakdown.cgst_paise == 3141
        assert invoice.tax_breakdown.sgst_paise == 3141
        assert invoice.due_date == date(2024, 2, 16)
        assert invoice.currency == "INR"
        assert invoice.is_reconciled()
        assert invoice.metadata["tax_jurisdiction"] == "intra_state"

    def test_first_invoice_includes_setup_fee(self, tax_engine, karnataka_customer):
        builder = InvoiceBuilder(tax_engine)

        invoice = builder.build(
            InvoiceType.SUBSCRIPTION,
            self._context(karnataka_customer, "professional", first_invoice=True),
            issue_date=date(2024, 2, 1),
        )

        amounts = {item.item_type: item.amount_paise for item in invoice.line_items}
        assert amounts == {
            LineItemType.SUBSCRIPTION: 99900,
            LineItemType.SETUP_FEE: 19900,
        }
        assert invoice.subtotal_paise == 119800
        assert invoice.tax_paise == 21564
        assert invoice.total_paise == 141364

    def test_later_invoice_has_no_setup_fee(self, tax_engine, karnataka_customer):
        builder = InvoiceBuilder(tax_engine)

        invoice = builder.build(
            InvoiceType.SUBSCRIPTION,
            self._context(karnataka_customer, "professional", first_invoice=False),
            issue_date=date(2024, 2, 1),
        )

        assert [item.item_type for item in invoice.line_items] == [LineItemType.SUBSCRIPTION]

    def test_addons(self, tax_engine, karnataka_customer):
        """Test recurring addons every period and one-time addons on the first invoice."""
        builder = InvoiceBuilder(tax_engine)
        addons = [
            SubscriptionAddon(code="call_recording", quantity=2),
            SubscriptionAddon(code="toll_free_number"),
        ]

        first = builder.build(
            InvoiceType.SUBSCRIPTION,
            self._context(karnataka_customer, first_invoice=True, addons=addons),
            issue_date=date(2024, 2, 1),
        )
        later = builder.build(
            InvoiceType.SUBSCRIPTION,
            self._context(karnataka_customer, first_invoice=False, addons=addons),
            issue_date=date(2024, 2, 1),
        )

        first_addons = [i.amount_paise for i in first.line_items if i.item_type == LineItemType.ADDON]
        later_addons = [i.amount_paise for i in later.line_items if i.item_type == LineItemType.ADDON]
        assert first_addons == [29800, 19900]
        assert later_addons == [29800]
        assert first.subtotal_paise == 34900 + 29800 + 19900

    def test_prorated_fee_line(self, tax_engine, karnataka_customer):
        builder = InvoiceBuilder(tax_engine)

        invoice = builder.build(
            InvoiceType.SUBSCRIPTION,
            self._context(karnataka_customer, activated_on=date(2024, 1, 16)),
            issue_date=date(2024, 2, 1),
        )

        fee = invoice.line_items[0]
        assert fee.amount_paise == 18013
        assert "prorated 16/31 days" in fee.description
        assert fee.metadata["full_amount_paise"] == 34900

    def test_export_customer_is_not_taxed(self, tax_engine, export_customer):
        builder = InvoiceBuilder(tax_engine)

        invoice = builder.build(
            InvoiceType.SUBSCRIPTION,
            self._context(export_customer),
            issue_date=date(2024, 2, 1),
        )

        assert invoice.tax_paise == 0
        assert invoice.total_paise == invoice.subtotal_paise == 34900
        assert invoice.tax_breakdown.to_dict() == {}

    def test_unknown_addon_fails_build(self, tax_engine, karnataka_customer):
        builder = InvoiceBuilder(tax_engine)
        context = self._context(karnataka_customer, addons=[SubscriptionAddon(code="fax_line")])

        with pytest.raises(InvoiceError):
            builder.build(InvoiceType.SUBSCRIPTION, context, issue_date=date(2024, 2, 1))

    def test_usage_invoice_without_charges_fails(self, tax_engine, karnataka_customer):
        builder = InvoiceBuilder(tax_engine)

        with pytest.raises(InvoiceError):
            builder.build(
                InvoiceType.USAGE,
                self._context(karnataka_customer),
                issue_date=date(2024, 2, 1),
            )

    def test_finalize_requires_draft(self, tax_engine, karnataka_customer):
        builder = InvoiceBuilder(tax_engine)
        invoice = builder.build(
            InvoiceType.SUBSCRIPTION,
            self._context(karnataka_customer),
            issue_date=date(2024, 2, 1),
        )

        with pytest.raises(InvoiceError):
            builder.finalize(invoice, karnataka_customer)


class TestInvoiceGeneration:
    """Tests for invoice generation from stored subscriptions and CDRs."""

    @pytest.mark.asyncio
    async def test_generate_for_subscription(self, engine, subscribe, karnataka_customer, metrics):
        await subscribe(karnataka_customer)

        result = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))

        invoice = result.invoice
        assert result.created is True
        assert invoice.invoice_number == "INV-202402-0001"
        assert invoice.total_paise == 41182
        assert invoice.period_start == date(2024, 1, 1)
        assert invoice.period_end == date(2024, 1, 31)
        assert invoice.metadata["plan_version"] == 1
        assert (await engine.get_invoice(invoice.id)).total_paise == 41182
        assert metrics.counter_value(INVOICES_GENERATED_TOTAL, type="subscription") == 1

    @pytest.mark.asyncio
    async def test_generation_is_idempotent_per_period(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)

        first = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))
        second = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 2))

        assert second.created is False
        assert second.invoice.id == first.invoice.id
        assert second.invoice.invoice_number == "INV-202402-0001"

    @pytest.mark.asyncio
    async def test_overage_billed_on_subscription_invoice(
        self, engine, subscribe, record_call, karnataka_customer, at
    ):
        await subscribe(karnataka_customer)
        first = await record_call("sub_1", 60, at(2024, 1, 5))
        second = await record_call("sub_1", 60, at(2024, 1, 6))

        result = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))

        invoice = result.invoice
        overage = [i for i in invoice.line_items if i.item_type == LineItemType.OVERAGE]
        assert [(i.quantity, i.amount_paise) for i in overage] == [(20, 3980)]
        assert invoice.subtotal_paise == 38880
        assert invoice.tax_paise == 6998
        assert invoice.total_paise == 45878

        stored = await engine.get_cdr(second.id)
        assert stored.processing_status == CDRStatus.PROCESSED
        assert stored.cost_paise == 3980
        assert stored.invoice_id == invoice.id
        assert (await engine.get_cdr(first.id)).cost_paise == 0

    @pytest.mark.asyncio
    async def test_overage_lines_per_call_type(
        self, engine, subscribe, record_call, karnataka_customer, at
    ):
        await subscribe(karnataka_customer)
        await record_call("sub_1", 100, at(2024, 1, 5))
        await record_call("sub_1", 10, at(2024, 1, 6), callee="08012345678")
        await record_call("sub_1", 5, at(2024, 1, 7), callee="+14155551234")

        result = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))

        amounts = [item.amount_paise for item in result.invoice.line_items]
        assert amounts == [34900, 2985, 3980]
        assert result.invoice.subtotal_paise == sum(amounts)

    @pytest.mark.asyncio
    async def test_rating_failures_reported_not_fatal(
        self, engine, subscribe, record_call, karnataka_customer, at
    ):
        await subscribe(karnataka_customer)
        bad = await record_call("sub_1", 500, at(2024, 1, 5), callee=None)

        result = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))

        assert result.invoice.subtotal_paise == 34900
        assert [f.cdr_id for f in result.rating_failures] == [bad.id]
        assert (await engine.get_cdr(bad.id)).processing_status == CDRStatus.FAILED

    @pytest.mark.asyncio
    async def test_invoice_numbers_sequence_per_month(
        self, engine, subscribe, karnataka_customer, maharashtra_customer
    ):
        await subscribe(karnataka_customer, subscription_id="sub_1")
        await subscribe(maharashtra_customer, subscription_id="sub_2", account_id="acc_2")
        await subscribe(karnataka_customer, subscription_id="sub_3", account_id="acc_3")

        one = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))
        two = await engine.generate_invoice_for_subscription("sub_2", issue_date=date(2024, 2, 3))
        three = await engine.generate_invoice_for_subscription("sub_3", issue_date=date(2024, 3, 1))

        assert one.invoice.invoice_number == "INV-202402-0001"
        assert two.invoice.invoice_number == "INV-202402-0002"
        assert three.invoice.invoice_number == "INV-202403-0001"
        assert two.invoice.tax_breakdown.to_dict() == {"igst": 6282}

    @pytest.mark.asyncio
    async def test_missing_subscription(self, engine):
        with pytest.raises(NotFoundError):
            await engine.generate_invoice_for_subscription("sub_missing", issue_date=date(2024, 2, 1))

    @pytest.mark.asyncio
    async def test_missing_plan_writes_nothing(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)
        del engine.catalog.plans["starter"]

        with pytest.raises(NotFoundError):
            await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))

        summary = await engine.revenue_summary()
        assert summary.invoice_count == 0

    @pytest.mark.asyncio
    async def test_aligned_mid_month_start_is_prorated(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer, start=date(2024, 1, 16), align_to_month=True)

        result = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))

        assert result.invoice.line_items[0].amount_paise == 18013

    @pytest.mark.asyncio
    async def test_cancelled_mid_period_is_prorated(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)
        await engine.subscription_manager.cancel("sub_1", date(2024, 1, 15))

        result = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))

        assert result.invoice.line_items[0].amount_paise == 16887

    @pytest.mark.asyncio
    async def test_setup_fee_only_on_first_invoice(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer, plan_id="professional")

        first = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))
        await engine.subscription_manager.advance_period("sub_1")
        second = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 3, 1))

        assert first.invoice.subtotal_paise == 119800
        assert second.invoice.subtotal_paise == 99900
        assert second.invoice.period_start == date(2024, 2, 1)
        assert second.invoice.period_end == date(2024, 2, 29)

    @pytest.mark.asyncio
    async def test_usage_invoice_does_not_count_as_first_invoice(
        self, engine, subscribe, record_call, karnataka_customer, at
    ):
        """Test that setup charges survive a usage invoice issued earlier in the period."""
        await subscribe(karnataka_customer, plan_id="professional")
        await record_call("sub_1", 600, at(2024, 1, 5))

        usage = await engine.generate_usage_invoice("sub_1", issue_date=date(2024, 1, 20))
        result = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))

        assert usage.invoice.total_paise == 18880
        assert [i.item_type for i in result.invoice.line_items] == [
            LineItemType.SUBSCRIPTION,
            LineItemType.SETUP_FEE,
        ]
        assert result.invoice.subtotal_paise == 119800

    @pytest.mark.asyncio
    async def test_concurrent_generation_stores_one_invoice(self, settings, karnataka_customer):
        store = YieldingInvoiceStore()
        engine = BillingEngine(settings=settings, invoices=store)
        await engine.add_customer(karnataka_customer)
        await engine.create_subscription(CreateSubscriptionRequest(
            id="sub_1",
            customer_id="cus_ka",
            account_id="acc_1",
            rate_plan_id="starter",
            billing_cycle="monthly",
            start_date=date(2024, 1, 1),
        ))

        first, second = await asyncio.gather(
            engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1)),
            engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1)),
        )

        assert len(await store.list_all()) == 1
        assert {first.created, second.created} == {True, False}
        assert first.invoice.id == second.invoice.id

    @pytest.mark.asyncio
    async def test_store_rejects_second_invoice_for_period(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)
        result = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))

        with pytest.raises(InvoiceError):
            await engine._invoices.create(replace(result.invoice, id="inv_duplicate"))

    @pytest.mark.asyncio
    async def test_revised_plan_applies_to_future_invoices(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)
        first = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))

        engine.catalog.revise("starter", monthly_price_paise=39900)
        await engine.subscription_manager.advance_period("sub_1")
        second = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 3, 1))

        assert (await engine.get_invoice(first.invoice.id)).subtotal_paise == 34900
        assert second.invoice.subtotal_paise == 39900
        assert second.invoice.metadata["plan_version"] == 2


class TestUsageAndPostpaidInvoices:
    """Tests for the usage and postpaid invoice variants."""

    @pytest.mark.asyncio
    async def test_usage_invoice_bills_only_unbilled_cdrs(
        self, engine, subscribe, record_call, karnataka_customer, at
    ):
        await subscribe(karnataka_customer)
        await record_call("sub_1", 90, at(2024, 1, 5))
        await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))

        late = await record_call("sub_1", 30, at(2024, 1, 20))
        result = await engine.generate_usage_invoice(
            "sub_1", period=(date(2024, 1, 1), date(2024, 1, 31)), issue_date=date(2024, 2, 5)
        )

        invoice = result.invoice
        assert invoice.invoice_type == InvoiceType.USAGE
        assert [(i.item_type, i.quantity, i.amount_paise) for i in invoice.line_items] == [
            (LineItemType.USAGE, 20, 3980),
        ]
        assert invoice.tax_paise == 716
        assert invoice.total_paise == 4696
        assert (await engine.get_cdr(late.id)).invoice_id == invoice.id

        with pytest.raises(InvoiceError):
            await engine.generate_usage_invoice(
                "sub_1", period=(date(2024, 1, 1), date(2024, 1, 31)), issue_date=date(2024, 2, 6)
            )

    @pytest.mark.asyncio
    async def test_usage_invoice_rejects_inverted_period(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)

        with pytest.raises(InvoiceError):
            await engine.generate_usage_invoice(
                "sub_1", period=(date(2024, 1, 31), date(2024, 1, 1))
            )

    @pytest.mark.asyncio
    async def test_postpaid_invoice_by_direction(self, engine, record_call, maharashtra_customer, at):
        await engine.add_customer(maharashtra_customer)
        await record_call(None, 10, at(2024, 1, 5), account_id="acc_pp", direction="inbound")
        await record_call(None, 5, at(2024, 1, 6), account_id="acc_pp", direction="outbound")

        result = await engine.generate_postpaid_invoice(
            "cus_mh", "acc_pp", "starter",
            date(2024, 1, 1), date(2024, 1, 31),
            issue_date=date(2024, 2, 1),
        )

        invoice = result.invoice
        assert invoice.invoice_type == InvoiceType.POSTPAID
        assert invoice.subscription_id is None
        assert [i.amount_paise for i in invoice.line_items] == [1990, 995]
        assert invoice.subtotal_paise == 2985
        assert invoice.tax_breakdown.to_dict() == {"igst": 537}
        assert invoice.total_paise == 3522

        again = await engine.generate_postpaid_invoice(
            "cus_mh", "acc_pp", "starter",
            date(2024, 1, 1), date(2024, 1, 31),
            issue_date=date(2024, 2, 2),
        )
        assert again.created is False
        assert again.invoice.id == invoice.id

    @pytest.mark.asyncio
    async def test_postpaid_lines_split_by_call_type(self, engine, record_call, maharashtra_customer, at):
        await engine.add_customer(maharashtra_customer)
        await record_call(None, 10, at(2024, 1, 5), account_id="acc_pp", direction="inbound")
        await record_call(None, 5, at(2024, 1, 6), account_id="acc_pp")
        await record_call(None, 3, at(2024, 1, 7), callee="+14155551234", account_id="acc_pp")

        result = await engine.generate_postpaid_invoice(
            "cus_mh", "acc_pp", "starter",
            date(2024, 1, 1), date(2024, 1, 31),
            issue_date=date(2024, 2, 1),
        )

        lines = result.invoice.line_items
        assert [(i.metadata["direction"], i.call_type) for i in lines] == [
            ("inbound", CallType.LOCAL),
            ("outbound", CallType.LOCAL),
            ("outbound", CallType.ISD),
        ]
        assert [(i.quantity, i.unit_price_paise, i.amount_paise) for i in lines] == [
            (10, 199, 1990),
            (5, 199, 995),
            (3, 796, 2388),
        ]
        assert result.invoice.subtotal_paise == 5373


class TestOverdueSweep:
    """Tests for the time-based overdue transition."""

    @pytest.mark.asyncio
    async def test_sweep_marks_past_due_invoices(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)
        result = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))
        due = result.invoice.due_date

        assert await engine.sweep_overdue(due) == []

        marked = await engine.sweep_overdue(due + timedelta(days=1))
        assert [i.id for i in marked] == [result.invoice.id]
        assert (await engine.get_invoice(result.invoice.id)).status == InvoiceStatus.OVERDUE

        assert await engine.sweep_overdue(due + timedelta(days=2)) == []

    @pytest.mark.asyncio
    async def test_paid_invoices_are_not_swept(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)
        result = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))
        await engine.apply_payment(result.invoice.id, 41182, "pay_ref_1")

        assert await engine.sweep_overdue(date(2024, 3, 31)) == []


class TestKeyedLockRegistry:
    """Tests for per-resource locks."""

    @pytest.mark.asyncio
    async def test_lock_dropped_after_release(self):
        registry = KeyedLockRegistry()

        async with registry.lock_for("inv_1"):
            assert len(registry) == 1

        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_waiters_are_serialized(self):
        registry = KeyedLockRegistry()
        events = []

        async def hold(name):
            async with registry.lock_for("inv_1"):
                events.append(f"{name} in")
                await asyncio.sleep(0)
                events.append(f"{name} out")

        await asyncio.gather(hold("a"), hold("b"))

        assert events == ["a in", "a out", "b in", "b out"]
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_ledger_leaves_no_locks_behind(self, engine, subscribe, karnataka_customer):
        await subscribe(karnataka_customer)
        result = await engine.generate_invoice_for_subscription("sub_1", issue_date=date(2024, 2, 1))

        await engine.apply_payment(result.invoice.id, 1000, "pay_ref_1")
        await engine.apply_refund(result.invoice.id, 500, "rfd_ref_1")

        assert len(engine.ledger._locks) == 0
