"""
Invoice Management

Invoice assembly, numbering, persistence and the overdue sweep.

Invoices come in three variants (subscription, usage, postpaid) that share
the same amounts and lifecycle; each variant has its own line-item
generator.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, AsyncIterator, Callable, Dict, Hashable, List, Optional, Set, Tuple

import structlog

from .base import (
    CDR,
    CallDirection,
    CallType,
    CDRStore,
    ConcurrentModificationError,
    Customer,
    CustomerStore,
    Invoice,
    InvoiceError,
    InvoiceStatus,
    InvoiceStore,
    InvoiceType,
    LineItem,
    LineItemType,
    NotFoundError,
    RatePlan,
    Subscription,
    SubscriptionStore,
    TaxBreakdown,
    generate_id,
    utc_now,
)
from .metrics import INVOICES_GENERATED_TOTAL, MetricsRecorder, NoopMetricsRecorder
from .money import round_half_up
from .pricing import AddonCatalog, RatePlanCatalog
from .proration import ProrationCalculator, days_inclusive
from .tax import TaxEngine
from .usage import CallTypeUsage, RatingFailure, UsageRater, UsageRatingResult


logger = structlog.get_logger(__name__)


class InMemoryInvoiceStore(InvoiceStore):
    """In-memory invoice store implementation."""

    def __init__(self):
        """Initialize in-memory store."""
        self._invoices: Dict[str, Invoice] = {}
        self._sequences: Dict[str, int] = defaultdict(int)

    async def create(self, invoice: Invoice) -> None:
        """Create invoice. Only finalized, reconciled invoices are accepted."""
        if invoice.id in self._invoices:
            raise InvoiceError(f"Duplicate invoice: {invoice.id}", invoice.id)
        if invoice.status != InvoiceStatus.FINALIZED or not invoice.is_reconciled():
            raise InvoiceError("Only finalized, reconciled invoices can be stored", invoice.id)

        existing: Optional[Invoice] = None
        if invoice.invoice_type == InvoiceType.SUBSCRIPTION:
            existing = await self.find_for_period(
                invoice.subscription_id, invoice.invoice_type, invoice.period_start
            )
        elif invoice.invoice_type == InvoiceType.POSTPAID:
            existing = await self.find_for_account_period(
                invoice.account_id, invoice.invoice_type, invoice.period_start
            )
        if existing is not None:
            raise InvoiceError(
                f"Period starting {invoice.period_start} is already invoiced by {existing.id}",
                invoice.id,
            )

        self._invoices[invoice.id] = copy.deepcopy(invoice)

    async def get(self, invoice_id: str) -> Optional[Invoice]:
        """Get invoice by ID."""
        invoice = self._invoices.get(invoice_id)
        return copy.deepcopy(invoice) if invoice else None

    async def update(self, invoice: Invoice, expected_version: int) -> Invoice:
        """Update invoice with an optimistic version check."""
        stored = self._invoices.get(invoice.id)
        if stored is None:
            raise NotFoundError("Invoice", invoice.id)
        if stored.version != expected_version:
            raise ConcurrentModificationError(invoice.id, expected_version, stored.version)

        updated = copy.deepcopy(invoice)
        updated.version = expected_version + 1
        self._invoices[invoice.id] = updated
        return copy.deepcopy(updated)

    async def find_for_period(
        self,
        subscription_id: str,
        invoice_type: InvoiceType,
        period_start: date,
    ) -> Optional[Invoice]:
        for invoice in self._invoices.values():
            if (
                invoice.subscription_id == subscription_id
                and invoice.invoice_type == invoice_type
                and invoice.period_start == period_start
            ):
                return copy.deepcopy(invoice)
        return None

    async def find_for_account_period(
        self,
        account_id: str,
        invoice_type: InvoiceType,
        period_start: date,
    ) -> Optional[Invoice]:
        for invoice in self._invoices.values():
            if (
                invoice.account_id == account_id
                and invoice.subscription_id is None
                and invoice.invoice_type == invoice_type
                and invoice.period_start == period_start
            ):
                return copy.deepcopy(invoice)
        return None

    async def has_invoice_for_subscription(
        self,
        subscription_id: str,
        invoice_type: InvoiceType,
    ) -> bool:
        return any(
            invoice.subscription_id == subscription_id and invoice.invoice_type == invoice_type
            for invoice in self._invoices.values()
        )

    async def next_sequence(self, issue_month: str) -> int:
        self._sequences[issue_month] += 1
        return self._sequences[issue_month]

    async def list_all(self) -> List[Invoice]:
        return [copy.deepcopy(invoice) for invoice in self._invoices.values()]


class KeyedLockRegistry:
    """
    asyncio locks keyed by resource ID.

    A lock is dropped once no task holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def lock_for(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class PlanSwitch:
    """A recorded plan change with both plan versions resolved."""

    from_plan: RatePlan
    to_plan: RatePlan
    effective_on: date


@dataclass
class InvoiceContext:
    """Already-fetched inputs for one invoice."""

    customer: Customer
    account_id: str
    plan: RatePlan
    period_start: date
    period_end: date
    rating: UsageRatingResult
    subscription: Optional[Subscription] = None
    first_invoice: bool = False
    plan_switches: List[PlanSwitch] = field(default_factory=list)

    @property
    def fee_plan(self) -> RatePlan:
        """Plan in force at the start of the period."""
        if self.plan_switches:
            return self.plan_switches[0].from_plan
        return self.plan


def _line_id() -> str:
    return generate_id("li")


class LineItemGenerator(ABC):
    """Produces the line items of one invoice variant."""

    invoice_type: InvoiceType

    @abstractmethod
    def generate(self, context: InvoiceContext) -> List[LineItem]:
        """Generate line items for the context."""
        pass

    @staticmethod
    def call_type_lines(
        plan: RatePlan,
        usage: Dict[CallType, CallTypeUsage],
        item_type: LineItemType,
        label: str,
        billed_minutes: Callable[[CallTypeUsage], int],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[LineItem]:
        """One line per call type that incurred a charge."""
        lines: List[LineItem] = []

        for call_type in CallType:
            bucket = usage.get(call_type)
            if bucket is None or bucket.cost_paise == 0:
                continue
            multiplier = plan.multiplier_for(call_type)
            unit_price = round_half_up(plan.overage_rate_paise * multiplier)
            minutes = billed_minutes(bucket)
            tier = call_type.value.upper() if call_type != CallType.LOCAL else "Local"
            lines.append(LineItem(
                id=_line_id(),
                description=f"{tier} {label} ({minutes} min)",
                quantity=minutes,
                unit_price_paise=unit_price,
                amount_paise=bucket.cost_paise,
                item_type=item_type,
                call_type=call_type,
                metadata=dict(
                    metadata or {},
                    calls=bucket.calls,
                    minutes=bucket.minutes,
                    multiplier=str(multiplier),
                ),
            ))
        return lines

    @classmethod
    def overage_lines(cls, context: InvoiceContext, item_type: LineItemType) -> List[LineItem]:
        return cls.call_type_lines(
            context.plan,
            context.rating.by_call_type(),
            item_type,
            "call overage",
            lambda bucket: bucket.overage_minutes,
        )


class SubscriptionLineItems(LineItemGenerator):
    """
    Plan fee, overage, recurring addons and first-invoice charges.

    The plan fee and recurring addons are prorated over the days the
    subscription was live in the period. The setup fee and one-time addons
    appear only on the subscription's first invoice.

    The fee is priced at the plan in force when the period opened. Each
    mid-period plan change adds a line with the difference between the new
    and old plan fees over the days left in the billable window; a negative
    difference is a credit.
    """

    invoice_type = InvoiceType.SUBSCRIPTION

    def __init__(self, proration: ProrationCalculator, addons: AddonCatalog):
        self.proration = proration
        self.addons = addons

    def generate(self, context: InvoiceContext) -> List[LineItem]:
        subscription = context.subscription
        if subscription is None:
            raise InvoiceError("Subscription invoice requires a subscription")

        window = self.proration.charge_window(subscription)
        if window is None:
            raise InvoiceError(
                f"Subscription {subscription.id} has no billable days in "
                f"{subscription.current_period_start}..{subscription.current_period_end}"
            )

        plan = context.fee_plan
        full_fee = plan.price_for(subscription.billing_cycle)
        fee = self.proration.prorate_for_subscription(subscription, full_fee)
        days_charged = days_inclusive(*window)
        days_in_period = days_inclusive(
            subscription.current_period_start, subscription.current_period_end
        )

        description = f"{plan.name} plan - {subscription.billing_cycle.value} subscription"
        if days_charged != days_in_period:
            description += f" (prorated {days_charged}/{days_in_period} days)"

        lines = [LineItem(
            id=_line_id(),
            description=description,
            quantity=1,
            unit_price_paise=fee,
            amount_paise=fee,
            item_type=LineItemType.SUBSCRIPTION,
            metadata={
                "plan_id": plan.id,
                "plan_version": plan.version,
                "full_amount_paise": full_fee,
                "days_charged": days_charged,
                "days_in_period": days_in_period,
            },
        )]

        lines.extend(self.plan_change_lines(subscription, context.plan_switches, window))
        lines.extend(self.overage_lines(context, LineItemType.OVERAGE))

        for subscribed in subscription.addons:
            addon = self.addons.get(subscribed.code)
            if addon is None:
                raise InvoiceError(f"Unknown addon: {subscribed.code}")

            if addon.recurring:
                full = addon.price_paise * subscribed.quantity
                amount = self.proration.prorate_for_subscription(subscription, full)
            elif context.first_invoice:
                amount = addon.price_paise * subscribed.quantity
            else:
                continue

            lines.append(LineItem(
                id=_line_id(),
                description=addon.name if addon.recurring else f"{addon.name} (one-time)",
                quantity=subscribed.quantity,
                unit_price_paise=addon.price_paise,
                amount_paise=amount,
                item_type=LineItemType.ADDON,
                metadata={"addon": addon.code, "recurring": addon.recurring},
            ))

        if context.first_invoice and plan.setup_fee_paise > 0:
            lines.append(LineItem(
                id=_line_id(),
                description=f"{plan.name} setup fee",
                quantity=1,
                unit_price_paise=plan.setup_fee_paise,
                amount_paise=plan.setup_fee_paise,
                item_type=LineItemType.SETUP_FEE,
            ))

        return lines

    def plan_change_lines(
        self,
        subscription: Subscription,
        switches: List[PlanSwitch],
        window: Tuple[date, date],
    ) -> List[LineItem]:
        cycle = subscription.billing_cycle
        period_start = subscription.current_period_start
        period_end = subscription.current_period_end
        lines: List[LineItem] = []

        for switch in switches:
            start = max(switch.effective_on, window[0])
            end = window[1]
            if end < start:
                continue

            old_remaining = self.proration.prorate(
                switch.from_plan.price_for(cycle), period_start, period_end, start, end, cycle
            )
            new_remaining = self.proration.prorate(
                switch.to_plan.price_for(cycle), period_start, period_end, start, end, cycle
            )
            difference = new_remaining - old_remaining
            if difference == 0:
                continue

            days_remaining = days_inclusive(start, end)
            kind = "charge" if difference > 0 else "credit"
            lines.append(LineItem(
                id=_line_id(),
                description=(
                    f"Plan change {switch.from_plan.name} to {switch.to_plan.name} "
                    f"from {start.isoformat()} ({days_remaining} days, {kind})"
                ),
                quantity=1,
                unit_price_paise=difference,
                amount_paise=difference,
                item_type=LineItemType.PLAN_CHANGE,
                metadata={
                    "from_plan_id": switch.from_plan.id,
                    "from_plan_version": switch.from_plan.version,
                    "to_plan_id": switch.to_plan.id,
                    "to_plan_version": switch.to_plan.version,
                    "days_remaining": days_remaining,
                    "old_remaining_paise": old_remaining,
                    "new_remaining_paise": new_remaining,
                },
            ))
        return lines


class UsageLineItems(LineItemGenerator):
    """Usage-only invoice: overage charges per call type, no plan fee."""

    invoice_type = InvoiceType.USAGE

    def generate(self, context: InvoiceContext) -> List[LineItem]:
        return self.overage_lines(context, LineItemType.USAGE)


class PostpaidLineItems(LineItemGenerator):
    """Account-level postpaid invoice: every minute billed, per direction and call type."""

    invoice_type = InvoiceType.POSTPAID

    def generate(self, context: InvoiceContext) -> List[LineItem]:
        lines: List[LineItem] = []

        for direction in CallDirection:
            lines.extend(self.call_type_lines(
                context.plan,
                context.rating.by_call_type(direction),
                LineItemType.USAGE,
                f"{direction.value} calls",
                lambda bucket: bucket.minutes,
                metadata={"direction": direction.value},
            ))
        return lines


class InvoiceBuilder:
    """
    Builds finalized invoices.

    An invoice is created as a draft and finalized in one step: subtotal is
    the sum of line items, tax is computed once on the subtotal, and the
    total is subtotal plus tax. Only finalized invoices leave the builder.
    """

    def __init__(
        self,
        tax_engine: TaxEngine,
        proration: Optional[ProrationCalculator] = None,
        addons: Optional[AddonCatalog] = None,
        currency: str = "INR",
        due_days: int = 15,
        company_name: str = "",
        company_country: str = "India",
    ):
        """Initialize invoice builder."""
        self.tax_engine = tax_engine
        self.currency = currency
        self.due_days = due_days
        self.supplier = {
            "name": company_name,
            "state": tax_engine.company_state,
            "country": company_country,
        }

        proration = proration or ProrationCalculator()
        addons = addons or AddonCatalog()
        self._generators: Dict[InvoiceType, LineItemGenerator] = {
            InvoiceType.SUBSCRIPTION: SubscriptionLineItems(proration, addons),
            InvoiceType.USAGE: UsageLineItems(),
            InvoiceType.POSTPAID: PostpaidLineItems(),
        }

    def register_generator(self, generator: LineItemGenerator) -> None:
        """Replace the line-item generator for an invoice type."""
        self._generators[generator.invoice_type] = generator

    def build(
        self,
        invoice_type: InvoiceType,
        context: InvoiceContext,
        issue_date: date,
        invoice_number: str = "",
    ) -> Invoice:
        """Assemble and finalize an invoice."""
        line_items = self._generators[invoice_type].generate(context)
        if not line_items:
            raise InvoiceError(f"Nothing to invoice for {invoice_type.value} invoice")

        invoice = Invoice(
            id=generate_id("inv"),
            invoice_number=invoice_number,
            customer_id=context.customer.id,
            account_id=context.account_id,
            subscription_id=context.subscription.id if context.subscription else None,
            invoice_type=invoice_type,
            status=InvoiceStatus.DRAFT,
            currency=self.currency,
            subtotal_paise=0,
            tax_paise=0,
            total_paise=0,
            paid_paise=0,
            balance_paise=0,
            tax_breakdown=TaxBreakdown(),
            line_items=line_items,
            issue_date=issue_date,
            due_date=issue_date + timedelta(days=self.due_days),
            period_start=context.period_start,
            period_end=context.period_end,
            metadata={
                "plan_id": context.plan.id,
                "plan_version": context.plan.version,
                "supplier": dict(self.supplier),
            },
        )
        return self.finalize(invoice, context.customer)

    def finalize(self, invoice: Invoice, customer: Customer) -> Invoice:
        """Compute totals and tax for a draft invoice and mark it finalized."""
        if invoice.status != InvoiceStatus.DRAFT:
            raise InvoiceError(
                f"Only draft invoices can be finalized (status {invoice.status.value})",
                invoice.id,
            )

        subtotal = sum(item.amount_paise for item in invoice.line_items)
        tax = self.tax_engine.compute(subtotal, customer.state, customer.country)

        invoice.subtotal_paise = subtotal
        invoice.tax_paise = tax.tax_paise
        invoice.tax_breakdown = tax.breakdown
        invoice.total_paise = subtotal + tax.tax_paise
        invoice.paid_paise = 0
        invoice.balance_paise = invoice.total_paise
        invoice.status = InvoiceStatus.FINALIZED
        invoice.finalized_at = utc_now()
        if tax.jurisdiction is not None:
            invoice.metadata["tax_jurisdiction"] = tax.jurisdiction.value
        return invoice


@dataclass
class InvoiceBuildResult:
    """Result of invoice generation."""

    invoice: Invoice
    rating_failures: List[RatingFailure] = field(default_factory=list)
    created: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoice": self.invoice.to_dict(),
            "rating_failures": [f.to_dict() for f in self.rating_failures],
            "created": self.created,
        }


class InvoiceService:
    """
    Generates invoices from stored subscriptions and CDRs.

    Rating runs before the invoice is built; the finalized invoice is stored
    in one write, then the rated CDRs are saved with their invoice link.
    Generation for one subscription (or postpaid account) runs under a
    single lock from the idempotency check to the final write.
    """

    def __init__(
        self,
        invoices: InvoiceStore,
        subscriptions: SubscriptionStore,
        customers: CustomerStore,
        cdrs: CDRStore,
        catalog: RatePlanCatalog,
        rater: UsageRater,
        builder: InvoiceBuilder,
        locks: Optional[KeyedLockRegistry] = None,
        metrics: Optional[MetricsRecorder] = None,
        number_prefix: str = "INV",
    ):
        """Initialize invoice service."""
        self._invoices = invoices
        self._subscriptions = subscriptions
        self._customers = customers
        self._cdrs = cdrs
        self._catalog = catalog
        self._rater = rater
        self._builder = builder
        self._locks = locks or KeyedLockRegistry()
        self._period_locks = KeyedLockRegistry()
        self._metrics = metrics or NoopMetricsRecorder()
        self._number_prefix = number_prefix

    async def get_invoice(self, invoice_id: str) -> Invoice:
        """Get invoice by ID or raise NotFoundError."""
        invoice = await self._invoices.get(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    async def generate_for_subscription(
        self,
        subscription_id: str,
        issue_date: Optional[date] = None,
    ) -> InvoiceBuildResult:
        """
        Invoice a subscription's current period.

        Returns the stored invoice unchanged if the period was already
        invoiced. Raises NotFoundError if the subscription, its plan or its
        customer cannot be resolved; nothing is written in that case.
        """
        async with self._period_locks.lock_for(("subscription", subscription_id)):
            subscription = await self._require_subscription(subscription_id)

            existing = await self._invoices.find_for_period(
                subscription.id, InvoiceType.SUBSCRIPTION, subscription.current_period_start
            )
            if existing is not None:
                logger.info(
                    "Invoice already generated for period",
                    subscription_id=subscription.id,
                    invoice_id=existing.id,
                )
                return InvoiceBuildResult(invoice=existing, created=False)

            plan = self._catalog.require(subscription.rate_plan_id)
            switches = self._plan_switches(subscription)
            customer = await self._require_customer(subscription.customer_id)

            cdrs = await self._cdrs.list_for_subscription(
                subscription.id,
                subscription.current_period_start,
                subscription.current_period_end,
            )
            rating = self._rater.rate(plan, cdrs)
            first_invoice = not await self._invoices.has_invoice_for_subscription(
                subscription.id, InvoiceType.SUBSCRIPTION
            )

            context = InvoiceContext(
                customer=customer,
                account_id=subscription.account_id,
                plan=plan,
                period_start=subscription.current_period_start,
                period_end=subscription.current_period_end,
                rating=rating.subset(self._unbilled_ids(cdrs)),
                subscription=subscription,
                first_invoice=first_invoice,
                plan_switches=switches,
            )
            return await self._build_and_store(InvoiceType.SUBSCRIPTION, context, cdrs, issue_date)

    async def generate_usage_invoice(
        self,
        subscription_id: str,
        period: Optional[Tuple[date, date]] = None,
        issue_date: Optional[date] = None,
    ) -> InvoiceBuildResult:
        """
        Invoice usage not yet on any invoice.

        Used after failed CDRs have been retried: newly rated calls draw on
        whatever allowance the earlier calls left. ``period`` defaults to
        the subscription's current period.
        """
        async with self._period_locks.lock_for(("subscription", subscription_id)):
            subscription = await self._require_subscription(subscription_id)
            plan = self._catalog.require(subscription.rate_plan_id)
            customer = await self._require_customer(subscription.customer_id)

            period_start, period_end = period or (
                subscription.current_period_start, subscription.current_period_end
            )
            if period_end < period_start:
                raise InvoiceError(f"Period end {period_end} is before start {period_start}")

            cdrs = await self._cdrs.list_for_subscription(subscription.id, period_start, period_end)
            rating = self._rater.rate(plan, cdrs)

            context = InvoiceContext(
                customer=customer,
                account_id=subscription.account_id,
                plan=plan,
                period_start=period_start,
                period_end=period_end,
                rating=rating.subset(self._unbilled_ids(cdrs)),
                subscription=subscription,
            )
            return await self._build_and_store(InvoiceType.USAGE, context, cdrs, issue_date)

    async def generate_postpaid_invoice(
        self,
        customer_id: str,
        account_id: str,
        plan_id: str,
        period_start: date,
        period_end: date,
        issue_date: Optional[date] = None,
    ) -> InvoiceBuildResult:
        """Invoice an account's calls that are not covered by a subscription."""
        if period_end < period_start:
            raise InvoiceError(f"Period end {period_end} is before start {period_start}")

        async with self._period_locks.lock_for(("account", account_id)):
            existing = await self._invoices.find_for_account_period(
                account_id, InvoiceType.POSTPAID, period_start
            )
            if existing is not None:
                return InvoiceBuildResult(invoice=existing, created=False)

            plan = self._catalog.require(plan_id)
            customer = await self._require_customer(customer_id)

            cdrs = [
                cdr for cdr in await self._cdrs.list_for_account(account_id, period_start, period_end)
                if cdr.subscription_id is None
            ]
            rating = self._rater.rate(plan, cdrs, apply_allowance=False)

            context = InvoiceContext(
                customer=customer,
                account_id=account_id,
                plan=plan,
                period_start=period_start,
                period_end=period_end,
                rating=rating.subset(self._unbilled_ids(cdrs)),
            )
            return await self._build_and_store(InvoiceType.POSTPAID, context, cdrs, issue_date)

    async def sweep_overdue(self, as_of: date) -> List[Invoice]:
        """Mark open invoices whose due date passed before ``as_of`` as overdue."""
        marked: List[Invoice] = []

        for candidate in await self._invoices.list_all():
            if candidate.status not in (InvoiceStatus.FINALIZED, InvoiceStatus.PARTIALLY_PAID):
                continue
            if not candidate.is_past_due(as_of):
                continue

            async with self._locks.lock_for(candidate.id):
                invoice = await self.get_invoice(candidate.id)
                if invoice.status not in (InvoiceStatus.FINALIZED, InvoiceStatus.PARTIALLY_PAID):
                    continue
                if not invoice.is_past_due(as_of):
                    continue
                invoice.status = InvoiceStatus.OVERDUE
                marked.append(await self._invoices.update(invoice, invoice.version))

        if marked:
            logger.info("Invoices marked overdue", count=len(marked), as_of=as_of.isoformat())
        return marked

    async def _build_and_store(
        self,
        invoice_type: InvoiceType,
        context: InvoiceContext,
        cdrs: List[CDR],
        issue_date: Optional[date],
    ) -> InvoiceBuildResult:
        issue_date = issue_date or date.today()
        invoice = self._builder.build(invoice_type, context, issue_date)

        # Numbers are allocated only for invoices that built successfully
        invoice.invoice_number = await self._next_invoice_number(issue_date)

        await self._invoices.create(invoice)

        billed = {call.cdr_id for call in context.rating.rated_calls}
        for cdr in cdrs:
            if cdr.id in billed:
                cdr.invoice_id = invoice.id
        await self._cdrs.save_all(cdrs)

        self._metrics.increment(INVOICES_GENERATED_TOTAL, type=invoice_type.value)
        logger.info(
            "Invoice finalized",
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            invoice_type=invoice_type.value,
            subscription_id=invoice.subscription_id,
            total_paise=invoice.total_paise,
            rating_failures=len(context.rating.failures),
        )
        return InvoiceBuildResult(invoice=invoice, rating_failures=list(context.rating.failures))

    async def _next_invoice_number(self, issue_date: date) -> str:
        month = issue_date.strftime("%Y%m")
        sequence = await self._invoices.next_sequence(month)
        return f"{self._number_prefix}-{month}-{sequence:04d}"

    async def _require_subscription(self, subscription_id: str) -> Subscription:
        subscription = await self._subscriptions.get(subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    async def _require_customer(self, customer_id: str) -> Customer:
        customer = await self._customers.get(customer_id)
        if customer is None:
            raise NotFoundError("Customer", customer_id)
        return customer

    def _plan_switches(self, subscription: Subscription) -> List[PlanSwitch]:
        switches: List[PlanSwitch] = []
        for change in subscription.plan_changes:
            switches.append(PlanSwitch(
                from_plan=self._plan_version(change.from_plan_id, change.from_plan_version),
                to_plan=self._plan_version(change.to_plan_id, change.to_plan_version),
                effective_on=change.effective_on,
            ))
        return switches

    def _plan_version(self, plan_id: str, version: int) -> RatePlan:
        plan = self._catalog.get_version(plan_id, version)
        if plan is None:
            raise NotFoundError("RatePlan", f"{plan_id} v{version}")
        return plan

    @staticmethod
    def _unbilled_ids(cdrs: List[CDR]) -> Set[str]:
        return {cdr.id for cdr in cdrs if cdr.invoice_id is None}
