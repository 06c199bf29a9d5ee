"""
Billing Engine

Facade wiring the catalog, rater, builder, ledger and billing-cycle
orchestrator from one settings object.
"""

from datetime import date
from typing import List, Optional, Tuple

import structlog

from .base import (
    CDR,
    CDRStore,
    Customer,
    CustomerStore,
    Invoice,
    InvoiceStore,
    NotFoundError,
    PaymentStore,
    Subscription,
    SubscriptionStore,
)
from .config import BillingSettings, get_settings
from .cycle import BillingCycleOrchestrator, BillingRunReport
from .invoice import (
    InMemoryInvoiceStore,
    InvoiceBuilder,
    InvoiceBuildResult,
    KeyedLockRegistry,
    InvoiceService,
)
from .metrics import MetricsRecorder, NoopMetricsRecorder
from .payment import InMemoryPaymentStore, LedgerResult, PaymentLedger
from .pricing import AddonCatalog, RatePlanCatalog
from .proration import ProrationCalculator
from .reporting import BillingReports, RevenueSummary
from .subscription import (
    InMemoryCustomerStore,
    InMemorySubscriptionStore,
    SubscriptionManager,
)
from .tax import TaxEngine
from .usage import CallTypeClassifier, InMemoryCDRStore, UsageRater, UsageRatingResult
from .validation import (
    CDRRecordRequest,
    CreateSubscriptionRequest,
    FieldError,
    PaymentEventRequest,
    ValidationError,
    VoidInvoiceRequest,
    raise_for_errors,
)


logger = structlog.get_logger(__name__)


class BillingEngine:
    """
    Main billing engine.

    Stores default to in-memory implementations; pass real ones to run
    against persistent storage.
    """

    def __init__(
        self,
        settings: Optional[BillingSettings] = None,
        metrics: Optional[MetricsRecorder] = None,
        catalog: Optional[RatePlanCatalog] = None,
        addons: Optional[AddonCatalog] = None,
        subscriptions: Optional[SubscriptionStore] = None,
        customers: Optional[CustomerStore] = None,
        cdrs: Optional[CDRStore] = None,
        invoices: Optional[InvoiceStore] = None,
        payments: Optional[PaymentStore] = None,
    ):
        """Initialize billing engine."""
        self.settings = settings or get_settings()
        self.metrics = metrics or NoopMetricsRecorder()

        self.catalog = catalog or RatePlanCatalog()
        self.addons = addons or AddonCatalog()

        self._subscriptions = subscriptions or InMemorySubscriptionStore()
        self._customers = customers or InMemoryCustomerStore()
        self._cdrs = cdrs or InMemoryCDRStore()
        self._invoices = invoices or InMemoryInvoiceStore()
        self._payments = payments or InMemoryPaymentStore()

        self._init_components()

    @classmethod
    def from_settings(
        cls,
        settings: BillingSettings,
        metrics: Optional[MetricsRecorder] = None,
    ) -> "BillingEngine":
        """Create an engine with in-memory stores from explicit settings."""
        return cls(settings=settings, metrics=metrics)

    def _init_components(self) -> None:
        """Initialize all billing components."""
        settings = self.settings
        locks = KeyedLockRegistry()

        self.classifier = CallTypeClassifier(settings.home_country_code)
        self.rater = UsageRater(self.classifier, self.metrics)
        self.proration = ProrationCalculator()
        self.tax_engine = TaxEngine(
            company_state=settings.company_state,
            cgst_rate=settings.cgst_rate,
            sgst_rate=settings.sgst_rate,
            igst_rate=settings.igst_rate,
        )
        self.builder = InvoiceBuilder(
            self.tax_engine,
            proration=self.proration,
            addons=self.addons,
            currency=settings.currency,
            due_days=settings.invoice_due_days,
            company_name=settings.company_name,
            company_country=settings.company_country,
        )

        self.subscription_manager = SubscriptionManager(
            self._subscriptions, self._customers, self.catalog, self.addons
        )
        self.invoice_service = InvoiceService(
            invoices=self._invoices,
            subscriptions=self._subscriptions,
            customers=self._customers,
            cdrs=self._cdrs,
            catalog=self.catalog,
            rater=self.rater,
            builder=self.builder,
            locks=locks,
            metrics=self.metrics,
            number_prefix=settings.invoice_number_prefix,
        )
        self.ledger = PaymentLedger(self._invoices, self._payments, locks, self.metrics)
        self.orchestrator = BillingCycleOrchestrator(
            self._subscriptions,
            self.invoice_service,
            self.subscription_manager,
            metrics=self.metrics,
            max_concurrency=settings.billing_max_concurrency,
            timeout_seconds=settings.billing_subscription_timeout_seconds,
        )
        self.reports = BillingReports(self._invoices)

    # Customers and subscriptions

    async def add_customer(self, customer: Customer) -> Customer:
        """Register a billing customer."""
        errors: List[FieldError] = []
        if not customer.id or not customer.id.strip():
            errors.append(FieldError("id", "is required", "required"))
        if not customer.country or not customer.country.strip():
            errors.append(FieldError("country", "is required", "required"))
        raise_for_errors(errors)
        if await self._customers.get(customer.id) is not None:
            raise ValidationError([FieldError("id", "customer already exists", "duplicate")])

        await self._customers.create(customer)
        return customer

    async def create_subscription(self, request: CreateSubscriptionRequest) -> Subscription:
        """Subscribe an account to a rate plan."""
        if request.id and await self._subscriptions.get(request.id) is not None:
            raise ValidationError([FieldError("id", "subscription already exists", "duplicate")])
        return await self.subscription_manager.create_subscription(request)

    async def change_plan(
        self,
        subscription_id: str,
        new_plan_id: str,
        effective: str = "now",
        on_date: Optional[date] = None,
    ) -> Subscription:
        """Switch plans now (settled on this period's invoice) or from the next period."""
        return await self.subscription_manager.change_plan(
            subscription_id, new_plan_id, effective, on_date
        )

    # Usage

    async def record_cdr(self, request: CDRRecordRequest) -> CDR:
        """Validate and store a pending CDR."""
        raise_for_errors(request.validate())
        cdr = request.to_cdr()
        if await self._cdrs.get(cdr.id) is not None:
            raise ValidationError([FieldError("id", "CDR already recorded", "duplicate")])
        if cdr.subscription_id is not None:
            await self.subscription_manager.get_subscription(cdr.subscription_id)

        await self._cdrs.add(cdr)
        logger.debug("CDR recorded", cdr_id=cdr.id, account_id=cdr.account_id)
        return cdr

    async def get_cdr(self, cdr_id: str) -> CDR:
        cdr = await self._cdrs.get(cdr_id)
        if cdr is None:
            raise NotFoundError("CDR", cdr_id)
        return cdr

    async def retry_failed_cdrs(
        self,
        subscription_id: str,
        period: Optional[Tuple[date, date]] = None,
    ) -> UsageRatingResult:
        """
        Move failed CDRs back to pending and re-rate the period.

        Safe to re-run: processed CDRs keep their stored cost.
        """
        subscription = await self.subscription_manager.get_subscription(subscription_id)
        plan = self.catalog.require(subscription.rate_plan_id)
        start, end = period or (subscription.current_period_start, subscription.current_period_end)

        cdrs = await self._cdrs.list_for_subscription(subscription_id, start, end)
        reset = self.rater.reset_failed(cdrs)
        rating = self.rater.rate(plan, cdrs)
        await self._cdrs.save_all(cdrs)

        logger.info(
            "Failed CDRs retried",
            subscription_id=subscription_id,
            retried=reset,
            still_failing=len(rating.failures),
        )
        return rating

    # Invoices

    async def generate_invoice_for_subscription(
        self,
        subscription_id: str,
        issue_date: Optional[date] = None,
    ) -> InvoiceBuildResult:
        """Invoice a subscription's current period (idempotent per period)."""
        return await self.invoice_service.generate_for_subscription(subscription_id, issue_date)

    async def generate_usage_invoice(
        self,
        subscription_id: str,
        period: Optional[Tuple[date, date]] = None,
        issue_date: Optional[date] = None,
    ) -> InvoiceBuildResult:
        return await self.invoice_service.generate_usage_invoice(subscription_id, period, issue_date)

    async def generate_postpaid_invoice(
        self,
        customer_id: str,
        account_id: str,
        plan_id: str,
        period_start: date,
        period_end: date,
        issue_date: Optional[date] = None,
    ) -> InvoiceBuildResult:
        return await self.invoice_service.generate_postpaid_invoice(
            customer_id, account_id, plan_id, period_start, period_end, issue_date
        )

    async def get_invoice(self, invoice_id: str) -> Invoice:
        return await self.invoice_service.get_invoice(invoice_id)

    async def sweep_overdue(self, as_of: date) -> List[Invoice]:
        return await self.invoice_service.sweep_overdue(as_of)

    # Payments

    async def apply_payment(self, invoice_id: str, amount_paise: int, reference: str) -> Invoice:
        """Apply a payment; raises LedgerError on overpayment or a closed invoice."""
        result = await self.ledger.apply_payment(invoice_id, amount_paise, reference)
        return result.invoice

    async def apply_refund(
        self,
        invoice_id: str,
        amount_paise: int,
        reference: str,
        reason: Optional[str] = None,
    ) -> Invoice:
        result = await self.ledger.apply_refund(invoice_id, amount_paise, reference, reason)
        return result.invoice

    async def handle_payment_event(self, event: PaymentEventRequest) -> LedgerResult:
        return await self.ledger.handle_event(event)

    async def void_invoice(self, invoice_id: str, reason: str) -> Invoice:
        return await self.ledger.void_invoice(VoidInvoiceRequest(invoice_id=invoice_id, reason=reason))

    # Billing cycle and reporting

    async def run_billing_cycle(self, as_of: date) -> BillingRunReport:
        return await self.orchestrator.run(as_of)

    async def overdue_invoices(self, as_of: Optional[date] = None) -> List[Invoice]:
        return await self.reports.overdue_invoices(as_of)

    async def revenue_summary(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> RevenueSummary:
        return await self.reports.revenue_summary(start, end)


def create_billing_engine(
    metrics: Optional[MetricsRecorder] = None,
    **settings_overrides,
) -> BillingEngine:
    """Create billing engine with configuration."""
    settings = BillingSettings(**settings_overrides) if settings_overrides else get_settings()
    return BillingEngine.from_settings(settings, metrics=metrics)
