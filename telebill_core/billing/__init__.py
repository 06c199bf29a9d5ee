"""
Billing Engine
==============

Usage rating, proration, GST and invoicing for telecom subscriptions,
with a payment ledger and billing-cycle orchestration on top.
"""

from telebill_core.billing.base import (
    CDR,
    Addon,
    BillingCycle,
    BillingError,
    CallDirection,
    CallType,
    CDRStatus,
    ConcurrentModificationError,
    Customer,
    Invoice,
    InvoiceError,
    InvoiceStatus,
    InvoiceType,
    LedgerError,
    LineItem,
    LineItemType,
    NotFoundError,
    Payment,
    PaymentEventType,
    PaymentStatus,
    PlanChange,
    PlanChangeTiming,
    ProrationError,
    RatePlan,
    RatingError,
    Refund,
    Subscription,
    SubscriptionAddon,
    SubscriptionError,
    SubscriptionStatus,
    TaxBreakdown,
    TaxJurisdictionError,
)
from telebill_core.billing.config import BillingSettings, get_settings
from telebill_core.billing.cycle import (
    BillingCycleOrchestrator,
    BillingRunReport,
    RunOutcome,
    SubscriptionRunResult,
)
from telebill_core.billing.engine import BillingEngine, create_billing_engine
from telebill_core.billing.invoice import (
    InMemoryInvoiceStore,
    InvoiceBuilder,
    InvoiceBuildResult,
    InvoiceContext,
    InvoiceService,
    KeyedLockRegistry,
    LineItemGenerator,
)
from telebill_core.billing.metrics import (
    InMemoryMetricsRecorder,
    MetricsRecorder,
    NoopMetricsRecorder,
)
from telebill_core.billing.money import format_inr, from_paise, to_paise
from telebill_core.billing.payment import InMemoryPaymentStore, LedgerResult, PaymentLedger
from telebill_core.billing.pricing import AddonCatalog, RatePlanCatalog
from telebill_core.billing.proration import ProrationCalculator
from telebill_core.billing.reporting import BillingReports, RevenueSummary
from telebill_core.billing.subscription import (
    InMemoryCustomerStore,
    InMemorySubscriptionStore,
    SubscriptionManager,
)
from telebill_core.billing.tax import TaxEngine, TaxJurisdiction, TaxResult
from telebill_core.billing.usage import (
    CallTypeClassifier,
    InMemoryCDRStore,
    RatingFailure,
    UsageRater,
    UsageRatingResult,
)
from telebill_core.billing.validation import (
    CDRRecordRequest,
    CreateSubscriptionRequest,
    FieldError,
    PaymentEventRequest,
    ValidationError,
    VoidInvoiceRequest,
)

__all__ = [
    # Types
    "CDR",
    "Addon",
    "BillingCycle",
    "CallDirection",
    "CallType",
    "CDRStatus",
    "Customer",
    "Invoice",
    "InvoiceStatus",
    "InvoiceType",
    "LineItem",
    "LineItemType",
    "Payment",
    "PaymentEventType",
    "PaymentStatus",
    "PlanChange",
    "PlanChangeTiming",
    "RatePlan",
    "Refund",
    "Subscription",
    "SubscriptionAddon",
    "SubscriptionStatus",
    "TaxBreakdown",
    # Errors
    "BillingError",
    "ConcurrentModificationError",
    "InvoiceError",
    "LedgerError",
    "NotFoundError",
    "ProrationError",
    "RatingError",
    "SubscriptionError",
    "TaxJurisdictionError",
    "ValidationError",
    # Config
    "BillingSettings",
    "get_settings",
    # Components
    "AddonCatalog",
    "RatePlanCatalog",
    "CallTypeClassifier",
    "UsageRater",
    "UsageRatingResult",
    "RatingFailure",
    "ProrationCalculator",
    "TaxEngine",
    "TaxJurisdiction",
    "TaxResult",
    "InvoiceBuilder",
    "InvoiceBuildResult",
    "InvoiceContext",
    "KeyedLockRegistry",
    "InvoiceService",
    "LineItemGenerator",
    "PaymentLedger",
    "LedgerResult",
    "SubscriptionManager",
    "BillingCycleOrchestrator",
    "BillingRunReport",
    "RunOutcome",
    "SubscriptionRunResult",
    "BillingReports",
    "RevenueSummary",
    "BillingEngine",
    "create_billing_engine",
    # Stores
    "InMemoryCDRStore",
    "InMemoryCustomerStore",
    "InMemoryInvoiceStore",
    "InMemoryPaymentStore",
    "InMemorySubscriptionStore",
    # Metrics
    "MetricsRecorder",
    "NoopMetricsRecorder",
    "InMemoryMetricsRecorder",
    # Requests
    "CDRRecordRequest",
    "CreateSubscriptionRequest",
    "FieldError",
    "PaymentEventRequest",
    "VoidInvoiceRequest",
    # Money
    "format_inr",
    "from_paise",
    "to_paise",
]
