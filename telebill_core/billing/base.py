"""
Billing Base Types

Core types and data structures for the telecom billing engine.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def generate_id(prefix: str) -> str:
    """Generate a prefixed identifier, e.g. ``inv_3f2a...``."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class BillingCycle(str, Enum):
    """Billing cycle options."""
    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionStatus(str, Enum):
    """Subscription states."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class PlanChangeTiming(str, Enum):
    """When a plan change takes effect."""
    NOW = "now"
    NEXT_CYCLE = "next_cycle"


class CallType(str, Enum):
    """Call-type tiers used for rating."""
    LOCAL = "local"
    STD = "std"
    ISD = "isd"


class CallDirection(str, Enum):
    """Call direction."""
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class CDRStatus(str, Enum):
    """CDR processing states."""
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class InvoiceType(str, Enum):
    """Invoice variants."""
    SUBSCRIPTION = "subscription"
    USAGE = "usage"
    POSTPAID = "postpaid"


class InvoiceStatus(str, Enum):
    """Invoice status states."""
    DRAFT = "draft"
    FINALIZED = "finalized"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"
    VOID = "void"


# Invoices still expecting money
OPEN_INVOICE_STATUSES = frozenset({
    InvoiceStatus.FINALIZED,
    InvoiceStatus.PARTIALLY_PAID,
    InvoiceStatus.OVERDUE,
})


class PaymentStatus(str, Enum):
    """Payment status states."""
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentEventType(str, Enum):
    """Normalized payment-gateway event types."""
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class LineItemType(str, Enum):
    """Kinds of invoice line items."""
    SUBSCRIPTION = "subscription"
    OVERAGE = "overage"
    USAGE = "usage"
    ADDON = "addon"
    SETUP_FEE = "setup_fee"
    PLAN_CHANGE = "plan_change"


@dataclass(frozen=True)
class RatePlan:
    """Rate plan definition. Revisions are published as new versions."""

    id: str
    name: str
    monthly_price_paise: int
    annual_price_paise: int
    included_minutes: int
    overage_rate_paise: int
    call_type_multipliers: Dict[CallType, Decimal]
    setup_fee_paise: int = 0
    is_active: bool = True
    version: int = 1
    description: str = ""

    def price_for(self, cycle: BillingCycle) -> int:
        """Get the full-period fee for a billing cycle."""
        if cycle == BillingCycle.ANNUAL:
            return self.annual_price_paise
        return self.monthly_price_paise

    def multiplier_for(self, call_type: CallType) -> Optional[Decimal]:
        """Get the rate multiplier for a call type, if configured."""
        return self.call_type_multipliers.get(call_type)


@dataclass(frozen=True)
class Addon:
    """Purchasable addon."""

    code: str
    name: str
    price_paise: int
    recurring: bool = False


@dataclass
class SubscriptionAddon:
    """Addon attached to a subscription."""

    code: str
    quantity: int = 1


@dataclass
class PlanChange:
    """Mid-period plan switch, settled on the period's subscription invoice."""

    from_plan_id: str
    from_plan_version: int
    to_plan_id: str
    to_plan_version: int
    effective_on: date


@dataclass
class Customer:
    """Billing customer record."""

    id: str
    name: str
    country: str = "India"
    state: Optional[str] = None
    email: Optional[str] = None
    gstin: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class Subscription:
    """Customer subscription. ``current_period_end`` is the last billed day."""

    id: str
    customer_id: str
    account_id: str
    rate_plan_id: str
    billing_cycle: BillingCycle
    current_period_start: date
    current_period_end: date
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE

    activated_on: Optional[date] = None
    cancelled_on: Optional[date] = None
    addons: List[SubscriptionAddon] = field(default_factory=list)

    # Plan changes in the current period, and one waiting for the next period
    plan_changes: List[PlanChange] = field(default_factory=list)
    scheduled_plan_id: Optional[str] = None

    created_at: datetime = field(default_factory=utc_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_active(self) -> bool:
        """Check if subscription is in active state."""
        return self.status == SubscriptionStatus.ACTIVE

    def is_due(self, as_of: date) -> bool:
        """Check whether the current period has closed and can be invoiced."""
        return self.is_active() and self.current_period_end < as_of


@dataclass
class CDR:
    """Call detail record."""

    id: str
    subscription_id: Optional[str]
    account_id: str
    duration_seconds: int
    billable_seconds: int
    callee_number: Optional[str]
    direction: CallDirection
    timestamp: datetime

    # Rating results
    cost_paise: Optional[int] = None
    processing_status: CDRStatus = CDRStatus.PENDING
    call_type: Optional[CallType] = None
    billable_minutes: Optional[int] = None
    free_minutes: Optional[int] = None
    processing_error: Optional[str] = None
    processed_at: Optional[datetime] = None

    # Invoice that billed this call
    invoice_id: Optional[str] = None

    # Insertion order, breaks timestamp ties
    sequence: int = 0

    def is_processed(self) -> bool:
        """Check whether the CDR has been rated."""
        return self.processing_status == CDRStatus.PROCESSED


@dataclass
class LineItem:
    """Line item on an invoice."""

    id: str
    description: str
    quantity: int
    unit_price_paise: int
    amount_paise: int
    item_type: LineItemType
    call_type: Optional[CallType] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "item_type": self.item_type.value,
            "quantity": self.quantity,
            "unit_price_paise": self.unit_price_paise,
            "amount_paise": self.amount_paise,
            "call_type": self.call_type.value if self.call_type else None,
        }


@dataclass
class TaxBreakdown:
    """GST components. Absent components are None."""

    cgst_paise: Optional[int] = None
    sgst_paise: Optional[int] = None
    igst_paise: Optional[int] = None

    @property
    def total_paise(self) -> int:
        return (self.cgst_paise or 0) + (self.sgst_paise or 0) + (self.igst_paise or 0)

    def is_empty(self) -> bool:
        return self.cgst_paise is None and self.sgst_paise is None and self.igst_paise is None

    def to_dict(self) -> Dict[str, int]:
        components = {
            "cgst": self.cgst_paise,
            "sgst": self.sgst_paise,
            "igst": self.igst_paise,
        }
        return {k: v for k, v in components.items() if v is not None}


@dataclass
class Invoice:
    """Billing invoice."""

    id: str
    invoice_number: str
    customer_id: str
    account_id: str
    subscription_id: Optional[str]
    invoice_type: InvoiceType
    status: InvoiceStatus
    currency: str

    # Amounts
    subtotal_paise: int
    tax_paise: int
    total_paise: int
    paid_paise: int
    balance_paise: int
    tax_breakdown: TaxBreakdown

    # Line items
    line_items: List[LineItem]

    # Dates
    issue_date: date
    due_date: date
    period_start: date
    period_end: date
    created_at: datetime = field(default_factory=utc_now)
    finalized_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    void_reason: Optional[str] = None

    # Optimistic concurrency
    version: int = 0

    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_open(self) -> bool:
        """Check if invoice still expects payment."""
        return self.status in OPEN_INVOICE_STATUSES

    def is_past_due(self, as_of: date) -> bool:
        """Check if invoice is past due as of a date."""
        if not self.is_open():
            return False
        return as_of > self.due_date and self.paid_paise < self.total_paise

    def is_reconciled(self) -> bool:
        """Check the amount invariants."""
        return (
            self.total_paise == self.subtotal_paise + self.tax_paise
            and self.balance_paise == self.total_paise - self.paid_paise
            and self.subtotal_paise == sum(item.amount_paise for item in self.line_items)
            and 0 <= self.paid_paise <= self.total_paise
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "invoice_type": self.invoice_type.value,
            "status": self.status.value,
            "customer_id": self.customer_id,
            "account_id": self.account_id,
            "subscription_id": self.subscription_id,
            "currency": self.currency,
            "subtotal_paise": self.subtotal_paise,
            "tax_paise": self.tax_paise,
            "total_paise": self.total_paise,
            "paid_paise": self.paid_paise,
            "balance_paise": self.balance_paise,
            "tax_breakdown": self.tax_breakdown.to_dict(),
            "line_items": [item.to_dict() for item in self.line_items],
            "issue_date": self.issue_date.isoformat(),
            "due_date": self.due_date.isoformat(),
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "void_reason": self.void_reason,
            "supplier": self.metadata.get("supplier"),
        }


@dataclass
class Payment:
    """Payment transaction record."""

    id: str
    invoice_id: str
    amount_paise: int
    status: PaymentStatus
    gateway_reference: str
    refunded_paise: int = 0
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    refunded_at: Optional[datetime] = None

    @property
    def refundable_paise(self) -> int:
        if self.status not in (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED):
            return 0
        return self.amount_paise - self.refunded_paise


@dataclass
class Refund:
    """Refund applied against an invoice."""

    id: str
    invoice_id: str
    amount_paise: int
    gateway_reference: str
    reason: Optional[str] = None
    payment_ids: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)


# Storage interfaces

class SubscriptionStore(ABC):
    """Abstract subscription storage interface."""

    @abstractmethod
    async def create(self, subscription: Subscription) -> None:
        """Create subscription."""
        pass

    @abstractmethod
    async def get(self, subscription_id: str) -> Optional[Subscription]:
        """Get subscription by ID."""
        pass

    @abstractmethod
    async def update(self, subscription: Subscription) -> None:
        """Update subscription."""
        pass

    @abstractmethod
    async def list_due(self, as_of: date) -> List[Subscription]:
        """List active subscriptions whose current period closed before ``as_of``."""
        pass


class CustomerStore(ABC):
    """Abstract customer storage interface."""

    @abstractmethod
    async def create(self, customer: Customer) -> None:
        """Create customer."""
        pass

    @abstractmethod
    async def get(self, customer_id: str) -> Optional[Customer]:
        """Get customer by ID."""
        pass


class CDRStore(ABC):
    """Abstract CDR storage interface."""

    @abstractmethod
    async def add(self, cdr: CDR) -> None:
        """Store a new CDR."""
        pass

    @abstractmethod
    async def get(self, cdr_id: str) -> Optional[CDR]:
        """Get CDR by ID."""
        pass

    @abstractmethod
    async def list_for_subscription(
        self,
        subscription_id: str,
        start: date,
        end: date,
    ) -> List[CDR]:
        """List CDRs for a subscription with timestamps within [start, end]."""
        pass

    @abstractmethod
    async def list_for_account(
        self,
        account_id: str,
        start: date,
        end: date,
    ) -> List[CDR]:
        """List CDRs for an account with timestamps within [start, end]."""
        pass

    @abstractmethod
    async def save_all(self, cdrs: List[CDR]) -> None:
        """Persist rating results for a batch of CDRs."""
        pass


class InvoiceStore(ABC):
    """Abstract invoice storage interface."""

    @abstractmethod
    async def create(self, invoice: Invoice) -> None:
        """
        Create invoice.

        Must reject a second subscription invoice for the same subscription
        period, and a second postpaid invoice for the same account period.
        """
        pass

    @abstractmethod
    async def get(self, invoice_id: str) -> Optional[Invoice]:
        """Get invoice by ID."""
        pass

    @abstractmethod
    async def update(self, invoice: Invoice, expected_version: int) -> Invoice:
        """
        Update invoice if the stored version matches ``expected_version``.

        Returns the stored invoice with its version incremented.
        """
        pass

    @abstractmethod
    async def find_for_period(
        self,
        subscription_id: str,
        invoice_type: InvoiceType,
        period_start: date,
    ) -> Optional[Invoice]:
        """Find a previously generated invoice for a subscription period."""
        pass

    @abstractmethod
    async def find_for_account_period(
        self,
        account_id: str,
        invoice_type: InvoiceType,
        period_start: date,
    ) -> Optional[Invoice]:
        """Find a previously generated account-level invoice for a period."""
        pass

    @abstractmethod
    async def has_invoice_for_subscription(
        self,
        subscription_id: str,
        invoice_type: InvoiceType,
    ) -> bool:
        """Check whether a subscription has an invoice of the given type."""
        pass

    @abstractmethod
    async def next_sequence(self, issue_month: str) -> int:
        """Reserve the next invoice-number sequence for a YYYYMM month."""
        pass

    @abstractmethod
    async def list_all(self) -> List[Invoice]:
        """List all invoices."""
        pass


class PaymentStore(ABC):
    """Abstract payment storage interface."""

    @abstractmethod
    async def create(self, payment: Payment) -> None:
        """Record a payment."""
        pass

    @abstractmethod
    async def update(self, payment: Payment) -> None:
        """Update a payment."""
        pass

    @abstractmethod
    async def get_by_reference(self, gateway_reference: str) -> Optional[Payment]:
        """Get payment by gateway reference."""
        pass

    @abstractmethod
    async def list_for_invoice(self, invoice_id: str) -> List[Payment]:
        """List payments for an invoice, oldest first."""
        pass

    @abstractmethod
    async def create_refund(self, refund: Refund) -> None:
        """Record a refund."""
        pass

    @abstractmethod
    async def get_refund_by_reference(self, gateway_reference: str) -> Optional[Refund]:
        """Get refund by gateway reference."""
        pass


# Billing errors

class BillingError(Exception):
    """Base billing error."""

    def __init__(
        self,
        message: str,
        code: str = "billing_error",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.context}


class RatingError(BillingError):
    """A CDR could not be priced."""

    def __init__(self, message: str, cdr_id: Optional[str] = None):
        self.cdr_id = cdr_id
        super().__init__(message, "rating_error", {"cdr_id": cdr_id} if cdr_id else None)


class ProrationError(BillingError):
    """Invalid date range for proration."""

    def __init__(self, message: str):
        super().__init__(message, "proration_error")


class TaxJurisdictionError(BillingError):
    """Unrecognized country/state combination."""

    def __init__(
        self,
        message: str,
        country: Optional[str] = None,
        state: Optional[str] = None,
    ):
        self.country = country
        self.state = state
        super().__init__(
            message,
            "tax_jurisdiction_error",
            {"country": country, "state": state},
        )


class LedgerError(BillingError):
    """Payment or refund would break ledger consistency."""

    def __init__(
        self,
        message: str,
        invoice_id: Optional[str] = None,
        code: str = "ledger_error",
    ):
        self.invoice_id = invoice_id
        super().__init__(message, code, {"invoice_id": invoice_id} if invoice_id else None)


class ConcurrentModificationError(LedgerError):
    """Invoice changed since it was read."""

    def __init__(self, invoice_id: str, expected_version: int, actual_version: int):
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Invoice {invoice_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            invoice_id,
            "concurrent_modification",
        )


class NotFoundError(BillingError):
    """Referenced entity does not exist."""

    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(
            f"{resource} not found: {resource_id}",
            "not_found",
            {"resource": resource, "resource_id": resource_id},
        )


class InvoiceError(BillingError):
    """Invoice could not be assembled."""

    def __init__(self, message: str, invoice_id: Optional[str] = None):
        self.invoice_id = invoice_id
        super().__init__(message, "invoice_error", {"invoice_id": invoice_id} if invoice_id else None)


class SubscriptionError(BillingError):
    """Subscription lifecycle error."""

    def __init__(self, message: str, subscription_id: Optional[str] = None):
        self.subscription_id = subscription_id
        super().__init__(
            message,
            "subscription_error",
            {"subscription_id": subscription_id} if subscription_id else None,
        )
