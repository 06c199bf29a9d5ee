"""
Payment Ledger

Applies payments, refunds and voids to invoices. Every write to an invoice
happens under that invoice's lock and is persisted with an optimistic
version check, so a webhook retry racing a manual reconciliation cannot
lose an update.
"""

import copy
from dataclasses import dataclass
from typing import Dict, List, Optional

import structlog

from .base import (
    OPEN_INVOICE_STATUSES,
    Invoice,
    InvoiceStatus,
    InvoiceStore,
    LedgerError,
    NotFoundError,
    Payment,
    PaymentEventType,
    PaymentStatus,
    PaymentStore,
    Refund,
    generate_id,
    utc_now,
)
from .invoice import KeyedLockRegistry
from .metrics import PAYMENTS_APPLIED_TOTAL, MetricsRecorder, NoopMetricsRecorder
from .validation import (
    PaymentEventRequest,
    VoidInvoiceRequest,
    raise_for_errors,
)


logger = structlog.get_logger(__name__)


class InMemoryPaymentStore(PaymentStore):
    """In-memory payment store implementation."""

    def __init__(self):
        self._payments: Dict[str, Payment] = {}
        self._refunds: Dict[str, Refund] = {}

    async def create(self, payment: Payment) -> None:
        self._payments[payment.id] = copy.deepcopy(payment)

    async def update(self, payment: Payment) -> None:
        if payment.id not in self._payments:
            raise NotFoundError("Payment", payment.id)
        self._payments[payment.id] = copy.deepcopy(payment)

    async def get_by_reference(self, gateway_reference: str) -> Optional[Payment]:
        """Most recent payment recorded under a gateway reference."""
        found = None
        for payment in self._payments.values():
            if payment.gateway_reference == gateway_reference:
                found = payment
        return copy.deepcopy(found) if found else None

    async def list_for_invoice(self, invoice_id: str) -> List[Payment]:
        payments = [p for p in self._payments.values() if p.invoice_id == invoice_id]
        payments.sort(key=lambda p: p.created_at)
        return [copy.deepcopy(p) for p in payments]

    async def create_refund(self, refund: Refund) -> None:
        self._refunds[refund.id] = copy.deepcopy(refund)

    async def get_refund_by_reference(self, gateway_reference: str) -> Optional[Refund]:
        for refund in self._refunds.values():
            if refund.gateway_reference == gateway_reference:
                return copy.deepcopy(refund)
        return None


def status_after_payment_change(invoice: Invoice) -> InvoiceStatus:
    """
    Invoice status implied by its paid amount.

    Overdue invoices stay overdue until fully paid.
    """
    if invoice.paid_paise >= invoice.total_paise:
        return InvoiceStatus.PAID
    if invoice.status == InvoiceStatus.OVERDUE:
        return InvoiceStatus.OVERDUE
    if invoice.paid_paise > 0:
        return InvoiceStatus.PARTIALLY_PAID
    return InvoiceStatus.FINALIZED


@dataclass
class LedgerResult:
    """Outcome of a ledger operation."""

    invoice: Invoice
    duplicate: bool = False


class PaymentLedger:
    """
    Ledger of payments and refunds against invoices.

    Payments must not exceed the invoice balance and refunds must not exceed
    the paid amount; violations raise LedgerError rather than being clamped.
    """

    def __init__(
        self,
        invoices: InvoiceStore,
        payments: PaymentStore,
        locks: Optional[KeyedLockRegistry] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        """Initialize payment ledger."""
        self._invoices = invoices
        self._payments = payments
        self._locks = locks or KeyedLockRegistry()
        self._metrics = metrics or NoopMetricsRecorder()

    async def apply_payment(
        self,
        invoice_id: str,
        amount_paise: int,
        gateway_reference: str,
    ) -> LedgerResult:
        """
        Apply a completed payment.

        A repeated gateway reference with the same amount is a no-op.

        Raises:
            LedgerError: Non-positive amount, overpayment, invoice not open,
                or a reference reused with a different amount.
        """
        async with self._locks.lock_for(invoice_id):
            invoice = await self._require_invoice(invoice_id)

            existing = await self._payments.get_by_reference(gateway_reference)
            if existing is not None and existing.status != PaymentStatus.FAILED:
                self._check_replay(
                    existing.invoice_id,
                    existing.amount_paise,
                    invoice_id,
                    amount_paise,
                    gateway_reference,
                )
                logger.info(
                    "Duplicate payment ignored",
                    invoice_id=invoice_id,
                    gateway_reference=gateway_reference,
                )
                return LedgerResult(invoice=invoice, duplicate=True)

            if amount_paise <= 0:
                raise LedgerError("Payment amount must be positive", invoice_id)
            if invoice.status not in OPEN_INVOICE_STATUSES:
                raise LedgerError(
                    f"Cannot apply payment to {invoice.status.value} invoice",
                    invoice_id,
                )
            if amount_paise > invoice.balance_paise:
                raise LedgerError(
                    f"Payment of {amount_paise} exceeds balance of {invoice.balance_paise}",
                    invoice_id,
                )

            invoice.paid_paise += amount_paise
            invoice.balance_paise = invoice.total_paise - invoice.paid_paise
            invoice.status = status_after_payment_change(invoice)
            if invoice.status == InvoiceStatus.PAID:
                invoice.paid_at = utc_now()

            updated = await self._invoices.update(invoice, invoice.version)
            await self._payments.create(Payment(
                id=generate_id("pay"),
                invoice_id=invoice_id,
                amount_paise=amount_paise,
                status=PaymentStatus.COMPLETED,
                gateway_reference=gateway_reference,
            ))

        self._metrics.increment(PAYMENTS_APPLIED_TOTAL, kind="payment")
        logger.info(
            "Payment applied",
            invoice_id=invoice_id,
            amount_paise=amount_paise,
            status=updated.status.value,
            balance_paise=updated.balance_paise,
        )
        return LedgerResult(invoice=updated)

    async def apply_refund(
        self,
        invoice_id: str,
        amount_paise: int,
        gateway_reference: str,
        reason: Optional[str] = None,
    ) -> LedgerResult:
        """
        Apply a refund, allocated to completed payments newest first.

        Raises:
            LedgerError: Non-positive amount, refund exceeding the paid
                amount, void invoice, or a reused reference.
        """
        async with self._locks.lock_for(invoice_id):
            invoice = await self._require_invoice(invoice_id)

            existing = await self._payments.get_refund_by_reference(gateway_reference)
            if existing is not None:
                self._check_replay(
                    existing.invoice_id,
                    existing.amount_paise,
                    invoice_id,
                    amount_paise,
                    gateway_reference,
                )
                logger.info(
                    "Duplicate refund ignored",
                    invoice_id=invoice_id,
                    gateway_reference=gateway_reference,
                )
                return LedgerResult(invoice=invoice, duplicate=True)

            if amount_paise <= 0:
                raise LedgerError("Refund amount must be positive", invoice_id)
            if invoice.status in (InvoiceStatus.VOID, InvoiceStatus.DRAFT):
                raise LedgerError(
                    f"Cannot refund {invoice.status.value} invoice",
                    invoice_id,
                )
            if amount_paise > invoice.paid_paise:
                raise LedgerError(
                    f"Refund of {amount_paise} exceeds paid amount of {invoice.paid_paise}",
                    invoice_id,
                )

            payments = await self._payments.list_for_invoice(invoice_id)
            touched = self._allocate_refund(payments, amount_paise)

            invoice.paid_paise -= amount_paise
            invoice.balance_paise = invoice.total_paise - invoice.paid_paise
            invoice.status = status_after_payment_change(invoice)
            invoice.paid_at = None

            updated = await self._invoices.update(invoice, invoice.version)
            for payment in touched:
                await self._payments.update(payment)
            await self._payments.create_refund(Refund(
                id=generate_id("rfd"),
                invoice_id=invoice_id,
                amount_paise=amount_paise,
                gateway_reference=gateway_reference,
                reason=reason,
                payment_ids=[p.id for p in touched],
            ))

        self._metrics.increment(PAYMENTS_APPLIED_TOTAL, kind="refund")
        logger.info(
            "Refund applied",
            invoice_id=invoice_id,
            amount_paise=amount_paise,
            status=updated.status.value,
            paid_paise=updated.paid_paise,
        )
        return LedgerResult(invoice=updated)

    async def record_failure(
        self,
        invoice_id: str,
        amount_paise: int,
        gateway_reference: str,
        reason: Optional[str] = None,
    ) -> LedgerResult:
        """Record a failed payment attempt. The invoice is unchanged."""
        async with self._locks.lock_for(invoice_id):
            invoice = await self._require_invoice(invoice_id)

            existing = await self._payments.get_by_reference(gateway_reference)
            if existing is not None:
                return LedgerResult(invoice=invoice, duplicate=True)

            await self._payments.create(Payment(
                id=generate_id("pay"),
                invoice_id=invoice_id,
                amount_paise=amount_paise,
                status=PaymentStatus.FAILED,
                gateway_reference=gateway_reference,
                failure_reason=reason,
            ))

        self._metrics.increment(PAYMENTS_APPLIED_TOTAL, kind="failure")
        logger.info(
            "Payment failure recorded",
            invoice_id=invoice_id,
            gateway_reference=gateway_reference,
            reason=reason,
        )
        return LedgerResult(invoice=invoice)

    async def handle_event(self, event: PaymentEventRequest) -> LedgerResult:
        """Dispatch a normalized payment-gateway event."""
        raise_for_errors(event.validate())

        if event.type == PaymentEventType.COMPLETED:
            return await self.apply_payment(
                event.invoice_id, event.amount_paise, event.gateway_reference
            )
        if event.type == PaymentEventType.REFUNDED:
            return await self.apply_refund(
                event.invoice_id, event.amount_paise, event.gateway_reference, event.reason
            )
        return await self.record_failure(
            event.invoice_id, event.amount_paise, event.gateway_reference, event.reason
        )

    async def void_invoice(self, request: VoidInvoiceRequest) -> Invoice:
        """
        Void an invoice by admin action.

        Raises:
            LedgerError: Invoice already void, or money still applied to it
                (refund first).
        """
        raise_for_errors(request.validate())

        async with self._locks.lock_for(request.invoice_id):
            invoice = await self._require_invoice(request.invoice_id)

            if invoice.status == InvoiceStatus.VOID:
                raise LedgerError("Invoice is already void", invoice.id)
            if invoice.paid_paise > 0:
                raise LedgerError(
                    f"Invoice has {invoice.paid_paise} paid; refund before voiding",
                    invoice.id,
                )

            invoice.status = InvoiceStatus.VOID
            invoice.voided_at = utc_now()
            invoice.void_reason = request.reason.strip()
            updated = await self._invoices.update(invoice, invoice.version)

        logger.info("Invoice voided", invoice_id=updated.id, reason=updated.void_reason)
        return updated

    async def list_payments(self, invoice_id: str) -> List[Payment]:
        """List payments recorded against an invoice."""
        return await self._payments.list_for_invoice(invoice_id)

    async def _require_invoice(self, invoice_id: str) -> Invoice:
        invoice = await self._invoices.get(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    @staticmethod
    def _check_replay(
        recorded_invoice_id: str,
        recorded_amount: int,
        invoice_id: str,
        amount_paise: int,
        gateway_reference: str,
    ) -> None:
        if recorded_invoice_id != invoice_id or recorded_amount != amount_paise:
            raise LedgerError(
                f"Gateway reference {gateway_reference} was already used "
                f"for a different amount or invoice",
                invoice_id,
            )

    @staticmethod
    def _allocate_refund(payments: List[Payment], amount_paise: int) -> List[Payment]:
        remaining = amount_paise
        touched: List[Payment] = []
        now = utc_now()

        for payment in reversed(payments):
            if remaining == 0:
                break
            refundable = payment.refundable_paise
            if refundable == 0:
                continue
            applied = min(refundable, remaining)
            payment.refunded_paise += applied
            payment.refunded_at = now
            payment.status = (
                PaymentStatus.REFUNDED
                if payment.refunded_paise == payment.amount_paise
                else PaymentStatus.PARTIALLY_REFUNDED
            )
            remaining -= applied
            touched.append(payment)

        return touched
