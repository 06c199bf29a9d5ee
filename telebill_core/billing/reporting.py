"""
Billing Reports

Read-only aggregates over stored invoices. Figures are sums of stored
invoice fields; void invoices are excluded from money totals.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from .base import OPEN_INVOICE_STATUSES, Invoice, InvoiceStatus, InvoiceStore


@dataclass
class RevenueSummary:
    """Revenue totals for a range of issue dates."""

    start: Optional[date]
    end: Optional[date]
    invoice_count: int = 0
    invoiced_paise: int = 0
    subtotal_paise: int = 0
    tax_paise: int = 0
    paid_paise: int = 0
    outstanding_paise: int = 0
    overdue_paise: int = 0
    overdue_count: int = 0
    count_by_status: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "invoice_count": self.invoice_count,
            "invoiced_paise": self.invoiced_paise,
            "subtotal_paise": self.subtotal_paise,
            "tax_paise": self.tax_paise,
            "paid_paise": self.paid_paise,
            "outstanding_paise": self.outstanding_paise,
            "overdue_paise": self.overdue_paise,
            "overdue_count": self.overdue_count,
            "count_by_status": dict(self.count_by_status),
        }


class BillingReports:
    """Aggregate queries for finance reporting."""

    def __init__(self, invoices: InvoiceStore):
        self._invoices = invoices

    async def overdue_invoices(self, as_of: Optional[date] = None) -> List[Invoice]:
        """
        Invoices in overdue status, plus (with ``as_of``) open invoices past
        their due date that the sweep has not reached yet.
        """
        result = []
        for invoice in await self._invoices.list_all():
            if invoice.status == InvoiceStatus.OVERDUE:
                result.append(invoice)
            elif as_of is not None and invoice.is_past_due(as_of):
                result.append(invoice)
        result.sort(key=lambda inv: (inv.due_date, inv.invoice_number))
        return result

    async def revenue_summary(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> RevenueSummary:
        """Totals for invoices issued within [start, end]."""
        summary = RevenueSummary(start=start, end=end)
        statuses: Counter = Counter()

        for invoice in await self._invoices.list_all():
            if start is not None and invoice.issue_date < start:
                continue
            if end is not None and invoice.issue_date > end:
                continue

            statuses[invoice.status.value] += 1
            if invoice.status in (InvoiceStatus.VOID, InvoiceStatus.DRAFT):
                continue

            summary.invoice_count += 1
            summary.invoiced_paise += invoice.total_paise
            summary.subtotal_paise += invoice.subtotal_paise
            summary.tax_paise += invoice.tax_paise
            summary.paid_paise += invoice.paid_paise
            if invoice.status in OPEN_INVOICE_STATUSES:
                summary.outstanding_paise += invoice.balance_paise
            if invoice.status == InvoiceStatus.OVERDUE:
                summary.overdue_paise += invoice.balance_paise
                summary.overdue_count += 1

        summary.count_by_status = dict(statuses)
        return summary
