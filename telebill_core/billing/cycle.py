"""
Billing Cycle

Batch invoicing of due subscriptions. Subscriptions are billed
concurrently and independently; one subscription failing or timing out is
reported and never stops the batch.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from .base import BillingError, SubscriptionStore, utc_now
from .invoice import InvoiceService
from .metrics import (
    BILLING_CYCLE_DURATION_SECONDS,
    BILLING_CYCLE_SUBSCRIPTIONS_TOTAL,
    MetricsRecorder,
    NoopMetricsRecorder,
)
from .subscription import SubscriptionManager
from .usage import RatingFailure


logger = structlog.get_logger(__name__)


class RunOutcome(str, Enum):
    """Per-subscription outcome of a billing run."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class SubscriptionRunResult:
    """Outcome for one subscription."""

    subscription_id: str
    outcome: RunOutcome
    reason: Optional[str] = None
    invoice_id: Optional[str] = None
    rating_failures: List[RatingFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "invoice_id": self.invoice_id,
            "rating_failures": [f.to_dict() for f in self.rating_failures],
        }


@dataclass
class BillingRunReport:
    """Report of one billing-cycle run."""

    as_of: date
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: List[SubscriptionRunResult] = field(default_factory=list)

    @property
    def succeeded(self) -> List[SubscriptionRunResult]:
        return [r for r in self.results if r.outcome == RunOutcome.SUCCEEDED]

    @property
    def failed(self) -> List[SubscriptionRunResult]:
        return [r for r in self.results if r.outcome == RunOutcome.FAILED]

    def result_for(self, subscription_id: str) -> Optional[SubscriptionRunResult]:
        for result in self.results:
            if result.subscription_id == subscription_id:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "as_of": self.as_of.isoformat(),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "total": len(self.results),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "results": [r.to_dict() for r in self.results],
        }


class BillingCycleOrchestrator:
    """
    Invoices every subscription whose current period closed before ``as_of``.

    Each subscription gets one invoice for its current period, then moves to
    the next period. A subscription several periods behind catches up one
    period per run.
    """

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        invoice_service: InvoiceService,
        subscription_manager: SubscriptionManager,
        metrics: Optional[MetricsRecorder] = None,
        max_concurrency: int = 10,
        timeout_seconds: float = 30.0,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._subscriptions = subscriptions
        self._invoice_service = invoice_service
        self._subscription_manager = subscription_manager
        self._metrics = metrics or NoopMetricsRecorder()
        self._max_concurrency = max_concurrency
        self._timeout_seconds = timeout_seconds

    async def run(self, as_of: date) -> BillingRunReport:
        """Run one billing cycle."""
        report = BillingRunReport(as_of=as_of, started_at=utc_now())
        started = time.monotonic()

        due = await self._subscriptions.list_due(as_of)
        logger.info("Billing cycle started", as_of=as_of.isoformat(), due=len(due))

        semaphore = asyncio.Semaphore(self._max_concurrency)
        report.results = list(await asyncio.gather(*(
            self._bill_subscription(subscription.id, as_of, semaphore)
            for subscription in due
        )))

        report.finished_at = utc_now()
        self._metrics.observe(BILLING_CYCLE_DURATION_SECONDS, time.monotonic() - started)
        logger.info(
            "Billing cycle finished",
            as_of=as_of.isoformat(),
            succeeded=len(report.succeeded),
            failed=len(report.failed),
        )
        return report

    async def _bill_subscription(
        self,
        subscription_id: str,
        as_of: date,
        semaphore: asyncio.Semaphore,
    ) -> SubscriptionRunResult:
        async with semaphore:
            try:
                result = await asyncio.wait_for(
                    self._invoice_and_advance(subscription_id, as_of),
                    timeout=self._timeout_seconds,
                )
            except asyncio.TimeoutError:
                reason = f"timed out after {self._timeout_seconds}s"
                logger.warning("Subscription billing timed out", subscription_id=subscription_id)
                result = SubscriptionRunResult(subscription_id, RunOutcome.FAILED, reason)
            except BillingError as e:
                logger.error(
                    "Subscription billing failed",
                    subscription_id=subscription_id,
                    code=e.code,
                    error=e.message,
                )
                result = SubscriptionRunResult(subscription_id, RunOutcome.FAILED, e.message)
            except Exception as e:
                logger.exception("Unexpected error billing subscription", subscription_id=subscription_id)
                result = SubscriptionRunResult(subscription_id, RunOutcome.FAILED, str(e))

        self._metrics.increment(BILLING_CYCLE_SUBSCRIPTIONS_TOTAL, outcome=result.outcome.value)
        return result

    async def _invoice_and_advance(self, subscription_id: str, as_of: date) -> SubscriptionRunResult:
        build = await self._invoice_service.generate_for_subscription(subscription_id, issue_date=as_of)
        await self._subscription_manager.advance_period(subscription_id)
        return SubscriptionRunResult(
            subscription_id=subscription_id,
            outcome=RunOutcome.SUCCEEDED,
            invoice_id=build.invoice.id,
            rating_failures=build.rating_failures,
        )
