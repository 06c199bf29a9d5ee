"""
Usage Rating

Call classification and CDR rating against a plan's included-minute
allowance. Rating is a pure computation over already-fetched CDRs; stores
live at the edges.
"""

import copy
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

import structlog

from .base import (
    CDR,
    CallDirection,
    CallType,
    CDRStatus,
    CDRStore,
    RatePlan,
    RatingError,
    utc_now,
)
from .metrics import CDRS_RATED_TOTAL, MetricsRecorder, NoopMetricsRecorder
from .money import round_half_up


logger = structlog.get_logger(__name__)


SECONDS_PER_MINUTE = 60

_SEPARATORS = re.compile(r"[\s\-().]")
_DIGITS = re.compile(r"[0-9]+")
_MOBILE = re.compile(r"[6-9][0-9]{9}")
_STD = re.compile(r"0[1-9][0-9]{8,10}")


def billable_minutes(billable_seconds: int) -> int:
    """Round billable seconds up to whole minutes. 1 second bills as 1 minute."""
    if billable_seconds <= 0:
        return 0
    return (billable_seconds + SECONDS_PER_MINUTE - 1) // SECONDS_PER_MINUTE


class CallTypeClassifier:
    """
    Maps a called number to a call-type tier.

    Numbers dialled with ``+`` or ``00`` and a foreign country code are ISD.
    The home country code is stripped before domestic classification.
    Domestic mobile numbers bill as local; numbers dialled with a trunk
    ``0`` and an area code are STD.
    """

    def __init__(self, home_country_code: str = "91"):
        self.home_country_code = home_country_code

    def classify(self, callee_number: Optional[str]) -> CallType:
        """Classify a number, raising RatingError if it is not dialable."""
        if callee_number is None or not callee_number.strip():
            raise RatingError("Missing callee number")

        number = _SEPARATORS.sub("", callee_number)
        international = False
        if number.startswith("+"):
            number = number[1:]
            international = True
        elif number.startswith("00"):
            number = number[2:]
            international = True

        if not _DIGITS.fullmatch(number):
            raise RatingError(f"Invalid callee number: {callee_number!r}")

        if international:
            if not number.startswith(self.home_country_code):
                return CallType.ISD
            number = number[len(self.home_country_code):]
            if not number:
                raise RatingError(f"Invalid callee number: {callee_number!r}")

        if _MOBILE.fullmatch(number):
            return CallType.LOCAL
        if _STD.fullmatch(number):
            return CallType.STD
        return CallType.LOCAL

    def multiplier_for(self, plan: RatePlan, callee_number: Optional[str]) -> Decimal:
        """Get the effective per-minute rate multiplier for a number under a plan."""
        call_type = self.classify(callee_number)
        multiplier = plan.multiplier_for(call_type)
        if multiplier is None:
            raise RatingError(
                f"Plan {plan.id} has no rate multiplier for {call_type.value} calls"
            )
        return multiplier


@dataclass
class RatedCall:
    """Rating outcome for one CDR."""

    cdr_id: str
    call_type: Optional[CallType]
    direction: CallDirection
    minutes: int
    free_minutes: int
    overage_minutes: int
    cost_paise: int
    previously_rated: bool = False


@dataclass
class RatingFailure:
    """A CDR that could not be priced."""

    cdr_id: str
    reason: str

    def to_dict(self) -> Dict[str, str]:
        return {"cdr_id": self.cdr_id, "reason": self.reason}


@dataclass
class CallTypeUsage:
    """Usage aggregated per call type or direction."""

    calls: int = 0
    minutes: int = 0
    overage_minutes: int = 0
    cost_paise: int = 0


@dataclass
class UsageRatingResult:
    """Aggregate rating outcome for a billing period."""

    plan_id: str
    plan_version: int
    included_minutes: int
    rated_calls: List[RatedCall] = field(default_factory=list)
    failures: List[RatingFailure] = field(default_factory=list)

    @property
    def total_minutes(self) -> int:
        return sum(call.minutes for call in self.rated_calls)

    @property
    def free_minutes_used(self) -> int:
        return sum(call.free_minutes for call in self.rated_calls)

    @property
    def overage_minutes(self) -> int:
        return sum(call.overage_minutes for call in self.rated_calls)

    @property
    def overage_cost_paise(self) -> int:
        return sum(call.cost_paise for call in self.rated_calls)

    def subset(self, cdr_ids: Set[str]) -> "UsageRatingResult":
        """Restrict rated calls to the given CDRs. Failures are kept."""
        return UsageRatingResult(
            plan_id=self.plan_id,
            plan_version=self.plan_version,
            included_minutes=self.included_minutes,
            rated_calls=[c for c in self.rated_calls if c.cdr_id in cdr_ids],
            failures=list(self.failures),
        )

    def by_call_type(
        self,
        direction: Optional[CallDirection] = None,
    ) -> Dict[CallType, CallTypeUsage]:
        """
        Aggregate rated calls per call type, optionally for one direction.

        Unclassified zero-length calls are skipped.
        """
        usage: Dict[CallType, CallTypeUsage] = defaultdict(CallTypeUsage)
        for call in self.rated_calls:
            if call.call_type is None:
                continue
            if direction is not None and call.direction != direction:
                continue
            bucket = usage[call.call_type]
            bucket.calls += 1
            bucket.minutes += call.minutes
            bucket.overage_minutes += call.overage_minutes
            bucket.cost_paise += call.cost_paise
        return dict(usage)

    def by_direction(self) -> Dict[CallDirection, CallTypeUsage]:
        """Aggregate rated calls per direction."""
        usage: Dict[CallDirection, CallTypeUsage] = defaultdict(CallTypeUsage)
        for call in self.rated_calls:
            bucket = usage[call.direction]
            bucket.calls += 1
            bucket.minutes += call.minutes
            bucket.overage_minutes += call.overage_minutes
            bucket.cost_paise += call.cost_paise
        return dict(usage)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "plan_version": self.plan_version,
            "included_minutes": self.included_minutes,
            "calls_rated": len(self.rated_calls),
            "total_minutes": self.total_minutes,
            "free_minutes_used": self.free_minutes_used,
            "overage_minutes": self.overage_minutes,
            "overage_cost_paise": self.overage_cost_paise,
            "failures": [f.to_dict() for f in self.failures],
        }


def _rating_order(cdr: CDR) -> Any:
    # Naive timestamps are taken as UTC so mixed records still sort
    timestamp = cdr.timestamp
    if timestamp.utcoffset() is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return (timestamp, cdr.sequence, cdr.id)


class UsageRater:
    """
    Rates CDRs against a plan's shared included-minute pool.

    CDRs are walked in timestamp order (ties by insertion order). Each call's
    minutes first draw from the remaining allowance; minutes beyond it are
    billed at the overage rate times the call-type multiplier, rounded to the
    paise per call.

    Processed CDRs are never re-priced: they keep their stored cost and the
    allowance they consumed, so re-running a period is idempotent. Pending
    and failed CDRs are (re)rated. A CDR that cannot be priced is marked
    failed and reported; the rest of the batch continues.
    """

    def __init__(
        self,
        classifier: Optional[CallTypeClassifier] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.classifier = classifier or CallTypeClassifier()
        self.metrics = metrics or NoopMetricsRecorder()

    def rate(
        self,
        plan: RatePlan,
        cdrs: List[CDR],
        apply_allowance: bool = True,
        rated_at: Optional[datetime] = None,
    ) -> UsageRatingResult:
        """
        Rate a period's CDRs, updating their processing state in place.

        Args:
            plan: Rate plan to price against
            cdrs: All CDRs of the billing period, in any order
            apply_allowance: False bills every minute as overage (postpaid)
            rated_at: Timestamp recorded on newly processed CDRs

        Returns:
            Aggregated rating result including per-CDR failures
        """
        rated_at = rated_at or utc_now()
        included = plan.included_minutes if apply_allowance else 0

        # Allowance already granted to processed CDRs stays granted
        already_granted = sum(
            cdr.free_minutes or 0 for cdr in cdrs if cdr.is_processed()
        )
        allowance_remaining = max(0, included - already_granted)

        result = UsageRatingResult(
            plan_id=plan.id,
            plan_version=plan.version,
            included_minutes=included,
        )

        for cdr in sorted(cdrs, key=_rating_order):
            if cdr.is_processed():
                result.rated_calls.append(self._previously_rated(cdr))
                continue

            try:
                call_type, multiplier = self._price_inputs(plan, cdr)
            except RatingError as e:
                self._mark_failed(cdr, e.message)
                result.failures.append(RatingFailure(cdr_id=cdr.id, reason=e.message))
                continue

            minutes = billable_minutes(cdr.billable_seconds)
            free = min(allowance_remaining, minutes)
            overage = minutes - free
            allowance_remaining -= free

            cost = 0
            if overage > 0:
                cost = round_half_up(Decimal(overage * plan.overage_rate_paise) * multiplier)

            cdr.call_type = call_type
            cdr.billable_minutes = minutes
            cdr.free_minutes = free
            cdr.cost_paise = cost
            cdr.processing_status = CDRStatus.PROCESSED
            cdr.processing_error = None
            cdr.processed_at = rated_at
            self.metrics.increment(CDRS_RATED_TOTAL, status=CDRStatus.PROCESSED.value)

            result.rated_calls.append(RatedCall(
                cdr_id=cdr.id,
                call_type=call_type,
                direction=cdr.direction,
                minutes=minutes,
                free_minutes=free,
                overage_minutes=overage,
                cost_paise=cost,
            ))

        return result

    def reset_failed(self, cdrs: List[CDR]) -> int:
        """Move failed CDRs back to pending for another rating attempt."""
        reset = 0
        for cdr in cdrs:
            if cdr.processing_status == CDRStatus.FAILED:
                cdr.processing_status = CDRStatus.PENDING
                cdr.processing_error = None
                reset += 1
        return reset

    def _price_inputs(
        self, plan: RatePlan, cdr: CDR
    ) -> Tuple[Optional[CallType], Decimal]:
        if cdr.billable_seconds < 0 or cdr.duration_seconds < 0:
            raise RatingError("Negative call duration", cdr.id)
        if cdr.billable_seconds > cdr.duration_seconds:
            raise RatingError("Billable seconds exceed call duration", cdr.id)

        if cdr.billable_seconds == 0:
            # Zero-length calls cost nothing; classify only when possible
            if cdr.callee_number and cdr.callee_number.strip():
                return self.classifier.classify(cdr.callee_number), Decimal("0")
            return None, Decimal("0")

        call_type = self.classifier.classify(cdr.callee_number)
        multiplier = plan.multiplier_for(call_type)
        if multiplier is None:
            raise RatingError(
                f"Plan {plan.id} has no rate multiplier for {call_type.value} calls",
                cdr.id,
            )
        return call_type, multiplier

    def _mark_failed(self, cdr: CDR, reason: str) -> None:
        cdr.processing_status = CDRStatus.FAILED
        cdr.processing_error = reason
        cdr.cost_paise = None
        cdr.billable_minutes = None
        cdr.free_minutes = None
        self.metrics.increment(CDRS_RATED_TOTAL, status=CDRStatus.FAILED.value)
        logger.warning("CDR rating failed", cdr_id=cdr.id, reason=reason)

    @staticmethod
    def _previously_rated(cdr: CDR) -> RatedCall:
        minutes = cdr.billable_minutes
        if minutes is None:
            minutes = billable_minutes(cdr.billable_seconds)
        free = cdr.free_minutes or 0
        return RatedCall(
            cdr_id=cdr.id,
            call_type=cdr.call_type,
            direction=cdr.direction,
            minutes=minutes,
            free_minutes=free,
            overage_minutes=max(0, minutes - free),
            cost_paise=cdr.cost_paise or 0,
            previously_rated=True,
        )


class InMemoryCDRStore(CDRStore):
    """In-memory CDR store implementation."""

    def __init__(self):
        """Initialize in-memory store."""
        self._cdrs: Dict[str, CDR] = {}
        self._sequence = 0

    async def add(self, cdr: CDR) -> None:
        if cdr.id in self._cdrs:
            raise ValueError(f"Duplicate CDR: {cdr.id}")
        self._sequence += 1
        stored = copy.deepcopy(cdr)
        stored.sequence = self._sequence
        self._cdrs[cdr.id] = stored

    async def get(self, cdr_id: str) -> Optional[CDR]:
        cdr = self._cdrs.get(cdr_id)
        return copy.deepcopy(cdr) if cdr else None

    async def list_for_subscription(
        self,
        subscription_id: str,
        start: date,
        end: date,
    ) -> List[CDR]:
        return [
            copy.deepcopy(c) for c in self._cdrs.values()
            if c.subscription_id == subscription_id
            and start <= c.timestamp.date() <= end
        ]

    async def list_for_account(
        self,
        account_id: str,
        start: date,
        end: date,
    ) -> List[CDR]:
        return [
            copy.deepcopy(c) for c in self._cdrs.values()
            if c.account_id == account_id
            and start <= c.timestamp.date() <= end
        ]

    async def save_all(self, cdrs: List[CDR]) -> None:
        for cdr in cdrs:
            stored = self._cdrs.get(cdr.id)
            if stored is None:
                raise ValueError(f"Unknown CDR: {cdr.id}")
            if stored.is_processed():
                # Rating results are frozen; only invoice linkage can be set once
                if stored.invoice_id is None and cdr.invoice_id is not None:
                    stored.invoice_id = cdr.invoice_id
                continue
            self._cdrs[cdr.id] = copy.deepcopy(cdr)
