"""
Request Validation

Typed request structs for data entering the engine from outside (CDR feeds,
payment-gateway adapters, admin actions). Each struct's ``validate()``
returns a list of field errors; ``raise_for_errors`` turns a non-empty list
into a ValidationError.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from .base import (
    CDR,
    BillingCycle,
    BillingError,
    CallDirection,
    PaymentEventType,
    SubscriptionAddon,
    generate_id,
)


@dataclass
class FieldError:
    """Validation failure for one field."""

    field: str
    message: str
    code: str = "invalid"

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message, "code": self.code}


class ValidationError(BillingError):
    """A request failed field-level validation."""

    def __init__(self, errors: List[FieldError]):
        self.errors = errors
        summary = "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(
            f"Validation failed: {summary}",
            "validation_error",
            {"errors": [e.to_dict() for e in errors]},
        )


def raise_for_errors(errors: List[FieldError]) -> None:
    """Raise ValidationError if any field errors were collected."""
    if errors:
        raise ValidationError(errors)


def parse_datetime(value: Any) -> Any:
    """Parse ISO-8601 timestamps; other values are returned unchanged."""
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value


def parse_date(value: Any) -> Any:
    """Parse ISO-8601 dates; other values are returned unchanged."""
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError:
            return value
    return value


def _require_text(errors: List[FieldError], name: str, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        errors.append(FieldError(name, "is required", "required"))


def _require_int(errors: List[FieldError], name: str, value: Any, minimum: int) -> bool:
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(FieldError(name, "must be an integer", "type"))
        return False
    if value < minimum:
        errors.append(FieldError(name, f"must be at least {minimum}", "range"))
        return False
    return True


def _require_choice(errors: List[FieldError], name: str, value: Any, choices: Any) -> None:
    allowed = [c.value for c in choices]
    if value not in allowed:
        errors.append(FieldError(name, f"must be one of {', '.join(allowed)}", "choice"))


@dataclass
class CDRRecordRequest:
    """A call detail record as delivered by the switch."""

    account_id: str
    duration_seconds: int
    billable_seconds: int
    direction: str
    timestamp: datetime
    callee_number: Optional[str] = None
    subscription_id: Optional[str] = None
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CDRRecordRequest":
        return cls(
            account_id=data.get("account_id"),
            duration_seconds=data.get("duration_seconds"),
            billable_seconds=data.get("billable_seconds"),
            direction=data.get("direction"),
            timestamp=parse_datetime(data.get("timestamp")),
            callee_number=data.get("callee_number"),
            subscription_id=data.get("subscription_id"),
            id=data.get("id"),
        )

    def validate(self) -> List[FieldError]:
        errors: List[FieldError] = []
        _require_text(errors, "account_id", self.account_id)
        if self.subscription_id is not None:
            _require_text(errors, "subscription_id", self.subscription_id)
        if self.id is not None:
            _require_text(errors, "id", self.id)
        duration_ok = _require_int(errors, "duration_seconds", self.duration_seconds, 0)
        billable_ok = _require_int(errors, "billable_seconds", self.billable_seconds, 0)
        if duration_ok and billable_ok and self.billable_seconds > self.duration_seconds:
            errors.append(FieldError(
                "billable_seconds", "must not exceed duration_seconds", "range",
            ))
        _require_choice(errors, "direction", self.direction, CallDirection)
        if not isinstance(self.timestamp, datetime):
            errors.append(FieldError("timestamp", "must be an ISO-8601 timestamp", "type"))
        elif self.timestamp.utcoffset() is None:
            errors.append(FieldError("timestamp", "must include a UTC offset", "timezone"))
        if self.callee_number is not None and not isinstance(self.callee_number, str):
            errors.append(FieldError("callee_number", "must be a string", "type"))
        return errors

    def to_cdr(self) -> CDR:
        """Build a pending CDR. Call ``validate()`` first."""
        return CDR(
            id=self.id or generate_id("cdr"),
            subscription_id=self.subscription_id,
            account_id=self.account_id,
            duration_seconds=self.duration_seconds,
            billable_seconds=self.billable_seconds,
            callee_number=self.callee_number,
            direction=CallDirection(self.direction),
            timestamp=self.timestamp,
        )


@dataclass
class PaymentEventRequest:
    """Normalized payment-gateway event."""

    invoice_id: str
    amount_paise: int
    gateway_reference: str
    event_type: str
    reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentEventRequest":
        return cls(
            invoice_id=data.get("invoice_id"),
            amount_paise=data.get("amount_paise"),
            gateway_reference=data.get("gateway_reference"),
            event_type=data.get("event_type"),
            reason=data.get("reason"),
        )

    def validate(self) -> List[FieldError]:
        errors: List[FieldError] = []
        _require_text(errors, "invoice_id", self.invoice_id)
        _require_int(errors, "amount_paise", self.amount_paise, 1)
        _require_text(errors, "gateway_reference", self.gateway_reference)
        _require_choice(errors, "event_type", self.event_type, PaymentEventType)
        return errors

    @property
    def type(self) -> PaymentEventType:
        return PaymentEventType(self.event_type)


@dataclass
class VoidInvoiceRequest:
    """Admin request to void an invoice."""

    invoice_id: str
    reason: str

    def validate(self) -> List[FieldError]:
        errors: List[FieldError] = []
        _require_text(errors, "invoice_id", self.invoice_id)
        _require_text(errors, "reason", self.reason)
        return errors


@dataclass
class CreateSubscriptionRequest:
    """Request to subscribe an account to a rate plan."""

    customer_id: str
    account_id: str
    rate_plan_id: str
    billing_cycle: str
    start_date: date
    align_to_month: bool = False
    addons: List[Dict[str, Any]] = field(default_factory=list)
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CreateSubscriptionRequest":
        return cls(
            customer_id=data.get("customer_id"),
            account_id=data.get("account_id"),
            rate_plan_id=data.get("rate_plan_id"),
            billing_cycle=data.get("billing_cycle", BillingCycle.MONTHLY.value),
            start_date=parse_date(data.get("start_date")),
            align_to_month=bool(data.get("align_to_month", False)),
            addons=list(data.get("addons") or []),
            id=data.get("id"),
        )

    def validate(self) -> List[FieldError]:
        errors: List[FieldError] = []
        _require_text(errors, "customer_id", self.customer_id)
        _require_text(errors, "account_id", self.account_id)
        _require_text(errors, "rate_plan_id", self.rate_plan_id)
        _require_choice(errors, "billing_cycle", self.billing_cycle, BillingCycle)
        if not isinstance(self.start_date, date) or isinstance(self.start_date, datetime):
            errors.append(FieldError("start_date", "must be an ISO-8601 date", "type"))
        if self.align_to_month and self.billing_cycle != BillingCycle.MONTHLY.value:
            errors.append(FieldError(
                "align_to_month", "only monthly subscriptions can align to the month", "invalid",
            ))

        for index, addon in enumerate(self.addons):
            name = f"addons[{index}]"
            if not isinstance(addon, dict):
                errors.append(FieldError(name, "must be an object", "type"))
                continue
            _require_text(errors, f"{name}.code", addon.get("code"))
            _require_int(errors, f"{name}.quantity", addon.get("quantity", 1), 1)
        return errors

    def subscription_addons(self) -> List[SubscriptionAddon]:
        return [
            SubscriptionAddon(code=a["code"], quantity=a.get("quantity", 1))
            for a in self.addons
        ]
