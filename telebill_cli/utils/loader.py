"""Dataset loading for offline billing runs."""

import json
from pathlib import Path
from typing import Any, Dict, List

from telebill_core.billing.base import CDR, Customer
from telebill_core.billing.engine import BillingEngine
from telebill_core.billing.validation import (
    CDRRecordRequest,
    CreateSubscriptionRequest,
    FieldError,
    raise_for_errors,
)


def read_json(path: str) -> Any:
    """Read a JSON document from disk."""
    with open(Path(path), "r", encoding="utf-8") as f:
        return json.load(f)


def customer_from_dict(data: Dict[str, Any]) -> Customer:
    """Build a Customer from a dataset record."""
    errors: List[FieldError] = []
    for name in ("id", "name"):
        value = data.get(name)
        if not isinstance(value, str) or not value.strip():
            errors.append(FieldError(name, "is required", "required"))
    raise_for_errors(errors)

    return Customer(
        id=data["id"],
        name=data["name"],
        country=data.get("country", "India"),
        state=data.get("state"),
        email=data.get("email"),
        gstin=data.get("gstin"),
    )


def cdrs_from_records(records: List[Dict[str, Any]]) -> List[CDR]:
    """Validate raw CDR records and build pending CDRs in file order."""
    cdrs = []
    for index, record in enumerate(records):
        request = CDRRecordRequest.from_dict(record)
        if request.id is None:
            request.id = f"cdr_{index + 1}"
        raise_for_errors(request.validate())
        cdr = request.to_cdr()
        cdr.sequence = index + 1
        cdrs.append(cdr)
    return cdrs


async def load_dataset(engine: BillingEngine, data: Dict[str, Any]) -> Dict[str, int]:
    """
    Load customers, subscriptions and CDRs into an engine.

    Records are loaded in that order so subscriptions and CDRs can refer to
    customers and subscriptions defined earlier in the same file.
    """
    counts = {"customers": 0, "subscriptions": 0, "cdrs": 0}

    for record in data.get("customers", []):
        await engine.add_customer(customer_from_dict(record))
        counts["customers"] += 1

    for record in data.get("subscriptions", []):
        await engine.create_subscription(CreateSubscriptionRequest.from_dict(record))
        counts["subscriptions"] += 1

    for record in data.get("cdrs", []):
        await engine.record_cdr(CDRRecordRequest.from_dict(record))
        counts["cdrs"] += 1

    return counts
