"""
GST Computation

Splits an invoice subtotal into CGST + SGST (intra-state), IGST
(inter-state) or zero tax (export of services).
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .base import TaxBreakdown, TaxJurisdictionError
from .money import apply_rate


INDIA_ALIASES = frozenset({"india", "in", "ind", "bharat"})

# States and union territories
INDIAN_STATES = frozenset({
    "andaman and nicobar islands",
    "andhra pradesh",
    "arunachal pradesh",
    "assam",
    "bihar",
    "chandigarh",
    "chhattisgarh",
    "dadra and nagar haveli and daman and diu",
    "delhi",
    "goa",
    "gujarat",
    "haryana",
    "himachal pradesh",
    "jammu and kashmir",
    "jharkhand",
    "karnataka",
    "kerala",
    "ladakh",
    "lakshadweep",
    "madhya pradesh",
    "maharashtra",
    "manipur",
    "meghalaya",
    "mizoram",
    "nagaland",
    "odisha",
    "puducherry",
    "punjab",
    "rajasthan",
    "sikkim",
    "tamil nadu",
    "telangana",
    "tripura",
    "uttar pradesh",
    "uttarakhand",
    "west bengal",
})


class TaxJurisdiction(str, Enum):
    """How a transaction is taxed."""
    INTRA_STATE = "intra_state"
    INTER_STATE = "inter_state"
    EXPORT = "export"


def _normalize(value: Optional[str]) -> str:
    return " ".join((value or "").replace("&", "and").split()).lower()


def is_india(country: Optional[str]) -> bool:
    return _normalize(country) in INDIA_ALIASES


@dataclass
class TaxResult:
    """Tax computed for one subtotal."""

    tax_paise: int
    breakdown: TaxBreakdown
    jurisdiction: Optional[TaxJurisdiction]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tax_paise": self.tax_paise,
            "breakdown": self.breakdown.to_dict(),
            "jurisdiction": self.jurisdiction.value if self.jurisdiction else None,
        }


class TaxEngine:
    """
    GST engine for a supplier registered in ``company_state``.

    CGST and SGST are each rounded independently, so their sum may differ
    by a paisa from rounding the combined rate.
    """

    def __init__(
        self,
        company_state: str = "Karnataka",
        cgst_rate: Decimal = Decimal("0.09"),
        sgst_rate: Decimal = Decimal("0.09"),
        igst_rate: Decimal = Decimal("0.18"),
    ):
        self.company_state = company_state
        self.cgst_rate = cgst_rate
        self.sgst_rate = sgst_rate
        self.igst_rate = igst_rate

    def jurisdiction_for(
        self,
        customer_state: Optional[str],
        country: Optional[str],
        company_state: Optional[str] = None,
    ) -> TaxJurisdiction:
        """
        Resolve the tax jurisdiction.

        Raises:
            TaxJurisdictionError: Blank country, or an Indian customer state
                that is not a recognized state or union territory.
        """
        if not _normalize(country):
            raise TaxJurisdictionError("Customer country is required", country, customer_state)

        if not is_india(country):
            return TaxJurisdiction.EXPORT

        supplier_state = _normalize(company_state or self.company_state)
        state = _normalize(customer_state)

        # Missing state on a domestic customer is treated as intra-state
        if not state:
            return TaxJurisdiction.INTRA_STATE
        if state not in INDIAN_STATES:
            raise TaxJurisdictionError(
                f"Unrecognized Indian state: {customer_state}",
                country,
                customer_state,
            )
        if state == supplier_state:
            return TaxJurisdiction.INTRA_STATE
        return TaxJurisdiction.INTER_STATE

    def compute(
        self,
        subtotal_paise: int,
        customer_state: Optional[str],
        country: Optional[str] = "India",
        company_state: Optional[str] = None,
    ) -> TaxResult:
        """Compute tax for a subtotal. A zero subtotal is never taxed."""
        if subtotal_paise == 0:
            return TaxResult(tax_paise=0, breakdown=TaxBreakdown(), jurisdiction=None)

        jurisdiction = self.jurisdiction_for(customer_state, country, company_state)

        if jurisdiction == TaxJurisdiction.EXPORT:
            return TaxResult(tax_paise=0, breakdown=TaxBreakdown(), jurisdiction=jurisdiction)

        if jurisdiction == TaxJurisdiction.INTRA_STATE:
            cgst = apply_rate(subtotal_paise, self.cgst_rate)
            sgst = apply_rate(subtotal_paise, self.sgst_rate)
            breakdown = TaxBreakdown(cgst_paise=cgst, sgst_paise=sgst)
        else:
            breakdown = TaxBreakdown(igst_paise=apply_rate(subtotal_paise, self.igst_rate))

        return TaxResult(
            tax_paise=breakdown.total_paise,
            breakdown=breakdown,
            jurisdiction=jurisdiction,
        )
