"""Unit tests for GST computation."""

from decimal import ROUND_HALF_UP, Decimal

import pytest

from telebill_core.billing.base import TaxJurisdictionError
from telebill_core.billing.tax import TaxEngine, TaxJurisdiction


class TestTaxJurisdiction:
    """Tests for jurisdiction resolution."""

    def test_same_state_is_intra_state(self, tax_engine):
        assert tax_engine.jurisdiction_for("Karnataka", "India") == TaxJurisdiction.INTRA_STATE

    def test_state_names_are_normalized(self, tax_engine):
        assert tax_engine.jurisdiction_for("  KARNATAKA ", "india") == TaxJurisdiction.INTRA_STATE
        assert tax_engine.jurisdiction_for(
            "Jammu & Kashmir", "IN"
        ) == TaxJurisdiction.INTER_STATE

    def test_other_state_is_inter_state(self, tax_engine):
        assert tax_engine.jurisdiction_for("Maharashtra", "India") == TaxJurisdiction.INTER_STATE

    def test_foreign_country_is_export(self, tax_engine):
        assert tax_engine.jurisdiction_for(None, "Singapore") == TaxJurisdiction.EXPORT

    def test_missing_domestic_state_is_intra_state(self, tax_engine):
        assert tax_engine.jurisdiction_for(None, "India") == TaxJurisdiction.INTRA_STATE

    def test_company_state_override(self, tax_engine):
        assert tax_engine.jurisdiction_for(
            "Maharashtra", "India", company_state="Maharashtra"
        ) == TaxJurisdiction.INTRA_STATE

    def test_unknown_indian_state_raises(self, tax_engine):
        with pytest.raises(TaxJurisdictionError) as exc_info:
            tax_engine.jurisdiction_for("Atlantis", "India")

        assert exc_info.value.code == "tax_jurisdiction_error"
        assert exc_info.value.state == "Atlantis"

    @pytest.mark.parametrize("country", [None, "", "  "])
    def test_blank_country_raises(self, tax_engine, country):
        with pytest.raises(TaxJurisdictionError):
            tax_engine.jurisdiction_for("Karnataka", country)


class TestTaxEngine:
    """Tests for tax amounts."""

    def test_intra_state_scenario(self, tax_engine):
        """Test ₹349 billed within Karnataka."""
        result = tax_engine.compute(34900, "Karnataka", "India", "Karnataka")

        assert result.tax_paise == 6282
        assert result.breakdown.cgst_paise == 3141
        assert result.breakdown.sgst_paise == 3141
        assert result.breakdown.igst_paise is None
        assert 34900 + result.tax_paise == 41182

    def test_inter_state(self, tax_engine):
        result = tax_engine.compute(34900, "Maharashtra")

        assert result.tax_paise == 6282
        assert result.breakdown.igst_paise == 6282
        assert result.breakdown.to_dict() == {"igst": 6282}
        assert result.jurisdiction == TaxJurisdiction.INTER_STATE

    def test_export_is_zero_rated(self, tax_engine):
        result = tax_engine.compute(99900, None, "United States")

        assert result.tax_paise == 0
        assert result.breakdown.is_empty()
        assert result.breakdown.to_dict() == {}
        assert result.jurisdiction == TaxJurisdiction.EXPORT

    def test_zero_subtotal_is_never_taxed(self, tax_engine):
        """Test that a zero subtotal short-circuits before jurisdiction checks."""
        result = tax_engine.compute(0, "Atlantis", "India")

        assert result.tax_paise == 0
        assert result.breakdown.is_empty()
        assert result.jurisdiction is None

    def test_components_round_independently(self, tax_engine):
        """Test that CGST and SGST are each rounded from the subtotal."""
        result = tax_engine.compute(50, "Karnataka")

        # 4.5 paise each, rounded separately
        assert result.breakdown.cgst_paise == 5
        assert result.breakdown.sgst_paise == 5
        assert result.tax_paise == 10

        inter = tax_engine.compute(50, "Goa")
        assert inter.tax_paise == 9

    def test_configured_rates(self):
        engine = TaxEngine(
            company_state="Delhi",
            cgst_rate=Decimal("0.06"),
            sgst_rate=Decimal("0.06"),
            igst_rate=Decimal("0.12"),
        )

        result = engine.compute(10000, "Delhi")

        assert result.breakdown.cgst_paise == 600
        assert result.tax_paise == 1200

    @pytest.mark.parametrize("subtotal", [1, 99, 34900, 99900, 123457])
    def test_intra_state_components_match_rate(self, tax_engine, subtotal):
        result = tax_engine.compute(subtotal, "Karnataka")
        expected = int((Decimal(subtotal) * Decimal("0.09")).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

        assert result.breakdown.cgst_paise == expected
        assert result.breakdown.sgst_paise == expected
