"""Configuration for the billing engine.

Values come from ``TELEBILL_``-prefixed environment variables or a ``.env``
file. Tax rates are fractions (0.09 means 9%).
"""

from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class BillingSettings(BaseSettings):
    """Billing engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="TELEBILL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = "error"
    log_format: str = Field(
        default="console",
        description="Log output format: console or json",
    )

    # Company / jurisdiction
    currency: str = "INR"
    company_name: str = "Telebill Communications"
    company_state: str = "Karnataka"
    company_country: str = "India"
    home_country_code: str = Field(
        default="91",
        description="Dialing code treated as domestic when classifying calls",
    )

    # GST
    cgst_rate: Decimal = Decimal("0.09")
    sgst_rate: Decimal = Decimal("0.09")
    igst_rate: Decimal = Decimal("0.18")

    # Invoicing
    invoice_number_prefix: str = "INV"
    invoice_due_days: int = Field(default=15, ge=0)

    # Billing cycle runs
    billing_max_concurrency: int = Field(default=10, ge=1)
    billing_subscription_timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the log level name."""
        level = v.lower()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        fmt = v.lower()
        if fmt not in ("console", "json"):
            raise ValueError("log_format must be 'console' or 'json'")
        return fmt

    @field_validator("company_state", "company_country")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be blank")
        return v.strip()

    @field_validator("cgst_rate", "sgst_rate", "igst_rate")
    @classmethod
    def validate_rate(cls, v: Decimal) -> Decimal:
        if v < 0 or v > 1:
            raise ValueError("tax rate must be between 0 and 1")
        return v

    @model_validator(mode="after")
    def validate_gst_split(self) -> "BillingSettings":
        """Intra-state components must add up to the inter-state rate."""
        if self.cgst_rate + self.sgst_rate != self.igst_rate:
            raise ValueError("cgst_rate + sgst_rate must equal igst_rate")
        return self


@lru_cache
def get_settings() -> BillingSettings:
    """Get cached settings."""
    return BillingSettings()
