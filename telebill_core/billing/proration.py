"""
Proration

Partial-period charges for subscriptions that do not span a full billing
cycle. Periods are inclusive of both end dates.
"""

import calendar
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional, Tuple

from .base import BillingCycle, ProrationError, Subscription
from .money import round_half_up


# Longest inclusive period a cycle can span
MAX_PERIOD_DAYS = {
    BillingCycle.MONTHLY: 31,
    BillingCycle.ANNUAL: 366,
}


def days_inclusive(start: date, end: date) -> int:
    """Inclusive day count of [start, end]."""
    if end < start:
        raise ProrationError(f"Period end {end} is before start {start}")
    return (end - start).days + 1


def add_months(day: date, months: int) -> date:
    """Add calendar months, clamping to the end of shorter months."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def period_end_for(start: date, cycle: BillingCycle) -> date:
    """Last day of the billing period starting on ``start``."""
    months = 12 if cycle == BillingCycle.ANNUAL else 1
    return add_months(start, months) - timedelta(days=1)


class ProrationCalculator:
    """Computes fractional charges over inclusive date ranges."""

    def prorate(
        self,
        full_period_amount_paise: int,
        period_start: date,
        period_end: date,
        charge_start: date,
        charge_end: date,
        billing_cycle: Optional[BillingCycle] = None,
    ) -> int:
        """
        Prorate a full-period amount to the charged sub-range.

        A charge range equal to the full period returns the amount unchanged.
        Otherwise the result is ``amount * charged_days / period_days`` rounded
        half-up to the paise.

        Raises:
            ProrationError: If a range is inverted, the charge range falls
                outside the period, or the period is longer than its cycle.
        """
        days_in_period = days_inclusive(period_start, period_end)
        days_to_charge = days_inclusive(charge_start, charge_end)

        if billing_cycle is not None and days_in_period > MAX_PERIOD_DAYS[billing_cycle]:
            raise ProrationError(
                f"Period {period_start}..{period_end} spans {days_in_period} days, "
                f"longer than a {billing_cycle.value} cycle"
            )
        if charge_start < period_start or charge_end > period_end:
            raise ProrationError(
                f"Charge range {charge_start}..{charge_end} is outside "
                f"period {period_start}..{period_end}"
            )

        if charge_start == period_start and charge_end == period_end:
            return full_period_amount_paise

        return round_half_up(
            Decimal(full_period_amount_paise) * days_to_charge / days_in_period
        )

    def charge_window(self, subscription: Subscription) -> Optional[Tuple[date, date]]:
        """
        Days of the current period the subscription was live.

        Activation after the period start and cancellation before its end
        narrow the window. Returns None if no day of the period is billable.
        """
        start = subscription.current_period_start
        end = subscription.current_period_end

        if subscription.activated_on and subscription.activated_on > start:
            start = subscription.activated_on
        if subscription.cancelled_on and subscription.cancelled_on < end:
            end = subscription.cancelled_on

        if end < start:
            return None
        return start, end

    def prorate_for_subscription(self, subscription: Subscription, full_period_amount_paise: int) -> int:
        """Prorate an amount over the subscription's billable window."""
        window = self.charge_window(subscription)
        if window is None:
            return 0
        return self.prorate(
            full_period_amount_paise,
            subscription.current_period_start,
            subscription.current_period_end,
            window[0],
            window[1],
            subscription.billing_cycle,
        )
