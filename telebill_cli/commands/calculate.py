"""Tax, proration and usage-rating calculators."""

import sys
from datetime import datetime
from typing import Optional

import click

from telebill_core.billing.base import BillingCycle, BillingError
from telebill_core.billing.money import format_inr, to_paise
from telebill_core.billing.pricing import RatePlanCatalog
from telebill_core.billing.proration import ProrationCalculator, days_inclusive
from telebill_core.billing.tax import TaxEngine
from telebill_core.billing.usage import CallTypeClassifier, UsageRater

from ..utils.loader import cdrs_from_records, read_json
from ..utils.output import format_output, print_error, print_table, print_warning

DATE = click.DateTime(formats=["%Y-%m-%d"])


def _rupees(value: str, param: str) -> int:
    try:
        return to_paise(value)
    except ValueError:
        raise click.BadParameter(f"{value!r} is not a rupee amount", param_hint=param)


@click.command("tax")
@click.option("--subtotal", required=True, help="Subtotal in rupees, e.g. 349 or 349.50")
@click.option("--state", "customer_state", default=None, help="Customer state")
@click.option("--country", default="India", show_default=True, help="Customer country")
@click.option("--company-state", default=None, help="Supplier state (defaults to settings)")
@click.pass_context
def tax(
    ctx: click.Context,
    subtotal: str,
    customer_state: Optional[str],
    country: str,
    company_state: Optional[str],
):
    """Compute GST on a subtotal.

    \b
    Examples:
      telebill tax --subtotal 349 --state Karnataka
      telebill tax --subtotal 999 --state Maharashtra
      telebill tax --subtotal 999 --country Singapore
    """
    settings = ctx.obj["settings"]
    subtotal_paise = _rupees(subtotal, "--subtotal")
    engine = TaxEngine(
        company_state=settings.company_state,
        cgst_rate=settings.cgst_rate,
        sgst_rate=settings.sgst_rate,
        igst_rate=settings.igst_rate,
    )

    try:
        result = engine.compute(subtotal_paise, customer_state, country, company_state)
    except BillingError as e:
        print_error(e.message)
        sys.exit(1)

    data = {
        "subtotal_paise": subtotal_paise,
        "tax_paise": result.tax_paise,
        "total_paise": subtotal_paise + result.tax_paise,
        "jurisdiction": result.jurisdiction.value if result.jurisdiction else None,
        "breakdown": result.breakdown.to_dict(),
    }

    if ctx.obj["output"] == "table":
        display = {
            "subtotal": format_inr(subtotal_paise),
            "jurisdiction": data["jurisdiction"],
        }
        for component, amount in result.breakdown.to_dict().items():
            display[component] = format_inr(amount)
        display["tax"] = format_inr(result.tax_paise)
        display["total"] = format_inr(data["total_paise"])
        format_output(display, "table", title="GST")
    else:
        format_output(data, ctx.obj["output"])


@click.command("prorate")
@click.option("--amount", required=True, help="Full-period amount in rupees")
@click.option("--period-start", required=True, type=DATE, help="Period start (YYYY-MM-DD)")
@click.option("--period-end", required=True, type=DATE, help="Period end, inclusive (YYYY-MM-DD)")
@click.option("--charge-start", type=DATE, help="First charged day (defaults to period start)")
@click.option("--charge-end", type=DATE, help="Last charged day (defaults to period end)")
@click.option("--cycle", type=click.Choice([c.value for c in BillingCycle]), default=None,
              help="Billing cycle, to reject over-long periods")
@click.pass_context
def prorate(
    ctx: click.Context,
    amount: str,
    period_start: datetime,
    period_end: datetime,
    charge_start: Optional[datetime],
    charge_end: Optional[datetime],
    cycle: Optional[str],
):
    """Prorate a fee over part of a billing period.

    \b
    Examples:
      telebill prorate --amount 349 --period-start 2024-01-01 \\
        --period-end 2024-01-31 --charge-start 2024-01-16
    """
    amount_paise = _rupees(amount, "--amount")
    start = period_start.date()
    end = period_end.date()
    charge_from = charge_start.date() if charge_start else start
    charge_to = charge_end.date() if charge_end else end

    try:
        prorated = ProrationCalculator().prorate(
            amount_paise,
            start,
            end,
            charge_from,
            charge_to,
            BillingCycle(cycle) if cycle else None,
        )
        days_charged = days_inclusive(charge_from, charge_to)
        days_in_period = days_inclusive(start, end)
    except BillingError as e:
        print_error(e.message)
        sys.exit(1)

    data = {
        "amount_paise": amount_paise,
        "prorated_paise": prorated,
        "days_charged": days_charged,
        "days_in_period": days_in_period,
    }
    if ctx.obj["output"] == "table":
        format_output({
            "full_amount": format_inr(amount_paise),
            "days_charged": f"{days_charged}/{days_in_period}",
            "prorated_amount": format_inr(prorated),
        }, "table", title="Proration")
    else:
        format_output(data, ctx.obj["output"])


@click.command("rate")
@click.argument("cdr_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--plan", "plan_id", default="starter", show_default=True, help="Rate plan ID")
@click.option("--postpaid", is_flag=True, help="Bill every minute, ignoring the allowance")
@click.pass_context
def rate(ctx: click.Context, cdr_file: str, plan_id: str, postpaid: bool):
    """Rate CDRs from a JSON file against a plan.

    The file holds a list of CDR records, or an object with a "cdrs" list.

    \b
    Examples:
      telebill rate calls.json --plan professional
    """
    settings = ctx.obj["settings"]

    try:
        document = read_json(cdr_file)
    except ValueError as e:
        print_error(f"Invalid JSON in {cdr_file}: {e}")
        sys.exit(1)
    records = document.get("cdrs", []) if isinstance(document, dict) else document

    try:
        plan = RatePlanCatalog().require(plan_id)
        cdrs = cdrs_from_records(records)
    except BillingError as e:
        print_error(e.message)
        sys.exit(1)

    rater = UsageRater(CallTypeClassifier(settings.home_country_code))
    result = rater.rate(plan, cdrs, apply_allowance=not postpaid)

    if ctx.obj["output"] != "table":
        data = result.to_dict()
        data["calls"] = [
            {
                "cdr_id": call.cdr_id,
                "call_type": call.call_type.value if call.call_type else None,
                "minutes": call.minutes,
                "free_minutes": call.free_minutes,
                "overage_minutes": call.overage_minutes,
                "cost_paise": call.cost_paise,
            }
            for call in result.rated_calls
        ]
        format_output(data, ctx.obj["output"])
        return

    print_table(
        [
            {
                "cdr": call.cdr_id,
                "type": call.call_type.value if call.call_type else "-",
                "minutes": call.minutes,
                "free": call.free_minutes,
                "overage": call.overage_minutes,
                "cost": format_inr(call.cost_paise),
            }
            for call in result.rated_calls
        ],
        title=f"Usage rated against {plan.name} (v{plan.version})",
    )
    format_output({
        "total_minutes": result.total_minutes,
        "free_minutes_used": result.free_minutes_used,
        "overage_minutes": result.overage_minutes,
        "overage_cost": format_inr(result.overage_cost_paise),
    }, "table", title="Summary")
    for failure in result.failures:
        print_warning(f"{failure.cdr_id}: {failure.reason}")
