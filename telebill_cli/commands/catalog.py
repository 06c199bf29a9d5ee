"""Rate plan and call classification commands."""

import sys
from typing import Any, Dict

import click

from telebill_core.billing.base import BillingError, CallType, RatePlan
from telebill_core.billing.money import format_inr, round_half_up
from telebill_core.billing.pricing import RatePlanCatalog
from telebill_core.billing.usage import CallTypeClassifier

from ..utils.output import format_output, print_error


def plan_to_dict(plan: RatePlan) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "name": plan.name,
        "version": plan.version,
        "monthly_price_paise": plan.monthly_price_paise,
        "annual_price_paise": plan.annual_price_paise,
        "setup_fee_paise": plan.setup_fee_paise,
        "included_minutes": plan.included_minutes,
        "overage_rate_paise": plan.overage_rate_paise,
        "multipliers": {
            call_type.value: str(multiplier)
            for call_type, multiplier in plan.call_type_multipliers.items()
        },
    }


@click.command("plans")
@click.pass_context
def plans(ctx: click.Context):
    """List active rate plans.

    \b
    Examples:
      telebill plans
      telebill -o json plans
    """
    catalog = RatePlanCatalog()
    active = catalog.list_active_plans()

    if ctx.obj["output"] == "table":
        rows = [
            {
                "id": plan.id,
                "name": plan.name,
                "monthly": format_inr(plan.monthly_price_paise),
                "annual": format_inr(plan.annual_price_paise),
                "included_minutes": plan.included_minutes,
                "overage_per_min": format_inr(plan.overage_rate_paise),
                "setup_fee": format_inr(plan.setup_fee_paise),
            }
            for plan in active
        ]
        format_output(rows, "table", title="Rate Plans")
    else:
        format_output([plan_to_dict(plan) for plan in active], ctx.obj["output"])


@click.command("classify")
@click.argument("number")
@click.option("--plan", "plan_id", default="starter", show_default=True,
              help="Plan whose multipliers to apply")
@click.pass_context
def classify(ctx: click.Context, number: str, plan_id: str):
    """Classify a called number as local, STD or ISD.

    \b
    Examples:
      telebill classify 9876543210
      telebill classify +14155551234 --plan professional
    """
    settings = ctx.obj["settings"]
    classifier = CallTypeClassifier(settings.home_country_code)

    try:
        plan = RatePlanCatalog().require(plan_id)
        call_type: CallType = classifier.classify(number)
        multiplier = classifier.multiplier_for(plan, number)
    except BillingError as e:
        print_error(e.message)
        sys.exit(1)

    result = {
        "number": number,
        "call_type": call_type.value,
        "plan_id": plan.id,
        "multiplier": str(multiplier),
        "rate_per_minute": format_inr(round_half_up(plan.overage_rate_paise * multiplier)),
    }
    format_output(result, ctx.obj["output"], title="Call Classification")
