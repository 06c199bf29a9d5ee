"""Billing-cycle command."""

import asyncio
import sys
from datetime import date, datetime
from typing import Any, Dict, Optional

import click

from telebill_core.billing.base import BillingError
from telebill_core.billing.engine import BillingEngine
from telebill_core.billing.money import format_inr

from ..utils.loader import load_dataset, read_json
from ..utils.output import format_output, print_error, print_success, print_table, print_warning


async def _run(engine: BillingEngine, dataset: Dict[str, Any], as_of: date) -> Dict[str, Any]:
    await load_dataset(engine, dataset)
    report = await engine.run_billing_cycle(as_of)

    invoices = []
    for result in report.succeeded:
        invoice = await engine.get_invoice(result.invoice_id)
        invoices.append(invoice.to_dict())

    return {"report": report.to_dict(), "invoices": invoices}


@click.command("run-cycle")
@click.argument("dataset_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--as-of", type=click.DateTime(formats=["%Y-%m-%d"]), default=None,
              help="Run date (YYYY-MM-DD); defaults to today")
@click.pass_context
def run_cycle(ctx: click.Context, dataset_file: str, as_of: Optional[datetime]):
    """Run one billing cycle over a JSON dataset.

    The dataset holds "customers", "subscriptions" and "cdrs" lists. Every
    subscription whose current period ended before the run date is invoiced.

    \b
    Examples:
      telebill run-cycle dataset.json --as-of 2024-02-01
      telebill -o json run-cycle dataset.json --as-of 2024-02-01
    """
    run_date = as_of.date() if as_of else date.today()

    try:
        dataset = read_json(dataset_file)
    except ValueError as e:
        print_error(f"Invalid JSON in {dataset_file}: {e}")
        sys.exit(1)

    engine = BillingEngine.from_settings(ctx.obj["settings"])
    try:
        outcome = asyncio.run(_run(engine, dataset, run_date))
    except BillingError as e:
        print_error(f"Could not load dataset: {e.message}")
        sys.exit(1)

    if ctx.obj["output"] != "table":
        format_output(outcome, ctx.obj["output"])
        return

    report = outcome["report"]
    print_table(
        [
            {
                "subscription": r["subscription_id"],
                "outcome": r["outcome"],
                "invoice": r["invoice_id"],
                "reason": r["reason"],
                "failed_cdrs": len(r["rating_failures"]),
            }
            for r in report["results"]
        ],
        title=f"Billing cycle as of {report['as_of']}",
    )
    print_table(
        [
            {
                "number": inv["invoice_number"],
                "customer": inv["customer_id"],
                "type": inv["invoice_type"],
                "subtotal": format_inr(inv["subtotal_paise"]),
                "tax": format_inr(inv["tax_paise"]),
                "total": format_inr(inv["total_paise"]),
                "due": inv["due_date"],
            }
            for inv in outcome["invoices"]
        ],
        title="Invoices",
    )

    if report["failed"]:
        print_warning(f"{report['failed']} of {report['total']} subscriptions failed")
    else:
        print_success(f"{report['succeeded']} subscriptions invoiced")
