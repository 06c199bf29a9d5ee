"""Telebill CLI - Main entry point."""

from typing import Optional

import click

from telebill_core.billing.config import LOG_LEVELS, get_settings
from telebill_core.core.logging import configure_logging

from . import __version__
from .commands import classify, plans, prorate, rate, run_cycle, tax


@click.group()
@click.version_option(version=__version__, prog_name="telebill")
@click.option("--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table",
              help="Output format")
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False), default=None,
              help="Log level for engine logs, written to stderr [default: TELEBILL_LOG_LEVEL]")
@click.pass_context
def cli(ctx: click.Context, output: str, log_level: Optional[str]):
    """Telebill CLI - Rate telecom usage and issue GST invoices.

    \b
    Examples:
      telebill plans
      telebill classify +919876543210
      telebill tax --subtotal 349 --state Karnataka
      telebill run-cycle dataset.json --as-of 2024-02-01
    """
    ctx.ensure_object(dict)

    settings = get_settings()
    configure_logging(log_level or settings.log_level, settings.log_format)

    ctx.obj["output"] = output
    ctx.obj["settings"] = settings


# Register commands
cli.add_command(plans)
cli.add_command(classify)
cli.add_command(tax)
cli.add_command(prorate)
cli.add_command(rate)
cli.add_command(run_cycle)


def main():
    """Main entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
