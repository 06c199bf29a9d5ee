"""CLI command modules."""

from .calculate import prorate, rate, tax
from .catalog import classify, plans
from .cycle import run_cycle

__all__ = [
    "plans",
    "classify",
    "tax",
    "prorate",
    "rate",
    "run_cycle",
]
