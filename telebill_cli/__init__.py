"""Telebill CLI - Operator command line for the billing engine."""

__version__ = "1.0.0"
