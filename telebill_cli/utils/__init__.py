"""CLI utilities."""

from .loader import cdrs_from_records, customer_from_dict, load_dataset, read_json
from .output import (
    format_output,
    print_error,
    print_json,
    print_success,
    print_table,
    print_warning,
    print_yaml,
)

__all__ = [
    "cdrs_from_records",
    "customer_from_dict",
    "load_dataset",
    "read_json",
    "format_output",
    "print_error",
    "print_json",
    "print_success",
    "print_table",
    "print_warning",
    "print_yaml",
]
