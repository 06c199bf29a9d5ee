# Platform core helpers shared by the billing engine and the CLI

from telebill_core.core.logging import configure_logging, get_logger

__all__ = [
    "configure_logging",
    "get_logger",
]
