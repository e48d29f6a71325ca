"""Core module initialization."""

from .logging_config import setup_logging, set_correlation_id, clear_correlation_id

__all__ = [
    "setup_logging",
    "set_correlation_id",
    "clear_correlation_id",
]
