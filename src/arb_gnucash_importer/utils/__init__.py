"""Utility modules."""

from .addresses import coerce_address, is_address, normalize_address
from .exceptions import (
    ImporterError,
    ConfigurationError,
    FetchError,
    TransientFetchError,
    FatalFetchError,
    LedgerBalanceError,
    ExportError,
    ReportGenerationError,
    PipelineCancelled,
)
from .logging_config import setup_logging

__all__ = [
    "coerce_address",
    "is_address",
    "normalize_address",
    "ImporterError",
    "ConfigurationError",
    "FetchError",
    "TransientFetchError",
    "FatalFetchError",
    "LedgerBalanceError",
    "ExportError",
    "ReportGenerationError",
    "PipelineCancelled",
    "setup_logging",
]
