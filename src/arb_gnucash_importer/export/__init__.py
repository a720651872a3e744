"""Ledger export formats."""

from .exporters import (
    CSV_COLUMNS,
    EXPORT_FORMATS,
    entries_to_dataframe,
    entry_to_record,
    export_entries,
    format_amount,
)

__all__ = [
    "CSV_COLUMNS",
    "EXPORT_FORMATS",
    "entries_to_dataframe",
    "entry_to_record",
    "export_entries",
    "format_amount",
]
