"""
Ledger entry exporters.

Two formats are supported:

* ``csv``: GnuCash multi-split CSV. One row per split, the ``Transaction ID``
  column groups the splits of one transaction.
* ``json``: a list of transaction records with native, token and gas legs.

Output is deterministic: the same entries always produce the same bytes.
Files are written to a temporary file next to the target and renamed into
place, so a failed run never leaves a partial export behind.
"""

from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, TextIO
import json
import logging
import os
import tempfile

import pandas as pd

from ..models.ledger import LedgerEntry, LedgerLeg
from ..pricing import PriceTable, price_key
from ..utils.exceptions import ExportError

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("csv", "json")

CSV_COLUMNS = [
    "Date",
    "Transaction ID",
    "Number",
    "Description",
    "Notes",
    "Account",
    "Commodity",
    "Commodity ID",
    "Amount",
    "Memo",
    "Label",
    "Category",
    "Log Index",
]
PRICE_COLUMN = "Price USD"


def format_amount(amount: Decimal) -> str:
    """Plain decimal notation without exponent or trailing zeros."""
    text = f"{amount:f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if text in ("-0", ""):
        text = "0"
    return text


def _leg_memo(leg: LedgerLeg) -> str:
    return f"{leg.kind.value}: {leg.label}" if leg.label else leg.kind.value


def _leg_price(entry: LedgerEntry, leg: LedgerLeg, prices: Optional[PriceTable]) -> str:
    if prices is None:
        return ""
    price = prices.get(price_key(leg.currency_id, entry.date))
    return format_amount(price) if price is not None else ""


def entries_to_dataframe(
    entries: Iterable[LedgerEntry],
    date_format: str = "%Y-%m-%d",
    prices: Optional[PriceTable] = None,
) -> pd.DataFrame:
    """
    Flatten entries into one row per split.

    Args:
        entries: Ledger entries, already in output order
        date_format: strftime format of the ``Date`` column
        prices: Daily USD prices; adds a ``Price USD`` column when given

    Returns:
        DataFrame with the GnuCash multi-split columns, all values as text
    """
    columns = CSV_COLUMNS + ([PRICE_COLUMN] if prices is not None else [])
    rows: list[dict[str, str]] = []

    for entry in entries:
        for leg in entry.legs:
            row = {
                "Date": entry.block_time.strftime(date_format),
                "Transaction ID": entry.hash,
                "Number": str(entry.block_number),
                "Description": entry.memo,
                "Notes": entry.status.value,
                "Account": leg.account,
                "Commodity": leg.currency,
                "Commodity ID": leg.currency_id,
                "Amount": format_amount(leg.amount),
                "Memo": _leg_memo(leg),
                "Label": entry.label or "",
                "Category": entry.category or "",
                "Log Index": "" if leg.log_index is None else str(leg.log_index),
            }
            if prices is not None:
                row[PRICE_COLUMN] = _leg_price(entry, leg, prices)
            rows.append(row)

    return pd.DataFrame(rows, columns=columns, dtype=str)


def _leg_record(entry: LedgerEntry, leg: LedgerLeg, prices: Optional[PriceTable]) -> dict[str, Any]:
    record: dict[str, Any] = {
        "account": leg.account,
        "address": leg.address,
        "amount": format_amount(leg.amount),
        "category": leg.category,
        "currency": leg.currency,
        "currency_id": leg.currency_id,
        "label": leg.label,
        "log_index": leg.log_index,
        "raw_amount": str(leg.raw_amount),
    }
    if prices is not None:
        record["price_usd"] = _leg_price(entry, leg, prices) or None
    return record


def entry_to_record(
    entry: LedgerEntry,
    date_format: str = "%Y-%m-%d",
    prices: Optional[PriceTable] = None,
) -> dict[str, Any]:
    """JSON record for one transaction."""
    return {
        "hash": entry.hash,
        "block_number": entry.block_number,
        "timestamp": entry.timestamp,
        "date": entry.block_time.strftime(date_format),
        "status": entry.status.value,
        "label": entry.label,
        "category": entry.category,
        "memo": entry.memo,
        "native_legs": [_leg_record(entry, leg, prices) for leg in entry.native_legs],
        "token_legs": [_leg_record(entry, leg, prices) for leg in entry.token_legs],
        "gas_legs": [_leg_record(entry, leg, prices) for leg in entry.gas_legs],
    }


def atomic_write(path: Path, write: Callable[[TextIO], None]) -> None:
    """
    Write a text file through a temporary file in the same directory.

    Raises:
        ExportError: If the file cannot be written
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            write(f)
        # mkstemp creates 0600; exports get the usual umask-based mode
        os.chmod(tmp_name, _default_file_mode())
        os.replace(tmp_name, path)
    except BaseException as e:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        if isinstance(e, OSError):
            raise ExportError(f"Failed to write {path}: {e}") from e
        raise


def _default_file_mode() -> int:
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def export_csv(
    entries: list[LedgerEntry],
    path: Path,
    date_format: str = "%Y-%m-%d",
    prices: Optional[PriceTable] = None,
) -> Path:
    df = entries_to_dataframe(entries, date_format, prices)
    atomic_write(path, lambda f: df.to_csv(f, index=False, lineterminator="\n"))
    logger.info(f"Wrote {len(df)} splits for {len(entries)} transactions to {path}")
    return path


def export_json(
    entries: list[LedgerEntry],
    path: Path,
    date_format: str = "%Y-%m-%d",
    prices: Optional[PriceTable] = None,
) -> Path:
    records = [entry_to_record(entry, date_format, prices) for entry in entries]

    def write(f: TextIO) -> None:
        json.dump(records, f, indent=2, sort_keys=True, ensure_ascii=False)
        f.write("\n")

    atomic_write(path, write)
    logger.info(f"Wrote {len(records)} transactions to {path}")
    return path


def export_entries(
    entries: Iterable[LedgerEntry],
    path: Path,
    fmt: str = "csv",
    date_format: str = "%Y-%m-%d",
    prices: Optional[PriceTable] = None,
) -> Path:
    """
    Export ledger entries in the given format.

    Entries are written ordered by block number then hash; legs keep the
    order the builder gave them (native, gas, tokens by log index).

    Args:
        entries: Ledger entries to export
        path: Output file
        fmt: ``csv`` or ``json``
        date_format: strftime format for dates
        prices: Optional daily USD prices keyed by ``price_key``

    Returns:
        Path to the written file

    Raises:
        ExportError: On an unknown format or a write failure
    """
    if fmt not in EXPORT_FORMATS:
        raise ExportError(f"Unknown export format: {fmt}")

    ordered = sorted(entries, key=lambda e: e.sort_key)
    if fmt == "csv":
        return export_csv(ordered, path, date_format, prices)
    return export_json(ordered, path, date_format, prices)
