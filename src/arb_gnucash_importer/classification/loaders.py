"""
Mapping file loaders.

A mapping file is a flat document keyed by address. Values are either a
plain string or a table with ``label``, ``category`` and ``description``
keys. JSON, YAML, TOML and CSV are supported; the format is chosen by the
file extension.
"""

from pathlib import Path
from typing import Any, Optional
import logging

import pandas as pd

from ..config import read_structured_file
from ..utils.addresses import coerce_address, is_address, normalize_address
from ..utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

STRUCTURED_KEYS = ("label", "category", "description")


def load_mapping_file(path: Path) -> dict[str, Any]:
    """
    Read a mapping file into ``{address: value}`` with lowercase addresses.

    Args:
        path: Path to the mapping file

    Returns:
        Mapping of normalized address to a string or a dict of fields

    Raises:
        ConfigurationError: If the file is missing, unparsable or has
            invalid keys or values
    """
    if not path.exists():
        raise ConfigurationError(f"Mapping file not found: {path}")

    if path.suffix.lower() == ".csv":
        raw = _read_csv_mapping(path)
    else:
        raw = read_structured_file(path) or {}

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Mapping file {path} must contain a flat mapping")

    mapping: dict[str, Any] = {}
    for key, value in raw.items():
        key = coerce_address(key)
        if not is_address(key):
            raise ConfigurationError(f"Invalid address {key!r} in mapping file {path}")
        mapping[normalize_address(key)] = _validate_value(value, key, path)

    logger.info(f"Loaded {len(mapping)} entries from {path}")
    return mapping


def _validate_value(value: Any, key: Any, path: Path) -> Any:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        unknown = set(value) - set(STRUCTURED_KEYS)
        if unknown:
            raise ConfigurationError(
                f"Unknown field(s) {sorted(unknown)} for {key} in mapping file {path}"
            )
        fields: dict[str, str] = {}
        for name in STRUCTURED_KEYS:
            field_value = value.get(name)
            if field_value is None:
                continue
            if not isinstance(field_value, str):
                raise ConfigurationError(
                    f"Field {name!r} for {key} in mapping file {path} must be text"
                )
            fields[name] = field_value.strip()
        return fields
    raise ConfigurationError(f"Value for {key} in mapping file {path} must be text or a table")


def _read_csv_mapping(path: Path) -> dict[str, Any]:
    """
    Read a CSV mapping with an ``address`` column.

    A second column named ``value`` gives plain string values; columns
    named ``label``, ``category`` or ``description`` give structured values.
    """
    try:
        df = pd.read_csv(path, dtype=str, keep_default_na=False)
    except Exception as e:
        raise ConfigurationError(f"Failed to read CSV mapping {path}: {e}") from e

    columns = {c.strip().lower(): c for c in df.columns}
    if "address" not in columns:
        raise ConfigurationError(f"CSV mapping {path} needs an 'address' column")

    structured = [name for name in STRUCTURED_KEYS if name in columns]
    value_column: Optional[str] = columns.get("value")
    if value_column is None and not structured:
        raise ConfigurationError(
            f"CSV mapping {path} needs a 'value' column or label/category/description columns"
        )

    mapping: dict[str, Any] = {}
    for _, row in df.iterrows():
        address = row[columns["address"]].strip()
        if not address:
            continue
        if value_column is not None:
            mapping[address] = row[value_column]
        else:
            mapping[address] = {
                name: row[columns[name]] for name in structured if row[columns[name]].strip()
            }
    return mapping
