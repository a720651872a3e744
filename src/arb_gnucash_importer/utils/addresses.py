"""Address helpers."""

from typing import Any, Optional
import re

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-f]{40}$")


def normalize_address(address: Optional[str]) -> Optional[str]:
    """Lowercase and strip an address; empty values become None."""
    if address is None:
        return None
    address = str(address).strip().lower()
    return address or None


def is_address(value: Optional[str]) -> bool:
    """Check for a 42-character 0x-prefixed hex address (any case)."""
    if not value:
        return False
    return bool(ADDRESS_PATTERN.match(value.strip().lower()))


def short_address(address: str) -> str:
    """Abbreviate an address for display, e.g. ``0x1234...abcd``."""
    if len(address) <= 12:
        return address
    return f"{address[:6]}...{address[-4:]}"


def coerce_address(value: Any) -> str:
    """
    Turn a parsed document value back into address text.

    YAML reads unquoted ``0x...`` keys as hexadecimal integers; those are
    rendered back as 40-digit hex.
    """
    if isinstance(value, int) and not isinstance(value, bool) and 0 <= value < 2**160:
        return f"0x{value:040x}"
    return str(value)
