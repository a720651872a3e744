"""Ledger entry construction."""

from .builder import BuildResult, LedgerEntryBuilder, scale_amount
from .tokens import KNOWN_TOKENS, TokenRegistry

__all__ = [
    "BuildResult",
    "LedgerEntryBuilder",
    "scale_amount",
    "KNOWN_TOKENS",
    "TokenRegistry",
]
