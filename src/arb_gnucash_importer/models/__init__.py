"""Data models for the import pipeline."""

from .transaction import (
    TxStatus,
    FetchStream,
    FetchCursor,
    RawTransaction,
    RawTokenTransfer,
    AddressHistory,
    ReconciledTransaction,
)
from .ledger import (
    NATIVE_CURRENCY_ID,
    UNCLASSIFIED,
    Classification,
    LegKind,
    LedgerLeg,
    LedgerEntry,
)
from .report import (
    OrphanTransferWarning,
    MappingOverrideNotice,
    AddressFetchFailure,
    RunSummary,
)

__all__ = [
    "TxStatus",
    "FetchStream",
    "FetchCursor",
    "RawTransaction",
    "RawTokenTransfer",
    "AddressHistory",
    "ReconciledTransaction",
    "NATIVE_CURRENCY_ID",
    "UNCLASSIFIED",
    "Classification",
    "LegKind",
    "LedgerLeg",
    "LedgerEntry",
    "OrphanTransferWarning",
    "MappingOverrideNotice",
    "AddressFetchFailure",
    "RunSummary",
]
