"""Warning records and run summary collected for end-of-run reporting."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .transaction import FetchCursor, RawTokenTransfer


@dataclass(frozen=True)
class OrphanTransferWarning:
    """
    Token transfers whose parent transaction was never fetched.

    One warning is emitted per transaction hash; the transfers are excluded
    from the ledger output.
    """

    transaction_hash: str
    transfers: tuple[RawTokenTransfer, ...]
    reason: str = "unresolved"  # "unresolved" or "evicted"

    @property
    def block_number(self) -> int:
        return min(t.block_number for t in self.transfers)

    def __str__(self) -> str:
        return (
            f"Orphan token transfer(s) in {self.transaction_hash} "
            f"(block {self.block_number}, {len(self.transfers)} transfer(s), "
            f"{self.reason})"
        )


@dataclass(frozen=True)
class MappingOverrideNotice:
    """A later mapping file replaced an earlier value for an address."""

    address: str
    field: str  # "label" or "category"
    previous_value: str
    new_value: str
    source: str

    def __str__(self) -> str:
        return (
            f"{self.field} for {self.address} overridden by {self.source}: "
            f"{self.previous_value!r} -> {self.new_value!r}"
        )


@dataclass(frozen=True)
class AddressFetchFailure:
    """An address whose sub-stream was aborted."""

    address: str
    error: str
    cursor: Optional[FetchCursor] = None

    def __str__(self) -> str:
        resume = f", resume at {self.cursor}" if self.cursor else ""
        return f"Fetch failed for {self.address}: {self.error}{resume}"


@dataclass
class RunSummary:
    """Summary of an export run."""

    run_started: datetime
    addresses: list[str]
    start_block: int
    end_block: Optional[int]

    # Record counts
    transactions_fetched: int = 0
    token_transfers_fetched: int = 0
    duplicates_dropped: int = 0

    # Output counts
    entries_built: int = 0
    failed_transactions: int = 0
    tokens_skipped: int = 0

    # Warnings
    orphan_count: int = 0
    override_count: int = 0
    failed_address_count: int = 0

    # Transactions per tracked address
    entries_by_address: dict[str, int] = field(default_factory=dict)

    processing_time_seconds: float = 0.0
    config_file_used: Optional[str] = None

    @property
    def has_warnings(self) -> bool:
        return bool(self.orphan_count or self.override_count or self.failed_address_count)
