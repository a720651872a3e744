"""Data models for raw chain records and reconciled transactions."""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional


class TxStatus(Enum):
    """Execution status of a transaction."""

    SUCCESS = "success"
    FAILED = "failed"


class FetchStream(Enum):
    """Explorer record stream for an address."""

    TXLIST = "txlist"  # Native (normal) transactions
    TOKENTX = "tokentx"  # ERC-20 transfer events


@dataclass(frozen=True)
class FetchCursor:
    """
    Resumable position in one address's record stream.

    The cursor is an explicit value threaded through every page request so
    a retry or a later run resumes from exactly the same position.
    """

    address: str
    stream: FetchStream
    start_block: int = 0
    end_block: Optional[int] = None
    page: int = 1

    def next_page(self) -> "FetchCursor":
        return replace(self, page=self.page + 1)

    def from_block(self, block_number: int) -> "FetchCursor":
        return replace(self, start_block=block_number, page=1)

    def __str__(self) -> str:
        end = self.end_block if self.end_block is not None else "latest"
        return (
            f"{self.stream.value}:{self.address}"
            f"@{self.start_block}-{end}#p{self.page}"
        )


@dataclass(frozen=True)
class RawTransaction:
    """A native (normal) transaction as reported by the explorer."""

    hash: str
    block_number: int
    timestamp: int  # Unix seconds, UTC
    from_address: str
    to_address: Optional[str]
    value: int  # wei
    gas_used: int = 0
    gas_price: int = 0
    status: TxStatus = TxStatus.SUCCESS
    transaction_index: int = 0

    @property
    def gas_cost(self) -> int:
        """Fee paid by the sender in wei."""
        return self.gas_used * self.gas_price

    @property
    def is_failed(self) -> bool:
        return self.status == TxStatus.FAILED

    @property
    def block_time(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    @property
    def date(self) -> date:
        return self.block_time.date()


@dataclass(frozen=True)
class RawTokenTransfer:
    """An ERC-20 Transfer event emitted inside a transaction."""

    transaction_hash: str
    block_number: int
    timestamp: int
    token_address: str
    from_address: str
    to_address: Optional[str]
    amount: int  # Raw integer amount in the token's smallest unit
    token_decimals: int
    log_index: Optional[int] = None
    token_symbol: str = ""
    token_name: str = ""

    @property
    def dedup_key(self) -> tuple:
        """
        Identity of the transfer within the chain.

        Falls back to the transfer's content when the explorer did not
        report a log index.
        """
        if self.log_index is not None:
            return (self.transaction_hash, self.log_index)
        return (
            self.transaction_hash,
            self.token_address,
            self.from_address,
            self.to_address or "",
            self.amount,
        )

    @property
    def sort_key(self) -> tuple:
        """On-chain event order; transfers without a log index sort last."""
        return (
            self.log_index is None,
            self.log_index if self.log_index is not None else 0,
            self.token_address,
            self.from_address,
            self.to_address or "",
            self.amount,
        )


@dataclass(frozen=True)
class AddressHistory:
    """All records of one address, fetched until the streams were exhausted."""

    address: str
    transactions: tuple[RawTransaction, ...] = ()
    token_transfers: tuple[RawTokenTransfer, ...] = ()
    # Cursors positioned after the last page of each stream
    cursors: tuple[FetchCursor, ...] = ()

    @property
    def last_block(self) -> Optional[int]:
        """Highest block number seen in either stream."""
        blocks = [t.block_number for t in self.transactions]
        blocks.extend(t.block_number for t in self.token_transfers)
        return max(blocks) if blocks else None


@dataclass(frozen=True)
class ReconciledTransaction:
    """A native transaction merged with its token transfers."""

    transaction: RawTransaction
    token_transfers: tuple[RawTokenTransfer, ...] = field(default_factory=tuple)

    @property
    def hash(self) -> str:
        return self.transaction.hash

    @property
    def block_number(self) -> int:
        return self.transaction.block_number
