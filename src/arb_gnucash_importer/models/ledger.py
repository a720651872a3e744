"""Data models for classifications and double-entry ledger output."""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from .transaction import TxStatus

NATIVE_CURRENCY_ID = "native"


@dataclass(frozen=True)
class Classification:
    """User-supplied label and category for an address."""

    label: Optional[str] = None
    category: Optional[str] = None

    @property
    def is_classified(self) -> bool:
        return bool(self.label or self.category)


UNCLASSIFIED = Classification()


class LegKind(Enum):
    """What a ledger leg represents."""

    NATIVE = "native"  # Native value transfer
    GAS = "gas"  # Transaction fee
    TOKEN = "token"  # ERC-20 transfer


@dataclass(frozen=True)
class LedgerLeg:
    """
    One split of a ledger entry.

    Signs follow the movement of value: the sending side is negative and
    the receiving side positive, so the legs of one currency sum to zero.
    """

    account: str
    currency: str  # Display code, e.g. "ETH" or "USDC"
    currency_id: str  # "native" or the token contract address
    amount: Decimal  # Signed display amount
    raw_amount: int  # Signed amount in the currency's smallest unit
    kind: LegKind
    address: Optional[str] = None
    log_index: Optional[int] = None
    label: Optional[str] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class LedgerEntry:
    """Balanced ledger entry for a single transaction hash."""

    hash: str
    block_number: int
    timestamp: int
    status: TxStatus
    legs: tuple[LedgerLeg, ...]
    label: Optional[str] = None
    category: Optional[str] = None
    memo: str = ""

    @property
    def block_time(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    @property
    def date(self) -> date:
        return self.block_time.date()

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.block_number, self.hash)

    @property
    def native_legs(self) -> list[LedgerLeg]:
        return [leg for leg in self.legs if leg.kind == LegKind.NATIVE]

    @property
    def gas_legs(self) -> list[LedgerLeg]:
        return [leg for leg in self.legs if leg.kind == LegKind.GAS]

    @property
    def token_legs(self) -> list[LedgerLeg]:
        return [leg for leg in self.legs if leg.kind == LegKind.TOKEN]

    def balances(self) -> dict[str, int]:
        """Sum of signed raw amounts per currency id."""
        totals: dict[str, int] = defaultdict(int)
        for leg in self.legs:
            totals[leg.currency_id] += leg.raw_amount
        return dict(totals)

    @property
    def is_balanced(self) -> bool:
        return all(total == 0 for total in self.balances().values())
