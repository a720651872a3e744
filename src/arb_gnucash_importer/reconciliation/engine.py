"""
Transfer reconciliation engine.

Groups token transfers with the native transaction sharing their hash,
collapses duplicates from overlapping page fetches and tracks transfers
whose parent transaction has not (yet) been seen.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional
import logging

from ..models.report import OrphanTransferWarning
from ..models.transaction import (
    AddressHistory,
    RawTokenTransfer,
    RawTransaction,
    ReconciledTransaction,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    """Output of a reconciliation run."""

    transactions: list[ReconciledTransaction]
    orphans: list[OrphanTransferWarning] = field(default_factory=list)
    duplicates_dropped: int = 0
    conflicts: int = 0

    @property
    def orphan_transfer_count(self) -> int:
        return sum(len(o.transfers) for o in self.orphans)


class PendingTransferBuffer:
    """
    Token transfers waiting for their parent transaction, keyed by hash.

    Holds at most ``capacity`` hashes. When full, the hash group with the
    lowest block number is evicted and returned as an orphan warning.
    """

    def __init__(self, capacity: int = 10000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._groups: dict[str, dict[tuple, RawTokenTransfer]] = {}

    def __len__(self) -> int:
        return len(self._groups)

    def __contains__(self, tx_hash: str) -> bool:
        return tx_hash in self._groups

    def add(self, transfer: RawTokenTransfer) -> tuple[bool, list[OrphanTransferWarning]]:
        """
        Buffer a transfer.

        Returns:
            Tuple of (whether the transfer was new, warnings for evicted groups)
        """
        group = self._groups.setdefault(transfer.transaction_hash, {})
        if transfer.dedup_key in group:
            _check_conflict(group[transfer.dedup_key], transfer)
            return False, []
        group[transfer.dedup_key] = transfer

        evicted: list[OrphanTransferWarning] = []
        while len(self._groups) > self.capacity:
            oldest = min(
                self._groups,
                key=lambda h: (min(t.block_number for t in self._groups[h].values()), h),
            )
            evicted.append(_orphan_warning(oldest, self._groups.pop(oldest), "evicted"))
            logger.warning(f"Pending buffer full, evicted {oldest} as orphan")
        return True, evicted

    def pop(self, tx_hash: str) -> list[RawTokenTransfer]:
        """Remove and return the transfers buffered for a hash."""
        return list(self._groups.pop(tx_hash, {}).values())

    def drain(self) -> list[OrphanTransferWarning]:
        """Report every remaining group as unresolved and empty the buffer."""
        warnings = [
            _orphan_warning(tx_hash, group, "unresolved")
            for tx_hash, group in self._groups.items()
        ]
        self._groups.clear()
        return warnings


class TransferReconciler:
    """
    Reconciles native transactions with their ERC-20 transfer events.

    Feed complete address histories with ``add_history`` in any order, then
    call ``finish`` once the fetch is done. Orphans that were never resolved
    are reported exactly once, never dropped.
    """

    def __init__(self, pending_capacity: int = 10000):
        """
        Initialize the reconciler.

        Args:
            pending_capacity: Maximum hashes held while waiting for a parent
        """
        self._transactions: dict[str, RawTransaction] = {}
        self._transfers: dict[str, dict[tuple, RawTokenTransfer]] = {}
        self._pending = PendingTransferBuffer(pending_capacity)
        # Hashes evicted from the pending buffer stay orphans for the whole run
        self._evicted: dict[str, dict[tuple, RawTokenTransfer]] = {}
        self._duplicates = 0
        self._conflicts = 0
        self._finished = False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def add_history(self, history: AddressHistory) -> None:
        """Merge one fully fetched address history."""
        self._ensure_open()
        for tx in history.transactions:
            self.add_transaction(tx)
        for transfer in history.token_transfers:
            self.add_token_transfer(transfer)
        logger.debug(
            f"Merged history of {history.address}: {len(self._transactions)} transactions, "
            f"{len(self._pending)} hashes pending"
        )

    def add_transaction(self, tx: RawTransaction) -> None:
        self._ensure_open()
        existing = self._transactions.get(tx.hash)
        if existing is not None:
            self._duplicates += 1
            if _check_conflict(existing, tx):
                self._conflicts += 1
            return

        self._transactions[tx.hash] = tx
        resolved = self._pending.pop(tx.hash)
        if resolved:
            logger.debug(f"Resolved {len(resolved)} pending transfer(s) for {tx.hash}")
            group = self._transfers.setdefault(tx.hash, {})
            for transfer in resolved:
                group[transfer.dedup_key] = transfer

    def add_token_transfer(self, transfer: RawTokenTransfer) -> None:
        self._ensure_open()
        evicted_group = self._evicted.get(transfer.transaction_hash)
        if evicted_group is not None:
            existing = evicted_group.get(transfer.dedup_key)
            if existing is not None:
                self._duplicates += 1
                if _check_conflict(existing, transfer):
                    self._conflicts += 1
                return
            evicted_group[transfer.dedup_key] = transfer
            logger.debug(f"Added late transfer to evicted orphan {transfer.transaction_hash}")
            return

        if transfer.transaction_hash in self._transactions:
            group = self._transfers.setdefault(transfer.transaction_hash, {})
            existing = group.get(transfer.dedup_key)
            if existing is not None:
                self._duplicates += 1
                if _check_conflict(existing, transfer):
                    self._conflicts += 1
                return
            group[transfer.dedup_key] = transfer
            return

        added, evicted = self._pending.add(transfer)
        if not added:
            self._duplicates += 1
        for warning in evicted:
            self._evicted[warning.transaction_hash] = {
                t.dedup_key: t for t in warning.transfers
            }

    def finish(self) -> ReconciliationResult:
        """
        Close the run and build reconciled transactions.

        Returns:
            ReconciliationResult ordered by block number then hash
        """
        self._ensure_open()
        self._finished = True

        orphans = [
            _orphan_warning(tx_hash, group, "evicted")
            for tx_hash, group in self._evicted.items()
        ]
        orphans.extend(self._pending.drain())
        orphans.sort(key=lambda o: (o.block_number, o.transaction_hash))
        for orphan in orphans:
            logger.warning(str(orphan))

        transactions = [
            ReconciledTransaction(
                transaction=tx,
                token_transfers=tuple(
                    sorted(self._transfers.get(tx_hash, {}).values(), key=lambda t: t.sort_key)
                ),
            )
            for tx_hash, tx in self._transactions.items()
        ]
        transactions.sort(key=lambda r: (r.block_number, r.hash))

        logger.info(
            f"Reconciliation complete: {len(transactions)} transactions, "
            f"{len(orphans)} orphan group(s), {self._duplicates} duplicates dropped"
        )
        return ReconciliationResult(
            transactions=transactions,
            orphans=orphans,
            duplicates_dropped=self._duplicates,
            conflicts=self._conflicts,
        )

    def reconcile(self, histories: Iterable[AddressHistory]) -> ReconciliationResult:
        """Merge all histories and finish in one call."""
        for history in histories:
            self.add_history(history)
        return self.finish()

    def _ensure_open(self) -> None:
        if self._finished:
            raise RuntimeError("reconciler already finished")


def _check_conflict(existing: object, incoming: object) -> bool:
    """Log when a duplicate key carries different content; the first record wins."""
    if existing == incoming:
        return False
    key: Optional[str] = getattr(existing, "hash", None) or getattr(
        existing, "transaction_hash", None
    )
    logger.warning(f"Conflicting duplicate record for {key}; keeping first: {existing!r}")
    return True


def _orphan_warning(
    tx_hash: str, group: dict[tuple, RawTokenTransfer], reason: str
) -> OrphanTransferWarning:
    transfers = tuple(sorted(group.values(), key=lambda t: t.sort_key))
    return OrphanTransferWarning(transaction_hash=tx_hash, transfers=transfers, reason=reason)
