"""
Ledger entry builder.

Turns reconciled transactions into balanced double-entry splits. Every
currency (the native coin and each token contract) is balanced on its own:
value leaves the sender's account and arrives in the receiver's, and gas
moves from the payer to the gas expense account.
"""

from dataclasses import dataclass, field
from decimal import Context, Decimal
from typing import Iterable, Optional
import logging

from ..classification.classifier import AddressClassifier
from ..config import LedgerConfig
from ..models.ledger import (
    NATIVE_CURRENCY_ID,
    Classification,
    LedgerEntry,
    LedgerLeg,
    LegKind,
)
from ..models.transaction import RawTokenTransfer, ReconciledTransaction
from ..utils.addresses import normalize_address
from ..utils.exceptions import LedgerBalanceError
from .tokens import TokenRegistry

logger = logging.getLogger(__name__)


def scale_amount(raw: int, decimals: int) -> Decimal:
    """Exact display amount of a raw integer amount with ``decimals`` places."""
    context = Context(prec=max(28, len(str(abs(raw))) + 1))
    return Decimal(raw).scaleb(-decimals, context=context)


@dataclass
class BuildResult:
    """Ledger entries plus counts of what was left out."""

    entries: list[LedgerEntry] = field(default_factory=list)
    skipped_transactions: int = 0
    tokens_skipped: int = 0


class LedgerEntryBuilder:
    """
    Builds one LedgerEntry per reconciled transaction.

    Accounts of tracked addresses come from ``asset_account_template``;
    other addresses map to their category, or to the uncategorized
    income/expense account depending on the direction of the movement.
    """

    def __init__(
        self,
        tracked_addresses: Iterable[str],
        classifier: Optional[AddressClassifier] = None,
        config: Optional[LedgerConfig] = None,
        tokens: Optional[TokenRegistry] = None,
    ):
        """
        Initialize the builder.

        Args:
            tracked_addresses: Addresses whose books are being kept
            classifier: Address classifier (empty when omitted)
            config: Ledger settings
            tokens: Token symbol registry
        """
        self.tracked = {normalize_address(a) for a in tracked_addresses}
        self.classifier = classifier or AddressClassifier()
        self.config = config or LedgerConfig()
        self.tokens = tokens or TokenRegistry(self.config.known_tokens)
        self.tokens_skipped = 0

    def is_tracked(self, address: Optional[str]) -> bool:
        return address is not None and address in self.tracked

    def account_for(self, address: Optional[str], counterparty_sends: bool) -> str:
        """
        GnuCash account name for an address.

        Args:
            address: Participant address (None for contract creation/burn)
            counterparty_sends: True when an untracked address is the sending
                side, which makes the movement income for the tracked books
        """
        classification = self.classifier.classify(address)
        if self.is_tracked(address):
            return self.config.asset_account_template.format(
                name=classification.label or address
            )
        if classification.category:
            return classification.category
        if counterparty_sends:
            return self.config.uncategorized_income_account
        return self.config.uncategorized_expense_account

    def _transfer_legs(
        self,
        from_address: str,
        to_address: Optional[str],
        raw_amount: int,
        decimals: int,
        currency: str,
        currency_id: str,
        kind: LegKind,
        log_index: Optional[int] = None,
    ) -> list[LedgerLeg]:
        """Outbound leg for the sender and inbound leg for the receiver."""
        amount = scale_amount(raw_amount, decimals)
        legs = []
        for address, sign in ((from_address, -1), (to_address, 1)):
            classification = self.classifier.classify(address)
            legs.append(
                LedgerLeg(
                    account=self.account_for(address, counterparty_sends=sign < 0),
                    currency=currency,
                    currency_id=currency_id,
                    amount=amount * sign,
                    raw_amount=raw_amount * sign,
                    kind=kind,
                    address=address,
                    log_index=log_index,
                    label=classification.label,
                    category=classification.category,
                )
            )
        return legs

    def _gas_payer(self, reconciled: ReconciledTransaction) -> Optional[str]:
        """Tracked address charged with the fee, if any."""
        tx = reconciled.transaction
        if self.is_tracked(tx.from_address):
            return tx.from_address
        if self.config.gas_attribution == "any_tracked":
            if self.is_tracked(tx.to_address):
                return tx.to_address
            for transfer in reconciled.token_transfers:
                for address in (transfer.to_address, transfer.from_address):
                    if self.is_tracked(address):
                        return address
        return None

    def _gas_legs(self, reconciled: ReconciledTransaction) -> list[LedgerLeg]:
        tx = reconciled.transaction
        payer = self._gas_payer(reconciled)
        if payer is None or tx.gas_cost == 0:
            return []

        amount = scale_amount(tx.gas_cost, self.config.native_decimals)
        classification = self.classifier.classify(payer)
        return [
            LedgerLeg(
                account=self.account_for(payer, counterparty_sends=False),
                currency=self.config.native_symbol,
                currency_id=NATIVE_CURRENCY_ID,
                amount=-amount,
                raw_amount=-tx.gas_cost,
                kind=LegKind.GAS,
                address=payer,
                label=classification.label,
                category=classification.category,
            ),
            LedgerLeg(
                account=self.config.gas_account,
                currency=self.config.native_symbol,
                currency_id=NATIVE_CURRENCY_ID,
                amount=amount,
                raw_amount=tx.gas_cost,
                kind=LegKind.GAS,
            ),
        ]

    def _token_legs(self, transfer: RawTokenTransfer) -> list[LedgerLeg]:
        if not (self.is_tracked(transfer.from_address) or self.is_tracked(transfer.to_address)):
            logger.debug(
                f"Skipping transfer between untracked addresses in {transfer.transaction_hash}"
            )
            self.tokens_skipped += 1
            return []
        if self.config.only_known_tokens and not self.tokens.is_known(transfer.token_address):
            logger.debug(
                f"Skipping unknown token {transfer.token_symbol or transfer.token_address} "
                f"in {transfer.transaction_hash}"
            )
            self.tokens_skipped += 1
            return []

        return self._transfer_legs(
            transfer.from_address,
            transfer.to_address,
            transfer.amount,
            transfer.token_decimals,
            currency=self.tokens.symbol_for(transfer.token_address, transfer.token_symbol),
            currency_id=transfer.token_address,
            kind=LegKind.TOKEN,
            log_index=transfer.log_index,
        )

    def entry_classification(self, reconciled: ReconciledTransaction) -> Classification:
        """
        Classification of the transaction's counterparty.

        The receiver is consulted first, then the sender, then token
        counterparties; tracked addresses are skipped.
        """
        tx = reconciled.transaction
        candidates = [tx.to_address, tx.from_address]
        for transfer in reconciled.token_transfers:
            candidates.extend([transfer.to_address, transfer.from_address])

        for address in candidates:
            if address is None or self.is_tracked(address):
                continue
            classification = self.classifier.classify(address)
            if classification.is_classified:
                return classification
        return Classification()

    def memo_for(self, reconciled: ReconciledTransaction, classification: Classification) -> str:
        tx = reconciled.transaction
        name = classification.label or classification.category
        sender_tracked = self.is_tracked(tx.from_address)
        receiver_tracked = self.is_tracked(tx.to_address)

        if sender_tracked and receiver_tracked:
            memo = "transfer"
        elif sender_tracked:
            memo = f"to {name}" if name else "withdrawal"
        else:
            memo = f"from {name}" if name else "deposit"

        if tx.is_failed:
            memo = f"failed: {memo}"
        return memo

    def build(self, reconciled: ReconciledTransaction) -> Optional[LedgerEntry]:
        """
        Build the ledger entry for one transaction.

        Returns:
            LedgerEntry, or None when nothing in the transaction touches the
            tracked books

        Raises:
            LedgerBalanceError: If the legs do not balance per currency
        """
        tx = reconciled.transaction
        legs: list[LedgerLeg] = []

        if not tx.is_failed:
            involves_tracked = self.is_tracked(tx.from_address) or self.is_tracked(tx.to_address)
            if involves_tracked and (tx.value != 0 or not self.config.skip_zero_value):
                legs.extend(
                    self._transfer_legs(
                        tx.from_address,
                        tx.to_address,
                        tx.value,
                        self.config.native_decimals,
                        currency=self.config.native_symbol,
                        currency_id=NATIVE_CURRENCY_ID,
                        kind=LegKind.NATIVE,
                    )
                )

        legs.extend(self._gas_legs(reconciled))

        if not tx.is_failed:
            for transfer in reconciled.token_transfers:
                legs.extend(self._token_legs(transfer))

        if not legs:
            logger.debug(f"No ledger movements for {tx.hash}")
            return None

        classification = self.entry_classification(reconciled)
        entry = LedgerEntry(
            hash=tx.hash,
            block_number=tx.block_number,
            timestamp=tx.timestamp,
            status=tx.status,
            legs=tuple(legs),
            label=classification.label,
            category=classification.category,
            memo=self.memo_for(reconciled, classification),
        )

        if not entry.is_balanced:
            raise LedgerBalanceError(f"Unbalanced entry {tx.hash}: {entry.balances()}")
        return entry

    def build_all(self, reconciled: Iterable[ReconciledTransaction]) -> BuildResult:
        """Build entries for many transactions, ordered by block then hash."""
        result = BuildResult()
        skipped_before = self.tokens_skipped

        for item in reconciled:
            entry = self.build(item)
            if entry is None:
                result.skipped_transactions += 1
            else:
                result.entries.append(entry)

        result.entries.sort(key=lambda e: e.sort_key)
        result.tokens_skipped = self.tokens_skipped - skipped_before
        logger.info(
            f"Built {len(result.entries)} ledger entries "
            f"({result.skipped_transactions} transactions without movements)"
        )
        return result
