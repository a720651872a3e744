"""
Export pipeline.

Wires the stages of one run: fetch (async), reconcile, classify and build.
Writing the export is left to the caller so nothing is written for a run
that was cancelled or aborted.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional
import asyncio
import logging

from .classification.classifier import AddressClassifier
from .config import ImporterConfig
from .fetchers.base import TxSource
from .fetchers.etherscan import EtherscanClient
from .fetchers.fetcher import ChainDataFetcher, FetchOutcome
from .fetchers.rate_limiter import TokenBucket
from .ledger.builder import LedgerEntryBuilder
from .ledger.tokens import TokenRegistry
from .models.ledger import LedgerEntry
from .models.report import (
    AddressFetchFailure,
    MappingOverrideNotice,
    OrphanTransferWarning,
    RunSummary,
)
from .models.transaction import AddressHistory, TxStatus
from .pricing import PriceService, PriceTable
from .reconciliation.engine import TransferReconciler
from .utils.addresses import normalize_address
from .utils.exceptions import ConfigurationError, PipelineCancelled

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Everything a run produced, ready for export and reporting."""

    entries: list[LedgerEntry]
    summary: RunSummary
    orphans: list[OrphanTransferWarning] = field(default_factory=list)
    overrides: list[MappingOverrideNotice] = field(default_factory=list)
    failures: list[AddressFetchFailure] = field(default_factory=list)
    histories: list[AddressHistory] = field(default_factory=list)
    prices: Optional[PriceTable] = None
    # Last block every stream was read through; None when the chain head was unknown
    end_block: Optional[int] = None

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)


class ExportPipeline:
    """
    Runs fetch, reconcile and build for a set of tracked addresses.

    A source and classifier may be injected; otherwise an EtherscanClient
    is built from the API settings and mapping files are loaded from the
    configuration.
    """

    def __init__(
        self,
        config: ImporterConfig,
        source: Optional[TxSource] = None,
        classifier: Optional[AddressClassifier] = None,
    ):
        self.config = config
        self._source = source
        self._classifier = classifier

    def build_source(self) -> TxSource:
        if self._source is not None:
            return self._source
        return EtherscanClient(
            api_key=self.config.require_api_key(),
            api_url=self.config.api.url,
            chain_id=self.config.api.chain_id,
            page_size=self.config.api.page_size,
            timeout=self.config.api.timeout_seconds,
        )

    def build_classifier(self) -> AddressClassifier:
        if self._classifier is None:
            self._classifier = AddressClassifier.from_files(
                [Path(p) for p in self.config.mappings.label_files],
                [Path(p) for p in self.config.mappings.category_files],
            )
        return self._classifier

    async def run(
        self,
        addresses: Optional[list[str]] = None,
        start_block: Optional[int] = None,
        end_block: Optional[int] = None,
        start_blocks: Optional[dict[str, int]] = None,
        cancel_event: Optional[asyncio.Event] = None,
        on_fetched: Optional[Callable[[FetchOutcome], None]] = None,
    ) -> PipelineResult:
        """
        Run every stage up to built, sorted ledger entries.

        Args:
            addresses: Tracked addresses (defaults to the configured ones)
            start_block: First block (defaults to ``fetch.start_block``)
            end_block: Last block (defaults to ``fetch.end_block``)
            start_blocks: Per-address start blocks from saved cursor state
            cancel_event: Setting this event cancels the run
            on_fetched: Called with each address outcome as it completes

        Returns:
            PipelineResult with entries and collected warnings

        Raises:
            ConfigurationError: If there is nothing to fetch or no API key
            FatalFetchError: On a global fetch failure
            PipelineCancelled: If ``cancel_event`` was set
        """
        run_started = datetime.now()
        requested = addresses or self.config.addresses
        addresses = list(dict.fromkeys(normalize_address(a) for a in requested))
        if not addresses:
            raise ConfigurationError("No addresses to export")
        start_block = self.config.fetch.start_block if start_block is None else start_block
        end_block = self.config.fetch.end_block if end_block is None else end_block

        # Configuration problems surface before any request is made
        classifier = self.build_classifier()
        source = self.build_source()
        owns_source = self._source is None

        summary = RunSummary(
            run_started=run_started,
            addresses=addresses,
            start_block=start_block,
            end_block=end_block,
            config_file_used=self.config.config_file_path,
        )
        reconciler = TransferReconciler(self.config.fetch.pending_capacity)
        histories: list[AddressHistory] = []
        failures: list[AddressFetchFailure] = []
        pinned_block: Optional[int] = None

        async def consume() -> None:
            nonlocal pinned_block
            fetcher = ChainDataFetcher(source, self.config.fetch)
            head = await fetcher.head_block()
            fetch_end = end_block
            if head is not None:
                fetch_end = head if end_block is None else min(end_block, head)
                pinned_block = fetch_end
                summary.end_block = fetch_end

            async for outcome in fetcher.stream(addresses, start_block, fetch_end, start_blocks):
                if isinstance(outcome, AddressFetchFailure):
                    failures.append(outcome)
                else:
                    histories.append(outcome)
                    summary.transactions_fetched += len(outcome.transactions)
                    summary.token_transfers_fetched += len(outcome.token_transfers)
                    reconciler.add_history(outcome)
                if on_fetched is not None:
                    on_fetched(outcome)
            logger.info(
                f"Fetch complete: {fetcher.request_count} requests, "
                f"{fetcher.retry_count} retries"
            )

        logger.info(f"Fetching {len(addresses)} address(es) from block {start_block}")
        try:
            await _run_cancellable(consume(), cancel_event)
        finally:
            if owns_source:
                await source.close()

        reconciliation = reconciler.finish()
        builder = LedgerEntryBuilder(
            addresses,
            classifier,
            self.config.ledger,
            TokenRegistry(self.config.ledger.known_tokens),
        )
        built = builder.build_all(reconciliation.transactions)

        summary.duplicates_dropped = reconciliation.duplicates_dropped
        summary.entries_built = len(built.entries)
        summary.failed_transactions = sum(1 for e in built.entries if e.status == TxStatus.FAILED)
        summary.tokens_skipped = built.tokens_skipped
        summary.orphan_count = len(reconciliation.orphans)
        summary.override_count = len(classifier.overrides)
        summary.failed_address_count = len(failures)
        summary.entries_by_address = {
            address: sum(
                1 for e in built.entries if any(leg.address == address for leg in e.legs)
            )
            for address in addresses
        }

        result = PipelineResult(
            entries=built.entries,
            summary=summary,
            orphans=reconciliation.orphans,
            overrides=list(classifier.overrides),
            failures=sorted(failures, key=lambda f: f.address),
            histories=sorted(histories, key=lambda h: h.address),
            end_block=pinned_block,
        )

        if self.config.pricing.enabled and result.entries:
            result.prices = await _run_cancellable(self.fetch_prices(result.entries), cancel_event)

        summary.processing_time_seconds = (datetime.now() - run_started).total_seconds()
        logger.info(
            f"Pipeline complete: {summary.entries_built} entries, "
            f"{summary.orphan_count} orphan group(s), "
            f"{summary.failed_address_count} failed address(es)"
        )
        return result

    async def fetch_prices(self, entries: list[LedgerEntry]) -> PriceTable:
        async with PriceService(
            Path(self.config.pricing.cache_file),
            api_key=self.config.api.api_key,
            api_url=self.config.api.url,
            rate_limiter=TokenBucket(
                rate=self.config.fetch.requests_per_second,
                capacity=self.config.fetch.burst,
            ),
            timeout=self.config.api.timeout_seconds,
        ) as prices:
            table = await prices.prices_for(entries)
            prices.save()
        return table


async def _run_cancellable(coro, cancel_event: Optional[asyncio.Event]):
    """Await ``coro``, cancelling it and raising PipelineCancelled on the event."""
    if cancel_event is None:
        return await coro
    if cancel_event.is_set():
        coro.close()
        raise PipelineCancelled("Run cancelled before start")

    work = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()

    if not work.done():
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        logger.warning("Run cancelled, outstanding requests aborted")
        raise PipelineCancelled("Run cancelled")
    return work.result()
