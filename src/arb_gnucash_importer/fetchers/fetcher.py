"""
Chain data fetcher.

Drives a TxSource over every page of every tracked address. Requests fan
out across addresses and across each address's two record streams,
bounded by a semaphore and a shared token bucket. An address is handed to
the caller only once both of its streams are exhausted.
"""

from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar, Union
import asyncio
import logging

from ..config import FetchConfig
from ..models.report import AddressFetchFailure
from ..models.transaction import (
    AddressHistory,
    FetchCursor,
    FetchStream,
    RawTokenTransfer,
    RawTransaction,
)
from ..utils.exceptions import FatalFetchError, TransientFetchError
from .base import Page, Record, TxSource
from .rate_limiter import TokenBucket

logger = logging.getLogger(__name__)

FetchOutcome = Union[AddressHistory, AddressFetchFailure]
T = TypeVar("T")


class ChainDataFetcher:
    """
    Fetches complete address histories from a transaction source.

    Transient errors are retried with exponential backoff up to
    ``max_attempts``; after that they escalate to an address-scoped
    FatalFetchError. Global fatal errors abort every outstanding request.
    """

    def __init__(
        self,
        source: TxSource,
        config: Optional[FetchConfig] = None,
        rate_limiter: Optional[TokenBucket] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        """
        Initialize the fetcher.

        Args:
            source: Paged transaction source
            config: Fetch settings (defaults when omitted)
            rate_limiter: Shared token bucket; built from config when omitted
            sleep: Coroutine used for backoff waits
        """
        self.source = source
        self.config = config or FetchConfig()
        self.rate_limiter = rate_limiter or TokenBucket(
            rate=self.config.requests_per_second,
            capacity=self.config.burst,
        )
        self._sleep = sleep or asyncio.sleep
        self._semaphore = asyncio.Semaphore(self.config.concurrency)
        self.request_count = 0
        self.retry_count = 0

    def backoff_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number ``attempt + 1``."""
        delay = min(
            self.config.backoff_max_seconds,
            self.config.backoff_base_seconds * (2**attempt),
        )
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay

    async def fetch_page(self, cursor: FetchCursor) -> Page:
        """Fetch one page, retrying transient failures."""
        return await self._with_retries(lambda: self.source.fetch_page(cursor), cursor)

    async def head_block(self) -> Optional[int]:
        """
        Chain head to pin a run to, or None when the source cannot tell.

        Read once per run so every stream of every address stops at the
        same block.
        """
        head = await self._with_retries(self.source.latest_block)
        if head is not None:
            logger.info(f"[{self.source.name}] Pinned run to chain head {head}")
        return head

    async def _with_retries(
        self,
        request: Callable[[], Awaitable[T]],
        cursor: Optional[FetchCursor] = None,
    ) -> T:
        last_error: Optional[TransientFetchError] = None
        target = cursor if cursor is not None else "chain head"

        for attempt in range(self.config.max_attempts):
            try:
                async with self._semaphore:
                    await self.rate_limiter.acquire()
                    self.request_count += 1
                    return await request()

            except TransientFetchError as e:
                last_error = e
                if e.status_code == 429:
                    self.rate_limiter.drain()
                if attempt + 1 >= self.config.max_attempts:
                    break
                self.retry_count += 1
                wait_time = self.backoff_delay(attempt, e.retry_after_seconds)
                logger.warning(
                    f"[{self.source.name}] Retry {attempt + 1}/{self.config.max_attempts - 1} "
                    f"for {target} in {wait_time:.1f}s: {e}"
                )
                await self._sleep(wait_time)

        raise FatalFetchError(
            f"Giving up after {self.config.max_attempts} attempts",
            scope=FatalFetchError.ADDRESS if cursor is not None else FatalFetchError.GLOBAL,
            address=cursor.address if cursor is not None else None,
            cursor=cursor,
            status_code=last_error.status_code if last_error else None,
            original_error=last_error,
        )

    async def fetch_stream(self, cursor: FetchCursor) -> tuple[list[Record], FetchCursor]:
        """
        Follow continuation cursors until the stream is exhausted.

        Returns:
            Tuple of (records in arrival order, cursor of the last page)
        """
        records: list[Record] = []
        current = cursor

        while True:
            page = await self.fetch_page(current)
            records.extend(page.records)
            if page.next_cursor is None:
                return records, current
            current = page.next_cursor

    async def fetch_address(
        self,
        address: str,
        start_block: int = 0,
        end_block: Optional[int] = None,
    ) -> AddressHistory:
        """
        Fetch the full history of one address.

        Both streams are fetched concurrently; if either fails the other
        is cancelled.
        """
        cursors = [
            FetchCursor(address, FetchStream.TXLIST, start_block, end_block),
            FetchCursor(address, FetchStream.TOKENTX, start_block, end_block),
        ]
        tasks = [asyncio.create_task(self.fetch_stream(c)) for c in cursors]

        try:
            (tx_records, tx_cursor), (token_records, token_cursor) = await asyncio.gather(
                *tasks
            )
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        transactions = tuple(r for r in tx_records if isinstance(r, RawTransaction))
        transfers = tuple(r for r in token_records if isinstance(r, RawTokenTransfer))

        logger.info(
            f"Fetched {address}: {len(transactions)} transactions, "
            f"{len(transfers)} token transfers"
        )
        return AddressHistory(
            address=address,
            transactions=transactions,
            token_transfers=transfers,
            cursors=(tx_cursor, token_cursor),
        )

    async def stream(
        self,
        addresses: list[str],
        start_block: int = 0,
        end_block: Optional[int] = None,
        start_blocks: Optional[dict[str, int]] = None,
    ) -> AsyncIterator[FetchOutcome]:
        """
        Fetch many addresses concurrently, yielding each as it completes.

        Addresses are yielded in completion order. An address-scoped
        failure yields an AddressFetchFailure and the other addresses carry
        on; a global FatalFetchError cancels the remaining fetches and is
        raised.

        Args:
            addresses: Tracked addresses
            start_block: First block to fetch
            end_block: Last block to fetch (None for the chain head)
            start_blocks: Per-address start block overrides

        Yields:
            AddressHistory or AddressFetchFailure per address
        """
        start_blocks = start_blocks or {}
        tasks: dict[asyncio.Task, str] = {
            asyncio.create_task(
                self.fetch_address(
                    address, start_blocks.get(address, start_block), end_block
                )
            ): address
            for address in addresses
        }
        pending: set[asyncio.Task] = set(tasks)

        try:
            while pending:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                for task in sorted(done, key=lambda t: tasks[t]):
                    address = tasks[task]
                    outcome: FetchOutcome
                    try:
                        outcome = task.result()
                    except FatalFetchError as e:
                        if e.is_global:
                            logger.error(f"Aborting fetch: {e}")
                            raise
                        logger.error(f"Fetch failed for {address}: {e}")
                        outcome = AddressFetchFailure(
                            address=address, error=str(e), cursor=e.cursor
                        )
                    yield outcome
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
