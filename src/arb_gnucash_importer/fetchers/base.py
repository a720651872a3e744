"""
Base transaction source - abstract interface for explorer backends.

A source only knows how to read one page for a cursor. Pagination,
retries, rate limiting and fan-out live in ChainDataFetcher.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Union

from ..models.transaction import FetchCursor, RawTokenTransfer, RawTransaction

Record = Union[RawTransaction, RawTokenTransfer]


@dataclass(frozen=True)
class Page:
    """One page of records and the cursor for the following page."""

    cursor: FetchCursor
    records: tuple[Record, ...]
    next_cursor: Optional[FetchCursor] = None

    @property
    def is_last(self) -> bool:
        return self.next_cursor is None


def next_cursor_for(
    cursor: FetchCursor,
    records: tuple[Record, ...],
    page_size: int,
) -> Optional[FetchCursor]:
    """
    Compute the continuation cursor for a page of block-ordered records.

    A short page ends the stream. A full page continues from its last block
    (inclusive) so the explorer's result window is never exceeded; records of
    that block are fetched again and collapse downstream. When the whole page
    sits in the cursor's start block the page number advances instead.
    """
    if len(records) < page_size:
        return None

    last_block = records[-1].block_number
    if cursor.end_block is not None and last_block > cursor.end_block:
        return None
    if last_block <= cursor.start_block:
        return cursor.next_page()
    return cursor.from_block(last_block)


class TxSource(ABC):
    """Abstract base class for paged transaction sources."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this source."""
        pass

    @abstractmethod
    async def fetch_page(self, cursor: FetchCursor) -> Page:
        """
        Fetch the page of records addressed by the cursor.

        Args:
            cursor: Stream position to read

        Returns:
            Page with records in non-decreasing block order

        Raises:
            TransientFetchError: On rate-limit or network errors
            FatalFetchError: On authentication failure or malformed responses
        """
        pass

    async def latest_block(self) -> Optional[int]:
        """Current chain head, or None when the source cannot tell."""
        return None

    async def close(self) -> None:
        """Release network resources held by the source."""
        return None

    async def __aenter__(self) -> "TxSource":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
