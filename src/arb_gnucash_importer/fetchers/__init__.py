"""Explorer sources and the concurrent chain data fetcher."""

from .base import Page, TxSource, next_cursor_for
from .cursor_store import CursorStore
from .etherscan import EtherscanClient
from .fetcher import ChainDataFetcher
from .rate_limiter import TokenBucket

__all__ = [
    "Page",
    "TxSource",
    "next_cursor_for",
    "CursorStore",
    "EtherscanClient",
    "ChainDataFetcher",
    "TokenBucket",
]
