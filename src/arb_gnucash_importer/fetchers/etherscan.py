"""
Etherscan-compatible explorer source (Arbiscan, Etherscan V2).

Reads the ``account/txlist`` and ``account/tokentx`` endpoints one page at
a time and converts items into raw transaction records. Responses are
untrusted: any item missing required fields or with unparsable numbers is
treated as a broken API contract.
"""

from typing import Any, Optional
import asyncio
import logging

import aiohttp

from ..models.transaction import (
    FetchCursor,
    FetchStream,
    RawTokenTransfer,
    RawTransaction,
    TxStatus,
)
from ..utils.addresses import normalize_address
from ..utils.exceptions import FatalFetchError, FetchError, TransientFetchError
from .base import Page, Record, TxSource, next_cursor_for

logger = logging.getLogger(__name__)

# Explorer messages, matched case-insensitively
EMPTY_RESULT_MESSAGES = ("no transactions found", "no records found", "no token transfers found")
RATE_LIMIT_MARKERS = ("rate limit", "max calls per sec", "too many requests")
AUTH_MARKERS = ("invalid api key", "missing/invalid api key", "api key")
TRANSIENT_MARKERS = ("timeout", "temporarily unavailable", "busy")


class EtherscanClient(TxSource):
    """
    Explorer API client for paged account history.

    Uses one aiohttp session for the lifetime of the client. When
    ``chain_id`` is set the V2 multichain ``chainid`` parameter is sent.
    """

    DEFAULT_URL = "https://api.arbiscan.io/api"
    DEFAULT_TIMEOUT = 30.0

    def __init__(
        self,
        api_key: str,
        api_url: str = DEFAULT_URL,
        chain_id: Optional[int] = None,
        page_size: int = 1000,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._api_key = api_key
        self._api_url = api_url
        self._chain_id = chain_id
        self._page_size = page_size
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None

    @property
    def name(self) -> str:
        return "etherscan"

    @property
    def page_size(self) -> int:
        return self._page_size

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def build_params(self, cursor: FetchCursor) -> dict[str, str]:
        """Query parameters for a cursor."""
        params = {
            "module": "account",
            "action": cursor.stream.value,
            "address": cursor.address,
            "startblock": str(cursor.start_block),
            "endblock": str(cursor.end_block if cursor.end_block is not None else 99999999),
            "page": str(cursor.page),
            "offset": str(self._page_size),
            "sort": "asc",
            "apikey": self._api_key,
        }
        if self._chain_id is not None:
            params["chainid"] = str(self._chain_id)
        return params

    async def fetch_page(self, cursor: FetchCursor) -> Page:
        """Fetch and parse one page for the cursor."""
        payload = await self._request(self.build_params(cursor), cursor)
        items = self._unwrap(payload, cursor)

        if cursor.stream == FetchStream.TXLIST:
            records: tuple[Record, ...] = tuple(
                self.parse_transaction(item, cursor) for item in items
            )
        else:
            records = tuple(self.parse_token_transfer(item, cursor) for item in items)

        logger.debug(f"[{self.name}] {cursor}: {len(records)} records")
        return Page(
            cursor=cursor,
            records=records,
            next_cursor=next_cursor_for(cursor, records, self._page_size),
        )

    async def _request(
        self, params: dict[str, str], cursor: Optional[FetchCursor] = None
    ) -> Any:
        """Make HTTP request with error classification."""
        address = cursor.address if cursor is not None else None
        session = await self._get_session()
        try:
            async with session.get(self._api_url, params=params) as response:
                if response.status == 429:
                    retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                    raise TransientFetchError(
                        "Rate limit exceeded",
                        retry_after_seconds=retry_after,
                        address=address,
                        cursor=cursor,
                        status_code=429,
                    )
                if response.status in (401, 403):
                    raise FatalFetchError(
                        "Authentication rejected by explorer",
                        scope=FatalFetchError.GLOBAL,
                        address=address,
                        cursor=cursor,
                        status_code=response.status,
                    )
                if response.status >= 500:
                    raise TransientFetchError(
                        f"HTTP {response.status}",
                        address=address,
                        cursor=cursor,
                        status_code=response.status,
                    )
                if response.status >= 400:
                    body = await response.text()
                    raise FatalFetchError(
                        f"HTTP {response.status}: {body[:200]}",
                        scope=FatalFetchError.ADDRESS,
                        address=address,
                        cursor=cursor,
                        status_code=response.status,
                    )

                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise FatalFetchError(
                        "Explorer returned a non-JSON response",
                        scope=FatalFetchError.GLOBAL,
                        address=address,
                        cursor=cursor,
                        original_error=e,
                    ) from e

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientFetchError(
                f"Connection error: {e.__class__.__name__}",
                address=address,
                cursor=cursor,
                original_error=e,
            ) from e

    def _unwrap(self, payload: Any, cursor: FetchCursor) -> list[dict[str, Any]]:
        """
        Unwrap the ``{"status", "message", "result"}`` envelope.

        Etherscan reports errors with HTTP 200 and ``status == "0"``; the
        reason is in ``result`` or ``message``.
        """
        if not isinstance(payload, dict) or "result" not in payload:
            raise FatalFetchError(
                "Malformed explorer response: missing result envelope",
                scope=FatalFetchError.GLOBAL,
                address=cursor.address,
                cursor=cursor,
            )

        status = str(payload.get("status", "1"))
        message = str(payload.get("message", ""))
        result = payload["result"]

        if status == "1" or (status == "0" and isinstance(result, list) and not result):
            if not isinstance(result, list):
                raise FatalFetchError(
                    "Malformed explorer response: result is not a list",
                    scope=FatalFetchError.GLOBAL,
                    address=cursor.address,
                    cursor=cursor,
                )
            if status == "0" and message.lower() not in EMPTY_RESULT_MESSAGES:
                logger.debug(f"[{self.name}] Empty result with message {message!r}")
            return result

        reason = f"{message}: {result}" if isinstance(result, str) else message
        raise _explorer_error(reason, cursor)

    async def latest_block(self) -> Optional[int]:
        """Read the chain head with the ``proxy/eth_blockNumber`` call."""
        params = {"module": "proxy", "action": "eth_blockNumber", "apikey": self._api_key}
        if self._chain_id is not None:
            params["chainid"] = str(self._chain_id)
        payload = await self._request(params)

        result = payload.get("result") if isinstance(payload, dict) else None
        if isinstance(result, str) and result.startswith("0x"):
            try:
                block = int(result, 16)
            except ValueError as e:
                raise FatalFetchError(
                    f"Malformed block number {result!r}",
                    scope=FatalFetchError.GLOBAL,
                    original_error=e,
                ) from e
            logger.debug(f"[{self.name}] Chain head at block {block}")
            return block

        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            reason = str(payload["error"].get("message", "proxy error"))
        elif isinstance(payload, dict) and "result" in payload:
            reason = f"{payload.get('message', '')}: {result}"
        else:
            raise FatalFetchError(
                "Malformed explorer response: missing block number",
                scope=FatalFetchError.GLOBAL,
            )
        raise _explorer_error(reason, None, scope=FatalFetchError.GLOBAL)

    @staticmethod
    def parse_transaction(item: dict[str, Any], cursor: FetchCursor) -> RawTransaction:
        """Convert a ``txlist`` item into a RawTransaction."""
        try:
            is_error = str(item.get("isError", "0")) == "1"
            receipt_failed = str(item.get("txreceipt_status", "1")) == "0"
            to_address = normalize_address(item.get("to")) or normalize_address(
                item.get("contractAddress")
            )
            return RawTransaction(
                hash=_required(item, "hash").lower(),
                block_number=int(_required(item, "blockNumber")),
                timestamp=int(_required(item, "timeStamp")),
                from_address=_required(item, "from").lower(),
                to_address=to_address,
                value=int(_required(item, "value")),
                gas_used=int(item.get("gasUsed") or 0),
                gas_price=int(item.get("gasPrice") or 0),
                status=TxStatus.FAILED if is_error or receipt_failed else TxStatus.SUCCESS,
                transaction_index=int(item.get("transactionIndex") or 0),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise FatalFetchError(
                f"Malformed transaction record: {e}",
                scope=FatalFetchError.GLOBAL,
                address=cursor.address,
                cursor=cursor,
                original_error=e,
            ) from e

    @staticmethod
    def parse_token_transfer(item: dict[str, Any], cursor: FetchCursor) -> RawTokenTransfer:
        """Convert a ``tokentx`` item into a RawTokenTransfer."""
        try:
            log_index = item.get("logIndex")
            return RawTokenTransfer(
                transaction_hash=_required(item, "hash").lower(),
                block_number=int(_required(item, "blockNumber")),
                timestamp=int(_required(item, "timeStamp")),
                token_address=_required(item, "contractAddress").lower(),
                from_address=_required(item, "from").lower(),
                to_address=normalize_address(item.get("to")),
                amount=int(_required(item, "value")),
                token_decimals=int(item.get("tokenDecimal") or 0),
                log_index=int(log_index) if log_index not in (None, "") else None,
                token_symbol=str(item.get("tokenSymbol") or ""),
                token_name=str(item.get("tokenName") or ""),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise FatalFetchError(
                f"Malformed token transfer record: {e}",
                scope=FatalFetchError.GLOBAL,
                address=cursor.address,
                cursor=cursor,
                original_error=e,
            ) from e


def _required(item: dict[str, Any], key: str) -> str:
    value = item[key]
    if value is None or value == "":
        raise ValueError(f"field {key!r} is empty")
    return str(value)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _explorer_error(
    reason: str,
    cursor: Optional[FetchCursor],
    scope: str = FatalFetchError.ADDRESS,
) -> FetchError:
    """Classify an explorer error message; unknown messages are fatal for ``scope``."""
    address = cursor.address if cursor is not None else None
    lowered = reason.lower()

    if any(marker in lowered for marker in RATE_LIMIT_MARKERS):
        return TransientFetchError(
            f"Explorer rate limit: {reason}", address=address, cursor=cursor
        )
    if any(marker in lowered for marker in AUTH_MARKERS):
        return FatalFetchError(
            f"Explorer rejected API key: {reason}",
            scope=FatalFetchError.GLOBAL,
            address=address,
            cursor=cursor,
        )
    if any(marker in lowered for marker in TRANSIENT_MARKERS):
        return TransientFetchError(f"Explorer error: {reason}", address=address, cursor=cursor)
    return FatalFetchError(
        f"Explorer error: {reason}", scope=scope, address=address, cursor=cursor
    )
