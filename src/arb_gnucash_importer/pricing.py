"""
Daily USD prices for the native coin and tokens.

Prices come from the explorer ``stats`` endpoints and are cached in a JSON
file keyed by ``<currency id>_<YYYY-MM-DD>``. A price that cannot be found
is ``None``; pricing never fails an export.
"""

from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Optional
import asyncio
import json
import logging

import aiohttp

from .fetchers.cursor_store import write_json_atomic
from .fetchers.rate_limiter import TokenBucket
from .models.ledger import NATIVE_CURRENCY_ID, LedgerEntry

logger = logging.getLogger(__name__)

PriceTable = dict[str, Optional[Decimal]]

PRICE_FIELDS = ("ethusd", "tokenPriceUSD", "value", "price")


def price_key(currency_id: str, day: date) -> str:
    return f"{currency_id}_{day.isoformat()}"


class PriceService:
    """
    Cached daily price lookups.

    Args:
        cache_path: JSON cache file (read on creation, written by ``save``)
        api_key: Explorer API key
        api_url: Explorer API endpoint
        rate_limiter: Shared token bucket, if requests should be throttled
        session: Existing aiohttp session (the service opens its own otherwise)
    """

    def __init__(
        self,
        cache_path: Optional[Path],
        api_key: Optional[str] = None,
        api_url: str = "https://api.arbiscan.io/api",
        rate_limiter: Optional[TokenBucket] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
    ) -> None:
        self.cache_path = cache_path
        self._api_key = api_key
        self._api_url = api_url
        self._rate_limiter = rate_limiter
        self._session = session
        self._owns_session = session is None
        self._timeout = timeout
        self.cache: dict[str, str] = self._load_cache()

    def _load_cache(self) -> dict[str, str]:
        if self.cache_path is None or not self.cache_path.exists():
            return {}
        try:
            with open(self.cache_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable price cache {self.cache_path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring price cache {self.cache_path}: not a mapping")
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def save(self) -> None:
        if self.cache_path is not None:
            write_json_atomic(self.cache_path, self.cache)
            logger.debug(f"Saved {len(self.cache)} prices to {self.cache_path}")

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "PriceService":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def build_params(self, currency_id: str, day: date) -> dict[str, str]:
        params = {
            "module": "stats",
            "startdate": day.isoformat(),
            "enddate": day.isoformat(),
            "sort": "asc",
        }
        if currency_id == NATIVE_CURRENCY_ID:
            params["action"] = "ethdailyprice"
        else:
            params["action"] = "tokenpricehistory"
            params["contractaddress"] = currency_id
        if self._api_key:
            params["apikey"] = self._api_key
        return params

    @staticmethod
    def parse_price(payload: Any) -> Optional[Decimal]:
        """Extract a USD price from a stats response, or None."""
        if not isinstance(payload, dict):
            return None
        result = payload.get("result")
        if isinstance(result, list):
            result = result[0] if result else None
        if not isinstance(result, dict):
            return None

        for name in PRICE_FIELDS:
            value = result.get(name)
            if value in (None, ""):
                continue
            try:
                price = Decimal(str(value))
            except InvalidOperation:
                return None
            return price if price > 0 else None
        return None

    async def _fetch(self, currency_id: str, day: date) -> Optional[Decimal]:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )
            self._owns_session = True
        if self._rate_limiter is not None:
            await self._rate_limiter.acquire()

        try:
            async with self._session.get(
                self._api_url, params=self.build_params(currency_id, day)
            ) as response:
                if response.status != 200:
                    logger.warning(
                        f"Price lookup for {currency_id} on {day}: HTTP {response.status}"
                    )
                    return None
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Price lookup for {currency_id} on {day} failed: {e}")
            return None

        return self.parse_price(payload)

    async def price(self, currency_id: str, day: date) -> Optional[Decimal]:
        """
        USD price of one unit of a currency on a day.

        Found prices are cached; misses are retried on the next run.
        """
        key = price_key(currency_id, day)
        if key in self.cache:
            return Decimal(self.cache[key])

        price = await self._fetch(currency_id, day)
        if price is not None:
            self.cache[key] = str(price)
        else:
            logger.debug(f"No price for {key}")
        return price

    async def prices_for(self, entries: Iterable[LedgerEntry]) -> PriceTable:
        """Price table covering every currency and day used by the entries."""
        keys = sorted(
            {(leg.currency_id, entry.date) for entry in entries for leg in entry.legs}
        )
        table: PriceTable = {}
        for currency_id, day in keys:
            table[price_key(currency_id, day)] = await self.price(currency_id, day)

        found = sum(1 for p in table.values() if p is not None)
        logger.info(f"Resolved {found} of {len(table)} daily prices")
        return table
