"""Tests for daily price lookups and the price cache."""

from datetime import date
from decimal import Decimal
import json

from aiohttp import web
from aiohttp.test_utils import TestServer
import pytest
import pytest_asyncio

from arb_gnucash_importer.models.ledger import NATIVE_CURRENCY_ID, LedgerEntry, LedgerLeg, LegKind
from arb_gnucash_importer.models.transaction import TxStatus
from arb_gnucash_importer.pricing import PriceService, price_key

from factories import ALICE, BASE_TIMESTAMP, BOB, USDC, tx_hash

DAY = date(2023, 11, 14)


def make_entry(currency_id: str = NATIVE_CURRENCY_ID, n: int = 1) -> LedgerEntry:
    """Create a test two-leg entry with default values."""
    legs = tuple(
        LedgerLeg(
            account=account,
            currency="ETH" if currency_id == NATIVE_CURRENCY_ID else "USDC",
            currency_id=currency_id,
            amount=Decimal(sign),
            raw_amount=sign,
            kind=LegKind.NATIVE if currency_id == NATIVE_CURRENCY_ID else LegKind.TOKEN,
            address=address,
        )
        for account, address, sign in [("Assets:A", ALICE, -1), ("Assets:B", BOB, 1)]
    )
    return LedgerEntry(
        hash=tx_hash(n),
        block_number=100,
        timestamp=BASE_TIMESTAMP,
        status=TxStatus.SUCCESS,
        legs=legs,
    )


@pytest_asyncio.fixture
async def price_api():
    """Local stats endpoint; ``prices`` maps action to the returned price."""
    state = {"prices": {"ethdailyprice": "2050.12"}, "requests": [], "status": 200}

    async def handler(request: web.Request) -> web.Response:
        query = dict(request.query)
        state["requests"].append(query)
        if state["status"] != 200:
            return web.Response(status=state["status"], text="down")
        price = state["prices"].get(query["action"])
        if price is None:
            return web.json_response({"status": "0", "message": "No data found", "result": []})
        field = "ethusd" if query["action"] == "ethdailyprice" else "tokenPriceUSD"
        result = [{"UTCDate": query["startdate"], field: price}]
        return web.json_response({"status": "1", "message": "OK", "result": result})

    app = web.Application()
    app.router.add_get("/api", handler)
    server = TestServer(app)
    await server.start_server()
    try:
        state["url"] = str(server.make_url("/api"))
        yield state
    finally:
        await server.close()


class TestParsePrice:
    """Test price extraction from stats responses."""

    @pytest.mark.parametrize(
        "payload, expected",
        [
            ({"result": {"ethusd": "2000.5"}}, Decimal("2000.5")),
            ({"result": [{"tokenPriceUSD": "0.9998"}]}, Decimal("0.9998")),
            ({"result": [{"value": 3}]}, Decimal("3")),
            ({"result": []}, None),
            ({"result": [{"ethusd": "0"}]}, None),
            ({"result": [{"ethusd": "n/a"}]}, None),
            ({"result": "Invalid API Key"}, None),
            (["unexpected"], None),
        ],
    )
    def test_parse_price(self, payload, expected):
        assert PriceService.parse_price(payload) == expected


class TestPriceService:
    """Test lookups, caching and persistence."""

    def test_price_key(self):
        assert price_key(USDC, DAY) == f"{USDC}_2023-11-14"

    def test_build_params(self):
        service = PriceService(None, api_key="k")

        native = service.build_params(NATIVE_CURRENCY_ID, DAY)
        token = service.build_params(USDC, DAY)

        assert native["action"] == "ethdailyprice"
        assert "contractaddress" not in native
        assert token["action"] == "tokenpricehistory"
        assert token["contractaddress"] == USDC
        assert token["startdate"] == token["enddate"] == "2023-11-14"
        assert token["apikey"] == "k"

    @pytest.mark.asyncio
    async def test_cached_price_needs_no_request(self, tmp_path):
        cache = tmp_path / "prices.json"
        cache.write_text(json.dumps({price_key(NATIVE_CURRENCY_ID, DAY): "1999.99"}))

        async with PriceService(cache, api_url="http://127.0.0.1:1/api") as service:
            price = await service.price(NATIVE_CURRENCY_ID, DAY)

        assert price == Decimal("1999.99")

    def test_unreadable_cache_is_ignored(self, tmp_path):
        cache = tmp_path / "prices.json"
        cache.write_text("not json")

        assert PriceService(cache).cache == {}

    @pytest.mark.asyncio
    async def test_prices_for_entries(self, tmp_path, price_api):
        cache = tmp_path / "prices.json"
        entries = [make_entry(NATIVE_CURRENCY_ID, 1), make_entry(USDC, 2)]

        async with PriceService(cache, api_key="k", api_url=price_api["url"]) as service:
            table = await service.prices_for(entries)
            service.save()

        day = entries[0].date
        assert table == {
            price_key(NATIVE_CURRENCY_ID, day): Decimal("2050.12"),
            price_key(USDC, day): None,
        }
        assert json.loads(cache.read_text()) == {
            price_key(NATIVE_CURRENCY_ID, day): "2050.12"
        }

    @pytest.mark.asyncio
    async def test_found_prices_are_reused(self, tmp_path, price_api):
        async with PriceService(tmp_path / "p.json", api_url=price_api["url"]) as service:
            await service.price(NATIVE_CURRENCY_ID, DAY)
            await service.price(NATIVE_CURRENCY_ID, DAY)

        assert len(price_api["requests"]) == 1

    @pytest.mark.asyncio
    async def test_http_error_gives_no_price(self, tmp_path, price_api):
        price_api["status"] = 502

        async with PriceService(tmp_path / "p.json", api_url=price_api["url"]) as service:
            price = await service.price(NATIVE_CURRENCY_ID, DAY)

        assert price is None
        assert service.cache == {}

    @pytest.mark.asyncio
    async def test_connection_error_gives_no_price(self, tmp_path):
        service = PriceService(tmp_path / "p.json", api_url="http://127.0.0.1:1/api", timeout=2)
        try:
            assert await service.price(USDC, DAY) is None
        finally:
            await service.close()
