"""Tests for the explorer HTTP client against a local aiohttp server."""

from types import SimpleNamespace

from aiohttp import web
from aiohttp.test_utils import TestServer
import pytest
import pytest_asyncio

from arb_gnucash_importer.fetchers import EtherscanClient
from arb_gnucash_importer.models.transaction import FetchCursor, FetchStream, TxStatus
from arb_gnucash_importer.utils.exceptions import FatalFetchError, TransientFetchError

from factories import ALICE, BOB, USDC, tx_hash

EMPTY = {"status": "0", "message": "No transactions found", "result": []}


def tx_item(n: int = 1, block: int = 100, **overrides) -> dict:
    item = {
        "blockNumber": str(block),
        "timeStamp": str(1_700_000_000 + block),
        "hash": tx_hash(n).upper().replace("0X", "0x"),
        "from": ALICE.upper().replace("0X", "0x"),
        "to": BOB,
        "value": "1000000000000000000",
        "gas": "30000",
        "gasPrice": "100000000",
        "gasUsed": "21000",
        "isError": "0",
        "txreceipt_status": "1",
        "contractAddress": "",
        "transactionIndex": "3",
    }
    item.update(overrides)
    return item


def token_item(n: int = 1, block: int = 100, **overrides) -> dict:
    item = {
        "blockNumber": str(block),
        "timeStamp": str(1_700_000_000 + block),
        "hash": tx_hash(n),
        "from": BOB,
        "to": ALICE,
        "contractAddress": USDC,
        "value": "2500000",
        "tokenName": "USD Coin",
        "tokenSymbol": "USDC",
        "tokenDecimal": "6",
        "logIndex": "7",
    }
    item.update(overrides)
    return item


def ok(items: list) -> dict:
    return {"status": "1", "message": "OK", "result": items}


@pytest_asyncio.fixture
async def explorer():
    """Local explorer stub; queue (status, body, headers) tuples in ``responses``."""
    responses: list = []
    requests: list = []

    async def handler(request: web.Request) -> web.Response:
        requests.append(dict(request.query))
        status, body, headers = responses.pop(0) if responses else (200, EMPTY, {})
        if isinstance(body, str):
            return web.Response(status=status, text=body, headers=headers)
        return web.json_response(body, status=status, headers=headers)

    app = web.Application()
    app.router.add_get("/api", handler)
    server = TestServer(app)
    await server.start_server()
    try:
        yield SimpleNamespace(
            url=str(server.make_url("/api")), responses=responses, requests=requests
        )
    finally:
        await server.close()


@pytest_asyncio.fixture
async def client(explorer):
    c = EtherscanClient(api_key="secret", api_url=explorer.url, page_size=2, timeout=5)
    try:
        yield c
    finally:
        await c.close()


TXLIST = FetchCursor(ALICE, FetchStream.TXLIST)
TOKENTX = FetchCursor(ALICE, FetchStream.TOKENTX)


class TestEtherscanClient:
    """Test request parameters, parsing and error classification."""

    @pytest.mark.asyncio
    async def test_request_parameters(self, explorer, client):
        await client.fetch_page(FetchCursor(ALICE, FetchStream.TOKENTX, 10, 20, page=3))

        assert explorer.requests == [
            {
                "module": "account",
                "action": "tokentx",
                "address": ALICE,
                "startblock": "10",
                "endblock": "20",
                "page": "3",
                "offset": "2",
                "sort": "asc",
                "apikey": "secret",
            }
        ]

    @pytest.mark.asyncio
    async def test_chain_id_parameter(self, explorer):
        async with EtherscanClient("secret", explorer.url, chain_id=42161) as client:
            await client.fetch_page(TXLIST)

        assert explorer.requests[0]["chainid"] == "42161"

    @pytest.mark.asyncio
    async def test_parses_transactions(self, explorer, client):
        explorer.responses.append((200, ok([tx_item()]), {}))

        page = await client.fetch_page(TXLIST)

        tx = page.records[0]
        assert tx.hash == tx_hash(1)
        assert tx.from_address == ALICE
        assert tx.value == 10**18
        assert tx.gas_cost == 21000 * 10**8
        assert tx.status == TxStatus.SUCCESS
        assert tx.transaction_index == 3
        assert page.is_last

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [{"isError": "1"}, {"txreceipt_status": "0"}],
    )
    async def test_failed_transactions(self, explorer, client, overrides):
        explorer.responses.append((200, ok([tx_item(**overrides)]), {}))

        page = await client.fetch_page(TXLIST)

        assert page.records[0].status == TxStatus.FAILED

    @pytest.mark.asyncio
    async def test_contract_creation_uses_contract_address(self, explorer, client):
        created = "0x" + "f" * 40
        explorer.responses.append((200, ok([tx_item(to="", contractAddress=created)]), {}))

        page = await client.fetch_page(TXLIST)

        assert page.records[0].to_address == created

    @pytest.mark.asyncio
    async def test_parses_token_transfers(self, explorer, client):
        explorer.responses.append((200, ok([token_item(), token_item(2, logIndex="")]), {}))

        page = await client.fetch_page(TOKENTX)

        first, second = page.records
        assert first.token_address == USDC
        assert first.amount == 2_500_000
        assert first.token_decimals == 6
        assert first.log_index == 7
        assert second.log_index is None

    @pytest.mark.asyncio
    async def test_full_page_continues(self, explorer, client):
        explorer.responses.append((200, ok([tx_item(1, 100), tx_item(2, 105)]), {}))

        page = await client.fetch_page(TXLIST)

        assert page.next_cursor == TXLIST.from_block(105)

    @pytest.mark.asyncio
    async def test_empty_result(self, client):
        page = await client.fetch_page(TXLIST)

        assert page.records == ()
        assert page.is_last

    @pytest.mark.asyncio
    async def test_rate_limit_status_with_retry_after(self, explorer, client):
        explorer.responses.append((429, "slow down", {"Retry-After": "7"}))

        with pytest.raises(TransientFetchError) as exc_info:
            await client.fetch_page(TXLIST)

        assert exc_info.value.retry_after_seconds == 7
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, explorer, client):
        explorer.responses.append((503, "unavailable", {}))

        with pytest.raises(TransientFetchError):
            await client.fetch_page(TXLIST)

    @pytest.mark.asyncio
    async def test_unauthorized_is_global(self, explorer, client):
        explorer.responses.append((401, "no", {}))

        with pytest.raises(FatalFetchError) as exc_info:
            await client.fetch_page(TXLIST)

        assert exc_info.value.is_global

    @pytest.mark.asyncio
    async def test_other_client_error_is_address_scoped(self, explorer, client):
        explorer.responses.append((404, "missing", {}))

        with pytest.raises(FatalFetchError) as exc_info:
            await client.fetch_page(TXLIST)

        assert exc_info.value.scope == FatalFetchError.ADDRESS

    @pytest.mark.asyncio
    async def test_non_json_response_is_global(self, explorer, client):
        explorer.responses.append((200, "<html>gateway</html>", {}))

        with pytest.raises(FatalFetchError) as exc_info:
            await client.fetch_page(TXLIST)

        assert exc_info.value.is_global

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload, error, is_global",
        [
            (
                {"status": "0", "message": "NOTOK", "result": "Max rate limit reached"},
                TransientFetchError,
                None,
            ),
            (
                {"status": "0", "message": "NOTOK", "result": "Invalid API Key"},
                FatalFetchError,
                True,
            ),
            (
                {"status": "0", "message": "NOTOK", "result": "Error! Invalid address format"},
                FatalFetchError,
                False,
            ),
            ({"status": "1", "message": "OK"}, FatalFetchError, True),
            ({"status": "1", "message": "OK", "result": "oops"}, FatalFetchError, True),
        ],
    )
    async def test_explorer_error_envelopes(self, explorer, client, payload, error, is_global):
        explorer.responses.append((200, payload, {}))

        with pytest.raises(error) as exc_info:
            await client.fetch_page(TXLIST)

        if is_global is not None:
            assert exc_info.value.is_global is is_global

    @pytest.mark.asyncio
    async def test_malformed_item_is_global(self, explorer, client):
        item = tx_item()
        del item["hash"]
        explorer.responses.append((200, ok([item]), {}))

        with pytest.raises(FatalFetchError, match="Malformed transaction") as exc_info:
            await client.fetch_page(TXLIST)

        assert exc_info.value.is_global

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        async with EtherscanClient("secret", "http://127.0.0.1:1/api", timeout=2) as client:
            with pytest.raises(TransientFetchError, match="Connection error"):
                await client.fetch_page(TXLIST)

    @pytest.mark.asyncio
    async def test_latest_block(self, explorer):
        explorer.responses.append((200, {"jsonrpc": "2.0", "id": 83, "result": "0x10d4f"}, {}))

        async with EtherscanClient("secret", explorer.url, chain_id=42161) as client:
            assert await client.latest_block() == 0x10D4F

        assert explorer.requests == [
            {
                "module": "proxy",
                "action": "eth_blockNumber",
                "apikey": "secret",
                "chainid": "42161",
            }
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload, error",
        [
            ({"status": "0", "message": "NOTOK", "result": "Invalid API Key"}, FatalFetchError),
            (
                {"status": "0", "message": "NOTOK", "result": "Max calls per sec rate limit"},
                TransientFetchError,
            ),
            ({"jsonrpc": "2.0", "id": 1, "error": {"message": "unknown block"}}, FatalFetchError),
            ({"jsonrpc": "2.0", "id": 1, "result": "0xnothex"}, FatalFetchError),
        ],
    )
    async def test_latest_block_errors(self, explorer, client, payload, error):
        explorer.responses.append((200, payload, {}))

        with pytest.raises(error) as exc_info:
            await client.latest_block()

        if error is FatalFetchError:
            assert exc_info.value.is_global
