"""Tests for the chain data fetcher and pagination."""

import asyncio

import pytest

from arb_gnucash_importer.config import FetchConfig
from arb_gnucash_importer.fetchers import ChainDataFetcher, TokenBucket, next_cursor_for
from arb_gnucash_importer.models.report import AddressFetchFailure
from arb_gnucash_importer.models.transaction import (
    AddressHistory,
    FetchCursor,
    FetchStream,
)
from arb_gnucash_importer.utils.exceptions import FatalFetchError, TransientFetchError

from factories import ALICE, BOB, CAROL, FakeSource, make_transfer, make_tx, no_sleep


def fast_config(**overrides) -> FetchConfig:
    values = {
        "requests_per_second": 1000,
        "burst": 100,
        "max_attempts": 3,
        "backoff_base_seconds": 1,
        "backoff_max_seconds": 8,
    }
    values.update(overrides)
    return FetchConfig(**values)


def make_fetcher(source, **overrides) -> ChainDataFetcher:
    return ChainDataFetcher(source, fast_config(**overrides), sleep=no_sleep)


async def collect(fetcher, addresses, **kwargs):
    return [outcome async for outcome in fetcher.stream(addresses, **kwargs)]


class TestNextCursor:
    """Test the continuation rule."""

    def test_short_page_ends_stream(self):
        cursor = FetchCursor(ALICE, FetchStream.TXLIST)
        records = (make_tx(1, block=5),)

        assert next_cursor_for(cursor, records, page_size=2) is None

    def test_full_page_continues_from_last_block(self):
        cursor = FetchCursor(ALICE, FetchStream.TXLIST, start_block=0)
        records = (make_tx(1, block=5), make_tx(2, block=9))

        assert next_cursor_for(cursor, records, page_size=2) == FetchCursor(
            ALICE, FetchStream.TXLIST, start_block=9, page=1
        )

    def test_full_page_in_start_block_advances_page(self):
        cursor = FetchCursor(ALICE, FetchStream.TXLIST, start_block=9)
        records = (make_tx(1, block=9), make_tx(2, block=9))

        assert next_cursor_for(cursor, records, page_size=2) == cursor.next_page()


class TestChainDataFetcher:
    """Test paging, retries and failure isolation."""

    @pytest.mark.asyncio
    async def test_pages_overlap_and_records_are_complete(self):
        txs = [make_tx(n, block=100 + n // 2) for n in range(1, 8)]
        source = FakeSource(txs, page_size=3)
        fetcher = make_fetcher(source)

        history = await fetcher.fetch_address(ALICE)

        assert {t.hash for t in history.transactions} == {t.hash for t in txs}
        assert len(history.transactions) >= len(txs)
        assert history.cursors[0].stream == FetchStream.TXLIST

    @pytest.mark.asyncio
    async def test_end_block_bounds_the_fetch(self):
        source = FakeSource([make_tx(1, block=10), make_tx(2, block=20)])
        fetcher = make_fetcher(source)

        history = await fetcher.fetch_address(ALICE, start_block=0, end_block=15)

        assert [t.block_number for t in history.transactions] == [10]

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self):
        slept = []

        async def record_sleep(seconds):
            slept.append(seconds)

        source = FakeSource(
            [make_tx(1)],
            errors={
                ALICE: [
                    TransientFetchError("busy"),
                    TransientFetchError("busy", retry_after_seconds=5),
                ]
            },
        )
        fetcher = ChainDataFetcher(source, fast_config(), sleep=record_sleep)

        history = await fetcher.fetch_address(ALICE)

        assert len(history.transactions) == 1
        assert fetcher.retry_count == 2
        assert sorted(slept) == [1, 5]

    @pytest.mark.asyncio
    async def test_escalates_after_max_attempts(self):
        source = FakeSource(errors={ALICE: [TransientFetchError("busy")] * 10})
        fetcher = make_fetcher(source, max_attempts=2)

        with pytest.raises(FatalFetchError) as exc_info:
            await fetcher.fetch_page(FetchCursor(ALICE, FetchStream.TXLIST))

        assert exc_info.value.scope == FatalFetchError.ADDRESS
        assert isinstance(exc_info.value.original_error, TransientFetchError)

    @pytest.mark.asyncio
    async def test_rate_limit_response_drains_bucket(self):
        now = [0.0]

        async def fake_sleep(seconds):
            now[0] += seconds

        bucket = TokenBucket(rate=1, capacity=5, clock=lambda: now[0], sleep=fake_sleep)
        source = FakeSource(
            [make_tx(1)],
            errors={ALICE: [TransientFetchError("Rate limit exceeded", status_code=429)]},
        )
        fetcher = ChainDataFetcher(source, fast_config(), rate_limiter=bucket, sleep=no_sleep)

        await fetcher.fetch_page(FetchCursor(ALICE, FetchStream.TXLIST))

        assert now[0] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_head_block_from_source(self):
        fetcher = make_fetcher(FakeSource(head=4321))

        assert await fetcher.head_block() == 4321
        assert fetcher.request_count == 1

    @pytest.mark.asyncio
    async def test_head_block_failure_is_global(self):
        class BusySource(FakeSource):
            async def latest_block(self):
                raise TransientFetchError("busy")

        fetcher = make_fetcher(BusySource(), max_attempts=2)

        with pytest.raises(FatalFetchError) as exc_info:
            await fetcher.head_block()

        assert exc_info.value.is_global
        assert fetcher.retry_count == 1

    def test_backoff_is_capped_and_honours_retry_after(self):
        fetcher = make_fetcher(FakeSource())

        assert [fetcher.backoff_delay(a) for a in range(5)] == [1, 2, 4, 8, 8]
        assert fetcher.backoff_delay(0, retry_after=3) == 3

    @pytest.mark.asyncio
    async def test_address_failure_does_not_stop_others(self):
        source = FakeSource(
            [
                make_tx(1, from_address=ALICE, to_address=CAROL),
                make_tx(2, from_address=BOB, to_address=CAROL),
            ],
            errors={BOB: [FatalFetchError("bad address", scope=FatalFetchError.ADDRESS)]},
        )
        fetcher = make_fetcher(source)

        outcomes = await collect(fetcher, [ALICE, BOB])

        histories = [o for o in outcomes if isinstance(o, AddressHistory)]
        failures = [o for o in outcomes if isinstance(o, AddressFetchFailure)]
        assert [h.address for h in histories] == [ALICE]
        assert [f.address for f in failures] == [BOB]
        assert "bad address" in failures[0].error

    @pytest.mark.asyncio
    async def test_global_failure_aborts_run(self):
        source = FakeSource(
            [make_tx(1)],
            errors={BOB: [FatalFetchError("invalid api key", scope=FatalFetchError.GLOBAL)]},
        )
        fetcher = make_fetcher(source)

        with pytest.raises(FatalFetchError, match="invalid api key"):
            await collect(fetcher, [ALICE, BOB])

    @pytest.mark.asyncio
    async def test_per_address_start_blocks(self):
        source = FakeSource([make_tx(1, block=10), make_tx(2, block=50)])
        fetcher = make_fetcher(source)

        outcomes = await collect(fetcher, [ALICE], start_blocks={ALICE: 20})

        assert [t.block_number for t in outcomes[0].transactions] == [50]

    @pytest.mark.asyncio
    async def test_token_stream_fetched(self):
        source = FakeSource([make_tx(1), make_transfer(1)])
        fetcher = make_fetcher(source)

        history = await fetcher.fetch_address(ALICE)

        assert len(history.token_transfers) == 1
        streams = {c.stream for c in source.requests}
        assert streams == {FetchStream.TXLIST, FetchStream.TOKENTX}

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        active = 0
        peak = 0

        class SlowSource(FakeSource):
            async def fetch_page(self, cursor):
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                return await super().fetch_page(cursor)

        fetcher = make_fetcher(SlowSource(), concurrency=2)

        await collect(fetcher, [ALICE, BOB, CAROL])

        assert peak == 2


class TestTokenBucket:
    """Test the shared rate limiter."""

    @pytest.mark.asyncio
    async def test_waits_when_empty(self):
        now = [0.0]
        waits = []

        async def fake_sleep(seconds):
            waits.append(seconds)
            now[0] += seconds

        bucket = TokenBucket(rate=2, capacity=2, clock=lambda: now[0], sleep=fake_sleep)

        for _ in range(4):
            await bucket.acquire()

        assert waits == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_refills_to_capacity(self):
        now = [0.0]
        bucket = TokenBucket(rate=1, capacity=3, clock=lambda: now[0], sleep=no_sleep)
        bucket.drain()

        now[0] = 100.0

        assert bucket.available == 3

    @pytest.mark.asyncio
    async def test_concurrent_acquires_never_overdraw(self):
        now = [0.0]

        async def fake_sleep(seconds):
            now[0] += seconds
            await asyncio.sleep(0)

        bucket = TokenBucket(rate=10, capacity=5, clock=lambda: now[0], sleep=fake_sleep)

        await asyncio.gather(*(bucket.acquire() for _ in range(25)))

        assert now[0] == pytest.approx(2.0)

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            TokenBucket(rate=0, capacity=1)
        with pytest.raises(ValueError):
            TokenBucket(rate=1, capacity=0)
