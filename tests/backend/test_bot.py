"""End-to-end tests for the drivers, wired to the in-memory chain."""

import asyncio
import json
import time
from unittest.mock import AsyncMock

import pytest

from conftest import FlakyGetStore, addr, event
from liquidation_bot.bot import build_bot, check_wallet_balance, run_backfill, run_bot, run_liquidation_check
from liquidation_bot.errors import ConnectivityError
from liquidation_bot.models import EventKind, OutcomeKind
from liquidation_bot.services.kv_store import InMemoryKVStore, NullKVStore

A, B, D = addr(0xA), addr(0xB), addr(0xD)


def _seeded(positions, block=10_000, store_cls=InMemoryKVStore, **kwargs):
    """Store holding a position list and a backfill cursor from just now."""
    return store_cls({
        "liquidation-bot:positions": json.dumps(positions),
        "liquidation-bot:last-backfill-block": str(block),
        "liquidation-bot:last-backfill-time": str(int(time.time() * 1000)),
    }, **kwargs)


class TestStatelessCheck:
    @pytest.mark.asyncio
    async def test_first_invocation_backfills_and_liquidates(self, config, chain, kv_store):
        chain.events = [event(EventKind.OPENED, A, 9_000), event(EventKind.OPENED, B, 9_100)]
        chain.open_position(A)
        chain.open_position(B, liquidatable=True)

        report = await run_liquidation_check(config, kv_store, chain=chain)

        assert report.backfill["incremental"] is False
        assert report.eligible == [B]
        assert report.liquidated == 1
        assert report.outcomes[0]["reward_tokens"] == "0.5"
        assert json.loads(kv_store.data["liquidation-bot:positions"]) == [A]
        assert chain.closed is True

    @pytest.mark.asyncio
    async def test_recent_backfill_is_not_repeated(self, config, chain, kv_store):
        await run_liquidation_check(config, kv_store, chain=chain)
        chain.event_queries.clear()

        report = await run_liquidation_check(config, kv_store, chain=chain)

        assert report.backfill is None
        assert chain.event_queries == []

    @pytest.mark.asyncio
    async def test_tracked_set_survives_between_invocations(self, config, chain, kv_store):
        chain.events = [event(EventKind.OPENED, A, 9_000)]
        chain.open_position(A)
        await run_liquidation_check(config, kv_store, chain=chain)

        chain.liquidatable.add(A)
        report = await run_liquidation_check(config, kv_store, chain=chain)

        assert report.backfill is None
        assert report.eligible == [A]

    @pytest.mark.asyncio
    async def test_backfill_failure_still_checks_known_positions(self, config, chain):
        chain.events_error = RuntimeError("logs unavailable")
        chain.open_position(A, liquidatable=True)
        store = InMemoryKVStore({"liquidation-bot:positions": json.dumps([A])})

        report = await run_liquidation_check(config, store, chain=chain)

        assert report.backfill is None
        assert report.liquidated == 1

    @pytest.mark.asyncio
    async def test_insufficient_funds_keeps_address(self, config, chain):
        chain.open_position(A, liquidatable=True)
        chain.send_error = ValueError("insufficient funds for gas * price + value")
        store = InMemoryKVStore({"liquidation-bot:positions": json.dumps([A])})

        report = await run_liquidation_check(config, store, chain=chain)

        assert report.outcomes[0]["kind"] == OutcomeKind.INSUFFICIENT_FUNDS.value
        assert json.loads(store.data["liquidation-bot:positions"]) == [A]

    @pytest.mark.asyncio
    async def test_unreachable_rpc_raises(self, config, chain, kv_store):
        chain.get_block_number = AsyncMock(side_effect=ConnectionError("refused"))

        with pytest.raises(ConnectivityError):
            await run_liquidation_check(config, kv_store, chain=chain)
        assert chain.closed is True

    @pytest.mark.asyncio
    async def test_unreadable_store_is_not_overwritten(self, config, chain):
        store = _seeded([A, B], store_cls=FlakyGetStore, failures=1)
        chain.open_position(A)
        chain.open_position(B)

        await run_liquidation_check(config, store, chain=chain)

        assert json.loads(store.data["liquidation-bot:positions"]) == [A, B]

    @pytest.mark.asyncio
    async def test_store_never_readable_is_left_untouched(self, config, chain):
        store = _seeded([A, B], store_cls=FlakyGetStore, failures=100)
        chain.open_position(A, liquidatable=True)

        report = await run_liquidation_check(config, store, chain=chain)

        assert report.backfill is None
        assert report.eligible == []
        assert json.loads(store.data["liquidation-bot:positions"]) == [A, B]


class TestBackfillDriver:
    @pytest.mark.asyncio
    async def test_force_full(self, config, chain, kv_store):
        chain.events = [event(EventKind.OPENED, A, 9_500)]
        await run_backfill(config, kv_store, chain=chain)

        result = await run_backfill(config, kv_store, force_full=True, chain=chain)

        assert result.incremental is False
        assert result.from_block == 4_000
        assert result.tracked == 1

    @pytest.mark.asyncio
    async def test_log_failure_propagates(self, config, chain, kv_store):
        chain.events_error = RuntimeError("logs unavailable")
        with pytest.raises(RuntimeError):
            await run_backfill(config, kv_store, chain=chain)


class TestPersistentDriver:
    @pytest.mark.asyncio
    async def test_runs_until_stopped(self, config, chain):
        chain.events = [event(EventKind.OPENED, A, 9_000)]
        chain.open_position(A)
        config = config.model_copy(update={"monitor_interval_ms": 10, "event_poll_interval_ms": 10})
        stop = asyncio.Event()

        task = asyncio.create_task(run_bot(config, NullKVStore(), chain=chain, stop_event=stop))
        for _ in range(200):
            if chain.position_reads:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        assert A in chain.position_reads
        assert chain.closed is True

    def test_durable_store_backfills_before_each_check(self, config, chain):
        assert build_bot(config, InMemoryKVStore(), chain).monitor._before_check is not None
        assert build_bot(config, NullKVStore(), chain).monitor._before_check is None

    @pytest.mark.asyncio
    async def test_position_opened_after_startup_is_checked_next_tick(self, config, chain):
        store = _seeded([A])
        chain.open_position(A)
        bot = build_bot(config, store, chain)
        await bot.tracker.load_from_kv()

        chain.block_number = 10_001
        chain.events = [event(EventKind.OPENED, D, 10_001)]
        chain.open_position(D, liquidatable=True)
        backfill = await bot.monitor._before_check()
        report = await bot.monitor.execute_check()

        assert backfill.incremental is True
        assert backfill.added == [D]
        assert report.eligible == [D]

    @pytest.mark.asyncio
    async def test_failed_startup_keeps_stored_positions(self, config, chain):
        store = _seeded([A, B])
        chain.get_block_number = AsyncMock(side_effect=ConnectionError("refused"))

        with pytest.raises(ConnectivityError):
            await run_bot(config, store, chain=chain, stop_event=asyncio.Event())

        assert json.loads(store.data["liquidation-bot:positions"]) == [A, B]
        assert chain.closed is True


@pytest.mark.asyncio
async def test_zero_balance_is_reported(chain):
    chain.balance = 0
    assert await check_wallet_balance(chain) == 0
