"""Tests for MonitorService: batching, eligibility, pacing, timer driver."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from conftest import addr
from liquidation_bot.models import LiquidationOutcome, OutcomeKind
from liquidation_bot.services.monitor import MonitorService


def _outcome(user: str, kind: OutcomeKind = OutcomeKind.LIQUIDATED) -> LiquidationOutcome:
    return LiquidationOutcome(success=kind is OutcomeKind.LIQUIDATED, user=user, kind=kind)


def _track(chain, tracker, count: int, liquidatable=()) -> list[str]:
    users = []
    for n in range(1, count + 1):
        user = chain.open_position(addr(n), liquidatable=n in liquidatable)
        tracker.add_position(user)
        users.append(user)
    return users


@pytest.fixture
def callback():
    return AsyncMock(side_effect=lambda user: _outcome(user))


@pytest.fixture
def monitor(chain, tracker, callback):
    return MonitorService(chain, tracker, callback, batch_size=10, liquidation_delay=1.0)


class TestExecuteCheck:
    @pytest.mark.asyncio
    async def test_empty_set_makes_no_reads(self, chain, monitor, callback):
        report = await monitor.execute_check()

        assert report.tracked == 0
        assert chain.position_reads == []
        assert chain.liquidatable_reads == []
        assert chain.event_queries == []
        callback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reads_in_batches(self, chain, tracker, monitor):
        _track(chain, tracker, 25)

        with patch(
            "liquidation_bot.services.monitor.asyncio.gather", wraps=asyncio.gather
        ) as gather:
            report = await monitor.execute_check()

        assert [len(call.args) for call in gather.call_args_list] == [10, 10, 5]
        assert report.batches == 3
        assert report.checked == 25
        assert len(chain.position_reads) == 25

    @pytest.mark.asyncio
    async def test_no_eligible_never_invokes_callback(self, chain, tracker, monitor, callback):
        _track(chain, tracker, 5)

        report = await monitor.execute_check()

        callback.assert_not_awaited()
        assert report.eligible == []
        assert tracker.get_position_count() == 5

    @pytest.mark.asyncio
    async def test_eligible_liquidated_sequentially_with_delay(self, chain, tracker, monitor, callback):
        users = _track(chain, tracker, 25, liquidatable={3, 12, 24})

        with patch(
            "liquidation_bot.services.monitor.asyncio.sleep", new_callable=AsyncMock
        ) as sleep:
            report = await monitor.execute_check()

        expected = [users[2], users[11], users[23]]
        assert [call.args[0] for call in callback.await_args_list] == expected
        assert report.eligible == expected
        assert sleep.await_count == 2
        assert all(call.args == (1.0,) for call in sleep.await_args_list)
        assert report.liquidated == 3

    @pytest.mark.asyncio
    async def test_missing_position_is_dropped_and_persisted(self, chain, kv_store, tracker, monitor):
        kept = chain.open_position(addr(1))
        gone = addr(2)
        tracker.add_position(kept)
        tracker.add_position(gone)

        report = await monitor.execute_check()

        assert tracker.get_active_positions() == [kept]
        assert report.removed_missing == 1
        assert gone not in chain.liquidatable_reads
        assert json.loads(kv_store.data[tracker.positions_key]) == [kept]

    @pytest.mark.asyncio
    async def test_read_error_is_isolated(self, chain, tracker, monitor, callback):
        users = _track(chain, tracker, 3, liquidatable={3})
        chain.read_errors[users[0]] = ConnectionError("rpc hiccup")

        report = await monitor.execute_check()

        assert report.read_errors == 1
        assert report.checked == 2
        assert users[0] in tracker
        callback.assert_awaited_once_with(users[2])

    @pytest.mark.asyncio
    async def test_handler_failure_does_not_stop_pass(self, chain, tracker, callback):
        users = _track(chain, tracker, 2, liquidatable={1, 2})
        callback.side_effect = [RuntimeError("boom"), _outcome(users[1])]
        monitor = MonitorService(chain, tracker, callback, liquidation_delay=0)

        report = await monitor.execute_check()

        assert callback.await_count == 2
        assert report.failed == 1
        assert report.liquidated == 1

    @pytest.mark.asyncio
    async def test_outcomes_are_counted_by_kind(self, chain, tracker, callback):
        users = _track(chain, tracker, 3, liquidatable={1, 2, 3})
        kinds = iter([OutcomeKind.GAS_CEILING, OutcomeKind.STALE, OutcomeKind.REVERTED])
        callback.side_effect = lambda user: _outcome(user, next(kinds))
        monitor = MonitorService(chain, tracker, callback, liquidation_delay=0)

        report = await monitor.execute_check()

        assert (report.skipped, report.stale, report.failed) == (1, 1, 1)
        assert [o["user"] for o in report.outcomes] == users
        assert report.to_dict()["rewards_total"] == "0"


class TestTimerDriver:
    @pytest.mark.asyncio
    async def test_start_runs_immediately_and_stop_cancels(self, chain, tracker, callback):
        _track(chain, tracker, 1)
        before_check = AsyncMock()
        monitor = MonitorService(
            chain, tracker, callback, interval=0.01, before_check=before_check
        )

        monitor.start()
        for _ in range(200):
            if monitor.last_report is not None:
                break
            await asyncio.sleep(0.01)

        assert monitor.is_running
        assert monitor.last_report.checked == 1
        before_check.assert_awaited()

        await monitor.stop()
        assert not monitor.is_running

    @pytest.mark.asyncio
    async def test_loop_survives_failing_check(self, chain, tracker, callback):
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("first pass fails")

        monitor = MonitorService(chain, tracker, callback, interval=0.01, before_check=flaky)
        monitor.start()
        for _ in range(200):
            if calls >= 2:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()

        assert calls >= 2
