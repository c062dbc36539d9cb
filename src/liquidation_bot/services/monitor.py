"""
monitor.py — Liquidation eligibility check and its timer driver.

One pass (``execute_check``):
  1. Nothing tracked -> return, no chain reads
  2. Split tracked addresses into batches of ``batch_size``
  3. Per batch, concurrently: getPosition -> drop + persist if gone,
     otherwise isLiquidatable
  4. Liquidate the eligible ones one at a time, ``liquidation_delay``
     seconds apart, through the callback

A failed read is logged and counted; the address stays tracked and is read
again next pass.

The persistent driver (``start``/``stop``) runs the same pass immediately and
then every ``interval`` seconds. The stateless driver just calls
``execute_check`` once.
"""

import asyncio
import contextlib
import logging
import time
from typing import Awaitable, Callable, Optional

from liquidation_bot.metrics import CheckReport
from liquidation_bot.models import LiquidationOutcome
from liquidation_bot.services.chain.interface import ChainClient
from liquidation_bot.services.position_tracker import PositionTracker

logger = logging.getLogger("monitor")

IDLE_LOG_INTERVAL_SECONDS = 60

LiquidationCallback = Callable[[str], Awaitable[Optional[LiquidationOutcome]]]
BeforeCheckHook = Callable[[], Awaitable[object]]


class MonitorService:
    def __init__(
        self,
        chain: ChainClient,
        tracker: PositionTracker,
        on_liquidatable_found: LiquidationCallback,
        *,
        interval: float = 15.0,
        batch_size: int = 10,
        liquidation_delay: float = 1.0,
        before_check: BeforeCheckHook | None = None,
    ) -> None:
        self._chain = chain
        self._tracker = tracker
        self._on_liquidatable_found = on_liquidatable_found
        self._interval = interval
        self._batch_size = batch_size
        self._liquidation_delay = liquidation_delay
        self._before_check = before_check

        self._task: asyncio.Task | None = None
        self._last_idle_log: float | None = None
        self.last_report: CheckReport | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Persistent driver
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run a check now and then every ``interval`` seconds until stop()."""
        if self.is_running:
            logger.warning("Monitor is already running")
            return
        logger.info("Starting monitoring loop (interval: %.1fs)", self._interval)
        self._task = asyncio.create_task(self._run_loop())

    async def _run_loop(self) -> None:
        while True:
            try:
                if self._before_check is not None:
                    await self._before_check()
                await self.execute_check()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Monitoring check failed")
            await asyncio.sleep(self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("Monitoring loop stopped")

    # ------------------------------------------------------------------
    # The check
    # ------------------------------------------------------------------

    async def execute_check(self) -> CheckReport:
        """One bounded pass over whatever is currently tracked."""
        report = CheckReport()
        active = self._tracker.get_active_positions()
        report.tracked = len(active)

        if not active:
            self._log_idle()
            self.last_report = report
            return report

        logger.info("Checking %d position(s) for liquidation...", len(active))

        for start in range(0, len(active), self._batch_size):
            batch = active[start:start + self._batch_size]
            report.batches += 1
            results = await asyncio.gather(
                *(self._check_address(user, report) for user in batch)
            )
            report.eligible.extend(user for user, eligible in zip(batch, results) if eligible)

        if report.eligible:
            logger.info("Found %d liquidatable position(s)", len(report.eligible))
            for index, user in enumerate(report.eligible):
                if index:
                    await asyncio.sleep(self._liquidation_delay)
                try:
                    outcome = await self._on_liquidatable_found(user)
                except Exception:
                    report.failed += 1
                    logger.exception("Liquidation handler failed for %s", user)
                    continue
                if outcome is not None:
                    report.record_outcome(outcome)

        self.last_report = report.emit()
        return report

    async def _check_address(self, user: str, report: CheckReport) -> bool:
        try:
            position = await self._chain.get_position(user)
            if not position.exists:
                self._tracker.remove_position(user)
                report.removed_missing += 1
                report.checked += 1
                logger.info("Position %s no longer exists, stopped tracking", user)
                await self._tracker.sync_to_kv()
                return False

            eligible = await self._chain.is_liquidatable(user)
            report.checked += 1
            return bool(eligible)
        except Exception as exc:
            report.read_errors += 1
            logger.error("Error checking position %s: %s", user, exc)
            return False

    def _log_idle(self) -> None:
        now = time.monotonic()
        if self._last_idle_log is None or now - self._last_idle_log > IDLE_LOG_INTERVAL_SECONDS:
            logger.info("No active positions to monitor")
            self._last_idle_log = now
