"""
position_tracker.py — Owner of the tracked-address set.

The tracked set is a conservative approximation of "accounts with an open
position". False positives are fine (the monitor drops them after reading
``getPosition``); missed opens are the failure mode backfill exists for.

Sources of change:
  - backfill_positions()   historical logs, union only, never removes
  - live subscription      Opened adds, Closed/Liquidated remove
  - remove_position()      called by the monitor and liquidation service

Durable store layout (all values are strings):
  {prefix}:positions            JSON list of lower-cased addresses
  {prefix}:last-backfill-time   unix ms
  {prefix}:last-backfill-block  block number

The three keys are written together by one ``set_many``; the in-memory cursor
only advances after that write succeeds, so a failed or skipped persist
replays the same window next time instead of losing it.
"""

import asyncio
import contextlib
import json
import logging
import time
from typing import Optional

from liquidation_bot.models import (
    BackfillCursor,
    BackfillResult,
    EventKind,
    PositionEvent,
    normalize_address,
)
from liquidation_bot.services.chain.interface import ChainClient, EventSubscription
from liquidation_bot.services.kv_store import KVStore, NullKVStore

logger = logging.getLogger("tracker")


def reconcile_events(events: list[PositionEvent]) -> set[str]:
    """Addresses whose last event in ``events`` is an open.

    Same as the set difference ``opened - (closed | liquidated)`` with one
    intentional exception: an address that closes and then re-opens inside
    the same window is kept, since its latest on-chain state is open. Events
    are ordered by ``(block, log_index)``.
    """
    state: dict[str, bool] = {}
    for event in sorted(events, key=lambda e: e.sort_key):
        state[event.user] = event.kind is EventKind.OPENED
    return {user for user, is_open in state.items() if is_open}


class PositionTracker:
    """Single writer for the tracked-address set."""

    def __init__(
        self,
        chain: ChainClient,
        kv_store: KVStore | None = None,
        *,
        backfill_block_range: int = 6_000,
        log_chunk_size: Optional[int] = None,
        event_poll_interval: float = 4.0,
        key_prefix: str = "liquidation-bot",
    ) -> None:
        self._chain = chain
        self._kv = kv_store or NullKVStore()
        self._backfill_block_range = backfill_block_range
        self._log_chunk_size = log_chunk_size
        self._event_poll_interval = event_poll_interval

        self.positions_key = f"{key_prefix}:positions"
        self.backfill_time_key = f"{key_prefix}:last-backfill-time"
        self.backfill_block_key = f"{key_prefix}:last-backfill-block"

        self._positions: set[str] = set()
        self._cursor: BackfillCursor | None = None
        # Set while the persisted list could not be read; no positions write
        # happens until a reload succeeds
        self._store_degraded = False
        self._persist_lock = asyncio.Lock()

        self._subscription: EventSubscription | None = None
        self._listener_task: asyncio.Task | None = None

    @property
    def kv_store(self) -> KVStore:
        return self._kv

    @property
    def listening(self) -> bool:
        return self._listener_task is not None

    @property
    def store_degraded(self) -> bool:
        return self._store_degraded

    # ------------------------------------------------------------------
    # Set access
    # ------------------------------------------------------------------

    def get_active_positions(self) -> list[str]:
        return sorted(self._positions)

    def get_position_count(self) -> int:
        return len(self._positions)

    def __contains__(self, user: str) -> bool:
        return normalize_address(user) in self._positions

    def add_position(self, user: str) -> bool:
        """Track ``user``. Returns True if it was not tracked before."""
        user = normalize_address(user)
        if user in self._positions:
            return False
        self._positions.add(user)
        return True

    def remove_position(self, user: str) -> bool:
        """Stop tracking ``user``. Returns True if it was tracked."""
        user = normalize_address(user)
        if user not in self._positions:
            return False
        self._positions.discard(user)
        return True

    # ------------------------------------------------------------------
    # Durable store
    # ------------------------------------------------------------------

    async def load_from_kv(self) -> int:
        """Merge the persisted address list into the set.

        A missing key is a first run, not an error. Store failures are logged
        and the tracker carries on in memory without writing the list back
        (see ``store_degraded``). Returns the tracked count.
        """
        try:
            raw = await self._kv.get(self.positions_key)
        except Exception as exc:
            self._store_degraded = True
            logger.error("Failed to load positions from store, continuing in-memory: %s", exc)
            return len(self._positions)
        self._store_degraded = False

        if raw is None:
            logger.info("No persisted positions found (first run)")
            return len(self._positions)

        try:
            addresses = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.error("Persisted position list is corrupt, ignoring it: %s", exc)
            return len(self._positions)

        for address in addresses:
            if isinstance(address, str) and address:
                self._positions.add(normalize_address(address))
        logger.info("Loaded %d positions from store", len(self._positions))
        return len(self._positions)

    def _snapshot(self) -> str:
        return json.dumps(sorted(self._positions))

    async def _store_writable(self) -> bool:
        """True unless the persisted list is still unreadable.

        A degraded tracker retries the load first, so the stored list is
        merged into the set before anything overwrites it.
        """
        if not self._store_degraded:
            return True
        await self.load_from_kv()
        if self._store_degraded:
            logger.warning("Persisted positions unreadable, leaving them untouched")
            return False
        return True

    async def sync_to_kv(self) -> bool:
        """Flush the current set. Returns False if nothing was written."""
        if not await self._store_writable():
            return False
        async with self._persist_lock:
            # Snapshot under the lock so the last writer always has the latest set
            payload = self._snapshot()
            try:
                await self._kv.set(self.positions_key, payload)
            except Exception as exc:
                logger.error("Failed to persist positions: %s", exc)
                return False
        return True

    async def get_backfill_cursor(self) -> BackfillCursor | None:
        """Cursor from the store, falling back to this process's own."""
        try:
            raw_block = await self._kv.get(self.backfill_block_key)
            raw_time = await self._kv.get(self.backfill_time_key)
        except Exception as exc:
            logger.error("Failed to read backfill cursor from store: %s", exc)
            return self._cursor

        if raw_block is None or raw_time is None:
            return self._cursor
        try:
            stored = BackfillCursor(block=int(raw_block), timestamp_ms=int(float(raw_time)))
        except ValueError:
            logger.error("Stored backfill cursor is malformed: block=%r time=%r", raw_block, raw_time)
            return self._cursor

        if self._cursor is not None and self._cursor.block > stored.block:
            return self._cursor
        return stored

    async def get_last_backfill_time(self) -> Optional[int]:
        """Unix ms of the last completed backfill, or None if there was none."""
        cursor = await self.get_backfill_cursor()
        return cursor.timestamp_ms if cursor else None

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    async def backfill_positions(
        self,
        force_full: bool = False,
        block_range: Optional[int] = None,
    ) -> BackfillResult:
        """Fold historical position events into the tracked set.

        Incremental from the stored cursor unless ``force_full`` is set or
        no usable cursor exists; a full pass looks back ``block_range``
        blocks (default: configured range) from the current head.

        Raises:
            Whatever the log query raised. A half-known set is not papered
            over: the caller decides whether to continue with what it has.
        """
        block_range = block_range or self._backfill_block_range
        current_block = await self._chain.get_block_number()

        cursor = None if force_full else await self.get_backfill_cursor()
        incremental = cursor is not None and cursor.block <= current_block
        if incremental:
            from_block = cursor.block
        else:
            if cursor is not None:
                logger.warning(
                    "Backfill cursor %d is ahead of head %d, rescanning",
                    cursor.block, current_block,
                )
            from_block = max(0, current_block - block_range)

        logger.info(
            "Backfilling positions (%s) from block %d to %d",
            "incremental" if incremental else "full", from_block, current_block,
        )

        try:
            events = await self._chain.get_position_events(
                from_block, current_block, chunk_size=self._log_chunk_size
            )
        except Exception as exc:
            logger.error("Error backfilling positions: %s", exc)
            raise

        result = BackfillResult(
            from_block=from_block,
            to_block=current_block,
            incremental=incremental,
            opened=len({e.user for e in events if e.kind is EventKind.OPENED}),
            closed=len({e.user for e in events if e.kind is EventKind.CLOSED}),
            liquidated=len({e.user for e in events if e.kind is EventKind.LIQUIDATED}),
        )

        # Union only: closes in the window do not evict already-tracked
        # addresses, the monitor's getPosition check handles those
        for user in sorted(reconcile_events(events)):
            if self.add_position(user):
                result.added.append(user)
        result.tracked = len(self._positions)

        result.persisted = await self._persist_backfill(current_block)

        logger.info(
            "Backfilled %d active positions (+%d). Opened: %d, Closed: %d, Liquidated: %d",
            result.tracked, len(result.added), result.opened, result.closed, result.liquidated,
        )
        return result

    async def _persist_backfill(self, to_block: int) -> bool:
        if not await self._store_writable():
            logger.warning("Backfill not persisted, cursor not advanced")
            return False
        cursor = BackfillCursor(block=to_block, timestamp_ms=int(time.time() * 1000))
        async with self._persist_lock:
            try:
                await self._kv.set_many({
                    self.positions_key: self._snapshot(),
                    self.backfill_block_key: str(cursor.block),
                    self.backfill_time_key: str(cursor.timestamp_ms),
                })
            except Exception as exc:
                logger.error("Failed to persist backfill, cursor not advanced: %s", exc)
                return False
        if self._cursor is None or cursor.block >= self._cursor.block:
            self._cursor = cursor
        return True

    async def backfill_if_due(self, max_age_seconds: float) -> BackfillResult | None:
        """Backfill when there never was one or the last one is too old.

        First run (no cursor anywhere) forces a full scan; later runs are
        incremental. Returns None when the last backfill is recent enough.
        """
        last = await self.get_last_backfill_time()
        if last is None:
            logger.info("Running backfill (first run)")
            return await self.backfill_positions(force_full=True)

        age = time.time() - last / 1000
        if age >= max_age_seconds:
            logger.info("Running backfill (last one %.0fs ago)", age)
            return await self.backfill_positions()

        logger.info("Skipping backfill (last one %.0fs ago)", age)
        return None

    # ------------------------------------------------------------------
    # Live events
    # ------------------------------------------------------------------

    def start_event_listeners(self) -> bool:
        """Subscribe to live position events.

        Only used when there is no durable store: a stateless invocation
        can't keep a subscription alive between calls, it relies on
        backfill instead. Returns True if listeners were started.
        """
        if self._kv.is_durable:
            logger.info("Durable store configured, live event listeners disabled")
            return False
        if self._listener_task is not None:
            return True

        from_block = self._cursor.block + 1 if self._cursor else None
        self._subscription = self._chain.subscribe(
            from_block=from_block,
            poll_interval=self._event_poll_interval,
            chunk_size=self._log_chunk_size,
        )
        self._subscription.start()
        self._listener_task = asyncio.create_task(self._drain(self._subscription))
        logger.info("Event listeners started")
        return True

    async def _drain(self, subscription: EventSubscription) -> None:
        async for event in subscription:
            self.apply_event(event)

    def apply_event(self, event: PositionEvent) -> None:
        if event.kind is EventKind.OPENED:
            if self.add_position(event.user):
                logger.info("New position opened: %s", event.user)
        elif event.kind is EventKind.CLOSED:
            if self.remove_position(event.user):
                logger.info("Position closed: %s", event.user)
        elif self.remove_position(event.user):
            logger.info("Position liquidated: %s by %s", event.user, event.liquidator)

    async def stop_event_listeners(self) -> None:
        subscription, task = self._subscription, self._listener_task
        self._subscription = None
        self._listener_task = None
        if subscription is not None:
            await subscription.aclose()
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if subscription is not None or task is not None:
            logger.info("Event listeners stopped")
