"""Abstract interface for the TradingEngine chain client.

Every backend (web3 over HTTP, the in-memory fake used by tests) implements
the abstract reads and writes below. Event fetching across a block range and
the polling subscription are built on top of ``get_events`` and
``get_block_number`` so all backends share them.

All methods are async: the monitor runs many reads concurrently on one loop.
"""

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from liquidation_bot.models import (
    EventKind,
    LiquidationReceipt,
    Position,
    PositionEvent,
)

logger = logging.getLogger("chain")

ALL_EVENT_KINDS = (EventKind.OPENED, EventKind.CLOSED, EventKind.LIQUIDATED)


class ChainClient(ABC):
    """Read, query and submit capabilities over one TradingEngine deployment."""

    @property
    @abstractmethod
    def liquidator_address(self) -> str:
        """Checksummed address of the signing account."""
        ...

    @abstractmethod
    async def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def get_block_number(self) -> int:
        ...

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        """Native balance in wei."""
        ...

    @abstractmethod
    async def get_events(
        self, kind: EventKind, from_block: int, to_block: int
    ) -> list[PositionEvent]:
        """Decoded logs of one event type in ``[from_block, to_block]``."""
        ...

    @abstractmethod
    async def get_position(self, user: str) -> Position:
        ...

    @abstractmethod
    async def is_liquidatable(self, user: str) -> bool:
        ...

    @abstractmethod
    async def estimate_max_fee_per_gas(self) -> int:
        """Expected fee per gas in wei, compared against the gas ceiling."""
        ...

    @abstractmethod
    async def send_liquidation(
        self, user: str, max_fee_per_gas: Optional[int] = None
    ) -> str:
        """Sign and broadcast ``liquidate(user)``. Returns the tx hash.

        ``max_fee_per_gas`` caps what the transaction may pay per gas.
        """
        ...

    @abstractmethod
    async def wait_for_receipt(
        self, tx_hash: str, timeout: float
    ) -> LiquidationReceipt:
        """Wait for confirmation and decode the ``Liquidated`` reward."""
        ...

    @abstractmethod
    async def mark_price(self) -> int:
        ...

    @abstractmethod
    async def is_paused(self) -> bool:
        ...

    async def close(self) -> None:
        """Release transport resources. Default: nothing to release."""
        return None

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def get_position_events(
        self,
        from_block: int,
        to_block: int,
        *,
        chunk_size: Optional[int] = None,
        kinds: Iterable[EventKind] = ALL_EVENT_KINDS,
    ) -> list[PositionEvent]:
        """All lifecycle events in the range, ordered by (block, log index).

        The three event types are queried concurrently. Ranges wider than
        ``chunk_size`` are split so public RPCs don't reject the query.
        Any query failure propagates.
        """
        if to_block < from_block:
            return []

        windows = list(_block_windows(from_block, to_block, chunk_size))
        queries = [
            self.get_events(kind, start, end)
            for kind in kinds
            for start, end in windows
        ]
        batches = await asyncio.gather(*queries)
        events = [event for batch in batches for event in batch]
        events.sort(key=lambda e: e.sort_key)
        return events

    def subscribe(
        self,
        *,
        from_block: Optional[int] = None,
        poll_interval: float = 4.0,
        chunk_size: Optional[int] = None,
    ) -> "EventSubscription":
        """Open a push channel of live position events.

        The caller must ``start()`` it inside a running loop and ``aclose()``
        it on shutdown.
        """
        return EventSubscription(
            self,
            from_block=from_block,
            poll_interval=poll_interval,
            chunk_size=chunk_size,
        )


def _block_windows(from_block: int, to_block: int, chunk_size: Optional[int]):
    if not chunk_size:
        yield from_block, to_block
        return
    start = from_block
    while start <= to_block:
        end = min(start + chunk_size - 1, to_block)
        yield start, end
        start = end + 1


class EventSubscription:
    """Polling subscription exposed as an async iterator of ``PositionEvent``.

    A background task polls the chain head and queues every new event. The
    consumer drains it with ``async for``. ``aclose()`` stops polling and
    ends iteration; nothing is delivered after it returns.
    """

    _CLOSED = object()

    def __init__(
        self,
        chain: ChainClient,
        *,
        from_block: Optional[int] = None,
        poll_interval: float = 4.0,
        chunk_size: Optional[int] = None,
    ) -> None:
        self._chain = chain
        self._next_block = from_block
        self._poll_interval = poll_interval
        self._chunk_size = chunk_size
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._closed = False

    @property
    def next_block(self) -> Optional[int]:
        return self._next_block

    def start(self) -> None:
        if self._task is None and not self._closed:
            self._task = asyncio.create_task(self._poll_loop())

    async def poll_once(self) -> int:
        """Fetch events from the next unseen block up to head. Returns count."""
        head = await self._chain.get_block_number()
        if self._next_block is None:
            self._next_block = head + 1
            return 0
        if head < self._next_block:
            return 0

        events = await self._chain.get_position_events(
            self._next_block, head, chunk_size=self._chunk_size
        )
        for event in events:
            self._queue.put_nowait(event)
        self._next_block = head + 1
        return len(events)

    async def _poll_loop(self) -> None:
        while not self._closed:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # The window is retried on the next poll: _next_block did not move
                logger.warning("Event poll failed: %s", exc)
            await asyncio.sleep(self._poll_interval)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        # Drop anything undelivered and wake the consumer
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> "EventSubscription":
        return self

    async def __anext__(self) -> PositionEvent:
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item
