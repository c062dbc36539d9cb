"""Shared fixtures: an in-memory TradingEngine and ready-made services.

``FakeChainClient`` implements the full ``ChainClient`` interface over plain
Python state so tracker / monitor / liquidation tests run without an RPC.
Failure injection is done by assigning exceptions to the ``*_error``
attributes.
"""

from typing import Optional

import pytest

from liquidation_bot.config import BotConfig
from liquidation_bot.models import (
    EventKind,
    LiquidationReceipt,
    Position,
    PositionEvent,
    normalize_address,
)
from liquidation_bot.services.chain.interface import ChainClient
from liquidation_bot.services.kv_store import InMemoryKVStore
from liquidation_bot.services.position_tracker import PositionTracker

TEST_PRIVATE_KEY = "0x" + "11" * 32
TEST_ENGINE_ADDRESS = "0x" + "22" * 20
LIQUIDATOR = "0x" + "ab" * 20


def addr(n: int) -> str:
    """Deterministic test address."""
    return "0x" + f"{n:040x}"


def event(kind: EventKind, user: str, block: int, log_index: int = 0, **kwargs) -> PositionEvent:
    return PositionEvent(kind, normalize_address(user), block, log_index, **kwargs)


class FakeChainClient(ChainClient):
    def __init__(self, block_number: int = 10_000) -> None:
        self.block_number = block_number
        self.balance = 10**18
        self.price = 60_000 * 10**18
        self.paused = False

        self.events: list[PositionEvent] = []
        self.positions: dict[str, Position] = {}
        self.liquidatable: set[str] = set()
        self.fee = 1 * 10**9
        self.reward: Optional[int] = 5 * 10**17
        self.receipt_succeeds = True

        # Failure injection
        self.events_error: Optional[Exception] = None
        self.read_errors: dict[str, Exception] = {}
        self.send_error: Optional[Exception] = None
        self.wait_error: Optional[Exception] = None

        # Call records
        self.event_queries: list[tuple[EventKind, int, int]] = []
        self.position_reads: list[str] = []
        self.liquidatable_reads: list[str] = []
        self.sent: list[tuple[str, Optional[int]]] = []
        self.closed = False

    # --- helpers for tests ---

    def open_position(self, user: str, *, liquidatable: bool = False) -> str:
        user = normalize_address(user)
        self.positions[user] = Position(user, True, 1, 1, 1, 10, 0, True)
        if liquidatable:
            self.liquidatable.add(user)
        return user

    # --- ChainClient ---

    @property
    def liquidator_address(self) -> str:
        return LIQUIDATOR

    async def is_connected(self) -> bool:
        return True

    async def get_block_number(self) -> int:
        return self.block_number

    async def get_balance(self, address: str) -> int:
        return self.balance

    async def get_events(self, kind, from_block, to_block):
        self.event_queries.append((kind, from_block, to_block))
        if self.events_error is not None:
            raise self.events_error
        return [
            e for e in self.events
            if e.kind is kind and from_block <= e.block_number <= to_block
        ]

    async def get_position(self, user):
        self.position_reads.append(user)
        if user in self.read_errors:
            raise self.read_errors[user]
        return self.positions.get(user, Position.missing(user))

    async def is_liquidatable(self, user):
        self.liquidatable_reads.append(user)
        return user in self.liquidatable

    async def estimate_max_fee_per_gas(self):
        return self.fee

    async def send_liquidation(self, user, max_fee_per_gas=None):
        self.sent.append((user, max_fee_per_gas))
        if self.send_error is not None:
            raise self.send_error
        return "0x" + f"{len(self.sent):064x}"

    async def wait_for_receipt(self, tx_hash, timeout):
        if self.wait_error is not None:
            raise self.wait_error
        user = self.sent[-1][0]
        if self.receipt_succeeds:
            self.positions.pop(user, None)
            self.liquidatable.discard(user)
        return LiquidationReceipt(
            tx_hash=tx_hash,
            succeeded=self.receipt_succeeds,
            block_number=self.block_number + 1,
            reward=self.reward if self.receipt_succeeds else None,
        )

    async def mark_price(self):
        return self.price

    async def is_paused(self):
        return self.paused

    async def close(self):
        self.closed = True


@pytest.fixture
def chain() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def kv_store() -> InMemoryKVStore:
    return InMemoryKVStore()


@pytest.fixture
def tracker(chain, kv_store) -> PositionTracker:
    return PositionTracker(chain, kv_store, backfill_block_range=6_000)


@pytest.fixture
def config() -> BotConfig:
    return BotConfig(
        liquidator_private_key=TEST_PRIVATE_KEY,
        trading_engine_address=TEST_ENGINE_ADDRESS,
        liquidation_delay_ms=0,
    )


class FlakyGetStore(InMemoryKVStore):
    """Store whose reads of the position list fail ``failures`` times."""

    def __init__(self, initial=None, *, failures: int = 1) -> None:
        super().__init__(initial)
        self.failures = failures

    async def get(self, key: str) -> str | None:
        if key.endswith(":positions") and self.failures:
            self.failures -= 1
            raise ConnectionError("store read timed out")
        return await super().get(key)
