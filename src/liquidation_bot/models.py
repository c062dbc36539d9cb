"""
models.py — Shared value types for the liquidation pipeline.

This file contains ONLY plain data holders:
  1. Enums for event and outcome classification
  2. Dataclasses passed between the chain client, tracker, monitor and
     liquidation service

It does NOT contain any I/O. Configuration lives in config.py, per-pass
metrics in metrics.py.
"""
from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Optional

# Token amounts on the TradingEngine use 18 decimals (MUSD / BTC)
TOKEN_DECIMALS = 18


def normalize_address(address: str) -> str:
    """Lower-case an address so set membership is case-insensitive."""
    return address.strip().lower()


def to_token_units(raw: int, decimals: int = TOKEN_DECIMALS) -> Decimal:
    return Decimal(raw) / (Decimal(10) ** decimals)


# ============================================================================
# ENUMS
# ============================================================================

class EventKind(str, enum.Enum):
    OPENED = "PositionOpened"
    CLOSED = "PositionClosed"
    LIQUIDATED = "Liquidated"


class OutcomeKind(str, enum.Enum):
    LIQUIDATED = "LIQUIDATED"
    GAS_CEILING = "GAS_CEILING"
    STALE = "STALE"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    REVERTED = "REVERTED"
    TIMEOUT = "TIMEOUT"
    FAILED = "FAILED"


# ============================================================================
# CONTRACT READS
# ============================================================================

@dataclass(frozen=True)
class Position:
    """TradingEngine.Position as returned by ``getPosition(user)``.

    Read-only: the bot only ever looks at ``exists``.
    """

    user: str
    is_long: bool
    entry_price: int
    size: int
    margin: int
    leverage: int
    open_timestamp: int
    exists: bool

    @classmethod
    def from_tuple(cls, user: str, raw: tuple | list) -> "Position":
        is_long, entry_price, size, margin, leverage, open_timestamp, exists = raw
        return cls(
            user=normalize_address(user),
            is_long=bool(is_long),
            entry_price=int(entry_price),
            size=int(size),
            margin=int(margin),
            leverage=int(leverage),
            open_timestamp=int(open_timestamp),
            exists=bool(exists),
        )

    @classmethod
    def missing(cls, user: str) -> "Position":
        return cls(normalize_address(user), False, 0, 0, 0, 0, 0, False)


@dataclass(frozen=True)
class PositionEvent:
    """One decoded position-lifecycle log."""

    kind: EventKind
    user: str
    block_number: int
    log_index: int = 0
    liquidator: Optional[str] = None
    reward: Optional[int] = None

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class LiquidationReceipt:
    """Confirmed result of a submitted ``liquidate`` transaction."""

    tx_hash: str
    succeeded: bool
    block_number: Optional[int] = None
    reward: Optional[int] = None


# ============================================================================
# TRACKER STATE
# ============================================================================

@dataclass(frozen=True)
class BackfillCursor:
    block: int
    timestamp_ms: int


@dataclass
class BackfillResult:
    from_block: int
    to_block: int
    incremental: bool
    opened: int = 0
    closed: int = 0
    liquidated: int = 0
    added: list[str] = field(default_factory=list)
    tracked: int = 0
    persisted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ============================================================================
# LIQUIDATION OUTCOME
# ============================================================================

@dataclass
class LiquidationOutcome:
    """Structured result of one liquidation attempt.

    ``reward`` is the raw 18-decimal value carried by the ``Liquidated``
    event; ``reward_tokens`` is the same value in whole tokens.
    """

    success: bool
    user: str
    kind: OutcomeKind
    tx_hash: Optional[str] = None
    reward: Optional[int] = None
    error: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.kind is OutcomeKind.GAS_CEILING

    @property
    def reward_tokens(self) -> Optional[Decimal]:
        if self.reward is None:
            return None
        return to_token_units(self.reward)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "user": self.user,
            "kind": self.kind.value,
            "tx_hash": self.tx_hash,
            "reward": str(self.reward) if self.reward is not None else None,
            "reward_tokens": str(self.reward_tokens) if self.reward is not None else None,
            "error": self.error,
        }
