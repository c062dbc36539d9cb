"""Liquidation bot for the TradingEngine perpetuals contract.

Keeps a durable view of which accounts hold an open position, checks each
one against the contract's ``isLiquidatable`` rule and submits ``liquidate``
transactions for the ones that qualify.

Two lifetimes share the same check::

    # long-lived process: timer + live event subscription
    python -m liquidation_bot run

    # one bounded pass, e.g. from a cron trigger (state lives in Redis)
    python -m liquidation_bot check
"""

from liquidation_bot.config import BotConfig, load_config
from liquidation_bot.models import (
    BackfillCursor,
    EventKind,
    LiquidationOutcome,
    OutcomeKind,
    Position,
    PositionEvent,
)

__version__ = "1.0.0"
__all__ = [
    "BotConfig",
    "load_config",
    "BackfillCursor",
    "EventKind",
    "LiquidationOutcome",
    "OutcomeKind",
    "Position",
    "PositionEvent",
]
