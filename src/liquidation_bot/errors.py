"""Error taxonomy for the liquidation bot.

Startup errors (configuration, connectivity) propagate to process exit.
Execution errors are raised inside ``LiquidationService`` and turned into a
``LiquidationOutcome``; each class carries the outcome kind it maps to and
whether the address should leave the tracked set.

``classify_execution_error`` prefers the typed exceptions web3 raises and
only falls back to matching on message text when nothing typed is available.
Message matching is brittle: revert strings change with contract upgrades.
"""
from __future__ import annotations

import asyncio

from web3.exceptions import ContractLogicError, TimeExhausted

from liquidation_bot.models import OutcomeKind

# Revert strings emitted by TradingEngine.liquidate()
STALE_REVERT_MARKERS = ("not liquidatable", "no position")
INSUFFICIENT_FUNDS_MARKERS = ("insufficient funds",)
TIMEOUT_MARKERS = ("timed out", "timeout")

_REVERT_PREFIX = "execution reverted:"


class LiquidationBotError(Exception):
    """Base class for every error raised by the bot."""

    kind: OutcomeKind = OutcomeKind.FAILED
    retryable: bool = True
    removes_position: bool = False


class ConfigurationError(LiquidationBotError):
    """Missing or malformed startup input. Fatal."""

    retryable = False


class ConnectivityError(LiquidationBotError):
    """RPC endpoint unreachable. Fatal at startup only."""


class ReadError(LiquidationBotError):
    """A per-address contract read failed. The address stays tracked."""


class StaleEligibilityError(LiquidationBotError):
    """The position is no longer liquidatable or no longer exists."""

    kind = OutcomeKind.STALE
    retryable = False
    removes_position = True


class GasCeilingExceeded(LiquidationBotError):
    """Network fee above the configured ceiling. A deliberate skip."""

    kind = OutcomeKind.GAS_CEILING

    def __init__(self, fee_wei: int, ceiling_wei: int):
        super().__init__(f"Gas price too high: {fee_wei} > {ceiling_wei}")
        self.fee_wei = fee_wei
        self.ceiling_wei = ceiling_wei


class InsufficientFundsError(LiquidationBotError):
    """The liquidator wallet cannot pay for gas. Needs an operator."""

    kind = OutcomeKind.INSUFFICIENT_FUNDS
    retryable = False


class TransactionRevertedError(LiquidationBotError):
    kind = OutcomeKind.REVERTED


class ConfirmationTimeoutError(LiquidationBotError):
    kind = OutcomeKind.TIMEOUT


def error_message(exc: BaseException) -> str:
    """Best human-readable message for an exception.

    web3 exceptions keep the node's text on ``.message``; ``str()`` of those
    can be a tuple repr.
    """
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    text = str(exc)
    return text or type(exc).__name__


def revert_reason(exc: BaseException) -> str:
    """Strip the ``execution reverted:`` prefix from a revert message."""
    message = error_message(exc)
    if message.lower().startswith(_REVERT_PREFIX):
        return message[len(_REVERT_PREFIX):].strip()
    return message


def _contains(message: str, markers: tuple[str, ...]) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in markers)


def classify_execution_error(exc: BaseException) -> LiquidationBotError:
    """Map an exception from submit/wait to the bot's error taxonomy."""
    if isinstance(exc, LiquidationBotError):
        return exc

    # Typed first
    if isinstance(exc, TimeExhausted):
        return ConfirmationTimeoutError(error_message(exc))
    if isinstance(exc, ContractLogicError):
        reason = revert_reason(exc)
        if _contains(reason, STALE_REVERT_MARKERS):
            return StaleEligibilityError(reason)
        return TransactionRevertedError(reason)
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return ConfirmationTimeoutError(error_message(exc))

    # Last resort: message text from the node / transport
    message = error_message(exc)
    if _contains(message, STALE_REVERT_MARKERS):
        return StaleEligibilityError(revert_reason(exc))
    if _contains(message, INSUFFICIENT_FUNDS_MARKERS):
        return InsufficientFundsError("Insufficient funds for gas")
    if _contains(message, TIMEOUT_MARKERS):
        return ConfirmationTimeoutError(message)
    return LiquidationBotError(message)
