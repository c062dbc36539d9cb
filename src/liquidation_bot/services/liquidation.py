"""
liquidation.py — Submit one ``liquidate(user)`` and classify what happened.

  | Situation                         | kind               | Tracking      |
  |-----------------------------------|--------------------|---------------|
  | Fee estimate above the ceiling    | GAS_CEILING        | unchanged     |
  | Confirmed, status 1               | LIQUIDATED         | removed       |
  | Confirmed, status 0               | REVERTED           | unchanged     |
  | "not liquidatable"/"no position"  | STALE              | removed       |
  | "insufficient funds"              | INSUFFICIENT_FUNDS | unchanged     |
  | Confirmation wait timed out       | TIMEOUT            | unchanged     |
  | Anything else                     | FAILED             | unchanged     |

A plain revert is not treated as stale: without a reason it may be a
competitor winning the same block, so the next pass reads it again.
"""

import logging
from typing import Optional

from liquidation_bot.errors import (
    GasCeilingExceeded,
    InsufficientFundsError,
    classify_execution_error,
)
from liquidation_bot.models import LiquidationOutcome, OutcomeKind, normalize_address
from liquidation_bot.services.chain.interface import ChainClient
from liquidation_bot.services.position_tracker import PositionTracker

logger = logging.getLogger("liquidation")

DEFAULT_CONFIRMATION_TIMEOUT = 120.0


class LiquidationService:
    def __init__(
        self,
        chain: ChainClient,
        tracker: PositionTracker,
        *,
        max_gas_price_wei: Optional[int] = None,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
    ) -> None:
        self._chain = chain
        self._tracker = tracker
        self._max_gas_price_wei = max_gas_price_wei
        self._confirmation_timeout = confirmation_timeout

    async def _check_gas_ceiling(self) -> Optional[int]:
        """Fee cap to submit with (the ceiling), or raise GasCeilingExceeded.

        Returns None when no ceiling is configured (let the client price it).
        """
        if self._max_gas_price_wei is None:
            return None
        fee = await self._chain.estimate_max_fee_per_gas()
        if fee > self._max_gas_price_wei:
            raise GasCeilingExceeded(fee, self._max_gas_price_wei)
        return self._max_gas_price_wei

    async def execute_liquidation(self, user: str) -> LiquidationOutcome:
        user = normalize_address(user)
        tx_hash: Optional[str] = None
        logger.info("Attempting to liquidate %s...", user)

        try:
            try:
                max_fee = await self._check_gas_ceiling()
            except GasCeilingExceeded as skip:
                logger.warning("%s, skipping %s", skip, user)
                return LiquidationOutcome(
                    success=False, user=user, kind=OutcomeKind.GAS_CEILING, error=str(skip),
                )

            tx_hash = await self._chain.send_liquidation(user, max_fee)
            logger.info("Transaction submitted: %s", tx_hash)

            receipt = await self._chain.wait_for_receipt(tx_hash, self._confirmation_timeout)
        except Exception as exc:
            return self._outcome_from_error(user, exc, tx_hash)

        if not receipt.succeeded:
            logger.error("Liquidation transaction reverted for %s (%s)", user, tx_hash)
            return LiquidationOutcome(
                success=False,
                user=user,
                kind=OutcomeKind.REVERTED,
                tx_hash=tx_hash,
                error="Transaction reverted",
            )

        self._tracker.remove_position(user)
        outcome = LiquidationOutcome(
            success=True,
            user=user,
            kind=OutcomeKind.LIQUIDATED,
            tx_hash=tx_hash,
            reward=receipt.reward,
        )
        if receipt.reward is not None:
            logger.info("Successfully liquidated %s! Reward: %s MUSD", user, outcome.reward_tokens)
        else:
            logger.info("Successfully liquidated %s (no reward event decoded)", user)
        return outcome

    def _outcome_from_error(
        self, user: str, exc: Exception, tx_hash: Optional[str]
    ) -> LiquidationOutcome:
        error = classify_execution_error(exc)
        message = str(error)

        if error.removes_position:
            logger.info(
                "Position %s no longer liquidatable (race or already liquidated): %s",
                user, message,
            )
            self._tracker.remove_position(user)
        elif isinstance(error, InsufficientFundsError):
            logger.critical("Insufficient funds for gas. Please fund the liquidator wallet.")
        else:
            logger.error("Error liquidating %s (%s): %s", user, error.kind.value, message)

        return LiquidationOutcome(
            success=False,
            user=user,
            kind=error.kind,
            tx_hash=tx_hash,
            error=message,
        )
