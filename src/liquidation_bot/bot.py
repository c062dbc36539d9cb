"""Liquidation bot orchestration — wires the services for both lifetimes.

  | Driver                   | Tracked set source           | Live events | Timer |
  |--------------------------|------------------------------|-------------|-------|
  | run_bot (persistent)     | store (if any) + backfill    | no store    | yes   |
  | run_liquidation_check    | store + backfill when due    | never       | no    |
  | run_backfill             | store + explicit backfill    | never       | no    |

Both drivers share the same services and the same ``MonitorService.execute_check``.
Startup problems (bad config, unreachable RPC) raise; everything after
startup is logged and contained.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Optional

from liquidation_bot.config import BotConfig, log_config
from liquidation_bot.errors import ConnectivityError
from liquidation_bot.metrics import CheckReport
from liquidation_bot.models import BackfillResult, LiquidationOutcome, OutcomeKind, to_token_units
from liquidation_bot.services.chain import ChainClient, create_chain_client
from liquidation_bot.services.kv_store import KVStore, NullKVStore
from liquidation_bot.services.liquidation import LiquidationService
from liquidation_bot.services.monitor import MonitorService
from liquidation_bot.services.position_tracker import PositionTracker

logger = logging.getLogger("bot")


@dataclass
class LiquidationBot:
    config: BotConfig
    chain: ChainClient
    kv_store: KVStore
    tracker: PositionTracker
    liquidation: LiquidationService
    monitor: MonitorService


def build_bot(
    config: BotConfig,
    kv_store: KVStore | None = None,
    chain: ChainClient | None = None,
) -> LiquidationBot:
    """Construct the service graph for one run. No I/O happens here."""
    kv_store = kv_store or NullKVStore()
    chain = chain or create_chain_client(config)

    tracker = PositionTracker(
        chain,
        kv_store,
        backfill_block_range=config.backfill_block_range,
        log_chunk_size=config.log_chunk_size,
        event_poll_interval=config.event_poll_interval,
        key_prefix=config.kv_prefix,
    )
    liquidation = LiquidationService(
        chain,
        tracker,
        max_gas_price_wei=config.max_gas_price_wei,
        confirmation_timeout=config.confirmation_timeout_seconds,
    )

    async def on_liquidatable_found(user: str) -> LiquidationOutcome:
        outcome = await liquidation.execute_liquidation(user)
        if outcome.kind is OutcomeKind.INSUFFICIENT_FUNDS:
            logger.critical(
                "Liquidator %s cannot pay gas; %s stays tracked until the wallet is funded",
                chain.liquidator_address, user,
            )
        elif not outcome.success:
            logger.warning("Liquidation failed for %s: %s", user, outcome.error)
        # Tracker may have dropped the address; make that survive this invocation
        await tracker.sync_to_kv()
        return outcome

    before_check = None
    if kv_store.is_durable:
        # No live subscription with a store: every tick folds in the blocks
        # since the cursor (full scan only when there is no cursor yet)
        async def before_check() -> Optional[BackfillResult]:
            try:
                return await tracker.backfill_if_due(0)
            except Exception as exc:
                logger.error("Scheduled backfill failed, checking existing positions: %s", exc)
                return None

    monitor = MonitorService(
        chain,
        tracker,
        on_liquidatable_found,
        interval=config.monitor_interval,
        batch_size=config.batch_size,
        liquidation_delay=config.liquidation_delay,
        before_check=before_check,
    )
    return LiquidationBot(config, chain, kv_store, tracker, liquidation, monitor)


async def check_connectivity(chain: ChainClient) -> int:
    """Current block number, or ConnectivityError if the RPC doesn't answer."""
    try:
        return await chain.get_block_number()
    except Exception as exc:
        raise ConnectivityError(f"RPC endpoint unreachable: {exc}") from exc


async def check_wallet_balance(chain: ChainClient) -> Optional[int]:
    """Log the liquidator balance; warn when it can't pay for gas."""
    address = chain.liquidator_address
    logger.info("Liquidator address: %s", address)
    try:
        balance = await chain.get_balance(address)
    except Exception as exc:
        logger.error("Error checking wallet balance: %s", exc)
        return None
    logger.info("Wallet balance: %s BTC", to_token_units(balance))
    if balance == 0:
        logger.warning("Wallet balance is 0. Bot needs BTC for gas fees!")
    return balance


async def _startup(bot: LiquidationBot) -> None:
    log_config(bot.config)
    block = await check_connectivity(bot.chain)
    logger.info("Connected to chain %d at block %d", bot.config.chain_id, block)
    await check_wallet_balance(bot.chain)
    await bot.tracker.load_from_kv()


# ============================================================================
# Persistent driver
# ============================================================================

async def run_bot(
    config: BotConfig,
    kv_store: KVStore | None = None,
    *,
    chain: ChainClient | None = None,
    stop_event: asyncio.Event | None = None,
) -> None:
    """Long-lived process: backfill, listen, check on a timer until signalled.

    Raises:
        ConnectivityError: The RPC endpoint is unreachable at startup.
    """
    bot = build_bot(config, kv_store, chain)
    stop_event = stop_event or asyncio.Event()
    started = False

    try:
        await _startup(bot)
        started = True

        try:
            if bot.kv_store.is_durable:
                await bot.tracker.backfill_if_due(config.backfill_max_age_seconds)
            else:
                await bot.tracker.backfill_positions()
        except Exception as exc:
            logger.error("Error during backfill, continuing with %d known positions: %s",
                         bot.tracker.get_position_count(), exc)

        bot.tracker.start_event_listeners()
        bot.monitor.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except (NotImplementedError, RuntimeError):
                pass  # not on the main thread / platform without signals

        logger.info("Bot is running! Press Ctrl+C to stop.")
        await stop_event.wait()
        logger.info("Shutting down liquidation bot...")
    finally:
        # Timer first so no check starts while listeners are torn down
        await bot.monitor.stop()
        await bot.tracker.stop_event_listeners()
        if started:
            # Before startup finished nothing was loaded to flush
            await bot.tracker.sync_to_kv()
        await bot.chain.close()
        logger.info("Bot stopped.")


# ============================================================================
# Stateless drivers
# ============================================================================

async def run_liquidation_check(
    config: BotConfig,
    kv_store: KVStore | None = None,
    *,
    chain: ChainClient | None = None,
) -> CheckReport:
    """One bounded pass for an external trigger (cron, HTTP call).

    Restores the tracked set from the store, backfills when due, runs one
    check and persists the result. Creates no timers or subscriptions.
    """
    bot = build_bot(config, kv_store, chain)
    logger.info("Liquidation check starting...")
    try:
        await _startup(bot)

        backfill: BackfillResult | None = None
        try:
            backfill = await bot.tracker.backfill_if_due(config.backfill_max_age_seconds)
        except Exception as exc:
            logger.error("Error during backfill, continuing with existing positions: %s", exc)

        report = await bot.monitor.execute_check()
        if backfill is not None:
            report.backfill = backfill.to_dict()

        await bot.tracker.sync_to_kv()
        logger.info("Liquidation check completed!")
        return report
    finally:
        await bot.chain.close()


async def run_backfill(
    config: BotConfig,
    kv_store: KVStore | None = None,
    *,
    force_full: bool = False,
    chain: ChainClient | None = None,
) -> BackfillResult:
    """Explicit reconciliation: load, backfill, persist. Query errors propagate."""
    bot = build_bot(config, kv_store, chain)
    try:
        await check_connectivity(bot.chain)
        await bot.tracker.load_from_kv()
        return await bot.tracker.backfill_positions(force_full=force_full)
    finally:
        await bot.chain.close()
