"""Connection and contract self-test.

Runs each probe independently so one failure doesn't hide the others:

  config        effective settings (key masked)
  rpc           current block number
  balance       liquidator native balance (zero is a failure: no gas)
  mark_price    TradingEngine.markPrice()
  paused        TradingEngine.paused() (paused is a failure: liquidate reverts)
  events        PositionOpened query over the last DIAGNOSTIC_BLOCK_RANGE blocks
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from liquidation_bot.config import BotConfig
from liquidation_bot.errors import error_message
from liquidation_bot.models import EventKind, to_token_units
from liquidation_bot.services.chain import ChainClient, create_chain_client

logger = logging.getLogger("diagnostics")

DIAGNOSTIC_BLOCK_RANGE = 1_000


@dataclass(frozen=True)
class DiagnosticResult:
    name: str
    ok: bool
    detail: str


async def _probe(name: str, fn: Callable[[], Awaitable[tuple[bool, str]]]) -> DiagnosticResult:
    try:
        ok, detail = await fn()
    except Exception as exc:
        ok, detail = False, error_message(exc)
    level = logging.INFO if ok else logging.ERROR
    logger.log(level, "[%s] %s: %s", "ok" if ok else "FAIL", name, detail)
    return DiagnosticResult(name, ok, detail)


async def run_diagnostics(
    config: BotConfig, chain: ChainClient | None = None
) -> list[DiagnosticResult]:
    """Probe the RPC endpoint and the TradingEngine contract."""
    chain = chain or create_chain_client(config)
    results = [
        DiagnosticResult(
            "config",
            True,
            f"chain={config.chain_id} engine={config.trading_engine_address} "
            f"key={config.masked_key}",
        )
    ]

    async def rpc():
        if not await chain.is_connected():
            return False, f"no response from {config.rpc_url}"
        return True, f"block {await chain.get_block_number()}"

    async def balance():
        wei = await chain.get_balance(chain.liquidator_address)
        return wei > 0, f"{chain.liquidator_address} holds {to_token_units(wei)} BTC"

    async def mark_price():
        return True, str(to_token_units(await chain.mark_price()))

    async def paused():
        is_paused = await chain.is_paused()
        return not is_paused, "paused" if is_paused else "active"

    async def events():
        head = await chain.get_block_number()
        start = max(0, head - DIAGNOSTIC_BLOCK_RANGE)
        found = await chain.get_events(EventKind.OPENED, start, head)
        return True, f"{len(found)} PositionOpened event(s) in blocks {start}-{head}"

    try:
        for name, fn in (
            ("rpc", rpc),
            ("balance", balance),
            ("mark_price", mark_price),
            ("paused", paused),
            ("events", events),
        ):
            results.append(await _probe(name, fn))
    finally:
        await chain.close()
    return results
