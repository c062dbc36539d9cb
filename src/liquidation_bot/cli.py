"""Command-line entry point.

  liquidation-bot run              long-lived bot (timer + listeners/backfill)
  liquidation-bot check            one stateless pass, prints the report JSON
  liquidation-bot backfill [--full]
  liquidation-bot diagnose         connection / contract self-test
  liquidation-bot serve            HTTP app with the cron route
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from liquidation_bot.bot import run_backfill, run_bot, run_liquidation_check
from liquidation_bot.config import load_config
from liquidation_bot.diagnostics import run_diagnostics
from liquidation_bot.errors import ConfigurationError, ConnectivityError
from liquidation_bot.redis_pool import close_redis_pool, init_redis_pool
from liquidation_bot.services.kv_store import get_kv_store

logger = logging.getLogger("cli")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def _configure_logging() -> None:
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
    # web3 / urllib3 are chatty at DEBUG
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def _with_store(config, coro_fn):
    await init_redis_pool(config.redis_url)
    try:
        return await coro_fn(get_kv_store())
    finally:
        await close_redis_pool()


async def _run(config) -> int:
    await _with_store(config, lambda store: run_bot(config, store))
    return 0


async def _check(config) -> int:
    report = await _with_store(config, lambda store: run_liquidation_check(config, store))
    print(report.to_json())
    return 0


async def _backfill(config, force_full: bool) -> int:
    result = await _with_store(
        config, lambda store: run_backfill(config, store, force_full=force_full)
    )
    print(json.dumps(result.to_dict()))
    return 0


async def _diagnose(config) -> int:
    results = await run_diagnostics(config)
    for result in results:
        print(f"  [{'ok' if result.ok else 'FAIL':>4}] {result.name:<10} {result.detail}")
    return 0 if all(r.ok for r in results) else 1


def _serve(host: str, port: int) -> int:
    import uvicorn

    uvicorn.run("liquidation_bot.app:app", host=host, port=port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="liquidation-bot", description="TradingEngine liquidation bot"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the bot until interrupted")
    sub.add_parser("check", help="Run one liquidation check and exit")

    backfill = sub.add_parser("backfill", help="Reconcile tracked positions from logs")
    backfill.add_argument("--full", action="store_true", help="Ignore the stored cursor")

    sub.add_parser("diagnose", help="Test RPC and contract connectivity")

    serve = sub.add_parser("serve", help="Serve the HTTP cron endpoint")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=int(os.environ.get("PORT", "8000")))
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging()

    if args.command == "serve":
        return _serve(args.host, args.port)

    try:
        config = load_config()
        if args.command == "run":
            return asyncio.run(_run(config))
        if args.command == "check":
            return asyncio.run(_check(config))
        if args.command == "backfill":
            return asyncio.run(_backfill(config, args.full))
        return asyncio.run(_diagnose(config))
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        return 1
    except ConnectivityError as exc:
        logger.error("Startup failed: %s", exc)
        return 1
    except KeyboardInterrupt:
        return 0
    except Exception:
        logger.exception("%s failed", args.command)
        return 1


if __name__ == "__main__":
    sys.exit(main())
