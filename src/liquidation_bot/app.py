"""HTTP surface for scheduled invocations.

  GET /health                       — liveness, no chain access
  GET /cron/check-liquidations      — one stateless liquidation pass

The Redis pool is opened once per process in the lifespan; every cron call
shares it through ``get_kv_store()``.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from liquidation_bot import __version__
from liquidation_bot.redis_pool import close_redis_pool, get_redis, init_redis_pool
from liquidation_bot.routers import cron as cron_router

logger = logging.getLogger("app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting liquidation bot API...")
    await init_redis_pool()
    yield
    logger.info("Shutting down liquidation bot API...")
    await close_redis_pool()


app = FastAPI(title="Liquidation Bot", version=__version__, lifespan=lifespan)

app.include_router(cron_router.router, prefix="/cron", tags=["cron"])


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "durable_store": get_redis() is not None,
    }
