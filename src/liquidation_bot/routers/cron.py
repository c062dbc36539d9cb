"""
cron.py — External trigger for one stateless liquidation pass.

Endpoints:
  GET /check-liquidations — Run load -> backfill-if-due -> check -> persist

Auth: ``Authorization: Bearer <CRON_SECRET>`` when CRON_SECRET is set.
Without a secret the route is open (local development).
"""

import logging
import os
import secrets
from datetime import datetime, timezone

from fastapi import APIRouter, Header, HTTPException
from fastapi.responses import JSONResponse

from liquidation_bot.bot import run_liquidation_check
from liquidation_bot.config import load_config
from liquidation_bot.errors import error_message
from liquidation_bot.services.kv_store import get_kv_store

logger = logging.getLogger(__name__)

router = APIRouter()


def _authorize(authorization: str | None) -> None:
    expected = os.environ.get("CRON_SECRET")
    if not expected:
        return
    if not authorization or not secrets.compare_digest(authorization, f"Bearer {expected}"):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/check-liquidations")
async def check_liquidations(authorization: str | None = Header(default=None)):
    _authorize(authorization)

    try:
        config = load_config()
        report = await run_liquidation_check(config, get_kv_store())
    except Exception as exc:
        logger.error("Cron liquidation check failed: %s", exc)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": error_message(exc), "timestamp": _now()},
        )

    return {
        "success": True,
        "message": "Liquidation check completed",
        "timestamp": _now(),
        "report": report.to_dict(),
    }
