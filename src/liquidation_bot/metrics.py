"""Per-pass metrics for the monitoring check.

One ``CheckReport`` is built for every ``execute_check`` call and emitted as
a single structured ``METRICS`` log line when the pass ends, whether or not
anything was liquidated. The stateless entry point also returns it to the
caller (the cron route serializes it).
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from liquidation_bot.models import LiquidationOutcome, OutcomeKind

logger = logging.getLogger("metrics")


@dataclass
class CheckReport:
    """Observability snapshot for one monitoring pass."""

    check_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    # --- Reads ---
    tracked: int = 0           # Addresses tracked at pass start
    batches: int = 0
    checked: int = 0           # Addresses whose reads completed
    removed_missing: int = 0   # Dropped because getPosition().exists was false
    read_errors: int = 0

    # --- Execution ---
    eligible: list[str] = field(default_factory=list)
    liquidated: int = 0
    skipped: int = 0           # Gas ceiling
    stale: int = 0
    failed: int = 0
    rewards_total: int = 0     # Raw 18-decimal sum of Liquidated rewards
    outcomes: list[dict[str, Any]] = field(default_factory=list)

    # --- Reconciliation (stateless driver only) ---
    backfill: Optional[dict[str, Any]] = None

    extra: dict[str, Any] = field(default_factory=dict)

    _started: float = field(default_factory=time.monotonic, repr=False)

    def record_outcome(self, outcome: LiquidationOutcome) -> None:
        self.outcomes.append(outcome.to_dict())
        if outcome.success:
            self.liquidated += 1
            self.rewards_total += outcome.reward or 0
        elif outcome.kind is OutcomeKind.GAS_CEILING:
            self.skipped += 1
        elif outcome.kind is OutcomeKind.STALE:
            self.stale += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("_started", None)
        data["rewards_total"] = str(self.rewards_total)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    def emit(self) -> "CheckReport":
        """Finalise timing and log the pass summary."""
        self.extra["elapsed_s"] = round(time.monotonic() - self._started, 3)
        logger.info(
            "METRICS check=%s tracked=%d checked=%d removed=%d read_errors=%d "
            "eligible=%d liquidated=%d skipped=%d stale=%d failed=%d elapsed=%.3fs",
            self.check_id[:8],
            self.tracked,
            self.checked,
            self.removed_missing,
            self.read_errors,
            len(self.eligible),
            self.liquidated,
            self.skipped,
            self.stale,
            self.failed,
            self.extra["elapsed_s"],
        )
        return self
