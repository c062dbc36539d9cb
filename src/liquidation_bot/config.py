"""Configuration loading and validation.

Reads the environment (and a local ``.env`` if present) once at startup and
returns a validated ``BotConfig``. Any problem raises ``ConfigurationError``
before the bot touches the network.

``TRADING_ENGINE_ADDRESS`` has no default.
"""

import logging
import os
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from liquidation_bot.errors import ConfigurationError

logger = logging.getLogger("config")

DEFAULT_RPC_URL = "https://rpc.test.mezo.org"
DEFAULT_CHAIN_ID = 31611  # Mezo testnet

_PRIVATE_KEY_PATTERN = r"^0x[0-9a-fA-F]{64}$"
_ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{40}$"


class BotConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    liquidator_private_key: str = Field(..., pattern=_PRIVATE_KEY_PATTERN, repr=False)
    rpc_url: str = Field(default=DEFAULT_RPC_URL, min_length=1)
    trading_engine_address: str = Field(..., pattern=_ADDRESS_PATTERN)
    chain_id: int = Field(default=DEFAULT_CHAIN_ID, gt=0)

    # Monitoring
    monitor_interval_ms: int = Field(default=15_000, gt=0)
    batch_size: int = Field(default=10, ge=1, le=100)
    liquidation_delay_ms: int = Field(default=1_000, ge=0)

    # Execution
    max_gas_price_gwei: Optional[int] = Field(default=None, gt=0)
    confirmation_timeout_seconds: float = Field(default=120.0, gt=0)

    # Reconciliation
    backfill_block_range: int = Field(default=6_000, gt=0)
    backfill_max_age_seconds: int = Field(default=3_600, ge=0)
    log_chunk_size: int = Field(default=5_000, gt=0)
    event_poll_interval_ms: int = Field(default=4_000, gt=0)

    # Durable store (optional)
    redis_url: Optional[str] = None
    kv_prefix: str = Field(default="liquidation-bot", min_length=1)

    @property
    def monitor_interval(self) -> float:
        return self.monitor_interval_ms / 1000

    @property
    def liquidation_delay(self) -> float:
        return self.liquidation_delay_ms / 1000

    @property
    def event_poll_interval(self) -> float:
        return self.event_poll_interval_ms / 1000

    @property
    def max_gas_price_wei(self) -> Optional[int]:
        if self.max_gas_price_gwei is None:
            return None
        return self.max_gas_price_gwei * 10**9

    @property
    def masked_key(self) -> str:
        key = self.liquidator_private_key
        return f"{key[:6]}...{key[-4:]}"


# env var -> field name
_ENV_FIELDS = {
    "LIQUIDATOR_PRIVATE_KEY": "liquidator_private_key",
    "RPC_URL": "rpc_url",
    "TRADING_ENGINE_ADDRESS": "trading_engine_address",
    "CHAIN_ID": "chain_id",
    "MONITOR_INTERVAL_MS": "monitor_interval_ms",
    "CHECK_BATCH_SIZE": "batch_size",
    "LIQUIDATION_DELAY_MS": "liquidation_delay_ms",
    "MAX_GAS_PRICE_GWEI": "max_gas_price_gwei",
    "CONFIRMATION_TIMEOUT_SECONDS": "confirmation_timeout_seconds",
    "BACKFILL_BLOCK_RANGE": "backfill_block_range",
    "BACKFILL_MAX_AGE_SECONDS": "backfill_max_age_seconds",
    "LOG_CHUNK_SIZE": "log_chunk_size",
    "EVENT_POLL_INTERVAL_MS": "event_poll_interval_ms",
    "REDIS_URL": "redis_url",
    "KV_PREFIX": "kv_prefix",
}

_REQUIRED = ("LIQUIDATOR_PRIVATE_KEY", "TRADING_ENGINE_ADDRESS")


def load_config(env: Mapping[str, str] | None = None) -> BotConfig:
    """Build a ``BotConfig`` from environment variables.

    Args:
        env: Mapping to read instead of ``os.environ`` (tests). When omitted,
            a ``.env`` file in the working directory is loaded first.

    Raises:
        ConfigurationError: If a required variable is missing or a value
            fails validation.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    missing = [name for name in _REQUIRED if not env.get(name)]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variable: {', '.join(missing)}"
        )

    raw = {
        field_name: env[var].strip()
        for var, field_name in _ENV_FIELDS.items()
        if env.get(var, "").strip()
    }

    try:
        return BotConfig(**raw)
    except ValidationError as exc:
        problems = "; ".join(
            f"{_env_name(err['loc'][0])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from exc


def _env_name(field_name) -> str:
    for var, name in _ENV_FIELDS.items():
        if name == field_name:
            return var
    return str(field_name)


def log_config(config: BotConfig) -> None:
    """Log the effective configuration with the signer key masked."""
    logger.info("Bot configuration:")
    logger.info("   RPC URL: %s", config.rpc_url)
    logger.info("   Trading Engine: %s", config.trading_engine_address)
    logger.info("   Chain ID: %d", config.chain_id)
    logger.info("   Monitor Interval: %dms", config.monitor_interval_ms)
    logger.info("   Backfill Range: %d blocks", config.backfill_block_range)
    if config.max_gas_price_gwei:
        logger.info("   Max Gas Price: %d gwei", config.max_gas_price_gwei)
    logger.info("   Durable store: %s", "redis" if config.redis_url else "in-memory only")
    logger.info("   Liquidator key: %s", config.masked_key)
