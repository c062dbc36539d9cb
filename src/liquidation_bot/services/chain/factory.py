"""Chain client factory.

Returns the web3-backed client for a config. Kept separate from the
implementation so callers (and tests) can swap the backend in one place.
"""

import logging

from liquidation_bot.config import BotConfig
from liquidation_bot.services.chain.interface import ChainClient

logger = logging.getLogger("chain.factory")


def create_chain_client(config: BotConfig) -> ChainClient:
    """Build a ``Web3ChainClient`` for ``config.rpc_url``.

    The web3 import is deferred so modules that only need the interface
    don't pay for it.
    """
    from liquidation_bot.services.chain.web3_client import Web3ChainClient

    client = Web3ChainClient(config)
    logger.info("Chain client ready: %s (chain %d)", config.rpc_url, config.chain_id)
    return client
