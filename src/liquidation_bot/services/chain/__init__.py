"""TradingEngine chain access.

Exposes a single entry point: create_chain_client() via the factory.
All callers should use this instead of importing backends directly.
"""

from liquidation_bot.services.chain.factory import create_chain_client
from liquidation_bot.services.chain.interface import ChainClient, EventSubscription

__all__ = ["create_chain_client", "ChainClient", "EventSubscription"]
