"""web3.py implementation of the chain client.

Uses ``AsyncWeb3`` over HTTP for reads, log queries and receipts, and a
local ``eth_account`` signer for the ``liquidate`` transaction.
"""

import logging
from typing import Any, Optional

from eth_account import Account
from web3 import AsyncWeb3
from web3.logs import DISCARD

from liquidation_bot.abi import TRADING_ENGINE_ABI
from liquidation_bot.config import BotConfig
from liquidation_bot.errors import ReadError, error_message
from liquidation_bot.models import (
    EventKind,
    LiquidationReceipt,
    Position,
    PositionEvent,
    normalize_address,
)
from liquidation_bot.services.chain.interface import ChainClient

logger = logging.getLogger("chain.web3")

RPC_TIMEOUT_SECONDS = 60

# Fee estimate compared against the gas ceiling: base fee + 20% + tip
ESTIMATE_BASE_FEE_PERCENT = 120
# maxFeePerGas sent with a capped transaction (web3's own default headroom)
SUBMIT_BASE_FEE_MULTIPLIER = 2


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        text = bytes(value).hex()
    else:
        text = value.hex() if hasattr(value, "hex") else str(value)
    return text if text.startswith("0x") else f"0x{text}"


class Web3ChainClient(ChainClient):
    """TradingEngine access through an ``AsyncWeb3`` HTTP provider."""

    def __init__(self, config: BotConfig, w3: AsyncWeb3 | None = None) -> None:
        self._config = config
        self.w3 = w3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(
                config.rpc_url, request_kwargs={"timeout": RPC_TIMEOUT_SECONDS}
            )
        )
        self.account = Account.from_key(config.liquidator_private_key)
        self.contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(config.trading_engine_address),
            abi=TRADING_ENGINE_ABI,
        )

    @property
    def liquidator_address(self) -> str:
        return self.account.address

    async def is_connected(self) -> bool:
        return await self.w3.is_connected()

    async def get_block_number(self) -> int:
        return int(await self.w3.eth.block_number)

    async def get_balance(self, address: str) -> int:
        return int(await self.w3.eth.get_balance(AsyncWeb3.to_checksum_address(address)))

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    async def get_events(
        self, kind: EventKind, from_block: int, to_block: int
    ) -> list[PositionEvent]:
        event = getattr(self.contract.events, kind.value)
        logs = await event.get_logs(from_block=from_block, to_block=to_block)
        return [self._decode(kind, log) for log in logs]

    @staticmethod
    def _decode(kind: EventKind, log: Any) -> PositionEvent:
        args = log["args"]
        liquidator = args.get("liquidator") if kind is EventKind.LIQUIDATED else None
        reward = args.get("reward") if kind is EventKind.LIQUIDATED else None
        return PositionEvent(
            kind=kind,
            user=normalize_address(args["user"]),
            block_number=int(log["blockNumber"]),
            log_index=int(log.get("logIndex", 0)),
            liquidator=normalize_address(liquidator) if liquidator else None,
            reward=int(reward) if reward is not None else None,
        )

    # ------------------------------------------------------------------
    # Contract reads
    # ------------------------------------------------------------------

    async def get_position(self, user: str) -> Position:
        try:
            raw = await self.contract.functions.getPosition(
                AsyncWeb3.to_checksum_address(user)
            ).call()
        except Exception as exc:
            raise ReadError(f"getPosition({user}) failed: {error_message(exc)}") from exc
        return Position.from_tuple(user, raw)

    async def is_liquidatable(self, user: str) -> bool:
        try:
            return bool(
                await self.contract.functions.isLiquidatable(
                    AsyncWeb3.to_checksum_address(user)
                ).call()
            )
        except Exception as exc:
            raise ReadError(f"isLiquidatable({user}) failed: {error_message(exc)}") from exc

    async def mark_price(self) -> int:
        return int(await self.contract.functions.markPrice().call())

    async def is_paused(self) -> bool:
        return bool(await self.contract.functions.paused().call())

    # ------------------------------------------------------------------
    # Fees + submission
    # ------------------------------------------------------------------

    async def _fee_fields(self) -> tuple[Optional[int], Optional[int], Optional[int]]:
        """(base_fee, priority_fee, legacy_gas_price) for the current block.

        Either the first two or the last one is None.
        """
        block = await self.w3.eth.get_block("latest")
        base_fee = block.get("baseFeePerGas")
        if base_fee is None:
            return None, None, int(await self.w3.eth.gas_price)
        return int(base_fee), int(await self.w3.eth.max_priority_fee), None

    async def estimate_max_fee_per_gas(self) -> int:
        """Expected fee per gas: base fee plus 20% plus the priority tip."""
        base_fee, priority, gas_price = await self._fee_fields()
        if base_fee is None:
            return gas_price
        return base_fee * ESTIMATE_BASE_FEE_PERCENT // 100 + priority

    async def send_liquidation(
        self, user: str, max_fee_per_gas: Optional[int] = None
    ) -> str:
        sender = self.account.address
        tx_params: dict[str, Any] = {
            "from": sender,
            "chainId": self._config.chain_id,
            "nonce": await self.w3.eth.get_transaction_count(sender, "pending"),
        }

        if max_fee_per_gas is not None:
            # max_fee_per_gas is a hard cap; below it, leave base-fee headroom
            base_fee, priority, gas_price = await self._fee_fields()
            if gas_price is not None:
                tx_params["gasPrice"] = min(gas_price, max_fee_per_gas)
            else:
                tx_params["maxFeePerGas"] = min(
                    SUBMIT_BASE_FEE_MULTIPLIER * base_fee + priority, max_fee_per_gas
                )
                tx_params["maxPriorityFeePerGas"] = min(priority, max_fee_per_gas)

        # build_transaction runs eth_estimateGas: a revert surfaces here as
        # ContractLogicError carrying the contract's reason string
        tx = await self.contract.functions.liquidate(
            AsyncWeb3.to_checksum_address(user)
        ).build_transaction(tx_params)
        signed = self.account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return _hex(tx_hash)

    async def wait_for_receipt(
        self, tx_hash: str, timeout: float
    ) -> LiquidationReceipt:
        receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        succeeded = receipt["status"] == 1
        reward = None
        if succeeded:
            try:
                events = self.contract.events.Liquidated().process_receipt(
                    receipt, errors=DISCARD
                )
                if events:
                    reward = int(events[0]["args"]["reward"])
            except Exception as exc:
                logger.warning("Could not parse reward from receipt %s: %s", tx_hash, exc)
        return LiquidationReceipt(
            tx_hash=tx_hash,
            succeeded=succeeded,
            block_number=receipt.get("blockNumber"),
            reward=reward,
        )

    async def close(self) -> None:
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
