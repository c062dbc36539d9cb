"""TradingEngine ABI — the subset of the contract surface the bot uses."""

_ADDRESS_ARG = [{"name": "user", "type": "address", "internalType": "address"}]

TRADING_ENGINE_ABI = [
    {
        "type": "function",
        "name": "getPosition",
        "inputs": _ADDRESS_ARG,
        "outputs": [
            {
                "type": "tuple",
                "internalType": "struct TradingEngine.Position",
                "components": [
                    {"name": "isLong", "type": "bool"},
                    {"name": "entryPrice", "type": "uint256"},
                    {"name": "size", "type": "uint256"},
                    {"name": "margin", "type": "uint256"},
                    {"name": "leverage", "type": "uint256"},
                    {"name": "openTimestamp", "type": "uint256"},
                    {"name": "exists", "type": "bool"},
                ],
            }
        ],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "isLiquidatable",
        "inputs": _ADDRESS_ARG,
        "outputs": [{"type": "bool", "internalType": "bool"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "liquidate",
        "inputs": _ADDRESS_ARG,
        "outputs": [],
        "stateMutability": "nonpayable",
    },
    {
        "type": "function",
        "name": "markPrice",
        "inputs": [],
        "outputs": [{"type": "uint256", "internalType": "uint256"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "paused",
        "inputs": [],
        "outputs": [{"type": "bool", "internalType": "bool"}],
        "stateMutability": "view",
    },
    {
        "type": "event",
        "name": "PositionOpened",
        "inputs": [
            {"indexed": True, "name": "user", "type": "address"},
            {"indexed": False, "name": "isLong", "type": "bool"},
            {"indexed": False, "name": "margin", "type": "uint256"},
            {"indexed": False, "name": "leverage", "type": "uint256"},
            {"indexed": False, "name": "entryPrice", "type": "uint256"},
            {"indexed": False, "name": "positionSize", "type": "uint256"},
        ],
        "anonymous": False,
    },
    {
        "type": "event",
        "name": "PositionClosed",
        "inputs": [{"indexed": True, "name": "user", "type": "address"}],
        "anonymous": False,
    },
    {
        "type": "event",
        "name": "Liquidated",
        "inputs": [
            {"indexed": True, "name": "user", "type": "address"},
            {"indexed": True, "name": "liquidator", "type": "address"},
            {"indexed": False, "name": "reward", "type": "uint256"},
        ],
        "anonymous": False,
    },
]
