"""Contract interface descriptions consumed by the ledger client."""

from __future__ import annotations

# Field order of the contract's Market and UserBet structs. The decoder checks
# these names against the ABI components before reading any returned tuple.
MARKET_SCHEMA_VERSION = 1
MARKET_SCHEMA: tuple[str, ...] = (
    "id",
    "castUrl",
    "threshold",
    "deadline",
    "totalMoonBets",
    "totalDoomBets",
    "outcome",
    "resolved",
    "creator",
)
USER_BET_SCHEMA: tuple[str, ...] = ("moonAmount", "doomAmount", "claimed")

_MARKET_COMPONENTS = [
    {"name": "id", "type": "uint256", "internalType": "uint256"},
    {"name": "castUrl", "type": "string", "internalType": "string"},
    {"name": "threshold", "type": "uint256", "internalType": "uint256"},
    {"name": "deadline", "type": "uint256", "internalType": "uint256"},
    {"name": "totalMoonBets", "type": "uint256", "internalType": "uint256"},
    {"name": "totalDoomBets", "type": "uint256", "internalType": "uint256"},
    {"name": "outcome", "type": "uint8", "internalType": "enum CastPredict.Outcome"},
    {"name": "resolved", "type": "bool", "internalType": "bool"},
    {"name": "creator", "type": "address", "internalType": "address"},
]

_USER_BET_COMPONENTS = [
    {"name": "moonAmount", "type": "uint256", "internalType": "uint256"},
    {"name": "doomAmount", "type": "uint256", "internalType": "uint256"},
    {"name": "claimed", "type": "bool", "internalType": "bool"},
]

PREDICTION_MARKET_ABI: list[dict] = [
    {
        "type": "function",
        "name": "nextMarketId",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256", "internalType": "uint256"}],
    },
    {
        "type": "function",
        "name": "getMarket",
        "stateMutability": "view",
        "inputs": [{"name": "marketId", "type": "uint256", "internalType": "uint256"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "internalType": "struct CastPredict.Market",
                "components": _MARKET_COMPONENTS,
            }
        ],
    },
    {
        "type": "function",
        "name": "getUserBet",
        "stateMutability": "view",
        "inputs": [
            {"name": "marketId", "type": "uint256", "internalType": "uint256"},
            {"name": "user", "type": "address", "internalType": "address"},
        ],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "internalType": "struct CastPredict.UserBet",
                "components": _USER_BET_COMPONENTS,
            }
        ],
    },
    {
        "type": "function",
        "name": "createMarket",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "castUrl", "type": "string", "internalType": "string"},
            {"name": "threshold", "type": "uint256", "internalType": "uint256"},
            {"name": "deadline", "type": "uint256", "internalType": "uint256"},
        ],
        "outputs": [{"name": "", "type": "uint256", "internalType": "uint256"}],
    },
    {
        "type": "function",
        "name": "betMoon",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "marketId", "type": "uint256", "internalType": "uint256"},
            {"name": "amount", "type": "uint256", "internalType": "uint256"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "betDoom",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "marketId", "type": "uint256", "internalType": "uint256"},
            {"name": "amount", "type": "uint256", "internalType": "uint256"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "resolveMarket",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "marketId", "type": "uint256", "internalType": "uint256"},
            {"name": "outcome", "type": "uint8", "internalType": "enum CastPredict.Outcome"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "claimWinnings",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "marketId", "type": "uint256", "internalType": "uint256"}],
        "outputs": [],
    },
    {
        "type": "event",
        "name": "MarketCreated",
        "anonymous": False,
        "inputs": [
            {"name": "marketId", "type": "uint256", "indexed": True, "internalType": "uint256"},
            {"name": "castUrl", "type": "string", "indexed": False, "internalType": "string"},
            {"name": "threshold", "type": "uint256", "indexed": False, "internalType": "uint256"},
            {"name": "deadline", "type": "uint256", "indexed": False, "internalType": "uint256"},
            {"name": "creator", "type": "address", "indexed": False, "internalType": "address"},
        ],
    },
    {
        "type": "event",
        "name": "MarketResolved",
        "anonymous": False,
        "inputs": [
            {"name": "marketId", "type": "uint256", "indexed": True, "internalType": "uint256"},
            {"name": "outcome", "type": "uint8", "indexed": False, "internalType": "enum CastPredict.Outcome"},
        ],
    },
]

ERC20_APPROVE_ABI: list[dict] = [
    {
        "type": "function",
        "name": "approve",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    }
]


def function_output_components(abi: list[dict], name: str) -> tuple[str, ...]:
    """Return the component names of a function's single tuple output."""

    for entry in abi:
        if entry.get("type") == "function" and entry.get("name") == name:
            outputs = entry.get("outputs") or []
            if len(outputs) != 1 or outputs[0].get("type") != "tuple":
                return ()
            return tuple(component["name"] for component in outputs[0].get("components", []))
    return ()
