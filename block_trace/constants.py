"""
Block Trace Constants - Identifier formats, RPC methods and thresholds.

Values that tune behaviour at runtime live in BlockTraceSettings
(see config.py); this module only holds protocol-level facts.
"""

import re


# ============================================================
# BLOCK IDENTIFIERS
# ============================================================

VALID_BLOCK_TAGS: tuple[str, ...] = (
    "latest",
    "pending",
    "earliest",
    "safe",
    "finalized",
)

DECIMAL_NUMBER_PATTERN = re.compile(r"^\d+$")
HEX_NUMBER_PATTERN = re.compile(r"^0x[0-9a-fA-F]+$")
HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")

CONTRACT_ADDRESS_MESSAGE = (
    "Contract address provided instead of block identifier: {identifier}. "
    "Please provide a block number, block hash, or block tag, not an address."
)

# Above this a block number is almost certainly a typo
SUSPICIOUS_BLOCK_NUMBER = 1_000_000_000

# Timestamp of the Ethereum genesis block
GENESIS_TIMESTAMP = 1438269973


# ============================================================
# RPC
# ============================================================

class RPCMethod:
    """JSON-RPC methods used by this package."""
    DEBUG_TRACE_BLOCK_BY_NUMBER = "debug_traceBlockByNumber"
    DEBUG_TRACE_BLOCK_BY_HASH = "debug_traceBlockByHash"
    ETH_GET_BLOCK_BY_NUMBER = "eth_getBlockByNumber"
    ETH_GET_BLOCK_BY_HASH = "eth_getBlockByHash"
    ETH_BLOCK_NUMBER = "eth_blockNumber"
    ETH_CHAIN_ID = "eth_chainId"


CALL_TRACER = "callTracer"

CHAIN_NAMES: dict[int, str] = {
    1: "mainnet",
    11155111: "sepolia",
    17000: "holesky",
}


# ============================================================
# VALIDATION HEURISTICS
# ============================================================

# Per-transaction gas above this exceeds any realistic block gas limit
MAX_PLAUSIBLE_TX_GAS = 30_000_000

# 1000 native-token units, in wei
MAX_PLAUSIBLE_VALUE_WEI = 1000 * 10**18

FAILURE_RATE_THRESHOLD = 0.2
HIGH_GAS_MULTIPLIER = 5
CONTRACT_CONCENTRATION_THRESHOLD = 0.8
GAS_TOLERANCE = 1000

PLACEHOLDER_HASH_PREFIX = "tx_"


# ============================================================
# PROCESSING ESTIMATES
# ============================================================

# (max transactions, estimated seconds, category)
PROCESSING_BREAKPOINTS: tuple[tuple[int, int, str], ...] = (
    (50, 30, "fast"),
    (200, 120, "medium"),
    (500, 300, "slow"),
)
VERY_SLOW_SECONDS = 600

DENSITY_BREAKPOINTS: tuple[tuple[int, str], ...] = (
    (50, "low"),
    (200, "medium"),
    (500, "high"),
)


# ============================================================
# RECOGNIZED CONTRACTS
# ============================================================

PYUSD_ADDRESS = "0x6c3ea9036406852006290770bedfcaba0e23a0e8"

RECOGNIZED_CONTRACTS: dict[str, str] = {
    PYUSD_ADDRESS: "PYUSD Token",
}

# 4-byte selector -> (function name, category)
FUNCTION_SIGNATURES: dict[str, tuple[str, str]] = {
    "0xa9059cbb": ("transfer", "token_movement"),
    "0x23b872dd": ("transferFrom", "token_movement"),
    "0x40c10f19": ("mint", "supply_change"),
    "0x42966c68": ("burn", "supply_change"),
    "0x79cc6790": ("burnFrom", "supply_change"),
    "0x095ea7b3": ("approve", "allowance"),
    "0x39509351": ("increaseAllowance", "allowance"),
    "0xa457c2d7": ("decreaseAllowance", "allowance"),
    "0x8456cb59": ("pause", "control"),
    "0x3f4ba83a": ("unpause", "control"),
    "0xf2fde38b": ("transferOwnership", "control"),
    "0x2f2ff15d": ("grantRole", "admin"),
    "0xd547741f": ("revokeRole", "admin"),
    "0x36568abe": ("renounceRole", "admin"),
    "0x70a08231": ("balanceOf", "view"),
    "0xdd62ed3e": ("allowance", "view"),
    "0x18160ddd": ("totalSupply", "view"),
    "0x95d89b41": ("symbol", "view"),
    "0x06fdde03": ("name", "view"),
    "0x313ce567": ("decimals", "view"),
}

FUNCTION_CATEGORIES: tuple[str, ...] = (
    "token_movement",
    "supply_change",
    "allowance",
    "control",
    "admin",
    "view",
    "other",
)


def is_recognized_contract(address: str) -> bool:
    """Check whether an address is one of the recognized contracts."""
    return bool(address) and address.lower() in RECOGNIZED_CONTRACTS


def get_contract_name(address: str) -> str:
    return RECOGNIZED_CONTRACTS.get((address or "").lower(), "Unknown Contract")


def get_function_info(selector: str) -> tuple[str, str]:
    return FUNCTION_SIGNATURES.get(selector.lower(), ("Unknown", "other"))
