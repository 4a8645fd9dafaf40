"""
Identifier Classifier - Recognize what a user-supplied block identifier is.

Pure functions. The classification drives targeted guidance messages
(e.g. an address pasted where a block was expected).
"""

from enum import Enum
from typing import Any, Union

from block_trace.constants import (
    ADDRESS_PATTERN,
    DECIMAL_NUMBER_PATTERN,
    HASH_PATTERN,
    HEX_NUMBER_PATTERN,
    VALID_BLOCK_TAGS,
)


BlockIdentifier = Union[int, str]


class IdentifierType(Enum):
    BLOCK_NUMBER = "block_number"
    HEX_BLOCK_NUMBER = "hex_block_number"
    BLOCK_TAG = "block_tag"
    BLOCK_HASH_OR_TX_HASH = "block_hash_or_tx_hash"
    CONTRACT_ADDRESS = "contract_address"
    INVALID = "invalid"


def classify_identifier(identifier: Any) -> IdentifierType:
    """
    Classify a block identifier.

    Rules, first match wins:
    numbers, tags, 42-char addresses, 66-char hashes, then decimal or
    hex number strings. Negative numbers classify as BLOCK_NUMBER and
    are rejected later by the validator.
    """
    if isinstance(identifier, bool):
        return IdentifierType.INVALID
    if isinstance(identifier, int):
        return IdentifierType.BLOCK_NUMBER
    if not isinstance(identifier, str):
        return IdentifierType.INVALID

    text = identifier.strip()
    if text.lower() in VALID_BLOCK_TAGS:
        return IdentifierType.BLOCK_TAG
    if ADDRESS_PATTERN.match(text):
        return IdentifierType.CONTRACT_ADDRESS
    if HASH_PATTERN.match(text):
        return IdentifierType.BLOCK_HASH_OR_TX_HASH
    if DECIMAL_NUMBER_PATTERN.match(text):
        return IdentifierType.BLOCK_NUMBER
    if HEX_NUMBER_PATTERN.match(text):
        return IdentifierType.HEX_BLOCK_NUMBER
    return IdentifierType.INVALID


def is_block_tag(identifier: Any) -> bool:
    return isinstance(identifier, str) and identifier.strip().lower() in VALID_BLOCK_TAGS


def is_hash(identifier: Any) -> bool:
    return isinstance(identifier, str) and bool(HASH_PATTERN.match(identifier.strip()))


def to_block_number(identifier: BlockIdentifier) -> int:
    """
    Convert a numeric identifier (int, decimal or hex string) to int.

    Raises:
        ValueError: If the identifier is not numeric
    """
    if isinstance(identifier, bool):
        raise ValueError(f"Not a block number: {identifier!r}")
    if isinstance(identifier, int):
        return identifier
    text = str(identifier).strip()
    if HEX_NUMBER_PATTERN.match(text):
        return int(text, 16)
    if DECIMAL_NUMBER_PATTERN.match(text):
        return int(text, 10)
    raise ValueError(f"Not a block number: {identifier!r}")
