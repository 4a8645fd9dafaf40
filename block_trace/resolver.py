"""
Block Info Resolver - Fetch block metadata by number, hash or tag.

Every RPC call is bounded by asyncio.wait_for. On timeout the in-flight
request is cancelled and a NetworkError raised; a null result raises
IdentifierValidationError ("Block not found").
"""

import asyncio
import logging
from typing import Any, Optional

from block_trace.classifier import BlockIdentifier, is_block_tag, is_hash, to_block_number
from block_trace.config import BlockTraceSettings
from block_trace.constants import (
    ADDRESS_PATTERN,
    CONTRACT_ADDRESS_MESSAGE,
    DENSITY_BREAKPOINTS,
    HEX_NUMBER_PATTERN,
    RPCMethod,
)
from block_trace.exceptions import (
    IdentifierValidationError,
    NetworkError,
    ServiceError,
)
from block_trace.models import (
    BlockInfo,
    BlockRange,
    BlockSearchCriteria,
    BlockStatistics,
    NetworkInfo,
)
from block_trace.provider import ConnectionProvider


logger = logging.getLogger(__name__)


def format_identifier(identifier: BlockIdentifier) -> str:
    """
    Normalize an identifier for transmission.

    Integers and decimal strings become 0x-prefixed hex, tags are
    lower-cased and 0x-prefixed hex numbers pass through unchanged.
    Contract addresses and malformed hex are rejected before any RPC call.

    Raises:
        IdentifierValidationError: For negative numbers or unparseable input
    """
    if isinstance(identifier, bool):
        raise IdentifierValidationError(
            f"Invalid block identifier: {identifier!r}",
            block_identifier=str(identifier),
        )
    if isinstance(identifier, int):
        if identifier < 0:
            raise IdentifierValidationError(
                f"Block number cannot be negative: {identifier}",
                block_identifier=str(identifier),
            )
        return hex(identifier)

    text = str(identifier).strip()
    if is_block_tag(text):
        return text.lower()
    if ADDRESS_PATTERN.match(text):
        raise IdentifierValidationError(
            CONTRACT_ADDRESS_MESSAGE.format(identifier=text),
            block_identifier=text,
            suggestions=[
                "This tool analyzes blocks, not individual contracts",
                "Use a block number (e.g. 18500000) or a 0x-prefixed block hash",
            ],
        )
    if HEX_NUMBER_PATTERN.match(text):
        return text
    try:
        number = to_block_number(text)
    except ValueError as e:
        raise IdentifierValidationError(
            f"Invalid block identifier: {identifier}",
            block_identifier=text,
            original_error=e,
            suggestions=[
                "Use a block number (e.g. 18500000)",
                "Use a block tag: latest, pending, earliest, safe, finalized",
                "Use a 0x-prefixed block hash",
            ],
        )
    return hex(number)


def transaction_density(transaction_count: int) -> str:
    for limit, label in DENSITY_BREAKPOINTS:
        if transaction_count < limit:
            return label
    return "very_high"


class BlockInfoResolver:
    """Resolves block metadata through a ConnectionProvider."""

    def __init__(
        self,
        connection: ConnectionProvider,
        settings: Optional[BlockTraceSettings] = None,
    ) -> None:
        self._connection = connection
        self._settings = settings if settings is not None else BlockTraceSettings()

    @property
    def timeout(self) -> float:
        return self._settings.block_info_timeout

    format_identifier = staticmethod(format_identifier)

    async def _call(self, method: str, params: list[Any], identifier: Any) -> Any:
        provider = await self._connection.get_provider()
        try:
            return await asyncio.wait_for(
                provider.send(method, params),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"[resolver] {method} timed out after {self.timeout}s")
            raise NetworkError(
                f"Block info request timed out after {self.timeout}s",
                block_identifier=str(identifier),
                original_error=e,
                suggestions=[
                    "Try a different RPC endpoint",
                    "Check your network connection",
                ],
            )

    def _not_found(self, identifier: Any) -> IdentifierValidationError:
        return IdentifierValidationError(
            f"Block not found: {identifier}",
            block_identifier=str(identifier),
            suggestions=[
                "Verify the block identifier is correct",
                "Check you're connected to the right network",
            ],
        )

    # ─────────────────────────────────────────────────────────────
    # Single block lookups
    # ─────────────────────────────────────────────────────────────

    async def get_by_number(
        self,
        identifier: BlockIdentifier,
        include_transactions: bool = False,
    ) -> BlockInfo:
        formatted = format_identifier(identifier)
        block = await self._call(
            RPCMethod.ETH_GET_BLOCK_BY_NUMBER,
            [formatted, include_transactions],
            identifier,
        )
        if not block:
            raise self._not_found(identifier)
        return BlockInfo.from_rpc(block)

    async def get_by_hash(
        self,
        block_hash: str,
        include_transactions: bool = False,
    ) -> BlockInfo:
        block = await self._call(
            RPCMethod.ETH_GET_BLOCK_BY_HASH,
            [block_hash, include_transactions],
            block_hash,
        )
        if not block:
            raise self._not_found(block_hash)
        return BlockInfo.from_rpc(block)

    async def get_block_info(self, identifier: BlockIdentifier) -> BlockInfo:
        """Dispatch to get_by_hash for 66-char hashes, else get_by_number."""
        if is_hash(identifier):
            return await self.get_by_hash(str(identifier).strip())
        return await self.get_by_number(identifier)

    async def resolve_block_hash(self, block_hash: str) -> BlockInfo:
        """Resolve a hash that must belong to a block (not a transaction)."""
        try:
            return await self.get_by_hash(block_hash)
        except IdentifierValidationError as e:
            raise IdentifierValidationError(
                f"Block not found for hash: {block_hash}",
                block_identifier=block_hash,
                original_error=e,
                suggestions=[
                    "This appears to be a transaction hash rather than a block hash",
                    "Look up the transaction first to find its block number",
                ],
            )

    async def get_current_number(self) -> int:
        try:
            return await asyncio.wait_for(
                self._connection.get_current_block(),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise NetworkError(
                f"Current block request timed out after {self.timeout}s",
                block_identifier="latest",
                original_error=e,
            )

    async def get_network_info(self) -> NetworkInfo:
        return await self._connection.get_network_info()

    async def block_exists(self, identifier: BlockIdentifier) -> bool:
        try:
            await self.get_block_info(identifier)
            return True
        except ServiceError as e:
            logger.debug(f"[resolver] Block {identifier} not available: {e.message}")
            return False

    # ─────────────────────────────────────────────────────────────
    # Multi-block lookups
    # ─────────────────────────────────────────────────────────────

    async def get_range(self, start: int, end: int) -> BlockRange:
        if start < 0 or end < start:
            raise IdentifierValidationError(
                f"Invalid block range: {start}..{end}",
                block_identifier=f"{start}..{end}",
            )
        start_block, end_block = await asyncio.gather(
            self.get_by_number(start),
            self.get_by_number(end),
        )
        return BlockRange(
            start=start_block,
            end=end_block,
            total_blocks=end_block.number - start_block.number + 1,
            total_transactions=start_block.transaction_count + end_block.transaction_count,
        )

    async def get_recent(self, count: int = 10) -> list[BlockInfo]:
        """Fetch the `count` blocks ending at the current head."""
        current = await self.get_current_number()
        numbers = [current - i for i in range(count) if current - i >= 0]
        return list(await asyncio.gather(*(self.get_by_number(n) for n in numbers)))

    async def search_blocks(self, criteria: BlockSearchCriteria) -> list[BlockInfo]:
        """
        Walk backward from the end of the window collecting matches.

        Stops after `criteria.limit` matches or `search_max_blocks`
        scanned blocks. Blocks that fail to load are skipped.
        """
        current = await self.get_current_number()
        search_start = criteria.start_block
        if search_start is None:
            search_start = max(0, current - self._settings.search_window_blocks)
        search_end = criteria.end_block if criteria.end_block is not None else current

        matches: list[BlockInfo] = []
        searched = 0
        number = search_end
        while (
            number >= search_start
            and len(matches) < criteria.limit
            and searched < self._settings.search_max_blocks
        ):
            try:
                block = await self.get_by_number(number)
                searched += 1
                if criteria.matches(block):
                    matches.append(block)
            except ServiceError as e:
                logger.warning(f"[resolver] Skipping block {number} during search: {e.message}")
            number -= 1

        logger.info(
            f"[resolver] Block search scanned {searched} blocks, "
            f"found {len(matches)} matches"
        )
        return matches

    @staticmethod
    def get_block_statistics(block: BlockInfo) -> BlockStatistics:
        count = block.transaction_count
        average = block.gas_used / count if count > 0 else 0.0
        utilization = block.gas_used / block.gas_limit * 100 if block.gas_limit > 0 else 0.0
        return BlockStatistics(
            block_info=block,
            average_gas_per_transaction=average,
            gas_utilization=utilization,
            transaction_density=transaction_density(count),
        )
