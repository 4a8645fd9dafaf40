"""
Trace Fetcher - Issue debug_traceBlock* calls and normalize the result.

Flow:
1. Resolve BlockInfo (unless supplied) to learn the transaction count
2. Log an advisory for large blocks
3. Race the trace call against debug_trace_timeout
4. Coerce each item into RawTraceItem, never failing on a single bad item
"""

import asyncio
import logging
from typing import Any, Optional

from block_trace.classifier import BlockIdentifier
from block_trace.config import BlockTraceSettings, TraceConfig
from block_trace.constants import (
    PROCESSING_BREAKPOINTS,
    RPCMethod,
    VERY_SLOW_SECONDS,
)
from block_trace.exceptions import NetworkError, ParsingError, classify_error
from block_trace.models import BlockInfo, ProcessingEstimate, RawTraceItem
from block_trace.provider import ConnectionProvider
from block_trace.resolver import BlockInfoResolver, format_identifier


logger = logging.getLogger(__name__)


SLOW_BLOCK_WARNING = "This block contains many transactions and may take several minutes to process."
VERY_SLOW_BLOCK_WARNING = "This block contains many transactions and may take 10+ minutes to process."


def estimate_processing_time(transaction_count: int) -> ProcessingEstimate:
    """Map a transaction count to an estimated duration and category."""
    for limit, seconds, category in PROCESSING_BREAKPOINTS:
        if transaction_count <= limit:
            warning = SLOW_BLOCK_WARNING if category == "slow" else None
            return ProcessingEstimate(seconds, category, warning)
    return ProcessingEstimate(VERY_SLOW_SECONDS, "very_slow", VERY_SLOW_BLOCK_WARNING)


def normalize_trace_result(result: Any, block_identifier: Any) -> list[RawTraceItem]:
    """
    Coerce a raw debug_traceBlock* result into RawTraceItems.

    Raises:
        ParsingError: If the result is not an array
    """
    if not isinstance(result, list):
        raise ParsingError(
            f"Expected array of trace results, got {type(result).__name__}",
            block_identifier=str(block_identifier),
            suggestions=[
                "The node may not support the requested tracer",
                "Try a different block",
            ],
        )
    if not result:
        logger.warning(f"[fetcher] Empty trace result for block {block_identifier}")
    return [RawTraceItem.from_rpc(item, index) for index, item in enumerate(result)]


class TraceFetcher:
    """Fetches raw execution traces for whole blocks."""

    def __init__(
        self,
        connection: ConnectionProvider,
        resolver: Optional[BlockInfoResolver] = None,
        settings: Optional[BlockTraceSettings] = None,
    ) -> None:
        self._connection = connection
        self._settings = settings if settings is not None else BlockTraceSettings()
        if resolver is None:
            resolver = BlockInfoResolver(connection, self._settings)
        self._resolver = resolver

    estimate_processing_time = staticmethod(estimate_processing_time)

    async def trace_by_number(
        self,
        identifier: BlockIdentifier,
        config: Optional[TraceConfig] = None,
        block_info: Optional[BlockInfo] = None,
    ) -> list[RawTraceItem]:
        formatted = format_identifier(identifier)
        if block_info is None:
            block_info = await self._resolver.get_by_number(identifier)
        self._check_size(block_info)
        return await self._trace(
            RPCMethod.DEBUG_TRACE_BLOCK_BY_NUMBER,
            formatted,
            identifier,
            config,
        )

    async def trace_by_hash(
        self,
        block_hash: str,
        config: Optional[TraceConfig] = None,
        block_info: Optional[BlockInfo] = None,
    ) -> list[RawTraceItem]:
        if block_info is None:
            block_info = await self._resolver.get_by_hash(block_hash)
        self._check_size(block_info)
        return await self._trace(
            RPCMethod.DEBUG_TRACE_BLOCK_BY_HASH,
            block_hash,
            block_hash,
            config,
        )

    def _check_size(self, block_info: BlockInfo) -> None:
        count = block_info.transaction_count
        if count > self._settings.large_block_threshold:
            logger.warning(
                f"[fetcher] Block {block_info.number} has {count} transactions; "
                f"tracing may be slow and memory intensive"
            )

    async def _trace(
        self,
        method: str,
        param: str,
        identifier: Any,
        config: Optional[TraceConfig],
    ) -> list[RawTraceItem]:
        trace_config = config if config is not None else self._settings.trace_config
        timeout = self._settings.debug_trace_timeout
        provider = await self._connection.get_provider()

        logger.info(f"[fetcher] Tracing block {identifier} with {trace_config.tracer}")
        try:
            result = await asyncio.wait_for(
                provider.send(method, [param, trace_config.to_rpc()]),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise NetworkError(
                f"Debug trace timed out after {timeout}s for block {identifier}",
                block_identifier=str(identifier),
                original_error=e,
                suggestions=[
                    "Try a different RPC endpoint",
                    "Analyze a smaller block with fewer transactions",
                ],
            )
        except Exception as e:
            raise classify_error(e, identifier, "Debug trace")

        items = normalize_trace_result(result, identifier)
        logger.debug(f"[fetcher] Block {identifier}: {len(items)} trace items")
        return items
