"""
Block Trace Orchestrator - Top-level coordinator for trace requests.

Per request:
    idle -> validating -> (cache hit) completed
                       -> (cache miss) fetching -> validating_raw
                          -> processing -> caching -> completed
Any step may fail; the failure is wrapped in a ServiceError whose
context records the stage it came from.

The cache is passed in (or built from settings) per orchestrator
instance; there is no process-wide cache.
"""

import asyncio
import dataclasses
import logging
from typing import Any, Optional, Sequence

from block_trace.cache import TraceCache, cache_key
from block_trace.classifier import BlockIdentifier, IdentifierType, classify_identifier, is_hash
from block_trace.clock import ClockProtocol, get_clock
from block_trace.config import BlockTraceSettings, TraceConfig
from block_trace.exceptions import (
    IdentifierValidationError,
    ServiceError,
    classify_error,
)
from block_trace.fetcher import TraceFetcher, estimate_processing_time
from block_trace.models import (
    BatchTraceResult,
    BlockInfo,
    BlockSearchCriteria,
    CacheStats,
    ProcessedTraceAnalysis,
    ProcessingEstimate,
    RawTraceItem,
    TraceResult,
    TraceStage,
    ValidationReport,
    ValidationResult,
)
from block_trace.pacing import BatchPacer, FixedDelayPacer
from block_trace.processor import BlockGasAnalyzer, CallTraceProcessor, GasAnalyzer, TraceProcessor
from block_trace.provider import ConnectionProvider, JsonRpcConnection
from block_trace.resolver import BlockInfoResolver
from block_trace.validator import TraceValidator


logger = logging.getLogger(__name__)


DEFAULT_GAS_PRICE_GWEI = 20.0

# Above these transaction counts identifier validation adds a size warning
SLOW_TRACE_TRANSACTIONS = 200
VERY_SLOW_TRACE_TRANSACTIONS = 500


class BlockTraceOrchestrator:
    """
    Cache-first block tracing with validation and batch support.

    Example:
        async with BlockTraceOrchestrator.from_settings(settings) as orchestrator:
            result = await orchestrator.trace_block(18500000)
            print(result.analysis.summary.total_gas_used)
    """

    def __init__(
        self,
        connection: ConnectionProvider,
        cache: Optional[TraceCache] = None,
        resolver: Optional[BlockInfoResolver] = None,
        fetcher: Optional[TraceFetcher] = None,
        validator: Optional[TraceValidator] = None,
        processor: Optional[TraceProcessor] = None,
        gas_analyzer: Optional[GasAnalyzer] = None,
        pacer: Optional[BatchPacer] = None,
        settings: Optional[BlockTraceSettings] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        self._settings = settings if settings is not None else BlockTraceSettings()
        self._clock = clock if clock is not None else get_clock()
        self._connection = connection
        if cache is None:
            cache = TraceCache(
                max_entries=self._settings.max_cache_entries,
                ttl_seconds=self._settings.cache_ttl_seconds,
                clock=self._clock,
            )
        self._cache = cache
        if resolver is None:
            resolver = BlockInfoResolver(connection, self._settings)
        self._resolver = resolver
        if fetcher is None:
            fetcher = TraceFetcher(connection, self._resolver, self._settings)
        self._fetcher = fetcher
        self._validator = validator if validator is not None else TraceValidator(self._clock)
        self._processor = processor if processor is not None else CallTraceProcessor()
        self._gas_analyzer = gas_analyzer if gas_analyzer is not None else BlockGasAnalyzer()
        if pacer is None:
            pacer = FixedDelayPacer(self._settings.batch_delay_seconds)
        self._pacer = pacer

    @classmethod
    def from_settings(cls, settings: BlockTraceSettings, **kwargs: Any) -> "BlockTraceOrchestrator":
        """Build an orchestrator with a JSON-RPC connection to settings.rpc_url."""
        connection = JsonRpcConnection(settings.rpc_url, timeout=settings.debug_trace_timeout)
        return cls(connection, settings=settings, **kwargs)

    @property
    def cache(self) -> TraceCache:
        return self._cache

    @property
    def settings(self) -> BlockTraceSettings:
        return self._settings

    # ─────────────────────────────────────────────────────────────
    # Identifier validation
    # ─────────────────────────────────────────────────────────────

    async def validate_block_identifier(self, identifier: BlockIdentifier) -> ValidationResult:
        """
        Syntactic validation followed by block resolution.

        Syntax problems fail before any network call. A block that cannot
        be found yields errors with guidance specific to the identifier
        type. Other network failures propagate as ServiceError.
        """
        result = self._validator.validate_identifier(identifier)
        kind = classify_identifier(identifier)

        if not result.is_valid:
            if kind is IdentifierType.CONTRACT_ADDRESS:
                result.add_error(
                    "contract_address_guidance",
                    "This tool analyzes blocks, not individual contracts. "
                    "Please provide a block number or block hash.",
                )
                result.add_error(
                    "contract_address_example",
                    "Example: Use '21000000' for block number or '0x1234...' "
                    "(64 characters) for block hash",
                )
            elif kind is IdentifierType.INVALID:
                result.add_error(
                    "identifier_guidance",
                    "Please provide a valid block number, block hash, or block tag "
                    "(latest, earliest, pending, safe, finalized)",
                )
            return result

        if kind is IdentifierType.BLOCK_HASH_OR_TX_HASH:
            result.add_warning(
                "ambiguous_hash",
                "64-character hex string detected. If this is a transaction hash, "
                "please find the block containing this transaction instead.",
            )

        try:
            block = await self._resolver.get_block_info(identifier)
        except IdentifierValidationError:
            self._add_not_found_guidance(result, identifier, kind)
            return result

        current = await self._resolver.get_current_number()
        age = current - block.number
        if age < self._settings.reorg_depth_warning:
            result.add_warning(
                "recent_block",
                f"Block {block.number} is very recent ({age} blocks old) "
                f"and might be subject to reorganization",
                block_age=age,
            )

        count = block.transaction_count
        if count > VERY_SLOW_TRACE_TRANSACTIONS:
            result.add_warning(
                "very_large_block",
                f"Block contains {count} transactions. Tracing may take several minutes.",
                transaction_count=count,
            )
        elif count > SLOW_TRACE_TRANSACTIONS:
            result.add_warning(
                "large_block",
                f"Block contains {count} transactions. Tracing may take longer than usual.",
                transaction_count=count,
            )

        result.block_info = block
        return result

    def _add_not_found_guidance(
        self,
        result: ValidationResult,
        identifier: BlockIdentifier,
        kind: IdentifierType,
    ) -> None:
        if kind is IdentifierType.BLOCK_HASH_OR_TX_HASH:
            result.add_error("block_not_found", f"Block not found: {identifier}")
            result.add_error(
                "probably_transaction_hash",
                "This appears to be a transaction hash rather than a block hash.",
            )
            result.add_error(
                "transaction_hash_guidance",
                "To analyze a transaction, please find the block containing it first.",
            )
        elif kind is IdentifierType.HEX_BLOCK_NUMBER:
            result.add_error("block_not_found", f"Block not found: {identifier}")
            result.add_error(
                "hex_number_guidance",
                "This hex number may be too large or may not correspond to an existing block.",
            )
        else:
            result.add_error("block_not_found", f"Block not found or inaccessible: {identifier}")
            result.add_error(
                "network_guidance",
                "Please verify the block identifier is correct and the block "
                "exists on the current network.",
            )

    # ─────────────────────────────────────────────────────────────
    # Tracing
    # ─────────────────────────────────────────────────────────────

    async def trace_block(
        self,
        identifier: BlockIdentifier,
        use_cache: bool = True,
        config: Optional[TraceConfig] = None,
        include_gas_analysis: bool = True,
        gas_price_gwei: float = DEFAULT_GAS_PRICE_GWEI,
    ) -> TraceResult:
        """
        Trace one block by number, tag or hash.

        Raises:
            ServiceError: Tagged failure with suggestions; context["stage"]
                names the stage that failed
        """
        start = self._clock.monotonic()
        stage = TraceStage.VALIDATING
        logger.info(f"[orchestrator] Starting trace for block {identifier}")

        try:
            validation = await self.validate_block_identifier(identifier)
            if not validation.is_valid:
                raise IdentifierValidationError(
                    f"Invalid block identifier: {', '.join(validation.errors)}",
                    block_identifier=str(identifier),
                    suggestions=[
                        "Use a block number, block hash, or block tag",
                        "Check you're connected to the right network",
                    ],
                    context={"issues": [i.to_dict() for i in validation.issues]},
                )
            block = validation.block_info
            warnings = list(validation.warnings)
            key = cache_key(block.number)

            if use_cache:
                cached = self._cache.get(key)
                if cached is not None:
                    logger.info(f"[orchestrator] Cache hit for block {block.number}")
                    return self._build_result(
                        cached, block, start, True, warnings,
                        include_gas_analysis, gas_price_gwei,
                    )

            estimate = estimate_processing_time(block.transaction_count)
            if estimate.warning:
                logger.warning(f"[orchestrator] Block {block.number}: {estimate.warning}")

            stage = TraceStage.FETCHING
            raw_items = await self._fetch(identifier, block, config)

            stage = TraceStage.VALIDATING_RAW
            trace_validation = self._validator.validate_trace_data(raw_items)
            for warning in trace_validation.warnings:
                logger.warning(f"[orchestrator] Block {block.number} trace warning: {warning}")
            warnings.extend(trace_validation.warnings)

            stage = TraceStage.PROCESSING
            analysis = self._processor.process(raw_items, str(block.number))
            processed_validation = self._validator.validate_processed_data(analysis)
            for warning in processed_validation.warnings:
                logger.warning(f"[orchestrator] Block {block.number} analysis warning: {warning}")
            warnings.extend(processed_validation.warnings)
            if not processed_validation.is_valid:
                logger.warning(
                    f"[orchestrator] Block {block.number} analysis has structural errors: "
                    f"{', '.join(processed_validation.errors)}"
                )
                warnings.extend(processed_validation.errors)

            stage = TraceStage.CACHING
            if use_cache:
                self._cache.set(key, analysis)

            result = self._build_result(
                analysis, block, start, False, warnings,
                include_gas_analysis, gas_price_gwei,
            )
            logger.info(
                f"[orchestrator] Trace completed for block {block.number} "
                f"in {result.processing_time:.2f}s"
            )
            return result

        except Exception as e:
            error = classify_error(e, identifier, "trace_block")
            error.context.setdefault("stage", stage.value)
            logger.error(f"[orchestrator] Failed to trace block {identifier} at {stage.value}: {error}")
            raise error

    async def trace_block_by_hash(self, block_hash: str, **kwargs: Any) -> TraceResult:
        if not is_hash(block_hash):
            raise IdentifierValidationError(
                f"Invalid block hash: {block_hash}",
                block_identifier=str(block_hash),
                suggestions=["A block hash is 0x followed by 64 hex characters"],
            )
        return await self.trace_block(block_hash.strip(), **kwargs)

    async def _fetch(
        self,
        identifier: BlockIdentifier,
        block: BlockInfo,
        config: Optional[TraceConfig],
    ) -> list[RawTraceItem]:
        # Trace the resolved block so a moving tag cannot point elsewhere
        if is_hash(identifier):
            return await self._fetcher.trace_by_hash(str(identifier).strip(), config, block_info=block)
        return await self._fetcher.trace_by_number(block.number, config, block_info=block)

    def _build_result(
        self,
        analysis: ProcessedTraceAnalysis,
        block: BlockInfo,
        start: float,
        from_cache: bool,
        warnings: list[str],
        include_gas_analysis: bool,
        gas_price_gwei: float,
    ) -> TraceResult:
        gas_analysis = None
        if include_gas_analysis:
            gas_analysis = self._gas_analyzer.analyze(analysis, gas_price_gwei)
        return TraceResult(
            analysis=analysis,
            block_info=block,
            processing_time=self._clock.monotonic() - start,
            from_cache=from_cache,
            gas_analysis=gas_analysis,
            warnings=warnings,
            stage=TraceStage.COMPLETED,
            completed_at=self._clock.now(),
        )

    async def batch_trace_blocks(
        self,
        identifiers: Sequence[BlockIdentifier],
        max_concurrent: Optional[int] = None,
        use_cache: bool = True,
        config: Optional[TraceConfig] = None,
        include_gas_analysis: bool = False,
    ) -> list[BatchTraceResult]:
        """
        Trace many blocks in chunks of `max_concurrent`.

        Chunks run one after another with a pacer pause between them.
        Failures are captured per identifier. Results follow input order.
        """
        limit = max_concurrent if max_concurrent is not None else self._settings.max_concurrent_requests
        if limit < 1:
            raise ValueError("max_concurrent must be at least 1")

        items = list(identifiers)
        results: list[Optional[BatchTraceResult]] = [None] * len(items)
        workers = asyncio.Semaphore(limit)

        async def run(index: int, identifier: BlockIdentifier) -> None:
            async with workers:
                try:
                    result = await self.trace_block(
                        identifier,
                        use_cache=use_cache,
                        config=config,
                        include_gas_analysis=include_gas_analysis,
                    )
                    results[index] = BatchTraceResult(identifier, result=result)
                except Exception as e:
                    results[index] = BatchTraceResult(
                        identifier,
                        error=classify_error(e, identifier, "batch_trace_blocks"),
                    )

        chunks = [range(i, min(i + limit, len(items))) for i in range(0, len(items), limit)]
        logger.info(f"[orchestrator] Batch of {len(items)} blocks in {len(chunks)} chunks")
        for chunk_index, chunk in enumerate(chunks):
            if chunk_index > 0:
                await self._pacer.pause()
            await asyncio.gather(*(run(i, items[i]) for i in chunk))

        failed = sum(1 for r in results if r is not None and not r.ok)
        if failed:
            logger.warning(f"[orchestrator] Batch finished with {failed}/{len(items)} failures")
        return [r for r in results if r is not None]

    # ─────────────────────────────────────────────────────────────
    # Block queries
    # ─────────────────────────────────────────────────────────────

    async def get_block_info(self, identifier: BlockIdentifier) -> BlockInfo:
        return await self._resolver.get_block_info(identifier)

    async def estimate_processing_time(self, identifier: BlockIdentifier) -> ProcessingEstimate:
        block = await self._resolver.get_block_info(identifier)
        estimate = estimate_processing_time(block.transaction_count)
        return dataclasses.replace(estimate, block_info=block)

    async def get_recent_blocks(self, count: int = 10) -> list[BlockInfo]:
        return await self._resolver.get_recent(count)

    async def search_blocks(self, criteria: BlockSearchCriteria) -> list[BlockInfo]:
        return await self._resolver.search_blocks(criteria)

    # ─────────────────────────────────────────────────────────────
    # Validation report
    # ─────────────────────────────────────────────────────────────

    def generate_validation_report(
        self,
        identifier: BlockIdentifier,
        block_info: Optional[BlockInfo] = None,
        trace_data: Optional[Sequence[Any]] = None,
        processed: Optional[ProcessedTraceAnalysis] = None,
    ) -> ValidationReport:
        return self._validator.generate_validation_report(identifier, block_info, trace_data, processed)

    # ─────────────────────────────────────────────────────────────
    # Cache
    # ─────────────────────────────────────────────────────────────

    async def warm_cache(self, identifiers: Sequence[BlockIdentifier]) -> int:
        """
        Trace and cache the given blocks, at most max_concurrent at a time.

        Identifiers are resolved to block numbers first so warmed entries
        use the same keys as trace_block. Unresolvable identifiers are
        logged and skipped.
        """
        workers = asyncio.Semaphore(self._settings.max_concurrent_requests)

        async def resolve(identifier: BlockIdentifier) -> Optional[int]:
            async with workers:
                try:
                    block = await self._resolver.get_block_info(identifier)
                except ServiceError as e:
                    logger.warning(f"[orchestrator] Cannot warm block {identifier}: {e.message}")
                    return None
                return block.number

        async def fetch(block_number: int) -> ProcessedTraceAnalysis:
            async with workers:
                result = await self.trace_block(
                    block_number,
                    use_cache=False,
                    include_gas_analysis=False,
                )
                return result.analysis

        resolved = await asyncio.gather(*(resolve(i) for i in identifiers))
        block_numbers = list(dict.fromkeys(n for n in resolved if n is not None))
        return await self._cache.warm_cache(block_numbers, fetch)

    def get_cache_stats(self) -> CacheStats:
        return self._cache.get_stats()

    def clear_cache(self) -> None:
        self._cache.clear()

    def cleanup_cache(self) -> int:
        return self._cache.cleanup()

    # ─────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────

    async def close(self) -> None:
        await self._connection.close()

    async def __aenter__(self) -> "BlockTraceOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
