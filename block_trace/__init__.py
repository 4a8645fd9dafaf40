"""
Block Trace Package - Debug-trace acquisition, validation and caching.

Turns a block identifier into a reliably fetched, validated and cached
set of execution traces for downstream analysis.

Features:
- Identifier classification with targeted guidance
- Timeout-bounded JSON-RPC calls (debug_traceBlock*, eth_getBlockBy*)
- Multi-pass validation with heuristic anomaly detection
- TTL + LRU cache with statistics, warm-up and export/import
- Bounded-concurrency batch tracing with swappable pacing

Quick Start:
    from block_trace import BlockTraceOrchestrator, BlockTraceSettings

    async def trace():
        settings = BlockTraceSettings.from_env().validated()
        settings.configure_logging()
        async with BlockTraceOrchestrator.from_settings(settings) as orchestrator:
            result = await orchestrator.trace_block("latest")

            summary = result.analysis.summary
            print(f"Transactions: {summary.total_transactions}")
            print(f"Gas Used: {summary.total_gas_used}")
            print(f"From cache: {result.from_cache}")

            for warning in result.warnings:
                print(f"Warning: {warning}")

Batch tracing:
    results = await orchestrator.batch_trace_blocks(
        [18500000, 18500001, 18500002],
        max_concurrent=2,
    )
    for entry in results:
        if entry.ok:
            print(entry.block_identifier, entry.result.analysis.summary.total_gas_used)
        else:
            print(entry.block_identifier, entry.error.suggestions)
"""

from block_trace.cache import TraceCache, cache_key
from block_trace.classifier import IdentifierType, classify_identifier
from block_trace.clock import ClockProtocol, MockClock, SystemClock
from block_trace.config import (
    BlockTraceSettings,
    TraceConfig,
    TracerOptions,
    configure_logging,
    get_settings,
    set_settings,
)
from block_trace.exceptions import (
    BlockTraceError,
    ConfigurationError,
    ErrorType,
    IdentifierValidationError,
    NetworkError,
    ParsingError,
    RPCError,
    ServiceError,
    classify_error,
)
from block_trace.fetcher import TraceFetcher, estimate_processing_time
from block_trace.models import (
    BatchTraceResult,
    BlockInfo,
    BlockSearchCriteria,
    CallFrame,
    ProcessedTraceAnalysis,
    ProcessingEstimate,
    RawTraceItem,
    Severity,
    TraceResult,
    TraceStage,
    ValidationIssue,
    ValidationReport,
    ValidationResult,
)
from block_trace.orchestrator import BlockTraceOrchestrator
from block_trace.pacing import BatchPacer, FixedDelayPacer, NoDelayPacer, TokenBucketPacer
from block_trace.processor import (
    BlockGasAnalyzer,
    CallTraceProcessor,
    GasAnalysisResult,
    GasAnalyzer,
    TraceProcessor,
)
from block_trace.provider import ConnectionProvider, JsonRpcConnection
from block_trace.resolver import BlockInfoResolver, format_identifier
from block_trace.validator import TraceValidator


__version__ = "1.0.0"

__all__ = [
    # Orchestration
    "BlockTraceOrchestrator",
    "BatchTraceResult",
    "TraceResult",
    "TraceStage",

    # Components
    "BlockInfoResolver",
    "TraceFetcher",
    "TraceValidator",
    "TraceCache",
    "cache_key",
    "classify_identifier",
    "IdentifierType",
    "estimate_processing_time",
    "format_identifier",

    # Collaborators
    "ConnectionProvider",
    "JsonRpcConnection",
    "TraceProcessor",
    "CallTraceProcessor",
    "GasAnalyzer",
    "BlockGasAnalyzer",
    "GasAnalysisResult",
    "BatchPacer",
    "FixedDelayPacer",
    "NoDelayPacer",
    "TokenBucketPacer",

    # Models
    "BlockInfo",
    "BlockSearchCriteria",
    "CallFrame",
    "RawTraceItem",
    "ProcessedTraceAnalysis",
    "ProcessingEstimate",
    "Severity",
    "ValidationIssue",
    "ValidationResult",
    "ValidationReport",

    # Configuration
    "BlockTraceSettings",
    "TraceConfig",
    "TracerOptions",
    "configure_logging",
    "get_settings",
    "set_settings",
    "ClockProtocol",
    "SystemClock",
    "MockClock",

    # Exceptions
    "BlockTraceError",
    "ConfigurationError",
    "ServiceError",
    "ErrorType",
    "NetworkError",
    "RPCError",
    "ParsingError",
    "IdentifierValidationError",
    "classify_error",
]
