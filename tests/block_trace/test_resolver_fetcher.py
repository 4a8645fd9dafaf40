"""
Block Resolver and Trace Fetcher Tests.

============================================================
PURPOSE
============================================================
Tests for block metadata resolution and debug trace fetching against
an in-memory fake node.

TEST CATEGORIES:
- Identifier formatting
- Block lookups, ranges, recent blocks and search
- Timeouts and not-found handling
- Trace normalization and size advisories
- Processing-time estimates

============================================================
"""

import asyncio
import logging

import pytest

from block_trace.config import TraceConfig, TracerOptions
from block_trace.constants import RPCMethod
from block_trace.exceptions import (
    IdentifierValidationError,
    NetworkError,
    ParsingError,
    RPCError,
)
from block_trace.fetcher import TraceFetcher, estimate_processing_time
from block_trace.models import BlockInfo, BlockSearchCriteria
from block_trace.resolver import BlockInfoResolver, format_identifier, transaction_density
from conftest import block_hash, make_block, make_trace_item


@pytest.fixture
def resolver(node, settings):
    return BlockInfoResolver(node, settings)


@pytest.fixture
def fetcher(node, resolver, settings):
    return TraceFetcher(node, resolver, settings)


# ============================================================
# FORMATTING TESTS
# ============================================================

class TestFormatIdentifier:
    """Tests for format_identifier."""

    @pytest.mark.parametrize("identifier, expected", [
        (255, "0xff"),
        (0, "0x0"),
        ("255", "0xff"),
        ("LATEST", "latest"),
        ("0xff", "0xff"),
    ])
    def test_formats(self, identifier, expected):
        """Test numbers become hex, tags lower-case, hex passes through."""
        assert format_identifier(identifier) == expected

    def test_negative_rejected(self):
        """Test negative numbers raise a validation error."""
        with pytest.raises(IdentifierValidationError) as exc_info:
            format_identifier(-1)
        assert exc_info.value.type == "validation_error"

    def test_garbage_rejected(self):
        """Test unparseable strings raise a validation error."""
        with pytest.raises(IdentifierValidationError):
            format_identifier("tomorrow")

    @pytest.mark.parametrize("identifier", ["0xzz", "0x", "0x12g4", " 0x "])
    def test_malformed_hex_rejected(self, identifier):
        """Test 0x strings that are not hex numbers are rejected."""
        with pytest.raises(IdentifierValidationError, match="Invalid block identifier"):
            format_identifier(identifier)

    def test_contract_address_rejected(self):
        """Test a 40-hex-digit address is not sent as a block number."""
        address = "0x" + "11" * 20

        with pytest.raises(IdentifierValidationError, match="Contract address") as exc_info:
            format_identifier(address)
        assert exc_info.value.block_identifier == address
        assert exc_info.value.suggestions


# ============================================================
# RESOLVER TESTS
# ============================================================

class TestBlockInfoResolver:
    """Tests for BlockInfoResolver."""

    @pytest.mark.asyncio
    async def test_get_by_number(self, node, resolver):
        """Test fetching a block parses hex quantities."""
        node.add_block(100, tx_count=3)

        block = await resolver.get_by_number(100)

        assert block.number == 100
        assert block.transaction_count == 3
        assert block.gas_used == 63000
        assert block.gas_limit == 30_000_000
        assert node.calls_to(RPCMethod.ETH_GET_BLOCK_BY_NUMBER) == [["0x64", False]]

    @pytest.mark.asyncio
    async def test_get_by_tag(self, node, resolver):
        """Test tags are passed through lower-cased."""
        node.add_block(1000)

        block = await resolver.get_by_number("Latest")

        assert block.number == 1000
        assert node.calls_to(RPCMethod.ETH_GET_BLOCK_BY_NUMBER)[0][0] == "latest"

    @pytest.mark.asyncio
    async def test_get_block_info_dispatches_hashes(self, node, resolver):
        """Test 66-char identifiers are looked up by hash."""
        node.add_block(100)

        block = await resolver.get_block_info(block_hash(100))

        assert block.number == 100
        assert node.calls_to(RPCMethod.ETH_GET_BLOCK_BY_HASH) == [[block_hash(100), False]]

    @pytest.mark.asyncio
    async def test_not_found(self, resolver):
        """Test a null result raises block-not-found."""
        with pytest.raises(IdentifierValidationError, match="Block not found"):
            await resolver.get_by_number(5)

    @pytest.mark.asyncio
    async def test_resolve_unknown_hash_suggests_transaction(self, resolver):
        """Test an unknown hash points the user at transaction hashes."""
        with pytest.raises(IdentifierValidationError) as exc_info:
            await resolver.resolve_block_hash("0x" + "ef" * 32)
        assert any("transaction hash" in s for s in exc_info.value.suggestions)

    @pytest.mark.asyncio
    async def test_timeout_is_network_error(self, node, settings):
        """Test a slow node fails with network_error after the timeout."""
        node.add_block(100)
        node.delays[RPCMethod.ETH_GET_BLOCK_BY_NUMBER] = 0.5
        settings.block_info_timeout = 0.05
        resolver = BlockInfoResolver(node, settings)

        with pytest.raises(NetworkError) as exc_info:
            await resolver.get_by_number(100)
        assert exc_info.value.type == "network_error"

    @pytest.mark.asyncio
    async def test_block_exists(self, node, resolver):
        """Test existence checks swallow lookup failures."""
        node.add_block(100)

        assert await resolver.block_exists(100) is True
        assert await resolver.block_exists(101) is False

    @pytest.mark.asyncio
    async def test_malformed_identifier_never_sent(self, node, resolver):
        """Test malformed hex and addresses fail before any RPC call."""
        with pytest.raises(IdentifierValidationError):
            await resolver.get_by_number("0xzz")
        with pytest.raises(IdentifierValidationError):
            await resolver.get_block_info("0x" + "11" * 20)

        assert await resolver.block_exists("0xzz") is False
        assert node.calls == []

    @pytest.mark.asyncio
    async def test_get_range(self, node, resolver):
        """Test range totals are derived from both endpoints."""
        node.add_block(10, tx_count=2)
        node.add_block(14, tx_count=5)

        block_range = await resolver.get_range(10, 14)

        assert block_range.total_blocks == 5
        assert block_range.total_transactions == 7

    @pytest.mark.asyncio
    async def test_get_range_rejects_inverted(self, resolver):
        """Test start after end is a validation error."""
        with pytest.raises(IdentifierValidationError):
            await resolver.get_range(20, 10)

    @pytest.mark.asyncio
    async def test_get_recent_skips_negative(self, node, resolver):
        """Test recent blocks stop at genesis."""
        node.current_block = 1
        node.add_block(0)
        node.add_block(1)

        blocks = await resolver.get_recent(5)

        assert sorted(b.number for b in blocks) == [0, 1]

    @pytest.mark.asyncio
    async def test_search_blocks(self, node, resolver):
        """Test search walks backward collecting matches up to the limit."""
        node.current_block = 20
        for number in range(10, 21):
            node.add_block(number, tx_count=number % 4)

        matches = await resolver.search_blocks(
            BlockSearchCriteria(min_transactions=3, start_block=10, limit=2)
        )

        assert [b.number for b in matches] == [19, 15]

    @pytest.mark.asyncio
    async def test_search_skips_failing_blocks(self, node, resolver, caplog):
        """Test a block that fails to load is skipped with a warning."""
        node.current_block = 12
        for number in (10, 11, 12):
            node.add_block(number, tx_count=1)
        node.block_failures[11] = RPCError("header not available")

        with caplog.at_level(logging.WARNING):
            matches = await resolver.search_blocks(BlockSearchCriteria(start_block=10))

        assert [b.number for b in matches] == [12, 10]
        assert "Skipping block 11" in caplog.text

    @pytest.mark.asyncio
    async def test_search_scan_cap(self, node, settings):
        """Test search stops after search_max_blocks scanned."""
        settings.search_max_blocks = 3
        node.current_block = 50
        for number in range(40, 51):
            node.add_block(number, tx_count=0)
        resolver = BlockInfoResolver(node, settings)

        matches = await resolver.search_blocks(BlockSearchCriteria(min_transactions=1, start_block=40))

        assert matches == []
        assert len(node.calls_to(RPCMethod.ETH_GET_BLOCK_BY_NUMBER)) == 3

    def test_block_statistics(self):
        """Test statistics derive averages, utilization and density."""
        block = BlockInfo.from_rpc(make_block(1, tx_count=60))
        stats = BlockInfoResolver.get_block_statistics(block)

        assert stats.average_gas_per_transaction == 21000
        assert stats.gas_utilization == pytest.approx(60 * 21000 / 30_000_000 * 100)
        assert stats.transaction_density == "medium"

    @pytest.mark.parametrize("count, density", [
        (0, "low"), (49, "low"), (50, "medium"), (199, "medium"),
        (200, "high"), (499, "high"), (500, "very_high"),
    ])
    def test_density_breakpoints(self, count, density):
        """Test transaction density labels."""
        assert transaction_density(count) == density

    @pytest.mark.asyncio
    async def test_network_info(self, resolver):
        """Test network info is passed through from the connection."""
        info = await resolver.get_network_info()
        assert info.name == "mainnet"
        assert info.chain_id == 1


# ============================================================
# FETCHER TESTS
# ============================================================

class TestTraceFetcher:
    """Tests for TraceFetcher."""

    @pytest.mark.asyncio
    async def test_trace_by_number_sends_config(self, node, fetcher):
        """Test the tracer config is sent in camelCase RPC form."""
        node.add_block(100)
        config = TraceConfig(tracer_config=TracerOptions(only_top_call=True, with_log=False))

        items = await fetcher.trace_by_number(100, config)

        assert len(items) == 2
        params = node.calls_to(RPCMethod.DEBUG_TRACE_BLOCK_BY_NUMBER)[0]
        assert params == ["0x64", {"tracer": "callTracer", "tracerConfig": {"onlyTopCall": True, "withLog": False}}]

    @pytest.mark.asyncio
    async def test_trace_by_hash(self, node, fetcher):
        """Test tracing by block hash."""
        node.add_block(100, tx_count=3)

        items = await fetcher.trace_by_hash(block_hash(100))

        assert [item.index for item in items] == [0, 1, 2]
        assert node.calls_to(RPCMethod.DEBUG_TRACE_BLOCK_BY_HASH)[0][0] == block_hash(100)

    @pytest.mark.asyncio
    async def test_normalization_gives_placeholders(self, node, fetcher):
        """Test malformed items degrade to placeholders instead of failing."""
        traces = [make_trace_item(0, 100), {"result": {"from": "0x"}}, "garbage"]
        node.add_block(100, tx_count=3, traces=traces)

        items = await fetcher.trace_by_number(100)

        assert [item.tx_hash for item in items][1:] == ["tx_1", "tx_2"]
        assert items[1].has_result is True
        assert items[2].has_result is False

    @pytest.mark.asyncio
    async def test_non_array_result_is_parsing_error(self, node, fetcher):
        """Test a non-array trace response is a parsing_error."""
        node.add_block(100, traces={"unexpected": True})

        with pytest.raises(ParsingError, match="Expected array"):
            await fetcher.trace_by_number(100)

    @pytest.mark.asyncio
    async def test_empty_result_warns(self, node, fetcher, caplog):
        """Test an empty trace array logs a warning but succeeds."""
        node.add_block(100, tx_count=0)

        with caplog.at_level(logging.WARNING):
            items = await fetcher.trace_by_number(100)

        assert items == []
        assert "Empty trace result" in caplog.text

    @pytest.mark.asyncio
    async def test_large_block_advisory(self, node, settings, caplog):
        """Test blocks above the threshold log an advisory."""
        settings.large_block_threshold = 2
        node.add_block(100, tx_count=3)
        fetcher = TraceFetcher(node, settings=settings)

        with caplog.at_level(logging.WARNING):
            await fetcher.trace_by_number(100)

        assert "may be slow" in caplog.text

    @pytest.mark.asyncio
    async def test_timeout_cancels_request(self, node, settings):
        """Test the trace call is cancelled when the timeout fires."""
        node.add_block(100)
        settings.debug_trace_timeout = 0.05
        fetcher = TraceFetcher(node, settings=settings)
        cancelled = asyncio.Event()

        async def slow_send(method, params):
            if method == RPCMethod.DEBUG_TRACE_BLOCK_BY_NUMBER:
                try:
                    await asyncio.sleep(5)
                except asyncio.CancelledError:
                    cancelled.set()
                    raise
            return node.blocks[100]

        node.send = slow_send

        with pytest.raises(NetworkError, match="timed out"):
            await fetcher.trace_by_number(100)
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_provider_error_is_classified(self, node, fetcher):
        """Test unexpected provider exceptions become tagged errors."""
        node.add_block(100)
        node.trace_failures[100] = ConnectionResetError("connection reset by peer")

        with pytest.raises(NetworkError) as exc_info:
            await fetcher.trace_by_number(100)
        assert exc_info.value.block_identifier == "100"

    @pytest.mark.asyncio
    async def test_uses_supplied_block_info(self, node, fetcher):
        """Test no extra block lookup happens when block info is given."""
        node.add_block(100)
        block = BlockInfo.from_rpc(node.blocks[100])

        await fetcher.trace_by_number(100, block_info=block)

        assert node.calls_to(RPCMethod.ETH_GET_BLOCK_BY_NUMBER) == []


class TestProcessingEstimate:
    """Tests for estimate_processing_time."""

    @pytest.mark.parametrize("count, seconds, category, warns", [
        (0, 30, "fast", False),
        (50, 30, "fast", False),
        (51, 120, "medium", False),
        (200, 120, "medium", False),
        (201, 300, "slow", True),
        (500, 300, "slow", True),
        (501, 600, "very_slow", True),
    ])
    def test_breakpoints(self, count, seconds, category, warns):
        """Test transaction count breakpoints."""
        estimate = estimate_processing_time(count)

        assert estimate.estimated_seconds == seconds
        assert estimate.category == category
        assert (estimate.warning is not None) is warns

    def test_static_on_fetcher(self):
        """Test the estimate is reachable from the fetcher class."""
        assert TraceFetcher.estimate_processing_time(600).category == "very_slow"
