"""
Support Module Tests.

============================================================
PURPOSE
============================================================
Tests for settings, error classification, the JSON-RPC connection,
batch pacers and the mock clock.

TEST CATEGORIES:
- Settings loading and validation
- Error classification
- JsonRpcConnection transport handling
- Pacing policies
- Clock

============================================================
"""

import logging
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from block_trace.clock import MockClock
from block_trace.config import (
    BlockTraceSettings,
    TraceConfig,
    get_settings,
    set_settings,
)
from block_trace.exceptions import (
    ConfigurationError,
    IdentifierValidationError,
    NetworkError,
    ParsingError,
    RPCError,
    classify_error,
)
from block_trace.pacing import FixedDelayPacer, NoDelayPacer, TokenBucketPacer
from block_trace.provider import JsonRpcConnection


# ============================================================
# SETTINGS TESTS
# ============================================================

class TestSettings:
    """Tests for BlockTraceSettings."""

    def test_defaults(self):
        """Test default values."""
        settings = BlockTraceSettings()

        assert settings.max_cache_entries == 50
        assert settings.cache_ttl_seconds == 1800
        assert settings.debug_trace_timeout == 300
        assert settings.block_info_timeout == 30
        assert settings.max_concurrent_requests == 3
        assert settings.batch_delay_seconds == 1.0
        assert settings.trace_config.to_rpc() == {
            "tracer": "callTracer",
            "tracerConfig": {"onlyTopCall": False, "withLog": True},
        }
        assert settings.validate() == []

    def test_from_env(self, monkeypatch):
        """Test environment variables override defaults."""
        monkeypatch.setenv("BLOCK_TRACE_RPC_URL", "http://node:8545")
        monkeypatch.setenv("BLOCK_TRACE_MAX_CACHE_ENTRIES", "5")
        monkeypatch.setenv("BLOCK_TRACE_DEBUG_TRACE_TIMEOUT", "60")
        monkeypatch.setenv("BLOCK_TRACE_ONLY_TOP_CALL", "true")

        settings = BlockTraceSettings.from_env()

        assert settings.rpc_url == "http://node:8545"
        assert settings.max_cache_entries == 5
        assert settings.debug_trace_timeout == 60.0
        assert settings.trace_config.tracer_config.only_top_call is True

    def test_from_env_search_reorg_and_log_level(self, monkeypatch):
        """Test search window, reorg depth and log level are read from the environment."""
        monkeypatch.setenv("BLOCK_TRACE_SEARCH_WINDOW_BLOCKS", "250")
        monkeypatch.setenv("BLOCK_TRACE_SEARCH_MAX_BLOCKS", "20")
        monkeypatch.setenv("BLOCK_TRACE_REORG_DEPTH_WARNING", "64")
        monkeypatch.setenv("BLOCK_TRACE_LOG_LEVEL", "debug")

        settings = BlockTraceSettings.from_env()

        assert settings.search_window_blocks == 250
        assert settings.search_max_blocks == 20
        assert settings.reorg_depth_warning == 64
        assert settings.log_level == "debug"
        assert settings.validate() == []

    def test_from_env_malformed_number(self, monkeypatch):
        """Test an unparseable numeric variable raises ConfigurationError."""
        monkeypatch.setenv("BLOCK_TRACE_MAX_CACHE_ENTRIES", "lots")

        with pytest.raises(ConfigurationError, match="BLOCK_TRACE_MAX_CACHE_ENTRIES") as exc_info:
            BlockTraceSettings.from_env()
        assert exc_info.value.config_key == "BLOCK_TRACE_MAX_CACHE_ENTRIES"
        assert isinstance(exc_info.value.original_error, ValueError)

    def test_validate_reports_every_problem(self):
        """Test validate lists all invalid settings."""
        settings = BlockTraceSettings(
            max_cache_entries=0,
            debug_trace_timeout=0,
            batch_delay_seconds=-1,
            trace_config=TraceConfig(tracer=""),
        )

        errors = settings.validate()

        assert len(errors) == 4
        assert "max_cache_entries must be at least 1" in errors

    def test_validated_raises(self):
        """Test validated raises ConfigurationError on bad settings."""
        with pytest.raises(ConfigurationError, match="max_concurrent_requests"):
            BlockTraceSettings(max_concurrent_requests=0).validated()

    def test_validate_search_reorg_and_log_level(self):
        """Test search, reorg and log level settings are checked."""
        settings = BlockTraceSettings(
            search_window_blocks=-1,
            search_max_blocks=0,
            reorg_depth_warning=-5,
            log_level="chatty",
        )

        errors = settings.validate()

        assert len(errors) == 4
        assert "search_max_blocks must be at least 1" in errors
        assert any("log_level" in e for e in errors)

    def test_configure_logging_applies_level(self, monkeypatch):
        """Test configure_logging passes log_level to the root logger setup."""
        basic_config = MagicMock()
        monkeypatch.setattr("block_trace.config.logging.basicConfig", basic_config)

        BlockTraceSettings(log_level="debug").configure_logging()

        basic_config.assert_called_once()
        assert basic_config.call_args.kwargs["level"] == logging.DEBUG

    def test_set_and_get_settings(self, monkeypatch):
        """Test the default settings instance can be replaced."""
        monkeypatch.setattr("block_trace.config._default_settings", None)
        custom = BlockTraceSettings(rpc_url="http://other:8545")

        set_settings(custom)

        assert get_settings() is custom

    def test_to_dict(self):
        """Test settings serialize to plain values."""
        data = BlockTraceSettings().to_dict()

        assert data["rpc_url"] == "http://localhost:8545"
        assert data["trace_config"]["tracer"] == "callTracer"


# ============================================================
# ERROR CLASSIFICATION TESTS
# ============================================================

class TestClassifyError:
    """Tests for classify_error."""

    @pytest.mark.parametrize("error, expected", [
        (TimeoutError(), NetworkError),
        (RuntimeError("request timed out"), NetworkError),
        (RuntimeError("block not found"), IdentifierValidationError),
        (ValueError("could not parse response"), ParsingError),
        (OSError("network unreachable"), NetworkError),
        (RuntimeError("something odd"), RPCError),
    ])
    def test_keyword_rules(self, error, expected):
        """Test errors are tagged by keywords in their message."""
        classified = classify_error(error, 100, "Debug trace")

        assert type(classified) is expected
        assert classified.block_identifier == "100"
        assert classified.original_error is error
        assert classified.message.startswith("Debug trace failed for block 100")
        assert classified.suggestions

    def test_service_errors_pass_through(self):
        """Test already tagged errors are returned unchanged."""
        error = ParsingError("bad shape", block_identifier="7")

        assert classify_error(error, 100, "Debug trace") is error

    def test_to_dict(self):
        """Test serialized errors carry type and suggestions."""
        error = NetworkError("down", block_identifier="1", suggestions=["retry"])

        data = error.to_dict()

        assert data["type"] == "network_error"
        assert data["suggestions"] == ["retry"]
        assert data["block_identifier"] == "1"
        assert "network_error" in str(error)


# ============================================================
# CONNECTION TESTS
# ============================================================

def make_session(status=200, body=None, text="", json_error=None):
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=text)
    if json_error is not None:
        response.json = AsyncMock(side_effect=json_error)
    else:
        response.json = AsyncMock(return_value=body)

    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    session.post.return_value.__aenter__ = AsyncMock(return_value=response)
    session.post.return_value.__aexit__ = AsyncMock(return_value=False)
    return session


class TestJsonRpcConnection:
    """Tests for JsonRpcConnection."""

    @pytest.mark.asyncio
    async def test_send_returns_result(self):
        """Test a successful call returns the result field."""
        session = make_session(body={"jsonrpc": "2.0", "id": 1, "result": "0x10"})
        connection = JsonRpcConnection("http://node", session=session)

        result = await connection.send("eth_blockNumber", [])

        assert result == "0x10"
        payload = session.post.call_args.kwargs["json"]
        assert payload["method"] == "eth_blockNumber"
        assert payload["jsonrpc"] == "2.0"
        assert connection.last_latency_ms is not None

    @pytest.mark.asyncio
    async def test_rpc_error_object(self):
        """Test a JSON-RPC error object raises RPCError with its code."""
        session = make_session(body={"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": "method not found"}})
        connection = JsonRpcConnection("http://node", session=session)

        with pytest.raises(RPCError, match="method not found") as exc_info:
            await connection.send("debug_traceBlockByNumber", ["0x1", {}])
        assert exc_info.value.code == -32601

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        """Test HTTP errors raise NetworkError."""
        session = make_session(status=502, text="bad gateway")
        connection = JsonRpcConnection("http://node", session=session)

        with pytest.raises(NetworkError, match="HTTP 502"):
            await connection.send("eth_blockNumber", [])

    @pytest.mark.asyncio
    async def test_client_error(self):
        """Test transport failures raise NetworkError."""
        session = make_session()
        session.post.side_effect = aiohttp.ClientConnectionError("connection refused")
        connection = JsonRpcConnection("http://node", session=session)

        with pytest.raises(NetworkError):
            await connection.send("eth_blockNumber", [])

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        """Test an unparseable body raises ParsingError."""
        session = make_session(json_error=ValueError("Expecting value"))
        connection = JsonRpcConnection("http://node", session=session)

        with pytest.raises(ParsingError):
            await connection.send("eth_blockNumber", [])

    @pytest.mark.asyncio
    async def test_non_object_body(self):
        """Test a JSON body that is not an object raises ParsingError."""
        session = make_session(body=["unexpected"])
        connection = JsonRpcConnection("http://node", session=session)

        with pytest.raises(ParsingError):
            await connection.send("eth_blockNumber", [])

    @pytest.mark.asyncio
    async def test_get_provider_connects(self):
        """Test get_provider connects and resolves the network."""
        session = make_session(body={"jsonrpc": "2.0", "id": 1, "result": "0x1"})
        connection = JsonRpcConnection("http://node", session=session)

        provider = await connection.get_provider()
        info = await connection.get_network_info()

        assert provider is connection
        assert connection.is_connected()
        assert info.name == "mainnet"
        assert info.chain_id == 1

    @pytest.mark.asyncio
    async def test_close_leaves_borrowed_session_open(self):
        """Test a caller-supplied session is not closed."""
        session = make_session()

        async with JsonRpcConnection("http://node", session=session):
            pass

        session.close.assert_not_called()


# ============================================================
# PACING TESTS
# ============================================================

class TestPacers:
    """Tests for batch pacing policies."""

    @pytest.mark.asyncio
    async def test_fixed_delay(self):
        """Test fixed delay sleeps the configured interval."""
        sleep = AsyncMock()
        pacer = FixedDelayPacer(0.25, sleep=sleep)

        await pacer.pause()
        await pacer.pause()

        assert pacer.pauses == 2
        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.25)

    @pytest.mark.asyncio
    async def test_fixed_zero_delay_skips_sleep(self):
        """Test a zero delay never sleeps."""
        sleep = AsyncMock()
        pacer = FixedDelayPacer(0, sleep=sleep)

        await pacer.pause()

        sleep.assert_not_awaited()

    def test_fixed_rejects_negative(self):
        """Test a negative delay is rejected."""
        with pytest.raises(ValueError):
            FixedDelayPacer(-1)

    @pytest.mark.asyncio
    async def test_no_delay(self):
        """Test the no-delay pacer returns immediately."""
        assert await NoDelayPacer().pause() is None

    @pytest.mark.asyncio
    async def test_token_bucket_bursts_then_waits(self):
        """Test the bucket allows a burst then waits for a refill."""
        now = [0.0]
        sleep = AsyncMock()
        pacer = TokenBucketPacer(rate=2.0, capacity=2, sleep=sleep, monotonic=lambda: now[0])

        await pacer.pause()
        await pacer.pause()
        sleep.assert_not_awaited()

        await pacer.pause()
        sleep.assert_awaited_once_with(0.5)

    def test_token_bucket_refills_over_time(self):
        """Test tokens refill at the configured rate up to capacity."""
        now = [0.0]
        pacer = TokenBucketPacer(rate=1.0, capacity=3, monotonic=lambda: now[0])

        now[0] = 100.0

        assert pacer.available_tokens == 3

    @pytest.mark.parametrize("kwargs", [{"rate": 0}, {"capacity": 0}])
    def test_token_bucket_rejects_bad_args(self, kwargs):
        """Test invalid bucket parameters are rejected."""
        with pytest.raises(ValueError):
            TokenBucketPacer(**kwargs)


# ============================================================
# CLOCK TESTS
# ============================================================

class TestMockClock:
    """Tests for MockClock."""

    def test_advance(self):
        """Test time moves only when advanced."""
        clock = MockClock()
        start = clock.timestamp()

        clock.advance(minutes=2)

        assert clock.timestamp() - start == 120
        assert clock.monotonic() == clock.timestamp()

    def test_set_time_assumes_utc(self):
        """Test naive datetimes are treated as UTC."""
        clock = MockClock()

        clock.set_time(datetime(2024, 6, 1))

        assert clock.now() == datetime(2024, 6, 1, tzinfo=timezone.utc)
