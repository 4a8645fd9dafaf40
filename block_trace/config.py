"""
Block Trace Configuration - Named constants and environment loading.

All timeouts, cache limits and concurrency bounds are configurable.
Environment variables use the BLOCK_TRACE_ prefix and may be placed
in a .env file.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from dotenv import load_dotenv

from block_trace.constants import CALL_TRACER
from block_trace.exceptions import ConfigurationError


@dataclass(frozen=True)
class TracerOptions:
    """Options passed to the node-side tracer."""
    only_top_call: bool = False
    with_log: bool = True

    def to_rpc(self) -> dict[str, Any]:
        return {
            "onlyTopCall": self.only_top_call,
            "withLog": self.with_log,
        }


@dataclass(frozen=True)
class TraceConfig:
    """Tracer selection for a debug trace request. Immutable per request."""
    tracer: str = CALL_TRACER
    tracer_config: TracerOptions = field(default_factory=TracerOptions)

    def to_rpc(self) -> dict[str, Any]:
        """Render as the JSON object expected by debug_traceBlock*."""
        return {
            "tracer": self.tracer,
            "tracerConfig": self.tracer_config.to_rpc(),
        }


DEFAULT_TRACE_CONFIG = TraceConfig()


@dataclass
class BlockTraceSettings:
    """Runtime settings for trace acquisition."""

    # Connection
    rpc_url: str = "http://localhost:8545"
    trace_config: TraceConfig = field(default_factory=TraceConfig)

    # Cache
    max_cache_entries: int = 50
    cache_ttl_seconds: float = 30 * 60

    # Timeouts (seconds)
    debug_trace_timeout: float = 300.0
    block_info_timeout: float = 30.0

    # Batch processing
    max_concurrent_requests: int = 3
    batch_delay_seconds: float = 1.0

    # Size advisories
    large_block_threshold: int = 1000

    # Block search
    search_window_blocks: int = 1000
    search_max_blocks: int = 100

    # Blocks closer to head than this may still be reorganized
    reorg_depth_warning: int = 12

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "BlockTraceSettings":
        """
        Load settings from environment variables (and .env).

        Raises:
            ConfigurationError: If a numeric variable cannot be parsed
        """
        load_dotenv(dotenv_path)
        defaults = cls()
        trace_config = TraceConfig(
            tracer=os.getenv("BLOCK_TRACE_TRACER", defaults.trace_config.tracer),
            tracer_config=TracerOptions(
                only_top_call=_env_bool("BLOCK_TRACE_ONLY_TOP_CALL", False),
                with_log=_env_bool("BLOCK_TRACE_WITH_LOG", True),
            ),
        )
        return cls(
            rpc_url=os.getenv("BLOCK_TRACE_RPC_URL", defaults.rpc_url),
            trace_config=trace_config,
            max_cache_entries=_env_number("BLOCK_TRACE_MAX_CACHE_ENTRIES", defaults.max_cache_entries, int),
            cache_ttl_seconds=_env_number("BLOCK_TRACE_CACHE_TTL", defaults.cache_ttl_seconds, float),
            debug_trace_timeout=_env_number("BLOCK_TRACE_DEBUG_TRACE_TIMEOUT", defaults.debug_trace_timeout, float),
            block_info_timeout=_env_number("BLOCK_TRACE_BLOCK_INFO_TIMEOUT", defaults.block_info_timeout, float),
            max_concurrent_requests=_env_number("BLOCK_TRACE_MAX_CONCURRENT_REQUESTS", defaults.max_concurrent_requests, int),
            batch_delay_seconds=_env_number("BLOCK_TRACE_BATCH_DELAY", defaults.batch_delay_seconds, float),
            large_block_threshold=_env_number("BLOCK_TRACE_LARGE_BLOCK_THRESHOLD", defaults.large_block_threshold, int),
            search_window_blocks=_env_number("BLOCK_TRACE_SEARCH_WINDOW_BLOCKS", defaults.search_window_blocks, int),
            search_max_blocks=_env_number("BLOCK_TRACE_SEARCH_MAX_BLOCKS", defaults.search_max_blocks, int),
            reorg_depth_warning=_env_number("BLOCK_TRACE_REORG_DEPTH_WARNING", defaults.reorg_depth_warning, int),
            log_level=os.getenv("BLOCK_TRACE_LOG_LEVEL", defaults.log_level),
        )

    def validate(self) -> list[str]:
        """Validate settings, return list of errors."""
        errors = []
        if self.max_cache_entries < 1:
            errors.append("max_cache_entries must be at least 1")
        if self.cache_ttl_seconds <= 0:
            errors.append("cache_ttl_seconds must be positive")
        if self.debug_trace_timeout <= 0:
            errors.append("debug_trace_timeout must be positive")
        if self.block_info_timeout <= 0:
            errors.append("block_info_timeout must be positive")
        if self.max_concurrent_requests < 1:
            errors.append("max_concurrent_requests must be at least 1")
        if self.batch_delay_seconds < 0:
            errors.append("batch_delay_seconds cannot be negative")
        if self.search_window_blocks < 0:
            errors.append("search_window_blocks cannot be negative")
        if self.search_max_blocks < 1:
            errors.append("search_max_blocks must be at least 1")
        if self.reorg_depth_warning < 0:
            errors.append("reorg_depth_warning cannot be negative")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            errors.append(f"log_level must be a logging level name, got {self.log_level!r}")
        if not self.trace_config.tracer:
            errors.append("trace_config.tracer cannot be empty")
        return errors

    def validated(self) -> "BlockTraceSettings":
        """Return self, raising ConfigurationError if invalid."""
        errors = self.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))
        return self

    def configure_logging(self) -> None:
        """Apply log_level to root logging."""
        configure_logging(self.log_level)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rpc_url": self.rpc_url,
            "trace_config": self.trace_config.to_rpc(),
            "max_cache_entries": self.max_cache_entries,
            "cache_ttl_seconds": self.cache_ttl_seconds,
            "debug_trace_timeout": self.debug_trace_timeout,
            "block_info_timeout": self.block_info_timeout,
            "max_concurrent_requests": self.max_concurrent_requests,
            "batch_delay_seconds": self.batch_delay_seconds,
            "large_block_threshold": self.large_block_threshold,
            "search_window_blocks": self.search_window_blocks,
            "search_max_blocks": self.search_max_blocks,
            "reorg_depth_warning": self.reorg_depth_warning,
            "log_level": self.log_level,
        }


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default: Any, cast: Callable[[str], Any]) -> Any:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return cast(value.strip())
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be a number, got {value!r}",
            config_key=name,
            original_error=e,
        )


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for scripts embedding this package."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# Default settings instance
_default_settings: Optional[BlockTraceSettings] = None


def get_settings() -> BlockTraceSettings:
    """Get the default settings, loading from the environment once."""
    global _default_settings
    if _default_settings is None:
        _default_settings = BlockTraceSettings.from_env().validated()
    return _default_settings


def set_settings(settings: BlockTraceSettings) -> None:
    """Replace the default settings."""
    global _default_settings
    _default_settings = settings.validated()
