"""
Block Trace Exceptions - Tagged error hierarchy.

BlockTraceError (base)
├── ConfigurationError
└── ServiceError            (tagged with ErrorType)
    ├── NetworkError        network_error
    ├── RPCError            rpc_error
    ├── ParsingError        parsing_error
    └── IdentifierValidationError   validation_error

Every ServiceError carries the offending block identifier and a list
of remediation suggestions for the user.
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ErrorType(Enum):
    """Failure taxonomy for trace acquisition."""
    NETWORK_ERROR = "network_error"
    RPC_ERROR = "rpc_error"
    PARSING_ERROR = "parsing_error"
    VALIDATION_ERROR = "validation_error"


class BlockTraceError(Exception):
    """Base exception for all block trace errors."""

    def __init__(
        self,
        message: str,
        original_error: Optional[BaseException] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.original_error = original_error
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "original_error": str(self.original_error) if self.original_error else None,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        parts = [f"{self.__class__.__name__}: {self.message}"]
        if self.original_error:
            parts.append(f"(caused by: {self.original_error})")
        return " ".join(parts)


class ConfigurationError(BlockTraceError):
    """Invalid settings."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, original_error)
        self.config_key = config_key


class ServiceError(BlockTraceError):
    """A tagged, user-facing failure of a trace operation."""

    error_type: ErrorType = ErrorType.RPC_ERROR

    def __init__(
        self,
        message: str,
        block_identifier: Optional[str] = None,
        original_error: Optional[BaseException] = None,
        suggestions: Optional[list[str]] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, original_error, context)
        self.block_identifier = block_identifier
        self.suggestions = list(suggestions or [])

    @property
    def type(self) -> str:
        return self.error_type.value

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "type": self.error_type.value,
            "block_identifier": self.block_identifier,
            "suggestions": self.suggestions,
        })
        return data

    def __str__(self) -> str:
        parts = [f"{self.__class__.__name__}[{self.error_type.value}]: {self.message}"]
        if self.block_identifier:
            parts.append(f"[block={self.block_identifier}]")
        if self.original_error:
            parts.append(f"(caused by: {self.original_error})")
        return " ".join(parts)


class NetworkError(ServiceError):
    """Timeout or connectivity failure."""
    error_type = ErrorType.NETWORK_ERROR


class RPCError(ServiceError):
    """Generic call or provider failure."""
    error_type = ErrorType.RPC_ERROR

    def __init__(
        self,
        message: str,
        block_identifier: Optional[str] = None,
        original_error: Optional[BaseException] = None,
        suggestions: Optional[list[str]] = None,
        context: Optional[dict[str, Any]] = None,
        code: Optional[int] = None,
    ) -> None:
        super().__init__(message, block_identifier, original_error, suggestions, context)
        self.code = code


class ParsingError(ServiceError):
    """Malformed response shape."""
    error_type = ErrorType.PARSING_ERROR


class IdentifierValidationError(ServiceError):
    """Bad identifier, block not found, or semantically invalid input."""
    error_type = ErrorType.VALIDATION_ERROR


# ─────────────────────────────────────────────────────────────
# Error enrichment
# ─────────────────────────────────────────────────────────────

_ERROR_RULES: tuple[tuple[tuple[str, ...], type[ServiceError], tuple[str, ...]], ...] = (
    (
        ("timeout", "timed out"),
        NetworkError,
        (
            "Try a different RPC endpoint",
            "Analyze a smaller block with fewer transactions",
            "Check your network connection",
        ),
    ),
    (
        ("not found", "null"),
        IdentifierValidationError,
        (
            "Verify the block identifier is correct",
            "Check you're connected to the right network",
            "Try using 'latest' for the most recent block",
        ),
    ),
    (
        ("parse", "invalid"),
        ParsingError,
        (
            "The block data may be corrupted",
            "Try a different block",
        ),
    ),
    (
        ("network", "connection"),
        NetworkError,
        (
            "Check your internet connection",
            "Try switching to a different network",
        ),
    ),
)

_DEFAULT_SUGGESTIONS = (
    "Check your network connection",
    "Verify the block identifier is correct",
    "Try a different RPC endpoint",
    "Consider using a smaller block with fewer transactions",
)


def classify_error(
    error: BaseException,
    block_identifier: Any,
    operation: str,
) -> ServiceError:
    """
    Wrap an arbitrary exception into a tagged ServiceError.

    ServiceError instances pass through unchanged. Anything else is
    classified by keywords in its message.

    Args:
        error: The exception to wrap
        block_identifier: Identifier the operation was working on
        operation: Name of the failing operation, used in the message

    Returns:
        A ServiceError subclass instance
    """
    if isinstance(error, ServiceError):
        return error

    identifier = str(block_identifier)
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        detail = "Request timed out"
    else:
        detail = str(error) or error.__class__.__name__
    lowered = detail.lower()

    error_cls: type[ServiceError] = RPCError
    suggestions: tuple[str, ...] = _DEFAULT_SUGGESTIONS
    for keywords, cls, rule_suggestions in _ERROR_RULES:
        if any(keyword in lowered for keyword in keywords):
            error_cls = cls
            suggestions = rule_suggestions
            break

    return error_cls(
        message=f"{operation} failed for block {identifier}: {detail}",
        block_identifier=identifier,
        original_error=error,
        suggestions=list(suggestions),
    )
