"""
Block Trace Data Models.

Two families of types live here:

- Raw shapes (RawTraceItem, CallFrame) built from untrusted node JSON.
  Fields keep their wire representation so the validator can check
  formats; coercion never raises.
- Internal shapes (BlockInfo, ProcessedTraceAnalysis and friends) that
  downstream code consumes after validation.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, TYPE_CHECKING

from block_trace.constants import PLACEHOLDER_HASH_PREFIX

if TYPE_CHECKING:
    from block_trace.exceptions import ServiceError


def parse_quantity(value: Any) -> Optional[int]:
    """
    Parse a JSON-RPC quantity (hex string, decimal string or int).

    Returns None when the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if text.lower().startswith("0x"):
                return int(text, 16) if len(text) > 2 else 0
            return int(text, 10)
        except ValueError:
            return None
    return None


# ============================================================
# BLOCKS
# ============================================================

@dataclass(frozen=True)
class BlockInfo:
    """Block metadata. transaction_count is derived from transactions."""
    number: int
    hash: str
    parent_hash: str
    timestamp: int
    gas_used: int
    gas_limit: int
    transactions: tuple[str, ...] = ()

    @property
    def transaction_count(self) -> int:
        return len(self.transactions)

    @classmethod
    def from_rpc(cls, block: dict[str, Any]) -> "BlockInfo":
        """Build from an eth_getBlockBy* result object."""
        transactions = []
        for tx in block.get("transactions") or []:
            # Full transaction objects when includeTransactions=true
            if isinstance(tx, dict):
                transactions.append(tx.get("hash", ""))
            else:
                transactions.append(tx)
        return cls(
            number=parse_quantity(block.get("number")) or 0,
            hash=block.get("hash") or "",
            parent_hash=block.get("parentHash") or "",
            timestamp=parse_quantity(block.get("timestamp")) or 0,
            gas_used=parse_quantity(block.get("gasUsed")) or 0,
            gas_limit=parse_quantity(block.get("gasLimit")) or 0,
            transactions=tuple(transactions),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "hash": self.hash,
            "parent_hash": self.parent_hash,
            "timestamp": self.timestamp,
            "gas_used": self.gas_used,
            "gas_limit": self.gas_limit,
            "transactions": list(self.transactions),
            "transaction_count": self.transaction_count,
        }


@dataclass(frozen=True)
class BlockRange:
    """Endpoints of a block range plus derived totals."""
    start: BlockInfo
    end: BlockInfo
    total_blocks: int
    total_transactions: int


@dataclass(frozen=True)
class BlockStatistics:
    block_info: BlockInfo
    average_gas_per_transaction: float
    gas_utilization: float
    transaction_density: str


@dataclass
class BlockSearchCriteria:
    """Filter for BlockInfoResolver.search_blocks."""
    min_transactions: int = 0
    max_transactions: Optional[int] = None
    start_block: Optional[int] = None
    end_block: Optional[int] = None
    limit: int = 10

    def matches(self, block: BlockInfo) -> bool:
        if block.transaction_count < self.min_transactions:
            return False
        if self.max_transactions is not None and block.transaction_count > self.max_transactions:
            return False
        return True


@dataclass(frozen=True)
class NetworkInfo:
    name: str
    chain_id: int


# ============================================================
# RAW TRACES
# ============================================================

@dataclass(frozen=True)
class CallFrame:
    """One frame of a callTracer result. Field values are wire strings."""
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    value: Optional[str] = None
    gas_used: Optional[str] = None
    input: Optional[str] = None
    call_type: Optional[str] = None
    error: Optional[str] = None
    calls: tuple["CallFrame", ...] = ()
    malformed_calls: bool = False

    @property
    def gas_used_int(self) -> Optional[int]:
        return parse_quantity(self.gas_used)

    @property
    def value_int(self) -> Optional[int]:
        return parse_quantity(self.value)

    @classmethod
    def from_rpc(cls, data: Any) -> "CallFrame":
        """
        Coerce an untrusted call object. Never raises.

        Frames are built children-first from an explicit stack, so call
        trees as deep as the EVM allows do not hit the recursion limit.
        """
        if not isinstance(data, dict):
            return cls()

        built: dict[int, CallFrame] = {}
        stack: list[tuple[dict[str, Any], bool]] = [(data, False)]
        while stack:
            node, children_ready = stack.pop()
            raw_calls = node.get("calls")
            children = raw_calls if isinstance(raw_calls, list) else []
            if not children_ready:
                stack.append((node, True))
                stack.extend((c, False) for c in children if isinstance(c, dict))
                continue

            calls = tuple(built[id(c)] if isinstance(c, dict) else cls() for c in children)
            error = node.get("error")
            built[id(node)] = cls(
                from_address=_optional_str(node.get("from")),
                to_address=_optional_str(node.get("to")),
                value=_optional_str(node.get("value")),
                gas_used=_optional_str(node.get("gasUsed")),
                input=_optional_str(node.get("input")),
                call_type=_optional_str(node.get("type")),
                error=str(error) if error else None,
                calls=calls,
                malformed_calls=raw_calls is not None and not isinstance(raw_calls, list),
            )
        return built[id(data)]

    def _own_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "from": self.from_address,
            "to": self.to_address,
            "value": self.value,
            "gasUsed": self.gas_used,
            "input": self.input,
            "type": self.call_type,
        }
        if self.error:
            data["error"] = self.error
        return data

    def to_dict(self) -> dict[str, Any]:
        root = self._own_dict()
        stack = [(self, root)]
        while stack:
            frame, data = stack.pop()
            if frame.calls:
                children = [c._own_dict() for c in frame.calls]
                data["calls"] = children
                stack.extend(zip(frame.calls, children))
        return root


@dataclass(frozen=True)
class RawTraceItem:
    """One transaction's trace as returned by debug_traceBlock*."""
    tx_hash: str
    result: CallFrame
    error: Optional[str] = None
    index: int = 0
    has_result: bool = True

    @property
    def is_placeholder_hash(self) -> bool:
        return self.tx_hash == f"{PLACEHOLDER_HASH_PREFIX}{self.index}"

    @property
    def failed(self) -> bool:
        return bool(self.error or self.result.error)

    @classmethod
    def from_rpc(cls, data: Any, index: int) -> "RawTraceItem":
        """
        Coerce an untrusted trace item.

        Missing or non-string hashes get a tx_<index> placeholder so one
        malformed item cannot abort the whole block.
        """
        if not isinstance(data, dict):
            return cls(
                tx_hash=f"{PLACEHOLDER_HASH_PREFIX}{index}",
                result=CallFrame(),
                error=f"Malformed trace item of type {type(data).__name__}",
                index=index,
                has_result=False,
            )

        tx_hash = data.get("txHash")
        if not isinstance(tx_hash, str) or not tx_hash:
            tx_hash = f"{PLACEHOLDER_HASH_PREFIX}{index}"

        raw_result = data.get("result")
        error = data.get("error")
        return cls(
            tx_hash=tx_hash,
            result=CallFrame.from_rpc(raw_result),
            error=str(error) if error else None,
            index=index,
            has_result=isinstance(raw_result, dict),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"txHash": self.tx_hash, "result": self.result.to_dict()}
        if self.error:
            data["error"] = self.error
        return data


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


# ============================================================
# VALIDATION
# ============================================================

class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"


class ValidationStatus(Enum):
    VALID = "valid"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class ValidationIssue:
    """A structured validation finding. Rendered to text only at the edge."""
    code: str
    severity: Severity
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    def render(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "severity": self.severity.value,
            "message": self.message,
            "context": self.context,
        }


@dataclass
class ValidationResult:
    """Outcome of one validation pass."""
    issues: list[ValidationIssue] = field(default_factory=list)
    block_info: Optional[BlockInfo] = None

    @property
    def is_valid(self) -> bool:
        return not any(i.severity is Severity.ERROR for i in self.issues)

    @property
    def errors(self) -> list[str]:
        return [i.render() for i in self.issues if i.severity is Severity.ERROR]

    @property
    def warnings(self) -> list[str]:
        return [i.render() for i in self.issues if i.severity is Severity.WARNING]

    @property
    def status(self) -> ValidationStatus:
        if not self.is_valid:
            return ValidationStatus.ERROR
        if self.warnings:
            return ValidationStatus.WARNING
        return ValidationStatus.VALID

    def codes(self) -> list[str]:
        return [i.code for i in self.issues]

    def add_error(self, code: str, message: str, **context: Any) -> None:
        self.issues.append(ValidationIssue(code, Severity.ERROR, message, context))

    def add_warning(self, code: str, message: str, **context: Any) -> None:
        self.issues.append(ValidationIssue(code, Severity.WARNING, message, context))

    def extend(self, other: "ValidationResult") -> None:
        self.issues.extend(other.issues)
        if other.block_info is not None:
            self.block_info = other.block_info

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "block_info": self.block_info.to_dict() if self.block_info else None,
        }


@dataclass(frozen=True)
class ValidationSection:
    category: str
    status: ValidationStatus
    messages: list[str]


@dataclass(frozen=True)
class ValidationReport:
    overall: ValidationStatus
    summary: str
    details: list[ValidationSection]

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall.value,
            "summary": self.summary,
            "details": [
                {"category": d.category, "status": d.status.value, "messages": d.messages}
                for d in self.details
            ],
        }


# ============================================================
# PROCESSED ANALYSIS
# ============================================================

@dataclass
class TransactionSummary:
    tx_index: int
    tx_hash: str
    from_address: str
    to_address: str
    value_wei: int
    value_eth: str
    gas_used: int
    failed: bool
    error: Optional[str] = None
    recognized_contract: bool = False
    function_name: Optional[str] = None
    function_category: str = "other"
    token_transfer_value: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_index": self.tx_index,
            "tx_hash": self.tx_hash,
            "from": self.from_address,
            "to": self.to_address,
            "value_wei": str(self.value_wei),
            "value_eth": self.value_eth,
            "gas_used": self.gas_used,
            "failed": self.failed,
            "error": self.error,
            "recognized_contract": self.recognized_contract,
            "function_name": self.function_name,
            "function_category": self.function_category,
            "token_transfer_value": str(self.token_transfer_value),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransactionSummary":
        return cls(
            tx_index=data["tx_index"],
            tx_hash=data["tx_hash"],
            from_address=data["from"],
            to_address=data["to"],
            value_wei=int(data.get("value_wei", "0")),
            value_eth=data.get("value_eth", "0 ETH"),
            gas_used=data["gas_used"],
            failed=data["failed"],
            error=data.get("error"),
            recognized_contract=data.get("recognized_contract", False),
            function_name=data.get("function_name"),
            function_category=data.get("function_category", "other"),
            token_transfer_value=int(data.get("token_transfer_value", "0")),
        )


@dataclass
class InternalCall:
    tx_hash: str
    from_address: str
    to_address: str
    contract_name: str
    function_name: str
    call_type: str
    gas_used: int
    depth: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "from": self.from_address,
            "to": self.to_address,
            "contract_name": self.contract_name,
            "function": self.function_name,
            "call_type": self.call_type,
            "gas_used": self.gas_used,
            "depth": self.depth,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InternalCall":
        return cls(
            tx_hash=data["tx_hash"],
            from_address=data["from"],
            to_address=data["to"],
            contract_name=data.get("contract_name", "Unknown Contract"),
            function_name=data.get("function", "Unknown"),
            call_type=data.get("call_type", "CALL"),
            gas_used=data.get("gas_used", 0),
            depth=data.get("depth", 0),
        )


@dataclass
class TransferRecord:
    """A value movement: native (asset="ETH") or a recognized token."""
    tx_hash: str
    from_address: str
    to_address: str
    value: int
    asset: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "from": self.from_address,
            "to": self.to_address,
            "value": str(self.value),
            "asset": self.asset,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransferRecord":
        return cls(
            tx_hash=data["tx_hash"],
            from_address=data["from"],
            to_address=data["to"],
            value=int(data["value"]),
            asset=data.get("asset", "ETH"),
        )


@dataclass
class AnalysisSummary:
    block_identifier: str
    total_transactions: int
    total_gas_used: int
    failed_traces_count: int
    recognized_interactions_count: int
    token_transfer_count: int
    internal_calls_count: int
    native_value_wei: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "block_identifier": self.block_identifier,
            "total_transactions": self.total_transactions,
            "total_gas_used": self.total_gas_used,
            "failed_traces_count": self.failed_traces_count,
            "recognized_interactions_count": self.recognized_interactions_count,
            "token_transfer_count": self.token_transfer_count,
            "internal_calls_count": self.internal_calls_count,
            "native_value_wei": str(self.native_value_wei),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnalysisSummary":
        return cls(
            block_identifier=data["block_identifier"],
            total_transactions=data["total_transactions"],
            total_gas_used=data["total_gas_used"],
            failed_traces_count=data.get("failed_traces_count", 0),
            recognized_interactions_count=data.get("recognized_interactions_count", 0),
            token_transfer_count=data.get("token_transfer_count", 0),
            internal_calls_count=data.get("internal_calls_count", 0),
            native_value_wei=int(data.get("native_value_wei", "0")),
        )


@dataclass
class ProcessedTraceAnalysis:
    """
    Aggregated, validated output for one block.

    Owned by the cache once stored; replaced, never mutated in place.
    """
    summary: AnalysisSummary
    transactions: list[TransactionSummary] = field(default_factory=list)
    internal_calls: list[InternalCall] = field(default_factory=list)
    transfers: list[TransferRecord] = field(default_factory=list)
    function_categories: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "transactions": [t.to_dict() for t in self.transactions],
            "internal_calls": [c.to_dict() for c in self.internal_calls],
            "transfers": [t.to_dict() for t in self.transfers],
            "function_categories": dict(self.function_categories),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProcessedTraceAnalysis":
        return cls(
            summary=AnalysisSummary.from_dict(data["summary"]),
            transactions=[TransactionSummary.from_dict(t) for t in data.get("transactions", [])],
            internal_calls=[InternalCall.from_dict(c) for c in data.get("internal_calls", [])],
            transfers=[TransferRecord.from_dict(t) for t in data.get("transfers", [])],
            function_categories=dict(data.get("function_categories", {})),
        )


# ============================================================
# CACHE
# ============================================================

@dataclass
class CacheEntry:
    """Cache slot. Timestamps are Unix seconds from the cache's clock."""
    key: str
    analysis: ProcessedTraceAnalysis
    created_at: float
    expires_at: float
    last_accessed: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def age_seconds(self, now: float) -> float:
        return now - self.created_at


@dataclass(frozen=True)
class CacheStats:
    size: int
    max_size: int
    hits: int
    misses: int
    hit_rate: float
    entries: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hit_rate,
            "entries": self.entries,
        }


@dataclass(frozen=True)
class MemoryUsage:
    estimated_size_bytes: int
    entries_count: int
    average_size_per_entry: int


# ============================================================
# ORCHESTRATION
# ============================================================

class TraceStage(Enum):
    """Stages of a single trace request."""
    IDLE = "idle"
    VALIDATING = "validating"
    FETCHING = "fetching"
    VALIDATING_RAW = "validating_raw"
    PROCESSING = "processing"
    CACHING = "caching"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class ProcessingEstimate:
    estimated_seconds: int
    category: str
    warning: Optional[str] = None
    block_info: Optional[BlockInfo] = None


@dataclass
class TraceResult:
    """What trace_block hands back to the caller."""
    analysis: ProcessedTraceAnalysis
    block_info: BlockInfo
    processing_time: float
    from_cache: bool = False
    gas_analysis: Optional[Any] = None
    warnings: list[str] = field(default_factory=list)
    stage: TraceStage = TraceStage.COMPLETED
    completed_at: Optional[datetime] = None


@dataclass
class BatchTraceResult:
    """One entry per input identifier, in input order."""
    block_identifier: Any
    result: Optional[TraceResult] = None
    error: Optional["ServiceError"] = None

    @property
    def ok(self) -> bool:
        return self.result is not None and self.error is None
