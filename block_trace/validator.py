"""
Trace Validator - Multi-pass validation with heuristic anomaly detection.

Passes (each returns a ValidationResult):
- validate_identifier      syntactic identifier checks
- validate_block_info      block metadata sanity
- validate_trace_data      per-item checks plus aggregate anomalies
- validate_processed_data  structure and cross-consistency of the analysis

Errors are fatal; warnings are advisory. Findings are recorded as
ValidationIssue(code, severity, message, context) records.
"""

import logging
from collections import Counter
from typing import Any, Optional, Sequence, Union

from block_trace.classifier import IdentifierType, classify_identifier, to_block_number
from block_trace.clock import ClockProtocol, get_clock
from block_trace.constants import (
    ADDRESS_PATTERN,
    CONTRACT_ADDRESS_MESSAGE,
    CONTRACT_CONCENTRATION_THRESHOLD,
    FAILURE_RATE_THRESHOLD,
    GAS_TOLERANCE,
    GENESIS_TIMESTAMP,
    HASH_PATTERN,
    HIGH_GAS_MULTIPLIER,
    MAX_PLAUSIBLE_TX_GAS,
    MAX_PLAUSIBLE_VALUE_WEI,
    SUSPICIOUS_BLOCK_NUMBER,
    get_contract_name,
    is_recognized_contract,
)
from block_trace.models import (
    BlockInfo,
    ProcessedTraceAnalysis,
    RawTraceItem,
    ValidationReport,
    ValidationResult,
    ValidationSection,
    ValidationStatus,
    parse_quantity,
)


logger = logging.getLogger(__name__)


# Allowed clock skew for block timestamps
FUTURE_TIMESTAMP_TOLERANCE = 3600

# Only the first few transaction summaries are checked field by field
PROCESSED_SAMPLE_SIZE = 10


class TraceValidator:
    """Validates identifiers, block metadata, raw traces and analyses."""

    def __init__(self, clock: Optional[ClockProtocol] = None) -> None:
        self._clock = clock if clock is not None else get_clock()

    # ─────────────────────────────────────────────────────────────
    # Identifier
    # ─────────────────────────────────────────────────────────────

    def validate_identifier(self, identifier: Any) -> ValidationResult:
        result = ValidationResult()
        kind = classify_identifier(identifier)

        if isinstance(identifier, str) and not identifier.strip():
            result.add_error("empty_identifier", "Block identifier cannot be empty")
            return result

        if kind is IdentifierType.INVALID:
            if isinstance(identifier, (str, int)) and not isinstance(identifier, bool):
                result.add_error(
                    "invalid_identifier_format",
                    f"Invalid block identifier format: {identifier}",
                    identifier=str(identifier),
                )
            else:
                result.add_error(
                    "invalid_identifier_type",
                    f"Block identifier must be string or number, got {type(identifier).__name__}",
                )
            return result

        if kind is IdentifierType.CONTRACT_ADDRESS:
            result.add_error(
                "contract_address",
                CONTRACT_ADDRESS_MESSAGE.format(identifier=identifier),
                identifier=identifier,
            )
            return result

        if kind in (IdentifierType.BLOCK_NUMBER, IdentifierType.HEX_BLOCK_NUMBER):
            number = to_block_number(identifier)
            if number < 0:
                result.add_error(
                    "negative_block_number",
                    "Block number cannot be negative",
                    number=number,
                )
            elif number > SUSPICIOUS_BLOCK_NUMBER:
                result.add_warning(
                    "block_number_unusually_high",
                    "Block number seems unusually high",
                    number=number,
                )

        return result

    # ─────────────────────────────────────────────────────────────
    # Block info
    # ─────────────────────────────────────────────────────────────

    def validate_block_info(self, block: Union[BlockInfo, dict[str, Any]]) -> ValidationResult:
        result = ValidationResult()
        fields = _block_fields(block)
        if isinstance(block, BlockInfo):
            result.block_info = block

        number = fields.get("number")
        if not isinstance(number, int) or number < 0:
            result.add_error("invalid_block_number", "Invalid block number")

        for key, label in (("hash", "block hash"), ("parent_hash", "parent hash")):
            value = fields.get(key)
            if not value or not isinstance(value, str):
                result.add_error(f"missing_{key}", f"Missing or invalid {label}")
            elif not HASH_PATTERN.match(value):
                result.add_error(f"invalid_{key}_format", f"Invalid {label} format")

        timestamp = fields.get("timestamp")
        if not isinstance(timestamp, int) or timestamp < 0:
            result.add_error("invalid_timestamp", "Invalid timestamp")
        else:
            now = self._clock.timestamp()
            if timestamp > now + FUTURE_TIMESTAMP_TOLERANCE:
                result.add_warning(
                    "timestamp_in_future",
                    "Block timestamp is in the future",
                    timestamp=timestamp,
                )
            if timestamp < GENESIS_TIMESTAMP:
                result.add_warning(
                    "timestamp_before_genesis",
                    "Block timestamp is before Ethereum genesis",
                    timestamp=timestamp,
                )

        transactions = fields.get("transactions")
        if not isinstance(transactions, (list, tuple)):
            result.add_error("invalid_transactions", "Transactions must be an array")
        else:
            count = fields.get("transaction_count", len(transactions))
            if count != len(transactions):
                result.add_warning(
                    "transaction_count_mismatch",
                    f"Transaction count ({count}) doesn't match transactions array length ({len(transactions)})",
                    reported=count,
                    actual=len(transactions),
                )

        for key, label in (("gas_used", "Gas used"), ("gas_limit", "Gas limit")):
            raw = fields.get(key)
            if raw is None:
                continue
            value = parse_quantity(raw)
            if value is None:
                result.add_error(f"invalid_{key}_format", f"Invalid {key} format")
            elif value < 0:
                result.add_error(f"negative_{key}", f"{label} cannot be negative")

        return result

    # ─────────────────────────────────────────────────────────────
    # Raw traces
    # ─────────────────────────────────────────────────────────────

    def validate_trace_data(self, trace_data: Any) -> ValidationResult:
        """
        Validate a block's raw trace array.

        Accepts RawTraceItem instances or untrusted dicts (coerced in
        place of index). Per-item problems are warnings only.
        """
        result = ValidationResult()
        if not isinstance(trace_data, (list, tuple)):
            result.add_error("trace_not_array", "Trace data must be an array")
            return result

        if not trace_data:
            result.add_warning(
                "empty_trace",
                "Trace data is empty - block may have no transactions",
            )
            return result

        items = [
            item if isinstance(item, RawTraceItem) else RawTraceItem.from_rpc(item, index)
            for index, item in enumerate(trace_data)
        ]
        for item in items:
            self._validate_trace_item(item, result)
        self._detect_anomalies(items, result)
        return result

    def _validate_trace_item(self, item: RawTraceItem, result: ValidationResult) -> None:
        i = item.index

        if item.is_placeholder_hash:
            result.add_warning(
                "missing_tx_hash",
                f"Trace item {i} missing or invalid txHash",
                index=i,
            )
        elif not HASH_PATTERN.match(item.tx_hash):
            result.add_warning(
                "invalid_tx_hash_format",
                f"Trace item {i} has invalid txHash format",
                index=i,
            )

        if not item.has_result:
            result.add_warning(
                "missing_result",
                f"Trace item {i} missing or invalid result",
                index=i,
            )
            return

        frame = item.result
        for field_name, value in (("from", frame.from_address), ("to", frame.to_address)):
            if not value:
                result.add_warning(
                    f"missing_{field_name}_address",
                    f"Trace item {i} missing or invalid '{field_name}' address",
                    index=i,
                )
            elif not ADDRESS_PATTERN.match(value):
                result.add_warning(
                    f"invalid_{field_name}_address",
                    f"Trace item {i} has invalid '{field_name}' address format",
                    index=i,
                )

        if frame.gas_used and frame.gas_used.startswith("0x"):
            gas_used = frame.gas_used_int
            if gas_used is None:
                result.add_warning(
                    "invalid_gas_format",
                    f"Trace item {i} has invalid gasUsed format",
                    index=i,
                )
            elif gas_used > MAX_PLAUSIBLE_TX_GAS:
                result.add_warning(
                    "implausible_gas",
                    f"Trace item {i} has unusually high gas usage: {gas_used}",
                    index=i,
                    gas_used=gas_used,
                )

        if frame.value and frame.value.startswith("0x"):
            value = frame.value_int
            if value is None:
                result.add_warning(
                    "invalid_value_format",
                    f"Trace item {i} has invalid value format",
                    index=i,
                )
            elif value > MAX_PLAUSIBLE_VALUE_WEI:
                result.add_warning(
                    "implausible_value",
                    f"Trace item {i} has unusually high value transfer",
                    index=i,
                    value_wei=value,
                )

        if frame.input:
            if not frame.input.startswith("0x"):
                result.add_warning(
                    "input_missing_prefix",
                    f"Trace item {i} input data should start with 0x",
                    index=i,
                )
            elif len(frame.input) > 2 and len(frame.input) % 2 != 0:
                result.add_warning(
                    "input_odd_length",
                    f"Trace item {i} input data has invalid hex length",
                    index=i,
                )

        if frame.malformed_calls:
            result.add_warning(
                "calls_not_array",
                f"Trace item {i} calls should be an array",
                index=i,
            )

    def _detect_anomalies(self, items: Sequence[RawTraceItem], result: ValidationResult) -> None:
        total = len(items)

        failed = sum(1 for item in items if item.failed)
        if failed / total > FAILURE_RATE_THRESHOLD:
            result.add_warning(
                "high_failure_rate",
                f"High failure rate detected: {failed}/{total} traces failed",
                failed=failed,
                total=total,
            )

        gas_values = [g for g in (item.result.gas_used_int for item in items) if g is not None]
        if gas_values:
            mean = sum(gas_values) / len(gas_values)
            high = sum(1 for g in gas_values if g > mean * HIGH_GAS_MULTIPLIER)
            if high:
                result.add_warning(
                    "high_gas_outliers",
                    f"{high} traces with unusually high gas usage detected",
                    count=high,
                    mean_gas=mean,
                )

        placeholders = sum(1 for item in items if item.is_placeholder_hash)
        if placeholders:
            result.add_warning(
                "placeholder_hashes",
                f"{placeholders} traces missing proper transaction hashes",
                count=placeholders,
            )

        targets = Counter(
            item.result.to_address.lower()
            for item in items
            if item.result.to_address and is_recognized_contract(item.result.to_address)
        )
        for address, count in targets.items():
            if count > total * CONTRACT_CONCENTRATION_THRESHOLD:
                result.add_warning(
                    "contract_concentration",
                    f"Very high {get_contract_name(address)} activity: "
                    f"{count}/{total} traces involve {address}",
                    address=address,
                    count=count,
                    total=total,
                )

    # ─────────────────────────────────────────────────────────────
    # Processed analysis
    # ─────────────────────────────────────────────────────────────

    def validate_processed_data(
        self,
        analysis: Union[ProcessedTraceAnalysis, dict[str, Any]],
    ) -> ValidationResult:
        """Structural and consistency checks on an analysis or its dict form."""
        result = ValidationResult()
        data = analysis.to_dict() if isinstance(analysis, ProcessedTraceAnalysis) else analysis
        if not isinstance(data, dict):
            result.add_error("processed_not_object", "Processed data must be an object")
            return result

        summary = data.get("summary")
        if not isinstance(summary, dict):
            result.add_error("missing_summary", "Missing summary data")
            summary = None
        else:
            for key in ("total_transactions", "total_gas_used"):
                value = summary.get(key)
                if not _is_count(value):
                    result.add_error(f"invalid_{key}", f"Invalid {key} in summary")

        transactions = data.get("transactions")
        if not isinstance(transactions, list):
            result.add_error("transactions_not_array", "Transactions data must be an array")
            transactions = None
        else:
            for i, tx in enumerate(transactions[:PROCESSED_SAMPLE_SIZE]):
                tx = tx if isinstance(tx, dict) else {}
                if not _is_count(tx.get("tx_index")):
                    result.add_warning("invalid_tx_index", f"Transaction {i} missing valid tx_index", index=i)
                if not tx.get("tx_hash") or not isinstance(tx.get("tx_hash"), str):
                    result.add_warning("invalid_tx_hash", f"Transaction {i} missing valid tx_hash", index=i)
                if not _is_count(tx.get("gas_used")):
                    result.add_warning("invalid_gas_used", f"Transaction {i} has invalid gas_used", index=i)

        for key, label in (("transfers", "Transfers"), ("internal_calls", "Internal calls")):
            if not isinstance(data.get(key), list):
                result.add_error(f"{key}_not_array", f"{label} data must be an array")

        if not isinstance(data.get("function_categories"), dict):
            result.add_error("categories_not_object", "Function categories data must be an object")

        if summary is not None and transactions is not None:
            reported = summary.get("total_transactions")
            if reported != len(transactions):
                result.add_warning(
                    "transaction_count_mismatch",
                    f"Summary total_transactions ({reported}) doesn't match "
                    f"transactions array length ({len(transactions)})",
                    reported=reported,
                    actual=len(transactions),
                )

            calculated = sum(
                tx.get("gas_used", 0) for tx in transactions
                if isinstance(tx, dict) and _is_count(tx.get("gas_used"))
            )
            reported_gas = summary.get("total_gas_used")
            if _is_count(reported_gas) and abs(reported_gas - calculated) > GAS_TOLERANCE:
                result.add_warning(
                    "gas_total_mismatch",
                    f"Summary total_gas_used ({reported_gas}) doesn't match calculated gas ({calculated})",
                    reported=reported_gas,
                    calculated=calculated,
                )

        return result

    # ─────────────────────────────────────────────────────────────
    # Report
    # ─────────────────────────────────────────────────────────────

    def generate_validation_report(
        self,
        block_identifier: Any,
        block_info: Optional[Union[BlockInfo, dict[str, Any]]] = None,
        trace_data: Optional[Sequence[Any]] = None,
        processed: Optional[Union[ProcessedTraceAnalysis, dict[str, Any]]] = None,
    ) -> ValidationReport:
        """Compose every available pass into one report."""
        passes: list[tuple[str, ValidationResult]] = [
            ("Block Identifier", self.validate_identifier(block_identifier)),
        ]
        if block_info is not None:
            passes.append(("Block Information", self.validate_block_info(block_info)))
        if trace_data is not None:
            passes.append(("Trace Data", self.validate_trace_data(trace_data)))
        if processed is not None:
            passes.append(("Processed Data", self.validate_processed_data(processed)))

        details = [
            ValidationSection(
                category=category,
                status=outcome.status,
                messages=outcome.errors + outcome.warnings,
            )
            for category, outcome in passes
        ]

        statuses = {d.status for d in details}
        if ValidationStatus.ERROR in statuses:
            overall = ValidationStatus.ERROR
            summary = "Validation failed with errors"
        elif ValidationStatus.WARNING in statuses:
            overall = ValidationStatus.WARNING
            summary = "Validation passed with warnings"
        else:
            overall = ValidationStatus.VALID
            summary = "All validations passed"

        return ValidationReport(overall=overall, summary=summary, details=details)


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _block_fields(block: Union[BlockInfo, dict[str, Any]]) -> dict[str, Any]:
    """Normalize a BlockInfo or loose dict to snake_case fields."""
    if isinstance(block, BlockInfo):
        return block.to_dict()
    if not isinstance(block, dict):
        return {}
    fields = {
        "number": parse_quantity(block.get("number")) if isinstance(block.get("number"), str) else block.get("number"),
        "hash": block.get("hash"),
        "parent_hash": block.get("parent_hash", block.get("parentHash")),
        "timestamp": parse_quantity(block.get("timestamp")) if isinstance(block.get("timestamp"), str) else block.get("timestamp"),
        "gas_used": block.get("gas_used", block.get("gasUsed")),
        "gas_limit": block.get("gas_limit", block.get("gasLimit")),
        "transactions": block.get("transactions"),
    }
    count = block.get("transaction_count", block.get("transactionCount"))
    if count is not None:
        fields["transaction_count"] = count
    return fields
