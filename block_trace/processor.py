"""
Trace Processing - Turn validated raw traces into a ProcessedTraceAnalysis.

TraceProcessor and GasAnalyzer are the collaborator seams used by the
orchestrator. CallTraceProcessor and BlockGasAnalyzer are the default
implementations for callTracer output.
"""

import logging
import math
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Sequence

from block_trace.constants import (
    FUNCTION_CATEGORIES,
    get_contract_name,
    get_function_info,
    is_recognized_contract,
)
from block_trace.models import (
    AnalysisSummary,
    CallFrame,
    InternalCall,
    ProcessedTraceAnalysis,
    RawTraceItem,
    TransactionSummary,
    TransferRecord,
)


logger = logging.getLogger(__name__)


WEI_PER_ETH = 10**18
WEI_PER_GWEI = 10**9

SELECTOR_LENGTH = 10  # "0x" + 8 hex chars
WORD_LENGTH = 64


def format_eth(value_wei: int) -> str:
    """Render a wei amount as an ETH string without trailing zeros."""
    return f"{Decimal(value_wei).scaleb(-18).normalize():f} ETH"


def decode_transfer(input_data: str) -> Optional[tuple[str, int]]:
    """Decode (recipient, amount) from transfer(address,uint256) calldata."""
    start = SELECTOR_LENGTH
    if len(input_data) < start + 2 * WORD_LENGTH:
        return None
    recipient = "0x" + input_data[start + 24:start + WORD_LENGTH]
    try:
        amount = int(input_data[start + WORD_LENGTH:start + 2 * WORD_LENGTH], 16)
    except ValueError:
        return None
    return recipient.lower(), amount


class TraceProcessor(ABC):
    """Builds a ProcessedTraceAnalysis from raw trace items."""

    @abstractmethod
    def process(
        self,
        trace_items: Sequence[RawTraceItem],
        block_identifier: str,
    ) -> ProcessedTraceAnalysis:
        pass


class CallTraceProcessor(TraceProcessor):
    """Default processor for callTracer results."""

    def process(
        self,
        trace_items: Sequence[RawTraceItem],
        block_identifier: str,
    ) -> ProcessedTraceAnalysis:
        logger.info(f"[processor] Processing {len(trace_items)} traces from block {block_identifier}")

        categories = {category: 0 for category in FUNCTION_CATEGORIES}
        transactions: list[TransactionSummary] = []
        internal_calls: list[InternalCall] = []
        transfers: list[TransferRecord] = []

        for item in trace_items:
            summary = self._summarize(item, categories, transfers)
            transactions.append(summary)
            self._collect_internal_calls(item.result.calls, item.tx_hash, internal_calls, item.result.from_address)

        analysis_summary = AnalysisSummary(
            block_identifier=block_identifier,
            total_transactions=len(trace_items),
            total_gas_used=sum(tx.gas_used for tx in transactions),
            failed_traces_count=sum(1 for tx in transactions if tx.failed),
            recognized_interactions_count=sum(1 for tx in transactions if tx.recognized_contract),
            token_transfer_count=sum(1 for t in transfers if t.asset != "ETH"),
            internal_calls_count=len(internal_calls),
            native_value_wei=sum(tx.value_wei for tx in transactions),
        )
        return ProcessedTraceAnalysis(
            summary=analysis_summary,
            transactions=transactions,
            internal_calls=internal_calls,
            transfers=transfers,
            function_categories=categories,
        )

    def _summarize(
        self,
        item: RawTraceItem,
        categories: dict[str, int],
        transfers: list[TransferRecord],
    ) -> TransactionSummary:
        frame = item.result
        from_address = frame.from_address or "N/A"
        to_address = frame.to_address or "N/A"
        value_wei = frame.value_int or 0
        input_data = frame.input or "0x"

        summary = TransactionSummary(
            tx_index=item.index,
            tx_hash=item.tx_hash,
            from_address=from_address,
            to_address=to_address,
            value_wei=value_wei,
            value_eth=format_eth(value_wei),
            gas_used=frame.gas_used_int or 0,
            failed=item.failed,
            error=item.error or frame.error,
        )

        if value_wei > 0:
            transfers.append(TransferRecord(item.tx_hash, from_address, to_address, value_wei, "ETH"))

        if is_recognized_contract(to_address):
            summary.recognized_contract = True
            if len(input_data) >= SELECTOR_LENGTH:
                selector = input_data[:SELECTOR_LENGTH]
                name, category = get_function_info(selector)
                summary.function_name = name
                summary.function_category = category
                categories[category] = categories.get(category, 0) + 1

                if name == "transfer":
                    decoded = decode_transfer(input_data)
                    if decoded is not None:
                        recipient, amount = decoded
                        summary.token_transfer_value = amount
                        transfers.append(TransferRecord(
                            item.tx_hash,
                            from_address,
                            recipient,
                            amount,
                            get_contract_name(to_address),
                        ))
        elif _calls_recognized_contract(frame.calls):
            summary.recognized_contract = True

        return summary

    def _collect_internal_calls(
        self,
        calls: Sequence[CallFrame],
        tx_hash: str,
        out: list[InternalCall],
        parent_from: Optional[str],
    ) -> None:
        """Append recognized-contract calls in pre-order using an explicit stack."""
        stack = [(call, 0, parent_from) for call in reversed(calls)]
        while stack:
            call, depth, inherited_from = stack.pop()
            call_from = call.from_address or inherited_from or ""
            call_to = call.to_address or ""
            if is_recognized_contract(call_to):
                function_name = "Unknown"
                if call.input and len(call.input) >= SELECTOR_LENGTH:
                    function_name = get_function_info(call.input[:SELECTOR_LENGTH])[0]
                out.append(InternalCall(
                    tx_hash=tx_hash,
                    from_address=call_from,
                    to_address=call_to,
                    contract_name=get_contract_name(call_to),
                    function_name=function_name,
                    call_type=call.call_type or "CALL",
                    gas_used=call.gas_used_int or 0,
                    depth=depth,
                ))
            stack.extend((child, depth + 1, call_from) for child in reversed(call.calls))


def _calls_recognized_contract(calls: Sequence[CallFrame]) -> bool:
    stack = list(calls)
    while stack:
        call = stack.pop()
        if call.to_address and is_recognized_contract(call.to_address):
            return True
        stack.extend(call.calls)
    return False


# ============================================================
# GAS ANALYSIS
# ============================================================

@dataclass
class CategoryGas:
    total_gas: int = 0
    count: int = 0

    @property
    def average_gas(self) -> float:
        return self.total_gas / self.count if self.count else 0.0


@dataclass
class GasCostAnalysis:
    gas_price_gwei: float
    total_cost_wei: int
    total_cost_eth: float
    average_cost_per_transaction_eth: float
    recognized_transactions_cost_eth: float
    regular_transactions_cost_eth: float


@dataclass
class GasAnalysisResult:
    total_gas_used: int
    average_gas_per_transaction: float
    gas_efficiency: float
    high_gas_transactions: list[TransactionSummary]
    gas_by_category: dict[str, CategoryGas]
    cost: GasCostAnalysis
    suggestions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_gas_used": self.total_gas_used,
            "average_gas_per_transaction": self.average_gas_per_transaction,
            "gas_efficiency": self.gas_efficiency,
            "high_gas_transactions": [tx.to_dict() for tx in self.high_gas_transactions],
            "gas_by_category": {
                name: {"total_gas": c.total_gas, "count": c.count, "average_gas": c.average_gas}
                for name, c in self.gas_by_category.items()
            },
            "cost": {
                "gas_price_gwei": self.cost.gas_price_gwei,
                "total_cost_wei": str(self.cost.total_cost_wei),
                "total_cost_eth": self.cost.total_cost_eth,
                "average_cost_per_transaction_eth": self.cost.average_cost_per_transaction_eth,
                "recognized_transactions_cost_eth": self.cost.recognized_transactions_cost_eth,
                "regular_transactions_cost_eth": self.cost.regular_transactions_cost_eth,
            },
            "suggestions": self.suggestions,
        }


class GasAnalyzer(ABC):
    """Computes an auxiliary gas-cost analysis for a processed block."""

    @abstractmethod
    def analyze(
        self,
        analysis: ProcessedTraceAnalysis,
        gas_price_gwei: float = 20.0,
    ) -> GasAnalysisResult:
        pass


class BlockGasAnalyzer(GasAnalyzer):
    """Default gas analyzer."""

    HIGH_GAS_FACTOR = 2
    MAX_HIGH_GAS_TRANSACTIONS = 10
    DEEP_CALL_DEPTH = 3
    HIGH_AVERAGE_GAS = 100_000
    VARIANCE_RATIO = 0.3

    def analyze(
        self,
        analysis: ProcessedTraceAnalysis,
        gas_price_gwei: float = 20.0,
    ) -> GasAnalysisResult:
        transactions = analysis.transactions
        total = sum(tx.gas_used for tx in transactions)
        average = total / len(transactions) if transactions else 0.0
        successful = [tx for tx in transactions if not tx.failed]
        efficiency = total / len(successful) if successful else 0.0

        threshold = average * self.HIGH_GAS_FACTOR
        high_gas = sorted(
            (tx for tx in transactions if tx.gas_used > threshold),
            key=lambda tx: tx.gas_used,
            reverse=True,
        )[:self.MAX_HIGH_GAS_TRANSACTIONS]

        return GasAnalysisResult(
            total_gas_used=total,
            average_gas_per_transaction=average,
            gas_efficiency=efficiency,
            high_gas_transactions=high_gas,
            gas_by_category=self._by_category(analysis),
            cost=self._cost(transactions, gas_price_gwei),
            suggestions=self._suggestions(analysis, average),
        )

    def _by_category(self, analysis: ProcessedTraceAnalysis) -> dict[str, CategoryGas]:
        stats: dict[str, CategoryGas] = defaultdict(CategoryGas)
        for tx in analysis.transactions:
            if tx.recognized_contract and tx.function_name:
                category = f"{tx.function_category.replace('_', ' ')}: {tx.function_name}"
            elif tx.recognized_contract:
                category = "Recognized contract"
            else:
                category = "Regular transaction"
            if tx.failed:
                category += " (failed)"
            stats[category].total_gas += tx.gas_used
            stats[category].count += 1

        for call in analysis.internal_calls:
            entry = stats[f"Internal: {call.function_name}"]
            entry.total_gas += call.gas_used
            entry.count += 1
        return dict(stats)

    def _cost(self, transactions: Sequence[TransactionSummary], gas_price_gwei: float) -> GasCostAnalysis:
        gas_price_wei = int(gas_price_gwei * WEI_PER_GWEI)
        recognized_gas = sum(tx.gas_used for tx in transactions if tx.recognized_contract)
        regular_gas = sum(tx.gas_used for tx in transactions if not tx.recognized_contract)
        total_wei = (recognized_gas + regular_gas) * gas_price_wei
        total_eth = total_wei / WEI_PER_ETH
        return GasCostAnalysis(
            gas_price_gwei=gas_price_gwei,
            total_cost_wei=total_wei,
            total_cost_eth=total_eth,
            average_cost_per_transaction_eth=total_eth / len(transactions) if transactions else 0.0,
            recognized_transactions_cost_eth=recognized_gas * gas_price_wei / WEI_PER_ETH,
            regular_transactions_cost_eth=regular_gas * gas_price_wei / WEI_PER_ETH,
        )

    def _suggestions(self, analysis: ProcessedTraceAnalysis, average: float) -> list[str]:
        transactions = analysis.transactions
        suggestions = []

        failed = [tx for tx in transactions if tx.failed]
        if failed:
            wasted = sum(tx.gas_used for tx in failed)
            suggestions.append(
                f"{len(failed)} failed transactions wasted {wasted:,} gas. "
                f"Consider better error handling and gas estimation."
            )

        heavy_recognized = [
            tx for tx in transactions
            if tx.recognized_contract and tx.gas_used > average * 1.5
        ]
        if heavy_recognized:
            suggestions.append(
                f"{len(heavy_recognized)} recognized-contract transactions used above-average gas. "
                f"Consider batching contract interactions."
            )

        deep = [c for c in analysis.internal_calls if c.depth > self.DEEP_CALL_DEPTH]
        if deep:
            suggestions.append(
                f"{len(deep)} internal calls with depth > {self.DEEP_CALL_DEPTH} detected. "
                f"Deep call stacks can be gas-inefficient."
            )

        by_function: dict[str, list[int]] = defaultdict(list)
        for tx in transactions:
            if tx.recognized_contract and tx.function_name:
                by_function[tx.function_name].append(tx.gas_used)
        for name, usages in by_function.items():
            if len(usages) < 2:
                continue
            mean = sum(usages) / len(usages)
            std_dev = math.sqrt(sum((g - mean) ** 2 for g in usages) / len(usages))
            if std_dev > mean * self.VARIANCE_RATIO:
                suggestions.append(
                    f"High variance in gas usage for {name} (avg: {mean:.0f}, std dev: {std_dev:.0f}). "
                    f"Different execution paths may be involved."
                )

        if average > self.HIGH_AVERAGE_GAS:
            suggestions.append("Average gas usage is high. Consider storage and data-structure optimizations.")

        return suggestions
