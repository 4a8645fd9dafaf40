"""
Shared fixtures for block_trace tests.

FakeNode stands in for an Ethereum JSON-RPC node: it serves blocks and
traces from in-memory dicts and records every call.
"""

import asyncio
from typing import Any, Optional

import pytest

from block_trace.clock import MockClock
from block_trace.config import BlockTraceSettings
from block_trace.constants import RPCMethod
from block_trace.exceptions import RPCError
from block_trace.models import NetworkInfo, RawTraceItem
from block_trace.processor import CallTraceProcessor
from block_trace.provider import ConnectionProvider, RPCSender


SENDER = "0x" + "11" * 20
RECEIVER = "0x" + "22" * 20

# 2024-01-01 00:00:00 UTC, matches MockClock's default start
BASE_TIMESTAMP = 1704067200


def block_hash(number: int) -> str:
    return "0x" + f"{number:064x}"


def tx_hash(block_number: int, index: int) -> str:
    return "0xaa" + f"{block_number * 10_000 + index:062x}"


def make_trace_item(
    index: int,
    block_number: int = 1,
    gas_used: int = 21000,
    error: Optional[str] = None,
    to: str = RECEIVER,
    value: str = "0x0",
    input_data: str = "0x",
    calls: Optional[list[dict[str, Any]]] = None,
) -> dict[str, Any]:
    result: dict[str, Any] = {
        "from": SENDER,
        "to": to,
        "value": value,
        "gas": hex(100_000),
        "gasUsed": hex(gas_used),
        "input": input_data,
        "type": "CALL",
    }
    if calls is not None:
        result["calls"] = calls
    item: dict[str, Any] = {"txHash": tx_hash(block_number, index), "result": result}
    if error:
        item["error"] = error
    return item


def make_block(number: int, tx_count: int = 2, timestamp: int = BASE_TIMESTAMP) -> dict[str, Any]:
    return {
        "number": hex(number),
        "hash": block_hash(number),
        "parentHash": block_hash(number - 1) if number > 0 else "0x" + "0" * 64,
        "timestamp": hex(timestamp),
        "gasUsed": hex(21000 * tx_count),
        "gasLimit": hex(30_000_000),
        "transactions": [tx_hash(number, i) for i in range(tx_count)],
    }


class FakeNode(ConnectionProvider, RPCSender):
    """In-memory JSON-RPC node."""

    def __init__(self, current_block: int = 1000, chain_id: int = 1) -> None:
        self.current_block = current_block
        self.chain_id = chain_id
        self.blocks: dict[int, dict[str, Any]] = {}
        self.traces: dict[int, Any] = {}
        self.trace_failures: dict[int, BaseException] = {}
        self.block_failures: dict[int, BaseException] = {}
        self.delays: dict[str, float] = {}
        self.calls: list[tuple[str, list[Any]]] = []
        self.connected = False

    def add_block(self, number: int, tx_count: int = 2, traces: Optional[list[Any]] = None) -> dict[str, Any]:
        block = make_block(number, tx_count)
        self.blocks[number] = block
        if traces is None:
            traces = [make_trace_item(i, number) for i in range(tx_count)]
        self.traces[number] = traces
        return block

    def calls_to(self, method: str) -> list[list[Any]]:
        return [params for name, params in self.calls if name == method]

    # ConnectionProvider

    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        self.connected = True

    async def get_provider(self) -> "FakeNode":
        if not self.connected:
            await self.connect()
        return self

    async def get_current_block(self) -> int:
        return self.current_block

    async def get_network_info(self) -> NetworkInfo:
        return NetworkInfo(name="mainnet", chain_id=self.chain_id)

    # RPCSender

    def _number_from(self, identifier: str) -> int:
        if identifier in ("latest", "pending", "safe", "finalized"):
            return self.current_block
        if identifier == "earliest":
            return 0
        return int(identifier, 16)

    def _number_for_hash(self, value: str) -> Optional[int]:
        for number, block in self.blocks.items():
            if block["hash"] == value:
                return number
        return None

    async def send(self, method: str, params: list[Any]) -> Any:
        self.calls.append((method, params))
        delay = self.delays.get(method)
        if delay:
            await asyncio.sleep(delay)

        if method == RPCMethod.ETH_GET_BLOCK_BY_NUMBER:
            number = self._number_from(params[0])
            if number in self.block_failures:
                raise self.block_failures[number]
            return self.blocks.get(number)

        if method == RPCMethod.ETH_GET_BLOCK_BY_HASH:
            number = self._number_for_hash(params[0])
            return self.blocks.get(number) if number is not None else None

        if method == RPCMethod.DEBUG_TRACE_BLOCK_BY_NUMBER:
            number = self._number_from(params[0])
            if number in self.trace_failures:
                raise self.trace_failures[number]
            return self.traces.get(number, [])

        if method == RPCMethod.DEBUG_TRACE_BLOCK_BY_HASH:
            number = self._number_for_hash(params[0])
            return self.traces.get(number, []) if number is not None else None

        raise RPCError(f"{method} returned error: the method does not exist", code=-32601)


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    """Mock clock frozen at 2024-01-01 UTC."""
    return MockClock()


@pytest.fixture
def node():
    """Fake node with head at block 1000."""
    return FakeNode()


@pytest.fixture
def settings():
    """Settings with short timeouts and no inter-batch delay."""
    return BlockTraceSettings(
        debug_trace_timeout=1.0,
        block_info_timeout=1.0,
        batch_delay_seconds=0.0,
    )


def make_analysis(block_number: int, tx_count: int = 2, gas_each: int = 21000):
    """Processed analysis built by the default processor from synthetic traces."""
    items = [
        RawTraceItem.from_rpc(make_trace_item(i, block_number, gas_used=gas_each), i)
        for i in range(tx_count)
    ]
    return CallTraceProcessor().process(items, str(block_number))
