"""
Connection Provider - JSON-RPC access to an Ethereum-compatible node.

ConnectionProvider is the narrow collaborator contract the resolver and
fetcher depend on. JsonRpcConnection implements it over aiohttp.

Usage:
    async with JsonRpcConnection("http://localhost:8545") as conn:
        provider = await conn.get_provider()
        block = await provider.send("eth_getBlockByNumber", ["latest", False])
"""

import itertools
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

import aiohttp

from block_trace.constants import CHAIN_NAMES, RPCMethod
from block_trace.exceptions import NetworkError, ParsingError, RPCError
from block_trace.models import NetworkInfo, parse_quantity


logger = logging.getLogger(__name__)


class RPCSender(ABC):
    """Object exposing send(method, params)."""

    @abstractmethod
    async def send(self, method: str, params: list[Any]) -> Any:
        pass


class ConnectionProvider(ABC):
    """Abstract connection manager for a node endpoint."""

    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def get_provider(self) -> RPCSender:
        """Return a connected RPC sender, connecting first if needed."""
        pass

    @abstractmethod
    async def get_current_block(self) -> int:
        pass

    @abstractmethod
    async def get_network_info(self) -> NetworkInfo:
        pass

    async def close(self) -> None:
        """Release resources. Default is a no-op."""
        return None


class JsonRpcConnection(ConnectionProvider, RPCSender):
    """
    aiohttp-backed JSON-RPC 2.0 connection.

    The session is created lazily. A session passed in by the caller is
    never closed by this object.
    """

    DEFAULT_TIMEOUT = 300.0

    def __init__(
        self,
        rpc_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        self._rpc_url = rpc_url
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None
        self._headers = headers or {}
        self._ids = itertools.count(1)
        self._connected = False
        self._network: Optional[NetworkInfo] = None
        self.last_latency_ms: Optional[float] = None

    @property
    def rpc_url(self) -> str:
        return self._rpc_url

    def is_connected(self) -> bool:
        return self._connected and self._session is not None and not self._session.closed

    async def connect(self) -> None:
        """Open the session and verify the endpoint answers eth_chainId."""
        await self._get_session()
        self._network = await self._fetch_network_info()
        self._connected = True
        logger.info(
            f"[rpc] Connected to {self._network.name} "
            f"(chain_id={self._network.chain_id})"
        )

    async def get_provider(self) -> "JsonRpcConnection":
        if not self.is_connected():
            await self.connect()
        return self

    async def get_current_block(self) -> int:
        result = await self.send(RPCMethod.ETH_BLOCK_NUMBER, [])
        number = parse_quantity(result)
        if number is None:
            raise ParsingError(f"Invalid block number in response: {result!r}")
        return number

    async def get_network_info(self) -> NetworkInfo:
        if self._network is None:
            self._network = await self._fetch_network_info()
        return self._network

    async def _fetch_network_info(self) -> NetworkInfo:
        result = await self.send(RPCMethod.ETH_CHAIN_ID, [])
        chain_id = parse_quantity(result)
        if chain_id is None:
            raise ParsingError(f"Invalid chain id in response: {result!r}")
        return NetworkInfo(name=CHAIN_NAMES.get(chain_id, "unknown"), chain_id=chain_id)

    # ─────────────────────────────────────────────────────────────
    # JSON-RPC transport
    # ─────────────────────────────────────────────────────────────

    async def send(self, method: str, params: list[Any]) -> Any:
        """
        Send one JSON-RPC request and return its result.

        Raises:
            NetworkError: Transport failure or HTTP error status
            RPCError: The node returned a JSON-RPC error object
            ParsingError: The body is not a JSON-RPC response
        """
        session = await self._get_session()
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }

        start_time = time.time()
        try:
            async with session.post(self._rpc_url, json=payload) as response:
                self.last_latency_ms = (time.time() - start_time) * 1000

                if response.status >= 400:
                    body = await response.text()
                    raise NetworkError(
                        f"HTTP {response.status} from RPC endpoint",
                        context={"method": method, "body": body[:500]},
                    )

                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    raise ParsingError(
                        f"Non-JSON response for {method}",
                        original_error=e,
                        context={"method": method},
                    )

        except aiohttp.ClientError as e:
            raise NetworkError(
                f"Connection error calling {method}: {e}",
                original_error=e,
                context={"method": method, "url": self._rpc_url},
            )

        if not isinstance(data, dict):
            raise ParsingError(
                f"Malformed JSON-RPC response for {method}",
                context={"method": method},
            )

        error = data.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise RPCError(
                f"{method} returned error: {message}",
                code=code,
                context={"method": method, "params": params},
            )

        logger.debug(f"[rpc] {method} completed in {self.last_latency_ms:.0f}ms")
        return data.get("result")

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                    **self._headers,
                },
            )
            self._owns_session = True
        return self._session

    # ─────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Close resources."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._connected = False

    async def __aenter__(self) -> "JsonRpcConnection":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"<JsonRpcConnection(url={self._rpc_url}, connected={self.is_connected()})>"
