"""JSON-RPC client used by every chain-facing component.

Works for both Ethereum-style and Solana JSON-RPC endpoints; the wire
framing is identical.
"""

import itertools
import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

_request_ids = itertools.count(1)


class RpcError(Exception):
    """JSON-RPC error object returned by the node."""

    def __init__(self, method: str, code: int, message: str, data: Any = None):
        super().__init__(f"{method}: [{code}] {message}")
        self.method = method
        self.code = code
        self.message = message
        self.data = data

    @property
    def text(self) -> str:
        """Message plus any data payload, lower-cased for classification."""
        return f"{self.message} {self.data or ''}".lower()


class RpcTransportError(Exception):
    """Endpoint unreachable, timed out, rate limited or returned 5xx."""

    def __init__(self, method: str, reason: str, status_code: Optional[int] = None):
        super().__init__(f"{method}: {reason}")
        self.method = method
        self.reason = reason
        self.status_code = status_code


class JsonRpcClient:
    """Minimal async JSON-RPC client.

    Args:
        url: Endpoint URL
        timeout: Per-call timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def call(self, method: str, params: Optional[list] = None) -> Any:
        """Call a method and return its ``result``.

        Raises:
            RpcError: Node returned a JSON-RPC error object
            RpcTransportError: Transport failure, 429 or 5xx
        """
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params if params is not None else [],
            "id": next(_request_ids),
        }

        try:
            async with self._client() as client:
                response = await client.post(self.url, json=payload)
        except httpx.TimeoutException:
            logger.warning(f"RPC timeout: {method}")
            raise RpcTransportError(method, "timeout")
        except httpx.HTTPError as e:
            logger.warning(f"RPC transport error: {method}: {e}")
            raise RpcTransportError(method, str(e) or e.__class__.__name__)

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(f"RPC HTTP {response.status_code}: {method}")
            raise RpcTransportError(method, f"HTTP {response.status_code}", response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise RpcTransportError(method, f"invalid JSON (HTTP {response.status_code})", response.status_code)

        if not isinstance(data, dict):
            raise RpcTransportError(method, "unexpected response shape", response.status_code)

        if data.get("error"):
            error = data["error"]
            logger.debug(f"RPC error: {method}: {error}")
            raise RpcError(
                method,
                int(error.get("code", 0)),
                str(error.get("message", "")),
                error.get("data"),
            )

        if response.status_code != 200:
            raise RpcTransportError(method, f"HTTP {response.status_code}", response.status_code)

        return data.get("result")
