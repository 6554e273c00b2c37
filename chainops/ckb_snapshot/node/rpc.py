"""
JSON-RPC client for the CKB node.

Only two calls are needed by the pipeline:
- get_tip_block_number: current tip height (hex-encoded integer)
- local_node_info: node software version

Invariants:
    - Every failure surfaces as RpcUnavailableError
    - The client never retries; the controller degrades instead
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..config import NodeConfig
from ..errors import RpcUnavailableError

logger = logging.getLogger(__name__)


class NodeRpcClient:
    """Async JSON-RPC client for a CKB node.

    Example:
        >>> async with NodeRpcClient(config.node) as rpc:
        ...     height = await rpc.get_tip_block_number()
    """

    def __init__(
        self,
        config: NodeConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Node configuration
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.endpoint = config.rpc_url
        self._client = httpx.AsyncClient(
            timeout=config.rpc_timeout_seconds,
            transport=transport,
        )
        self._request_id = 0

    async def __aenter__(self) -> NodeRpcClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def call(self, method: str, params: Optional[list[Any]] = None) -> Any:
        """Invoke a JSON-RPC method and return its result.

        Raises:
            RpcUnavailableError: On transport, HTTP or JSON-RPC errors
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or [],
            "id": self._request_id,
        }
        try:
            response = await self._client.post(self.endpoint, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise RpcUnavailableError(f"{method} failed: {e}", endpoint=self.endpoint)
        except ValueError as e:
            raise RpcUnavailableError(
                f"{method} returned invalid JSON: {e}", endpoint=self.endpoint
            )

        if not isinstance(body, dict):
            raise RpcUnavailableError(f"{method} returned a non-object body", endpoint=self.endpoint)
        if body.get("error"):
            raise RpcUnavailableError(
                f"{method} returned error: {body['error']}", endpoint=self.endpoint
            )
        if "result" not in body:
            raise RpcUnavailableError(f"{method} response has no result", endpoint=self.endpoint)
        return body["result"]

    async def get_tip_block_number(self) -> int:
        """Return the node's tip block height."""
        result = await self.call("get_tip_block_number")
        try:
            return int(result, 16)
        except (TypeError, ValueError):
            raise RpcUnavailableError(
                f"get_tip_block_number returned non-hex result: {result!r}",
                endpoint=self.endpoint,
            )

    async def get_node_version(self) -> str:
        """Return the node software version from local_node_info."""
        result = await self.call("local_node_info")
        version = result.get("version") if isinstance(result, dict) else None
        if not version:
            raise RpcUnavailableError("local_node_info has no version", endpoint=self.endpoint)
        return str(version)
