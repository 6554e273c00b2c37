"""
Unit tests for the node JSON-RPC client.

Uses httpx.MockTransport in place of a running node.
"""

import json

import httpx
import pytest

from chainops.ckb_snapshot.config import NodeConfig
from chainops.ckb_snapshot.errors import RpcUnavailableError
from chainops.ckb_snapshot.node.rpc import NodeRpcClient


def make_client(handler) -> NodeRpcClient:
    return NodeRpcClient(NodeConfig(rpc_url="http://node:8114"), transport=httpx.MockTransport(handler))


class TestNodeRpcClient:
    """Tests for NodeRpcClient."""

    @pytest.mark.asyncio
    async def test_tip_block_number_decodes_hex(self):
        """The hex result is decoded to an integer."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x112a880"})

        async with make_client(handler) as rpc:
            height = await rpc.get_tip_block_number()

        assert height == 0x112A880
        assert requests[0]["method"] == "get_tip_block_number"
        assert requests[0]["params"] == []
        assert requests[0]["jsonrpc"] == "2.0"

    @pytest.mark.asyncio
    async def test_node_version(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body["method"] == "local_node_info"
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": 1, "result": {"version": "0.119.0 (abc 2025-01-01)"}}
            )

        async with make_client(handler) as rpc:
            assert await rpc.get_node_version() == "0.119.0 (abc 2025-01-01)"

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Transport failures become RpcUnavailableError."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as rpc:
            with pytest.raises(RpcUnavailableError):
                await rpc.get_tip_block_number()

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        async with make_client(handler) as rpc:
            with pytest.raises(RpcUnavailableError):
                await rpc.get_tip_block_number()

    @pytest.mark.asyncio
    async def test_json_rpc_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": "nope"}}
            )

        async with make_client(handler) as rpc:
            with pytest.raises(RpcUnavailableError, match="returned error"):
                await rpc.get_tip_block_number()

    @pytest.mark.asyncio
    async def test_non_hex_result(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "tip"})

        async with make_client(handler) as rpc:
            with pytest.raises(RpcUnavailableError, match="non-hex"):
                await rpc.get_tip_block_number()

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>")

        async with make_client(handler) as rpc:
            with pytest.raises(RpcUnavailableError, match="invalid JSON"):
                await rpc.get_tip_block_number()
