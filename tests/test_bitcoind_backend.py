"""
Tests for the bitcoind chain source with mocked RPC calls.
"""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from smaug.backends.bitcoind import BitcoindBackend, parse_block
from smaug.brpc_auth import BrpcConfig, UserPassAuth

BLOCK = {
    "hash": "11" * 32,
    "height": 850_000,
    "previousblockhash": "22" * 32,
    "time": 1_717_000_000,
    "tx": [
        {
            "txid": "33" * 32,
            "vin": [{"coinbase": "03d0f90c", "sequence": 4294967295}],
            "vout": [
                {
                    "n": 0,
                    "value": 3.16841317,
                    "scriptPubKey": {"hex": "0014" + "44" * 20, "type": "witness_v0_keyhash"},
                }
            ],
        },
        {
            "txid": "55" * 32,
            "vin": [{"txid": "66" * 32, "vout": 1}],
            "vout": [
                {"n": 0, "value": 0.0003, "scriptPubKey": {"hex": "5120" + "77" * 32}},
                {"n": 1, "value": 0.00000546, "scriptPubKey": {"hex": "6a00"}},
            ],
        },
    ],
}


@pytest.fixture
def backend() -> BitcoindBackend:
    config = BrpcConfig(
        host="127.0.0.1", port=18443, auth=UserPassAuth("user", "pass"), source="test"
    )
    return BitcoindBackend(config)


def rpc_responses(responses: dict[str, Any]) -> AsyncMock:
    async def call(method: str, params: list | None = None, timeout: float | None = None) -> Any:
        result = responses[method]
        if isinstance(result, Exception):
            raise result
        return result

    return AsyncMock(side_effect=call)


class TestParseBlock:
    """Tests for decoding getblock results."""

    def test_parse_block(self) -> None:
        block = parse_block(BLOCK)

        assert block.hash == "11" * 32
        assert block.height == 850_000
        assert block.prev_hash == "22" * 32
        assert block.time == 1_717_000_000
        assert len(block.transactions) == 2

        coinbase, payment = block.transactions
        assert coinbase.inputs[0].is_coinbase
        assert coinbase.outputs[0].value == 316_841_317
        assert payment.inputs[0].txid == "66" * 32
        assert payment.inputs[0].vout == 1
        assert payment.outputs[0].value == 30_000
        assert payment.outputs[0].script == bytes.fromhex("5120" + "77" * 32)
        assert payment.outputs[1].value == 546

    def test_genesis_has_no_previous_hash(self) -> None:
        data = {**BLOCK, "height": 0, "tx": []}
        del data["previousblockhash"]
        assert parse_block(data).prev_hash is None


class TestBitcoindBackend:
    """Tests for RPC usage."""

    @pytest.mark.asyncio
    async def test_block_queries(self, backend: BitcoindBackend) -> None:
        backend._rpc_call = rpc_responses(  # type: ignore[method-assign]
            {"getblockcount": 850_000, "getblockhash": "11" * 32, "getblock": BLOCK}
        )

        assert await backend.get_block_height() == 850_000
        assert await backend.get_block_hash(850_000) == "11" * 32
        block = await backend.get_block("11" * 32)
        assert block.height == 850_000

        backend._rpc_call.assert_any_call("getblockhash", [850_000])
        backend._rpc_call.assert_any_call("getblock", ["11" * 32, 2])
        await backend.close()

    @pytest.mark.asyncio
    async def test_scanblocks(self, backend: BitcoindBackend) -> None:
        backend._rpc_call = rpc_responses(  # type: ignore[method-assign]
            {"scanblocks": {"from_height": 0, "to_height": 10, "relevant_blocks": ["aa" * 32]}}
        )

        relevant = await backend.get_relevant_blocks([("wpkh(xpub/0/*)#abc", 20)], 0, 10)

        assert relevant == ["aa" * 32]
        method, params = backend._rpc_call.call_args.args
        assert method == "scanblocks"
        assert params[0] == "start"
        assert params[1] == [{"desc": "wpkh(xpub/0/*)#abc", "range": [0, 19]}]
        assert params[2:4] == [0, 10]
        assert backend._rpc_call.call_args.kwargs["timeout"] == backend.scan_timeout
        await backend.close()

    @pytest.mark.asyncio
    async def test_scanblocks_unavailable_falls_back(self, backend: BitcoindBackend) -> None:
        backend._rpc_call = rpc_responses(  # type: ignore[method-assign]
            {"scanblocks": ValueError("RPC error -1: Index is not enabled for filtertype basic")}
        )

        assert await backend.get_relevant_blocks([("d", 1)], 0, 10) is None
        # Remembered: no second round trip
        assert await backend.get_relevant_blocks([("d", 1)], 11, 20) is None
        assert backend._rpc_call.await_count == 1
        await backend.close()

    @pytest.mark.asyncio
    async def test_scanblocks_other_errors_propagate(self, backend: BitcoindBackend) -> None:
        backend._rpc_call = rpc_responses(  # type: ignore[method-assign]
            {"scanblocks": ValueError("RPC error -8: Invalid stop_height")}
        )
        with pytest.raises(ValueError, match="-8"):
            await backend.get_relevant_blocks([("d", 1)], 0, 10)
        await backend.close()


class TestRpcCall:
    """Tests for the JSON-RPC transport."""

    @pytest.mark.asyncio
    async def test_rpc_error_raises_value_error(self, backend: BitcoindBackend) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                500,
                json={
                    "result": None,
                    "error": {"code": -8, "message": "Block height out of range"},
                },
            )

        backend.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with pytest.raises(ValueError, match="RPC error -8: Block height out of range"):
            await backend.get_block_hash(10**9)
        await backend.close()

    @pytest.mark.asyncio
    async def test_rpc_result(self, backend: BitcoindBackend) -> None:
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"result": 42, "error": None})

        backend.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        assert await backend.get_block_height() == 42
        assert seen[0]["method"] == "getblockcount"
        assert seen[0]["params"] == []
        await backend.close()

    @pytest.mark.asyncio
    async def test_retries_once_after_unauthorized(self, backend: BitcoindBackend) -> None:
        statuses = [401, 200]

        def handler(request: httpx.Request) -> httpx.Response:
            status = statuses.pop(0)
            return httpx.Response(status, json={"result": 7, "error": None})

        backend.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        assert await backend.get_block_height() == 7
        assert statuses == []
        await backend.close()

    @pytest.mark.asyncio
    async def test_http_error_propagates(self, backend: BitcoindBackend) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        backend.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with pytest.raises(httpx.ConnectError):
            await backend.get_block_height()
        await backend.close()
