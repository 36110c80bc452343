"""
Bitcoin Core chain source.

Talks JSON-RPC to bitcoind over httpx. Only node-level (non-wallet) RPCs are
used, so no wallet has to exist on the bitcoind side:

- getblockcount / getblockhash / getblock (verbosity 2) for block data
- scanblocks (requires ``-blockfilterindex``) to skip blocks that cannot
  touch a wallet's descriptors during long scans
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from smaug.backends.base import Block, BlockTransaction, ChainBackend, TxIn, TxOut
from smaug.bitcoin import btc_to_sats
from smaug.brpc_auth import BrpcConfig

# Timeout for regular RPC calls (seconds)
DEFAULT_RPC_TIMEOUT = 30.0

# scanblocks walks block filters and can take a while on long ranges
SCAN_RPC_TIMEOUT = 600.0

# RPC_MISC_ERROR / RPC_METHOD_NOT_FOUND returned when filters are unavailable
FILTER_UNAVAILABLE_CODES = ("-1", "-32601")


class BitcoindBackend(ChainBackend):
    """
    Chain source backed by a Bitcoin Core node.

    Usage:
        backend = BitcoindBackend(config)
        height = await backend.get_block_height()
        block = await backend.get_block(await backend.get_block_hash(height))
    """

    def __init__(
        self,
        config: BrpcConfig,
        timeout: float = DEFAULT_RPC_TIMEOUT,
        scan_timeout: float = SCAN_RPC_TIMEOUT,
    ):
        """
        Initialize the backend.

        Args:
            config: Resolved connection and credentials
            timeout: Timeout for regular RPC calls
            scan_timeout: Timeout for scanblocks
        """
        self.config = config
        self.rpc_url = config.url
        self.timeout = timeout
        self.scan_timeout = scan_timeout
        self.client = httpx.AsyncClient(timeout=timeout, auth=config.auth.credentials())
        self._request_id = 0
        self._filters_available: bool | None = None

    def _refresh_auth(self) -> None:
        """Re-read credentials (cookie files change when bitcoind restarts)."""
        self.client.auth = httpx.BasicAuth(*self.config.auth.credentials())

    async def _rpc_call(
        self,
        method: str,
        params: list | None = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Make an RPC call to Bitcoin Core.

        Args:
            method: RPC method name
            params: Method parameters
            timeout: Per-call timeout override

        Returns:
            RPC result

        Raises:
            ValueError: On RPC errors
            httpx.HTTPError: On connection/timeout errors
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "1.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        request_timeout = timeout if timeout is not None else self.timeout

        try:
            response = await self.client.post(self.rpc_url, json=payload, timeout=request_timeout)
            if response.status_code == 401:
                logger.debug("bitcoind rejected credentials, re-reading them once")
                self._refresh_auth()
                response = await self.client.post(
                    self.rpc_url, json=payload, timeout=request_timeout
                )

            # bitcoind answers RPC errors with HTTP 500 and a JSON body
            if response.status_code != 500:
                response.raise_for_status()
            data = response.json()

            if "error" in data and data["error"]:
                error_info = data["error"]
                error_code = error_info.get("code", "unknown")
                error_msg = error_info.get("message", str(error_info))
                raise ValueError(f"RPC error {error_code}: {error_msg}")

            return data.get("result")

        except httpx.TimeoutException as e:
            logger.error(f"RPC call timed out: {method} - {e}")
            raise
        except httpx.HTTPError as e:
            logger.error(f"RPC call failed: {method} - {e}")
            raise

    async def get_block_height(self) -> int:
        return int(await self._rpc_call("getblockcount"))

    async def get_block_hash(self, height: int) -> str:
        return str(await self._rpc_call("getblockhash", [height]))

    async def get_block(self, block_hash: str) -> Block:
        data = await self._rpc_call("getblock", [block_hash, 2])
        return parse_block(data)

    async def get_relevant_blocks(
        self,
        descriptors: list[tuple[str, int]],
        start_height: int,
        stop_height: int,
    ) -> list[str] | None:
        """
        Narrow a height range with BIP158 block filters (``scanblocks``).

        Returns None when the node has no block filter index, so the caller
        falls back to fetching every block.
        """
        if self._filters_available is False:
            return None

        scan_objects = [
            {"desc": desc, "range": [0, max(count - 1, 0)]} for desc, count in descriptors
        ]
        try:
            result = await self._rpc_call(
                "scanblocks",
                [
                    "start",
                    scan_objects,
                    start_height,
                    stop_height,
                    "basic",
                    {"filter_false_positives": True},
                ],
                timeout=self.scan_timeout,
            )
        except ValueError as e:
            if any(f"RPC error {code}:" in str(e) for code in FILTER_UNAVAILABLE_CODES):
                logger.warning(
                    f"Block filters unavailable ({e}); scanning every block. "
                    "Start bitcoind with -blockfilterindex=1 for faster scans"
                )
                self._filters_available = False
                return None
            raise

        self._filters_available = True
        relevant = list(result.get("relevant_blocks", []))
        logger.debug(
            f"scanblocks {start_height}-{stop_height}: {len(relevant)} relevant block(s)"
        )
        return relevant

    async def close(self) -> None:
        await self.client.aclose()


def parse_block(data: dict[str, Any]) -> Block:
    """
    Convert a ``getblock`` verbosity-2 result into a Block.

    Amounts are converted from BTC to satoshis.
    """
    transactions = []
    for tx in data.get("tx", []):
        inputs = [
            TxIn(txid=None, vout=None)
            if "coinbase" in vin
            else TxIn(txid=vin["txid"], vout=vin["vout"])
            for vin in tx.get("vin", [])
        ]
        outputs = [
            TxOut(
                n=vout["n"],
                value=btc_to_sats(vout["value"]),
                script=bytes.fromhex(vout["scriptPubKey"]["hex"]),
            )
            for vout in tx.get("vout", [])
        ]
        transactions.append(BlockTransaction(txid=tx["txid"], inputs=inputs, outputs=outputs))

    return Block(
        hash=data["hash"],
        height=data["height"],
        prev_hash=data.get("previousblockhash"),
        time=data["time"],
        transactions=transactions,
    )
