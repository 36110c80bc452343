"""
Chain source contract.

The sync engine only needs block heights and hashes, full blocks, and
optionally a way to narrow a height range down to the blocks that touch a
set of descriptors.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class TxIn:
    """Transaction input; coinbase inputs have no previous outpoint."""

    txid: str | None
    vout: int | None

    @property
    def is_coinbase(self) -> bool:
        return self.txid is None


@dataclass
class TxOut:
    n: int
    value: int  # satoshis
    script: bytes


@dataclass
class BlockTransaction:
    txid: str
    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)


@dataclass
class Block:
    hash: str
    height: int
    prev_hash: str | None
    time: int
    transactions: list[BlockTransaction] = field(default_factory=list)


class ChainBackend(ABC):
    """Read-only view of the block chain."""

    @abstractmethod
    async def get_block_height(self) -> int:
        """Height of the current chain tip."""

    @abstractmethod
    async def get_block_hash(self, height: int) -> str:
        """Hash of the active-chain block at ``height``."""

    @abstractmethod
    async def get_block(self, block_hash: str) -> Block:
        """Full block with decoded transactions."""

    async def get_relevant_blocks(
        self,
        descriptors: list[tuple[str, int]],
        start_height: int,
        stop_height: int,
    ) -> list[str] | None:
        """
        Hashes of blocks in ``[start_height, stop_height]`` that may touch the descriptors.

        Args:
            descriptors: (descriptor, number of derived indexes) pairs
            start_height: First height to scan
            stop_height: Last height to scan

        Returns:
            Candidate block hashes in height order, or None if the backend cannot
            filter (the caller then fetches every block)
        """
        return None

    async def close(self) -> None:
        """Release network resources."""
