"""
Chain sources for smaug.
"""

from __future__ import annotations

from smaug.backends.base import Block, BlockTransaction, ChainBackend, TxIn, TxOut
from smaug.backends.bitcoind import BitcoindBackend

__all__ = [
    "BitcoindBackend",
    "Block",
    "BlockTransaction",
    "ChainBackend",
    "TxIn",
    "TxOut",
]
