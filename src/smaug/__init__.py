"""
smaug - watch-only descriptor wallet tracker for a Lightning node's bookkeeper

Tracks external descriptor wallets against bitcoind and reports their coin
movements as double-entry ledger events.
"""

__version__ = "0.3.0"

from smaug.descriptor import Descriptor, parse, wallet_name
from smaug.errors import SmaugError
from smaug.models import LedgerEvent, Utxo

__all__ = [
    "Descriptor",
    "LedgerEvent",
    "SmaugError",
    "Utxo",
    "parse",
    "wallet_name",
]
