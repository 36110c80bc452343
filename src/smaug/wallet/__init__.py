"""
Wallet registry, persisted stores and gap-limit address books.
"""

from __future__ import annotations

from smaug.wallet.addresses import AddressBook
from smaug.wallet.registry import WalletHandle, WalletRegistry
from smaug.wallet.store import WalletParams, WalletStore

__all__ = [
    "AddressBook",
    "WalletHandle",
    "WalletParams",
    "WalletRegistry",
    "WalletStore",
]
