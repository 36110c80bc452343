"""
Wallet registry.

Owns the set of tracked wallets and their persisted stores. Registry
mutations (add, remove) are serialized by one asyncio lock; every wallet
additionally has its own lock that its sync task holds while it applies a
block and writes the store, so a remove can never interleave with an
in-flight sync write.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from loguru import logger

from smaug.bitcoin import NetworkType, parse_network, sats_to_msat, scriptpubkey_to_address
from smaug.constants import DEFAULT_GAP_LIMIT, MAX_BIRTHDAY, MAX_GAP_LIMIT
from smaug.descriptor import Descriptor, normalize_pair, parse, wallet_name
from smaug.errors import (
    DuplicateWallet,
    InvalidBirthday,
    InvalidGap,
    StoreError,
    WalletNameCollision,
    WalletNotFound,
)
from smaug.models import Chain, SyncState, wallet_account
from smaug.wallet.addresses import AddressBook
from smaug.wallet.store import (
    WalletParams,
    WalletStore,
    delete_store,
    list_store_paths,
    load_store,
    save_store,
    store_path,
)


@dataclass
class WalletHandle:
    """A registered wallet: its store, derived scripts and write lock."""

    store: WalletStore
    path: Path
    external: Descriptor
    internal: Descriptor | None
    addresses: AddressBook
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    removed: bool = False

    @classmethod
    def from_store(cls, store: WalletStore, path: Path) -> WalletHandle:
        external = parse(store.params.descriptor)
        internal = parse(store.params.change_descriptor) if store.params.change_descriptor else None
        descriptors = {Chain.EXTERNAL: external}
        if internal is not None:
            descriptors[Chain.INTERNAL] = internal
        addresses = AddressBook(
            wallet=store.params.name,
            descriptors=descriptors,
            gap_limit=store.params.gap,
            last_used=store.last_used,
        )
        return cls(
            store=store, path=path, external=external, internal=internal, addresses=addresses
        )

    @property
    def name(self) -> str:
        return self.store.params.name

    @property
    def account(self) -> str:
        return wallet_account(self.name)

    def same_descriptors(self, external: Descriptor, internal: Descriptor | None) -> bool:
        if self.external.body != external.body:
            return False
        if internal is None or self.internal is None:
            return internal is None and self.internal is None
        return self.internal.body == internal.body

    def save(self) -> None:
        self.store.last_used = dict(self.addresses.last_used)
        save_store(self.store, self.path)

    def info(self) -> dict[str, Any]:
        """Entry of the ``ls`` result."""
        params = self.store.params
        return {
            "descriptor": params.descriptor,
            "change_descriptor": params.change_descriptor,
            "birthday": params.birthday,
            "gap": params.gap,
            "network": params.network,
            "balance": sats_to_msat(self.store.balance()),
        }


def validate_birthday(birthday: int) -> int:
    if not 0 <= birthday <= MAX_BIRTHDAY:
        raise InvalidBirthday(
            f"birthday must be between 0 and {MAX_BIRTHDAY}. Received: {birthday}"
        )
    return birthday


def validate_gap(gap: int) -> int:
    if not 0 <= gap <= MAX_GAP_LIMIT:
        raise InvalidGap(f"gap must be between 0 and {MAX_GAP_LIMIT}. Received: {gap}")
    return gap


class WalletRegistry:
    """
    Named wallets of one network.

    Args:
        store_dir: Directory holding ``<name>.db`` stores
        network: Active network
        default_gap: Gap limit for wallets added without one
    """

    def __init__(
        self,
        store_dir: Path,
        network: str | NetworkType,
        default_gap: int = DEFAULT_GAP_LIMIT,
    ):
        self.store_dir = store_dir
        self.network = parse_network(network)
        self.default_gap = default_gap
        self._wallets: dict[str, WalletHandle] = {}
        self._lock = asyncio.Lock()

    def load(self) -> list[str]:
        """
        Load every store found in the store directory.

        Unreadable stores are logged and left on disk untouched.

        Returns:
            Names of loaded wallets
        """
        loaded = []
        for path in list_store_paths(self.store_dir):
            try:
                store = load_store(path)
                handle = WalletHandle.from_store(store, path)
            except (StoreError, ValueError) as e:
                logger.error(f"Skipping wallet store {path}: {e}")
                continue
            if store.params.network != self.network.value:
                logger.warning(
                    f"Skipping wallet {store.params.name}: stored for network "
                    f"{store.params.network}, node runs {self.network.value}"
                )
                continue
            self._wallets[handle.name] = handle
            loaded.append(handle.name)
        if loaded:
            logger.info(f"Loaded {len(loaded)} wallet(s) from {self.store_dir}")
        return loaded

    def get(self, name: str) -> WalletHandle | None:
        return self._wallets.get(name)

    def names(self) -> list[str]:
        return list(self._wallets)

    def handles(self) -> list[WalletHandle]:
        return list(self._wallets.values())

    def __contains__(self, name: str) -> bool:
        return name in self._wallets

    def __len__(self) -> int:
        return len(self._wallets)

    async def add(
        self,
        descriptor: str,
        change_descriptor: str | None = None,
        birthday: int | None = None,
        gap: int | None = None,
    ) -> WalletHandle:
        """
        Register a wallet.

        Args:
            descriptor: Receive (or multipath) descriptor
            change_descriptor: Optional change descriptor
            birthday: First height to scan (default 0)
            gap: Gap limit (default: registry default)

        Returns:
            The new WalletHandle

        Raises:
            DescriptorInvalid: If a descriptor fails validation
            DuplicateWallet: If the same descriptors are already registered
            WalletNameCollision: If the name is taken by different descriptors
        """
        birthday = validate_birthday(0 if birthday is None else birthday)
        gap = validate_gap(self.default_gap if gap is None else gap)

        external, internal = normalize_pair(descriptor, change_descriptor)
        external.validate_network(self.network)
        if internal is not None:
            internal.validate_network(self.network)
        name = wallet_name(external, internal)
        path = store_path(self.store_dir, name)

        async with self._lock:
            existing = self._wallets.get(name)
            if existing is None and path.exists():
                # Store left on disk by an earlier run that failed to load it
                existing = WalletHandle.from_store(load_store(path), path)
            if existing is not None:
                if existing.same_descriptors(external, internal):
                    raise DuplicateWallet(name)
                logger.error(
                    f"Wallet name collision for {name}: stored {existing.external.body}, "
                    f"new {external.body}"
                )
                raise WalletNameCollision(name)

            params = WalletParams(
                name=name,
                descriptor=external.to_string(),
                change_descriptor=internal.to_string() if internal is not None else None,
                birthday=birthday,
                gap=gap,
                network=self.network.value,
            )
            store = WalletStore.create(params)
            store.state = SyncState.SCANNING
            handle = WalletHandle.from_store(store, path)
            handle.save()
            self._wallets[name] = handle

        first_address = scriptpubkey_to_address(external.script_at(0), self.network)
        logger.info(
            f"Wallet with deterministic name {name} successfully added "
            f"(first receive address {first_address})"
        )
        return handle

    def list(self) -> dict[str, dict[str, Any]]:
        """Registered wallets with their live balance."""
        return {name: handle.info() for name, handle in self._wallets.items()}

    async def remove(
        self,
        name: str,
        stop_sync: Callable[[WalletHandle], Awaitable[None]] | None = None,
    ) -> None:
        """
        Unregister a wallet and delete its store.

        Args:
            name: Wallet name
            stop_sync: Awaited after the wallet is flagged removed and before its
                store is deleted; must not return while a sync write is in flight

        Raises:
            WalletNotFound: If no such wallet is registered
            StoreError: If the store cannot be deleted; the wallet stays registered
        """
        async with self._lock:
            handle = self._wallets.get(name)
            if handle is None:
                raise WalletNotFound(name)

            handle.removed = True
            try:
                if stop_sync is not None:
                    await stop_sync(handle)
                async with handle.lock:
                    delete_store(handle.path)
            except OSError as e:
                handle.removed = False
                logger.error(f"Failed to delete wallet {name}: {e}")
                raise StoreError(f"Cannot delete wallet store {handle.path}: {e}") from e
            except BaseException:
                handle.removed = False
                raise

            del self._wallets[name]
            handle.store.state = SyncState.REMOVED

        logger.info(f"Deleted wallet: {name}")
