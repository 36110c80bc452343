"""
Per-wallet persisted state.

Each tracked wallet owns exactly one JSON document at
``<data_dir>/<network>/.smaug/<name>.db`` holding its parameters, address
book high-water marks, UTXO set, sync cursor, undo log and the outbox of
ledger events not yet acknowledged by the sink.

Writes are atomic (write to a temp file, then rename) so a crash leaves
either the previous or the new block's state on disk, never a mix.
"""

from __future__ import annotations

import json
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from smaug.constants import STORE_SUFFIX
from smaug.errors import StoreError
from smaug.models import BlockDelta, Chain, LedgerEvent, SyncCursor, SyncState, Utxo

STORE_VERSION = 1


class WalletParams(BaseModel):
    """Immutable parameters of a wallet, fixed at add time."""

    name: str
    descriptor: str
    change_descriptor: str | None = None
    birthday: int = 0
    gap: int
    network: str


class WalletStore(BaseModel):
    """Everything smaug persists for one wallet."""

    version: int = STORE_VERSION
    params: WalletParams
    state: SyncState = SyncState.UNINITIALIZED
    cursor: SyncCursor
    last_used: dict[Chain, int] = Field(default_factory=dict)
    utxos: dict[str, Utxo] = Field(default_factory=dict)
    undo_log: list[BlockDelta] = Field(default_factory=list)
    outbox: list[LedgerEvent] = Field(default_factory=list)
    epoch: int = 0
    error: str | None = None

    @classmethod
    def create(cls, params: WalletParams) -> WalletStore:
        """Fresh store positioned just below the wallet's birthday."""
        return cls(
            params=params,
            cursor=SyncCursor(wallet=params.name, height=params.birthday - 1),
        )

    @property
    def name(self) -> str:
        return self.params.name

    def unspent(self) -> list[Utxo]:
        return [u for u in self.utxos.values() if not u.spent]

    def balance(self) -> int:
        """Sum of unspent values in satoshis."""
        return sum(u.value for u in self.utxos.values() if not u.spent)


def store_path(store_dir: Path, name: str) -> Path:
    return store_dir / f"{name}{STORE_SUFFIX}"


def save_store(store: WalletStore, path: Path) -> None:
    """
    Persist a wallet store atomically.

    Args:
        store: Store to write
        path: Target ``.db`` path

    Raises:
        OSError: If the file cannot be written
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp_path.write_text(store.model_dump_json(), encoding="utf-8")
        tmp_path.replace(path)
    except OSError as e:
        logger.error(f"Failed to save wallet store {path}: {e}")
        tmp_path.unlink(missing_ok=True)
        raise


def load_store(path: Path) -> WalletStore:
    """
    Load a wallet store from disk.

    Raises:
        StoreError: If the file is missing, unreadable or has an unknown version
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise StoreError(f"Failed to read wallet store {path}: {e}") from e

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise StoreError(f"Malformed wallet store {path}: {e}") from e

    version = data.get("version") if isinstance(data, dict) else None
    if version != STORE_VERSION:
        raise StoreError(f"Unsupported wallet store version {version!r} in {path}")

    try:
        return WalletStore.model_validate(data)
    except ValidationError as e:
        raise StoreError(f"Invalid wallet store {path}: {e}") from e


def delete_store(path: Path) -> None:
    """
    Delete a wallet store and any leftover temp file.

    Raises:
        OSError: If the store exists but cannot be removed
    """
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        path.unlink(missing_ok=True)
    finally:
        tmp_path.unlink(missing_ok=True)
    logger.debug(f"Deleted wallet store {path}")


def list_store_paths(store_dir: Path) -> list[Path]:
    """All wallet store files in ``store_dir``, sorted by name."""
    if not store_dir.is_dir():
        return []
    return sorted(store_dir.glob(f"*{STORE_SUFFIX}"))
