"""
Path utilities for smaug data directories.

smaug lives inside the host node's per-network data directory:

    <data_dir>/<network>/.smaug/<wallet-name>.db
"""

from __future__ import annotations

import os
from pathlib import Path

from smaug.bitcoin import NetworkType, parse_network
from smaug.constants import SMAUG_DATADIR


def get_default_data_dir() -> Path:
    """
    Get the default host data directory.

    Returns $SMAUG_DATA_DIR if set, else ~/.lightning (the Lightning node's
    default base directory).
    """
    env_path = os.getenv("SMAUG_DATA_DIR")
    return Path(env_path) if env_path else Path.home() / ".lightning"


def get_store_dir(data_dir: Path | None, network: str | NetworkType) -> Path:
    """
    Get the directory holding wallet stores for ``network``.

    Args:
        data_dir: Host data directory (defaults to get_default_data_dir())
        network: Active network

    Returns:
        ``<data_dir>/<network>/.smaug``, created if missing
    """
    if data_dir is None:
        data_dir = get_default_data_dir()

    store_dir = data_dir / parse_network(network).value / SMAUG_DATADIR
    store_dir.mkdir(parents=True, exist_ok=True)
    return store_dir


def get_ledger_path(store_dir: Path) -> Path:
    """Append-only ledger file used by the standalone watcher."""
    return store_dir / "ledger.jsonl"


def get_bookkeeper_journal_path(store_dir: Path) -> Path:
    """Events the plugin has already handed to the host bookkeeper."""
    return store_dir / "bookkeeper.jsonl"


def get_config_path(data_dir: Path | None = None) -> Path:
    """
    Get the path to the TOML config file.

    $SMAUG_CONFIG_FILE wins; otherwise ``<data_dir>/smaug.toml`` with data_dir
    defaulting to get_default_data_dir().
    """
    env_path = os.environ.get("SMAUG_CONFIG_FILE")
    if env_path:
        return Path(env_path)
    if data_dir is None:
        data_dir = get_default_data_dir()
    return data_dir / "smaug.toml"
