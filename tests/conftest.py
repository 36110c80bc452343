"""
Pytest configuration and fixtures for smaug tests.
"""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from _smaug_test_helpers import BIP84_XPUB, BIP86_XPUB, FakeChain

from smaug.ledger import MemoryLedgerSink
from smaug.settings import reset_settings
from smaug.wallet.registry import WalletRegistry


@pytest.fixture(autouse=True)
def isolated_settings(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Generator[None, None, None]:
    """Keep every test away from the user's config file and data directory."""
    monkeypatch.setenv("SMAUG_DATA_DIR", str(tmp_path / "lightning"))
    monkeypatch.setenv("SMAUG_CONFIG_FILE", str(tmp_path / "missing-smaug.toml"))
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    return tmp_path / "bitcoin" / ".smaug"


@pytest.fixture
def registry(store_dir: Path) -> WalletRegistry:
    return WalletRegistry(store_dir, "bitcoin")


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def sink() -> MemoryLedgerSink:
    return MemoryLedgerSink()


@pytest.fixture
def multipath_descriptor() -> str:
    """BIP84 account with receive and change chains in one descriptor."""
    return f"wpkh([73c5da0a/84'/0'/0']{BIP84_XPUB}/<0;1>/*)"


@pytest.fixture
def taproot_descriptor() -> str:
    """Single-chain BIP86 receive descriptor."""
    return f"tr([73c5da0a/86'/0'/0']{BIP86_XPUB}/0/*)"
