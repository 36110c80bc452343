"""
Tests for the settings module.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from smaug.bitcoin import NetworkType
from smaug.paths import get_config_path, get_default_data_dir, get_store_dir
from smaug.settings import SmaugSettings, get_settings, reset_settings


@pytest.fixture
def config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point SMAUG_CONFIG_FILE at a file the test fills in."""
    path = tmp_path / "smaug.toml"
    monkeypatch.setenv("SMAUG_CONFIG_FILE", str(path))
    return path


class TestSettingsDefaults:
    """Tests for default settings values."""

    def test_defaults(self) -> None:
        settings = SmaugSettings()

        assert settings.network is NetworkType.BITCOIN
        assert settings.brpc.host == "127.0.0.1"
        assert settings.brpc.port is None
        assert settings.brpc.user is None
        assert settings.brpc.password is None
        assert settings.sync.gap_limit == 20
        assert settings.sync.confirmation_depth == 6
        assert settings.sync.reorg_safety_depth == 100
        assert settings.sync.filter_scan_threshold == 12
        assert settings.ledger.path is None
        assert settings.logging.level == "INFO"

    def test_data_dir_defaults_to_env(self, tmp_path: Path) -> None:
        assert SmaugSettings().get_data_dir() == tmp_path / "lightning"


class TestEnvironment:
    """Tests for environment variable overrides."""

    def test_nested_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BRPC__PORT", "18443")
        monkeypatch.setenv("BRPC__PASSWORD", "hunter2")
        monkeypatch.setenv("SYNC__POLL_INTERVAL", "2.5")
        monkeypatch.setenv("LOGGING__LEVEL", "DEBUG")

        settings = SmaugSettings()

        assert settings.brpc.port == 18443
        assert settings.brpc.password is not None
        assert settings.brpc.password.get_secret_value() == "hunter2"
        assert settings.sync.poll_interval == 2.5
        assert settings.logging.level == "DEBUG"

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("mainnet", NetworkType.BITCOIN),
            ("testnet3", NetworkType.TESTNET),
            ("Signet", NetworkType.SIGNET),
            ("mutinynet", NetworkType.MUTINYNET),
        ],
    )
    def test_network_aliases(
        self, monkeypatch: pytest.MonkeyPatch, value: str, expected: NetworkType
    ) -> None:
        monkeypatch.setenv("NETWORK", value)
        assert SmaugSettings().network is expected

    def test_unknown_network(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NETWORK", "litecoin")
        with pytest.raises(ValidationError):
            SmaugSettings()

    def test_safety_depth_below_confirmation_depth(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("SYNC__REORG_SAFETY_DEPTH", "3")
        with pytest.raises(ValidationError, match="reorg_safety_depth must be >= "):
            SmaugSettings()


class TestConfigFile:
    """Tests for the TOML config file source."""

    def test_values_from_file(self, config_file: Path) -> None:
        config_file.write_text(
            'network = "regtest"\n\n[brpc]\nuser = "alice"\nport = 18443\n\n[sync]\ngap_limit = 5\n'
        )
        settings = SmaugSettings()

        assert settings.network is NetworkType.REGTEST
        assert settings.brpc.user == "alice"
        assert settings.brpc.port == 18443
        assert settings.sync.gap_limit == 5

    def test_env_beats_file(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config_file.write_text('network = "regtest"\n')
        monkeypatch.setenv("NETWORK", "signet")
        assert SmaugSettings().network is NetworkType.SIGNET

    def test_init_beats_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NETWORK", "signet")
        assert SmaugSettings(network=NetworkType.TESTNET).network is NetworkType.TESTNET

    def test_invalid_toml_exits(self, config_file: Path) -> None:
        config_file.write_text("[brpc\nport = ")
        with pytest.raises(SystemExit):
            SmaugSettings()

    def test_default_config_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SMAUG_CONFIG_FILE")
        assert get_config_path() == tmp_path / "lightning" / "smaug.toml"

    def test_config_path_follows_data_dir(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("SMAUG_CONFIG_FILE")
        assert get_config_path(tmp_path / "node") == tmp_path / "node" / "smaug.toml"

    def test_env_config_file_beats_data_dir(self, config_file: Path, tmp_path: Path) -> None:
        assert get_config_path(tmp_path / "node") == config_file

    def test_file_read_from_passed_data_dir(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("SMAUG_CONFIG_FILE")
        node_dir = tmp_path / "node"
        node_dir.mkdir()
        (node_dir / "smaug.toml").write_text('network = "regtest"\n')

        assert SmaugSettings(data_dir=node_dir).network is NetworkType.REGTEST
        assert SmaugSettings().network is NetworkType.BITCOIN


class TestGlobalSettings:
    """Tests for the cached settings instance."""

    def test_cached(self) -> None:
        assert get_settings() is get_settings()

    def test_overrides_rebuild(self) -> None:
        first = get_settings()
        second = get_settings(network=NetworkType.REGTEST)
        assert second is not first
        assert second.network is NetworkType.REGTEST
        assert get_settings() is second

    def test_reset(self) -> None:
        first = get_settings()
        reset_settings()
        assert get_settings() is not first


class TestPaths:
    """Tests for data directory helpers."""

    def test_default_data_dir(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SMAUG_DATA_DIR")
        assert get_default_data_dir() == Path.home() / ".lightning"

    def test_store_dir_per_network(self, tmp_path: Path) -> None:
        store_dir = get_store_dir(tmp_path, "mainnet")
        assert store_dir == tmp_path / "bitcoin" / ".smaug"
        assert store_dir.is_dir()
        assert get_store_dir(tmp_path, NetworkType.SIGNET) == tmp_path / "signet" / ".smaug"
