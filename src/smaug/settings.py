"""
Settings management for smaug.

Uses pydantic-settings with the following sources:
1. TOML configuration file (<data_dir>/smaug.toml or $SMAUG_CONFIG_FILE)
2. Environment variables
3. CLI arguments / plugin options (handled by the front ends)

Priority (highest to lowest):
1. CLI arguments / plugin options
2. Environment variables
3. Config file
4. Default values

Environment Variable Naming:
    - Use uppercase with double underscore for nested settings
    - Examples: BRPC__PORT, SYNC__POLL_INTERVAL, LOGGING__LEVEL
    - Maps to TOML sections: BRPC__PORT -> [brpc] port
"""

from __future__ import annotations

import sys
import tomllib
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    InitSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from smaug.bitcoin import NetworkType, parse_network
from smaug.constants import (
    DEFAULT_CONFIRMATION_DEPTH,
    DEFAULT_FILTER_SCAN_THRESHOLD,
    DEFAULT_GAP_LIMIT,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_REORG_SAFETY_DEPTH,
    MAX_BACKOFF_SECONDS,
)
from smaug.paths import get_config_path, get_default_data_dir


class BrpcSettings(BaseModel):
    """bitcoind RPC connection (all optional, see credential resolution)."""

    host: str = Field(
        default="127.0.0.1",
        description="bitcoind RPC host",
    )
    port: int | None = Field(
        default=None,
        ge=1,
        le=65535,
        description="bitcoind RPC port (defaults based on network)",
    )
    user: str | None = Field(
        default=None,
        description="bitcoind RPC user",
    )
    password: SecretStr | None = Field(
        default=None,
        description="bitcoind RPC password",
    )
    cookie_dir: Path | None = Field(
        default=None,
        description="Directory holding bitcoind's .cookie file",
    )
    bitcoin_dir: Path | None = Field(
        default=None,
        description="bitcoind data directory (defaults to ~/.bitcoin)",
    )
    timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Timeout in seconds for regular RPC calls",
    )


class SyncSettings(BaseModel):
    """Chain sync tunables."""

    gap_limit: int = Field(
        default=DEFAULT_GAP_LIMIT,
        ge=0,
        description="Default gap limit for wallets added without one",
    )
    confirmation_depth: int = Field(
        default=DEFAULT_CONFIRMATION_DEPTH,
        ge=1,
        description="Spent UTXOs are pruned once their spend has this many confirmations",
    )
    reorg_safety_depth: int = Field(
        default=DEFAULT_REORG_SAFETY_DEPTH,
        ge=1,
        description="Number of recent blocks that can be rolled back on a reorg",
    )
    filter_scan_threshold: int = Field(
        default=DEFAULT_FILTER_SCAN_THRESHOLD,
        ge=1,
        description="Use block filters (scanblocks) when more than this many blocks behind",
    )
    poll_interval: float = Field(
        default=DEFAULT_POLL_INTERVAL,
        gt=0.0,
        description="Seconds between chain tip polls",
    )
    max_backoff: float = Field(
        default=MAX_BACKOFF_SECONDS,
        gt=0.0,
        description="Maximum retry delay in seconds after chain source failures",
    )

    @model_validator(mode="after")
    def check_depths(self) -> SyncSettings:
        if self.reorg_safety_depth < self.confirmation_depth:
            raise ValueError("reorg_safety_depth must be >= confirmation_depth")
        return self


class LedgerSettings(BaseModel):
    """Standalone watcher ledger output."""

    path: Path | None = Field(
        default=None,
        description="JSON Lines ledger file (defaults to <store dir>/ledger.jsonl)",
    )


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        description="Log level: TRACE, DEBUG, INFO, WARNING, ERROR",
    )


class SmaugSettings(BaseSettings):
    """
    Main smaug settings class.

    Loads configuration from multiple sources with the following priority:
    1. CLI arguments (passed to the constructor)
    2. Environment variables
    3. TOML config file
    4. Default values
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    data_dir: Path | None = Field(
        default=None,
        description="Host data directory (defaults to ~/.lightning)",
    )
    network: NetworkType = Field(
        default=NetworkType.BITCOIN,
        description="Bitcoin network: bitcoin, testnet, signet, regtest, mutinynet",
    )

    brpc: BrpcSettings = Field(default_factory=BrpcSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("network", mode="before")
    @classmethod
    def normalize_network(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_network(v)
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """
        Customize settings sources and their priority.

        Priority (highest to lowest):
        1. init_settings (CLI arguments passed to constructor)
        2. env_settings (environment variables with __ delimiter)
        3. toml_settings (smaug.toml file)
        """
        data_dir = None
        if isinstance(init_settings, InitSettingsSource):
            data_dir = init_settings.init_kwargs.get("data_dir")
        toml_source = TomlConfigSettingsSource(settings_cls, data_dir)
        return (
            init_settings,
            env_settings,
            toml_source,
        )

    def get_data_dir(self) -> Path:
        """Get the data directory, using default if not set."""
        if self.data_dir is not None:
            return self.data_dir
        return get_default_data_dir()


class TomlConfigSettingsSource(PydanticBaseSettingsSource):
    """
    Settings source that reads the TOML config file.

    The file is looked up at $SMAUG_CONFIG_FILE, else <data_dir>/smaug.toml,
    where data_dir is the one passed to the settings constructor if any.
    """

    def __init__(
        self, settings_cls: type[BaseSettings], data_dir: Path | str | None = None
    ) -> None:
        super().__init__(settings_cls)
        self._data_dir = Path(data_dir) if data_dir is not None else None
        self._config: dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        config_path = get_config_path(self._data_dir)

        if not config_path.exists():
            logger.debug(f"Config file not found at {config_path}, using defaults")
            return

        try:
            with open(config_path, "rb") as f:
                self._config = tomllib.load(f)
            logger.info(f"Loaded config from {config_path}")
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Invalid TOML syntax in config file {config_path}")
            logger.error(f"Error: {e}")
            logger.error("Please fix the syntax errors in your config file and try again.")
            sys.exit(1)
        except OSError as e:
            logger.error(f"Failed to load config from {config_path}: {e}")
            sys.exit(1)

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        """Get field value from TOML config."""
        value = self._config.get(field_name)
        return value, field_name, value is not None

    def __call__(self) -> dict[str, Any]:
        """Return all config values as a flat dict for pydantic-settings."""
        return self._config


# Global settings instance (lazy-loaded)
_settings: SmaugSettings | None = None


def get_settings(**overrides: Any) -> SmaugSettings:
    """
    Get the smaug settings instance.

    On first call, loads settings from all sources. Subsequent calls
    return the cached instance unless reset_settings() is called.

    Args:
        **overrides: Optional settings overrides (highest priority)

    Returns:
        SmaugSettings instance
    """
    global _settings
    if _settings is None or overrides:
        _settings = SmaugSettings(**overrides)
    return _settings


def reset_settings() -> None:
    """Reset the global settings instance (useful for testing)."""
    global _settings
    _settings = None


__all__ = [
    "SmaugSettings",
    "BrpcSettings",
    "SyncSettings",
    "LedgerSettings",
    "LoggingSettings",
    "get_settings",
    "reset_settings",
]
