"""
Common setup shared by the ``smaug`` CLI and the node plugin.

- setup_logging / setup_cli: loguru configuration and settings loading
- resolve_*: turn settings plus overrides into ready-to-use objects
"""

from __future__ import annotations

import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from loguru import logger

from smaug.bitcoin import NetworkType
from smaug.brpc_auth import ResolverInput
from smaug.paths import get_ledger_path, get_store_dir
from smaug.settings import SmaugSettings, get_settings, reset_settings
from smaug.sync import SyncPolicy
from smaug.wallet.registry import WalletRegistry


def setup_logging(level: str = "INFO") -> None:
    """
    Configure loguru logging with consistent format.

    Args:
        level: Log level (TRACE, DEBUG, INFO, WARNING, ERROR)
    """
    logger.remove()
    logger.add(
        sys.stderr,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        level=level.upper(),
        colorize=True,
    )


def setup_cli(log_level: str | None = None, **overrides: Any) -> SmaugSettings:
    """
    Common CLI setup: reset settings cache, configure logging, return settings.

    Log level priority: CLI argument > settings (env/config) > default "INFO"

    Args:
        log_level: Log level override from CLI (None means use settings)
        **overrides: Settings overrides from CLI options (None values ignored)

    Returns:
        SmaugSettings instance with all sources loaded
    """
    reset_settings()
    settings = get_settings(**{k: v for k, v in overrides.items() if v is not None})

    effective_log_level = log_level if log_level is not None else settings.logging.level
    setup_logging(effective_log_level)

    return settings


def resolve_store_dir(settings: SmaugSettings) -> Path:
    return get_store_dir(settings.get_data_dir(), settings.network)


def resolve_ledger_path(settings: SmaugSettings) -> Path:
    if settings.ledger.path is not None:
        return settings.ledger.path
    return get_ledger_path(resolve_store_dir(settings))


def resolve_registry(settings: SmaugSettings) -> WalletRegistry:
    """Build the wallet registry for the configured network and load its stores."""
    registry = WalletRegistry(
        store_dir=resolve_store_dir(settings),
        network=settings.network,
        default_gap=settings.sync.gap_limit,
    )
    registry.load()
    return registry


def resolve_sync_policy(settings: SmaugSettings) -> SyncPolicy:
    return SyncPolicy(
        confirmation_depth=settings.sync.confirmation_depth,
        reorg_safety_depth=settings.sync.reorg_safety_depth,
        filter_scan_threshold=settings.sync.filter_scan_threshold,
        poll_interval=settings.sync.poll_interval,
        max_backoff=settings.sync.max_backoff,
    )


def resolve_brpc_input(
    settings: SmaugSettings,
    *,
    network: NetworkType | None = None,
    host_configs: Mapping[str, Any] | None = None,
) -> ResolverInput:
    """
    Collect what the bitcoind credential resolver needs.

    Args:
        settings: Loaded settings
        network: Network override (the host node's network in the plugin)
        host_configs: ``listconfigs`` result of the host node, if any

    Returns:
        ResolverInput
    """
    brpc = settings.brpc
    return ResolverInput(
        network=network if network is not None else settings.network,
        host=brpc.host,
        port=brpc.port,
        user=brpc.user,
        password=brpc.password.get_secret_value() if brpc.password is not None else None,
        cookie_dir=brpc.cookie_dir,
        host_configs=host_configs,
        bitcoin_dir=brpc.bitcoin_dir,
    )
