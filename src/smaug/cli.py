"""
Command-line interface for smaug.

``smaug run`` is the standalone watcher: it syncs every registered wallet
against bitcoind and appends ledger events to a JSON Lines file. The other
commands work on the persisted wallet stores directly and never need the
chain source.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated, Any

import typer
from loguru import logger

from smaug.bitcoin import parse_network
from smaug.brpc_auth import Unconfigured, resolve_brpc_config
from smaug.cli_common import (
    resolve_brpc_input,
    resolve_ledger_path,
    resolve_registry,
    resolve_sync_policy,
    setup_cli,
)
from smaug.descriptor import checksum_create, split_checksum
from smaug.errors import CredentialError, NotConfigured, SmaugError
from smaug.ledger import JsonlLedgerSink, account_balances, read_ledger
from smaug.service import SmaugService, wallet_status
from smaug.settings import SmaugSettings

app = typer.Typer(
    name="smaug",
    help="Watch-only descriptor wallet tracker",
    add_completion=False,
)

NetworkOption = Annotated[
    str | None,
    typer.Option("--network", help="Bitcoin network (bitcoin, testnet, signet, regtest)"),
]
DataDirOption = Annotated[
    Path | None,
    typer.Option("--data-dir", help="Host data directory (default: ~/.lightning)"),
]
LogLevelOption = Annotated[
    str | None, typer.Option("--log-level", "-l", help="Log level (default from settings)")
]


def run_async(coro: Any) -> Any:
    return asyncio.run(coro)


def _settings(
    log_level: str | None,
    network: str | None,
    data_dir: Path | None,
    brpc: dict[str, Any] | None = None,
) -> SmaugSettings:
    overrides: dict[str, Any] = {"data_dir": data_dir}
    if network is not None:
        try:
            overrides["network"] = parse_network(network)
        except ValueError:
            setup_cli(log_level)
            logger.error(f"Unknown network: {network}")
            raise typer.Exit(1)
    if brpc:
        overrides["brpc"] = brpc
    return setup_cli(log_level, **overrides)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2))


async def _watch(settings: SmaugSettings) -> None:
    chain_source = resolve_brpc_config(resolve_brpc_input(settings))
    if isinstance(chain_source, Unconfigured):
        raise NotConfigured(chain_source.message)

    registry = resolve_registry(settings)
    sink = JsonlLedgerSink(resolve_ledger_path(settings))
    service = SmaugService(
        registry,
        sink,
        chain_source,
        policy=resolve_sync_policy(settings),
        rpc_timeout=settings.brpc.timeout,
    )
    await service.start()
    logger.info(f"Watching {len(registry)} wallet(s) on {settings.network.value}")
    try:
        while True:
            await asyncio.sleep(1)
    except asyncio.CancelledError:
        pass
    finally:
        await service.stop()


@app.command()
def run(
    network: NetworkOption = None,
    data_dir: DataDirOption = None,
    brpc_host: Annotated[
        str | None, typer.Option("--brpc-host", help="bitcoind RPC host")
    ] = None,
    brpc_port: Annotated[
        int | None, typer.Option("--brpc-port", help="bitcoind RPC port")
    ] = None,
    brpc_user: Annotated[
        str | None, typer.Option("--brpc-user", help="bitcoind RPC user")
    ] = None,
    brpc_pass: Annotated[
        str | None,
        typer.Option("--brpc-pass", help="bitcoind RPC password", envvar="BRPC_PASS"),
    ] = None,
    brpc_cookie_dir: Annotated[
        Path | None,
        typer.Option("--brpc-cookie-dir", help="Directory holding bitcoind's .cookie file"),
    ] = None,
    log_level: LogLevelOption = None,
) -> None:
    """Sync all registered wallets and append ledger events to the JSONL ledger."""
    brpc = {
        key: value
        for key, value in {
            "host": brpc_host,
            "port": brpc_port,
            "user": brpc_user,
            "password": brpc_pass,
            "cookie_dir": brpc_cookie_dir,
        }.items()
        if value is not None
    }
    settings = _settings(log_level, network, data_dir, brpc)

    try:
        run_async(_watch(settings))
    except KeyboardInterrupt:
        logger.info("Shutting down smaug watcher...")
    except (NotConfigured, CredentialError) as e:
        logger.error(str(e))
        raise typer.Exit(1)


@app.command("ls")
def list_wallets(
    network: NetworkOption = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """List tracked wallets with their balance (msat)."""
    settings = _settings(log_level, network, data_dir)
    _print_json(resolve_registry(settings).list())


@app.command()
def add(
    descriptor: Annotated[str, typer.Argument(help="Receive (or multipath) descriptor")],
    change_descriptor: Annotated[
        str | None, typer.Argument(help="Change descriptor (omit for multipath)")
    ] = None,
    birthday: Annotated[
        int | None, typer.Option("--birthday", "-b", help="First block height to scan")
    ] = None,
    gap: Annotated[int | None, typer.Option("--gap", "-g", help="Gap limit")] = None,
    network: NetworkOption = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Register a wallet; it is synced by the next ``smaug run``."""
    settings = _settings(log_level, network, data_dir)
    registry = resolve_registry(settings)
    try:
        handle = run_async(registry.add(descriptor, change_descriptor or None, birthday, gap))
    except SmaugError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    _print_json(
        {
            "name": handle.name,
            "message": f"Wallet with deterministic name {handle.name} successfully added",
        }
    )


@app.command()
def remove(
    name: Annotated[str, typer.Argument(help="Wallet name (see `smaug ls`)")],
    network: NetworkOption = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Stop tracking a wallet and delete its store."""
    settings = _settings(log_level, network, data_dir)
    registry = resolve_registry(settings)
    try:
        run_async(registry.remove(name))
    except SmaugError as e:
        logger.error(str(e))
        raise typer.Exit(1)
    print(f"Deleted wallet: {name}")


@app.command()
def status(
    network: NetworkOption = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Show credential resolution and per-wallet sync state."""
    settings = _settings(log_level, network, data_dir)
    try:
        chain_source = resolve_brpc_config(resolve_brpc_input(settings))
    except CredentialError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    _print_json(wallet_status(resolve_registry(settings), chain_source))


@app.command()
def balances(
    ledger: Annotated[
        Path | None, typer.Option("--ledger", help="Ledger file (default from settings)")
    ] = None,
    network: NetworkOption = None,
    data_dir: DataDirOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Replay the JSONL ledger into per-account balances (msat)."""
    settings = _settings(log_level, network, data_dir)
    path = ledger if ledger is not None else resolve_ledger_path(settings)
    _print_json(account_balances(read_ledger(path)))


@app.command()
def checksum(
    descriptor: Annotated[str, typer.Argument(help="Descriptor without checksum")],
) -> None:
    """Print a descriptor with its checksum appended."""
    try:
        body, _ = split_checksum(descriptor)
        print(checksum_create(body))
    except ValueError as e:
        logger.error(str(e))
        raise typer.Exit(1)


def main() -> None:
    """Entry point for the ``smaug`` console script."""
    app()


if __name__ == "__main__":
    main()
