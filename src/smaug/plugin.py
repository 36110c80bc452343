"""
Lightning node plugin entry point.

Registers the ``smaug`` RPC method, the ``utxo_deposit``/``utxo_spent``
notification topics consumed by the node's bookkeeper, and a
``block_added`` subscription that wakes the wallet sync tasks.

pyln-client dispatches requests on its own thread; the service runs on a
dedicated asyncio loop thread and requests are bridged with
``run_coroutine_threadsafe``.
"""

from __future__ import annotations

import asyncio
import sys
import threading
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

from loguru import logger
from pyln.client import Plugin, RpcError

from smaug.bitcoin import parse_network
from smaug.brpc_auth import resolve_brpc_config
from smaug.cli_common import resolve_brpc_input, resolve_registry, resolve_sync_policy
from smaug.commands import dispatch
from smaug.errors import CredentialError, SmaugError
from smaug.ledger import JsonlLedgerSink, LedgerSink, to_bookkeeper_notification
from smaug.models import LedgerEvent
from smaug.paths import get_bookkeeper_journal_path
from smaug.service import SmaugService
from smaug.settings import get_settings

# Seconds a ``smaug`` request may wait on the service loop
REQUEST_TIMEOUT = 120.0

# loguru level -> host log level
LOG_LEVELS = {
    "TRACE": "debug",
    "DEBUG": "debug",
    "INFO": "info",
    "SUCCESS": "info",
    "WARNING": "warn",
    "ERROR": "unusual",
    "CRITICAL": "broken",
}

# Logs reach the host through _forward_log; stdout stays the JSON-RPC channel
plugin = Plugin(autopatch=False)


class BookkeeperSink(LedgerSink):
    """
    Sends ledger events to the host bookkeeper as custom notifications.

    Every notified event is appended to ``journal`` so ids delivered before a
    restart are not sent again. A crash between a notification and its journal
    write resends that single event; the bookkeeper ignores a chain event it
    already has for the same account, outpoint and tag.
    """

    def __init__(self, plugin: Plugin, journal: JsonlLedgerSink):
        self.plugin = plugin
        self.journal = journal

    def emit(self, event: LedgerEvent) -> None:
        if event.event_id in self.journal:
            return
        topic, payload = to_bookkeeper_notification(event)
        self.plugin.notify(topic, payload)
        self.journal.emit(event)


class ServiceLoop:
    """Asyncio loop running on a background thread."""

    def __init__(self) -> None:
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(
            target=self.loop.run_forever, name="smaug-loop", daemon=True
        )

    def start(self) -> None:
        self.thread.start()

    def call(self, coro: Coroutine[Any, Any, Any], timeout: float | None = None) -> Any:
        """Run ``coro`` on the loop and wait for its result."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def call_soon(self, callback: Any, *args: Any) -> None:
        self.loop.call_soon_threadsafe(callback, *args)


class PluginState:
    service: SmaugService | None = None
    runtime: ServiceLoop | None = None


state = PluginState()


def _forward_log(message: Any) -> None:
    record = message.record
    plugin.log(str(record["message"]), level=LOG_LEVELS.get(record["level"].name, "info"))


def _option(options: dict[str, Any], name: str) -> Any:
    value = options.get(name)
    if value in (None, ""):
        return None
    return value


plugin.add_option("smaug_brpc_host", "127.0.0.1", "bitcoind RPC host", opt_type="string")
plugin.add_option(
    "smaug_brpc_port", None, "bitcoind RPC port (defaults based on network)", opt_type="int"
)
plugin.add_option("smaug_brpc_user", None, "bitcoind RPC user", opt_type="string")
plugin.add_option("smaug_brpc_pass", None, "bitcoind RPC password", opt_type="string")
plugin.add_option(
    "smaug_brpc_cookie_dir",
    None,
    "Directory holding bitcoind's .cookie file",
    opt_type="string",
)
plugin.add_notification_topic("utxo_deposit")
plugin.add_notification_topic("utxo_spent")


@plugin.init()
def init(options: dict[str, Any], configuration: dict[str, Any], plugin: Plugin, **kwargs: Any):
    logger.remove()
    logger.add(_forward_log, level=get_settings().logging.level.upper(), format="{message}")

    network = parse_network(configuration.get("network") or plugin.rpc.getinfo()["network"])
    data_dir = Path(configuration["lightning-dir"]).parent
    brpc = {
        "host": _option(options, "smaug_brpc_host"),
        "port": _option(options, "smaug_brpc_port"),
        "user": _option(options, "smaug_brpc_user"),
        "password": _option(options, "smaug_brpc_pass"),
        "cookie_dir": _option(options, "smaug_brpc_cookie_dir"),
    }
    settings = get_settings(
        data_dir=data_dir,
        network=network,
        brpc={k: v for k, v in brpc.items() if v is not None},
    )

    try:
        host_configs = plugin.rpc.listconfigs()
    except RpcError as e:
        logger.debug(f"listconfigs unavailable: {e}")
        host_configs = None

    try:
        chain_source = resolve_brpc_config(
            resolve_brpc_input(settings, network=network, host_configs=host_configs)
        )
    except CredentialError as e:
        logger.error(str(e))
        return {"disable": str(e)}

    runtime = ServiceLoop()
    runtime.start()
    registry = resolve_registry(settings)
    service = SmaugService(
        registry,
        BookkeeperSink(plugin, JsonlLedgerSink(get_bookkeeper_journal_path(registry.store_dir))),
        chain_source,
        policy=resolve_sync_policy(settings),
        rpc_timeout=settings.brpc.timeout,
    )
    runtime.call(service.start())
    state.service = service
    state.runtime = runtime
    logger.info(f"smaug initialized on {network.value} with {len(registry)} wallet(s)")
    return None


@plugin.method("smaug")
def smaug(plugin: Plugin, command: str = "ls", *args: Any, **kwargs: Any) -> Any:
    """Watch descriptor wallets: smaug ls | add <descriptor> [...] | remove <name> | status"""
    if state.service is None or state.runtime is None:
        raise SmaugError("smaug is not initialized")
    params: Any = kwargs if kwargs else list(args)
    return state.runtime.call(dispatch(state.service, command, params), timeout=REQUEST_TIMEOUT)


@plugin.subscribe("block_added")
def on_block_added(plugin: Plugin, block_added: dict[str, Any] | None = None, **kwargs: Any):
    if state.service is None or state.runtime is None:
        return
    height = (block_added or {}).get("height")
    logger.debug(f"block_added {height}")
    state.runtime.call_soon(state.service.notify_new_block)


@plugin.subscribe("shutdown")
def on_shutdown(plugin: Plugin, **kwargs: Any):
    if state.service is not None and state.runtime is not None:
        state.runtime.call(state.service.stop(), timeout=REQUEST_TIMEOUT)
    sys.exit(0)


def main() -> None:
    """Entry point for the ``smaug-plugin`` executable."""
    plugin.run()


if __name__ == "__main__":
    main()
