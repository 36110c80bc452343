"""
Smaug service: the registry, the chain source and one sync task per wallet.

Both front ends (the node plugin and the standalone ``smaug run`` watcher)
drive the same service; they only differ in where ledger events end up and
where the bitcoind credentials come from.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from loguru import logger

from smaug.backends.base import ChainBackend
from smaug.backends.bitcoind import DEFAULT_RPC_TIMEOUT, BitcoindBackend
from smaug.brpc_auth import BrpcConfig, Unconfigured
from smaug.errors import StoreError
from smaug.ledger import LedgerSink
from smaug.sync import SyncPolicy, WalletSyncEngine
from smaug.tasks import run_periodic_task
from smaug.wallet.registry import WalletHandle, WalletRegistry


class SmaugService:
    """
    Runs the wallet sync tasks and serves the user-facing operations.

    Args:
        registry: Wallet registry (already loaded)
        sink: Ledger sink for every wallet's events
        chain_source: Resolved bitcoind connection, or Unconfigured
        policy: Sync tunables
        backend: Chain source override (tests); built from chain_source otherwise
        rpc_timeout: Timeout for regular bitcoind RPC calls
    """

    def __init__(
        self,
        registry: WalletRegistry,
        sink: LedgerSink,
        chain_source: BrpcConfig | Unconfigured,
        policy: SyncPolicy | None = None,
        backend: ChainBackend | None = None,
        rpc_timeout: float = DEFAULT_RPC_TIMEOUT,
    ):
        self.registry = registry
        self.sink = sink
        self.chain_source = chain_source
        self.policy = policy or SyncPolicy()
        if backend is None and isinstance(chain_source, BrpcConfig):
            backend = BitcoindBackend(chain_source, timeout=rpc_timeout)
        self.backend = backend

        self.engines: dict[str, WalletSyncEngine] = {}
        self.tasks: dict[str, asyncio.Task[None]] = {}
        self.running = False
        self._tip: int | None = None
        self._tip_task: asyncio.Task[None] | None = None

    @property
    def configured(self) -> bool:
        return self.backend is not None

    async def start(self) -> None:
        """Start a sync task for every registered wallet and the tip watcher."""
        self.running = True
        if not self.configured:
            logger.warning(
                f"Chain source not configured; {len(self.registry)} wallet(s) stay paused"
            )
            return

        for name in self.registry.names():
            self._start_sync(name)

        self._tip_task = asyncio.create_task(
            run_periodic_task(
                "tip watcher",
                self._poll_tip,
                self.policy.poll_interval,
                running_check=lambda: self.running,
            ),
            name="smaug-tip-watcher",
        )
        logger.info(f"Smaug started with {len(self.tasks)} wallet sync task(s)")

    async def stop(self) -> None:
        """Cancel all tasks and close the chain source."""
        self.running = False
        tasks = list(self.tasks.values())
        if self._tip_task is not None:
            tasks.append(self._tip_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.tasks.clear()
        self.engines.clear()
        self._tip_task = None

        if self.backend is not None:
            await self.backend.close()
        logger.info("Smaug stopped")

    def _start_sync(self, name: str) -> None:
        if self.backend is None or name in self.tasks:
            return
        engine = WalletSyncEngine(
            registry=self.registry,
            name=name,
            backend=self.backend,
            sink=self.sink,
            policy=self.policy,
        )
        task = asyncio.create_task(engine.run(), name=f"smaug-sync-{name}")
        task.add_done_callback(self._on_task_done)
        self.engines[name] = engine
        self.tasks[name] = task

    @staticmethod
    def _on_task_done(task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Task {task.get_name()} crashed: {exc}")

    async def _stop_sync(self, handle: WalletHandle) -> None:
        self.engines.pop(handle.name, None)
        task = self.tasks.pop(handle.name, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _poll_tip(self) -> None:
        if self.backend is None:
            return
        tip = await self.backend.get_block_height()
        if tip != self._tip:
            logger.debug(f"Chain tip {self._tip} -> {tip}")
            self._tip = tip
            self.notify_new_block()

    def notify_new_block(self) -> None:
        """Wake every sync task (new block announced by the host node)."""
        for engine in self.engines.values():
            engine.wake.set()

    async def add(
        self,
        descriptor: str,
        change_descriptor: str | None = None,
        birthday: int | None = None,
        gap: int | None = None,
    ) -> dict[str, str]:
        """
        Register a wallet and start syncing it.

        Returns:
            Dict with the wallet ``name`` and a confirmation ``message``
        """
        handle = await self.registry.add(descriptor, change_descriptor, birthday, gap)
        if self.running:
            self._start_sync(handle.name)
        return {
            "name": handle.name,
            "message": f"Wallet with deterministic name {handle.name} successfully added",
        }

    def list(self) -> dict[str, dict[str, Any]]:
        return self.registry.list()

    async def remove(self, name: str) -> str:
        """Stop syncing a wallet and delete its store."""
        try:
            await self.registry.remove(name, stop_sync=self._stop_sync)
        except StoreError:
            if self.running and name in self.registry:
                self._start_sync(name)
            raise
        return f"Deleted wallet: {name}"

    def status(self) -> dict[str, Any]:
        return wallet_status(self.registry, self.chain_source, self.engines)


def wallet_status(
    registry: WalletRegistry,
    chain_source: BrpcConfig | Unconfigured,
    engines: Mapping[str, WalletSyncEngine] | None = None,
) -> dict[str, Any]:
    """
    Chain source and per-wallet sync state.

    Never touches the chain source, so it also answers while unconfigured.
    """
    engines = engines or {}
    wallets = {}
    for handle in registry.handles():
        store = handle.store
        engine = engines.get(handle.name)
        wallets[handle.name] = {
            "state": store.state.value,
            "height": store.cursor.height,
            "block_hash": store.cursor.block_hash,
            "error": store.error or (engine.last_error if engine else None),
        }

    if isinstance(chain_source, Unconfigured):
        source: dict[str, Any] = {"status": "not_configured", "message": chain_source.message}
    else:
        source = {"status": "configured", "url": chain_source.url}
    return {
        "network": registry.network.value,
        "chain_source": source,
        "wallets": wallets,
    }
