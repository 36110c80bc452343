"""
Tests for SmaugService task management.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest
from _smaug_test_helpers import FakeChain, make_tx, spend

from smaug.brpc_auth import BrpcConfig, Unconfigured, UserPassAuth
from smaug.constants import EXTERNAL_ACCOUNT
from smaug.errors import StoreError
from smaug.ledger import MemoryLedgerSink, account_balances
from smaug.models import EventKind, SyncState
from smaug.service import SmaugService, wallet_status
from smaug.sync import SyncPolicy
from smaug.wallet.registry import WalletRegistry

CONFIG = BrpcConfig(host="127.0.0.1", port=8332, auth=UserPassAuth("u", "p"), source="test")


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.fixture
def service(registry: WalletRegistry, chain: FakeChain, sink: MemoryLedgerSink) -> SmaugService:
    return SmaugService(
        registry,
        sink,
        CONFIG,
        policy=SyncPolicy(poll_interval=0.05),
        backend=chain,
    )


class TestLifecycle:
    """Tests for starting and stopping wallet sync tasks."""

    @pytest.mark.asyncio
    async def test_starts_task_per_registered_wallet(
        self,
        service: SmaugService,
        registry: WalletRegistry,
        chain: FakeChain,
        multipath_descriptor: str,
        taproot_descriptor: str,
    ) -> None:
        first = await registry.add(multipath_descriptor)
        second = await registry.add(taproot_descriptor)

        await service.start()
        try:
            assert set(service.tasks) == {first.name, second.name}
            await wait_until(
                lambda: all(h.store.state is SyncState.SYNCED for h in registry.handles())
            )
        finally:
            await service.stop()

        assert service.tasks == {}
        assert not service.running
        assert chain.closed

    @pytest.mark.asyncio
    async def test_add_while_running_syncs_deposit(
        self,
        service: SmaugService,
        chain: FakeChain,
        sink: MemoryLedgerSink,
        taproot_descriptor: str,
    ) -> None:
        await service.start()
        try:
            result = await service.add(taproot_descriptor)
            name = result["name"]
            assert name in service.tasks

            handle = service.registry.get(name)
            assert handle is not None
            chain.mine([make_tx("deposit", [(handle.external.script_at(0), 25_000)])])
            service.notify_new_block()

            await wait_until(lambda: len(sink.events) == 1)
            assert sink.events[0].kind is EventKind.DEPOSIT
            assert sink.events[0].account == handle.account
            assert sink.events[0].amount_msat == 25_000_000
            await wait_until(lambda: service.list()[name]["balance"] == 25_000_000)
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_tip_watcher_picks_up_new_blocks(
        self,
        service: SmaugService,
        registry: WalletRegistry,
        chain: FakeChain,
        taproot_descriptor: str,
    ) -> None:
        handle = await registry.add(taproot_descriptor)
        await service.start()
        try:
            await wait_until(lambda: handle.store.state is SyncState.SYNCED)
            chain.mine_empty(3)
            await wait_until(lambda: handle.store.cursor.height == 3)
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_remove_stops_task_and_deletes_store(
        self,
        service: SmaugService,
        registry: WalletRegistry,
        taproot_descriptor: str,
    ) -> None:
        handle = await registry.add(taproot_descriptor)
        await service.start()
        try:
            task = service.tasks[handle.name]
            await wait_until(lambda: handle.store.state is SyncState.SYNCED)

            assert await service.remove(handle.name) == f"Deleted wallet: {handle.name}"

            assert task.done()
            assert handle.name not in service.tasks
            assert handle.name not in service.engines
            assert not handle.path.exists()
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_failed_remove_restarts_sync(
        self,
        service: SmaugService,
        registry: WalletRegistry,
        taproot_descriptor: str,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        handle = await registry.add(taproot_descriptor)
        await service.start()
        try:
            first_task = service.tasks[handle.name]
            await wait_until(lambda: handle.store.state is SyncState.SYNCED)

            def deny(path: Path) -> None:
                raise PermissionError(f"Permission denied: '{path}'")

            monkeypatch.setattr("smaug.wallet.registry.delete_store", deny)
            with pytest.raises(StoreError):
                await service.remove(handle.name)

            assert first_task.done()
            assert handle.name in service.registry
            assert handle.path.exists()
            assert not service.tasks[handle.name].done()
            assert service.status()["wallets"][handle.name]["state"] == "synced"
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_transfer_between_running_wallets(
        self,
        service: SmaugService,
        registry: WalletRegistry,
        chain: FakeChain,
        sink: MemoryLedgerSink,
        multipath_descriptor: str,
        taproot_descriptor: str,
    ) -> None:
        sender = await registry.add(multipath_descriptor)
        receiver = await registry.add(taproot_descriptor)
        assert sender.internal is not None
        funding = make_tx("funding", [(sender.external.script_at(0), 100_000)])
        chain.mine([funding])
        chain.mine(
            [
                make_tx(
                    "transfer",
                    [
                        (receiver.external.script_at(0), 90_000),
                        (sender.internal.script_at(0), 9_000),
                    ],
                    inputs=[spend(funding, 0)],
                )
            ]
        )

        await service.start()
        try:
            await wait_until(
                lambda: all(h.store.state is SyncState.SYNCED for h in registry.handles())
            )
        finally:
            await service.stop()

        balances = account_balances(sink.events)
        assert EXTERNAL_ACCOUNT not in balances
        assert balances == {sender.account: 9_000_000, receiver.account: 90_000_000}
        assert service.list()[sender.name]["balance"] == 9_000_000
        assert service.list()[receiver.name]["balance"] == 90_000_000

    @pytest.mark.asyncio
    async def test_unconfigured_service_starts_no_tasks(
        self, registry: WalletRegistry, sink: MemoryLedgerSink, taproot_descriptor: str
    ) -> None:
        service = SmaugService(registry, sink, Unconfigured("set smaug_brpc_user"))
        await registry.add(taproot_descriptor)

        await service.start()
        assert not service.configured
        assert service.tasks == {}

        added = await service.add(
            taproot_descriptor.replace("/0/*", "/1/*"), birthday=100
        )
        assert added["name"] in service.registry
        assert service.tasks == {}
        await service.stop()


class TestStatus:
    """Tests for status reporting."""

    @pytest.mark.asyncio
    async def test_configured_status(
        self, service: SmaugService, registry: WalletRegistry, taproot_descriptor: str
    ) -> None:
        handle = await registry.add(taproot_descriptor)
        status = service.status()
        assert status["chain_source"] == {"status": "configured", "url": "http://127.0.0.1:8332"}
        assert status["wallets"][handle.name] == {
            "state": "scanning",
            "height": -1,
            "block_hash": None,
            "error": None,
        }

    @pytest.mark.asyncio
    async def test_status_reports_halt_reason(
        self, registry: WalletRegistry, taproot_descriptor: str
    ) -> None:
        handle = await registry.add(taproot_descriptor)
        handle.store.state = SyncState.HALTED
        handle.store.error = "Reorg below height 5 exceeds the safety depth"

        status = wallet_status(registry, Unconfigured("missing"))
        assert status["wallets"][handle.name]["state"] == "halted"
        assert status["wallets"][handle.name]["error"] == handle.store.error
        assert status["chain_source"]["status"] == "not_configured"

    def test_notify_new_block_wakes_engines(self, service: SmaugService) -> None:
        class Engine:
            def __init__(self) -> None:
                self.wake = asyncio.Event()

        engine = Engine()
        service.engines["abcdefgh"] = engine  # type: ignore[assignment]
        service.notify_new_block()
        assert engine.wake.is_set()
