"""
Per-wallet chain synchronization.

Each tracked wallet gets one WalletSyncEngine driving its state machine:

    uninitialized -> scanning -> synced -> rescanning (reorg) -> ...
                                        -> halted (reorg deeper than the undo log)
    any -> removed (terminal, set by the registry)

Blocks are processed strictly in height order. For every block the engine,
while holding the wallet's lock and without yielding to the event loop:

1. extends the gap-limit lookahead for scripts the block pays to,
2. classifies every transaction against all tracked wallets and applies
   this wallet's UTXO creations and spends,
3. advances the cursor and appends the block's delta to the undo log,
4. persists the store with the block's events in the outbox,
5. hands the outbox to the ledger sink.

A crash between 4 and 5 leaves the events in the persisted outbox; they
are delivered on restart and the sink drops ids it already has.

The engine only holds the wallet *name*; it looks the wallet up in the
registry at every step and stops as soon as the wallet is gone.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import httpx
from loguru import logger

from smaug.backends.base import Block, ChainBackend
from smaug.bitcoin import get_coin_type
from smaug.classifier import AccountView, build_events, classify_transaction
from smaug.constants import (
    CHECKPOINT_INTERVAL,
    DEFAULT_CONFIRMATION_DEPTH,
    DEFAULT_FILTER_SCAN_THRESHOLD,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_REORG_SAFETY_DEPTH,
    FILTER_SCAN_CHUNK,
    MAX_BACKOFF_SECONDS,
)
from smaug.errors import CredentialError, DeepReorgError, ReorgDetected, SyncError
from smaug.ledger import LedgerSink
from smaug.models import BlockDelta, SyncCursor, SyncState, Utxo
from smaug.tasks import backoff_delay, wait_for_event

if TYPE_CHECKING:
    from smaug.wallet.registry import WalletHandle, WalletRegistry

T = TypeVar("T")


@dataclass
class SyncPolicy:
    """Tunables of the sync engine."""

    confirmation_depth: int = DEFAULT_CONFIRMATION_DEPTH
    reorg_safety_depth: int = DEFAULT_REORG_SAFETY_DEPTH
    filter_scan_threshold: int = DEFAULT_FILTER_SCAN_THRESHOLD
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_backoff: float = MAX_BACKOFF_SECONDS

    def __post_init__(self) -> None:
        if self.reorg_safety_depth < self.confirmation_depth:
            raise ValueError(
                "reorg_safety_depth must be at least confirmation_depth so pruned "
                "UTXOs can still be restored by a rewind"
            )


class WalletSyncEngine:
    """
    Keeps one wallet's UTXO set in step with the chain.

    Args:
        registry: Registry the wallet is looked up in
        name: Wallet name
        backend: Chain source
        sink: Ledger sink receiving the wallet's events
        policy: Sync tunables
        wake: Event set by the tip watcher when a new block arrives
    """

    def __init__(
        self,
        registry: WalletRegistry,
        name: str,
        backend: ChainBackend,
        sink: LedgerSink,
        policy: SyncPolicy | None = None,
        wake: asyncio.Event | None = None,
    ):
        self.registry = registry
        self.name = name
        self.backend = backend
        self.sink = sink
        self.policy = policy or SyncPolicy()
        self.wake = wake or asyncio.Event()
        self.coin_type = get_coin_type(registry.network)
        self.last_error: str | None = None
        self._dirty = False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _handle(self) -> WalletHandle | None:
        handle = self.registry.get(self.name)
        if handle is None or handle.removed:
            return None
        return handle

    async def _call(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Call the chain source, turning its failures into SyncError."""
        try:
            return await func(*args)
        except (httpx.HTTPError, ValueError, KeyError, CredentialError) as e:
            raise SyncError(f"{getattr(func, '__name__', 'chain call')} failed: {e}") from e

    def _set_state(self, handle: WalletHandle, state: SyncState) -> None:
        if handle.store.state is state:
            return
        logger.info(f"Wallet {self.name}: {handle.store.state.value} -> {state.value}")
        handle.store.state = state
        self._dirty = True

    def _persist(self, handle: WalletHandle) -> None:
        handle.save()
        self._dirty = False

    def _flush_outbox(self, handle: WalletHandle) -> None:
        """Deliver pending events, then clear the persisted outbox."""
        store = handle.store
        if not store.outbox:
            return
        for event in store.outbox:
            self.sink.emit(event)
        store.outbox = []
        self._persist(handle)

    async def _persist_if_dirty(self) -> None:
        handle = self._handle()
        if handle is None or not self._dirty:
            return
        async with handle.lock:
            if not handle.removed:
                self._persist(handle)

    # ------------------------------------------------------------------
    # Block application
    # ------------------------------------------------------------------

    @staticmethod
    def _extend_lookahead(handle: WalletHandle, block: Block) -> None:
        """Grow the lookahead until every script the block pays to is derived."""
        grew = True
        while grew:
            grew = False
            for tx in block.transactions:
                for txout in tx.outputs:
                    address = handle.addresses.matches(txout.script)
                    if address is not None and handle.addresses.mark_used(address):
                        grew = True

    def _account_views(self, handle: WalletHandle) -> list[AccountView]:
        """This wallet's view first, then every other live wallet for counterparts."""
        others = [h for h in self.registry.handles() if h is not handle and not h.removed]
        return [
            AccountView(account=h.account, utxos=h.store.utxos, addresses=h.addresses)
            for h in [handle, *others]
        ]

    def _apply_block(self, handle: WalletHandle, block: Block) -> BlockDelta:
        store = handle.store
        delta = BlockDelta(height=block.height, block_hash=block.hash)
        views = self._account_views(handle)
        own = {handle.account}

        for tx in block.transactions:
            classification = classify_transaction(tx, views)
            owned_inputs = [i for i in classification.owned_inputs if i.account in own]
            owned_outputs = [o for o in classification.owned_outputs if o.account in own]
            if not owned_inputs and not owned_outputs:
                continue

            delta.events.extend(
                build_events(classification, block, self.coin_type, emitting=own, epoch=store.epoch)
            )

            for owned_in in owned_inputs:
                utxo = owned_in.utxo
                delta.spent.append(utxo.model_copy())
                utxo.spent = True
                utxo.spending_txid = tx.txid
                utxo.spent_height = block.height

            for owned_out in owned_outputs:
                address = owned_out.address
                descriptor = handle.addresses.descriptors[address.chain]
                utxo = Utxo(
                    txid=tx.txid,
                    vout=owned_out.output.n,
                    value=owned_out.output.value,
                    account=handle.account,
                    script_type=descriptor.template.script_type,
                    script=address.script,
                    chain=address.chain,
                    index=address.index,
                    height=block.height,
                )
                store.utxos[utxo.outpoint] = utxo
                delta.created.append(utxo.model_copy())
                handle.addresses.mark_used(address)

        return delta

    def _prune(self, handle: WalletHandle, height: int) -> None:
        store = handle.store
        cutoff = height - self.policy.confirmation_depth + 1
        buried = [
            outpoint
            for outpoint, utxo in store.utxos.items()
            if utxo.spent and utxo.spent_height is not None and utxo.spent_height <= cutoff
        ]
        for outpoint in buried:
            del store.utxos[outpoint]

        oldest_kept = height - self.policy.reorg_safety_depth
        if store.undo_log and store.undo_log[0].height <= oldest_kept:
            store.undo_log = [d for d in store.undo_log if d.height > oldest_kept]

    async def _process_block(self, block: Block) -> bool:
        """
        Apply one block and emit its events.

        Returns:
            False if the wallet was removed meanwhile

        Raises:
            ReorgDetected: If the block does not build on the cursor
        """
        handle = self._handle()
        if handle is None:
            return False

        async with handle.lock:
            if handle.removed:
                return False
            store = handle.store
            cursor = store.cursor
            if (
                block.prev_hash is not None
                and cursor.block_hash is not None
                and block.height == cursor.height + 1
                and block.prev_hash != cursor.block_hash
            ):
                raise ReorgDetected(cursor.height)

            self._extend_lookahead(handle, block)
            delta = self._apply_block(handle, block)

            store.cursor = SyncCursor(wallet=self.name, height=block.height, block_hash=block.hash)
            store.undo_log.append(delta)
            self._prune(handle, block.height)

            if delta.events or delta.created or delta.spent:
                store.outbox.extend(delta.events)
                self._persist(handle)
                self._flush_outbox(handle)
                logger.debug(
                    f"Wallet {self.name}: block {block.height} +{len(delta.created)} "
                    f"-{len(delta.spent)} utxo(s), {len(delta.events)} event(s)"
                )
            elif block.height % CHECKPOINT_INTERVAL == 0:
                self._persist(handle)
            else:
                self._dirty = True
        return True

    async def _checkpoint(self, height: int, block_hash: str) -> bool:
        """Advance over a block known not to touch the wallet."""
        return await self._process_block(
            Block(hash=block_hash, height=height, prev_hash=None, time=0)
        )

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    async def _scan_blocks(self, start: int, stop: int) -> None:
        """Fetch and apply every block in ``[start, stop]``."""
        for height in range(start, stop + 1):
            block_hash = await self._call(self.backend.get_block_hash, height)
            block = await self._call(self.backend.get_block, block_hash)
            if not await self._process_block(block):
                return

    async def _scan_filtered(self, start: int, stop: int, tip: int) -> None:
        """
        Apply only the blocks compact filters flag as relevant.

        Blocks within the reorg safety window below the tip are still
        checkpointed one by one so a later rewind can find its fork point.
        """
        handle = self._handle()
        if handle is None:
            return

        ranges = [(d.to_string(), count) for d, count in handle.addresses.scan_ranges()]
        derived_before = len(handle.addresses)
        relevant = await self._call(self.backend.get_relevant_blocks, ranges, start, stop)
        if relevant is None:
            await self._scan_blocks(start, stop)
            return

        window_start = max(start, tip - self.policy.reorg_safety_depth + 1)
        relevant_set = set(relevant)

        for block_hash in relevant:
            block = await self._call(self.backend.get_block, block_hash)
            if block.height >= window_start:
                continue
            if await self._call(self.backend.get_block_hash, block.height) != block.hash:
                raise ReorgDetected(block.height)
            if not await self._process_block(block):
                return
            if len(handle.addresses) != derived_before:
                # New scripts were derived; rescan the rest of the range with them
                return

        if stop < window_start:
            await self._checkpoint(stop, await self._call(self.backend.get_block_hash, stop))
            return

        for height in range(max(window_start, handle.store.cursor.height + 1), stop + 1):
            block_hash = await self._call(self.backend.get_block_hash, height)
            if block_hash in relevant_set:
                block = await self._call(self.backend.get_block, block_hash)
                if not await self._process_block(block):
                    return
                if len(handle.addresses) != derived_before:
                    return
            elif not await self._checkpoint(height, block_hash):
                return

    async def _cursor_on_chain(self, cursor: SyncCursor, tip: int) -> bool:
        if cursor.block_hash is None:
            return True
        if cursor.height > tip:
            return False
        return await self._call(self.backend.get_block_hash, cursor.height) == cursor.block_hash

    async def rewind(self, tip: int) -> int:
        """
        Roll the wallet back to the newest undo-log block still on the chain.

        Reverted blocks get compensating events; nothing already emitted is
        retracted.

        Returns:
            Height of the common ancestor

        Raises:
            DeepReorgError: If no retained block is still on the chain
        """
        handle = self._handle()
        if handle is None:
            return -1

        ancestor: BlockDelta | None = None
        for delta in reversed(handle.store.undo_log):
            if delta.height > tip:
                continue
            if await self._call(self.backend.get_block_hash, delta.height) == delta.block_hash:
                ancestor = delta
                break

        if ancestor is None:
            undo_log = handle.store.undo_log
            fork_height = undo_log[0].height if undo_log else handle.store.cursor.height
            raise DeepReorgError(fork_height, self.policy.reorg_safety_depth)

        async with handle.lock:
            if handle.removed:
                return ancestor.height
            store = handle.store
            reverted = [d for d in store.undo_log if d.height > ancestor.height]
            compensations = []
            for delta in reversed(reverted):
                for snapshot in delta.spent:
                    store.utxos[snapshot.outpoint] = snapshot.model_copy()
                for created in delta.created:
                    store.utxos.pop(created.outpoint, None)
                compensations.extend(event.compensate() for event in reversed(delta.events))

            store.undo_log = [d for d in store.undo_log if d.height <= ancestor.height]
            store.cursor = SyncCursor(
                wallet=self.name, height=ancestor.height, block_hash=ancestor.block_hash
            )
            store.epoch += 1
            self._set_state(handle, SyncState.RESCANNING)
            store.outbox.extend(compensations)
            self._persist(handle)
            self._flush_outbox(handle)

        logger.warning(
            f"Wallet {self.name}: reorg, rewound {len(reverted)} block(s) to height "
            f"{ancestor.height}, emitted {len(compensations)} reversal(s)"
        )
        return ancestor.height

    async def sync_once(self) -> bool:
        """
        Process whatever the chain source has beyond the cursor.

        Returns:
            True when the wallet is at the chain tip
        """
        handle = self._handle()
        if handle is None:
            return True

        async with handle.lock:
            if not handle.removed:
                self._flush_outbox(handle)

        tip = await self._call(self.backend.get_block_height)
        cursor = handle.store.cursor
        if not await self._cursor_on_chain(cursor, tip):
            await self.rewind(tip)
            return False

        if cursor.height >= tip:
            self._set_state(handle, SyncState.SYNCED)
            await self._persist_if_dirty()
            return True

        start = cursor.height + 1
        behind = tip - cursor.height
        state = handle.store.state
        if state is not SyncState.RESCANNING and (
            state is not SyncState.SYNCED or behind > self.policy.filter_scan_threshold
        ):
            self._set_state(handle, SyncState.SCANNING)

        if behind > self.policy.filter_scan_threshold:
            stop = min(tip, start + FILTER_SCAN_CHUNK - 1)
            logger.info(f"Wallet {self.name}: scanning blocks {start}-{stop} (tip {tip})")
            await self._scan_filtered(start, stop, tip)
        else:
            await self._scan_blocks(start, tip)

        await self._persist_if_dirty()
        if handle.removed:
            return True
        if handle.store.cursor.height >= tip:
            self._set_state(handle, SyncState.SYNCED)
            await self._persist_if_dirty()
            return True
        return False

    # ------------------------------------------------------------------
    # Task loop
    # ------------------------------------------------------------------

    async def _halt(self, reason: str) -> None:
        handle = self._handle()
        if handle is None:
            return
        async with handle.lock:
            if handle.removed:
                return
            handle.store.error = reason
            self._set_state(handle, SyncState.HALTED)
            self._persist(handle)

    async def run(self) -> None:
        """Sync until the wallet is removed, halted or the task is cancelled."""
        handle = self._handle()
        if handle is None:
            return
        if handle.store.state is SyncState.HALTED:
            logger.error(f"Wallet {self.name} is halted: {handle.store.error}")
            return

        logger.info(f"Sync task for wallet {self.name} started")
        failures = 0
        while self._handle() is not None:
            try:
                caught_up = await self.sync_once()
                failures = 0
                self.last_error = None
            except DeepReorgError as e:
                logger.error(f"Wallet {self.name}: {e}")
                self.last_error = str(e)
                await self._halt(str(e))
                break
            except ReorgDetected as e:
                logger.info(f"Wallet {self.name}: {e}, re-checking chain")
                continue
            except (SyncError, OSError) as e:
                failures += 1
                delay = backoff_delay(failures, cap=self.policy.max_backoff)
                self.last_error = str(e)
                logger.warning(
                    f"Wallet {self.name}: sync failed ({e}), retry {failures} in {delay:.0f}s"
                )
                await asyncio.sleep(delay)
                continue
            except asyncio.CancelledError:
                logger.info(f"Sync task for wallet {self.name} cancelled")
                raise

            if caught_up:
                await wait_for_event(self.wake, self.policy.poll_interval)

        logger.info(f"Sync task for wallet {self.name} stopped")
