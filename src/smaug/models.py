"""
Data models for smaug wallets, UTXOs and ledger events.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from smaug.bitcoin import format_outpoint, sha256
from smaug.constants import ACCOUNT_PREFIX


class Chain(str, Enum):
    """Derivation chain of a wallet address."""

    EXTERNAL = "external"
    INTERNAL = "internal"


class SyncState(str, Enum):
    """Per-wallet sync state machine."""

    UNINITIALIZED = "uninitialized"
    SCANNING = "scanning"
    SYNCED = "synced"
    RESCANNING = "rescanning"
    HALTED = "halted"
    REMOVED = "removed"


class EventKind(str, Enum):
    DEPOSIT = "deposit"
    SPEND = "spend"

    def flipped(self) -> EventKind:
        return EventKind.SPEND if self is EventKind.DEPOSIT else EventKind.DEPOSIT


def wallet_account(name: str) -> str:
    """Ledger account of a tracked wallet."""
    return f"{ACCOUNT_PREFIX}{name}"


class DerivedAddress(BaseModel):
    """A script derived from one of a wallet's descriptors."""

    model_config = ConfigDict(frozen=True)

    wallet: str
    chain: Chain
    index: int = Field(..., ge=0)
    script: str  # scriptPubKey hex

    @property
    def account(self) -> str:
        return wallet_account(self.wallet)


class Utxo(BaseModel):
    """An output owned by a tracked wallet."""

    txid: str
    vout: int = Field(..., ge=0)
    value: int = Field(..., ge=0)  # satoshis
    account: str
    script_type: str
    script: str
    chain: Chain
    index: int
    height: int
    spent: bool = False
    spending_txid: str | None = None
    spent_height: int | None = None

    @property
    def outpoint(self) -> str:
        return format_outpoint(self.txid, self.vout)


class SyncCursor(BaseModel):
    """Last block a wallet has fully processed."""

    wallet: str
    height: int
    block_hash: str | None = None


class LedgerEvent(BaseModel):
    """
    A single append-only ledger entry.

    Amounts are in millisatoshis. Reversal events compensate an earlier event
    whose block was reorganized out of the chain.
    """

    model_config = ConfigDict(frozen=True)

    account: str
    kind: EventKind
    amount_msat: int = Field(..., ge=0)
    outpoint: str
    block_height: int
    timestamp: int
    counterpart_account: str | None = None
    spending_txid: str | None = None
    coin_type: str = "bc"
    block_hash: str | None = None
    reversal: bool = False
    # Bumped on every rewind so re-applied blocks never reuse an id
    epoch: int = 0

    @property
    def event_id(self) -> str:
        """Deterministic identifier used to make delivery idempotent."""
        key = "|".join(
            (
                self.account,
                self.kind.value,
                self.outpoint,
                str(self.block_height),
                self.block_hash or "",
                str(self.epoch),
                "reversal" if self.reversal else "original",
            )
        )
        return sha256(key.encode("utf-8")).hex()[:32]

    def signed_amount(self) -> int:
        """Balance effect of this event on its account."""
        return self.amount_msat if self.kind is EventKind.DEPOSIT else -self.amount_msat

    def compensate(self) -> LedgerEvent:
        """Build the reversal for this event."""
        return self.model_copy(update={"kind": self.kind.flipped(), "reversal": True})


class BlockDelta(BaseModel):
    """
    UTXO changes a single block applied to one wallet.

    Spent entries are snapshots taken before the spend so a rewind can
    restore them exactly.
    """

    height: int
    block_hash: str
    created: list[Utxo] = Field(default_factory=list)
    spent: list[Utxo] = Field(default_factory=list)
    events: list[LedgerEvent] = Field(default_factory=list)
