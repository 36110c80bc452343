"""
Transaction classification and ledger event construction.

A transaction is split into owned and unowned inputs/outputs per tracked
account. Every owned input becomes one ``spend`` event on its account and
every owned output one ``deposit`` event on its account. A jointly funded
(payjoin) transaction therefore needs no special handling: it simply yields
events on several accounts.

When tracked funds leave through unowned outputs, each such output is
recorded as a ``deposit`` on the ``external`` account, so the outflow shows
up in the double-entry ledger the same way the host bookkeeper records
withdrawals. Only the first funding account emits these, so a transaction
funded by several wallets is counted once.

An input already marked spent by the very transaction being classified
still counts as owned, so a wallet processing a block after another tracked
wallet has applied it sees the same partition.

The classifier only reads wallet state; the sync engine applies the result.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from smaug.backends.base import Block, BlockTransaction, TxOut
from smaug.bitcoin import format_outpoint, sats_to_msat
from smaug.constants import EXTERNAL_ACCOUNT
from smaug.models import DerivedAddress, EventKind, LedgerEvent, Utxo


class ScriptMatcher(Protocol):
    def matches(self, script: bytes) -> DerivedAddress | None: ...


@dataclass
class AccountView:
    """What the classifier may know about one tracked account."""

    account: str
    utxos: Mapping[str, Utxo]
    addresses: ScriptMatcher


@dataclass
class OwnedInput:
    account: str
    utxo: Utxo


@dataclass
class OwnedOutput:
    account: str
    output: TxOut
    address: DerivedAddress


@dataclass
class TxClassification:
    """Ownership partition of one transaction."""

    txid: str
    owned_inputs: list[OwnedInput] = field(default_factory=list)
    owned_outputs: list[OwnedOutput] = field(default_factory=list)
    external_outputs: list[TxOut] = field(default_factory=list)
    external_input_count: int = 0

    @property
    def funding_accounts(self) -> list[str]:
        return _unique(i.account for i in self.owned_inputs)

    @property
    def receiving_accounts(self) -> list[str]:
        return _unique(o.account for o in self.owned_outputs)


def _unique(items) -> list[str]:
    seen: list[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


def classify_transaction(tx: BlockTransaction, views: Sequence[AccountView]) -> TxClassification:
    """
    Partition a transaction's inputs and outputs by owning account.

    Args:
        tx: Transaction to classify
        views: Tracked accounts (UTXO sets and derived scripts)

    Returns:
        TxClassification
    """
    result = TxClassification(txid=tx.txid)

    for txin in tx.inputs:
        owner = None
        if not txin.is_coinbase:
            outpoint = format_outpoint(txin.txid, txin.vout)  # type: ignore[arg-type]
            for view in views:
                utxo = view.utxos.get(outpoint)
                if utxo is not None and (not utxo.spent or utxo.spending_txid == tx.txid):
                    owner = OwnedInput(account=view.account, utxo=utxo)
                    break
        if owner is None:
            result.external_input_count += 1
        else:
            result.owned_inputs.append(owner)

    for txout in tx.outputs:
        owned = None
        for view in views:
            address = view.addresses.matches(txout.script)
            if address is not None:
                owned = OwnedOutput(account=view.account, output=txout, address=address)
                break
        if owned is None:
            result.external_outputs.append(txout)
        else:
            result.owned_outputs.append(owned)

    return result


def _deposit_counterpart(account: str, funding: list[str]) -> str | None:
    if account in funding:
        return None
    if len(funding) == 1:
        return funding[0]
    return EXTERNAL_ACCOUNT


def _spend_counterpart(
    account: str, receiving: list[str], has_external_outputs: bool
) -> str | None:
    others = [r for r in receiving if r != account]
    if not others and not has_external_outputs:
        return None
    if len(others) == 1 and not has_external_outputs:
        return others[0]
    return EXTERNAL_ACCOUNT


def build_events(
    classification: TxClassification,
    block: Block,
    coin_type: str,
    emitting: set[str] | None = None,
    epoch: int = 0,
) -> list[LedgerEvent]:
    """
    Turn a classification into ledger events.

    Args:
        classification: Result of classify_transaction
        block: Block containing the transaction
        coin_type: Bookkeeper currency identifier
        emitting: Accounts whose events should be produced (default: all)
        epoch: Rewind counter of the emitting wallet

    Returns:
        Spend events (input order), then deposit events (output order), then
        external outflow deposits
    """
    funding = classification.funding_accounts
    receiving = classification.receiving_accounts
    has_external_outputs = bool(classification.external_outputs)

    def wanted(account: str) -> bool:
        return emitting is None or account in emitting

    common = {
        "block_height": block.height,
        "block_hash": block.hash,
        "timestamp": block.time,
        "coin_type": coin_type,
        "epoch": epoch,
    }

    events: list[LedgerEvent] = []
    for owned_in in classification.owned_inputs:
        if not wanted(owned_in.account):
            continue
        events.append(
            LedgerEvent(
                account=owned_in.account,
                kind=EventKind.SPEND,
                amount_msat=sats_to_msat(owned_in.utxo.value),
                outpoint=owned_in.utxo.outpoint,
                spending_txid=classification.txid,
                counterpart_account=_spend_counterpart(
                    owned_in.account, receiving, has_external_outputs
                ),
                **common,
            )
        )

    for owned_out in classification.owned_outputs:
        if not wanted(owned_out.account):
            continue
        events.append(
            LedgerEvent(
                account=owned_out.account,
                kind=EventKind.DEPOSIT,
                amount_msat=sats_to_msat(owned_out.output.value),
                outpoint=format_outpoint(classification.txid, owned_out.output.n),
                counterpart_account=_deposit_counterpart(owned_out.account, funding),
                **common,
            )
        )

    # The first funder alone records the outflow, whichever wallet is emitting.
    if funding and wanted(funding[0]):
        counterpart = funding[0] if len(funding) == 1 else None
        for txout in classification.external_outputs:
            events.append(
                LedgerEvent(
                    account=EXTERNAL_ACCOUNT,
                    kind=EventKind.DEPOSIT,
                    amount_msat=sats_to_msat(txout.value),
                    outpoint=format_outpoint(classification.txid, txout.n),
                    counterpart_account=counterpart,
                    **common,
                )
            )

    return events
