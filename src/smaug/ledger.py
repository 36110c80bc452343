"""
Ledger sinks.

The sync engine hands every LedgerEvent to a sink once the block that
produced it is persisted. Sinks must tolerate redelivery: after a crash the
engine replays its outbox, so an event id the sink already recorded is
dropped.

Sinks:
- JsonlLedgerSink: append-only JSON Lines file (standalone watcher)
- MemoryLedgerSink: in-process list
- the node plugin renders events as bookkeeper notifications (see
  :func:`to_bookkeeper_notification`)
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from smaug.models import EventKind, LedgerEvent


class LedgerSink(ABC):
    """Destination for ledger events."""

    @abstractmethod
    def emit(self, event: LedgerEvent) -> None:
        """Record ``event``; must be a no-op for an already recorded event id."""


class MemoryLedgerSink(LedgerSink):
    """Keeps events in memory."""

    def __init__(self) -> None:
        self.events: list[LedgerEvent] = []
        self._ids: set[str] = set()

    def emit(self, event: LedgerEvent) -> None:
        if event.event_id in self._ids:
            return
        self._ids.add(event.event_id)
        self.events.append(event)


class JsonlLedgerSink(LedgerSink):
    """
    Append-only JSON Lines ledger.

    Each line is one event plus its ``event_id``. Known ids are loaded on
    start so replays after a crash are not written twice.
    """

    def __init__(self, path: Path):
        self.path = path
        self._ids: set[str] = {event.event_id for event in read_ledger(path)}

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._ids

    def emit(self, event: LedgerEvent) -> None:
        event_id = event.event_id
        if event_id in self._ids:
            logger.debug(f"Ledger already has event {event_id}, skipping")
            return

        self.path.parent.mkdir(parents=True, exist_ok=True)
        record = {"event_id": event_id, **event.model_dump(mode="json")}
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, separators=(",", ":")) + "\n")
        self._ids.add(event_id)

        logger.debug(
            f"Ledger {event.kind.value} {event.account} {event.amount_msat}msat "
            f"{event.outpoint} @{event.block_height}"
            + (" (reversal)" if event.reversal else "")
        )


def read_ledger(path: Path) -> list[LedgerEvent]:
    """
    Read all events from a JSON Lines ledger.

    Malformed lines are logged and skipped.
    """
    if not path.exists():
        return []

    events: list[LedgerEvent] = []
    with open(path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
                data.pop("event_id", None)
                events.append(LedgerEvent.model_validate(data))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Malformed ledger entry at {path}:{line_no}: {e}")
    return events


def account_balances(events: Iterable[LedgerEvent]) -> dict[str, int]:
    """
    Replay events into per-account balances (msat).

    Deposits add, spends subtract; reversals carry the flipped kind so they
    cancel the event they compensate.
    """
    balances: dict[str, int] = defaultdict(int)
    for event in events:
        balances[event.account] += event.signed_amount()
    return dict(balances)


def to_bookkeeper_notification(event: LedgerEvent) -> tuple[str, dict[str, Any]]:
    """
    Render an event as a bookkeeper notification.

    Returns:
        (topic, payload) where topic is ``utxo_deposit`` or ``utxo_spent``
    """
    payload: dict[str, Any] = {
        "account": event.account,
        "outpoint": event.outpoint,
        "amount_msat": event.amount_msat,
        "coin_type": event.coin_type,
        "timestamp": event.timestamp,
        "blockheight": event.block_height,
    }
    if event.kind is EventKind.DEPOSIT:
        payload["transfer_from"] = event.counterpart_account
        return "utxo_deposit", {"utxo_deposit": payload}

    payload["spending_txid"] = event.spending_txid
    return "utxo_spent", {"utxo_spent": payload}
