"""
Tests for ledger events and sinks.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from smaug.ledger import (
    JsonlLedgerSink,
    MemoryLedgerSink,
    account_balances,
    read_ledger,
    to_bookkeeper_notification,
)
from smaug.models import EventKind, LedgerEvent


def make_event(**overrides) -> LedgerEvent:
    fields = {
        "account": "smaug:abcdefgh",
        "kind": EventKind.DEPOSIT,
        "amount_msat": 5_000_000,
        "outpoint": "aa" * 32 + ":0",
        "block_height": 850_000,
        "block_hash": "bb" * 32,
        "timestamp": 1_717_000_000,
        "counterpart_account": "external",
    }
    fields.update(overrides)
    return LedgerEvent(**fields)


class TestLedgerEvent:
    """Tests for event ids, signs and reversals."""

    def test_event_id_is_deterministic(self) -> None:
        assert make_event().event_id == make_event().event_id
        assert len(make_event().event_id) == 32

    @pytest.mark.parametrize(
        "change",
        [
            {"block_hash": "cc" * 32},
            {"block_height": 850_001},
            {"epoch": 1},
            {"kind": EventKind.SPEND},
            {"account": "external"},
            {"outpoint": "aa" * 32 + ":1"},
        ],
    )
    def test_event_id_changes(self, change: dict) -> None:
        assert make_event(**change).event_id != make_event().event_id

    def test_amount_does_not_change_event_id(self) -> None:
        assert make_event(amount_msat=1).event_id == make_event().event_id

    def test_compensate(self) -> None:
        event = make_event()
        reversal = event.compensate()
        assert reversal.kind is EventKind.SPEND
        assert reversal.reversal
        assert reversal.amount_msat == event.amount_msat
        assert reversal.event_id != event.event_id
        assert event.signed_amount() + reversal.signed_amount() == 0

    def test_negative_amount_rejected(self) -> None:
        with pytest.raises(ValueError):
            make_event(amount_msat=-1)


class TestSinks:
    """Tests for MemoryLedgerSink and JsonlLedgerSink."""

    def test_memory_sink_dedupes(self) -> None:
        sink = MemoryLedgerSink()
        sink.emit(make_event())
        sink.emit(make_event())
        sink.emit(make_event(epoch=1))
        assert len(sink.events) == 2

    def test_jsonl_sink_appends(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger" / "ledger.jsonl"
        sink = JsonlLedgerSink(path)
        first = make_event()
        second = make_event(kind=EventKind.SPEND, spending_txid="cc" * 32)
        sink.emit(first)
        sink.emit(second)

        lines = path.read_text().splitlines()
        assert len(lines) == 2
        record = json.loads(lines[0])
        assert record["event_id"] == first.event_id
        assert record["kind"] == "deposit"
        assert read_ledger(path) == [first, second]

    def test_jsonl_sink_dedupes_across_restarts(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger.jsonl"
        JsonlLedgerSink(path).emit(make_event())

        restarted = JsonlLedgerSink(path)
        restarted.emit(make_event())
        restarted.emit(make_event().compensate())

        assert len(path.read_text().splitlines()) == 2

    def test_read_ledger_skips_malformed_lines(self, tmp_path: Path) -> None:
        path = tmp_path / "ledger.jsonl"
        event = make_event()
        path.write_text(
            "\n".join(
                [
                    "{broken",
                    json.dumps({"event_id": "x", "account": "missing fields"}),
                    "",
                    json.dumps({"event_id": event.event_id, **event.model_dump(mode="json")}),
                ]
            )
            + "\n"
        )
        assert read_ledger(path) == [event]

    def test_read_missing_ledger(self, tmp_path: Path) -> None:
        assert read_ledger(tmp_path / "none.jsonl") == []


class TestBalances:
    """Tests for replaying events into balances."""

    def test_account_balances(self) -> None:
        deposit = make_event()
        spend = make_event(
            kind=EventKind.SPEND, block_height=850_010, counterpart_account="external"
        )
        change = make_event(outpoint="dd" * 32 + ":1", amount_msat=1_000_000, block_height=850_010)
        outflow = make_event(
            account="external",
            outpoint="dd" * 32 + ":0",
            amount_msat=3_900_000,
            block_height=850_010,
            counterpart_account="smaug:abcdefgh",
        )
        reorged = make_event(outpoint="ee" * 32 + ":0", amount_msat=7_000)

        events = [deposit, spend, change, outflow, reorged, reorged.compensate()]
        balances = account_balances(events)
        assert balances == {"smaug:abcdefgh": 1_000_000, "external": 3_900_000}


class TestBookkeeperNotification:
    """Tests for bookkeeper notification payloads."""

    def test_deposit_payload(self) -> None:
        topic, payload = to_bookkeeper_notification(make_event())
        assert topic == "utxo_deposit"
        assert payload == {
            "utxo_deposit": {
                "account": "smaug:abcdefgh",
                "outpoint": "aa" * 32 + ":0",
                "amount_msat": 5_000_000,
                "coin_type": "bc",
                "timestamp": 1_717_000_000,
                "blockheight": 850_000,
                "transfer_from": "external",
            }
        }

    def test_spend_payload(self) -> None:
        event = make_event(kind=EventKind.SPEND, spending_txid="cc" * 32, coin_type="tbs")
        topic, payload = to_bookkeeper_notification(event)
        assert topic == "utxo_spent"
        assert payload["utxo_spent"]["spending_txid"] == "cc" * 32
        assert payload["utxo_spent"]["coin_type"] == "tbs"
        assert "transfer_from" not in payload["utxo_spent"]

    def test_reversal_renders_as_opposite_kind(self) -> None:
        topic, _ = to_bookkeeper_notification(make_event().compensate())
        assert topic == "utxo_spent"
