"""
Tests for the gap-limit address book.
"""

from __future__ import annotations

from _smaug_test_helpers import BIP84_XPUB, FOREIGN_SCRIPT

from smaug.descriptor import Descriptor, parse
from smaug.models import Chain
from smaug.wallet.addresses import AddressBook

RECEIVE = parse(f"wpkh([73c5da0a/84'/0'/0']{BIP84_XPUB}/0/*)")
CHANGE = parse(f"wpkh([73c5da0a/84'/0'/0']{BIP84_XPUB}/1/*)")


def make_book(gap_limit: int = 3, **kwargs) -> AddressBook:
    descriptors: dict[Chain, Descriptor] = {Chain.EXTERNAL: RECEIVE, Chain.INTERNAL: CHANGE}
    return AddressBook("abcdefgh", descriptors, gap_limit, **kwargs)


class TestLookahead:
    """Tests for deriving addresses ahead of use."""

    def test_initial_lookahead(self) -> None:
        book = make_book()
        assert book.next_index(Chain.EXTERNAL) == 3
        assert book.next_index(Chain.INTERNAL) == 3
        assert len(book) == 6

    def test_zero_gap_keeps_one_address(self) -> None:
        book = make_book(gap_limit=0)
        assert book.next_index(Chain.EXTERNAL) == 1
        assert RECEIVE.script_at(0) in book
        assert RECEIVE.script_at(1) not in book

    def test_restored_last_used(self) -> None:
        book = make_book(last_used={Chain.EXTERNAL: 10})
        assert book.next_index(Chain.EXTERNAL) == 14
        assert book.next_index(Chain.INTERNAL) == 3

    def test_mark_used_extends_chain(self) -> None:
        book = make_book()
        address = book.matches(RECEIVE.script_at(2))
        assert address is not None
        assert address.chain is Chain.EXTERNAL
        assert address.index == 2

        assert book.mark_used(address) is True
        assert book.last_used == {Chain.EXTERNAL: 2}
        assert book.next_index(Chain.EXTERNAL) == 6
        assert book.next_index(Chain.INTERNAL) == 3
        assert RECEIVE.script_at(5) in book

    def test_mark_used_lower_index_is_noop(self) -> None:
        book = make_book()
        top = book.matches(RECEIVE.script_at(2))
        low = book.matches(RECEIVE.script_at(0))
        assert top is not None and low is not None
        book.mark_used(top)

        assert book.mark_used(low) is False
        assert book.last_used[Chain.EXTERNAL] == 2

    def test_ensure_lookahead_is_idempotent(self) -> None:
        book = make_book()
        assert book.ensure_lookahead() == []


class TestMatching:
    """Tests for script lookups."""

    def test_chains_are_distinguished(self) -> None:
        book = make_book()
        change = book.matches(CHANGE.script_at(1))
        assert change is not None
        assert change.chain is Chain.INTERNAL
        assert change.index == 1
        assert change.script == CHANGE.script_at(1).hex()

    def test_foreign_script(self) -> None:
        book = make_book()
        assert book.matches(FOREIGN_SCRIPT) is None
        assert FOREIGN_SCRIPT not in book

    def test_scan_ranges(self) -> None:
        book = make_book(gap_limit=2, last_used={Chain.INTERNAL: 4})
        assert book.scan_ranges() == [(RECEIVE, 2), (CHANGE, 7)]
