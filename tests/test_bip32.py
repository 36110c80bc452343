"""
Tests for watch-only BIP32 derivation.
"""

from __future__ import annotations

import base58
import pytest
from _smaug_test_helpers import BIP84_XPUB, BIP84_ZPUB, TPUB_VERSION, convert_version

from smaug.bip32 import HARDENED_OFFSET, ExtendedPublicKey


class TestExtendedPublicKey:
    """Tests for parsing and deriving extended public keys."""

    def test_parse_account_key(self) -> None:
        key = ExtendedPublicKey.from_base58(BIP84_XPUB)
        assert key.depth == 3
        assert key.child_number == HARDENED_OFFSET
        assert key.is_mainnet
        assert key.to_base58() == BIP84_XPUB

    def test_slip132_key_derives_like_xpub(self) -> None:
        zpub = ExtendedPublicKey.from_base58(BIP84_ZPUB)
        xpub = ExtendedPublicKey.from_base58(BIP84_XPUB)
        assert zpub == xpub
        assert zpub.derive_path([0, 0]).public_key == xpub.derive_path([0, 0]).public_key

    def test_derive_receive_key(self) -> None:
        key = ExtendedPublicKey.from_base58(BIP84_XPUB).derive_path([0, 0])
        assert key.public_key.hex() == (
            "0330d54fd0dd420a6e5f8d3624f5f3482cae350f79d5f0753bf5beef9c2d91af3c"
        )
        assert key.depth == 5
        assert key.child_number == 0

    def test_child_fingerprint_links_parent(self) -> None:
        parent = ExtendedPublicKey.from_base58(BIP84_XPUB)
        child = parent.derive_child(7)
        assert child.parent_fingerprint == parent.fingerprint
        assert child.child_number == 7

    def test_testnet_key(self) -> None:
        key = ExtendedPublicKey.from_base58(convert_version(BIP84_XPUB, TPUB_VERSION))
        assert not key.is_mainnet

    def test_hardened_derivation_rejected(self) -> None:
        key = ExtendedPublicKey.from_base58(BIP84_XPUB)
        with pytest.raises(ValueError, match="hardened"):
            key.derive_child(HARDENED_OFFSET)

    def test_private_key_rejected(self) -> None:
        xprv = convert_version(BIP84_XPUB, "0488ade4")
        with pytest.raises(ValueError, match="Private extended keys"):
            ExtendedPublicKey.from_base58(xprv)

    def test_bad_checksum_rejected(self) -> None:
        raw = base58.b58decode_check(BIP84_XPUB)
        corrupted = base58.b58encode(raw + b"\x00\x00\x00\x00").decode("ascii")
        with pytest.raises(ValueError):
            ExtendedPublicKey.from_base58(corrupted)

    def test_unknown_version_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown extended key version"):
            ExtendedPublicKey.from_base58(convert_version(BIP84_XPUB, "01020304"))

    def test_wrong_length_rejected(self) -> None:
        short = base58.b58encode_check(bytes(70)).decode("ascii")
        with pytest.raises(ValueError, match="length"):
            ExtendedPublicKey.from_base58(short)
