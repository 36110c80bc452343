"""
Bitcoin utilities for smaug.

This module provides the small set of Bitcoin primitives the tracker needs:
- Hash functions (hash160, sha256, BIP340 tagged hashes)
- scriptPubKey templates for P2WPKH and P2TR outputs
- Address rendering of segwit scriptPubKeys (bech32 / bech32m)
- Network tables (bech32 HRP, bookkeeper coin type, default RPC port)
- Amount conversions (BTC, sats, msat)

Uses external libraries for security-critical operations:
- coincurve: secp256k1 point arithmetic for the taproot output key tweak
- bech32: BIP173/BIP350 address encoding
"""

from __future__ import annotations

import hashlib
from decimal import Decimal
from enum import Enum

import bech32 as bech32_lib
import coincurve

from smaug.constants import MSAT_PER_SAT, SATS_PER_BTC


class NetworkType(str, Enum):
    """Networks a host node can run on."""

    BITCOIN = "bitcoin"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"
    MUTINYNET = "mutinynet"

    @property
    def chain_params(self) -> NetworkType:
        """Network whose address and port rules apply (mutinynet is a signet)."""
        if self is NetworkType.MUTINYNET:
            return NetworkType.SIGNET
        return self

    @property
    def is_mainnet(self) -> bool:
        return self is NetworkType.BITCOIN


_NETWORK_ALIASES = {
    "mainnet": NetworkType.BITCOIN,
    "main": NetworkType.BITCOIN,
    "testnet3": NetworkType.TESTNET,
    "test": NetworkType.TESTNET,
}


def parse_network(value: str | NetworkType) -> NetworkType:
    """
    Parse a network name as reported by the host node or the user.

    Args:
        value: Network name (``bitcoin``, ``mainnet``, ``testnet``, ...)

    Returns:
        NetworkType

    Raises:
        ValueError: If the network is unknown
    """
    if isinstance(value, NetworkType):
        return value
    name = value.strip().lower()
    if name in _NETWORK_ALIASES:
        return _NETWORK_ALIASES[name]
    return NetworkType(name)


# Network prefixes for address encoding
HRP_MAP = {
    NetworkType.BITCOIN: "bc",
    NetworkType.TESTNET: "tb",
    NetworkType.SIGNET: "tb",
    NetworkType.REGTEST: "bcrt",
}

# Currency identifiers used by the host bookkeeper
COIN_TYPE_MAP = {
    NetworkType.BITCOIN: "bc",
    NetworkType.TESTNET: "tb",
    NetworkType.SIGNET: "tbs",
    NetworkType.REGTEST: "bcrt",
}

DEFAULT_RPC_PORTS = {
    NetworkType.BITCOIN: 8332,
    NetworkType.TESTNET: 18332,
    NetworkType.SIGNET: 38332,
    NetworkType.REGTEST: 18443,
}


def get_hrp(network: str | NetworkType) -> str:
    """Get bech32 human-readable part for network."""
    return HRP_MAP[parse_network(network).chain_params]


def get_coin_type(network: str | NetworkType) -> str:
    """Get the bookkeeper currency identifier for network."""
    return COIN_TYPE_MAP[parse_network(network).chain_params]


def get_default_rpc_port(network: str | NetworkType) -> int:
    """Get bitcoind's default RPC port for network."""
    return DEFAULT_RPC_PORTS[parse_network(network).chain_params]


# =============================================================================
# Amount Utilities
# =============================================================================


def btc_to_sats(btc: float | Decimal | str) -> int:
    """
    Convert a BTC amount as returned by bitcoind to satoshis.

    bitcoind serializes amounts as JSON numbers with 8 decimals; going through
    Decimal avoids float truncation (e.g. 0.0003 * 1e8 = 29999.999...).

    Args:
        btc: Amount in BTC

    Returns:
        Amount in satoshis
    """
    return int((Decimal(str(btc)) * SATS_PER_BTC).to_integral_value())


def sats_to_msat(sats: int) -> int:
    """Convert satoshis to the ledger's smallest unit."""
    return sats * MSAT_PER_SAT


# =============================================================================
# Hash Functions
# =============================================================================


def hash160(data: bytes) -> bytes:
    """
    RIPEMD160(SHA256(data)) - Used for Bitcoin addresses.

    Args:
        data: Input data to hash

    Returns:
        20-byte hash
    """
    return hashlib.new("ripemd160", hashlib.sha256(data).digest()).digest()


def sha256(data: bytes) -> bytes:
    """Single SHA256 hash."""
    return hashlib.sha256(data).digest()


def tagged_hash(tag: str, data: bytes) -> bytes:
    """
    BIP340 tagged hash: SHA256(SHA256(tag) || SHA256(tag) || data).

    Args:
        tag: Tag string (e.g. "TapTweak")
        data: Message bytes

    Returns:
        32-byte hash
    """
    tag_hash = sha256(tag.encode("utf-8"))
    return sha256(tag_hash + tag_hash + data)


# =============================================================================
# Script Templates
# =============================================================================


def pubkey_to_p2wpkh_script(pubkey: bytes | str) -> bytes:
    """
    Create P2WPKH scriptPubKey from public key.

    Args:
        pubkey: 33-byte compressed public key (bytes or hex string)

    Returns:
        22-byte P2WPKH scriptPubKey (OP_0 <20-byte-hash>)
    """
    if isinstance(pubkey, str):
        pubkey = bytes.fromhex(pubkey)

    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")

    return bytes([0x00, 0x14]) + hash160(pubkey)


def taproot_output_key(internal_pubkey: bytes) -> bytes:
    """
    Compute the BIP86 taproot output key for a key-path-only internal key.

    Q = P + int(hash_TapTweak(x(P)))G where P is the even-y lift of the
    internal key.

    Args:
        internal_pubkey: 33-byte compressed (or 32-byte x-only) internal key

    Returns:
        32-byte x-only output key
    """
    if len(internal_pubkey) == 33:
        xonly = internal_pubkey[1:]
    elif len(internal_pubkey) == 32:
        xonly = internal_pubkey
    else:
        raise ValueError(f"Invalid taproot internal key length: {len(internal_pubkey)}")

    even_point = coincurve.PublicKey(b"\x02" + xonly)
    tweak = tagged_hash("TapTweak", xonly)
    output_point = even_point.add(tweak)
    return output_point.format(compressed=True)[1:]


def pubkey_to_p2tr_script(internal_pubkey: bytes | str) -> bytes:
    """
    Create a key-path-only P2TR scriptPubKey (OP_1 <32-byte-output-key>).

    Args:
        internal_pubkey: Internal key (bytes or hex string)

    Returns:
        34-byte P2TR scriptPubKey
    """
    if isinstance(internal_pubkey, str):
        internal_pubkey = bytes.fromhex(internal_pubkey)
    return bytes([0x51, 0x20]) + taproot_output_key(internal_pubkey)


def get_script_type(scriptpubkey: bytes) -> str | None:
    """Classify a scriptPubKey into one of the tracked templates."""
    if len(scriptpubkey) == 22 and scriptpubkey[0] == 0x00 and scriptpubkey[1] == 0x14:
        return "p2wpkh"
    if len(scriptpubkey) == 34 and scriptpubkey[0] == 0x51 and scriptpubkey[1] == 0x20:
        return "p2tr"
    return None


# =============================================================================
# Address Encoding
# =============================================================================


def scriptpubkey_to_address(scriptpubkey: bytes, network: str | NetworkType = "bitcoin") -> str:
    """
    Convert a segwit scriptPubKey to its address.

    Supports P2WPKH, P2WSH and P2TR.

    Args:
        scriptpubkey: scriptPubKey bytes
        network: Network type

    Returns:
        Bitcoin address string
    """
    if len(scriptpubkey) in (22, 34) and scriptpubkey[1] == len(scriptpubkey) - 2:
        if scriptpubkey[0] == 0x00:
            witver = 0
        elif scriptpubkey[0] == 0x51 and len(scriptpubkey) == 34:
            witver = 1
        else:
            witver = None
        if witver is not None:
            result = bech32_lib.encode(get_hrp(network), witver, scriptpubkey[2:])
            if result is None:
                raise ValueError(f"Failed to encode segwit address: {scriptpubkey.hex()}")
            return result

    raise ValueError(f"Unsupported scriptPubKey: {scriptpubkey.hex()}")


def format_outpoint(txid: str, vout: int) -> str:
    """Render an outpoint as ``txid:vout``."""
    return f"{txid}:{vout}"
