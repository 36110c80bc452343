"""
BIP32 extended public keys for watch-only derivation.

Only public (non-hardened) child derivation is supported: smaug never holds
private keys, it derives receive and change scripts from the account-level
xpub embedded in a descriptor.
"""

from __future__ import annotations

import hashlib
import hmac

import base58
import coincurve

from smaug.bitcoin import hash160

HARDENED_OFFSET = 0x80000000

# Version bytes of serialized extended public keys. Descriptors only carry
# xpub/tpub, the SLIP-132 variants are accepted for convenience.
PUBLIC_VERSIONS = {
    bytes.fromhex("0488b21e"): "xpub",
    bytes.fromhex("049d7cb2"): "ypub",
    bytes.fromhex("04b24746"): "zpub",
    bytes.fromhex("043587cf"): "tpub",
    bytes.fromhex("044a5262"): "upub",
    bytes.fromhex("045f1cf6"): "vpub",
}

PRIVATE_VERSIONS = {
    bytes.fromhex("0488ade4"): "xprv",
    bytes.fromhex("04358394"): "tprv",
}

MAINNET_PREFIXES = {"xpub", "ypub", "zpub"}


class ExtendedPublicKey:
    """
    Extended public key (BIP32).

    Holds the compressed public key and chain code needed for CKDpub.
    """

    def __init__(
        self,
        public_key: bytes,
        chain_code: bytes,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00" * 4,
        child_number: int = 0,
        version: bytes = bytes.fromhex("0488b21e"),
    ):
        if len(public_key) != 33:
            raise ValueError(f"Invalid compressed pubkey length: {len(public_key)}")
        if len(chain_code) != 32:
            raise ValueError(f"Invalid chain code length: {len(chain_code)}")
        self.public_key = public_key
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number
        self.version = version

    @classmethod
    def from_base58(cls, encoded: str) -> ExtendedPublicKey:
        """
        Parse a Base58Check serialized extended public key.

        Args:
            encoded: xpub/tpub string

        Returns:
            ExtendedPublicKey

        Raises:
            ValueError: If the string is not a valid extended public key
        """
        try:
            raw = base58.b58decode_check(encoded)
        except ValueError as e:
            raise ValueError(f"Invalid extended key checksum: {e}") from e

        if len(raw) != 78:
            raise ValueError(f"Invalid extended key length: {len(raw)}")

        version = raw[:4]
        if version in PRIVATE_VERSIONS:
            raise ValueError("Private extended keys are not accepted by a watch-only wallet")
        if version not in PUBLIC_VERSIONS:
            raise ValueError(f"Unknown extended key version: {version.hex()}")

        public_key = raw[45:78]
        try:
            coincurve.PublicKey(public_key)
        except ValueError as e:
            raise ValueError(f"Invalid public key in extended key: {e}") from e

        return cls(
            public_key=public_key,
            chain_code=raw[13:45],
            depth=raw[4],
            parent_fingerprint=raw[5:9],
            child_number=int.from_bytes(raw[9:13], "big"),
            version=version,
        )

    def to_base58(self) -> str:
        """Serialize back to Base58Check."""
        payload = (
            self.version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + self.public_key
        )
        return base58.b58encode_check(payload).decode("ascii")

    @property
    def fingerprint(self) -> bytes:
        """First four bytes of hash160 of the public key."""
        return hash160(self.public_key)[:4]

    @property
    def is_mainnet(self) -> bool:
        return PUBLIC_VERSIONS[self.version] in MAINNET_PREFIXES

    def derive_child(self, index: int) -> ExtendedPublicKey:
        """
        Derive a non-hardened child key (CKDpub).

        Args:
            index: Child index, must be below 2^31

        Returns:
            Child ExtendedPublicKey

        Raises:
            ValueError: For hardened indexes or the (negligible) invalid child case
        """
        if index < 0 or index >= HARDENED_OFFSET:
            raise ValueError(f"Cannot derive hardened or negative index {index} from a public key")

        data = self.public_key + index.to_bytes(4, "big")
        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        key_offset = hmac_result[:32]
        child_chain = hmac_result[32:]

        # Raises ValueError when the offset is >= n or the sum is the point at infinity
        child_point = coincurve.PublicKey(self.public_key).add(key_offset)

        return ExtendedPublicKey(
            public_key=child_point.format(compressed=True),
            chain_code=child_chain,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
            version=self.version,
        )

    def derive_path(self, path: list[int]) -> ExtendedPublicKey:
        """Derive along a list of non-hardened indexes."""
        key = self
        for index in path:
            key = key.derive_child(index)
        return key

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ExtendedPublicKey):
            return NotImplemented
        return self.public_key == other.public_key and self.chain_code == other.chain_code

    def __hash__(self) -> int:
        return hash((self.public_key, self.chain_code))

    def __repr__(self) -> str:
        return f"ExtendedPublicKey({self.to_base58()})"
