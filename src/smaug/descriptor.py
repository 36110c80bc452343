"""
Output descriptor model.

Supports the single-key templates a watch-only wallet needs:

    wpkh(KEY)   native segwit v0
    tr(KEY)     key-path-only taproot (BIP86)

where KEY is ``[fingerprint/origin/path]xpub/…/*`` or a hex public key, and
the path after the extended key may carry one BIP389 multipath step
``<0;1>`` that expands into separate receive and change descriptors.

Checksums follow BIP380: an 8-character code over a 5-level polymod,
appended after ``#``.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from functools import cached_property

from smaug.bip32 import HARDENED_OFFSET, ExtendedPublicKey
from smaug.bitcoin import (
    NetworkType,
    get_script_type,
    parse_network,
    pubkey_to_p2tr_script,
    pubkey_to_p2wpkh_script,
)
from smaug.errors import DescriptorInvalid
from smaug.models import DerivedAddress

# =============================================================================
# BIP380 checksum
# =============================================================================

INPUT_CHARSET = (
    "0123456789()[],'/*abcdefgh@:$%{}"
    "IJKLMNOPQRSTUVWXYZ&+-.;<=>?!^_|~"
    "ijklmnopqrstuvwxyzABCDEFGH`#\"\\ "
)
CHECKSUM_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
GENERATOR = [0xF5DEE51989, 0xA9FDCA3312, 0x1BAB10E32D, 0x3706B1677A, 0x644D626FFD]

CHECKSUM_LENGTH = 8


def _polymod(symbols: list[int]) -> int:
    chk = 1
    for value in symbols:
        top = chk >> 35
        chk = (chk & 0x7FFFFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= GENERATOR[i] if ((top >> i) & 1) else 0
    return chk


def _expand(s: str) -> list[int]:
    """Map descriptor characters to checksum symbols."""
    groups: list[int] = []
    symbols: list[int] = []
    for c in s:
        v = INPUT_CHARSET.find(c)
        if v < 0:
            raise DescriptorInvalid(f"Invalid character in descriptor: {c!r}")
        symbols.append(v & 31)
        groups.append(v >> 5)
        if len(groups) == 3:
            symbols.append(groups[0] * 9 + groups[1] * 3 + groups[2])
            groups = []
    if len(groups) == 1:
        symbols.append(groups[0])
    elif len(groups) == 2:
        symbols.append(groups[0] * 3 + groups[1])
    return symbols


def descriptor_checksum(desc: str) -> str:
    """
    Compute the 8-character checksum of a descriptor body.

    Args:
        desc: Descriptor without a ``#checksum`` suffix

    Returns:
        Checksum string
    """
    symbols = _expand(desc) + [0] * CHECKSUM_LENGTH
    checksum = _polymod(symbols) ^ 1
    return "".join(
        CHECKSUM_CHARSET[(checksum >> (5 * (CHECKSUM_LENGTH - 1 - i))) & 31]
        for i in range(CHECKSUM_LENGTH)
    )


def checksum_create(desc: str) -> str:
    """Append ``#checksum`` to a descriptor lacking one."""
    return f"{desc}#{descriptor_checksum(desc)}"


def checksum_verify(desc: str) -> bool:
    """
    Verify a descriptor carrying a ``#checksum`` suffix.

    Returns:
        True if the checksum is present and matches the body
    """
    if len(desc) < CHECKSUM_LENGTH + 1 or desc[-(CHECKSUM_LENGTH + 1)] != "#":
        return False
    checksum = desc[-CHECKSUM_LENGTH:]
    if any(c not in CHECKSUM_CHARSET for c in checksum):
        return False
    try:
        symbols = _expand(desc[: -(CHECKSUM_LENGTH + 1)])
    except DescriptorInvalid:
        return False
    symbols += [CHECKSUM_CHARSET.find(c) for c in checksum]
    return _polymod(symbols) == 1


def split_checksum(desc: str) -> tuple[str, str | None]:
    """
    Separate a descriptor body from its checksum, verifying it when present.

    Raises:
        DescriptorInvalid: If a checksum is present but wrong
    """
    desc = desc.strip()
    if "#" not in desc:
        return desc, None
    body, _, checksum = desc.rpartition("#")
    if len(checksum) != CHECKSUM_LENGTH:
        raise DescriptorInvalid(
            f"Invalid descriptor checksum length {len(checksum)}, expected {CHECKSUM_LENGTH}"
        )
    if not checksum_verify(desc):
        expected = descriptor_checksum(body)
        raise DescriptorInvalid(
            f"Invalid descriptor checksum '{checksum}', expected '{expected}'"
        )
    return body, checksum


# =============================================================================
# Script templates
# =============================================================================


class ScriptTemplate(ABC):
    """A single-key output script template."""

    name: str
    script_type: str

    @abstractmethod
    def script_for(self, pubkey: bytes) -> bytes:
        """Build the scriptPubKey paying to ``pubkey``."""

    def accepts_key(self, pubkey: bytes) -> bool:
        return len(pubkey) == 33

    def matches(
        self, script: bytes, derived: Mapping[bytes, DerivedAddress]
    ) -> DerivedAddress | None:
        """
        Check whether ``script`` is one of this template's derived scripts.

        Args:
            script: scriptPubKey of an output
            derived: Derived scripts of one wallet, keyed by script

        Returns:
            The matching DerivedAddress, or None
        """
        if get_script_type(script) != self.script_type:
            return None
        return derived.get(script)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class Wpkh(ScriptTemplate):
    name = "wpkh"
    script_type = "p2wpkh"

    def script_for(self, pubkey: bytes) -> bytes:
        return pubkey_to_p2wpkh_script(pubkey)


class Tr(ScriptTemplate):
    name = "tr"
    script_type = "p2tr"

    def script_for(self, pubkey: bytes) -> bytes:
        return pubkey_to_p2tr_script(pubkey)

    def accepts_key(self, pubkey: bytes) -> bool:
        return len(pubkey) in (32, 33)


TEMPLATES: dict[str, ScriptTemplate] = {"wpkh": Wpkh(), "tr": Tr()}

UNSUPPORTED_TEMPLATES = (
    "pkh",
    "sh",
    "wsh",
    "combo",
    "multi",
    "sortedmulti",
    "addr",
    "raw",
    "rawtr",
)


# =============================================================================
# Descriptor
# =============================================================================

_DESCRIPTOR_RE = re.compile(r"^([a-z_]+)\((.*)\)$")
_ORIGIN_RE = re.compile(r"^\[([0-9a-fA-F]{8})((?:/[0-9]+['hH]?)*)\](.*)$")
_MULTIPATH_RE = re.compile(r"^<([0-9]+(?:;[0-9]+)+)>$")


@dataclass(frozen=True)
class KeyOrigin:
    """Key origin information ``[fingerprint/path]``."""

    fingerprint: str
    path: tuple[str, ...] = ()

    def __str__(self) -> str:
        return "[" + "/".join((self.fingerprint, *self.path)) + "]"


def _normalize_origin_step(step: str) -> str:
    if step[-1] in "'hH":
        return f"{int(step[:-1])}'"
    return str(int(step))


@dataclass(frozen=True)
class Descriptor:
    """
    A parsed single-key descriptor.

    Attributes:
        template: Script template (wpkh or tr)
        key: Extended public key (base58) or hex public key
        origin: Optional key origin
        path: Non-hardened steps after the key, excluding the multipath step and ``*``
        multipath: Alternatives of the ``<a;b>`` step, if any
        multipath_position: Index in ``path`` where the multipath step sits
        ranged: Whether the descriptor ends with ``/*``
    """

    template: ScriptTemplate
    key: str
    origin: KeyOrigin | None = None
    path: tuple[int, ...] = ()
    multipath: tuple[int, ...] | None = None
    multipath_position: int = 0
    ranged: bool = False
    _parsed_key: ExtendedPublicKey | None = field(default=None, compare=False, repr=False)

    @property
    def is_multipath(self) -> bool:
        return self.multipath is not None

    @property
    def is_extended(self) -> bool:
        return self._parsed_key is not None

    def _key_expression(self) -> str:
        parts = [str(self.origin) + self.key if self.origin else self.key]
        steps: list[str] = [str(s) for s in self.path]
        if self.multipath is not None:
            steps.insert(self.multipath_position, "<" + ";".join(map(str, self.multipath)) + ">")
        parts.extend(steps)
        if self.ranged:
            parts.append("*")
        return "/".join(parts)

    @property
    def body(self) -> str:
        """Normalized descriptor string without checksum."""
        return f"{self.template.name}({self._key_expression()})"

    def to_string(self) -> str:
        """Normalized descriptor string with checksum."""
        return checksum_create(self.body)

    def __str__(self) -> str:
        return self.to_string()

    @property
    def checksum(self) -> str:
        return descriptor_checksum(self.body)

    def expand_multipath(self) -> tuple[Descriptor, Descriptor]:
        """
        Split a ``<a;b>`` descriptor into receive (``a``) and change (``b``) descriptors.

        Raises:
            DescriptorInvalid: If the descriptor is not a two-way multipath descriptor
        """
        if self.multipath is None:
            raise DescriptorInvalid("Descriptor has no multipath step to expand")
        if len(self.multipath) != 2:
            raise DescriptorInvalid(
                f"Multipath descriptor must have exactly 2 paths for receive and change, "
                f"got {len(self.multipath)}"
            )
        results = []
        for step in self.multipath:
            path = list(self.path)
            path.insert(self.multipath_position, step)
            results.append(replace(self, path=tuple(path), multipath=None, multipath_position=0))
        return results[0], results[1]

    @cached_property
    def _chain_key(self) -> ExtendedPublicKey | None:
        if self._parsed_key is None:
            return None
        return self._parsed_key.derive_path(list(self.path))

    def pubkey_at(self, index: int) -> bytes:
        """Public key for derivation ``index`` (ignored for non-ranged descriptors)."""
        if self.multipath is not None:
            raise DescriptorInvalid("Expand the multipath descriptor before deriving scripts")
        chain_key = self._chain_key
        if chain_key is None:
            return bytes.fromhex(self.key)
        if not self.ranged:
            return chain_key.public_key
        return chain_key.derive_child(index).public_key

    def script_at(self, index: int) -> bytes:
        """scriptPubKey for derivation ``index``."""
        return self.template.script_for(self.pubkey_at(index))

    def validate_network(self, network: str | NetworkType) -> None:
        """
        Check the extended key matches the network.

        Raises:
            DescriptorInvalid: On an xpub used off mainnet or a tpub used on mainnet
        """
        if self._parsed_key is None:
            return
        network = parse_network(network)
        if self._parsed_key.is_mainnet != network.is_mainnet:
            raise DescriptorInvalid(
                f"Descriptor key is not valid for network {network.value}"
            )


def _parse_key_expression(expr: str) -> tuple[KeyOrigin | None, str, list[str]]:
    origin = None
    if expr.startswith("["):
        match = _ORIGIN_RE.match(expr)
        if not match:
            raise DescriptorInvalid(f"Invalid key origin in '{expr}'")
        fingerprint, origin_path, expr = match.groups()
        steps = tuple(_normalize_origin_step(s) for s in origin_path.split("/") if s)
        origin = KeyOrigin(fingerprint=fingerprint.lower(), path=steps)
    key, *steps = expr.split("/")
    return origin, key, steps


def parse(descriptor: str) -> Descriptor:
    """
    Parse and validate a descriptor string.

    Args:
        descriptor: Descriptor with or without ``#checksum``

    Returns:
        Descriptor

    Raises:
        DescriptorInvalid: On bad charset, checksum, template, key or path
    """
    body, _ = split_checksum(descriptor)
    # Charset check for descriptors without a checksum
    _expand(body)

    match = _DESCRIPTOR_RE.match(body)
    if not match:
        raise DescriptorInvalid(f"Invalid descriptor: '{body}'")
    name, inner = match.groups()

    template = TEMPLATES.get(name)
    if template is None:
        if name in UNSUPPORTED_TEMPLATES:
            raise DescriptorInvalid(
                f"Unsupported script template '{name}', only wpkh and tr are supported"
            )
        raise DescriptorInvalid(f"Unknown script template '{name}'")
    if "," in inner or "(" in inner:
        raise DescriptorInvalid(f"Only single-key {name}() descriptors are supported")

    origin, key, steps = _parse_key_expression(inner)

    parsed_key: ExtendedPublicKey | None = None
    if re.fullmatch(r"[0-9a-fA-F]+", key):
        pubkey = bytes.fromhex(key) if len(key) % 2 == 0 else b""
        if not template.accepts_key(pubkey):
            raise DescriptorInvalid(f"Invalid public key '{key}' for {name}()")
        if steps:
            raise DescriptorInvalid("Derivation steps require an extended public key")
        key = key.lower()
    else:
        try:
            parsed_key = ExtendedPublicKey.from_base58(key)
        except ValueError as e:
            raise DescriptorInvalid(f"Invalid extended key '{key}': {e}") from e

    path: list[int] = []
    multipath: tuple[int, ...] | None = None
    multipath_position = 0
    ranged = False
    for i, step in enumerate(steps):
        if ranged:
            raise DescriptorInvalid("Wildcard '*' must be the last derivation step")
        if step == "*":
            ranged = True
            continue
        if step in ("*'", "*h", "*H") or step[-1:] in ("'", "h", "H"):
            raise DescriptorInvalid(
                f"Hardened step '{step}' after an extended public key cannot be derived "
                "without private keys"
            )
        mp = _MULTIPATH_RE.match(step)
        if mp:
            if multipath is not None:
                raise DescriptorInvalid("Only one multipath step is allowed")
            values = tuple(int(v) for v in mp.group(1).split(";"))
            if len(set(values)) != len(values):
                raise DescriptorInvalid(f"Duplicate paths in multipath step '{step}'")
            if any(v >= HARDENED_OFFSET for v in values):
                raise DescriptorInvalid(f"Multipath index out of range in '{step}'")
            multipath = values
            multipath_position = len(path)
            continue
        if not step.isdigit():
            raise DescriptorInvalid(f"Invalid derivation step '{step}'")
        index = int(step)
        if index >= HARDENED_OFFSET:
            raise DescriptorInvalid(f"Derivation index {index} out of range")
        path.append(index)

    return Descriptor(
        template=template,
        key=key,
        origin=origin,
        path=tuple(path),
        multipath=multipath,
        multipath_position=multipath_position,
        ranged=ranged,
        _parsed_key=parsed_key,
    )


def normalize_pair(
    descriptor: str, change_descriptor: str | None = None
) -> tuple[Descriptor, Descriptor | None]:
    """
    Parse a receive/change descriptor pair.

    A multipath receive descriptor without a separate change descriptor is
    expanded into both chains.

    Returns:
        (external, internal) descriptors; internal is None for single-chain wallets

    Raises:
        DescriptorInvalid: If either descriptor is invalid or the pair is inconsistent
    """
    external = parse(descriptor)
    if change_descriptor:
        if external.is_multipath:
            raise DescriptorInvalid(
                "A multipath descriptor already defines the change chain; "
                "do not pass a separate change descriptor"
            )
        internal = parse(change_descriptor)
        if internal.is_multipath:
            raise DescriptorInvalid("Change descriptor must not be a multipath descriptor")
        if internal.body == external.body:
            raise DescriptorInvalid("Receive and change descriptors must differ")
        return external, internal
    if external.is_multipath:
        return external.expand_multipath()
    return external, None


def wallet_name(external: Descriptor, internal: Descriptor | None = None) -> str:
    """
    Deterministic wallet name for a normalized descriptor pair.

    The name is the receive descriptor's checksum followed by the change
    descriptor's checksum, so equal pairs always map to the same name.
    """
    name = external.checksum
    if internal is not None:
        name += internal.checksum
    return name
