"""
Gap-limit address book.

Keeps every derived script of one wallet indexed by scriptPubKey and makes
sure each chain is derived ``gap_limit`` addresses past its highest used
index.
"""

from __future__ import annotations

from loguru import logger

from smaug.descriptor import Descriptor
from smaug.models import Chain, DerivedAddress


class AddressBook:
    """
    Derived scripts of a wallet.

    Args:
        wallet: Wallet name
        descriptors: Descriptor per chain (internal may be absent)
        gap_limit: Unused addresses kept ahead of the last used index
        last_used: Highest used index per chain, restored from the store
    """

    def __init__(
        self,
        wallet: str,
        descriptors: dict[Chain, Descriptor],
        gap_limit: int,
        last_used: dict[Chain, int] | None = None,
    ):
        self.wallet = wallet
        self.descriptors = descriptors
        self.gap_limit = gap_limit
        self.last_used: dict[Chain, int] = dict(last_used or {})
        self._derived: dict[Chain, dict[bytes, DerivedAddress]] = {
            chain: {} for chain in descriptors
        }
        self._next_index: dict[Chain, int] = {chain: 0 for chain in descriptors}
        self.ensure_lookahead()

    def _target(self, chain: Chain) -> int:
        """Number of addresses that should exist on ``chain``."""
        if not self.descriptors[chain].ranged:
            return 1
        lookahead = max(self.gap_limit, 1)
        used = self.last_used.get(chain)
        return lookahead if used is None else used + 1 + lookahead

    def ensure_lookahead(self) -> list[DerivedAddress]:
        """
        Derive missing addresses on every chain.

        Returns:
            Newly derived addresses (empty if the lookahead was already satisfied)
        """
        new: list[DerivedAddress] = []
        for chain, descriptor in self.descriptors.items():
            target = self._target(chain)
            derived = self._derived[chain]
            for index in range(self._next_index[chain], target):
                script = descriptor.script_at(index)
                address = DerivedAddress(
                    wallet=self.wallet, chain=chain, index=index, script=script.hex()
                )
                derived[script] = address
                new.append(address)
            self._next_index[chain] = max(self._next_index[chain], target)
        if new:
            logger.debug(
                f"Wallet {self.wallet}: derived {len(new)} address(es), "
                f"next indexes {', '.join(f'{c.value}={i}' for c, i in self._next_index.items())}"
            )
        return new

    def matches(self, script: bytes) -> DerivedAddress | None:
        """Return the derived address owning ``script``, if any."""
        for chain, descriptor in self.descriptors.items():
            found = descriptor.template.matches(script, self._derived[chain])
            if found is not None:
                return found
        return None

    def mark_used(self, address: DerivedAddress) -> bool:
        """
        Record that ``address`` received funds.

        Returns:
            True if the lookahead had to be extended
        """
        current = self.last_used.get(address.chain)
        if current is not None and current >= address.index:
            return False
        self.last_used[address.chain] = address.index
        return bool(self.ensure_lookahead())

    def next_index(self, chain: Chain) -> int:
        return self._next_index.get(chain, 0)

    def scan_ranges(self) -> list[tuple[Descriptor, int]]:
        """Descriptors with the number of derived indexes, for filter scans."""
        return [(d, self._next_index[c]) for c, d in self.descriptors.items()]

    def __len__(self) -> int:
        return sum(len(d) for d in self._derived.values())

    def __contains__(self, script: bytes) -> bool:
        return self.matches(script) is not None
