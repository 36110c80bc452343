"""
Exception types raised by smaug.

Every error carries a human readable message; command handlers report
``str(exc)`` back to the caller.
"""

from __future__ import annotations


class SmaugError(Exception):
    """Base class for all smaug errors."""

    pass


class DescriptorInvalid(SmaugError, ValueError):
    """Descriptor failed validation (charset, checksum, template or key)."""

    pass


class InvalidRequest(SmaugError, ValueError):
    """Command parameters could not be parsed."""

    pass


class InvalidDescriptorParam(InvalidRequest):
    pass


class InvalidChangeDescriptorParam(InvalidRequest):
    pass


class InvalidBirthday(InvalidRequest):
    pass


class InvalidGap(InvalidRequest):
    pass


class InvalidFormat(InvalidRequest):
    pass


class DuplicateWallet(SmaugError):
    """A wallet with the same descriptors is already registered."""

    def __init__(self, name: str):
        super().__init__(f"Wallet {name} already exists")
        self.name = name


class WalletNameCollision(SmaugError):
    """Two different descriptor pairs produced the same wallet name."""

    def __init__(self, name: str):
        super().__init__(
            f"Wallet name {name} is already used by different descriptors; "
            "refusing to overwrite"
        )
        self.name = name


class WalletNotFound(SmaugError):
    """No wallet with the requested name is registered."""

    def __init__(self, name: str):
        super().__init__(f"Can't find wallet '{name}'.")
        self.name = name


class NotConfigured(SmaugError):
    """Chain source credentials could not be resolved."""

    pass


class CredentialError(SmaugError):
    """Explicit credential configuration is inconsistent or points nowhere."""

    pass


class SyncError(SmaugError):
    """Chain source failed while syncing; safe to retry."""

    pass


class StoreError(SmaugError):
    """Persisted wallet store could not be read or written."""

    pass


class ReorgDetected(SmaugError):
    """The chain no longer contains the block recorded at ``height``."""

    def __init__(self, height: int, message: str | None = None):
        super().__init__(message or f"Reorg detected at height {height}")
        self.height = height


class DeepReorgError(ReorgDetected):
    """A reorg went deeper than the retained undo log."""

    def __init__(self, height: int, depth: int):
        super().__init__(
            height,
            f"Reorg below height {height} exceeds the safety depth of {depth} blocks; "
            "manual intervention required (remove and re-add the wallet to rescan)",
        )
        self.depth = depth
