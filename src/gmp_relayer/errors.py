"""
Exception types raised by the GMP relayer.
"""


class RelayerError(Exception):
    """Base class for relayer errors."""


class ConfigurationError(RelayerError, ValueError):
    """Raised when relayer configuration is missing or invalid."""


class PersistenceError(RelayerError):
    """Raised when local relayer state could not be written to disk.

    The mutation that triggered the write has been rolled back and must not be
    treated as durable.
    """


class CompensationError(RelayerError):
    """Raised when a compensation cannot be triggered."""


class RelayerNotWhitelistedError(RelayerError):
    """Raised when the relayer address is not whitelisted on a gateway."""
