"""
GMP Relayer package.

Relays general message passing events between gateway contracts on EVM chains,
with bounded retries and refunds for transfers that cannot be delivered.
"""

from .config import RelayerConfig
from .errors import CompensationError, ConfigurationError, PersistenceError, RelayerError
from .models import Command, FailedTransaction, RelayEvent
from .relayer import GMPRelayer

__all__ = [
    "RelayerConfig",
    "GMPRelayer",
    "RelayEvent",
    "Command",
    "FailedTransaction",
    "RelayerError",
    "ConfigurationError",
    "PersistenceError",
    "CompensationError",
]
__version__ = "0.1.0"
