"""
Configuration module for the GMP Relayer.

This module provides type-safe configuration dataclasses with validation for
the relayer. The chain map is read from a JSON file (the same shape the gateway
deployment scripts produce) and individual settings can be overridden from
environment variables.
"""

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from web3 import Web3

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Configuration for one chain the relayer both monitors and executes on.

    Attributes:
        name: Chain name as used in gateway events (e.g. "ethereum", "bsc")
        rpc_url: HTTP(S) RPC endpoint
        gateway_address: Checksummed address of the gateway contract
        block_confirmations: Blocks behind head the monitor starts from
    """

    name: str
    rpc_url: str
    gateway_address: str
    block_confirmations: int = 10

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("Chain name is required")

        if not self.rpc_url:
            raise ConfigurationError(f"RPC URL is required for chain {self.name}")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ('http', 'https'):
            raise ConfigurationError(
                f"Invalid RPC URL scheme for chain {self.name}: {parsed.scheme}. "
                "Expected http or https"
            )

        if not self.gateway_address:
            raise ConfigurationError(f"Gateway address is required for chain {self.name}")

        if not Web3.is_address(self.gateway_address):
            raise ConfigurationError(
                f"Invalid gateway address for chain {self.name}: {self.gateway_address}"
            )

        checksummed = Web3.to_checksum_address(self.gateway_address)
        if checksummed != self.gateway_address:
            object.__setattr__(self, 'gateway_address', checksummed)

        if self.block_confirmations < 0:
            raise ConfigurationError(
                f"Block confirmations must be non-negative for chain {self.name}, "
                f"got {self.block_confirmations}"
            )


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Configuration for event monitoring."""
    polling_interval: float = 5.0  # seconds between polls
    error_backoff: float = 10.0  # seconds to wait after a failed poll
    request_timeout: int = 30  # HTTP request timeout in seconds
    receipt_timeout: int = 120  # seconds to wait for a transaction receipt

    def __post_init__(self) -> None:
        if self.polling_interval <= 0:
            raise ConfigurationError(f"Polling interval must be positive, got {self.polling_interval}")
        if self.error_backoff < 0:
            raise ConfigurationError(f"Error backoff must be non-negative, got {self.error_backoff}")
        if self.request_timeout <= 0:
            raise ConfigurationError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.receipt_timeout <= 0:
            raise ConfigurationError(f"Receipt timeout must be positive, got {self.receipt_timeout}")


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Configuration for failed-transaction retries."""
    max_retries: int = 3
    base_delay: float = 60.0  # seconds, doubled per retry
    max_delay: float = 600.0
    sweep_interval: float = 30.0

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ConfigurationError(f"Max retries must be at least 1, got {self.max_retries}")
        if self.base_delay < 0:
            raise ConfigurationError(f"Base delay must be non-negative, got {self.base_delay}")
        if self.max_delay < self.base_delay:
            raise ConfigurationError(
                f"Max delay ({self.max_delay}) must not be below base delay ({self.base_delay})"
            )
        if self.sweep_interval <= 0:
            raise ConfigurationError(f"Sweep interval must be positive, got {self.sweep_interval}")


@dataclass(frozen=True, slots=True)
class ExecutionConfig:
    """Gas settings for execute() transactions."""
    gas_limit: int = 500_000
    gas_price_gwei: float | None = None  # None uses the node's gas price

    def __post_init__(self) -> None:
        if self.gas_limit <= 0:
            raise ConfigurationError(f"Gas limit must be positive, got {self.gas_limit}")
        if self.gas_price_gwei is not None and self.gas_price_gwei <= 0:
            raise ConfigurationError(f"Gas price must be positive, got {self.gas_price_gwei}")

    @property
    def gas_price_wei(self) -> int | None:
        if self.gas_price_gwei is None:
            return None
        return Web3.to_wei(self.gas_price_gwei, 'gwei')


@dataclass(frozen=True, slots=True)
class StorageConfig:
    """Location and retention of the persisted relayer state."""
    state_dir: str = "./state"
    retain_processed: int = 5_000
    compaction_threshold: int = 10_000
    compaction_interval: float = 3600.0
    # Seconds a compensated record is kept for audit before pruning
    compensated_retention: float = 604_800.0

    def __post_init__(self) -> None:
        if self.compaction_interval <= 0:
            raise ConfigurationError(f"Compaction interval must be positive, got {self.compaction_interval}")
        if self.compensated_retention < 0:
            raise ConfigurationError(
                f"Compensated retention must not be negative, got {self.compensated_retention}"
            )
        if self.retain_processed <= 0:
            raise ConfigurationError(f"Retained processed events must be positive, got {self.retain_processed}")
        if self.compaction_threshold < self.retain_processed:
            raise ConfigurationError(
                f"Compaction threshold ({self.compaction_threshold}) must not be below "
                f"retained count ({self.retain_processed})"
            )


@dataclass(frozen=True, slots=True)
class RelayerConfig:
    """Main configuration for the GMP Relayer.

    Attributes:
        chains: Chain name to chain configuration
        relayer_private_key: Key used to sign commands and transactions on every chain
        monitoring: Event monitoring settings
        retry: Retry and backoff settings
        execution: Gas settings for execute()
        storage: Persisted state settings
        verify_whitelist: Refuse to start unless whitelisted on every gateway
        shutdown_timeout: Seconds to let in-flight work finish on shutdown
    """

    chains: dict[str, ChainConfig]
    relayer_private_key: str
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    verify_whitelist: bool = True
    shutdown_timeout: float = 120.0

    def __post_init__(self) -> None:
        if not self.chains:
            raise ConfigurationError("At least one chain must be configured")

        if self.shutdown_timeout <= 0:
            raise ConfigurationError(f"Shutdown timeout must be positive, got {self.shutdown_timeout}")

        for name, chain in self.chains.items():
            if name != chain.name:
                raise ConfigurationError(f"Chain key {name} does not match chain name {chain.name}")

        if not self.relayer_private_key:
            raise ConfigurationError(
                "Relayer private key is required (RELAYER_PRIVATE_KEY or relayerPrivateKey)"
            )

        # 64 hex characters, optionally 0x-prefixed
        key = self.relayer_private_key.removeprefix('0x')
        if len(key) != 64:
            raise ConfigurationError(
                f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
            )
        try:
            int(key, 16)
        except ValueError:
            raise ConfigurationError("Invalid private key format. Must be hexadecimal") from None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelayerConfig":
        """Build a configuration from the relayer's JSON config document.

        Expected shape::

            {
              "chains": {"ethereum": {"rpc": "...", "gatewayAddress": "0x..",
                                      "blockConfirmations": 12}},
              "relayerPrivateKey": "0x..",
              "pollingIntervalMs": 5000,
              "maxRetries": 3,
              "gasLimit": 500000,
              "gasPrice": "20"
            }

        Raises:
            ConfigurationError: If required keys are missing or values are invalid
        """
        raw_chains = data.get("chains")
        if not isinstance(raw_chains, dict) or not raw_chains:
            raise ConfigurationError("Config must contain a non-empty 'chains' map")

        chains: dict[str, ChainConfig] = {}
        for name, chain_data in raw_chains.items():
            try:
                chains[name] = ChainConfig(
                    name=name,
                    rpc_url=chain_data.get("rpc", ""),
                    gateway_address=chain_data.get("gatewayAddress", ""),
                    block_confirmations=int(chain_data.get("blockConfirmations", 10)),
                )
            except ConfigurationError:
                raise
            except (TypeError, ValueError, AttributeError) as e:
                raise ConfigurationError(f"Invalid configuration for chain {name}: {e}") from e

        try:
            monitoring = MonitoringConfig(
                polling_interval=int(data.get("pollingIntervalMs", 5000)) / 1000,
                error_backoff=int(data.get("errorBackoffMs", 10000)) / 1000,
                request_timeout=int(data.get("requestTimeout", 30)),
                receipt_timeout=int(data.get("receiptTimeout", 120)),
            )
            retry = RetryConfig(
                max_retries=int(data.get("maxRetries", 3)),
                base_delay=float(data.get("retryBaseDelay", 60)),
                max_delay=float(data.get("retryMaxDelay", 600)),
                sweep_interval=float(data.get("retrySweepInterval", 30)),
            )
            gas_price = data.get("gasPrice")
            execution = ExecutionConfig(
                gas_limit=int(data.get("gasLimit", 500_000)),
                gas_price_gwei=float(gas_price) if gas_price not in (None, "") else None,
            )
            storage = StorageConfig(
                state_dir=data.get("stateDir", "./state"),
                retain_processed=int(data.get("retainProcessed", 5_000)),
                compaction_threshold=int(data.get("compactionThreshold", 10_000)),
                compaction_interval=float(data.get("compactionInterval", 3600)),
                compensated_retention=float(data.get("compensatedRetention", 604_800)),
            )
            shutdown_timeout = float(data.get("shutdownTimeout", 120))
        except ConfigurationError:
            raise
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e

        return cls(
            chains=chains,
            relayer_private_key=data.get("relayerPrivateKey", ""),
            monitoring=monitoring,
            retry=retry,
            execution=execution,
            storage=storage,
            verify_whitelist=bool(data.get("verifyWhitelist", True)),
            shutdown_timeout=shutdown_timeout,
        )

    @classmethod
    def from_env(cls) -> "RelayerConfig":
        """Load the JSON config named by RELAYER_CONFIG and apply env overrides.

        Returns:
            RelayerConfig: Loaded configuration

        Raises:
            ConfigurationError: If the file is missing or values are invalid
        """
        config_path = Path(os.environ.get("RELAYER_CONFIG", "config.json"))
        if not config_path.is_file():
            raise ConfigurationError(
                f"Relayer config file not found: {config_path}. "
                "Set RELAYER_CONFIG to the path of the chain configuration JSON"
            )

        try:
            with config_path.open() as file:
                data: dict[str, Any] = json.load(file)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in {config_path}: {e}") from e

        overrides = {
            "RELAYER_PRIVATE_KEY": "relayerPrivateKey",
            "POLLING_INTERVAL_MS": "pollingIntervalMs",
            "MAX_RETRIES": "maxRetries",
            "GAS_LIMIT": "gasLimit",
            "GAS_PRICE_GWEI": "gasPrice",
            "STATE_DIR": "stateDir",
        }
        for env_name, key in overrides.items():
            if value := os.environ.get(env_name):
                data[key] = value

        return cls.from_dict(data)

    def with_state_dir(self, state_dir: str) -> "RelayerConfig":
        """Return a copy that persists state under another directory."""
        return replace(self, storage=replace(self.storage, state_dir=state_dir))

    def log_config(self) -> None:
        """Log the configuration in a readable format (private key hidden)."""
        logger.info("=" * 60)
        logger.info("GMP Relayer Configuration")
        logger.info("=" * 60)

        logger.info("Chains:")
        for chain in self.chains.values():
            logger.info(f"  {chain.name}:")
            logger.info(f"    RPC URL: {chain.rpc_url}")
            logger.info(f"    Gateway: {chain.gateway_address}")
            logger.info(f"    Block Confirmations: {chain.block_confirmations}")

        logger.info("Monitoring Settings:")
        logger.info(f"  Polling Interval: {self.monitoring.polling_interval} seconds")
        logger.info(f"  Error Backoff: {self.monitoring.error_backoff} seconds")
        logger.info(f"  Receipt Timeout: {self.monitoring.receipt_timeout} seconds")

        logger.info("Retry Settings:")
        logger.info(f"  Max Retries: {self.retry.max_retries}")
        logger.info(f"  Backoff: {self.retry.base_delay}s doubling up to {self.retry.max_delay}s")

        logger.info("Execution Settings:")
        logger.info(f"  Gas Limit: {self.execution.gas_limit}")
        gas_price = f"{self.execution.gas_price_gwei} gwei" if self.execution.gas_price_gwei else "node default"
        logger.info(f"  Gas Price: {gas_price}")

        logger.info(f"State Directory: {self.storage.state_dir}")
        logger.info(f"Relayer Key: {'[CONFIGURED]' if self.relayer_private_key else '[NOT SET]'}")
        logger.info("=" * 60)
