"""
GMP Relayer implementation.

This module contains the main relayer service that wires one monitor per chain
to the translator and executor, and runs the retry sweep alongside them.
"""

import asyncio
import logging
from typing import Any

from web3 import Web3

from .command_executor import CommandExecutor
from .command_translator import CommandTranslator
from .compensation import CompensationEngine
from .config import RelayerConfig
from .errors import RelayerNotWhitelistedError
from .event_monitor import ChainMonitor
from .models import ExecutionResult, RelayEvent, failure_key
from .retry_processor import RetryProcessor
from .utils.chain_client import ChainClient
from .utils.signer import RelayerSigner
from .utils.state_store import JsonFileStateStore, StateStore

logger = logging.getLogger(__name__)


class GMPRelayer:
    """
    Main relayer service that orchestrates monitoring, execution and recovery.

    This class focuses on coordination and lifecycle management; translation,
    execution, retries and compensation live in their own components.
    """

    STATUS_LOG_INTERVAL = 30  # seconds

    def __init__(
        self,
        config: RelayerConfig,
        clients: dict[str, ChainClient] | None = None,
        signer: RelayerSigner | None = None,
        state_store: StateStore | None = None
    ) -> None:
        """
        Initialize the GMP Relayer.

        Args:
            config: Relayer configuration
            clients: Chain clients by name (built from config when omitted)
            signer: Relayer signer (built from the configured key when omitted)
            state_store: State store (JSON files under state_dir when omitted)
        """
        self.config = config
        self.running = False
        self.shutdown_event = asyncio.Event()

        self.clients = clients or {
            name: ChainClient(chain, request_timeout=config.monitoring.request_timeout)
            for name, chain in config.chains.items()
        }
        self.signer = signer or RelayerSigner(config.relayer_private_key)
        self.state_store = state_store or JsonFileStateStore(config.storage.state_dir)

        self.translator = CommandTranslator(self.state_store, self.clients.keys())
        self.executor = CommandExecutor(
            clients=self.clients,
            signer=self.signer,
            state_store=self.state_store,
            execution=config.execution,
            max_retries=config.retry.max_retries,
            receipt_timeout=config.monitoring.receipt_timeout
        )
        self.compensation = CompensationEngine(self.state_store, self.executor)
        self.executor.on_exhausted = self.compensation.compensate

        self.retry_processor = RetryProcessor(
            state_store=self.state_store,
            executor=self.executor,
            compensation=self.compensation,
            retry=config.retry
        )
        self.monitors: dict[str, ChainMonitor] = {
            name: ChainMonitor(
                client,
                block_confirmations=config.chains[name].block_confirmations,
                shutdown_event=self.shutdown_event
            )
            for name, client in self.clients.items()
        }

        logger.info(f"Relayer address: {self.signer.address}")

    @classmethod
    def from_env(cls, state_dir: str | None = None) -> "GMPRelayer":
        """
        Create a GMPRelayer from the config file and environment variables.

        Args:
            state_dir: Override for the state directory

        Returns:
            Configured GMPRelayer instance

        Raises:
            ConfigurationError: If the configuration is missing or invalid
        """
        config = RelayerConfig.from_env()
        if state_dir:
            config = config.with_state_dir(state_dir)
        config.log_config()
        return cls(config)

    async def verify_relayer_status(self) -> None:
        """
        Check the relayer is whitelisted on every gateway and log its balances.

        Raises:
            RelayerNotWhitelistedError: If any gateway does not whitelist the relayer
        """
        address = self.signer.address
        for name, client in self.clients.items():
            if not await client.is_whitelisted_relayer(address):
                raise RelayerNotWhitelistedError(
                    f"Relayer {address} is not whitelisted on {name} gateway "
                    f"{client.chain.gateway_address}"
                )
            balance = await client.get_balance(address)
            logger.info(f"{name}: whitelisted, balance {Web3.from_wei(balance, 'ether')} ETH")

    async def relay_event(self, event: RelayEvent) -> ExecutionResult | None:
        """
        Translate a source-chain event and execute it on its destination.

        Events whose command already has a failure record are left to the
        retry processor.

        Returns:
            ExecutionResult, or None if the event was skipped
        """
        command = await self.translator.translate(event)
        if command is None:
            return None

        key = failure_key(command.command_id, event.destination_chain)
        if await self.state_store.get_failure(key) is not None:
            logger.debug(f"Command {key} already tracked as failed, leaving it to retries")
            return None

        return await self.executor.execute(
            event.destination_chain,
            command.command_id,
            [command],
            event
        )

    async def trigger_manual_compensation(self, command_id: str) -> dict[str, Any]:
        """Operator entry point: compensate a failed command now."""
        return await self.compensation.trigger_manual(command_id)

    async def get_failed_transactions(self) -> list[dict[str, Any]]:
        return [record.to_dict() for record in await self.state_store.list_failures()]

    async def get_health(self) -> dict[str, Any]:
        """
        Report per-chain connectivity and relayer state.

        Returns:
            Dictionary with "status" of "healthy" or "degraded" and details
        """
        degraded = False
        chains: dict[str, Any] = {}

        for name, client in self.clients.items():
            monitor = self.monitors[name]
            try:
                block_number = await client.block_number()
                balance = await client.get_balance(self.signer.address)
                chains[name] = {
                    "connected": True,
                    "block_number": block_number,
                    "last_processed_block": monitor.last_processed_block,
                    "relayer_balance": str(Web3.from_wei(balance, 'ether')),
                }
            except Exception as e:
                degraded = True
                chains[name] = {
                    "connected": False,
                    "last_processed_block": monitor.last_processed_block,
                    "error": str(e),
                }

        stats = self.state_store.get_stats()
        if stats['exhausted']:
            degraded = True

        return {
            "status": "degraded" if degraded else "healthy",
            "relayer_address": self.signer.address,
            "chains": chains,
            "processed_events": stats['processed_events'],
            "failed_transactions": stats['failed_transactions'],
            "exhausted": stats['exhausted'],
            "compensated": stats['compensated'],
            "translator": self.translator.get_metrics(),
            "retries": self.retry_processor.get_status(),
            "compensation": self.compensation.get_status(),
        }

    async def _wait_for_shutdown(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        while self.running and not await self._wait_for_shutdown(self.STATUS_LOG_INTERVAL):
            stats = self.state_store.get_stats()
            if stats['failed_transactions'] > 0:
                logger.info(
                    f"Status: {stats['failed_transactions']} failed transactions "
                    f"({stats['exhausted']} exhausted, {stats['compensated']} compensated), "
                    f"{stats['processed_events']} events processed"
                )

    async def _compaction_loop(self) -> None:
        """Trim the processed-event set and drop compensated records past retention."""
        while not await self._wait_for_shutdown(self.config.storage.compaction_interval):
            try:
                await self.compact_state()
            except Exception as e:
                logger.error(f"Compaction failed: {e}")

    async def compact_state(self) -> None:
        """Run one compaction pass over the persisted state."""
        storage = self.config.storage
        if await self.state_store.processed_count() > storage.compaction_threshold:
            await self.state_store.compact(storage.retain_processed)
        await self.state_store.prune_compensated(storage.compensated_retention)

    async def _check_task_health(self, tasks: dict[str, asyncio.Task]) -> bool:
        """Check if any critical task has failed."""
        for name, task in tasks.items():
            if task.done() and name != "status":  # status task can end normally
                try:
                    await task
                except Exception as e:
                    logger.error(f"{name} task failed: {e}", exc_info=True)
                return False
        return True

    async def _cleanup_tasks(self, tasks: dict[str, asyncio.Task]) -> None:
        """Let in-flight work finish, then cancel anything still running."""
        self.shutdown_event.set()
        for monitor in self.monitors.values():
            await monitor.stop()

        if not tasks:
            return

        _, pending = await asyncio.wait(tasks.values(), timeout=self.config.shutdown_timeout)
        for task in pending:
            task.cancel()
        for name, task in tasks.items():
            if task in pending:
                try:
                    await task
                except asyncio.CancelledError:
                    logger.warning(f"{name} task cancelled after shutdown timeout")

    async def run(self) -> None:
        """Main event loop for the relayer service."""
        self.running = True
        logger.info("GMP Relayer starting...")
        logger.info(f"Chains: {', '.join(self.clients)}")
        logger.info(f"Polling interval: {self.config.monitoring.polling_interval}s")

        tasks: dict[str, asyncio.Task] = {}
        try:
            if self.config.verify_whitelist:
                await self.verify_relayer_status()

            for name, monitor in self.monitors.items():
                tasks[f"monitor:{name}"] = asyncio.create_task(
                    monitor.start_polling(
                        callback=self.relay_event,
                        interval=self.config.monitoring.polling_interval,
                        error_backoff=self.config.monitoring.error_backoff
                    )
                )
            tasks["retry"] = asyncio.create_task(self.retry_processor.run(self.shutdown_event))
            tasks["compaction"] = asyncio.create_task(self._compaction_loop())
            tasks["status"] = asyncio.create_task(self._periodic_status_logger())

            logger.info("Event monitoring started, waiting for events...")

            # Wait until shutdown or task failure
            while self.running:
                if await self._wait_for_shutdown(1.0):
                    break

                if not await self._check_task_health(tasks):
                    logger.error("Critical task failure, shutting down")
                    break

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            raise
        finally:
            await self._cleanup_tasks(tasks)
            self.running = False
            logger.info("GMP Relayer stopped")

    def stop(self) -> None:
        """Stop the relayer service."""
        self.running = False
        self.shutdown_event.set()
