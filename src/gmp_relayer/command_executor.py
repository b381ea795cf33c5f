"""
Command execution for the GMP Relayer.

This module signs command batches and submits them to a chain's gateway
execute() function, checking the gateway's own replay protection first and
recording the outcome in the state store.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3
from web3.types import TxParams, TxReceipt, Wei

from .config import ExecutionConfig
from .models import Command, ExecutionResult, FailedTransaction, RelayEvent, failure_key
from .utils.chain_client import ChainClient
from .utils.signer import RelayerSigner
from .utils.state_store import StateStore

logger = logging.getLogger(__name__)

ExhaustionHandler = Callable[[FailedTransaction], Awaitable[Any]]


def compute_command_hash(command_id: str, commands: Sequence[Command]) -> bytes:
    """Hash signed by the relayer: keccak(abi.encode(commandId, commands))."""
    encoded = encode(
        ['bytes32', '(uint256,bytes)[]'],
        [bytes(HexBytes(command_id)), [command.as_abi_tuple() for command in commands]]
    )
    return Web3.keccak(encoded)


class CommandExecutor:
    """Executes signed command batches on gateway contracts."""

    def __init__(
        self,
        clients: Mapping[str, ChainClient],
        signer: RelayerSigner,
        state_store: StateStore,
        execution: ExecutionConfig,
        max_retries: int = 3,
        receipt_timeout: int = 120
    ) -> None:
        """
        Initialize the CommandExecutor.

        Args:
            clients: Chain name to chain client
            signer: Relayer signing capability
            state_store: Store for processed events and failed transactions
            execution: Gas settings
            max_retries: Attempts allowed before a failure is exhausted
            receipt_timeout: Seconds to wait for a transaction receipt
        """
        self.clients = clients
        self.signer = signer
        self.state_store = state_store
        self.execution = execution
        self.max_retries = max_retries
        self.receipt_timeout = receipt_timeout

        # Called once when a failure record reaches its retry limit
        self.on_exhausted: ExhaustionHandler | None = None

    async def execute(
        self,
        chain: str,
        command_id: str,
        commands: Sequence[Command],
        source_event: RelayEvent | None = None,
        expected: FailedTransaction | None = None
    ) -> ExecutionResult:
        """
        Execute a command batch on a chain and record the outcome.

        On success any failure record for the batch is removed and the source
        event, if any, is marked processed. On failure the failure record is
        created or bumped; if that exhausts it, the exhaustion handler runs.

        Args:
            chain: Chain to execute on
            command_id: Batch command id
            commands: Commands in the batch
            source_event: Event the batch was derived from (None for compensations)
            expected: Stored record this attempt retries; the attempt is skipped
                if that record has since left ACTIVE or been attempted again

        Returns:
            ExecutionResult describing the attempt

        Raises:
            ValueError: If no client is configured for the chain
            PersistenceError: If the outcome could not be persisted
        """
        if chain not in self.clients:
            raise ValueError(f"No chain client configured for {chain}")

        key = failure_key(command_id, chain)
        async with self.state_store.command_lock(key):
            if expected is not None and not await self._still_current(key, expected):
                logger.info(f"Skipping {key}: record is no longer active")
                return ExecutionResult(
                    success=False,
                    command_id=command_id,
                    chain=chain,
                    error="failure record is no longer active",
                    skipped=True
                )

            result = await self._attempt(chain, command_id, commands)

            if result.success:
                if await self.state_store.remove_failure(key):
                    logger.info(f"Successfully retried failed transaction: {key}")
                if source_event is not None:
                    await self.state_store.mark_processed(source_event.event_id)
            else:
                record, newly_exhausted = await self.state_store.record_failure(
                    command_id,
                    chain,
                    commands,
                    source_event,
                    result.error or "unknown error",
                    self.max_retries
                )
                result.failed_transaction = record
                result.newly_exhausted = newly_exhausted
                logger.warning(
                    f"Recorded failure for {key} "
                    f"(attempt {record.retry_count}/{record.max_retries}): {result.error}"
                )

        if result.newly_exhausted and result.failed_transaction is not None:
            logger.warning(f"Max retries exceeded for {key}, queuing compensation")
            if self.on_exhausted is not None:
                await self.on_exhausted(result.failed_transaction)

        return result

    async def _still_current(self, key: str, expected: FailedTransaction) -> bool:
        record = await self.state_store.get_failure(key)
        return (
            record is not None
            and record.is_active
            and record.retry_count == expected.retry_count
        )

    async def _attempt(
        self,
        chain: str,
        command_id: str,
        commands: Sequence[Command]
    ) -> ExecutionResult:
        client = self.clients[chain]
        logger.info(f"Executing command {command_id[:10]}... on {chain}")

        try:
            if await client.is_command_executed(command_id):
                logger.info(f"Command {command_id[:10]}... already executed on {chain}")
                return ExecutionResult(
                    success=True,
                    command_id=command_id,
                    chain=chain,
                    already_executed=True
                )

            signature = self.signer.sign_command_hash(compute_command_hash(command_id, commands))

            gas_price = self.execution.gas_price_wei or await client.gas_price()
            tx_params: TxParams = {
                'from': self.signer.address,
                'gas': self.execution.gas_limit,
                'gasPrice': Wei(gas_price),
                'value': Wei(0)
            }
            tx = await client.build_execute_transaction(
                command_id,
                [command.as_abi_tuple() for command in commands],
                signature,
                tx_params
            )

            tx_hash = await self.signer.send_transaction(client, tx)
            tx_hash_hex = Web3.to_hex(tx_hash)
            logger.info(f"Transaction sent on {chain}: {tx_hash_hex}")

            receipt: TxReceipt = await client.wait_for_receipt(tx_hash, self.receipt_timeout)
            gas_used = receipt.get('gasUsed')

            if (status := receipt.get('status', 0)) == 1:
                logger.info(
                    f"✓ Commands executed on {chain} in block {receipt.get('blockNumber')} "
                    f"(gas used: {gas_used})"
                )
                return ExecutionResult(
                    success=True,
                    command_id=command_id,
                    chain=chain,
                    tx_hash=tx_hash_hex,
                    gas_used=gas_used
                )

            if gas_used is not None and gas_used >= self.execution.gas_limit:
                error = f"Transaction {tx_hash_hex} ran out of gas (limit {self.execution.gas_limit})"
            else:
                error = f"Transaction {tx_hash_hex} reverted with status={status}"
            logger.error(f"✗ {error}")
            return ExecutionResult(
                success=False,
                command_id=command_id,
                chain=chain,
                tx_hash=tx_hash_hex,
                gas_used=gas_used,
                error=error
            )

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Failed to execute command {command_id[:10]}... on {chain}: {e}")
            return ExecutionResult(
                success=False,
                command_id=command_id,
                chain=chain,
                error=str(e) or type(e).__name__
            )
