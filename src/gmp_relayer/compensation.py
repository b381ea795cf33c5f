"""
Compensation for transfers whose destination execution cannot complete.

When a token-bearing failure is exhausted, the tokens the sender locked or
burned on the source chain are minted back to them there. The claim on the
failure record and the pending refund are persisted together before anything
is submitted, so a record is compensated at most once no matter how many
callers race for it, and a claimed refund is never lost.
"""

import logging
import uuid
from typing import Any

from web3 import Web3

from .command_executor import CommandExecutor
from .command_translator import build_mint_command
from .errors import CompensationError
from .models import CompensationState, ExecutionResult, FailedTransaction
from .utils.state_store import StateStore

logger = logging.getLogger(__name__)


def new_compensation_id() -> str:
    """Fresh single-use command id for a refund."""
    return Web3.to_hex(Web3.keccak(text=f"compensation-{uuid.uuid4()}"))


class CompensationEngine:
    """Refunds exhausted token transfers on their source chain."""

    def __init__(self, state_store: StateStore, executor: CommandExecutor) -> None:
        self.state_store = state_store
        self.executor = executor

        self.compensations_submitted = 0
        self.compensations_succeeded = 0

    async def compensate(self, failed_tx: FailedTransaction) -> ExecutionResult | None:
        """
        Claim an exhausted failure and submit its refund.

        Args:
            failed_tx: Exhausted failure record

        Returns:
            ExecutionResult of the refund, or None when nothing was submitted
            (no tokens to refund, or the record was not claimable)
        """
        event = failed_tx.source_event
        if event is None:
            logger.error(
                f"Exhausted transaction {failed_tx.key} has no source event; "
                "operator action required"
            )
            return None

        if not event.carries_tokens:
            logger.warning(
                f"Exhausted transaction {failed_tx.key} carried no tokens, "
                "nothing to compensate"
            )
            return None

        if event.source_chain not in self.executor.clients:
            logger.error(
                f"Cannot compensate {failed_tx.key}: source chain {event.source_chain} "
                "is not configured"
            )
            return None

        compensation_id = new_compensation_id()
        command = build_mint_command(
            compensation_id,
            event.sender,
            event.amount,
            event.token_symbol or ""
        )
        # Stored ACTIVE and never attempted, so the retry sweep resubmits it
        # if this process stops before the refund lands
        refund = FailedTransaction(
            command_id=compensation_id,
            destination_chain=event.source_chain,
            commands=[command],
            source_event=None,
            error="pending",
            retry_count=0,
            max_retries=self.executor.max_retries,
            last_attempt_timestamp=0.0
        )
        claimed = await self.state_store.claim_compensation(failed_tx.key, refund)
        if claimed is None:
            logger.debug(f"{failed_tx.key} already compensated or not exhausted, skipping")
            return None

        logger.info(
            f"Compensating {failed_tx.key}: minting {event.amount} {event.token_symbol} "
            f"back to {event.sender} on {event.source_chain} "
            f"(compensation {compensation_id[:10]}...)"
        )

        self.compensations_submitted += 1
        result = await self.executor.execute(
            event.source_chain,
            compensation_id,
            [command],
            expected=refund
        )
        if result.success:
            self.compensations_succeeded += 1
            logger.info(f"✓ Compensation {compensation_id[:10]}... executed on {event.source_chain}")
        else:
            logger.error(
                f"✗ Compensation {compensation_id[:10]}... failed on {event.source_chain}: "
                f"{result.error}"
            )
        return result

    async def trigger_manual(self, command_id: str) -> dict[str, Any]:
        """
        Force every failure of a command into EXHAUSTED and compensate it.

        Args:
            command_id: Command id of the failed transaction(s)

        Returns:
            Dictionary describing what happened to each failure record

        Raises:
            CompensationError: If no failure is recorded for the command id
        """
        records = await self.state_store.find_failures(command_id)
        if not records:
            raise CompensationError(f"No failed transaction found for command {command_id}")

        logger.info(f"Manual compensation triggered for command {command_id}")
        outcomes = []
        for record in records:
            # Wait out any in-flight attempt on this key before forcing
            async with self.state_store.command_lock(record.key):
                await self.state_store.force_exhaust(record.key)

            current = await self.state_store.get_failure(record.key)
            if current is None:
                outcomes.append({"key": record.key, "state": "resolved", "submitted": False})
                continue

            result = None
            if current.state is CompensationState.EXHAUSTED:
                result = await self.compensate(current)

            latest = await self.state_store.get_failure(record.key) or current
            outcomes.append({
                "key": record.key,
                "state": latest.state.value,
                "compensation_id": latest.compensation_id,
                "submitted": result is not None,
                "success": result.success if result else None,
                "tx_hash": result.tx_hash if result else None,
                "error": result.error if result else None,
            })

        return {"command_id": command_id, "compensations": outcomes}

    def get_status(self) -> dict[str, int]:
        return {
            "compensations_submitted": self.compensations_submitted,
            "compensations_succeeded": self.compensations_succeeded,
        }
