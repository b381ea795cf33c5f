"""
Shared data models for the GMP relayer.

This module contains the events, commands and failure records passed between
the monitor, translator, executor, retry processor and compensation engine.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any

from hexbytes import HexBytes
from web3 import Web3


class EventKind(str, Enum):
    """Gateway events the relayer monitors on every chain."""
    CONTRACT_CALL = "ContractCall"
    CONTRACT_CALL_WITH_TOKEN = "ContractCallWithToken"
    TOKEN_SENT = "TokenSent"


class CommandType(IntEnum):
    """Command type constants understood by the gateway's execute()."""
    APPROVE_CONTRACT_CALL = 0
    APPROVE_CONTRACT_CALL_WITH_MINT = 1
    MINT_TOKEN = 4


class CompensationState(str, Enum):
    """Lifecycle of a failed transaction.

    ACTIVE -> EXHAUSTED -> COMPENSATED, each transition taken at most once.
    """
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    COMPENSATED = "compensated"


def compute_event_id(tx_hash: str, log_index: int) -> str:
    """Deduplication key of a source-chain log."""
    return Web3.to_hex(Web3.keccak(text=f"{tx_hash.lower()}-{log_index}"))


def failure_key(command_id: str, chain: str) -> str:
    return f"{command_id}-{chain}"


@dataclass(frozen=True, slots=True)
class RelayEvent:
    """A gateway event observed on a source chain.

    Attributes:
        source_chain: Configured name of the chain the event was emitted on
        kind: Which of the three gateway events this is
        sender: Address that initiated the cross-chain action
        destination_chain: Name of the chain the action targets
        destination_address: Contract (calls) or recipient (TokenSent)
        payload: Hex-encoded call payload ("0x" for TokenSent)
        payload_hash: Hex-encoded keccak of the payload
        tx_hash: Source transaction hash
        log_index: Log index within the source block
        block_number: Source block number
        token_symbol: Token symbol for token-bearing kinds
        amount: Token amount for token-bearing kinds
    """
    source_chain: str
    kind: EventKind
    sender: str
    destination_chain: str
    destination_address: str
    payload: str
    payload_hash: str
    tx_hash: str
    log_index: int
    block_number: int
    token_symbol: str | None = None
    amount: int | None = None

    def __str__(self) -> str:
        return (
            f"RelayEvent({self.kind.value} {self.source_chain}->{self.destination_chain}, "
            f"tx={self.tx_hash[:10]}..., log={self.log_index}, block={self.block_number})"
        )

    @property
    def event_id(self) -> str:
        return compute_event_id(self.tx_hash, self.log_index)

    @property
    def carries_tokens(self) -> bool:
        """True when the event moved tokens and can therefore be refunded."""
        return (
            self.kind in (EventKind.CONTRACT_CALL_WITH_TOKEN, EventKind.TOKEN_SENT)
            and bool(self.amount)
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "source_chain": self.source_chain,
            "kind": self.kind.value,
            "sender": self.sender,
            "destination_chain": self.destination_chain,
            "destination_address": self.destination_address,
            "payload": self.payload,
            "payload_hash": self.payload_hash,
            "tx_hash": self.tx_hash,
            "log_index": self.log_index,
            "block_number": self.block_number,
            "token_symbol": self.token_symbol,
            # JSON numbers lose precision past 2**53
            "amount": str(self.amount) if self.amount is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelayEvent":
        amount = data.get("amount")
        return cls(
            source_chain=data["source_chain"],
            kind=EventKind(data["kind"]),
            sender=data["sender"],
            destination_chain=data["destination_chain"],
            destination_address=data["destination_address"],
            payload=data.get("payload", "0x"),
            payload_hash=data.get("payload_hash", "0x" + "00" * 32),
            tx_hash=data["tx_hash"],
            log_index=int(data["log_index"]),
            block_number=int(data["block_number"]),
            token_symbol=data.get("token_symbol"),
            amount=int(amount) if amount is not None else None,
        )


@dataclass(frozen=True, slots=True)
class Command:
    """A destination-chain instruction derived from one RelayEvent.

    Attributes:
        command_id: Deterministic 0x-prefixed bytes32 identifier
        command_type: Gateway command type
        data: ABI-encoded command parameters
    """
    command_id: str
    command_type: int
    data: bytes

    def as_abi_tuple(self) -> tuple[int, bytes]:
        """The (commandType, data) tuple passed to the gateway."""
        return (int(self.command_type), bytes(self.data))

    def to_dict(self) -> dict[str, Any]:
        return {
            "command_id": self.command_id,
            "command_type": int(self.command_type),
            "data": Web3.to_hex(self.data),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Command":
        return cls(
            command_id=data["command_id"],
            command_type=int(data["command_type"]),
            data=bytes(HexBytes(data["data"])),
        )


@dataclass(slots=True)
class FailedTransaction:
    """Durable record of a command whose execution failed.

    Mutated only by the state store, under its lock. A refund is stored with
    the claim that created it, as an ACTIVE record with retry_count 0 and no
    source event, until its first attempt.
    """
    command_id: str
    destination_chain: str
    commands: list[Command]
    source_event: RelayEvent | None
    error: str
    retry_count: int
    max_retries: int
    last_attempt_timestamp: float
    state: CompensationState = CompensationState.ACTIVE
    compensation_id: str | None = None
    compensated_at: float | None = None

    @property
    def key(self) -> str:
        return failure_key(self.command_id, self.destination_chain)

    @property
    def is_active(self) -> bool:
        return self.state is CompensationState.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "command_id": self.command_id,
            "destination_chain": self.destination_chain,
            "commands": [command.to_dict() for command in self.commands],
            "source_event": self.source_event.to_dict() if self.source_event else None,
            "error": self.error,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "last_attempt_timestamp": self.last_attempt_timestamp,
            "state": self.state.value,
            "compensation_id": self.compensation_id,
            "compensated_at": self.compensated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FailedTransaction":
        source_event = data.get("source_event")
        return cls(
            command_id=data["command_id"],
            destination_chain=data["destination_chain"],
            commands=[Command.from_dict(c) for c in data.get("commands", [])],
            source_event=RelayEvent.from_dict(source_event) if source_event else None,
            error=data.get("error", ""),
            retry_count=int(data["retry_count"]),
            max_retries=int(data["max_retries"]),
            last_attempt_timestamp=float(data["last_attempt_timestamp"]),
            state=CompensationState(data.get("state", CompensationState.ACTIVE.value)),
            compensation_id=data.get("compensation_id"),
            compensated_at=data.get("compensated_at"),
        )


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of a single execute attempt on one chain."""
    success: bool
    command_id: str
    chain: str
    tx_hash: str | None = None
    gas_used: int | None = None
    already_executed: bool = False
    error: str | None = None
    failed_transaction: FailedTransaction | None = None
    newly_exhausted: bool = False
    skipped: bool = False
