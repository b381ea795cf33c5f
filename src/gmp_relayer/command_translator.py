"""
Command translation for the GMP Relayer.

This module turns RelayEvents observed on a source chain into gateway commands
for the destination chain. Translation is deterministic: the same event always
encodes to the same command data and the same command id, which is what makes
retries and re-scans safe.
"""

import logging
from collections.abc import Iterable

from eth_abi import encode
from eth_abi.exceptions import EncodingError
from hexbytes import HexBytes
from web3 import Web3

from .models import Command, CommandType, EventKind, RelayEvent
from .utils.state_store import StateStore

logger = logging.getLogger(__name__)

COMMAND_TYPE_BY_KIND: dict[EventKind, CommandType] = {
    EventKind.CONTRACT_CALL: CommandType.APPROVE_CONTRACT_CALL,
    EventKind.CONTRACT_CALL_WITH_TOKEN: CommandType.APPROVE_CONTRACT_CALL_WITH_MINT,
    EventKind.TOKEN_SENT: CommandType.MINT_TOKEN,
}


def _to_bytes32(value: str | bytes) -> bytes:
    raw = bytes(HexBytes(value))
    if len(raw) != 32:
        raise ValueError(f"Expected 32 bytes, got {len(raw)}")
    return raw


def compute_command_id(
    source_chain: str,
    tx_hash: str,
    log_index: int,
    command_type: int,
    data: bytes
) -> str:
    """Hash the encoded command together with the event's position on the source chain."""
    encoded = encode(
        ['string', 'bytes32', 'uint256', 'uint256', 'bytes'],
        [source_chain, _to_bytes32(tx_hash), log_index, int(command_type), data]
    )
    return Web3.to_hex(Web3.keccak(encoded))


def build_mint_command(command_id: str, recipient: str, amount: int, symbol: str) -> Command:
    """Build a MINT_TOKEN command minting `amount` of `symbol` to `recipient`."""
    data = encode(
        ['address', 'uint256', 'string'],
        [Web3.to_checksum_address(recipient), amount, symbol]
    )
    return Command(command_id=command_id, command_type=CommandType.MINT_TOKEN, data=data)


def encode_command_data(event: RelayEvent) -> tuple[CommandType, bytes]:
    """
    ABI-encode the destination parameters for an event.

    Args:
        event: Source-chain event

    Returns:
        Tuple of (command_type, encoded data)

    Raises:
        ValueError: If the event fields cannot be encoded
    """
    command_type = COMMAND_TYPE_BY_KIND[event.kind]

    match event.kind:
        case EventKind.CONTRACT_CALL:
            data = encode(
                ['string', 'string', 'address', 'bytes32', 'bytes32', 'uint256', 'bytes'],
                [
                    event.source_chain,
                    event.sender,
                    Web3.to_checksum_address(event.destination_address),
                    _to_bytes32(event.payload_hash),
                    _to_bytes32(event.tx_hash),
                    event.log_index,
                    bytes(HexBytes(event.payload)),
                ]
            )
        case EventKind.CONTRACT_CALL_WITH_TOKEN:
            data = encode(
                ['string', 'string', 'address', 'bytes32', 'string', 'uint256', 'bytes32', 'uint256', 'bytes'],
                [
                    event.source_chain,
                    event.sender,
                    Web3.to_checksum_address(event.destination_address),
                    _to_bytes32(event.payload_hash),
                    event.token_symbol or "",
                    event.amount or 0,
                    _to_bytes32(event.tx_hash),
                    event.log_index,
                    bytes(HexBytes(event.payload)),
                ]
            )
        case EventKind.TOKEN_SENT:
            data = encode(
                ['address', 'uint256', 'string'],
                [
                    Web3.to_checksum_address(event.destination_address),
                    event.amount or 0,
                    event.token_symbol or "",
                ]
            )

    return command_type, data


class CommandTranslator:
    """Translates RelayEvents into destination-chain commands.

    This class is responsible for:
    - Dropping events whose id is already in the processed-event set
    - Dropping events that target a chain the relayer has no binding for
    - Encoding the command and deriving its deterministic id
    - Maintaining metrics on translated events
    """

    def __init__(self, state_store: StateStore, supported_chains: Iterable[str]) -> None:
        """Initialize the CommandTranslator.

        Args:
            state_store: Store holding the processed-event set
            supported_chains: Names of chains with a configured gateway
        """
        self.state_store = state_store
        self.supported_chains = frozenset(supported_chains)

        self.events_translated = 0
        self.events_duplicated = 0
        self.events_unsupported = 0
        self.events_invalid = 0

    async def translate(self, event: RelayEvent) -> Command | None:
        """
        Translate an event into a command.

        Args:
            event: Source-chain event

        Returns:
            Command for the destination chain, or None if the event is already
            handled, targets an unsupported chain, or cannot be encoded
        """
        if await self.state_store.is_processed(event.event_id):
            self.events_duplicated += 1
            logger.debug(f"Event already processed, skipping: {event}")
            return None

        if event.destination_chain not in self.supported_chains:
            self.events_unsupported += 1
            logger.warning(
                f"Destination chain {event.destination_chain} not supported, "
                f"dropping {event}"
            )
            return None

        try:
            command = self.build_command(event)
        except (ValueError, TypeError, EncodingError) as e:
            self.events_invalid += 1
            logger.error(f"Cannot encode command for {event}: {e}")
            return None

        self.events_translated += 1
        logger.info(
            f"Translated {event.kind.value} from {event.source_chain} "
            f"into command {command.command_id[:10]}... "
            f"(type {command.command_type}) for {event.destination_chain}"
        )
        return command

    @staticmethod
    def build_command(event: RelayEvent) -> Command:
        """Encode an event into a Command without any deduplication checks."""
        command_type, data = encode_command_data(event)
        command_id = compute_command_id(
            event.source_chain,
            event.tx_hash,
            event.log_index,
            command_type,
            data
        )
        return Command(command_id=command_id, command_type=command_type, data=data)

    def get_metrics(self) -> dict[str, int]:
        """Get current translation metrics.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "events_translated": self.events_translated,
            "events_duplicated": self.events_duplicated,
            "events_unsupported": self.events_unsupported,
            "events_invalid": self.events_invalid,
        }
