"""
Polling-based gateway event monitor.

One ChainMonitor per configured chain scans new block ranges for the three
gateway events and emits them as RelayEvents in block order.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from web3 import Web3

from .models import EventKind, RelayEvent
from .utils.chain_client import ChainClient

EventCallback = Callable[[RelayEvent], Awaitable[Any]]

ZERO_HASH = "0x" + "00" * 32


def _to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    text = str(value)
    return text.lower() if text.startswith("0x") else "0x" + text.lower()


def parse_gateway_log(chain_name: str, kind: EventKind, log: Mapping[str, Any]) -> RelayEvent:
    """
    Convert a decoded gateway log into a RelayEvent.

    Args:
        chain_name: Chain the log was read from
        kind: Event kind the log was decoded as
        log: Decoded log (web3 EventData)

    Returns:
        RelayEvent for the log

    Raises:
        KeyError: If a required field is missing
    """
    args: Mapping[str, Any] = log['args']

    match kind:
        case EventKind.TOKEN_SENT:
            destination_address = args['destinationAddress']
            payload, payload_hash = "0x", ZERO_HASH
        case _:
            destination_address = args['destinationContractAddress']
            payload = _to_hex(args['payload'])
            payload_hash = _to_hex(args['payloadHash'])

    carries_tokens = kind is not EventKind.CONTRACT_CALL

    return RelayEvent(
        source_chain=chain_name,
        kind=kind,
        sender=Web3.to_checksum_address(args['sender']),
        destination_chain=args['destinationChain'],
        destination_address=destination_address,
        payload=payload,
        payload_hash=payload_hash,
        tx_hash=_to_hex(log['transactionHash']),
        log_index=int(log['logIndex']),
        block_number=int(log['blockNumber']),
        token_symbol=args['symbol'] if carries_tokens else None,
        amount=int(args['amount']) if carries_tokens else None,
    )


class ChainMonitor:
    """
    Polls one chain's gateway for ContractCall, ContractCallWithToken and
    TokenSent events.

    The watermark only moves forward, and only after every event in the
    scanned range has been handed to the callback without error.
    """

    def __init__(
        self,
        client: ChainClient,
        block_confirmations: int = 10,
        shutdown_event: asyncio.Event | None = None
    ) -> None:
        """
        Initialize the chain monitor.

        Args:
            client: Read-only client for the chain
            block_confirmations: Blocks behind head to start scanning from
            shutdown_event: Event that interrupts sleeps when set
        """
        self.client = client
        self.chain_name = client.name
        self.block_confirmations = block_confirmations
        self.shutdown_event = shutdown_event or asyncio.Event()

        self.last_processed_block: int | None = None
        self.is_running = False

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def initialize(self) -> None:
        """Set the watermark a safety margin behind the current head."""
        current_block = await self.client.block_number()
        self.last_processed_block = max(0, current_block - self.block_confirmations)
        self.logger.info(
            f"Monitoring {self.chain_name} from block {self.last_processed_block} "
            f"(head {current_block}, margin {self.block_confirmations})"
        )

    async def fetch_events(self, from_block: int, to_block: int) -> list[RelayEvent]:
        """
        Fetch all gateway events in [from_block, to_block], ordered by position.

        Logs that cannot be decoded are logged and skipped.
        """
        events: list[RelayEvent] = []
        for kind in EventKind:
            logs = await self.client.get_events(kind, from_block, to_block)
            for log in logs:
                try:
                    events.append(parse_gateway_log(self.chain_name, kind, log))
                except (KeyError, ValueError, TypeError) as e:
                    self.logger.error(
                        f"Skipping undecodable {kind.value} log on {self.chain_name}: {e}"
                    )

        events.sort(key=lambda event: (event.block_number, event.log_index))
        return events

    async def poll_once(self, callback: EventCallback) -> int:
        """
        Scan blocks after the watermark up to the current head.

        Args:
            callback: Async function called for each event, in order

        Returns:
            Number of events emitted
        """
        if self.last_processed_block is None:
            await self.initialize()

        current_block = await self.client.block_number()
        if current_block <= self.last_processed_block:
            return 0

        from_block = self.last_processed_block + 1
        events = await self.fetch_events(from_block, current_block)

        if events:
            self.logger.info(
                f"Found {len(events)} gateway events on {self.chain_name} "
                f"in blocks {from_block}-{current_block}"
            )
        for event in events:
            await callback(event)

        self.last_processed_block = current_block
        return len(events)

    async def start_polling(
        self,
        callback: EventCallback,
        interval: float = 5.0,
        error_backoff: float = 10.0
    ) -> None:
        """
        Poll until stopped or the shutdown event is set.

        Errors never end the loop: the watermark stays put and the same range
        is scanned again after `error_backoff` seconds.

        Args:
            callback: Async function called for each event
            interval: Seconds between polls
            error_backoff: Seconds to wait after a failed poll
        """
        if self.is_running:
            self.logger.warning("Polling already running")
            return

        self.is_running = True
        self.logger.info(f"Starting polling on {self.chain_name} every {interval} seconds")

        try:
            while self.is_running and not self.shutdown_event.is_set():
                try:
                    await self.poll_once(callback)
                    delay = interval
                except asyncio.CancelledError:
                    self.logger.info("Polling cancelled")
                    raise
                except Exception as e:
                    self.logger.error(f"Error polling {self.chain_name}: {e}")
                    delay = error_backoff

                await self._sleep(delay)
        finally:
            self.is_running = False
            self.logger.info(f"Stopped polling {self.chain_name}")

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def stop(self) -> None:
        """Stop the polling loop after the current iteration."""
        self.logger.info(f"Stopping polling on {self.chain_name}")
        self.is_running = False

    def get_status(self) -> dict[str, Any]:
        """
        Get current status of the monitor.

        Returns:
            Dictionary with status information
        """
        return {
            "chain": self.chain_name,
            "is_running": self.is_running,
            "last_processed_block": self.last_processed_block,
            "gateway_address": self.client.chain.gateway_address,
        }
