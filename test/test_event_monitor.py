"""Unit tests for the ChainMonitor polling loop."""

import asyncio
import pytest
from unittest.mock import AsyncMock
from hexbytes import HexBytes
from web3 import Web3

from conftest import DESTINATION, ETHEREUM_GATEWAY, SENDER, TX_HASH, make_client
from gmp_relayer.event_monitor import ChainMonitor, parse_gateway_log
from gmp_relayer.models import EventKind


def gateway_log(kind, block_number, log_index, amount=100):
    """Build a decoded gateway log the way web3 returns it."""
    args = {
        "sender": SENDER.lower(),
        "destinationChain": "bsc",
        "symbol": "USDC",
        "amount": amount,
    }
    if kind is EventKind.TOKEN_SENT:
        args["destinationAddress"] = DESTINATION
    else:
        args["destinationContractAddress"] = DESTINATION
        args["payload"] = b"\x12\x34"
        args["payloadHash"] = Web3.keccak(b"\x12\x34")
    return {
        "args": args,
        "event": kind.value,
        "transactionHash": HexBytes(TX_HASH),
        "logIndex": log_index,
        "blockNumber": block_number,
    }


def serve_logs(logs_by_kind):
    """get_events side effect returning the logs of a kind inside the range."""
    async def get_events(kind, from_block, to_block):
        return [
            log for log in logs_by_kind.get(kind, [])
            if from_block <= log["blockNumber"] <= to_block
        ]
    return get_events


@pytest.fixture
def client():
    return make_client("ethereum", ETHEREUM_GATEWAY)


@pytest.fixture
def monitor(client):
    return ChainMonitor(client, block_confirmations=10)


class TestParseGatewayLog:
    """Tests for decoding gateway logs."""

    def test_token_sent(self):
        """Test TokenSent logs carry tokens and an empty payload."""
        event = parse_gateway_log("ethereum", EventKind.TOKEN_SENT, gateway_log(EventKind.TOKEN_SENT, 1000, 2))

        assert event.kind is EventKind.TOKEN_SENT
        assert event.sender == SENDER
        assert event.destination_address == DESTINATION
        assert event.payload == "0x"
        assert event.tx_hash == TX_HASH
        assert event.log_index == 2
        assert event.amount == 100
        assert event.carries_tokens

    def test_contract_call(self):
        """Test ContractCall logs have no token fields."""
        event = parse_gateway_log("ethereum", EventKind.CONTRACT_CALL, gateway_log(EventKind.CONTRACT_CALL, 5, 0))

        assert event.payload == "0x1234"
        assert event.payload_hash == Web3.to_hex(Web3.keccak(b"\x12\x34"))
        assert event.token_symbol is None
        assert event.amount is None

    def test_missing_field(self):
        """Test that incomplete logs raise KeyError."""
        log = gateway_log(EventKind.CONTRACT_CALL, 5, 0)
        del log["args"]["payload"]

        with pytest.raises(KeyError):
            parse_gateway_log("ethereum", EventKind.CONTRACT_CALL, log)


class TestChainMonitor:
    """Test suite for ChainMonitor."""

    @pytest.mark.asyncio
    async def test_initialize_sets_margin(self, monitor, client):
        """Test the watermark starts a safety margin behind head."""
        await monitor.initialize()

        assert monitor.last_processed_block == 990

    @pytest.mark.asyncio
    async def test_initialize_near_genesis(self, monitor, client):
        """Test the watermark never goes below zero."""
        client.block_number = AsyncMock(return_value=3)

        await monitor.initialize()

        assert monitor.last_processed_block == 0

    @pytest.mark.asyncio
    async def test_poll_emits_in_block_order(self, monitor, client):
        """Test events from all kinds are merged and ordered by position."""
        client.get_events = AsyncMock(side_effect=serve_logs({
            EventKind.TOKEN_SENT: [gateway_log(EventKind.TOKEN_SENT, 995, 4)],
            EventKind.CONTRACT_CALL: [
                gateway_log(EventKind.CONTRACT_CALL, 998, 0),
                gateway_log(EventKind.CONTRACT_CALL, 995, 1),
            ],
        }))
        monitor.last_processed_block = 990
        seen = []

        async def callback(event):
            seen.append((event.block_number, event.log_index))

        assert await monitor.poll_once(callback) == 3

        assert seen == [(995, 1), (995, 4), (998, 0)]
        assert monitor.last_processed_block == 1000
        client.get_events.assert_any_await(EventKind.TOKEN_SENT, 991, 1000)

    @pytest.mark.asyncio
    async def test_no_new_blocks(self, monitor, client):
        """Test nothing is fetched when head has not moved."""
        monitor.last_processed_block = 1000

        assert await monitor.poll_once(AsyncMock()) == 0
        client.get_events.assert_not_called()

    @pytest.mark.asyncio
    async def test_callback_error_keeps_watermark(self, monitor, client):
        """Test the watermark does not advance when handling an event fails."""
        client.get_events = AsyncMock(side_effect=serve_logs({
            EventKind.TOKEN_SENT: [gateway_log(EventKind.TOKEN_SENT, 995, 0)],
        }))
        monitor.last_processed_block = 990

        with pytest.raises(RuntimeError):
            await monitor.poll_once(AsyncMock(side_effect=RuntimeError("disk full")))

        assert monitor.last_processed_block == 990

    @pytest.mark.asyncio
    async def test_rpc_error_keeps_watermark(self, monitor, client):
        """Test a failed range fetch leaves the watermark in place."""
        client.get_events = AsyncMock(side_effect=ConnectionError("timeout"))
        monitor.last_processed_block = 990

        with pytest.raises(ConnectionError):
            await monitor.poll_once(AsyncMock())

        assert monitor.last_processed_block == 990

    @pytest.mark.asyncio
    async def test_undecodable_log_is_skipped(self, monitor, client):
        """Test a malformed log does not block the rest of the range."""
        broken = gateway_log(EventKind.TOKEN_SENT, 995, 0)
        del broken["args"]["amount"]
        client.get_events = AsyncMock(side_effect=serve_logs({
            EventKind.TOKEN_SENT: [broken, gateway_log(EventKind.TOKEN_SENT, 996, 0)],
        }))
        monitor.last_processed_block = 990
        callback = AsyncMock()

        assert await monitor.poll_once(callback) == 1
        assert monitor.last_processed_block == 1000

    @pytest.mark.asyncio
    async def test_polling_survives_errors_and_stops(self, client):
        """Test the loop retries after errors and exits on shutdown."""
        shutdown_event = asyncio.Event()
        monitor = ChainMonitor(client, block_confirmations=10, shutdown_event=shutdown_event)
        calls = 0

        async def block_number():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ConnectionError("down")
            return 1000

        client.block_number = block_number

        task = asyncio.create_task(
            monitor.start_polling(AsyncMock(), interval=0.01, error_backoff=0.01)
        )
        await asyncio.sleep(0.1)
        shutdown_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert calls > 2
        assert monitor.last_processed_block == 1000
        assert not monitor.is_running

    def test_get_status(self, monitor):
        """Test status reporting."""
        status = monitor.get_status()

        assert status["chain"] == "ethereum"
        assert status["is_running"] is False
        assert status["last_processed_block"] is None
        assert status["gateway_address"] == ETHEREUM_GATEWAY
