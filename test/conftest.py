"""Shared fixtures for the GMP relayer tests."""

import pytest
from unittest.mock import AsyncMock, MagicMock
from hexbytes import HexBytes
from web3 import Web3

from gmp_relayer.config import ChainConfig, RelayerConfig, RetryConfig
from gmp_relayer.models import EventKind, RelayEvent
from gmp_relayer.utils.state_store import JsonFileStateStore

# Digit-only addresses are their own checksum form
SENDER = "0x1111111111111111111111111111111111111111"
DESTINATION = "0x2222222222222222222222222222222222222222"
ETHEREUM_GATEWAY = "0x3333333333333333333333333333333333333333"
BSC_GATEWAY = "0x4444444444444444444444444444444444444444"
RELAYER_ADDRESS = "0x5555555555555555555555555555555555555555"

TX_HASH = "0x" + "ab" * 32
SENT_TX_HASH = HexBytes("0x" + "cd" * 32)
PRIVATE_KEY = "0x" + "01" * 32


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_event(
    kind: EventKind = EventKind.CONTRACT_CALL_WITH_TOKEN,
    source_chain: str = "ethereum",
    destination_chain: str = "bsc",
    tx_hash: str = TX_HASH,
    log_index: int = 0,
    block_number: int = 950,
    amount: int = 1000,
    symbol: str = "USDC",
) -> RelayEvent:
    """Build a RelayEvent with sensible defaults."""
    carries_tokens = kind is not EventKind.CONTRACT_CALL
    payload = "0x" if kind is EventKind.TOKEN_SENT else "0x1234"
    return RelayEvent(
        source_chain=source_chain,
        kind=kind,
        sender=SENDER,
        destination_chain=destination_chain,
        destination_address=DESTINATION,
        payload=payload,
        payload_hash=Web3.to_hex(Web3.keccak(hexstr=payload)),
        tx_hash=tx_hash,
        log_index=log_index,
        block_number=block_number,
        token_symbol=symbol if carries_tokens else None,
        amount=amount if carries_tokens else None,
    )


def make_client(name: str, gateway: str) -> MagicMock:
    """Create a mock ChainClient whose executions succeed."""
    client = MagicMock()
    client.name = name
    client.chain = ChainConfig(name=name, rpc_url=f"https://{name}.example", gateway_address=gateway)
    client.block_number = AsyncMock(return_value=1000)
    client.get_events = AsyncMock(return_value=[])
    client.is_command_executed = AsyncMock(return_value=False)
    client.is_whitelisted_relayer = AsyncMock(return_value=True)
    client.get_balance = AsyncMock(return_value=Web3.to_wei(1, 'ether'))
    client.gas_price = AsyncMock(return_value=Web3.to_wei(1, 'gwei'))
    client.build_execute_transaction = AsyncMock(return_value={
        'to': gateway,
        'data': '0xabcdef',
        'gas': 500_000,
        'gasPrice': Web3.to_wei(1, 'gwei'),
        'value': 0,
    })
    client.wait_for_receipt = AsyncMock(return_value={
        'status': 1,
        'gasUsed': 120_000,
        'blockNumber': 1001,
    })
    return client


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def state_store(tmp_path, clock):
    """JSON state store in a temporary directory."""
    return JsonFileStateStore(tmp_path / "state", clock=clock)


@pytest.fixture
def clients():
    return {
        "ethereum": make_client("ethereum", ETHEREUM_GATEWAY),
        "bsc": make_client("bsc", BSC_GATEWAY),
    }


@pytest.fixture
def signer():
    """Mock RelayerSigner."""
    mock = MagicMock()
    mock.address = RELAYER_ADDRESS
    mock.sign_command_hash = MagicMock(return_value=b"\x01" * 65)
    mock.send_transaction = AsyncMock(return_value=SENT_TX_HASH)
    return mock


@pytest.fixture
def relayer_config(tmp_path):
    return RelayerConfig(
        chains={
            "ethereum": ChainConfig("ethereum", "https://ethereum.example", ETHEREUM_GATEWAY),
            "bsc": ChainConfig("bsc", "https://bsc.example", BSC_GATEWAY),
        },
        relayer_private_key=PRIVATE_KEY,
        retry=RetryConfig(max_retries=3, base_delay=60.0, max_delay=600.0),
    ).with_state_dir(str(tmp_path / "state"))
