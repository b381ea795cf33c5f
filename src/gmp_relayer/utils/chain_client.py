import json
from pathlib import Path
from typing import Any, Sequence

from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.contract import AsyncContract
from web3.types import EventData, TxParams, TxReceipt

from ..config import ChainConfig
from ..models import EventKind


def get_contract_abi(contract_name: str) -> list[dict[str, Any]]:
    """Fetches ABI of the given contract from the contracts folder.

    Args:
        contract_name: Name of the contract (without .json extension)

    Returns:
        List of ABI dictionaries for the contract

    Raises:
        FileNotFoundError: If the contract file doesn't exist
        json.JSONDecodeError: If the contract file is invalid JSON
    """
    contract_path: Path = (
        Path(__file__).parent.parent
        / "contracts"
        / f"{contract_name}.json"
    ).resolve()

    with contract_path.open() as file:
        contract_data: dict[str, Any] = json.load(file)

    return contract_data["abi"]


class ChainClient:
    """
    Read-only access to one chain and its gateway contract.

    Holds no key material: transactions are built here but signed by a
    RelayerSigner, which is handed only to the components that write.
    """

    def __init__(
        self,
        chain: ChainConfig,
        request_timeout: int = 30,
        w3: AsyncWeb3 | None = None
    ) -> None:
        """
        Initialize the ChainClient.

        Args:
            chain: Chain configuration (RPC URL and gateway address)
            request_timeout: HTTP request timeout in seconds
            w3: Pre-built AsyncWeb3 instance (mainly for tests)
        """
        self.chain = chain
        self.name = chain.name
        self.w3 = w3 or AsyncWeb3(
            AsyncHTTPProvider(chain.rpc_url, request_kwargs={'timeout': request_timeout})
        )
        self.gateway: AsyncContract = self.w3.eth.contract(
            address=chain.gateway_address,
            abi=get_contract_abi("Gateway")
        )

    async def block_number(self) -> int:
        return await self.w3.eth.block_number

    async def get_events(self, kind: EventKind, from_block: int, to_block: int) -> list[EventData]:
        """Fetch decoded gateway logs of one kind in [from_block, to_block]."""
        event_obj = getattr(self.gateway.events, kind.value)
        return list(await event_obj.get_logs(from_block=from_block, to_block=to_block))

    async def is_command_executed(self, command_id: str) -> bool:
        return await self.gateway.functions.isCommandExecuted(HexBytes(command_id)).call()

    async def is_whitelisted_relayer(self, address: str) -> bool:
        return await self.gateway.functions.isWhitelistedRelayer(
            Web3.to_checksum_address(address)
        ).call()

    async def get_balance(self, address: str) -> int:
        return await self.w3.eth.get_balance(Web3.to_checksum_address(address))

    async def gas_price(self) -> int:
        return await self.w3.eth.gas_price

    async def build_execute_transaction(
        self,
        command_id: str,
        commands: Sequence[tuple[int, bytes]],
        signature: bytes,
        tx_params: TxParams
    ) -> TxParams:
        """Build an unsigned gateway execute() transaction."""
        return await self.gateway.functions.execute(
            HexBytes(command_id),
            list(commands),
            signature
        ).build_transaction(tx_params)

    async def get_transaction_count(self, address: str) -> int:
        return await self.w3.eth.get_transaction_count(
            Web3.to_checksum_address(address), 'pending'
        )

    async def send_raw_transaction(self, raw_transaction: bytes) -> HexBytes:
        return await self.w3.eth.send_raw_transaction(raw_transaction)

    async def wait_for_receipt(self, tx_hash: HexBytes, timeout: int) -> TxReceipt:
        return await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
