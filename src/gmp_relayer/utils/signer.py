import asyncio
import logging
from collections import defaultdict

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from web3 import Web3
from web3.types import TxParams

from .chain_client import ChainClient

logger = logging.getLogger(__name__)


class RelayerSigner:
    """
    Signing capability of the relayer identity.

    Signs command hashes for the gateway and signs and sends transactions.
    Nonce lookup and submission are serialised per chain so concurrent
    executions on the same chain never reuse a nonce.
    """

    def __init__(self, private_key: str) -> None:
        """
        Initialize the RelayerSigner.

        Args:
            private_key: Hex private key of the relayer
        """
        if not private_key:
            raise ValueError("Private key is required for signing transactions")

        self._account: LocalAccount = Account.from_key(private_key)
        self._send_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def address(self) -> str:
        return self._account.address

    def sign_command_hash(self, command_hash: bytes) -> bytes:
        """Sign a command hash as an EIP-191 personal message."""
        signed = self._account.sign_message(encode_defunct(primitive=command_hash))
        return bytes(signed.signature)

    async def send_transaction(self, client: ChainClient, tx: TxParams) -> HexBytes:
        """
        Assign a nonce, sign and broadcast a transaction on the client's chain.

        Args:
            client: Chain the transaction is sent to
            tx: Built transaction without nonce

        Returns:
            Transaction hash
        """
        async with self._send_locks[client.name]:
            tx = dict(tx)
            tx['nonce'] = await client.get_transaction_count(self.address)
            signed = self._account.sign_transaction(tx)
            tx_hash = await client.send_raw_transaction(signed.raw_transaction)
            logger.debug(f"Sent transaction {Web3.to_hex(tx_hash)} on {client.name} (nonce {tx['nonce']})")
            return tx_hash
