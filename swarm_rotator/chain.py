"""
Chain Client

Thin async facade over a synchronous Web3 HTTP provider. Every RPC call
runs in a worker thread so the trading loop, the scanner and the
consolidation engine can share one event loop.

Transactions are EIP-1559 (type 0x2). The client fills chainId, nonce and
type when the caller leaves them out; signing happens locally with the
wallet's eth_account LocalAccount.
"""

import asyncio
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

import requests
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3RPCError
from eth_account.signers.local import LocalAccount

from .utils import ConfigurationError, TransactionFailureError, logger, format_tx_hash


GWEI = 10 ** 9
TRANSFER_GAS = 21000
DEFAULT_PRIORITY_FEE = int(0.001 * GWEI)

# Node-side rejections (underpriced, nonce too low, method not found)
RPC_ERRORS = (Web3RPCError, ValueError)

# Transport failures worth another attempt
TRANSIENT_ERRORS = (
    ConnectionError,
    asyncio.TimeoutError,
    requests.exceptions.RequestException,
    TimeExhausted,
)


@dataclass(frozen=True)
class FeeParams:
    """Fee profile applied to an outgoing type-2 transaction."""
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    gas_limit: Optional[int] = None

    @classmethod
    def from_gwei(cls, max_fee_gwei: float, priority_fee_gwei: float,
                  gas_limit: Optional[int] = None) -> "FeeParams":
        return cls(
            max_fee_per_gas=Web3.to_wei(max_fee_gwei, 'gwei'),
            max_priority_fee_per_gas=Web3.to_wei(priority_fee_gwei, 'gwei'),
            gas_limit=gas_limit,
        )

    def doubled(self) -> "FeeParams":
        return replace(
            self,
            max_fee_per_gas=self.max_fee_per_gas * 2,
            max_priority_fee_per_gas=self.max_priority_fee_per_gas * 2,
        )

    @property
    def max_gas_cost(self) -> int:
        """Worst-case fee for one transaction under this profile."""
        return self.max_fee_per_gas * (self.gas_limit or TRANSFER_GAS)

    def to_tx_fields(self) -> Dict[str, int]:
        fields = {
            'maxFeePerGas': self.max_fee_per_gas,
            'maxPriorityFeePerGas': self.max_priority_fee_per_gas,
        }
        if self.gas_limit is not None:
            fields['gas'] = self.gas_limit
        return fields


@dataclass(frozen=True)
class FeeData:
    """Current network fee quote."""
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    base_fee: int = 0

    def to_params(self, gas_limit: Optional[int] = None) -> FeeParams:
        return FeeParams(self.max_fee_per_gas, self.max_priority_fee_per_gas, gas_limit)

    def doubled(self) -> "FeeData":
        return replace(
            self,
            max_fee_per_gas=self.max_fee_per_gas * 2,
            max_priority_fee_per_gas=self.max_priority_fee_per_gas * 2,
        )


class PendingTransaction:
    """Handle for a submitted transaction."""

    def __init__(self, client: "ChainClient", tx_hash: str, nonce: int, sender: str):
        self.client = client
        self.tx_hash = tx_hash
        self.nonce = nonce
        self.sender = sender

    def __repr__(self) -> str:
        return f"PendingTransaction({format_tx_hash(self.tx_hash)}, nonce={self.nonce})"

    async def wait(self, confirmations: int = 1) -> Dict[str, Any]:
        """
        Wait until the transaction is mined and buried under
        `confirmations` blocks (the mining block counts as one).

        Raises:
            TransactionFailureError: if no receipt appears before the
                client's receipt timeout
        """
        receipt = await self.client.wait_for_receipt(self.tx_hash)
        if confirmations <= 1 or receipt.get('status') != 1:
            return receipt

        mined_in = receipt['blockNumber']
        while True:
            latest = await self.client.get_block_number()
            if latest - mined_in + 1 >= confirmations:
                return receipt
            await asyncio.sleep(self.client.poll_interval)


class ChainClient:
    """Async wrapper around a Web3 instance."""

    def __init__(
        self,
        web3: Web3,
        chain_id: Optional[int] = None,
        receipt_timeout: int = 120,
        poll_interval: float = 2.0,
    ):
        self.web3 = web3
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self._locks: Dict[str, asyncio.Lock] = {}

    @classmethod
    def connect(cls, rpc_url: str, chain_id: Optional[int] = None,
                request_timeout: int = 30, **kwargs) -> "ChainClient":
        """
        Build a client for an HTTP(S) JSON-RPC endpoint.

        Raises:
            ConfigurationError: for a malformed URL
        """
        parsed = urlparse(rpc_url or "")
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ConfigurationError("RPC URL must be an http(s) endpoint")
        if parsed.scheme == 'http' and parsed.hostname not in ('localhost', '127.0.0.1'):
            logger.warning("Using unencrypted HTTP RPC endpoint")

        web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={'timeout': request_timeout}))
        return cls(web3, chain_id=chain_id, **kwargs)

    async def run_sync(self, fn: Callable, *args, **kwargs):
        """Run a blocking web3 call in a worker thread."""
        return await asyncio.to_thread(fn, *args, **kwargs)

    def wallet_lock(self, address: str) -> asyncio.Lock:
        """Per-wallet lock serialising nonce-consuming submissions."""
        key = address.lower()
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def get_chain_id(self) -> int:
        if self.chain_id is None:
            self.chain_id = await self.run_sync(lambda: self.web3.eth.chain_id)
        return self.chain_id

    async def get_balance(self, address: str) -> int:
        return await self.run_sync(self.web3.eth.get_balance, Web3.to_checksum_address(address))

    async def get_transaction_count(self, address: str, block_identifier: str = 'latest') -> int:
        return await self.run_sync(
            self.web3.eth.get_transaction_count,
            Web3.to_checksum_address(address),
            block_identifier,
        )

    async def get_block_number(self) -> int:
        return await self.run_sync(lambda: self.web3.eth.block_number)

    async def get_fee_data(self) -> FeeData:
        """
        Quote fees from the latest block: max_fee = 2 * base_fee + priority.
        Falls back to the legacy gas price on chains without a base fee.
        """
        block = await self.run_sync(self.web3.eth.get_block, 'latest')
        base_fee = block.get('baseFeePerGas')

        if base_fee is None:
            gas_price = await self.run_sync(lambda: self.web3.eth.gas_price)
            return FeeData(gas_price, min(DEFAULT_PRIORITY_FEE, gas_price), 0)

        try:
            priority = await self.run_sync(lambda: self.web3.eth.max_priority_fee)
        except RPC_ERRORS:
            priority = DEFAULT_PRIORITY_FEE

        return FeeData(
            max_fee_per_gas=base_fee * 2 + priority,
            max_priority_fee_per_gas=priority,
            base_fee=base_fee,
        )

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return await self.run_sync(self.web3.eth.estimate_gas, tx)

    async def send_transaction(self, account: LocalAccount, tx: Dict[str, Any]) -> PendingTransaction:
        """
        Sign locally and broadcast.

        Callers that submit more than once per wallet concurrently must
        hold wallet_lock(account.address) around this call and the wait.
        """
        tx = dict(tx)
        tx.pop('from', None)

        if 'chainId' not in tx:
            tx['chainId'] = await self.get_chain_id()
        if 'nonce' not in tx:
            tx['nonce'] = await self.get_transaction_count(account.address, 'pending')
        if 'maxFeePerGas' in tx:
            tx.setdefault('type', 2)
        if 'gas' not in tx:
            tx['gas'] = await self.estimate_gas({**tx, 'from': account.address})

        signed = account.sign_transaction(tx)
        try:
            tx_hash = await self.run_sync(self.web3.eth.send_raw_transaction, signed.raw_transaction)
        except RPC_ERRORS as e:
            raise TransactionFailureError(f"Submission rejected: {e}") from e

        tx_hash = Web3.to_hex(tx_hash)
        logger.debug(f"Submitted {format_tx_hash(tx_hash)} nonce={tx['nonce']}")
        return PendingTransaction(self, tx_hash, tx['nonce'], account.address)

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.run_sync(self.web3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            return None

    async def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        try:
            return await self.run_sync(
                self.web3.eth.wait_for_transaction_receipt,
                tx_hash,
                timeout=self.receipt_timeout,
                poll_latency=self.poll_interval,
            )
        except Exception as e:
            raise TransactionFailureError(
                f"No receipt for {format_tx_hash(tx_hash)} within {self.receipt_timeout}s"
            ) from e
