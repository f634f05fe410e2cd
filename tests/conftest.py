"""
Shared fixtures: in-memory chain and curve contract doubles.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from web3 import Web3

from swarm_rotator.chain import FeeData
from swarm_rotator.config import BotConfig
from swarm_rotator.contract import ReserveSnapshot
from swarm_rotator.derivation import KeyDerivationTree


TEST_MNEMONIC = "test test test test test test test test test test test junk"
TOKEN_ADDRESS = Web3.to_checksum_address("0x" + "ab" * 20)
GWEI = 10 ** 9
ETH = 10 ** 18
TOKEN = 10 ** 18


class FakePending:
    def __init__(self, tx_hash, nonce, receipt, error=None):
        self.tx_hash = tx_hash
        self.nonce = nonce
        self.receipt = receipt
        self.error = error
        self.confirmations = None

    async def wait(self, confirmations=1):
        self.confirmations = confirmations
        if self.error is not None:
            raise self.error
        return self.receipt


class FakeChain:
    """Records every submission; balances and nonces are plain dicts."""

    def __init__(self):
        self.chain_id = 8453
        self.balances = {}
        self.nonces = {}
        self.balance_errors = set()
        self.send_errors = []
        self.wait_errors = []
        self.receipt_status = 1
        self.sent = []
        self.pending = []
        self._locks = {}

        self.get_balance = AsyncMock(side_effect=self._get_balance)
        self.get_transaction_count = AsyncMock(side_effect=self._get_transaction_count)
        self.get_fee_data = AsyncMock(return_value=FeeData(2 * GWEI + 1000, 1000, GWEI))
        self.get_receipt = AsyncMock(return_value=None)
        self.send_transaction = AsyncMock(side_effect=self._send_transaction)

    def set_balance(self, address, amount):
        self.balances[address.lower()] = amount

    def set_nonces(self, address, pending, latest):
        self.nonces[address.lower()] = (pending, latest)

    def wallet_lock(self, address):
        key = address.lower()
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def _get_balance(self, address):
        if address.lower() in self.balance_errors:
            raise ConnectionError("rpc unavailable")
        return self.balances.get(address.lower(), 0)

    def _get_transaction_count(self, address, block_identifier='latest'):
        pending, latest = self.nonces.get(address.lower(), (0, 0))
        return pending if block_identifier == 'pending' else latest

    def _send_transaction(self, account, tx):
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append((account.address, dict(tx)))
        tx_hash = "0x%064x" % len(self.sent)
        receipt = {
            'status': self.receipt_status,
            'blockNumber': 100 + len(self.sent),
            'gasUsed': 21000,
            'transactionHash': tx_hash,
        }
        error = self.wait_errors.pop(0) if self.wait_errors else None
        pending = FakePending(tx_hash, tx.get('nonce', 0), receipt, error)
        self.pending.append(pending)
        return pending


class FakeContract:
    """Curve token with fixed reserves; builders tag the payload by action."""

    def __init__(self, eth_reserve=10 * ETH, token_reserve=1_000_000 * TOKEN):
        self.address = TOKEN_ADDRESS
        self.reserves = ReserveSnapshot(eth_reserve, token_reserve)
        self.token_balances = {}
        self.allowances = {}

        self.get_reserves = AsyncMock(side_effect=lambda: self.reserves)
        self.get_current_price = AsyncMock(return_value=10 ** 13)
        self.get_estimated_tokens_for_eth = AsyncMock(side_effect=lambda amount: amount * 100_000)
        self.balance_of = AsyncMock(side_effect=lambda a: self.token_balances.get(a.lower(), 0))
        self.allowance = AsyncMock(side_effect=lambda owner, spender: self.allowances.get(owner.lower(), 0))
        self.estimate_buy_gas = AsyncMock(return_value=150000)
        self.build_buy = AsyncMock(side_effect=self._build_buy)
        self.build_sell = AsyncMock(side_effect=self._build_sell)
        self.build_approve = AsyncMock(side_effect=self._build_approve)

    def set_token_balance(self, address, amount):
        self.token_balances[address.lower()] = amount

    def _build_buy(self, min_tokens, params):
        return {**params, 'to': self.address, 'data': ('buyTokens', min_tokens)}

    def _build_sell(self, amount, min_eth, params):
        return {**params, 'to': self.address, 'data': ('sellTokens', amount, min_eth)}

    def _build_approve(self, spender, amount, params):
        return {**params, 'to': self.address, 'data': ('approve', spender, amount)}


@pytest.fixture
def tree():
    return KeyDerivationTree(TEST_MNEMONIC)


@pytest.fixture
def config():
    return BotConfig(
        mnemonic=TEST_MNEMONIC,
        token_address=TOKEN_ADDRESS,
        retry_delay_seconds=0,
        trade_cooldown_seconds=0,
        liquidation_cooldown_seconds=0,
        funding_delay_seconds=0,
        error_cooldown_seconds=0,
        restart_delay_seconds=0,
        scan_accounts=1,
        scan_wallets=5,
    )


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def contract():
    return FakeContract()
