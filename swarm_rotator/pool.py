"""
Wallet Pool

The set of wallets eligible for trading, keyed by address in discovery
order. Owned and mutated by the orchestrator only.

The pool is populated from a tree scan. When fewer than `min_active`
wallets remain, fresh wallets are derived from the tree and funded from a
source wallet.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from .chain import ChainClient, FeeParams, TRANSFER_GAS
from .derivation import KeyDerivationTree, WalletRecord
from .scanner import WalletScanner
from .utils import (
    logger,
    format_address,
    format_eth,
    format_tx_hash,
    sanitize_error_message,
    TransactionFailureError,
)


class WalletPool:
    """Active wallets keyed by address."""

    def __init__(
        self,
        tree: KeyDerivationTree,
        chain: ChainClient,
        min_balance: int,
        min_active: int = 3,
        gas_reserve: int = 0,
        fee_params: Optional[FeeParams] = None,
        funding_delay: float = 5.0,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.tree = tree
        self.chain = chain
        self.min_balance = min_balance
        self.min_active = min_active
        self.gas_reserve = gas_reserve
        self.fee_params = fee_params or FeeParams.from_gwei(2, 0.001, TRANSFER_GAS)
        self.funding_delay = funding_delay
        self._sleep = sleep
        self._wallets: Dict[str, WalletRecord] = {}

    def __len__(self) -> int:
        return len(self._wallets)

    def __contains__(self, address: str) -> bool:
        return address.lower() in self._wallets

    @property
    def records(self) -> List[WalletRecord]:
        return list(self._wallets.values())

    @property
    def needs_replenish(self) -> bool:
        return len(self._wallets) < self.min_active

    def add(self, record: WalletRecord) -> None:
        """Insert or refresh a wallet. A known address keeps its position."""
        key = record.address.lower()
        if key in self._wallets:
            self._wallets[key].balance = record.balance
        else:
            self._wallets[key] = record

    def remove(self, address: str) -> Optional[WalletRecord]:
        return self._wallets.pop(address.lower(), None)

    def clear(self) -> None:
        self._wallets.clear()

    def update_balance(self, address: str, balance: int) -> None:
        """Record a fresh balance; wallets at or below the threshold leave the pool."""
        record = self._wallets.get(address.lower())
        if record is None:
            return
        record.balance = balance
        if balance <= self.min_balance:
            logger.info(f"Wallet {format_address(record.address)} dropped below threshold, removing")
            self.remove(address)

    def select_best(self) -> Optional[WalletRecord]:
        """Highest balance wins; ties go to the wallet discovered first."""
        if not self._wallets:
            return None
        return max(self._wallets.values(), key=lambda r: r.balance)

    def rotate(self, current_address: Optional[str]) -> Optional[WalletRecord]:
        """Remove the current wallet and return the next best, or None."""
        if current_address:
            self.remove(current_address)
        return self.select_best()

    def load(self, records: List[WalletRecord]) -> int:
        """Replace the pool with the scanned wallets above the threshold."""
        self.clear()
        for record in records:
            if record.balance > self.min_balance:
                self.add(record)
        return len(self._wallets)

    async def populate(
        self,
        scanner: WalletScanner,
        source: WalletRecord,
        account_range=5,
        wallet_range=20,
        count: int = 5,
        funding_amount: int = 0,
    ) -> List[WalletRecord]:
        """
        Scan the tree, load the active wallets and top up the pool if it
        holds fewer than `min_active`.
        """
        records = await scanner.scan(account_range, wallet_range)
        active = self.load(records)
        logger.info(f"Found {active} active wallet(s) above {format_eth(self.min_balance)}")

        if self.needs_replenish and funding_amount > 0:
            logger.info(f"Pool below {self.min_active} active wallets, creating new ones...")
            await self.replenish(source, count=count, funding_amount=funding_amount)

        return self.records

    def _next_fresh_wallet(self, source: WalletRecord) -> WalletRecord:
        while True:
            record = self.tree.next_wallet()
            if record.address.lower() != source.address.lower() and record.address not in self:
                return record

    async def replenish(self, source: WalletRecord, count: int = 5,
                        funding_amount: int = 0) -> List[WalletRecord]:
        """
        Fund `count` fresh wallets from `source`, sequentially.

        No-op when the source's spendable balance (balance minus gas
        reserve) cannot cover count x funding_amount. A failed transfer is
        logged and the batch continues.

        Returns:
            The wallets that were funded and added to the pool
        """
        balance = await self.chain.get_balance(source.address)
        needed = count * funding_amount
        spendable = balance - self.gas_reserve

        if spendable < needed:
            logger.warning(
                f"Insufficient balance in source wallet {format_address(source.address)}: "
                f"{format_eth(balance)} available, {format_eth(needed)} needed"
            )
            return []

        logger.info(f"Funding {count} new wallet(s) with {format_eth(funding_amount)} each")
        account = source.account
        funded: List[WalletRecord] = []

        for i in range(count):
            record = self._next_fresh_wallet(source)
            tx = {
                'to': record.address,
                'value': funding_amount,
                **self.fee_params.to_tx_fields(),
            }
            tx.setdefault('gas', TRANSFER_GAS)

            try:
                async with self.chain.wallet_lock(source.address):
                    pending = await self.chain.send_transaction(account, tx)
                    receipt = await pending.wait(1)
                if receipt.get('status') != 1:
                    raise TransactionFailureError(f"Funding transfer {format_tx_hash(pending.tx_hash)} reverted")
            except Exception as e:
                logger.error(f"Failed to fund wallet {record}: {sanitize_error_message(e)}")
                continue

            # Admitted regardless of min_balance
            record.balance = funding_amount
            self.add(record)
            funded.append(record)
            logger.info(f"Funded {record} ({format_tx_hash(pending.tx_hash)})")

            if i < count - 1:
                await self._sleep(self.funding_delay)

        logger.info(f"Funding complete: {len(funded)}/{count} successful")
        return funded
