"""
Wallet scanner: reads balances across a rectangle of the derivation tree.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union

from rich.table import Table
from rich import box

from .chain import ChainClient
from .derivation import KeyDerivationTree, WalletRecord
from .utils import logger, format_address, format_eth, sanitize_error_message


@dataclass
class ScanStats:
    total_wallets: int = 0
    wallets_with_balance: int = 0
    total_balance: int = 0
    balance_distribution: List[Dict] = field(default_factory=list)
    skipped: int = 0

    @classmethod
    def from_records(cls, records: List[WalletRecord], skipped: int = 0) -> "ScanStats":
        return cls(
            total_wallets=len(records),
            wallets_with_balance=len(records),
            total_balance=sum(r.balance for r in records),
            balance_distribution=[
                {'address': r.address, 'balance': r.balance, 'path': r.derivation_path}
                for r in records
            ],
            skipped=skipped,
        )

    def to_table(self) -> Table:
        table = Table(title="Wallet Scan", box=box.ROUNDED)
        table.add_column("Address", style="cyan")
        table.add_column("Path", style="dim")
        table.add_column("Balance", style="green", justify="right")

        for entry in self.balance_distribution:
            table.add_row(format_address(entry['address']), entry['path'], format_eth(entry['balance']))

        table.add_section()
        table.add_row("Total", f"{self.wallets_with_balance} funded", format_eth(self.total_balance))
        return table


Range = Union[int, Iterable[int]]


class WalletScanner:
    """
    Derives every (account, index) coordinate in a range and keeps the
    wallets whose balance is non-zero. Balance reads run concurrently,
    bounded by a semaphore.
    """

    def __init__(self, tree: KeyDerivationTree, chain: ChainClient, concurrency: int = 8):
        self.tree = tree
        self.chain = chain
        self.concurrency = max(1, concurrency)
        self.last_results: List[WalletRecord] = []
        self.stats = ScanStats()

    async def scan(self, account_range: Range = 5, wallet_range: Range = 20) -> List[WalletRecord]:
        """
        Scan the derivation rectangle.

        Args:
            account_range: account indices, or a count starting at 0
            wallet_range: wallet indices, or a count starting at 0

        Returns:
            Wallets with a non-zero balance, in derivation order
        """
        accounts = range(account_range) if isinstance(account_range, int) else list(account_range)
        wallets = range(wallet_range) if isinstance(wallet_range, int) else list(wallet_range)

        semaphore = asyncio.Semaphore(self.concurrency)

        async def read(account_index: int, wallet_index: int) -> Optional[WalletRecord]:
            record = self.tree.derive(account_index, wallet_index)
            async with semaphore:
                try:
                    record.balance = await self.chain.get_balance(record.address)
                except Exception as e:
                    logger.warning(
                        f"Balance read failed for {record.derivation_path}: {sanitize_error_message(e)}"
                    )
                    return None
            return record

        logger.info(f"Scanning {len(accounts)} account(s) x {len(wallets)} wallet(s)...")
        reads = [read(a, w) for a, w in self.tree.coordinates(accounts, wallets)]
        results = await asyncio.gather(*reads)

        skipped = sum(1 for r in results if r is None)
        funded = [r for r in results if r is not None and r.balance > 0]

        self.last_results = funded
        self.stats = ScanStats.from_records(funded, skipped=skipped)

        logger.info(
            f"Scan complete: {len(funded)} funded wallet(s), total {format_eth(self.stats.total_balance)}"
            + (f", {skipped} skipped" if skipped else "")
        )
        return funded

    def get_stats(self) -> ScanStats:
        return self.stats

    def active(self, min_balance: int) -> List[WalletRecord]:
        """Wallets from the last scan whose balance is strictly above `min_balance`."""
        return [r for r in self.last_results if r.balance > min_balance]
