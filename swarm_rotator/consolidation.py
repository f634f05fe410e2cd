"""
Consolidation Engine

Sweeps native balances from scanned wallets into one destination. Each
source pays its own gas, so the amount moved is balance minus the worst-case
fee under the chosen fee profile. One wallet failing never stops the sweep.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from web3 import Web3

from .chain import ChainClient, FeeParams, TRANSFER_GAS
from .derivation import WalletRecord
from .utils import (
    logger,
    format_address,
    format_eth,
    format_tx_hash,
    sanitize_error_message,
    validate_address,
)


DEFAULT_CONSOLIDATION_FEES = FeeParams.from_gwei(0.1, 0.1, TRANSFER_GAS)


@dataclass
class TransferResult:
    source: str
    amount: int
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source,
            'amount': self.amount,
            'success': self.success,
            'tx_hash': self.tx_hash,
            'error': self.error,
        }


def summarize_transfers(results: List[TransferResult]) -> Dict[str, Any]:
    succeeded = [r for r in results if r.success]
    return {
        'transfers': len(results),
        'succeeded': len(succeeded),
        'failed': len(results) - len(succeeded),
        'total_moved': sum(r.amount for r in succeeded),
    }


class ConsolidationEngine:
    """Sequential sweep of wallet balances to a single address."""

    def __init__(self, chain: ChainClient, dry_run: bool = False):
        self.chain = chain
        self.dry_run = dry_run

    async def consolidate(
        self,
        wallets: List[WalletRecord],
        destination: str,
        fee_params: Optional[FeeParams] = None,
    ) -> List[TransferResult]:
        """
        Transfer balance minus gas from every wallet except the destination.

        Args:
            wallets: scanned wallets (with private keys)
            destination: receiving address
            fee_params: fee profile; defaults to 0.1 gwei / 0.1 gwei / 21000

        Returns:
            One TransferResult per non-destination wallet
        """
        if not validate_address(destination):
            raise ValueError(f"Invalid destination address: {destination}")

        destination = Web3.to_checksum_address(destination)
        fee_params = fee_params or DEFAULT_CONSOLIDATION_FEES
        if fee_params.gas_limit is None:
            fee_params = FeeParams(fee_params.max_fee_per_gas, fee_params.max_priority_fee_per_gas, TRANSFER_GAS)
        gas_cost = fee_params.max_gas_cost

        logger.info(f"Consolidating {len(wallets)} wallet(s) to {format_address(destination)}")
        results: List[TransferResult] = []

        for wallet in wallets:
            if wallet.address.lower() == destination.lower():
                continue
            results.append(await self._sweep(wallet, destination, fee_params, gas_cost))

        summary = summarize_transfers(results)
        logger.info(
            f"Consolidation complete: {summary['succeeded']}/{summary['transfers']} successful, "
            f"{format_eth(summary['total_moved'])} moved"
        )
        return results

    async def _sweep(self, wallet: WalletRecord, destination: str,
                     fee_params: FeeParams, gas_cost: int) -> TransferResult:
        try:
            balance = await self.chain.get_balance(wallet.address)
            amount = balance - gas_cost

            if amount <= 0:
                logger.warning(f"Wallet {wallet}: balance {format_eth(balance)} cannot cover gas")
                return TransferResult(
                    source=wallet.address,
                    amount=0,
                    success=False,
                    error="Insufficient balance to cover gas costs",
                )

            if self.dry_run:
                logger.info(f"[DRY RUN] Would move {format_eth(amount)} from {wallet}")
                return TransferResult(source=wallet.address, amount=amount, success=True)

            tx = {
                'to': destination,
                'value': amount,
                **fee_params.to_tx_fields(),
            }
            async with self.chain.wallet_lock(wallet.address):
                pending = await self.chain.send_transaction(wallet.account, tx)
                receipt = await pending.wait(1)

            if receipt.get('status') != 1:
                logger.error(f"Transfer from {wallet} reverted: {format_tx_hash(pending.tx_hash)}")
                return TransferResult(
                    source=wallet.address,
                    amount=amount,
                    success=False,
                    tx_hash=pending.tx_hash,
                    error="Transfer reverted",
                )

            logger.info(f"Moved {format_eth(amount)} from {wallet} ({format_tx_hash(pending.tx_hash)})")
            return TransferResult(source=wallet.address, amount=amount, success=True, tx_hash=pending.tx_hash)

        except Exception as e:
            error = sanitize_error_message(e)
            logger.error(f"Error consolidating from {wallet}: {error}")
            return TransferResult(source=wallet.address, amount=0, success=False, error=error)
