"""
Swap Engine

Buys and sells against the bonding-curve token for one wallet.

Every attempt returns a SwapResult instead of raising; the orchestrator
decides whether to retry by calling SwapResult.raise_for_status(). An
attempt whose transaction reached the mempool is marked `submitted` so it
can be reconciled against the chain before anything is resubmitted.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Type

from .chain import ChainClient
from .contract import CurveTokenContract
from .derivation import WalletRecord
from .utils import (
    logger,
    format_eth,
    format_wei,
    format_tx_hash,
    format_address,
    sanitize_error_message,
    SwarmRotatorError,
    ReserveCapExceededError,
    StuckNonceError,
    TransactionFailureError,
)


MAX_UINT256 = 2 ** 256 - 1
DRY_RUN_HASH = "0xDRYRUN"


class AllowancePolicy(Enum):
    UNLIMITED = "unlimited"
    EXACT = "exact"


@dataclass
class SwapResult:
    """Outcome of one buy or sell attempt."""
    success: bool
    action: str
    tx_hash: Optional[str] = None
    amounts: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[Type[Exception]] = None
    submitted: bool = False
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    dry_run: bool = False

    @classmethod
    def failure(cls, action: str, error: Exception, **kwargs) -> "SwapResult":
        """Classify an exception; unknown errors count as transaction failures."""
        error_type = type(error) if isinstance(error, (SwarmRotatorError, ValueError)) else TransactionFailureError
        return cls(
            success=False,
            action=action,
            error=sanitize_error_message(error),
            error_type=error_type,
            **kwargs,
        )

    def raise_for_status(self) -> None:
        if not self.success:
            raise (self.error_type or TransactionFailureError)(self.error or f"{self.action} failed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'action': self.action,
            'tx_hash': self.tx_hash,
            'amounts': dict(self.amounts),
            'error': self.error,
            'error_type': self.error_type.__name__ if self.error_type else None,
            'submitted': self.submitted,
            'block_number': self.block_number,
            'gas_used': self.gas_used,
            'dry_run': self.dry_run,
        }


class SwapEngine:
    """Executes curve trades on behalf of a single wallet."""

    BUY = "BUY"
    SELL = "SELL"

    def __init__(self, config, chain: ChainClient, contract: CurveTokenContract, wallet: WalletRecord):
        self.config = config
        self.chain = chain
        self.contract = contract
        self.wallet = wallet
        self.account = wallet.account
        self.allowance_policy = AllowancePolicy(config.allowance_policy)

    def _calculate_min_amount_out(self, expected_amount: int) -> int:
        """Apply slippage tolerance to an expected output, in integer math."""
        basis_points = int(round((100 - self.config.slippage_percent) * 100))
        return expected_amount * basis_points // 10000

    async def _submit(self, tx: Dict[str, Any], confirmations: int):
        async with self.chain.wallet_lock(self.wallet.address):
            pending = await self.chain.send_transaction(self.account, tx)
            logger.info(f"Transaction sent: {format_tx_hash(pending.tx_hash)}")
            try:
                receipt = await pending.wait(confirmations)
            except Exception as e:
                raise _SubmittedError(pending.tx_hash, e) from e
        return pending, receipt

    async def buy(self, eth_amount: int) -> SwapResult:
        """
        Buy tokens with `eth_amount` wei.

        The minimum accepted output is the contract's own estimate minus
        slippage; the gas limit is the node's estimate plus a buffer.
        """
        if eth_amount is None or eth_amount <= 0:
            return SwapResult.failure(self.BUY, ValueError(f"Invalid ETH amount: {eth_amount}"))

        try:
            fee_data = await self.chain.get_fee_data()
            estimated_tokens = await self.contract.get_estimated_tokens_for_eth(eth_amount)
            min_tokens = self._calculate_min_amount_out(estimated_tokens)
            amounts = {'eth_in': eth_amount, 'expected_tokens': estimated_tokens, 'min_tokens': min_tokens}

            logger.info(
                f"Buying with {format_eth(eth_amount)} from {format_address(self.wallet.address)}: "
                f"expected {format_wei(estimated_tokens)} tokens, min {format_wei(min_tokens)}"
            )

            if self.config.dry_run:
                logger.info("[DRY RUN] Would submit buy")
                return SwapResult(True, self.BUY, tx_hash=DRY_RUN_HASH, amounts=amounts, dry_run=True)

            gas_estimate = await self.contract.estimate_buy_gas(min_tokens, eth_amount, self.wallet.address)
            tx = await self.contract.build_buy(min_tokens, {
                'from': self.wallet.address,
                'value': eth_amount,
                'gas': int(gas_estimate * self.config.gas_limit_buffer),
                **fee_data.to_params().to_tx_fields(),
            })
            pending, receipt = await self._submit(tx, self.config.trade_confirmations)
        except _SubmittedError as e:
            logger.error(f"Buy {format_tx_hash(e.tx_hash)} unconfirmed: {sanitize_error_message(e.cause)}")
            return SwapResult.failure(self.BUY, e.cause, tx_hash=e.tx_hash, submitted=True)
        except Exception as e:
            logger.error(f"Buy failed: {sanitize_error_message(e)}")
            return SwapResult.failure(self.BUY, e)

        return self._from_receipt(self.BUY, pending.tx_hash, receipt, amounts)

    async def sell(self, token_amount: int, cap_percent: Optional[float] = None) -> SwapResult:
        """
        Sell `token_amount` base units.

        Rejected with ReserveCapExceededError when the amount is above
        `cap_percent` (never more than the configured maximum) of the
        current token reserve. Uses the fixed sell fee profile.
        """
        if token_amount is None or token_amount <= 0:
            return SwapResult.failure(self.SELL, ValueError(f"Invalid token amount: {token_amount}"))

        max_percent = self.config.max_sell_reserve_percent
        cap = max_percent if cap_percent is None else min(cap_percent, max_percent)

        try:
            reserves = await self.contract.get_reserves()
            max_sell = reserves.max_sell(cap)
            if token_amount > max_sell:
                raise ReserveCapExceededError(
                    f"Cannot sell more than {cap:g}% of reserve "
                    f"({format_wei(max_sell)} tokens, requested {format_wei(token_amount)})"
                )

            expected_eth = reserves.expected_eth_for(token_amount)
            min_eth = self._calculate_min_amount_out(expected_eth)
            amounts = {'tokens_in': token_amount, 'expected_eth': expected_eth, 'min_eth': min_eth}

            logger.info(
                f"Selling {format_wei(token_amount)} tokens from {format_address(self.wallet.address)}: "
                f"expected {format_eth(expected_eth)}, min {format_eth(min_eth)}"
            )

            if self.config.dry_run:
                logger.info("[DRY RUN] Would submit sell")
                return SwapResult(True, self.SELL, tx_hash=DRY_RUN_HASH, amounts=amounts, dry_run=True)

            await self._ensure_allowance(token_amount)

            tx = await self.contract.build_sell(token_amount, min_eth, {
                'from': self.wallet.address,
                **self.config.sell_fee.to_tx_fields(),
            })
            pending, receipt = await self._submit(tx, self.config.trade_confirmations)
        except _SubmittedError as e:
            logger.error(f"Sell {format_tx_hash(e.tx_hash)} unconfirmed: {sanitize_error_message(e.cause)}")
            return SwapResult.failure(self.SELL, e.cause, tx_hash=e.tx_hash, submitted=True)
        except Exception as e:
            logger.error(f"Sell failed: {sanitize_error_message(e)}")
            return SwapResult.failure(self.SELL, e)

        return self._from_receipt(self.SELL, pending.tx_hash, receipt, amounts)

    def _from_receipt(self, action: str, tx_hash: str, receipt: Dict[str, Any],
                      amounts: Dict[str, int]) -> SwapResult:
        if receipt.get('status') != 1:
            logger.error(f"{action.title()} reverted: {format_tx_hash(tx_hash)}")
            return SwapResult(
                success=False,
                action=action,
                tx_hash=tx_hash,
                amounts=amounts,
                error=f"Transaction reverted: {tx_hash}",
                error_type=TransactionFailureError,
                submitted=True,
                block_number=receipt.get('blockNumber'),
                gas_used=receipt.get('gasUsed'),
            )

        logger.info(f"{action.title()} confirmed in block {receipt.get('blockNumber')}")
        return SwapResult(
            success=True,
            action=action,
            tx_hash=tx_hash,
            amounts=amounts,
            submitted=True,
            block_number=receipt.get('blockNumber'),
            gas_used=receipt.get('gasUsed'),
        )

    async def _ensure_allowance(self, amount: int) -> Optional[str]:
        """Approve the contract to pull `amount` tokens if it cannot already."""
        spender = self.contract.address
        current = await self.contract.allowance(self.wallet.address, spender)
        if current >= amount:
            return None

        approve_amount = MAX_UINT256 if self.allowance_policy is AllowancePolicy.UNLIMITED else amount
        logger.info(f"Approving token spend ({self.allowance_policy.value})...")

        fee_data = await self.chain.get_fee_data()
        tx = await self.contract.build_approve(spender, approve_amount, {
            'from': self.wallet.address,
            'gas': self.config.approve_gas_limit,
            **fee_data.to_params().to_tx_fields(),
        })

        async with self.chain.wallet_lock(self.wallet.address):
            pending = await self.chain.send_transaction(self.account, tx)
            receipt = await pending.wait(1)

        if receipt.get('status') != 1:
            raise TransactionFailureError(f"Approval transaction failed: {pending.tx_hash}")

        logger.info(f"Approval confirmed: {format_tx_hash(pending.tx_hash)}")
        return pending.tx_hash

    async def reconcile(self, result: SwapResult) -> SwapResult:
        """
        Resolve a failed attempt whose transaction was submitted.

        Mined with status 1 becomes a success. Mined and reverted stays a
        retryable TransactionFailureError. Not found (still pending or
        dropped) becomes StuckNonceError, which is not retried; the next
        tick's stuck-nonce clearing supersedes it.
        """
        if result.success or not result.submitted or not result.tx_hash:
            return result

        try:
            receipt = await self.chain.get_receipt(result.tx_hash)
        except Exception as e:
            logger.warning(f"Could not reconcile {format_tx_hash(result.tx_hash)}: {sanitize_error_message(e)}")
            receipt = None

        if receipt is None:
            logger.warning(f"{result.action.title()} {format_tx_hash(result.tx_hash)} has no receipt yet")
            return replace(
                result,
                error=f"Transaction {result.tx_hash} still pending after failed wait",
                error_type=StuckNonceError,
            )

        if receipt.get('status') == 1:
            logger.info(f"{result.action.title()} {format_tx_hash(result.tx_hash)} landed despite error")
            return replace(
                result,
                success=True,
                error=None,
                error_type=None,
                block_number=receipt.get('blockNumber'),
                gas_used=receipt.get('gasUsed'),
            )

        return replace(
            result,
            error=f"Transaction reverted: {result.tx_hash}",
            error_type=TransactionFailureError,
            block_number=receipt.get('blockNumber'),
        )

    async def price_impact(self, eth_amount: int) -> float:
        """
        Percentage difference between the current curve price and the
        effective price of buying with `eth_amount`.
        """
        current_price = await self.contract.get_current_price()
        estimated_tokens = await self.contract.get_estimated_tokens_for_eth(eth_amount)
        if current_price == 0 or estimated_tokens == 0:
            return 0.0
        effective_price = eth_amount * 10 ** 18 // estimated_tokens
        return (current_price - effective_price) * 100 / current_price


class _SubmittedError(Exception):
    """Wait failure for a transaction that did reach the node."""

    def __init__(self, tx_hash: str, cause: Exception):
        super().__init__(str(cause))
        self.tx_hash = tx_hash
        self.cause = cause
