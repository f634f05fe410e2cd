"""
Trade Orchestrator

Drives the trading state machine for the active wallet:

    INIT -> TRADING -> (ROTATING -> TRADING)* -> STOPPED
    any state -> RECOVERING -> INIT or TRADING

Handles:
- Pool population and best-wallet selection on start
- Randomized swap budgets and wallet rotation
- Stuck-nonce clearing before each trade
- Bounded retries with reconciliation of ambiguous submissions
- Cooperative shutdown through a CancellationToken

The supervisor restarts the whole cycle after unexpected failures.
"""

import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from rich.table import Table
from rich import box

from .chain import ChainClient, FeeParams, TRANSIENT_ERRORS
from .config import BotConfig
from .contract import CurveTokenContract
from .derivation import KeyDerivationTree, WalletRecord
from .pool import WalletPool
from .scanner import WalletScanner
from .scheduler import CancellationToken, RetryPolicy
from .swap import SwapEngine, SwapResult
from .utils import (
    logger,
    format_address,
    format_duration,
    format_eth,
    format_tx_hash,
    format_wei,
    sanitize_error_message,
    ConfigurationError,
    InsufficientFundsError,
    NoWalletAvailableError,
    ReserveCapExceededError,
    StuckNonceError,
    TransactionFailureError,
)


# Errors that end a tick in RECOVERING once retries are spent
ABANDONED_TRADE_ERRORS = (
    TransactionFailureError,
    StuckNonceError,
    ReserveCapExceededError,
    ValueError,
) + TRANSIENT_ERRORS


class BotState(Enum):
    INIT = "init"
    TRADING = "trading"
    ROTATING = "rotating"
    RECOVERING = "recovering"
    STOPPED = "stopped"


@dataclass
class TradeSession:
    """Per-wallet trading session."""
    active_wallet: Optional[WalletRecord] = None
    swap_count: int = 0
    swap_budget: int = 0

    def start(self, wallet: WalletRecord, budget: int) -> None:
        self.active_wallet = wallet
        self.swap_count = 0
        self.swap_budget = budget

    @property
    def budget_reached(self) -> bool:
        return self.active_wallet is not None and self.swap_count >= self.swap_budget


@dataclass
class SessionStats:
    """Aggregated statistics for the trading run."""
    total_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0
    buys: int = 0
    sells: int = 0
    rotations: int = 0
    stuck_clears: int = 0
    total_eth_spent: int = 0
    total_eth_received: int = 0
    total_tokens_sold: int = 0

    @property
    def success_rate(self) -> float:
        if self.total_trades == 0:
            return 0.0
        return (self.successful_trades / self.total_trades) * 100

    def record(self, result: SwapResult) -> None:
        self.total_trades += 1
        if not result.success:
            self.failed_trades += 1
            return
        self.successful_trades += 1
        if result.action == SwapEngine.BUY:
            self.buys += 1
            self.total_eth_spent += result.amounts.get('eth_in', 0)
        else:
            self.sells += 1
            self.total_tokens_sold += result.amounts.get('tokens_in', 0)
            self.total_eth_received += result.amounts.get('expected_eth', 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_trades': self.total_trades,
            'successful_trades': self.successful_trades,
            'failed_trades': self.failed_trades,
            'success_rate': self.success_rate,
            'buys': self.buys,
            'sells': self.sells,
            'rotations': self.rotations,
            'stuck_clears': self.stuck_clears,
            'total_eth_spent': self.total_eth_spent,
            'total_eth_received': self.total_eth_received,
            'total_tokens_sold': self.total_tokens_sold,
        }


class TradeOrchestrator:
    """Owns the pool, the session and the swap engine for the active wallet."""

    def __init__(
        self,
        config: BotConfig,
        chain: ChainClient,
        tree: KeyDerivationTree,
        contract: CurveTokenContract,
        token: Optional[CancellationToken] = None,
        rng: Optional[random.Random] = None,
        scanner: Optional[WalletScanner] = None,
        pool: Optional[WalletPool] = None,
        engine_factory: Optional[Callable[[WalletRecord], SwapEngine]] = None,
    ):
        self.config = config
        self.chain = chain
        self.tree = tree
        self.contract = contract
        self.token = token or CancellationToken()
        self.rng = rng or random.Random()

        self.scanner = scanner or WalletScanner(tree, chain, concurrency=config.scan_concurrency)
        self.pool = pool or WalletPool(
            tree,
            chain,
            min_balance=config.min_active_balance_wei,
            min_active=config.min_active_wallets,
            gas_reserve=config.gas_reserve_wei,
            fee_params=config.standard_fee,
            funding_delay=config.funding_delay_seconds,
            sleep=self.token.sleep,
        )
        self._engine_factory = engine_factory or (
            lambda wallet: SwapEngine(config, chain, contract, wallet)
        )
        self.retry_policy = RetryPolicy(
            max_attempts=config.max_retries,
            delay=config.retry_delay_seconds,
            retry_on=(TransactionFailureError,) + TRANSIENT_ERRORS,
            sleep=self.token.sleep,
        )

        self.state = BotState.INIT
        self.session = TradeSession()
        self.stats = SessionStats()
        self.engine: Optional[SwapEngine] = None
        self._empty_scans = 0

    # Wallet lifecycle

    @property
    def source_wallet(self) -> WalletRecord:
        return self.tree.derive(self.config.source_account_index, self.config.source_wallet_index)

    def _draw_budget(self) -> int:
        return self.rng.randint(self.config.min_swaps, self.config.max_swaps)

    def activate(self, wallet: WalletRecord) -> None:
        self.session.start(wallet, self._draw_budget())
        self.engine = self._engine_factory(wallet)
        logger.info(
            f"Active wallet {wallet} balance {format_eth(wallet.balance)}, "
            f"budget {self.session.swap_budget} swaps"
        )

    def _reset_session(self) -> None:
        self.session = TradeSession()
        self.engine = None

    async def _populate_pool(self) -> None:
        await self.pool.populate(
            self.scanner,
            self.source_wallet,
            account_range=self.config.scan_accounts,
            wallet_range=self.config.scan_wallets,
            count=self.config.replenish_count,
            funding_amount=self.config.funding_amount_wei,
        )

    async def initialize(self) -> WalletRecord:
        """Populate the pool, pick the best wallet and liquidate leftovers."""
        self.state = BotState.INIT
        logger.info("Initializing wallet pool...")

        await self._populate_pool()
        wallet = self.pool.select_best()
        if wallet is None:
            raise NoWalletAvailableError("No wallets with sufficient balance found")

        self.activate(wallet)
        await self.liquidate_existing_tokens()

        self.state = BotState.TRADING
        return wallet

    async def liquidate_existing_tokens(self) -> Optional[SwapResult]:
        """
        Sell tokens above the reserve, capped at the liquidation share of the
        token reserve. Failures are logged and left for a later attempt.
        """
        wallet = self.session.active_wallet
        if wallet is None or self.engine is None:
            return None

        try:
            balance = await self.contract.balance_of(wallet.address)
            available = balance - self.config.token_reserve_units
            if available <= 0:
                return None

            reserves = await self.contract.get_reserves()
            amount = min(available, reserves.max_sell(self.config.liquidation_reserve_percent))
            if amount <= 0:
                return None

            logger.info(f"Liquidating {format_wei(amount)} existing tokens from {wallet}")
            result = await self.engine.sell(amount, cap_percent=self.config.liquidation_reserve_percent)
        except Exception as e:
            logger.error(f"Error handling existing tokens: {sanitize_error_message(e)}")
            return None

        self.stats.record(result)
        if result.success:
            await self.token.sleep(self.config.liquidation_cooldown_seconds)
        else:
            logger.warning("Liquidation failed, will try again later")
        return result

    async def rotate(self) -> WalletRecord:
        """Retire the active wallet and switch to the next best one."""
        self.state = BotState.ROTATING
        old = self.session.active_wallet
        logger.info("=== Starting wallet rotation ===")

        if old is not None:
            await self.liquidate_existing_tokens()

        wallet = self.pool.rotate(old.address if old else None)
        if wallet is None:
            logger.warning("No more active wallets available. Rescanning...")
            await self._populate_pool()
            wallet = self.pool.select_best()

        if wallet is None:
            raise NoWalletAvailableError("No active wallets found after rescan")

        self.activate(wallet)
        self.stats.rotations += 1
        self.state = BotState.TRADING
        logger.info("=== Wallet rotation completed ===")
        return wallet

    # Stuck transactions

    async def _supersede_pending(self, fee_params: FeeParams, raise_on_error: bool) -> Optional[Dict]:
        wallet = self.session.active_wallet
        if wallet is None:
            return None

        address = wallet.address
        pending = await self.chain.get_transaction_count(address, 'pending')
        latest = await self.chain.get_transaction_count(address, 'latest')
        if pending <= latest:
            return None

        previous_state = self.state
        self.state = BotState.RECOVERING
        logger.warning(
            f"Found {pending - latest} pending transaction(s) on {format_address(address)}, "
            f"superseding nonce {latest}"
        )

        tx = {
            'to': address,
            'value': 0,
            'nonce': latest,
            **fee_params.to_tx_fields(),
        }
        try:
            async with self.chain.wallet_lock(address):
                replacement = await self.chain.send_transaction(wallet.account, tx)
                receipt = await replacement.wait(1)
        except Exception as e:
            logger.error(f"Error clearing pending transactions: {sanitize_error_message(e)}")
            if raise_on_error:
                raise StuckNonceError(f"Could not supersede nonce {latest}") from e
            return None
        finally:
            self.state = previous_state

        self.stats.stuck_clears += 1
        logger.info(f"Replacement confirmed: {format_tx_hash(replacement.tx_hash)}")

        new_pending = await self.chain.get_transaction_count(address, 'pending')
        new_latest = await self.chain.get_transaction_count(address, 'latest')
        if new_pending > new_latest:
            logger.warning(f"{new_pending - new_latest} transaction(s) still pending")
        return receipt

    async def clear_stuck_transactions(self) -> Optional[Dict]:
        """Supersede the lowest stuck nonce with doubled standard fees."""
        return await self._supersede_pending(self.config.standard_fee.doubled(), raise_on_error=False)

    async def cancel_pending_transactions(self) -> Optional[Dict]:
        """Operator cancel: supersede with doubled network fees, raising on failure."""
        fee_data = await self.chain.get_fee_data()
        fee_params = fee_data.doubled().to_params(gas_limit=self.config.standard_fee.gas_limit)
        return await self._supersede_pending(fee_params, raise_on_error=True)

    # Trading

    async def _trade_once(self) -> SwapResult:
        wallet = self.session.active_wallet
        token_balance = await self.contract.balance_of(wallet.address)
        available_tokens = token_balance - self.config.token_reserve_units

        if available_tokens <= 0:
            eth_balance = await self.chain.get_balance(wallet.address)
            wallet.balance = eth_balance
            available_eth = eth_balance - self.config.gas_reserve_wei
            if available_eth <= 0:
                raise InsufficientFundsError(
                    f"No ETH available above reserve in {format_address(wallet.address)}"
                )
            result = await self.engine.buy(available_eth // 2)
        else:
            percentage = self.rng.randint(self.config.sell_percent_min, self.config.sell_percent_max)
            reserves = await self.contract.get_reserves()
            amount = min(
                available_tokens * percentage // 100,
                reserves.max_sell(self.config.max_sell_reserve_percent),
            )
            if amount <= 0:
                raise InsufficientFundsError("Sell amount rounds to zero")
            result = await self.engine.sell(amount)

        if not result.success and result.submitted:
            result = await self.engine.reconcile(result)

        self.stats.record(result)
        result.raise_for_status()

        if result.action == SwapEngine.SELL:
            self.session.swap_count += 1
            logger.info(f"Swap {self.session.swap_count}/{self.session.swap_budget} completed")
        return result

    async def tick(self) -> Optional[SwapResult]:
        """
        One trading step: clear stuck nonces, rotate when the budget is
        spent, otherwise buy or sell once under the retry policy.
        """
        if self.session.active_wallet is None:
            raise NoWalletAvailableError("No active wallet; initialize first")

        await self.clear_stuck_transactions()

        if self.session.budget_reached:
            logger.info(f"Reached {self.session.swap_budget} swaps, rotating wallet")
            await self.rotate()
            return None

        self.state = BotState.TRADING
        try:
            result = await self.retry_policy.run(self._trade_once)
        except InsufficientFundsError as e:
            logger.warning(f"Skipping trade: {e}")
            return None
        except ABANDONED_TRADE_ERRORS as e:
            logger.error(f"Trade abandoned: {sanitize_error_message(e)}")
            self.state = BotState.RECOVERING
            return None

        await self.token.sleep(self.config.trade_cooldown_seconds)
        return result

    async def run(self) -> None:
        """Main loop until the token is cancelled."""
        logger.info("=== Starting trading loop ===")
        interval = self.config.trade_interval_seconds

        while not self.token.cancelled:
            try:
                if self.session.active_wallet is None:
                    await self.initialize()
                    self._empty_scans = 0

                await self.tick()

                if self.token.cancelled:
                    break
                logger.info(f"Waiting {format_duration(interval)} before next trade...")
                if await self.token.sleep(interval):
                    break

            except NoWalletAvailableError as e:
                self._empty_scans += 1
                self._reset_session()
                self.state = BotState.RECOVERING
                if self._empty_scans >= self.config.max_empty_scans:
                    logger.critical(f"No funded wallets after {self._empty_scans} scans")
                    raise
                logger.error(f"{e}; retrying in {format_duration(self.config.error_cooldown_seconds)}")
                if await self.token.sleep(self.config.error_cooldown_seconds):
                    break

            except ConfigurationError:
                raise

            except Exception as e:
                logger.exception(f"Error in main trading loop: {sanitize_error_message(e)}")
                self.state = BotState.RECOVERING
                if await self.token.sleep(self.config.error_cooldown_seconds):
                    break

        self.state = BotState.STOPPED
        logger.info("Trading loop stopped")

    def get_stats_table(self) -> Table:
        """Get Rich table with session statistics."""
        table = Table(title="Trading Statistics", box=box.ROUNDED)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        wallet = self.session.active_wallet
        table.add_row("State", self.state.value)
        table.add_row("Active Wallet", str(wallet) if wallet else "-")
        table.add_row("Swaps", f"{self.session.swap_count}/{self.session.swap_budget}")
        table.add_row("Pool Size", str(len(self.pool)))
        table.add_row("Total Trades", str(self.stats.total_trades))
        table.add_row("Success Rate", f"{self.stats.success_rate:.1f}%")
        table.add_row("Buys / Sells", f"{self.stats.buys} / {self.stats.sells}")
        table.add_row("Rotations", str(self.stats.rotations))
        table.add_row("Stuck Clears", str(self.stats.stuck_clears))
        table.add_row("ETH Spent", format_eth(self.stats.total_eth_spent))
        table.add_row("ETH Received", format_eth(self.stats.total_eth_received))
        table.add_row("Tokens Sold", format_wei(self.stats.total_tokens_sold))
        return table


async def supervise(
    factory: Callable[[], TradeOrchestrator],
    token: CancellationToken,
    restart_delay: float = 60.0,
) -> int:
    """
    Run orchestrators until cancelled, restarting after any unexpected
    exit. Configuration errors are fatal and propagate.

    Returns:
        Number of restarts performed
    """
    restarts = 0
    while not token.cancelled:
        orchestrator = factory()
        try:
            await orchestrator.run()
            if token.cancelled:
                break
            logger.warning("Trading loop exited unexpectedly")
        except ConfigurationError as e:
            logger.critical(f"Fatal configuration error: {e}")
            raise
        except Exception as e:
            logger.exception(f"Fatal error in trading bot: {sanitize_error_message(e)}")

        restarts += 1
        logger.info(f"Restarting in {format_duration(restart_delay)} (restart #{restarts})")
        if await token.sleep(restart_delay):
            break
    return restarts
