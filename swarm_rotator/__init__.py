"""
Swarm Rotator
=============
Autonomous trading agent for bonding-curve tokens on EVM chains.

Features:
- Derive a tree of trading wallets from one BIP-39 seed phrase
- Scan the tree for funded wallets and fund fresh ones when the pool runs low
- Trade from the best-funded wallet for a randomized number of swaps, then rotate
- Clear stuck nonces before trading
- Consolidate every wallet's balance into one address

Security:
- Seed phrase encrypted at rest with PBKDF2 + Fernet
- Key material redacted from logs
"""

__version__ = "1.0.0"

from .config import BotConfig, ConfigManager
from .chain import ChainClient, FeeData, FeeParams, PendingTransaction
from .contract import CurveTokenContract, ReserveSnapshot
from .derivation import KeyDerivationTree, WalletRecord
from .scanner import ScanStats, WalletScanner
from .pool import WalletPool
from .swap import AllowancePolicy, SwapEngine, SwapResult
from .orchestrator import BotState, SessionStats, TradeOrchestrator, TradeSession, supervise
from .consolidation import ConsolidationEngine, TransferResult
from .scheduler import CancellationToken, RetryPolicy
from .utils import (
    logger,
    setup_logging,
    SwarmRotatorError,
    ConfigurationError,
    InvalidSeedError,
    InsufficientFundsError,
    ReserveCapExceededError,
    TransactionFailureError,
    StuckNonceError,
    NoWalletAvailableError,
)

__all__ = [
    "BotConfig",
    "ConfigManager",
    "ChainClient",
    "FeeData",
    "FeeParams",
    "PendingTransaction",
    "CurveTokenContract",
    "ReserveSnapshot",
    "KeyDerivationTree",
    "WalletRecord",
    "ScanStats",
    "WalletScanner",
    "WalletPool",
    "AllowancePolicy",
    "SwapEngine",
    "SwapResult",
    "BotState",
    "SessionStats",
    "TradeOrchestrator",
    "TradeSession",
    "supervise",
    "ConsolidationEngine",
    "TransferResult",
    "CancellationToken",
    "RetryPolicy",
    "logger",
    "setup_logging",
    "SwarmRotatorError",
    "ConfigurationError",
    "InvalidSeedError",
    "InsufficientFundsError",
    "ReserveCapExceededError",
    "TransactionFailureError",
    "StuckNonceError",
    "NoWalletAvailableError",
]
