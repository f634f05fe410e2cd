"""
Utility Module

Error taxonomy, secure logging and formatting helpers shared by every
component of the rotator.

Logging:
- One package logger ("swarm_rotator") wrapped in SecureLogger so private
  keys and secrets never reach the console or the log file
- Rich console output plus a size-rotated file sink, configured once by
  setup_logging() at startup
"""

import os
import re
import logging
import logging.handlers
from typing import Optional

from web3 import Web3
from rich.console import Console
from rich.logging import RichHandler


# Global console for Rich output
console = Console()

LOGGER_NAME = "swarm_rotator"


class SwarmRotatorError(Exception):
    """Base class for all rotator errors."""
    pass


class ConfigurationError(SwarmRotatorError):
    """Missing or invalid configuration. Fatal at startup, never retried."""
    pass


class InvalidSeedError(ConfigurationError):
    """Seed phrase failed the BIP-39 validity check."""
    pass


class InsufficientFundsError(SwarmRotatorError):
    """Spendable balance is non-positive for the intended operation."""
    pass


class ReserveCapExceededError(SwarmRotatorError):
    """Requested sell is above the allowed share of the token reserve."""
    pass


class TransactionFailureError(SwarmRotatorError):
    """Submission or confirmation failed (reverted, underpriced, dropped)."""
    pass


class StuckNonceError(SwarmRotatorError):
    """Pending nonce is ahead of the confirmed nonce for a wallet."""
    pass


class NoWalletAvailableError(SwarmRotatorError):
    """The pool is exhausted and a re-scan found no funded wallet."""
    pass


class SecureLogger:
    """
    Logger that sanitizes sensitive data from log messages.

    Key material is 32 bytes, the same length as a transaction hash, so
    any bare 64-hex string is redacted. Log transaction hashes through
    format_tx_hash() to keep them readable.
    """

    SENSITIVE_PATTERNS = [
        (r'0x[a-fA-F0-9]{64}\b', '[KEY_REDACTED]'),
        (r'\b[a-fA-F0-9]{64}\b', '[KEY_REDACTED]'),
        (r'(mnemonic|seed[_ ]?phrase)["\']?\s*[:=]\s*["\']?[^"\'\n]+', r'\1=[REDACTED]'),
        (r'password["\']?\s*[:=]\s*\S+', 'password=[REDACTED]'),
        (r'private[_ ]?key["\']?\s*[:=]\s*\S+', 'private_key=[REDACTED]'),
    ]

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def _sanitize(self, msg) -> str:
        """Remove sensitive data from a log message."""
        if not isinstance(msg, str):
            msg = str(msg)
        for pattern, replacement in self.SENSITIVE_PATTERNS:
            msg = re.sub(pattern, replacement, msg, flags=re.IGNORECASE)
        return msg

    def debug(self, msg, *args, **kwargs):
        self._logger.debug(self._sanitize(msg), *args, **kwargs)

    def info(self, msg, *args, **kwargs):
        self._logger.info(self._sanitize(msg), *args, **kwargs)

    def warning(self, msg, *args, **kwargs):
        self._logger.warning(self._sanitize(msg), *args, **kwargs)

    def error(self, msg, *args, **kwargs):
        self._logger.error(self._sanitize(msg), *args, **kwargs)

    def exception(self, msg, *args, **kwargs):
        self._logger.exception(self._sanitize(msg), *args, **kwargs)

    def critical(self, msg, *args, **kwargs):
        self._logger.critical(self._sanitize(msg), *args, **kwargs)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = "./logs/trading.log",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> SecureLogger:
    """
    Attach Rich console and rotating file handlers to the package logger.

    Safe to call more than once; existing handlers are replaced.
    """
    base = logging.getLogger(LOGGER_NAME)
    base.setLevel(getattr(logging, log_level.upper()))
    base.handlers = []
    base.propagate = False

    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        rich_tracebacks=True
    )
    rich_handler.setLevel(getattr(logging, log_level.upper()))
    rich_handler.setFormatter(logging.Formatter("%(message)s"))
    base.addHandler(rich_handler)

    if log_file:
        log_path = os.path.abspath(log_file)
        os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        base.addHandler(file_handler)

    return logger


# Package-wide secure logger; handlers are attached by setup_logging()
logger = SecureLogger(logging.getLogger(LOGGER_NAME))


# Formatting utilities

def format_wei(wei_amount: int, decimals: int = 18) -> str:
    """Format a base-unit amount to a human-readable string."""
    if wei_amount == 0:
        return "0"

    value = wei_amount / (10 ** decimals)

    if abs(value) < 0.0001:
        return f"{value:.8f}"
    elif abs(value) < 1:
        return f"{value:.6f}"
    elif abs(value) < 1000:
        return f"{value:.4f}"
    else:
        return f"{value:,.2f}"


def format_eth(wei_amount: int) -> str:
    """Format a wei amount as ETH."""
    return f"{format_wei(wei_amount)} ETH"


def format_duration(seconds: float) -> str:
    """Format duration in seconds to human-readable string."""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    elif seconds < 3600:
        minutes, secs = divmod(seconds, 60)
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    else:
        hours, rest = divmod(seconds, 3600)
        minutes = rest // 60
        return f"{hours}h {minutes}m" if minutes else f"{hours}h"


def format_address(address: str, length: int = 6) -> str:
    """Format Ethereum address with ellipsis."""
    if not address or len(address) <= length * 2 + 2:
        return address
    return f"{address[:length + 2]}...{address[-length:]}"


def format_tx_hash(tx_hash: Optional[str], length: int = 8) -> str:
    """Format transaction hash with ellipsis."""
    if not tx_hash:
        return "-"
    if len(tx_hash) <= length * 2 + 2:
        return tx_hash
    return f"{tx_hash[:length + 2]}...{tx_hash[-length:]}"


def validate_address(address: str) -> bool:
    """
    Return True for a well-formed Ethereum address.

    All-lowercase and all-uppercase hex carry no checksum and are accepted;
    mixed case must match its EIP-55 checksum.
    """
    if not address or not isinstance(address, str):
        return False
    if not Web3.is_address(address):
        return False
    body = address[2:] if address[:2].lower() == "0x" else address
    if body != body.lower() and body != body.upper():
        return Web3.is_checksum_address(address)
    return True


def sanitize_error_message(error) -> str:
    """
    Strip key material, endpoint URLs and secrets from an error message.

    Args:
        error: Exception or message

    Returns:
        Message safe for logs and result records
    """
    message = str(error)

    patterns = [
        (r'0x[a-fA-F0-9]{64}\b', '[KEY]'),
        (r'https?://[^\s\'"]+', '[URL]'),
        (r'wss?://[^\s\'"]+', '[URL]'),
        (r'password["\']?\s*[:=]\s*\S+', 'password=[REDACTED]'),
    ]

    for pattern, replacement in patterns:
        message = re.sub(pattern, replacement, message, flags=re.IGNORECASE)

    return message

