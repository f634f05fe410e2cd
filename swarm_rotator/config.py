"""
Configuration Management Module
Handles bot settings and secure storage of the seed phrase.
Uses Fernet symmetric encryption with password-derived keys.
"""

import os
import base64
from pathlib import Path
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, asdict, field
from decimal import Decimal
from urllib.parse import urlparse

import yaml
from dotenv import load_dotenv
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from web3 import Web3

from .chain import FeeParams, TRANSFER_GAS
from .utils import ConfigurationError, logger, validate_address


# Keys update_config never overwrites
SECRET_FIELDS = ("mnemonic", "encrypted_mnemonic", "salt")


@dataclass
class BotConfig:
    """Bot configuration settings."""

    # Network
    rpc_url: str = "https://mainnet.base.org"
    chain_id: int = 8453
    token_address: str = ""

    # Secrets (never written in plain text)
    mnemonic: Optional[str] = field(default=None, repr=False)
    encrypted_mnemonic: Optional[str] = None
    salt: Optional[str] = None

    # Trading loop
    trade_interval_minutes: float = 1.0
    min_swaps: int = 5
    max_swaps: int = 10
    sell_percent_min: int = 10
    sell_percent_max: int = 29

    # Reserves kept in every trading wallet
    gas_reserve_eth: float = 0.0001
    token_reserve: float = 1.0
    token_decimals: int = 18

    # Wallet pool
    min_active_balance_eth: float = 0.001
    min_active_wallets: int = 3
    replenish_count: int = 5
    funding_amount_eth: float = 0.001
    funding_delay_seconds: float = 5.0
    source_account_index: int = 0
    source_wallet_index: int = 0
    scan_accounts: int = 5
    scan_wallets: int = 20
    scan_concurrency: int = 8

    # Swap settings
    slippage_percent: float = 5.0
    gas_limit_buffer: float = 1.2  # 20% buffer
    max_sell_reserve_percent: float = 30.0
    liquidation_reserve_percent: float = 10.0
    allowance_policy: str = "unlimited"
    trade_confirmations: int = 2
    approve_gas_limit: int = 100000

    # Gas settings
    max_fee_gwei: float = 2.0
    max_priority_fee_gwei: float = 0.001
    sell_max_fee_gwei: float = 0.1
    sell_priority_fee_gwei: float = 0.1
    sell_gas_limit: int = 500000

    # Retry and timing
    max_retries: int = 3
    retry_delay_seconds: float = 5.0
    trade_cooldown_seconds: float = 5.0
    liquidation_cooldown_seconds: float = 30.0
    error_cooldown_seconds: float = 60.0
    restart_delay_seconds: float = 60.0
    max_empty_scans: int = 3
    receipt_timeout: int = 120

    # Operation
    dry_run: bool = False
    log_level: str = "INFO"
    log_file: str = "./logs/trading.log"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (excluding the plain-text seed phrase)."""
        data = asdict(self)
        data.pop("mnemonic", None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotConfig":
        """Create BotConfig from dictionary."""
        # Filter only valid fields
        valid_fields = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**valid_fields)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, **overrides) -> "BotConfig":
        """Build a config from environment variables (and a .env file)."""
        load_dotenv(env_file)

        data: Dict[str, Any] = {}
        if os.getenv("MNEMONIC_PHRASE"):
            data["mnemonic"] = os.getenv("MNEMONIC_PHRASE")
        if os.getenv("RPC_URL"):
            data["rpc_url"] = os.getenv("RPC_URL")
        if os.getenv("TOKEN_ADDRESS"):
            data["token_address"] = os.getenv("TOKEN_ADDRESS")
        if os.getenv("CHAIN_ID"):
            data["chain_id"] = int(os.getenv("CHAIN_ID"))
        if os.getenv("TRADE_INTERVAL_MINUTES"):
            data["trade_interval_minutes"] = float(os.getenv("TRADE_INTERVAL_MINUTES"))
        if os.getenv("LOG_LEVEL"):
            data["log_level"] = os.getenv("LOG_LEVEL")

        data.update(overrides)
        return cls.from_dict(data)

    def validate(self) -> None:
        """
        Check the settings needed to trade.

        Raises:
            ConfigurationError: listing every problem found
        """
        problems: List[str] = []

        if not self.mnemonic:
            problems.append("seed phrase is not set")

        parsed = urlparse(self.rpc_url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            problems.append("rpc_url must be an http(s) URL")

        if not validate_address(self.token_address):
            problems.append("token_address is not a valid address")

        if self.min_swaps < 1 or self.max_swaps < self.min_swaps:
            problems.append("swap budget requires 1 <= min_swaps <= max_swaps")

        if not 0 < self.sell_percent_min <= self.sell_percent_max <= 100:
            problems.append("sell percentage range must lie within 1..100")

        if not 0 < self.max_sell_reserve_percent <= 100:
            problems.append("max_sell_reserve_percent must lie within (0, 100]")

        if not 0 <= self.slippage_percent < 100:
            problems.append("slippage_percent must lie within [0, 100)")

        if self.allowance_policy not in ("unlimited", "exact"):
            problems.append("allowance_policy must be 'unlimited' or 'exact'")

        if self.trade_interval_minutes <= 0:
            problems.append("trade_interval_minutes must be positive")

        if problems:
            raise ConfigurationError("Invalid configuration: " + "; ".join(problems))

    # Base-unit views

    @property
    def gas_reserve_wei(self) -> int:
        return Web3.to_wei(self.gas_reserve_eth, "ether")

    @property
    def token_reserve_units(self) -> int:
        return int(Decimal(str(self.token_reserve)) * 10 ** self.token_decimals)

    @property
    def min_active_balance_wei(self) -> int:
        return Web3.to_wei(self.min_active_balance_eth, "ether")

    @property
    def funding_amount_wei(self) -> int:
        return Web3.to_wei(self.funding_amount_eth, "ether")

    @property
    def trade_interval_seconds(self) -> float:
        return self.trade_interval_minutes * 60

    @property
    def standard_fee(self) -> FeeParams:
        return FeeParams.from_gwei(self.max_fee_gwei, self.max_priority_fee_gwei, TRANSFER_GAS)

    @property
    def sell_fee(self) -> FeeParams:
        return FeeParams.from_gwei(self.sell_max_fee_gwei, self.sell_priority_fee_gwei, self.sell_gas_limit)


class ConfigManager:
    """Manages configuration file with an encrypted seed phrase."""

    def __init__(self, config_path: Path = Path("./rotator_config.yaml"), kdf_iterations: int = 480000):
        self.config_path = Path(config_path)
        self._kdf_iterations = kdf_iterations

    def _derive_key(self, password: str, salt: bytes) -> bytes:
        """Derive encryption key from password using PBKDF2."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self._kdf_iterations,
        )
        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    def _encrypt_mnemonic(self, mnemonic: str, password: str, salt: bytes) -> str:
        phrase = " ".join(mnemonic.split())
        if not phrase:
            raise ValueError("Seed phrase must not be empty")
        token = Fernet(self._derive_key(password, salt)).encrypt(phrase.encode())
        return token.decode()

    def _decrypt_mnemonic(self, encrypted: str, password: str, salt: bytes) -> str:
        try:
            return Fernet(self._derive_key(password, salt)).decrypt(encrypted.encode()).decode()
        except InvalidToken as e:
            raise ConfigurationError("Could not decrypt seed phrase (wrong password?)") from e

    def create_config(self, config_data: Dict[str, Any], mnemonic: str, password: str) -> BotConfig:
        """Create new configuration with an encrypted seed phrase."""
        salt = os.urandom(16)

        data = dict(config_data)
        data.pop("mnemonic", None)
        data["encrypted_mnemonic"] = self._encrypt_mnemonic(mnemonic, password, salt)
        data["salt"] = base64.b64encode(salt).decode()

        config = BotConfig.from_dict(data)
        self._save_config(config)
        logger.info(f"Configuration created at {self.config_path}")
        return config

    def load_config(self, password: str) -> BotConfig:
        """Load configuration and decrypt the seed phrase for runtime use."""
        data = self.read_raw_config()
        config = BotConfig.from_dict(data)

        if config.encrypted_mnemonic and config.salt:
            salt = base64.b64decode(config.salt)
            config.mnemonic = self._decrypt_mnemonic(config.encrypted_mnemonic, password, salt)

        logger.info("Configuration loaded successfully")
        return config

    def read_raw_config(self) -> Dict[str, Any]:
        """Read config without decrypting (for status checks)."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")
        with open(self.config_path, "r") as f:
            return yaml.safe_load(f) or {}

    def _save_config(self, config: BotConfig):
        """Save configuration to YAML file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, "w") as f:
            yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)

        # Set restrictive permissions (owner read/write only)
        os.chmod(self.config_path, 0o600)

    def update_config(self, updates: Dict[str, Any]) -> BotConfig:
        """Update non-secret configuration values."""
        data = self.read_raw_config()
        data.update({
            k: v for k, v in updates.items()
            if k not in SECRET_FIELDS
        })
        config = BotConfig.from_dict(data)
        self._save_config(config)
        logger.info("Configuration updated")
        return config

    def rotate_password(self, old_password: str, new_password: str) -> None:
        """Re-encrypt the seed phrase under a new password and salt."""
        config = self.load_config(old_password)
        if not config.mnemonic:
            raise ConfigurationError("No encrypted seed phrase to re-encrypt")

        salt = os.urandom(16)
        data = self.read_raw_config()
        data["encrypted_mnemonic"] = self._encrypt_mnemonic(config.mnemonic, new_password, salt)
        data["salt"] = base64.b64encode(salt).decode()

        self._save_config(BotConfig.from_dict(data))
        logger.info("Password rotated successfully")
