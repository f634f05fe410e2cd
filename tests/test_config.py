"""
Tests for configuration and encrypted storage.
"""

import os
import stat

import pytest
import yaml

from swarm_rotator.config import BotConfig, ConfigManager
from swarm_rotator.utils import ConfigurationError

from conftest import GWEI, TEST_MNEMONIC, TOKEN_ADDRESS


class TestBotConfig:
    """Tests for settings and derived values."""

    def test_defaults(self):
        config = BotConfig()
        assert config.chain_id == 8453
        assert config.min_swaps == 5
        assert config.max_swaps == 10
        assert config.max_sell_reserve_percent == 30.0
        assert config.liquidation_reserve_percent == 10.0
        assert config.replenish_count == 5
        assert config.trade_interval_seconds == 60

    def test_base_unit_views(self):
        config = BotConfig()
        assert config.gas_reserve_wei == 10 ** 14
        assert config.token_reserve_units == 10 ** 18
        assert config.min_active_balance_wei == 10 ** 15
        assert config.funding_amount_wei == 10 ** 15

    @pytest.mark.parametrize("reserve, decimals, expected", [
        (1.1, 18, 1_100_000_000_000_000_000),
        (0.3, 18, 300_000_000_000_000_000),
        (123.456789, 6, 123_456_789),
        (2, 0, 2),
    ])
    def test_token_reserve_units_exact(self, reserve, decimals, expected):
        config = BotConfig(token_reserve=reserve, token_decimals=decimals)
        assert config.token_reserve_units == expected

    def test_fee_profiles(self):
        config = BotConfig()
        assert config.standard_fee.max_fee_per_gas == 2 * GWEI
        assert config.standard_fee.max_priority_fee_per_gas == GWEI // 1000
        assert config.standard_fee.gas_limit == 21000
        assert config.sell_fee.max_fee_per_gas == GWEI // 10
        assert config.sell_fee.gas_limit == 500000

    def test_to_dict_excludes_mnemonic(self):
        data = BotConfig(mnemonic=TEST_MNEMONIC).to_dict()
        assert "mnemonic" not in data
        assert TEST_MNEMONIC not in str(data)

    def test_repr_excludes_mnemonic(self):
        assert TEST_MNEMONIC not in repr(BotConfig(mnemonic=TEST_MNEMONIC))

    def test_from_dict_ignores_unknown_keys(self):
        config = BotConfig.from_dict({'chain_id': 1, 'router_type': 'v4'})
        assert config.chain_id == 1

    def test_validate_ok(self, config):
        config.validate()

    def test_validate_collects_problems(self):
        config = BotConfig(rpc_url="ftp://nope", min_swaps=4, max_swaps=2)
        with pytest.raises(ConfigurationError) as exc:
            config.validate()
        message = str(exc.value)
        assert "seed phrase" in message
        assert "rpc_url" in message
        assert "token_address" in message
        assert "swap budget" in message

    def test_validate_allowance_policy(self, config):
        config.allowance_policy = "sometimes"
        with pytest.raises(ConfigurationError):
            config.validate()

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MNEMONIC_PHRASE", TEST_MNEMONIC)
        monkeypatch.setenv("RPC_URL", "https://rpc.example.org")
        monkeypatch.setenv("TOKEN_ADDRESS", TOKEN_ADDRESS)
        monkeypatch.setenv("TRADE_INTERVAL_MINUTES", "2.5")
        monkeypatch.setenv("CHAIN_ID", "84532")

        config = BotConfig.from_env(env_file=str(tmp_path / "missing.env"))

        assert config.mnemonic == TEST_MNEMONIC
        assert config.rpc_url == "https://rpc.example.org"
        assert config.token_address == TOKEN_ADDRESS
        assert config.trade_interval_minutes == 2.5
        assert config.chain_id == 84532

    def test_from_env_file(self, monkeypatch, tmp_path):
        for name in ("MNEMONIC_PHRASE", "RPC_URL", "TOKEN_ADDRESS", "TRADE_INTERVAL_MINUTES", "CHAIN_ID"):
            monkeypatch.delenv(name, raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text(f'MNEMONIC_PHRASE="{TEST_MNEMONIC}"\nTOKEN_ADDRESS={TOKEN_ADDRESS}\n')

        config = BotConfig.from_env(env_file=str(env_file))

        assert config.mnemonic == TEST_MNEMONIC
        assert config.token_address == TOKEN_ADDRESS
        for name in ("MNEMONIC_PHRASE", "TOKEN_ADDRESS"):
            os.environ.pop(name, None)


class TestConfigManager:
    """Tests for encrypted configuration files."""

    @pytest.fixture
    def manager(self, tmp_path):
        return ConfigManager(tmp_path / "config.yaml", kdf_iterations=1000)

    def test_create_and_load(self, manager):
        manager.create_config({'token_address': TOKEN_ADDRESS}, TEST_MNEMONIC, "hunter2hunter2")

        config = manager.load_config("hunter2hunter2")

        assert config.mnemonic == TEST_MNEMONIC
        assert config.token_address == TOKEN_ADDRESS

    def test_seed_phrase_not_stored_in_plain_text(self, manager):
        manager.create_config({}, TEST_MNEMONIC, "hunter2hunter2")

        raw = manager.config_path.read_text()
        assert "junk" not in raw
        data = yaml.safe_load(raw)
        assert data['encrypted_mnemonic']
        assert data['salt']
        assert 'mnemonic' not in data

    def test_file_permissions(self, manager):
        manager.create_config({}, TEST_MNEMONIC, "hunter2hunter2")
        if os.name != 'nt':
            assert stat.S_IMODE(manager.config_path.stat().st_mode) == 0o600

    def test_wrong_password(self, manager):
        manager.create_config({}, TEST_MNEMONIC, "hunter2hunter2")
        with pytest.raises(ConfigurationError):
            manager.load_config("wrong password")

    def test_missing_file(self, manager):
        with pytest.raises(FileNotFoundError):
            manager.read_raw_config()

    def test_update_keeps_secrets(self, manager):
        manager.create_config({}, TEST_MNEMONIC, "hunter2hunter2")

        manager.update_config({'trade_interval_minutes': 5, 'encrypted_mnemonic': 'garbage'})

        config = manager.load_config("hunter2hunter2")
        assert config.trade_interval_minutes == 5
        assert config.mnemonic == TEST_MNEMONIC

    def test_rotate_password(self, manager):
        manager.create_config({}, TEST_MNEMONIC, "old-password")
        old_salt = manager.read_raw_config()['salt']

        manager.rotate_password("old-password", "new-password")

        assert manager.read_raw_config()['salt'] != old_salt
        assert manager.load_config("new-password").mnemonic == TEST_MNEMONIC
        with pytest.raises(ConfigurationError):
            manager.load_config("old-password")
