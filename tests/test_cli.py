"""
Tests for the command-line entrypoint.
"""

import pytest

from swarm_rotator import cli
from swarm_rotator.config import ConfigManager

from conftest import TEST_MNEMONIC, TOKEN_ADDRESS


def answers(values):
    iterator = iter(values)
    return lambda *args, **kwargs: next(iterator)


def test_no_command_prints_help(capsys):
    cli.main([])
    assert "consolidate" in capsys.readouterr().out


def test_setup_stores_encrypted_config(tmp_path, monkeypatch):
    config_path = tmp_path / "rotator_config.yaml"
    monkeypatch.setattr(cli.getpass, "getpass", answers([TEST_MNEMONIC, "password123", "password123"]))
    monkeypatch.setattr("builtins.input", answers([TOKEN_ADDRESS, ""]))

    cli.main(["--config", str(config_path), "setup"])

    raw = ConfigManager(config_path).read_raw_config()
    assert raw['token_address'] == TOKEN_ADDRESS
    assert raw['rpc_url'] == "https://mainnet.base.org"
    assert raw['encrypted_mnemonic']


def test_setup_rejects_invalid_seed(tmp_path, monkeypatch):
    config_path = tmp_path / "rotator_config.yaml"
    monkeypatch.setattr(cli.getpass, "getpass", answers(["not a seed phrase"]))

    cli.main(["--config", str(config_path), "setup"])

    assert not config_path.exists()


def test_setup_rejects_short_password(tmp_path, monkeypatch):
    config_path = tmp_path / "rotator_config.yaml"
    monkeypatch.setattr(cli.getpass, "getpass", answers([TEST_MNEMONIC, "short"]))
    monkeypatch.setattr("builtins.input", answers([TOKEN_ADDRESS, ""]))

    cli.main(["--config", str(config_path), "setup"])

    assert not config_path.exists()


def test_missing_configuration_exits(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("MNEMONIC_PHRASE", raising=False)
    monkeypatch.delenv("TOKEN_ADDRESS", raising=False)

    with pytest.raises(SystemExit) as exc:
        cli.main(["--config", str(tmp_path / "absent.yaml"), "status"])
    assert exc.value.code == 1


@pytest.mark.parametrize("destination", ["0x1234", "0xF39fd6e51aad88F6F4ce6aB8827279cffFb92266"])
def test_consolidate_rejects_bad_destination(monkeypatch, destination):
    monkeypatch.setattr(cli, "load_runtime_config", lambda *a, **kw: pytest.fail("config loaded"))
    cli.main(["consolidate", "--to", destination])


def test_consolidate_requires_typed_confirmation(config, monkeypatch):
    monkeypatch.setattr(cli, "load_runtime_config", lambda *a, **kw: config)
    monkeypatch.setattr(cli, "setup_logging", lambda *a, **kw: None)
    monkeypatch.setattr("builtins.input", answers(["yes"]))
    monkeypatch.setattr(cli, "_consolidate", lambda *a, **kw: pytest.fail("consolidation started"))

    cli.main(["consolidate"])


class TestSetCommand:

    @pytest.fixture
    def config_path(self, tmp_path):
        path = tmp_path / "rotator_config.yaml"
        ConfigManager(path, kdf_iterations=1000).create_config({'token_address': TOKEN_ADDRESS}, TEST_MNEMONIC, "password123")
        return path

    def test_updates_setting(self, config_path):
        cli.main(["--config", str(config_path), "set", "trade_interval_minutes", "5"])
        cli.main(["--config", str(config_path), "set", "dry_run", "true"])

        raw = ConfigManager(config_path).read_raw_config()
        assert raw['trade_interval_minutes'] == 5.0
        assert raw['dry_run'] is True
        assert raw['token_address'] == TOKEN_ADDRESS

    def test_address_value_stays_text(self, config_path):
        other = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
        cli.main(["--config", str(config_path), "set", "token_address", other])
        assert ConfigManager(config_path).read_raw_config()['token_address'] == other

    @pytest.mark.parametrize("key, value", [
        ("encrypted_mnemonic", "garbage"),
        ("salt", "AAAA"),
        ("no_such_setting", "1"),
        ("min_swaps", "many"),
        ("min_swaps", "2.5"),
        ("dry_run", "1"),
    ])
    def test_rejects_protected_or_malformed(self, config_path, key, value):
        before = config_path.read_text()
        cli.main(["--config", str(config_path), "set", key, value])
        assert config_path.read_text() == before

    def test_missing_config_file(self, tmp_path):
        cli.main(["--config", str(tmp_path / "absent.yaml"), "set", "min_swaps", "3"])
        assert not (tmp_path / "absent.yaml").exists()


class TestRotatePassword:

    @pytest.fixture
    def config_path(self, tmp_path):
        path = tmp_path / "rotator_config.yaml"
        ConfigManager(path).create_config({'token_address': TOKEN_ADDRESS}, TEST_MNEMONIC, "password123")
        return path

    def test_rotates(self, config_path, monkeypatch):
        monkeypatch.setattr(cli.getpass, "getpass", answers(["password123", "new-password", "new-password"]))

        cli.main(["--config", str(config_path), "rotate-password"])

        assert ConfigManager(config_path).load_config("new-password").mnemonic == TEST_MNEMONIC

    def test_wrong_current_password_exits(self, config_path, monkeypatch):
        monkeypatch.setattr(cli.getpass, "getpass", answers(["wrong-password", "new-password", "new-password"]))

        with pytest.raises(SystemExit) as exc:
            cli.main(["--config", str(config_path), "rotate-password"])

        assert exc.value.code == 1
        assert ConfigManager(config_path).load_config("password123").mnemonic == TEST_MNEMONIC

    @pytest.mark.parametrize("new, confirm", [("short", "short"), ("new-password", "other-password")])
    def test_rejects_weak_or_mismatched(self, config_path, monkeypatch, new, confirm):
        before = config_path.read_text()
        monkeypatch.setattr(cli.getpass, "getpass", answers(["password123", new, confirm]))

        cli.main(["--config", str(config_path), "rotate-password"])

        assert config_path.read_text() == before
