"""
Tests for HD wallet derivation.
"""

import pytest
from eth_account import Account

from swarm_rotator.derivation import KeyDerivationTree, WalletRecord, WALLETS_PER_ACCOUNT
from swarm_rotator.utils import ConfigurationError, InvalidSeedError

from conftest import TEST_MNEMONIC


class TestKeyDerivationTree:
    """Tests for path derivation and the generation cursor."""

    def test_known_vectors(self, tree):
        """Standard test mnemonic derives the well-known first addresses."""
        assert tree.derive(0, 0).address == "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
        assert tree.derive(0, 1).address == "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"

    def test_private_key_matches_address(self, tree):
        record = tree.derive(0, 0)
        assert record.private_key == "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
        assert Account.from_key(record.private_key).address == record.address
        assert record.account.address == record.address

    def test_derivation_is_deterministic(self):
        first = KeyDerivationTree(TEST_MNEMONIC).derive(2, 7)
        second = KeyDerivationTree(TEST_MNEMONIC).derive(2, 7)
        assert first.address == second.address
        assert first.private_key == second.private_key

    def test_path_format(self, tree):
        record = tree.derive(3, 11)
        assert record.derivation_path == "m/44'/60'/3'/0/11"
        assert record.coordinates == (3, 11)

    def test_distinct_coordinates_give_distinct_wallets(self, tree):
        addresses = {tree.derive(a, w).address for a in range(2) for w in range(5)}
        assert len(addresses) == 10

    def test_whitespace_is_normalized(self):
        messy = "  " + TEST_MNEMONIC.replace(" ", "   ") + "\n"
        assert KeyDerivationTree(messy).derive(0, 0).address == "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

    def test_invalid_checksum_rejected(self):
        with pytest.raises(InvalidSeedError):
            KeyDerivationTree(" ".join(["abandon"] * 12))

    def test_unknown_words_rejected(self):
        with pytest.raises(InvalidSeedError):
            KeyDerivationTree("these words are definitely not part of any wordlist xyzzy plugh")

    def test_empty_phrase_rejected(self):
        with pytest.raises(InvalidSeedError):
            KeyDerivationTree("   ")

    def test_invalid_seed_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            KeyDerivationTree("")

    def test_negative_index_rejected(self, tree):
        with pytest.raises(ValueError):
            tree.derive(0, -1)

    def test_cursor_rolls_over_account(self, tree):
        """After the last index of an account the cursor moves to the next account."""
        paths = [tree.next_path() for _ in range(WALLETS_PER_ACCOUNT + 1)]
        assert paths[0] == "m/44'/60'/0'/0/0"
        assert paths[WALLETS_PER_ACCOUNT - 1] == "m/44'/60'/0'/0/19"
        assert paths[WALLETS_PER_ACCOUNT] == "m/44'/60'/1'/0/0"

    def test_derive_path(self, tree):
        record = tree.derive_path("m/44'/60'/0'/0/1")
        assert record.address == "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
        assert record.coordinates == (0, 1)

    @pytest.mark.parametrize("path", ["m/44'/60'/0'/0", "m/44'/0'/0'/0/1", "garbage"])
    def test_derive_path_rejects_other_shapes(self, tree, path):
        with pytest.raises(ValueError):
            tree.derive_path(path)

    def test_next_wallet_follows_cursor(self, tree):
        for _ in range(WALLETS_PER_ACCOUNT + 4):
            tree.next_path()
        record = tree.next_wallet()
        assert record.coordinates == (1, 4)
        assert (tree.current_account, tree.current_index) == (1, 5)

    def test_coordinates_row_major(self, tree):
        pairs = list(tree.coordinates(range(1, 3), [4, 0]))
        assert pairs == [(1, 4), (1, 0), (2, 4), (2, 0)]
        assert list(tree.coordinates([], range(5))) == []


class TestWalletRecord:
    """Tests for key hygiene on wallet records."""

    def test_repr_hides_private_key(self, tree):
        record = tree.derive(0, 0)
        assert record.private_key[2:] not in repr(record)
        assert record.private_key[2:] not in str(record)

    def test_to_dict_excludes_private_key(self, tree):
        record = tree.derive(0, 0)
        data = record.to_dict()
        assert 'private_key' not in data
        assert data['path'] == "m/44'/60'/0'/0/0"

    def test_default_balance(self):
        record = WalletRecord("0x" + "11" * 20, "m/44'/60'/0'/0/0", "0x" + "22" * 32, 0, 0)
        assert record.balance == 0
