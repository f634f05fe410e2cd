"""
HD Key Derivation

Deterministic BIP-32/BIP-44 wallet tree rooted at a single BIP-39 seed
phrase. Every wallet lives at m/44'/60'/{account}'/0/{index}; the seed is
stretched once and reused for every derivation.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, Tuple

from eth_account import Account
from eth_account.hdaccount import key_from_seed, seed_from_mnemonic
from eth_account.signers.local import LocalAccount

from .utils import InvalidSeedError, format_address


PATH_TEMPLATE = "m/44'/60'/{}'/0/{}"
PATH_PATTERN = re.compile(r"^m/44'/60'/(\d+)'/0/(\d+)$")
WALLETS_PER_ACCOUNT = 20

Account.enable_unaudited_hdwallet_features()


@dataclass
class WalletRecord:
    """A derived wallet. The private key never appears in repr() or to_dict()."""
    address: str
    derivation_path: str
    private_key: str = field(repr=False)
    account_index: int
    wallet_index: int
    balance: int = 0

    @property
    def account(self) -> LocalAccount:
        return Account.from_key(self.private_key)

    @property
    def coordinates(self) -> Tuple[int, int]:
        return (self.account_index, self.wallet_index)

    def to_dict(self) -> Dict:
        return {
            'address': self.address,
            'path': self.derivation_path,
            'balance': self.balance,
            'account_index': self.account_index,
            'wallet_index': self.wallet_index,
        }

    def __str__(self) -> str:
        return f"{format_address(self.address)} ({self.derivation_path})"


class KeyDerivationTree:
    """
    Derives wallets from a seed phrase and tracks a generation cursor.

    The cursor walks wallet indices 0..19 of the current account and then
    rolls over to the next account.
    """

    def __init__(self, mnemonic: str, passphrase: str = ""):
        phrase = " ".join((mnemonic or "").split())
        if not phrase:
            raise InvalidSeedError("Seed phrase is empty")
        try:
            self._seed = seed_from_mnemonic(phrase, passphrase)
        except Exception as e:
            raise InvalidSeedError("Seed phrase is not a valid BIP-39 mnemonic") from e

        self.current_account = 0
        self.current_index = 0

    def __repr__(self) -> str:
        return f"KeyDerivationTree(cursor={self.current_account}/{self.current_index})"

    @staticmethod
    def path_for(account_index: int, wallet_index: int) -> str:
        if account_index < 0 or wallet_index < 0:
            raise ValueError("Derivation indices must be non-negative")
        return PATH_TEMPLATE.format(account_index, wallet_index)

    def derive(self, account_index: int, wallet_index: int) -> WalletRecord:
        """Derive the wallet at (account_index, wallet_index). Pure."""
        path = self.path_for(account_index, wallet_index)
        account = Account.from_key(key_from_seed(self._seed, path))
        return WalletRecord(
            address=account.address,
            derivation_path=path,
            private_key="0x" + bytes(account.key).hex(),
            account_index=account_index,
            wallet_index=wallet_index,
        )

    def derive_path(self, path: str) -> WalletRecord:
        """Derive from a path string of the form m/44'/60'/{account}'/0/{index}."""
        match = PATH_PATTERN.match(path.strip())
        if not match:
            raise ValueError(f"Unsupported derivation path: {path}")
        return self.derive(int(match.group(1)), int(match.group(2)))

    def next_path(self) -> str:
        """Return the path at the cursor and advance it."""
        path = self.path_for(self.current_account, self.current_index)
        self.current_index += 1
        if self.current_index >= WALLETS_PER_ACCOUNT:
            self.current_index = 0
            self.current_account += 1
        return path

    def next_wallet(self) -> WalletRecord:
        return self.derive_path(self.next_path())

    @staticmethod
    def coordinates(accounts: Iterable[int],
                    wallets: Iterable[int]) -> Iterator[Tuple[int, int]]:
        """Yield (account, wallet) pairs row by row, accounts outermost."""
        wallets = list(wallets)
        for account_index in accounts:
            for wallet_index in wallets:
                yield account_index, wallet_index
