"""
Bonding-curve token contract.

The token contract is its own market: buyTokens() is payable and mints
from the curve, sellTokens() burns into the ETH reserve. It is also the
ERC-20 and the spender for sell approvals.
"""

from dataclasses import dataclass
from typing import Any, Dict

from web3 import Web3

from .chain import ChainClient
from .utils import ConfigurationError, validate_address


def _fn(name, inputs, outputs=None, mutability="view"):
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in (outputs or [])],
        "stateMutability": mutability,
    }


CURVE_TOKEN_ABI = [
    _fn("buyTokens", [("minTokenAmount", "uint256")], mutability="payable"),
    _fn("sellTokens", [("tokenAmount", "uint256"), ("minEthAmount", "uint256")],
        mutability="nonpayable"),
    _fn("getCurrentPrice", [], [("", "uint256")]),
    _fn("getReserves", [], [("currentEthReserve", "uint256"), ("currentTokenReserve", "uint256")]),
    _fn("getEstimatedTokensForETH", [("ethAmount", "uint256")], [("", "uint256")]),
    _fn("balanceOf", [("account", "address")], [("", "uint256")]),
    _fn("allowance", [("owner", "address"), ("spender", "address")], [("", "uint256")]),
    _fn("approve", [("spender", "address"), ("amount", "uint256")], [("", "bool")],
        mutability="nonpayable"),
]


@dataclass(frozen=True)
class ReserveSnapshot:
    eth_reserve: int
    token_reserve: int

    def max_sell(self, percent: float) -> int:
        """Largest token amount within `percent` of the token reserve."""
        return self.token_reserve * int(round(percent * 100)) // 10000

    def expected_eth_for(self, token_amount: int) -> int:
        """Constant-ratio ETH quote for a token amount."""
        if self.token_reserve == 0:
            return 0
        return token_amount * self.eth_reserve // self.token_reserve


class CurveTokenContract:
    """Async views and transaction builders for the curve token."""

    def __init__(self, chain: ChainClient, address: str):
        if not validate_address(address):
            raise ConfigurationError(f"Invalid token contract address: {address}")
        self.chain = chain
        self.address = Web3.to_checksum_address(address)
        self.contract = chain.web3.eth.contract(address=self.address, abi=CURVE_TOKEN_ABI)

    async def _call(self, fn_name: str, *args):
        fn = getattr(self.contract.functions, fn_name)(*args)
        return await self.chain.run_sync(fn.call)

    async def _build(self, fn_name: str, args, tx_params: Dict[str, Any]) -> Dict[str, Any]:
        params = dict(tx_params)
        if self.chain.chain_id is not None:
            params.setdefault('chainId', self.chain.chain_id)
        fn = getattr(self.contract.functions, fn_name)(*args)
        return await self.chain.run_sync(fn.build_transaction, params)

    async def get_reserves(self) -> ReserveSnapshot:
        eth_reserve, token_reserve = await self._call("getReserves")
        return ReserveSnapshot(eth_reserve=eth_reserve, token_reserve=token_reserve)

    async def get_current_price(self) -> int:
        return await self._call("getCurrentPrice")

    async def get_estimated_tokens_for_eth(self, eth_amount: int) -> int:
        return await self._call("getEstimatedTokensForETH", eth_amount)

    async def balance_of(self, address: str) -> int:
        return await self._call("balanceOf", Web3.to_checksum_address(address))

    async def allowance(self, owner: str, spender: str) -> int:
        return await self._call(
            "allowance",
            Web3.to_checksum_address(owner),
            Web3.to_checksum_address(spender),
        )

    async def estimate_buy_gas(self, min_tokens: int, value: int, sender: str) -> int:
        fn = self.contract.functions.buyTokens(min_tokens)
        return await self.chain.run_sync(fn.estimate_gas, {'from': sender, 'value': value})

    async def build_buy(self, min_tokens: int, tx_params: Dict[str, Any]) -> Dict[str, Any]:
        return await self._build("buyTokens", (min_tokens,), tx_params)

    async def build_sell(self, token_amount: int, min_eth: int,
                         tx_params: Dict[str, Any]) -> Dict[str, Any]:
        return await self._build("sellTokens", (token_amount, min_eth), tx_params)

    async def build_approve(self, spender: str, amount: int,
                            tx_params: Dict[str, Any]) -> Dict[str, Any]:
        return await self._build(
            "approve", (Web3.to_checksum_address(spender), amount), tx_params
        )
