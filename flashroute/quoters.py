"""
Read-only quote sources used by the PreTradeSimulator.

A quote source answers three questions without mutating any state:

- single-hop concentrated quote (token_in, token_out, amount_in, fee) -> amount_out
- multi-hop concentrated quote (packed path, amount_in) -> amount_out
- constant-product quote on a named pair (pair, token_in, token_out, amount_in, fee) -> amount_out

``Web3QuoteSource`` calls QuoterV2 and reads pair reserves through the NetworkManager;
``LocalQuoteSource`` answers from the in-memory venues.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from .calculator import get_amount_out, sort_tokens
from .errors import VenueRevert
from .models import same_address
from .network import NetworkManager
from .readers import V2_PAIR_ABI

logger = logging.getLogger(__name__)

# QuoterV2 ABI (minimal: quoteExactInputSingle + quoteExactInput)
QUOTER_V2_ABI = [
    {
        "inputs": [{
            "components": [
                {"name": "tokenIn", "type": "address"},
                {"name": "tokenOut", "type": "address"},
                {"name": "amountIn", "type": "uint256"},
                {"name": "fee", "type": "uint24"},
                {"name": "sqrtPriceLimitX96", "type": "uint160"}
            ],
            "name": "params",
            "type": "tuple"
        }],
        "name": "quoteExactInputSingle",
        "outputs": [
            {"name": "amountOut", "type": "uint256"},
            {"name": "sqrtPriceX96After", "type": "uint160"},
            {"name": "initializedTicksCrossed", "type": "uint32"},
            {"name": "gasEstimate", "type": "uint256"}
        ],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "path", "type": "bytes"},
            {"name": "amountIn", "type": "uint256"}
        ],
        "name": "quoteExactInput",
        "outputs": [
            {"name": "amountOut", "type": "uint256"},
            {"name": "sqrtPriceX96AfterList", "type": "uint160[]"},
            {"name": "initializedTicksCrossedList", "type": "uint32[]"},
            {"name": "gasEstimate", "type": "uint256"}
        ],
        "stateMutability": "nonpayable",
        "type": "function"
    }
]


class QuoteSource(ABC):
    @abstractmethod
    async def quote_exact_input_single(self, token_in: str, token_out: str, amount_in: int, fee: int) -> int:
        ...

    @abstractmethod
    async def quote_exact_input(self, path: bytes, amount_in: int) -> int:
        ...

    @abstractmethod
    async def quote_pair(self, pair: str, token_in: str, token_out: str, amount_in: int, fee: int) -> int:
        ...


class Web3QuoteSource(QuoteSource):
    """
    On-chain quotes via eth_call.

    QuoterV2 is declared nonpayable but is only ever called, never sent, so
    no state changes. Errors propagate to the simulator, which wraps them in
    SimulationError with hop context.
    """

    def __init__(
        self,
        network: NetworkManager,
        quoter_address: Optional[str]
    ):
        self.network = network
        self.quoter_address = quoter_address

    def _require(self, address: Optional[str], what: str) -> str:
        if not address:
            raise VenueRevert(f"No {what} configured")
        return address

    async def quote_exact_input_single(self, token_in: str, token_out: str, amount_in: int, fee: int) -> int:
        quoter = self._require(self.quoter_address, "quoter")
        w3 = self.network.w3
        params = (
            w3.to_checksum_address(token_in),
            w3.to_checksum_address(token_out),
            amount_in,
            fee,
            0,
        )
        result = await self.network.contract_call(quoter, QUOTER_V2_ABI, "quoteExactInputSingle", params)
        return int(result[0])

    async def quote_exact_input(self, path: bytes, amount_in: int) -> int:
        quoter = self._require(self.quoter_address, "quoter")
        result = await self.network.contract_call(quoter, QUOTER_V2_ABI, "quoteExactInput", path, amount_in)
        return int(result[0])

    async def quote_pair(self, pair: str, token_in: str, token_out: str, amount_in: int, fee: int) -> int:
        # reserves of the named pair, not whichever pair a router would pick
        reserve0, reserve1, _ = await self.network.contract_call(pair, V2_PAIR_ABI, "getReserves")
        token0, _ = sort_tokens(token_in, token_out)
        if same_address(token_in, token0):
            return get_amount_out(amount_in, int(reserve0), int(reserve1), fee)
        return get_amount_out(amount_in, int(reserve1), int(reserve0), fee)


class LocalQuoteSource(QuoteSource):
    """Quotes straight from the local routers' current state."""

    def __init__(self, concentrated_router, constant_product_router):
        self.concentrated_router = concentrated_router
        self.constant_product_router = constant_product_router

    async def quote_exact_input_single(self, token_in: str, token_out: str, amount_in: int, fee: int) -> int:
        return self.concentrated_router.quote_exact_input_single(token_in, token_out, amount_in, fee)

    async def quote_exact_input(self, path: bytes, amount_in: int) -> int:
        # path = token(20) fee(3) token(20) ...
        if len(path) < 43 or (len(path) - 20) % 23 != 0:
            raise VenueRevert("Malformed packed path", {"length": len(path)})
        amount = amount_in
        offset = 0
        while offset + 20 < len(path):
            token_in = "0x" + path[offset:offset + 20].hex()
            fee = int.from_bytes(path[offset + 20:offset + 23], "big")
            token_out = "0x" + path[offset + 23:offset + 43].hex()
            amount = self.concentrated_router.quote_exact_input_single(token_in, token_out, amount, fee)
            offset += 23
        return amount

    async def quote_pair(self, pair: str, token_in: str, token_out: str, amount_in: int, fee: int) -> int:
        amounts = self.constant_product_router.get_amounts_out(amount_in, [token_in, token_out], [pair])
        return amounts[-1]
