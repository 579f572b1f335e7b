"""
Local AMM venues and routers backed by a TokenLedger.

These stand in for the external venue contracts so that settlement can be
exercised (and paper-traded) off-chain:

- ConcentratedLiquidityPool: single-range V3 pool with its own flash()
- ConstantProductPair:       x*y=k pair whose reserves are its ledger balances
- ConcentratedLiquidityRouter / ConstantProductRouter: the spenders the
  adapters approve, with deadline and minimum-output checks

Pool prices live in ledger storage so a reverted attempt also restores them.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .calculator import (
    POOL_INIT_CODE_HASH,
    V3_FACTORY,
    compute_pool_address,
    flash_fee,
    get_amount_out,
    get_v3_amount_out,
    sort_tokens,
)
from .errors import LedgerError, VenueRevert
from .ledger import TokenLedger
from .models import Venue, VenueState, VenueType, normalize_address, same_address

logger = logging.getLogger(__name__)

SQRT_PRICE_SLOT = "sqrtPriceX96"


# ============================================
# Concentrated liquidity
# ============================================

class ConcentratedLiquidityPool:
    """
    One fee tier of a token pair, deployed at its CREATE2 address.

    Liquidity is constant and the whole price curve is a single range.
    """

    def __init__(
        self,
        ledger: TokenLedger,
        token0: str,
        token1: str,
        fee: int,
        sqrt_price_x96: int,
        liquidity: int,
        factory: str = V3_FACTORY,
        init_code_hash: str = POOL_INIT_CODE_HASH,
        decimals0: int = 18,
        decimals1: int = 18,
        name: str = "",
    ):
        token0, token1 = normalize_address(token0), normalize_address(token1)
        if (token0, token1) != sort_tokens(token0, token1):
            raise ValueError("token0 must sort before token1")
        self.ledger = ledger
        self.token0 = token0
        self.token1 = token1
        self.fee = fee
        self.liquidity = liquidity
        self.decimals0 = decimals0
        self.decimals1 = decimals1
        self.name = name
        self.address = compute_pool_address(token0, token1, fee, factory, init_code_hash)
        self._locked = False
        ledger.store(self.address, SQRT_PRICE_SLOT, sqrt_price_x96)

    @property
    def sqrt_price_x96(self) -> int:
        return self.ledger.load(self.address, SQRT_PRICE_SLOT, 0)

    @property
    def venue(self) -> Venue:
        return Venue(
            address=self.address,
            token0=self.token0,
            token1=self.token1,
            fee=self.fee,
            venue_type=VenueType.CONCENTRATED,
            decimals0=self.decimals0,
            decimals1=self.decimals1,
            name=self.name,
        )

    def state(self) -> VenueState:
        return VenueState(
            address=self.address,
            sqrt_price_x96=self.sqrt_price_x96,
            liquidity=self.liquidity,
        )

    def _direction(self, token_in: str) -> bool:
        if same_address(token_in, self.token0):
            return True
        if same_address(token_in, self.token1):
            return False
        raise VenueRevert("Token not in pool", {"pool": self.address, "token": token_in})

    def quote(self, token_in: str, amount_in: int) -> int:
        amount_out, _, _ = get_v3_amount_out(
            amount_in, self.sqrt_price_x96, self.liquidity, self.fee, self._direction(token_in)
        )
        return amount_out

    def swap(self, token_in: str, amount_in: int) -> int:
        """Move the price for ``amount_in`` and return the output. Tokens are moved by the router."""
        if self._locked:
            raise VenueRevert("LOK", {"pool": self.address})
        zero_for_one = self._direction(token_in)
        amount_out, _, sqrt_price_after = get_v3_amount_out(
            amount_in, self.sqrt_price_x96, self.liquidity, self.fee, zero_for_one
        )
        token_out = self.token1 if zero_for_one else self.token0
        if amount_out > self.ledger.balance_of(token_out, self.address):
            raise VenueRevert("Insufficient pool balance", {"pool": self.address, "amount_out": amount_out})
        self.ledger.store(self.address, SQRT_PRICE_SLOT, sqrt_price_after)
        return amount_out

    def flash(self, sender, recipient: str, amount0: int, amount1: int, data: bytes) -> None:
        """
        Lend ``amount0``/``amount1`` to ``recipient`` and call back ``sender``.

        The fee is the pool fee tier applied with floor rounding; the pool
        requires its balances to grow by at least the fee once the callback
        returns.
        """
        if self._locked:
            raise VenueRevert("LOK", {"pool": self.address})
        fee0 = flash_fee(amount0, self.fee)
        fee1 = flash_fee(amount1, self.fee)
        balance0_before = self.ledger.balance_of(self.token0, self.address)
        balance1_before = self.ledger.balance_of(self.token1, self.address)

        self._locked = True
        try:
            try:
                if amount0 > 0:
                    self.ledger.transfer(self.token0, self.address, recipient, amount0)
                if amount1 > 0:
                    self.ledger.transfer(self.token1, self.address, recipient, amount1)
            except LedgerError as e:
                raise VenueRevert("Flash amount exceeds pool balance", e.details) from e

            sender.uniswap_v3_flash_callback(self.address, fee0, fee1, data)
        finally:
            self._locked = False

        if self.ledger.balance_of(self.token0, self.address) < balance0_before + fee0:
            raise VenueRevert("F0", {"pool": self.address, "fee0": fee0})
        if self.ledger.balance_of(self.token1, self.address) < balance1_before + fee1:
            raise VenueRevert("F1", {"pool": self.address, "fee1": fee1})


class ConcentratedLiquidityRouter:
    """Exact-input single-hop router over registered pools."""

    def __init__(self, ledger: TokenLedger, address: str, clock: Callable[[], float] = time.time):
        self.ledger = ledger
        self.address = normalize_address(address)
        self.clock = clock
        self._pools: Dict[Tuple[str, str, int], ConcentratedLiquidityPool] = {}

    def add_pool(self, pool: ConcentratedLiquidityPool) -> None:
        self._pools[(pool.token0.lower(), pool.token1.lower(), pool.fee)] = pool

    def pool_for(self, token_a: str, token_b: str, fee: int) -> ConcentratedLiquidityPool:
        token0, token1 = sort_tokens(token_a, token_b)
        pool = self._pools.get((token0.lower(), token1.lower(), fee))
        if pool is None:
            raise VenueRevert("No pool for pair and fee", {"token_in": token_a, "token_out": token_b, "fee": fee})
        return pool

    def quote_exact_input_single(self, token_in: str, token_out: str, amount_in: int, fee: int) -> int:
        return self.pool_for(token_in, token_out, fee).quote(token_in, amount_in)

    def exact_input_single(
        self,
        sender: str,
        token_in: str,
        token_out: str,
        fee: int,
        recipient: str,
        deadline: int,
        amount_in: int,
        amount_out_minimum: int,
    ) -> int:
        if self.clock() > deadline:
            raise VenueRevert("Transaction too old", {"deadline": deadline})
        pool = self.pool_for(token_in, token_out, fee)
        with self.ledger.atomic():
            amount_out = pool.swap(token_in, amount_in)
            if amount_out < amount_out_minimum:
                raise VenueRevert(
                    "Too little received",
                    {"amount_out": amount_out, "amount_out_minimum": amount_out_minimum},
                )
            try:
                self.ledger.transfer_from(token_in, self.address, sender, pool.address, amount_in)
                self.ledger.transfer(token_out, pool.address, recipient, amount_out)
            except LedgerError as e:
                raise VenueRevert("Token transfer failed", e.details) from e
        return amount_out


# ============================================
# Constant product
# ============================================

class ConstantProductPair:
    """x*y=k pair. Reserves are the pair's ledger balances."""

    def __init__(
        self,
        ledger: TokenLedger,
        address: str,
        token0: str,
        token1: str,
        fee: int = 3000,
        decimals0: int = 18,
        decimals1: int = 18,
        name: str = "",
    ):
        self.ledger = ledger
        self.address = normalize_address(address)
        self.token0, self.token1 = sort_tokens(normalize_address(token0), normalize_address(token1))
        self.fee = fee
        self.decimals0 = decimals0
        self.decimals1 = decimals1
        self.name = name

    @property
    def venue(self) -> Venue:
        return Venue(
            address=self.address,
            token0=self.token0,
            token1=self.token1,
            fee=self.fee,
            venue_type=VenueType.CONSTANT_PRODUCT,
            decimals0=self.decimals0,
            decimals1=self.decimals1,
            name=self.name,
        )

    def get_reserves(self) -> Tuple[int, int]:
        return (
            self.ledger.balance_of(self.token0, self.address),
            self.ledger.balance_of(self.token1, self.address),
        )

    def state(self) -> VenueState:
        reserve0, reserve1 = self.get_reserves()
        return VenueState(address=self.address, reserve0=reserve0, reserve1=reserve1)

    def quote(self, token_in: str, amount_in: int) -> int:
        reserve0, reserve1 = self.get_reserves()
        if same_address(token_in, self.token0):
            return get_amount_out(amount_in, reserve0, reserve1, self.fee)
        if same_address(token_in, self.token1):
            return get_amount_out(amount_in, reserve1, reserve0, self.fee)
        raise VenueRevert("Token not in pair", {"pair": self.address, "token": token_in})


class ConstantProductRouter:
    """
    Path-based exact-input router (swapExactTokensForTokens).

    Pairs are registered by address, so several pairs may trade the same
    tokens. Callers name the pair for each hop; without a name the first
    pair registered for the tokens is used.
    """

    def __init__(self, ledger: TokenLedger, address: str, clock: Callable[[], float] = time.time):
        self.ledger = ledger
        self.address = normalize_address(address)
        self.clock = clock
        self._pairs: Dict[str, ConstantProductPair] = {}
        self._by_tokens: Dict[Tuple[str, str], ConstantProductPair] = {}

    def add_pair(self, pair: ConstantProductPair) -> None:
        self._pairs[pair.address.lower()] = pair
        self._by_tokens.setdefault((pair.token0.lower(), pair.token1.lower()), pair)

    def pair_for(self, token_a: str, token_b: str, pair_address: Optional[str] = None) -> ConstantProductPair:
        token0, token1 = sort_tokens(token_a, token_b)
        if pair_address is None:
            pair = self._by_tokens.get((token0.lower(), token1.lower()))
            if pair is None:
                raise VenueRevert("No pair for tokens", {"token_a": token_a, "token_b": token_b})
            return pair

        pair = self._pairs.get(pair_address.lower())
        if pair is None:
            raise VenueRevert("Unknown pair", {"pair": pair_address})
        if not (same_address(pair.token0, token0) and same_address(pair.token1, token1)):
            raise VenueRevert(
                "Pair does not trade these tokens",
                {"pair": pair_address, "token_a": token_a, "token_b": token_b},
            )
        return pair

    def _resolve(self, path: List[str], pairs: Optional[Sequence[str]]) -> List[ConstantProductPair]:
        if len(path) < 2:
            raise VenueRevert("INVALID_PATH", {"path": path})
        hops = list(zip(path, path[1:]))
        if pairs is None:
            return [self.pair_for(a, b) for a, b in hops]
        if len(pairs) != len(hops):
            raise VenueRevert("INVALID_PATH", {"path": path, "pairs": list(pairs)})
        return [self.pair_for(a, b, p) for (a, b), p in zip(hops, pairs)]

    def get_amounts_out(self, amount_in: int, path: List[str], pairs: Optional[Sequence[str]] = None) -> List[int]:
        amounts = [amount_in]
        for token_in, pair in zip(path, self._resolve(path, pairs)):
            amounts.append(pair.quote(token_in, amounts[-1]))
        return amounts

    def swap_exact_tokens_for_tokens(
        self,
        sender: str,
        amount_in: int,
        amount_out_min: int,
        path: List[str],
        to: str,
        deadline: int,
        pairs: Optional[Sequence[str]] = None,
    ) -> List[int]:
        if self.clock() > deadline:
            raise VenueRevert("EXPIRED", {"deadline": deadline})
        resolved = self._resolve(path, pairs)
        amounts = [amount_in]
        for token_in, pair in zip(path, resolved):
            amounts.append(pair.quote(token_in, amounts[-1]))
        if amounts[-1] < amount_out_min:
            raise VenueRevert(
                "INSUFFICIENT_OUTPUT_AMOUNT",
                {"amount_out": amounts[-1], "amount_out_min": amount_out_min},
            )
        with self.ledger.atomic():
            try:
                self.ledger.transfer_from(path[0], self.address, sender, resolved[0].address, amount_in)
                for i, pair in enumerate(resolved):
                    recipient = resolved[i + 1].address if i + 1 < len(resolved) else to
                    self.ledger.transfer(path[i + 1], pair.address, recipient, amounts[i + 1])
            except LedgerError as e:
                raise VenueRevert("Token transfer failed", e.details) from e
        return amounts
