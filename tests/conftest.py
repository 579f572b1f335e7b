"""
Pytest fixtures for FlashRoute tests.

``market`` builds a complete local deployment on one TokenLedger:

- three funded concentrated pools on TOKEN_A/TOKEN_B (fee 500 at price 1.0,
  fee 3000 at price 1.0201, fee 100 at price ~1.0100) plus a dry fee-10000
  pool with zero liquidity
- a constant-product pair at price 1.0
- both routers, a lending pool funded with TOKEN_A
- the executor, its adapters, a local reader, quote source and settlement client
"""

from dataclasses import dataclass, field
from typing import Dict

import pytest

from flashroute.adapters import build_adapters
from flashroute.calculator import Q96
from flashroute.clients import LocalSettlementClient
from flashroute.events import EventSink
from flashroute.executor import FlashCallbackExecutor
from flashroute.ledger import TokenLedger
from flashroute.lenders import LendingPool
from flashroute.models import PathShape, SwapPath, SwapStep, VenueType
from flashroute.payload import encode_payload
from flashroute.quoters import LocalQuoteSource
from flashroute.readers import LocalVenueReader
from flashroute.venues import (
    ConcentratedLiquidityPool,
    ConcentratedLiquidityRouter,
    ConstantProductPair,
    ConstantProductRouter,
)

TOKEN_A = "0x1111111111111111111111111111111111111111"
TOKEN_B = "0x2222222222222222222222222222222222222222"
TOKEN_C = "0x3333333333333333333333333333333333333333"
EXECUTOR = "0x3000000000000000000000000000000000000003"
OWNER = "0x4000000000000000000000000000000000000004"
TREASURY = "0x5000000000000000000000000000000000000005"
CL_ROUTER = "0x6000000000000000000000000000000000000006"
CP_ROUTER = "0x7000000000000000000000000000000000000007"
LENDING_POOL = "0x8000000000000000000000000000000000000008"
CP_PAIR = "0x9000000000000000000000000000000000000009"
STRANGER = "0x" + "ab" * 20

LIQUIDITY = 10 ** 24
FUNDING = 10 ** 23
BORROW = 10 * 10 ** 18

CHEAP_FEE = 500
RICH_FEE = 3000
LENDER_FEE = 100
DRY_FEE = 10000


@dataclass
class Market:
    ledger: TokenLedger
    cl_router: ConcentratedLiquidityRouter
    cp_router: ConstantProductRouter
    lending_pool: LendingPool
    pair: ConstantProductPair
    executor: FlashCallbackExecutor
    events: EventSink
    reader: LocalVenueReader
    quotes: LocalQuoteSource
    client: LocalSettlementClient
    pools: Dict[int, ConcentratedLiquidityPool] = field(default_factory=dict)

    @property
    def cheap(self) -> ConcentratedLiquidityPool:
        return self.pools[CHEAP_FEE]

    @property
    def rich(self) -> ConcentratedLiquidityPool:
        return self.pools[RICH_FEE]

    @property
    def lender(self) -> ConcentratedLiquidityPool:
        return self.pools[LENDER_FEE]

    @property
    def dry(self) -> ConcentratedLiquidityPool:
        return self.pools[DRY_FEE]


def build_market(strict_approve: bool = False) -> Market:
    ledger = TokenLedger(strict_approve=strict_approve)
    cl_router = ConcentratedLiquidityRouter(ledger, CL_ROUTER)
    cp_router = ConstantProductRouter(ledger, CP_ROUTER)
    reader = LocalVenueReader()

    pools = {}
    for fee, sqrt_price, liquidity in (
        (CHEAP_FEE, Q96, LIQUIDITY),
        (RICH_FEE, Q96 * 101 // 100, LIQUIDITY),
        (LENDER_FEE, Q96 * 1005 // 1000, LIQUIDITY),
        (DRY_FEE, Q96, 0),
    ):
        pool = ConcentratedLiquidityPool(ledger, TOKEN_A, TOKEN_B, fee, sqrt_price, liquidity, name=f"CL {fee}")
        ledger.mint(TOKEN_A, pool.address, FUNDING)
        ledger.mint(TOKEN_B, pool.address, FUNDING)
        cl_router.add_pool(pool)
        reader.register(pool)
        pools[fee] = pool

    pair = ConstantProductPair(ledger, CP_PAIR, TOKEN_A, TOKEN_B, fee=3000, name="CP")
    ledger.mint(TOKEN_A, pair.address, FUNDING)
    ledger.mint(TOKEN_B, pair.address, FUNDING)
    cp_router.add_pair(pair)
    reader.register(pair)

    lending_pool = LendingPool(ledger, LENDING_POOL, premium_ppm=500)
    ledger.mint(TOKEN_A, lending_pool.address, FUNDING)

    events = EventSink()
    executor = FlashCallbackExecutor(
        ledger,
        EXECUTOR,
        OWNER,
        TREASURY,
        build_adapters(EXECUTOR, cl_router, cp_router),
        events=events,
    )
    lenders = {pool.address: pool for pool in pools.values()}
    lenders[lending_pool.address] = lending_pool
    client = LocalSettlementClient(executor, OWNER, lenders)

    return Market(
        ledger=ledger,
        cl_router=cl_router,
        cp_router=cp_router,
        lending_pool=lending_pool,
        pair=pair,
        executor=executor,
        events=events,
        reader=reader,
        quotes=LocalQuoteSource(cl_router, cp_router),
        client=client,
        pools=pools,
    )


def cl_step(pool: ConcentratedLiquidityPool, token_in: str, token_out: str, min_out: int = 0) -> SwapStep:
    return SwapStep(
        venue=pool.address,
        token_in=token_in,
        token_out=token_out,
        fee=pool.fee,
        min_out=min_out,
        venue_type=VenueType.CONCENTRATED,
    )


def two_hop_path(first: ConcentratedLiquidityPool, second: ConcentratedLiquidityPool, min_out: int = 0) -> SwapPath:
    """TOKEN_A -> TOKEN_B on ``first``, back to TOKEN_A on ``second``."""
    return SwapPath(
        (cl_step(first, TOKEN_A, TOKEN_B), cl_step(second, TOKEN_B, TOKEN_A, min_out)),
        TOKEN_A,
    )


def two_hop_payload(first, second, min_out: int = 0) -> bytes:
    return encode_payload(two_hop_path(first, second, min_out), PathShape.TWO_HOP)


@pytest.fixture
def market() -> Market:
    return build_market()


@pytest.fixture
def strict_market() -> Market:
    return build_market(strict_approve=True)
