"""
Core data structures shared by the settlement engine and the decision pipeline.

Amounts are always integers in the token's smallest unit. Fees are expressed
in parts-per-million (500 = 0.05%), the same unit concentrated-liquidity venues
use for their fee tier.
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple

from web3 import Web3

from .errors import ValidationError

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def normalize_address(address: str, label: str = "address") -> str:
    """Return the checksum form of ``address`` or raise ValidationError."""
    if not isinstance(address, str) or not Web3.is_address(address):
        raise ValidationError(f"Invalid {label}", {label: address})
    return Web3.to_checksum_address(address)


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return False
    return a.lower() == b.lower()


# ============================================
# Enums
# ============================================

class VenueType(IntEnum):
    """Venue tag. Values are the on-wire ``dexType`` of a general-path step."""
    CONCENTRATED = 0
    CONSTANT_PRODUCT = 1
    RESERVED = 2


class PathShape(IntEnum):
    """Payload discriminant."""
    TWO_HOP = 0
    TRIANGULAR = 1
    GENERAL = 2


class LenderKind(Enum):
    VENUE = "venue"
    LENDING_POOL = "lending_pool"


# ============================================
# Venues
# ============================================

@dataclass(frozen=True)
class Venue:
    """Static identity of an AMM venue."""
    address: str
    token0: str
    token1: str
    fee: int
    venue_type: VenueType = VenueType.CONCENTRATED
    decimals0: int = 18
    decimals1: int = 18
    name: str = ""

    @property
    def label(self) -> str:
        return self.name or self.address[:10]

    def has_token(self, token: str) -> bool:
        return same_address(token, self.token0) or same_address(token, self.token1)

    def is_token0(self, token: str) -> bool:
        return same_address(token, self.token0)

    def other_token(self, token: str) -> str:
        if same_address(token, self.token0):
            return self.token1
        if same_address(token, self.token1):
            return self.token0
        raise ValidationError("Token not traded on venue", {"venue": self.label, "token": token})


@dataclass
class VenueState:
    """Observed state of one venue at one read."""
    address: str
    sqrt_price_x96: int = 0
    tick: int = 0
    liquidity: int = 0
    reserve0: int = 0
    reserve1: int = 0
    timestamp: float = field(default_factory=time.time)

    def has_liquidity(self, venue_type: VenueType) -> bool:
        if venue_type == VenueType.CONSTANT_PRODUCT:
            return self.reserve0 > 0 and self.reserve1 > 0
        return self.liquidity > 0 and self.sqrt_price_x96 > 0


# ============================================
# Paths
# ============================================

@dataclass(frozen=True)
class SwapStep:
    venue: str
    token_in: str
    token_out: str
    fee: int = 0
    min_out: int = 0
    venue_type: VenueType = VenueType.CONCENTRATED

    def with_min_out(self, min_out: int) -> "SwapStep":
        return replace(self, min_out=min_out)

    def reversed(self) -> "SwapStep":
        return replace(self, token_in=self.token_out, token_out=self.token_in, min_out=0)


@dataclass(frozen=True)
class SwapPath:
    """
    Ordered, closed-loop sequence of swap steps.

    Each step's ``token_out`` feeds the next step's ``token_in``; the path
    starts and ends on ``borrowed_token``.
    """
    steps: Tuple[SwapStep, ...]
    borrowed_token: str

    def __post_init__(self):
        if not self.steps:
            raise ValidationError("Swap path is empty")
        object.__setattr__(self, "steps", tuple(self.steps))
        if not same_address(self.steps[0].token_in, self.borrowed_token):
            raise ValidationError(
                "Path does not start on the borrowed token",
                {"token_in": self.steps[0].token_in, "borrowed": self.borrowed_token},
            )
        for i in range(len(self.steps) - 1):
            if not same_address(self.steps[i].token_out, self.steps[i + 1].token_in):
                raise ValidationError(
                    "Broken path: hop output does not feed the next hop",
                    {"hop": i, "token_out": self.steps[i].token_out,
                     "next_token_in": self.steps[i + 1].token_in},
                )
        if not same_address(self.steps[-1].token_out, self.borrowed_token):
            raise ValidationError(
                "Path is not closed: final hop must return the borrowed token",
                {"token_out": self.steps[-1].token_out, "borrowed": self.borrowed_token},
            )

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def venues(self) -> List[str]:
        return [step.venue for step in self.steps]

    @property
    def tokens(self) -> List[str]:
        return [step.token_in for step in self.steps]

    @property
    def all_concentrated(self) -> bool:
        return all(step.venue_type == VenueType.CONCENTRATED for step in self.steps)

    def uses_venue(self, address: str) -> bool:
        return any(same_address(address, venue) for venue in self.venues)

    def with_final_min_out(self, min_out: int) -> "SwapPath":
        steps = [step.with_min_out(0) for step in self.steps[:-1]]
        steps.append(self.steps[-1].with_min_out(min_out))
        return SwapPath(tuple(steps), self.borrowed_token)

    def reversed(self) -> "SwapPath":
        return SwapPath(tuple(step.reversed() for step in reversed(self.steps)), self.borrowed_token)


# ============================================
# Flash loan request / callback
# ============================================

@dataclass(frozen=True)
class PoolKey:
    """(token0, token1, fee) identifying a concentrated-liquidity pool."""
    token0: str
    token1: str
    fee: int


@dataclass
class FlashLoanRequest:
    lender: str
    lender_kind: LenderKind
    asset: str
    amount: int
    payload: bytes
    shape: PathShape
    fee_ppm: int
    path: SwapPath
    amount0: int = 0
    amount1: int = 0
    pool_key: Optional[PoolKey] = None

    @property
    def assets(self) -> List[str]:
        return [self.asset]

    @property
    def amounts(self) -> List[int]:
        return [self.amount]


@dataclass
class CallbackContext:
    """Decoded payload plus lender identity, alive for one settlement attempt."""
    lender: str
    lender_kind: LenderKind
    asset: str
    amount: int
    fee: int
    shape: PathShape
    path: SwapPath


# ============================================
# Opportunities
# ============================================

@dataclass
class ArbitrageOpportunity:
    """
    Candidate trade proposed by the monitor for one cycle.

    The borrowed token is sold on ``sell_venue`` and bought back on
    ``buy_venue``. ``borrow_venue`` is a group venue outside the swap legs
    that can lend the borrowed token through its own flash mechanism, or
    None when the group has no such venue.
    """
    group: str
    sell_venue: Venue
    buy_venue: Venue
    borrow_token: str
    intermediate_token: str
    borrow_amount: int
    divergence_bps: float
    estimated_profit: int
    borrow_venue: Optional[Venue] = None
    created_at: float = field(default_factory=time.time)

    @property
    def direction(self) -> str:
        return f"{self.sell_venue.label} -> {self.buy_venue.label}"

    def to_swap_path(self) -> SwapPath:
        return SwapPath(
            (
                SwapStep(
                    venue=self.sell_venue.address,
                    token_in=self.borrow_token,
                    token_out=self.intermediate_token,
                    fee=self.sell_venue.fee,
                    venue_type=self.sell_venue.venue_type,
                ),
                SwapStep(
                    venue=self.buy_venue.address,
                    token_in=self.intermediate_token,
                    token_out=self.borrow_token,
                    fee=self.buy_venue.fee,
                    venue_type=self.buy_venue.venue_type,
                ),
            ),
            self.borrow_token,
        )


# ============================================
# Settlement accounting
# ============================================

@dataclass(frozen=True)
class ProfitSplit:
    gross_profit: int
    fee_paid: int
    net_profit: int
    tithe_amount: int
    operator_amount: int

    @property
    def applied(self) -> bool:
        return self.net_profit > 0


@dataclass(frozen=True)
class HopRecord:
    venue: str
    token_in: str
    token_out: str
    amount_in: int
    amount_out: int


@dataclass
class SettlementRecord:
    lender: str
    asset: str
    borrowed: int
    fee: int
    total_repay: int
    split: ProfitSplit
    hops: List[HopRecord]
    shape: PathShape
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lender": self.lender,
            "asset": self.asset,
            "borrowed": self.borrowed,
            "fee": self.fee,
            "total_repay": self.total_repay,
            "gross_profit": self.split.gross_profit,
            "net_profit": self.split.net_profit,
            "tithe": self.split.tithe_amount,
            "operator": self.split.operator_amount,
            "shape": self.shape.name,
            "hops": [
                {
                    "venue": hop.venue,
                    "token_in": hop.token_in,
                    "token_out": hop.token_out,
                    "amount_in": hop.amount_in,
                    "amount_out": hop.amount_out,
                }
                for hop in self.hops
            ],
            "timestamp": self.timestamp,
        }
