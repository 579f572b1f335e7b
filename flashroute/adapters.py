"""
DEX adapters: one swap contract per venue type.

Every adapter exposes ``swap(token_in, token_out, amount_in, min_out, fee)``
and the ``spender`` the executor must approve before the call. The executor
selects the adapter by the step's VenueType tag.
"""

import logging
import time
from typing import Callable, Dict, Optional

from .errors import SwapExecutionError, VenueRevert
from .models import VenueType, same_address

logger = logging.getLogger(__name__)

# Seconds added to "now" for every swap deadline
DEADLINE_OFFSET = 300


class DexAdapter:
    """Common swap contract. Subclasses set ``venue_type``."""

    venue_type: VenueType

    def __init__(
        self,
        router,
        holder: str,
        clock: Callable[[], float] = time.time,
        deadline_offset: int = DEADLINE_OFFSET,
    ):
        self.router = router
        self.holder = holder
        self.clock = clock
        self.deadline_offset = deadline_offset

    @property
    def spender(self) -> str:
        return self.router.address

    def deadline(self) -> int:
        return int(self.clock()) + self.deadline_offset

    def swap(
        self, token_in: str, token_out: str, amount_in: int, min_out: int, fee: int = 0, venue: Optional[str] = None
    ) -> int:
        raise NotImplementedError

    def _failed(self, error: VenueRevert, token_in: str, token_out: str, amount_in: int, fee: int):
        return SwapExecutionError(
            f"{self.venue_type.name} swap reverted: {error.message}",
            {"token_in": token_in, "token_out": token_out, "amount_in": amount_in, "fee": fee, **error.details},
        )


class ConcentratedLiquidityAdapter(DexAdapter):
    """Single exact-input swap through the concentrated-liquidity router."""

    venue_type = VenueType.CONCENTRATED

    def swap(
        self, token_in: str, token_out: str, amount_in: int, min_out: int, fee: int = 0, venue: Optional[str] = None
    ) -> int:
        try:
            return self.router.exact_input_single(
                sender=self.holder,
                token_in=token_in,
                token_out=token_out,
                fee=fee,
                recipient=self.holder,
                deadline=self.deadline(),
                amount_in=amount_in,
                amount_out_minimum=min_out,
            )
        except VenueRevert as e:
            raise self._failed(e, token_in, token_out, amount_in, fee) from e


class ConstantProductAdapter(DexAdapter):
    """
    Path-array swap through the pair named by ``venue``.

    The hop output is the last element of the returned amounts.
    """

    venue_type = VenueType.CONSTANT_PRODUCT

    def swap(
        self, token_in: str, token_out: str, amount_in: int, min_out: int, fee: int = 0, venue: Optional[str] = None
    ) -> int:
        try:
            pair = self.router.pair_for(token_in, token_out, venue)
            if venue is not None and not same_address(pair.address, venue):
                raise VenueRevert("Router resolved a different pair", {"pair": pair.address, "venue": venue})
            amounts = self.router.swap_exact_tokens_for_tokens(
                sender=self.holder,
                amount_in=amount_in,
                amount_out_min=min_out,
                path=[token_in, token_out],
                to=self.holder,
                deadline=self.deadline(),
                pairs=[pair.address],
            )
        except VenueRevert as e:
            raise self._failed(e, token_in, token_out, amount_in, fee) from e
        return amounts[-1]


class ReservedAdapter(DexAdapter):
    """Placeholder for the third venue type. Disabled: every call fails."""

    venue_type = VenueType.RESERVED

    def __init__(self, holder: str = ""):
        super().__init__(router=None, holder=holder)

    @property
    def spender(self) -> str:
        raise SwapExecutionError("Reserved venue type is disabled", {"venue_type": self.venue_type.name})

    def swap(
        self, token_in: str, token_out: str, amount_in: int, min_out: int, fee: int = 0, venue: Optional[str] = None
    ) -> int:
        raise SwapExecutionError(
            "Reserved venue type is disabled",
            {"venue_type": self.venue_type.name, "token_in": token_in, "amount_in": amount_in},
        )


def build_adapters(
    holder: str,
    concentrated_router,
    constant_product_router,
    clock: Callable[[], float] = time.time,
    deadline_offset: int = DEADLINE_OFFSET,
) -> Dict[VenueType, DexAdapter]:
    """Adapter registry keyed by venue type, bound to ``holder``."""
    return {
        VenueType.CONCENTRATED: ConcentratedLiquidityAdapter(concentrated_router, holder, clock, deadline_offset),
        VenueType.CONSTANT_PRODUCT: ConstantProductAdapter(constant_product_router, holder, clock, deadline_offset),
        VenueType.RESERVED: ReservedAdapter(holder),
    }
