"""
Pre-trade simulator: probe, extrapolate, decide.

For a candidate path and borrow size ``B`` the simulator quotes every hop with
a small probe ``P`` (chained: each hop is quoted with the previous hop's
output), takes the final output ``Q`` and extrapolates linearly::

    estimated_final = Q * B // P

⚠️ This is a first-order approximation. AMM execution price is not linear in
trade size, so the estimate understates slippage for large ``B`` against
shallow pools and its error is unbounded in the worst case. Two guards are
applied on top:

- ``B / P`` may not exceed ``max_probe_ratio``
- with ``confirm_full_size`` the path is re-quoted at ``B`` and the smaller
  estimate wins

The lender fee is ``floor(B * fee_ppm / 1_000_000)``, identical to the
lender's own accounting.
"""

import logging
from dataclasses import dataclass, field
from fractions import Fraction
from typing import List, Optional

from .calculator import encode_v3_path, flash_fee
from .errors import SimulationError
from .models import SwapPath, SwapStep, VenueType
from .quoters import QuoteSource

logger = logging.getLogger(__name__)

DEFAULT_PROBE_DIVISOR = 100
DEFAULT_MAX_PROBE_RATIO = 1000


@dataclass(frozen=True)
class HopQuote:
    venue: str
    token_in: str
    token_out: str
    fee: int
    amount_in: int
    amount_out: int


@dataclass
class SimulationResult:
    path: SwapPath
    borrow_amount: int
    probe_amount: int
    probe_output: int
    estimated_final: int
    estimated_exact: Fraction
    fee_ppm: int
    flash_fee: int
    required_repayment: int
    hops: List[HopQuote] = field(default_factory=list)
    full_size_output: Optional[int] = None
    profit_floor: int = 0

    @property
    def margin(self) -> int:
        return self.estimated_final - self.required_repayment

    @property
    def profitable(self) -> bool:
        """Proceed only when the estimate beats repayment by more than the floor."""
        return (
            self.estimated_final > self.required_repayment
            and self.margin > 0
            and self.margin > self.profit_floor
        )


class PreTradeSimulator:
    """
    Read-only profitability check run before any submission.

    Any quote failure raises SimulationError with the hop's venue, amounts and
    fee. There is no retry inside a cycle; the caller drops the opportunity.
    """

    def __init__(
        self,
        quotes: QuoteSource,
        probe_divisor: int = DEFAULT_PROBE_DIVISOR,
        max_probe_ratio: int = DEFAULT_MAX_PROBE_RATIO,
        min_profit: int = 0,
        gas_cost_estimate: int = 0,
        confirm_full_size: bool = False,
    ):
        if probe_divisor < 2:
            raise ValueError("probe_divisor must be at least 2")
        self.quotes = quotes
        self.probe_divisor = probe_divisor
        self.max_probe_ratio = max_probe_ratio
        self.min_profit = min_profit
        self.gas_cost_estimate = gas_cost_estimate
        self.confirm_full_size = confirm_full_size

    def probe_amount_for(self, borrow_amount: int) -> int:
        return max(1, borrow_amount // self.probe_divisor)

    async def simulate(
        self,
        path: SwapPath,
        borrow_amount: int,
        fee_ppm: int,
        probe_amount: Optional[int] = None
    ) -> SimulationResult:
        if borrow_amount <= 0:
            raise SimulationError("Borrow amount must be positive", {"borrow_amount": borrow_amount})
        probe = probe_amount if probe_amount is not None else self.probe_amount_for(borrow_amount)
        if not 0 < probe < borrow_amount:
            raise SimulationError(
                "Probe must be positive and smaller than the borrow amount",
                {"probe_amount": probe, "borrow_amount": borrow_amount},
            )
        if borrow_amount > probe * self.max_probe_ratio:
            raise SimulationError(
                "Borrow/probe ratio exceeds the configured bound",
                {"probe_amount": probe, "borrow_amount": borrow_amount, "max_probe_ratio": self.max_probe_ratio},
            )

        hops = await self.quote_path(path, probe)
        q = hops[-1].amount_out

        # multiply before dividing: no intermediate truncation
        estimated_final = (q * borrow_amount) // probe
        estimated_exact = Fraction(q * borrow_amount, probe)

        full_size_output = None
        if self.confirm_full_size:
            full_size_output = await self.quote_full_size(path, borrow_amount)
            estimated_final = min(estimated_final, full_size_output)

        fee = flash_fee(borrow_amount, fee_ppm)
        result = SimulationResult(
            path=path,
            borrow_amount=borrow_amount,
            probe_amount=probe,
            probe_output=q,
            estimated_final=estimated_final,
            estimated_exact=estimated_exact,
            fee_ppm=fee_ppm,
            flash_fee=fee,
            required_repayment=borrow_amount + fee,
            hops=hops,
            full_size_output=full_size_output,
            profit_floor=self.min_profit + self.gas_cost_estimate,
        )
        logger.debug(
            f"Simulated {len(path)} hops: P={probe} Q={q} B={borrow_amount} "
            f"est={estimated_final} repay={result.required_repayment} margin={result.margin}"
        )
        return result

    async def quote_path(self, path: SwapPath, amount_in: int) -> List[HopQuote]:
        hops: List[HopQuote] = []
        amount = amount_in
        for index, step in enumerate(path.steps):
            amount_out = await self._quote_step(index, step, amount)
            hops.append(HopQuote(step.venue, step.token_in, step.token_out, step.fee, amount, amount_out))
            amount = amount_out
        return hops

    async def quote_full_size(self, path: SwapPath, amount_in: int) -> int:
        """Quote the whole path at full size; concentrated paths use one multi-hop quote."""
        if path.all_concentrated and len(path) > 1:
            tokens = path.tokens + [path.borrowed_token]
            fees = [step.fee for step in path.steps]
            try:
                return await self.quotes.quote_exact_input(encode_v3_path(tokens, fees), amount_in)
            except Exception as e:
                raise SimulationError(
                    "Full-size multi-hop quote failed",
                    {"amount_in": amount_in, "fees": fees, "error": str(e)},
                ) from e
        hops = await self.quote_path(path, amount_in)
        return hops[-1].amount_out

    async def _quote_step(self, index: int, step: SwapStep, amount_in: int) -> int:
        context = {"hop": index, "venue": step.venue, "amount_in": amount_in, "fee": step.fee}
        if step.venue_type == VenueType.RESERVED:
            raise SimulationError("Reserved venue type cannot be quoted", context)
        try:
            if step.venue_type == VenueType.CONCENTRATED:
                amount_out = await self.quotes.quote_exact_input_single(
                    step.token_in, step.token_out, amount_in, step.fee
                )
            else:
                amount_out = await self.quotes.quote_pair(
                    step.venue, step.token_in, step.token_out, amount_in, step.fee
                )
        except Exception as e:
            raise SimulationError("Quote failed", {**context, "error": str(e)}) from e
        if amount_out <= 0:
            raise SimulationError("Hop quoted zero output", context)
        return amount_out

    async def evaluate_both_directions(
        self,
        path: SwapPath,
        borrow_amount: int,
        fee_ppm: int
    ) -> Optional[SimulationResult]:
        """
        Simulate ``path`` and its reverse; return the more profitable
        profitable result, or None when neither direction pays.
        """
        results: List[SimulationResult] = []
        last_error: Optional[SimulationError] = None
        for candidate in (path, path.reversed()):
            try:
                results.append(await self.simulate(candidate, borrow_amount, fee_ppm))
            except SimulationError as e:
                logger.info(f"Direction dropped: {e}")
                last_error = e

        if not results and last_error is not None:
            raise last_error
        profitable = [r for r in results if r.profitable]
        if not profitable:
            return None
        return max(profitable, key=lambda r: r.margin)
