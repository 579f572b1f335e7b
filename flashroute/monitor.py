"""
Opportunity monitor: concurrent venue reads, divergence detection.

Each cycle every venue of every group is read concurrently and the reads are
joined before any decision. Per group:

- a read failure on any venue drops only that group (logged with the venue)
- zero liquidity on any venue skips the group (logged, not an error)
- otherwise the highest and lowest decimal-normalized prices are compared and
  an ArbitrageOpportunity is emitted when the divergence exceeds the threshold
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence

from .calculator import (
    BPS_DENOMINATOR,
    divergence_bps,
    flash_fee,
    reserves_to_price,
    sqrt_price_x96_to_price,
)
from .config_loader import VenueGroupConfig
from .lenders import DEFAULT_PREMIUM_PPM
from .models import ArbitrageOpportunity, Venue, VenueState, VenueType
from .readers import VenueReader

logger = logging.getLogger(__name__)


@dataclass
class MonitorCycleResult:
    cycle: int
    opportunities: List[ArbitrageOpportunity] = field(default_factory=list)
    groups_scanned: int = 0
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    duration_ms: float = 0.0


def venue_price(venue: Venue, state: VenueState) -> float:
    """token1 per token0, decimal-normalized."""
    if venue.venue_type == VenueType.CONSTANT_PRODUCT:
        return reserves_to_price(state.reserve0, state.reserve1, venue.decimals0, venue.decimals1)
    return sqrt_price_x96_to_price(state.sqrt_price_x96, venue.decimals0, venue.decimals1)


class OpportunityMonitor:
    """
    Polls venue groups and proposes candidate trades.

    The venue-state cache is replaced once per cycle by ``run_cycle`` and only
    exposed read-only.
    """

    def __init__(
        self,
        groups: Sequence[VenueGroupConfig],
        reader: VenueReader,
        threshold_bps: float,
        lending_fee_ppm: int = DEFAULT_PREMIUM_PPM,
    ):
        self.groups = list(groups)
        self.reader = reader
        self.threshold_bps = threshold_bps
        self.lending_fee_ppm = lending_fee_ppm
        self._states: Dict[str, VenueState] = {}
        self._cycle = 0

    @property
    def states(self) -> Mapping[str, VenueState]:
        return MappingProxyType(self._states)

    def state_of(self, address: str) -> Optional[VenueState]:
        return self._states.get(address.lower())

    async def run_cycle(self) -> MonitorCycleResult:
        self._cycle += 1
        start = time.perf_counter()
        result = MonitorCycleResult(cycle=self._cycle)

        venues: Dict[str, Venue] = {}
        for group in self.groups:
            for venue in group.venues:
                venues.setdefault(venue.address.lower(), venue)

        keys = list(venues)
        reads = await asyncio.gather(
            *(self.reader.read_state(venues[key]) for key in keys),
            return_exceptions=True,
        )
        outcomes = dict(zip(keys, reads))
        self._states = {k: v for k, v in outcomes.items() if isinstance(v, VenueState)}

        for group in self.groups:
            result.groups_scanned += 1
            opportunity = self._evaluate_group(group, outcomes, result)
            if opportunity is not None:
                result.opportunities.append(opportunity)

        result.opportunities.sort(key=lambda o: o.estimated_profit, reverse=True)
        result.duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(
            f"Cycle {result.cycle}: {result.groups_scanned} groups, "
            f"{len(result.opportunities)} opportunities, {len(result.skipped)} skipped, "
            f"{len(result.failed)} failed ({result.duration_ms:.0f}ms)"
        )
        return result

    def _evaluate_group(
        self,
        group: VenueGroupConfig,
        outcomes: Dict[str, object],
        result: MonitorCycleResult
    ) -> Optional[ArbitrageOpportunity]:
        states: List[VenueState] = []
        for venue in group.venues:
            outcome = outcomes[venue.address.lower()]
            if isinstance(outcome, BaseException):
                logger.warning(f"[{group.name}] read failed on {venue.label}: {outcome}")
                result.failed[group.name] = f"{venue.label}: {outcome}"
                return None
            states.append(outcome)

        for venue, state in zip(group.venues, states):
            if not state.has_liquidity(venue.venue_type):
                logger.info(f"[{group.name}] {venue.label} has zero liquidity, skipping group")
                result.skipped.append(group.name)
                return None

        priced = [(venue_price(v, s), v) for v, s in zip(group.venues, states)]
        high_price, high = max(priced, key=lambda p: p[0])
        low_price, low = min(priced, key=lambda p: p[0])
        divergence = divergence_bps(high_price, low_price)
        if divergence <= self.threshold_bps:
            return None

        borrow_token = group.borrow_token
        # prices are token1 per token0: token0 sells high where the price is high
        if high.is_token0(borrow_token):
            sell, buy = high, low
        else:
            sell, buy = low, high

        borrow_venue = next(
            (
                v for v in group.venues
                if v.venue_type == VenueType.CONCENTRATED
                and v.address.lower() not in (sell.address.lower(), buy.address.lower())
            ),
            None,
        )

        b = group.borrow_amount
        flash_fee_ppm = borrow_venue.fee if borrow_venue is not None else self.lending_fee_ppm
        estimated_profit = (
            int(b * divergence) // BPS_DENOMINATOR
            - flash_fee(b, sell.fee)
            - flash_fee(b, buy.fee)
            - flash_fee(b, flash_fee_ppm)
        )

        opportunity = ArbitrageOpportunity(
            group=group.name,
            sell_venue=sell,
            buy_venue=buy,
            borrow_token=borrow_token,
            intermediate_token=sell.other_token(borrow_token),
            borrow_amount=b,
            divergence_bps=divergence,
            estimated_profit=estimated_profit,
            borrow_venue=borrow_venue,
        )
        logger.info(
            f"[{group.name}] divergence {divergence:.1f} bps: {opportunity.direction}, "
            f"est. profit {estimated_profit}"
        )
        return opportunity
