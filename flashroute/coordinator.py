"""
Arbitrage coordinator: lender choice, payload packaging, submission.

Dry run performs a non-mutating call plus a gas estimate and broadcasts
nothing. Live mode runs the same call first, then signs and broadcasts and
waits for the receipt.

The settlement contract reference is checked before the client is touched:
missing, malformed or zero addresses raise ConfigurationError with zero
client calls.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from web3 import Web3

from .calculator import (
    POOL_INIT_CODE_HASH,
    V3_FACTORY,
    apply_gas_buffer,
    min_amount_out,
)
from .clients import SettlementClient
from .config_loader import LendingPoolConfig
from .errors import ConfigurationError, SubmissionError
from .models import (
    ZERO_ADDRESS,
    ArbitrageOpportunity,
    FlashLoanRequest,
    LenderKind,
    PathShape,
    PoolKey,
    SwapPath,
    Venue,
    VenueType,
    same_address,
)
from .payload import encode_payload, fixed_shape_for

logger = logging.getLogger(__name__)

DEFAULT_SLIPPAGE_BPS = 50
DEFAULT_GAS_BUFFER_PERCENT = 20

MODE_DRY_RUN = "dry_run"
MODE_LIVE = "live"


def validate_settlement_address(address: Optional[str]) -> str:
    """Checksum form of the settlement contract address, or ConfigurationError."""
    if not address:
        raise ConfigurationError("Settlement contract address is not configured")
    if not Web3.is_address(address):
        raise ConfigurationError("Settlement contract address is malformed", {"address": address})
    if same_address(address, ZERO_ADDRESS):
        raise ConfigurationError("Settlement contract address is the zero address")
    return Web3.to_checksum_address(address)


@dataclass
class ExecutionResult:
    mode: str
    success: bool
    request: Optional[FlashLoanRequest] = None
    gas_estimate: int = 0
    gas_limit: int = 0
    gas_used: int = 0
    gas_price: int = 0
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    time_sim_ms: float = 0.0
    time_total_ms: float = 0.0


class ArbitrageCoordinator:
    """
    Turns a simulated path into a flash-loan request and submits it.

    Lender choice, in order:

    1. a venue flash source for the borrowed token that is not a hop of the
       path (a lending venue is locked and cannot be swapped against)
    2. the lending pool, one asset per request
    3. ConfigurationError
    """

    def __init__(
        self,
        client: SettlementClient,
        settlement_address: Optional[str],
        flash_venues: Sequence[Venue] = (),
        lending_pool: Optional[LendingPoolConfig] = None,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        gas_buffer_percent: int = DEFAULT_GAS_BUFFER_PERCENT,
        factory: str = V3_FACTORY,
        init_code_hash: str = POOL_INIT_CODE_HASH,
    ):
        self.client = client
        self.settlement_address = settlement_address
        self.flash_venues = [v for v in flash_venues if v.venue_type == VenueType.CONCENTRATED]
        self.lending_pool = lending_pool
        self.slippage_bps = slippage_bps
        self.gas_buffer_percent = gas_buffer_percent
        self.factory = factory
        self.init_code_hash = init_code_hash

    # ============================================
    # Request building
    # ============================================

    def choose_lender(
        self,
        path: SwapPath,
        preferred: Optional[Venue] = None
    ) -> Tuple[str, LenderKind, int, Optional[Venue]]:
        """Return (lender address, kind, fee ppm, venue or None)."""
        token = path.borrowed_token
        candidates = ([preferred] if preferred is not None else []) + sorted(self.flash_venues, key=lambda v: v.fee)
        for venue in candidates:
            if venue.venue_type == VenueType.CONCENTRATED and venue.has_token(token) and not path.uses_venue(venue.address):
                return venue.address, LenderKind.VENUE, venue.fee, venue

        if self.lending_pool is not None:
            return self.lending_pool.address, LenderKind.LENDING_POOL, self.lending_pool.premium_ppm, None

        raise ConfigurationError(
            "No flash-loan source for the borrowed token",
            {"token": token, "venues_in_path": len(path)},
        )

    def build_request(
        self,
        path: SwapPath,
        borrow_amount: int,
        estimated_final: int,
        preferred_lender: Optional[Venue] = None
    ) -> FlashLoanRequest:
        """
        Package ``path`` for the chosen lender.

        Only the final hop carries a minimum output (estimated output less
        slippage); intermediate hops accept zero.
        """
        bounded = path.with_final_min_out(min_amount_out(estimated_final, self.slippage_bps))
        shape = fixed_shape_for(bounded, self.factory, self.init_code_hash) or PathShape.GENERAL
        payload = encode_payload(bounded, shape, self.factory, self.init_code_hash)

        lender, kind, fee_ppm, venue = self.choose_lender(bounded, preferred_lender)
        request = FlashLoanRequest(
            lender=lender,
            lender_kind=kind,
            asset=bounded.borrowed_token,
            amount=borrow_amount,
            payload=payload,
            shape=shape,
            fee_ppm=fee_ppm,
            path=bounded,
        )
        if venue is not None:
            if venue.is_token0(bounded.borrowed_token):
                request.amount0 = borrow_amount
            else:
                request.amount1 = borrow_amount
            request.pool_key = PoolKey(venue.token0, venue.token1, venue.fee)

        logger.debug(
            f"Request: {kind.value} {lender[:10]} shape={shape.name} "
            f"amount={borrow_amount} fee_ppm={fee_ppm}"
        )
        return request

    def build_for_opportunity(
        self,
        opportunity: ArbitrageOpportunity,
        path: SwapPath,
        estimated_final: int
    ) -> FlashLoanRequest:
        return self.build_request(path, opportunity.borrow_amount, estimated_final, opportunity.borrow_venue)

    # ============================================
    # Submission
    # ============================================

    def require_settlement_address(self) -> str:
        address = validate_settlement_address(self.settlement_address)
        if not same_address(address, self.client.address):
            raise ConfigurationError(
                "Settlement client is bound to a different contract",
                {"configured": address, "client": self.client.address},
            )
        return address

    def execute(self, request: FlashLoanRequest, dry_run: bool = True) -> ExecutionResult:
        self.require_settlement_address()

        mode = MODE_DRY_RUN if dry_run else MODE_LIVE
        start = time.perf_counter()
        result = ExecutionResult(mode=mode, success=False, request=request)

        try:
            t_sim = time.perf_counter()
            self.client.simulate(request)
            gas = self.client.estimate_gas(request)
            result.time_sim_ms = (time.perf_counter() - t_sim) * 1000
            result.gas_estimate = gas
            result.gas_limit = apply_gas_buffer(gas, self.gas_buffer_percent)

            if dry_run:
                result.success = True
                logger.info(f"Dry run OK: gas {gas} (limit {result.gas_limit}), nothing broadcast")
            else:
                receipt = self.client.send(request, result.gas_limit)
                result.success = receipt.success
                result.tx_hash = receipt.tx_hash
                result.gas_used = receipt.gas_used
                result.gas_price = receipt.gas_price
                result.error = receipt.error
                if receipt.success:
                    logger.info(f"Settled {receipt.tx_hash}: gas used {receipt.gas_used}")
                else:
                    logger.warning(f"{receipt.tx_hash} reverted: {receipt.error}")
        except SubmissionError as e:
            result.error = e.reason
            logger.warning(f"{mode} rejected: {e.reason}")

        result.time_total_ms = (time.perf_counter() - start) * 1000
        return result
