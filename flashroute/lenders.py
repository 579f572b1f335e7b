"""
Local general-purpose lending pool (Aave-style multi-asset flashLoan).

Venue flash swaps are served by ConcentratedLiquidityPool.flash in venues.py.
"""

import logging
from typing import List

from .calculator import flash_fee
from .errors import LedgerError, VenueRevert
from .ledger import TokenLedger
from .models import normalize_address

logger = logging.getLogger(__name__)

# Aave V3 default premium: 5 bps = 500 ppm
DEFAULT_PREMIUM_PPM = 500


class LendingPool:
    """
    Lends reserves for the duration of one ``execute_operation`` callback.

    After the callback returns True the pool pulls ``amount + premium`` from
    the receiver using the allowance the receiver granted.
    """

    def __init__(self, ledger: TokenLedger, address: str, premium_ppm: int = DEFAULT_PREMIUM_PPM):
        self.ledger = ledger
        self.address = normalize_address(address)
        self.premium_ppm = premium_ppm

    def flash_loan(self, initiator: str, receiver, assets: List[str], amounts: List[int], params: bytes) -> None:
        if len(assets) != len(amounts):
            raise VenueRevert("Inconsistent flashloan parameters", {"assets": len(assets), "amounts": len(amounts)})

        premiums = [flash_fee(amount, self.premium_ppm) for amount in amounts]
        try:
            for asset, amount in zip(assets, amounts):
                self.ledger.transfer(asset, self.address, receiver.address, amount)
        except LedgerError as e:
            raise VenueRevert("Not enough liquidity for flash loan", e.details) from e

        ok = receiver.execute_operation(self.address, list(assets), list(amounts), premiums, initiator, params)
        if not ok:
            raise VenueRevert("Invalid flash loan executor return", {"receiver": receiver.address})

        try:
            for asset, amount, premium in zip(assets, amounts, premiums):
                self.ledger.transfer_from(asset, self.address, receiver.address, self.address, amount + premium)
        except LedgerError as e:
            raise VenueRevert("Flash loan repayment pull failed", e.details) from e

        logger.debug(f"Flash loan settled: {len(assets)} asset(s), premiums={premiums}")
