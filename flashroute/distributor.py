"""Fixed-percentage profit split applied at settlement time."""

import logging

from .calculator import split_net_profit
from .errors import ConfigurationError
from .ledger import TokenLedger
from .models import ProfitSplit, normalize_address

logger = logging.getLogger(__name__)

DEFAULT_TITHE_PERCENT = 30


class ProfitDistributor:
    """
    Splits net profit between a fixed treasury and the operator.

    ``tithe = floor(net * percent / 100)`` and the operator gets the rest, so
    the operator absorbs the rounding. Nothing moves when net profit is zero.
    """

    def __init__(self, treasury: str, tithe_percent: int = DEFAULT_TITHE_PERCENT):
        if not 0 <= tithe_percent <= 100:
            raise ConfigurationError("Tithe percent must be within 0..100", {"tithe_percent": tithe_percent})
        self._treasury = normalize_address(treasury, "treasury")
        self._tithe_percent = tithe_percent

    @property
    def treasury(self) -> str:
        return self._treasury

    @property
    def tithe_percent(self) -> int:
        return self._tithe_percent

    def compute_split(self, balance: int, borrowed: int, fee: int) -> ProfitSplit:
        total_repay = borrowed + fee
        gross = max(0, balance - borrowed)
        net = max(0, balance - total_repay)
        if net > 0:
            tithe, operator = split_net_profit(net, self._tithe_percent)
        else:
            tithe, operator = 0, 0
        return ProfitSplit(
            gross_profit=gross,
            fee_paid=fee,
            net_profit=net,
            tithe_amount=tithe,
            operator_amount=operator,
        )

    def distribute(self, ledger: TokenLedger, token: str, holder: str, operator: str, split: ProfitSplit) -> None:
        """Pay the tithe to the treasury and the remainder to ``operator``."""
        if not split.applied:
            logger.debug("No net profit, distribution skipped")
            return
        if split.tithe_amount:
            ledger.transfer(token, holder, self._treasury, split.tithe_amount)
        if split.operator_amount:
            ledger.transfer(token, holder, operator, split.operator_amount)
