"""
Flash-loan settlement executor.

The executor is the callback target of a flash loan. One attempt walks a fixed
state machine::

    IDLE -> CALLBACK_RECEIVED -> VALIDATED -> SWAPS_EXECUTING
         -> REPAYMENT_CHECKED -> PROFIT_DISTRIBUTED -> DONE

and drops to REVERTED from any non-IDLE state. Every ledger change made during
an attempt is undone when it reverts, and settlement events are only released
once the whole attempt (including the lender's own post-callback checks) has
committed.

Two lender shapes are supported:

- venue flash swap:  uniswap_v3_flash_callback(caller, fee0, fee1, data)
- lending pool:      execute_operation(caller, assets, amounts, premiums, initiator, params)
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from .adapters import DexAdapter
from .calculator import POOL_INIT_CODE_HASH, V3_FACTORY, compute_pool_address
from .distributor import DEFAULT_TITHE_PERCENT, ProfitDistributor
from .errors import (
    ArbitrageError,
    InsufficientRepaymentError,
    LedgerError,
    SwapExecutionError,
    ValidationError,
)
from .events import (
    HOP_EXECUTED,
    PROFIT_SPLIT,
    REPAYMENT_COMPLETED,
    SETTLEMENT,
    TITHE_PAID,
    EventSink,
)
from .ledger import TokenLedger
from .models import (
    CallbackContext,
    HopRecord,
    LenderKind,
    PoolKey,
    SettlementRecord,
    SwapStep,
    VenueType,
    normalize_address,
    same_address,
)
from .payload import decode_flash_swap_data, decode_payload, encode_flash_swap_data

logger = logging.getLogger(__name__)


class ExecutorState(Enum):
    IDLE = "idle"
    CALLBACK_RECEIVED = "callback_received"
    VALIDATED = "validated"
    SWAPS_EXECUTING = "swaps_executing"
    REPAYMENT_CHECKED = "repayment_checked"
    PROFIT_DISTRIBUTED = "profit_distributed"
    DONE = "done"
    REVERTED = "reverted"


@dataclass(frozen=True)
class PendingLoan:
    """Lender identity recorded when the request is sent."""
    lender: str
    kind: LenderKind
    asset: str
    amount: int
    amount0: int = 0
    amount1: int = 0


class FlashCallbackExecutor:
    """
    Settlement state machine for one deployed executor.

    ``treasury`` and ``tithe_percent`` are fixed at construction.
    """

    def __init__(
        self,
        ledger: TokenLedger,
        address: str,
        owner: str,
        treasury: str,
        adapters: Mapping[VenueType, DexAdapter],
        tithe_percent: int = DEFAULT_TITHE_PERCENT,
        factory: str = V3_FACTORY,
        init_code_hash: str = POOL_INIT_CODE_HASH,
        events: Optional[EventSink] = None,
    ):
        self.ledger = ledger
        self.address = normalize_address(address, "executor")
        self.owner = normalize_address(owner, "owner")
        self.adapters: Dict[VenueType, DexAdapter] = dict(adapters)
        self.factory = factory
        self.init_code_hash = init_code_hash
        self.events = events or EventSink()
        self._distributor = ProfitDistributor(treasury, tithe_percent)

        self._guard = threading.Lock()
        self._in_flight = threading.Lock()
        self._pending: Optional[PendingLoan] = None
        self._buffered: List[Tuple[str, dict]] = []
        self._emit_events = True

        self.state = ExecutorState.IDLE
        self.state_history: List[ExecutorState] = []
        self.last_settlement: Optional[SettlementRecord] = None

    @property
    def treasury(self) -> str:
        return self._distributor.treasury

    @property
    def tithe_percent(self) -> int:
        return self._distributor.tithe_percent

    # ============================================
    # Owner entry points
    # ============================================

    def initiate_flash_swap(self, caller: str, pool, amount0: int, amount1: int, payload: bytes) -> SettlementRecord:
        """Borrow from a concentrated-liquidity pool through its own flash()."""
        self._require_owner(caller)
        if (amount0 > 0) == (amount1 > 0):
            raise ValidationError(
                "Exactly one of amount0/amount1 must be borrowed",
                {"amount0": amount0, "amount1": amount1},
            )
        asset = pool.token0 if amount0 > 0 else pool.token1
        data = encode_flash_swap_data(PoolKey(pool.token0, pool.token1, pool.fee), payload)
        pending = PendingLoan(pool.address, LenderKind.VENUE, asset, amount0 or amount1, amount0, amount1)

        with self._request(pending):
            pool.flash(self, self.address, amount0, amount1, data)
        return self.last_settlement

    def initiate_flash_loan(self, caller: str, lending_pool, asset: str, amount: int, payload: bytes) -> SettlementRecord:
        """Borrow exactly one asset from a general lending pool."""
        self._require_owner(caller)
        if amount <= 0:
            raise ValidationError("Borrow amount must be positive", {"amount": amount})
        pending = PendingLoan(lending_pool.address, LenderKind.LENDING_POOL, normalize_address(asset), amount)

        with self._request(pending):
            lending_pool.flash_loan(self.address, self, [pending.asset], [amount], payload)
        return self.last_settlement

    @contextmanager
    def quiet(self) -> Iterator[None]:
        """Drop settlement events for attempts that are rolled back afterwards."""
        previous = self._emit_events
        self._emit_events = False
        try:
            yield
        finally:
            self._emit_events = previous

    def _require_owner(self, caller: str) -> None:
        if not same_address(caller, self.owner):
            raise ValidationError("Caller is not the owner", {"caller": caller})

    @contextmanager
    def _request(self, pending: PendingLoan) -> Iterator[None]:
        # held for the whole attempt, from request to commit
        if not self._in_flight.acquire(blocking=False):
            current = self._pending
            raise ValidationError(
                "A flash loan is already in flight",
                {"lender": current.lender if current else None},
            )
        self._pending = pending
        self._buffered = []
        self.last_settlement = None
        try:
            with self.ledger.atomic():
                yield
            if self._emit_events:
                for name, fields in self._buffered:
                    self.events.emit(name, **fields)
        finally:
            self._pending = None
            self._buffered = []
            self._in_flight.release()

    # ============================================
    # Lender callbacks
    # ============================================

    def uniswap_v3_flash_callback(self, caller: str, fee0: int, fee1: int, data: bytes) -> None:
        with self._attempt():
            pending = self._receive(caller, LenderKind.VENUE)

            pool_key, payload = decode_flash_swap_data(data)
            expected = compute_pool_address(
                pool_key.token0, pool_key.token1, pool_key.fee, self.factory, self.init_code_hash
            )
            if not same_address(expected, caller):
                raise ValidationError(
                    "Callback caller is not the canonical pool",
                    {"caller": caller, "expected": expected},
                )
            borrowed_slot = pool_key.token0 if pending.amount0 > 0 else pool_key.token1
            if not same_address(borrowed_slot, pending.asset):
                raise ValidationError(
                    "Pool key does not match the borrowed token",
                    {"pool_token": borrowed_slot, "asset": pending.asset},
                )
            fee = fee0 if pending.amount0 > 0 else fee1
            self._transition(ExecutorState.VALIDATED)

            shape, path = decode_payload(payload, pending.asset, self.factory, self.init_code_hash)
            self._settle(CallbackContext(
                lender=pending.lender,
                lender_kind=LenderKind.VENUE,
                asset=pending.asset,
                amount=pending.amount,
                fee=fee,
                shape=shape,
                path=path,
            ))

    def execute_operation(
        self,
        caller: str,
        assets: List[str],
        amounts: List[int],
        premiums: List[int],
        initiator: str,
        params: bytes,
    ) -> bool:
        with self._attempt():
            pending = self._receive(caller, LenderKind.LENDING_POOL)

            if not same_address(initiator, self.address):
                raise ValidationError("Flash loan initiator is not this executor", {"initiator": initiator})
            if len(assets) != 1 or len(amounts) != 1 or len(premiums) != 1:
                raise ValidationError("Exactly one asset is supported", {"assets": len(assets)})
            if not same_address(assets[0], pending.asset) or amounts[0] != pending.amount:
                raise ValidationError(
                    "Loan does not match the request",
                    {"asset": assets[0], "amount": amounts[0], "expected_amount": pending.amount},
                )
            self._transition(ExecutorState.VALIDATED)

            shape, path = decode_payload(params, pending.asset, self.factory, self.init_code_hash)
            self._settle(CallbackContext(
                lender=pending.lender,
                lender_kind=LenderKind.LENDING_POOL,
                asset=pending.asset,
                amount=pending.amount,
                fee=premiums[0],
                shape=shape,
                path=path,
            ))
        return True

    @contextmanager
    def _attempt(self) -> Iterator[None]:
        # check-and-set; a second callback while one is running is rejected
        if not self._guard.acquire(blocking=False):
            raise ValidationError("Settlement already in progress", {"executor": self.address})
        self.state_history = []
        try:
            with self.ledger.atomic():
                self._transition(ExecutorState.CALLBACK_RECEIVED)
                yield
        except ArbitrageError as e:
            self._transition(ExecutorState.REVERTED)
            logger.warning(f"Settlement reverted: {e}")
            raise
        finally:
            self.state = ExecutorState.IDLE
            self._guard.release()

    def _receive(self, caller: str, kind: LenderKind) -> PendingLoan:
        pending = self._pending
        if pending is None:
            raise ValidationError("No flash loan in flight", {"caller": caller})
        if not same_address(caller, pending.lender) or pending.kind != kind:
            raise ValidationError(
                "Callback caller is not the recorded lender",
                {"caller": caller, "lender": pending.lender},
            )
        return pending

    def _transition(self, state: ExecutorState) -> None:
        self.state = state
        self.state_history.append(state)
        logger.debug(f"executor {self.address[:10]} -> {state.value}")

    # ============================================
    # Settlement
    # ============================================

    def _settle(self, ctx: CallbackContext) -> None:
        self._transition(ExecutorState.SWAPS_EXECUTING)
        hops: List[HopRecord] = []
        amount = ctx.amount
        for index, step in enumerate(ctx.path.steps):
            amount_out = self._execute_hop(index, step, amount)
            hops.append(HopRecord(step.venue, step.token_in, step.token_out, amount, amount_out))
            self._buffered.append((HOP_EXECUTED, {
                "hop": index,
                "venue": step.venue,
                "token_in": step.token_in,
                "token_out": step.token_out,
                "amount_in": amount,
                "amount_out": amount_out,
            }))
            amount = amount_out

        self._transition(ExecutorState.REPAYMENT_CHECKED)
        total_repay = ctx.amount + ctx.fee
        balance = self.ledger.balance_of(ctx.asset, self.address)
        if balance < total_repay:
            raise InsufficientRepaymentError(
                "Balance does not cover loan plus fee",
                {"balance": balance, "borrowed": ctx.amount, "fee": ctx.fee, "total_repay": total_repay},
            )
        split = self._distributor.compute_split(balance, ctx.amount, ctx.fee)

        try:
            if ctx.lender_kind == LenderKind.VENUE:
                self.ledger.transfer(ctx.asset, self.address, ctx.lender, total_repay)
            else:
                # the lending pool pulls the repayment once the callback returns
                self.ledger.approve(ctx.asset, self.address, ctx.lender, total_repay)
        except LedgerError as e:
            raise InsufficientRepaymentError("Repayment failed", e.details) from e
        self._buffered.append((REPAYMENT_COMPLETED, {
            "lender": ctx.lender,
            "asset": ctx.asset,
            "borrowed": ctx.amount,
            "fee": ctx.fee,
            "total_repay": total_repay,
        }))

        self._transition(ExecutorState.PROFIT_DISTRIBUTED)
        if split.applied:
            self._distributor.distribute(self.ledger, ctx.asset, self.address, self.owner, split)
            self._buffered.append((PROFIT_SPLIT, {
                "asset": ctx.asset,
                "net_profit": split.net_profit,
                "tithe": split.tithe_amount,
                "operator": split.operator_amount,
            }))
            self._buffered.append((TITHE_PAID, {
                "asset": ctx.asset,
                "treasury": self.treasury,
                "amount": split.tithe_amount,
            }))

        self._transition(ExecutorState.DONE)
        record = SettlementRecord(
            lender=ctx.lender,
            asset=ctx.asset,
            borrowed=ctx.amount,
            fee=ctx.fee,
            total_repay=total_repay,
            split=split,
            hops=hops,
            shape=ctx.shape,
        )
        self.last_settlement = record
        self._buffered.append((SETTLEMENT, {"record": record.to_dict()}))

    def _execute_hop(self, index: int, step: SwapStep, amount_in: int) -> int:
        adapter = self.adapters.get(step.venue_type)
        if adapter is None:
            raise SwapExecutionError("No adapter for venue type", {"hop": index, "venue_type": step.venue_type})

        try:
            # exact amount, no reset to zero first
            self.ledger.approve(step.token_in, self.address, adapter.spender, amount_in)
        except LedgerError as e:
            raise SwapExecutionError("Approval rejected", {"hop": index, "venue": step.venue, **e.details}) from e

        amount_out = adapter.swap(
            step.token_in, step.token_out, amount_in, step.min_out, step.fee, venue=step.venue
        )
        if amount_out <= 0:
            raise SwapExecutionError(
                "Hop returned zero output",
                {"hop": index, "venue": step.venue, "amount_in": amount_in, "fee": step.fee},
            )
        return amount_out
