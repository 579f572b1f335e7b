"""
In-memory ERC-20 style token ledger plus per-contract storage slots.

This is the state the local settlement engine mutates. ``atomic()`` gives the
all-or-nothing semantics of a single transaction: every balance, allowance,
storage and transfer-log change made inside the block is undone if it raises.
Blocks nest; an inner failure caught by the caller leaves the outer block's
earlier changes in place, exactly like a reverted sub-call.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Tuple

from .errors import LedgerError

logger = logging.getLogger(__name__)


def _key(address: str) -> str:
    return address.lower()


@dataclass(frozen=True)
class Transfer:
    token: str
    sender: str
    recipient: str
    amount: int


class TokenLedger:
    """
    Balances and allowances for any number of tokens.

    ``strict_approve`` models tokens that reject changing a non-zero allowance
    to another non-zero value.
    """

    def __init__(self, strict_approve: bool = False):
        self.strict_approve = strict_approve
        self._balances: Dict[Tuple[str, str], int] = {}
        self._allowances: Dict[Tuple[str, str, str], int] = {}
        self._transfers: List[Transfer] = []
        self._storage: Dict[Tuple[str, str], Any] = {}

    # ----------------------------------------
    # Reads
    # ----------------------------------------

    def balance_of(self, token: str, holder: str) -> int:
        return self._balances.get((_key(token), _key(holder)), 0)

    def allowance(self, token: str, owner: str, spender: str) -> int:
        return self._allowances.get((_key(token), _key(owner), _key(spender)), 0)

    @property
    def transfers(self) -> List[Transfer]:
        return list(self._transfers)

    def balances_snapshot(self) -> Dict[Tuple[str, str], int]:
        """Copy of all non-zero balances keyed by (token, holder)."""
        return {k: v for k, v in self._balances.items() if v}

    # ----------------------------------------
    # Writes
    # ----------------------------------------

    def mint(self, token: str, holder: str, amount: int) -> None:
        if amount < 0:
            raise LedgerError("Negative mint", {"amount": amount})
        key = (_key(token), _key(holder))
        self._balances[key] = self._balances.get(key, 0) + amount

    def transfer(self, token: str, sender: str, recipient: str, amount: int) -> None:
        if amount < 0:
            raise LedgerError("Negative transfer", {"amount": amount})
        balance = self.balance_of(token, sender)
        if balance < amount:
            raise LedgerError(
                "Transfer amount exceeds balance",
                {"token": token, "sender": sender, "balance": balance, "amount": amount},
            )
        self._balances[(_key(token), _key(sender))] = balance - amount
        key = (_key(token), _key(recipient))
        self._balances[key] = self._balances.get(key, 0) + amount
        self._transfers.append(Transfer(token, sender, recipient, amount))

    def approve(self, token: str, owner: str, spender: str, amount: int) -> None:
        if amount < 0:
            raise LedgerError("Negative approval", {"amount": amount})
        current = self.allowance(token, owner, spender)
        if self.strict_approve and current != 0 and amount != 0:
            raise LedgerError(
                "Approve from non-zero to non-zero allowance",
                {"token": token, "spender": spender, "current": current, "amount": amount},
            )
        self._allowances[(_key(token), _key(owner), _key(spender))] = amount

    def transfer_from(self, token: str, spender: str, owner: str, recipient: str, amount: int) -> None:
        allowed = self.allowance(token, owner, spender)
        if allowed < amount:
            raise LedgerError(
                "Transfer amount exceeds allowance",
                {"token": token, "owner": owner, "spender": spender, "allowance": allowed, "amount": amount},
            )
        self.transfer(token, owner, recipient, amount)
        self._allowances[(_key(token), _key(owner), _key(spender))] = allowed - amount

    # ----------------------------------------
    # Contract storage
    # ----------------------------------------

    def load(self, contract: str, slot: str, default: Any = None) -> Any:
        return self._storage.get((_key(contract), slot), default)

    def store(self, contract: str, slot: str, value: Any) -> None:
        self._storage[(_key(contract), slot)] = value

    # ----------------------------------------
    # Atomicity
    # ----------------------------------------

    def _snapshot(self):
        return (dict(self._balances), dict(self._allowances), dict(self._storage), len(self._transfers))

    def _restore(self, snapshot) -> None:
        balances, allowances, storage, transfer_count = snapshot
        self._balances = balances
        self._allowances = allowances
        self._storage = storage
        del self._transfers[transfer_count:]

    @contextmanager
    def atomic(self) -> Iterator["TokenLedger"]:
        """Undo every change made inside the block if it raises."""
        snapshot = self._snapshot()
        try:
            yield self
        except BaseException:
            self._restore(snapshot)
            raise

    @contextmanager
    def simulation(self) -> Iterator["TokenLedger"]:
        """Run the block, then undo its changes whether it succeeded or not."""
        snapshot = self._snapshot()
        try:
            yield self
        finally:
            self._restore(snapshot)
            logger.debug("Simulated block rolled back")
