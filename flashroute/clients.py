"""
Settlement clients: the backend the ArbitrageCoordinator submits to.

- Web3SettlementClient: a deployed settlement contract, called with sync web3
  and signed locally with eth_account
- LocalSettlementClient: the in-process FlashCallbackExecutor over a TokenLedger

Every client offers the same three calls. ``simulate`` never mutates state,
``estimate_gas`` returns raw gas units, ``send`` commits. Rejections surface
as SubmissionError carrying the decoded revert reason.
"""

import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, Web3Exception

from .config_loader import GasConfig
from .errors import ArbitrageError, SubmissionError
from .models import FlashLoanRequest, LenderKind

logger = logging.getLogger(__name__)

TX_TIMEOUT = 60
NONCE_CACHE_TTL = 2

# Error(string) selector
ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")

SETTLEMENT_ABI = [
    {
        "inputs": [
            {"name": "pool", "type": "address"},
            {"name": "amount0", "type": "uint256"},
            {"name": "amount1", "type": "uint256"},
            {"name": "payload", "type": "bytes"}
        ],
        "name": "initiateFlashSwap",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"name": "lendingPool", "type": "address"},
            {"name": "asset", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "params", "type": "bytes"}
        ],
        "name": "initiateFlashLoan",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    }
]


def decode_revert_reason(data: Any) -> Optional[str]:
    """Decode ``Error(string)`` revert data; None when it is something else."""
    if isinstance(data, str):
        try:
            data = bytes.fromhex(data[2:] if data.startswith("0x") else data)
        except ValueError:
            return None
    if not isinstance(data, (bytes, bytearray)) or not bytes(data).startswith(ERROR_STRING_SELECTOR):
        return None
    try:
        (reason,) = decode(["string"], bytes(data)[4:])
    except DecodingError:
        return None
    return reason


@dataclass
class SubmissionReceipt:
    tx_hash: str
    status: int
    gas_used: int = 0
    gas_price: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == 1


class SettlementClient(ABC):
    @property
    @abstractmethod
    def address(self) -> str:
        ...

    @abstractmethod
    def simulate(self, request: FlashLoanRequest) -> None:
        """Non-mutating call of the settlement entry point. Raises SubmissionError on revert."""

    @abstractmethod
    def estimate_gas(self, request: FlashLoanRequest) -> int:
        ...

    @abstractmethod
    def send(self, request: FlashLoanRequest, gas_limit: int) -> SubmissionReceipt:
        ...


# ============================================
# Deployed contract
# ============================================

class Web3SettlementClient(SettlementClient):
    """
    Deployed settlement contract.

    - EIP-1559 or legacy gas per the chain's GasConfig, capped at max_gas_gwei
    - cached nonce with a short TTL, reset after any failed send
    - the contract object is built on first use, so constructing the client
      makes no network calls
    """

    def __init__(
        self,
        w3: Web3,
        contract_address: str,
        private_key: Optional[str],
        gas_config: GasConfig,
        tx_timeout: int = TX_TIMEOUT,
    ):
        self.w3 = w3
        self._contract_address = contract_address
        self.account = Account.from_key(private_key) if private_key else None
        self.gas_config = gas_config
        self.tx_timeout = tx_timeout
        self.max_gas_wei = int(gas_config.max_gas_gwei * 10**9)
        self._contract = None

        self._nonce_lock = threading.Lock()
        self._nonce: Optional[int] = None
        self._nonce_time: float = 0

    @property
    def address(self) -> str:
        return self._contract_address

    @property
    def sender(self) -> str:
        if self.account is None:
            raise SubmissionError("No PRIVATE_KEY configured for the settlement client")
        return self.account.address

    @property
    def contract(self):
        if self._contract is None:
            self._contract = self.w3.eth.contract(
                address=self.w3.to_checksum_address(self._contract_address),
                abi=SETTLEMENT_ABI
            )
        return self._contract

    def _function(self, request: FlashLoanRequest):
        to_checksum = self.w3.to_checksum_address
        if request.lender_kind == LenderKind.VENUE:
            return self.contract.functions.initiateFlashSwap(
                to_checksum(request.lender), request.amount0, request.amount1, request.payload
            )
        return self.contract.functions.initiateFlashLoan(
            to_checksum(request.lender), to_checksum(request.asset), request.amount, request.payload
        )

    def _rejected(self, error: ContractLogicError, stage: str) -> SubmissionError:
        reason = decode_revert_reason(error.data) or error.message or str(error)
        return SubmissionError(f"Settlement {stage} reverted", {"reason": reason})

    def simulate(self, request: FlashLoanRequest) -> None:
        try:
            self._function(request).call({"from": self.sender})
        except ContractLogicError as e:
            raise self._rejected(e, "call") from e

    def estimate_gas(self, request: FlashLoanRequest) -> int:
        try:
            return self._function(request).estimate_gas({"from": self.sender})
        except ContractLogicError as e:
            raise self._rejected(e, "gas estimate") from e

    # ----------------------------------------
    # Nonce / gas
    # ----------------------------------------

    def _get_nonce(self) -> int:
        with self._nonce_lock:
            now = time.time()
            if self._nonce is None or now - self._nonce_time > NONCE_CACHE_TTL:
                self._nonce = self.w3.eth.get_transaction_count(self.sender, "pending")
                self._nonce_time = now
            nonce = self._nonce
            self._nonce += 1
            return nonce

    def _reset_nonce(self) -> None:
        with self._nonce_lock:
            self._nonce = None
            self._nonce_time = 0

    def _get_gas_params(self) -> Dict[str, int]:
        if self.gas_config.type == "eip1559":
            block = self.w3.eth.get_block("latest")
            base_fee = block.get("baseFeePerGas") or self.w3.to_wei(0.01, "gwei")
            priority_fee = int(self.w3.eth.max_priority_fee * self.gas_config.priority_fee_multiplier)
            max_fee = int(base_fee * 2 * self.gas_config.max_fee_multiplier) + priority_fee
            if max_fee > self.max_gas_wei:
                # scale down proportionally
                ratio = self.max_gas_wei / max_fee
                max_fee = self.max_gas_wei
                priority_fee = int(priority_fee * ratio)
            return {"maxFeePerGas": max_fee, "maxPriorityFeePerGas": priority_fee}

        gas_price = int(self.w3.eth.gas_price * self.gas_config.priority_fee_multiplier)
        return {"gasPrice": min(gas_price, self.max_gas_wei)}

    def send(self, request: FlashLoanRequest, gas_limit: int) -> SubmissionReceipt:
        try:
            gas_params = self._get_gas_params()
            tx = self._function(request).build_transaction({
                "from": self.sender,
                "nonce": self._get_nonce(),
                "gas": gas_limit,
                "chainId": self.w3.eth.chain_id,
                **gas_params
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            logger.info(f"Broadcast {tx_hash.hex()}")
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout)
        except ContractLogicError as e:
            self._reset_nonce()
            raise self._rejected(e, "broadcast") from e
        except Web3Exception as e:
            self._reset_nonce()
            raise SubmissionError("Broadcast failed", {"reason": str(e)}) from e

        success = receipt["status"] == 1
        if not success:
            self._reset_nonce()
        return SubmissionReceipt(
            tx_hash=tx_hash.hex(),
            status=receipt["status"],
            gas_used=receipt["gasUsed"],
            gas_price=gas_params.get("maxFeePerGas", gas_params.get("gasPrice", 0)),
            error=None if success else "Transaction reverted",
        )


# ============================================
# Local engine
# ============================================

# Rough cost model for the local backend
LOCAL_BASE_GAS = 60_000
LOCAL_GAS_PER_HOP = 110_000


class LocalSettlementClient(SettlementClient):
    """
    Submits to an in-process FlashCallbackExecutor.

    ``lenders`` maps lender address to the local pool or lending pool object.
    ``simulate`` runs the whole attempt inside ``ledger.simulation()`` so
    nothing it does is committed.
    """

    def __init__(self, executor, operator: str, lenders: Mapping[str, Any]):
        self.executor = executor
        self.operator = operator
        self._lenders = {address.lower(): lender for address, lender in lenders.items()}
        self._tx_counter = itertools.count(1)

    @property
    def address(self) -> str:
        return self.executor.address

    def _lender(self, request: FlashLoanRequest):
        lender = self._lenders.get(request.lender.lower())
        if lender is None:
            raise SubmissionError("Unknown lender", {"reason": f"no local lender at {request.lender}"})
        return lender

    def _invoke(self, request: FlashLoanRequest):
        lender = self._lender(request)
        if request.lender_kind == LenderKind.VENUE:
            return self.executor.initiate_flash_swap(
                self.operator, lender, request.amount0, request.amount1, request.payload
            )
        return self.executor.initiate_flash_loan(
            self.operator, lender, request.asset, request.amount, request.payload
        )

    def simulate(self, request: FlashLoanRequest) -> None:
        try:
            with self.executor.ledger.simulation(), self.executor.quiet():
                self._invoke(request)
        except SubmissionError:
            raise
        except ArbitrageError as e:
            raise SubmissionError("Settlement call reverted", {"reason": str(e)}) from e

    def estimate_gas(self, request: FlashLoanRequest) -> int:
        return LOCAL_BASE_GAS + LOCAL_GAS_PER_HOP * len(request.path)

    def send(self, request: FlashLoanRequest, gas_limit: int) -> SubmissionReceipt:
        tx_hash = f"local-{next(self._tx_counter)}"
        gas_used = self.estimate_gas(request)
        try:
            self._invoke(request)
        except SubmissionError:
            raise
        except ArbitrageError as e:
            logger.warning(f"{tx_hash} reverted: {e}")
            return SubmissionReceipt(tx_hash=tx_hash, status=0, gas_used=gas_used, error=str(e))
        return SubmissionReceipt(tx_hash=tx_hash, status=1, gas_used=gas_used)
