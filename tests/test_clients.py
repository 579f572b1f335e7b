"""
tests/test_clients.py - settlement backends.
"""

from unittest.mock import MagicMock

import pytest
from eth_abi import encode
from web3.exceptions import ContractLogicError

from flashroute.clients import (
    ERROR_STRING_SELECTOR,
    LocalSettlementClient,
    Web3SettlementClient,
    decode_revert_reason,
)
from flashroute.config_loader import GasConfig
from flashroute.errors import SubmissionError
from flashroute.models import FlashLoanRequest, LenderKind, PathShape

from conftest import BORROW, EXECUTOR, LENDING_POOL, OWNER, TOKEN_A, two_hop_path, two_hop_payload

REVERT_DATA = ERROR_STRING_SELECTOR + encode(["string"], ["Too little received"])


def lending_request(path, payload=b""):
    return FlashLoanRequest(
        lender=LENDING_POOL,
        lender_kind=LenderKind.LENDING_POOL,
        asset=TOKEN_A,
        amount=BORROW,
        payload=payload,
        shape=PathShape.TWO_HOP,
        fee_ppm=500,
        path=path,
    )


class TestRevertReason:
    def test_bytes(self):
        assert decode_revert_reason(REVERT_DATA) == "Too little received"

    def test_hex_string(self):
        assert decode_revert_reason("0x" + REVERT_DATA.hex()) == "Too little received"

    @pytest.mark.parametrize("data", [None, b"", b"\x12\x34\x56\x78", "0xzz", ERROR_STRING_SELECTOR + b"\x01"])
    def test_not_an_error_string(self, data):
        assert decode_revert_reason(data) is None


class TestWeb3SettlementClient:
    def make_client(self, private_key=None):
        gas = GasConfig(type="eip1559")
        return Web3SettlementClient(MagicMock(), EXECUTOR, private_key, gas)

    def test_construction_is_offline(self):
        client = self.make_client()
        assert client.address == EXECUTOR
        assert client.w3.method_calls == []

    def test_no_key(self, market):
        client = self.make_client()
        with pytest.raises(SubmissionError, match="PRIVATE_KEY"):
            client.simulate(lending_request(two_hop_path(market.rich, market.cheap)))

    def test_revert_reason_decoded(self, market):
        client = self.make_client("0x" + "11" * 32)
        function = MagicMock()
        function.call.side_effect = ContractLogicError("execution reverted", data="0x" + REVERT_DATA.hex())
        client._function = MagicMock(return_value=function)

        with pytest.raises(SubmissionError) as exc_info:
            client.simulate(lending_request(two_hop_path(market.rich, market.cheap)))
        assert exc_info.value.reason == "Too little received"

    def test_gas_estimate_revert(self, market):
        client = self.make_client("0x" + "11" * 32)
        function = MagicMock()
        function.estimate_gas.side_effect = ContractLogicError("execution reverted: LOK")
        client._function = MagicMock(return_value=function)

        with pytest.raises(SubmissionError) as exc_info:
            client.estimate_gas(lending_request(two_hop_path(market.rich, market.cheap)))
        assert "LOK" in exc_info.value.reason

    def test_legacy_gas_capped(self):
        client = Web3SettlementClient(MagicMock(), EXECUTOR, None, GasConfig(type="legacy", max_gas_gwei=1.0))
        client.w3.eth.gas_price = 5 * 10 ** 9
        assert client._get_gas_params() == {"gasPrice": 10 ** 9}


class TestLocalSettlementClient:
    def test_simulate_does_not_commit(self, market):
        path = two_hop_path(market.rich, market.cheap)
        request = lending_request(path, two_hop_payload(market.rich, market.cheap))
        balances = market.ledger.balances_snapshot()

        market.client.simulate(request)

        assert market.ledger.balances_snapshot() == balances
        assert market.events.events == []

    def test_simulate_revert(self, market):
        path = two_hop_path(market.cheap, market.rich)
        request = lending_request(path, two_hop_payload(market.cheap, market.rich))
        with pytest.raises(SubmissionError) as exc_info:
            market.client.simulate(request)
        assert "Balance does not cover loan plus fee" in exc_info.value.reason

    def test_send_failure_is_a_receipt(self, market):
        path = two_hop_path(market.cheap, market.rich)
        request = lending_request(path, two_hop_payload(market.cheap, market.rich))
        receipt = market.client.send(request, 500_000)
        assert receipt.status == 0
        assert not receipt.success
        assert "Balance does not cover" in receipt.error

    def test_send_success(self, market):
        path = two_hop_path(market.rich, market.cheap)
        request = lending_request(path, two_hop_payload(market.rich, market.cheap))
        receipt = market.client.send(request, 500_000)
        assert receipt.success
        assert receipt.tx_hash == "local-1"
        assert market.ledger.balance_of(TOKEN_A, OWNER) > 0

    def test_unknown_lender(self, market):
        client = LocalSettlementClient(market.executor, OWNER, {})
        request = lending_request(two_hop_path(market.rich, market.cheap))
        with pytest.raises(SubmissionError, match="Unknown lender"):
            client.simulate(request)
