"""
tests/test_coordinator.py - lender choice, packaging, dry run and live submission.
"""

from unittest.mock import MagicMock

import pytest

from flashroute.calculator import min_amount_out
from flashroute.clients import LOCAL_BASE_GAS, LOCAL_GAS_PER_HOP, SettlementClient
from flashroute.config_loader import LendingPoolConfig
from flashroute.coordinator import (
    MODE_DRY_RUN,
    MODE_LIVE,
    ArbitrageCoordinator,
    validate_settlement_address,
)
from flashroute.errors import ConfigurationError, SubmissionError
from flashroute.events import SETTLEMENT
from flashroute.models import LenderKind, PathShape, PoolKey, SwapPath, SwapStep, VenueType, same_address
from flashroute.payload import decode_payload

from conftest import (
    BORROW,
    EXECUTOR,
    LENDING_POOL,
    OWNER,
    TOKEN_A,
    TOKEN_B,
    TREASURY,
    cl_step,
    two_hop_path,
)


def coordinator_for(market, flash_venues=None, lending_pool=True, **kwargs):
    if flash_venues is None:
        flash_venues = [market.lender.venue, market.cheap.venue, market.rich.venue]
    return ArbitrageCoordinator(
        market.client,
        EXECUTOR,
        flash_venues=flash_venues,
        lending_pool=LendingPoolConfig(LENDING_POOL, 500) if lending_pool else None,
        **kwargs,
    )


class TestSettlementAddress:
    @pytest.mark.parametrize("address", [None, "", "0x1234", "not-an-address", "0x" + "00" * 20])
    def test_rejected_before_client_is_touched(self, address):
        client = MagicMock(spec=SettlementClient)
        coordinator = ArbitrageCoordinator(client, address)
        with pytest.raises(ConfigurationError):
            coordinator.execute(MagicMock())
        assert client.method_calls == []

    def test_checksummed(self):
        assert validate_settlement_address(EXECUTOR.lower()) == EXECUTOR

    def test_client_bound_elsewhere(self, market):
        coordinator = ArbitrageCoordinator(market.client, TREASURY)
        with pytest.raises(ConfigurationError, match="different contract"):
            coordinator.execute(MagicMock())


class TestLenderChoice:
    def test_cheapest_venue_outside_the_path(self, market):
        coordinator = coordinator_for(market)
        lender, kind, fee_ppm, venue = coordinator.choose_lender(two_hop_path(market.rich, market.cheap))
        assert lender == market.lender.address
        assert kind == LenderKind.VENUE
        assert fee_ppm == 100
        assert venue == market.lender.venue

    def test_skips_venues_in_the_path(self, market):
        coordinator = coordinator_for(market)
        lender, _, fee_ppm, _ = coordinator.choose_lender(two_hop_path(market.lender, market.cheap))
        assert lender == market.rich.address
        assert fee_ppm == 3000

    def test_preferred_venue_first(self, market):
        coordinator = coordinator_for(market)
        lender, _, _, _ = coordinator.choose_lender(
            two_hop_path(market.rich, market.cheap), preferred=market.dry.venue
        )
        assert lender == market.dry.address

    def test_falls_back_to_lending_pool(self, market):
        coordinator = coordinator_for(market, flash_venues=[market.cheap.venue, market.rich.venue])
        lender, kind, fee_ppm, venue = coordinator.choose_lender(two_hop_path(market.rich, market.cheap))
        assert lender == LENDING_POOL
        assert kind == LenderKind.LENDING_POOL
        assert fee_ppm == 500
        assert venue is None

    def test_no_source(self, market):
        coordinator = coordinator_for(market, flash_venues=[market.rich.venue], lending_pool=False)
        with pytest.raises(ConfigurationError, match="No flash-loan source"):
            coordinator.choose_lender(two_hop_path(market.rich, market.cheap))

    def test_constant_product_is_never_a_lender(self, market):
        coordinator = coordinator_for(market, flash_venues=[market.pair.venue], lending_pool=False)
        assert coordinator.flash_venues == []


class TestBuildRequest:
    def test_venue_request(self, market):
        coordinator = coordinator_for(market)
        request = coordinator.build_request(two_hop_path(market.rich, market.cheap), BORROW, 2 * BORROW)

        assert request.lender_kind == LenderKind.VENUE
        assert (request.amount0, request.amount1) == (BORROW, 0)
        assert request.pool_key == PoolKey(market.lender.token0, market.lender.token1, 100)
        assert request.shape == PathShape.TWO_HOP
        assert request.fee_ppm == 100

    def test_only_final_hop_bounded(self, market):
        coordinator = coordinator_for(market, slippage_bps=100)
        request = coordinator.build_request(two_hop_path(market.rich, market.cheap), BORROW, 10_000)
        assert [step.min_out for step in request.path.steps] == [0, min_amount_out(10_000, 100)]
        shape, decoded = decode_payload(request.payload, TOKEN_A)
        assert shape == PathShape.TWO_HOP
        assert decoded.steps[-1].min_out == 9_900

    def test_borrow_token1_fills_amount1(self, market):
        coordinator = coordinator_for(market)
        path = SwapPath(
            (cl_step(market.cheap, TOKEN_B, TOKEN_A), cl_step(market.rich, TOKEN_A, TOKEN_B)),
            TOKEN_B,
        )
        request = coordinator.build_request(path, BORROW, BORROW)
        assert (request.amount0, request.amount1) == (0, BORROW)

    def test_mixed_path_is_general(self, market):
        coordinator = coordinator_for(market, flash_venues=[])
        path = SwapPath(
            (
                cl_step(market.rich, TOKEN_A, TOKEN_B),
                SwapStep(market.pair.address, TOKEN_B, TOKEN_A, 3000, 0, VenueType.CONSTANT_PRODUCT),
            ),
            TOKEN_A,
        )
        request = coordinator.build_request(path, BORROW, BORROW)
        assert request.shape == PathShape.GENERAL
        assert request.lender_kind == LenderKind.LENDING_POOL
        assert request.pool_key is None


class TestDryRun:
    def test_no_state_change(self, market):
        coordinator = coordinator_for(market)
        request = coordinator.build_request(two_hop_path(market.rich, market.cheap), BORROW, BORROW)
        balances = market.ledger.balances_snapshot()
        transfers = len(market.ledger.transfers)

        result = coordinator.execute(request, dry_run=True)

        assert result.success, result.error
        assert result.mode == MODE_DRY_RUN
        assert result.gas_estimate == LOCAL_BASE_GAS + 2 * LOCAL_GAS_PER_HOP
        assert result.gas_limit == result.gas_estimate * 120 // 100
        assert result.tx_hash is None
        assert market.ledger.balances_snapshot() == balances
        assert len(market.ledger.transfers) == transfers
        assert market.events.events == []

    def test_losing_path_reports_reason(self, market):
        coordinator = coordinator_for(market)
        request = coordinator.build_request(two_hop_path(market.cheap, market.rich), BORROW, BORROW)
        balances = market.ledger.balances_snapshot()

        result = coordinator.execute(request, dry_run=True)

        assert not result.success
        assert "Too little received" in result.error
        assert market.ledger.balances_snapshot() == balances

    def test_rejection_skips_broadcast(self):
        client = MagicMock(spec=SettlementClient)
        client.address = EXECUTOR
        client.simulate.side_effect = SubmissionError("Settlement call reverted", {"reason": "Too little received"})
        coordinator = ArbitrageCoordinator(client, EXECUTOR)

        result = coordinator.execute(MagicMock(), dry_run=False)

        assert not result.success
        assert result.error == "Too little received"
        client.estimate_gas.assert_not_called()
        client.send.assert_not_called()


class TestLive:
    def test_venue_flash_settles(self, market):
        coordinator = coordinator_for(market)
        request = coordinator.build_request(two_hop_path(market.rich, market.cheap), BORROW, BORROW)

        result = coordinator.execute(request, dry_run=False)

        assert result.success, result.error
        assert result.mode == MODE_LIVE
        assert result.tx_hash == "local-1"
        assert market.ledger.balance_of(TOKEN_A, TREASURY) > 0
        assert market.ledger.balance_of(TOKEN_A, OWNER) > market.ledger.balance_of(TOKEN_A, TREASURY)
        assert market.ledger.balance_of(TOKEN_A, EXECUTOR) == 0
        assert len(market.events.named(SETTLEMENT)) == 1

    def test_lending_pool_settles(self, market):
        coordinator = coordinator_for(market, flash_venues=[])
        request = coordinator.build_request(two_hop_path(market.rich, market.cheap), BORROW, BORROW)
        before = market.ledger.balance_of(TOKEN_A, LENDING_POOL)

        result = coordinator.execute(request, dry_run=False)

        assert result.success, result.error
        assert market.ledger.balance_of(TOKEN_A, LENDING_POOL) == before + BORROW * 500 // 1_000_000
        record = market.events.named(SETTLEMENT)[0].fields["record"]
        assert same_address(record["lender"], LENDING_POOL)

    def test_revert_leaves_state(self, market):
        coordinator = coordinator_for(market)
        client = MagicMock(wraps=market.client)
        client.address = EXECUTOR
        client.simulate.return_value = None
        client.estimate_gas.return_value = 300_000
        coordinator.client = client
        bad = coordinator.build_request(two_hop_path(market.cheap, market.rich), BORROW, BORROW)
        balances = market.ledger.balances_snapshot()

        result = coordinator.execute(bad, dry_run=False)

        assert not result.success
        assert "Too little received" in result.error
        assert market.ledger.balances_snapshot() == balances
