"""
tests/test_pipeline.py - monitor -> simulator -> coordinator, end to end on the local engine.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from flashroute.config_loader import LendingPoolConfig, VenueGroupConfig
from flashroute.coordinator import ArbitrageCoordinator
from flashroute.errors import ConfigurationError
from flashroute.journal import STATUS_DRY_RUN, STATUS_SUCCESS, TradeJournal
from flashroute.models import LenderKind
from flashroute.monitor import MonitorCycleResult, OpportunityMonitor
from flashroute.pipeline import ArbitragePipeline
from flashroute.simulator import PreTradeSimulator

from conftest import BORROW, EXECUTOR, LENDING_POOL, OWNER, TOKEN_A, TREASURY


def build_pipeline(market, venues, journal=None, dry_run=True, settlement=EXECUTOR):
    group = VenueGroupConfig("A/B", TOKEN_A, BORROW, [v.venue for v in venues])
    monitor = OpportunityMonitor([group], market.reader, threshold_bps=30)
    coordinator = ArbitrageCoordinator(
        market.client,
        settlement,
        flash_venues=[v.venue for v in venues],
        lending_pool=LendingPoolConfig(LENDING_POOL, 500),
    )
    return ArbitragePipeline(
        monitor,
        PreTradeSimulator(market.quotes),
        coordinator,
        journal=journal,
        dry_run=dry_run,
        scan_interval=0,
    )


class TestScenarioA:
    """Two diverging venues, dry run."""

    def test_dry_run_end_to_end(self, market):
        pipeline = build_pipeline(market, [market.cheap, market.rich])
        balances = market.ledger.balances_snapshot()
        transfers = len(market.ledger.transfers)

        report = asyncio.run(pipeline.run_cycle())

        assert len(report.scan.opportunities) == 1
        assert report.simulation.estimated_final > report.simulation.required_repayment
        assert report.execution.success, report.execution.error
        assert report.execution.request.lender_kind == LenderKind.LENDING_POOL
        # dry run: nothing moved
        assert len(market.ledger.transfers) == transfers
        assert market.ledger.balances_snapshot() == balances
        assert market.events.events == []

    def test_simulated_path_sells_high(self, market):
        pipeline = build_pipeline(market, [market.cheap, market.rich])
        report = asyncio.run(pipeline.run_cycle())
        assert report.simulation.path.steps[0].venue == market.rich.address
        assert report.simulation.path.steps[1].venue == market.cheap.address

    def test_journal(self, market, tmp_path):
        journal = TradeJournal(tmp_path)
        pipeline = build_pipeline(market, [market.cheap, market.rich], journal=journal)

        asyncio.run(pipeline.run_cycle())

        records = journal.read_records()
        assert len(records) == 1
        assert records[0]["Status"] == STATUS_DRY_RUN
        assert records[0]["Mode"] == "dry_run"
        assert records[0]["Tx_Hash"] == "N/A"
        assert journal.get_stats()["dry_run"] == 1


class TestLive:
    def test_venue_flash_settles(self, market, tmp_path):
        journal = TradeJournal(tmp_path)
        pipeline = build_pipeline(market, [market.cheap, market.lender, market.rich], journal=journal, dry_run=False)

        report = asyncio.run(pipeline.run_cycle())

        assert report.execution.success, report.execution.error
        assert report.execution.request.lender == market.lender.address
        assert market.ledger.balance_of(TOKEN_A, TREASURY) > 0
        assert market.ledger.balance_of(TOKEN_A, OWNER) > 0
        assert journal.get_stats()["successful"] == 1
        assert journal.read_records()[0]["Status"] == STATUS_SUCCESS

    def test_lending_pool_cycles_settle_independently(self, market):
        pipeline = build_pipeline(market, [market.cheap, market.rich], dry_run=False)
        for _ in range(2):
            report = asyncio.run(pipeline.run_cycle())
            assert report.execution.success, report.execution.error
        assert pipeline.submissions == 2
        assert market.ledger.balance_of(TOKEN_A, EXECUTOR) == 0
        assert market.ledger.balance_of(TOKEN_A, LENDING_POOL) > 10 ** 23


class TestDrops:
    def test_no_divergence_no_submission(self, market):
        pipeline = build_pipeline(market, [market.cheap, market.pair])
        report = asyncio.run(pipeline.run_cycle())
        assert report.scan.opportunities == []
        assert report.execution is None
        assert pipeline.submissions == 0

    def test_unprofitable_after_simulation(self, market):
        pipeline = build_pipeline(market, [market.cheap, market.rich])
        pipeline.simulator.min_profit = 10 ** 24
        report = asyncio.run(pipeline.run_cycle())
        assert report.simulated == 1
        assert report.dropped == ["A/B: unprofitable"]
        assert report.execution is None


class TestLoop:
    def test_failed_cycle_does_not_stop_the_loop(self, market):
        pipeline = build_pipeline(market, [market.cheap, market.rich])
        pipeline.monitor = MagicMock()
        pipeline.monitor.run_cycle = AsyncMock(side_effect=[RuntimeError("rpc down"), MonitorCycleResult(cycle=2)])

        asyncio.run(pipeline.run(max_cycles=2))

        assert pipeline.cycles == 2
        assert pipeline.monitor.run_cycle.await_count == 2

    def test_configuration_error_is_fatal(self, market):
        pipeline = build_pipeline(market, [market.cheap, market.rich], settlement=None)
        with pytest.raises(ConfigurationError):
            asyncio.run(pipeline.run(max_cycles=3))
        assert pipeline.cycles == 0

    def test_stop(self, market):
        pipeline = build_pipeline(market, [market.cheap, market.rich])
        pipeline.stop()
        asyncio.run(pipeline.run())
        assert pipeline.stopped
        assert pipeline.cycles == 0
