"""
Sequential polling loop: monitor -> simulate -> coordinate.

Cycles never overlap. The next cycle starts only after the previous one has
finished, sleeping ``max(0, interval - elapsed)`` in between. At most one
opportunity is submitted per cycle: the best-ranked one that survives
simulation. Coordinator calls are synchronous (web3) and run in a worker
thread.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from .coordinator import ArbitrageCoordinator, ExecutionResult
from .errors import ConfigurationError, SimulationError
from .journal import (
    STATUS_DRY_RUN,
    STATUS_DRY_RUN_FAILED,
    STATUS_REVERT,
    STATUS_SUCCESS,
    TradeJournal,
)
from .models import ArbitrageOpportunity
from .monitor import MonitorCycleResult, OpportunityMonitor
from .simulator import PreTradeSimulator, SimulationResult

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    scan: MonitorCycleResult
    simulated: int = 0
    dropped: List[str] = field(default_factory=list)
    opportunity: Optional[ArbitrageOpportunity] = None
    simulation: Optional[SimulationResult] = None
    execution: Optional[ExecutionResult] = None
    elapsed_ms: float = 0.0


class ArbitragePipeline:
    def __init__(
        self,
        monitor: OpportunityMonitor,
        simulator: PreTradeSimulator,
        coordinator: ArbitrageCoordinator,
        journal: Optional[TradeJournal] = None,
        dry_run: bool = True,
        scan_interval: float = 2.0,
    ):
        self.monitor = monitor
        self.simulator = simulator
        self.coordinator = coordinator
        self.journal = journal
        self.dry_run = dry_run
        self.scan_interval = scan_interval
        self._stop = asyncio.Event()
        self.cycles = 0
        self.submissions = 0

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    async def run_cycle(self) -> CycleReport:
        start = time.perf_counter()
        report = CycleReport(scan=await self.monitor.run_cycle())

        for opportunity in report.scan.opportunities:
            simulation = await self._simulate(opportunity, report)
            if simulation is None:
                continue

            request = self.coordinator.build_for_opportunity(opportunity, simulation.path, simulation.estimated_final)
            execution = await asyncio.to_thread(self.coordinator.execute, request, self.dry_run)
            report.opportunity = opportunity
            report.simulation = simulation
            report.execution = execution
            self.submissions += 1
            self._journal(opportunity, simulation, execution)
            break

        report.elapsed_ms = (time.perf_counter() - start) * 1000
        return report

    async def _simulate(self, opportunity: ArbitrageOpportunity, report: CycleReport) -> Optional[SimulationResult]:
        path = opportunity.to_swap_path()
        _, _, fee_ppm, _ = self.coordinator.choose_lender(path, opportunity.borrow_venue)
        report.simulated += 1
        try:
            simulation = await self.simulator.evaluate_both_directions(path, opportunity.borrow_amount, fee_ppm)
        except SimulationError as e:
            logger.warning(f"[{opportunity.group}] simulation failed: {e}")
            report.dropped.append(f"{opportunity.group}: {e}")
            return None
        if simulation is None:
            logger.info(f"[{opportunity.group}] not profitable after simulation, dropped")
            report.dropped.append(f"{opportunity.group}: unprofitable")
            return None
        logger.info(
            f"[{opportunity.group}] simulated est. {simulation.estimated_final} vs repay "
            f"{simulation.required_repayment} (margin {simulation.margin})"
        )
        return simulation

    def _journal(self, opportunity: ArbitrageOpportunity, simulation: SimulationResult, execution: ExecutionResult) -> None:
        if self.journal is None:
            return
        if execution.mode == "dry_run":
            status = STATUS_DRY_RUN if execution.success else STATUS_DRY_RUN_FAILED
        else:
            status = STATUS_SUCCESS if execution.success else STATUS_REVERT
        self.journal.log_attempt(
            group=opportunity.group,
            borrow_amount=opportunity.borrow_amount,
            direction=opportunity.direction,
            expected_profit=simulation.margin,
            mode=execution.mode,
            status=status,
            gas_used=execution.gas_used or execution.gas_estimate,
            tx_hash=execution.tx_hash,
            notes=execution.error or f"shape={execution.request.shape.name}",
        )

    async def run(self, max_cycles: Optional[int] = None) -> None:
        """Loop until stop() or ``max_cycles``. One failed cycle never ends the loop."""
        while not self._stop.is_set():
            start = time.perf_counter()
            try:
                await self.run_cycle()
            except ConfigurationError:
                raise
            except Exception as e:
                logger.exception(f"Cycle {self.cycles + 1} failed: {e}")
            self.cycles += 1
            if max_cycles is not None and self.cycles >= max_cycles:
                break

            elapsed = time.perf_counter() - start
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, self.scan_interval - elapsed))
            except asyncio.TimeoutError:
                pass
