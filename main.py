#!/usr/bin/env python3
"""
=========================================================
     ⚡ FlashRoute - 闪电贷多场所套利机器人
=========================================================

流程: OpportunityMonitor -> PreTradeSimulator -> ArbitrageCoordinator
     -> 闪电贷提供方 -> 结算合约（回调、按顺序执行各跳、还款、利润分成）

默认 DRY_RUN=true：只做不改变状态的模拟调用与 Gas 估算，不广播任何交易。

用法:
    python main.py                 # 按 .env 运行
    python main.py --once          # 只跑一个周期并打印结果
    python main.py --live          # 强制 live 模式
    python main.py --plain -v      # 纯文本日志，DEBUG 级别

两种模式都需要 PRIVATE_KEY（owner）与 SETTLEMENT_CONTRACT。
"""

import argparse
import asyncio
import logging
import signal
import sys
import time
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from urllib3.util.retry import Retry
from web3 import Web3

from flashroute.clients import Web3SettlementClient
from flashroute.config_loader import BotSettings, ConfigLoader, DeploymentConfig
from flashroute.coordinator import ArbitrageCoordinator, validate_settlement_address
from flashroute.errors import ConfigurationError
from flashroute.journal import TradeJournal
from flashroute.lenders import DEFAULT_PREMIUM_PPM
from flashroute.monitor import OpportunityMonitor
from flashroute.network import AllRPCsFailedError, NetworkManager
from flashroute.pipeline import ArbitragePipeline, CycleReport
from flashroute.quoters import Web3QuoteSource
from flashroute.readers import Web3VenueReader
from flashroute.simulator import PreTradeSimulator

console = Console()
logger = logging.getLogger("flashroute")

PLAIN_FORMAT = "%(asctime)s | %(levelname)-8s | %(message)s"
PLAIN_DATEFMT = "%H:%M:%S"


def create_persistent_session() -> requests.Session:
    """
    带连接池的 HTTP 会话，供同步 web3（结算客户端）复用

    ⚡ 避免每次请求都重新握手；429/5xx 由 urllib3 自动重试
    """
    session = requests.Session()
    retry_strategy = Retry(
        total=3,
        backoff_factor=0.1,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=None,
    )
    adapter = HTTPAdapter(pool_connections=10, pool_maxsize=20, max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"Content-Type": "application/json"})
    return session


def setup_logging(plain: bool, verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    if plain:
        logging.basicConfig(level=level, format=PLAIN_FORMAT, datefmt=PLAIN_DATEFMT)
    else:
        logging.basicConfig(
            level=level,
            format="%(message)s",
            datefmt=PLAIN_DATEFMT,
            handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        )
    # web3 / aiohttp 的调试日志太多
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


class FlashRouteBot:
    """
    机器人主体：组装各组件并运行顺序轮询循环
    """

    def __init__(self, loader: ConfigLoader, chain_name: Optional[str], dry_run: Optional[bool]):
        self.loader = loader
        self.settings: BotSettings = loader.get_settings()
        self.deployment: DeploymentConfig = loader.get_deployment()
        self.chain = loader.get_chain_config(chain_name or self.deployment.chain)
        self.dry_run = self.settings.dry_run if dry_run is None else dry_run

        self.pipeline: Optional[ArbitragePipeline] = None
        self.journal = TradeJournal(self.settings.log_dir)
        self.start_time: Optional[float] = None
        self._http_session: Optional[requests.Session] = None

    def display_banner(self) -> None:
        mode = "[yellow]DRY RUN[/]" if self.dry_run else "[bold red]LIVE[/]"
        venues = sum(len(g.venues) for g in self.deployment.groups)
        lending = self.deployment.lending_pool.address if self.deployment.lending_pool else "-"
        console.print()
        console.print(Panel.fit(
            "[bold cyan]⚡ FlashRoute[/]\n"
            f"[dim]{self.chain.name} (chain {self.chain.chain_id}) | "
            f"{len(self.deployment.groups)} groups, {venues} venues[/]",
            border_style="cyan"
        ))
        config_text = (
            f"  Mode:            {mode}\n"
            f"  Scan Interval:   [green]{self.settings.scan_interval}s[/]\n"
            f"  Threshold:       [green]{self.settings.divergence_threshold_bps} bps[/]\n"
            f"  Slippage:        [green]{self.settings.slippage_bps} bps[/]\n"
            f"  Probe Divisor:   [green]{self.settings.probe_divisor}[/] (max ratio {self.settings.max_probe_ratio})\n"
            f"  Min Profit:      [green]{self.settings.min_profit_wei} wei[/]\n"
            f"  Settlement:      [cyan]{self.settings.settlement_contract or '-'}[/]\n"
            f"  Lending Pool:    [cyan]{lending}[/]\n"
            f"  CL Router:       [cyan]{self.deployment.concentrated_router or '-'}[/]\n"
            f"  CP Router:       [cyan]{self.deployment.constant_product_router or '-'}[/]"
        )
        console.print(Panel(config_text, title="⚙️ Settings", border_style="blue"))

    def build_pipeline(self, network: NetworkManager) -> ArbitragePipeline:
        settings = self.settings
        deployment = self.deployment

        lending_fee = deployment.lending_pool.premium_ppm if deployment.lending_pool else DEFAULT_PREMIUM_PPM
        monitor = OpportunityMonitor(
            deployment.groups,
            Web3VenueReader(network),
            settings.divergence_threshold_bps,
            lending_fee_ppm=lending_fee,
        )
        simulator = PreTradeSimulator(
            Web3QuoteSource(network, deployment.quoter),
            probe_divisor=settings.probe_divisor,
            max_probe_ratio=settings.max_probe_ratio,
            min_profit=settings.min_profit_wei,
            gas_cost_estimate=settings.gas_cost_wei,
            confirm_full_size=settings.confirm_full_size,
        )

        # 结算客户端使用同步 web3（在工作线程中调用）
        self._http_session = create_persistent_session()
        sync_w3 = Web3(Web3.HTTPProvider(
            network.current_rpc_url,
            request_kwargs={"timeout": self.chain.rpc_timeout},
            session=self._http_session,
        ))
        client = Web3SettlementClient(
            sync_w3,
            settings.settlement_contract or "",
            settings.private_key,
            self.chain.gas_config,
        )
        coordinator = ArbitrageCoordinator(
            client,
            settings.settlement_contract,
            flash_venues=deployment.flash_venues if settings.use_venue_flash else (),
            lending_pool=deployment.lending_pool,
            slippage_bps=settings.slippage_bps,
            gas_buffer_percent=settings.gas_buffer_percent,
            factory=deployment.factory,
            init_code_hash=deployment.init_code_hash,
        )
        coordinator.require_settlement_address()

        return ArbitragePipeline(
            monitor,
            simulator,
            coordinator,
            journal=self.journal,
            dry_run=self.dry_run,
            scan_interval=settings.scan_interval,
        )

    async def run(self, once: bool = False, max_cycles: Optional[int] = None) -> None:
        self.start_time = time.time()
        # 在任何网络调用之前失败关闭
        validate_settlement_address(self.settings.settlement_contract)
        if not self.settings.private_key:
            # 入口函数仅限 owner 调用，dry run 的模拟调用同样需要 owner 地址
            raise ConfigurationError("PRIVATE_KEY is required (settlement entry points are owner-only)")

        try:
            async with NetworkManager(self.chain) as network:
                self.pipeline = self.build_pipeline(network)

                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.add_signal_handler(sig, self._shutdown)

                if once:
                    display_report(await self.pipeline.run_cycle())
                else:
                    console.print("\n🏃 Starting scan loop... (Ctrl+C to stop)\n")
                    await self.pipeline.run(max_cycles=max_cycles)
        finally:
            if self._http_session is not None:
                self._http_session.close()
                self._http_session = None

    def _shutdown(self) -> None:
        console.print("\n🛑 Shutting down...")
        if self.pipeline is not None:
            self.pipeline.stop()

    def display_final_stats(self) -> None:
        runtime = time.time() - self.start_time if self.start_time else 0
        stats = self.journal.get_stats()

        table = Table(title="📊 Final Statistics", box=box.ROUNDED, show_header=False)
        table.add_column("Metric", style="bold")
        table.add_column("Value", justify="right")
        table.add_row("Runtime", f"{int(runtime // 60)}m {int(runtime % 60)}s")
        if self.pipeline is not None:
            table.add_row("Cycles", str(self.pipeline.cycles))
            table.add_row("Submissions", str(self.pipeline.submissions))
        table.add_row("Journal attempts", str(stats["total_attempts"]))
        table.add_row("Successful", str(stats["successful"]))
        table.add_row("Reverted", str(stats["reverted"]))
        table.add_row("Dry runs (ok / failed)", f"{stats['dry_run']} / {stats['dry_run_failed']}")
        table.add_row("Gas (total)", str(stats["total_gas"]))
        console.print()
        console.print(table)


def display_report(report: CycleReport) -> None:
    scan = report.scan
    table = Table(
        title=f"🎯 Cycle {scan.cycle}",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Group", style="bold")
    table.add_column("Direction")
    table.add_column("Divergence", justify="right")
    table.add_column("Borrow", justify="right")
    table.add_column("Est. Profit", justify="right")
    table.add_column("Lender", style="dim")
    for opp in scan.opportunities:
        table.add_row(
            opp.group,
            opp.direction,
            f"{opp.divergence_bps:.1f} bps",
            str(opp.borrow_amount),
            str(opp.estimated_profit),
            opp.borrow_venue.label if opp.borrow_venue else "lending pool",
        )
    console.print(table)
    console.print(
        f"  scanned {scan.groups_scanned} | skipped {len(scan.skipped)} | "
        f"failed {len(scan.failed)} | {scan.duration_ms:.0f}ms"
    )
    for reason in report.dropped:
        console.print(f"  [dim]dropped: {reason}[/]")
    if report.execution is not None:
        ex = report.execution
        status = "[green]✅ OK[/]" if ex.success else f"[red]❌ {ex.error}[/]"
        console.print(
            f"  {ex.mode}: {status} | gas {ex.gas_estimate} (limit {ex.gas_limit})"
            + (f" | tx {ex.tx_hash}" if ex.tx_hash else "")
        )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="FlashRoute - flash-loan funded multi-venue arbitrage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --once
  python main.py --cycles 10 --plain
  python main.py --live
        """
    )
    parser.add_argument("--chain", type=str, default=None, help="Chain name in config/chains.json (default: venues.json chain)")
    parser.add_argument("--config-dir", type=str, default=None, help="Directory holding chains.json and venues.json")
    parser.add_argument("--env", type=str, default=None, help="Path to the .env file")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", dest="dry_run", action="store_true", default=None, help="Force dry-run mode")
    mode.add_argument("--live", dest="dry_run", action="store_false", default=None, help="Force live mode")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and print the report")
    parser.add_argument("--cycles", type=int, default=None, help="Stop after N cycles")
    parser.add_argument("--plain", action="store_true", help="Plain log format instead of rich")
    parser.add_argument("-v", "--verbose", action="store_true", help="DEBUG logging")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.plain, args.verbose)

    try:
        loader = ConfigLoader(args.config_dir, args.env)
        bot = FlashRouteBot(loader, args.chain, args.dry_run)
    except ConfigurationError as e:
        console.print(f"[bold red]❌ Configuration error:[/] {e}")
        return 1

    bot.display_banner()
    try:
        asyncio.run(bot.run(once=args.once, max_cycles=args.cycles))
    except ConfigurationError as e:
        console.print(f"[bold red]❌ Configuration error:[/] {e}")
        return 1
    except AllRPCsFailedError as e:
        console.print(f"[bold red]❌ Network unavailable:[/] {e}")
        return 1
    finally:
        bot.display_final_stats()
    return 0


if __name__ == "__main__":
    sys.exit(main())
