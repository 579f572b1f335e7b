"""
交易日志模块 (Trade Journal)

功能：
- 将每一次提交尝试（dry run 或 live）记录到 CSV 文件
- 金额以最小单位（wei）整数记录，避免浮点误差
- 线程安全的文件追加操作

使用方法：
    journal = TradeJournal(Path("logs"))
    journal.log_attempt(
        group="WETH/USDC",
        borrow_amount=10**18,
        direction="UniV3 0.05% -> UniV3 0.3%",
        expected_profit=4_300_000_000_000_000,
        mode="live",
        status="Success",
        tx_hash="0x...",
        gas_used=250000
    )
"""

import csv
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# ============================================
# 配置
# ============================================

TRADE_HISTORY_FILE = "trade_history.csv"

CSV_HEADERS = [
    "Timestamp",
    "Group",
    "Borrow_Amount",
    "Direction",
    "Expected_Profit",
    "Mode",
    "Status",
    "Gas",
    "Tx_Hash",
    "Notes"
]

STATUS_SUCCESS = "Success"
STATUS_REVERT = "Revert"
STATUS_DRY_RUN = "DryRun"
STATUS_DRY_RUN_FAILED = "DryRunFailed"


# ============================================
# 数据结构
# ============================================

@dataclass
class AttemptRecord:
    """一次提交尝试"""
    timestamp: str
    group: str
    borrow_amount: int
    direction: str
    expected_profit: int
    mode: str
    status: str
    gas: int = 0
    tx_hash: str = ""
    notes: str = ""

    def to_row(self) -> List[str]:
        return [
            self.timestamp,
            self.group,
            str(self.borrow_amount),
            self.direction,
            str(self.expected_profit),
            self.mode,
            self.status,
            str(self.gas) if self.gas else "",
            self.tx_hash,
            self.notes
        ]


# ============================================
# TradeJournal 类
# ============================================

class TradeJournal:
    """
    交易日志管理器

    单写者假设：一个进程一个日志文件，锁只保护同一进程内的并发写入。
    """

    def __init__(self, log_dir: Path):
        self.log_dir = Path(log_dir)
        self.file_path = self.log_dir / TRADE_HISTORY_FILE
        self._lock = threading.Lock()
        self._ensure_file()

    def _ensure_file(self) -> None:
        """确保目录与 CSV 文件存在并有表头"""
        self.log_dir.mkdir(parents=True, exist_ok=True)
        if not self.file_path.exists() or self.file_path.stat().st_size == 0:
            with open(self.file_path, 'w', newline='', encoding='utf-8') as f:
                csv.writer(f).writerow(CSV_HEADERS)
            logger.info(f"创建交易日志: {self.file_path}")

    def log_attempt(
        self,
        group: str,
        borrow_amount: int,
        direction: str,
        expected_profit: int,
        mode: str,
        status: str,
        gas_used: int = 0,
        tx_hash: Optional[str] = None,
        notes: str = ""
    ) -> AttemptRecord:
        """
        记录一次尝试

        参数：
            mode: "dry_run" 或 "live"
            status: "Success", "Revert", "DryRun", "DryRunFailed"
        """
        record = AttemptRecord(
            timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
            group=group,
            borrow_amount=borrow_amount,
            direction=direction,
            expected_profit=expected_profit,
            mode=mode,
            status=status,
            gas=gas_used,
            tx_hash=tx_hash or "N/A",
            notes=notes
        )

        with self._lock:
            with open(self.file_path, 'a', newline='', encoding='utf-8') as f:
                csv.writer(f).writerow(record.to_row())

        return record

    def read_records(self) -> List[Dict[str, Any]]:
        with self._lock:
            with open(self.file_path, 'r', newline='', encoding='utf-8') as f:
                return list(csv.DictReader(f))

    def get_stats(self) -> Dict[str, int]:
        """
        获取统计信息

        total_expected_profit 只统计成功的 live 交易
        """
        stats = {
            "total_attempts": 0,
            "successful": 0,
            "reverted": 0,
            "dry_run": 0,
            "dry_run_failed": 0,
            "total_expected_profit": 0,
            "total_gas": 0
        }

        for row in self.read_records():
            stats["total_attempts"] += 1
            status = row.get("Status", "")
            if status == STATUS_SUCCESS:
                stats["successful"] += 1
                stats["total_expected_profit"] += int(row.get("Expected_Profit") or 0)
            elif status == STATUS_REVERT:
                stats["reverted"] += 1
            elif status == STATUS_DRY_RUN:
                stats["dry_run"] += 1
            elif status == STATUS_DRY_RUN_FAILED:
                stats["dry_run_failed"] += 1
            if row.get("Gas"):
                stats["total_gas"] += int(row["Gas"])

        return stats
