"""
FlashRoute: 核心模块
闪电贷驱动的多场所原子套利：链下决策流水线 + 结算状态机
"""

from .config_loader import ConfigLoader
from .coordinator import ArbitrageCoordinator, ExecutionResult
from .errors import (
    ArbitrageError,
    ConfigurationError,
    InsufficientRepaymentError,
    SimulationError,
    SwapExecutionError,
    ValidationError,
)
from .executor import ExecutorState, FlashCallbackExecutor
from .monitor import OpportunityMonitor
from .network import NetworkManager
from .pipeline import ArbitragePipeline
from .simulator import PreTradeSimulator

__all__ = [
    "ArbitrageCoordinator",
    "ArbitrageError",
    "ArbitragePipeline",
    "ConfigLoader",
    "ConfigurationError",
    "ExecutionResult",
    "ExecutorState",
    "FlashCallbackExecutor",
    "InsufficientRepaymentError",
    "NetworkManager",
    "OpportunityMonitor",
    "PreTradeSimulator",
    "SimulationError",
    "SwapExecutionError",
    "ValidationError",
]
