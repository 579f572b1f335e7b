"""
FlashRoute 网络管理器

健壮的异步网络层，为监控器和模拟器的只读调用提供以下功能:
- RPC 故障转移支持
- 速率限制的指数退避
- 合约回滚（revert）不重试，直接抛出
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

import aiohttp
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, Web3Exception
from web3.providers import AsyncHTTPProvider

from .config_loader import ChainConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RPCError(Exception):
    """RPC 相关错误的基类"""
    pass


class AllRPCsFailedError(RPCError):
    """当所有 RPC 端点都失败时抛出"""
    pass


class NetworkState(Enum):
    """网络连接状态"""
    DISCONNECTED = "disconnected"  # 已断开
    CONNECTING = "connecting"      # 连接中
    CONNECTED = "connected"        # 已连接
    DEGRADED = "degraded"          # 降级（部分 RPC 失败但仍可用）


@dataclass
class RPCHealth:
    """单个 RPC 端点的健康指标"""

    url: str
    is_healthy: bool = True
    consecutive_failures: int = 0
    avg_latency_ms: float = 0.0
    total_requests: int = 0

    def record_success(self, latency_ms: float) -> None:
        self.is_healthy = True
        self.consecutive_failures = 0
        self.total_requests += 1

        # 指数移动平均
        if self.avg_latency_ms == 0:
            self.avg_latency_ms = latency_ms
        else:
            self.avg_latency_ms = 0.8 * self.avg_latency_ms + 0.2 * latency_ms

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        self.total_requests += 1

        # 连续失败3次后标记为不健康
        if self.consecutive_failures >= 3:
            self.is_healthy = False


class NetworkManager:
    """
    异步区块链读取管理器

    使用示例:
        >>> async with NetworkManager(chain_config) as network:
        ...     slot0 = await network.contract_call(pool, POOL_ABI, "slot0")
    """

    def __init__(self, config: ChainConfig) -> None:
        self.config = config
        self.chain_id = config.chain_id

        # RPC 管理
        self._rpc_urls: List[str] = list(config.rpc_urls)
        self._current_rpc_index = 0
        self._rpc_health: Dict[str, RPCHealth] = {
            url: RPCHealth(url=url) for url in self._rpc_urls
        }

        self._web3: Optional[AsyncWeb3] = None

        # 重试配置
        self._max_retries = config.max_retries
        self._base_delay = 0.5
        self._max_delay = 30.0
        self._timeout = config.rpc_timeout

        self._state = NetworkState.DISCONNECTED
        self._lock = asyncio.Lock()

    @property
    def current_rpc_url(self) -> str:
        return self._rpc_urls[self._current_rpc_index]

    @property
    def state(self) -> NetworkState:
        return self._state

    @property
    def w3(self) -> AsyncWeb3:
        """获取 Web3 实例。如果未连接则抛出异常"""
        if self._web3 is None:
            raise RPCError("网络管理器未连接。请先调用 connect() 方法。")
        return self._web3

    def health(self) -> List[RPCHealth]:
        return [self._rpc_health[url] for url in self._rpc_urls]

    async def __aenter__(self) -> "NetworkManager":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        """建立连接并校验链 ID，失败时切换到下一个 RPC"""
        self._state = NetworkState.CONNECTING
        self._create_web3_instance()

        try:
            chain_id = await self._execute_with_retry(lambda: self.w3.eth.chain_id, "chain_id")
        except AllRPCsFailedError:
            self._state = NetworkState.DEGRADED
            raise

        if chain_id != self.chain_id:
            logger.warning(f"链 ID 不匹配: 期望 {self.chain_id}，实际 {chain_id}")
        if self._state == NetworkState.CONNECTING:
            self._state = NetworkState.CONNECTED
        logger.info(f"已连接到 {self.config.name}，使用 {self.current_rpc_url}")

    async def disconnect(self) -> None:
        if self._web3 is not None:
            provider = self._web3.provider
            if hasattr(provider, "disconnect"):
                await provider.disconnect()
        self._web3 = None
        self._state = NetworkState.DISCONNECTED
        logger.info(f"已断开与 {self.config.name} 的连接")

    def _create_web3_instance(self) -> None:
        provider = AsyncHTTPProvider(
            endpoint_uri=self.current_rpc_url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=self._timeout)},
        )
        self._web3 = AsyncWeb3(provider)

    async def _switch_to_next_rpc(self) -> None:
        """切换到下一个健康的 RPC 端点；全部不健康时重置并降级"""
        async with self._lock:
            original_index = self._current_rpc_index

            for _ in range(len(self._rpc_urls)):
                self._current_rpc_index = (self._current_rpc_index + 1) % len(self._rpc_urls)
                if self._rpc_health[self.current_rpc_url].is_healthy:
                    logger.info(f"切换 RPC 到: {self.current_rpc_url}")
                    self._create_web3_instance()
                    return

            logger.warning("所有 RPC 都标记为不健康，正在重置健康状态")
            for health in self._rpc_health.values():
                health.is_healthy = True
                health.consecutive_failures = 0

            self._current_rpc_index = (original_index + 1) % len(self._rpc_urls)
            self._create_web3_instance()
            self._state = NetworkState.DEGRADED

    async def _execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
    ) -> T:
        """
        带重试逻辑的异步操作执行

        - 连接错误 / 5xx 时切换 RPC
        - 429 与速率限制时指数退避
        - 合约 revert 是确定性结果，直接抛出
        """
        last_error: Optional[Exception] = None
        total_attempts = self._max_retries * len(self._rpc_urls)

        for attempt in range(total_attempts):
            try:
                start_time = time.perf_counter()
                result = await operation()
                latency_ms = (time.perf_counter() - start_time) * 1000
                self._rpc_health[self.current_rpc_url].record_success(latency_ms)
                return result

            except ContractLogicError:
                raise

            except aiohttp.ClientResponseError as e:
                last_error = e
                if e.status == 429:
                    delay = min(self._base_delay * (2 ** attempt), self._max_delay)
                    logger.warning(f"{operation_name} 被限速，等待 {delay:.2f} 秒后重试")
                    await asyncio.sleep(delay)
                    continue
                if e.status >= 500:
                    self._rpc_health[self.current_rpc_url].record_failure()
                    await self._switch_to_next_rpc()
                    continue
                raise RPCError(f"HTTP {e.status}: {e.message}") from e

            except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError, OSError) as e:
                last_error = e
                logger.warning(
                    f"{operation_name} 连接错误: {e}，"
                    f"切换 RPC（尝试 {attempt + 1}/{total_attempts}）"
                )
                self._rpc_health[self.current_rpc_url].record_failure()
                await self._switch_to_next_rpc()
                continue

            except Web3Exception as e:
                last_error = e
                error_msg = str(e).lower()
                if "429" in error_msg or "rate" in error_msg or "limit" in error_msg:
                    delay = min(self._base_delay * (2 ** attempt), self._max_delay)
                    logger.warning(f"{operation_name} RPC 速率限制，等待 {delay:.2f} 秒后重试")
                    await asyncio.sleep(delay)
                    continue
                self._rpc_health[self.current_rpc_url].record_failure()
                await self._switch_to_next_rpc()
                continue

        raise AllRPCsFailedError(
            f"{operation_name} 的所有 {total_attempts} 次尝试都失败了。最后的错误: {last_error}"
        )

    # =====================================================
    # 公共 API - 只读操作
    # =====================================================

    async def get_block_number(self) -> int:
        async def _fetch():
            return await self.w3.eth.block_number

        return await self._execute_with_retry(_fetch, "get_block_number")

    async def contract_call(
        self,
        address: str,
        abi: List[Dict[str, Any]],
        function_name: str,
        *args: Any,
        block_identifier: Union[int, str] = "latest",
    ) -> Any:
        """
        执行合约只读调用

        参数:
            address: 合约地址
            abi: 至少包含目标函数的 ABI
            function_name: 函数名
            args: 函数参数
        """
        async def _fetch():
            contract = self.w3.eth.contract(address=self.w3.to_checksum_address(address), abi=abi)
            fn = getattr(contract.functions, function_name)(*args)
            return await fn.call(block_identifier=block_identifier)

        return await self._execute_with_retry(_fetch, function_name)
