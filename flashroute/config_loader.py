"""
FlashRoute 配置加载器

负责加载和验证链配置、场所（venue）配置以及环境变量中的运行参数。
静态 JSON 配置（config/chains.json, config/venues.json）与 .env 结合，
核心模块拿到的都是已验证的数据类。
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson
from dotenv import load_dotenv

from .calculator import POOL_INIT_CODE_HASH, V3_FACTORY, compute_pool_address
from .errors import ConfigValidationError
from .models import Venue, VenueType

# 集中流动性费率层级（ppm）
CONCENTRATED_FEE_TIERS = (100, 500, 3000, 10000)

VENUE_TYPE_NAMES = {
    "concentrated": VenueType.CONCENTRATED,
    "uniswapv3": VenueType.CONCENTRATED,
    "constant_product": VenueType.CONSTANT_PRODUCT,
    "sushiswap": VenueType.CONSTANT_PRODUCT,
    "reserved": VenueType.RESERVED,
    "dodo": VenueType.RESERVED,
}


@dataclass
class GasConfig:
    """区块链的 Gas 配置"""

    type: str  # "eip1559" 或 "legacy"
    priority_fee_multiplier: float = 1.1
    max_fee_multiplier: float = 1.5
    max_gas_gwei: float = 10.0


@dataclass
class ChainConfig:
    """单个区块链的完整配置"""

    name: str
    chain_id: int
    rpc_urls: List[str]
    gas_config: GasConfig
    block_time: float = 2.0
    private_key: Optional[str] = None
    rpc_timeout: int = 10
    max_retries: int = 3


@dataclass
class TokenConfig:
    symbol: str
    address: str
    decimals: int = 18


@dataclass
class VenueGroupConfig:
    """交易同一交易对的一组场所"""

    name: str
    borrow_token: str
    borrow_amount: int
    venues: List[Venue]


@dataclass
class LendingPoolConfig:
    address: str
    premium_ppm: int = 500


@dataclass
class DeploymentConfig:
    """场所、路由器与借贷方的静态地址"""

    chain: str
    factory: str
    init_code_hash: str
    quoter: Optional[str]
    concentrated_router: Optional[str]
    constant_product_router: Optional[str]
    lending_pool: Optional[LendingPoolConfig]
    enabled_venue_types: List[VenueType]
    tokens: Dict[str, TokenConfig]
    groups: List[VenueGroupConfig]

    @property
    def flash_venues(self) -> List[Venue]:
        """所有可以提供闪电贷的集中流动性场所"""
        seen = {}
        for group in self.groups:
            for venue in group.venues:
                if venue.venue_type == VenueType.CONCENTRATED:
                    seen.setdefault(venue.address.lower(), venue)
        return list(seen.values())


@dataclass
class BotSettings:
    """来自环境变量的运行参数"""

    dry_run: bool = True
    scan_interval: float = 2.0
    divergence_threshold_bps: float = 30.0
    min_profit_wei: int = 0
    gas_cost_wei: int = 0
    slippage_bps: int = 50
    probe_divisor: int = 100
    max_probe_ratio: int = 1000
    confirm_full_size: bool = False
    gas_buffer_percent: int = 20
    use_venue_flash: bool = True
    settlement_contract: Optional[str] = None
    treasury: Optional[str] = None
    private_key: Optional[str] = None
    log_dir: Path = field(default_factory=lambda: Path("logs"))


def _is_address(value: Any) -> bool:
    if not isinstance(value, str) or not value.startswith("0x") or len(value) != 42:
        return False
    try:
        int(value[2:], 16)
    except ValueError:
        return False
    return True


class ConfigLoader:
    """
    FlashRoute 配置管理器

    使用示例:
        >>> loader = ConfigLoader()
        >>> chain = loader.get_chain_config("BASE")
        >>> deployment = loader.get_deployment()
        >>> settings = loader.get_settings()
    """

    def __init__(
        self,
        config_dir: Optional[str] = None,
        env_path: Optional[str] = None
    ) -> None:
        """
        参数:
            config_dir: 包含 chains.json 与 venues.json 的目录，默认为项目根目录下的 config/
            env_path: .env 文件路径，默认为项目根目录的 .env
        """
        self._project_root = self._find_project_root()

        env_file = Path(env_path) if env_path else self._project_root / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        self._config_dir = Path(config_dir) if config_dir else self._project_root / "config"

        self._chains_raw: Optional[Dict[str, Any]] = None
        self._chain_cache: Dict[str, ChainConfig] = {}
        self._deployment: Optional[DeploymentConfig] = None
        self._settings: Optional[BotSettings] = None

    def _find_project_root(self) -> Path:
        """向上查找包含 config 文件夹或 .git 的目录"""
        current = Path(__file__).resolve().parent
        for _ in range(5):
            if (current / "config").exists() or (current / ".git").exists():
                return current
            current = current.parent
        return Path(__file__).resolve().parent.parent

    def _load_json(self, name: str) -> Dict[str, Any]:
        path = self._config_dir / name
        if not path.exists():
            raise ConfigValidationError(f"配置文件不存在: {path}")
        try:
            config = orjson.loads(path.read_bytes())
        except orjson.JSONDecodeError as e:
            raise ConfigValidationError(f"{path} 中的 JSON 格式无效: {e}") from e
        if not isinstance(config, dict):
            raise ConfigValidationError(f"{path} 必须是一个 JSON 对象")
        return config

    # ============================================
    # 链配置
    # ============================================

    def get_chain_config(self, chain_name: str) -> ChainConfig:
        """
        获取指定链的配置（带缓存）

        异常:
            ConfigValidationError: 链不存在或配置无效
        """
        chain_name = chain_name.upper()
        if chain_name in self._chain_cache:
            return self._chain_cache[chain_name]

        if self._chains_raw is None:
            self._chains_raw = self._load_json("chains.json")
        if chain_name not in self._chains_raw:
            available = ", ".join(self._chains_raw.keys())
            raise ConfigValidationError(f"链 '{chain_name}' 不存在。可用的链: {available}")

        raw = self._chains_raw[chain_name]
        for field_name in ("chain_id", "rpc_urls", "gas_config"):
            if field_name not in raw:
                raise ConfigValidationError(f"链 {chain_name} 的配置中缺少必需字段 '{field_name}'")

        override = os.getenv(f"{chain_name}_RPC_OVERRIDE")
        rpc_urls = [u.strip() for u in override.split(",") if u.strip()] if override else raw["rpc_urls"]
        if not isinstance(rpc_urls, list) or not rpc_urls:
            raise ConfigValidationError(f"链 {chain_name} 必须至少配置一个 RPC URL")

        gas_raw = raw["gas_config"]
        if gas_raw.get("type") not in ("eip1559", "legacy"):
            raise ConfigValidationError(f"链 {chain_name} 的 gas_config type 无效: 必须是 'eip1559' 或 'legacy'")

        config = ChainConfig(
            name=chain_name,
            chain_id=int(raw["chain_id"]),
            rpc_urls=rpc_urls,
            gas_config=GasConfig(
                type=gas_raw["type"],
                priority_fee_multiplier=gas_raw.get("priority_fee_multiplier", 1.1),
                max_fee_multiplier=gas_raw.get("max_fee_multiplier", 1.5),
                max_gas_gwei=gas_raw.get("max_gas_gwei", 10.0),
            ),
            block_time=raw.get("block_time", 2.0),
            private_key=os.getenv("PRIVATE_KEY") or None,
            rpc_timeout=self._env_int("RPC_TIMEOUT", 10),
            max_retries=self._env_int("MAX_RETRIES", 3),
        )
        self._chain_cache[chain_name] = config
        return config

    # ============================================
    # 场所配置
    # ============================================

    def get_deployment(self) -> DeploymentConfig:
        """解析并验证 venues.json"""
        if self._deployment is not None:
            return self._deployment

        raw = self._load_json("venues.json")

        enabled = [self._parse_venue_type(v) for v in raw.get("enabled_venue_types", ["concentrated", "constant_product"])]

        tokens: Dict[str, TokenConfig] = {}
        for symbol, token in raw.get("tokens", {}).items():
            address = self._require_address(token.get("address"), f"tokens.{symbol}.address")
            tokens[symbol.upper()] = TokenConfig(symbol=symbol, address=address, decimals=int(token.get("decimals", 18)))

        factory = self._require_address(raw.get("factory", V3_FACTORY), "factory")
        init_code_hash = raw.get("init_code_hash", POOL_INIT_CODE_HASH)
        groups = [self._parse_group(g, tokens, enabled, factory, init_code_hash) for g in raw.get("groups", [])]
        if not groups:
            raise ConfigValidationError("venues.json 中至少需要一个 venue group")

        lending_pool = None
        if raw.get("lending_pool"):
            lp = raw["lending_pool"]
            lending_pool = LendingPoolConfig(
                address=self._require_address(lp.get("address"), "lending_pool.address"),
                premium_ppm=int(lp.get("premium_ppm", 500)),
            )

        self._deployment = DeploymentConfig(
            chain=raw.get("chain", "BASE").upper(),
            factory=factory,
            init_code_hash=init_code_hash,
            quoter=self._optional_address(raw.get("quoter"), "quoter"),
            concentrated_router=self._optional_address(raw.get("concentrated_router"), "concentrated_router"),
            constant_product_router=self._optional_address(raw.get("constant_product_router"), "constant_product_router"),
            lending_pool=lending_pool,
            enabled_venue_types=enabled,
            tokens=tokens,
            groups=groups,
        )
        return self._deployment

    def _resolve_token(self, ref: Any, tokens: Dict[str, TokenConfig], where: str) -> TokenConfig:
        if isinstance(ref, str) and ref.upper() in tokens:
            return tokens[ref.upper()]
        if _is_address(ref):
            for token in tokens.values():
                if token.address.lower() == ref.lower():
                    return token
            return TokenConfig(symbol=ref[:8], address=ref)
        raise ConfigValidationError(f"{where}: 未知代币 '{ref}'")

    def _parse_venue_type(self, value: Any) -> VenueType:
        if isinstance(value, int):
            try:
                return VenueType(value)
            except ValueError:
                raise ConfigValidationError(f"未知场所类型: {value}") from None
        key = str(value).lower()
        if key not in VENUE_TYPE_NAMES:
            raise ConfigValidationError(f"未知场所类型: {value}")
        return VENUE_TYPE_NAMES[key]

    def _parse_group(
        self,
        raw: Dict[str, Any],
        tokens: Dict[str, TokenConfig],
        enabled: List[VenueType],
        factory: str,
        init_code_hash: str,
    ) -> VenueGroupConfig:
        name = raw.get("name") or "unnamed"
        borrow = self._resolve_token(raw.get("borrow_token"), tokens, f"group {name}")
        try:
            borrow_amount = int(raw.get("borrow_amount", 0))
        except (TypeError, ValueError):
            raise ConfigValidationError(f"group {name}: borrow_amount 无效") from None
        if borrow_amount <= 0:
            raise ConfigValidationError(f"group {name}: borrow_amount 必须为正数")

        venues: List[Venue] = []
        for i, v in enumerate(raw.get("venues", [])):
            where = f"group {name} venue {i}"
            venue_type = self._parse_venue_type(v.get("type", "concentrated"))
            if venue_type not in enabled:
                continue
            t0 = self._resolve_token(v.get("token0"), tokens, where)
            t1 = self._resolve_token(v.get("token1"), tokens, where)
            if t0.address.lower() > t1.address.lower():
                t0, t1 = t1, t0
            fee = int(v.get("fee", 3000))
            if not 0 <= fee < 1_000_000:
                raise ConfigValidationError(f"{where}: fee 超出范围 ({fee})")
            address = self._venue_address(v.get("address"), venue_type, t0, t1, fee, factory, init_code_hash, where)
            venues.append(Venue(
                address=address,
                token0=t0.address,
                token1=t1.address,
                fee=fee,
                venue_type=venue_type,
                decimals0=t0.decimals,
                decimals1=t1.decimals,
                name=v.get("name", ""),
            ))

        if len(venues) < 2:
            raise ConfigValidationError(f"group {name}: 至少需要两个已启用的场所")
        pair = {venues[0].token0.lower(), venues[0].token1.lower()}
        for venue in venues:
            if {venue.token0.lower(), venue.token1.lower()} != pair:
                raise ConfigValidationError(f"group {name}: 场所 {venue.label} 交易的不是同一交易对")
        if borrow.address.lower() not in pair:
            raise ConfigValidationError(f"group {name}: borrow_token 不在交易对中")

        return VenueGroupConfig(name=name, borrow_token=borrow.address, borrow_amount=borrow_amount, venues=venues)

    def _venue_address(
        self,
        value: Any,
        venue_type: VenueType,
        t0: TokenConfig,
        t1: TokenConfig,
        fee: int,
        factory: str,
        init_code_hash: str,
        where: str,
    ) -> str:
        """集中流动性池地址可省略（由 CREATE2 推导），填写时必须与推导结果一致"""
        if venue_type != VenueType.CONCENTRATED:
            return self._require_address(value, f"{where}.address")
        if fee not in CONCENTRATED_FEE_TIERS:
            raise ConfigValidationError(f"{where}: 不支持的集中流动性费率层级 {fee}")
        derived = compute_pool_address(t0.address, t1.address, fee, factory, init_code_hash)
        if value in (None, ""):
            return derived
        address = self._require_address(value, f"{where}.address")
        if address.lower() != derived.lower():
            raise ConfigValidationError(f"{where}: 地址 {address} 与 CREATE2 推导的 {derived} 不一致")
        return derived

    def _require_address(self, value: Any, where: str) -> str:
        if not _is_address(value):
            raise ConfigValidationError(f"{where} 地址无效: {value}")
        return value

    def _optional_address(self, value: Any, where: str) -> Optional[str]:
        if value in (None, ""):
            return None
        return self._require_address(value, where)

    # ============================================
    # 运行参数
    # ============================================

    def get_settings(self) -> BotSettings:
        """从环境变量加载运行参数（带缓存）"""
        if self._settings is not None:
            return self._settings

        settings = BotSettings(
            dry_run=self._env_bool("DRY_RUN", True),
            scan_interval=self._env_float("SCAN_INTERVAL", 2.0),
            divergence_threshold_bps=self._env_float("DIVERGENCE_THRESHOLD_BPS", 30.0),
            min_profit_wei=self._env_int("MIN_PROFIT_WEI", 0),
            gas_cost_wei=self._env_int("GAS_COST_WEI", 0),
            slippage_bps=self._env_int("SLIPPAGE_BPS", 50),
            probe_divisor=self._env_int("PROBE_DIVISOR", 100),
            max_probe_ratio=self._env_int("MAX_PROBE_RATIO", 1000),
            confirm_full_size=self._env_bool("CONFIRM_FULL_SIZE", False),
            gas_buffer_percent=self._env_int("GAS_BUFFER_PERCENT", 20),
            use_venue_flash=self._env_bool("USE_VENUE_FLASH", True),
            settlement_contract=os.getenv("SETTLEMENT_CONTRACT") or None,
            treasury=os.getenv("TREASURY_ADDRESS") or None,
            private_key=os.getenv("PRIVATE_KEY") or None,
            log_dir=Path(os.getenv("LOG_DIR", str(self._project_root / "logs"))),
        )

        if not 0 <= settings.slippage_bps < 10_000:
            raise ConfigValidationError(f"SLIPPAGE_BPS 超出范围: {settings.slippage_bps}")
        if settings.probe_divisor < 2:
            raise ConfigValidationError("PROBE_DIVISOR 必须至少为 2（探测量必须小于借款量）")
        if settings.max_probe_ratio < settings.probe_divisor:
            raise ConfigValidationError("MAX_PROBE_RATIO 不能小于 PROBE_DIVISOR")
        if settings.scan_interval < 0:
            raise ConfigValidationError("SCAN_INTERVAL 不能为负数")
        if settings.treasury is not None and not _is_address(settings.treasury):
            raise ConfigValidationError(f"TREASURY_ADDRESS 地址无效: {settings.treasury}")

        self._settings = settings
        return settings

    @staticmethod
    def _env_int(key: str, default: int) -> int:
        raw = os.getenv(key)
        if raw is None or raw == "":
            return default
        try:
            return int(raw)
        except ValueError:
            raise ConfigValidationError(f"环境变量 {key} 必须是整数: {raw}") from None

    @staticmethod
    def _env_float(key: str, default: float) -> float:
        raw = os.getenv(key)
        if raw is None or raw == "":
            return default
        try:
            return float(raw)
        except ValueError:
            raise ConfigValidationError(f"环境变量 {key} 必须是数字: {raw}") from None

    @staticmethod
    def _env_bool(key: str, default: bool) -> bool:
        raw = os.getenv(key)
        if raw is None or raw == "":
            return default
        return raw.strip().lower() in ("1", "true", "yes", "on")
