"""
tests/test_config.py - ConfigLoader validation.
"""

import os

import orjson
import pytest

from flashroute.calculator import compute_pool_address
from flashroute.config_loader import ConfigLoader
from flashroute.errors import ConfigValidationError
from flashroute.models import VenueType

from conftest import CP_PAIR, LENDING_POOL, TOKEN_A, TOKEN_B, TOKEN_C

ENV_KEYS = (
    "DRY_RUN", "SCAN_INTERVAL", "DIVERGENCE_THRESHOLD_BPS", "MIN_PROFIT_WEI", "GAS_COST_WEI",
    "SLIPPAGE_BPS", "PROBE_DIVISOR", "MAX_PROBE_RATIO", "CONFIRM_FULL_SIZE", "GAS_BUFFER_PERCENT",
    "USE_VENUE_FLASH", "SETTLEMENT_CONTRACT", "TREASURY_ADDRESS", "PRIVATE_KEY", "LOG_DIR",
    "RPC_TIMEOUT", "MAX_RETRIES", "BASE_RPC_OVERRIDE",
)

CHAINS = {
    "BASE": {
        "chain_id": 8453,
        "rpc_urls": ["https://rpc-1.example", "https://rpc-2.example"],
        "gas_config": {"type": "eip1559", "max_gas_gwei": 5.0},
        "block_time": 2.0,
    }
}


def venues_config(**overrides):
    config = {
        "chain": "BASE",
        "quoter": "0x" + "0a" * 20,
        "lending_pool": {"address": LENDING_POOL, "premium_ppm": 900},
        "tokens": {
            "AAA": {"address": TOKEN_A, "decimals": 18},
            "BBB": {"address": TOKEN_B, "decimals": 6},
        },
        "groups": [
            {
                "name": "AAA/BBB",
                "borrow_token": "AAA",
                "borrow_amount": "1000000000000000000",
                "venues": [
                    {"type": "concentrated", "token0": "BBB", "token1": "AAA", "fee": 500},
                    {"type": "concentrated", "token0": "AAA", "token1": "BBB", "fee": 3000},
                    {"type": "constant_product", "token0": "AAA", "token1": "BBB", "fee": 3000, "address": CP_PAIR},
                ],
            }
        ],
    }
    config.update(overrides)
    return config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    yield
    # load_dotenv writes straight to os.environ
    for key in ENV_KEYS:
        os.environ.pop(key, None)


def make_loader(tmp_path, chains=CHAINS, venues=None):
    config_dir = tmp_path / "config"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "chains.json").write_bytes(orjson.dumps(chains))
    (config_dir / "venues.json").write_bytes(orjson.dumps(venues if venues is not None else venues_config()))
    return ConfigLoader(config_dir=str(config_dir), env_path=str(tmp_path / "missing.env"))


def one_group(venues, **group):
    base = venues_config()["groups"][0]
    base.update(group)
    base["venues"] = venues
    return venues_config(groups=[base])


class TestChainConfig:
    def test_load(self, tmp_path):
        chain = make_loader(tmp_path).get_chain_config("base")
        assert chain.name == "BASE"
        assert chain.chain_id == 8453
        assert chain.rpc_urls == CHAINS["BASE"]["rpc_urls"]
        assert chain.gas_config.max_gas_gwei == 5.0
        assert chain.gas_config.priority_fee_multiplier == 1.1
        assert chain.private_key is None

    def test_cached(self, tmp_path):
        loader = make_loader(tmp_path)
        assert loader.get_chain_config("BASE") is loader.get_chain_config("base")

    def test_rpc_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("BASE_RPC_OVERRIDE", "https://a.example, https://b.example")
        assert make_loader(tmp_path).get_chain_config("BASE").rpc_urls == ["https://a.example", "https://b.example"]

    def test_unknown_chain(self, tmp_path):
        with pytest.raises(ConfigValidationError, match="ARB"):
            make_loader(tmp_path).get_chain_config("ARB")

    def test_missing_field(self, tmp_path):
        chains = {"BASE": {"chain_id": 8453, "gas_config": {"type": "legacy"}}}
        with pytest.raises(ConfigValidationError, match="rpc_urls"):
            make_loader(tmp_path, chains=chains).get_chain_config("BASE")

    def test_bad_gas_type(self, tmp_path):
        chains = {"BASE": {**CHAINS["BASE"], "gas_config": {"type": "eip4844"}}}
        with pytest.raises(ConfigValidationError):
            make_loader(tmp_path, chains=chains).get_chain_config("BASE")

    def test_missing_file(self, tmp_path):
        loader = ConfigLoader(config_dir=str(tmp_path / "nowhere"), env_path=str(tmp_path / "missing.env"))
        with pytest.raises(ConfigValidationError):
            loader.get_chain_config("BASE")

    def test_invalid_json(self, tmp_path):
        loader = make_loader(tmp_path)
        (tmp_path / "config" / "chains.json").write_text("{not json")
        with pytest.raises(ConfigValidationError):
            loader.get_chain_config("BASE")


class TestDeployment:
    def test_concentrated_addresses_derived(self, tmp_path):
        deployment = make_loader(tmp_path).get_deployment()
        group = deployment.groups[0]

        assert group.borrow_token == TOKEN_A
        assert group.borrow_amount == 10 ** 18
        assert [v.venue_type for v in group.venues] == [
            VenueType.CONCENTRATED, VenueType.CONCENTRATED, VenueType.CONSTANT_PRODUCT,
        ]
        assert group.venues[0].address == compute_pool_address(TOKEN_A, TOKEN_B, 500)
        assert group.venues[0].token0 == TOKEN_A
        assert group.venues[0].decimals1 == 6
        assert group.venues[2].address == CP_PAIR

    def test_lending_pool_and_flash_venues(self, tmp_path):
        deployment = make_loader(tmp_path).get_deployment()
        assert deployment.lending_pool.address == LENDING_POOL
        assert deployment.lending_pool.premium_ppm == 900
        assert [v.fee for v in deployment.flash_venues] == [500, 3000]
        assert deployment.concentrated_router is None

    def test_matching_explicit_address(self, tmp_path):
        address = compute_pool_address(TOKEN_A, TOKEN_B, 500)
        venues = [
            {"token0": "AAA", "token1": "BBB", "fee": 500, "address": address.lower()},
            {"token0": "AAA", "token1": "BBB", "fee": 3000},
        ]
        group = make_loader(tmp_path, venues=one_group(venues)).get_deployment().groups[0]
        assert group.venues[0].address == address

    def test_mismatched_address(self, tmp_path):
        venues = [
            {"token0": "AAA", "token1": "BBB", "fee": 500, "address": compute_pool_address(TOKEN_A, TOKEN_B, 3000)},
            {"token0": "AAA", "token1": "BBB", "fee": 3000},
        ]
        with pytest.raises(ConfigValidationError, match="CREATE2"):
            make_loader(tmp_path, venues=one_group(venues)).get_deployment()

    def test_unsupported_fee_tier(self, tmp_path):
        venues = [
            {"token0": "AAA", "token1": "BBB", "fee": 2500},
            {"token0": "AAA", "token1": "BBB", "fee": 3000},
        ]
        with pytest.raises(ConfigValidationError, match="2500"):
            make_loader(tmp_path, venues=one_group(venues)).get_deployment()

    def test_constant_product_needs_address(self, tmp_path):
        venues = [
            {"token0": "AAA", "token1": "BBB", "fee": 500},
            {"type": "constant_product", "token0": "AAA", "token1": "BBB"},
        ]
        with pytest.raises(ConfigValidationError):
            make_loader(tmp_path, venues=one_group(venues)).get_deployment()

    def test_disabled_types_filtered(self, tmp_path):
        config = venues_config(enabled_venue_types=["concentrated"])
        group = make_loader(tmp_path, venues=config).get_deployment().groups[0]
        assert len(group.venues) == 2

    def test_needs_two_venues(self, tmp_path):
        venues = [{"token0": "AAA", "token1": "BBB", "fee": 500}]
        with pytest.raises(ConfigValidationError):
            make_loader(tmp_path, venues=one_group(venues)).get_deployment()

    def test_mixed_pairs(self, tmp_path):
        venues = [
            {"token0": "AAA", "token1": "BBB", "fee": 500},
            {"token0": "AAA", "token1": TOKEN_C, "fee": 3000},
        ]
        with pytest.raises(ConfigValidationError):
            make_loader(tmp_path, venues=one_group(venues)).get_deployment()

    def test_borrow_token_outside_pair(self, tmp_path):
        venues = [
            {"token0": "AAA", "token1": "BBB", "fee": 500},
            {"token0": "AAA", "token1": "BBB", "fee": 3000},
        ]
        with pytest.raises(ConfigValidationError, match="borrow_token"):
            make_loader(tmp_path, venues=one_group(venues, borrow_token=TOKEN_C)).get_deployment()

    @pytest.mark.parametrize("amount", [0, "-5", "lots"])
    def test_bad_borrow_amount(self, tmp_path, amount):
        venues = venues_config()["groups"][0]["venues"]
        with pytest.raises(ConfigValidationError, match="borrow_amount"):
            make_loader(tmp_path, venues=one_group(venues, borrow_amount=amount)).get_deployment()

    def test_unknown_venue_type(self, tmp_path):
        venues = [
            {"type": "orderbook", "token0": "AAA", "token1": "BBB", "fee": 500},
            {"token0": "AAA", "token1": "BBB", "fee": 3000},
        ]
        with pytest.raises(ConfigValidationError):
            make_loader(tmp_path, venues=one_group(venues)).get_deployment()

    def test_no_groups(self, tmp_path):
        with pytest.raises(ConfigValidationError):
            make_loader(tmp_path, venues=venues_config(groups=[])).get_deployment()

    def test_shipped_config(self, tmp_path):
        loader = ConfigLoader(env_path=str(tmp_path / "missing.env"))
        deployment = loader.get_deployment()
        assert deployment.chain == "BASE"
        assert {v.fee for v in deployment.groups[0].venues} == {100, 500, 3000}
        assert loader.get_chain_config(deployment.chain).chain_id == 8453


class TestSettings:
    def test_defaults(self, tmp_path):
        settings = make_loader(tmp_path).get_settings()
        assert settings.dry_run is True
        assert settings.slippage_bps == 50
        assert settings.probe_divisor == 100
        assert settings.max_probe_ratio == 1000
        assert settings.gas_buffer_percent == 20
        assert settings.settlement_contract is None

    def test_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DRY_RUN", "false")
        monkeypatch.setenv("SLIPPAGE_BPS", "25")
        monkeypatch.setenv("CONFIRM_FULL_SIZE", "yes")
        monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
        settings = make_loader(tmp_path).get_settings()
        assert settings.dry_run is False
        assert settings.slippage_bps == 25
        assert settings.confirm_full_size is True
        assert settings.log_dir == tmp_path / "logs"

    def test_env_file(self, tmp_path):
        env_file = tmp_path / "custom.env"
        env_file.write_text("MIN_PROFIT_WEI=12345\n")
        config_dir = tmp_path / "config"
        make_loader(tmp_path)
        settings = ConfigLoader(config_dir=str(config_dir), env_path=str(env_file)).get_settings()
        assert settings.min_profit_wei == 12345

    @pytest.mark.parametrize("key, value", [
        ("SLIPPAGE_BPS", "10000"),
        ("PROBE_DIVISOR", "1"),
        ("MAX_PROBE_RATIO", "10"),
        ("SCAN_INTERVAL", "-1"),
        ("TREASURY_ADDRESS", "0x123"),
        ("MIN_PROFIT_WEI", "a lot"),
    ])
    def test_invalid(self, tmp_path, monkeypatch, key, value):
        monkeypatch.setenv(key, value)
        with pytest.raises(ConfigValidationError):
            make_loader(tmp_path).get_settings()
