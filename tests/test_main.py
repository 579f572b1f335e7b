"""
tests/test_main.py - CLI arguments and fail-closed startup.
"""

import asyncio
import os
from unittest.mock import MagicMock

import pytest

import main
from flashroute.config_loader import ConfigLoader
from flashroute.errors import ConfigurationError

from conftest import EXECUTOR

SETTINGS_ENV = ("SETTLEMENT_CONTRACT", "PRIVATE_KEY", "DRY_RUN", "LOG_DIR", "TREASURY_ADDRESS", "BASE_RPC_OVERRIDE")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for key in SETTINGS_ENV:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    yield
    for key in SETTINGS_ENV:
        os.environ.pop(key, None)


@pytest.fixture
def network_spy(monkeypatch):
    spy = MagicMock()
    monkeypatch.setattr(main, "NetworkManager", spy)
    return spy


def make_bot(tmp_path, dry_run=None):
    loader = ConfigLoader(env_path=str(tmp_path / "missing.env"))
    return main.FlashRouteBot(loader, None, dry_run)


class TestParseArgs:
    def test_defaults(self):
        args = main.parse_args([])
        assert args.dry_run is None
        assert args.once is False
        assert args.cycles is None
        assert args.chain is None

    def test_modes(self):
        assert main.parse_args(["--live"]).dry_run is False
        assert main.parse_args(["--dry-run"]).dry_run is True
        with pytest.raises(SystemExit):
            main.parse_args(["--live", "--dry-run"])

    def test_options(self):
        args = main.parse_args(["--once", "--cycles", "3", "--chain", "base", "--plain", "-v"])
        assert (args.once, args.cycles, args.chain, args.plain, args.verbose) == (True, 3, "base", True, True)


class TestFailClosed:
    def test_bot_uses_deployment_chain(self, tmp_path):
        bot = make_bot(tmp_path)
        assert bot.chain.name == "BASE"
        assert bot.dry_run is True
        assert make_bot(tmp_path, dry_run=False).dry_run is False

    def test_missing_settlement_contract(self, tmp_path, network_spy):
        bot = make_bot(tmp_path)
        with pytest.raises(ConfigurationError, match="not configured"):
            asyncio.run(bot.run(once=True))
        network_spy.assert_not_called()

    def test_zero_settlement_contract(self, tmp_path, monkeypatch, network_spy):
        monkeypatch.setenv("SETTLEMENT_CONTRACT", "0x" + "00" * 20)
        with pytest.raises(ConfigurationError, match="zero address"):
            asyncio.run(make_bot(tmp_path).run(once=True))
        network_spy.assert_not_called()

    def test_missing_private_key(self, tmp_path, monkeypatch, network_spy):
        monkeypatch.setenv("SETTLEMENT_CONTRACT", EXECUTOR)
        with pytest.raises(ConfigurationError, match="PRIVATE_KEY"):
            asyncio.run(make_bot(tmp_path).run(once=True))
        network_spy.assert_not_called()

    def test_main_returns_error_code(self, tmp_path, network_spy):
        code = main.main(["--once", "--plain", "--env", str(tmp_path / "missing.env")])
        assert code == 1
        network_spy.assert_not_called()
