"""
Tests for protocol assembly, re-entrancy guards and the CLI.

Tests cover:
- build_protocol wiring and configuration validation
- Tax and faucet helpers
- Guard acquisition and release on error
- The simulate / info CLI commands
"""

import argparse
import json
from unittest.mock import patch

import pytest

from clock import ManualClock
from engine_config import EngineConfig
from engine_errors import ReentrancyError
from guards import ReentrancyGuard
from protocol import (
    DEPLOYER_ADDRESS,
    ENGINE_ADDRESS,
    TAX_HOLDER_ADDRESS,
    build_protocol,
)
from token_ledger import ONE_TOKEN

E18 = ONE_TOKEN


# ============================================================
# Protocol Assembly Tests
# ============================================================

class TestBuildProtocol:
    """Tests for deployment wiring."""

    def test_endowment_sealed_and_funded(self, protocol, config):
        assert protocol.endowment.is_sealed
        assert protocol.aec.balance_of(protocol.endowment.address) == (
            config.endowment_amount_units
        )

    def test_pools_funded_with_base_rewards(self, protocol, config):
        for name in ("lp", "token", "nft"):
            pool = protocol.get_pool(name)
            assert protocol.aec.balance_of(pool.address) == config.allocation_units(name)
        assert protocol.get_pool("vault") is None

    def test_pair_seeded(self, protocol, config):
        reserves = sorted((protocol.pair.reserve0, protocol.pair.reserve1))
        assert reserves == sorted((config.seed_liquidity_aec * E18,
                                   config.seed_liquidity_stable * E18))
        assert protocol.pair.lp_token.balance_of(DEPLOYER_ADDRESS) > 0

    def test_engine_wired(self, protocol):
        engine = protocol.engine
        assert engine.address == ENGINE_ADDRESS
        assert engine.token_staking is protocol.token_pool
        assert engine.nft_staking is protocol.nft_pool
        assert engine.is_healthy() == (True, {"issues": []})
        assert protocol.aec.allowance(TAX_HOLDER_ADDRESS, ENGINE_ADDRESS) > 0

    def test_invalid_config_rejected(self, clock):
        with pytest.raises(ValueError, match="slippage_bps"):
            build_protocol(EngineConfig(slippage_bps=5_000), clock)

    def test_fund_helpers(self, protocol):
        account = "0x000000000000000000000000000000000000a11c"
        protocol.fund_tax(5 * E18)
        protocol.fund_account(account, aec=2 * E18, stablecoin=3 * E18)

        assert protocol.aec.balance_of(TAX_HOLDER_ADDRESS) == 5 * E18
        assert protocol.aec.balance_of(account) == 2 * E18
        assert protocol.stablecoin.balance_of(account) == 3 * E18

    def test_overview(self, protocol):
        overview = protocol.get_overview()
        assert overview["timestamp"] == protocol.clock.now()
        assert set(overview["pools"]) == {"lp", "token", "nft"}
        assert overview["endowment"]["is_sealed"] is True


# ============================================================
# Guard Tests
# ============================================================

class TestReentrancyGuard:
    """Tests for scoped guards."""

    def test_blocks_reentry(self):
        guard = ReentrancyGuard("cycle")
        with guard:
            assert guard.locked
            with pytest.raises(ReentrancyError, match="reentrant call"):
                with guard:
                    pass
        assert not guard.locked

    def test_released_on_error(self):
        guard = ReentrancyGuard("swap")
        with pytest.raises(RuntimeError):
            with guard:
                raise RuntimeError("boom")
        assert not guard.locked

    def test_error_names_guard(self):
        guard = ReentrancyGuard("cycle")
        with guard:
            with pytest.raises(ReentrancyError) as exc_info:
                guard.__enter__()
        assert exc_info.value.guard_name == "cycle"


# ============================================================
# CLI Tests
# ============================================================

class TestCLI:
    """Tests for the aec-engine command line."""

    def test_simulate_json(self, capsys):
        from cli import cmd_simulate

        args = argparse.Namespace(cycles=3, interval=30 * 86_400, tax=10_000,
                                  json=True, verbose=False)
        with patch("monitoring.configure_logging"):
            assert cmd_simulate(args) == 0

        output = json.loads(capsys.readouterr().out)
        assert len(output["cycles"]) == 3
        assert all(cycle["processed"] for cycle in output["cycles"])
        assert output["final"]["engine"]["cycle_count"] == 3
        assert output["final"]["endowment"]["release_count"] == 2

    def test_simulate_table(self, capsys):
        from cli import cmd_simulate

        args = argparse.Namespace(cycles=2, interval=3600, tax=5_000,
                                  json=False, verbose=False)
        with patch("monitoring.configure_logging"):
            cmd_simulate(args)

        out = capsys.readouterr().out
        assert "Cycles processed:   2/2" in out

    def test_info(self, capsys):
        from cli import main

        with patch("sys.argv", ["aec-engine", "info"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 0
        assert "slippage_bps" in capsys.readouterr().out

    def test_no_command(self):
        from cli import main

        with patch("sys.argv", ["aec-engine"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 1


def test_manual_clock_never_rewinds():
    clock = ManualClock(start=100)
    with pytest.raises(ValueError):
        clock.advance(-1)
    with pytest.raises(ValueError):
        clock.set(99)
    clock.set(150)
    assert clock.now() == 150
