"""
Tests for the cycle orchestrator (src/perpetual_engine.py)

Tests cover:
- The default cycle split, burn, liquidity and pool refills
- Threshold skips, cooldown and re-entry
- Endowment pulls and release notifications
- Soft failures in burn, liquidity and per-pool refills
- Balance conservation and monotonic protocol totals
- Deployer administration and renouncement
- Preview, health and status views
"""

from unittest.mock import patch

import pytest

from engine_errors import (
    AuthorizationError,
    EngineError,
    RouterError,
    StakingError,
    TokenError,
)
from perpetual_engine import MAX_COOLDOWN, PerpetualEngine
from protocol import DEPLOYER_ADDRESS, ENGINE_ADDRESS, TAX_HOLDER_ADDRESS
from staking_pools import ETERNAL_TIER
from token_ledger import ONE_TOKEN, FungibleToken

E18 = ONE_TOKEN
KEEPER = "0x000000000000000000000000000000000000beef"
ALICE = "0x000000000000000000000000000000000000a11c"
MONTH = 30 * 86_400


def aec_outflow(report):
    """AEC that left the engine during a processed cycle."""
    outflow = report.burned + report.refill_total
    if report.liquidity is not None:
        outflow += report.liquidity.swapped + report.liquidity.token_used
    if report.caller_paid:
        outflow += report.caller_reward
    return outflow


# ============================================================
# Default Cycle Tests
# ============================================================

class TestDefaultCycle:
    """Tests for a first cycle over 10,000 AEC of tax."""

    @pytest.fixture
    def report(self, funded_protocol):
        return funded_protocol.engine.run_cycle(KEEPER)

    def test_processed(self, report):
        assert report.processed
        assert report.skip_reason is None
        assert report.endowment_released == 0

    def test_split(self, report):
        assert report.new_taxes == 10_000 * E18
        assert report.caller_reward == 10 * E18
        assert report.base_amount == 9_990 * E18
        assert report.burn_amount == 1_998 * E18
        assert report.lp_amount == 3_996 * E18
        assert report.refill_amount == 3_996 * E18
        assert report.dust == 0

    def test_burn(self, report, funded_protocol):
        assert report.burned == 1_998 * E18
        assert funded_protocol.aec.total_burned == 1_998 * E18

    def test_refill_split(self, report):
        assert report.refill_distributed == {
            "lp": 1_998 * E18,
            "token": 1_498_500 * 10**15,
            "nft": 499_500 * 10**15,
        }
        assert report.refill_failed == {}

    def test_pool_rates(self, report, funded_protocol):
        duration = funded_protocol.config.rewards_duration
        assert funded_protocol.lp_pool.ledger.reward_rate == 1_998 * E18 // duration
        assert funded_protocol.token_pool.ledger.reward_rate == 1_498_500 * 10**15 // duration

    def test_liquidity_locked_forever(self, report, funded_protocol):
        assert report.liquidity.success
        assert report.liquidity.strategy == "conservative"
        assert report.lp_staked == report.liquidity.lp_minted

        position = funded_protocol.lp_pool.ledger.get_position(ENGINE_ADDRESS)
        assert position.tier == ETERNAL_TIER
        assert position.amount == report.lp_staked

    def test_caller_paid(self, report, funded_protocol):
        assert report.caller_paid
        assert funded_protocol.aec.balance_of(KEEPER) == 10 * E18

    def test_tax_collected(self, report, funded_protocol):
        assert funded_protocol.aec.balance_of(TAX_HOLDER_ADDRESS) == 0
        assert funded_protocol.engine.total_taxes_collected == 10_000 * E18

    def test_conservation(self, report):
        inflow = report.balance_before + report.endowment_released + report.new_taxes
        assert inflow == aec_outflow(report) + report.balance_after

    def test_summary_event(self, report, funded_protocol):
        event = funded_protocol.engine.events[-1]
        assert event["event_type"] == "CycleProcessed"
        assert event["data"]["burned"] == str(1_998 * E18)

    def test_metrics(self, report, metrics):
        assert metrics.get_counter("cycles_processed_total") == 1

    def test_report_to_dict(self, report):
        data = report.to_dict()
        assert data["processed"] is True
        assert data["caller_reward"] == str(10 * E18)
        assert data["liquidity"]["success"] is True


# ============================================================
# Threshold and Cooldown Tests
# ============================================================

class TestThresholdAndCooldown:
    """Tests for skipping, the cooldown and re-entry."""

    def test_exactly_at_threshold(self, protocol):
        protocol.fund_tax(1_000 * E18)
        report = protocol.engine.run_cycle(KEEPER)

        assert report.processed
        assert report.caller_reward == E18

    def test_below_threshold_skips(self, protocol, metrics):
        protocol.fund_tax(999 * E18)
        report = protocol.engine.run_cycle(KEEPER)

        assert not report.processed
        assert report.skip_reason == "Below minimum process amount"
        assert protocol.aec.balance_of(TAX_HOLDER_ADDRESS) == 999 * E18
        assert protocol.engine.last_public_process_time == 0
        assert metrics.get_counter("cycles_skipped_total") == 1

    def test_skip_is_repeatable(self, protocol):
        protocol.fund_tax(999 * E18)
        first = protocol.engine.run_cycle(KEEPER)
        second = protocol.engine.run_cycle(KEEPER)

        assert first.skip_reason == second.skip_reason
        assert protocol.engine.cycle_count == 0
        skipped = [e for e in protocol.engine.events if e["event_type"] == "ProcessingSkipped"]
        assert len(skipped) == 2

    def test_cooldown_enforced(self, funded_protocol, clock):
        engine = funded_protocol.engine
        engine.run_cycle(KEEPER)
        funded_protocol.fund_tax(5_000 * E18)

        with pytest.raises(EngineError, match="Cooldown not elapsed"):
            engine.run_cycle(KEEPER)

        clock.advance(engine.public_process_cooldown)
        assert engine.run_cycle(KEEPER).processed
        assert engine.cycle_count == 2

    def test_next_process_time(self, funded_protocol, clock):
        engine = funded_protocol.engine
        assert engine.next_process_time() == 0
        engine.run_cycle(KEEPER)
        assert engine.next_process_time() == clock.now() + engine.public_process_cooldown

    def test_reentrant_cycle_blocked(self, protocol, clock):
        engine = protocol.engine
        reentries = []

        def reenter(amount):
            reentries.append(amount)
            engine.run_cycle(KEEPER)

        protocol.endowment.add_release_listener(reenter)
        clock.advance(MONTH)
        report = engine.run_cycle(KEEPER)

        assert report.processed
        assert len(reentries) == 1
        failed = [e for e in protocol.endowment.events
                  if e["event_type"] == "EngineNotificationFailed"]
        assert "reentrant call" in failed[0]["data"]["error"]


# ============================================================
# Endowment Tests
# ============================================================

class TestEndowmentPull:
    """Tests for pulling endowment releases into the cycle."""

    def test_release_alone_crosses_threshold(self, protocol, clock):
        clock.advance(MONTH)
        report = protocol.engine.run_cycle(KEEPER)

        expected = protocol.config.endowment_amount_units * 50 // 10_000
        assert report.processed
        assert report.endowment_released == expected
        assert report.new_taxes == 0
        assert report.caller_reward == 0
        assert not report.caller_paid

    def test_release_notifies_engine(self, protocol, clock):
        clock.advance(MONTH)
        report = protocol.engine.run_cycle(KEEPER)

        assert protocol.engine.total_endowment_received == report.endowment_released
        assert protocol.engine.last_endowment_release == clock.now()

    def test_caller_reward_ignores_endowment(self, funded_protocol, clock):
        clock.advance(MONTH)
        report = funded_protocol.engine.run_cycle(KEEPER)

        assert report.endowment_released > 0
        assert report.caller_reward == 10 * E18

    def test_endowment_failure_is_soft(self, funded_protocol, clock, metrics):
        clock.advance(MONTH)
        with patch.object(funded_protocol.endowment, "release_funds",
                          side_effect=RuntimeError("paused")):
            report = funded_protocol.engine.run_cycle(KEEPER)

        assert report.processed
        assert report.endowment_released == 0
        assert metrics.get_counter("soft_failures_total", labels={"step": "endowment"}) == 1

    def test_conservation_with_endowment(self, funded_protocol, clock):
        clock.advance(MONTH)
        report = funded_protocol.engine.run_cycle(KEEPER)

        inflow = report.balance_before + report.endowment_released + report.new_taxes
        assert inflow == aec_outflow(report) + report.balance_after


# ============================================================
# Soft Failure Tests
# ============================================================

class TestSoftFailures:
    """Tests that sub-step failures never fail the cycle."""

    def test_liquidity_ladder_exhausted(self, funded_protocol):
        protocol = funded_protocol
        with patch.object(protocol.router, "add_liquidity",
                          side_effect=RouterError("INSUFFICIENT_B_AMOUNT")):
            report = protocol.engine.run_cycle(KEEPER)

        assert report.processed
        assert report.liquidity.reason == "All liquidity strategies failed"
        assert report.liquidity.attempts == 4
        assert report.lp_staked == 0
        assert protocol.aec.allowance(ENGINE_ADDRESS, protocol.router.address) == 0
        assert protocol.stablecoin.allowance(ENGINE_ADDRESS, protocol.router.address) == 0
        assert report.caller_paid
        assert len(report.refill_distributed) == 3

    def test_unused_liquidity_carried_forward(self, funded_protocol, clock):
        protocol = funded_protocol
        with patch.object(protocol.router, "add_liquidity",
                          side_effect=RouterError("INSUFFICIENT_B_AMOUNT")):
            report = protocol.engine.run_cycle(KEEPER)

        assert report.balance_after > 0
        assert protocol.stablecoin.balance_of(ENGINE_ADDRESS) > 0

        clock.advance(protocol.engine.public_process_cooldown)
        protocol.fund_tax(1_000 * E18)
        second = protocol.engine.run_cycle(KEEPER)
        assert second.balance_before == report.balance_after
        assert second.liquidity.success

    def test_burn_failure(self, funded_protocol, metrics):
        protocol = funded_protocol
        with patch.object(protocol.aec, "burn", side_effect=TokenError("burn paused")):
            report = protocol.engine.run_cycle(KEEPER)

        assert report.processed
        assert report.burned == 0
        assert any(e["event_type"] == "BurnFailed" for e in protocol.engine.events)
        assert metrics.get_counter("soft_failures_total", labels={"step": "burn"}) == 1

    def test_single_pool_refill_failure(self, funded_protocol):
        protocol = funded_protocol
        with patch.object(protocol.token_pool, "notify_reward_amount",
                          side_effect=StakingError("Reward too high", prefix="TokenStaking")):
            report = protocol.engine.run_cycle(KEEPER)

        assert set(report.refill_distributed) == {"lp", "nft"}
        assert "Reward too high" in report.refill_failed["token"]
        assert protocol.aec.allowance(ENGINE_ADDRESS, protocol.token_pool.address) == 0
        assert report.balance_after >= 1_498_500 * 10**15

    def test_lp_stake_failure(self, funded_protocol):
        protocol = funded_protocol
        with patch.object(protocol.lp_pool, "stake_for_engine",
                          side_effect=StakingError("Amount too small", prefix="StakingLP")):
            report = protocol.engine.run_cycle(KEEPER)

        assert report.liquidity.success
        assert report.lp_staked == 0
        assert protocol.pair.lp_token.balance_of(ENGINE_ADDRESS) == report.liquidity.lp_minted
        assert protocol.pair.lp_token.allowance(ENGINE_ADDRESS, protocol.lp_pool.address) == 0


# ============================================================
# Multi-Cycle Tests
# ============================================================

class TestMultipleCycles:
    """Tests for protocol-wide properties across many cycles."""

    def test_totals_move_one_way(self, protocol, clock):
        burned = engine_lp = 0
        endowment = protocol.endowment.current_balance
        for _ in range(6):
            protocol.fund_tax(2_000 * E18)
            protocol.engine.run_cycle(KEEPER)

            assert protocol.aec.total_burned >= burned
            assert protocol.endowment.current_balance <= endowment
            position = protocol.lp_pool.ledger.get_position(ENGINE_ADDRESS)
            stake = position.amount if position else 0
            assert stake >= engine_lp

            burned = protocol.aec.total_burned
            endowment = protocol.endowment.current_balance
            engine_lp = stake
            clock.advance(MONTH)

        assert protocol.engine.cycle_count == 6
        assert protocol.endowment.release_count == 5

    def test_split_dust_carried_into_next_cycle(self, protocol, clock):
        protocol.fund_tax(10_000 * E18 + 7)
        first = protocol.engine.run_cycle(KEEPER)

        assert first.dust == 2
        assert first.dust == (
            first.base_amount - first.burn_amount - first.lp_amount - first.refill_amount
        )
        assert first.balance_after >= first.dust

        clock.advance(protocol.engine.public_process_cooldown)
        protocol.fund_tax(1_000 * E18)
        second = protocol.engine.run_cycle(KEEPER)

        assert second.dust >= 0
        assert second.balance_before == first.balance_after
        assert second.base_amount == (
            second.balance_before + second.endowment_released
            + second.new_taxes - second.caller_reward
        )

    def test_late_staker_gets_nothing_retroactive(self, funded_protocol, clock):
        protocol = funded_protocol
        protocol.engine.run_cycle(KEEPER)

        protocol.fund_account(ALICE, aec=100 * E18)
        protocol.aec.approve(ALICE, protocol.token_pool.address, 100 * E18)
        protocol.token_pool.stake(ALICE, 100 * E18, 0)
        assert protocol.token_pool.earned(ALICE) == 0

        clock.advance(86_400)
        assert protocol.token_pool.earned(ALICE) > 0


# ============================================================
# Admin Tests
# ============================================================

class TestAdmin:
    """Tests for deployer configuration."""

    def test_only_deployer(self, protocol):
        with pytest.raises(AuthorizationError, match="Not authorized"):
            protocol.engine.set_slippage_tolerance(ALICE, 200)

    def test_set_slippage(self, protocol):
        protocol.engine.set_slippage_tolerance(DEPLOYER_ADDRESS, 200)
        assert protocol.engine.slippage_basis_points == 200
        assert protocol.engine.strategy.slippage_bps == 200

    def test_slippage_bounds(self, protocol):
        with pytest.raises(EngineError, match="Slippage too high"):
            protocol.engine.set_slippage_tolerance(DEPLOYER_ADDRESS, 2_501)

    def test_cooldown_bounds(self, protocol):
        with pytest.raises(EngineError, match="Cooldown too long"):
            protocol.engine.set_process_cooldown(DEPLOYER_ADDRESS, MAX_COOLDOWN + 1)
        protocol.engine.set_process_cooldown(DEPLOYER_ADDRESS, MAX_COOLDOWN)

    def test_min_process_amount(self, protocol):
        with pytest.raises(EngineError, match="Invalid minimum process amount"):
            protocol.engine.set_min_aec_to_process(DEPLOYER_ADDRESS, 0)
        protocol.engine.set_min_aec_to_process(DEPLOYER_ADDRESS, 10 * E18)
        protocol.fund_tax(10 * E18)
        assert protocol.engine.run_cycle(KEEPER).processed

    def test_update_config_checks_before_assigning(self, protocol):
        engine = protocol.engine
        slippage, minimum = engine.slippage_basis_points, engine.min_aec_to_process

        with pytest.raises(EngineError, match="Invalid minimum process amount"):
            engine.update_config(DEPLOYER_ADDRESS, slippage_bps=200, min_aec_to_process=0)
        assert engine.slippage_basis_points == slippage
        assert engine.min_aec_to_process == minimum

        updated = engine.update_config(DEPLOYER_ADDRESS, slippage_bps=200, process_cooldown=60)
        assert updated == {"slippage_bps": 200, "process_cooldown": 60}
        assert engine.strategy.slippage_bps == 200
        assert engine.events[-1]["event_type"] == "ConfigUpdated"

    def test_update_config_only_deployer(self, protocol):
        with pytest.raises(AuthorizationError):
            protocol.engine.update_config(ALICE, process_cooldown=60)

    def test_staking_contracts_set_once(self, protocol):
        with pytest.raises(EngineError, match="Already set"):
            protocol.engine.set_staking_contracts(
                DEPLOYER_ADDRESS, protocol.token_pool, protocol.nft_pool
            )

    def test_renounce(self, protocol):
        engine = protocol.engine
        engine.renounce_deployer_privileges(DEPLOYER_ADDRESS)

        assert not engine.deployer_privileges_active
        with pytest.raises(AuthorizationError):
            engine.set_process_cooldown(DEPLOYER_ADDRESS, 60)
        with pytest.raises(AuthorizationError):
            engine.renounce_deployer_privileges(DEPLOYER_ADDRESS)

    def test_rescue_foreign_tokens(self, protocol):
        foreign = FungibleToken("Stray", "STRAY", "0x00000000000000000000000000000000000057a7")
        foreign.mint(ENGINE_ADDRESS, 5 * E18)

        assert protocol.engine.rescue_foreign_tokens(DEPLOYER_ADDRESS, foreign, 10 * E18) == 5 * E18
        assert foreign.balance_of(DEPLOYER_ADDRESS) == 5 * E18

    def test_cannot_rescue_protocol_tokens(self, protocol):
        with pytest.raises(EngineError, match="Cannot rescue AEC"):
            protocol.engine.rescue_foreign_tokens(DEPLOYER_ADDRESS, protocol.aec, 1)
        with pytest.raises(EngineError, match="Cannot rescue stablecoin"):
            protocol.engine.rescue_foreign_tokens(DEPLOYER_ADDRESS, protocol.stablecoin, 1)

    def test_constructor_rejects_missing_router(self, protocol, clock):
        with pytest.raises(EngineError, match="Invalid router address"):
            PerpetualEngine(
                "0x00000000000000000000000000000000000e4618", protocol.aec, protocol.stablecoin,
                None, protocol.lp_pool, protocol.endowment, DEPLOYER_ADDRESS, clock,
            )


# ============================================================
# View Tests
# ============================================================

class TestViews:
    """Tests for preview, health and status."""

    def test_preview_matches_cycle(self, funded_protocol):
        engine = funded_protocol.engine
        preview = engine.get_cycle_preview()

        assert preview["would_process"] is True
        assert preview["caller_reward"] == str(10 * E18)
        assert preview["burn_amount"] == str(1_998 * E18)
        assert preview["refill_split"]["token"] == str(1_498_500 * 10**15)
        assert funded_protocol.aec.balance_of(TAX_HOLDER_ADDRESS) == 10_000 * E18

        report = engine.run_cycle(KEEPER)
        assert str(report.burned) == preview["burn_amount"]

    def test_healthy_after_deploy(self, protocol):
        healthy, details = protocol.engine.is_healthy()
        assert healthy
        assert details["issues"] == []

    def test_status(self, funded_protocol):
        funded_protocol.engine.run_cycle(KEEPER)
        status = funded_protocol.engine.get_engine_status()

        assert status["cycle_count"] == 1
        assert status["totals"]["burned"] == str(1_998 * E18)
        assert status["pools"]["token"] == funded_protocol.token_pool.address
