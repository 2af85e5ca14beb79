"""
Tests for the swap and liquidity strategy (src/liquidity_strategy.py)

Tests cover:
- Adaptive swap rounds, halving on failure and the minimum chunk
- The liquidity ladder and its fallback order
- Token caps on the ladder
- Allowance resets after every router call
- Carry-forward of unutilized balances
"""

from unittest.mock import patch

import pytest

from amm_router import ConstantProductRouter
from clock import ManualClock
from engine_errors import RouterError
from liquidity_strategy import (
    LIQUIDITY_LADDER,
    MAX_SWAP_ATTEMPTS,
    SwapLiquidityStrategy,
)
from token_ledger import ONE_TOKEN, FungibleToken

E18 = ONE_TOKEN
OWNER = "0x00000000000000000000000000000000000e9e00"
SEEDER = "0x0000000000000000000000000000000000005eed"


@pytest.fixture
def clock():
    return ManualClock(start=1_700_000_000)


@pytest.fixture
def aec():
    return FungibleToken("AEC", "AEC", "0x0000000000000000000000000000000000000aec")


@pytest.fixture
def usds():
    return FungibleToken("USD Stablecoin", "USDS", "0x0000000000000000000000000000000000005dc0")


@pytest.fixture
def router(aec, usds, clock):
    """Router with a 1,000,000 AEC / 100,000 USDS pair."""
    router = ConstantProductRouter("0x000000000000000000000000000000000000a477", clock)
    router.create_pair(aec, usds)
    aec.mint(SEEDER, 1_000_000 * E18)
    usds.mint(SEEDER, 100_000 * E18)
    aec.approve(SEEDER, router.address, 1_000_000 * E18)
    usds.approve(SEEDER, router.address, 100_000 * E18)
    router.add_liquidity(SEEDER, aec, usds, 1_000_000 * E18, 100_000 * E18, 0, 0,
                         SEEDER, clock.now() + 300)
    return router


@pytest.fixture
def strategy(aec, usds, router, clock):
    aec.mint(OWNER, 1_000 * E18)
    return SwapLiquidityStrategy(OWNER, aec, usds, router, clock, slippage_bps=100)


def failing_first_quote(router):
    """Wrap get_amounts_out so only the first quote fails."""
    real = router.get_amounts_out
    calls = []

    def quote(amount, path):
        calls.append(amount)
        if len(calls) == 1:
            raise RouterError("INSUFFICIENT_LIQUIDITY")
        return real(amount, path)

    return quote


# ============================================================
# Adaptive Swap Tests
# ============================================================

class TestAdaptiveSwap:
    """Tests for phase A."""

    def test_all_rounds_succeed(self, strategy, usds):
        swap = strategy.adaptive_swap(500 * E18)

        assert swap.attempts == MAX_SWAP_ATTEMPTS
        assert swap.failures == 0
        # 250 + 125 + 62.5 + 31.25 + 15.625
        assert swap.swapped == 484_375 * 10**15
        assert swap.proceeds == usds.balance_of(OWNER)

    def test_failed_round_halves_earmark(self, strategy, router):
        with patch.object(router, "get_amounts_out", side_effect=failing_first_quote(router)):
            swap = strategy.adaptive_swap(500 * E18)

        assert swap.failures == 1
        assert swap.attempts == MAX_SWAP_ATTEMPTS
        # 125 + 62.5 + 31.25 + 15.625 after the first round is dropped
        assert swap.swapped == 234_375 * 10**15

    def test_stops_below_minimum_chunk(self, strategy):
        swap = strategy.adaptive_swap(3 * 10**15)
        assert swap.attempts == 1
        assert swap.swapped == 15 * 10**14

    def test_swap_allowance_reset(self, strategy, aec, router):
        strategy.adaptive_swap(500 * E18)
        assert aec.allowance(OWNER, router.address) == 0

    def test_swap_revert_keeps_balance(self, strategy, aec, router):
        with patch.object(router, "swap_exact_tokens_for_tokens_supporting_fee_on_transfer_tokens",
                          side_effect=RouterError("INSUFFICIENT_OUTPUT_AMOUNT")):
            swap = strategy.adaptive_swap(500 * E18)

        assert swap.swapped == 0
        assert swap.failures == swap.attempts
        assert aec.balance_of(OWNER) == 1_000 * E18
        assert aec.allowance(OWNER, router.address) == 0

    def test_swap_events(self, strategy):
        strategy.adaptive_swap(500 * E18)
        attempts = [e for e in strategy.events if e["event_type"] == "SwapAttempt"]
        assert len(attempts) == MAX_SWAP_ATTEMPTS
        assert all(e["data"]["success"] for e in attempts)


# ============================================================
# Liquidity Ladder Tests
# ============================================================

class TestLiquidityLadder:
    """Tests for phase B and the full execute flow."""

    def test_ladder_order(self):
        assert [a.name for a in LIQUIDITY_LADDER] == [
            "conservative", "token_heavy", "paired_heavy", "minimal",
        ]
        assert LIQUIDITY_LADDER[-1].min_accept_bps == 250

    def test_conservative_succeeds_on_deep_pool(self, strategy, router, aec, usds):
        outcome = strategy.execute(1_000 * E18)

        assert outcome.success
        assert outcome.strategy == "conservative"
        assert outcome.attempts == 1
        assert outcome.reason is None
        pair = router.get_pair(aec, usds)
        assert pair.lp_token.balance_of(OWNER) == outcome.lp_minted

    def test_allowances_reset_after_success(self, strategy, router, aec, usds):
        strategy.execute(1_000 * E18)
        assert aec.allowance(OWNER, router.address) == 0
        assert usds.allowance(OWNER, router.address) == 0

    def test_amount_too_small(self, strategy, aec):
        outcome = strategy.execute(E18 - 1)

        assert not outcome.success
        assert outcome.reason == "Amount too small"
        assert outcome.unutilized_token == E18 - 1
        assert aec.balance_of(OWNER) == 1_000 * E18
        assert strategy.events[-1]["event_type"] == "UnutilizedAecAccumulated"

    def test_no_proceeds(self, strategy, router, aec):
        with patch.object(router, "get_amounts_out", side_effect=RouterError("PAIR_NOT_FOUND")):
            outcome = strategy.execute(1_000 * E18)

        assert outcome.reason == "Swap produced no proceeds"
        assert outcome.attempts == 0
        assert aec.balance_of(OWNER) == 1_000 * E18

    def test_all_rungs_fail(self, strategy, router, aec, usds):
        with patch.object(router, "add_liquidity",
                          side_effect=RouterError("INSUFFICIENT_B_AMOUNT")) as add:
            outcome = strategy.execute(1_000 * E18)

        assert add.call_count == len(LIQUIDITY_LADDER)
        assert outcome.attempts == len(LIQUIDITY_LADDER)
        assert outcome.reason == "All liquidity strategies failed"
        assert outcome.lp_minted == 0
        assert outcome.unutilized_paired == usds.balance_of(OWNER) > 0
        assert aec.allowance(OWNER, router.address) == 0
        assert usds.allowance(OWNER, router.address) == 0

    def test_token_cap_falls_through_to_minimal(self, strategy, aec):
        # The swap consumes 484.375 of the cap, leaving 100 for the ladder
        cap = 484_375 * 10**15 + 100 * E18
        outcome = strategy.execute(1_000 * E18, token_cap=cap)

        assert outcome.success
        assert outcome.strategy == "minimal"
        assert outcome.attempts == 4
        assert outcome.swapped + outcome.token_used <= cap

    def test_leftover_stablecoin_joins_next_attempt(self, strategy, usds, router):
        usds.mint(OWNER, 10 * E18)
        outcome = strategy.execute(1_000 * E18)

        assert outcome.success
        assert outcome.paired_used > outcome.proceeds

    def test_rung_events(self, strategy, router):
        with patch.object(router, "add_liquidity", side_effect=RouterError("EXPIRED")):
            strategy.execute(1_000 * E18)

        rungs = [e["data"]["strategy"] for e in strategy.events
                 if e["event_type"] == "FlexibleStrategyAttempt"]
        assert rungs == [a.name for a in LIQUIDITY_LADDER]

    def test_outcome_to_dict(self, strategy):
        data = strategy.execute(1_000 * E18).to_dict()
        assert data["success"] is True
        assert data["attempts"] == 1
        assert isinstance(data["lp_minted"], str)
