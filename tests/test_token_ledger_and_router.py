"""
Tests for the token ledgers and the AMM router.

Tests cover:
- Fungible transfers, allowances, burns and failure atomicity
- NFT ownership and approvals
- Constant-product quotes and the swap fee
- Pair creation, first mint and proportional liquidity
- Router reverts: deadlines, minimum outputs and missing pairs
"""

import pytest

from amm_router import (
    MINIMUM_LIQUIDITY,
    ConstantProductRouter,
    get_amount_out,
    quote,
)
from clock import ManualClock
from engine_errors import (
    InsufficientAllowanceError,
    InsufficientBalanceError,
    RouterError,
    TokenError,
)
from token_ledger import DEAD_ADDRESS, ZERO_ADDRESS, FungibleToken, NFTCollection

ALICE = "0x000000000000000000000000000000000000a11c"
BOB = "0x0000000000000000000000000000000000000b0b"
ROUTER = "0x000000000000000000000000000000000000a477"


@pytest.fixture
def token():
    return FungibleToken("AEC", "AEC", "0x0000000000000000000000000000000000000aec")


@pytest.fixture
def stable():
    return FungibleToken("USD Stablecoin", "USDS", "0x0000000000000000000000000000000000005dc0")


@pytest.fixture
def clock():
    return ManualClock(start=1_700_000_000)


@pytest.fixture
def router(clock):
    return ConstantProductRouter(ROUTER, clock)


def seed(router, token, stable, amount_token, amount_stable, clock):
    token.mint(ALICE, amount_token)
    stable.mint(ALICE, amount_stable)
    token.approve(ALICE, ROUTER, amount_token)
    stable.approve(ALICE, ROUTER, amount_stable)
    return router.add_liquidity(ALICE, token, stable, amount_token, amount_stable, 0, 0,
                                ALICE, clock.now() + 60)


# ============================================================
# Fungible Token Tests
# ============================================================

class TestFungibleToken:
    """Tests for balances, allowances and burns."""

    def test_mint_and_transfer(self, token):
        token.mint(ALICE, 100)
        token.transfer(ALICE, BOB, 40)

        assert token.balance_of(ALICE) == 60
        assert token.balance_of(BOB) == 40
        assert token.total_supply == 100
        assert token.holders() == {ALICE: 60, BOB: 40}

    def test_transfer_exceeds_balance(self, token):
        token.mint(ALICE, 10)
        with pytest.raises(InsufficientBalanceError, match="transfer amount exceeds balance"):
            token.transfer(ALICE, BOB, 11)
        assert token.balance_of(ALICE) == 10

    def test_transfer_to_zero_address(self, token):
        token.mint(ALICE, 10)
        with pytest.raises(TokenError, match="zero address"):
            token.transfer(ALICE, ZERO_ADDRESS, 1)

    def test_transfer_from_uses_allowance(self, token):
        token.mint(ALICE, 100)
        token.approve(ALICE, BOB, 30)
        token.transfer_from(BOB, ALICE, BOB, 20)

        assert token.allowance(ALICE, BOB) == 10
        assert token.balance_of(BOB) == 20

    def test_transfer_from_over_allowance(self, token):
        token.mint(ALICE, 100)
        token.approve(ALICE, BOB, 5)
        with pytest.raises(InsufficientAllowanceError):
            token.transfer_from(BOB, ALICE, BOB, 6)
        assert token.allowance(ALICE, BOB) == 5

    def test_failed_transfer_from_keeps_allowance(self, token):
        token.mint(ALICE, 1)
        token.approve(ALICE, BOB, 50)
        with pytest.raises(InsufficientBalanceError):
            token.transfer_from(BOB, ALICE, BOB, 50)
        assert token.allowance(ALICE, BOB) == 50

    def test_approve_overwrites(self, token):
        token.approve(ALICE, BOB, 100)
        token.approve(ALICE, BOB, 0)
        assert token.allowance(ALICE, BOB) == 0

    def test_burn(self, token):
        token.mint(ALICE, 100)
        token.burn(ALICE, 25)

        assert token.total_supply == 75
        assert token.total_burned == 25
        assert token.transfers[-1].kind == "burn"

    def test_burn_exceeds_balance(self, token):
        token.mint(ALICE, 1)
        with pytest.raises(InsufficientBalanceError):
            token.burn(ALICE, 2)
        assert token.total_burned == 0

    def test_invalid_token_address(self):
        with pytest.raises(TokenError, match="Invalid token address"):
            FungibleToken("Bad", "BAD", ZERO_ADDRESS)

    def test_statistics(self, token):
        token.mint(ALICE, 100)
        stats = token.get_statistics()
        assert stats["total_supply"] == "100"
        assert stats["holders"] == 1


# ============================================================
# NFT Collection Tests
# ============================================================

class TestNFTCollection:
    """Tests for ownership and approvals."""

    @pytest.fixture
    def nft(self):
        return NFTCollection("Members", "MBR", "0x0000000000000000000000000000000000000f7e")

    def test_sequential_ids(self, nft):
        assert nft.mint(ALICE) == 1
        assert nft.mint(ALICE) == 2
        assert nft.tokens_of(ALICE) == [1, 2]
        assert nft.balance_of(ALICE) == 2

    def test_transfer_requires_approval(self, nft):
        token_id = nft.mint(ALICE)
        with pytest.raises(TokenError, match="not token owner or approved"):
            nft.transfer_from(BOB, ALICE, BOB, token_id)

    def test_single_token_approval_cleared_on_transfer(self, nft):
        token_id = nft.mint(ALICE)
        nft.approve(ALICE, BOB, token_id)
        nft.transfer_from(BOB, ALICE, BOB, token_id)

        assert nft.owner_of(token_id) == BOB
        assert not nft.is_approved(ROUTER, token_id)

    def test_operator_approval(self, nft):
        first, second = nft.mint(ALICE), nft.mint(ALICE)
        nft.set_approval_for_all(ALICE, BOB, True)
        assert nft.is_approved(BOB, first) and nft.is_approved(BOB, second)

        nft.set_approval_for_all(ALICE, BOB, False)
        assert not nft.is_approved(BOB, first)

    def test_wrong_owner(self, nft):
        token_id = nft.mint(ALICE)
        with pytest.raises(TokenError, match="incorrect owner"):
            nft.transfer_from(BOB, BOB, ALICE, token_id)

    def test_approve_requires_owner(self, nft):
        token_id = nft.mint(ALICE)
        with pytest.raises(TokenError):
            nft.approve(BOB, BOB, token_id)

    def test_unknown_token(self, nft):
        assert nft.owner_of(99) is None
        assert not nft.is_approved(ALICE, 99)


# ============================================================
# Router Math Tests
# ============================================================

class TestRouterMath:
    """Tests for the constant-product formulas."""

    def test_amount_out_with_fee(self):
        # 1000 * 997 * 10000 / (10000 * 1000 + 1000 * 997)
        assert get_amount_out(1_000, 10_000, 10_000) == 906

    def test_amount_out_requires_input(self):
        with pytest.raises(RouterError, match="INSUFFICIENT_INPUT_AMOUNT"):
            get_amount_out(0, 10, 10)

    def test_amount_out_requires_liquidity(self):
        with pytest.raises(RouterError, match="INSUFFICIENT_LIQUIDITY"):
            get_amount_out(10, 0, 10)

    def test_quote(self):
        assert quote(100, 1_000, 250) == 25


# ============================================================
# Router Tests
# ============================================================

class TestRouter:
    """Tests for pairs, liquidity and swaps."""

    def test_create_pair_once(self, router, token, stable):
        router.create_pair(token, stable)
        assert router.get_pair(stable, token) is not None
        with pytest.raises(RouterError, match="PAIR_EXISTS"):
            router.create_pair(stable, token)

    def test_identical_tokens(self, router, token):
        with pytest.raises(RouterError, match="IDENTICAL_ADDRESSES"):
            router.create_pair(token, token)

    def test_first_mint_locks_minimum_liquidity(self, router, token, stable, clock):
        used_a, used_b, liquidity = seed(router, token, stable, 4_000, 1_000, clock)

        assert (used_a, used_b) == (4_000, 1_000)
        assert liquidity == 2_000 - MINIMUM_LIQUIDITY
        pair = router.get_pair(token, stable)
        assert pair.lp_token.balance_of(DEAD_ADDRESS) == MINIMUM_LIQUIDITY
        assert pair.lp_token.balance_of(ALICE) == liquidity

    def test_proportional_add(self, router, token, stable, clock):
        seed(router, token, stable, 4_000_000, 1_000_000, clock)
        token.mint(BOB, 10_000)
        stable.mint(BOB, 10_000)
        token.approve(BOB, ROUTER, 10_000)
        stable.approve(BOB, ROUTER, 10_000)

        used_a, used_b, _ = router.add_liquidity(BOB, token, stable, 4_000, 10_000, 0, 0,
                                                 BOB, clock.now())
        assert (used_a, used_b) == (4_000, 1_000)
        assert stable.balance_of(BOB) == 9_000

    def test_add_below_minimum_reverts_atomically(self, router, token, stable, clock):
        seed(router, token, stable, 4_000_000, 1_000_000, clock)
        token.mint(BOB, 4_000)
        stable.mint(BOB, 500)
        token.approve(BOB, ROUTER, 4_000)
        stable.approve(BOB, ROUTER, 500)

        with pytest.raises(RouterError, match="INSUFFICIENT_A_AMOUNT"):
            router.add_liquidity(BOB, token, stable, 4_000, 500, 4_000, 500, BOB, clock.now())
        assert token.balance_of(BOB) == 4_000
        assert stable.balance_of(BOB) == 500

    def test_add_without_allowance(self, router, token, stable, clock):
        seed(router, token, stable, 4_000, 1_000, clock)
        token.mint(BOB, 400)
        stable.mint(BOB, 100)
        token.approve(BOB, ROUTER, 400)

        with pytest.raises(RouterError, match="TRANSFER_FROM_FAILED"):
            router.add_liquidity(BOB, token, stable, 400, 100, 0, 0, BOB, clock.now())
        assert token.balance_of(BOB) == 400

    def test_swap(self, router, token, stable, clock):
        seed(router, token, stable, 10_000, 10_000, clock)
        token.mint(BOB, 1_000)
        token.approve(BOB, ROUTER, 1_000)

        out = router.swap_exact_tokens_for_tokens_supporting_fee_on_transfer_tokens(
            BOB, 1_000, 900, [token, stable], BOB, clock.now(),
        )
        assert out == 906
        assert stable.balance_of(BOB) == 906
        pair = router.get_pair(token, stable)
        assert pair.reserves_for(token) == (11_000, 10_000 - 906)

    def test_swap_minimum_output(self, router, token, stable, clock):
        seed(router, token, stable, 10_000, 10_000, clock)
        token.mint(BOB, 1_000)
        token.approve(BOB, ROUTER, 1_000)

        with pytest.raises(RouterError, match="INSUFFICIENT_OUTPUT_AMOUNT"):
            router.swap_exact_tokens_for_tokens_supporting_fee_on_transfer_tokens(
                BOB, 1_000, 907, [token, stable], BOB, clock.now(),
            )
        assert token.balance_of(BOB) == 1_000

    def test_expired_deadline(self, router, token, stable, clock):
        seed(router, token, stable, 10_000, 10_000, clock)
        with pytest.raises(RouterError, match="EXPIRED"):
            router.swap_exact_tokens_for_tokens_supporting_fee_on_transfer_tokens(
                BOB, 1, 0, [token, stable], BOB, clock.now() - 1,
            )

    def test_missing_pair(self, router, token, stable):
        with pytest.raises(RouterError, match="PAIR_NOT_FOUND"):
            router.get_amounts_out(100, [token, stable])

    def test_invalid_path(self, router, token):
        with pytest.raises(RouterError, match="INVALID_PATH"):
            router.get_amounts_out(100, [token])
