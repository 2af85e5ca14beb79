"""
AEC Perpetual Engine - Constant-Product AMM Router

Uniswap-V2 style router over in-process liquidity pairs. The engine only
relies on three calls:

- get_amounts_out(amount_in, path) -> amounts
- swap_exact_tokens_for_tokens_supporting_fee_on_transfer_tokens(...)
- add_liquidity(...) -> (used_a, used_b, liquidity)

Every call validates quotes, deadlines, allowances and minimums before moving
any token, so a reverted call leaves all balances unchanged.
"""

import logging
import math
from typing import Any, Protocol

from clock import Clock
from engine_errors import RouterError
from token_ledger import DEAD_ADDRESS, FungibleToken

logger = logging.getLogger(__name__)

# 0.3% swap fee
FEE_NUMERATOR = 997
FEE_DENOMINATOR = 1000

# LP units permanently locked on the first mint
MINIMUM_LIQUIDITY = 1000


class RouterLike(Protocol):
    """AMM surface consumed by the liquidity strategy."""

    address: str

    def get_pair(self, token_a: FungibleToken, token_b: FungibleToken) -> Any: ...

    def get_amounts_out(self, amount_in: int, path: list[FungibleToken]) -> list[int]: ...

    def swap_exact_tokens_for_tokens_supporting_fee_on_transfer_tokens(
        self, caller: str, amount_in: int, amount_out_min: int,
        path: list[FungibleToken], to: str, deadline: int,
    ) -> int: ...

    def add_liquidity(
        self, caller: str, token_a: FungibleToken, token_b: FungibleToken,
        amount_a_desired: int, amount_b_desired: int,
        amount_a_min: int, amount_b_min: int, to: str, deadline: int,
    ) -> tuple[int, int, int]: ...


def get_amount_out(amount_in: int, reserve_in: int, reserve_out: int) -> int:
    """Constant-product output for an exact input, after the swap fee."""
    if amount_in <= 0:
        raise RouterError("INSUFFICIENT_INPUT_AMOUNT", action="quote")
    if reserve_in <= 0 or reserve_out <= 0:
        raise RouterError("INSUFFICIENT_LIQUIDITY", action="quote")
    amount_in_with_fee = amount_in * FEE_NUMERATOR
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * FEE_DENOMINATOR + amount_in_with_fee
    return numerator // denominator


def quote(amount_a: int, reserve_a: int, reserve_b: int) -> int:
    """Amount of B equivalent to amount_a at the current price."""
    if amount_a <= 0:
        raise RouterError("INSUFFICIENT_AMOUNT", action="quote")
    if reserve_a <= 0 or reserve_b <= 0:
        raise RouterError("INSUFFICIENT_LIQUIDITY", action="quote")
    return amount_a * reserve_b // reserve_a


class LiquidityPair:
    """Reserves for one token pair plus its LP token."""

    def __init__(self, token0: FungibleToken, token1: FungibleToken, address: str):
        self.token0 = token0
        self.token1 = token1
        self.address = address
        self.lp_token = FungibleToken(
            name=f"{token0.symbol}-{token1.symbol} LP",
            symbol=f"{token0.symbol}-{token1.symbol}-LP",
            address=f"{address}:lp",
        )
        self.reserve0 = 0
        self.reserve1 = 0

    def reserves_for(self, token_in: FungibleToken) -> tuple[int, int]:
        if token_in is self.token0:
            return self.reserve0, self.reserve1
        return self.reserve1, self.reserve0

    def sync(self) -> None:
        self.reserve0 = self.token0.balance_of(self.address)
        self.reserve1 = self.token1.balance_of(self.address)

    def price_of(self, token: FungibleToken) -> float:
        """Spot price of ``token`` in units of the other token."""
        reserve_in, reserve_out = self.reserves_for(token)
        if reserve_in == 0:
            return 0.0
        return reserve_out / reserve_in

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "token0": self.token0.symbol,
            "token1": self.token1.symbol,
            "reserve0": str(self.reserve0),
            "reserve1": str(self.reserve1),
            "lp_supply": str(self.lp_token.total_supply),
        }


class ConstantProductRouter:
    """Router that creates pairs and routes single-hop swaps through them."""

    def __init__(self, address: str, clock: Clock):
        self.address = address
        self.clock = clock
        self._pairs: dict[frozenset[str], LiquidityPair] = {}

    def create_pair(self, token_a: FungibleToken, token_b: FungibleToken) -> LiquidityPair:
        key = frozenset((token_a.address, token_b.address))
        if token_a.address == token_b.address:
            raise RouterError("IDENTICAL_ADDRESSES", action="create_pair")
        if key in self._pairs:
            raise RouterError("PAIR_EXISTS", action="create_pair")
        token0, token1 = sorted((token_a, token_b), key=lambda t: t.address)
        pair = LiquidityPair(token0, token1, address=f"pair:{token0.symbol}-{token1.symbol}")
        self._pairs[key] = pair
        logger.info(f"Created pair {pair.address}")
        return pair

    def get_pair(self, token_a: FungibleToken, token_b: FungibleToken) -> LiquidityPair | None:
        return self._pairs.get(frozenset((token_a.address, token_b.address)))

    def _require_pair(self, token_a: FungibleToken, token_b: FungibleToken) -> LiquidityPair:
        pair = self.get_pair(token_a, token_b)
        if pair is None:
            raise RouterError("PAIR_NOT_FOUND", action="lookup")
        return pair

    def _check_deadline(self, deadline: int, action: str) -> None:
        if deadline < self.clock.now():
            raise RouterError("EXPIRED", action=action)

    # =========================================================================
    # Quotes
    # =========================================================================

    def get_amounts_out(self, amount_in: int, path: list[FungibleToken]) -> list[int]:
        if len(path) < 2:
            raise RouterError("INVALID_PATH", action="get_amounts_out")
        amounts = [amount_in]
        for token_in, token_out in zip(path, path[1:]):
            pair = self._require_pair(token_in, token_out)
            reserve_in, reserve_out = pair.reserves_for(token_in)
            amounts.append(get_amount_out(amounts[-1], reserve_in, reserve_out))
        return amounts

    # =========================================================================
    # Swaps
    # =========================================================================

    def swap_exact_tokens_for_tokens_supporting_fee_on_transfer_tokens(
        self,
        caller: str,
        amount_in: int,
        amount_out_min: int,
        path: list[FungibleToken],
        to: str,
        deadline: int,
    ) -> int:
        """
        Swap an exact input along a single-hop path.

        Returns the amount delivered to ``to``. Callers that need to tolerate
        fee-on-transfer tokens should measure their own balance delta.
        """
        self._check_deadline(deadline, "swap")
        if len(path) != 2:
            raise RouterError("INVALID_PATH", action="swap")
        token_in, token_out = path
        pair = self._require_pair(token_in, token_out)

        reserve_in, reserve_out = pair.reserves_for(token_in)
        amount_out = get_amount_out(amount_in, reserve_in, reserve_out)
        if amount_out < amount_out_min:
            raise RouterError("INSUFFICIENT_OUTPUT_AMOUNT", action="swap",
                              details={"amount_out": amount_out, "min": amount_out_min})
        if amount_out >= reserve_out:
            raise RouterError("INSUFFICIENT_LIQUIDITY", action="swap")

        token_in.transfer_from(self.address, caller, pair.address, amount_in)
        token_out.transfer(pair.address, to, amount_out)
        pair.sync()
        logger.debug(f"Swapped {amount_in} {token_in.symbol} for {amount_out} {token_out.symbol}")
        return amount_out

    # =========================================================================
    # Liquidity
    # =========================================================================

    def add_liquidity(
        self,
        caller: str,
        token_a: FungibleToken,
        token_b: FungibleToken,
        amount_a_desired: int,
        amount_b_desired: int,
        amount_a_min: int,
        amount_b_min: int,
        to: str,
        deadline: int,
    ) -> tuple[int, int, int]:
        self._check_deadline(deadline, "add_liquidity")
        pair = self.get_pair(token_a, token_b) or self.create_pair(token_a, token_b)
        reserve_a, reserve_b = pair.reserves_for(token_a)

        if reserve_a == 0 and reserve_b == 0:
            amount_a, amount_b = amount_a_desired, amount_b_desired
        else:
            amount_b_optimal = quote(amount_a_desired, reserve_a, reserve_b)
            if amount_b_optimal <= amount_b_desired:
                if amount_b_optimal < amount_b_min:
                    raise RouterError("INSUFFICIENT_B_AMOUNT", action="add_liquidity")
                amount_a, amount_b = amount_a_desired, amount_b_optimal
            else:
                amount_a_optimal = quote(amount_b_desired, reserve_b, reserve_a)
                if amount_a_optimal > amount_a_desired:
                    raise RouterError("INSUFFICIENT_A_AMOUNT", action="add_liquidity")
                if amount_a_optimal < amount_a_min:
                    raise RouterError("INSUFFICIENT_A_AMOUNT", action="add_liquidity")
                amount_a, amount_b = amount_a_optimal, amount_b_desired

        lp_supply = pair.lp_token.total_supply
        if lp_supply == 0:
            liquidity = math.isqrt(amount_a * amount_b) - MINIMUM_LIQUIDITY
        else:
            liquidity = min(amount_a * lp_supply // reserve_a, amount_b * lp_supply // reserve_b)
        if liquidity <= 0:
            raise RouterError("INSUFFICIENT_LIQUIDITY_MINTED", action="add_liquidity")

        # Both pulls are checked up front so a failure cannot leave one side moved
        for token, amount in ((token_a, amount_a), (token_b, amount_b)):
            if token.allowance(caller, self.address) < amount:
                raise RouterError("TRANSFER_FROM_FAILED", action="add_liquidity",
                                  details={"token": token.symbol, "amount": amount})
            if token.balance_of(caller) < amount:
                raise RouterError("TRANSFER_FROM_FAILED", action="add_liquidity",
                                  details={"token": token.symbol, "amount": amount})

        token_a.transfer_from(self.address, caller, pair.address, amount_a)
        token_b.transfer_from(self.address, caller, pair.address, amount_b)
        if lp_supply == 0:
            pair.lp_token.mint(DEAD_ADDRESS, MINIMUM_LIQUIDITY)
        pair.lp_token.mint(to, liquidity)
        pair.sync()

        logger.debug(f"Added liquidity {amount_a}/{amount_b}, minted {liquidity} LP to {to}")
        return amount_a, amount_b, liquidity

    def get_statistics(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "pairs": [pair.to_dict() for pair in self._pairs.values()],
        }
