"""
AEC Perpetual Engine - Swap & Liquidity Strategy

Turns the engine's liquidity share into AEC/stablecoin liquidity despite
unpredictable AMM depth, without ever failing the surrounding cycle.

Phase A (adaptive swap):
    Half of the allocation is earmarked for conversion. Each round tries to
    swap half of what is still earmarked. A successful round removes the
    swapped amount from the earmark; a failed round halves the earmark
    without swapping. At most MAX_SWAP_ATTEMPTS rounds run.

Phase B (liquidity ladder):
    Ordered LiquidityAttempt descriptors are tried until one succeeds:
    conservative, token-heavy, paired-heavy, minimal. Desired amounts are
    capped at what is actually on hand and the router allowance is reset to
    zero after every attempt.

Anything not converted or not deposited stays in the owner's balance and is
picked up by a later cycle.
"""

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from amm_router import RouterLike
from clock import Clock
from guards import ReentrancyGuard
from reward_ledger import BASIS_POINTS
from token_ledger import ONE_TOKEN, FungibleToken

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

MAX_SWAP_ATTEMPTS = 5
MIN_AEC_FOR_LIQUIDITY = ONE_TOKEN
MIN_SWAP_AMOUNT = 10**15
SWAP_DEADLINE_SECONDS = 300


@dataclass(frozen=True)
class LiquidityAttempt:
    """One rung of the liquidity ladder, all values in basis points."""

    name: str
    token_bps: int
    paired_bps: int
    min_accept_bps: int


LIQUIDITY_LADDER: tuple[LiquidityAttempt, ...] = (
    LiquidityAttempt("conservative", 10_000, 10_000, 8_000),
    LiquidityAttempt("token_heavy", 12_000, 10_000, 5_000),
    LiquidityAttempt("paired_heavy", 10_000, 12_000, 5_000),
    LiquidityAttempt("minimal", 2_500, 2_500, 250),
)


class StrategyEventType(Enum):
    """Events emitted while converting and depositing liquidity."""

    SWAP_ATTEMPT = "SwapAttempt"
    STRATEGY_ATTEMPT = "FlexibleStrategyAttempt"
    LIQUIDITY_ADDED = "LiquidityAdded"
    UNUTILIZED = "UnutilizedAecAccumulated"


@dataclass
class SwapOutcome:
    """Result of the adaptive swap phase."""

    requested: int = 0
    swapped: int = 0
    proceeds: int = 0
    attempts: int = 0
    failures: int = 0


@dataclass
class LiquidityOutcome:
    """Everything the strategy did with one liquidity allocation."""

    allocated: int = 0
    swapped: int = 0
    proceeds: int = 0
    token_used: int = 0
    paired_used: int = 0
    lp_minted: int = 0
    strategy: str | None = None
    attempts: int = 0
    unutilized_token: int = 0
    unutilized_paired: int = 0
    reason: str | None = None

    @property
    def success(self) -> bool:
        return self.lp_minted > 0

    def to_dict(self) -> dict[str, Any]:
        result = {k: (str(v) if isinstance(v, int) and k != "attempts" else v)
                  for k, v in asdict(self).items()}
        result["success"] = self.success
        return result


EventSink = Callable[[StrategyEventType, dict[str, Any]], None]


class SwapLiquidityStrategy:
    """Adaptive AEC -> stablecoin conversion plus the liquidity fallback ladder."""

    def __init__(
        self,
        owner: str,
        token: FungibleToken,
        paired_token: FungibleToken,
        router: RouterLike,
        clock: Clock,
        slippage_bps: int,
        swap_guard: ReentrancyGuard | None = None,
        emit_event: EventSink | None = None,
        ladder: tuple[LiquidityAttempt, ...] = LIQUIDITY_LADDER,
    ):
        self.owner = owner
        self.token = token
        self.paired_token = paired_token
        self.router = router
        self.clock = clock
        self.slippage_bps = slippage_bps
        self.swap_guard = swap_guard or ReentrancyGuard("swap")
        self.ladder = ladder
        self.events: list[dict[str, Any]] = []
        self._emit_event = emit_event or self._record_event

    def execute(self, liquidity_amount: int, token_cap: int | None = None) -> LiquidityOutcome:
        """
        Convert and deposit ``liquidity_amount`` of AEC.

        ``token_cap`` bounds how much AEC the swap and the ladder together may
        draw from the owner's balance, so amounts earmarked for other purposes
        stay untouched.
        """
        outcome = LiquidityOutcome(allocated=liquidity_amount)
        if liquidity_amount < MIN_AEC_FOR_LIQUIDITY:
            outcome.unutilized_token = liquidity_amount
            outcome.reason = "Amount too small"
            self._emit_unutilized(outcome)
            return outcome

        swap = self.adaptive_swap(liquidity_amount // 2)
        outcome.swapped = swap.swapped
        outcome.proceeds = swap.proceeds
        token_side = liquidity_amount - swap.swapped

        paired_on_hand = self.paired_token.balance_of(self.owner)
        if paired_on_hand == 0:
            outcome.unutilized_token = token_side
            outcome.reason = "Swap produced no proceeds"
            self._emit_unutilized(outcome)
            return outcome

        # The swap already drew on the capped balance
        if token_cap is not None:
            token_cap = max(0, token_cap - swap.swapped)
        # Stablecoin left over from earlier cycles joins this cycle's proceeds
        self.provide_liquidity(outcome, token_side, paired_on_hand, token_cap)
        if not outcome.success:
            outcome.unutilized_token = token_side
            outcome.unutilized_paired = self.paired_token.balance_of(self.owner)
            outcome.reason = "All liquidity strategies failed"
            self._emit_unutilized(outcome)
        return outcome

    # =========================================================================
    # Phase A: adaptive swap
    # =========================================================================

    def adaptive_swap(self, amount_to_convert: int) -> SwapOutcome:
        outcome = SwapOutcome(requested=amount_to_convert)
        remaining = amount_to_convert

        for attempt in range(1, MAX_SWAP_ATTEMPTS + 1):
            chunk = remaining // 2
            if chunk < MIN_SWAP_AMOUNT:
                break
            outcome.attempts = attempt
            ok, details = self._try_swap(chunk)
            self._emit_event(
                StrategyEventType.SWAP_ATTEMPT,
                {"attempt": attempt, "amount": chunk, "success": ok, **details},
            )
            if ok:
                remaining -= chunk
                outcome.swapped += chunk
                outcome.proceeds += details["received"]
            else:
                outcome.failures += 1
                remaining //= 2

        logger.debug(
            f"Adaptive swap: {outcome.swapped}/{amount_to_convert} swapped "
            f"in {outcome.attempts} attempt(s), {outcome.failures} failed"
        )
        return outcome

    def _try_swap(self, amount: int) -> tuple[bool, dict[str, Any]]:
        path = [self.token, self.paired_token]
        with self.swap_guard:
            try:
                quoted = self.router.get_amounts_out(amount, path)[-1]
            except Exception as exc:
                logger.warning(f"Swap quote failed for {amount}: {exc}")
                return False, {"reason": f"Quote failed: {exc}"}

            min_out = quoted * (BASIS_POINTS - self.slippage_bps) // BASIS_POINTS
            if min_out == 0:
                return False, {"reason": "Quote too small"}

            before = self.paired_token.balance_of(self.owner)
            self.token.approve(self.owner, self.router.address, amount)
            try:
                self.router.swap_exact_tokens_for_tokens_supporting_fee_on_transfer_tokens(
                    self.owner, amount, min_out, path, self.owner,
                    self.clock.now() + SWAP_DEADLINE_SECONDS,
                )
            except Exception as exc:
                logger.warning(f"Swap of {amount} failed: {exc}")
                return False, {"reason": f"Swap failed: {exc}", "min_out": min_out}
            finally:
                self.token.approve(self.owner, self.router.address, 0)

        received = self.paired_token.balance_of(self.owner) - before
        return True, {"received": received, "min_out": min_out}

    # =========================================================================
    # Phase B: liquidity ladder
    # =========================================================================

    def provide_liquidity(self, outcome: LiquidityOutcome, token_amount: int,
                          paired_amount: int, token_cap: int | None = None) -> LiquidityOutcome:
        token_available = self.token.balance_of(self.owner)
        if token_cap is not None:
            token_available = min(token_available, token_cap)
        paired_available = self.paired_token.balance_of(self.owner)

        for attempt in self.ladder:
            token_desired = min(token_amount * attempt.token_bps // BASIS_POINTS, token_available)
            paired_desired = min(paired_amount * attempt.paired_bps // BASIS_POINTS,
                                 paired_available)
            outcome.attempts += 1
            if token_desired == 0 or paired_desired == 0:
                self._emit_event(
                    StrategyEventType.STRATEGY_ATTEMPT,
                    {"strategy": attempt.name, "success": False, "reason": "Nothing to add"},
                )
                continue

            ok, details = self._try_add_liquidity(attempt, token_desired, paired_desired)
            self._emit_event(
                StrategyEventType.STRATEGY_ATTEMPT,
                {"strategy": attempt.name, "success": ok,
                 "token_desired": token_desired, "paired_desired": paired_desired, **details},
            )
            if ok:
                outcome.strategy = attempt.name
                outcome.token_used = details["token_used"]
                outcome.paired_used = details["paired_used"]
                outcome.lp_minted = details["lp_minted"]
                self._emit_event(
                    StrategyEventType.LIQUIDITY_ADDED,
                    {"strategy": attempt.name, "token_amount": outcome.token_used,
                     "paired_amount": outcome.paired_used, "lp_minted": outcome.lp_minted},
                )
                logger.info(f"Liquidity added via '{attempt.name}': {outcome.lp_minted} LP")
                return outcome

        logger.warning("All liquidity strategies failed, balances carried forward")
        return outcome

    def _try_add_liquidity(self, attempt: LiquidityAttempt, token_desired: int,
                           paired_desired: int) -> tuple[bool, dict[str, Any]]:
        token_min = token_desired * attempt.min_accept_bps // BASIS_POINTS
        paired_min = paired_desired * attempt.min_accept_bps // BASIS_POINTS

        self.token.approve(self.owner, self.router.address, token_desired)
        self.paired_token.approve(self.owner, self.router.address, paired_desired)
        try:
            token_used, paired_used, lp_minted = self.router.add_liquidity(
                self.owner, self.token, self.paired_token,
                token_desired, paired_desired, token_min, paired_min,
                self.owner, self.clock.now() + SWAP_DEADLINE_SECONDS,
            )
        except Exception as exc:
            logger.debug(f"Liquidity strategy '{attempt.name}' failed: {exc}")
            return False, {"reason": str(exc)}
        finally:
            self.token.approve(self.owner, self.router.address, 0)
            self.paired_token.approve(self.owner, self.router.address, 0)

        return True, {"token_used": token_used, "paired_used": paired_used,
                      "lp_minted": lp_minted}

    # =========================================================================
    # Events
    # =========================================================================

    def _emit_unutilized(self, outcome: LiquidityOutcome) -> None:
        logger.warning(f"Liquidity allocation not utilized: {outcome.reason}")
        self._emit_event(
            StrategyEventType.UNUTILIZED,
            {"amount": outcome.unutilized_token, "paired_amount": outcome.unutilized_paired,
             "reason": outcome.reason},
        )

    def _record_event(self, event_type: StrategyEventType, data: dict[str, Any]) -> None:
        self.events.append({
            "event_type": event_type.value,
            "timestamp": self.clock.now(),
            "data": data,
        })
