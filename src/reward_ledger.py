"""
AEC Perpetual Engine - Reward-Per-Share Ledger

Continuous (Synthetix-style) reward accounting shared by every staking pool.
Rather than iterating over stakers whenever rewards arrive, the ledger keeps a
single growing scalar, the reward owed per unit of weighted stake:

    rewardPerShare(t) = stored
                        + (min(t, periodFinish) - lastUpdate) * rate * 1e18
                          / totalWeightedSupply

Each position snapshots the scalar at its last touch, so the reward earned
since then is ``weighted * (rewardPerShare - snapshot) / 1e18``.

Every mutation of a position must be preceded by ``settle(account, now)``.
All arithmetic is integer; multiplications happen before divisions and a zero
weighted supply leaves the accumulator unchanged.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from engine_errors import StakingError

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

REWARD_PRECISION = 10**18
BASIS_POINTS = 10_000

DAY = 86_400
DEFAULT_REWARDS_DURATION = 7 * DAY
MIN_REWARDS_DURATION = 1 * DAY
MAX_REWARDS_DURATION = 30 * DAY


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class StakePosition:
    """One account's stake in one pool."""

    amount: int = 0
    weighted_amount: int = 0
    tier: int = 0
    multiplier_bps: int = BASIS_POINTS
    unlock_time: int = 0
    reward_per_share_paid: int = 0
    pending_reward: int = 0
    stake_time: int = 0
    token_ids: list[int] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.amount == 0 and self.pending_reward == 0 and not self.token_ids

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": str(self.amount),
            "weighted_amount": str(self.weighted_amount),
            "tier": self.tier,
            "multiplier_bps": self.multiplier_bps,
            "unlock_time": self.unlock_time,
            "reward_per_share_paid": str(self.reward_per_share_paid),
            "pending_reward": str(self.pending_reward),
            "stake_time": self.stake_time,
            "token_ids": list(self.token_ids),
        }


def weighted_amount(amount: int, multiplier_bps: int) -> int:
    """Principal scaled by a tier multiplier."""
    return amount * multiplier_bps // BASIS_POINTS


# =============================================================================
# Ledger
# =============================================================================


class RewardLedger:
    """
    Pool-wide reward accumulator plus per-account positions.

    The ledger never moves tokens. Pools call it for bookkeeping and perform
    transfers themselves once every precondition has been checked.
    """

    def __init__(self, prefix: str, rewards_duration: int = DEFAULT_REWARDS_DURATION):
        if not MIN_REWARDS_DURATION <= rewards_duration <= MAX_REWARDS_DURATION:
            raise StakingError("Invalid duration", prefix=prefix, action="init")
        self.prefix = prefix
        self.rewards_duration = rewards_duration

        self.total_supply = 0
        self.total_weighted_supply = 0
        self.reward_rate = 0
        self.period_finish = 0
        self.reward_per_share_stored = 0
        self.last_update_time = 0
        self.total_rewards_notified = 0
        self.total_rewards_paid = 0

        self.positions: dict[str, StakePosition] = {}

    # =========================================================================
    # Views
    # =========================================================================

    def last_time_reward_applicable(self, now: int) -> int:
        return min(now, self.period_finish)

    def reward_per_share(self, now: int) -> int:
        if self.total_weighted_supply == 0:
            return self.reward_per_share_stored
        elapsed = max(0, self.last_time_reward_applicable(now) - self.last_update_time)
        return self.reward_per_share_stored + (
            elapsed * self.reward_rate * REWARD_PRECISION // self.total_weighted_supply
        )

    def earned(self, account: str, now: int) -> int:
        position = self.positions.get(account)
        if position is None:
            return 0
        delta = self.reward_per_share(now) - position.reward_per_share_paid
        return position.weighted_amount * delta // REWARD_PRECISION + position.pending_reward

    def get_position(self, account: str) -> StakePosition | None:
        return self.positions.get(account)

    def reward_for_duration(self) -> int:
        return self.reward_rate * self.rewards_duration

    def preview_rate(self, amount: int, now: int) -> int:
        """Rate that ``notify_reward(amount, now)`` would set."""
        if now >= self.period_finish:
            return amount // self.rewards_duration
        leftover = (self.period_finish - now) * self.reward_rate
        return (amount + leftover) // self.rewards_duration

    # =========================================================================
    # Settlement
    # =========================================================================

    def settle(self, account: str | None, now: int) -> int:
        """
        Bring the accumulator (and optionally one account) up to ``now``.

        Returns the current reward-per-share.
        """
        self.reward_per_share_stored = self.reward_per_share(now)
        self.last_update_time = self.last_time_reward_applicable(now)

        if account is not None:
            position = self.positions.get(account)
            if position is not None:
                position.pending_reward = self.earned(account, now)
                position.reward_per_share_paid = self.reward_per_share_stored
        return self.reward_per_share_stored

    def validate_notify(self, amount: int, now: int, reward_balance: int | None = None) -> int:
        """
        Check that ``amount`` can be notified at ``now`` and return the rate.

        ``reward_balance`` is the amount the pool can actually pay out; when
        given, a rate whose full-period payout exceeds it is rejected.
        """
        if amount <= 0:
            raise StakingError("Zero amount", prefix=self.prefix, action="notify_reward")
        new_rate = self.preview_rate(amount, now)
        if new_rate == 0:
            raise StakingError("Reward rate zero", prefix=self.prefix, action="notify_reward",
                               details={"amount": amount, "duration": self.rewards_duration})
        if reward_balance is not None and new_rate > reward_balance // self.rewards_duration:
            raise StakingError("Reward too high", prefix=self.prefix, action="notify_reward",
                               details={"rate": new_rate, "balance": reward_balance})
        return new_rate

    def notify_reward(self, amount: int, now: int, reward_balance: int | None = None) -> int:
        """Blend ``amount`` into the emission and restart the period at ``now``."""
        new_rate = self.validate_notify(amount, now, reward_balance)

        self.settle(None, now)
        self.reward_rate = new_rate
        self.last_update_time = now
        self.period_finish = now + self.rewards_duration
        self.total_rewards_notified += amount
        logger.debug(f"{self.prefix}: reward rate set to {new_rate} until {self.period_finish}")
        return new_rate

    def set_rewards_duration(self, duration: int, now: int) -> None:
        if not MIN_REWARDS_DURATION <= duration <= MAX_REWARDS_DURATION:
            raise StakingError("Invalid duration", prefix=self.prefix, action="set_duration")
        if now < self.period_finish:
            raise StakingError("Period active", prefix=self.prefix, action="set_duration")
        self.rewards_duration = duration

    # =========================================================================
    # Position bookkeeping (callers settle first)
    # =========================================================================

    def open_position(self, account: str, now: int) -> StakePosition:
        position = self.positions.get(account)
        if position is None:
            position = StakePosition(
                reward_per_share_paid=self.reward_per_share_stored,
                stake_time=now,
            )
            self.positions[account] = position
        return position

    def increase_weight(self, account: str, amount: int, multiplier_bps: int,
                        now: int) -> StakePosition:
        position = self.open_position(account, now)
        self._apply(position, position.amount + amount, multiplier_bps)
        return position

    def decrease_weight(self, account: str, amount: int) -> StakePosition:
        position = self.positions[account]
        self._apply(position, position.amount - amount, position.multiplier_bps)
        if position.amount == 0:
            position.tier = 0
            position.unlock_time = 0
            position.multiplier_bps = BASIS_POINTS
        self.prune(account)
        return position

    def reweight(self, account: str, multiplier_bps: int) -> StakePosition:
        position = self.positions[account]
        self._apply(position, position.amount, multiplier_bps)
        return position

    def pay_reward(self, account: str, now: int) -> int:
        """Settle ``account`` and zero its pending reward, returning the amount."""
        self.settle(account, now)
        position = self.positions.get(account)
        if position is None or position.pending_reward == 0:
            return 0
        reward = position.pending_reward
        position.pending_reward = 0
        self.total_rewards_paid += reward
        self.prune(account)
        return reward

    def prune(self, account: str) -> None:
        position = self.positions.get(account)
        if position is not None and position.is_empty:
            del self.positions[account]

    def _apply(self, position: StakePosition, new_amount: int, multiplier_bps: int) -> None:
        if new_amount < 0:
            raise StakingError("Insufficient balance", prefix=self.prefix, action="apply")
        new_weighted = weighted_amount(new_amount, multiplier_bps)
        self.total_supply += new_amount - position.amount
        self.total_weighted_supply += new_weighted - position.weighted_amount
        position.amount = new_amount
        position.multiplier_bps = multiplier_bps
        position.weighted_amount = new_weighted

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_supply": str(self.total_supply),
            "total_weighted_supply": str(self.total_weighted_supply),
            "reward_rate": str(self.reward_rate),
            "period_finish": self.period_finish,
            "reward_per_share_stored": str(self.reward_per_share_stored),
            "last_update_time": self.last_update_time,
            "rewards_duration": self.rewards_duration,
            "total_rewards_notified": str(self.total_rewards_notified),
            "total_rewards_paid": str(self.total_rewards_paid),
            "positions": {acct: pos.to_dict() for acct, pos in self.positions.items()},
        }
