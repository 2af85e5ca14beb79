"""
AEC Perpetual Engine - Staking Pools

Three staking variants share one RewardLedger implementation:

- TokenStakingPool: stake AEC, earn AEC, with lock tiers.
- LPStakingPool: stake AEC/stablecoin LP tokens, earn AEC. Also holds the
  engine's eternal position, funded with the LP the engine mints each cycle.
- NFTStakingPool: stake membership NFTs, one unit of weight per NFT.

Rewards come from two sources blended into the same emission rate:

1. Base rewards: an initial allocation that decays by 0.5% of the remaining
   allocation every 30 days and is released lazily on any mutating call.
2. Engine refills: ``notify_reward_amount`` pulls tokens from the engine and
   blends them into the current period.

Every mutating call checks all of its preconditions first, then settles the
caller through the ledger, then moves tokens.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from clock import Clock
from engine_errors import (
    AuthorizationError,
    InsufficientAllowanceError,
    InsufficientBalanceError,
    StakingError,
)
from guards import ReentrancyGuard
from reward_ledger import (
    BASIS_POINTS,
    DAY,
    DEFAULT_REWARDS_DURATION,
    RewardLedger,
    StakePosition,
)
from token_ledger import ONE_TOKEN, FungibleToken, NFTCollection, is_valid_address

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

DECAY_RATE_BPS = 50  # 0.5% of the remaining base allocation per period
DECAY_PERIOD = 30 * DAY
MAX_DECAY_PERIODS_PER_UPDATE = 12

MAX_NFTS_PER_TX = 50

# Unlock sentinel for the engine's never-withdrawable position
ETERNAL_UNLOCK = 2**64 - 1

DEFAULT_TOKEN_POOL_ALLOCATION = 133_333_333 * ONE_TOKEN
DEFAULT_LP_POOL_ALLOCATION = 177_777_777 * ONE_TOKEN
DEFAULT_NFT_POOL_ALLOCATION = 44_444_444 * ONE_TOKEN


@dataclass(frozen=True)
class StakingTier:
    """Lock tier definition."""

    tier_id: int
    name: str
    lock_duration: int
    multiplier_bps: int
    user_selectable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier_id": self.tier_id,
            "name": self.name,
            "lock_days": self.lock_duration // DAY,
            "multiplier": self.multiplier_bps / BASIS_POINTS,
            "user_selectable": self.user_selectable,
        }


TIERS: tuple[StakingTier, ...] = (
    StakingTier(0, "Flexible", 0, 10_000),
    StakingTier(1, "Monthly", 30 * DAY, 11_000),
    StakingTier(2, "Quarterly", 90 * DAY, 13_000),
    StakingTier(3, "Semi-Annual", 180 * DAY, 16_000),
    StakingTier(4, "Protocol Engine", 0, 10_000, user_selectable=False),
)
ETERNAL_TIER = 4


def get_tier(tier_id: int) -> StakingTier | None:
    if 0 <= tier_id < len(TIERS):
        return TIERS[tier_id]
    return None


class StakingEventType(Enum):
    """Types of staking pool events."""

    STAKED = "Staked"
    WITHDRAWN = "Withdrawn"
    REWARD_PAID = "RewardPaid"
    REWARD_ADDED = "RewardAdded"
    TIER_UPGRADED = "TierUpgraded"
    ENGINE_STAKED = "EngineStaked"
    BASE_REWARDS_RELEASED = "BaseRewardsReleased"
    REWARDS_DURATION_UPDATED = "RewardsDurationUpdated"
    NFT_STAKED = "NFTStaked"
    NFT_UNSTAKED = "NFTUnstaked"


class RewardPoolLike(Protocol):
    """Pool surface the engine refills each cycle."""

    address: str

    def notify_reward_amount(self, caller: str, amount: int) -> int: ...


# =============================================================================
# Base Pool
# =============================================================================


class BaseStakingPool:
    """Shared reward accounting, base-reward decay and engine refills."""

    prefix = "Staking"
    min_stake_amount = ONE_TOKEN

    def __init__(
        self,
        address: str,
        reward_token: FungibleToken,
        engine_address: str,
        deployer_address: str,
        clock: Clock,
        initial_allocation: int = 0,
        rewards_duration: int = DEFAULT_REWARDS_DURATION,
    ):
        if not is_valid_address(address):
            raise StakingError("Invalid pool address", prefix=self.prefix, action="init")
        if not is_valid_address(engine_address):
            raise StakingError("Invalid engine", prefix=self.prefix, action="init")
        if initial_allocation < 0:
            raise StakingError("Invalid allocation", prefix=self.prefix, action="init")

        self.address = address
        self.reward_token = reward_token
        self.engine_address = engine_address
        self.deployer_address = deployer_address
        self.clock = clock

        self.ledger = RewardLedger(self.prefix, rewards_duration)
        self._guard = ReentrancyGuard(self.prefix)

        # Base reward decay
        self.initial_reward_allocation = initial_allocation
        self.remaining_base_rewards = initial_allocation
        self.undistributed_base_rewards = 0
        self.last_decay_update = clock.now()
        self.total_base_released = 0

        self.total_engine_rewards = 0
        self.events: list[dict[str, Any]] = []

    # =========================================================================
    # Views
    # =========================================================================

    def earned(self, account: str) -> int:
        return self.ledger.earned(account, self.clock.now())

    def reward_per_share(self) -> int:
        return self.ledger.reward_per_share(self.clock.now())

    def has_staked(self, account: str) -> bool:
        position = self.ledger.get_position(account)
        return position is not None and (position.amount > 0 or bool(position.token_ids))

    @property
    def total_supply(self) -> int:
        return self.ledger.total_supply

    @property
    def total_weighted_supply(self) -> int:
        return self.ledger.total_weighted_supply

    def _staked_reward_tokens(self) -> int:
        """Principal held in the reward token, which is not payable as reward."""
        return 0

    def reward_balance(self) -> int:
        """Reward tokens held that are free to back the emission rate."""
        held = self.reward_token.balance_of(self.address)
        reserved = (
            self._staked_reward_tokens()
            + self.remaining_base_rewards
            + self.undistributed_base_rewards
        )
        return max(0, held - reserved)

    def get_stake_info(self, account: str) -> dict[str, Any]:
        now = self.clock.now()
        position = self.ledger.get_position(account) or StakePosition()
        tier = get_tier(position.tier)
        return {
            "account": account,
            "amount": str(position.amount),
            "weighted_amount": str(position.weighted_amount),
            "tier": position.tier,
            "tier_name": tier.name if tier else None,
            "unlock_time": position.unlock_time,
            "can_withdraw": position.tier != ETERNAL_TIER and position.unlock_time <= now,
            "earned": str(self.ledger.earned(account, now)),
            "stake_time": position.stake_time,
            "token_ids": list(position.token_ids),
        }

    def get_pool_stats(self) -> dict[str, Any]:
        now = self.clock.now()
        return {
            "pool": self.prefix,
            "address": self.address,
            "total_supply": str(self.ledger.total_supply),
            "total_weighted_supply": str(self.ledger.total_weighted_supply),
            "reward_rate": str(self.ledger.reward_rate),
            "period_finish": self.ledger.period_finish,
            "period_active": now < self.ledger.period_finish,
            "reward_per_share": str(self.ledger.reward_per_share(now)),
            "rewards_duration": self.ledger.rewards_duration,
            "stakers": sum(1 for p in self.ledger.positions.values() if p.weighted_amount > 0),
            "initial_reward_allocation": str(self.initial_reward_allocation),
            "remaining_base_rewards": str(self.remaining_base_rewards),
            "total_base_released": str(self.total_base_released),
            "total_engine_rewards": str(self.total_engine_rewards),
            "total_rewards_paid": str(self.ledger.total_rewards_paid),
        }

    # =========================================================================
    # Base reward decay
    # =========================================================================

    def update_base_rewards(self) -> int:
        """Release any due decay periods into the emission rate."""
        now = self.clock.now()
        periods = (now - self.last_decay_update) // DECAY_PERIOD
        if periods <= 0:
            return 0

        # Periods past the cap stay due for the next update
        periods = min(periods, MAX_DECAY_PERIODS_PER_UPDATE)
        released = 0
        for _ in range(periods):
            portion = self.remaining_base_rewards * DECAY_RATE_BPS // BASIS_POINTS
            if portion == 0:
                break
            self.remaining_base_rewards -= portion
            released += portion
        self.last_decay_update += periods * DECAY_PERIOD

        amount = self.undistributed_base_rewards + released
        if amount == 0:
            return 0

        self.undistributed_base_rewards = 0
        try:
            self.ledger.notify_reward(amount, now, self.reward_balance())
        except StakingError as exc:
            # Carried into the next update rather than dropped
            self.undistributed_base_rewards = amount
            logger.warning(f"{self.prefix}: base rewards held back ({exc.reason})")
            return 0
        self.total_base_released += amount
        self._emit_event(
            StakingEventType.BASE_REWARDS_RELEASED,
            {"amount": amount, "periods": periods, "remaining": self.remaining_base_rewards},
        )
        return amount

    # =========================================================================
    # Engine interface
    # =========================================================================

    def notify_reward_amount(self, caller: str, amount: int) -> int:
        """Pull ``amount`` from the engine and blend it into the emission."""
        if caller != self.engine_address:
            raise AuthorizationError("Only engine", prefix=self.prefix,
                                     action="notify_reward_amount")
        if amount <= 0:
            raise StakingError("Zero amount", prefix=self.prefix, action="notify_reward_amount")
        self._require_pull(self.reward_token, caller, amount)

        with self._guard:
            self.update_base_rewards()
            now = self.clock.now()
            self.ledger.validate_notify(amount, now, self.reward_balance() + amount)
            self.reward_token.transfer_from(self.address, caller, self.address, amount)
            rate = self.ledger.notify_reward(amount, now, self.reward_balance())
            self.total_engine_rewards += amount

        self._emit_event(
            StakingEventType.REWARD_ADDED,
            {"amount": amount, "rate": rate, "period_finish": self.ledger.period_finish},
        )
        logger.info(f"{self.prefix}: engine added {amount} rewards, rate {rate}/s")
        return rate

    def set_rewards_duration(self, caller: str, duration: int) -> None:
        if caller != self.engine_address:
            raise AuthorizationError("Only engine", prefix=self.prefix,
                                     action="set_rewards_duration")
        self.ledger.set_rewards_duration(duration, self.clock.now())
        self._emit_event(StakingEventType.REWARDS_DURATION_UPDATED, {"duration": duration})

    # =========================================================================
    # Rewards
    # =========================================================================

    def claim_reward(self, caller: str) -> int:
        """Pay out pending rewards. A zero reward is a no-op returning 0."""
        with self._guard:
            self.update_base_rewards()
            return self._pay_reward(caller)

    def _pay_reward(self, account: str) -> int:
        now = self.clock.now()
        owed = self.ledger.earned(account, now)
        if owed == 0:
            self.ledger.settle(account, now)
            return 0
        available = self.reward_token.balance_of(self.address) - self._staked_reward_tokens()
        if owed > available:
            raise InsufficientBalanceError(self.address, owed, available, prefix=self.prefix)

        reward = self.ledger.pay_reward(account, now)
        self.reward_token.transfer(self.address, account, reward)
        self._emit_event(StakingEventType.REWARD_PAID, {"account": account, "reward": reward})
        return reward

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_pull(self, token: FungibleToken, owner: str, amount: int) -> None:
        """Fail before any mutation if ``transfer_from`` would fail."""
        allowance = token.allowance(owner, self.address)
        if allowance < amount:
            raise InsufficientAllowanceError(owner, self.address, amount, allowance,
                                             prefix=self.prefix)
        balance = token.balance_of(owner)
        if balance < amount:
            raise InsufficientBalanceError(owner, amount, balance, prefix=self.prefix)

    def _emit_event(self, event_type: StakingEventType, data: dict[str, Any]) -> None:
        """Emit an event for audit trail."""
        event = {
            "event_type": event_type.value,
            "timestamp": self.clock.now(),
            "data": data,
        }
        self.events.append(event)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.get_pool_stats(),
            "ledger": self.ledger.to_dict(),
            "last_decay_update": self.last_decay_update,
        }


# =============================================================================
# Tiered Pools
# =============================================================================


class TieredStakingPool(BaseStakingPool):
    """Fungible staking with lock tiers and weighted rewards."""

    def __init__(self, address: str, staking_token: FungibleToken, reward_token: FungibleToken,
                 engine_address: str, deployer_address: str, clock: Clock, **kwargs):
        super().__init__(address, reward_token, engine_address, deployer_address, clock, **kwargs)
        self.staking_token = staking_token

    def _staked_reward_tokens(self) -> int:
        if self.staking_token is self.reward_token:
            return self.ledger.total_supply
        return 0

    def stake(self, caller: str, amount: int, tier_id: int) -> StakePosition:
        now = self.clock.now()
        if amount < self.min_stake_amount:
            raise StakingError("Amount too small", prefix=self.prefix, action="stake",
                               details={"amount": amount, "min": self.min_stake_amount})
        tier = get_tier(tier_id)
        if tier is None or not tier.user_selectable:
            raise StakingError("Invalid tier", prefix=self.prefix, action="stake",
                               details={"tier": tier_id})

        existing = self.ledger.get_position(caller)
        if existing is not None and existing.tier == ETERNAL_TIER:
            raise StakingError("Eternal stakers cannot modify", prefix=self.prefix, action="stake")
        if existing is not None and existing.amount > 0:
            if tier_id < existing.tier:
                raise StakingError("Cannot reduce tier", prefix=self.prefix, action="stake",
                                   details={"current": existing.tier, "requested": tier_id})
            if existing.unlock_time > now:
                raise StakingError("Still locked", prefix=self.prefix, action="stake",
                                   details={"unlock_time": existing.unlock_time})
        self._require_pull(self.staking_token, caller, amount)

        with self._guard:
            self.update_base_rewards()
            self.ledger.settle(caller, now)
            self.staking_token.transfer_from(self.address, caller, self.address, amount)
            position = self.ledger.increase_weight(caller, amount, tier.multiplier_bps, now)
            position.tier = tier_id
            position.unlock_time = now + tier.lock_duration if tier.lock_duration else 0

        self._emit_event(
            StakingEventType.STAKED,
            {"account": caller, "amount": amount, "tier": tier_id,
             "weighted_amount": position.weighted_amount, "unlock_time": position.unlock_time},
        )
        logger.debug(f"{self.prefix}: {caller} staked {amount} in tier {tier.name}")
        return position

    def withdraw(self, caller: str, amount: int) -> int:
        now = self.clock.now()
        if amount <= 0:
            raise StakingError("Cannot withdraw 0", prefix=self.prefix, action="withdraw")
        position = self.ledger.get_position(caller)
        if position is not None and position.tier == ETERNAL_TIER:
            raise StakingError("Eternal stakers cannot withdraw", prefix=self.prefix,
                               action="withdraw")
        if position is None or amount > position.amount:
            raise StakingError("Insufficient balance", prefix=self.prefix, action="withdraw",
                               details={"amount": amount})
        if position.unlock_time > now:
            raise StakingError("Still locked", prefix=self.prefix, action="withdraw",
                               details={"unlock_time": position.unlock_time})

        with self._guard:
            self.update_base_rewards()
            self.ledger.settle(caller, now)
            self.ledger.decrease_weight(caller, amount)
            self.staking_token.transfer(self.address, caller, amount)

        self._emit_event(StakingEventType.WITHDRAWN, {"account": caller, "amount": amount})
        return amount

    def upgrade_tier(self, caller: str, new_tier_id: int) -> StakePosition:
        now = self.clock.now()
        position = self.ledger.get_position(caller)
        if position is None or position.amount == 0:
            raise StakingError("No stake", prefix=self.prefix, action="upgrade_tier")
        if position.tier == ETERNAL_TIER:
            raise StakingError("Eternal stakers cannot modify", prefix=self.prefix,
                               action="upgrade_tier")
        tier = get_tier(new_tier_id)
        if tier is None or not tier.user_selectable or new_tier_id <= position.tier:
            raise StakingError("Invalid tier upgrade", prefix=self.prefix, action="upgrade_tier",
                               details={"current": position.tier, "requested": new_tier_id})

        old_tier = position.tier
        with self._guard:
            self.update_base_rewards()
            self.ledger.settle(caller, now)
            self.ledger.reweight(caller, tier.multiplier_bps)
            position.tier = new_tier_id
            position.unlock_time = now + tier.lock_duration

        self._emit_event(
            StakingEventType.TIER_UPGRADED,
            {"account": caller, "old_tier": old_tier, "new_tier": new_tier_id,
             "unlock_time": position.unlock_time},
        )
        return position

    def exit(self, caller: str) -> tuple[int, int]:
        """Withdraw the whole principal (if any), then claim."""
        position = self.ledger.get_position(caller)
        withdrawn = 0
        if position is not None and position.amount > 0:
            withdrawn = self.withdraw(caller, position.amount)
        reward = self.claim_reward(caller)
        return withdrawn, reward


class TokenStakingPool(TieredStakingPool):
    """AEC single-sided staking."""

    prefix = "TokenStaking"
    min_stake_amount = ONE_TOKEN


class LPStakingPool(TieredStakingPool):
    """AEC/stablecoin LP staking, including the engine's eternal position."""

    prefix = "StakingLP"
    min_stake_amount = 10**15

    def stake_for_engine(self, caller: str, amount: int) -> StakePosition:
        """Lock LP permanently under the engine's account."""
        if caller not in (self.engine_address, self.deployer_address):
            raise AuthorizationError("Only engine or deployer", prefix=self.prefix,
                                     action="stake_for_engine")
        if amount < self.min_stake_amount:
            raise StakingError("Amount too small", prefix=self.prefix, action="stake_for_engine",
                               details={"amount": amount, "min": self.min_stake_amount})
        existing = self.ledger.get_position(self.engine_address)
        if existing is not None and existing.amount > 0 and existing.tier != ETERNAL_TIER:
            raise StakingError("Invalid tier", prefix=self.prefix, action="stake_for_engine")
        self._require_pull(self.staking_token, caller, amount)

        now = self.clock.now()
        tier = TIERS[ETERNAL_TIER]
        with self._guard:
            self.update_base_rewards()
            self.ledger.settle(self.engine_address, now)
            self.staking_token.transfer_from(self.address, caller, self.address, amount)
            position = self.ledger.increase_weight(
                self.engine_address, amount, tier.multiplier_bps, now
            )
            position.tier = ETERNAL_TIER
            position.unlock_time = ETERNAL_UNLOCK

        self._emit_event(
            StakingEventType.ENGINE_STAKED,
            {"amount": amount, "total_engine_stake": position.amount, "funded_by": caller},
        )
        return position


# =============================================================================
# NFT Pool
# =============================================================================


class NFTStakingPool(BaseStakingPool):
    """Membership NFT staking, one unit of weight per NFT."""

    prefix = "NFTStaking"

    def __init__(self, address: str, nft: NFTCollection, reward_token: FungibleToken,
                 engine_address: str, deployer_address: str, clock: Clock, **kwargs):
        super().__init__(address, reward_token, engine_address, deployer_address, clock, **kwargs)
        self.nft = nft
        self.token_owners: dict[int, str] = {}

    @property
    def total_nfts_staked(self) -> int:
        return len(self.token_owners)

    def _check_batch(self, token_ids: list[int], action: str) -> None:
        if not token_ids:
            raise StakingError("No tokens", prefix=self.prefix, action=action)
        if len(token_ids) > MAX_NFTS_PER_TX:
            raise StakingError("Too many tokens", prefix=self.prefix, action=action,
                               details={"count": len(token_ids), "max": MAX_NFTS_PER_TX})
        if len(set(token_ids)) != len(token_ids):
            raise StakingError("Duplicate token", prefix=self.prefix, action=action)

    def stake_nfts(self, caller: str, token_ids: list[int]) -> StakePosition:
        self._check_batch(token_ids, "stake_nfts")
        for token_id in token_ids:
            if token_id in self.token_owners:
                raise StakingError("Already staked", prefix=self.prefix, action="stake_nfts",
                                   details={"token_id": token_id})
            if self.nft.owner_of(token_id) != caller:
                raise StakingError("Not owner", prefix=self.prefix, action="stake_nfts",
                                   details={"token_id": token_id})
            if not self.nft.is_approved(self.address, token_id):
                raise StakingError("Not approved", prefix=self.prefix, action="stake_nfts",
                                   details={"token_id": token_id})

        now = self.clock.now()
        with self._guard:
            self.update_base_rewards()
            self.ledger.settle(caller, now)
            for token_id in token_ids:
                self.nft.transfer_from(self.address, caller, self.address, token_id)
                self.token_owners[token_id] = caller
            position = self.ledger.increase_weight(caller, len(token_ids), BASIS_POINTS, now)
            position.token_ids.extend(token_ids)

        self._emit_event(StakingEventType.NFT_STAKED,
                         {"account": caller, "token_ids": list(token_ids)})
        return position

    def unstake_nfts(self, caller: str, token_ids: list[int]) -> int:
        self._check_batch(token_ids, "unstake_nfts")
        for token_id in token_ids:
            if self.token_owners.get(token_id) != caller:
                raise StakingError("Not owner", prefix=self.prefix, action="unstake_nfts",
                                   details={"token_id": token_id})

        now = self.clock.now()
        with self._guard:
            self.update_base_rewards()
            self.ledger.settle(caller, now)
            position = self.ledger.get_position(caller)
            for token_id in token_ids:
                position.token_ids.remove(token_id)
                del self.token_owners[token_id]
                self.nft.transfer_from(self.address, self.address, caller, token_id)
            self.ledger.decrease_weight(caller, len(token_ids))

        self._emit_event(StakingEventType.NFT_UNSTAKED,
                         {"account": caller, "token_ids": list(token_ids)})
        return len(token_ids)

    def exit(self, caller: str) -> tuple[int, int]:
        position = self.ledger.get_position(caller)
        unstaked = 0
        if position is not None and position.token_ids:
            staked = list(position.token_ids)
            for start in range(0, len(staked), MAX_NFTS_PER_TX):
                unstaked += self.unstake_nfts(caller, staked[start:start + MAX_NFTS_PER_TX])
        reward = self.claim_reward(caller)
        return unstaked, reward
