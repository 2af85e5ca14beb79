"""
AEC Perpetual Engine - Deployment Configuration

All tunable deployment parameters in one dataclass. Values come from
``AEC_*`` environment variables (a ``.env`` file is loaded by the CLI and the
app factory through python-dotenv). Token amounts are given in whole AEC /
stablecoin units and converted to base units by the properties below.

Environment variables:
    AEC_SLIPPAGE_BPS            swap slippage tolerance (default 100)
    AEC_MIN_TO_PROCESS          minimum AEC for a cycle to process (default 1000)
    AEC_PROCESS_COOLDOWN        seconds between public cycles (default 3600)
    AEC_ENDOWMENT_AMOUNT        sealed endowment reserve (default 311111111)
    AEC_RELEASE_INTERVAL        endowment release interval seconds (default 30 days)
    AEC_REWARDS_DURATION        staking reward period seconds (default 7 days)
    AEC_TOKEN_POOL_ALLOCATION   base rewards for the token pool
    AEC_LP_POOL_ALLOCATION      base rewards for the LP pool
    AEC_NFT_POOL_ALLOCATION     base rewards for the NFT pool
    AEC_SEED_LIQUIDITY_AEC      AEC side of the initial AMM pair
    AEC_SEED_LIQUIDITY_STABLE   stablecoin side of the initial AMM pair
    AEC_HOST / AEC_PORT         API bind address
"""

import os
from dataclasses import asdict, dataclass

from perpetual_endowment import (
    DEFAULT_RELEASE_INTERVAL,
    MAX_RELEASE_INTERVAL,
    MIN_RELEASE_INTERVAL,
)
from perpetual_engine import (
    DEFAULT_PROCESS_COOLDOWN,
    DEFAULT_SLIPPAGE_BPS,
    MAX_COOLDOWN,
    MAX_SLIPPAGE_BPS,
)
from reward_ledger import DEFAULT_REWARDS_DURATION, MAX_REWARDS_DURATION, MIN_REWARDS_DURATION
from token_ledger import ONE_TOKEN


@dataclass
class EngineConfig:
    """Deployment parameters for one protocol instance."""

    slippage_bps: int = DEFAULT_SLIPPAGE_BPS
    min_aec_to_process: int = 1000
    process_cooldown: int = DEFAULT_PROCESS_COOLDOWN
    endowment_amount: int = 311_111_111
    release_interval: int = DEFAULT_RELEASE_INTERVAL
    rewards_duration: int = DEFAULT_REWARDS_DURATION
    token_pool_allocation: int = 133_333_333
    lp_pool_allocation: int = 177_777_777
    nft_pool_allocation: int = 44_444_444
    seed_liquidity_aec: int = 10_000_000
    seed_liquidity_stable: int = 1_000_000

    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Create configuration from environment variables."""
        return cls(
            slippage_bps=int(os.getenv("AEC_SLIPPAGE_BPS", str(DEFAULT_SLIPPAGE_BPS))),
            min_aec_to_process=int(os.getenv("AEC_MIN_TO_PROCESS", "1000")),
            process_cooldown=int(os.getenv("AEC_PROCESS_COOLDOWN",
                                           str(DEFAULT_PROCESS_COOLDOWN))),
            endowment_amount=int(os.getenv("AEC_ENDOWMENT_AMOUNT", "311111111")),
            release_interval=int(os.getenv("AEC_RELEASE_INTERVAL",
                                           str(DEFAULT_RELEASE_INTERVAL))),
            rewards_duration=int(os.getenv("AEC_REWARDS_DURATION",
                                           str(DEFAULT_REWARDS_DURATION))),
            token_pool_allocation=int(os.getenv("AEC_TOKEN_POOL_ALLOCATION", "133333333")),
            lp_pool_allocation=int(os.getenv("AEC_LP_POOL_ALLOCATION", "177777777")),
            nft_pool_allocation=int(os.getenv("AEC_NFT_POOL_ALLOCATION", "44444444")),
            seed_liquidity_aec=int(os.getenv("AEC_SEED_LIQUIDITY_AEC", "10000000")),
            seed_liquidity_stable=int(os.getenv("AEC_SEED_LIQUIDITY_STABLE", "1000000")),
            host=os.getenv("AEC_HOST", "0.0.0.0"),
            port=int(os.getenv("AEC_PORT", "5000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    def validate(self) -> list[str]:
        """Return a list of problems; empty when the configuration is usable."""
        errors = []
        if not 0 <= self.slippage_bps <= MAX_SLIPPAGE_BPS:
            errors.append(f"slippage_bps must be between 0 and {MAX_SLIPPAGE_BPS}")
        if self.min_aec_to_process <= 0:
            errors.append("min_aec_to_process must be positive")
        if not 0 <= self.process_cooldown <= MAX_COOLDOWN:
            errors.append(f"process_cooldown must be between 0 and {MAX_COOLDOWN}")
        if self.endowment_amount <= 0:
            errors.append("endowment_amount must be positive")
        if not MIN_RELEASE_INTERVAL <= self.release_interval <= MAX_RELEASE_INTERVAL:
            errors.append("release_interval out of range")
        if not MIN_REWARDS_DURATION <= self.rewards_duration <= MAX_REWARDS_DURATION:
            errors.append("rewards_duration out of range")
        for name in ("token_pool_allocation", "lp_pool_allocation", "nft_pool_allocation"):
            if getattr(self, name) < 0:
                errors.append(f"{name} must not be negative")
        if self.seed_liquidity_aec <= 0 or self.seed_liquidity_stable <= 0:
            errors.append("seed liquidity must be positive")
        return errors

    # Base-unit views

    @property
    def min_aec_to_process_units(self) -> int:
        return self.min_aec_to_process * ONE_TOKEN

    @property
    def endowment_amount_units(self) -> int:
        return self.endowment_amount * ONE_TOKEN

    def allocation_units(self, pool: str) -> int:
        return getattr(self, f"{pool}_pool_allocation") * ONE_TOKEN

    def to_dict(self) -> dict:
        return asdict(self)
