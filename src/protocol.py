"""
AEC Perpetual Engine - Protocol Assembly

Deploys one complete in-process protocol instance: tokens, the AMM pair, the
three staking pools, the sealed endowment and the engine, wired together the
same way the deployment scripts wire the on-chain contracts.

Usage:
    from clock import ManualClock
    from engine_config import EngineConfig
    from protocol import build_protocol

    protocol = build_protocol(EngineConfig(), ManualClock())
    protocol.fund_tax(5_000 * ONE_TOKEN)
    report = protocol.engine.run_cycle("0xkeeper")
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from amm_router import ConstantProductRouter, LiquidityPair
from clock import Clock, SystemClock
from engine_config import EngineConfig
from monitoring.metrics import MetricsCollector
from perpetual_endowment import PerpetualEndowment
from perpetual_engine import PerpetualEngine
from staking_pools import BaseStakingPool, LPStakingPool, NFTStakingPool, TokenStakingPool
from token_ledger import ONE_TOKEN, FungibleToken, NFTCollection

logger = logging.getLogger(__name__)

# Well-known deployment addresses
DEPLOYER_ADDRESS = "0x00000000000000000000000000000000000de910"
TAX_HOLDER_ADDRESS = "0x0000000000000000000000000000000000007a58"
EMERGENCY_MULTISIG_ADDRESS = "0x00000000000000000000000000000000000e5165"
ENGINE_ADDRESS = "0x00000000000000000000000000000000000e4617"
ENDOWMENT_ADDRESS = "0x00000000000000000000000000000000000e4d05"
ROUTER_ADDRESS = "0x000000000000000000000000000000000000a477"
AEC_ADDRESS = "0x0000000000000000000000000000000000000aec"
STABLECOIN_ADDRESS = "0x0000000000000000000000000000000000005dc0"
NFT_ADDRESS = "0x00000000000000000000000000000000000004f7"
TOKEN_POOL_ADDRESS = "0x0000000000000000000000000000000000005701"
LP_POOL_ADDRESS = "0x0000000000000000000000000000000000005702"
NFT_POOL_ADDRESS = "0x0000000000000000000000000000000000005703"

# Effectively unlimited approval, as issued by the tax-collecting token
MAX_ALLOWANCE = 2**256 - 1


@dataclass
class AecProtocol:
    """Handles to every deployed component."""

    config: EngineConfig
    clock: Clock
    aec: FungibleToken
    stablecoin: FungibleToken
    nft: NFTCollection
    router: ConstantProductRouter
    pair: LiquidityPair
    token_pool: TokenStakingPool
    lp_pool: LPStakingPool
    nft_pool: NFTStakingPool
    endowment: PerpetualEndowment
    engine: PerpetualEngine
    deployer: str = DEPLOYER_ADDRESS
    tax_holder: str = TAX_HOLDER_ADDRESS
    emergency_multisig: str = EMERGENCY_MULTISIG_ADDRESS
    pools: dict[str, BaseStakingPool] = field(default_factory=dict)

    def __post_init__(self):
        if not self.pools:
            self.pools = {"lp": self.lp_pool, "token": self.token_pool, "nft": self.nft_pool}

    def fund_tax(self, amount: int) -> None:
        """Simulate transfer tax accruing in the tax holder."""
        self.aec.mint(self.tax_holder, amount)

    def fund_account(self, account: str, aec: int = 0, stablecoin: int = 0) -> None:
        """Faucet for simulations and tests."""
        if aec:
            self.aec.mint(account, aec)
        if stablecoin:
            self.stablecoin.mint(account, stablecoin)

    def get_pool(self, name: str) -> BaseStakingPool | None:
        return self.pools.get(name)

    def get_overview(self) -> dict[str, Any]:
        return {
            "timestamp": self.clock.now(),
            "aec": self.aec.get_statistics(),
            "stablecoin": self.stablecoin.get_statistics(),
            "pair": self.pair.to_dict(),
            "engine": self.engine.get_engine_status(),
            "endowment": self.endowment.get_status(),
            "pools": {name: pool.get_pool_stats() for name, pool in self.pools.items()},
        }


def build_protocol(
    config: EngineConfig | None = None,
    clock: Clock | None = None,
    metrics: MetricsCollector | None = None,
) -> AecProtocol:
    """
    Deploy and wire a full protocol instance.

    Raises:
        ValueError: If the configuration does not validate
    """
    config = config or EngineConfig()
    errors = config.validate()
    if errors:
        raise ValueError(f"Invalid engine configuration: {'; '.join(errors)}")
    clock = clock or SystemClock()

    aec = FungibleToken("AEC Token", "AEC", AEC_ADDRESS)
    stablecoin = FungibleToken("USD Stablecoin", "USDS", STABLECOIN_ADDRESS)
    nft = NFTCollection("AEC Membership", "AECM", NFT_ADDRESS)

    # AMM pair seeded by the deployer
    router = ConstantProductRouter(ROUTER_ADDRESS, clock)
    pair = router.create_pair(aec, stablecoin)
    seed_aec = config.seed_liquidity_aec * ONE_TOKEN
    seed_stable = config.seed_liquidity_stable * ONE_TOKEN
    aec.mint(DEPLOYER_ADDRESS, seed_aec)
    stablecoin.mint(DEPLOYER_ADDRESS, seed_stable)
    aec.approve(DEPLOYER_ADDRESS, router.address, seed_aec)
    stablecoin.approve(DEPLOYER_ADDRESS, router.address, seed_stable)
    router.add_liquidity(
        DEPLOYER_ADDRESS, aec, stablecoin, seed_aec, seed_stable, 0, 0,
        DEPLOYER_ADDRESS, clock.now() + 300,
    )

    pool_kwargs = {"rewards_duration": config.rewards_duration}
    token_pool = TokenStakingPool(
        TOKEN_POOL_ADDRESS, aec, aec, ENGINE_ADDRESS, DEPLOYER_ADDRESS, clock,
        initial_allocation=config.allocation_units("token"), **pool_kwargs,
    )
    lp_pool = LPStakingPool(
        LP_POOL_ADDRESS, pair.lp_token, aec, ENGINE_ADDRESS, DEPLOYER_ADDRESS, clock,
        initial_allocation=config.allocation_units("lp"), **pool_kwargs,
    )
    nft_pool = NFTStakingPool(
        NFT_POOL_ADDRESS, nft, aec, ENGINE_ADDRESS, DEPLOYER_ADDRESS, clock,
        initial_allocation=config.allocation_units("nft"), **pool_kwargs,
    )
    for pool in (token_pool, lp_pool, nft_pool):
        if pool.initial_reward_allocation:
            aec.mint(pool.address, pool.initial_reward_allocation)

    endowment = PerpetualEndowment(
        aec, ENDOWMENT_ADDRESS, ENGINE_ADDRESS, EMERGENCY_MULTISIG_ADDRESS, clock,
        initial_amount=config.endowment_amount_units,
        release_interval=config.release_interval,
    )
    aec.mint(endowment.address, config.endowment_amount_units)
    endowment.initialize()

    engine = PerpetualEngine(
        ENGINE_ADDRESS, aec, stablecoin, router, lp_pool, endowment, DEPLOYER_ADDRESS, clock,
        tax_holder=TAX_HOLDER_ADDRESS,
        slippage_bps=config.slippage_bps,
        min_aec_to_process=config.min_aec_to_process_units,
        process_cooldown=config.process_cooldown,
        metrics=metrics,
    )
    endowment.add_release_listener(engine.on_endowment_release)
    engine.set_staking_contracts(DEPLOYER_ADDRESS, token_pool, nft_pool)
    aec.approve(TAX_HOLDER_ADDRESS, engine.address, MAX_ALLOWANCE)

    logger.info(
        f"Protocol deployed: endowment={config.endowment_amount} AEC, "
        f"pair reserves={pair.reserve0}/{pair.reserve1}"
    )
    return AecProtocol(
        config=config,
        clock=clock,
        aec=aec,
        stablecoin=stablecoin,
        nft=nft,
        router=router,
        pair=pair,
        token_pool=token_pool,
        lp_pool=lp_pool,
        nft_pool=nft_pool,
        endowment=endowment,
        engine=engine,
    )
