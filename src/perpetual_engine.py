"""
AEC Perpetual Engine - Cycle Orchestrator

The autonomous heart of the protocol. Anyone may call ``run_cycle`` once the
cooldown has elapsed; each cycle:

1. Pulls any due endowment release and measures the pullable transfer tax.
2. Skips (without error) when the total is below ``min_aec_to_process``.
3. Stamps the cooldown, then collects the tax.
4. Pays the caller 0.1% of the newly collected tax only.
5. Splits the remainder 20% burn / 40% liquidity / 40% reward refill.
6. Burns its share, best effort.
7. Converts and deposits the liquidity share (see ``liquidity_strategy``)
   and locks any minted LP into the LP pool as the engine's eternal stake.
8. Refills the LP, token and NFT pools 50% / 37.5% / 12.5%, each pool
   independently.
9. Pays the caller and emits one ``CycleProcessed`` summary.

Integer-division dust from the split stays in the engine's balance and is
part of the next cycle's base. Soft failures (endowment pull, burn, swap,
liquidity, staking, per-pool refill, caller payment) are reported through
events, logs and metrics; they never fail the cycle.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from amm_router import RouterLike
from clock import Clock
from engine_errors import AuthorizationError, EngineError
from guards import ReentrancyGuard
from liquidity_strategy import LiquidityOutcome, StrategyEventType, SwapLiquidityStrategy
from monitoring.logging import LoggingContext
from monitoring.metrics import MetricsCollector
from monitoring.metrics import metrics as default_metrics
from perpetual_endowment import EndowmentLike
from reward_ledger import BASIS_POINTS
from staking_pools import LPStakingPool, RewardPoolLike
from token_ledger import ONE_TOKEN, FungibleToken, is_valid_address

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

BURN_BPS = 2000
AUTO_LP_BPS = 4000
REWARDS_REFILL_BPS = 4000
CALLER_REWARD_BPS = 10

REFILL_LP_STAKING_BPS = 5000
REFILL_TOKEN_STAKING_BPS = 3750
REFILL_NFT_STAKING_BPS = 1250

MAX_SLIPPAGE_BPS = 2500
MAX_COOLDOWN = 86_400

DEFAULT_SLIPPAGE_BPS = 100
DEFAULT_MIN_AEC_TO_PROCESS = 1000 * ONE_TOKEN
DEFAULT_PROCESS_COOLDOWN = 3600


class EngineEventType(Enum):
    """Types of engine events."""

    PROCESSING_SKIPPED = "ProcessingSkipped"
    ENDOWMENT_RELEASED = "EndowmentReleased"
    ENDOWMENT_SKIPPED = "EndowmentSkipped"
    TAXES_COLLECTED = "TaxesCollected"
    AEC_BURNED = "AecBurnedInCycle"
    BURN_FAILED = "BurnFailed"
    ENGINE_LP_STAKED = "EngineLPStaked"
    ENGINE_LP_STAKE_FAILED = "EngineLPStakeFailed"
    REWARDS_DISTRIBUTED = "RewardsDistributed"
    REFILL_FAILED = "RefillFailed"
    CALLER_REWARDED = "CallerRewarded"
    CYCLE_PROCESSED = "CycleProcessed"
    STAKING_CONTRACTS_SET = "StakingContractsSet"
    CONFIG_UPDATED = "ConfigUpdated"
    PRIVILEGES_RENOUNCED = "DeployerPrivilegesRenounced"
    TOKENS_RESCUED = "ForeignTokensRescued"


@dataclass
class CycleReport:
    """Every quantity computed by one ``run_cycle`` call."""

    cycle_id: str
    caller: str
    timestamp: int
    processed: bool = False
    skip_reason: str | None = None
    balance_before: int = 0
    endowment_released: int = 0
    new_taxes: int = 0
    total_available: int = 0
    caller_reward: int = 0
    caller_paid: bool = False
    base_amount: int = 0
    burn_amount: int = 0
    burned: int = 0
    lp_amount: int = 0
    refill_amount: int = 0
    refill_distributed: dict[str, int] = field(default_factory=dict)
    refill_failed: dict[str, str] = field(default_factory=dict)
    dust: int = 0
    liquidity: LiquidityOutcome | None = None
    lp_staked: int = 0
    balance_after: int = 0

    @property
    def refill_total(self) -> int:
        return sum(self.refill_distributed.values())

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, int) and not isinstance(value, bool) and key != "timestamp":
                data[key] = str(value)
        data["refill_distributed"] = {k: str(v) for k, v in self.refill_distributed.items()}
        data["liquidity"] = self.liquidity.to_dict() if self.liquidity else None
        return data


class PerpetualEngine:
    """
    Tax-processing state machine.

    Holds two independent re-entrancy guards: one for the whole cycle and a
    narrower one used by the swap sub-steps.
    """

    def __init__(
        self,
        address: str,
        aec_token: FungibleToken,
        stablecoin: FungibleToken,
        router: RouterLike,
        lp_staking: LPStakingPool,
        endowment: EndowmentLike,
        deployer: str,
        clock: Clock,
        tax_holder: str | None = None,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        min_aec_to_process: int = DEFAULT_MIN_AEC_TO_PROCESS,
        process_cooldown: int = DEFAULT_PROCESS_COOLDOWN,
        metrics: MetricsCollector | None = None,
    ):
        checks = (
            (aec_token, "Invalid AEC address"),
            (stablecoin, "Invalid stablecoin address"),
            (router, "Invalid router address"),
            (lp_staking, "Invalid LP staking address"),
            (endowment, "Invalid endowment address"),
        )
        for collaborator, reason in checks:
            if collaborator is None or not is_valid_address(getattr(collaborator, "address", None)):
                raise EngineError(reason, action="init")
        if not is_valid_address(deployer):
            raise EngineError("Invalid deployer address", action="init")
        self._check_slippage(slippage_bps)
        self._check_min_process(min_aec_to_process)
        self._check_cooldown(process_cooldown)

        self.address = address
        self.aec_token = aec_token
        self.stablecoin = stablecoin
        self.router = router
        self.lp_staking = lp_staking
        self.token_staking: RewardPoolLike | None = None
        self.nft_staking: RewardPoolLike | None = None
        self.endowment = endowment
        self.deployer = deployer
        self.tax_holder = tax_holder
        self.clock = clock
        self.metrics = metrics or default_metrics

        self.slippage_basis_points = slippage_bps
        self.min_aec_to_process = min_aec_to_process
        self.public_process_cooldown = process_cooldown
        self.last_public_process_time = 0
        self.deployer_privileges_active = True
        self.staking_contracts_set = False

        self.cycle_count = 0
        self.total_endowment_received = 0
        self.last_endowment_release = 0
        self.total_taxes_collected = 0
        self.total_burned = 0
        self.total_lp_minted = 0
        self.total_rewards_distributed = 0
        self.total_caller_rewards = 0

        self._cycle_guard = ReentrancyGuard("cycle")
        self._swap_guard = ReentrancyGuard("swap")
        self.strategy = SwapLiquidityStrategy(
            owner=address,
            token=aec_token,
            paired_token=stablecoin,
            router=router,
            clock=clock,
            slippage_bps=slippage_bps,
            swap_guard=self._swap_guard,
            emit_event=self._emit_event,
        )

        self.events: list[dict[str, Any]] = []

    # =========================================================================
    # Validation
    # =========================================================================

    @staticmethod
    def _check_slippage(bps: int) -> None:
        if not 0 <= bps <= MAX_SLIPPAGE_BPS:
            raise EngineError("Slippage too high", action="configure", details={"bps": bps})

    @staticmethod
    def _check_min_process(amount: int) -> None:
        if amount <= 0:
            raise EngineError("Invalid minimum process amount", action="configure")

    @staticmethod
    def _check_cooldown(seconds: int) -> None:
        if seconds > MAX_COOLDOWN:
            raise EngineError("Cooldown too long", action="configure", details={"seconds": seconds})
        if seconds < 0:
            raise EngineError("Invalid cooldown", action="configure")

    def _require_deployer(self, caller: str, action: str) -> None:
        if not self.deployer_privileges_active or caller != self.deployer:
            raise AuthorizationError("Not authorized", prefix=EngineError.prefix, action=action)

    # =========================================================================
    # Cycle
    # =========================================================================

    def run_cycle(self, caller: str) -> CycleReport:
        """Process accumulated tax. Raises only for the cooldown or re-entry."""
        with self._cycle_guard:
            now = self.clock.now()
            next_allowed = self.last_public_process_time + self.public_process_cooldown
            if self.last_public_process_time and now < next_allowed:
                raise EngineError("Cooldown not elapsed", action="run_cycle",
                                  details={"next_allowed": next_allowed})

            report = CycleReport(cycle_id=uuid.uuid4().hex[:12], caller=caller, timestamp=now)
            with LoggingContext(cycle_id=report.cycle_id), \
                    self.metrics.timer("cycle_duration_ms"):
                self._run(report)
            return report

    def _run(self, report: CycleReport) -> None:
        # Step 1: snapshot, endowment pull, pullable tax
        report.balance_before = self.aec_token.balance_of(self.address)
        report.endowment_released = self._pull_endowment()
        pullable_tax = self._pullable_tax()
        report.total_available = self.aec_token.balance_of(self.address) + pullable_tax

        # Step 2: threshold
        if report.total_available < self.min_aec_to_process:
            report.skip_reason = "Below minimum process amount"
            report.balance_after = self.aec_token.balance_of(self.address)
            self._emit_event(
                EngineEventType.PROCESSING_SKIPPED,
                {"available": report.total_available, "required": self.min_aec_to_process,
                 "reason": report.skip_reason},
            )
            self.metrics.increment("cycles_skipped_total")
            logger.info(f"Cycle skipped: {report.total_available} < {self.min_aec_to_process}")
            return

        # Step 3: stamp cooldown before any further external call
        self.last_public_process_time = report.timestamp
        report.processed = True
        report.new_taxes = self._collect_taxes(pullable_tax)

        # Steps 4-5: caller reward from new tax only, then the split
        report.caller_reward = report.new_taxes * CALLER_REWARD_BPS // BASIS_POINTS
        report.base_amount = self.aec_token.balance_of(self.address) - report.caller_reward
        report.burn_amount = report.base_amount * BURN_BPS // BASIS_POINTS
        report.lp_amount = report.base_amount * AUTO_LP_BPS // BASIS_POINTS
        report.refill_amount = report.base_amount * REWARDS_REFILL_BPS // BASIS_POINTS
        report.dust = (
            report.base_amount - report.burn_amount - report.lp_amount - report.refill_amount
        )

        # Step 6: burn
        report.burned = self._burn(report.burn_amount)

        # Step 7: swap and liquidity ladder, then lock minted LP
        token_cap = max(
            0,
            self.aec_token.balance_of(self.address) - report.refill_amount - report.caller_reward,
        )
        report.liquidity = self.strategy.execute(report.lp_amount, token_cap=token_cap)
        self.total_lp_minted += report.liquidity.lp_minted
        if report.liquidity.lp_minted > 0:
            report.lp_staked = self._stake_engine_lp(report.liquidity.lp_minted)

        # Step 8: refill pools independently
        self._distribute_rewards(report)

        # Step 9: caller incentive
        report.caller_paid = self._pay_caller(report.caller, report.caller_reward)

        # Step 10: summary
        self.cycle_count += 1
        report.balance_after = self.aec_token.balance_of(self.address)
        self._emit_event(EngineEventType.CYCLE_PROCESSED, report.to_dict())
        self.metrics.increment("cycles_processed_total")
        self.metrics.set_gauge("engine_balance", report.balance_after)
        logger.info(
            f"Cycle {self.cycle_count} processed: tax={report.new_taxes} "
            f"burned={report.burned} lp={report.liquidity.lp_minted} "
            f"refilled={report.refill_total} caller={report.caller_reward}"
        )

    # =========================================================================
    # Cycle sub-steps (best effort)
    # =========================================================================

    def _soft_failure(self, step: str, exc: Exception) -> None:
        logger.warning(f"Cycle step '{step}' failed: {exc}")
        self.metrics.increment("soft_failures_total", labels={"step": step})

    def _pull_endowment(self) -> int:
        try:
            should_release, _, periods = self.endowment.suggest_optimal_release()
        except Exception as exc:
            self._soft_failure("endowment", exc)
            self._emit_event(EngineEventType.ENDOWMENT_SKIPPED, {"reason": str(exc)})
            return 0
        if not should_release:
            return 0

        try:
            released = self.endowment.release_funds(self.address)
        except Exception as exc:
            self._soft_failure("endowment", exc)
            self._emit_event(EngineEventType.ENDOWMENT_SKIPPED, {"reason": str(exc)})
            return 0

        self._emit_event(EngineEventType.ENDOWMENT_RELEASED,
                         {"amount": released, "periods": periods})
        return released

    def on_endowment_release(self, amount: int) -> None:
        """Notification from the endowment after it has transferred funds."""
        self.total_endowment_received += amount
        self.last_endowment_release = self.clock.now()
        self.metrics.increment("endowment_received_total", amount)

    def _pullable_tax(self) -> int:
        if not self.tax_holder:
            return 0
        return min(
            self.aec_token.allowance(self.tax_holder, self.address),
            self.aec_token.balance_of(self.tax_holder),
        )

    def _collect_taxes(self, amount: int) -> int:
        if amount == 0:
            return 0
        try:
            self.aec_token.transfer_from(self.address, self.tax_holder, self.address, amount)
        except Exception as exc:
            self._soft_failure("tax_collection", exc)
            return 0
        self.total_taxes_collected += amount
        self._emit_event(EngineEventType.TAXES_COLLECTED, {"amount": amount})
        return amount

    def _burn(self, amount: int) -> int:
        if amount == 0:
            return 0
        try:
            self.aec_token.burn(self.address, amount)
        except Exception as exc:
            self._soft_failure("burn", exc)
            self._emit_event(EngineEventType.BURN_FAILED,
                             {"amount": amount, "reason": str(exc)})
            return 0
        self.total_burned += amount
        self._emit_event(EngineEventType.AEC_BURNED, {"amount": amount})
        return amount

    def _stake_engine_lp(self, amount: int) -> int:
        lp_token = self.lp_staking.staking_token
        lp_token.approve(self.address, self.lp_staking.address, amount)
        try:
            self.lp_staking.stake_for_engine(self.address, amount)
        except Exception as exc:
            self._soft_failure("lp_staking", exc)
            self._emit_event(EngineEventType.ENGINE_LP_STAKE_FAILED,
                             {"amount": amount, "reason": str(exc)})
            return 0
        finally:
            lp_token.approve(self.address, self.lp_staking.address, 0)
        self._emit_event(EngineEventType.ENGINE_LP_STAKED, {"amount": amount})
        return amount

    def _refill_targets(self) -> list[tuple[str, RewardPoolLike | None, int]]:
        return [
            ("lp", self.lp_staking, REFILL_LP_STAKING_BPS),
            ("token", self.token_staking, REFILL_TOKEN_STAKING_BPS),
            ("nft", self.nft_staking, REFILL_NFT_STAKING_BPS),
        ]

    def _distribute_rewards(self, report: CycleReport) -> None:
        for name, pool, share_bps in self._refill_targets():
            share = report.refill_amount * share_bps // BASIS_POINTS
            if pool is None or share == 0:
                continue
            ok, details = self._refill_pool(pool, share)
            if ok:
                report.refill_distributed[name] = share
            else:
                report.refill_failed[name] = details["reason"]
                self._emit_event(EngineEventType.REFILL_FAILED,
                                 {"pool": name, "amount": share, **details})

        self.total_rewards_distributed += report.refill_total
        self._emit_event(
            EngineEventType.REWARDS_DISTRIBUTED,
            {"total": report.refill_total, "pools": dict(report.refill_distributed),
             "failed": list(report.refill_failed)},
        )

    def _refill_pool(self, pool: RewardPoolLike, amount: int) -> tuple[bool, dict[str, Any]]:
        self.aec_token.approve(self.address, pool.address, amount)
        try:
            pool.notify_reward_amount(self.address, amount)
        except Exception as exc:
            self.aec_token.approve(self.address, pool.address, 0)
            self._soft_failure("refill", exc)
            return False, {"reason": str(exc)}
        return True, {}

    def _pay_caller(self, caller: str, amount: int) -> bool:
        if amount == 0 or self.aec_token.balance_of(self.address) < amount:
            return False
        try:
            self.aec_token.transfer(self.address, caller, amount)
        except Exception as exc:
            self._soft_failure("caller_reward", exc)
            return False
        self.total_caller_rewards += amount
        self._emit_event(EngineEventType.CALLER_REWARDED, {"caller": caller, "amount": amount})
        return True

    # =========================================================================
    # Admin (deployer only, until renounced)
    # =========================================================================

    def set_staking_contracts(self, caller: str, token_staking: RewardPoolLike,
                              nft_staking: RewardPoolLike) -> None:
        self._require_deployer(caller, "set_staking_contracts")
        if self.staking_contracts_set:
            raise EngineError("Already set", action="set_staking_contracts")
        if token_staking is None or not is_valid_address(getattr(token_staking, "address", None)):
            raise EngineError("Invalid token staking address", action="set_staking_contracts")
        if nft_staking is None or not is_valid_address(getattr(nft_staking, "address", None)):
            raise EngineError("Invalid NFT staking address", action="set_staking_contracts")

        self.token_staking = token_staking
        self.nft_staking = nft_staking
        self.staking_contracts_set = True
        self._emit_event(
            EngineEventType.STAKING_CONTRACTS_SET,
            {"token_staking": token_staking.address, "nft_staking": nft_staking.address},
        )

    def set_slippage_tolerance(self, caller: str, bps: int) -> None:
        self._require_deployer(caller, "set_slippage_tolerance")
        self._check_slippage(bps)
        self.slippage_basis_points = bps
        self.strategy.slippage_bps = bps
        self._emit_event(EngineEventType.CONFIG_UPDATED, {"slippage_bps": bps})

    def set_process_cooldown(self, caller: str, seconds: int) -> None:
        self._require_deployer(caller, "set_process_cooldown")
        self._check_cooldown(seconds)
        self.public_process_cooldown = seconds
        self._emit_event(EngineEventType.CONFIG_UPDATED, {"process_cooldown": seconds})

    def set_min_aec_to_process(self, caller: str, amount: int) -> None:
        self._require_deployer(caller, "set_min_aec_to_process")
        self._check_min_process(amount)
        self.min_aec_to_process = amount
        self._emit_event(EngineEventType.CONFIG_UPDATED, {"min_aec_to_process": amount})

    def update_config(self, caller: str, slippage_bps: int | None = None,
                      process_cooldown: int | None = None,
                      min_aec_to_process: int | None = None) -> dict[str, int]:
        """
        Apply several parameters at once.

        Every supplied value is checked before any is assigned, so a rejected
        value leaves the whole configuration untouched.

        Returns:
            The fields that were updated
        """
        self._require_deployer(caller, "update_config")
        if slippage_bps is not None:
            self._check_slippage(slippage_bps)
        if process_cooldown is not None:
            self._check_cooldown(process_cooldown)
        if min_aec_to_process is not None:
            self._check_min_process(min_aec_to_process)

        updated = {}
        if slippage_bps is not None:
            self.slippage_basis_points = slippage_bps
            self.strategy.slippage_bps = slippage_bps
            updated["slippage_bps"] = slippage_bps
        if process_cooldown is not None:
            self.public_process_cooldown = process_cooldown
            updated["process_cooldown"] = process_cooldown
        if min_aec_to_process is not None:
            self.min_aec_to_process = min_aec_to_process
            updated["min_aec_to_process"] = min_aec_to_process
        if updated:
            self._emit_event(EngineEventType.CONFIG_UPDATED, dict(updated))
        return updated

    def renounce_deployer_privileges(self, caller: str) -> None:
        self._require_deployer(caller, "renounce_deployer_privileges")
        self.deployer_privileges_active = False
        self._emit_event(EngineEventType.PRIVILEGES_RENOUNCED, {"deployer": caller})
        logger.info("Deployer privileges renounced")

    def rescue_foreign_tokens(self, caller: str, token: FungibleToken, amount: int) -> int:
        """Return tokens sent to the engine by mistake. Never AEC or stablecoin."""
        self._require_deployer(caller, "rescue_foreign_tokens")
        if token.address == self.aec_token.address:
            raise EngineError("Cannot rescue AEC", action="rescue_foreign_tokens")
        if token.address == self.stablecoin.address:
            raise EngineError("Cannot rescue stablecoin", action="rescue_foreign_tokens")

        rescued = min(amount, token.balance_of(self.address))
        if rescued > 0:
            token.transfer(self.address, caller, rescued)
            self._emit_event(EngineEventType.TOKENS_RESCUED,
                             {"token": token.address, "amount": rescued})
        return rescued

    # =========================================================================
    # Views
    # =========================================================================

    def next_process_time(self) -> int:
        if not self.last_public_process_time:
            return 0
        return self.last_public_process_time + self.public_process_cooldown

    def get_cycle_preview(self) -> dict[str, Any]:
        """What ``run_cycle`` would do right now, without mutating anything."""
        now = self.clock.now()
        _, endowment_amount, _ = self.endowment.suggest_optimal_release()
        pullable_tax = self._pullable_tax()
        total = self.aec_token.balance_of(self.address) + endowment_amount + pullable_tax
        caller_reward = pullable_tax * CALLER_REWARD_BPS // BASIS_POINTS
        base = max(0, total - caller_reward)
        refill = base * REWARDS_REFILL_BPS // BASIS_POINTS
        return {
            "cooldown_elapsed": now >= self.next_process_time(),
            "next_process_time": self.next_process_time(),
            "would_process": total >= self.min_aec_to_process,
            "endowment_release": str(endowment_amount),
            "pullable_tax": str(pullable_tax),
            "total_available": str(total),
            "caller_reward": str(caller_reward),
            "burn_amount": str(base * BURN_BPS // BASIS_POINTS),
            "lp_amount": str(base * AUTO_LP_BPS // BASIS_POINTS),
            "refill_amount": str(refill),
            "refill_split": {
                name: str(refill * bps // BASIS_POINTS)
                for name, _, bps in self._refill_targets()
            },
        }

    def is_healthy(self) -> tuple[bool, dict[str, Any]]:
        issues = []
        if self.token_staking is None or self.nft_staking is None:
            issues.append("Staking contracts not configured")
        if self.router.get_pair(self.aec_token, self.stablecoin) is None:
            issues.append("No AEC/stablecoin pair")
        if not getattr(self.endowment, "is_sealed", True):
            issues.append("Endowment not sealed")
        return not issues, {"issues": issues}

    def get_engine_status(self) -> dict[str, Any]:
        healthy, health = self.is_healthy()
        return {
            "address": self.address,
            "healthy": healthy,
            "issues": health["issues"],
            "aec_balance": str(self.aec_token.balance_of(self.address)),
            "stablecoin_balance": str(self.stablecoin.balance_of(self.address)),
            "cycle_count": self.cycle_count,
            "last_public_process_time": self.last_public_process_time,
            "next_process_time": self.next_process_time(),
            "config": {
                "slippage_bps": self.slippage_basis_points,
                "min_aec_to_process": str(self.min_aec_to_process),
                "process_cooldown": self.public_process_cooldown,
                "deployer_privileges_active": self.deployer_privileges_active,
            },
            "pools": {
                name: pool.address if pool is not None else None
                for name, pool, _ in self._refill_targets()
            },
            "totals": {
                "taxes_collected": str(self.total_taxes_collected),
                "burned": str(self.total_burned),
                "lp_minted": str(self.total_lp_minted),
                "rewards_distributed": str(self.total_rewards_distributed),
                "caller_rewards": str(self.total_caller_rewards),
                "endowment_received": str(self.total_endowment_received),
            },
            "last_endowment_release": self.last_endowment_release,
        }

    def _emit_event(self, event_type: EngineEventType | StrategyEventType,
                    data: dict[str, Any]) -> None:
        """Emit an event for audit trail."""
        event = {
            "event_type": event_type.value,
            "timestamp": self.clock.now(),
            "data": data,
        }
        self.events.append(event)
