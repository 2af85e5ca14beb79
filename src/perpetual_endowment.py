"""
AEC Perpetual Engine - Perpetual Endowment

A sealed reserve that drips into the engine forever. Each release interval
the endowment gives up a fixed fraction of what it *currently* holds, never a
fraction of the original reserve:

    balance_{n+1} = balance_n * (1 - RELEASE_RATE)

so after any finite number of releases the balance is still positive, and the
total ever released stays strictly below the initial reserve.

Lifecycle:
1. Uninitialized: tokens are transferred in, then ``initialize()`` seals the
   reserve and starts the release clock.
2. Active: the engine calls ``release_funds()`` once at least one full
   interval has passed. Missed intervals are caught up (bounded per call).
3. Emergency: after a long silence the emergency multisig may withdraw the
   whole balance. This is the only path that empties the reserve.

Released tokens are transferred before the engine is notified; a failed
notification is logged and never undoes the transfer.
"""

import logging
import math
from collections.abc import Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Protocol

from clock import Clock
from engine_errors import AuthorizationError, EndowmentError
from guards import ReentrancyGuard
from reward_ledger import BASIS_POINTS, DAY
from token_ledger import ONE_TOKEN, FungibleToken, is_valid_address

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

RELEASE_RATE_BPS = 50  # 0.5% of the remaining balance per interval
MIN_RELEASE_INTERVAL = 1 * DAY
MAX_RELEASE_INTERVAL = 90 * DAY
DEFAULT_RELEASE_INTERVAL = 30 * DAY
MAX_PERIODS_PER_RELEASE = 6
EMERGENCY_DELAY = 180 * DAY
DUST_THRESHOLD = ONE_TOKEN // 1000

INITIAL_ENDOWMENT = 311_111_111 * ONE_TOKEN

YEAR = 365 * DAY


# =============================================================================
# Enums and Records
# =============================================================================


class EndowmentEventType(Enum):
    """Types of endowment events."""

    INITIALIZED = "EndowmentInitialized"
    FUNDS_RELEASED = "FundsReleased"
    EMERGENCY_RELEASE = "EmergencyReleaseTriggered"
    INTERVAL_UPDATED = "ReleaseIntervalUpdated"
    COMPOUNDING_SET = "CompoundingEnabled"
    NOTIFICATION_FAILED = "EngineNotificationFailed"


@dataclass
class ReleaseRecord:
    """One completed release."""

    timestamp: int
    amount: int
    periods: int
    remaining_balance: int
    compounding: bool

    def to_dict(self) -> dict[str, Any]:
        record = asdict(self)
        record["amount"] = str(self.amount)
        record["remaining_balance"] = str(self.remaining_balance)
        return record


class EndowmentLike(Protocol):
    """Endowment surface the engine pulls from each cycle."""

    address: str

    def suggest_optimal_release(self) -> tuple[bool, int, int]: ...

    def release_funds(self, caller: str) -> int: ...


# =============================================================================
# Endowment
# =============================================================================


class PerpetualEndowment:
    """Geometric-decay reserve feeding the perpetual engine."""

    def __init__(
        self,
        token: FungibleToken,
        address: str,
        engine_address: str,
        emergency_multisig: str,
        clock: Clock,
        initial_amount: int = INITIAL_ENDOWMENT,
        release_interval: int = DEFAULT_RELEASE_INTERVAL,
    ):
        if not is_valid_address(engine_address):
            raise EndowmentError("Invalid engine", action="init")
        if not is_valid_address(emergency_multisig):
            raise EndowmentError("Invalid multisig", action="init")
        if initial_amount <= 0:
            raise EndowmentError("Invalid amount", action="init")
        self._check_interval(release_interval)

        self.token = token
        self.address = address
        self.engine_address = engine_address
        self.emergency_multisig = emergency_multisig
        self.clock = clock

        self.initial_endowment_amount = initial_amount
        self.release_interval = release_interval
        self.compounding_enabled = True
        self.is_sealed = False
        self.sealed_at = 0
        self.last_release_time = 0
        self.release_count = 0
        self.total_released = 0
        self.emergency_released = False

        self.release_history: list[ReleaseRecord] = []
        self.events: list[dict[str, Any]] = []
        self._release_listeners: list[Callable[[int], Any]] = []
        self._guard = ReentrancyGuard("endowment")

    @property
    def current_balance(self) -> int:
        return self.token.balance_of(self.address)

    def add_release_listener(self, listener: Callable[[int], Any]) -> None:
        """Register a callback invoked with each released amount."""
        self._release_listeners.append(listener)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize(self) -> dict[str, Any]:
        """Seal the reserve. Requires the full initial amount already held."""
        if self.is_sealed:
            raise EndowmentError("Already sealed", action="initialize")
        balance = self.current_balance
        if balance < self.initial_endowment_amount:
            raise EndowmentError("Insufficient balance", action="initialize",
                                 details={"balance": balance,
                                          "required": self.initial_endowment_amount})

        now = self.clock.now()
        self.is_sealed = True
        self.sealed_at = now
        self.last_release_time = now

        self._emit_event(EndowmentEventType.INITIALIZED,
                         {"amount": balance, "timestamp": now})
        logger.info(f"Endowment sealed with {balance} base units")
        return self.get_status()

    def calculate_release(self) -> tuple[int, int]:
        """
        Amount and number of periods due right now.

        With compounding enabled each period releases RELEASE_RATE of the
        balance left after the previous one. Without it every period is
        charged against the pre-release balance.
        """
        if not self.is_sealed:
            return 0, 0
        elapsed = self.clock.now() - self.last_release_time
        periods = min(elapsed // self.release_interval, MAX_PERIODS_PER_RELEASE)
        if periods <= 0:
            return 0, 0

        balance = self.current_balance
        if balance < DUST_THRESHOLD:
            return balance, periods

        if self.compounding_enabled:
            remaining = balance
            for _ in range(periods):
                remaining -= remaining * RELEASE_RATE_BPS // BASIS_POINTS
            return balance - remaining, periods
        return balance * RELEASE_RATE_BPS * periods // BASIS_POINTS, periods

    def release_funds(self, caller: str) -> int:
        """Release all due periods to the engine and return the amount sent."""
        if caller != self.engine_address:
            raise AuthorizationError("Not engine", prefix=EndowmentError.prefix,
                                     action="release_funds")
        if not self.is_sealed:
            raise EndowmentError("Not sealed", action="release_funds")
        amount, periods = self.calculate_release()
        if periods == 0:
            raise EndowmentError("No release due", action="release_funds",
                                 details={"next_release": self.next_release_time()})

        with self._guard:
            now = self.clock.now()
            if amount > 0:
                self.token.transfer(self.address, self.engine_address, amount)
            self.last_release_time += periods * self.release_interval
            self.release_count += 1
            self.total_released += amount

            remaining = self.current_balance
            self.release_history.append(
                ReleaseRecord(now, amount, periods, remaining, self.compounding_enabled)
            )
            self._emit_event(
                EndowmentEventType.FUNDS_RELEASED,
                {"amount": amount, "periods": periods, "remaining": remaining},
            )
            logger.info(f"Endowment released {amount} for {periods} period(s), {remaining} left")

        if amount > 0:
            self._notify_listeners(amount)
        return amount

    def _notify_listeners(self, amount: int) -> None:
        for listener in self._release_listeners:
            try:
                listener(amount)
            except Exception as exc:
                logger.warning(f"Endowment release notification failed: {exc}")
                self._emit_event(
                    EndowmentEventType.NOTIFICATION_FAILED,
                    {"amount": amount, "error": str(exc)},
                )

    def emergency_release(self, caller: str) -> int:
        """Send the whole balance to the multisig after a long silence."""
        if caller != self.emergency_multisig:
            raise AuthorizationError("Not emergency", prefix=EndowmentError.prefix,
                                     action="emergency_release")
        if not self.is_sealed:
            raise EndowmentError("Not sealed", action="emergency_release")
        now = self.clock.now()
        if now < self.last_release_time + EMERGENCY_DELAY:
            raise EndowmentError("Emergency delay not met", action="emergency_release",
                                 details={"available_at": self.last_release_time + EMERGENCY_DELAY})

        with self._guard:
            amount = self.current_balance
            if amount > 0:
                self.token.transfer(self.address, self.emergency_multisig, amount)
            self.emergency_released = True
            self.last_release_time = now

        self._emit_event(EndowmentEventType.EMERGENCY_RELEASE,
                         {"amount": amount, "recipient": self.emergency_multisig})
        logger.critical(f"Emergency release of {amount} to {self.emergency_multisig}")
        return amount

    # =========================================================================
    # Engine-controlled settings
    # =========================================================================

    @staticmethod
    def _check_interval(interval: int) -> None:
        if interval < MIN_RELEASE_INTERVAL:
            raise EndowmentError("Below minimum", action="update_release_interval")
        if interval > MAX_RELEASE_INTERVAL:
            raise EndowmentError("Above maximum", action="update_release_interval")

    def update_release_interval(self, caller: str, interval: int) -> None:
        if caller != self.engine_address:
            raise AuthorizationError("Not engine", prefix=EndowmentError.prefix,
                                     action="update_release_interval")
        self._check_interval(interval)
        old = self.release_interval
        self.release_interval = interval
        self._emit_event(EndowmentEventType.INTERVAL_UPDATED,
                         {"old_interval": old, "new_interval": interval})

    def set_compounding(self, caller: str, enabled: bool) -> None:
        if caller != self.engine_address:
            raise AuthorizationError("Not engine", prefix=EndowmentError.prefix,
                                     action="set_compounding")
        self.compounding_enabled = enabled
        self._emit_event(EndowmentEventType.COMPOUNDING_SET, {"enabled": enabled})

    # =========================================================================
    # Views
    # =========================================================================

    def next_release_time(self) -> int:
        if not self.is_sealed:
            return 0
        return self.last_release_time + self.release_interval

    def suggest_optimal_release(self) -> tuple[bool, int, int]:
        """(should_release, amount, periods_waiting) without mutating state."""
        amount, periods = self.calculate_release()
        return periods > 0 and amount > 0, amount, periods

    def project_future_balance(self, periods: int) -> int:
        """Balance after ``periods`` further releases at the current rate."""
        balance = self.current_balance
        for _ in range(max(0, periods)):
            balance -= balance * RELEASE_RATE_BPS // BASIS_POINTS
        return balance

    def verify_sustainability(self, periods: int) -> dict[str, Any]:
        """Check that the reserve survives ``periods`` more releases."""
        projected = self.project_future_balance(periods)
        balance = self.current_balance
        retention = 1 - RELEASE_RATE_BPS / BASIS_POINTS
        if balance > DUST_THRESHOLD:
            periods_to_dust = math.ceil(math.log(DUST_THRESHOLD / balance) / math.log(retention))
        else:
            periods_to_dust = 0
        return {
            "sustainable": projected > 0,
            "projected_balance": str(projected),
            "projected_released": str(balance - projected),
            "periods": periods,
            "periods_until_dust": periods_to_dust,
            "years_until_dust": round(periods_to_dust * self.release_interval / YEAR, 1),
        }

    def get_current_apr(self) -> int:
        """Annualized release rate in basis points, 0 before the first release."""
        if self.release_count == 0:
            return 0
        return RELEASE_RATE_BPS * (YEAR // self.release_interval)

    def health_check(self) -> dict[str, Any]:
        balance = self.current_balance
        if not self.is_sealed:
            is_healthy, status = False, "Not initialized"
        elif self.emergency_released:
            is_healthy, status = False, "Emergency released"
        elif balance < DUST_THRESHOLD:
            is_healthy, status = False, "Depleted"
        elif self.clock.now() > self.last_release_time + 2 * self.release_interval:
            is_healthy, status = True, "Release overdue"
        else:
            is_healthy, status = True, "Operational"
        return {
            "is_healthy": is_healthy,
            "status": status,
            "balance": str(balance),
            "percentage_remaining": self._percentage_remaining(balance),
            "next_release_time": self.next_release_time(),
        }

    def _percentage_remaining(self, balance: int) -> int:
        return balance * BASIS_POINTS // self.initial_endowment_amount

    def get_status(self) -> dict[str, Any]:
        balance = self.current_balance
        should_release, amount, periods = self.suggest_optimal_release()
        return {
            "address": self.address,
            "is_sealed": self.is_sealed,
            "initial_endowment_amount": str(self.initial_endowment_amount),
            "current_balance": str(balance),
            "total_released": str(self.total_released),
            "release_count": self.release_count,
            "percentage_remaining": self._percentage_remaining(balance),
            "release_interval": self.release_interval,
            "last_release_time": self.last_release_time,
            "next_release_time": self.next_release_time(),
            "compounding_enabled": self.compounding_enabled,
            "release_due": should_release,
            "pending_release": str(amount),
            "periods_waiting": periods,
        }

    def get_release_history(self, limit: int | None = None) -> list[dict[str, Any]]:
        records = self.release_history[-limit:] if limit else self.release_history
        return [record.to_dict() for record in records]

    def _emit_event(self, event_type: EndowmentEventType, data: dict[str, Any]) -> None:
        """Emit an event for audit trail."""
        event = {
            "event_type": event_type.value,
            "timestamp": self.clock.now(),
            "data": data,
        }
        self.events.append(event)
