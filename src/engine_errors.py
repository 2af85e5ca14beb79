"""
AEC Perpetual Engine - Protocol Exception Hierarchy

Hard-precondition failures (zero amounts, insufficient balance or allowance,
unauthorized callers, positions still locked, one-time actions repeated) abort
the whole call and surface as one of these exceptions. Every exception carries
a component prefix and a distinct reason string, e.g. ``"PE: Cooldown not
elapsed"``, so off-chain tooling can tell failures apart.

Soft operational failures (AMM quotes, swaps, burns, pool refills) are never
raised out of the engine; see ``perpetual_engine`` and ``liquidity_strategy``.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ErrorSeverity(Enum):
    """Severity levels for protocol errors."""
    LOW = "low"           # Expected user error (bad amount, locked position)
    MEDIUM = "medium"     # Misconfiguration or unauthorized call
    HIGH = "high"         # Invariant at risk
    CRITICAL = "critical" # Funds at risk, requires intervention


@dataclass
class ErrorContext:
    """Structured context for error tracking and debugging."""
    component: str
    action: str
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    details: dict[str, Any] = field(default_factory=dict)
    severity: ErrorSeverity = ErrorSeverity.LOW

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "component": self.component,
            "action": self.action,
            "timestamp": self.timestamp,
            "details": self.details,
            "severity": self.severity.value
        }


class ProtocolError(Exception):
    """
    Base exception for all hard-precondition failures.

    The message is always ``"<prefix>: <reason>"``. ``reason`` is kept
    separately so callers can branch on it without parsing.
    """

    prefix = "AEC"
    component = "protocol"
    default_severity = ErrorSeverity.LOW

    def __init__(
        self,
        reason: str,
        prefix: str | None = None,
        action: str = "unknown",
        severity: ErrorSeverity | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None
    ):
        self.prefix = prefix or self.prefix
        self.reason = reason
        self.message = f"{self.prefix}: {reason}"
        super().__init__(self.message)
        self.context = ErrorContext(
            component=self.component,
            action=action,
            severity=severity or self.default_severity,
            details=details or {}
        )
        self.cause = cause

        if cause:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        result = {
            "error_type": type(self).__name__,
            "error": self.message,
            "reason": self.reason,
            **self.context.to_dict()
        }
        if self.cause:
            result["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause)
            }
        return result

    def __str__(self) -> str:
        base = self.message
        if self.cause:
            base += f" (caused by: {self.cause})"
        return base


class AuthorizationError(ProtocolError):
    """Caller is not allowed to perform the action."""

    component = "access_control"
    default_severity = ErrorSeverity.MEDIUM


class ReentrancyError(ProtocolError):
    """A guarded call was entered while already in flight."""

    prefix = "ReentrancyGuard"
    component = "guards"
    default_severity = ErrorSeverity.HIGH

    def __init__(self, guard_name: str):
        super().__init__(
            "reentrant call",
            action=guard_name,
            details={"guard": guard_name},
        )
        self.guard_name = guard_name


# =============================================================================
# Collaborator Errors
# =============================================================================

class TokenError(ProtocolError):
    """Fungible token or NFT collection failures."""

    prefix = "ERC20"
    component = "token"


class InsufficientBalanceError(TokenError):
    """Transfer or burn exceeds the holder's balance."""

    def __init__(self, holder: str, needed: int, available: int, prefix: str | None = None):
        super().__init__(
            "transfer amount exceeds balance",
            prefix=prefix,
            action="transfer",
            details={"holder": holder, "needed": needed, "available": available},
        )


class InsufficientAllowanceError(TokenError):
    """transfer_from exceeds the approved allowance."""

    def __init__(self, owner: str, spender: str, needed: int, available: int,
                 prefix: str | None = None):
        super().__init__(
            "insufficient allowance",
            prefix=prefix,
            action="transfer_from",
            details={
                "owner": owner,
                "spender": spender,
                "needed": needed,
                "available": available,
            },
        )


class RouterError(ProtocolError):
    """AMM router call reverted."""

    prefix = "Router"
    component = "amm_router"


# =============================================================================
# Core Component Errors
# =============================================================================

class StakingError(ProtocolError):
    """Staking pool precondition failures."""

    prefix = "Staking"
    component = "staking"


class EndowmentError(ProtocolError):
    """Perpetual endowment precondition failures."""

    prefix = "ENDOW"
    component = "perpetual_endowment"


class EngineError(ProtocolError):
    """Perpetual engine precondition failures."""

    prefix = "PE"
    component = "perpetual_engine"
