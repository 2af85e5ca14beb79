"""
Scoped re-entrancy guards.

A guard is entered with ``with guard:`` and always released on exit, whether
the body returns early, completes, or raises. Entering a guard that is
already held raises ``ReentrancyError`` without touching any state.

Usage:
    self._cycle_guard = ReentrancyGuard("cycle")

    def run_cycle(self, caller):
        with self._cycle_guard:
            ...
"""

import logging

from engine_errors import ReentrancyError

logger = logging.getLogger(__name__)


class ReentrancyGuard:
    """Set-flag / do-work / clear-flag guard for a single component."""

    def __init__(self, name: str):
        self.name = name
        self._entered = False

    @property
    def locked(self) -> bool:
        return self._entered

    def __enter__(self):
        if self._entered:
            logger.warning(f"Re-entrant call blocked by guard '{self.name}'")
            raise ReentrancyError(self.name)
        self._entered = True
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb):
        self._entered = False
        return False
