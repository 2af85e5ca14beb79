"""
Shared state for the AEC engine API.

Holds the protocol instance used across all blueprints plus the lock that
serializes every state-changing request. Protocol calls sample the clock once
and assume nothing else runs in between, so concurrent requests must not
interleave.
"""

import logging
import threading

from api.utils import managers
from clock import Clock
from engine_config import EngineConfig
from protocol import AecProtocol, build_protocol

logger = logging.getLogger(__name__)

# Serializes all mutations of the shared protocol instance
state_lock = threading.RLock()


def init_protocol(config: EngineConfig | None = None, clock: Clock | None = None) -> AecProtocol:
    """Deploy a fresh protocol and register it for the blueprints."""
    with state_lock:
        managers.protocol = build_protocol(config, clock)
        logger.info("Protocol instance initialized")
        return managers.protocol


def set_protocol(protocol: AecProtocol | None) -> None:
    """Serve an already-built protocol (tests, simulations)."""
    with state_lock:
        managers.protocol = protocol


__all__ = ["managers", "state_lock", "init_protocol", "set_protocol"]
