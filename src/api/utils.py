"""
Shared utilities for the AEC engine API.

This module contains common utilities, decorators, and helpers
used across all API blueprints.
"""

import ipaddress
import os
import secrets
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any

from flask import jsonify, request

from token_ledger import is_valid_address

# ============================================================
# Security Configuration
# ============================================================

# API key for state-changing endpoints
API_KEY = os.getenv("AEC_API_KEY", None)
# SECURITY: Default to requiring authentication for production safety
API_KEY_REQUIRED = os.getenv("AEC_REQUIRE_AUTH", "true").lower() == "true"

# Rate limiting configuration
RATE_LIMIT_REQUESTS = int(os.getenv("RATE_LIMIT_REQUESTS", "100"))
RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", "60"))  # seconds
rate_limit_store: dict[str, dict[str, Any]] = {}

# Bounded parameters
MAX_RESULTS = 100
MAX_NFT_IDS = 50
MAX_ADDRESS_LENGTH = 128


# ============================================================
# Validation Utilities
# ============================================================

def validate_limit(limit: Any, max_limit: int = MAX_RESULTS) -> int:
    """Bound a list limit to [1, max_limit]."""
    try:
        value = int(limit) if limit else max_limit
    except (TypeError, ValueError):
        value = max_limit
    return max(1, min(value, max_limit))


def validate_json_schema(
    data: dict[str, Any],
    required_fields: dict[str, type],
    optional_fields: dict[str, type] | None = None,
    max_lengths: dict[str, int] | None = None
) -> tuple:
    """
    Validate JSON payload against a simple schema.

    Args:
        data: The JSON data to validate
        required_fields: Dict mapping field names to expected types
        optional_fields: Dict mapping optional field names to expected types
        max_lengths: Dict mapping field names to maximum string lengths

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(data, dict):
        return False, "Request body must be a JSON object"

    for field_name, expected_type in required_fields.items():
        if field_name not in data:
            return False, f"Missing required field: {field_name}"
        if not _is_type(data[field_name], expected_type):
            return False, f"Field '{field_name}' must be of type {_type_name(expected_type)}"

    if optional_fields:
        for field_name, expected_type in optional_fields.items():
            if field_name in data and data[field_name] is not None:
                if not _is_type(data[field_name], expected_type):
                    return False, f"Field '{field_name}' must be of type {_type_name(expected_type)}"

    if max_lengths:
        for field_name, max_len in max_lengths.items():
            if field_name in data and isinstance(data[field_name], str):
                if len(data[field_name]) > max_len:
                    return False, f"Field '{field_name}' exceeds maximum length of {max_len}"

    return True, None


def _is_type(value: Any, expected: type | tuple) -> bool:
    # bool is an int subclass; amounts and tiers must not accept it
    if isinstance(value, bool) and bool not in _as_tuple(expected):
        return False
    return isinstance(value, expected)


def _as_tuple(expected: type | tuple) -> tuple:
    return expected if isinstance(expected, tuple) else (expected,)


def _type_name(expected: type | tuple) -> str:
    return " or ".join(t.__name__ for t in _as_tuple(expected))


def parse_amount(value: Any) -> int | None:
    """
    Parse a base-unit token amount.

    Amounts travel as decimal strings because 18-decimal values overflow
    JSON numbers in most clients. Plain integers are accepted as well.
    Returns None for anything that is not a non-negative integer.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def validate_address(value: Any) -> str | None:
    """Return an error message, or None for a usable account address."""
    if not isinstance(value, str) or not value:
        return "Account address required"
    if len(value) > MAX_ADDRESS_LENGTH:
        return f"Address exceeds maximum length of {MAX_ADDRESS_LENGTH}"
    if not is_valid_address(value):
        return "Invalid address"
    return None


# ============================================================
# IP and Rate Limiting Utilities
# ============================================================

def is_valid_ip(ip_str: str) -> bool:
    try:
        ipaddress.ip_address(ip_str.strip())
        return True
    except (ValueError, AttributeError):
        return False


# SECURITY: Only trust X-Forwarded-For from these proxies
TRUSTED_PROXIES = set(
    ip.strip() for ip in os.getenv("AEC_TRUSTED_PROXIES", "").split(",")
    if ip.strip()
)


def get_client_ip() -> str:
    """
    Get client IP address, considering proxies.

    Only trusts X-Forwarded-For when the request comes from a trusted proxy
    and uses the rightmost untrusted IP.
    """
    remote_addr = request.remote_addr or 'unknown'

    if TRUSTED_PROXIES and remote_addr in TRUSTED_PROXIES:
        xff = request.headers.get('X-Forwarded-For')
        if xff:
            parts = [p.strip() for p in xff.split(',')]
            for ip in reversed(parts):
                if ip and is_valid_ip(ip) and ip not in TRUSTED_PROXIES:
                    return ip
            for ip in parts:
                if ip and is_valid_ip(ip):
                    return ip

    return remote_addr


def check_rate_limit() -> dict[str, Any] | None:
    """
    Check if client has exceeded rate limit.

    Returns:
        None if within limit, error dict if exceeded
    """
    client_ip = get_client_ip()
    current_time = time.time()

    if client_ip not in rate_limit_store:
        rate_limit_store[client_ip] = {
            "count": 0,
            "window_start": current_time
        }

    client_data = rate_limit_store[client_ip]

    if current_time - client_data["window_start"] > RATE_LIMIT_WINDOW:
        client_data["count"] = 0
        client_data["window_start"] = current_time

    if client_data["count"] >= RATE_LIMIT_REQUESTS:
        return {
            "error": "Rate limit exceeded",
            "retry_after": int(RATE_LIMIT_WINDOW - (current_time - client_data["window_start"]))
        }

    client_data["count"] += 1
    return None


# ============================================================
# Authentication Decorator
# ============================================================

def require_api_key(f):
    """Decorator to require API key authentication."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not API_KEY_REQUIRED:
            return f(*args, **kwargs)

        provided_key = request.headers.get('X-API-Key')

        if not provided_key:
            return jsonify({
                "error": "API key required",
                "hint": "Provide API key in X-API-Key header"
            }), 401

        if not API_KEY:
            return jsonify({
                "error": "Server API key not configured",
                "hint": "Set AEC_API_KEY environment variable"
            }), 503

        if not secrets.compare_digest(provided_key, API_KEY):
            return jsonify({"error": "Invalid API key"}), 403

        return f(*args, **kwargs)
    return decorated_function


# ============================================================
# Manager Registry
# ============================================================

@dataclass
class ManagerRegistry:
    """
    Registry for the live protocol instance served by the API.

    Blueprints check ``protocol`` and answer 503 while it is unset.
    """
    protocol: Any = None

    @property
    def engine(self) -> Any:
        return self.protocol.engine if self.protocol else None

    @property
    def endowment(self) -> Any:
        return self.protocol.endowment if self.protocol else None

    def get_pool(self, name: str) -> Any:
        return self.protocol.get_pool(name) if self.protocol else None

    def is_simulated(self) -> bool:
        """True when the protocol runs on a manually advanced clock."""
        return self.protocol is not None and hasattr(self.protocol.clock, "advance")


# Global manager registry instance
managers = ManagerRegistry()
