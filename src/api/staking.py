"""
AEC Engine - Staking API Blueprint

Endpoints for the three reward pools (``lp``, ``token``, ``nft``):
- Pool statistics and lock tiers
- Per-account position and pending rewards
- Stake, withdraw, upgrade tier, claim and exit
"""

from flask import Blueprint, jsonify, request

from staking_pools import TIERS, NFTStakingPool

from .state import managers, state_lock
from .utils import (
    MAX_NFT_IDS,
    parse_amount,
    require_api_key,
    validate_address,
    validate_json_schema,
)

staking_bp = Blueprint("staking", __name__)


def _get_pool(name: str):
    """Return (pool, error_response)."""
    if not managers.protocol:
        return None, (jsonify({"error": "Staking pools not initialized"}), 503)
    pool = managers.get_pool(name)
    if pool is None:
        return None, (jsonify({"error": f"Unknown pool: {name}"}), 404)
    return pool, None


def _account_payload(data: dict, extra: dict | None = None):
    """Validate ``{"account": ...}`` plus extra typed fields."""
    is_valid, error = validate_json_schema(data, {"account": str, **(extra or {})})
    if not is_valid:
        return error
    return validate_address(data["account"])


# =============================================================================
# Views
# =============================================================================


@staking_bp.route("/staking/tiers", methods=["GET"])
def list_tiers():
    """Lock tiers shared by the token and LP pools."""
    return jsonify({"tiers": [tier.to_dict() for tier in TIERS]})


@staking_bp.route("/staking/<pool_name>/stats", methods=["GET"])
def pool_stats(pool_name: str):
    pool, error = _get_pool(pool_name)
    if error:
        return error

    with state_lock:
        return jsonify(pool.get_pool_stats())


@staking_bp.route("/staking/<pool_name>/positions/<account>", methods=["GET"])
def position(pool_name: str, account: str):
    """Position, lock state and pending reward for one account."""
    pool, error = _get_pool(pool_name)
    if error:
        return error
    address_error = validate_address(account)
    if address_error:
        return jsonify({"error": address_error}), 400

    with state_lock:
        return jsonify(pool.get_stake_info(account))


# =============================================================================
# Position Management
# =============================================================================


@staking_bp.route("/staking/<pool_name>/stake", methods=["POST"])
@require_api_key
def stake(pool_name: str):
    """
    Stake into a pool.

    Request body (token / lp pools):
        {"account": "0x...", "amount": "1000000000000000000", "tier": 1}

    Request body (nft pool):
        {"account": "0x...", "token_ids": [1, 2, 3]}

    The account must already have approved the pool for the amount or ids.
    """
    pool, error = _get_pool(pool_name)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    if isinstance(pool, NFTStakingPool):
        return _stake_nfts(pool, data)

    payload_error = _account_payload(data, {"amount": (str, int), "tier": int})
    if payload_error:
        return jsonify({"error": payload_error}), 400
    amount = parse_amount(data["amount"])
    if amount is None:
        return jsonify({"error": "amount must be a non-negative integer"}), 400

    with state_lock:
        result = pool.stake(data["account"], amount, data["tier"])
    return jsonify(result.to_dict()), 201


def _token_ids_payload(data: dict) -> str | None:
    """Validate an account plus a bounded list of integer token ids."""
    payload_error = _account_payload(data, {"token_ids": list})
    if payload_error:
        return payload_error
    token_ids = data["token_ids"]
    if len(token_ids) > MAX_NFT_IDS:
        return f"At most {MAX_NFT_IDS} token ids per request"
    if not all(isinstance(t, int) and not isinstance(t, bool) for t in token_ids):
        return "token_ids must be integers"
    return None


def _stake_nfts(pool: NFTStakingPool, data: dict):
    payload_error = _token_ids_payload(data)
    if payload_error:
        return jsonify({"error": payload_error}), 400

    with state_lock:
        result = pool.stake_nfts(data["account"], data["token_ids"])
    return jsonify(result.to_dict()), 201


@staking_bp.route("/staking/<pool_name>/withdraw", methods=["POST"])
@require_api_key
def withdraw(pool_name: str):
    """
    Withdraw principal (token / lp) or unstake NFTs.

    Request body:
        {"account": "0x...", "amount": "..."}  or  {"account": "0x...", "token_ids": [...]}
    """
    pool, error = _get_pool(pool_name)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    if isinstance(pool, NFTStakingPool):
        payload_error = _token_ids_payload(data)
        if payload_error:
            return jsonify({"error": payload_error}), 400
        with state_lock:
            released = pool.unstake_nfts(data["account"], data["token_ids"])
        return jsonify({"account": data["account"], "unstaked": released})

    payload_error = _account_payload(data, {"amount": (str, int)})
    if payload_error:
        return jsonify({"error": payload_error}), 400
    amount = parse_amount(data["amount"])
    if amount is None:
        return jsonify({"error": "amount must be a non-negative integer"}), 400

    with state_lock:
        withdrawn = pool.withdraw(data["account"], amount)
    return jsonify({"account": data["account"], "withdrawn": str(withdrawn)})


@staking_bp.route("/staking/<pool_name>/upgrade", methods=["POST"])
@require_api_key
def upgrade_tier(pool_name: str):
    """Move a position to a longer lock tier: {"account": "0x...", "tier": 3}"""
    pool, error = _get_pool(pool_name)
    if error:
        return error
    if isinstance(pool, NFTStakingPool):
        return jsonify({"error": "NFT pool has no tiers"}), 400

    data = request.get_json(silent=True) or {}
    payload_error = _account_payload(data, {"tier": int})
    if payload_error:
        return jsonify({"error": payload_error}), 400

    with state_lock:
        result = pool.upgrade_tier(data["account"], data["tier"])
    return jsonify(result.to_dict())


@staking_bp.route("/staking/<pool_name>/claim", methods=["POST"])
@require_api_key
def claim(pool_name: str):
    pool, error = _get_pool(pool_name)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    payload_error = _account_payload(data)
    if payload_error:
        return jsonify({"error": payload_error}), 400

    with state_lock:
        reward = pool.claim_reward(data["account"])
    return jsonify({"account": data["account"], "reward": str(reward)})


@staking_bp.route("/staking/<pool_name>/exit", methods=["POST"])
@require_api_key
def exit_pool(pool_name: str):
    """Withdraw everything and claim in one call."""
    pool, error = _get_pool(pool_name)
    if error:
        return error

    data = request.get_json(silent=True) or {}
    payload_error = _account_payload(data)
    if payload_error:
        return jsonify({"error": payload_error}), 400

    with state_lock:
        withdrawn, reward = pool.exit(data["account"])
    return jsonify({
        "account": data["account"],
        "withdrawn": str(withdrawn),
        "reward": str(reward),
    })
