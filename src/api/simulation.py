"""
AEC Engine - Simulation API Blueprint

Drives a protocol instance that runs on a manual clock:
- Advance block time
- Accrue transfer tax for the engine to collect
- Faucet AEC / stablecoin / membership NFTs to test accounts
- Full protocol overview

Time and faucet endpoints answer 409 when the server runs on the system clock.
"""

from flask import Blueprint, jsonify, request

from .state import managers, state_lock
from .utils import (
    MAX_NFT_IDS,
    parse_amount,
    require_api_key,
    validate_address,
    validate_json_schema,
)

simulation_bp = Blueprint("simulation", __name__)

# One year
MAX_ADVANCE_SECONDS = 365 * 86_400


def _require_simulation():
    if not managers.protocol:
        return jsonify({"error": "Protocol not initialized"}), 503
    if not managers.is_simulated():
        return jsonify({"error": "Server is not running a simulation clock"}), 409
    return None


@simulation_bp.route("/protocol/overview", methods=["GET"])
def overview():
    """Snapshot of every component."""
    if not managers.protocol:
        return jsonify({"error": "Protocol not initialized"}), 503

    with state_lock:
        return jsonify(managers.protocol.get_overview())


@simulation_bp.route("/simulation/advance", methods=["POST"])
@require_api_key
def advance_time():
    """
    Advance the simulation clock.

    Request body:
        {"seconds": 3600}
    """
    error = _require_simulation()
    if error:
        return error

    data = request.get_json(silent=True) or {}
    is_valid, message = validate_json_schema(data, {"seconds": int})
    if not is_valid:
        return jsonify({"error": message}), 400
    seconds = data["seconds"]
    if seconds < 0 or seconds > MAX_ADVANCE_SECONDS:
        return jsonify({"error": f"seconds must be between 0 and {MAX_ADVANCE_SECONDS}"}), 400

    with state_lock:
        now = managers.protocol.clock.advance(seconds)
    return jsonify({"timestamp": now})


@simulation_bp.route("/simulation/tax", methods=["POST"])
@require_api_key
def accrue_tax():
    """
    Accrue transfer tax in the tax holder.

    Request body:
        {"amount": "5000000000000000000000"}
    """
    error = _require_simulation()
    if error:
        return error

    data = request.get_json(silent=True) or {}
    amount = parse_amount(data.get("amount"))
    if amount is None or amount == 0:
        return jsonify({"error": "amount must be a positive integer"}), 400

    with state_lock:
        managers.protocol.fund_tax(amount)
        pending = managers.protocol.aec.balance_of(managers.protocol.tax_holder)
    return jsonify({"accrued": str(amount), "pending_tax": str(pending)})


@simulation_bp.route("/simulation/faucet", methods=["POST"])
@require_api_key
def faucet():
    """
    Mint test balances.

    Request body:
        {
            "account": "0x...",
            "aec": "1000000000000000000",   // optional
            "stablecoin": "0",              // optional
            "nfts": 2                       // optional, membership NFTs to mint
        }
    """
    error = _require_simulation()
    if error:
        return error

    data = request.get_json(silent=True) or {}
    is_valid, message = validate_json_schema(
        data, {"account": str}, optional_fields={"aec": (str, int), "stablecoin": (str, int),
                                                 "nfts": int},
    )
    if not is_valid:
        return jsonify({"error": message}), 400
    message = validate_address(data["account"])
    if message:
        return jsonify({"error": message}), 400

    aec = parse_amount(data.get("aec", 0))
    stablecoin = parse_amount(data.get("stablecoin", 0))
    nfts = data.get("nfts") or 0
    if aec is None or stablecoin is None:
        return jsonify({"error": "amounts must be non-negative integers"}), 400
    if not 0 <= nfts <= MAX_NFT_IDS:
        return jsonify({"error": f"nfts must be between 0 and {MAX_NFT_IDS}"}), 400

    account = data["account"]
    protocol = managers.protocol
    with state_lock:
        protocol.fund_account(account, aec=aec, stablecoin=stablecoin)
        token_ids = [protocol.nft.mint(account) for _ in range(nfts)]
        balances = {
            "aec": str(protocol.aec.balance_of(account)),
            "stablecoin": str(protocol.stablecoin.balance_of(account)),
        }
    return jsonify({"account": account, "balances": balances, "token_ids": token_ids})


@simulation_bp.route("/simulation/approve", methods=["POST"])
@require_api_key
def approve():
    """
    Approve a pool to pull an account's tokens before staking.

    Request body:
        {"account": "0x...", "pool": "token", "amount": "..."}   // token / lp pools
        {"account": "0x...", "pool": "nft"}                       // operator approval
    """
    error = _require_simulation()
    if error:
        return error

    data = request.get_json(silent=True) or {}
    is_valid, message = validate_json_schema(
        data, {"account": str, "pool": str}, optional_fields={"amount": (str, int)},
    )
    if not is_valid:
        return jsonify({"error": message}), 400
    pool = managers.get_pool(data["pool"])
    if pool is None:
        return jsonify({"error": f"Unknown pool: {data['pool']}"}), 404

    account = data["account"]
    with state_lock:
        if data["pool"] == "nft":
            pool.nft.set_approval_for_all(account, pool.address, True)
            return jsonify({"account": account, "operator": pool.address, "approved": True})

        amount = parse_amount(data.get("amount"))
        if amount is None:
            return jsonify({"error": "amount must be a non-negative integer"}), 400
        pool.staking_token.approve(account, pool.address, amount)
    return jsonify({"account": account, "spender": pool.address, "amount": str(amount)})
