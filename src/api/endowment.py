"""
AEC Engine - Endowment API Blueprint

REST API endpoints for the perpetual endowment.
Provides access to:
- Reserve status and health
- Release history
- Balance projections and sustainability reports
- Emergency release (multisig only, after the inactivity delay)
"""

from flask import Blueprint, jsonify, request

from monitoring.middleware import counted

from .state import managers, state_lock
from .utils import require_api_key, validate_json_schema, validate_limit

endowment_bp = Blueprint("endowment", __name__)

MAX_PROJECTION_PERIODS = 1200


# =============================================================================
# Status Endpoints
# =============================================================================


@endowment_bp.route("/endowment/status", methods=["GET"])
def endowment_status():
    """
    Current reserve status.

    Returns:
        Balance, release counters, timing and any pending release
    """
    if not managers.endowment:
        return jsonify({"error": "Endowment not initialized"}), 503

    with state_lock:
        status = managers.endowment.get_status()
        status["current_apr_bps"] = managers.endowment.get_current_apr()
    return jsonify(status)


@endowment_bp.route("/endowment/health", methods=["GET"])
def endowment_health():
    if not managers.endowment:
        return jsonify({"error": "Endowment not initialized"}), 503

    with state_lock:
        health = managers.endowment.health_check()
    return jsonify(health), 200 if health["is_healthy"] else 503


@endowment_bp.route("/endowment/history", methods=["GET"])
def release_history():
    """
    Past releases, newest last.

    Query params:
        limit: Maximum records to return (default/max 100)
    """
    if not managers.endowment:
        return jsonify({"error": "Endowment not initialized"}), 503

    limit = validate_limit(request.args.get("limit"))
    with state_lock:
        history = managers.endowment.get_release_history(limit)
    return jsonify({"releases": history, "count": len(history)})


@endowment_bp.route("/endowment/projection", methods=["GET"])
def projection():
    """
    Projected balance after a number of further releases.

    Query params:
        periods: Release periods to project (default: 12)
    """
    if not managers.endowment:
        return jsonify({"error": "Endowment not initialized"}), 503

    periods = request.args.get("periods", 12, type=int)
    if periods is None or periods < 0:
        return jsonify({"error": "periods must be a non-negative integer"}), 400
    if periods > MAX_PROJECTION_PERIODS:
        return jsonify({"error": f"periods cannot exceed {MAX_PROJECTION_PERIODS}"}), 400

    with state_lock:
        report = managers.endowment.verify_sustainability(periods)
    return jsonify(report)


# =============================================================================
# Emergency
# =============================================================================


@endowment_bp.route("/endowment/emergency-release", methods=["POST"])
@counted("emergency_release_requests_total")
@require_api_key
def emergency_release():
    """
    Drain the reserve to the emergency multisig.

    Request body:
        {"caller": "0x..."}   // must be the emergency multisig

    Only allowed after 180 days without a release.
    """
    if not managers.endowment:
        return jsonify({"error": "Endowment not initialized"}), 503

    data = request.get_json(silent=True) or {}
    is_valid, error = validate_json_schema(data, {"caller": str})
    if not is_valid:
        return jsonify({"error": error}), 400

    with state_lock:
        amount = managers.endowment.emergency_release(data["caller"])
    return jsonify({"released": str(amount), "recipient": data["caller"]})
