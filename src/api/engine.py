"""
AEC Engine - Engine API Blueprint

REST API endpoints for the perpetual engine:
- Status, health and cycle preview
- Public cycle processing (anyone may call, the caller earns the incentive)
- Deployer-only configuration until privileges are renounced
- Audit event log
"""

from flask import Blueprint, jsonify, request

from monitoring.middleware import timed

from .state import managers, state_lock
from .utils import (
    parse_amount,
    require_api_key,
    validate_address,
    validate_json_schema,
    validate_limit,
)

engine_bp = Blueprint("engine", __name__)


# =============================================================================
# Views
# =============================================================================


@engine_bp.route("/engine/status", methods=["GET"])
def engine_status():
    """Full engine status: balances, config, totals and pool wiring."""
    if not managers.engine:
        return jsonify({"error": "Engine not initialized"}), 503

    with state_lock:
        return jsonify(managers.engine.get_engine_status())


@engine_bp.route("/engine/preview", methods=["GET"])
def cycle_preview():
    """
    What a cycle would do right now without running it.

    Returns:
        Amounts for each step as decimal strings
    """
    if not managers.engine:
        return jsonify({"error": "Engine not initialized"}), 503

    with state_lock:
        return jsonify(managers.engine.get_cycle_preview())


@engine_bp.route("/engine/health", methods=["GET"])
def engine_health():
    if not managers.engine:
        return jsonify({"error": "Engine not initialized"}), 503

    with state_lock:
        healthy, details = managers.engine.is_healthy()
    return jsonify({"healthy": healthy, **details}), 200 if healthy else 503


@engine_bp.route("/engine/events", methods=["GET"])
def engine_events():
    """
    Most recent engine events.

    Query params:
        limit: Maximum events to return (default/max 100)
        type: Optional event type filter, e.g. CycleProcessed
    """
    if not managers.engine:
        return jsonify({"error": "Engine not initialized"}), 503

    limit = validate_limit(request.args.get("limit"))
    event_type = request.args.get("type")

    with state_lock:
        events = managers.engine.events
        if event_type:
            events = [e for e in events if e["event_type"] == event_type]
        events = events[-limit:]
    return jsonify({"events": events, "count": len(events)})


# =============================================================================
# Cycle
# =============================================================================


@engine_bp.route("/engine/cycle", methods=["POST"])
@require_api_key
@timed("api_run_cycle_ms")
def run_cycle():
    """
    Run one processing cycle.

    Request body:
        {
            "caller": "0x..."   // account credited with the caller incentive
        }

    Returns:
        Cycle report. A skipped cycle is a 200 with ``processed: false``;
        a cooldown violation is a 400.
    """
    if not managers.engine:
        return jsonify({"error": "Engine not initialized"}), 503

    data = request.get_json(silent=True) or {}
    is_valid, error = validate_json_schema(data, {"caller": str})
    if not is_valid:
        return jsonify({"error": error}), 400
    error = validate_address(data["caller"])
    if error:
        return jsonify({"error": error}), 400

    with state_lock:
        report = managers.engine.run_cycle(data["caller"])
    return jsonify(report.to_dict())


# =============================================================================
# Admin
# =============================================================================


@engine_bp.route("/engine/config", methods=["POST"])
@require_api_key
def update_config():
    """
    Deployer-only parameter updates.

    Request body:
        {
            "caller": "0x...",
            "slippage_bps": 200,            // optional
            "process_cooldown": 1800,       // optional, seconds
            "min_aec_to_process": "1000..." // optional, base units
        }
    """
    if not managers.engine:
        return jsonify({"error": "Engine not initialized"}), 503

    data = request.get_json(silent=True) or {}
    is_valid, error = validate_json_schema(
        data,
        required_fields={"caller": str},
        optional_fields={
            "slippage_bps": int,
            "process_cooldown": int,
            "min_aec_to_process": (str, int),
        },
    )
    if not is_valid:
        return jsonify({"error": error}), 400

    fields = ("slippage_bps", "process_cooldown", "min_aec_to_process")
    if not any(name in data for name in fields):
        return jsonify({"error": "No configuration fields supplied"}), 400
    min_amount = None
    if "min_aec_to_process" in data:
        min_amount = parse_amount(data["min_aec_to_process"])
        if min_amount is None:
            return jsonify({"error": "min_aec_to_process must be a non-negative integer"}), 400

    with state_lock:
        updated = managers.engine.update_config(
            data["caller"],
            slippage_bps=data.get("slippage_bps"),
            process_cooldown=data.get("process_cooldown"),
            min_aec_to_process=min_amount,
        )

    if "min_aec_to_process" in updated:
        updated["min_aec_to_process"] = str(updated["min_aec_to_process"])
    return jsonify({"updated": updated})


@engine_bp.route("/engine/renounce", methods=["POST"])
@require_api_key
def renounce_privileges():
    """Permanently disable deployer-only actions."""
    if not managers.engine:
        return jsonify({"error": "Engine not initialized"}), 503

    data = request.get_json(silent=True) or {}
    is_valid, error = validate_json_schema(data, {"caller": str})
    if not is_valid:
        return jsonify({"error": error}), 400

    with state_lock:
        managers.engine.renounce_deployer_privileges(data["caller"])
    return jsonify({"deployer_privileges_active": False})
