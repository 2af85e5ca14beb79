"""
Monitoring and metrics API endpoints.

This blueprint provides:
- /metrics: Prometheus-compatible metrics endpoint
- /metrics/json: JSON format metrics
- /health: Basic health check
- /health/live: Kubernetes liveness probe
- /health/ready: Kubernetes readiness probe
"""

import time

from flask import Blueprint, Response, jsonify

from monitoring import metrics

from .state import managers, state_lock

monitoring_bp = Blueprint('monitoring', __name__)

# Track startup time
_startup_time = time.time()


def _update_dynamic_metrics() -> None:
    if managers.protocol:
        with state_lock:
            metrics.record_protocol_state(managers.protocol)


@monitoring_bp.route('/metrics', methods=['GET'])
def prometheus_metrics():
    """Metrics in Prometheus text exposition format."""
    _update_dynamic_metrics()
    return Response(metrics.to_prometheus(), mimetype='text/plain; charset=utf-8')


@monitoring_bp.route('/metrics/json', methods=['GET'])
def json_metrics():
    _update_dynamic_metrics()
    return jsonify(metrics.get_all())


@monitoring_bp.route('/health', methods=['GET'])
def health():
    """
    Basic health check endpoint.

    Returns service status plus engine and endowment checks.
    """
    checks = {"protocol": {"status": "ok" if managers.protocol else "unavailable"}}
    if managers.protocol:
        with state_lock:
            engine_ok, engine_details = managers.engine.is_healthy()
            endowment = managers.endowment.health_check()
        checks["engine"] = {"status": "ok" if engine_ok else "degraded", **engine_details}
        checks["endowment"] = {
            "status": "ok" if endowment["is_healthy"] else "degraded",
            "detail": endowment["status"],
        }

    return jsonify({
        "status": "healthy",
        "service": "AEC Perpetual Engine",
        "version": _get_version(),
        "uptime_seconds": time.time() - _startup_time,
        "checks": checks,
    })


@monitoring_bp.route('/health/live', methods=['GET'])
def liveness():
    """Returns 200 while the process is running."""
    return jsonify({"status": "alive"})


@monitoring_bp.route('/health/ready', methods=['GET'])
def readiness():
    """Returns 200 once a healthy protocol instance is being served."""
    issues = []
    if not managers.protocol:
        issues.append("protocol: not initialized")
    else:
        with state_lock:
            healthy, details = managers.engine.is_healthy()
        if not healthy:
            issues.extend(f"engine: {issue}" for issue in details["issues"])

    if issues:
        return jsonify({"status": "not_ready", "issues": issues}), 503
    return jsonify({"status": "ready"})


def _get_version() -> str:
    try:
        from importlib.metadata import version
        return version("aec-perpetual-engine")
    except Exception:
        return "0.1.0"
