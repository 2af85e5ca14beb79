"""
AEC Perpetual Engine API Package.

This package contains the modular Flask blueprints for the engine API.

Blueprints:
- monitoring: health probes and metrics export
- engine: cycle processing, preview, status and deployer admin
- staking: pool stats, positions and stake management
- endowment: reserve status, history, projections and emergency release
- simulation: manual clock, tax accrual and faucet for simulated deployments
"""

import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify, request

from api.endowment import endowment_bp
from api.engine import engine_bp
from api.monitoring import monitoring_bp
from api.simulation import simulation_bp
from api.staking import staking_bp
from api.state import init_protocol, set_protocol
from api.utils import check_rate_limit
from clock import Clock, ManualClock
from engine_config import EngineConfig
from engine_errors import AuthorizationError, ProtocolError, ReentrancyError
from monitoring import configure_logging, setup_request_logging
from protocol import AecProtocol

logger = logging.getLogger(__name__)

# List of all blueprints for registration
# Tuple format: (blueprint, url_prefix)
ALL_BLUEPRINTS = [
    (monitoring_bp, ''),
    (engine_bp, ''),
    (staking_bp, ''),
    (endowment_bp, ''),
    (simulation_bp, ''),
]

# Paths exempt from rate limiting
_UNLIMITED_PATHS = ("/health", "/metrics")


def register_blueprints(app):
    """Register all blueprints with the Flask app."""
    for blueprint, url_prefix in ALL_BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix=url_prefix)


def register_error_handlers(app):
    """Map protocol exceptions onto HTTP status codes."""

    @app.errorhandler(AuthorizationError)
    def handle_authorization_error(error):
        return jsonify(error.to_dict()), 403

    @app.errorhandler(ReentrancyError)
    def handle_reentrancy_error(error):
        return jsonify(error.to_dict()), 409

    @app.errorhandler(ProtocolError)
    def handle_protocol_error(error):
        logger.info(f"Rejected: {error.message}")
        return jsonify(error.to_dict()), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({"error": "Internal server error"}), 500


def init_managers(config: EngineConfig | None = None, clock: Clock | None = None,
                  protocol: AecProtocol | None = None) -> AecProtocol:
    """
    Populate the shared ManagerRegistry.

    Serves ``protocol`` when given, otherwise deploys a fresh one from
    ``config`` (default: environment) on ``clock``.
    """
    if protocol is not None:
        set_protocol(protocol)
        return protocol
    return init_protocol(config or EngineConfig.from_env(), clock)


def create_app(config: EngineConfig | None = None, protocol: AecProtocol | None = None,
               clock: Clock | None = None, testing: bool = False) -> Flask:
    """
    Application factory.

    Args:
        config: Deployment parameters (default: from environment)
        protocol: Serve an existing protocol instead of deploying one
        clock: Clock for a freshly deployed protocol. A ManualClock enables
            the simulation endpoints.
        testing: Flask testing mode; skips logging configuration
    """
    load_dotenv()
    config = config or EngineConfig.from_env()

    app = Flask(__name__)
    app.config['JSON_SORT_KEYS'] = False
    app.config['TESTING'] = testing

    if not testing:
        configure_logging(level=config.log_level)
    setup_request_logging(app)

    @app.before_request
    def enforce_rate_limit():
        if request.path.startswith(_UNLIMITED_PATHS):
            return None
        exceeded = check_rate_limit()
        if exceeded:
            return jsonify(exceeded), 429
        return None

    register_blueprints(app)
    register_error_handlers(app)
    init_managers(config, clock, protocol)
    return app


def run_server():
    """Run the Flask development server on a simulation clock."""
    load_dotenv()
    config = EngineConfig.from_env()
    debug = os.getenv("FLASK_DEBUG", "false").lower() == "true"
    app = create_app(config, clock=ManualClock())

    print(f"\n{'='*60}")
    print("AEC Perpetual Engine API Server")
    print(f"{'='*60}")
    print(f"Listening on: http://{config.host}:{config.port}")
    print(f"Endowment: {config.endowment_amount:,} AEC sealed")
    print(f"Cycle cooldown: {config.process_cooldown}s")
    print(f"{'='*60}\n")

    app.run(host=config.host, port=config.port, debug=debug)
