#!/usr/bin/env python3
"""
AEC Perpetual Engine Command Line Interface.

Provides commands for running and exercising the engine:
    - serve: Start the API server on a simulation clock
    - simulate: Run a deterministic multi-cycle simulation and print a summary
    - check: Verify installation and configuration
    - info: Display system information

Usage:
    aec-engine serve [--host HOST] [--port PORT] [--debug] [--production]
    aec-engine simulate [--cycles N] [--interval SECONDS] [--tax AEC] [--json]
    aec-engine check
    aec-engine info
    aec-engine --version
"""

import argparse
import json
import os
import sys

# Ensure src is in path when running from source
if os.path.exists(os.path.join(os.path.dirname(__file__), "perpetual_engine.py")):
    sys.path.insert(0, os.path.dirname(__file__))

__version__ = "0.1.0"


def cmd_serve(args):
    """Start the engine API server."""
    from dotenv import load_dotenv

    load_dotenv()

    from clock import ManualClock
    from engine_config import EngineConfig

    config = EngineConfig.from_env()
    host = args.host or config.host
    port = args.port or config.port
    debug = args.debug or os.getenv("FLASK_DEBUG", "").lower() == "true"

    print(f"Starting AEC engine API server on {host}:{port}")

    from api import create_app

    flask_app = create_app(config, clock=ManualClock())

    if args.production:
        # Use gunicorn for production
        try:
            import gunicorn.app.base

            class StandaloneApplication(gunicorn.app.base.BaseApplication):
                """Gunicorn WSGI application wrapper.

                A single worker keeps one in-memory protocol instance.
                """

                def __init__(self, app, options=None):
                    self.options = options or {}
                    self.application = app
                    super().__init__()

                def load_config(self):
                    for key, value in self.options.items():
                        if key in self.cfg.settings and value is not None:
                            self.cfg.set(key.lower(), value)

                def load(self):
                    return self.application

            options = {
                "bind": f"{host}:{port}",
                "workers": 1,
                "threads": args.threads or int(os.getenv("THREADS", "4")),
                "worker_class": "gthread",
                "timeout": 120,
                "accesslog": "-",
                "errorlog": "-",
            }
            StandaloneApplication(flask_app, options).run()

        except ImportError as e:
            if "gunicorn" in str(e):
                print(
                    "Error: gunicorn not installed. "
                    "Install with: pip install aec-perpetual-engine[production]"
                )
            else:
                print(f"Error: {e}")
            sys.exit(1)
    else:
        flask_app.run(host=host, port=port, debug=debug)


def cmd_simulate(args):
    """Run cycles against a fresh protocol on a manual clock."""
    from dotenv import load_dotenv

    load_dotenv()

    from clock import ManualClock
    from engine_config import EngineConfig
    from monitoring import configure_logging
    from protocol import build_protocol
    from token_ledger import ONE_TOKEN

    config = EngineConfig.from_env()
    configure_logging(level="DEBUG" if args.verbose else "WARNING")

    clock = ManualClock()
    protocol = build_protocol(config, clock)
    keeper = "0x000000000000000000000000000000000000beef"
    interval = max(args.interval, config.process_cooldown)

    rows = []
    for _ in range(args.cycles):
        if args.tax:
            protocol.fund_tax(args.tax * ONE_TOKEN)
        report = protocol.engine.run_cycle(keeper)
        rows.append(report)
        clock.advance(interval)

    if args.json:
        print(json.dumps({
            "cycles": [r.to_dict() for r in rows],
            "final": protocol.get_overview(),
        }, indent=2, default=str))
        return 0

    def fmt(units: int) -> str:
        return f"{units / ONE_TOKEN:,.2f}"

    print("AEC Perpetual Engine Simulation")
    print("=" * 96)
    print(f"{'#':>3} {'processed':>9} {'endowment':>16} {'tax':>14} {'burned':>14} "
          f"{'lp minted':>14} {'refilled':>14} {'caller':>8}")
    for i, report in enumerate(rows, 1):
        lp = report.liquidity.lp_minted if report.liquidity else 0
        print(f"{i:>3} {str(report.processed):>9} {fmt(report.endowment_released):>16} "
              f"{fmt(report.new_taxes):>14} {fmt(report.burned):>14} {fmt(lp):>14} "
              f"{fmt(report.refill_total):>14} {fmt(report.caller_reward):>8}")

    engine = protocol.engine
    print("=" * 96)
    print(f"Cycles processed:   {engine.cycle_count}/{args.cycles}")
    print(f"Total burned:       {fmt(engine.total_burned)} AEC")
    print(f"Endowment balance:  {fmt(protocol.endowment.current_balance)} AEC")
    print(f"Engine LP stake:    {protocol.lp_pool.ledger.total_supply} LP units")
    print(f"Pair reserves:      {protocol.pair.reserve0} / {protocol.pair.reserve1}")
    return 0


def cmd_check(args):
    """Check installation and configuration."""
    print("AEC Perpetual Engine Installation Check")
    print("=" * 40)

    checks = []

    try:
        from engine_config import EngineConfig

        errors = EngineConfig.from_env().validate()
        checks.append(("Configuration", "OK" if not errors else f"FAIL: {'; '.join(errors)}"))
    except ValueError as e:
        checks.append(("Configuration", f"FAIL: {e}"))

    try:
        from clock import ManualClock
        from engine_config import EngineConfig
        from protocol import build_protocol

        protocol = build_protocol(EngineConfig.from_env(), ManualClock())
        healthy, details = protocol.engine.is_healthy()
        checks.append(("Protocol deployment", "OK" if healthy else f"FAIL: {details['issues']}"))
    except Exception as e:
        checks.append(("Protocol deployment", f"FAIL: {e}"))

    try:
        import flask  # noqa: F401

        checks.append(("Flask API", "OK"))
    except ImportError as e:
        checks.append(("Flask API", f"FAIL: {e}"))

    try:
        import gunicorn  # noqa: F401

        checks.append(("Gunicorn (production)", "OK"))
    except ImportError:
        checks.append(("Gunicorn (production)", "SKIP (gunicorn not installed)"))

    if os.getenv("AEC_REQUIRE_AUTH", "true").lower() == "true" and not os.getenv("AEC_API_KEY"):
        checks.append(("API key", "WARN (AEC_API_KEY not set, writes will answer 503)"))
    else:
        checks.append(("API key", "OK"))

    print()
    all_ok = True
    for name, status in checks:
        icon = "✓" if status == "OK" else ("○" if "SKIP" in status or "WARN" in status else "✗")
        print(f"  {icon} {name}: {status}")
        if "FAIL" in status:
            all_ok = False

    print()
    if all_ok:
        print("All checks passed!")
        return 0
    else:
        print("Some checks failed. See above for details.")
        return 1


def cmd_info(args):
    """Display system information."""
    import platform

    from engine_config import EngineConfig

    print("AEC Perpetual Engine System Information")
    print("=" * 40)
    print(f"Version: {__version__}")
    print(f"Python: {platform.python_version()}")
    print(f"Platform: {platform.platform()}")

    print()
    print("Configuration:")
    for key, value in EngineConfig.from_env().to_dict().items():
        print(f"  {key}: {value}")
    print(f"  AEC_API_KEY: {'configured' if os.getenv('AEC_API_KEY') else 'not set'}")
    print(f"  LOG_FORMAT: {os.getenv('LOG_FORMAT', 'console (default)')}")
    return 0


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="aec-engine",
        description="AEC Perpetual Engine - autonomous tokenomics simulator",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", help="Host to bind to (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: 5000)")
    serve_parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    serve_parser.add_argument(
        "--production", action="store_true", help="Use gunicorn for production"
    )
    serve_parser.add_argument("--threads", type=int, help="Worker threads (production mode)")

    sim_parser = subparsers.add_parser("simulate", help="Run a multi-cycle simulation")
    sim_parser.add_argument("--cycles", type=int, default=12, help="Cycles to run (default: 12)")
    sim_parser.add_argument("--interval", type=int, default=30 * 86_400,
                            help="Seconds between cycles (default: 30 days)")
    sim_parser.add_argument("--tax", type=int, default=10_000,
                            help="Whole AEC of tax accrued before each cycle (default: 10000)")
    sim_parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    sim_parser.add_argument("--verbose", action="store_true", help="Show engine debug logs")

    subparsers.add_parser("check", help="Check installation and configuration")
    subparsers.add_parser("info", help="Display system information")

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "simulate":
        sys.exit(cmd_simulate(args))
    elif args.command == "check":
        sys.exit(cmd_check(args))
    elif args.command == "info":
        sys.exit(cmd_info(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
