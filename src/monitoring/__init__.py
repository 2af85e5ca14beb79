"""
Monitoring and metrics infrastructure for the AEC perpetual engine.

This package provides:
- Metrics collection (counters, gauges, histograms) with Prometheus export
- Structured logging with JSON output and cycle/request context
- Flask request timing middleware

Usage:
    from monitoring import metrics, get_logger

    metrics.increment("cycles_processed_total")
    logger = get_logger(__name__)
"""

from monitoring.logging import LoggingContext, configure_logging, get_logger
from monitoring.metrics import MetricsCollector, metrics
from monitoring.middleware import counted, setup_request_logging, timed

__all__ = [
    "MetricsCollector",
    "metrics",
    "get_logger",
    "configure_logging",
    "LoggingContext",
    "setup_request_logging",
    "timed",
    "counted",
]
