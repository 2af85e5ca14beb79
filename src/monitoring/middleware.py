"""
Flask middleware for request logging and metrics.

Provides:
- Request ID tracking (X-Request-ID in, X-Request-ID out)
- Request timing and per-route counters
- Structured logging of every response
"""

import logging
import time
import uuid
from collections.abc import Callable
from functools import wraps

from flask import Flask, Response, g, request

from monitoring.logging import clear_log_context, set_log_context
from monitoring.metrics import metrics

logger = logging.getLogger("aec.request")


def setup_request_logging(app: Flask) -> None:
    """Install before/after/teardown hooks on ``app``."""

    @app.before_request
    def before_request():
        g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex[:8])
        g.start_time = time.perf_counter()
        set_log_context(request_id=g.request_id, method=request.method, path=request.path)

    @app.after_request
    def after_request(response: Response) -> Response:
        _record_request_metrics(response.status_code)
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return response

    @app.teardown_request
    def teardown_request(exception=None):
        clear_log_context()
        if exception:
            logger.error(
                "Request failed with exception",
                exc_info=exception,
                extra={
                    "request_id": getattr(g, "request_id", "unknown"),
                    "path": request.path,
                    "method": request.method,
                },
            )


def _record_request_metrics(status_code: int) -> None:
    duration_ms = 0.0
    if hasattr(g, "start_time"):
        duration_ms = (time.perf_counter() - g.start_time) * 1000
    path = _normalize_path(request.path)

    metrics.increment(
        "http_requests_total",
        labels={"method": request.method, "path": path, "status": str(status_code)},
    )
    metrics.timing("http_request_duration_ms", duration_ms,
                   labels={"method": request.method, "path": path})

    if status_code >= 500:
        log = logger.error
    elif status_code >= 400:
        log = logger.warning
    else:
        log = logger.info
    log(
        f"{request.method} {request.path} -> {status_code}",
        extra={
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
            "request_id": getattr(g, "request_id", "unknown"),
        },
    )


def _normalize_path(path: str) -> str:
    """
    Collapse dynamic segments to keep metric label cardinality bounded.

    /staking/lp/positions/0xAbC... -> /staking/lp/positions/:account
    """
    normalized = []
    for part in path.strip("/").split("/"):
        if part.isdigit():
            normalized.append(":id")
        elif part.startswith("0x") or part.startswith("acct:"):
            normalized.append(":account")
        else:
            normalized.append(part)
    return "/" + "/".join(normalized) if normalized else "/"


def timed(metric_name: str | None = None):
    """
    Decorator recording the wrapped call's duration as a histogram.

    Usage:
        @timed("api_run_cycle_ms")
        def run_cycle():
            ...
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            with metrics.timer(metric_name or f"function_{func.__name__}_ms"):
                return func(*args, **kwargs)

        return wrapper

    return decorator


def counted(metric_name: str | None = None, labels: dict[str, str] | None = None):
    """Decorator counting calls to the wrapped function."""

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            metrics.increment(metric_name or f"function_{func.__name__}_total", labels=labels)
            return func(*args, **kwargs)

        return wrapper

    return decorator
