# research_backend/monitoring.py
"""
Centralized monitoring: Prometheus metrics, structured JSON logging, optional Sentry.

Env vars:
- PROMETHEUS_ENABLED (default: true)
- SENTRY_DSN (optional)
- LOG_AS_JSON (default: true)
- LOG_LEVEL (default: INFO)
- ENVIRONMENT (default: development)
"""

import os
import logging
import time
from typing import Tuple

from prometheus_client import (
    Counter, Histogram,
    generate_latest, CONTENT_TYPE_LATEST, REGISTRY,
)
from pythonjsonlogger import jsonlogger
import sentry_sdk

PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "true").lower() in ("1", "true", "yes")
SENTRY_DSN = os.getenv("SENTRY_DSN", None)
LOG_AS_JSON = os.getenv("LOG_AS_JSON", "true").lower() in ("1", "true", "yes")
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")


# --- Logger setup
def setup_logger(name: str = "research-backend", level: int = None) -> logging.Logger:
    """
    Configure the named logger once. Child loggers ("research-backend.db",
    "research-backend.usage", ...) propagate to it and share its handler.
    """
    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO")) if level is None else level
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        if LOG_AS_JSON:
            handler.setFormatter(jsonlogger.JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s"
            ))
        logger.addHandler(handler)
    return logger


logger = setup_logger()

if SENTRY_DSN:
    sentry_sdk.init(dsn=SENTRY_DSN, environment=ENVIRONMENT)
    logger.info("Sentry initialized")


# --- Prometheus metrics
REQUEST_COUNT = Counter(
    "research_http_requests_total",
    "Total /api requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "research_http_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
)

SESSIONS_CREATED = Counter(
    "research_sessions_created_total",
    "Research sessions created",
)

SESSION_TRANSITIONS = Counter(
    "research_session_transitions_total",
    "Session status transitions",
    ["to_status"],
)

PROVIDER_CALLS = Counter(
    "research_provider_calls_total",
    "Upstream research provider calls",
    ["provider", "outcome"],
)

PROVIDER_LATENCY = Histogram(
    "research_provider_latency_seconds",
    "Upstream research provider latency",
    ["provider"],
)

USAGE_DENIED = Counter(
    "research_usage_denied_total",
    "Requests denied by the API usage guard",
    ["provider", "limit"],
)

USAGE_STORE_ERRORS = Counter(
    "research_usage_store_errors_total",
    "Usage-tracking storage errors (recovered)",
    ["operation"],
)

DELIVERIES = Counter(
    "research_report_deliveries_total",
    "Report delivery attempts",
    ["outcome"],
)


# --- Helper wrappers (never crash the app)
def observe_request(start_ts: float, endpoint: str, method: str, status: str):
    try:
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(time.time() - start_ts)
        REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=status).inc()
    except Exception:
        pass


def inc_session_created():
    try:
        SESSIONS_CREATED.inc()
    except Exception:
        pass


def inc_transition(to_status: str):
    try:
        SESSION_TRANSITIONS.labels(to_status=to_status).inc()
    except Exception:
        pass


def observe_provider_call(start_ts: float, provider: str, outcome: str):
    try:
        PROVIDER_LATENCY.labels(provider=provider).observe(time.time() - start_ts)
        PROVIDER_CALLS.labels(provider=provider, outcome=outcome).inc()
    except Exception:
        pass


def inc_usage_denied(provider: str, limit: str):
    try:
        USAGE_DENIED.labels(provider=provider, limit=limit).inc()
    except Exception:
        pass


def inc_usage_store_error(operation: str):
    try:
        USAGE_STORE_ERRORS.labels(operation=operation).inc()
    except Exception:
        pass


def inc_delivery(outcome: str):
    try:
        DELIVERIES.labels(outcome=outcome).inc()
    except Exception:
        pass


def prometheus_metrics_response() -> Tuple[bytes, str]:
    """Return (body_bytes, content_type) for Prometheus scrape."""
    try:
        return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
    except Exception:
        return b"", CONTENT_TYPE_LATEST
