"""
Prometheus metrics for Chat Relay.

Exposed on ``/metrics`` via ``prometheus_client.make_asgi_app``.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Use standard Prometheus naming conventions: namespace_subsystem_name_unit
NAMESPACE = "chatrelay"

request_duration_seconds = Histogram(
    f"{NAMESPACE}_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path", "status"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)


# ============================================================================
# Generation Metrics
# ============================================================================

generations_active = Gauge(
    f"{NAMESPACE}_generations_active",
    "Number of generations currently producing events",
)

generations_total = Counter(
    f"{NAMESPACE}_generations_total",
    "Total number of generations by outcome",
    ["model", "outcome"],  # outcome: "completed", "error"
)

generation_duration_seconds = Histogram(
    f"{NAMESPACE}_generation_duration_seconds",
    "Wall time of a full generation in seconds",
    ["model"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

generation_steps_total = Counter(
    f"{NAMESPACE}_generation_steps_total",
    "Model round-trips taken by generations",
    ["model"],
)

time_to_first_event_seconds = Histogram(
    f"{NAMESPACE}_time_to_first_event_seconds",
    "Delay between accepting a chat request and its first outbound event",
    ["model"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

tokens_total = Counter(
    f"{NAMESPACE}_tokens_total",
    "Total tokens consumed by generations",
    ["model", "type"],  # type values: "input", "output"
)

tool_calls_total = Counter(
    f"{NAMESPACE}_tool_calls_total",
    "Total number of tool invocations",
    ["tool_name", "status"],  # status: "success", "error", "denied", "approval"
)


# ============================================================================
# Stream Metrics
# ============================================================================

stream_resumes_total = Counter(
    f"{NAMESPACE}_stream_resumes_total",
    "Resume requests by outcome",
    ["outcome"],  # "live", "append", "empty", "unavailable"
)

sse_frames_dropped_total = Counter(
    f"{NAMESPACE}_sse_frames_dropped_total",
    "Malformed SSE frames dropped by the client-side parser",
)


# ============================================================================
# Database Metrics
# ============================================================================

db_pool_size = Gauge(
    f"{NAMESPACE}_db_pool_size",
    "Current size of the database connection pool",
)

db_pool_connections = Gauge(
    f"{NAMESPACE}_db_pool_connections",
    "Number of database connections by state",
    ["state"],  # "free" or "used"
)
