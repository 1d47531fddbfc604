"""Prometheus metrics export."""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

# Tool call metrics
tool_calls_total = Counter(
    "tool_calls_total",
    "Total tool calls",
    ["tool_name", "origin", "status"],
)

tool_call_duration = Histogram(
    "tool_call_duration_seconds",
    "Tool call duration in seconds",
    ["tool_name", "origin"],
)

tool_call_retries_total = Counter(
    "tool_call_retries_total",
    "Total tool call retries",
    ["tool_name", "error_kind"],
)

# Remote tool server metrics
mcp_server_state = Gauge(
    "mcp_server_state",
    "Tool server state (0=unconfigured, 1=configuring, 2=starting, 3=healthy, 4=degraded, 5=stopped)",
    ["server_id"],
)

mcp_discovery_total = Counter(
    "mcp_discovery_total",
    "Total tool discovery attempts",
    ["server_id", "status"],
)

tool_name_collisions_total = Counter(
    "tool_name_collisions_total",
    "Remote tools dropped from a snapshot because their name was taken",
    ["server_id"],
)

# Queue metrics
queued_tool_jobs_total = Counter(
    "queued_tool_jobs_total",
    "Total queued tool jobs",
    ["tool_name", "status"],
)


def get_metrics_payload() -> tuple:
    """Get Prometheus metrics as (body, content_type) for whatever surface exposes them."""
    return generate_latest(), CONTENT_TYPE_LATEST
