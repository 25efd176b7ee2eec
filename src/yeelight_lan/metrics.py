"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

DISCOVERY_RESPONSES = Counter(
    "yeelight_discovery_responses_total",
    "Discovery responses parsed",
    ["source"],
    registry=_REGISTRY,
)
DISCOVERY_ERRORS = Counter(
    "yeelight_discovery_errors_total",
    "Discovery responses discarded",
    ["reason"],
    registry=_REGISTRY,
)
DISCOVERY_CYCLE_DURATION = Histogram(
    "yeelight_discovery_cycle_duration_seconds",
    "Time spent performing discovery cycles",
    ["result"],
    registry=_REGISTRY,
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10],
)
COMMAND_RESULTS = Counter(
    "yeelight_commands_total",
    "Command outcomes by method",
    ["method", "result"],
    registry=_REGISTRY,
)
COMMAND_LATENCY = Histogram(
    "yeelight_command_duration_seconds",
    "Time between writing a command and receiving its response",
    ["method"],
    registry=_REGISTRY,
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
SESSION_RECONNECTS = Counter(
    "yeelight_session_reconnects_total",
    "Reconnect attempts scheduled by device sessions",
    ["result"],
    registry=_REGISTRY,
)
SESSION_STATE = Gauge(
    "yeelight_session_state",
    "Session state per device (0=closed,1=disconnected,2=connecting,3=ready)",
    ["device_id"],
    registry=_REGISTRY,
)
SCENE_OUTCOMES = Counter(
    "yeelight_scene_device_outcomes_total",
    "Per-device scene application outcomes",
    ["status"],
    registry=_REGISTRY,
)
STATE_UPDATES = Counter(
    "yeelight_state_updates_total",
    "State cache updates by source",
    ["source"],
    registry=_REGISTRY,
)
POLL_RESULTS = Counter(
    "yeelight_state_polls_total",
    "State refresh polls by result",
    ["result"],
    registry=_REGISTRY,
)
POLL_DURATION = Histogram(
    "yeelight_state_poll_duration_seconds",
    "Duration of state refresh polls",
    ["result"],
    registry=_REGISTRY,
)
SUBSYSTEM_FAILURES = Counter(
    "yeelight_subsystem_failures_total",
    "Subsystem failures leading to suppression",
    ["subsystem"],
    registry=_REGISTRY,
)
SUBSYSTEM_STATUS = Gauge(
    "yeelight_subsystem_status",
    "Subsystem health (0=suppressed,1=degraded/recovering,2=ok)",
    ["subsystem"],
    registry=_REGISTRY,
)

_SESSION_STATE_CODES = {"closed": 0, "disconnected": 1, "connecting": 2, "ready": 3}


def get_registry() -> CollectorRegistry:
    """Return the registry holding the engine metrics."""

    return _REGISTRY


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def record_discovery_response(source: str) -> None:
    """Record a successful discovery response."""

    DISCOVERY_RESPONSES.labels(source=source).inc()


def record_discovery_error(reason: str) -> None:
    """Record a discarded discovery response."""

    DISCOVERY_ERRORS.labels(reason=reason).inc()


def observe_discovery_cycle(result: str, duration_seconds: float) -> None:
    """Record the duration of a discovery cycle."""

    DISCOVERY_CYCLE_DURATION.labels(result=result).observe(duration_seconds)


def record_command_result(method: str, result: str) -> None:
    """Record the outcome of a command sent to a device."""

    COMMAND_RESULTS.labels(method=method, result=result).inc()


def observe_command_latency(method: str, duration_seconds: float) -> None:
    """Record how long a device took to answer a command."""

    COMMAND_LATENCY.labels(method=method).observe(duration_seconds)


def record_session_reconnect(result: str) -> None:
    """Record a reconnect attempt and its result."""

    SESSION_RECONNECTS.labels(result=result).inc()


def set_session_state(device_id: str, state: str) -> None:
    """Expose the current session state for a device."""

    SESSION_STATE.labels(device_id=device_id).set(_SESSION_STATE_CODES.get(state, 0))


def record_scene_outcome(status: str) -> None:
    """Record a per-device scene outcome."""

    SCENE_OUTCOMES.labels(status=status).inc()


def record_state_update(source: str) -> None:
    """Record a state cache update."""

    STATE_UPDATES.labels(source=source).inc()


def record_poll(result: str, duration_seconds: float) -> None:
    """Record one state refresh poll."""

    POLL_RESULTS.labels(result=result).inc()
    POLL_DURATION.labels(result=result).observe(duration_seconds)


def record_subsystem_failure(subsystem: str) -> None:
    """Record a subsystem failure triggering suppression."""

    SUBSYSTEM_FAILURES.labels(subsystem=subsystem).inc()


def record_subsystem_status(subsystem: str, status: str) -> None:
    """Record the current subsystem status."""

    code = 0
    if status == "ok":
        code = 2
    elif status in {"recovering", "degraded"}:
        code = 1
    SUBSYSTEM_STATUS.labels(subsystem=subsystem).set(code)


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
