"""shadowpod Prometheus metrics.

Provides metrics tracking using the Prometheus client:
- Counter metrics for polls, watch events, ref-count updates and exec calls
- Gauge metrics for shared pods and open watch subscriptions
- Histogram metrics for wait and exec durations
"""

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from shadowpod.config.settings import settings


registry = REGISTRY if settings.observability.prometheus_enabled else CollectorRegistry()


# ============================================================================
# Counter Metrics - Monotonically increasing values
# ============================================================================

pod_polls_total = Counter(
    name="pod_polls_total",
    documentation="Total number of pod fetches made by lifecycle waits",
    labelnames=["operation"],
    registry=registry,
    namespace=settings.observability.metrics_namespace,
)

pod_waits_total = Counter(
    name="pod_waits_total",
    documentation="Total number of completed lifecycle waits by outcome",
    labelnames=["operation", "result"],
    registry=registry,
    namespace=settings.observability.metrics_namespace,
)

watch_events_total = Counter(
    name="watch_events_total",
    documentation="Total number of pod watch events delivered",
    labelnames=["event_type"],
    registry=registry,
    namespace=settings.observability.metrics_namespace,
)

watch_reconnects_total = Counter(
    name="watch_reconnects_total",
    documentation="Total number of watch stream resubscriptions",
    labelnames=["reason"],
    registry=registry,
    namespace=settings.observability.metrics_namespace,
)

refcount_updates_total = Counter(
    name="refcount_updates_total",
    documentation="Total number of ref-count operations by outcome",
    labelnames=["operation", "result"],
    registry=registry,
    namespace=settings.observability.metrics_namespace,
)

refcount_conflicts_total = Counter(
    name="refcount_conflicts_total",
    documentation="Total number of ref-count writes rejected with a conflict",
    labelnames=["operation"],
    registry=registry,
    namespace=settings.observability.metrics_namespace,
)

exec_commands_total = Counter(
    name="exec_commands_total",
    documentation="Total number of commands executed in pods",
    labelnames=["result"],
    registry=registry,
    namespace=settings.observability.metrics_namespace,
)

heartbeat_failures_total = Counter(
    name="heartbeat_failures_total",
    documentation="Total number of heartbeat patches that failed",
    registry=registry,
    namespace=settings.observability.metrics_namespace,
)


# ============================================================================
# Gauge Metrics - Values that can go up or down
# ============================================================================

shared_pods_acquired = Gauge(
    name="shared_pods_acquired",
    documentation="Number of shared pod references held by this process",
    registry=registry,
    namespace=settings.observability.metrics_namespace,
)

watch_subscriptions_active = Gauge(
    name="watch_subscriptions_active",
    documentation="Number of open pod watch subscriptions",
    registry=registry,
    namespace=settings.observability.metrics_namespace,
)


# ============================================================================
# Histogram Metrics - Distribution of values
# ============================================================================

pod_wait_duration_seconds = Histogram(
    name="pod_wait_duration_seconds",
    documentation="Time spent in lifecycle waits",
    labelnames=["operation"],
    buckets=[1.0, 6.0, 12.0, 30.0, 60.0, 120.0, 300.0],
    registry=registry,
    namespace=settings.observability.metrics_namespace,
)

exec_duration_seconds = Histogram(
    name="exec_duration_seconds",
    documentation="Time taken by commands executed in pods",
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
    registry=registry,
    namespace=settings.observability.metrics_namespace,
)


# ============================================================================
# Initialization Functions
# ============================================================================


def initialize_metrics() -> None:
    """Initialize all metrics with default values.

    This ensures metrics exist in Prometheus even if no events have occurred yet.
    """
    for operation in ("wait_until_running", "wait_until_set_ready", "wait_until_terminated"):
        pod_polls_total.labels(operation=operation)
    for event_type in ("ADDED", "MODIFIED", "DELETED"):
        watch_events_total.labels(event_type=event_type)
    exec_commands_total.labels(result="success")
    exec_commands_total.labels(result="failure")

    shared_pods_acquired.set(0)
    watch_subscriptions_active.set(0)


# Auto-initialize metrics on module import
if settings.observability.prometheus_enabled:
    initialize_metrics()


__all__ = [
    "exec_commands_total",
    "exec_duration_seconds",
    "heartbeat_failures_total",
    "initialize_metrics",
    "pod_polls_total",
    "pod_wait_duration_seconds",
    "pod_waits_total",
    "refcount_conflicts_total",
    "refcount_updates_total",
    "registry",
    "shared_pods_acquired",
    "watch_events_total",
    "watch_reconnects_total",
    "watch_subscriptions_active",
]
