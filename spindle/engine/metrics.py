"""
Prometheus metrics for the Task controller and the controller manager.

Exported when ``controller.metrics_port`` is set; otherwise they are only
collected in-process.
"""

import math
from datetime import timedelta

import structlog
from prometheus_client import Counter, Histogram, generate_latest, start_http_server

log = structlog.get_logger(__name__)

TASK_LABELS = ["namespace", "type"]
USAGE_LABELS = ["namespace", "type", "spawner", "model"]

tasks_created = Counter(
    "spindle_task_created_total",
    "Tasks for which an execution was started",
    TASK_LABELS,
)

tasks_completed = Counter(
    "spindle_task_completed_total",
    "Tasks that reached a terminal phase",
    TASK_LABELS + ["phase"],
)

task_duration = Histogram(
    "spindle_task_duration_seconds",
    "Task execution duration from start to completion",
    TASK_LABELS + ["phase"],
    buckets=(30, 60, 120, 300, 600, 1200, 1800, 3600),
)

reconcile_errors = Counter(
    "spindle_reconcile_errors_total",
    "Reconcile passes that raised",
    ["controller"],
)

task_cost = Counter(
    "spindle_task_cost_usd_total",
    "Cost in USD reported by completed Tasks",
    USAGE_LABELS,
)

task_input_tokens = Counter(
    "spindle_task_input_tokens_total",
    "Input tokens reported by completed Tasks",
    USAGE_LABELS,
)

task_output_tokens = Counter(
    "spindle_task_output_tokens_total",
    "Output tokens reported by completed Tasks",
    USAGE_LABELS,
)

_USAGE_COUNTERS = {
    "cost-usd": task_cost,
    "input-tokens": task_input_tokens,
    "output-tokens": task_output_tokens,
}


class MetricsCollector:
    """Record controller metrics."""

    @staticmethod
    def record_task_created(namespace: str, agent_type: str) -> None:
        tasks_created.labels(namespace=namespace, type=agent_type).inc()

    @staticmethod
    def record_task_completed(
        namespace: str,
        agent_type: str,
        phase: str,
        duration: timedelta | None = None,
    ) -> None:
        """Record a terminal transition, and its duration if the Task ran."""
        tasks_completed.labels(namespace=namespace, type=agent_type, phase=phase).inc()
        if duration is not None:
            task_duration.labels(namespace=namespace, type=agent_type, phase=phase).observe(
                max(duration.total_seconds(), 0.0)
            )

    @staticmethod
    def record_usage(
        namespace: str,
        agent_type: str,
        results: dict[str, str],
        spawner: str = "",
        model: str = "",
    ) -> None:
        """Add the cost and token counts found in a Task's results.

        Values that do not parse as non-negative numbers are skipped.
        """
        for key, counter in _USAGE_COUNTERS.items():
            raw = results.get(key)
            if raw is None:
                continue
            try:
                value = float(raw)
            except ValueError:
                log.debug("usage_metric_unparseable", key=key, value=raw)
                continue
            if not math.isfinite(value) or value < 0:
                continue
            counter.labels(namespace=namespace, type=agent_type, spawner=spawner, model=model).inc(value)

    @staticmethod
    def record_reconcile_error(controller: str) -> None:
        reconcile_errors.labels(controller=controller).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Get metrics in Prometheus format."""
        return generate_latest()


def serve_metrics(port: int) -> None:
    """Expose ``/metrics`` over HTTP on ``port``."""
    start_http_server(port)
    log.info("metrics_server_started", port=port)
