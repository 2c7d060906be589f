"""Prometheus metrics for the IPC control tower.

All metrics live on a dedicated CollectorRegistry so several app instances
(tests, embedded servers) never collide on the process-wide default
registry. The collector is fed by kernel events; the kernel itself never
imports this module.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Set

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    make_asgi_app,
)
from prometheus_client.gc_collector import GCCollector
from prometheus_client.platform_collector import PlatformCollector
from prometheus_client.process_collector import ProcessCollector

from ipc_control_tower.protocols import EventAggregatorProtocol
from ipc_control_tower.types import KernelEvent
from ipc_protocols import LoggerProtocol


PROCESS_DURATION_BUCKETS = (0.1, 0.5, 1, 2, 5, 10)
QUEUE_WAIT_BUCKETS = (0.1, 0.5, 1, 2, 5, 10, 30)


class MetricsCollector:
    """Kernel event -> Prometheus metric translation.

    Usage:
        collector = MetricsCollector(logger=logger)
        collector.attach(aggregator)
        app.mount("/metrics", collector.asgi_app())
    """

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        logger: Optional[LoggerProtocol] = None,
        include_runtime_collectors: bool = True,
    ) -> None:
        self.registry = registry or CollectorRegistry()
        self._logger = logger.bind(component="metrics_collector") if logger else None
        self._queue_scopes: Set[str] = set()

        if include_runtime_collectors:
            ProcessCollector(namespace="ipc", registry=self.registry)
            PlatformCollector(registry=self.registry)
            GCCollector(registry=self.registry)

        # ============================================================
        # Process metrics
        # ============================================================

        self.processes_total = Counter(
            "ipc_processes_total",
            "Processes that reached a terminal state.",
            labelnames=("process_type", "role", "state"),
            registry=self.registry,
        )

        self.process_duration = Histogram(
            "ipc_process_duration_seconds",
            "Process run time from start to terminal state.",
            labelnames=("process_type", "role", "state"),
            buckets=PROCESS_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.active_processes = Gauge(
            "ipc_active_processes",
            "Processes currently running.",
            labelnames=("process_type", "role"),
            registry=self.registry,
        )

        # ============================================================
        # Queue metrics
        # ============================================================

        self.queue_size = Gauge(
            "ipc_queue_size_current",
            "Entries waiting in each owner's queue.",
            labelnames=("owner_scope",),
            registry=self.registry,
        )

        self.queue_wait = Histogram(
            "ipc_queue_wait_time_seconds",
            "Time an action spent queued before starting.",
            labelnames=("process_type", "priority"),
            buckets=QUEUE_WAIT_BUCKETS,
            registry=self.registry,
        )

        # ============================================================
        # Actions, errors and connections
        # ============================================================

        self.actions_total = Counter(
            "ipc_actions_total",
            "Submitted actions by admission result.",
            labelnames=("action_type", "role", "status"),
            registry=self.registry,
        )

        self.errors_total = Counter(
            "ipc_errors_total",
            "Errors by type.",
            labelnames=("error_type", "process_type", "role"),
            registry=self.registry,
        )

        self.connections = Gauge(
            "ipc_connections_current",
            "Open client connections by role.",
            labelnames=("role",),
            registry=self.registry,
        )

    # ============================================================
    # Wiring
    # ============================================================

    def attach(self, events: EventAggregatorProtocol) -> None:
        """Subscribe to the kernel events this collector understands."""
        for event_type, handler in self._handlers().items():
            events.subscribe(event_type, handler)

    def detach(self, events: EventAggregatorProtocol) -> None:
        for event_type, handler in self._handlers().items():
            events.unsubscribe(event_type, handler)

    def _handlers(self) -> Dict[str, Callable[[KernelEvent], None]]:
        return {
            "process.created": self.on_process_created,
            "process.started": self.on_process_started,
            "process.retry": self.on_process_retry,
            "process.ended": self.on_process_ended,
            "action.denied": self.on_action_denied,
            "action.enqueued": self.on_action_enqueued,
            "action.dequeued": self.on_action_dequeued,
            "queue.sampled": self.on_queue_sampled,
        }

    # ============================================================
    # Event handlers
    # ============================================================

    def on_process_created(self, event: KernelEvent) -> None:
        self.actions_total.labels(
            action_type=_label(event.data.get("action_type")),
            role=_label(event.data.get("role")),
            status="started",
        ).inc()

    def on_process_started(self, event: KernelEvent) -> None:
        self.active_processes.labels(
            process_type=_label(event.data.get("process_type")),
            role=_label(event.data.get("role")),
        ).inc()

    def on_process_retry(self, event: KernelEvent) -> None:
        self.record_error(
            "process_retry",
            event.data.get("process_type"),
            event.data.get("role"),
        )

    def on_process_ended(self, event: KernelEvent) -> None:
        process_type = _label(event.data.get("process_type"))
        role = _label(event.data.get("role"))
        state = _label(event.data.get("state"))

        self.processes_total.labels(process_type=process_type, role=role, state=state).inc()
        self.process_duration.labels(process_type=process_type, role=role, state=state).observe(
            float(event.data.get("duration_seconds") or 0.0)
        )
        self.active_processes.labels(process_type=process_type, role=role).dec()

        if state == "failed":
            self.record_error("process_failed", process_type, role)

    def on_action_denied(self, event: KernelEvent) -> None:
        self.actions_total.labels(
            action_type=_label(event.data.get("action_type")),
            role=_label(event.data.get("role")),
            status="denied",
        ).inc()
        self.record_error(
            f"action_{_label(event.data.get('reason')).replace(' ', '_')}",
            event.data.get("process_type"),
            event.data.get("role"),
        )

    def on_action_enqueued(self, event: KernelEvent) -> None:
        self.actions_total.labels(
            action_type=_label(event.data.get("action_type")),
            role=_label(event.data.get("role")),
            status="queued",
        ).inc()

    def on_action_dequeued(self, event: KernelEvent) -> None:
        self.queue_wait.labels(
            process_type=_label(event.data.get("process_type")),
            priority=_label(event.data.get("priority")),
        ).observe(float(event.data.get("wait_seconds") or 0.0))

    def on_queue_sampled(self, event: KernelEvent) -> None:
        scope = _label(event.data.get("owner"))
        size = int(event.data.get("size") or 0)

        if size > 0:
            self.queue_size.labels(owner_scope=scope).set(size)
            self._queue_scopes.add(scope)
        elif scope in self._queue_scopes:
            # Empty scopes are dropped to keep label cardinality bounded
            self.queue_size.remove(scope)
            self._queue_scopes.discard(scope)

    # ============================================================
    # Direct recording
    # ============================================================

    def record_error(
        self,
        error_type: str,
        process_type: Optional[str] = None,
        role: Optional[str] = None,
    ) -> None:
        self.errors_total.labels(
            error_type=error_type,
            process_type=_label(process_type),
            role=_label(role),
        ).inc()

    def record_connection(self, role: str) -> None:
        self.connections.labels(role=_label(role)).inc()

    def record_disconnection(self, role: str) -> None:
        self.connections.labels(role=_label(role)).dec()

    # ============================================================
    # Export
    # ============================================================

    def asgi_app(self) -> Any:
        """ASGI app serving this collector's registry."""
        return make_asgi_app(registry=self.registry)

    def render(self) -> bytes:
        return generate_latest(self.registry)

    def sample(self, name: str, **labels: str) -> Optional[float]:
        """Current value of one sample, or None if it does not exist."""
        return self.registry.get_sample_value(name, labels)


def _label(value: Any) -> str:
    if value is None or value == "":
        return "unknown"
    return str(value)
