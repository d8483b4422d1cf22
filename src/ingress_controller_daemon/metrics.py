"""Prometheus metrics owned by the manager and served on the metrics bind address."""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, generate_latest

from .listeners import QuietHandler
from .state import LifecycleState


class ControllerMetrics:
    """Collectors for leadership, lifecycle and reconcile activity.

    Each manager gets its own registry so tests and multiple managers in one
    process never collide on metric names.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.leader_status = Gauge(
            "leader_election_master_status",
            "1 if this replica is the leader of the named election, 0 otherwise",
            labelnames=["name"],
            registry=self.registry,
        )
        self.lifecycle_state = Gauge(
            "controller_lifecycle_state",
            "1 for the current lifecycle state of the daemon",
            labelnames=["state"],
            registry=self.registry,
        )
        self.reconcile_total = Counter(
            "controller_reconcile",
            "Reconcile calls by controller and result",
            labelnames=["controller", "result"],
            registry=self.registry,
        )
        self.workqueue_depth = Gauge(
            "workqueue_depth",
            "Items waiting in a controller work queue",
            labelnames=["name"],
            registry=self.registry,
        )

    def set_lifecycle_state(self, state: LifecycleState) -> None:
        for candidate in LifecycleState:
            self.lifecycle_state.labels(state=candidate.value).set(1 if candidate is state else 0)

    def set_leader(self, name: str, leading: bool) -> None:
        self.leader_status.labels(name=name).set(1 if leading else 0)

    def record_reconcile(self, controller: str, result: str) -> None:
        self.reconcile_total.labels(controller=controller, result=result).inc()

    def set_queue_depth(self, name: str, depth: int) -> None:
        self.workqueue_depth.labels(name=name).set(depth)


def make_metrics_handler(metrics: ControllerMetrics) -> type[QuietHandler]:
    class MetricsHandler(QuietHandler):
        """Serves /metrics in the Prometheus text format."""

        def do_GET(self) -> None:
            if self.path.split("?", 1)[0] != "/metrics":
                self.send_text(404, "not found\n")
                return
            output = generate_latest(metrics.registry)
            self.send_response(200)
            self.send_header("Content-Type", CONTENT_TYPE_LATEST)
            self.send_header("Content-Length", str(len(output)))
            self.end_headers()
            self.wfile.write(output)

    return MetricsHandler
