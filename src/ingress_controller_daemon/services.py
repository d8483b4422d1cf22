"""
Shared Controller Services

The services subsystem is registered before the ingress reconciler and owns
the state the reconciler feeds (per-kind counts of applied changes) and the
ingress-class filter. It also registers a connection monitor that runs on
every replica, leader or not.

Connection Monitor:
    Every CONNECTION_CHECK_INTERVAL_SECONDS the API server version endpoint is
    queried with exponential backoff (MAX_RETRIES_CONNECTION retries between
    INITIAL_BACKOFF_SECONDS and MAX_BACKOFF_SECONDS). When every retry fails
    the monitor raises ConnectionLost, which stops the manager with an error.
"""

import logging
import threading
import time
from typing import Any, Dict, Optional

from .controller import Request, Result
from .errors import ConnectionLost, SubsystemError
from .kube import validate_cluster_connectivity
from .retry import RetryCancelled, exponential_backoff_retry

INGRESS_CLASS_ANNOTATION = "kubernetes.io/ingress.class"


class ConnectionMonitor:
    """Non-leader runnable that keeps checking the control-plane connection."""

    name = "connection-monitor"

    def __init__(self, api_client, interval: float, timeout: int, max_retries: int,
                 initial_backoff: float, max_backoff: float, logger: logging.Logger):
        self.api_client = api_client
        self.interval = interval
        self.timeout = timeout
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.logger = logger
        self.last_success: Optional[float] = None
        self.server_version: Optional[str] = None

    def needs_leader_election(self) -> bool:
        return False

    def check_connection(self) -> str:
        version = validate_cluster_connectivity(self.api_client, timeout=self.timeout)
        self.last_success = time.time()
        self.server_version = version
        return version

    def start(self, ctx) -> None:
        while not ctx.wait(self.interval):
            try:
                exponential_backoff_retry(
                    ctx,
                    self.check_connection,
                    max_retries=self.max_retries,
                    initial_delay=self.initial_backoff,
                    max_delay=self.max_backoff,
                )
            except RetryCancelled:
                return
            except Exception as e:
                raise ConnectionLost(
                    f"kubernetes API server unreachable after {self.max_retries + 1} attempts: {e}") from e


class Services:
    """
    State shared by the reconcilers of this controller.

    Attributes:
        client: Kubernetes ApiClient owned by the manager.
        config (Config): Static configuration.
        is_setup (bool): True once setup_with() registered the services.
        connection (ConnectionMonitor | None): Registered connection monitor.
        synced_total (int): Number of requests applied so far.
    """

    def __init__(self, client, config):
        self.client = client
        self.config = config
        self.is_setup = False
        self.connection: Optional[ConnectionMonitor] = None
        self.synced_total = 0
        self.logger = logging.getLogger(config.logger_name).getChild("services")
        self._lock = threading.Lock()
        self._applied: Dict[str, int] = {}

    def setup_with(self, ctx, manager) -> None:
        if self.is_setup:
            raise SubsystemError("services are already set up")
        self.logger = ctx.logger.getChild("services")
        cfg = self.config
        self.connection = ConnectionMonitor(
            api_client=self.client,
            interval=cfg.connection_check_interval,
            timeout=cfg.api_timeout,
            max_retries=cfg.max_retries_connection,
            initial_backoff=cfg.initial_backoff,
            max_backoff=cfg.max_backoff,
            logger=self.logger.getChild("connection"),
        )
        manager.add(self.connection)
        self.is_setup = True

    def handles_ingress(self, ingress: Any) -> bool:
        """True if the ingress belongs to the configured ingress class."""
        metadata = getattr(ingress, "metadata", None)
        annotations = (getattr(metadata, "annotations", None) or {}) if metadata else {}
        annotated = annotations.get(INGRESS_CLASS_ANNOTATION)
        if annotated:
            return annotated == self.config.ingress_class
        spec = getattr(ingress, "spec", None)
        class_name = getattr(spec, "ingress_class_name", None) if spec else None
        return class_name == self.config.ingress_class

    def sync(self, ctx, request: Request) -> Result:
        """Apply one changed object to the controller state."""
        with self._lock:
            self._applied[request.kind] = self._applied.get(request.kind, 0) + 1
            self.synced_total += 1
        self.logger.debug(f"Applied change for {request}")
        return Result()

    def applied_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._applied)
