"""
Manager: Host Object for Probes, Runnables and Leader Election

The manager owns the kubernetes client, the type registry, the registered
health/ready checks and the registered runnables. It is constructed once from
the configuration, mutated only during the registration phase, and becomes
immutable when start() is called.

Runnables:
    Any object with start(ctx) that blocks until ctx is canceled. A runnable
    may define needs_leader_election() -> bool; without it the runnable is
    treated as reconciliation-class work and only runs while leading.

Run Loop (start):
    1. Serve /healthz, /readyz and /metrics (independent of leadership)
    2. Start runnables that do not need leader election
    3. Run the leader elector (or, with election disabled, act as leader)
    4. On becoming leader, start leader-election runnables
    5. Block until the context is canceled or something fails

Shutdown:
    Leader-election runnables stop first, then the others, then the lease is
    released, so no peer can start reconciling while this replica still is.
    Everything must finish within graceful_shutdown_timeout. The elector runs
    on its own context rather than a child of the root, since the root is
    already canceled while the lease still has to be renewed and released.

Failure Modes (raised from start):
    - A runnable raised: that error
    - Leadership lost while running: LeaderElectionLost
    - Runnables still alive after the grace period: ShutdownTimeout
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from .config import parse_bind_address
from .context import ExecutionContext
from .errors import LeaderElectionLost, ManagerError, RegistrationError, ShutdownTimeout
from .healthz import Checker, ProbeRegistry, make_probe_handler
from .kube import ClusterConnection, build_api_client, validate_cluster_connectivity
from .leaderelection import ClusterLeaseLock, LeaderElector
from .listeners import Listener
from .metrics import ControllerMetrics, make_metrics_handler
from .scheme import Scheme
from .structured_events import StructuredEventLogger


@dataclass
class ManagerOptions:
    """Options the manager is constructed with."""
    scheme: Scheme
    leader_election: bool = False
    leader_election_id: str = ""
    leader_election_namespace: str = ""
    health_probe_bind_address: str = "0"
    metrics_bind_address: str = "0"
    lease_duration: float = 15
    renew_deadline: float = 10
    retry_period: float = 2
    leader_election_release_on_cancel: bool = False
    graceful_shutdown_timeout: float = 30
    identity: str = ""


def needs_leader_election(runnable) -> bool:
    check = getattr(runnable, "needs_leader_election", None)
    return bool(check()) if callable(check) else True


class Manager:
    """
    Long-lived host of the controller's runnables.

    Attributes:
        options (ManagerOptions): Construction options.
        logger (logging.Logger): Manager logger ("<root>.manager").
        metrics (ControllerMetrics): Registry served on the metrics address.
        elected (threading.Event): Set once leader-election runnables started.
    """

    def __init__(self, api_client, options: ManagerOptions,
                 logger: Optional[logging.Logger] = None,
                 metrics: Optional[ControllerMetrics] = None,
                 election_lock=None):
        self.options = options
        self.logger = logger or logging.getLogger(os.getenv("LOGGER_NAME", "INGRESS_CONTROLLER")).getChild("manager")
        self.metrics = metrics or ControllerMetrics()
        self.structured_logger = StructuredEventLogger(self.logger)
        self.elected = threading.Event()

        self._client = api_client
        self._healthz = ProbeRegistry("healthz")
        self._readyz = ProbeRegistry("readyz")
        self._runnables: List[Any] = []
        self._lock = threading.Lock()
        self._started = False
        self._error: Optional[BaseException] = None
        self._run_ctx: Optional[ExecutionContext] = None
        self._leader_runnables: List[Any] = []
        self._leader_threads: List[threading.Thread] = []
        self._other_threads: List[threading.Thread] = []

        scheme_errors = options.scheme.validate() if options.scheme is not None else ["no scheme given"]
        if scheme_errors:
            raise ManagerError("invalid scheme: " + "; ".join(scheme_errors))

        self._elector = None
        if options.leader_election:
            self._elector = self._build_elector(election_lock)

        self._probe_listener = None
        self._metrics_listener = None
        try:
            probe_addr = parse_bind_address(options.health_probe_bind_address)
            metrics_addr = parse_bind_address(options.metrics_bind_address)
        except ValueError as e:
            raise ManagerError(str(e)) from e
        try:
            if probe_addr is not None:
                self._probe_listener = Listener("health probes", *probe_addr,
                                                make_probe_handler(self._healthz, self._readyz),
                                                logger=self.logger)
            if metrics_addr is not None:
                self._metrics_listener = Listener("metrics", *metrics_addr,
                                                  make_metrics_handler(self.metrics),
                                                  logger=self.logger)
        except OSError as e:
            self._close_listeners()
            raise ManagerError(f"unable to bind listener: {e}") from e

    def _build_elector(self, election_lock) -> LeaderElector:
        opts = self.options
        if not opts.leader_election_id:
            raise ManagerError("leader election enabled but no election id given")
        if election_lock is None:
            if not opts.leader_election_namespace:
                raise ManagerError("leader election enabled but no election namespace given")
            election_lock = ClusterLeaseLock(opts.leader_election_id, opts.leader_election_namespace,
                                             opts.identity, self._client)
        try:
            return LeaderElector(
                lock=election_lock,
                identity=opts.identity,
                lease_duration=opts.lease_duration,
                renew_deadline=opts.renew_deadline,
                retry_period=opts.retry_period,
                on_started_leading=self._on_started_leading,
                on_stopped_leading=self._on_stopped_leading,
                release_on_cancel=opts.leader_election_release_on_cancel,
                logger=self.logger.getChild("leader-election"),
            )
        except ValueError as e:
            raise ManagerError(f"invalid leader election settings: {e}") from e

    # Registration phase

    def _ensure_registering(self, what: str) -> None:
        if self._started:
            raise RegistrationError(f"cannot add {what} after the manager has started")

    def add_healthz_check(self, name: str, check: Checker) -> None:
        with self._lock:
            self._ensure_registering(f"healthz check {name!r}")
            self._healthz.add(name, check)

    def add_readyz_check(self, name: str, check: Checker) -> None:
        with self._lock:
            self._ensure_registering(f"readyz check {name!r}")
            self._readyz.add(name, check)

    def add(self, runnable) -> None:
        if not callable(getattr(runnable, "start", None)):
            raise RegistrationError(f"{runnable!r} has no start(ctx) method")
        with self._lock:
            self._ensure_registering(f"runnable {runnable!r}")
            self._runnables.append(runnable)

    # Accessors

    def get_client(self):
        return self._client

    def get_scheme(self) -> Scheme:
        return self.options.scheme

    @property
    def health_probe_address(self) -> Optional[Tuple[str, int]]:
        return self._probe_listener.address if self._probe_listener else None

    @property
    def metrics_address(self) -> Optional[Tuple[str, int]]:
        return self._metrics_listener.address if self._metrics_listener else None

    @property
    def started(self) -> bool:
        return self._started

    def is_leader(self) -> bool:
        """Leadership is consulted live on every call; election disabled means always leading."""
        if self._elector is None:
            return True
        return self._elector.is_leader()

    # Run loop

    def start(self, ctx: ExecutionContext) -> None:
        """
        Run until ctx is canceled or an unrecoverable error occurs.

        Raises:
            RegistrationError: If the manager was already started.
            LeaderElectionLost, ShutdownTimeout, or a runnable's error.
        """
        with self._lock:
            if self._started:
                raise RegistrationError("manager already started")
            self._started = True
            runnables = list(self._runnables)

        run_ctx = ctx.child("runnables")
        self._run_ctx = run_ctx
        # Not derived from ctx: canceled only after leader runnables have stopped
        election_ctx = ExecutionContext(logger=self.logger.getChild("leader-election"))
        election_thread = None

        for listener in (self._probe_listener, self._metrics_listener):
            if listener is not None:
                listener.start()

        self._leader_runnables = [r for r in runnables if needs_leader_election(r)]
        for runnable in runnables:
            if not needs_leader_election(runnable):
                self._other_threads.append(self._spawn(runnable, run_ctx))

        if self._elector is None:
            self._start_leader_runnables()
        else:
            self.metrics.set_leader(self.options.leader_election_id, False)
            election_thread = threading.Thread(target=self._run_election, args=(election_ctx,),
                                               daemon=True, name="leader-election")
            election_thread.start()

        self.logger.info("Manager started")
        run_ctx.wait()

        if self._error is None:
            self.logger.info(f"Stopping and waiting for runnables ({ctx.cause or 'context canceled'})")
        else:
            self.logger.error(f"Stopping and waiting for runnables after error: {self._error}")
        leftovers = self._shutdown(election_ctx, election_thread)

        if self._error is not None:
            raise self._error
        if leftovers:
            raise ShutdownTimeout(
                f"runnables did not stop within {self.options.graceful_shutdown_timeout}s: "
                + ", ".join(leftovers))

    def _shutdown(self, election_ctx, election_thread) -> List[str]:
        deadline = time.monotonic() + self.options.graceful_shutdown_timeout
        leftovers = []
        with self._lock:
            leader_threads = list(self._leader_threads)
        for thread in leader_threads + self._other_threads:
            thread.join(max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                leftovers.append(thread.name)
        election_ctx.cancel("manager stopping")
        if election_thread is not None:
            election_thread.join(max(0.0, deadline - time.monotonic()))
            if election_thread.is_alive():
                leftovers.append(election_thread.name)
        self._close_listeners()
        return leftovers

    def close(self) -> None:
        """Release the bound listeners of a manager that will never be started."""
        if not self._started:
            self._close_listeners()

    def _close_listeners(self) -> None:
        for listener in (self._probe_listener, self._metrics_listener):
            if listener is not None:
                listener.stop()

    def _spawn(self, runnable, ctx: ExecutionContext) -> threading.Thread:
        thread = threading.Thread(target=self._run_runnable, args=(runnable, ctx),
                                  daemon=True, name=getattr(runnable, "name", type(runnable).__name__))
        thread.start()
        return thread

    def _run_runnable(self, runnable, ctx: ExecutionContext) -> None:
        try:
            runnable.start(ctx)
        except Exception as e:
            self.logger.error(f"Runnable {getattr(runnable, 'name', runnable)!r} failed: {e}", exc_info=True)
            self._fail(e)

    def _fail(self, error: BaseException) -> None:
        with self._lock:
            if self._error is None:
                self._error = error
        if self._run_ctx is not None:
            self._run_ctx.cancel("runnable error")

    def _start_leader_runnables(self) -> None:
        run_ctx = self._run_ctx
        with self._lock:
            if run_ctx is None or run_ctx.cancelled:
                return
            for runnable in self._leader_runnables:
                self._leader_threads.append(self._spawn(runnable, run_ctx))
        self.elected.set()

    def _run_election(self, election_ctx: ExecutionContext) -> None:
        try:
            lost = self._elector.run(election_ctx)
        except Exception as e:
            self.logger.error(f"Leader election failed: {e}", exc_info=True)
            self._fail(e)
            return
        if lost and not self._run_ctx.cancelled:
            self._fail(LeaderElectionLost(f"leader election lost for {self.options.leader_election_id}"))

    def _on_started_leading(self) -> None:
        opts = self.options
        self.metrics.set_leader(opts.leader_election_id, True)
        self.structured_logger.log_leadership_change(opts.leader_election_id, opts.identity, True)
        self._start_leader_runnables()

    def _on_stopped_leading(self) -> None:
        opts = self.options
        self.metrics.set_leader(opts.leader_election_id, False)
        self.structured_logger.log_leadership_change(opts.leader_election_id, opts.identity, False)


def new_manager(ctx: ExecutionContext, connection: ClusterConnection, options: ManagerOptions,
                logger: Optional[logging.Logger] = None) -> Manager:
    """
    Connect to the cluster and construct the manager.

    Raises:
        ManagerError: Unreachable cluster, invalid scheme, bad election
            settings or bind-address conflicts. No retry at this layer.
    """
    logger = logger or ctx.logger.getChild("manager")
    try:
        api_client = build_api_client(connection)
        version = validate_cluster_connectivity(api_client, timeout=connection.timeout)
    except Exception as e:
        raise ManagerError(f"unable to connect to the cluster ({connection.describe()}): {e}") from e
    logger.info(f"Connected to kubernetes {version} ({connection.describe()})")
    return Manager(api_client, options, logger=logger)
