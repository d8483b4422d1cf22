"""
Daemon Launch Sequence

Entry routine of the ingress controller. It turns the process into a
long-lived controller and back into an exit status:

Bootstrap Sequence (fail-fast, strictly in order):
    1. Static configuration        -> "unable to parse static config"
    2. Manager construction        -> "unable to start manager"
    3. Liveness probe "healthz"    -> "unable to set up health check"
    4. Readiness probe "readyz"    -> "unable to set up ready check"
    5. Services subsystem          -> "unable to create services"
    6. Ingress reconciler          -> "unable to create controller"
    7. Manager run loop            -> "problem running manager"

A failed step logs its label with the underlying error and exits 1 without
attempting any later step. Cancellation of the root context before the run
loop starts skips the remaining steps and exits 0.

Lifecycle:
    INITIALIZING -> REGISTERING -> RUNNING -> SHUTTING_DOWN -> TERMINATED
    Bootstrap failures go straight to TERMINATED.

Exit Codes:
    0: Graceful shutdown after SIGTERM/SIGINT
    1: Any bootstrap failure or run-loop error
"""

import logging
import os
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

from . import DAEMON_NAME, DAEMON_VERSION
from .config import Config, create_config
from .context import ExecutionContext, setup_signal_handler
from .errors import BootstrapError
from .healthz import ping
from .manager import ManagerOptions, new_manager
from .reconciler import IngressReconciler
from .services import Services
from .state import LifecycleState, LifecycleTracker
from .structured_events import ActionResult, StructuredEventLogger

STAGE_CONFIG = "unable to parse static config"
STAGE_MANAGER = "unable to start manager"
STAGE_HEALTHZ = "unable to set up health check"
STAGE_READYZ = "unable to set up ready check"
STAGE_SERVICES = "unable to create services"
STAGE_CONTROLLER = "unable to create controller"
STAGE_RUN = "problem running manager"


class Registrable(Protocol):
    """A subsystem that registers its probes and runnables with the manager."""

    def setup_with(self, ctx: ExecutionContext, manager: Any) -> None:
        ...


@dataclass(frozen=True)
class SubsystemStep:
    """
    One subsystem registration step.

    Attributes:
        name: Subsystem name; logged as "configuring <name>" and used as the
            key other steps find the built subsystem under.
        failure_stage: Stage label logged if the step fails.
        build: Called with (client, config, registered subsystems) and
            returns the Registrable subsystem.
    """
    name: str
    failure_stage: str
    build: Callable[[Any, Config, Dict[str, Any]], Registrable]


def default_subsystems() -> List[SubsystemStep]:
    """Services first: the ingress reconciler depends on them."""
    return [
        SubsystemStep(
            "services", STAGE_SERVICES,
            lambda client, cfg, registered: Services(client, cfg),
        ),
        SubsystemStep(
            "ingress reconciler", STAGE_CONTROLLER,
            lambda client, cfg, registered: IngressReconciler(client, cfg, registered["services"]),
        ),
    ]


def manager_options(cfg: Config) -> ManagerOptions:
    return ManagerOptions(
        scheme=cfg.scheme,
        leader_election=cfg.election,
        leader_election_id=cfg.election_id,
        leader_election_namespace=cfg.resolved_election_namespace,
        health_probe_bind_address=cfg.probe_addr,
        metrics_bind_address=cfg.metrics_addr,
        lease_duration=cfg.lease_duration,
        renew_deadline=cfg.renew_deadline,
        retry_period=cfg.retry_period,
        leader_election_release_on_cancel=cfg.release_on_cancel,
        graceful_shutdown_timeout=cfg.graceful_shutdown_timeout,
        identity=cfg.identity,
    )


class _Stages:
    """Runs bootstrap steps, converting failures into BootstrapError."""

    def __init__(self, structured_logger: StructuredEventLogger):
        self.structured_logger = structured_logger

    def run(self, stage: str, func: Callable[[], Any]) -> Any:
        started = time.time()
        try:
            result = func()
        except Exception as e:
            self.structured_logger.log_stage(stage, ActionResult.FAILURE,
                                             duration_ms=int((time.time() - started) * 1000),
                                             error_message=str(e))
            raise BootstrapError(stage, e) from e
        self.structured_logger.log_stage(stage, ActionResult.SUCCESS,
                                         duration_ms=int((time.time() - started) * 1000))
        return result


def launch(ctx: ExecutionContext,
           config_loader: Callable[..., Config] = create_config,
           manager_factory: Callable[..., Any] = new_manager,
           subsystems: Optional[List[SubsystemStep]] = None,
           tracker: Optional[LifecycleTracker] = None) -> int:
    """
    Bootstrap the controller and run it until ctx is canceled.

    Args:
        ctx (ExecutionContext): Root context, canceled by the signal handler.
        config_loader: Called with ctx; returns a validated Config.
        manager_factory: Called with (ctx, connection, options); returns
            the manager.
        subsystems: Registration steps, default_subsystems() when None.
        tracker: Lifecycle tracker; a new one when None.

    Returns:
        int: Process exit status, 0 for a graceful shutdown, 1 otherwise.
    """
    launch_log = ctx.logger.getChild("launch")
    structured_logger = StructuredEventLogger(launch_log)
    tracker = tracker or LifecycleTracker(structured_logger)
    stages = _Stages(structured_logger)
    subsystems = default_subsystems() if subsystems is None else subsystems
    started = time.time()
    mgr = None

    def finish(exit_code: int, reason: str) -> int:
        if mgr is not None and not mgr.started:
            mgr.close()
        tracker.transition_if(LifecycleState.RUNNING, LifecycleState.SHUTTING_DOWN, reason)
        tracker.transition(LifecycleState.TERMINATED, reason)
        structured_logger.log_shutdown(exit_code, reason, duration_ms=int((time.time() - started) * 1000))
        return exit_code

    launch_log.info(f"starting {DAEMON_NAME} {DAEMON_VERSION}")
    try:
        cfg = stages.run(STAGE_CONFIG, lambda: config_loader(ctx))

        launch_log.info("configuring manager")
        mgr = stages.run(STAGE_MANAGER,
                         lambda: manager_factory(ctx, cfg.cluster_connection, manager_options(cfg)))
        metrics = getattr(mgr, "metrics", None)
        if metrics is not None:
            tracker.bind_metrics(metrics)
        tracker.transition(LifecycleState.REGISTERING, "manager constructed")

        launch_log.info("configuring probes")
        stages.run(STAGE_HEALTHZ, lambda: mgr.add_healthz_check("healthz", ping))
        stages.run(STAGE_READYZ, lambda: mgr.add_readyz_check("readyz", ping))

        registered: Dict[str, Any] = {}
        for step in subsystems:
            if ctx.cancelled:
                break
            launch_log.info(f"configuring {step.name}")

            def setup(step=step):
                subsystem = step.build(mgr.get_client(), cfg, registered)
                subsystem.setup_with(ctx, mgr)
                return subsystem

            registered[step.name] = stages.run(step.failure_stage, setup)

        if ctx.cancelled:
            launch_log.info(f"shutdown requested during bootstrap ({ctx.cause or 'context canceled'})")
            return finish(0, "canceled during bootstrap")

        launch_log.info("starting manager")
        tracker.transition(LifecycleState.RUNNING, "manager starting")
        ctx.on_cancel(lambda: tracker.transition_if(
            LifecycleState.RUNNING, LifecycleState.SHUTTING_DOWN, ctx.cause or "context canceled"))
        stages.run(STAGE_RUN, lambda: mgr.start(ctx))
    except BootstrapError as e:
        launch_log.error(f"{e.stage}: {e.cause}")
        return finish(1, e.stage)

    launch_log.info("shutdown complete")
    return finish(0, ctx.cause or "context canceled")


def run(exit_handler: Callable[[int], Any] = sys.exit,
        logger: Optional[logging.Logger] = None,
        **launch_kwargs) -> None:
    """
    Install signal handling, launch the daemon and report the exit status.

    exit_handler is called exactly once with 0 or 1.
    """
    logger = logger or logging.getLogger(os.getenv("LOGGER_NAME", "INGRESS_CONTROLLER"))
    try:
        ctx = setup_signal_handler(logger)
    except RuntimeError as e:
        logger.critical(f"unable to set up signal handler: {e}")
        exit_handler(1)
        return
    exit_handler(launch(ctx, **launch_kwargs))
