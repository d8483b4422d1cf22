import threading
import time
from enum import Enum


class LifecycleState(Enum):
    """
    Lifecycle states of the daemon process.

    State Mapping:
      INITIALIZING:  loading configuration and constructing the manager
      REGISTERING:   adding probes and subsystems to the manager
      RUNNING:       manager run loop active (election, probes, dispatch)
      SHUTTING_DOWN: root context canceled or run loop failed; runnables stopping
      TERMINATED:    process is about to exit
    """
    INITIALIZING = "initializing"
    REGISTERING = "registering"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


# Allowed transitions. A bootstrap failure jumps straight to TERMINATED since
# nothing has started running yet.
TRANSITIONS = {
    LifecycleState.INITIALIZING: {LifecycleState.REGISTERING, LifecycleState.TERMINATED},
    LifecycleState.REGISTERING: {LifecycleState.RUNNING, LifecycleState.TERMINATED},
    LifecycleState.RUNNING: {LifecycleState.SHUTTING_DOWN},
    LifecycleState.SHUTTING_DOWN: {LifecycleState.TERMINATED},
    LifecycleState.TERMINATED: set(),
}


class InvalidTransition(Exception):
    def __init__(self, current: LifecycleState, requested: LifecycleState):
        self.current = current
        self.requested = requested
        super().__init__(f"invalid lifecycle transition {current.value} -> {requested.value}")


class LifecycleTracker:
    """
    Thread-safe holder of the current lifecycle state.

    Every transition is recorded in history as (state, monotonic timestamp)
    and reported to the optional structured logger and metrics.
    """

    def __init__(self, structured_logger=None, metrics=None):
        self._lock = threading.Lock()
        self._state = LifecycleState.INITIALIZING
        self.history = [(LifecycleState.INITIALIZING, time.monotonic())]
        self.structured_logger = structured_logger
        self.metrics = metrics
        if metrics is not None:
            metrics.set_lifecycle_state(self._state)

    @property
    def state(self) -> LifecycleState:
        with self._lock:
            return self._state

    def bind_metrics(self, metrics) -> None:
        """Start mirroring the state into metrics created after the tracker."""
        self.metrics = metrics
        metrics.set_lifecycle_state(self.state)

    def transition(self, new_state: LifecycleState, reason: str = None) -> None:
        with self._lock:
            old_state = self._state
            if new_state not in TRANSITIONS[old_state]:
                raise InvalidTransition(old_state, new_state)
            self._state = new_state
            self.history.append((new_state, time.monotonic()))

        if self.structured_logger is not None:
            self.structured_logger.log_state_transition(old_state.value, new_state.value, reason)
        if self.metrics is not None:
            self.metrics.set_lifecycle_state(new_state)

    def transition_if(self, expected: LifecycleState, new_state: LifecycleState, reason: str = None) -> bool:
        """Transition only when currently in `expected`; returns whether it happened."""
        with self._lock:
            if self._state is not expected:
                return False
            self._state = new_state
            self.history.append((new_state, time.monotonic()))

        if self.structured_logger is not None:
            self.structured_logger.log_state_transition(expected.value, new_state.value, reason)
        if self.metrics is not None:
            self.metrics.set_lifecycle_state(new_state)
        return True

    def states(self) -> list:
        return [state for state, _ in self.history]
