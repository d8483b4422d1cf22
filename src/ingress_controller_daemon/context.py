"""
Execution Context Provider

An ExecutionContext is the single cancellable handle passed from the entry
routine to the manager and every subsystem. It carries a logger binding and
a cancellation flag that every long-running operation observes.

There is exactly one root context per process, created by
setup_signal_handler() in the entry routine. Derived contexts (child())
inherit cancellation from their parent; canceling a child never cancels
its parent. A context is canceled at most once and never resurrected.
The manager keeps one more parentless context for its leader elector,
which has to outlive the root until leader runnables have stopped.

Signal Handling:
    - First SIGTERM/SIGINT: cancel the root context from a dispatcher
      thread (graceful shutdown)
    - Second SIGTERM/SIGINT: force exit with status 1

Usage:
    ctx = setup_signal_handler(logger)
    worker_ctx = ctx.child("worker")
    while not worker_ctx.wait(5):
        do_work()
"""

import logging
import os
import queue
import signal
import threading
from typing import Callable, List, Optional


class ExecutionContext:
    """
    Thread-safe cancellable context with a bound logger.

    Attributes:
        logger (logging.Logger): Logger bound to this context.
        parent (ExecutionContext | None): Context this one was derived from.
    """

    def __init__(self,
                 logger: Optional[logging.Logger] = None,
                 parent: Optional["ExecutionContext"] = None):
        self.logger = logger or logging.getLogger(os.getenv("LOGGER_NAME", "INGRESS_CONTROLLER"))
        self.parent = parent
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._children: List["ExecutionContext"] = []
        self._callbacks: List[Callable[[], None]] = []
        self._cause: Optional[str] = None
        if parent is not None:
            parent._attach(self)

    def _attach(self, child: "ExecutionContext") -> None:
        with self._lock:
            if not self._done.is_set():
                self._children.append(child)
                return
            cause = self._cause
        child.cancel(cause)

    def _detach(self, child: "ExecutionContext") -> None:
        with self._lock:
            if child in self._children:
                self._children.remove(child)

    def cancel(self, cause: Optional[str] = None) -> bool:
        """
        Cancel this context and all of its descendants.

        Args:
            cause: Optional reason recorded on the first cancellation.

        Returns:
            bool: True if this call performed the cancellation, False if the
                context had already been canceled.
        """
        with self._lock:
            if self._done.is_set():
                return False
            self._cause = cause
            self._done.set()
            children, self._children = self._children, []
            callbacks, self._callbacks = self._callbacks, []

        for child in children:
            child.cancel(cause)
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                self.logger.warning(f"Cancellation callback failed: {e}")
        if self.parent is not None:
            self.parent._detach(self)
        return True

    @property
    def cancelled(self) -> bool:
        return self._done.is_set()

    @property
    def cause(self) -> Optional[str]:
        return self._cause

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until canceled or timeout expires. Returns True if canceled."""
        return self._done.wait(timeout)

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run callback once when the context is canceled (immediately if it already is)."""
        with self._lock:
            if not self._done.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def child(self, name: Optional[str] = None) -> "ExecutionContext":
        """Derive a child context, optionally with a named child logger."""
        logger = self.logger.getChild(name) if name else self.logger
        return ExecutionContext(logger=logger, parent=self)


SIGNAL_NAMES = {
    signal.SIGTERM: 'SIGTERM',
    signal.SIGINT: 'SIGINT'
}


def setup_signal_handler(logger: logging.Logger,
                         signals=(signal.SIGTERM, signal.SIGINT),
                         force_exit: Callable[[int], None] = os._exit) -> ExecutionContext:
    """
    Create the root execution context and bind it to termination signals.

    The first signal cancels the returned context. The handler itself only
    hands the signal to a dispatcher thread through a SimpleQueue, whose put()
    is safe to call from a signal handler: the interrupted main thread may be
    holding the context's or the lifecycle tracker's lock, and running the
    cancellation in the handler frame would wait on that lock forever. A
    second signal means the operator does not want to wait for the graceful
    shutdown, so the process exits immediately with status 1.

    Args:
        logger: Root logger bound to the returned context.
        signals: Signals that request termination.
        force_exit: Called with 1 on the second signal.

    Returns:
        ExecutionContext: The root context for this process.

    Raises:
        RuntimeError: If the handlers cannot be installed (for example when
            called outside the main thread). This is an unrecoverable
            startup fault.
    """
    ctx = ExecutionContext(logger=logger)
    pending: "queue.SimpleQueue[int]" = queue.SimpleQueue()
    received: List[int] = []

    def dispatch() -> None:
        signal_name = SIGNAL_NAMES.get(pending.get(), 'signal')
        logger.info(f"Received {signal_name}, initiating graceful shutdown...")
        ctx.cancel(cause=signal_name)

    def signal_handler(signum: int, frame) -> None:
        received.append(signum)
        if len(received) == 1:
            pending.put(signum)
            return
        signal_name = SIGNAL_NAMES.get(signum, f'Signal-{signum}')
        logger.warning(f"Received second {signal_name}, exiting immediately")
        force_exit(1)

    try:
        for sig in signals:
            signal.signal(sig, signal_handler)
    except (ValueError, OSError) as e:
        raise RuntimeError(f"unable to install signal handlers: {e}") from e

    threading.Thread(target=dispatch, daemon=True, name="signal-dispatch").start()
    logger.debug("Signal handlers registered for %s",
                 ", ".join(SIGNAL_NAMES.get(s, str(s)) for s in signals))
    return ctx
