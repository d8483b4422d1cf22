from __future__ import annotations

import heapq
import itertools
import logging
import os
import random
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from .retry import backoff_delay
from .scheme import KnownType


@dataclass(frozen=True)
class Request:
    """Identifies one object to reconcile."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}" if self.namespace else f"{self.kind} {self.name}"


@dataclass(frozen=True)
class Result:
    requeue_after: float = 0.0


class SourceAccessDenied(Exception):
    """The API server rejected the controller's credentials (401/403)."""


class WorkQueue:
    """De-duplicating work queue with delayed adds and per-item failure backoff.

    An item is never handed to two workers at once: adds while an item is
    being processed are parked until done() is called for it.
    """

    def __init__(self, name: str, base_delay: float = 0.005, max_delay: float = 300.0) -> None:
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._cond = threading.Condition()
        self._queue: deque[Any] = deque()
        self._dirty: set[Any] = set()
        self._processing: set[Any] = set()
        self._waiting: list[tuple[float, int, Any]] = []
        self._seq = itertools.count()
        self._failures: dict[Any, int] = {}
        self._shutting_down = False

    def _add_locked(self, item: Any) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._cond.notify()

    def add(self, item: Any) -> None:
        with self._cond:
            self._add_locked(item)

    def add_after(self, item: Any, delay: float) -> None:
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (time.monotonic() + delay, next(self._seq), item))
            self._cond.notify()

    def add_rate_limited(self, item: Any) -> float:
        with self._cond:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        delay = backoff_delay(failures, self.base_delay, self.max_delay)
        self.add_after(item, delay)
        return delay

    def forget(self, item: Any) -> None:
        with self._cond:
            self._failures.pop(item, None)

    def num_requeues(self, item: Any) -> int:
        with self._cond:
            return self._failures.get(item, 0)

    def get(self, timeout: float | None = None) -> Any | None:
        """Next item, or None on shutdown or timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                now = time.monotonic()
                while self._waiting and self._waiting[0][0] <= now:
                    _, _, item = heapq.heappop(self._waiting)
                    self._add_locked(item)
                if self._queue:
                    item = self._queue.popleft()
                    self._dirty.discard(item)
                    self._processing.add(item)
                    return item
                if self._shutting_down:
                    return None
                waits = []
                if deadline is not None:
                    if now >= deadline:
                        return None
                    waits.append(deadline - now)
                if self._waiting:
                    waits.append(self._waiting[0][0] - now)
                self._cond.wait(min(waits) if waits else None)

    def done(self, item: Any) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class KindSource:
    """List-then-watch event source for one registered kind.

    1. Lists the kind and enqueues every object (seeds the queue).
    2. Watches from the list's resourceVersion, enqueueing each event.
    3. On ``410 Gone`` re-lists; on other transient errors backs off with
       jitter (capped at 30 s).
    4. ``401`` / ``403`` are configuration errors (RBAC/auth) and raise
       SourceAccessDenied so the controller, and the manager, fail loudly.
    """

    def __init__(
        self,
        known_type: KnownType,
        api_client: Any,
        namespace: str = "",
        predicate: Callable[[Any], bool] | None = None,
        watch_timeout_seconds: int = 300,
        logger: logging.Logger | None = None,
    ) -> None:
        self.known_type = known_type
        self.kind = known_type.gvk.kind
        self.api_client = api_client
        self.namespace = namespace
        self.predicate = predicate
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(os.getenv("LOGGER_NAME", "INGRESS_CONTROLLER"))
        self.synced = threading.Event()
        self._watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @property
    def cluster_scoped(self) -> bool:
        return self.known_type.list_all == self.known_type.list_namespaced

    def _list_call(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        api = self.known_type.api_class(self.api_client)
        if self.namespace and not self.cluster_scoped:
            return getattr(api, self.known_type.list_namespaced), {"namespace": self.namespace}
        return getattr(api, self.known_type.list_all), {}

    def _enqueue(self, queue: WorkQueue, obj: Any) -> None:
        if self.predicate is not None and not self.predicate(obj):
            return
        metadata = getattr(obj, "metadata", None)
        if metadata is None or not metadata.name:
            return
        queue.add(Request(self.kind, metadata.namespace or "", metadata.name))

    def _stop_watcher(self) -> None:
        with self._watcher_lock:
            if self._watcher is not None:
                self._watcher.stop()

    def run(self, ctx: Any, queue: WorkQueue) -> None:
        ctx.on_cancel(self._stop_watcher)
        list_fn, kwargs = self._list_call()
        resource_version: str | None = None
        backoff_seconds = 1

        while not ctx.cancelled:
            watcher = watch.Watch()
            with self._watcher_lock:
                self._watcher = watcher
            try:
                if resource_version is None:
                    listing = list_fn(**kwargs)
                    resource_version = getattr(getattr(listing, "metadata", None), "resource_version", None)
                    for obj in listing.items or []:
                        self._enqueue(queue, obj)
                    self.synced.set()
                    self.logger.debug(f"Listed {self.kind}, watching from resourceVersion {resource_version}")

                for event in watcher.stream(
                    list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **kwargs,
                ):
                    if ctx.cancelled:
                        break
                    obj = event.get("object")
                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and metadata.resource_version:
                        resource_version = metadata.resource_version
                    self._enqueue(queue, obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(f"{self.kind} watch resource version expired, re-listing")
                    resource_version = None
                    continue
                if exc.status in {401, 403}:
                    raise SourceAccessDenied(
                        f"Kubernetes API denied {self.kind} list/watch (status={exc.status}). "
                        "Check controller RBAC and service account permissions."
                    ) from exc
                self.logger.warning(f"{self.kind} watch error: {exc.status} {exc.reason}")
                ctx.wait(backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                if ctx.cancelled:
                    break
                self.logger.exception(f"Unexpected {self.kind} watch error")
                ctx.wait(backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._watcher is watcher:
                        self._watcher = None


class Controller:
    """Leader-election runnable that feeds source events to a reconciler.

    Workers consult ``leader_check`` before every dispatch; while it is false
    the request is parked and retried later instead of being reconciled.
    """

    def __init__(
        self,
        name: str,
        reconciler: Any,
        sources: list[KindSource],
        leader_check: Callable[[], bool],
        workers: int = 1,
        metrics: Any = None,
        logger: logging.Logger | None = None,
        not_leader_retry: float = 1.0,
    ) -> None:
        self.name = name
        self.reconciler = reconciler
        self.sources = sources
        self.leader_check = leader_check
        self.workers = workers
        self.metrics = metrics
        self.logger = logger or logging.getLogger(os.getenv("LOGGER_NAME", "INGRESS_CONTROLLER")).getChild(name)
        self.not_leader_retry = not_leader_retry
        self.queue = WorkQueue(name)
        self._error: BaseException | None = None
        self._error_lock = threading.Lock()

    def needs_leader_election(self) -> bool:
        return True

    def start(self, ctx: Any) -> None:
        run_ctx = ctx.child(self.name)
        threads = []
        for source in self.sources:
            threads.append(self._spawn(f"{self.name}-source-{source.kind}", self._run_source, source, run_ctx))
        for i in range(self.workers):
            threads.append(self._spawn(f"{self.name}-worker-{i}", self._worker, run_ctx))
        self.logger.info(f"Starting controller with {self.workers} worker(s) and {len(self.sources)} source(s)")

        run_ctx.wait()
        self.queue.shutdown()
        for thread in threads:
            thread.join()
        self.logger.info("Controller stopped")

        if self._error is not None:
            raise self._error

    @staticmethod
    def _spawn(name: str, target: Callable[..., None], *args: Any) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, daemon=True, name=name)
        thread.start()
        return thread

    def _run_source(self, source: KindSource, ctx: Any) -> None:
        try:
            source.run(ctx, self.queue)
        except Exception as e:
            self.logger.error(f"{source.kind} source failed: {e}")
            with self._error_lock:
                if self._error is None:
                    self._error = e
            ctx.cancel("source failed")

    def _worker(self, ctx: Any) -> None:
        while not ctx.cancelled:
            request = self.queue.get(timeout=0.5)
            if request is None:
                continue
            try:
                self._process(ctx, request)
            finally:
                self.queue.done(request)

    def _process(self, ctx: Any, request: Request) -> None:
        if self.metrics is not None:
            self.metrics.set_queue_depth(self.name, len(self.queue))
        if not self.leader_check():
            self.logger.debug(f"Not leading, deferring {request}")
            self.queue.add_after(request, self.not_leader_retry)
            return
        try:
            result = self.reconciler.reconcile(ctx, request)
        except Exception as e:
            delay = self.queue.add_rate_limited(request)
            self.logger.error(f"Reconciler error for {request}: {e}; retrying in {delay:.2f}s")
            self._record("error")
            return
        self.queue.forget(request)
        if result is not None and result.requeue_after > 0:
            self.queue.add_after(request, result.requeue_after)
            self._record("requeue_after")
        else:
            self._record("success")

    def _record(self, result: str) -> None:
        if self.metrics is not None:
            self.metrics.record_reconcile(self.name, result)
