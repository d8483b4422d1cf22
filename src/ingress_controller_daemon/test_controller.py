"""
Unit Tests for the Controller Machinery

Test Coverage:
    - WorkQueue de-duplication, in-flight parking, delays and backoff
    - KindSource list-then-watch, predicate filtering, 410 relist,
      401/403 surfaced as SourceAccessDenied
    - Controller dispatch gated on leadership, error requeue and metrics,
      source failure stopping the controller
"""

import threading
import time
import unittest
from types import SimpleNamespace
from unittest.mock import Mock, call, patch

from kubernetes.client import ApiException

try:
    from . import controller as controller_module
    from .context import ExecutionContext
    from .controller import (Controller, KindSource, Request, Result, SourceAccessDenied,
                             WorkQueue)
    from .scheme import GroupVersionKind, KnownType
except ImportError:
    import controller as controller_module
    from context import ExecutionContext
    from controller import (Controller, KindSource, Request, Result, SourceAccessDenied,
                            WorkQueue)
    from scheme import GroupVersionKind, KnownType


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def obj(name, namespace="default", resource_version="1", ingress_class=None):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace, resource_version=resource_version,
                                 annotations={}),
        spec=SimpleNamespace(ingress_class_name=ingress_class),
    )


class TestWorkQueue(unittest.TestCase):
    """Test queue semantics."""

    def setUp(self):
        self.queue = WorkQueue("test")
        self.a = Request("Ingress", "default", "a")
        self.b = Request("Ingress", "default", "b")

    def test_fifo_and_dedupe(self):
        self.queue.add(self.a)
        self.queue.add(self.b)
        self.queue.add(self.a)
        self.assertEqual(len(self.queue), 2)
        self.assertEqual(self.queue.get(0), self.a)
        self.assertEqual(self.queue.get(0), self.b)
        self.assertIsNone(self.queue.get(0))

    def test_add_while_processing_is_parked(self):
        self.queue.add(self.a)
        item = self.queue.get(0)
        self.queue.add(self.a)
        self.assertIsNone(self.queue.get(0))
        self.queue.done(item)
        self.assertEqual(self.queue.get(0), self.a)

    def test_add_after(self):
        self.queue.add_after(self.a, 0.05)
        self.assertIsNone(self.queue.get(0))
        self.assertEqual(self.queue.get(2), self.a)

    def test_rate_limited_backoff_and_forget(self):
        self.assertEqual(self.queue.add_rate_limited(self.a), 0.005)
        self.assertEqual(self.queue.add_rate_limited(self.a), 0.01)
        self.assertEqual(self.queue.num_requeues(self.a), 2)
        self.queue.forget(self.a)
        self.assertEqual(self.queue.num_requeues(self.a), 0)

    def test_shutdown_wakes_getters(self):
        result = []
        getter = threading.Thread(target=lambda: result.append(self.queue.get()))
        getter.start()
        time.sleep(0.05)
        self.queue.shutdown()
        getter.join(5)
        self.assertEqual(result, [None])
        self.queue.add(self.a)
        self.assertEqual(len(self.queue), 0)

    def test_request_str(self):
        self.assertEqual(str(self.a), "Ingress default/a")
        self.assertEqual(str(Request("IngressClass", "", "haproxy")), "IngressClass haproxy")


class FakeApi:
    """Typed-API stand-in whose list calls return canned listings."""

    listings = []
    calls = []

    def __init__(self, api_client):
        pass

    def _list(self, kind, **kwargs):
        FakeApi.calls.append((kind, kwargs))
        items = FakeApi.listings.pop(0) if FakeApi.listings else []
        return SimpleNamespace(metadata=SimpleNamespace(resource_version="10"), items=items)

    def list_all(self, **kwargs):
        return self._list("all", **kwargs)

    def list_namespaced(self, **kwargs):
        return self._list("namespaced", **kwargs)


class FakeWatch:
    """Each stream() call consumes one script entry: a list of events or an exception."""

    scripts = []
    streams = []

    def __init__(self):
        self._stopped = threading.Event()

    def stop(self):
        self._stopped.set()

    def stream(self, func, **kwargs):
        FakeWatch.streams.append(kwargs)
        if FakeWatch.scripts:
            script = FakeWatch.scripts.pop(0)
            if isinstance(script, Exception):
                raise script
            for event in script:
                yield event
            return
        self._stopped.wait(5)


class TestKindSource(unittest.TestCase):
    """Test list-then-watch against fake list calls and watch streams."""

    def setUp(self):
        FakeApi.listings = []
        FakeApi.calls = []
        FakeWatch.scripts = []
        FakeWatch.streams = []
        patcher = patch.object(controller_module.watch, "Watch", FakeWatch)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.known = KnownType(GroupVersionKind("networking.k8s.io", "v1", "Ingress"), FakeApi,
                               "list_all", "list_namespaced")
        self.queue = WorkQueue("test")

    def run_source(self, source):
        ctx = ExecutionContext()
        errors = []

        def target():
            try:
                source.run(ctx, self.queue)
            except Exception as e:
                errors.append(e)

        thread = threading.Thread(target=target, daemon=True)
        thread.start()
        self.addCleanup(thread.join, 5)
        self.addCleanup(ctx.cancel)
        return ctx, thread, errors

    def drain(self):
        items = []
        while True:
            item = self.queue.get(0)
            if item is None:
                return items
            items.append(item)
            self.queue.done(item)

    def test_list_then_watch(self):
        FakeApi.listings = [[obj("a"), obj("b")]]
        FakeWatch.scripts = [[{"type": "ADDED", "object": obj("c", resource_version="11")}]]
        source = KindSource(self.known, Mock())
        ctx, thread, errors = self.run_source(source)

        self.assertTrue(wait_for(lambda: len(self.queue) == 3))
        self.assertTrue(source.synced.is_set())
        self.assertEqual([r.name for r in self.drain()], ["a", "b", "c"])
        self.assertTrue(wait_for(lambda: len(FakeWatch.streams) >= 2))
        self.assertEqual(FakeWatch.streams[0]["resource_version"], "10")
        self.assertEqual(FakeWatch.streams[1]["resource_version"], "11")

        ctx.cancel()
        thread.join(5)
        self.assertFalse(thread.is_alive())
        self.assertEqual(errors, [])
        self.assertEqual(FakeApi.calls, [("all", {})])

    def test_namespaced_watch(self):
        source = KindSource(self.known, Mock(), namespace="team-a")
        ctx, thread, _ = self.run_source(source)
        self.assertTrue(wait_for(source.synced.is_set))
        ctx.cancel()
        thread.join(5)
        self.assertEqual(FakeApi.calls, [("namespaced", {"namespace": "team-a"})])
        self.assertEqual(FakeWatch.streams[0]["namespace"], "team-a")

    def test_predicate_filters(self):
        FakeApi.listings = [[obj("mine", ingress_class="haproxy"), obj("theirs", ingress_class="nginx")]]
        source = KindSource(self.known, Mock(),
                            predicate=lambda o: o.spec.ingress_class_name == "haproxy")
        ctx, thread, _ = self.run_source(source)
        self.assertTrue(wait_for(source.synced.is_set))
        ctx.cancel()
        thread.join(5)
        self.assertEqual([r.name for r in self.drain()], ["mine"])

    def test_gone_triggers_relist(self):
        FakeApi.listings = [[obj("a")], [obj("b")]]
        FakeWatch.scripts = [ApiException(status=410, reason="Gone")]
        source = KindSource(self.known, Mock())
        ctx, thread, errors = self.run_source(source)
        self.assertTrue(wait_for(lambda: len(FakeApi.calls) == 2))
        ctx.cancel()
        thread.join(5)
        self.assertEqual(errors, [])
        self.assertEqual(sorted(r.name for r in self.drain()), ["a", "b"])

    def test_forbidden_is_fatal(self):
        FakeWatch.scripts = [ApiException(status=403, reason="Forbidden")]
        source = KindSource(self.known, Mock())
        with self.assertRaises(SourceAccessDenied):
            source.run(ExecutionContext(), self.queue)

    def test_cluster_scoped_kind_ignores_namespace(self):
        known = KnownType(GroupVersionKind("networking.k8s.io", "v1", "IngressClass"), FakeApi,
                          "list_all", "list_all")
        source = KindSource(known, Mock(), namespace="team-a")
        self.assertTrue(source.cluster_scoped)
        ctx, thread, _ = self.run_source(source)
        self.assertTrue(wait_for(source.synced.is_set))
        ctx.cancel()
        thread.join(5)
        self.assertEqual(FakeApi.calls, [("all", {})])


class TestController(unittest.TestCase):
    """Test worker dispatch."""

    def start(self, ctl):
        ctx = ExecutionContext()
        outcome = {}

        def target():
            try:
                ctl.start(ctx)
                outcome["error"] = None
            except Exception as e:
                outcome["error"] = e

        thread = threading.Thread(target=target, daemon=True)
        thread.start()
        self.addCleanup(thread.join, 5)
        self.addCleanup(ctx.cancel)
        return ctx, thread, outcome

    def test_needs_leader_election(self):
        self.assertTrue(Controller("ingress", Mock(), [], leader_check=lambda: True).needs_leader_election())

    def test_reconciles_when_leading(self):
        reconciler = Mock()
        reconciler.reconcile.return_value = Result()
        metrics = Mock()
        ctl = Controller("ingress", reconciler, [], leader_check=lambda: True, metrics=metrics)
        request = Request("Ingress", "default", "web")
        ctl.queue.add(request)
        ctx, thread, outcome = self.start(ctl)

        self.assertTrue(wait_for(lambda: reconciler.reconcile.called))
        ctx.cancel()
        thread.join(5)
        self.assertIsNone(outcome["error"])
        self.assertEqual(reconciler.reconcile.call_args[0][1], request)
        metrics.record_reconcile.assert_called_with("ingress", "success")

    def test_defers_while_not_leading(self):
        leading = threading.Event()
        reconciler = Mock()
        reconciler.reconcile.return_value = Result()
        ctl = Controller("ingress", reconciler, [], leader_check=leading.is_set, not_leader_retry=0.05)
        ctl.queue.add(Request("Ingress", "default", "web"))
        ctx, thread, _ = self.start(ctl)

        time.sleep(0.3)
        reconciler.reconcile.assert_not_called()
        leading.set()
        self.assertTrue(wait_for(lambda: reconciler.reconcile.called))
        ctx.cancel()
        thread.join(5)

    def test_error_is_retried(self):
        reconciler = Mock()
        reconciler.reconcile.side_effect = [RuntimeError("transient"), Result()]
        metrics = Mock()
        ctl = Controller("ingress", reconciler, [], leader_check=lambda: True, metrics=metrics)
        ctl.queue.add(Request("Ingress", "default", "web"))
        ctx, thread, outcome = self.start(ctl)

        self.assertTrue(wait_for(lambda: reconciler.reconcile.call_count == 2))
        ctx.cancel()
        thread.join(5)
        self.assertIsNone(outcome["error"])
        self.assertEqual(metrics.record_reconcile.call_args_list,
                         [call("ingress", "error"), call("ingress", "success")])

    def test_requeue_after(self):
        reconciler = Mock()
        reconciler.reconcile.side_effect = [Result(requeue_after=0.05), Result()]
        ctl = Controller("ingress", reconciler, [], leader_check=lambda: True)
        ctl.queue.add(Request("Ingress", "default", "web"))
        ctx, thread, _ = self.start(ctl)
        self.assertTrue(wait_for(lambda: reconciler.reconcile.call_count == 2))
        ctx.cancel()
        thread.join(5)

    def test_source_failure_stops_controller(self):
        source = Mock()
        source.kind = "Secret"
        source.run.side_effect = SourceAccessDenied("forbidden")
        ctl = Controller("ingress", Mock(), [source], leader_check=lambda: True)
        _, thread, outcome = self.start(ctl)
        thread.join(5)
        self.assertFalse(thread.is_alive())
        self.assertIsInstance(outcome["error"], SourceAccessDenied)


if __name__ == "__main__":
    unittest.main()
