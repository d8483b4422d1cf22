"""
Liveness and Readiness Probes

Checks are zero-argument callables. A check passes when it returns anything
but False; raising or returning False fails it. `ping` is the trivial check
used when no deeper health semantics are required.

Endpoints (served independent of leadership state):
    GET /healthz            all liveness checks
    GET /readyz             all readiness checks
    GET /healthz/<name>     a single check
    ?verbose                per-check report even on success
    ?exclude=<name>         skip a check (repeatable)

Responses mirror the usual Kubernetes probe format:
    200 "ok" or, verbose, "[+]ping ok\\nhealthz check passed"
    500 "[-]ping failed: reason withheld\\nhealthz check failed"
"""

from __future__ import annotations

import logging
import os
import threading
from collections import OrderedDict
from typing import Any, Callable
from urllib.parse import parse_qs, urlsplit

from .errors import RegistrationError
from .listeners import QuietHandler

Checker = Callable[[], Any]

logger = logging.getLogger(os.getenv("LOGGER_NAME", "INGRESS_CONTROLLER")).getChild("healthz")


def ping() -> None:
    """Always succeeds."""
    return None


class ProbeRegistry:
    """Named checks of one category (healthz or readyz)."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._checks: "OrderedDict[str, Checker]" = OrderedDict()
        self._lock = threading.Lock()

    def add(self, name: str, check: Checker) -> None:
        if not name or "/" in name:
            raise RegistrationError(f"invalid {self.kind} check name {name!r}")
        if not callable(check):
            raise RegistrationError(f"{self.kind} check {name!r} is not callable")
        with self._lock:
            if name in self._checks:
                raise RegistrationError(f"{self.kind} check {name!r} is already registered")
            self._checks[name] = check

    def names(self) -> list[str]:
        with self._lock:
            return list(self._checks)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._checks

    def run(self, only: str | None = None, exclude: frozenset[str] = frozenset()) -> list[tuple[str, bool, str]]:
        """Run checks and return (name, passed, detail) tuples."""
        with self._lock:
            checks = list(self._checks.items())
        results = []
        for name, check in checks:
            if only is not None and name != only:
                continue
            if name in exclude:
                continue
            try:
                passed = check() is not False
                detail = "" if passed else "check returned false"
            except Exception as e:
                passed = False
                detail = str(e)
            if not passed:
                logger.info(f"{self.kind} check {name} failed: {detail}")
            results.append((name, passed, detail))
        return results


def render(kind: str, results: list[tuple[str, bool, str]], verbose: bool) -> tuple[int, str]:
    failed = any(not passed for _, passed, _ in results)
    if not failed and not verbose:
        return 200, "ok"
    lines = []
    for name, passed, _ in results:
        lines.append(f"[+]{name} ok" if passed else f"[-]{name} failed: reason withheld")
    lines.append(f"{kind} check {'failed' if failed else 'passed'}")
    return (500 if failed else 200), "\n".join(lines) + "\n"


def make_probe_handler(healthz: ProbeRegistry, readyz: ProbeRegistry) -> type[QuietHandler]:
    registries = {"healthz": healthz, "readyz": readyz}

    class ProbeHandler(QuietHandler):
        """Serves /healthz and /readyz."""

        def do_GET(self) -> None:
            url = urlsplit(self.path)
            parts = [p for p in url.path.split("/") if p]
            if not parts or parts[0] not in registries or len(parts) > 2:
                self.send_text(404, "not found\n")
                return
            registry = registries[parts[0]]
            only = parts[1] if len(parts) == 2 else None
            if only is not None and only not in registry:
                self.send_text(404, f"no {parts[0]} check named {only}\n")
                return
            query = parse_qs(url.query, keep_blank_values=True)
            verbose = "verbose" in query
            exclude = frozenset(query.get("exclude", []))
            status, body = render(parts[0], registry.run(only=only, exclude=exclude), verbose)
            self.send_text(status, body)

    return ProbeHandler
