"""
Leader Election over a Kubernetes Lease

Replicas sharing an election id and namespace compete for one
coordination.k8s.io/v1 Lease. The API server's optimistic concurrency
(resourceVersion, 409 Conflict) is the consensus primitive, and the lease
reads and writes are done by the kubernetes client's own LeaseLock. This
module adds what the client's elector does not offer: a loop that stops on
context cancellation, a live is_leader() answer, and releasing the lease on
the way out.

Algorithm (per replica):
    1. Acquire: poll every retry_period (with jitter) until the observed
       record is unheld, expired, or already ours, then write it.
    2. Renew: rewrite the record every retry_period. If no renew succeeds
       within renew_deadline, leadership is lost.
    3. Cancel: stop leading and, with release_on_cancel, clear the holder so
       a peer can take over without waiting for expiry.

Expiry is judged on the local monotonic clock from the moment a record
change was observed, never from timestamps written by other replicas, so
clock skew between nodes does not matter.

Mutual Exclusion:
    The lease duration written for peers is rounded up to whole seconds and
    is_leader() turns false once the unrounded lease_duration has passed
    since the last write attempt, so a stalled holder stops reporting
    leadership before any peer may take the lease.
"""

import logging
import math
import os
import random
import threading
import time
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Callable, Optional

from kubernetes import client as k8s
from kubernetes.leaderelection.leaderelectionrecord import LeaderElectionRecord
from kubernetes.leaderelection.resourcelock.leaselock import LeaseLock

JITTER_FACTOR = 1.2


class ClusterLeaseLock(LeaseLock):
    """
    LeaseLock bound to the manager's ApiClient.

    The client's lock builds its CoordinationV1Api from the default
    configuration; the manager may be connected through an explicit
    kubeconfig, context or API server, so the API is rebuilt on that client.
    spec.leaseTransitions is bumped whenever the holder changes.
    """

    def __init__(self, name: str, namespace: str, identity: str, api_client):
        super().__init__(name, namespace, identity)
        self.api_instance = k8s.CoordinationV1Api(api_client)

    def get_lease_spec(self, leader_election_record, current_spec=None):
        previous = current_spec.holder_identity if current_spec else None
        transitions = (current_spec.lease_transitions or 0) if current_spec else 0
        spec = super().get_lease_spec(leader_election_record, current_spec)
        holder = leader_election_record.holder_identity
        if holder and previous and holder != previous:
            transitions += 1
        spec.lease_transitions = transitions
        return spec


def _timestamp() -> str:
    return str(datetime.now(timezone.utc))


class LeaderElector:
    """
    Runs the acquire/renew loop for one replica.

    Attributes:
        lock: LeaseLock-compatible object (name, namespace, get/create/update).
        identity (str): This replica's holder identity.
        lease_duration (float): Seconds a non-renewed lease stays valid.
        renew_deadline (float): Seconds the leader keeps trying to renew.
        retry_period (float): Seconds between acquire/renew attempts.
        lease_seconds (int): Lease duration written to the Lease for peers.
    """

    def __init__(self,
                 lock,
                 identity: str,
                 lease_duration: float = 15,
                 renew_deadline: float = 10,
                 retry_period: float = 2,
                 on_started_leading: Optional[Callable[[], None]] = None,
                 on_stopped_leading: Optional[Callable[[], None]] = None,
                 release_on_cancel: bool = False,
                 clock: Callable[[], float] = time.monotonic,
                 logger: Optional[logging.Logger] = None):
        if lease_duration <= renew_deadline:
            raise ValueError("lease_duration must be greater than renew_deadline")
        if renew_deadline <= retry_period * JITTER_FACTOR:
            raise ValueError("renew_deadline must be greater than retry_period*1.2")
        if retry_period <= 0:
            raise ValueError("retry_period must be greater than zero")

        self.lock = lock
        self.identity = identity
        self.lease_duration = lease_duration
        self.lease_seconds = math.ceil(lease_duration)
        self.renew_deadline = renew_deadline
        self.retry_period = retry_period
        self.on_started_leading = on_started_leading
        self.on_stopped_leading = on_stopped_leading
        self.release_on_cancel = release_on_cancel
        self.clock = clock
        self.logger = logger or logging.getLogger(
            os.getenv("LOGGER_NAME", "INGRESS_CONTROLLER")).getChild("leader-election")

        self._state_lock = threading.Lock()
        self._leading = False
        self._last_write_attempt = float("-inf")
        self._observed_record: Optional[LeaderElectionRecord] = None
        self._observed_time = float("-inf")
        self._reported_leader: Optional[str] = None

    def describe(self) -> str:
        return f"{self.lock.namespace}/{self.lock.name}"

    def is_leader(self) -> bool:
        """True while this replica holds a lease that cannot have expired for its peers."""
        with self._state_lock:
            return self._leading and self.clock() - self._last_write_attempt < self.lease_duration

    def run(self, ctx) -> bool:
        """
        Participate in the election until ctx is canceled or leadership is lost.

        Returns:
            bool: True if the loop ended because leadership was lost while
                ctx was still active, False on cancellation.
        """
        self.logger.info(f"attempting to acquire leader lease {self.describe()}...")
        if not self._acquire(ctx):
            return False
        self.logger.info(f"successfully acquired lease {self.describe()}")
        self._set_leading(True)
        lost = False
        try:
            lost = not self._renew(ctx)
        finally:
            self._set_leading(False)
            if ctx.cancelled and self.release_on_cancel:
                self.release()
        if lost:
            self.logger.error(f"failed to renew lease {self.describe()}: leadership lost")
        return lost

    def _set_leading(self, leading: bool) -> None:
        with self._state_lock:
            changed = self._leading != leading
            self._leading = leading
        if not changed:
            return
        callback = self.on_started_leading if leading else self.on_stopped_leading
        if callback is not None:
            callback()

    def _acquire(self, ctx) -> bool:
        while not ctx.cancelled:
            if self.try_acquire_or_renew():
                return True
            delay = self.retry_period * (1 + random.random() * JITTER_FACTOR)  # noqa: S311
            if ctx.wait(delay):
                break
        return False

    def _renew(self, ctx) -> bool:
        """Renew until canceled (returns True) or the renew deadline passes (returns False)."""
        while True:
            deadline = self.clock() + self.renew_deadline
            renewed = False
            while self.clock() < deadline:
                if self.try_acquire_or_renew():
                    renewed = True
                    break
                if ctx.wait(self.retry_period):
                    return True
            if not renewed:
                return False
            if ctx.wait(self.retry_period):
                return True

    def try_acquire_or_renew(self) -> bool:
        """
        Make one acquire or renew attempt.

        Transport failures (the API server unreachable, a dropped connection)
        count as a failed attempt like any API error, so the loop retries
        them until the renew deadline decides.
        """
        try:
            return self._try_acquire_or_renew()
        except Exception as e:
            self.logger.warning(f"error acquiring or renewing lease {self.describe()}: {e}")
            return False

    def _try_acquire_or_renew(self) -> bool:
        now = _timestamp()
        desired = LeaderElectionRecord(self.identity, str(self.lease_seconds), now, now)
        attempt_time = self.clock()
        lock = self.lock

        found, old = lock.get(lock.name, lock.namespace)
        if not found:
            if getattr(old, "status", None) != HTTPStatus.NOT_FOUND:
                self.logger.warning(f"error retrieving lease {self.describe()}: {getattr(old, 'reason', old)}")
                return False
            if not lock.create(lock.name, lock.namespace, desired):
                self.logger.debug(f"error initially creating lease {self.describe()}")
                return False
            self._observe(desired, attempt_time, written=True)
            return True

        if self._observed_record is None or vars(old) != vars(self._observed_record):
            self._observe(old, self.clock())

        held_by_me = old.holder_identity == self.identity
        if (old.holder_identity and not held_by_me
                and self._observed_time + self._held_for(old) > self.clock()):
            self.logger.debug(f"lease is held by {old.holder_identity} and has not yet expired")
            return False

        if held_by_me and old.acquire_time:
            desired.acquire_time = old.acquire_time
        if not lock.update(lock.name, lock.namespace, desired):
            self.logger.debug(f"failed to update lease {self.describe()}")
            return False
        self._observe(desired, attempt_time, written=True)
        return True

    def _held_for(self, record: LeaderElectionRecord) -> float:
        # A record without a duration is judged by our own setting
        return float(record.lease_duration) if record.lease_duration else self.lease_duration

    def _observe(self, record: LeaderElectionRecord, when: float, written: bool = False) -> None:
        with self._state_lock:
            self._observed_record = record
            self._observed_time = when
            if written and record.holder_identity == self.identity:
                self._last_write_attempt = when
            new_leader = record.holder_identity != self._reported_leader
            self._reported_leader = record.holder_identity
        if new_leader and record.holder_identity and record.holder_identity != self.identity:
            self.logger.info(f"new leader elected: {record.holder_identity}")

    def release(self) -> bool:
        """Give up the lease if this replica holds it."""
        with self._state_lock:
            observed = self._observed_record
        if observed is None or observed.holder_identity != self.identity:
            return False
        now = _timestamp()
        released = LeaderElectionRecord("", "1", now, now)
        try:
            updated = self.lock.update(self.lock.name, self.lock.namespace, released)
        except Exception as e:
            self.logger.error(f"failed to release lease {self.describe()}: {e}")
            return False
        if not updated:
            self.logger.error(f"failed to release lease {self.describe()}")
            return False
        self._observe(released, self.clock())
        self.logger.info(f"released lease {self.describe()}")
        return True
