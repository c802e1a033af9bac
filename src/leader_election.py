#!/usr/bin/env python3
# src/leader_election.py
"""
Lease based leader election.

Only the replica holding the coordination.k8s.io/v1 Lease runs reconcile
workers. Standby replicas keep trying to acquire it; a leader that fails to
renew before the lease expires stops leading.
"""

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

import metrics
from workqueue import calculate_exponential_backoff

logger = logging.getLogger("mariadb-operator.leader")


def parse_k8s_time(time_val) -> datetime:
    """Parse Kubernetes timestamp (str or datetime) to timezone-aware datetime (UTC)."""
    if not time_val:
        return datetime.now(timezone.utc)
    # If already datetime, normalize tzinfo
    if isinstance(time_val, datetime):
        return time_val if time_val.tzinfo else time_val.replace(tzinfo=timezone.utc)
    time_str = str(time_val)
    for fmt in (
        "%Y-%m-%dT%H:%M:%S.%fZ",
        "%Y-%m-%dT%H:%M:%SZ",
        "%Y-%m-%dT%H:%M:%S.%f%z",
        "%Y-%m-%dT%H:%M:%S%z",
    ):
        try:
            parsed = datetime.strptime(time_str, fmt)
        except ValueError:
            continue
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    logger.warning(f"Could not parse timestamp: {time_str}")
    return datetime.now(timezone.utc)


class LeaderElector:
    def __init__(
        self,
        coord_api: client.CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration: int = 15,
        renew_interval: float = 5.0,
        max_retries: int = 3,
    ):
        self.api = coord_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration = lease_duration
        self.renew_interval = renew_interval
        self.max_retries = max_retries
        self.is_leader = False
        self._last_renew: Optional[datetime] = None

    # -----------------------------
    # Lease Functions
    # -----------------------------

    def get_lease(self):
        """Get current lease object or None if not found."""
        try:
            return self.api.read_namespaced_lease(self.lease_name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            logger.error(f"Error reading lease: {e}")
            raise

    def create_lease(self):
        now = datetime.now(timezone.utc).isoformat()
        lease = client.V1Lease(
            metadata=client.V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=client.V1LeaseSpec(
                holder_identity="",
                lease_duration_seconds=self.lease_duration,
                acquire_time=now,
                renew_time=now,
                lease_transitions=0,
            ),
        )
        try:
            created = self.api.create_namespaced_lease(namespace=self.namespace, body=lease)
            logger.info(f"Created new lease: {self.lease_name}")
            return created
        except ApiException as e:
            if e.status == 409:  # Already exists
                logger.info(f"Lease {self.lease_name} already exists, retrieving it")
                return self.get_lease()
            raise

    def patch_lease(self, lease):
        """Write the lease back; the resourceVersion it carries makes concurrent writers conflict."""
        return self.api.patch_namespaced_lease(
            name=self.lease_name, namespace=self.namespace, body=lease
        )

    def _set_leader(self, leader: bool, holder: str = ""):
        if leader != self.is_leader:
            metrics.leadership_changes_total.inc()
            if leader:
                logger.info(f"Leadership acquired by {self.identity} (previous: {holder or 'vacant'})")
            else:
                logger.info(f"Leadership lost to {holder or 'nobody'}")
        self.is_leader = leader
        metrics.leader_status.labels(pod=self.identity).set(1 if leader else 0)

    def try_acquire_or_renew(self) -> bool:
        """One election round with up to max_retries attempts on conflicts."""
        for attempt in range(self.max_retries):
            try:
                lease = self.get_lease()
                if lease is None:
                    lease = self.create_lease()
                if lease is None:
                    logger.warning("Could not get lease even after creation attempt")
                    return False

                now = datetime.now(timezone.utc)
                holder = getattr(lease.spec, "holder_identity", "") or ""
                duration = int(getattr(lease.spec, "lease_duration_seconds", None) or self.lease_duration)
                renew_time = getattr(lease.spec, "renew_time", None)

                expired = True
                if renew_time:
                    expired = parse_k8s_time(renew_time) + timedelta(seconds=duration) < now

                if holder != self.identity and holder and not expired:
                    self._set_leader(False, holder)
                    return False

                lease.spec.holder_identity = self.identity
                lease.spec.renew_time = now.isoformat()
                lease.spec.lease_duration_seconds = self.lease_duration
                if holder != self.identity:
                    lease.spec.acquire_time = now.isoformat()
                    if holder:
                        lease.spec.lease_transitions = (getattr(lease.spec, "lease_transitions", 0) or 0) + 1

                try:
                    updated = self.patch_lease(lease)
                except ApiException as e:
                    if e.status == 409:  # Conflict - someone else got it
                        logger.debug(
                            f"Lease acquisition conflict (409) - attempt {attempt + 1}/{self.max_retries}"
                        )
                        if attempt < self.max_retries - 1:
                            time.sleep(calculate_exponential_backoff(attempt, base_delay=0.5))
                            continue
                        return False
                    raise

                final_holder = getattr(updated.spec, "holder_identity", "")
                if final_holder != self.identity:
                    logger.warning(f"Lease patch succeeded but holder is {final_holder}")
                    self._set_leader(False, final_holder)
                    return False

                self._last_renew = now
                self._set_leader(True, holder)
                return True

            except ApiException as e:
                logger.error(f"Error in leader election attempt {attempt + 1}: {e}")
                if attempt < self.max_retries - 1:
                    time.sleep(calculate_exponential_backoff(attempt, base_delay=1.0))
                    continue
        return False

    def lease_valid(self) -> bool:
        """Whether our last successful renew is still within the lease duration."""
        if self._last_renew is None:
            return False
        return datetime.now(timezone.utc) < self._last_renew + timedelta(seconds=self.lease_duration)

    def run(
        self,
        stop: threading.Event,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
    ):
        """Block until leading, call on_started_leading, renew until stop or loss."""
        logger.info(f"Waiting to acquire lease {self.namespace}/{self.lease_name} as {self.identity}")
        while not stop.is_set():
            if self.try_acquire_or_renew():
                break
            stop.wait(self.renew_interval)
        if stop.is_set():
            return

        on_started_leading()
        while not stop.wait(self.renew_interval):
            if self.try_acquire_or_renew():
                continue
            if not self.lease_valid():
                logger.error("Failed to renew lease before expiry, stopping")
                self._set_leader(False)
                on_stopped_leading()
                return
