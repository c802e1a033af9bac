#!/usr/bin/env python3
# src/reconciler.py
"""
Reconciliation engine for MariaDB resources.

One pass per work queue key:

1. load the resource (gone -> nothing to do)
2. finalize when deleting, otherwise make sure the finalizer is set
3. validate the spec
4. converge dependents: ConfigMap + RBAC -> Services -> primary Endpoints
   -> StatefulSet -> ServiceMonitor
5. run pending instance events through the topology handler, then the
   topology resource pass
6. write status once, skipping the write when nothing changed

Errors from every step are mapped to a condition and a requeue decision in
_handle_error.
"""

import copy
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

import metrics
from conditions import (
    CONDITION_READY,
    failed_condition,
    find_condition,
    is_true,
    ready_condition,
    set_condition,
)
from dependents import MONITORING_GROUP, Builder, DiscoveryClient, ObjectReconciler
from errors import (
    ConfigurationError,
    ConflictingObservationError,
    ReconcileAborted,
    RecoveryHaltedError,
    TopologyError,
    TransientError,
)
from events import EventRecorder
from galera import GaleraTopology
from instance_registry import Instance, InstanceRegistry
from replication import ReplicationTopology
from resources import (
    CRD_GROUP,
    CRD_PLURAL,
    CRD_VERSION,
    FINALIZER,
    ROLE_PRIMARY,
    ROLE_SEED,
    ClusterResource,
    TopologyMode,
    split_key,
    validate_spec,
)
from topology import (
    AgentFactory,
    ClusterContext,
    GaleraConfig,
    InstanceEvent,
    ReplicationConfig,
    StandaloneConfig,
    StandaloneTopology,
    Topology,
    select_topology,
)

logger = logging.getLogger("mariadb-operator.reconciler")

PHASE_BLOCKED = "Blocked"


@dataclass(frozen=True)
class ReconcilerConfig:
    galera: GaleraConfig = field(default_factory=GaleraConfig)
    replication: ReplicationConfig = field(default_factory=ReplicationConfig)
    standalone: StandaloneConfig = field(default_factory=StandaloneConfig)


@dataclass
class ReconcileResult:
    requeue_after: Optional[float] = None
    error: Optional[Exception] = None


def merge_status(live: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a JSON merge patch to a status document; None deletes a key."""
    merged = copy.deepcopy(live)
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_status(merged[key], value)
        elif isinstance(value, dict):
            merged[key] = merge_status({}, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class StatusWriter:
    """Tracks the live status of one resource during a pass and patches it on change."""

    def __init__(self, custom_api: client.CustomObjectsApi, cluster: ClusterResource):
        self.api = custom_api
        self.cluster = cluster
        self.live = copy.deepcopy(cluster.status)
        self.writes = 0

    def commit(self, patch: Dict[str, Any]) -> bool:
        merged = merge_status(self.live, patch)
        if merged == self.live:
            return False
        try:
            self.api.patch_namespaced_custom_object_status(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=self.cluster.namespace,
                plural=CRD_PLURAL,
                name=self.cluster.name,
                body={"status": patch},
            )
        except ApiException as e:
            raise TransientError(f"Failed to update status of {self.cluster.key}: {e.reason}")
        self.live = merged
        self.writes += 1
        logger.debug(f"{self.cluster.key}: status updated {patch}")
        return True


class ClusterReconciler:
    """Drives one MariaDB resource towards its declared topology."""

    def __init__(
        self,
        custom_api: client.CustomObjectsApi,
        core_api: client.CoreV1Api,
        registry: InstanceRegistry,
        objects: ObjectReconciler,
        discovery: DiscoveryClient,
        builder: Builder,
        agent_factory: AgentFactory,
        recorder: EventRecorder,
        stop: threading.Event,
        config: ReconcilerConfig,
    ):
        self.custom_api = custom_api
        self.core_api = core_api
        self.registry = registry
        self.objects = objects
        self.discovery = discovery
        self.builder = builder
        self.agent_factory = agent_factory
        self.recorder = recorder
        self.stop = stop
        self.config = config
        self.variants: Dict[TopologyMode, Topology] = {
            TopologyMode.GALERA: GaleraTopology(config.galera),
            TopologyMode.REPLICATION: ReplicationTopology(config.replication),
            TopologyMode.NONE: StandaloneTopology(config.standalone),
        }

    # -----------------------------
    # Entry points
    # -----------------------------

    def reconcile(self, key: str, events: Iterable[InstanceEvent] = ()) -> ReconcileResult:
        cluster = None
        writer = None
        start = time.monotonic()
        mode = "unknown"
        try:
            cluster = self._load(key)
            if cluster is None:
                logger.debug(f"{key}: resource not found, nothing to do")
                metrics.reconcile_total.labels(result="not_found").inc()
                return ReconcileResult()
            mode = cluster.mode.value
            writer = StatusWriter(self.custom_api, cluster)
            result = self._reconcile(cluster, writer, list(events))
            metrics.reconcile_total.labels(result="success").inc()
            return result
        except ReconcileAborted as e:
            logger.info(f"{key}: {e}")
            metrics.reconcile_total.labels(result="aborted").inc()
            return ReconcileResult()
        except Exception as e:
            return self._handle_error(key, cluster, writer, e)
        finally:
            metrics.reconcile_duration_seconds.labels(mode=mode).observe(time.monotonic() - start)

    def handle_instance_event(self, key: str, event: InstanceEvent) -> ReconcileResult:
        """Run one instance event through its topology handler followed by a full pass."""
        return self.reconcile(key, [event])

    # -----------------------------
    # Pass
    # -----------------------------

    def _load(self, key: str) -> Optional[ClusterResource]:
        namespace, name = split_key(key)
        try:
            obj = self.custom_api.get_namespaced_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=namespace,
                plural=CRD_PLURAL,
                name=name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise TransientError(f"Failed to get {key}: {e.reason}")
        return ClusterResource.from_object(obj)

    def _reconcile(
        self, cluster: ClusterResource, writer: StatusWriter, events: List[InstanceEvent]
    ) -> ReconcileResult:
        if cluster.deleting:
            self._finalize(cluster)
            return ReconcileResult()

        self._ensure_finalizer(cluster)
        validate_spec(cluster)
        self._warn_even_galera(cluster)
        self._ensure_secret(cluster)

        instances = self.registry.list_instances(cluster)
        self._ensure_dependents(cluster, instances)

        topology = select_topology(cluster.mode, self.variants)
        ctx = ClusterContext(
            cluster=cluster,
            instances=instances,
            registry=self.registry,
            agent_factory=self.agent_factory,
            recorder=self.recorder,
            stop=self.stop,
            commit_status=writer.commit,
        )

        for event in events:
            ctx.check_stop()
            try:
                topology.handle_instance_event(ctx, event)
            except TopologyError as e:
                logger.warning(
                    f"{cluster.key}: instance handler for {event.instance.name} failed: {e}"
                )

        outcome = topology.reconcile(ctx)
        ctx.check_stop()

        if cluster.mode == TopologyMode.REPLICATION:
            primary = writer.live.get("currentPrimaryPodIndex")
            if primary is not None and primary != cluster.current_primary_index:
                self._ensure_primary_endpoints(cluster, instances, primary)

        patch: Dict[str, Any] = dict(outcome.status)
        patch["observedGeneration"] = cluster.generation
        patch["phase"] = outcome.phase
        if outcome.committed and not writer.live.get("topologyMode"):
            patch["topologyMode"] = cluster.mode.value
            logger.info(f"{cluster.key}: topology mode {cluster.mode.value} committed")

        conditions = writer.live.get("conditions", []) or []
        for condition in outcome.conditions:
            conditions = set_condition(
                conditions,
                condition["type"],
                condition["status"],
                condition["reason"],
                condition["message"],
            )
        statefulset = self.objects.get("apps/v1", "StatefulSet", cluster.name, cluster.namespace)
        conditions = ready_condition(
            conditions,
            statefulset,
            cluster.replicas,
            outcome.ready,
            outcome.reason,
            outcome.message,
        )
        patch["conditions"] = conditions
        writer.commit(patch)

        metrics.cluster_ready.labels(namespace=cluster.namespace, name=cluster.name).set(
            1 if is_true(conditions, CONDITION_READY) else 0
        )
        logger.info(
            f"{cluster.key}: pass complete, phase={outcome.phase} ready={outcome.ready} "
            f"requeue_after={outcome.requeue_after}"
        )
        return ReconcileResult(requeue_after=outcome.requeue_after)

    # -----------------------------
    # Finalizer
    # -----------------------------

    def _patch_finalizers(self, cluster: ClusterResource, finalizers: List[str]):
        try:
            self.custom_api.patch_namespaced_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=cluster.namespace,
                plural=CRD_PLURAL,
                name=cluster.name,
                body={"metadata": {"finalizers": finalizers}},
            )
        except ApiException as e:
            if e.status == 404:
                return
            raise TransientError(f"Failed to update finalizers of {cluster.key}: {e.reason}")

    def _ensure_finalizer(self, cluster: ClusterResource):
        if FINALIZER in cluster.finalizers:
            return
        logger.info(f"{cluster.key}: adding finalizer")
        self._patch_finalizers(cluster, cluster.finalizers + [FINALIZER])

    def _finalize(self, cluster: ClusterResource):
        """Release seed and primary markers, then let the resource go."""
        if FINALIZER not in cluster.finalizers:
            return
        logger.info(f"{cluster.key}: finalizing")
        for instance in self.registry.list_instances(cluster):
            if self.registry.role_of(instance) in (ROLE_SEED, ROLE_PRIMARY):
                self.registry.clear_role(instance)
        self._patch_finalizers(cluster, [f for f in cluster.finalizers if f != FINALIZER])
        metrics.cluster_ready.labels(namespace=cluster.namespace, name=cluster.name).set(0)

    # -----------------------------
    # Dependents
    # -----------------------------

    def _warn_even_galera(self, cluster: ClusterResource):
        if cluster.mode != TopologyMode.GALERA or cluster.replicas % 2:
            return
        if cluster.status.get("observedGeneration") == cluster.generation:
            return
        self.recorder.warning(
            cluster,
            "EvenReplicas",
            f"Galera with {cluster.replicas} replicas cannot keep quorum when split in half",
        )

    def _ensure_secret(self, cluster: ClusterResource):
        ref = cluster.spec.get("rootPasswordSecretKeyRef", {}) or {}
        try:
            self.core_api.read_namespaced_secret(name=ref.get("name"), namespace=cluster.namespace)
        except ApiException as e:
            if e.status == 404:
                raise TransientError(
                    f"Secret {ref.get('name')} referenced by rootPasswordSecretKeyRef not found",
                    reason="SecretNotFound",
                )
            raise TransientError(f"Failed to read secret {ref.get('name')}: {e.reason}")

    def _ensure_dependents(self, cluster: ClusterResource, instances: List[Instance]):
        builder = self.builder
        for obj in [builder.config_map(cluster)] + builder.rbac(cluster):
            self.objects.ensure(obj)
        for service in builder.services(cluster):
            self.objects.ensure(service)
        self._ensure_primary_endpoints(cluster, instances, cluster.current_primary_index)
        self.objects.ensure(builder.statefulset(cluster))
        if cluster.metrics_enabled:
            if self.discovery.has_api_group(MONITORING_GROUP):
                self.objects.ensure(builder.service_monitor(cluster))
            else:
                logger.debug(f"{cluster.key}: {MONITORING_GROUP} not served, skipping ServiceMonitor")
                # re-probe next pass in case the group gets installed
                self.discovery.invalidate()

    def _ensure_primary_endpoints(
        self, cluster: ClusterResource, instances: List[Instance], primary: Optional[int]
    ):
        if primary is None:
            return
        ip = None
        for instance in instances:
            if instance.ordinal == primary:
                ip = instance.ip
        endpoints = self.builder.primary_endpoints(cluster, ip)
        if endpoints is not None:
            self.objects.ensure(endpoints)

    # -----------------------------
    # Error mapping
    # -----------------------------

    def _requeue_interval(self, cluster: ClusterResource) -> float:
        if cluster.mode == TopologyMode.GALERA:
            return self.config.galera.requeue_after
        if cluster.mode == TopologyMode.REPLICATION:
            return self.config.replication.requeue_after
        return self.config.standalone.requeue_after

    def _write_failure(
        self, cluster: ClusterResource, writer: Optional[StatusWriter], error: TopologyError, phase: Optional[str]
    ):
        if writer is None:
            return
        conditions = failed_condition(writer.live.get("conditions", []) or [], error.reason, error.message)
        patch: Dict[str, Any] = {"conditions": conditions, "observedGeneration": cluster.generation}
        if phase:
            patch["phase"] = phase
        try:
            writer.commit(patch)
        except TransientError as e:
            logger.warning(f"{cluster.key}: could not record failure condition: {e}")

    def _handle_error(
        self,
        key: str,
        cluster: Optional[ClusterResource],
        writer: Optional[StatusWriter],
        error: Exception,
    ) -> ReconcileResult:
        if cluster is None and not isinstance(error, TransientError):
            logger.exception(f"{key}: reconcile failed before the resource was loaded")
            metrics.reconcile_total.labels(result="error").inc()
            return ReconcileResult(error=error)

        if isinstance(error, (ConfigurationError, RecoveryHaltedError)):
            previous = find_condition(writer.live.get("conditions", []), CONDITION_READY) if writer else None
            if not previous or previous.get("reason") != error.reason:
                self.recorder.warning(cluster, error.reason, error.message)
            logger.error(f"{key}: {error.reason}: {error.message}")
            self._write_failure(cluster, writer, error, PHASE_BLOCKED)
            metrics.reconcile_total.labels(result="blocked").inc()
            return ReconcileResult()

        if isinstance(error, ConflictingObservationError):
            previous = find_condition(writer.live.get("conditions", []), CONDITION_READY) if writer else None
            if not previous or previous.get("reason") != error.reason:
                self.recorder.warning(cluster, error.reason, error.message)
            logger.warning(f"{key}: conflicting observation: {error.message}")
            self._write_failure(cluster, writer, error, PHASE_BLOCKED)
            metrics.reconcile_total.labels(result="conflict").inc()
            return ReconcileResult(requeue_after=self._requeue_interval(cluster))

        if isinstance(error, TransientError):
            logger.warning(f"{key}: {error.reason}: {error.message}")
            if cluster is not None:
                self._write_failure(cluster, writer, error, None)
            metrics.reconcile_total.labels(result="transient").inc()
            if error.delay is not None:
                return ReconcileResult(requeue_after=error.delay)
            return ReconcileResult(error=error)

        logger.exception(f"{key}: unexpected error during reconcile: {error}")
        metrics.reconcile_total.labels(result="error").inc()
        return ReconcileResult(error=error)
