#!/usr/bin/env python3
# tests/fakes.py
"""
In-memory stand-ins for the agent sidecars, the instance registry, the
event recorder and the custom objects API, shared by the topology and
reconciler suites.
"""

import copy
import os
import sys
import threading

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from kubernetes.client.rest import ApiException

from agent_client import (
    ROLE_NONE,
    ROLE_PRIMARY,
    ROLE_REPLICA,
    STATE_SYNCED,
    STATE_UNINITIALIZED,
    GaleraView,
    ReplicationState,
)
from errors import TransientError
from instance_registry import Instance, parse_ordinal
from reconciler import merge_status
from resources import (
    GALERA_ANNOTATION,
    MARIADB_ANNOTATION,
    ROLE_ANNOTATION,
    ClusterResource,
)
from topology import ClusterContext


def ordinal_of(address):
    return parse_ordinal(address.split(".")[0])


def make_cluster(mode="galera", replicas=3, status=None, name="mariadb", namespace="default", **spec_extra):
    spec = {
        "replicas": replicas,
        "image": "mariadb:11.0",
        "rootPasswordSecretKeyRef": {"name": "mariadb", "key": "root-password"},
    }
    if mode in ("galera", "replication"):
        spec[mode] = {"enabled": True}
    for key, value in spec_extra.items():
        if isinstance(value, dict) and isinstance(spec.get(key), dict):
            spec[key].update(value)
        else:
            spec[key] = value
    return {
        "apiVersion": "mariadb.mmontes.io/v1alpha1",
        "kind": "MariaDB",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": "uid-1",
            "generation": 1,
            "finalizers": ["mariadb.mmontes.io/finalizer"],
        },
        "spec": spec,
        "status": status or {},
    }


def make_instances(replicas=3, mode_annotation=GALERA_ANNOTATION, roles=None, ready=True, name="mariadb"):
    instances = []
    for ordinal in range(replicas):
        annotations = {MARIADB_ANNOTATION: name, mode_annotation: ""}
        if roles and roles.get(ordinal):
            annotations[ROLE_ANNOTATION] = roles[ordinal]
        instances.append(
            Instance(
                name=f"{name}-{ordinal}",
                namespace="default",
                ordinal=ordinal,
                ready=ready,
                running=True,
                ip=f"10.0.0.{10 + ordinal}",
                annotations=annotations,
            )
        )
    return instances


class FakeRegistry:
    """Records role patches and applies them to the Instance objects."""

    def __init__(self, instances=None):
        self.instances = instances or []
        self.patches = []

    def list_instances(self, cluster):
        return self.instances

    def role_of(self, instance):
        return instance.role

    def annotate_role(self, instance, role):
        if instance.role == role:
            return False
        self.patches.append((instance.ordinal, role))
        instance.annotations[ROLE_ANNOTATION] = role
        return True

    def clear_role(self, instance):
        return self.annotate_role(instance, "unassigned")

    def roles(self):
        return {i.ordinal: i.role for i in self.instances}


class FakeRecorder:
    def __init__(self):
        self.events = []

    def normal(self, cluster, reason, message):
        self.events.append(("Normal", reason))

    def warning(self, cluster, reason, message):
        self.events.append(("Warning", reason))

    def reasons(self):
        return [reason for _, reason in self.events]


# -----------------------------
# Galera
# -----------------------------


class FakeGaleraNode:
    def __init__(self, ordinal, state=STATE_UNINITIALIZED, cluster_uuid=None, members=(), primary=False, seqno=None, marker=None):
        self.ordinal = ordinal
        self.state = state
        self.cluster_uuid = cluster_uuid
        self.members = set(members)
        self.primary = primary
        self.seqno = seqno
        self.marker = marker
        self.reachable = True


class FakeGaleraCluster:
    """Agents of a Galera cluster whose joins and bootstraps complete instantly."""

    def __init__(self, replicas=3):
        self.nodes = {o: FakeGaleraNode(o) for o in range(replicas)}
        self.calls = []
        # joins issued to these ordinals never complete
        self.stalled = set()

    def form(self, members, cluster_uuid="uuid-1", seqno=10):
        for ordinal in members:
            node = self.nodes[ordinal]
            node.state = STATE_SYNCED
            node.cluster_uuid = cluster_uuid
            node.members = set(members)
            node.primary = True
            node.seqno = seqno

    def __call__(self, ordinal, address, port):
        return FakeGaleraAgent(self, ordinal)

    def actions(self):
        return [c for c in self.calls if c[0] in ("bootstrap", "join")]


class FakeGaleraAgent:
    def __init__(self, cluster, ordinal):
        self.cluster = cluster
        self.ordinal = ordinal

    @property
    def node(self):
        return self.cluster.nodes[self.ordinal]

    def _check(self):
        if not self.node.reachable:
            raise TransientError(f"agent {self.ordinal} unreachable", reason="AgentUnreachable")

    def query_membership(self):
        self._check()
        node = self.node
        return GaleraView(
            ordinal=self.ordinal,
            state=node.state,
            cluster_uuid=node.cluster_uuid,
            members=frozenset(node.members),
            primary_component=node.primary,
            seqno=node.seqno,
        )

    def query_committed_marker(self):
        self._check()
        self.cluster.calls.append(("marker", self.ordinal))
        return self.node.marker

    def bootstrap_cluster(self):
        self._check()
        self.cluster.calls.append(("bootstrap", self.ordinal))
        node = self.node
        node.state = STATE_SYNCED
        node.cluster_uuid = f"uuid-boot-{self.ordinal}"
        node.members = {self.ordinal}
        node.primary = True

    def join_cluster(self, seed):
        self._check()
        donor = ordinal_of(seed)
        self.cluster.calls.append(("join", self.ordinal, donor))
        if self.ordinal in self.cluster.stalled:
            self.node.state = "joining"
            return
        donor_node = self.cluster.nodes[donor]
        members = set(donor_node.members) | {self.ordinal}
        for ordinal in members:
            node = self.cluster.nodes[ordinal]
            node.members = set(members)
            node.state = STATE_SYNCED
            node.cluster_uuid = donor_node.cluster_uuid
            node.primary = True


# -----------------------------
# Replication
# -----------------------------


class FakeReplicationNode:
    def __init__(self, ordinal, role=ROLE_NONE, source=None, position=None):
        self.ordinal = ordinal
        self.role = role
        self.source = source
        self.position = position
        self.read_only = False
        self.reachable = True


class FakeReplicationCluster:
    def __init__(self, replicas=3):
        self.nodes = {o: FakeReplicationNode(o) for o in range(replicas)}
        self.calls = []

    def __call__(self, ordinal, address, port):
        return FakeReplicationAgent(self, ordinal)

    def actions(self):
        return [c for c in self.calls if c[0] != "query"]


class FakeReplicationAgent:
    def __init__(self, cluster, ordinal):
        self.cluster = cluster
        self.ordinal = ordinal

    @property
    def node(self):
        return self.cluster.nodes[self.ordinal]

    def _check(self):
        if not self.node.reachable:
            raise TransientError(f"agent {self.ordinal} unreachable", reason="AgentUnreachable")

    def query_replication(self):
        self._check()
        node = self.node
        return ReplicationState(
            ordinal=self.ordinal,
            role=node.role,
            source=node.source,
            position=node.position,
            read_only=node.read_only,
        )

    def query_applied_position(self):
        return self.query_replication().position

    def configure_replica(self, source, start_position):
        self._check()
        self.cluster.calls.append(("replica", self.ordinal, ordinal_of(source), start_position))
        node = self.node
        node.role = ROLE_REPLICA
        node.source = source
        if node.position is None:
            node.position = start_position

    def promote(self):
        self._check()
        self.cluster.calls.append(("promote", self.ordinal))
        node = self.node
        node.role = ROLE_PRIMARY
        node.source = None
        node.read_only = False
        return node.position

    def set_read_only(self, enabled):
        self._check()
        self.cluster.calls.append(("read_only", self.ordinal, enabled))
        self.node.read_only = enabled


# -----------------------------
# Context and API
# -----------------------------


def make_context(obj, instances, agents, registry=None, recorder=None, stop=None, commits=None):
    cluster = ClusterResource.from_object(obj)
    commits = commits if commits is not None else []
    return ClusterContext(
        cluster=cluster,
        instances=instances,
        registry=registry or FakeRegistry(instances),
        agent_factory=agents,
        recorder=recorder or FakeRecorder(),
        stop=stop or threading.Event(),
        commit_status=commits.append,
    )


def with_status(obj, status_patch):
    """Copy of a custom object with a status patch merged in."""
    updated = copy.deepcopy(obj)
    updated["status"] = merge_status(updated.get("status", {}) or {}, status_patch)
    return updated


class FakeCustomObjectsApi:
    """Serves one MariaDB object and applies status and metadata patches to it."""

    def __init__(self, obj=None):
        self.obj = obj
        self.status_patches = []
        self.metadata_patches = []

    def get_namespaced_custom_object(self, group, version, namespace, plural, name):
        if self.obj is None:
            raise ApiException(status=404, reason="Not Found")
        return copy.deepcopy(self.obj)

    def patch_namespaced_custom_object_status(self, group, version, namespace, plural, name, body):
        self.status_patches.append(copy.deepcopy(body))
        self.obj = with_status(self.obj, body["status"])
        return copy.deepcopy(self.obj)

    def patch_namespaced_custom_object(self, group, version, namespace, plural, name, body):
        self.metadata_patches.append(copy.deepcopy(body))
        self.obj["metadata"].update(copy.deepcopy(body["metadata"]))
        return copy.deepcopy(self.obj)
