#!/usr/bin/env python3
# src/resources.py
"""
MariaDB custom resource model.

Parses the custom object dictionaries returned by CustomObjectsApi into a
typed view, validates the declared spec and defines the annotation keys
shared by the topology state machines, the registry and the pod dispatcher.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from errors import ConfigurationError

logger = logging.getLogger("mariadb-operator.resources")

# -----------------------------
# CRD coordinates
# -----------------------------
CRD_GROUP = "mariadb.mmontes.io"
CRD_VERSION = "v1alpha1"
CRD_PLURAL = "mariadbs"
CRD_KIND = "MariaDB"
FINALIZER = f"{CRD_GROUP}/finalizer"

# -----------------------------
# Instance annotations
# -----------------------------
MARIADB_ANNOTATION = f"{CRD_GROUP}/mariadb"
GALERA_ANNOTATION = f"{CRD_GROUP}/galera"
REPLICATION_ANNOTATION = f"{CRD_GROUP}/replication"
ROLE_ANNOTATION = f"{CRD_GROUP}/role"

ROLE_SEED = "seed"
ROLE_MEMBER = "member"
ROLE_PRIMARY = "primary"
ROLE_REPLICA = "replica"
ROLE_UNASSIGNED = "unassigned"

DEFAULT_AGENT_PORT = 5555


class TopologyMode(str, Enum):
    GALERA = "galera"
    REPLICATION = "replication"
    NONE = "none"


@dataclass(frozen=True)
class ClusterResource:
    """Typed, read-only view over a MariaDB custom object."""

    name: str
    namespace: str
    uid: str
    generation: int
    replicas: int
    mode: TopologyMode
    spec: Dict[str, Any]
    status: Dict[str, Any]
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "ClusterResource":
        metadata = obj.get("metadata", {})
        spec = obj.get("spec", {}) or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", "default"),
            uid=metadata.get("uid", ""),
            generation=int(metadata.get("generation", 0) or 0),
            replicas=int(spec.get("replicas", 1)),
            mode=declared_mode(spec),
            spec=spec,
            status=obj.get("status", {}) or {},
            finalizers=list(metadata.get("finalizers", []) or []),
            deletion_timestamp=metadata.get("deletionTimestamp"),
            raw=obj,
        )

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def deleting(self) -> bool:
        return bool(self.deletion_timestamp)

    @property
    def galera_spec(self) -> Dict[str, Any]:
        return self.spec.get("galera", {}) or {}

    @property
    def replication_spec(self) -> Dict[str, Any]:
        return self.spec.get("replication", {}) or {}

    @property
    def agent_port(self) -> int:
        section = (
            self.galera_spec if self.mode == TopologyMode.GALERA else self.replication_spec
        )
        return int(section.get("agentPort", DEFAULT_AGENT_PORT))

    @property
    def port(self) -> int:
        return int(self.spec.get("port", 3306))

    @property
    def pinned_primary(self) -> Optional[int]:
        primary = self.replication_spec.get("primary", {}) or {}
        index = primary.get("podIndex")
        return int(index) if index is not None else None

    @property
    def automatic_failover(self) -> bool:
        primary = self.replication_spec.get("primary", {}) or {}
        return bool(primary.get("automaticFailover", True))

    @property
    def force_bootstrap_index(self) -> Optional[int]:
        recovery = self.galera_spec.get("recovery", {}) or {}
        index = recovery.get("forceBootstrapPodIndex")
        return int(index) if index is not None else None

    @property
    def metrics_enabled(self) -> bool:
        return bool((self.spec.get("metrics", {}) or {}).get("enabled", False))

    @property
    def internal_service_name(self) -> str:
        return f"{self.name}-internal"

    @property
    def primary_service_name(self) -> str:
        return f"{self.name}-primary"

    @property
    def committed_mode(self) -> Optional[TopologyMode]:
        """Mode recorded in status after the first successful bootstrap."""
        value = self.status.get("topologyMode")
        if not value:
            return None
        try:
            return TopologyMode(value)
        except ValueError:
            logger.warning(f"Unknown topologyMode {value!r} in status of {self.key}")
            return None

    @property
    def current_primary_index(self) -> Optional[int]:
        index = self.status.get("currentPrimaryPodIndex")
        return int(index) if index is not None else None

    def pod_name(self, ordinal: int) -> str:
        return f"{self.name}-{ordinal}"

    def owner_reference(self) -> Dict[str, Any]:
        return {
            "apiVersion": f"{CRD_GROUP}/{CRD_VERSION}",
            "kind": CRD_KIND,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }


def declared_mode(spec: Dict[str, Any]) -> TopologyMode:
    """Mode the spec asks for; both sections enabled is caught by validate_spec."""
    if (spec.get("galera", {}) or {}).get("enabled", False):
        return TopologyMode.GALERA
    if (spec.get("replication", {}) or {}).get("enabled", False):
        return TopologyMode.REPLICATION
    return TopologyMode.NONE


def split_key(key: str):
    namespace, _, name = key.partition("/")
    return namespace, name


def validate_spec(cluster: ClusterResource) -> None:
    """Raise ConfigurationError when the declared spec cannot be acted upon."""
    spec = cluster.spec
    galera_enabled = bool(cluster.galera_spec.get("enabled", False))
    replication_enabled = bool(cluster.replication_spec.get("enabled", False))

    if galera_enabled and replication_enabled:
        raise ConfigurationError(
            "spec.galera and spec.replication are mutually exclusive",
            reason="InvalidTopologyMode",
        )
    if cluster.replicas < 1:
        raise ConfigurationError(
            f"spec.replicas must be at least 1, got {cluster.replicas}"
        )
    if cluster.mode == TopologyMode.NONE and cluster.replicas > 1:
        raise ConfigurationError(
            "spec.replicas > 1 requires spec.galera or spec.replication to be enabled"
        )
    if cluster.mode == TopologyMode.REPLICATION and cluster.replicas < 2:
        raise ConfigurationError("replication requires at least 2 replicas")

    pinned = cluster.pinned_primary
    if pinned is not None and not 0 <= pinned < cluster.replicas:
        raise ConfigurationError(
            f"spec.replication.primary.podIndex {pinned} is out of range 0..{cluster.replicas - 1}"
        )
    forced = cluster.force_bootstrap_index
    if forced is not None and not 0 <= forced < cluster.replicas:
        raise ConfigurationError(
            f"spec.galera.recovery.forceBootstrapPodIndex {forced} is out of range"
        )
    if not spec.get("rootPasswordSecretKeyRef"):
        raise ConfigurationError("spec.rootPasswordSecretKeyRef is required")

    committed = cluster.committed_mode
    if committed is not None and committed != cluster.mode:
        raise ConfigurationError(
            f"topology mode is immutable once bootstrapped: status has {committed.value}, "
            f"spec declares {cluster.mode.value}; recreate the resource to change it",
            reason="ImmutableTopologyMode",
        )
