#!/usr/bin/env python3
# src/dependents.py
"""
Dependent platform objects of a MariaDB cluster.

Builder renders the desired objects as plain manifests; ObjectReconciler
creates what is missing and merge-patches what drifted, through the
kubernetes dynamic client so every kind goes through the same code path.
"""

import copy
import logging
import threading
from typing import Any, Dict, List, Optional, Set

from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import DynamicApiError, NotFoundError

from errors import TransientError
from instance_registry import INSTANCE_LABEL, NAME_LABEL
from resources import (
    GALERA_ANNOTATION,
    MARIADB_ANNOTATION,
    REPLICATION_ANNOTATION,
    ClusterResource,
    TopologyMode,
)

logger = logging.getLogger("mariadb-operator.dependents")

MONITORING_GROUP = "monitoring.coreos.com"
DEFAULT_AGENT_IMAGE = "ghcr.io/mariadb-operator/agent:v0.0.3"
DEFAULT_EXPORTER_IMAGE = "prom/mysqld-exporter:v0.15.1"

GALERA_PORTS = {"galera": 4567, "ist": 4568, "sst": 4444}
METRICS_PORT = 9104

# Fields the API server refuses to change on an existing object
IMMUTABLE_FIELDS = {
    "StatefulSet": [("spec", "selector"), ("spec", "serviceName"), ("spec", "volumeClaimTemplates")],
    "Service": [("spec", "clusterIP")],
}


def is_subset(desired: Any, live: Any) -> bool:
    """True when every field set in desired has the same value in live."""
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(k in live and is_subset(v, live[k]) for k, v in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, l) for d, l in zip(desired, live))
    return desired == live


def strip_fields(obj: Dict[str, Any], paths) -> Dict[str, Any]:
    stripped = copy.deepcopy(obj)
    for path in paths:
        node = stripped
        for part in path[:-1]:
            node = node.get(part, {})
        if isinstance(node, dict):
            node.pop(path[-1], None)
    return stripped


# -----------------------------
# Builder
# -----------------------------


class Builder:
    """Deterministic manifests derived from a ClusterResource."""

    def __init__(self, agent_image: str = DEFAULT_AGENT_IMAGE, exporter_image: str = DEFAULT_EXPORTER_IMAGE):
        self.agent_image = agent_image
        self.exporter_image = exporter_image

    def labels(self, cluster: ClusterResource) -> Dict[str, str]:
        return {NAME_LABEL: "mariadb", INSTANCE_LABEL: cluster.name}

    def metadata(self, cluster: ClusterResource, name: str) -> Dict[str, Any]:
        return {
            "name": name,
            "namespace": cluster.namespace,
            "labels": self.labels(cluster),
            "ownerReferences": [cluster.owner_reference()],
        }

    def config_map_name(self, cluster: ClusterResource) -> str:
        return f"{cluster.name}-config"

    def config_map(self, cluster: ClusterResource) -> Dict[str, Any]:
        lines = [
            "[mariadb]",
            "bind-address=0.0.0.0",
            "default_storage_engine=InnoDB",
            "binlog_format=row",
            "innodb_autoinc_lock_mode=2",
        ]
        if cluster.mode == TopologyMode.GALERA:
            lines += [
                "wsrep_on=ON",
                "wsrep_provider=/usr/lib/galera/libgalera_smm.so",
                f"wsrep_cluster_name={cluster.name}",
                "wsrep_sst_method=mariabackup",
            ]
        elif cluster.mode == TopologyMode.REPLICATION:
            lines += [
                "log_bin=mariadb-bin",
                "log_slave_updates=ON",
                "gtid_strict_mode=ON",
            ]
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": self.metadata(cluster, self.config_map_name(cluster)),
            "data": {"my.cnf": "\n".join(lines) + "\n"},
        }

    def rbac(self, cluster: ClusterResource) -> List[Dict[str, Any]]:
        """ServiceAccount, Role and RoleBinding used by the agent sidecar."""
        name = cluster.name
        return [
            {
                "apiVersion": "v1",
                "kind": "ServiceAccount",
                "metadata": self.metadata(cluster, name),
            },
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "Role",
                "metadata": self.metadata(cluster, name),
                "rules": [
                    {"apiGroups": [""], "resources": ["pods"], "verbs": ["get", "list"]},
                    {"apiGroups": [""], "resources": ["secrets"], "verbs": ["get"]},
                ],
            },
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "RoleBinding",
                "metadata": self.metadata(cluster, name),
                "roleRef": {
                    "apiGroup": "rbac.authorization.k8s.io",
                    "kind": "Role",
                    "name": name,
                },
                "subjects": [
                    {"kind": "ServiceAccount", "name": name, "namespace": cluster.namespace}
                ],
            },
        ]

    def _service(self, cluster, name, ports, selector=True, headless=False):
        spec: Dict[str, Any] = {"ports": ports}
        if selector:
            spec["selector"] = self.labels(cluster)
        if headless:
            spec["clusterIP"] = "None"
            spec["publishNotReadyAddresses"] = True
        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": self.metadata(cluster, name),
            "spec": spec,
        }

    def services(self, cluster: ClusterResource) -> List[Dict[str, Any]]:
        mysql = {"name": "mysql", "port": cluster.port, "targetPort": cluster.port}
        internal_ports = [dict(mysql)]
        if cluster.mode != TopologyMode.NONE:
            internal_ports.append(
                {"name": "agent", "port": cluster.agent_port, "targetPort": cluster.agent_port}
            )
        if cluster.mode == TopologyMode.GALERA:
            for port_name, port in GALERA_PORTS.items():
                internal_ports.append({"name": port_name, "port": port, "targetPort": port})

        services = [
            self._service(cluster, cluster.name, [dict(mysql)]),
            self._service(cluster, cluster.internal_service_name, internal_ports, headless=True),
        ]
        if cluster.mode == TopologyMode.REPLICATION:
            services.append(
                self._service(cluster, cluster.primary_service_name, [dict(mysql)], selector=False)
            )
        return services

    def primary_endpoints(
        self, cluster: ClusterResource, primary_ip: Optional[str]
    ) -> Optional[Dict[str, Any]]:
        """Endpoints of the primary Service; None until a primary with an IP is known."""
        if cluster.mode != TopologyMode.REPLICATION or not primary_ip:
            return None
        return {
            "apiVersion": "v1",
            "kind": "Endpoints",
            "metadata": self.metadata(cluster, cluster.primary_service_name),
            "subsets": [
                {
                    "addresses": [{"ip": primary_ip}],
                    "ports": [{"name": "mysql", "port": cluster.port}],
                }
            ],
        }

    def _pod_annotations(self, cluster: ClusterResource) -> Dict[str, str]:
        annotations = {MARIADB_ANNOTATION: cluster.name}
        if cluster.mode == TopologyMode.GALERA:
            annotations[GALERA_ANNOTATION] = ""
        elif cluster.mode == TopologyMode.REPLICATION:
            annotations[REPLICATION_ANNOTATION] = ""
        return annotations

    def _containers(self, cluster: ClusterResource) -> List[Dict[str, Any]]:
        secret_ref = cluster.spec.get("rootPasswordSecretKeyRef", {}) or {}
        root_password = {
            "name": "MARIADB_ROOT_PASSWORD",
            "valueFrom": {"secretKeyRef": {"name": secret_ref.get("name"), "key": secret_ref.get("key")}},
        }
        mounts = [
            {"name": "storage", "mountPath": "/var/lib/mysql"},
            {"name": "config", "mountPath": "/etc/mysql/conf.d"},
        ]
        containers = [
            {
                "name": "mariadb",
                "image": cluster.spec.get("image", "mariadb:11.0"),
                "ports": [{"name": "mysql", "containerPort": cluster.port}],
                "env": [root_password],
                "volumeMounts": mounts,
                "readinessProbe": {
                    "exec": {"command": ["bash", "-c", "mariadb -u root -p\"${MARIADB_ROOT_PASSWORD}\" -e 'SELECT 1;'"]},
                    "initialDelaySeconds": 20,
                    "periodSeconds": 10,
                },
            }
        ]
        if cluster.mode != TopologyMode.NONE:
            containers.append(
                {
                    "name": "agent",
                    "image": self.agent_image,
                    "args": [f"--port={cluster.agent_port}", f"--mode={cluster.mode.value}"],
                    "ports": [{"name": "agent", "containerPort": cluster.agent_port}],
                    "env": [root_password],
                    "volumeMounts": mounts,
                }
            )
        if cluster.metrics_enabled:
            containers.append(
                {
                    "name": "metrics",
                    "image": self.exporter_image,
                    "ports": [{"name": "metrics", "containerPort": METRICS_PORT}],
                }
            )
        return containers

    def statefulset(self, cluster: ClusterResource) -> Dict[str, Any]:
        storage = cluster.spec.get("storage", {}) or {}
        claim_spec: Dict[str, Any] = {
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": storage.get("size", "1Gi")}},
        }
        if storage.get("storageClassName"):
            claim_spec["storageClassName"] = storage["storageClassName"]

        return {
            "apiVersion": "apps/v1",
            "kind": "StatefulSet",
            "metadata": self.metadata(cluster, cluster.name),
            "spec": {
                "serviceName": cluster.internal_service_name,
                "replicas": cluster.replicas,
                # every ordinal must exist before a topology is bootstrapped
                "podManagementPolicy": "Parallel",
                "updateStrategy": cluster.spec.get("updateStrategy", {"type": "RollingUpdate"}),
                "selector": {"matchLabels": self.labels(cluster)},
                "template": {
                    "metadata": {
                        "labels": self.labels(cluster),
                        "annotations": self._pod_annotations(cluster),
                    },
                    "spec": {
                        "serviceAccountName": cluster.name,
                        "containers": self._containers(cluster),
                        "volumes": [
                            {
                                "name": "config",
                                "configMap": {"name": self.config_map_name(cluster)},
                            }
                        ],
                    },
                },
                "volumeClaimTemplates": [
                    {"metadata": {"name": "storage"}, "spec": claim_spec}
                ],
            },
        }

    def service_monitor(self, cluster: ClusterResource) -> Dict[str, Any]:
        return {
            "apiVersion": f"{MONITORING_GROUP}/v1",
            "kind": "ServiceMonitor",
            "metadata": self.metadata(cluster, cluster.name),
            "spec": {
                "selector": {"matchLabels": self.labels(cluster)},
                "namespaceSelector": {"matchNames": [cluster.namespace]},
                "endpoints": [{"port": "metrics", "interval": "10s"}],
            },
        }


# -----------------------------
# Generic object reconciler
# -----------------------------


class ObjectReconciler:
    """Create-if-missing, patch-if-drifted for arbitrary kinds."""

    def __init__(self, dynamic_client: DynamicClient):
        self.dynamic = dynamic_client

    def _resource(self, desired: Dict[str, Any]):
        return self.dynamic.resources.get(api_version=desired["apiVersion"], kind=desired["kind"])

    def get(self, api_version: str, kind: str, name: str, namespace: str) -> Optional[Dict[str, Any]]:
        """Live object as a dict, None when it does not exist."""
        try:
            resource = self.dynamic.resources.get(api_version=api_version, kind=kind)
            live = resource.get(name=name, namespace=namespace)
        except NotFoundError:
            return None
        except (DynamicApiError, ApiException) as e:
            raise TransientError(f"Failed to get {kind} {namespace}/{name}: {e}")
        return live.to_dict() if hasattr(live, "to_dict") else live

    def ensure(self, desired: Dict[str, Any]) -> str:
        """Converge one object; returns "created", "patched" or "unchanged"."""
        kind = desired["kind"]
        name = desired["metadata"]["name"]
        namespace = desired["metadata"].get("namespace")
        try:
            resource = self._resource(desired)
            try:
                live = resource.get(name=name, namespace=namespace)
            except NotFoundError:
                resource.create(body=desired, namespace=namespace)
                logger.info(f"Created {kind} {namespace}/{name}")
                return "created"

            comparable = strip_fields(desired, IMMUTABLE_FIELDS.get(kind, []))
            live_dict = live.to_dict() if hasattr(live, "to_dict") else live
            if is_subset(comparable, live_dict):
                return "unchanged"
            resource.patch(
                body=comparable,
                name=name,
                namespace=namespace,
                content_type="application/merge-patch+json",
            )
            logger.info(f"Patched drifted {kind} {namespace}/{name}")
            return "patched"
        except (DynamicApiError, ApiException) as e:
            raise TransientError(f"Failed to reconcile {kind} {namespace}/{name}: {e}")


# -----------------------------
# Discovery
# -----------------------------


class DiscoveryClient:
    """Caches the API groups served by the cluster."""

    def __init__(self, apis_api: client.ApisApi):
        self.api = apis_api
        self._groups: Optional[Set[str]] = None
        self._lock = threading.Lock()

    def has_api_group(self, group: str) -> bool:
        with self._lock:
            if self._groups is None:
                try:
                    result = self.api.get_api_versions()
                except ApiException as e:
                    raise TransientError(f"API discovery failed: {e.reason}")
                self._groups = {g.name for g in result.groups or []}
                logger.info(f"Discovered {len(self._groups)} API groups")
            return group in self._groups

    def invalidate(self):
        with self._lock:
            self._groups = None
