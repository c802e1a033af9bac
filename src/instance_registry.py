#!/usr/bin/env python3
# src/instance_registry.py
"""
Instance registry: which pods belong to a MariaDB cluster and which role
each of them currently carries.

Pods are created and deleted by the StatefulSet controller. The registry
only reads them and patches the role annotation.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from errors import TransientError
from resources import (
    MARIADB_ANNOTATION,
    ROLE_ANNOTATION,
    ROLE_UNASSIGNED,
    ClusterResource,
)

logger = logging.getLogger("mariadb-operator.registry")

INSTANCE_LABEL = "app.kubernetes.io/instance"
NAME_LABEL = "app.kubernetes.io/name"


@dataclass
class Instance:
    """One database pod, identified by its StatefulSet ordinal."""

    name: str
    namespace: str
    ordinal: int
    ready: bool = False
    running: bool = False
    deleting: bool = False
    ip: Optional[str] = None
    annotations: Dict[str, str] = field(default_factory=dict)

    @property
    def role(self) -> str:
        return self.annotations.get(ROLE_ANNOTATION, ROLE_UNASSIGNED)

    @property
    def owner(self) -> Optional[str]:
        return self.annotations.get(MARIADB_ANNOTATION)

    @property
    def healthy(self) -> bool:
        return self.running and self.ready and not self.deleting


def parse_ordinal(pod_name: str) -> Optional[int]:
    """Return the StatefulSet ordinal from a pod name such as mariadb-2."""
    _, _, suffix = pod_name.rpartition("-")
    if suffix.isdigit():
        return int(suffix)
    return None


def instance_from_pod(pod) -> Optional[Instance]:
    """Build an Instance from a V1Pod; None when the name carries no ordinal."""
    metadata = pod.metadata
    ordinal = parse_ordinal(metadata.name or "")
    if ordinal is None:
        return None

    status = pod.status
    phase = getattr(status, "phase", None) if status else None
    ready = False
    for condition in (getattr(status, "conditions", None) or []) if status else []:
        if condition.type == "Ready":
            ready = condition.status == "True"

    return Instance(
        name=metadata.name,
        namespace=metadata.namespace,
        ordinal=ordinal,
        ready=ready,
        running=phase == "Running",
        deleting=metadata.deletion_timestamp is not None,
        ip=getattr(status, "pod_ip", None) if status else None,
        annotations=dict(metadata.annotations or {}),
    )


def instance_address(cluster: ClusterResource, ordinal: int) -> str:
    """Stable DNS name of an instance through the internal headless Service."""
    return (
        f"{cluster.pod_name(ordinal)}.{cluster.internal_service_name}."
        f"{cluster.namespace}.svc.cluster.local"
    )


class InstanceRegistry:
    """Indexes pods by the ownership annotation of their MariaDB cluster."""

    def __init__(self, core_api: client.CoreV1Api):
        self.api = core_api

    def selector(self, cluster: ClusterResource) -> str:
        return f"{NAME_LABEL}=mariadb,{INSTANCE_LABEL}={cluster.name}"

    def list_instances(self, cluster: ClusterResource) -> List[Instance]:
        """All pods owned by the cluster, sorted by ordinal."""
        try:
            pods = self.api.list_namespaced_pod(
                namespace=cluster.namespace, label_selector=self.selector(cluster)
            )
        except ApiException as e:
            raise TransientError(f"Failed to list pods for {cluster.key}: {e.reason}")

        instances = []
        for pod in pods.items:
            instance = instance_from_pod(pod)
            if instance is None:
                continue
            if instance.owner != cluster.name:
                logger.debug(
                    f"Skipping pod {instance.name}: owner annotation is {instance.owner!r}"
                )
                continue
            instances.append(instance)
        return sorted(instances, key=lambda i: i.ordinal)

    def role_of(self, instance: Instance) -> str:
        return instance.role

    def annotate_role(self, instance: Instance, role: str) -> bool:
        """Patch the role annotation; returns True when a patch was issued."""
        if instance.role == role:
            return False
        body = {"metadata": {"annotations": {ROLE_ANNOTATION: role}}}
        try:
            self.api.patch_namespaced_pod(
                name=instance.name, namespace=instance.namespace, body=body
            )
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Pod {instance.name} disappeared before role annotation")
                return False
            raise TransientError(
                f"Failed to annotate {instance.name} with role {role}: {e.reason}"
            )
        logger.info(f"Annotated {instance.name} role: {instance.role} -> {role}")
        instance.annotations[ROLE_ANNOTATION] = role
        return True

    def clear_role(self, instance: Instance) -> bool:
        return self.annotate_role(instance, ROLE_UNASSIGNED)
