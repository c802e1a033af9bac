#!/usr/bin/env python3
# src/events.py
"""Kubernetes Event recorder for topology transitions on MariaDB resources."""

import logging
from datetime import datetime, timezone

from kubernetes import client
from kubernetes.client.rest import ApiException

from resources import CRD_GROUP, CRD_KIND, CRD_VERSION, ClusterResource

logger = logging.getLogger("mariadb-operator.events")

TYPE_NORMAL = "Normal"
TYPE_WARNING = "Warning"


class EventRecorder:
    """Posts core/v1 Events; failures are logged and never propagated."""

    def __init__(self, core_api: client.CoreV1Api, component: str):
        self.api = core_api
        self.component = component

    def normal(self, cluster: ClusterResource, reason: str, message: str):
        self.record(cluster, TYPE_NORMAL, reason, message)

    def warning(self, cluster: ClusterResource, reason: str, message: str):
        self.record(cluster, TYPE_WARNING, reason, message)

    def record(self, cluster: ClusterResource, event_type: str, reason: str, message: str):
        now = datetime.now(timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                generate_name=f"{cluster.name}.", namespace=cluster.namespace
            ),
            involved_object=client.V1ObjectReference(
                api_version=f"{CRD_GROUP}/{CRD_VERSION}",
                kind=CRD_KIND,
                name=cluster.name,
                namespace=cluster.namespace,
                uid=cluster.uid,
            ),
            reason=reason,
            message=message,
            type=event_type,
            first_timestamp=now,
            last_timestamp=now,
            count=1,
            source=client.V1EventSource(component=self.component),
        )
        try:
            self.api.create_namespaced_event(namespace=cluster.namespace, body=event)
        except ApiException as e:
            logger.warning(f"Failed to record event {reason} for {cluster.key}: {e.reason}")
        logger.info(f"[{self.component}] {cluster.key} {event_type} {reason}: {message}")
