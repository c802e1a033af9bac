#!/usr/bin/env python3
# src/pod_controller.py
"""
Watches that feed the work queue.

ClusterWatcher enqueues the key of every MariaDB resource whose generation
or deletion state changes.
PodController is the per-instance event dispatcher: it filters pod events
by the ownership and mode annotations and enqueues them under the owning
cluster key, so the worker that owns the key runs the topology instance
handler before the next full pass.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence

from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from instance_registry import NAME_LABEL, instance_from_pod
from resources import (
    CRD_GROUP,
    CRD_PLURAL,
    CRD_VERSION,
    GALERA_ANNOTATION,
    MARIADB_ANNOTATION,
    REPLICATION_ANNOTATION,
)
from topology import InstanceEvent
from workqueue import WorkQueue

logger = logging.getLogger("mariadb-operator.watch")

WATCH_TIMEOUT_SECONDS = 30
ERROR_BACKOFF_SECONDS = 5

GALERA_POD_ANNOTATIONS = (MARIADB_ANNOTATION, GALERA_ANNOTATION)
REPLICATION_POD_ANNOTATIONS = (MARIADB_ANNOTATION, REPLICATION_ANNOTATION)


class Watcher:
    """Restartable watch loop over one namespace, or all of them when namespace is None."""

    name = "watch"

    def __init__(self, queue: WorkQueue, namespaces: Optional[List[str]] = None):
        self.queue = queue
        self.namespaces = namespaces or [None]
        self.healthy = threading.Event()
        self._threads: List[threading.Thread] = []

    def stream_args(self, namespace: Optional[str]):
        raise NotImplementedError

    def process(self, event_type: str, obj: Any) -> Optional[str]:
        raise NotImplementedError

    def start(self, stop: threading.Event):
        for namespace in self.namespaces:
            thread = threading.Thread(
                target=self.run,
                args=(stop, namespace),
                daemon=True,
                name=f"{self.name}-{namespace or 'all'}",
            )
            thread.start()
            self._threads.append(thread)

    def run(self, stop: threading.Event, namespace: Optional[str] = None):
        scope = namespace or "all namespaces"
        logger.info(f"Starting {self.name} watch in {scope}")

        while not stop.is_set():
            try:
                func, kwargs = self.stream_args(namespace)
                w = watch.Watch()
                self.healthy.set()
                for event in w.stream(func, timeout_seconds=WATCH_TIMEOUT_SECONDS, **kwargs):
                    if stop.is_set():
                        break
                    self.process(event["type"], event["object"])
                w.stop()

            except ApiException as e:
                if e.status == 410:  # Resource version too old
                    logger.info(f"{self.name} watch resource version expired, restarting")
                    continue
                logger.error(f"{self.name} watch error: {e}")
                self.healthy.clear()
                stop.wait(ERROR_BACKOFF_SECONDS)

            except Exception as e:
                logger.error(f"Unexpected {self.name} watch error: {e}")
                self.healthy.clear()
                stop.wait(ERROR_BACKOFF_SECONDS)

        logger.info(f"{self.name} watch in {scope} stopped")


class ClusterWatcher(Watcher):
    """Enqueues MariaDB resources whose spec or deletion state changed.

    Status-only updates, including the operator's own status writes, keep
    the same generation and are not enqueued; periodic requeues cover them.
    """

    name = "mariadb"

    def __init__(self, custom_api: client.CustomObjectsApi, queue: WorkQueue, namespaces=None):
        super().__init__(queue, namespaces)
        self.api = custom_api
        self._observed: Dict[str, tuple] = {}
        self._lock = threading.Lock()

    def stream_args(self, namespace):
        kwargs: Dict[str, Any] = {"group": CRD_GROUP, "version": CRD_VERSION, "plural": CRD_PLURAL}
        if namespace is None:
            return self.api.list_cluster_custom_object, kwargs
        kwargs["namespace"] = namespace
        return self.api.list_namespaced_custom_object, kwargs

    def process(self, event_type: str, obj: Dict[str, Any]) -> Optional[str]:
        metadata = obj.get("metadata", {})
        key = f"{metadata.get('namespace', 'default')}/{metadata.get('name', '')}"
        marker = (metadata.get("generation"), metadata.get("deletionTimestamp"))

        with self._lock:
            previous = self._observed.get(key)
            if event_type == "DELETED":
                self._observed.pop(key, None)
            else:
                self._observed[key] = marker

        if event_type == "MODIFIED" and previous == marker:
            logger.debug(f"Skipping status-only MariaDB update for {key}")
            return None

        logger.debug(f"Received MariaDB event: {event_type} for {key}")
        self.queue.add(key)
        return key


class PodController(Watcher):
    """Routes pod events carrying the required annotations to the owning cluster key."""

    def __init__(
        self,
        core_api: client.CoreV1Api,
        queue: WorkQueue,
        required_annotations: Sequence[str],
        namespaces=None,
        name: str = "pod",
    ):
        super().__init__(queue, namespaces)
        self.api = core_api
        self.required_annotations = tuple(required_annotations)
        self.name = name

    def stream_args(self, namespace):
        kwargs = {"label_selector": f"{NAME_LABEL}=mariadb"}
        if namespace is None:
            return self.api.list_pod_for_all_namespaces, kwargs
        kwargs["namespace"] = namespace
        return self.api.list_namespaced_pod, kwargs

    def process(self, event_type: str, pod) -> Optional[str]:
        annotations = pod.metadata.annotations or {}
        missing = [a for a in self.required_annotations if a not in annotations]
        if missing:
            return None

        instance = instance_from_pod(pod)
        if instance is None:
            return None

        key = f"{pod.metadata.namespace}/{annotations[MARIADB_ANNOTATION]}"
        logger.debug(f"[{self.name}] {event_type} {instance.name} -> {key}")
        self.queue.add(key, InstanceEvent(event_type=event_type, instance=instance))
        return key
