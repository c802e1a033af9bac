#!/usr/bin/env python3
# src/operator_main.py
"""
MariaDB Operator - topology controller process

Loads configuration from the environment, elects a leader through a Lease,
and runs the watches, the work queue and the reconcile workers. Metrics and
probes are served over HTTP from a background thread.
"""

import json
import logging
import os
import signal
import sys
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import List, Optional
from urllib.parse import urlparse

from kubernetes import client, config
from kubernetes.dynamic import DynamicClient
from prometheus_client import generate_latest

import metrics
from agent_client import AgentClientFactory
from dependents import DEFAULT_AGENT_IMAGE, Builder, DiscoveryClient, ObjectReconciler
from events import EventRecorder
from instance_registry import InstanceRegistry
from leader_election import LeaderElector
from pod_controller import (
    GALERA_POD_ANNOTATIONS,
    REPLICATION_POD_ANNOTATIONS,
    ClusterWatcher,
    PodController,
)
from reconciler import ClusterReconciler, ReconcilerConfig
from topology import GaleraConfig, ReplicationConfig, StandaloneConfig
from workqueue import WorkQueue

# -----------------------------
# Environment variables
# -----------------------------
WATCH_NAMESPACE = os.environ.get("WATCH_NAMESPACE", "")
POD_NAME = os.environ.get("POD_NAME", "")
NAMESPACE = os.environ.get("NAMESPACE", "default")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
METRICS_PORT = int(os.environ.get("METRICS_PORT", 8080))
LEADER_ELECT = os.environ.get("LEADER_ELECT", "true").lower() in ("true", "1", "yes")
LEADER_ELECTION_ID = os.environ.get("LEADER_ELECTION_ID", "mariadb-operator.mmontes.io")
LEASE_DURATION = int(os.environ.get("LEASE_DURATION", 15))  # seconds
LEASE_RENEW_INTERVAL = float(os.environ.get("LEASE_RENEW_INTERVAL", 5))
MAX_CONCURRENT_RECONCILES = int(os.environ.get("MAX_CONCURRENT_RECONCILES", 4))

# Topology timing
REQUEUE_GALERA = float(os.environ.get("REQUEUE_GALERA", 30))
REQUEUE_REPLICATION = float(os.environ.get("REQUEUE_REPLICATION", 10))
REQUEUE_STANDALONE = float(os.environ.get("REQUEUE_STANDALONE", 60))
FAILOVER_THRESHOLD = int(os.environ.get("FAILOVER_THRESHOLD", 3))
BACKOFF_BASE = float(os.environ.get("BACKOFF_BASE", 1.0))
BACKOFF_MAX = float(os.environ.get("BACKOFF_MAX", 30.0))
AGENT_TIMEOUT = float(os.environ.get("AGENT_TIMEOUT", 10))
AGENT_IMAGE = os.environ.get("AGENT_IMAGE", DEFAULT_AGENT_IMAGE)
JOIN_TIMEOUT = float(os.environ.get("JOIN_TIMEOUT", 300))
SWITCHOVER_TIMEOUT = float(os.environ.get("SWITCHOVER_TIMEOUT", 60))
POLL_INTERVAL = float(os.environ.get("POLL_INTERVAL", 2))

VERSION = "0.1.0"

# -----------------------------
# Logging Setup
# -----------------------------
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
)
logger = logging.getLogger("mariadb-operator")

# Shutdown flag shared by watches, workers and every state machine
stop_event = threading.Event()


def watched_namespaces() -> Optional[List[str]]:
    """Namespaces from WATCH_NAMESPACE; None means all namespaces."""
    namespaces = [ns.strip() for ns in WATCH_NAMESPACE.split(",") if ns.strip()]
    return namespaces or None


def reconciler_config() -> ReconcilerConfig:
    return ReconcilerConfig(
        galera=GaleraConfig(
            join_timeout=JOIN_TIMEOUT,
            poll_interval=POLL_INTERVAL,
            requeue_after=REQUEUE_GALERA,
        ),
        replication=ReplicationConfig(
            failover_threshold=FAILOVER_THRESHOLD,
            switchover_timeout=SWITCHOVER_TIMEOUT,
            poll_interval=POLL_INTERVAL,
            requeue_after=REQUEUE_REPLICATION,
        ),
        standalone=StandaloneConfig(requeue_after=REQUEUE_STANDALONE),
    )


class Operator:
    """Wires the watches, the queue and the workers together."""

    def __init__(self, api_client: client.ApiClient, stop: threading.Event):
        self.stop = stop
        namespaces = watched_namespaces()
        core_api = client.CoreV1Api(api_client)
        custom_api = client.CustomObjectsApi(api_client)

        self.queue = WorkQueue(backoff_base=BACKOFF_BASE, backoff_max=BACKOFF_MAX)
        self.elector = LeaderElector(
            client.CoordinationV1Api(api_client),
            namespace=NAMESPACE,
            lease_name=LEADER_ELECTION_ID,
            identity=POD_NAME,
            lease_duration=LEASE_DURATION,
            renew_interval=LEASE_RENEW_INTERVAL,
        )
        self.reconciler = ClusterReconciler(
            custom_api=custom_api,
            core_api=core_api,
            registry=InstanceRegistry(core_api),
            objects=ObjectReconciler(DynamicClient(api_client)),
            discovery=DiscoveryClient(client.ApisApi(api_client)),
            builder=Builder(agent_image=AGENT_IMAGE),
            agent_factory=AgentClientFactory(timeout=AGENT_TIMEOUT),
            recorder=EventRecorder(core_api, "mariadb-operator"),
            stop=stop,
            config=reconciler_config(),
        )
        self.watchers = [
            ClusterWatcher(custom_api, self.queue, namespaces),
            PodController(core_api, self.queue, GALERA_POD_ANNOTATIONS, namespaces, name="pod-galera"),
            PodController(
                core_api, self.queue, REPLICATION_POD_ANNOTATIONS, namespaces, name="pod-replication"
            ),
        ]
        self.leading = threading.Event()
        self._workers: List[threading.Thread] = []

    # -----------------------------
    # Workers
    # -----------------------------

    def process_next(self, timeout: float = 1.0) -> bool:
        """Take one key off the queue and reconcile it; False when nothing was available."""
        item = self.queue.get(timeout=timeout)
        if item is None:
            return False
        key, events = item
        try:
            result = self.reconciler.reconcile(key, events)
            if result.error is not None:
                delay = self.queue.add_rate_limited(key)
                logger.info(
                    f"{key}: retrying in {delay:.1f}s (attempt {self.queue.num_requeues(key)}) "
                    f"after error: {result.error}"
                )
            else:
                self.queue.forget(key)
                if result.requeue_after:
                    self.queue.add_after(key, result.requeue_after)
        finally:
            self.queue.done(key)
        return True

    def worker(self):
        while not self.stop.is_set():
            try:
                self.process_next()
            except Exception as e:
                logger.exception(f"Worker iteration failed: {e}")

    def start_leading(self):
        logger.info(f"Started leading, running {MAX_CONCURRENT_RECONCILES} workers")
        self.leading.set()
        for watcher in self.watchers:
            watcher.start(self.stop)
        for i in range(MAX_CONCURRENT_RECONCILES):
            thread = threading.Thread(target=self.worker, daemon=True, name=f"worker-{i}")
            thread.start()
            self._workers.append(thread)

    def stop_leading(self):
        logger.error("Leader lease lost, shutting down")
        self.leading.clear()
        self.shutdown()

    def shutdown(self):
        self.stop.set()
        self.queue.shut_down()

    def ready(self) -> bool:
        """Leading with a healthy watch, or standing by for the lease."""
        if not self.leading.is_set():
            return not self.stop.is_set()
        return all(w.healthy.is_set() for w in self.watchers)

    def run(self):
        if LEADER_ELECT:
            self.elector.run(self.stop, self.start_leading, self.stop_leading)
        else:
            self.start_leading()
        self.stop.wait()
        for thread in self._workers:
            thread.join(timeout=5)


operator: Optional[Operator] = None


# -----------------------------
# HTTP server
# -----------------------------


class OperatorHTTPHandler(BaseHTTPRequestHandler):
    """Serves Prometheus metrics and the liveness/readiness probes."""

    def do_GET(self):
        path = urlparse(self.path).path

        if path == "/metrics":
            try:
                metrics_data = generate_latest()
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
                self.end_headers()
                self.wfile.write(metrics_data)
            except Exception as e:
                logger.error(f"Error generating metrics: {e}")
                self.send_response(500)
                self.send_header("Content-Type", "text/plain")
                self.end_headers()
                self.wfile.write(b"Error generating metrics")

        elif path == "/healthz":
            self.send_response(200)
            self.send_header("Content-Type", "text/plain")
            self.end_headers()
            self.wfile.write(b"OK")

        elif path == "/readyz":
            is_ready = operator is not None and operator.ready()
            self.send_response(200 if is_ready else 503)
            self.send_header("Content-Type", "application/json")
            self.end_headers()
            response = {
                "status": "ready" if is_ready else "not_ready",
                "leader": bool(operator and operator.leading.is_set()),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            self.wfile.write(json.dumps(response).encode())

        else:
            self.send_response(404)
            self.send_header("Content-Type", "text/plain")
            self.end_headers()
            self.wfile.write(b"Not Found")

    def log_message(self, format, *args):
        # Route access logs through our logger at debug level
        logger.debug(f"HTTP {self.address_string()} - {format % args}")


def start_metrics_server():
    """Start HTTP server for metrics and probes."""

    def run_server():
        try:
            server = HTTPServer(("0.0.0.0", METRICS_PORT), OperatorHTTPHandler)
            logger.info(f"HTTP server started on port {METRICS_PORT} (/metrics, /healthz, /readyz)")
            server.serve_forever()
        except Exception as e:
            logger.error(f"HTTP server error: {e}")

    server_thread = threading.Thread(target=run_server, daemon=True)
    server_thread.start()


def load_kube_config():
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes configuration")


def signal_handler(signum, frame):
    """Handle termination signals gracefully."""
    logger.info(f"Received signal {signum}, initiating graceful shutdown")
    if operator is not None:
        operator.shutdown()
    else:
        stop_event.set()


def main():
    global operator

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    if LEADER_ELECT and not POD_NAME:
        logger.error("POD_NAME environment variable is required for leader election")
        sys.exit(1)

    logger.info(
        f"Starting MariaDB operator {VERSION} as {POD_NAME} in namespace {NAMESPACE} "
        f"(watching: {WATCH_NAMESPACE or 'all namespaces'})"
    )
    metrics.info_metric.info(
        {
            "version": VERSION,
            "pod_name": POD_NAME,
            "namespace": NAMESPACE,
            "watch_namespace": WATCH_NAMESPACE or "*",
        }
    )

    load_kube_config()
    operator = Operator(client.ApiClient(), stop_event)
    start_metrics_server()
    operator.run()
    logger.info("MariaDB operator shutdown complete")


if __name__ == "__main__":
    main()
