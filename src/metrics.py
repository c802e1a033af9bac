#!/usr/bin/env python3
# src/metrics.py
"""Prometheus metrics shared by the reconciler, the state machines and the main loop."""

from prometheus_client import Counter, Gauge, Histogram, Info

reconcile_total = Counter(
    "mariadb_operator_reconcile_total",
    "Total number of MariaDB reconciliations",
    ["result"],
)
reconcile_duration_seconds = Histogram(
    "mariadb_operator_reconcile_duration_seconds",
    "Duration of MariaDB reconciliations",
    ["mode"],
)
topology_actions_total = Counter(
    "mariadb_operator_topology_actions_total",
    "Administrative actions issued against database instances",
    ["mode", "action"],
)
failovers_total = Counter(
    "mariadb_operator_failovers_total",
    "Primary changes performed by the replication state machine",
    ["kind"],
)
galera_recoveries_total = Counter(
    "mariadb_operator_galera_recoveries_total",
    "Galera cluster recoveries started",
    ["kind"],
)
cluster_ready = Gauge(
    "mariadb_operator_cluster_ready",
    "Whether the MariaDB cluster is Ready",
    ["namespace", "name"],
)
leader_status = Gauge(
    "mariadb_operator_leader",
    "Whether this operator replica holds the leader lease",
    ["pod"],
)
leadership_changes_total = Counter(
    "mariadb_operator_leadership_changes_total",
    "Total number of leadership transitions",
)
queue_depth = Gauge(
    "mariadb_operator_workqueue_depth",
    "Number of keys waiting in the work queue",
)
info_metric = Info("mariadb_operator", "Information about the operator instance")
