#!/usr/bin/env python3
# src/topology.py
"""
Topology variants hosted by the reconciliation engine.

A topology is selected once per pass from the declared mode and exposes two
operations: reconcile(ctx) for a full resource pass and
handle_instance_event(ctx, event) for a single pod change. Every decision
is derived from the ClusterContext built for that pass; no topology object
keeps state between passes.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from agent_client import AgentClient
from errors import ReconcileAborted
from events import EventRecorder
from instance_registry import Instance, InstanceRegistry, instance_address
from resources import ClusterResource, TopologyMode

logger = logging.getLogger("mariadb-operator.topology")


@dataclass(frozen=True)
class GaleraConfig:
    join_timeout: float = 300.0
    poll_interval: float = 2.0
    requeue_after: float = 30.0


@dataclass(frozen=True)
class ReplicationConfig:
    failover_threshold: int = 3
    switchover_timeout: float = 60.0
    poll_interval: float = 2.0
    probe_interval: float = 5.0
    requeue_after: float = 10.0


@dataclass(frozen=True)
class StandaloneConfig:
    requeue_after: float = 60.0


@dataclass
class InstanceEvent:
    """A watch event for one pod, already filtered by ownership annotations."""

    event_type: str
    instance: Instance


@dataclass
class TopologyOutcome:
    """What a resource pass concluded; the engine turns it into status."""

    phase: str
    ready: bool
    reason: str
    message: str
    requeue_after: Optional[float] = None
    status: Dict[str, Any] = field(default_factory=dict)
    conditions: List[Dict[str, Any]] = field(default_factory=list)
    committed: bool = False

    def add_condition(self, condition_type: str, status: bool, reason: str, message: str):
        self.conditions.append(
            {"type": condition_type, "status": status, "reason": reason, "message": message}
        )


AgentFactory = Callable[[int, str, int], AgentClient]


@dataclass
class ClusterContext:
    """Everything one pass may observe or act upon for a single cluster."""

    cluster: ClusterResource
    instances: List[Instance]
    registry: InstanceRegistry
    agent_factory: AgentFactory
    recorder: EventRecorder
    stop: threading.Event
    commit_status: Callable[[Dict[str, Any]], None]
    _agents: Dict[int, AgentClient] = field(default_factory=dict, repr=False)

    def instance(self, ordinal: int) -> Optional[Instance]:
        for instance in self.instances:
            if instance.ordinal == ordinal:
                return instance
        return None

    def address(self, ordinal: int) -> str:
        return instance_address(self.cluster, ordinal)

    def agent(self, ordinal: int) -> AgentClient:
        if ordinal not in self._agents:
            self._agents[ordinal] = self.agent_factory(
                ordinal, self.address(ordinal), self.cluster.agent_port
            )
        return self._agents[ordinal]

    def all_declared_exist(self) -> bool:
        present = {i.ordinal for i in self.instances if i.running and not i.deleting}
        return all(o in present for o in range(self.cluster.replicas))

    def check_stop(self):
        if self.stop.is_set():
            raise ReconcileAborted(f"shutdown requested while reconciling {self.cluster.key}")

    def wait(self, seconds: float):
        """Sleep unless shutdown is requested, in which case abort the pass."""
        if self.stop.wait(seconds):
            raise ReconcileAborted(f"shutdown requested while reconciling {self.cluster.key}")


class Topology:
    """Capability set every topology variant implements."""

    mode: TopologyMode = TopologyMode.NONE

    def reconcile(self, ctx: ClusterContext) -> TopologyOutcome:
        raise NotImplementedError

    def handle_instance_event(self, ctx: ClusterContext, event: InstanceEvent) -> None:
        raise NotImplementedError


class StandaloneTopology(Topology):
    """Single instance without replication or clustering."""

    mode = TopologyMode.NONE

    def __init__(self, config: StandaloneConfig):
        self.config = config

    def reconcile(self, ctx: ClusterContext) -> TopologyOutcome:
        instance = ctx.instance(0)
        if instance is None or not instance.healthy:
            return TopologyOutcome(
                phase="Uninitialized",
                ready=False,
                reason="InstanceNotReady",
                message="Waiting for the instance to become ready",
                requeue_after=self.config.requeue_after,
            )
        return TopologyOutcome(
            phase="Ready",
            ready=True,
            reason="Running",
            message="Instance is running",
            requeue_after=self.config.requeue_after,
            committed=True,
        )

    def handle_instance_event(self, ctx: ClusterContext, event: InstanceEvent) -> None:
        logger.debug(f"{ctx.cluster.key}: {event.event_type} {event.instance.name}")


def most_advanced(markers: Dict[int, Optional[int]]) -> Optional[int]:
    """Ordinal with the highest position; ties go to the lowest ordinal.

    Entries without a usable position never qualify.
    """
    usable = [(marker, ordinal) for ordinal, marker in markers.items() if marker is not None]
    if not usable:
        return None
    best = max(marker for marker, _ in usable)
    return min(ordinal for marker, ordinal in usable if marker == best)


def select_topology(mode: TopologyMode, variants: Dict[TopologyMode, Topology]) -> Topology:
    """Pick the variant for the declared mode."""
    try:
        return variants[mode]
    except KeyError:
        raise LookupError(f"no topology registered for mode {mode.value}")
