#!/usr/bin/env python3
# src/replication.py
"""
Primary/replica topology state machine.

Phases:

    Uninitialized -> Electing -> Replicating -> FailingOver -> Replicating

The current primary is recorded in status.currentPrimaryPodIndex. It is
written right after a promotion succeeds; that write is the commit point of
every primary change. The failover debounce counter lives in
status.replication.primaryFailures, together with the time of the last
counted failure, so it survives operator restarts and counts at most one
failure per probe interval. A failover records the resource generation in
status.replication.failoverGeneration; a pinned podIndex from that
generation or older is ignored until the spec changes again.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import metrics
from agent_client import ROLE_PRIMARY as AGENT_PRIMARY
from agent_client import ROLE_REPLICA as AGENT_REPLICA
from agent_client import ReplicationState
from conditions import CONDITION_PRIMARY_SWITCHED, set_condition
from errors import ConflictingObservationError, TransientError
from resources import ROLE_PRIMARY, ROLE_REPLICA, TopologyMode
from topology import (
    ClusterContext,
    InstanceEvent,
    ReplicationConfig,
    Topology,
    TopologyOutcome,
    most_advanced,
)

logger = logging.getLogger("mariadb-operator.replication")

PHASE_UNINITIALIZED = "Uninitialized"
PHASE_ELECTING = "Electing"
PHASE_REPLICATING = "Replicating"
PHASE_FAILING_OVER = "FailingOver"

FAILURE_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

States = Dict[int, Optional[ReplicationState]]


def select_failover_candidate(states: States, exclude: int) -> Optional[int]:
    """Healthy replica with the most advanced applied position, lowest ordinal on ties."""
    positions = {
        ordinal: state.position
        for ordinal, state in states.items()
        if ordinal != exclude and state is not None
    }
    return most_advanced(positions)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def seconds_since(timestamp: Optional[str], now: datetime) -> Optional[float]:
    """Seconds elapsed since a status timestamp; None when absent or unreadable."""
    if not timestamp:
        return None
    try:
        then = datetime.strptime(timestamp, FAILURE_TIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        logger.warning(f"Ignoring unreadable failure timestamp {timestamp!r}")
        return None
    return (now - then).total_seconds()


class ReplicationTopology(Topology):
    mode = TopologyMode.REPLICATION

    def __init__(self, config: ReplicationConfig):
        self.config = config

    # -----------------------------
    # Resource pass
    # -----------------------------

    def reconcile(self, ctx: ClusterContext) -> TopologyOutcome:
        cluster = ctx.cluster
        primary = cluster.current_primary_index

        if primary is None and not ctx.all_declared_exist():
            return TopologyOutcome(
                phase=PHASE_UNINITIALIZED,
                ready=False,
                reason="WaitingForInstances",
                message=f"Waiting for all {cluster.replicas} instances to exist before electing a primary",
                requeue_after=self.config.poll_interval,
            )

        states = self._observe(ctx)

        if primary is None:
            return self._elect(ctx, states)

        if states.get(primary) is None:
            return self._primary_unhealthy(ctx, states, primary)

        pinned = self._effective_pin(cluster)
        if pinned is not None and pinned != primary:
            target = states.get(pinned)
            if target is None or self._replicates_from(ctx, target, primary):
                return self._switchover(ctx, states, primary, pinned)
            logger.info(
                f"{cluster.key}: switchover target {pinned} reports {target.role}, "
                f"pointing it at primary {primary} first"
            )

        return self._converge(ctx, states, primary, PHASE_REPLICATING)

    def _observe(self, ctx: ClusterContext) -> States:
        """Replication state of every declared instance; None when unhealthy or unreachable."""
        states: States = {}
        for ordinal in range(ctx.cluster.replicas):
            instance = ctx.instance(ordinal)
            if instance is None or not instance.healthy:
                states[ordinal] = None
                continue
            try:
                states[ordinal] = ctx.agent(ordinal).query_replication()
            except TransientError as e:
                logger.warning(f"{ctx.cluster.key}: replication state of {instance.name} unknown: {e}")
                states[ordinal] = None
        logger.debug(f"{ctx.cluster.key}: replication states {states}")
        return states

    @staticmethod
    def _effective_pin(cluster) -> Optional[int]:
        """Pinned podIndex, unless it predates the last failover."""
        pinned = cluster.pinned_primary
        if pinned is None:
            return None
        failover_generation = (cluster.status.get("replication", {}) or {}).get("failoverGeneration")
        if failover_generation is not None and cluster.generation <= int(failover_generation):
            return None
        return pinned

    @staticmethod
    def _replicates_from(ctx: ClusterContext, state: ReplicationState, primary: int) -> bool:
        return state.role == AGENT_REPLICA and state.source == ctx.address(primary)

    # -----------------------------
    # Election
    # -----------------------------

    def _elect(self, ctx: ClusterContext, states: States) -> TopologyOutcome:
        cluster = ctx.cluster
        claimed = [o for o, s in states.items() if s is not None and s.role == AGENT_PRIMARY]
        if len(claimed) > 1:
            raise ConflictingObservationError(
                f"instances {claimed} all report being primary and no primary is recorded"
            )

        if claimed:
            primary = claimed[0]
            logger.info(f"{cluster.key}: adopting instance {primary} that already acts as primary")
        else:
            pinned = cluster.pinned_primary
            primary = pinned if pinned is not None else 0

        if states.get(primary) is None:
            raise TransientError(
                f"Elected primary {primary} is not healthy yet", reason="PrimaryNotReady"
            )

        position = states[primary].position
        if states[primary].role != AGENT_PRIMARY:
            logger.info(f"{cluster.key}: configuring instance {primary} as primary")
            position = self._promote_instance(ctx, primary)

        self._commit_primary(ctx, primary)
        ctx.recorder.normal(cluster, "PrimaryElected", f"Instance {primary} elected as primary")

        states = dict(states)
        states[primary] = ReplicationState(ordinal=primary, role=AGENT_PRIMARY, position=position)
        return self._converge(ctx, states, primary, PHASE_ELECTING)

    # -----------------------------
    # Steady state
    # -----------------------------

    def _converge(
        self, ctx: ClusterContext, states: States, primary: int, phase: str
    ) -> TopologyOutcome:
        """Point every healthy instance at the primary and align role annotations."""
        cluster = ctx.cluster
        primary_state = states[primary]
        others_claiming = [
            o for o, s in states.items() if s is not None and s.role == AGENT_PRIMARY and o != primary
        ]

        if primary_state.role != AGENT_PRIMARY:
            if others_claiming:
                raise ConflictingObservationError(
                    f"recorded primary {primary} reports {primary_state.role} while "
                    f"instances {others_claiming} report primary"
                )
            logger.warning(f"{cluster.key}: recorded primary {primary} lost its role, promoting again")
            position = self._promote_instance(ctx, primary)
            primary_state = ReplicationState(ordinal=primary, role=AGENT_PRIMARY, position=position)

        self._annotate_roles(ctx, primary)

        unhealthy = []
        for ordinal, state in sorted(states.items()):
            if ordinal == primary:
                continue
            if state is None:
                unhealthy.append(ordinal)
                continue
            self._ensure_replica(ctx, state, primary, primary_state.position)

        ready = not unhealthy
        outcome = TopologyOutcome(
            phase=PHASE_REPLICATING,
            ready=ready,
            reason="Replicating" if ready else "ReplicaNotReady",
            message=(
                f"Instance {primary} is primary, {cluster.replicas - 1} replicas replicating"
                if ready
                else f"Instance {primary} is primary, replicas {unhealthy} not healthy"
            ),
            requeue_after=self.config.requeue_after,
            status=self._primary_status(ctx, primary, failures=0),
            committed=True,
        )
        if phase != PHASE_REPLICATING:
            logger.info(f"{cluster.key}: {phase} -> {PHASE_REPLICATING}")
        return outcome

    def _ensure_replica(
        self,
        ctx: ClusterContext,
        state: ReplicationState,
        primary: int,
        primary_position: Optional[int],
    ) -> bool:
        """Repoint one instance at the primary when it replicates from elsewhere."""
        if self._replicates_from(ctx, state, primary):
            return False
        source = ctx.address(primary)

        ctx.check_stop()
        if state.role == AGENT_PRIMARY:
            logger.warning(
                f"{ctx.cluster.key}: demoting stale primary {state.ordinal} to replica of {primary}"
            )
            ctx.recorder.warning(
                ctx.cluster,
                "PrimaryDemoted",
                f"Instance {state.ordinal} reappeared as primary and was demoted",
            )
        start = primary_position if state.position is None else None
        logger.info(
            f"{ctx.cluster.key}: configuring instance {state.ordinal} to replicate from "
            f"{primary} (start position: {start if start is not None else 'own'})"
        )
        ctx.agent(state.ordinal).configure_replica(source, start)
        metrics.topology_actions_total.labels(mode="replication", action="configure_replica").inc()
        return True

    def _annotate_roles(self, ctx: ClusterContext, primary: int):
        """Demote stale primary annotations before marking the primary."""
        for instance in ctx.instances:
            if instance.ordinal != primary and instance.role != ROLE_REPLICA:
                ctx.registry.annotate_role(instance, ROLE_REPLICA)
        primary_instance = ctx.instance(primary)
        if primary_instance is not None:
            ctx.registry.annotate_role(primary_instance, ROLE_PRIMARY)

    # -----------------------------
    # Failover
    # -----------------------------

    def _primary_unhealthy(self, ctx: ClusterContext, states: States, primary: int) -> TopologyOutcome:
        cluster = ctx.cluster
        threshold = self.config.failover_threshold
        recorded = cluster.status.get("replication", {}) or {}
        previous = int(recorded.get("primaryFailures", 0) or 0)
        last_failure = recorded.get("lastPrimaryFailure")
        now = utc_now()
        elapsed = seconds_since(last_failure, now)

        if previous and elapsed is not None and 0 <= elapsed < self.config.probe_interval:
            logger.debug(
                f"{cluster.key}: primary {primary} failure already counted {elapsed:.1f}s ago"
            )
            return self._unhealthy_outcome(
                previous,
                last_failure,
                self.config.probe_interval - elapsed,
                f"Primary {primary} unhealthy for {previous}/{threshold} consecutive checks",
            )

        failures = min(previous + 1, threshold)
        failed_at = now.strftime(FAILURE_TIME_FORMAT)

        if previous == 0:
            ctx.recorder.warning(cluster, "PrimaryUnhealthy", f"Primary instance {primary} is not healthy")

        if failures < threshold:
            logger.warning(
                f"{cluster.key}: primary {primary} unhealthy ({failures}/{threshold} observations)"
            )
            return self._unhealthy_outcome(
                failures,
                failed_at,
                self.config.probe_interval,
                f"Primary {primary} unhealthy for {failures}/{threshold} consecutive checks",
            )

        if not cluster.automatic_failover:
            return self._unhealthy_outcome(
                failures,
                failed_at,
                self.config.probe_interval,
                f"Primary {primary} unhealthy and automatic failover is disabled",
            )

        candidate = select_failover_candidate(states, exclude=primary)
        if candidate is None:
            raise TransientError(
                f"Primary {primary} is down and no healthy replica can be promoted",
                reason="NoFailoverCandidate",
            )

        logger.warning(
            f"{cluster.key}: failing over from {primary} to {candidate} "
            f"(position {states[candidate].position})"
        )
        ctx.recorder.warning(
            cluster, "PrimaryFailover", f"Promoting instance {candidate} to replace primary {primary}"
        )
        position = self._promote_instance(ctx, candidate)
        status = self._primary_status(ctx, candidate, failures=0)
        status["replication"]["failoverGeneration"] = cluster.generation
        ctx.commit_status(status)
        metrics.failovers_total.labels(kind="failover").inc()

        states = dict(states)
        states[candidate] = ReplicationState(ordinal=candidate, role=AGENT_PRIMARY, position=position)
        outcome = self._converge(ctx, states, candidate, PHASE_FAILING_OVER)
        outcome.add_condition(
            CONDITION_PRIMARY_SWITCHED, True, "FailoverComplete", f"Instance {candidate} is primary"
        )
        return outcome

    def _unhealthy_outcome(
        self,
        failures: int,
        failed_at: Optional[str],
        requeue_after: float,
        message: str,
    ) -> TopologyOutcome:
        return TopologyOutcome(
            phase=PHASE_REPLICATING,
            ready=False,
            reason="PrimaryUnhealthy",
            message=message,
            requeue_after=requeue_after,
            status={"replication": {"primaryFailures": failures, "lastPrimaryFailure": failed_at}},
        )

    def _promote_instance(self, ctx: ClusterContext, ordinal: int) -> Optional[int]:
        """Issue the promotion; the caller commits the new primary."""
        ctx.check_stop()
        position = ctx.agent(ordinal).promote()
        metrics.topology_actions_total.labels(mode="replication", action="promote").inc()
        return position

    def _commit_primary(self, ctx: ClusterContext, primary: int):
        ctx.commit_status(self._primary_status(ctx, primary, failures=0))

    def _primary_status(self, ctx: ClusterContext, primary: int, failures: int) -> Dict[str, Any]:
        return {
            "currentPrimaryPodIndex": primary,
            "currentPrimary": ctx.cluster.pod_name(primary),
            "replication": {"primaryFailures": failures, "lastPrimaryFailure": None},
        }

    # -----------------------------
    # Switchover
    # -----------------------------

    def _switchover(
        self, ctx: ClusterContext, states: States, primary: int, target: int
    ) -> TopologyOutcome:
        """Planned primary change with writes quiesced on the outgoing primary."""
        cluster = ctx.cluster
        if states.get(target) is None:
            raise TransientError(
                f"Switchover target {target} is not healthy", reason="SwitchoverTargetNotReady"
            )

        ctx.recorder.normal(
            cluster, "PrimarySwitchover", f"Switching primary from instance {primary} to {target}"
        )
        ctx.commit_status(
            {
                "conditions": set_condition(
                    cluster.status.get("conditions", []),
                    CONDITION_PRIMARY_SWITCHED,
                    False,
                    "SwitchoverInProgress",
                    f"Switching primary from instance {primary} to {target}",
                )
            }
        )
        old = ctx.agent(primary)
        ctx.check_stop()
        old.set_read_only(True)
        metrics.topology_actions_total.labels(mode="replication", action="read_only").inc()

        try:
            primary_position = old.query_applied_position()
            self._wait_caught_up(ctx, target, primary_position)
            position = self._promote_instance(ctx, target)
        except Exception:
            logger.warning(f"{cluster.key}: switchover aborted, re-enabling writes on {primary}")
            old.set_read_only(False)
            raise

        self._commit_primary(ctx, target)
        metrics.failovers_total.labels(kind="switchover").inc()

        states = dict(states)
        states[target] = ReplicationState(ordinal=target, role=AGENT_PRIMARY, position=position)
        outcome = self._converge(ctx, states, target, PHASE_FAILING_OVER)
        outcome.add_condition(
            CONDITION_PRIMARY_SWITCHED,
            True,
            "SwitchoverComplete",
            f"Primary switched from instance {primary} to {target}",
        )
        return outcome

    def _wait_caught_up(self, ctx: ClusterContext, target: int, position: Optional[int]):
        if position is None:
            raise TransientError(
                f"Primary position unknown, cannot verify instance {target} caught up",
                reason="SwitchoverPositionUnknown",
            )
        deadline = time.monotonic() + self.config.switchover_timeout
        agent = ctx.agent(target)
        while True:
            ctx.check_stop()
            applied = agent.query_applied_position()
            if applied is not None and applied >= position:
                logger.info(f"{ctx.cluster.key}: instance {target} caught up at {applied}")
                return
            if time.monotonic() >= deadline:
                raise TransientError(
                    f"Instance {target} did not reach position {position} within "
                    f"{self.config.switchover_timeout:.0f}s (at {applied})",
                    reason="SwitchoverTimeout",
                )
            ctx.wait(self.config.poll_interval)

    # -----------------------------
    # Instance events
    # -----------------------------

    def handle_instance_event(self, ctx: ClusterContext, event: InstanceEvent) -> None:
        """Health-changed handler for a single pod."""
        instance = event.instance
        cluster = ctx.cluster
        primary = cluster.current_primary_index
        if primary is None:
            return

        if instance.ordinal == primary:
            if event.event_type == "DELETED" or not instance.healthy:
                logger.warning(f"{cluster.key}: primary {instance.name} is not healthy")
                ctx.recorder.warning(
                    cluster, "PrimaryUnhealthy", f"Primary instance {primary} is not healthy"
                )
            return

        if event.event_type == "DELETED" or not instance.healthy:
            logger.info(f"{cluster.key}: replica {instance.name} is not healthy")
            return

        primary_instance = ctx.instance(primary)
        if primary_instance is None or not primary_instance.healthy:
            logger.info(f"{cluster.key}: primary not healthy, leaving {instance.name} untouched")
            return

        state = ctx.agent(instance.ordinal).query_replication()
        primary_position = None
        if state.position is None:
            primary_position = ctx.agent(primary).query_applied_position()
        self._ensure_replica(ctx, state, primary, primary_position)
        ctx.registry.annotate_role(instance, ROLE_REPLICA)
