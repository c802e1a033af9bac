#!/usr/bin/env python3
# src/galera.py
"""
Galera (quorum / multi-master) topology state machine.

Phases, derived from observation on every pass:

    Uninitialized -> Bootstrapping -> Clustered -> Recovering -> Clustered

The only persisted hints are the role annotations on the pods: the pod
annotated "seed" is the instance a new primary component is (or was) being
bootstrapped from. Everything else comes from each agent's membership view.
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional

import metrics
from agent_client import STATE_SYNCED, GaleraView
from conditions import CONDITION_GALERA_READY
from errors import ConflictingObservationError, RecoveryHaltedError, TransientError
from resources import ROLE_MEMBER, ROLE_SEED, TopologyMode
from topology import (
    ClusterContext,
    GaleraConfig,
    InstanceEvent,
    Topology,
    TopologyOutcome,
    most_advanced,
)

logger = logging.getLogger("mariadb-operator.galera")

PHASE_UNINITIALIZED = "Uninitialized"
PHASE_BOOTSTRAPPING = "Bootstrapping"
PHASE_CLUSTERED = "Clustered"
PHASE_RECOVERING = "Recovering"

# observe/act rounds per resource pass
MAX_OBSERVATIONS_PER_PASS = 3


@dataclass(frozen=True)
class Component:
    """Instances that report the same membership view of one cluster."""

    cluster_uuid: Optional[str]
    members: FrozenSet[int]
    primary: bool

    def has_quorum(self, replicas: int) -> bool:
        return self.primary and len(self.members) > replicas / 2

    def complete(self, replicas: int) -> bool:
        return self.primary and self.members == frozenset(range(replicas))


def find_components(views: Dict[int, Optional[GaleraView]]) -> List[Component]:
    """Group reachable instances by the membership view they report.

    An instance only counts towards a component when it lists itself as a
    member and its local state is synced; joiners and donors are excluded.
    """
    groups: Dict[tuple, set] = {}
    primaries: Dict[tuple, bool] = {}
    for ordinal, view in views.items():
        if view is None or ordinal not in view.members or view.state != STATE_SYNCED:
            continue
        key = (view.cluster_uuid, view.members)
        groups.setdefault(key, set()).add(ordinal)
        primaries[key] = primaries.get(key, False) or view.primary_component

    components = [
        Component(cluster_uuid=key[0], members=frozenset(members), primary=primaries[key])
        for key, members in groups.items()
    ]
    return sorted(components, key=lambda c: (-len(c.members), min(c.members)))


def check_consistent(views: Dict[int, Optional[GaleraView]]) -> None:
    """Raise when two synced instances of one cluster disagree on its membership.

    Instance A listing B as a member while B reports a different member set
    under the same cluster UUID cannot be resolved without guessing.
    """
    for ordinal, view in views.items():
        if view is None or view.state != STATE_SYNCED:
            continue
        for member in view.members:
            other = views.get(member)
            if other is None or other.state != STATE_SYNCED or member == ordinal:
                continue
            if other.cluster_uuid == view.cluster_uuid and other.members != view.members:
                raise ConflictingObservationError(
                    f"instance {ordinal} sees members {sorted(view.members)} but instance "
                    f"{member} sees {sorted(other.members)} in cluster {view.cluster_uuid}"
                )


def select_seed(markers: Dict[int, Optional[int]]) -> Optional[int]:
    """Ordinal with the most advanced transaction marker; ties go to the lowest ordinal.

    Instances without a usable marker never qualify. Returns None when no
    instance qualifies.
    """
    return most_advanced(markers)


class GaleraTopology(Topology):
    mode = TopologyMode.GALERA

    def __init__(self, config: GaleraConfig):
        self.config = config

    # -----------------------------
    # Resource pass
    # -----------------------------

    def reconcile(self, ctx: ClusterContext) -> TopologyOutcome:
        cluster = ctx.cluster
        bootstrapped = cluster.committed_mode == TopologyMode.GALERA

        if not bootstrapped and not ctx.all_declared_exist() and self._seed(ctx) is None:
            return self._waiting(
                ctx,
                PHASE_UNINITIALIZED,
                "WaitingForInstances",
                f"Waiting for all {cluster.replicas} instances to exist before bootstrapping",
            )

        for _ in range(MAX_OBSERVATIONS_PER_PASS):
            ctx.check_stop()
            views = self._observe(ctx)
            outcome = self._decide(ctx, views, bootstrapped)
            if outcome is not None:
                return outcome

        return self._waiting(
            ctx,
            PHASE_RECOVERING if bootstrapped else PHASE_BOOTSTRAPPING,
            "Converging",
            "Topology actions issued, waiting for the next observation",
        )

    def _decide(
        self, ctx: ClusterContext, views: Dict[int, Optional[GaleraView]], bootstrapped: bool
    ) -> Optional[TopologyOutcome]:
        """Return an outcome, or None when actions were taken and views must be refreshed."""
        cluster = ctx.cluster
        replicas = cluster.replicas
        check_consistent(views)
        components = find_components(views)
        quorum = [c for c in components if c.has_quorum(replicas)]

        if len(quorum) > 1:
            raise ConflictingObservationError(
                "multiple primary components claim quorum: "
                + ", ".join(str(sorted(c.members)) for c in quorum)
            )

        seed = self._seed(ctx)

        if quorum and quorum[0].complete(replicas):
            return self._clustered(ctx, quorum[0])

        in_progress_phase = PHASE_RECOVERING if bootstrapped else PHASE_BOOTSTRAPPING

        if quorum:
            component = quorum[0]
            if seed is not None and seed not in component.members:
                logger.info(
                    f"{cluster.key}: quorum component {sorted(component.members)} "
                    f"does not contain seed {seed}, releasing seed annotation"
                )
                self._annotate(ctx, seed, ROLE_MEMBER)
            donor = self._donor(component, views)
            return self._join_missing(ctx, component, donor, views, in_progress_phase)

        if seed is not None:
            seed_component = self._component_of(components, seed)
            if seed_component is None or not seed_component.primary:
                transferring = [o for o, v in views.items() if v is not None and v.transferring]
                seed_view = views.get(seed)
                if transferring or (
                    seed_view is not None and seed_view.cluster_uuid and seed_view.primary_component
                ):
                    logger.info(
                        f"{cluster.key}: seed {seed} is part of a live component "
                        f"(transferring: {transferring}), not bootstrapping again"
                    )
                    return self._waiting(
                        ctx,
                        in_progress_phase,
                        "StateTransferInProgress",
                        f"Waiting for state transfer around seed {seed} to finish",
                    )
                self._bootstrap(ctx, seed)
                return None
            return self._join_missing(ctx, seed_component, seed, views, in_progress_phase)

        has_prior = any(v is not None and v.has_prior_membership for v in views.values())
        if not bootstrapped and not has_prior:
            if not ctx.all_declared_exist():
                return self._waiting(
                    ctx,
                    PHASE_UNINITIALIZED,
                    "WaitingForInstances",
                    f"Waiting for all {replicas} instances to exist before bootstrapping",
                )
            if any(views.get(o) is None for o in range(replicas)):
                raise TransientError(
                    "Not every instance agent answered; refusing to bootstrap a new cluster",
                    reason="AgentUnreachable",
                )
            logger.info(f"{cluster.key}: no prior membership on any instance, bootstrapping")
            ctx.recorder.normal(cluster, "GaleraBootstrap", "Bootstrapping new cluster from instance 0")
            self._elect_seed(ctx, 0)
            self._bootstrap(ctx, 0)
            return None

        new_seed = self._recover_seed(ctx, views)
        metrics.galera_recoveries_total.labels(kind="full").inc()
        ctx.recorder.warning(
            cluster,
            "GaleraRecovery",
            f"No component holds quorum, re-bootstrapping from instance {new_seed}",
        )
        self._elect_seed(ctx, new_seed)
        self._bootstrap(ctx, new_seed)
        return None

    # -----------------------------
    # Observation
    # -----------------------------

    def _observe(self, ctx: ClusterContext) -> Dict[int, Optional[GaleraView]]:
        views: Dict[int, Optional[GaleraView]] = {}
        for instance in ctx.instances:
            if instance.ordinal >= ctx.cluster.replicas:
                continue
            if not instance.running or instance.deleting:
                views[instance.ordinal] = None
                continue
            try:
                views[instance.ordinal] = ctx.agent(instance.ordinal).query_membership()
            except TransientError as e:
                logger.warning(f"{ctx.cluster.key}: membership of {instance.name} unknown: {e}")
                views[instance.ordinal] = None

        if views and all(v is None for v in views.values()):
            raise TransientError(
                f"No instance of {ctx.cluster.key} reported its membership",
                reason="AgentUnreachable",
            )
        logger.debug(f"{ctx.cluster.key}: membership views {views}")
        return views

    def _seed(self, ctx: ClusterContext) -> Optional[int]:
        seeds = [i.ordinal for i in ctx.instances if ctx.registry.role_of(i) == ROLE_SEED]
        if len(seeds) > 1:
            raise ConflictingObservationError(
                f"instances {seeds} are all annotated as bootstrap seed"
            )
        return seeds[0] if seeds else None

    @staticmethod
    def _component_of(components: List[Component], ordinal: int) -> Optional[Component]:
        for component in components:
            if ordinal in component.members:
                return component
        return None

    @staticmethod
    def _donor(component: Component, views: Dict[int, Optional[GaleraView]]) -> int:
        markers = {o: views[o].seqno if views.get(o) else None for o in component.members}
        donor = select_seed(markers)
        return donor if donor is not None else min(component.members)

    def _recover_seed(self, ctx: ClusterContext, views: Dict[int, Optional[GaleraView]]) -> int:
        cluster = ctx.cluster
        forced = cluster.force_bootstrap_index
        if forced is not None:
            logger.warning(f"{cluster.key}: operator forced bootstrap from instance {forced}")
            return forced

        if not ctx.all_declared_exist():
            raise TransientError(
                "Waiting for every instance to exist before choosing a recovery seed",
                reason="WaitingForInstances",
            )
        transferring = [o for o, v in views.items() if v is not None and v.transferring]
        if transferring:
            raise TransientError(
                f"State transfer in progress on {transferring}, deferring recovery",
                reason="StateTransferInProgress",
            )

        markers: Dict[int, Optional[int]] = {}
        for ordinal in range(cluster.replicas):
            ctx.check_stop()
            markers[ordinal] = ctx.agent(ordinal).query_committed_marker()
        logger.info(f"{cluster.key}: recovered transaction markers {markers}")

        seed = select_seed(markers)
        if seed is None:
            ctx.recorder.warning(
                cluster,
                "GaleraRecoveryHalted",
                "No instance reported a usable transaction marker",
            )
            raise RecoveryHaltedError(
                "No instance reported a usable transaction marker; set "
                "spec.galera.recovery.forceBootstrapPodIndex to choose a seed"
            )
        return seed

    # -----------------------------
    # Actions
    # -----------------------------

    def _annotate(self, ctx: ClusterContext, ordinal: int, role: str):
        instance = ctx.instance(ordinal)
        if instance is not None:
            ctx.registry.annotate_role(instance, role)

    def _elect_seed(self, ctx: ClusterContext, seed: int):
        """Move the seed annotation; the old seed is released before the new one is set."""
        for instance in ctx.instances:
            if instance.role == ROLE_SEED and instance.ordinal != seed:
                ctx.registry.annotate_role(instance, ROLE_MEMBER)
        self._annotate(ctx, seed, ROLE_SEED)
        for instance in ctx.instances:
            if instance.ordinal != seed and instance.role != ROLE_MEMBER:
                ctx.registry.annotate_role(instance, ROLE_MEMBER)

    def _bootstrap(self, ctx: ClusterContext, seed: int):
        ctx.check_stop()
        logger.info(f"{ctx.cluster.key}: bootstrapping new primary component on instance {seed}")
        ctx.agent(seed).bootstrap_cluster()
        metrics.topology_actions_total.labels(mode="galera", action="bootstrap").inc()
        self._wait_synced(ctx, seed)

    def _join_missing(
        self,
        ctx: ClusterContext,
        component: Component,
        donor: int,
        views: Dict[int, Optional[GaleraView]],
        phase: str,
    ) -> Optional[TopologyOutcome]:
        """Join instances outside the component one at a time."""
        cluster = ctx.cluster
        missing = [o for o in range(cluster.replicas) if o not in component.members]

        transferring = [o for o in missing if views.get(o) is not None and views[o].transferring]
        if transferring:
            return self._waiting(
                ctx,
                phase,
                "StateTransferInProgress",
                f"Waiting for state transfer on instances {transferring}",
                component,
            )

        joined_any = False
        not_running = []
        for ordinal in missing:
            instance = ctx.instance(ordinal)
            if instance is None or not instance.running or instance.deleting:
                logger.info(f"{cluster.key}: instance {ordinal} not running, cannot join yet")
                not_running.append(ordinal)
                continue
            ctx.check_stop()
            self._annotate(ctx, ordinal, ROLE_MEMBER)
            logger.info(f"{cluster.key}: joining instance {ordinal} to donor {donor}")
            ctx.agent(ordinal).join_cluster(ctx.address(donor))
            metrics.topology_actions_total.labels(mode="galera", action="join").inc()
            self._wait_synced(ctx, ordinal)
            ctx.recorder.normal(cluster, "GaleraJoin", f"Instance {ordinal} joined the cluster")
            if phase == PHASE_RECOVERING:
                metrics.galera_recoveries_total.labels(kind="rejoin").inc()
            joined_any = True

        if joined_any:
            return None
        return self._waiting(
            ctx,
            phase,
            "WaitingForInstances",
            f"Instances {not_running} are not running yet",
            component,
        )

    def _wait_synced(self, ctx: ClusterContext, ordinal: int) -> GaleraView:
        """Poll an instance until it is synced in a primary component, bounded by join_timeout."""
        deadline = time.monotonic() + self.config.join_timeout
        agent = ctx.agent(ordinal)
        while True:
            ctx.check_stop()
            try:
                view = agent.query_membership()
                if view.synced and ordinal in view.members:
                    return view
                logger.debug(f"{ctx.cluster.key}: instance {ordinal} is {view.state}")
            except TransientError as e:
                logger.debug(f"{ctx.cluster.key}: polling instance {ordinal}: {e}")
            if time.monotonic() >= deadline:
                raise TransientError(
                    f"Instance {ordinal} did not reach synced state within "
                    f"{self.config.join_timeout:.0f}s",
                    reason="JoinTimeout",
                )
            ctx.wait(self.config.poll_interval)

    # -----------------------------
    # Outcomes
    # -----------------------------

    def _clustered(self, ctx: ClusterContext, component: Component) -> TopologyOutcome:
        for instance in ctx.instances:
            if instance.ordinal in component.members:
                ctx.registry.annotate_role(instance, ROLE_MEMBER)

        if ctx.cluster.status.get("phase") != PHASE_CLUSTERED:
            ctx.recorder.normal(
                ctx.cluster,
                "GaleraClusterHealthy",
                f"All {len(component.members)} instances are synced in one primary component",
            )
        outcome = TopologyOutcome(
            phase=PHASE_CLUSTERED,
            ready=True,
            reason="Clustered",
            message=f"{len(component.members)} instances synced",
            requeue_after=self.config.requeue_after,
            status={"galera": {"members": sorted(component.members), "seed": None}},
            committed=True,
        )
        outcome.add_condition(CONDITION_GALERA_READY, True, "Clustered", "Galera cluster is healthy")
        return outcome

    def _waiting(
        self,
        ctx: ClusterContext,
        phase: str,
        reason: str,
        message: str,
        component: Optional[Component] = None,
    ) -> TopologyOutcome:
        members = sorted(component.members) if component else []
        outcome = TopologyOutcome(
            phase=phase,
            ready=False,
            reason=reason,
            message=message,
            requeue_after=self.config.poll_interval,
            status={"galera": {"members": members, "seed": self._seed(ctx)}},
        )
        outcome.add_condition(CONDITION_GALERA_READY, False, reason, message)
        return outcome

    # -----------------------------
    # Instance events
    # -----------------------------

    def handle_instance_event(self, ctx: ClusterContext, event: InstanceEvent) -> None:
        """Membership-changed handler for a single pod."""
        instance = event.instance
        cluster = ctx.cluster

        if event.event_type == "DELETED" or not instance.ready:
            logger.info(f"{cluster.key}: instance {instance.name} left the ready set")
            ctx.recorder.warning(
                cluster, "GaleraMemberDown", f"Instance {instance.ordinal} is not ready"
            )
            return

        if cluster.status.get("phase") == PHASE_CLUSTERED and instance.role not in (
            ROLE_MEMBER,
            ROLE_SEED,
        ):
            logger.info(f"{cluster.key}: instance {instance.name} back in a clustered topology")
            ctx.registry.annotate_role(instance, ROLE_MEMBER)
