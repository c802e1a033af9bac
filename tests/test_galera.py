#!/usr/bin/env python3
# tests/test_galera.py
"""
Test suite for the Galera topology state machine.

Covers:
- Fresh bootstrap from ordinal 0 with serial joins
- Partial partition rejoin without seed re-election
- Full recovery seed selection by transaction marker
- Recovery halt and forced bootstrap index
- No re-bootstrap of a seed serving a state transfer
- Conflicting observations (two seeds, disagreeing views)
- Idempotent steady state
"""

import itertools
import os
import sys
import threading
import unittest

sys.path.insert(0, os.path.dirname(__file__))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from fakes import (
    FakeGaleraCluster,
    FakeRecorder,
    FakeRegistry,
    make_cluster,
    make_context,
    make_instances,
)

from agent_client import GaleraView
from errors import (
    ConflictingObservationError,
    ReconcileAborted,
    RecoveryHaltedError,
    TransientError,
)
from galera import (
    PHASE_BOOTSTRAPPING,
    PHASE_CLUSTERED,
    PHASE_RECOVERING,
    PHASE_UNINITIALIZED,
    GaleraTopology,
    check_consistent,
    find_components,
    select_seed,
)
from resources import ROLE_MEMBER, ROLE_SEED
from topology import GaleraConfig, InstanceEvent

CLUSTERED_STATUS = {"topologyMode": "galera", "phase": "Clustered"}


def seed_counts(patches, initial_roles):
    """Number of seed-annotated pods after every role patch."""
    roles = dict(initial_roles)
    counts = []
    for ordinal, role in patches:
        roles[ordinal] = role
        counts.append(sum(1 for r in roles.values() if r == ROLE_SEED))
    return counts


class TestSeedSelection(unittest.TestCase):
    """Test recovery seed selection."""

    def test_highest_marker_wins(self):
        self.assertEqual(select_seed({0: 5, 1: 9, 2: 7}), 1)

    def test_tie_goes_to_lowest_ordinal_regardless_of_order(self):
        markers = {0: 5, 1: 9, 2: 9}
        for order in itertools.permutations(markers.items()):
            self.assertEqual(select_seed(dict(order)), 1)

    def test_unusable_markers_never_qualify(self):
        self.assertEqual(select_seed({0: None, 1: 3, 2: None}), 1)
        self.assertIsNone(select_seed({0: None, 1: None}))
        self.assertIsNone(select_seed({}))


class TestComponents(unittest.TestCase):
    """Test grouping of membership views into components."""

    def view(self, ordinal, members, state="synced", uuid="uuid-1", primary=True):
        return GaleraView(
            ordinal=ordinal,
            state=state,
            cluster_uuid=uuid,
            members=frozenset(members),
            primary_component=primary,
        )

    def test_partition_components(self):
        views = {
            0: self.view(0, {0, 1}),
            1: self.view(1, {0, 1}),
            2: self.view(2, {2}, state="disconnected", primary=False),
        }
        components = find_components(views)

        self.assertEqual(len(components), 1)
        self.assertEqual(components[0].members, frozenset({0, 1}))
        self.assertTrue(components[0].has_quorum(3))
        self.assertFalse(components[0].complete(3))

    def test_half_is_not_quorum(self):
        views = {0: self.view(0, {0, 1}), 1: self.view(1, {0, 1})}
        self.assertFalse(find_components(views)[0].has_quorum(4))

    def test_unreachable_and_joining_excluded(self):
        views = {0: self.view(0, {0}), 1: None, 2: self.view(2, {0, 2}, state="joining")}
        components = find_components(views)
        self.assertEqual([c.members for c in components], [frozenset({0})])

    def test_disagreeing_views_conflict(self):
        views = {
            0: self.view(0, {0, 1}),
            1: self.view(1, {1, 2}),
            2: self.view(2, {1, 2}),
        }
        with self.assertRaises(ConflictingObservationError):
            check_consistent(views)


class TestGaleraTopology(unittest.TestCase):
    """Test the Galera resource pass against in-memory agents."""

    def setUp(self):
        self.agents = FakeGaleraCluster(3)
        self.recorder = FakeRecorder()
        self.topology = GaleraTopology(GaleraConfig(join_timeout=5, poll_interval=0, requeue_after=30))

    def context(self, obj, instances):
        self.registry = FakeRegistry(instances)
        return make_context(obj, instances, self.agents, self.registry, self.recorder)

    def test_fresh_bootstrap_three_instances(self):
        """Ordinal 0 bootstraps, 1 and 2 join one after the other."""
        instances = make_instances(3)
        ctx = self.context(make_cluster(), instances)

        outcome = self.topology.reconcile(ctx)

        self.assertEqual(
            self.agents.actions(),
            [("bootstrap", 0), ("join", 1, 0), ("join", 2, 0)],
        )
        self.assertEqual(outcome.phase, PHASE_CLUSTERED)
        self.assertTrue(outcome.ready)
        self.assertTrue(outcome.committed)
        self.assertEqual(outcome.status["galera"]["members"], [0, 1, 2])
        self.assertEqual(self.registry.roles(), {0: ROLE_MEMBER, 1: ROLE_MEMBER, 2: ROLE_MEMBER})
        self.assertLessEqual(max(seed_counts(self.registry.patches, {})), 1)
        self.assertIn("GaleraBootstrap", self.recorder.reasons())
        self.assertIn("GaleraClusterHealthy", self.recorder.reasons())

    def test_waits_for_all_instances_before_bootstrap(self):
        instances = make_instances(3)[:2]
        ctx = self.context(make_cluster(), instances)

        outcome = self.topology.reconcile(ctx)

        self.assertEqual(outcome.phase, PHASE_UNINITIALIZED)
        self.assertFalse(outcome.ready)
        self.assertEqual(self.agents.actions(), [])

    def test_partition_rejoins_quorum_component(self):
        """{0,1} keeps quorum; 2 rejoins it and no seed is elected."""
        self.agents.form([0, 1])
        self.agents.nodes[1].seqno = 12
        node = self.agents.nodes[2]
        node.state, node.cluster_uuid, node.members = "disconnected", "uuid-1", {2}
        instances = make_instances(3, roles={0: ROLE_MEMBER, 1: ROLE_MEMBER, 2: ROLE_MEMBER})
        ctx = self.context(make_cluster(status=CLUSTERED_STATUS), instances)

        outcome = self.topology.reconcile(ctx)

        # donor is the member with the most advanced seqno
        self.assertEqual(self.agents.actions(), [("join", 2, 1)])
        self.assertNotIn(("marker", 0), self.agents.calls)
        self.assertEqual(self.registry.patches, [])
        self.assertEqual(outcome.phase, PHASE_CLUSTERED)

    def test_partition_waits_while_instance_down(self):
        self.agents.form([0, 1])
        instances = make_instances(3, roles={0: ROLE_MEMBER, 1: ROLE_MEMBER, 2: ROLE_MEMBER})
        instances[2].running = False
        instances[2].ready = False
        ctx = self.context(make_cluster(status=CLUSTERED_STATUS), instances)

        outcome = self.topology.reconcile(ctx)

        self.assertEqual(outcome.phase, PHASE_RECOVERING)
        self.assertFalse(outcome.ready)
        self.assertEqual(outcome.status["galera"]["members"], [0, 1])
        self.assertEqual(self.agents.actions(), [])

    def test_state_transfer_in_flight_defers_join(self):
        self.agents.form([0, 1])
        self.agents.nodes[2].state = "joining"
        instances = make_instances(3, roles={0: ROLE_MEMBER, 1: ROLE_MEMBER, 2: ROLE_MEMBER})
        ctx = self.context(make_cluster(status=CLUSTERED_STATUS), instances)

        outcome = self.topology.reconcile(ctx)

        self.assertEqual(outcome.reason, "StateTransferInProgress")
        self.assertEqual(self.agents.actions(), [])

    def test_down_instance_does_not_block_later_joins(self):
        """{0,3,4} holds quorum of five; 1 is down and 2 still rejoins."""
        self.agents = FakeGaleraCluster(5)
        self.agents.form([0, 3, 4])
        node = self.agents.nodes[2]
        node.state, node.cluster_uuid, node.members = "disconnected", "uuid-1", {2}
        instances = make_instances(5, roles={o: ROLE_MEMBER for o in range(5)})
        instances[1].running = False
        instances[1].ready = False
        ctx = self.context(make_cluster(replicas=5, status=CLUSTERED_STATUS), instances)

        outcome = self.topology.reconcile(ctx)

        self.assertEqual(self.agents.actions(), [("join", 2, 0)])
        self.assertEqual(outcome.phase, PHASE_RECOVERING)
        self.assertEqual(outcome.reason, "WaitingForInstances")
        self.assertEqual(outcome.status["galera"]["members"], [0, 2, 3, 4])

    def test_seed_serving_state_transfer_is_not_bootstrapped_again(self):
        """Seed 0 is donor to joining 1 after an interrupted pass."""
        for ordinal, state in ((0, "donor"), (1, "joining")):
            node = self.agents.nodes[ordinal]
            node.state, node.cluster_uuid, node.members = state, "uuid-boot-0", {0, 1}
            node.primary = True
        instances = make_instances(3, roles={0: ROLE_SEED, 1: ROLE_MEMBER, 2: ROLE_MEMBER})
        ctx = self.context(make_cluster(), instances)

        outcome = self.topology.reconcile(ctx)

        self.assertEqual(self.agents.actions(), [])
        self.assertEqual(outcome.phase, PHASE_BOOTSTRAPPING)
        self.assertEqual(outcome.reason, "StateTransferInProgress")
        self.assertFalse(outcome.ready)
        self.assertEqual(self.registry.roles()[0], ROLE_SEED)

    def test_full_recovery_from_most_advanced_marker(self):
        for ordinal, marker in ((0, 5), (1, 9), (2, 9)):
            node = self.agents.nodes[ordinal]
            node.state, node.cluster_uuid, node.members = "disconnected", "uuid-1", {ordinal}
            node.marker = marker
        roles = {0: ROLE_MEMBER, 1: ROLE_MEMBER, 2: ROLE_MEMBER}
        instances = make_instances(3, roles=roles)
        ctx = self.context(make_cluster(status=CLUSTERED_STATUS), instances)

        outcome = self.topology.reconcile(ctx)

        self.assertEqual(
            self.agents.actions(),
            [("bootstrap", 1), ("join", 0, 1), ("join", 2, 1)],
        )
        self.assertEqual(outcome.phase, PHASE_CLUSTERED)
        self.assertIn("GaleraRecovery", self.recorder.reasons())
        self.assertLessEqual(max(seed_counts(self.registry.patches, roles)), 1)
        self.assertEqual(self.registry.roles(), roles)

    def test_recovery_halts_without_usable_marker(self):
        for ordinal in range(3):
            node = self.agents.nodes[ordinal]
            node.state, node.cluster_uuid, node.members = "disconnected", "uuid-1", {ordinal}
        instances = make_instances(3, roles={0: ROLE_MEMBER, 1: ROLE_MEMBER, 2: ROLE_MEMBER})
        ctx = self.context(make_cluster(status=CLUSTERED_STATUS), instances)

        with self.assertRaises(RecoveryHaltedError):
            self.topology.reconcile(ctx)

        self.assertEqual(self.agents.actions(), [])
        self.assertIn("GaleraRecoveryHalted", self.recorder.reasons())

    def test_forced_bootstrap_index(self):
        for ordinal in range(3):
            node = self.agents.nodes[ordinal]
            node.state, node.cluster_uuid, node.members = "disconnected", "uuid-1", {ordinal}
        instances = make_instances(3, roles={0: ROLE_MEMBER, 1: ROLE_MEMBER, 2: ROLE_MEMBER})
        obj = make_cluster(
            status=CLUSTERED_STATUS, galera={"recovery": {"forceBootstrapPodIndex": 2}}
        )
        ctx = self.context(obj, instances)

        outcome = self.topology.reconcile(ctx)

        self.assertEqual(self.agents.actions()[0], ("bootstrap", 2))
        self.assertNotIn(("marker", 0), self.agents.calls)
        self.assertEqual(outcome.phase, PHASE_CLUSTERED)

    def test_two_seeds_is_a_conflict(self):
        instances = make_instances(3, roles={0: ROLE_SEED, 1: ROLE_SEED})
        ctx = self.context(make_cluster(), instances)

        with self.assertRaises(ConflictingObservationError):
            self.topology.reconcile(ctx)
        self.assertEqual(self.agents.actions(), [])

    def test_join_timeout_is_transient(self):
        self.topology = GaleraTopology(GaleraConfig(join_timeout=0, poll_interval=0))
        self.agents.form([0, 1])
        self.agents.stalled.add(2)
        instances = make_instances(3, roles={0: ROLE_MEMBER, 1: ROLE_MEMBER, 2: ROLE_MEMBER})
        ctx = self.context(make_cluster(status=CLUSTERED_STATUS), instances)

        with self.assertRaises(TransientError) as raised:
            self.topology.reconcile(ctx)
        self.assertEqual(raised.exception.reason, "JoinTimeout")

    def test_shutdown_aborts_pass(self):
        instances = make_instances(3)
        stop = threading.Event()
        stop.set()
        ctx = make_context(make_cluster(), instances, self.agents, stop=stop)

        with self.assertRaises(ReconcileAborted):
            self.topology.reconcile(ctx)
        self.assertEqual(self.agents.actions(), [])

    def test_clustered_pass_is_idempotent(self):
        self.agents.form([0, 1, 2])
        instances = make_instances(3, roles={0: ROLE_MEMBER, 1: ROLE_MEMBER, 2: ROLE_MEMBER})
        ctx = self.context(make_cluster(status=CLUSTERED_STATUS), instances)

        outcome = self.topology.reconcile(ctx)

        self.assertEqual(outcome.phase, PHASE_CLUSTERED)
        self.assertEqual(outcome.requeue_after, 30)
        self.assertEqual(self.agents.actions(), [])
        self.assertEqual(self.registry.patches, [])
        self.assertEqual(self.recorder.events, [])


class TestGaleraInstanceEvents(unittest.TestCase):
    """Test the per-instance membership handler."""

    def setUp(self):
        self.topology = GaleraTopology(GaleraConfig())
        self.recorder = FakeRecorder()

    def test_ready_pod_reannotated_member(self):
        instances = make_instances(3, roles={0: ROLE_MEMBER, 1: ROLE_MEMBER})
        registry = FakeRegistry(instances)
        ctx = make_context(
            make_cluster(status=CLUSTERED_STATUS), instances, FakeGaleraCluster(), registry, self.recorder
        )

        self.topology.handle_instance_event(ctx, InstanceEvent("MODIFIED", instances[2]))

        self.assertEqual(registry.patches, [(2, ROLE_MEMBER)])

    def test_unready_pod_records_event(self):
        instances = make_instances(3, roles={0: ROLE_MEMBER, 1: ROLE_MEMBER, 2: ROLE_MEMBER})
        instances[1].ready = False
        registry = FakeRegistry(instances)
        ctx = make_context(
            make_cluster(status=CLUSTERED_STATUS), instances, FakeGaleraCluster(), registry, self.recorder
        )

        self.topology.handle_instance_event(ctx, InstanceEvent("MODIFIED", instances[1]))

        self.assertEqual(registry.patches, [])
        self.assertEqual(self.recorder.reasons(), ["GaleraMemberDown"])


if __name__ == "__main__":
    unittest.main()
