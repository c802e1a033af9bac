#!/usr/bin/env python3
# tests/test_dependents.py
"""
Test suite for dependent object manifests, the generic object reconciler
and API group discovery.
"""

import os
import sys
import unittest
from unittest.mock import Mock

sys.path.insert(0, os.path.dirname(__file__))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from fakes import make_cluster
from kubernetes.client.rest import ApiException
from kubernetes.dynamic.exceptions import NotFoundError

from dependents import Builder, DiscoveryClient, ObjectReconciler, is_subset, strip_fields
from errors import TransientError
from resources import GALERA_ANNOTATION, MARIADB_ANNOTATION, REPLICATION_ANNOTATION, ClusterResource


def cluster(mode="galera", **spec_extra):
    return ClusterResource.from_object(make_cluster(mode, **spec_extra))


class TestSubset(unittest.TestCase):
    def test_live_defaults_ignored(self):
        desired = {"spec": {"replicas": 3}}
        live = {"spec": {"replicas": 3, "revisionHistoryLimit": 10}, "status": {}}
        self.assertTrue(is_subset(desired, live))

    def test_changed_value_detected(self):
        self.assertFalse(is_subset({"spec": {"replicas": 3}}, {"spec": {"replicas": 1}}))

    def test_lists_compared_elementwise(self):
        desired = {"ports": [{"port": 3306}]}
        self.assertTrue(is_subset(desired, {"ports": [{"port": 3306, "protocol": "TCP"}]}))
        self.assertFalse(is_subset(desired, {"ports": [{"port": 3306}, {"port": 5555}]}))

    def test_strip_fields(self):
        obj = {"spec": {"selector": {"a": "b"}, "replicas": 3}}
        self.assertEqual(strip_fields(obj, [("spec", "selector")]), {"spec": {"replicas": 3}})
        self.assertIn("selector", obj["spec"])


class TestBuilder(unittest.TestCase):
    def setUp(self):
        self.builder = Builder(agent_image="agent:test")

    def test_internal_service_is_headless_with_galera_ports(self):
        services = self.builder.services(cluster())
        self.assertEqual(len(services), 2)

        internal = services[1]
        self.assertEqual(internal["metadata"]["name"], "mariadb-internal")
        self.assertEqual(internal["spec"]["clusterIP"], "None")
        self.assertTrue(internal["spec"]["publishNotReadyAddresses"])
        names = [p["name"] for p in internal["spec"]["ports"]]
        self.assertEqual(names, ["mysql", "agent", "galera", "ist", "sst"])

    def test_replication_primary_service_has_no_selector(self):
        services = self.builder.services(cluster("replication"))

        primary = services[2]
        self.assertEqual(primary["metadata"]["name"], "mariadb-primary")
        self.assertNotIn("selector", primary["spec"])

    def test_primary_endpoints(self):
        endpoints = self.builder.primary_endpoints(cluster("replication"), "10.0.0.12")

        self.assertEqual(endpoints["metadata"]["name"], "mariadb-primary")
        self.assertEqual(endpoints["subsets"][0]["addresses"], [{"ip": "10.0.0.12"}])
        self.assertIsNone(self.builder.primary_endpoints(cluster("replication"), None))
        self.assertIsNone(self.builder.primary_endpoints(cluster(), "10.0.0.12"))

    def test_pod_annotations_carry_owner_and_mode(self):
        galera = self.builder.statefulset(cluster())
        annotations = galera["spec"]["template"]["metadata"]["annotations"]
        self.assertEqual(annotations, {MARIADB_ANNOTATION: "mariadb", GALERA_ANNOTATION: ""})

        replication = self.builder.statefulset(cluster("replication"))
        annotations = replication["spec"]["template"]["metadata"]["annotations"]
        self.assertIn(REPLICATION_ANNOTATION, annotations)

    def test_statefulset_containers(self):
        sts = self.builder.statefulset(cluster(metrics={"enabled": True}))

        self.assertEqual(sts["spec"]["podManagementPolicy"], "Parallel")
        self.assertEqual(sts["spec"]["serviceName"], "mariadb-internal")
        containers = sts["spec"]["template"]["spec"]["containers"]
        self.assertEqual([c["name"] for c in containers], ["mariadb", "agent", "metrics"])
        self.assertEqual(containers[1]["image"], "agent:test")

    def test_standalone_has_no_agent(self):
        sts = self.builder.statefulset(cluster("none", replicas=1))

        containers = sts["spec"]["template"]["spec"]["containers"]
        self.assertEqual([c["name"] for c in containers], ["mariadb"])

    def test_owner_reference(self):
        config = self.builder.config_map(cluster())

        owner = config["metadata"]["ownerReferences"][0]
        self.assertEqual(owner["kind"], "MariaDB")
        self.assertEqual(owner["uid"], "uid-1")
        self.assertIn("wsrep_on=ON", config["data"]["my.cnf"])


class TestObjectReconciler(unittest.TestCase):
    def setUp(self):
        self.dynamic = Mock()
        self.resource = self.dynamic.resources.get.return_value
        self.objects = ObjectReconciler(self.dynamic)
        self.desired = Builder().services(cluster())[0]

    def test_creates_missing_object(self):
        self.resource.get.side_effect = NotFoundError(ApiException(status=404, reason="Not Found"))

        self.assertEqual(self.objects.ensure(self.desired), "created")
        self.resource.create.assert_called_once_with(body=self.desired, namespace="default")

    def test_unchanged_when_live_matches(self):
        live = Mock()
        live.to_dict.return_value = dict(self.desired, status={})
        self.resource.get.return_value = live

        self.assertEqual(self.objects.ensure(self.desired), "unchanged")
        self.resource.patch.assert_not_called()

    def test_patches_drift(self):
        drifted = dict(self.desired, spec={"ports": [], "selector": {}})
        live = Mock()
        live.to_dict.return_value = drifted
        self.resource.get.return_value = live

        self.assertEqual(self.objects.ensure(self.desired), "patched")
        kwargs = self.resource.patch.call_args[1]
        self.assertEqual(kwargs["content_type"], "application/merge-patch+json")
        self.assertEqual(kwargs["name"], "mariadb")

    def test_api_error_is_transient(self):
        self.resource.get.side_effect = ApiException(status=500, reason="Internal Server Error")

        with self.assertRaises(TransientError):
            self.objects.ensure(self.desired)

    def test_get_missing_returns_none(self):
        self.resource.get.side_effect = NotFoundError(ApiException(status=404, reason="Not Found"))

        self.assertIsNone(self.objects.get("apps/v1", "StatefulSet", "mariadb", "default"))


class TestDiscoveryClient(unittest.TestCase):
    def test_groups_cached_until_invalidated(self):
        apis_api = Mock()
        group = Mock()
        group.name = "monitoring.coreos.com"
        apis_api.get_api_versions.return_value.groups = [group]
        discovery = DiscoveryClient(apis_api)

        self.assertTrue(discovery.has_api_group("monitoring.coreos.com"))
        self.assertFalse(discovery.has_api_group("example.com"))
        self.assertEqual(apis_api.get_api_versions.call_count, 1)

        discovery.invalidate()
        discovery.has_api_group("monitoring.coreos.com")
        self.assertEqual(apis_api.get_api_versions.call_count, 2)


if __name__ == "__main__":
    unittest.main()
