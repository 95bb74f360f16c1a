# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.
import unittest
from datetime import datetime
from unittest.mock import MagicMock, patch

import kubernetes
from urllib3.exceptions import MaxRetryError, ProtocolError

from helpers import make_deployment, make_service
from kubernetes_service import ClusterError, K8sServices


class TestK8sServices(unittest.TestCase):
    def setUp(self) -> None:
        self.services = K8sServices(api_client=MagicMock())
        self.services.core = MagicMock()
        self.services.apps = MagicMock()

    @patch("kubernetes_service.kubernetes.client.CoreV1Api.list_service_for_all_namespaces")
    @patch("kubernetes_service.kubernetes.config.load_incluster_config")
    def test_connect(self, load_config, list_svc):
        load_config.return_value = True

        K8sServices.connect()
        list_svc.assert_called_with(limit=1)

        # Now test what happens when listing a svc throws an exception
        list_svc.side_effect = kubernetes.client.exceptions.ApiException(status=403)
        with self.assertRaises(ClusterError) as ctx:
            K8sServices.connect()
        self.assertIn("No permission", str(ctx.exception))

    @patch("kubernetes_service.kubernetes.config.load_incluster_config")
    def test_connect_without_cluster_config(self, load_config):
        load_config.side_effect = kubernetes.config.ConfigException("not in a cluster")
        self.assertRaises(ClusterError, K8sServices.connect)

    def test_list_labeled_services(self):
        self.services.core.list_service_for_all_namespaces.return_value = MagicMock(
            items=[
                make_service("web", "ns1", {"gencert": "false"}),
                make_service("db", "ns1", {"gencert": "true"}),
                make_service("plain", "ns1", {"app": "plain"}),
                make_service("unlabelled", "ns2"),
                make_service("empty", "ns2", {"gencert": ""}),
            ]
        )

        names = [s.metadata.name for s in self.services.list_labeled_services()]
        self.assertEqual(names, ["web", "db"])

    def test_list_labeled_services_failure(self):
        self.services.core.list_service_for_all_namespaces.side_effect = (
            kubernetes.client.exceptions.ApiException(status=500)
        )
        self.assertRaises(ClusterError, self.services.list_labeled_services)

    def test_set_service_label(self):
        service = make_service("web", "ns1", {"gencert": "true", "app": "web"})
        self.services.core.read_namespaced_service.return_value = service

        self.services.set_service_label("ns1", "web", "false")

        self.services.core.read_namespaced_service.assert_called_with(name="web", namespace="ns1")
        self.services.core.replace_namespaced_service.assert_called_once()
        body = self.services.core.replace_namespaced_service.call_args.kwargs["body"]
        self.assertEqual(body.metadata.labels, {"gencert": "false", "app": "web"})

    def test_set_service_label_failure(self):
        self.services.core.read_namespaced_service.side_effect = (
            kubernetes.client.exceptions.ApiException(status=404)
        )
        with self.assertRaises(ClusterError):
            self.services.set_service_label("ns1", "web", "false")

    def test_stamp_deployments(self):
        self.services.apps.list_deployment_for_all_namespaces.return_value = MagicMock(
            items=[
                make_deployment("web-v1", "ns1", {"service": "web"}),
                make_deployment("db", "ns1", {"service": "db"}),
                make_deployment("web-v2", "ns2", {"service": "web", "app": "web"}),
            ]
        )

        updated = self.services.stamp_deployments("web", now=datetime(2021, 3, 4, 5, 6, 7))

        self.assertEqual(updated, ["web-v1", "web-v2"])
        replaced = [
            c.kwargs["body"] for c in self.services.apps.replace_namespaced_deployment.call_args_list
        ]
        self.assertEqual([d.metadata.name for d in replaced], ["web-v1", "web-v2"])
        for d in replaced:
            self.assertEqual(
                d.spec.template.metadata.labels["lastcertupdate"], "04-03-2021T05.06.07"
            )

    def test_stamp_deployments_stops_at_first_failure(self):
        self.services.apps.list_deployment_for_all_namespaces.return_value = MagicMock(
            items=[
                make_deployment("web-v1", "ns1", {"service": "web"}),
                make_deployment("web-v2", "ns2", {"service": "web"}),
            ]
        )
        self.services.apps.replace_namespaced_deployment.side_effect = (
            kubernetes.client.exceptions.ApiException(status=409)
        )

        with self.assertLogs("kubernetes_service", level="ERROR"):
            updated = self.services.stamp_deployments("web")

        self.assertEqual(updated, [])
        self.assertEqual(self.services.apps.replace_namespaced_deployment.call_count, 1)

    def test_unreachable_api_server(self):
        unreachable = MaxRetryError(pool=None, url="/api/v1/services")
        self.services.core.list_service_for_all_namespaces.side_effect = unreachable
        self.services.core.read_namespaced_service.side_effect = ProtocolError("Connection broken")
        self.services.apps.list_deployment_for_all_namespaces.side_effect = unreachable

        self.assertRaises(ClusterError, self.services.list_labeled_services)
        self.assertRaises(ClusterError, self.services.set_service_label, "ns1", "web", "true")
        with self.assertLogs("kubernetes_service", level="ERROR"):
            self.assertEqual(self.services.stamp_deployments("web"), [])
