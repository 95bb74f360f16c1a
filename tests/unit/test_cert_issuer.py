# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.

import json
import unittest
from unittest.mock import MagicMock

import responses
from requests.exceptions import ChunkedEncodingError
from urllib3.exceptions import MaxRetryError

from cert_issuer import CertIssuer
from helpers import VAULT_ADDR, make_context
from kubernetes_service import ClusterError, K8sServices
from service_watcher import EventKind, ServiceEvent

ROLE_URL = f"{VAULT_ADDR}/v1/pki/roles/web"
POLICY_URL = f"{VAULT_ADDR}/v1/sys/policy/web"
ISSUE_URL = f"{VAULT_ADDR}/v1/pki/issue/web"
CERT_URL = f"{VAULT_ADDR}/v1/secret/certs/ns1/web"

ISSUED = {
    "data": {
        "certificate": "CERT",
        "issuing_ca": "CA",
        "private_key": "KEY",
        "serial_number": "01",
        "private_key_type": "rsa",
    }
}


def request_event(labels=None, name="web", kind=EventKind.CREATED):
    return ServiceEvent(kind=kind, name=name, namespace="ns1", labels=labels or {})


class TestCertIssuer(unittest.TestCase):
    def setUp(self):
        self.context = make_context(cluster_domain="cluster.local", pki_ttl="24h")
        self.cluster = self.context.cluster
        self.issuer = CertIssuer(self.context)

    def add_vault_responses(self):
        responses.add(responses.POST, ROLE_URL, status=204)
        responses.add(responses.PUT, POLICY_URL, status=204)
        responses.add(responses.POST, ISSUE_URL, json=ISSUED, status=200)
        responses.add(responses.POST, CERT_URL, status=204)

    @responses.activate
    def test_no_label_means_no_secret_store_calls(self):
        for event in [
            request_event(),
            request_event({"gencert": "false"}),
            request_event({"gencert": "true"}, name=""),
            request_event({"gencert": "true"}, kind=EventKind.DELETED),
        ]:
            with self.subTest(event=event):
                self.assertFalse(self.issuer.handle(event))

        self.assertEqual(len(responses.calls), 0)
        self.cluster.set_service_label.assert_not_called()

    @responses.activate
    def test_issuance(self):
        self.add_vault_responses()

        self.assertTrue(self.issuer.handle(request_event({"gencert": "true"})))

        self.assertEqual(
            [(c.request.method, c.request.url) for c in responses.calls],
            [
                ("POST", ROLE_URL),
                ("PUT", POLICY_URL),
                ("POST", ISSUE_URL),
                ("POST", CERT_URL),
            ],
        )
        policy = json.loads(responses.calls[1].request.body)
        self.assertIn('path "secret/certs/ns1/web"', policy["rules"])
        issue = json.loads(responses.calls[2].request.body)
        self.assertEqual(issue["common_name"], "web.ns1.svc.cluster.local")
        self.assertEqual(issue["alt_names"], "web")
        self.assertEqual(issue["ip_sans"], "127.0.0.1")
        self.assertEqual(issue["ttl"], "24h")
        self.assertEqual(json.loads(responses.calls[3].request.body), ISSUED["data"])
        self.cluster.set_service_label.assert_called_once_with("ns1", "web", "false")

    @responses.activate
    def test_reissuance_with_existing_role_and_policy(self):
        self.add_vault_responses()

        self.assertTrue(self.issuer.handle(request_event({"gencert": "true"})))
        self.assertTrue(self.issuer.handle(request_event({"gencert": "true"})))

        # the certificate is always written to the same path, never to a second entry
        writes = [c for c in responses.calls if c.request.url == CERT_URL]
        self.assertEqual(len(writes), 2)
        self.assertEqual(self.cluster.set_service_label.call_count, 2)

    @responses.activate
    def test_role_failure_abandons_the_event(self):
        responses.add(responses.POST, ROLE_URL, status=500)

        with self.assertLogs("cert_issuer", level="ERROR"):
            self.assertFalse(self.issuer.handle(request_event({"gencert": "true"})))

        self.assertEqual(len(responses.calls), 1)
        self.cluster.set_service_label.assert_not_called()

    @responses.activate
    def test_policy_failure_abandons_the_event(self):
        responses.add(responses.POST, ROLE_URL, status=204)
        responses.add(responses.PUT, POLICY_URL, status=403)

        with self.assertLogs("cert_issuer", level="ERROR"):
            self.assertFalse(self.issuer.handle(request_event({"gencert": "true"})))

        self.assertEqual(len(responses.calls), 2)
        self.cluster.set_service_label.assert_not_called()

    @responses.activate
    def test_issue_failure_abandons_the_event(self):
        responses.add(responses.POST, ROLE_URL, status=204)
        responses.add(responses.PUT, POLICY_URL, status=204)
        responses.add(responses.POST, ISSUE_URL, json={"errors": ["denied"]}, status=400)

        with self.assertLogs("cert_issuer", level="ERROR"):
            self.assertFalse(self.issuer.handle(request_event({"gencert": "true"})))

        self.assertEqual(len(responses.calls), 3)
        self.cluster.set_service_label.assert_not_called()

    @responses.activate
    def test_write_failure_keeps_the_label(self):
        responses.add(responses.POST, ROLE_URL, status=204)
        responses.add(responses.PUT, POLICY_URL, status=204)
        responses.add(responses.POST, ISSUE_URL, json=ISSUED, status=200)
        responses.add(responses.POST, CERT_URL, status=500)

        with self.assertLogs("cert_issuer", level="ERROR"):
            self.assertFalse(self.issuer.handle(request_event({"gencert": "true"})))

        self.cluster.set_service_label.assert_not_called()

    @responses.activate
    def test_label_failure_is_reported(self):
        self.add_vault_responses()
        self.cluster.set_service_label.side_effect = ClusterError("conflict")

        with self.assertLogs("cert_issuer", level="ERROR"):
            self.assertFalse(self.issuer.handle(request_event({"gencert": "true"})))

    @responses.activate
    def test_truncated_vault_response_abandons_the_event(self):
        responses.add(responses.POST, ROLE_URL, status=204)
        responses.add(responses.PUT, POLICY_URL, status=204)
        responses.add(responses.POST, ISSUE_URL, body=ChunkedEncodingError("connection reset"))

        with self.assertLogs("cert_issuer", level="ERROR"):
            self.assertFalse(self.issuer.handle(request_event({"gencert": "true"})))

        self.cluster.set_service_label.assert_not_called()

    @responses.activate
    def test_unreachable_api_server_is_reported(self):
        self.add_vault_responses()
        cluster = K8sServices()
        cluster.core = MagicMock()
        cluster.core.read_namespaced_service.side_effect = MaxRetryError(
            pool=None, url="/api/v1/namespaces/ns1/services/web"
        )
        issuer = CertIssuer(make_context(cluster=cluster))

        with self.assertLogs("cert_issuer", level="ERROR"):
            self.assertFalse(issuer.handle(request_event({"gencert": "true"})))

        cluster.core.replace_namespaced_service.assert_not_called()
