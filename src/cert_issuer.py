# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.

"""Issue certificates for services that request one through their `gencert` label."""

import logging

from context import ControllerContext
from kubernetes_service import ClusterError
from service_watcher import EventKind, ServiceEvent
from utils import cert_write_path, service_domain_name
from vault_client import VaultError

logger = logging.getLogger(__name__)

# Every certificate is also valid for the loopback address, for sidecar traffic.
LOOPBACK_IP_SANS = "127.0.0.1"


class CertIssuer:
    """Provision a PKI role, a read policy and a certificate for a service.

    The steps are not transactional: the first failing step abandons the event and leaves
    whatever earlier steps created in place. The service keeps `gencert: "true"`, so the
    issuance is retried the next time the service is observed with that label.
    """

    def __init__(self, context: ControllerContext):
        self.vault = context.vault
        self.cluster = context.cluster
        self.config = context.config

    def handle(self, event: ServiceEvent) -> bool:
        """Run the issuance sequence for a creation event.

        Returns:
            True if a certificate was issued, stored and the service label settled.
        """
        if event.kind is not EventKind.CREATED or event.gencert != "true" or not event.name:
            return False

        name, namespace = event.name, event.namespace
        cert_path = cert_write_path(namespace, name)

        try:
            self.vault.create_role(name, self.config.cluster_domain, self.config.role_max_ttl)
        except VaultError as e:
            logger.error("Role creation failed for service %s: %s", event.identity, e)
            return False

        try:
            self.vault.create_policy(name, cert_path)
        except VaultError as e:
            logger.error("Policy creation failed for service %s: %s", event.identity, e)
            return False

        try:
            material = self.vault.issue_certificate(
                name,
                common_name=service_domain_name(name, namespace, self.config.cluster_domain),
                ttl=self.config.pki_ttl,
                ip_sans=LOOPBACK_IP_SANS,
                alt_names=name,
            )
        except VaultError as e:
            logger.error("Certificate issuance failed for service %s: %s", event.identity, e)
            return False

        try:
            self.vault.write_certificate(cert_path, material)
        except VaultError as e:
            logger.error("Certificate write failed for service %s: %s", event.identity, e)
            return False

        try:
            self.cluster.set_service_label(namespace, name, "false")
        except ClusterError as e:
            logger.error("Could not settle label of service %s: %s", event.identity, e)
            return False

        logger.info("Certificate issued for service %s", event.identity)
        return True
