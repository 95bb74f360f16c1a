# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.

"""Remove the certificate, PKI role and policy of deleted services."""

import logging
from dataclasses import dataclass
from typing import Optional

from context import ControllerContext
from service_watcher import EventKind, ServiceEvent
from utils import cert_write_path, pki_role_path, policy_path
from vault_client import VaultError, VaultNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RevocationResult:
    """Outcome of each independent deletion."""

    certificate: bool
    role: bool
    policy: bool

    @property
    def complete(self) -> bool:
        return self.certificate and self.role and self.policy


class CertRevoker:
    """Clean up everything issued for a service once the service is gone."""

    def __init__(self, context: ControllerContext):
        self.vault = context.vault

    def _delete(self, what: str, path: str, identity: str) -> bool:
        try:
            self.vault.delete(path)
        except VaultNotFound:
            logger.info("%s of service %s already gone", what, identity)
            return True
        except VaultError as e:
            logger.error("%s delete failed for service %s: %s", what, identity, e)
            return False
        logger.info("%s deleted successfully for service %s", what, identity)
        return True

    def handle(self, event: ServiceEvent) -> Optional[RevocationResult]:
        """Delete certificate, role and policy of a deleted service.

        Each deletion is attempted regardless of how the others went; failures are only
        reported through the logs.

        Returns:
            The outcome per sub-resource, or None if the event was not acted upon.
        """
        if event.kind is not EventKind.DELETED or not event.gencert or not event.name:
            return None

        return RevocationResult(
            certificate=self._delete(
                "Certificate", cert_write_path(event.namespace, event.name), event.identity
            ),
            role=self._delete("PKI Role", pki_role_path(event.name), event.identity),
            policy=self._delete("Policy", policy_path(event.name), event.identity),
        )
