# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.

"""Rotate certificates that are about to expire.

A sweep looks at every service carrying a `gencert` label, reads its certificate and,
when the remaining validity drops to the rotation threshold, deletes the stored
certificate, re-arms the label so the issuer creates a new one, and rolls the deployments
serving the service so they pick it up. Sweeps are level-triggered: a missed event or a
controller restart is caught up by the next sweep.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Optional

import kubernetes
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from context import ControllerContext
from kubernetes_service import ClusterError
from utils import cert_write_path
from vault_client import CertificateMaterial, VaultError, VaultForbidden, VaultNotFound

logger = logging.getLogger(__name__)


class CertificateParseError(ValueError):
    """Stored certificate material is not a usable certificate and key pair."""


def _public_bytes(public_key) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def seconds_remaining(material: CertificateMaterial, now: Optional[datetime] = None) -> float:
    """Seconds until the leaf certificate expires; negative once it has.

    The private key must load and match the certificate.

    Raises:
        CertificateParseError: if the certificate or key cannot be parsed, or do not match.
    """
    try:
        cert = x509.load_pem_x509_certificate(material.certificate.encode())
        key = serialization.load_pem_private_key(material.private_key.encode(), password=None)
    except (ValueError, TypeError) as e:
        raise CertificateParseError(f"Error parsing pki certificates: {e}") from e

    if _public_bytes(cert.public_key()) != _public_bytes(key.public_key()):
        raise CertificateParseError("Private key does not match certificate")

    now = now or datetime.now(timezone.utc)
    return (cert.not_valid_after_utc - now).total_seconds()


class CertChecker:
    """One-shot sweep over labelled services, rotating certificates close to expiry."""

    def __init__(self, context: ControllerContext):
        self.vault = context.vault
        self.cluster = context.cluster
        self.threshold = context.config.rotation_threshold_seconds

    def check(
        self, service: kubernetes.client.V1Service, now: Optional[datetime] = None
    ) -> Optional[float]:
        """Check the certificate of a service, rotating it if needed.

        Returns:
            The seconds the certificate had left, or None if it could not be inspected.
        """
        name = service.metadata.name
        namespace = service.metadata.namespace
        path = cert_write_path(namespace, name)

        try:
            material = self.vault.read_certificate(path)
        except VaultNotFound:
            logger.info(
                "Secret not present for service %s/%s; create the service to generate one",
                namespace,
                name,
            )
            return None
        except VaultForbidden:
            logger.error(
                "Access forbidden to the certificate of service %s/%s; "
                "add the right policy to access %s",
                namespace,
                name,
                path,
            )
            return None
        except VaultError as e:
            logger.error("Could not read certificate of service %s/%s: %s", namespace, name, e)
            return None

        try:
            remaining = seconds_remaining(material, now)
        except CertificateParseError as e:
            logger.error("Certificate of service %s/%s is unusable: %s", namespace, name, e)
            return None

        logger.info("Certificate expiring in %.0f sec for service %s/%s", remaining, namespace, name)
        if remaining <= self.threshold:
            self.rotate(namespace, name)
        return remaining

    def rotate(self, namespace: str, name: str) -> None:
        """Delete the stored certificate, re-arm issuance and roll dependent deployments.

        The new certificate is issued asynchronously by the issuer once it sees the label.
        """
        try:
            self.vault.delete(cert_write_path(namespace, name))
        except VaultNotFound:
            pass
        except VaultError as e:
            logger.error("Error in deleting certificates of service %s/%s: %s", namespace, name, e)

        try:
            self.cluster.set_service_label(namespace, name, "true")
        except ClusterError as e:
            logger.error("Could not re-arm certificate of service %s/%s: %s", namespace, name, e)
        self.cluster.stamp_deployments(name)

    def sweep(self, now: Optional[datetime] = None) -> Dict[str, str]:
        """Check every labelled service once.

        Returns:
            For each service (`namespace/name`): "rotated", "valid" or "skipped".

        Raises:
            ClusterError: if the services cannot be listed.
        """
        outcome = {}
        for service in self.cluster.list_labeled_services():
            identity = f"{service.metadata.namespace}/{service.metadata.name}"
            remaining = self.check(service, now)
            if remaining is None:
                outcome[identity] = "skipped"
            elif remaining <= self.threshold:
                outcome[identity] = "rotated"
            else:
                outcome[identity] = "valid"
        return outcome


class RotationWorker:
    """Daemon thread running a certificate sweep at a fixed interval."""

    def __init__(self, checker: CertChecker, interval: float):
        self._checker = checker
        self._interval = interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the background worker thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="rotation-worker", daemon=True)
        self._thread.start()
        logger.info("Rotation worker started (interval=%ds)", self._interval)

    def stop(self) -> None:
        """Signal the worker to stop and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            logger.info("Rotation worker stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._checker.sweep()
            except ClusterError as e:
                # retried on the next tick
                logger.error("Certificate sweep failed: %s", e)
            except Exception:
                logger.exception("Certificate sweep failed unexpectedly")
            self._stop_event.wait(timeout=self._interval)
