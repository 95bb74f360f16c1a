# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional
from unittest.mock import MagicMock

import kubernetes
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from config import ControllerConfig
from context import ControllerContext
from kubernetes_service import K8sServices
from vault_client import CertificateMaterial, Vault

VAULT_ADDR = "http://vault:8200"
TOKEN = "s.client-token"


def generate_material(
    not_after: datetime, common_name: str = "web.ns1.svc.cluster.local"
) -> CertificateMaterial:
    """Self-signed certificate material expiring at `not_after`."""
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_after - timedelta(days=1))
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode()
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    return CertificateMaterial(
        certificate=cert_pem,
        issuing_ca=cert_pem,
        private_key=key_pem,
        serial_number=format(cert.serial_number, "x"),
        private_key_type="ec",
    )


def utc_now() -> datetime:
    """Current time, truncated to the second like certificate validity dates."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def make_service(
    name: str, namespace: str, labels: Optional[Dict[str, str]] = None
) -> kubernetes.client.V1Service:
    return kubernetes.client.V1Service(
        metadata=kubernetes.client.V1ObjectMeta(
            name=name, namespace=namespace, labels=labels, resource_version="1"
        )
    )


def make_deployment(
    name: str, namespace: str, template_labels: Dict[str, str]
) -> kubernetes.client.V1Deployment:
    return kubernetes.client.V1Deployment(
        metadata=kubernetes.client.V1ObjectMeta(name=name, namespace=namespace),
        spec=kubernetes.client.V1DeploymentSpec(
            selector=kubernetes.client.V1LabelSelector(match_labels=dict(template_labels)),
            template=kubernetes.client.V1PodTemplateSpec(
                metadata=kubernetes.client.V1ObjectMeta(labels=dict(template_labels))
            ),
        ),
    )


def make_context(cluster=None, **config) -> ControllerContext:
    """A context talking to a `responses`-mocked Vault and a mocked cluster."""
    return ControllerContext(
        config=ControllerConfig(**config),
        vault=Vault(VAULT_ADDR, token=TOKEN),
        cluster=cluster or MagicMock(spec=K8sServices),
    )
