# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.

"""Fetch a service's certificate from Vault and keep it on disk for the workload."""

import fcntl
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Union

from utils import cert_write_path
from vault_client import CertificateMaterial, Vault, VaultError, VaultForbidden, VaultNotFound

logger = logging.getLogger(__name__)

CERT_FILE = "cert.pem"
CA_CERT_FILE = "ca-cert.pem"
PRIVATE_KEY_FILE = "private.pem"


class CertificateFetchError(Exception):
    """The certificate could not be read within the allowed attempts."""


@dataclass(frozen=True)
class CertificateFiles:
    """PEM contents of the certificate files of a workload."""

    certificate: str
    ca_certificate: str
    private_key: str


@contextmanager
def _locked(secrets_dir: Path) -> Iterator[None]:
    """Hold an exclusive lock on the certificate file while its siblings are accessed."""
    secrets_dir.mkdir(parents=True, exist_ok=True)
    with open(secrets_dir / CERT_FILE, "a") as lock_file:
        fcntl.flock(lock_file, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file, fcntl.LOCK_UN)


def fetch_certificates(
    vault: Vault,
    namespace: str,
    service_name: str,
    attempts: int = 12,
    delay: float = 5.0,
    sleep: Callable[[float], None] = time.sleep,
) -> CertificateMaterial:
    """Poll Vault until the certificate of a service can be read.

    The certificate may not have been issued yet (404), or the policy granting access to
    it may not exist yet (403); both are retried.

    Raises:
        CertificateFetchError: if every attempt failed.
    """
    path = cert_write_path(namespace, service_name)
    logger.info("Reading certificates from %s", path)
    for attempt in range(attempts):
        if attempt:
            sleep(delay)
        try:
            material = vault.read_certificate(path)
        except VaultNotFound:
            logger.info("read certs: secret not present. Create service to generate certificate")
            continue
        except VaultForbidden:
            logger.warning("read certs: access Forbidden. Please add right policy to access secret")
            continue
        except VaultError as e:
            logger.warning("read certs: %s", e)
            continue
        logger.info("read certs success")
        return material
    raise CertificateFetchError(f"Certificate request timeout for {path}")


def write_certificate_files(material: CertificateMaterial, secrets_dir: Union[str, Path]) -> None:
    """Write the CA certificate, certificate and private key to `secrets_dir`."""
    secrets_dir = Path(secrets_dir)
    with _locked(secrets_dir):
        for filename, contents, mode in (
            (CA_CERT_FILE, material.issuing_ca, 0o644),
            (CERT_FILE, material.certificate, 0o644),
            (PRIVATE_KEY_FILE, material.private_key, 0o600),
        ):
            path = secrets_dir / filename
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
            with os.fdopen(fd, "w") as f:
                f.write(contents)
            os.chmod(path, mode)
            logger.info("wrote %s", path)


def load_certificate_files(secrets_dir: Union[str, Path]) -> CertificateFiles:
    """Read the certificate files written by `write_certificate_files`.

    This is the reading side for workloads sharing `secrets_dir` with the init
    container: the files are read under the same lock the writer holds, so a reader
    never sees a certificate paired with the key of a previous issuance. The controller
    itself only writes.

    Raises:
        OSError: if one of the files is missing or unreadable.
    """
    secrets_dir = Path(secrets_dir)
    if not (secrets_dir / CERT_FILE).exists():
        raise FileNotFoundError(f"Failed to read {secrets_dir / CERT_FILE}")
    with _locked(secrets_dir):
        return CertificateFiles(
            certificate=(secrets_dir / CERT_FILE).read_text(),
            ca_certificate=(secrets_dir / CA_CERT_FILE).read_text(),
            private_key=(secrets_dir / PRIVATE_KEY_FILE).read_text(),
        )


def remove_stale_files(secrets_dir: Union[str, Path], token_file: Union[str, Path]) -> None:
    """Remove a previously obtained token and certificate so fresh ones get requested."""
    secrets_dir = Path(secrets_dir)
    for path in (Path(token_file), *(secrets_dir / f for f in (CERT_FILE, CA_CERT_FILE, PRIVATE_KEY_FILE))):
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning("could not remove %s: %s", path, e)
