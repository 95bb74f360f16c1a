# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.

"""Helper for interacting with the Vault secret store throughout the controller's lifecycle."""

import logging
from dataclasses import asdict, dataclass
from typing import Optional

import requests
from requests.exceptions import RequestException

from utils import cert_issue_path, pki_role_path, policy_path

logger = logging.getLogger(__name__)


class VaultError(Exception):
    """A request against Vault failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class VaultConnectionError(VaultError):
    """Vault could not be reached."""


class VaultForbidden(VaultError):
    """The token in use is not allowed to perform the request."""


class VaultNotFound(VaultError):
    """The requested path does not exist."""


class VaultDecodeError(VaultError):
    """Vault answered with a body that could not be decoded."""


@dataclass(frozen=True)
class CertificateMaterial:
    """Certificate, key and issuing CA issued for a service by the PKI engine."""

    certificate: str
    issuing_ca: str
    private_key: str
    serial_number: str
    private_key_type: str

    @classmethod
    def from_dict(cls, data: dict) -> "CertificateMaterial":
        """Build certificate material from the `data` section of a Vault response.

        Raises:
            VaultDecodeError: if a required field is missing.
        """
        try:
            return cls(
                certificate=data["certificate"],
                issuing_ca=data["issuing_ca"],
                private_key=data["private_key"],
                serial_number=data.get("serial_number", ""),
                private_key_type=data.get("private_key_type", ""),
            )
        except (KeyError, TypeError) as e:
            raise VaultDecodeError(f"Missing certificate field: {e}") from e

    def to_dict(self) -> dict:
        """Fields as stored at the certificate path."""
        return asdict(self)


class Vault:
    """A class that represents a Vault server reachable over its HTTP API."""

    def __init__(
        self,
        address: str = "http://vault:8200",
        token: Optional[str] = None,
        api_timeout=10.0,
    ):
        """Utility to talk to Vault.

        Args:
            address: Vault address, e.g. `https://vault:8200`.
            token: Optional; the token sent as `X-Vault-Token` with every request.
            api_timeout: Optional; timeout (in seconds) to observe when interacting with the API.
        """
        # Make sure the URL str does not end with a '/'
        self.base_url = address.rstrip("/")
        self.api_timeout = api_timeout
        self.session = requests.Session()
        if token:
            self.session.headers["X-Vault-Token"] = token

    def _url(self, path: str) -> str:
        return f"{self.base_url}/v1/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        """Send a request to Vault, mapping transport and status errors to `VaultError`s.

        Returns:
            The response, if its status is 200 or 204.

        Raises:
            VaultConnectionError: if the request or its response could not be transferred.
            VaultForbidden: on 403.
            VaultNotFound: on 404.
            VaultError: on any other unexpected status.
        """
        url = self._url(path)
        try:
            response = self.session.request(method, url, timeout=self.api_timeout, **kwargs)
        except RequestException as e:
            raise VaultConnectionError(f"{method} {url} failed: {e}") from e

        if response.status_code in (200, 204):
            return response
        if response.status_code == 403:
            raise VaultForbidden(f"{method} {path}: access forbidden", status=403)
        if response.status_code == 404:
            raise VaultNotFound(f"{method} {path}: not found", status=404)
        raise VaultError(
            f"{method} {path}: unexpected response {response.status_code}: {response.text}",
            status=response.status_code,
        )

    @staticmethod
    def _json(response: requests.Response) -> dict:
        try:
            body = response.json()
        except ValueError as e:
            raise VaultDecodeError(f"Invalid JSON from Vault: {e}") from e
        if not isinstance(body, dict):
            raise VaultDecodeError("Invalid JSON from Vault: expected an object")
        return body

    def create_role(self, name: str, allowed_domains: str, max_ttl: str) -> None:
        """Create (or overwrite) the PKI role for a service.

        Args:
            name: role name, the same as the service name.
            allowed_domains: domain the issued names must belong to.
            max_ttl: upper bound for certificates issued against this role.
        """
        parameters = {
            "allow_any_name": "true",
            "allowed_domains": allowed_domains,
            "allow_subdomains": "true",
            "max_ttl": max_ttl,
            "enforce_hostnames": "true",
        }
        self._request("POST", pki_role_path(name), json=parameters)
        logger.info("Role %s created successfully", name)

    def create_policy(self, name: str, cert_path: str) -> None:
        """Create (or overwrite) a policy granting read access to `cert_path` only."""
        rules = f'path "{cert_path}" {{\n  capabilities = ["read"]\n}}'
        self._request("PUT", policy_path(name), json={"rules": rules})
        logger.info("Policy %s created successfully", name)

    def issue_certificate(
        self, role: str, common_name: str, ttl: str, ip_sans: str, alt_names: str
    ) -> CertificateMaterial:
        """Ask the PKI engine to issue a certificate against `role`.

        Returns:
            The issued certificate material.
        """
        parameters = {
            "common_name": common_name,
            "ttl": ttl,
            "ip_sans": ip_sans,
            "alt_names": alt_names,
        }
        response = self._request("POST", cert_issue_path(role), json=parameters)
        material = CertificateMaterial.from_dict(self._json(response).get("data") or {})
        logger.info("Certificate %s issued for %s", material.serial_number, common_name)
        return material

    def write_certificate(self, path: str, material: CertificateMaterial) -> None:
        """Store certificate material at `path`."""
        self._request("POST", path, json=material.to_dict())
        logger.info("Certificates written at %s", path)

    def read_certificate(self, path: str) -> CertificateMaterial:
        """Read the certificate material stored at `path`."""
        response = self._request("GET", path)
        return CertificateMaterial.from_dict(self._json(response).get("data") or {})

    def delete(self, path: str) -> None:
        """Delete whatever lives at `path` (secret, role or policy)."""
        logger.info("Deleting %s", path)
        self._request("DELETE", path)

    def unwrap(self) -> dict:
        """Unwrap the response-wrapped secret referenced by the token this client holds.

        The wrapping token itself is the credential, so the unwrap target is always the
        token in use and never a caller supplied one.

        Returns:
            The unwrapped secret, whose `auth.client_token` is the usable token.
        """
        response = self._request("POST", "sys/wrapping/unwrap")
        secret = self._json(response)
        if not (secret.get("auth") or {}).get("client_token"):
            raise VaultDecodeError("Unwrapped secret carries no client token")
        return secret


def client_token(secret: dict) -> str:
    """Extract the client token from an unwrapped secret."""
    try:
        return secret["auth"]["client_token"]
    except (KeyError, TypeError) as e:
        raise VaultDecodeError("Secret carries no client token") from e
