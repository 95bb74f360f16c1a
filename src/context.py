# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.

"""Process-wide dependencies handed to every controller component."""

from dataclasses import dataclass

from config import ControllerConfig
from kubernetes_service import K8sServices
from vault_client import Vault


@dataclass(frozen=True)
class ControllerContext:
    """Dependencies shared by the issuer, revoker and checker.

    Built once the Vault token has been obtained, and never modified afterwards: the
    token lives in `vault`, which is constructed with it.
    """

    config: ControllerConfig
    vault: Vault
    cluster: K8sServices
