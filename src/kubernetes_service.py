# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.

"""A thin layer over the Kubernetes API for reading and labelling services and deployments."""

import logging
from datetime import datetime
from typing import List, Optional

import kubernetes
from urllib3.exceptions import HTTPError

from utils import rollout_stamp

logger = logging.getLogger(__name__)

# Label driving the certificate lifecycle of a service: "true" requests a (re)issue,
# "false" marks an issued and stable certificate.
GENCERT_LABEL = "gencert"
# Pod template label linking a deployment to the service whose certificate it mounts.
SERVICE_LABEL = "service"
ROLLOUT_LABEL = "lastcertupdate"

# Refusals from the API server, and transport failures reaching it.
API_ERRORS = (kubernetes.client.exceptions.ApiException, HTTPError)


class ClusterError(RuntimeError):
    """Talking to the Kubernetes API failed."""


class K8sServices:
    """Access to the services and deployments whose certificates are managed."""

    def __init__(self, api_client: Optional[kubernetes.client.ApiClient] = None):
        self.core = kubernetes.client.CoreV1Api(api_client)
        self.apps = kubernetes.client.AppsV1Api(api_client)

    @classmethod
    def connect(cls, in_cluster: bool = True) -> "K8sServices":
        """Authenticate with the Kubernetes API and check we may list services.

        Args:
            in_cluster: use the mounted ServiceAccount token; otherwise the local kubeconfig.

        Raises:
            ClusterError: if no cluster configuration is available or listing is forbidden.
        """
        try:
            if in_cluster:
                kubernetes.config.load_incluster_config()
            else:
                kubernetes.config.load_kube_config()
        except kubernetes.config.ConfigException as e:
            raise ClusterError(f"No Kubernetes configuration available: {e}") from e

        services = cls()
        try:
            services.core.list_service_for_all_namespaces(limit=1)
        except API_ERRORS as e:
            if getattr(e, "status", None) == 403:
                raise ClusterError(
                    "No permission to list services. "
                    "Grant the controller's service account list/watch/update on services."
                ) from e
            raise ClusterError(f"Failed to list services: {e}") from e
        return services

    def list_labeled_services(self, label: str = GENCERT_LABEL) -> List[kubernetes.client.V1Service]:
        """Every service, in any namespace, carrying a non-empty `label`."""
        try:
            services = self.core.list_service_for_all_namespaces()
        except API_ERRORS as e:
            raise ClusterError(f"Error in getting list of services: {e}") from e
        return [s for s in services.items if (s.metadata.labels or {}).get(label)]

    def set_service_label(
        self, namespace: str, name: str, value: str, label: str = GENCERT_LABEL
    ) -> None:
        """Set `label` of a service to `value`, fetching the latest version first."""
        try:
            service = self.core.read_namespaced_service(name=name, namespace=namespace)
            labels = dict(service.metadata.labels or {})
            labels[label] = value
            service.metadata.labels = labels
            self.core.replace_namespaced_service(name=name, namespace=namespace, body=service)
        except API_ERRORS as e:
            raise ClusterError(f"Error in updating service {namespace}/{name}: {e}") from e
        logger.debug("Service %s/%s labelled %s=%s", namespace, name, label, value)

    def stamp_deployments(self, service: str, now: Optional[datetime] = None) -> List[str]:
        """Trigger a rolling update of every deployment serving `service`.

        Deployments are matched on their pod template label `service`; the template is
        stamped with a fresh `lastcertupdate` label so a new rollout starts.

        Returns:
            The names of the deployments updated. Stamping stops at the first failure.
        """
        stamp = rollout_stamp(now or datetime.now())
        try:
            deployments = self.apps.list_deployment_for_all_namespaces()
        except API_ERRORS as e:
            logger.error("Error in getting list of deployments: %s", e)
            return []

        updated = []
        for d in deployments.items:
            template_meta = d.spec.template.metadata
            if template_meta is None or (template_meta.labels or {}).get(SERVICE_LABEL) != service:
                continue

            template_meta.labels[ROLLOUT_LABEL] = stamp
            try:
                self.apps.replace_namespaced_deployment(
                    name=d.metadata.name, namespace=d.metadata.namespace, body=d
                )
            except API_ERRORS as e:
                logger.error("Error in rolling update for %s: %s", d.metadata.name, e)
                break
            logger.info("Rolling update initiated for %s", d.metadata.name)
            updated.append(d.metadata.name)
        return updated
