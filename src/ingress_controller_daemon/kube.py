"""
Kubernetes Control-Plane Connection

Builds the kubernetes ApiClient that the manager owns and shares with every
subsystem, and validates that the API server is reachable before the
daemon commits to starting.

Connection resolution:
    1. APISERVER_HOST / KUBECONFIG / KUBE_CONTEXT given: out-of-cluster
       kubeconfig, optionally overriding the server URL
    2. Nothing given: in-cluster service account configuration

Error Handling Strategy:
    - Missing/invalid kubeconfig: ConfigException from the kubernetes client,
      wrapped into ManagerError by the caller
    - 401/403 from the version endpoint: credentials or RBAC problem,
      re-raised immediately
    - Network errors: re-raised; no retry at construction time
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from kubernetes import client as k8s
from kubernetes import config as k8s_config

logger = logging.getLogger(os.getenv("LOGGER_NAME", "INGRESS_CONTROLLER"))

DEFAULT_API_TIMEOUT = 30


@dataclass(frozen=True)
class ClusterConnection:
    """
    Descriptor of how to reach the cluster control plane.

    Attributes:
        kubeconfig: Path to a kubeconfig file, None for the default lookup.
        context: Kubeconfig context name, None for the current context.
        api_server: Explicit API server URL overriding the kubeconfig.
        in_cluster: Use the pod service account instead of a kubeconfig.
        timeout: Request timeout in seconds for connectivity checks.
    """
    kubeconfig: Optional[str] = None
    context: Optional[str] = None
    api_server: Optional[str] = None
    in_cluster: bool = False
    timeout: int = DEFAULT_API_TIMEOUT

    def describe(self) -> str:
        if self.in_cluster:
            return "in-cluster service account"
        parts = [f"kubeconfig={self.kubeconfig or '~/.kube/config'}"]
        if self.context:
            parts.append(f"context={self.context}")
        if self.api_server:
            parts.append(f"server={self.api_server}")
        return ", ".join(parts)


def build_api_client(connection: ClusterConnection) -> k8s.ApiClient:
    """
    Create an ApiClient for the given connection descriptor.

    Raises:
        kubernetes.config.ConfigException: If the configuration cannot be loaded.
    """
    configuration = k8s.Configuration()
    if connection.in_cluster:
        logger.debug("Loading in-cluster kubernetes configuration")
        k8s_config.load_incluster_config(client_configuration=configuration)
    else:
        logger.debug(f"Loading kubernetes configuration ({connection.describe()})")
        k8s_config.load_kube_config(
            config_file=connection.kubeconfig,
            context=connection.context,
            client_configuration=configuration,
        )
    if connection.api_server:
        configuration.host = connection.api_server
    return k8s.ApiClient(configuration)


def validate_cluster_connectivity(api_client: k8s.ApiClient,
                                  timeout: int = DEFAULT_API_TIMEOUT) -> str:
    """
    Query the API server version to prove the connection works.

    Returns:
        str: The server git version, e.g. "v1.29.2".

    Raises:
        kubernetes.client.ApiException: On HTTP errors (401/403 included).
        urllib3.exceptions.HTTPError: On network failures.
    """
    info = k8s.VersionApi(api_client).get_code(_request_timeout=timeout)
    version = getattr(info, "git_version", None) or "unknown"
    logger.debug(f"Connected to kubernetes API server {version}")
    return version
