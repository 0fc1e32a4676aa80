"""Clients for workload clusters, built from their kubeconfig secrets."""

import base64
import binascii
import logging

import yaml
from kubernetes import client, config

from .errors import ManagerError

logger = logging.getLogger(__name__)

KUBECONFIG_SECRET_SUFFIX = "-kubeconfig"
KUBECONFIG_SECRET_KEY = "value"


def new_cluster_client(api_client: client.ApiClient, namespace: str, cluster_name: str) -> client.ApiClient:
    """
    Build a client for a workload cluster.

    Reads the "<cluster>-kubeconfig" secret Cluster API writes for every
    cluster.

    Args:
        api_client: Client for the management cluster
        namespace: Namespace of the Cluster object
        cluster_name: Name of the Cluster object

    Returns:
        ApiClient talking to the workload cluster

    Raises:
        ApiException: If the secret cannot be read
        ManagerError: If the secret holds no usable kubeconfig
    """
    secret_name = f"{cluster_name}{KUBECONFIG_SECRET_SUFFIX}"
    secret = client.CoreV1Api(api_client).read_namespaced_secret(secret_name, namespace)

    encoded = (secret.data or {}).get(KUBECONFIG_SECRET_KEY)
    if not encoded:
        raise ManagerError(f"secret {namespace}/{secret_name} has no {KUBECONFIG_SECRET_KEY!r} key")

    try:
        kubeconfig = yaml.safe_load(base64.b64decode(encoded))
    except (binascii.Error, yaml.YAMLError) as e:
        raise ManagerError(f"secret {namespace}/{secret_name} holds an invalid kubeconfig: {e}") from e
    if not isinstance(kubeconfig, dict):
        raise ManagerError(f"secret {namespace}/{secret_name} holds an invalid kubeconfig")

    logger.debug(f"Built workload cluster client for {namespace}/{cluster_name}")
    return config.new_client_from_config_dict(kubeconfig)
