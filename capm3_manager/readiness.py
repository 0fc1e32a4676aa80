"""Startup gate that waits for a required API group to be served."""

import logging
import threading
from typing import Callable, Optional

import urllib3
from kubernetes import client
from kubernetes.client.rest import ApiException

from .config import API_WAIT_INTERVAL_SECONDS, METAL3_GROUP, METAL3_VERSION
from .errors import APIGroupUnavailable

logger = logging.getLogger("setup")


def server_supports_version(api_client: client.ApiClient, group: str, version: str) -> None:
    """
    Check that the cluster serves group/version.

    Args:
        api_client: Client for the management cluster
        group: API group name ("" for the core group)
        version: API version, e.g. "v1alpha1"

    Raises:
        APIGroupUnavailable: If discovery fails or the version is not served
    """
    group_version = f"{group}/{version}" if group else version
    try:
        if not group:
            served = client.CoreApi(api_client).get_api_versions().versions or []
        else:
            groups = client.ApisApi(api_client).get_api_versions().groups or []
            served = [
                v.version
                for g in groups if g.name == group
                for v in (g.versions or [])
            ]
    except (ApiException, urllib3.exceptions.HTTPError, OSError) as e:
        raise APIGroupUnavailable(f"discovery of {group_version} failed: {e}") from e

    if version not in served:
        raise APIGroupUnavailable(f"server does not support API version {group_version!r}")


def wait_for_apis(
    api_client: client.ApiClient,
    group: str = METAL3_GROUP,
    version: str = METAL3_VERSION,
    stop_event: Optional[threading.Event] = None,
    interval: float = API_WAIT_INTERVAL_SECONDS,
    discover: Callable[[client.ApiClient, str, str], None] = server_supports_version,
) -> bool:
    """
    Block until group/version is served by the cluster.

    Retries forever with a fixed interval. Setting stop_event interrupts
    the wait between attempts.

    Returns:
        True once the API is found, False if stopped first
    """
    stop_event = stop_event or threading.Event()
    group_version = f"{group}/{version}"

    while True:
        try:
            discover(api_client, group, version)
        except APIGroupUnavailable as e:
            logger.info(f"Waiting for API group {group_version} to be available: {e}")
            if stop_event.wait(interval):
                logger.info(f"Stopped waiting for API group {group_version}")
                return False
            continue

        logger.info(f"Found API group {group_version}")
        return True
