"""Controller manager bootstrap.

Builds the runtime configuration, the TLS policy and the shared runtime,
registers every reconciler and webhook, then runs until a termination
signal arrives. main() is the only place that decides the exit status.
"""

import logging
import os
import signal
import threading
from typing import Optional

from .config import RuntimeConfig, build_runtime_config
from .errors import ManagerError, RegistrationError, TLSPolicyError
from .flags import parse_args
from .logs import configure_logging
from .readiness import server_supports_version, wait_for_apis
from .reconcilers import ReconcilerFactory, default_reconciler_factory, setup_reconcilers
from .runtime import Manager, ManagerOptions, get_config, new_api_client
from .scheme import SchemeRegistry, populate_scheme
from .tls_policy import build_tls_mutators
from .webhooks import setup_webhooks

logger = logging.getLogger("setup")


def setup_signal_handler() -> threading.Event:
    """
    Return an event set on SIGTERM or SIGINT.

    A second signal terminates the process with exit code 1.
    """
    stop_event = threading.Event()

    def handle(signum, frame):
        if stop_event.is_set():
            logger.error("Received second signal, exiting immediately")
            os._exit(1)
        logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGTERM, handle)
    signal.signal(signal.SIGINT, handle)
    return stop_event


def setup_checks(mgr: Manager) -> None:
    checker = mgr.get_webhook_server().started_checker()
    try:
        mgr.add_readyz_check("webhook", checker)
    except ManagerError as e:
        logger.error(f"unable to create ready check: {e}")
        raise
    try:
        mgr.add_healthz_check("webhook", checker)
    except ManagerError as e:
        logger.error(f"unable to create health check: {e}")
        raise


def build_manager(runtime_config: RuntimeConfig, scheme: SchemeRegistry, tls_opts) -> Manager:
    """
    Construct the shared runtime.

    Raises:
        ManagerError: If the cluster config cannot be loaded or an option is invalid
    """
    api_client = new_api_client(get_config(runtime_config.kubeconfig))
    return Manager(api_client, ManagerOptions(
        scheme=scheme,
        metrics_bind_address=runtime_config.metrics_bind_addr,
        health_probe_bind_address=runtime_config.health_addr,
        webhook_port=runtime_config.webhook_port,
        cert_dir=runtime_config.webhook_cert_dir,
        leader_election=runtime_config.leader_election,
        namespace=runtime_config.namespace,
        sync_period=runtime_config.sync_period.total_seconds(),
        tls_opts=tls_opts,
    ))


def run(
    runtime_config: RuntimeConfig,
    stop_event: threading.Event,
    reconciler_factory: ReconcilerFactory = default_reconciler_factory,
    discover=server_supports_version,
) -> Optional[Manager]:
    """
    Bootstrap the manager and block until stop_event is set.

    Every failure is logged with its context and re-raised.

    Returns:
        The manager after a clean stop, or None if stopped while waiting
        for the required APIs

    Raises:
        ManagerError: On any setup or fatal runtime error
    """
    scheme = populate_scheme(SchemeRegistry())
    scheme.freeze()

    try:
        tls_opts = build_tls_mutators(runtime_config.tls)
    except TLSPolicyError as e:
        logger.error(f"unable to add TLS settings to the webhook server: {e}")
        raise

    try:
        mgr = build_manager(runtime_config, scheme, tls_opts)
    except ManagerError as e:
        logger.error(f"unable to start manager: {e}")
        raise

    if runtime_config.wait_for_metal3_controller:
        if not wait_for_apis(mgr.get_client(), stop_event=stop_event, discover=discover):
            return None

    if runtime_config.enable_bmh_name_based_preallocation:
        logger.info("BareMetalHost name based IP preallocation enabled")

    setup_checks(mgr)

    try:
        setup_reconcilers(mgr, runtime_config, factory=reconciler_factory)
        setup_webhooks(mgr)
    except RegistrationError as e:
        logger.error(str(e))
        raise

    logger.info("starting manager")
    try:
        mgr.start(stop_event)
    except ManagerError as e:
        logger.error(f"problem running manager: {e}")
        raise
    return mgr


def main(argv=None) -> int:
    """Entry point. Returns the process exit code."""
    args = parse_args(argv)

    try:
        runtime_config = build_runtime_config(args)
        configure_logging(runtime_config.logging_format, runtime_config.verbosity)
    except ManagerError as e:
        logger.error(f"unable to start manager: {e}")
        return 1

    # Installed before the API wait so a signal can interrupt it
    stop_event = setup_signal_handler()

    try:
        run(runtime_config, stop_event)
    except ManagerError:
        return 1

    logger.info("Manager stopped")
    return 0
