"""Shared runtime hosting every controller, the webhook server and the probes."""

import logging
import os
import socket
import threading
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException
from kubernetes.leaderelection import electionconfig, leaderelection
from kubernetes.leaderelection.resourcelock.leaselock import LeaseLock

from .config import LeaderElectionConfig, USER_AGENT
from .controller import Controller, Reconciler
from .errors import ManagerError
from .metrics import ControllerMetrics
from .probes import Checker, ProbeServer, parse_bind_address
from .scheme import ResourceDefinition, SchemeRegistry
from .tls_policy import TLSMutator
from .webhooks import WebhookServer

logger = logging.getLogger(__name__)


def get_config(kubeconfig: Optional[str] = None) -> client.Configuration:
    """
    Load the management cluster configuration.

    Order: explicit kubeconfig path, in-cluster service account, then the
    default kubeconfig locations ($KUBECONFIG, ~/.kube/config).

    Raises:
        ManagerError: If no configuration could be loaded
    """
    configuration = client.Configuration()
    try:
        if kubeconfig:
            config.load_kube_config(config_file=kubeconfig, client_configuration=configuration)
            logger.info(f"Loaded kubeconfig from {kubeconfig}")
        elif os.environ.get("KUBERNETES_SERVICE_HOST") and not os.environ.get("KUBECONFIG"):
            config.load_incluster_config(client_configuration=configuration)
            logger.info("Loaded in-cluster configuration")
        else:
            config.load_kube_config(client_configuration=configuration)
            logger.info("Loaded kubeconfig from default location")
    except (ConfigException, OSError) as e:
        raise ManagerError(f"unable to load kubernetes config: {e}") from e

    # The leader election lock talks through the default client
    client.Configuration.set_default(configuration)
    return configuration


def new_api_client(configuration: client.Configuration) -> client.ApiClient:
    api_client = client.ApiClient(configuration)
    api_client.user_agent = USER_AGENT
    return api_client


@dataclass(frozen=True)
class ManagerOptions:
    """Everything the runtime needs to be constructed."""
    scheme: SchemeRegistry
    metrics_bind_address: str
    health_probe_bind_address: str
    webhook_port: int
    cert_dir: str
    leader_election: LeaderElectionConfig = field(default_factory=LeaderElectionConfig)
    namespace: str = ""
    sync_period: float = 600.0
    tls_opts: List[TLSMutator] = field(default_factory=list)


class Manager:
    """
    Owns the controllers and servers for the lifetime of the process.

    Controllers are only started while this replica holds the leader lease
    (or immediately when leader election is off). Webhooks and probes are
    served regardless.
    """

    def __init__(self, api_client: client.ApiClient, options: ManagerOptions):
        """
        Create the manager.

        Raises:
            ManagerError: If a bind address is invalid
        """
        try:
            self._metrics_address = parse_bind_address(options.metrics_bind_address)
            self._health_address = parse_bind_address(options.health_probe_bind_address)
        except ValueError as e:
            raise ManagerError(str(e)) from e

        self.options = options
        self.scheme = options.scheme
        self.client = api_client
        self.custom_api = client.CustomObjectsApi(api_client)
        self.metrics = ControllerMetrics()

        self._healthz: Dict[str, Checker] = {}
        self._readyz: Dict[str, Checker] = {}
        self._controllers: Dict[str, Controller] = {}
        self._servers: List[ProbeServer] = []
        self._webhook_server = WebhookServer(
            port=options.webhook_port,
            cert_dir=options.cert_dir,
            tls_mutators=options.tls_opts,
        )

        self._lock = threading.Lock()
        self._controllers_started = False
        self._fatal: Optional[str] = None
        self._stop_event: Optional[threading.Event] = None
        self._leader_thread: Optional[threading.Thread] = None

    def get_client(self) -> client.ApiClient:
        return self.client

    def get_webhook_server(self) -> WebhookServer:
        return self._webhook_server

    @property
    def controllers(self) -> List[Controller]:
        return list(self._controllers.values())

    def _add_check(self, checks: Dict[str, Checker], kind: str, name: str, check: Checker) -> None:
        if name in checks:
            raise ManagerError(f"{kind} check {name!r} already added")
        checks[name] = check

    def add_healthz_check(self, name: str, check: Checker) -> None:
        self._add_check(self._healthz, "health", name, check)

    def add_readyz_check(self, name: str, check: Checker) -> None:
        self._add_check(self._readyz, "ready", name, check)

    def new_controller(
        self,
        name: str,
        definition: ResourceDefinition,
        reconciler: Reconciler,
        max_concurrent_reconciles: int,
        label_selector: str = "",
    ) -> Controller:
        """
        Register a controller.

        Raises:
            ValueError: If the name is taken, the manager already started,
                or the concurrency is below 1
        """
        with self._lock:
            if self._controllers_started:
                raise ValueError("cannot add a controller after the manager has started")
            if name in self._controllers:
                raise ValueError(f"controller with name {name} already exists")
            controller = Controller(
                name=name,
                definition=definition,
                reconciler=reconciler,
                max_concurrent_reconciles=max_concurrent_reconciles,
                custom_api=self.custom_api,
                namespace=self.options.namespace,
                label_selector=label_selector,
                sync_period=self.options.sync_period,
                metrics=self.metrics,
            )
            self._controllers[name] = controller
        return controller

    def _start_controllers(self) -> None:
        with self._lock:
            if self._controllers_started:
                return
            self._controllers_started = True
        for controller in self._controllers.values():
            controller.start()

    def _fail(self, reason: str) -> None:
        logger.error(reason)
        self._fatal = reason
        if self._stop_event is not None:
            self._stop_event.set()

    def _on_stopped_leading(self) -> None:
        if self._stop_event is not None and self._stop_event.is_set():
            return
        self._fail("leader election lost")

    def _run_leader_election(self) -> None:
        le = self.options.leader_election
        identity = f"{socket.gethostname()}_{uuid.uuid4()}"
        logger.info(f"Attempting to acquire leader lease {le.lock_namespace}/{le.lock_name}")
        try:
            lock = LeaseLock(le.lock_name, le.lock_namespace, identity)
            election = electionconfig.Config(
                lock,
                lease_duration=int(le.lease_duration.total_seconds()),
                renew_deadline=int(le.renew_deadline.total_seconds()),
                retry_period=int(le.retry_period.total_seconds()),
                onstarted_leading=self._start_controllers,
                onstopped_leading=self._on_stopped_leading,
            )
            leaderelection.LeaderElection(election).run()
        # the election library rejects bad settings with sys.exit()
        except (Exception, SystemExit) as e:
            self._fail(f"leader election failed: {e}")

    def _start_servers(self) -> None:
        if self._health_address is not None:
            self._servers.append(
                ProbeServer("health", self._health_address, healthz=self._healthz, readyz=self._readyz)
            )
        if self._metrics_address is not None:
            self._servers.append(ProbeServer("metrics", self._metrics_address, metrics=self.metrics))
        for server in self._servers:
            server.start()
        if self._webhook_server.handlers:
            self._webhook_server.start()

    def _shutdown(self) -> None:
        for controller in self._controllers.values():
            controller.stop()
        for controller in self._controllers.values():
            controller.wait()
        self._webhook_server.stop()
        for server in self._servers:
            server.stop()
        logger.info("Stopped all controllers and servers")

    def start(self, stop_event: threading.Event) -> None:
        """
        Run until stop_event is set.

        Raises:
            ManagerError: On a fatal runtime error
        """
        self._stop_event = stop_event
        try:
            try:
                self._start_servers()
            except (OSError, ValueError) as e:
                raise ManagerError(f"failed to start servers: {e}") from e

            if self.options.leader_election.enabled:
                self._leader_thread = threading.Thread(
                    target=self._run_leader_election, name="leader-election", daemon=True
                )
                self._leader_thread.start()
            else:
                self._start_controllers()

            stop_event.wait()
        finally:
            self._shutdown()

        if self._fatal:
            raise ManagerError(self._fatal)
