"""Registration of the Metal3 reconcilers with the manager."""

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from .config import INFRA_GROUP, INFRA_VERSION, METAL3_GROUP, METAL3_VERSION, WATCH_LABEL, RuntimeConfig
from .controller import Reconciler, Request, Result
from .errors import ManagerError, RegistrationError
from .remote import new_cluster_client
from .scheme import ResourceDefinition, SchemeRegistry

logger = logging.getLogger("setup")

WorkloadClientGetter = Callable[[client.ApiClient, str, str], client.ApiClient]


class ReconcilerKind(enum.Enum):
    """The fixed set of reconcilers the manager runs."""
    MACHINE = "Metal3Machine"
    CLUSTER = "Metal3Cluster"
    DATA_TEMPLATE = "Metal3DataTemplate"
    DATA = "Metal3Data"
    LABEL_SYNC = "Metal3LabelSync"
    MACHINE_TEMPLATE = "Metal3MachineTemplate"
    REMEDIATION = "Metal3Remediation"


@dataclass(frozen=True)
class KindWiring:
    """What a reconciler kind watches and which dependencies it receives."""
    api_version: str
    watched_kind: str
    concurrency_field: str
    workload_client: bool = False
    watch_filter: bool = False


KIND_WIRING: Dict[ReconcilerKind, KindWiring] = {
    ReconcilerKind.MACHINE: KindWiring(
        f"{INFRA_GROUP}/{INFRA_VERSION}", "Metal3Machine", "machine",
        workload_client=True, watch_filter=True),
    ReconcilerKind.CLUSTER: KindWiring(
        f"{INFRA_GROUP}/{INFRA_VERSION}", "Metal3Cluster", "cluster", watch_filter=True),
    ReconcilerKind.DATA_TEMPLATE: KindWiring(
        f"{INFRA_GROUP}/{INFRA_VERSION}", "Metal3DataTemplate", "data_template", watch_filter=True),
    ReconcilerKind.DATA: KindWiring(
        f"{INFRA_GROUP}/{INFRA_VERSION}", "Metal3Data", "data", watch_filter=True),
    # label sync copies BareMetalHost labels onto workload cluster nodes
    ReconcilerKind.LABEL_SYNC: KindWiring(
        f"{METAL3_GROUP}/{METAL3_VERSION}", "BareMetalHost", "label_sync", workload_client=True),
    ReconcilerKind.MACHINE_TEMPLATE: KindWiring(
        f"{INFRA_GROUP}/{INFRA_VERSION}", "Metal3MachineTemplate", "machine_template"),
    ReconcilerKind.REMEDIATION: KindWiring(
        f"{INFRA_GROUP}/{INFRA_VERSION}", "Metal3Remediation", "remediation"),
}


def controller_name(kind: ReconcilerKind) -> str:
    return f"{kind.value}Reconciler"


class ResourceManager:
    """Reads and updates objects of one kind on behalf of a reconciler."""

    def __init__(self, api_client: client.ApiClient, definition: ResourceDefinition):
        self.definition = definition
        self.custom_api = client.CustomObjectsApi(api_client)

    def _kwargs(self, request: Request) -> Dict[str, Any]:
        kwargs = {
            "group": self.definition.group,
            "version": self.definition.version,
            "plural": self.definition.plural,
            "name": request.name,
        }
        if self.definition.namespaced:
            kwargs["namespace"] = request.namespace
        return kwargs

    def get(self, request: Request) -> Optional[Dict[str, Any]]:
        """
        Fetch the object for request.

        Returns:
            The object, or None if it no longer exists
        """
        try:
            if self.definition.namespaced:
                return self.custom_api.get_namespaced_custom_object(**self._kwargs(request))
            return self.custom_api.get_cluster_custom_object(**self._kwargs(request))
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def patch_status(self, request: Request, status: Dict[str, Any]) -> Dict[str, Any]:
        """Merge status into the object's status subresource."""
        body = {"status": status}
        if self.definition.namespaced:
            return self.custom_api.patch_namespaced_custom_object_status(body=body, **self._kwargs(request))
        return self.custom_api.patch_cluster_custom_object_status(body=body, **self._kwargs(request))


class ManagerFactory:
    """Hands out ResourceManagers sharing one client and provisioning options."""

    def __init__(
        self,
        api_client: client.ApiClient,
        scheme: SchemeRegistry,
        name_based_preallocation: bool = False,
    ):
        self.client = api_client
        self.scheme = scheme
        self.name_based_preallocation = name_based_preallocation

    def new_resource_manager(self, api_version: str, kind: str) -> ResourceManager:
        """
        Raises:
            ManagerError: If the kind is not registered in the scheme
        """
        definition = self.scheme.lookup(api_version, kind)
        if definition is None:
            raise ManagerError(f"kind {api_version}/{kind} is not registered in the scheme")
        return ResourceManager(self.client, definition)


@dataclass(frozen=True)
class ReconcilerDependencies:
    """Collaborators handed to a reconciler when it is built."""
    client: client.ApiClient
    manager_factory: ManagerFactory
    definition: ResourceDefinition
    log: logging.Logger
    workload_client_getter: Optional[WorkloadClientGetter] = None
    watch_filter_value: str = ""


@dataclass(frozen=True)
class ReconcilerSpec:
    """A reconciler registered with the manager."""
    kind: ReconcilerKind
    concurrency: int
    dependencies: ReconcilerDependencies


ReconcilerFactory = Callable[[ReconcilerKind, ReconcilerDependencies], Reconciler]


class ObservingReconciler(Reconciler):
    """
    Reconciler that only observes objects.

    Used for kinds whose provisioning logic is supplied by a separate
    component; it keeps the watch, queue and worker pool exercised and
    logs what it sees.
    """

    def __init__(self, kind: ReconcilerKind, deps: ReconcilerDependencies):
        self.kind = kind
        self.log = deps.log
        self.resources = deps.manager_factory.new_resource_manager(
            deps.definition.api_version, deps.definition.kind
        )

    def reconcile(self, request: Request) -> Optional[Result]:
        obj = self.resources.get(request)
        if obj is None:
            self.log.debug(f"{self.kind.value} {request} not found, skipping")
            return None

        metadata = obj.get("metadata", {})
        if metadata.get("deletionTimestamp"):
            self.log.info(f"{self.kind.value} {request} is being deleted")
        else:
            self.log.debug(
                f"Observed {self.kind.value} {request} "
                f"generation={metadata.get('generation')}"
            )
        return None


def default_reconciler_factory(kind: ReconcilerKind, deps: ReconcilerDependencies) -> Reconciler:
    return ObservingReconciler(kind, deps)


def setup_reconcilers(
    mgr,
    runtime_config: RuntimeConfig,
    factory: ReconcilerFactory = default_reconciler_factory,
    workload_client_getter: WorkloadClientGetter = new_cluster_client,
) -> List[ReconcilerSpec]:
    """
    Register one controller per reconciler kind.

    Kinds are registered in ReconcilerKind order and registration stops at
    the first failure.

    Returns:
        The registered specs, in order

    Raises:
        RegistrationError: If any registration is rejected
    """
    api_client = mgr.get_client()
    manager_factory = ManagerFactory(
        api_client,
        mgr.scheme,
        name_based_preallocation=runtime_config.enable_bmh_name_based_preallocation,
    )

    specs = []
    for kind in ReconcilerKind:
        wiring = KIND_WIRING[kind]
        name = controller_name(kind)
        concurrency = getattr(runtime_config.concurrency, wiring.concurrency_field)

        if kind is ReconcilerKind.MACHINE and concurrency > 1:
            logger.warning(
                f"{name} concurrency set to {concurrency}; "
                "running more than one Metal3Machine reconcile at a time is not safe"
            )

        definition = mgr.scheme.lookup(wiring.api_version, wiring.watched_kind)
        if definition is None:
            raise RegistrationError("controller", name, f"{wiring.watched_kind} is not registered in the scheme")

        watch_filter_value = runtime_config.watch_filter_value if wiring.watch_filter else ""
        deps = ReconcilerDependencies(
            client=api_client,
            manager_factory=manager_factory,
            definition=definition,
            log=logging.getLogger(f"controllers.{kind.value}"),
            workload_client_getter=workload_client_getter if wiring.workload_client else None,
            watch_filter_value=watch_filter_value,
        )

        try:
            reconciler = factory(kind, deps)
            mgr.new_controller(
                name=name,
                definition=definition,
                reconciler=reconciler,
                max_concurrent_reconciles=concurrency,
                label_selector=f"{WATCH_LABEL}={watch_filter_value}" if watch_filter_value else "",
            )
        except (ValueError, ManagerError) as e:
            raise RegistrationError("controller", name, str(e)) from e

        specs.append(ReconcilerSpec(kind=kind, concurrency=concurrency, dependencies=deps))
        logger.debug(f"Registered {name} with {concurrency} workers")

    return specs
