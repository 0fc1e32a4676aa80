"""Registry of the resource kinds the manager knows how to read and write."""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

from .config import INFRA_GROUP, METAL3_GROUP
from .errors import ManagerError, SchemeConflict

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceDefinition:
    """How a kind is addressed through the Kubernetes API."""
    group: str
    version: str
    kind: str
    plural: str
    namespaced: bool = True

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.group, self.version, self.kind)


def _defs(group: str, version: str, kinds: Iterable[str], namespaced: bool = True):
    return [
        ResourceDefinition(group, version, kind, kind.lower() + "s", namespaced)
        for kind in kinds
    ]


METAL3_INFRA_KINDS = (
    "Metal3Cluster",
    "Metal3Machine",
    "Metal3MachineTemplate",
    "Metal3DataTemplate",
    "Metal3Data",
    "Metal3DataClaim",
    "Metal3Remediation",
    "Metal3RemediationTemplate",
)

# Everything the manager reads or writes, grouped the way the API groups ship
BUILTIN_DEFINITIONS = (
    _defs("", "v1", ("Secret", "ConfigMap", "Event"))
    + _defs("", "v1", ("Node",), namespaced=False)
    + _defs("coordination.k8s.io", "v1", ("Lease",))
    + [
        ResourceDefinition("ipam.metal3.io", "v1alpha1", "IPPool", "ippools"),
        ResourceDefinition("ipam.metal3.io", "v1alpha1", "IPClaim", "ipclaims"),
        ResourceDefinition("ipam.metal3.io", "v1alpha1", "IPAddress", "ipaddresses"),
        ResourceDefinition("ipam.cluster.x-k8s.io", "v1alpha1", "IPAddressClaim", "ipaddressclaims"),
        ResourceDefinition("ipam.cluster.x-k8s.io", "v1alpha1", "IPAddress", "ipaddresses"),
    ]
    + _defs(INFRA_GROUP, "v1beta1", METAL3_INFRA_KINDS)
    + _defs(INFRA_GROUP, "v1alpha5", METAL3_INFRA_KINDS)
    + _defs("cluster.x-k8s.io", "v1beta1", ("Cluster", "Machine", "MachineSet", "MachineDeployment"))
    + [ResourceDefinition(METAL3_GROUP, "v1alpha1", "BareMetalHost", "baremetalhosts")]
)


class SchemeRegistry:
    """
    Write-once map of (group, version, kind) to resource definitions.

    Populated during bootstrap, then frozen; lookups are safe from any
    thread afterwards.
    """

    def __init__(self):
        self._definitions: Dict[Tuple[str, str, str], ResourceDefinition] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def add(self, definition: ResourceDefinition) -> None:
        """
        Register a definition.

        Re-adding an identical definition is a no-op, even once frozen.

        Raises:
            SchemeConflict: If the kind is already registered differently
            ManagerError: If the registry has been frozen
        """
        with self._lock:
            existing = self._definitions.get(definition.key)
            if existing is not None:
                if existing != definition:
                    raise SchemeConflict(
                        f"{definition.api_version}/{definition.kind} already registered as {existing}"
                    )
                return
            if self._frozen:
                raise ManagerError(f"scheme is frozen, cannot add {definition.api_version}/{definition.kind}")
            self._definitions[definition.key] = definition

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    def lookup(self, api_version: str, kind: str) -> Optional[ResourceDefinition]:
        """Find the definition for an apiVersion ("group/version" or "v1") and kind."""
        group, _, version = api_version.rpartition("/")
        return self._definitions.get((group, version, kind))

    def decode(self, obj: Dict[str, Any]) -> ResourceDefinition:
        """
        Resolve the definition for a raw API object.

        Raises:
            ManagerError: If the object's kind is not registered
        """
        api_version = obj.get("apiVersion", "")
        kind = obj.get("kind", "")
        definition = self.lookup(api_version, kind)
        if definition is None:
            raise ManagerError(f"no kind {kind!r} is registered for version {api_version!r}")
        return definition

    def kinds(self) -> FrozenSet[Tuple[str, str, str]]:
        return frozenset(self._definitions)

    def __len__(self) -> int:
        return len(self._definitions)


def populate_scheme(registry: SchemeRegistry) -> SchemeRegistry:
    """Add every builtin definition to registry. Safe to call more than once."""
    for definition in BUILTIN_DEFINITIONS:
        registry.add(definition)
    logger.debug(f"Scheme holds {len(registry)} kinds")
    return registry
