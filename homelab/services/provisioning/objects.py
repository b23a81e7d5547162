"""
Managed Objects and Object Graphs

A ManagedObject is one unit the control plane reconciles: a Kubernetes
manifest (typed ``kubernetes.client`` model or custom resource dict) or an
external record such as a Cloudflare DNS entry. Its dependency set holds other
managed objects and readiness tokens that must be satisfied before it may be
emitted.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union
import logging

from kubernetes import client

from .errors import DependencyUnresolved, ProvisioningError

logger = logging.getLogger(__name__)

_serializer = client.ApiClient()

# Objects reconciled through the Cloudflare API rather than the cluster
CLOUDFLARE_API_VERSION = "cloudflare.com/v4"


@dataclass(frozen=True)
class ReadinessToken:
    """Resolved readiness of one subsystem's validating admission path."""

    subsystem: str
    ready: bool
    attempts: int = 0
    reason: str = ""

    @classmethod
    def assumed(cls, subsystem: str) -> "ReadinessToken":
        return cls(subsystem=subsystem, ready=True, reason="assumed ready")

    def require(self, workload: Optional[str] = None) -> None:
        """Raise DependencyUnresolved unless the subsystem is ready."""
        if not self.ready:
            raise DependencyUnresolved(self.subsystem, self.attempts, self.reason, workload)


Dependency = Union["ManagedObject", ReadinessToken]


@dataclass(frozen=True, eq=False)
class ManagedObject:
    """
    One desired object plus the dependencies it waits on.

    Identity is (api_version, kind, namespace, name); two objects with the
    same identity describe the same reconciled resource.
    """

    api_version: str
    kind: str
    name: str
    namespace: Optional[str]
    body: Any
    depends_on: Tuple[Dependency, ...] = ()

    @property
    def key(self) -> str:
        scope = f"{self.namespace}/" if self.namespace else ""
        return f"{self.api_version}/{self.kind}:{scope}{self.name}"

    @property
    def is_kubernetes(self) -> bool:
        return self.api_version != CLOUDFLARE_API_VERSION

    @property
    def readiness_tokens(self) -> List[ReadinessToken]:
        return [d for d in self.depends_on if isinstance(d, ReadinessToken)]

    @property
    def object_dependencies(self) -> List["ManagedObject"]:
        return [d for d in self.depends_on if isinstance(d, ManagedObject)]

    def to_manifest(self) -> Dict[str, Any]:
        """Serialize the desired state at the boundary (camelCase, no Nones)."""
        return _serializer.sanitize_for_serialization(self.body)

    def __repr__(self) -> str:
        return f"ManagedObject({self.key})"


@dataclass
class ObjectGraph:
    """
    The ordered set of objects described for one workload.

    Objects are added in dependency order; ``add`` refuses an object whose
    dependency set is not yet satisfied.
    """

    workload: str
    objects: List[ManagedObject] = field(default_factory=list)
    # Objects requested outside this graph (pre-created namespace, credentials)
    requested: Dict[str, ManagedObject] = field(default_factory=dict)

    def add(self, obj: ManagedObject) -> ManagedObject:
        for dep in obj.depends_on:
            if isinstance(dep, ReadinessToken):
                dep.require(self.workload)
            elif dep.key not in self.requested and not self._contains(dep.key):
                raise ProvisioningError(
                    f"{obj.key} depends on {dep.key}, which has not been requested",
                    self.workload,
                )
        if self._contains(obj.key):
            raise ProvisioningError(f"Duplicate object {obj.key}", self.workload)
        self.objects.append(obj)
        logger.debug(f"[GRAPH] {self.workload}: emitted {obj.key}")
        return obj

    def _contains(self, key: str) -> bool:
        return any(o.key == key for o in self.objects)

    def get(self, kind: str) -> Optional[ManagedObject]:
        """First object of the given kind, if any."""
        for obj in self.objects:
            if obj.kind == kind:
                return obj
        return None

    def of_kind(self, kind: str) -> List[ManagedObject]:
        return [o for o in self.objects if o.kind == kind]

    @property
    def kinds(self) -> List[str]:
        return [o.kind for o in self.objects]

    def __iter__(self) -> Iterator[ManagedObject]:
        return iter(self.objects)

    def __len__(self) -> int:
        return len(self.objects)


def unique_in_order(objects: Iterable[ManagedObject]) -> List[ManagedObject]:
    """Drop repeated identities, keeping first occurrence order."""
    seen = set()
    ordered = []
    for obj in objects:
        if obj.key in seen:
            continue
        seen.add(obj.key)
        ordered.append(obj)
    return ordered
