"""
Namespace Resolver

Decides per workload whether to reuse a pre-created namespace or create a new
one carrying the baseline isolation labels (Pod Security Standards
"restricted").
"""

from dataclasses import dataclass
from typing import Dict, Optional
import logging

from .objects import ManagedObject
from .kubernetes.helpers import create_namespace_manifest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NamespaceHandle:
    """A namespace a workload deploys into."""

    name: str
    # Set when this run creates the namespace; None for pre-existing namespaces
    managed_object: Optional[ManagedObject] = None

    @classmethod
    def existing(cls, name: str) -> "NamespaceHandle":
        return cls(name=name)

    @property
    def created(self) -> bool:
        return self.managed_object is not None


class NamespaceResolver:
    """Resolves one namespace per workload name, idempotently."""

    def __init__(self, environment: str):
        self.environment = environment
        self._handles: Dict[str, NamespaceHandle] = {}

    def resolve(self, descriptor_name: str, pre_created: Optional[NamespaceHandle] = None) -> NamespaceHandle:
        """
        Resolve the namespace for a workload.

        Args:
            descriptor_name: Workload name
            pre_created: Handle to an existing namespace; returned unchanged

        Returns:
            NamespaceHandle (the same handle on repeated calls)
        """
        if pre_created is not None:
            self._handles.setdefault(descriptor_name, pre_created)
            return pre_created

        handle = self._handles.get(descriptor_name)
        if handle is not None:
            logger.debug(f"[NS] Namespace for {descriptor_name} already resolved: {handle.name}")
            return handle

        manifest = create_namespace_manifest(descriptor_name, self.environment)
        handle = NamespaceHandle(
            name=descriptor_name,
            managed_object=ManagedObject(
                api_version="v1",
                kind="Namespace",
                name=descriptor_name,
                namespace=None,
                body=manifest,
            ),
        )
        self._handles[descriptor_name] = handle
        logger.info(f"[NS] Resolved new namespace: {descriptor_name}")
        return handle

    def get(self, descriptor_name: str) -> Optional[NamespaceHandle]:
        return self._handles.get(descriptor_name)

    @property
    def handles(self) -> Dict[str, NamespaceHandle]:
        return dict(self._handles)
