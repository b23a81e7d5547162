"""
Homelab Context

Immutable value closing over the shared infrastructure references and
environment defaults. Every workload is exposed through it, so no composer
call ever reads infrastructure handles from global state.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence
import logging

from pydantic import ValidationError

from ...schemas import WorkloadDescriptor
from .composer import WorkloadComposer
from .errors import MalformedDescriptor
from .namespace_resolver import NamespaceHandle, NamespaceResolver
from .objects import ManagedObject, ObjectGraph, ReadinessToken
from .refs import InfrastructureRefs, refs_from_settings

logger = logging.getLogger(__name__)


def validate_descriptor(fields: Dict) -> WorkloadDescriptor:
    """
    Build a WorkloadDescriptor, translating validation errors.

    Raises:
        MalformedDescriptor: With the pydantic error summary
    """
    try:
        return WorkloadDescriptor(**fields)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'descriptor'}: {err['msg']}"
            for err in e.errors()
        )
        raise MalformedDescriptor(f"Invalid workload descriptor: {problems}", fields.get("name")) from e


@dataclass(frozen=True)
class HomelabContext:
    """Shared references plus defaults; the only way workloads get exposed."""

    refs: InfrastructureRefs
    environment: str = "homelab"
    default_storage_class: str = "local-path"
    storage_access_mode: str = "ReadWriteOnce"
    composer: WorkloadComposer = field(default_factory=WorkloadComposer, compare=False)

    def expose(
        self,
        descriptor: WorkloadDescriptor,
        namespace: NamespaceHandle,
        credentials: Sequence[ManagedObject] = ()
    ) -> ObjectGraph:
        """Compose an already validated descriptor."""
        return self.composer.compose(descriptor, namespace, list(credentials), self)

    def expose_workload(
        self,
        name: str,
        namespace_handle: Optional[NamespaceHandle] = None,
        credentials: Sequence[ManagedObject] = (),
        **fields
    ) -> ObjectGraph:
        """
        Validate descriptor fields and compose the workload.

        Args:
            name: Workload name
            namespace_handle: Resolved namespace; defaults to the
                descriptor's pre-created namespace, or a new one named after it
            credentials: Credential objects already requested
            **fields: Remaining WorkloadDescriptor fields

        Raises:
            MalformedDescriptor: Invalid fields
            ConflictingTopology: Missing shared reference for a requested feature
        """
        descriptor = validate_descriptor({"name": name, **fields})
        if namespace_handle is None:
            pre_created = NamespaceHandle.existing(descriptor.namespace) if descriptor.namespace else None
            namespace_handle = NamespaceResolver(self.environment).resolve(descriptor.name, pre_created)
        return self.expose(descriptor, namespace_handle, credentials)


def build_context(
    refs: InfrastructureRefs,
    environment: str = "homelab",
    default_storage_class: str = "local-path",
    storage_access_mode: str = "ReadWriteOnce"
) -> HomelabContext:
    """Build a context. Missing references are only checked when a workload needs them."""
    return HomelabContext(
        refs=refs,
        environment=environment,
        default_storage_class=default_storage_class,
        storage_access_mode=storage_access_mode,
    )


def build_context_from_settings(settings, tokens: Optional[Dict[str, ReadinessToken]] = None) -> HomelabContext:
    """Build a context from settings, attaching resolved readiness tokens."""
    refs = refs_from_settings(settings)
    if tokens:
        refs = refs.with_readiness(tokens)
    return build_context(
        refs,
        environment=settings.environment,
        default_storage_class=settings.default_storage_class,
        storage_access_mode=settings.storage_access_mode,
    )
