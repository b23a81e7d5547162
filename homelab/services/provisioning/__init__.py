"""
Provisioning Module

Turns declarative workload descriptors into dependency-ordered object graphs
for the homelab cluster.

Components:
- NamespaceResolver: one namespace per workload, reusing pre-created ones
- ReadinessGate: memoized, bounded checks that a subsystem's webhook is live
- CredentialDistributor: deduplicated ExternalSecret sync requests
- WorkloadComposer: feature decision table -> object graph per workload
- HomelabContext: immutable shared references every workload is exposed through
- FleetOrchestrator: runs the whole fleet with per-workload failure isolation
- FleetApplier: applies a fleet result to the cluster and Cloudflare

Usage:
    from homelab.services.provisioning import run_fleet

    result = await run_fleet(get_settings())
    print(result.render_yaml())
"""

from .errors import (
    ProvisioningError,
    DependencyUnresolved,
    ValidationFailure,
    ConflictingTopology,
    MalformedDescriptor,
)
from .objects import ManagedObject, ObjectGraph, ReadinessToken
from .namespace_resolver import NamespaceHandle, NamespaceResolver
from .readiness import (
    ReadinessGate,
    KubernetesSubsystemProbe,
    SubsystemNotReady,
    SubsystemSpec,
    default_subsystems,
)
from .credentials import (
    CredentialAdvisory,
    CredentialDistributor,
    CredentialProvider,
    CredentialRequest,
    get_provider,
)
from .refs import (
    AuthBackendRef,
    DnsZoneRef,
    GatewayRef,
    InfrastructureRefs,
    IssuerRef,
    SecretStoreRef,
    refs_from_settings,
)
from .composer import FeatureRule, TopologyPlan, WorkloadComposer, compose, plan_topology
from .context import HomelabContext, build_context, build_context_from_settings
from .fleet import (
    FleetOrchestrator,
    FleetResult,
    WorkloadFailure,
    discover_descriptors,
    run_fleet,
)
from .cloudflare import CloudflareDnsClient
from .applier import FleetApplier

__all__ = [
    # Errors
    "ProvisioningError",
    "DependencyUnresolved",
    "ValidationFailure",
    "ConflictingTopology",
    "MalformedDescriptor",
    # Objects
    "ManagedObject",
    "ObjectGraph",
    "ReadinessToken",
    # Namespaces
    "NamespaceHandle",
    "NamespaceResolver",
    # Readiness
    "ReadinessGate",
    "KubernetesSubsystemProbe",
    "SubsystemNotReady",
    "SubsystemSpec",
    "default_subsystems",
    # Credentials
    "CredentialAdvisory",
    "CredentialDistributor",
    "CredentialProvider",
    "CredentialRequest",
    "get_provider",
    # Infrastructure references
    "AuthBackendRef",
    "DnsZoneRef",
    "GatewayRef",
    "InfrastructureRefs",
    "IssuerRef",
    "SecretStoreRef",
    "refs_from_settings",
    # Composition
    "FeatureRule",
    "TopologyPlan",
    "WorkloadComposer",
    "compose",
    "plan_topology",
    "HomelabContext",
    "build_context",
    "build_context_from_settings",
    # Fleet
    "FleetOrchestrator",
    "FleetResult",
    "WorkloadFailure",
    "discover_descriptors",
    "run_fleet",
    "CloudflareDnsClient",
    "FleetApplier",
]
