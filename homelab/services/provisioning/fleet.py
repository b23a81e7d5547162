"""
Fleet Orchestration

Discovers workload descriptors and provisions the whole fleet in one pass:

1. validate and enumerate descriptors
2. resolve readiness of the gated subsystems
3. pre-resolve one namespace per workload
4. one credential pass over every namespace plus the default namespace
5. expose each workload through the context
6. aggregate graphs, credentials, tokens and per-workload failures

A failure for one workload is recorded and the pass moves on.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union
import logging

import yaml

from ...schemas import WorkloadDescriptor
from .composer import pending_credentials, plan_topology
from .context import build_context, validate_descriptor
from .credentials import (
    CredentialAdvisory,
    CredentialDistributor,
    CredentialRequest,
    oauth_provider_id,
    provider_for_secret,
)
from .errors import DependencyUnresolved, MalformedDescriptor, ProvisioningError
from .namespace_resolver import NamespaceHandle, NamespaceResolver
from .objects import ManagedObject, ObjectGraph, ReadinessToken, unique_in_order
from .readiness import ReadinessGate
from .refs import InfrastructureRefs, refs_from_settings

logger = logging.getLogger(__name__)

DESCRIPTOR_SUFFIXES = (".yaml", ".yml")
WORKLOAD_FILE = "workload.yaml"


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class WorkloadFailure:
    workload: str
    kind: str
    message: str


@dataclass
class FleetResult:
    """Everything one fleet pass produced."""

    graphs: Dict[str, ObjectGraph] = field(default_factory=dict)
    namespaces: List[ManagedObject] = field(default_factory=list)
    credentials: List[ManagedObject] = field(default_factory=list)
    credential_schemas: List[Dict[str, Any]] = field(default_factory=list)
    tokens: Dict[str, ReadinessToken] = field(default_factory=dict)
    failures: List[WorkloadFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    advisories: List[CredentialAdvisory] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def failed_workloads(self) -> List[str]:
        return [failure.workload for failure in self.failures]

    def fail(self, workload: str, error: ProvisioningError) -> None:
        self.failures.append(WorkloadFailure(workload, error.kind, error.message))
        logger.error(f"[FLEET] ❌ {workload}: {error.kind}: {error.message}")

    def objects(self) -> List[ManagedObject]:
        """All objects in apply order: namespaces, credentials, then each graph."""
        graph_objects = [obj for graph in self.graphs.values() for obj in graph]
        return unique_in_order(self.namespaces + self.credentials + graph_objects)

    def manifests(self) -> List[Dict[str, Any]]:
        """Kubernetes manifests as plain dicts, in apply order."""
        return [obj.to_manifest() for obj in self.objects() if obj.is_kubernetes]

    def dns_records(self) -> List[ManagedObject]:
        return [obj for obj in self.objects() if not obj.is_kubernetes]

    def render_yaml(self) -> str:
        """Multi-document YAML stream of the Kubernetes manifests."""
        return yaml.safe_dump_all(self.manifests(), sort_keys=False, default_flow_style=False)

    def exports(self) -> Dict[str, List[str]]:
        """Identifiers of what was provisioned, for downstream inspection."""
        exported: Dict[str, List[str]] = {
            "namespaces": [],
            "deployments": [],
            "services": [],
            "routes": [],
            "domains": [],
            "dns_records": [],
        }
        for graph in self.graphs.values():
            for obj in graph:
                if obj.kind == "Namespace":
                    exported["namespaces"].append(obj.name)
                elif obj.kind == "Deployment":
                    exported["deployments"].append(f"{obj.namespace}/{obj.name}")
                elif obj.kind == "Service":
                    exported["services"].append(f"{obj.namespace}/{obj.name}")
                elif obj.kind == "HTTPRoute":
                    exported["routes"].append(f"{obj.namespace}/{obj.name}")
                    exported["domains"].extend(obj.body["spec"]["hostnames"])
                elif obj.kind == "DNSRecord":
                    exported["dns_records"].append(f"{obj.name} -> {obj.body['content']}")
        return exported


# =============================================================================
# Discovery
# =============================================================================

def _documents_from_file(path: Path, default_name: str) -> List[Tuple[str, Any]]:
    """(source, raw descriptor) pairs from one YAML file."""
    with open(path, "r", encoding="utf-8") as f:
        loaded = yaml.safe_load(f)

    if isinstance(loaded, dict) and "workloads" in loaded:
        entries = loaded["workloads"] or []
    elif isinstance(loaded, list):
        entries = loaded
    else:
        if isinstance(loaded, dict):
            loaded.setdefault("name", default_name)
        entries = [loaded]

    return [(f"{path}[{index}]", entry) for index, entry in enumerate(entries)]


def discover_descriptors(path: Union[str, Path]) -> Tuple[List[WorkloadDescriptor], List[WorkloadFailure]]:
    """
    Load workload descriptors from a YAML file or directory.

    A file may hold one descriptor, a list, or a mapping with a "workloads"
    list. A directory is scanned for top-level *.yaml/*.yml files and
    ``<app>/workload.yaml`` files; a descriptor without a name takes the file
    stem (or the app directory name).

    Invalid descriptors are returned as MalformedDescriptor failures instead
    of aborting discovery.

    Raises:
        FileNotFoundError: The path does not exist
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Fleet path not found: {path}")

    files: List[Tuple[Path, str]] = []
    if path.is_dir():
        for child in sorted(path.iterdir()):
            if child.is_file() and child.suffix in DESCRIPTOR_SUFFIXES:
                files.append((child, child.stem))
            elif child.is_dir() and (child / WORKLOAD_FILE).is_file():
                files.append((child / WORKLOAD_FILE, child.name))
    else:
        files.append((path, path.stem))

    descriptors: List[WorkloadDescriptor] = []
    failures: List[WorkloadFailure] = []

    for file_path, default_name in files:
        try:
            documents = _documents_from_file(file_path, default_name)
        except (yaml.YAMLError, UnicodeDecodeError, OSError) as e:
            failures.append(WorkloadFailure(
                default_name, MalformedDescriptor.kind, f"{file_path}: {type(e).__name__}: {e}"
            ))
            continue

        for source, raw in documents:
            if not isinstance(raw, dict):
                failures.append(WorkloadFailure(
                    default_name, MalformedDescriptor.kind, f"{source}: expected a mapping"
                ))
                continue
            try:
                descriptors.append(validate_descriptor(raw))
            except MalformedDescriptor as e:
                failures.append(WorkloadFailure(
                    str(raw.get("name") or default_name), e.kind, f"{source}: {e.message}"
                ))

    logger.info(f"[FLEET] Discovered {len(descriptors)} workload(s) under {path}")
    return descriptors, failures


# =============================================================================
# Orchestration
# =============================================================================

class FleetOrchestrator:
    """
    Provisions a fleet of workloads against shared infrastructure.

    The orchestrator is the only caller of the credential distributor, so the
    dedup map sees every request of the run.
    """

    def __init__(
        self,
        gate: ReadinessGate,
        refs: InfrastructureRefs,
        distributor: Optional[CredentialDistributor] = None,
        resolver: Optional[NamespaceResolver] = None,
        environment: str = "homelab",
        default_storage_class: str = "local-path",
        storage_access_mode: str = "ReadWriteOnce",
        fleet_providers: Sequence[str] = ("ghcr",),
        default_namespace: str = "default",
        refresh_interval: str = "1h"
    ):
        self.gate = gate
        self.refs = refs
        self.distributor = distributor
        self.resolver = resolver or NamespaceResolver(environment)
        self.environment = environment
        self.default_storage_class = default_storage_class
        self.storage_access_mode = storage_access_mode
        self.fleet_providers = list(fleet_providers)
        self.default_namespace = default_namespace
        self.refresh_interval = refresh_interval

    @classmethod
    def from_settings(cls, settings, gate: Optional[ReadinessGate] = None) -> "FleetOrchestrator":
        refs = refs_from_settings(settings)
        distributor = None
        if refs.secret_store is not None:
            distributor = CredentialDistributor(
                store_name=refs.secret_store.name,
                store_kind=refs.secret_store.kind,
                refresh_interval=settings.credential_refresh_interval,
            )
        return cls(
            gate=gate or ReadinessGate.from_settings(settings),
            refs=refs,
            distributor=distributor,
            environment=settings.environment,
            default_storage_class=settings.default_storage_class,
            storage_access_mode=settings.storage_access_mode,
            fleet_providers=settings.fleet_providers,
            default_namespace=settings.default_namespace,
            refresh_interval=settings.credential_refresh_interval,
        )

    async def run(self, descriptors: Iterable[WorkloadDescriptor]) -> FleetResult:
        """
        Provision every descriptor.

        Returns:
            FleetResult with graphs for composed workloads and a failure entry
            for each workload that could not be composed
        """
        result = FleetResult()

        workloads: List[WorkloadDescriptor] = []
        seen = set()
        for descriptor in descriptors:
            if descriptor.name in seen:
                result.fail(descriptor.name, MalformedDescriptor(
                    f"Duplicate workload name '{descriptor.name}'", descriptor.name
                ))
                continue
            seen.add(descriptor.name)
            workloads.append(descriptor)

        logger.info(f"[FLEET] Provisioning {len(workloads)} workload(s)")

        # Readiness of shared subsystems
        result.tokens = await self.gate.await_all(self.refs.gated_subsystems)
        for token in result.tokens.values():
            if not token.ready:
                result.warnings.append(
                    f"DependencyUnresolved: {token.subsystem} not ready after {token.attempts} attempt(s)"
                    f"{': ' + token.reason if token.reason else ''}"
                )

        context = build_context(
            self.refs.with_readiness(result.tokens),
            environment=self.environment,
            default_storage_class=self.default_storage_class,
            storage_access_mode=self.storage_access_mode,
        )

        # Namespaces before any credential targets them
        handles: Dict[str, NamespaceHandle] = {}
        for descriptor in workloads:
            pre_created = NamespaceHandle.existing(descriptor.namespace) if descriptor.namespace else None
            handles[descriptor.name] = self.resolver.resolve(descriptor.name, pre_created)

        store_token = self._store_token(result.tokens)
        self._distribute_fleet_credentials(list(handles.values()), store_token)

        for descriptor in workloads:
            handle = handles[descriptor.name]
            try:
                # Conflicts fail the workload before any credential is requested for it
                plan_topology(descriptor, context.refs)
                credentials = self._request_workload_credentials(descriptor, handle, store_token)
                graph = context.expose(descriptor, handle, credentials)
            except ProvisioningError as e:
                result.fail(descriptor.name, e)
                if isinstance(e, DependencyUnresolved):
                    result.warnings.append(f"{descriptor.name}: {e.message}")
                continue

            result.graphs[descriptor.name] = graph
            result.advisories.extend(pending_credentials(descriptor, handle, credentials))

        self._aggregate(result, handles)

        logger.info(
            f"[FLEET] ✅ {len(result.graphs)} composed, {len(result.failures)} failed, "
            f"{len(result.objects())} object(s)"
        )
        return result

    def _store_token(self, tokens: Dict[str, ReadinessToken]) -> Optional[ReadinessToken]:
        if self.refs.secret_store is None:
            return None
        return tokens.get(self.refs.secret_store.subsystem)

    def _distribute_fleet_credentials(
        self,
        handles: List[NamespaceHandle],
        store_token: Optional[ReadinessToken]
    ) -> None:
        if self.distributor is None or store_token is None or not self.fleet_providers:
            return

        targets: Dict[str, NamespaceHandle] = {}
        for handle in handles + [NamespaceHandle.existing(self.default_namespace)]:
            targets.setdefault(handle.name, handle)

        try:
            self.distributor.distribute_fleet(self.fleet_providers, targets.values(), store_token)
        except DependencyUnresolved as e:
            logger.warning(f"[FLEET] Skipping fleet-wide credential pass: {e.message}")

    def _request_workload_credentials(
        self,
        descriptor: WorkloadDescriptor,
        handle: NamespaceHandle,
        store_token: Optional[ReadinessToken]
    ) -> List[ManagedObject]:
        """Distribute the credentials this workload consumes; return all in its namespace."""
        if self.distributor is None or store_token is None:
            return []

        provider_ids = [
            provider_id
            for provider_id in (provider_for_secret(s) for s in descriptor.image_pull_secrets)
            if provider_id is not None
        ]
        if descriptor.oauth is not None:
            provider_ids.append(oauth_provider_id(descriptor.name))

        if provider_ids:
            store_token.require(descriptor.name)
        for provider_id in provider_ids:
            self.distributor.distribute(
                CredentialRequest(provider_id, handle, self.refresh_interval),
                store_token,
            )
        return self.distributor.for_namespace(handle.name)

    def _aggregate(self, result: FleetResult, handles: Dict[str, NamespaceHandle]) -> None:
        """Keep namespaces and credentials only where some workload (or the default namespace) needs them."""
        live = {handles[name].name for name in result.graphs}
        live.add(self.default_namespace)

        result.namespaces = [
            handle.managed_object
            for name, handle in handles.items()
            if handle.created and name in result.graphs
        ]
        if self.distributor is not None:
            result.credentials = [obj for obj in self.distributor.issued if obj.namespace in live]
            result.credential_schemas = [
                schema for schema in self.distributor.schemas() if schema["targetNamespace"] in live
            ]


async def run_fleet(
    settings,
    descriptors: Optional[Sequence[WorkloadDescriptor]] = None,
    gate: Optional[ReadinessGate] = None
) -> FleetResult:
    """
    Discover (unless given) and provision the fleet described by settings.

    Discovery failures are reported alongside composition failures.
    """
    discovery_failures: List[WorkloadFailure] = []
    if descriptors is None:
        descriptors, discovery_failures = discover_descriptors(settings.fleet_path)

    orchestrator = FleetOrchestrator.from_settings(settings, gate=gate)
    result = await orchestrator.run(descriptors)
    result.failures = discovery_failures + result.failures
    return result
