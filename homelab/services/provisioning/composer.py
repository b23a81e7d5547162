"""
Workload Composer

Turns one workload descriptor into the object graph exposing it:

    Namespace -> [PVC] -> Deployment -> Service -> [Middleware] -> HTTPRoute -> [DNS]

Which optional objects exist is decided up front by a table of feature rules.
A rule that applies but whose shared references are missing (or two mutually
exclusive rules applying together) fails the workload before any object is
emitted.
"""

from dataclasses import dataclass
from typing import Callable, FrozenSet, List, Optional, Sequence, Tuple
import logging

from ...schemas import AuthMode, WorkloadDescriptor
from .credentials import CredentialAdvisory, get_oauth_secret_name
from .errors import ConflictingTopology
from .namespace_resolver import NamespaceHandle
from .objects import CLOUDFLARE_API_VERSION, ManagedObject, ObjectGraph
from .refs import InfrastructureRefs
from .kubernetes.helpers import (
    GATEWAY_API_VERSION,
    OAUTH_PROXY_PORT,
    TRAEFIK_API_VERSION,
    create_app_container,
    create_deployment_manifest,
    create_dns_record,
    create_forward_auth_middleware,
    create_http_route_manifest,
    create_oauth_proxy_container,
    create_pvc_manifest,
    create_service_manifest,
    get_claim_name,
    get_middleware_name,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Decision table
# =============================================================================

@dataclass(frozen=True)
class FeatureRule:
    """
    One row of the topology decision table.

    Attributes:
        feature: Feature name
        applies: Whether the feature is active for (descriptor, refs)
        requires: InfrastructureRefs fields that must be present when active
        emits: Object kinds the feature contributes
    """

    feature: str
    applies: Callable[[WorkloadDescriptor, InfrastructureRefs], bool]
    requires: Tuple[str, ...] = ()
    emits: Tuple[str, ...] = ()


FEATURE_RULES: Tuple[FeatureRule, ...] = (
    FeatureRule("storage", lambda d, r: d.storage is not None, emits=("PersistentVolumeClaim",)),
    FeatureRule("oauth-sidecar", lambda d, r: d.oauth is not None, requires=("secret_store",)),
    FeatureRule("runner", lambda d, r: True, emits=("Deployment", "Service")),
    FeatureRule("forward-auth", lambda d, r: d.auth == AuthMode.FORWARD,
                requires=("auth_backend", "gateway"), emits=("Middleware",)),
    FeatureRule("route", lambda d, r: True, requires=("gateway",), emits=("HTTPRoute",)),
    FeatureRule("tls", lambda d, r: r.tls_issuer is not None),
    FeatureRule("dns", lambda d, r: r.dns_zone is not None, emits=("DNSRecord",)),
)

# Feature pairs that may not be requested for the same workload
EXCLUSIVE_FEATURES: Tuple[Tuple[str, str], ...] = (
    ("forward-auth", "oauth-sidecar"),
)

_MISSING_REF_DETAIL = {
    "auth_backend": "requires an authentication backend, but none is configured",
    "gateway": "requires a shared gateway, but none is configured",
    "secret_store": "requires a secret store to sync client credentials, but none is configured",
}


@dataclass(frozen=True)
class TopologyPlan:
    """Active features for one workload, in emission order."""

    workload: str
    features: Tuple[str, ...]

    def has(self, feature: str) -> bool:
        return feature in self.features

    @property
    def kinds(self) -> Tuple[str, ...]:
        rules = {rule.feature: rule for rule in FEATURE_RULES}
        return tuple(kind for feature in self.features for kind in rules[feature].emits)


def plan_topology(descriptor: WorkloadDescriptor, refs: InfrastructureRefs) -> TopologyPlan:
    """
    Evaluate the decision table for a descriptor.

    Raises:
        ConflictingTopology: Exclusive features requested together, or an
            active feature's shared reference is absent
    """
    active = [rule for rule in FEATURE_RULES if rule.applies(descriptor, refs)]
    names: FrozenSet[str] = frozenset(rule.feature for rule in active)

    for first, second in EXCLUSIVE_FEATURES:
        if first in names and second in names:
            raise ConflictingTopology(descriptor.name, first, f"cannot be combined with {second}")

    for rule in active:
        for ref_name in rule.requires:
            if getattr(refs, ref_name) is None:
                raise ConflictingTopology(descriptor.name, rule.feature, _MISSING_REF_DETAIL[ref_name])

    return TopologyPlan(workload=descriptor.name, features=tuple(rule.feature for rule in active))


# =============================================================================
# Composer
# =============================================================================

def _tokens(*refs) -> Tuple:
    return tuple(ref.readiness for ref in refs if ref is not None and ref.readiness is not None)


def _find_credential(credentials: Sequence[ManagedObject], secret_name: str, namespace: str) -> Optional[ManagedObject]:
    for obj in credentials:
        if obj.name == secret_name and obj.namespace == namespace:
            return obj
    return None


def pending_credentials(
    descriptor: WorkloadDescriptor,
    namespace: NamespaceHandle,
    credentials: Sequence[ManagedObject]
) -> List[CredentialAdvisory]:
    """
    Secrets the runner consumes that may not exist yet.

    A synced secret appears eventually; an unsynced one has to be created
    out of band. Either way the pods wait rather than fail.
    """
    advisories = []
    secret_names = list(descriptor.image_pull_secrets)
    if descriptor.oauth is not None:
        secret_names.append(get_oauth_secret_name(descriptor.name))

    for secret_name in secret_names:
        if _find_credential(credentials, secret_name, namespace.name) is not None:
            message = "synced by External Secrets; pods stay pending until it materializes"
        else:
            message = "not managed here; it must already exist in the namespace"
        advisories.append(CredentialAdvisory(
            workload=descriptor.name,
            namespace=namespace.name,
            secret_name=secret_name,
            message=message,
        ))
    return advisories


class WorkloadComposer:
    """Builds object graphs for workloads against a HomelabContext."""

    def compose(
        self,
        descriptor: WorkloadDescriptor,
        namespace: NamespaceHandle,
        credentials: Sequence[ManagedObject],
        context
    ) -> ObjectGraph:
        """
        Compose the object graph for one workload.

        Args:
            descriptor: Validated workload descriptor
            namespace: Resolved namespace handle
            credentials: Credential objects already requested by the fleet
            context: HomelabContext with shared references and defaults

        Returns:
            ObjectGraph, complete or not at all

        Raises:
            ConflictingTopology: Before any object is emitted
            DependencyUnresolved: A required subsystem never became ready
        """
        refs: InfrastructureRefs = context.refs
        plan = plan_topology(descriptor, refs)
        name = descriptor.name
        ns = namespace.name

        graph = ObjectGraph(
            workload=name,
            requested={obj.key: obj for obj in credentials},
        )

        ns_deps: Tuple = ()
        if namespace.created:
            graph.add(namespace.managed_object)
            ns_deps = (namespace.managed_object,)

        # Storage claim
        claim = None
        if plan.has("storage"):
            storage = descriptor.storage
            claim = graph.add(ManagedObject(
                api_version="v1",
                kind="PersistentVolumeClaim",
                name=get_claim_name(name),
                namespace=ns,
                body=create_pvc_manifest(
                    name=name,
                    namespace=ns,
                    size=storage.size,
                    storage_class=storage.storage_class or context.default_storage_class,
                    access_mode=context.storage_access_mode,
                ),
                depends_on=ns_deps,
            ))

        # Runner
        containers = []
        runner_deps = list(ns_deps)
        if claim is not None:
            runner_deps.append(claim)

        service_port = descriptor.port
        if plan.has("oauth-sidecar"):
            oauth = descriptor.oauth
            secret_name = get_oauth_secret_name(name)
            containers.append(create_oauth_proxy_container(
                port=descriptor.port,
                secret_name=secret_name,
                provider=oauth.provider,
                allowed_emails=list(oauth.allowed_emails),
                oidc_issuer_url=oauth.oidc_issuer_url,
            ))
            service_port = OAUTH_PROXY_PORT
            if oauth.allowed_emails:
                logger.warning(
                    f"[COMPOSE] {name}: oauth2-proxy enforces allowed emails by domain only; "
                    f"anyone at {', '.join(sorted({e.split('@')[1] for e in oauth.allowed_emails}))} is admitted"
                )

        containers.append(create_app_container(
            image=descriptor.image,
            port=descriptor.port,
            env=[env.model_dump() for env in descriptor.env],
            resources=descriptor.resources.model_dump() if descriptor.resources else None,
            mount_path=descriptor.storage.mount_path if claim is not None else None,
        ))

        consumed_secrets = list(descriptor.image_pull_secrets)
        if plan.has("oauth-sidecar"):
            consumed_secrets.append(get_oauth_secret_name(name))
        for secret_name in consumed_secrets:
            credential = _find_credential(credentials, secret_name, ns)
            if credential is not None:
                runner_deps.append(credential)

        security = descriptor.security_context
        runner = graph.add(ManagedObject(
            api_version="apps/v1",
            kind="Deployment",
            name=name,
            namespace=ns,
            body=create_deployment_manifest(
                name=name,
                namespace=ns,
                environment=context.environment,
                containers=containers,
                replicas=descriptor.replicas,
                image_pull_secrets=list(descriptor.image_pull_secrets),
                claim_name=claim.name if claim is not None else None,
                run_as_user=security.run_as_user,
                run_as_group=security.run_as_group,
                fs_group=security.fs_group,
            ),
            depends_on=tuple(runner_deps),
        ))

        # Service
        service = graph.add(ManagedObject(
            api_version="v1",
            kind="Service",
            name=name,
            namespace=ns,
            body=create_service_manifest(name, ns, target_port=service_port),
            depends_on=(runner,),
        ))

        # Forward-auth filter
        middleware = None
        if plan.has("forward-auth"):
            backend = refs.auth_backend
            middleware = graph.add(ManagedObject(
                api_version=TRAEFIK_API_VERSION,
                kind="Middleware",
                name=get_middleware_name(name),
                namespace=ns,
                body=create_forward_auth_middleware(
                    name=name,
                    namespace=ns,
                    address=backend.address,
                    response_headers=list(backend.response_headers),
                    trust_forward_header=backend.trust_forward_header,
                ),
                depends_on=ns_deps + _tokens(refs.gateway, refs.tls_issuer),
            ))

        # Route
        gateway = refs.gateway
        route_deps = (service,) + _tokens(gateway)
        if middleware is not None:
            route_deps += (middleware,)
        route = graph.add(ManagedObject(
            api_version=GATEWAY_API_VERSION,
            kind="HTTPRoute",
            name=name,
            namespace=ns,
            body=create_http_route_manifest(
                name=name,
                namespace=ns,
                domain=descriptor.domain,
                service_name=service.name,
                gateway_name=gateway.name,
                gateway_namespace=gateway.namespace,
                section_name=gateway.section_name,
                middleware_name=middleware.name if middleware is not None else None,
                cluster_issuer=refs.tls_issuer.name if plan.has("tls") else None,
            ),
            depends_on=route_deps,
        ))

        # DNS
        if plan.has("dns"):
            zone = refs.dns_zone
            graph.add(ManagedObject(
                api_version=CLOUDFLARE_API_VERSION,
                kind="DNSRecord",
                name=descriptor.domain,
                namespace=None,
                body=create_dns_record(
                    name=name,
                    zone_id=zone.zone_id,
                    domain=descriptor.domain,
                    target=zone.tunnel_hostname,
                    proxied=zone.proxied,
                ),
                depends_on=(route,),
            ))

        logger.info(f"[COMPOSE] {name}: {len(graph)} object(s) [{', '.join(graph.kinds)}]")
        return graph


def compose(
    descriptor: WorkloadDescriptor,
    namespace: NamespaceHandle,
    credentials: Sequence[ManagedObject],
    context
) -> ObjectGraph:
    """Compose with a default WorkloadComposer."""
    return WorkloadComposer().compose(descriptor, namespace, credentials, context)
