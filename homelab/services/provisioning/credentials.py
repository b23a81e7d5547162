"""
Credential Distributor

Requests synchronization of named credentials (registry pull secrets, OAuth
client secrets) into target namespaces through External Secrets. Every request
depends on the secret-store readiness token; identical (provider, namespace)
requests collapse to one ExternalSecret.

Whether the synced Secret has materialized is not observed here. Consumers
(image pulls, sidecars) stay pending until it exists, which is reported as a
CredentialMissing advisory rather than an error.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple
import logging

from .errors import MalformedDescriptor
from .namespace_resolver import NamespaceHandle
from .objects import ManagedObject, ReadinessToken
from .kubernetes.helpers import (
    EXTERNAL_SECRETS_API_VERSION,
    build_dockerconfigjson,
    create_external_secret_manifest,
)

logger = logging.getLogger(__name__)

OAUTH_PREFIX = "oauth/"


@dataclass(frozen=True)
class CredentialProvider:
    """Where a credential comes from and the Secret it becomes."""

    provider_id: str
    secret_name: str
    # secretKey -> remote key in the secret store
    source_keys: Dict[str, str] = field(default_factory=dict)
    # Registry host for kubernetes.io/dockerconfigjson secrets
    registry: Optional[str] = None

    @property
    def target_secret_shape(self) -> str:
        return "kubernetes.io/dockerconfigjson" if self.registry else "Opaque"

    def template(self) -> Optional[Dict]:
        if not self.registry:
            return None
        username_key, token_key = list(self.source_keys)
        return {
            "type": self.target_secret_shape,
            "data": {
                ".dockerconfigjson": build_dockerconfigjson(self.registry, username_key, token_key),
            },
        }


REGISTRY_PROVIDERS: Dict[str, CredentialProvider] = {
    "ghcr": CredentialProvider(
        provider_id="ghcr",
        secret_name="ghcr-pull-secret",
        source_keys={
            "github_username": "github-credentials/username",
            "github_token": "github-credentials/token",
        },
        registry="ghcr.io",
    ),
    "dockerhub": CredentialProvider(
        provider_id="dockerhub",
        secret_name="dockerhub-pull-secret",
        source_keys={
            "dockerhub_username": "dockerhub-credentials/username",
            "dockerhub_token": "dockerhub-credentials/token",
        },
        registry="https://index.docker.io/v1/",
    ),
}


def oauth_provider_id(workload: str) -> str:
    return f"{OAUTH_PREFIX}{workload}"


def get_oauth_secret_name(workload: str) -> str:
    return f"{workload}-oauth"


def get_provider(provider_id: str) -> CredentialProvider:
    """
    Look up a credential provider.

    Registry providers are static; "oauth/<workload>" providers are derived
    from the workload name.

    Raises:
        MalformedDescriptor: Unknown provider id
    """
    if provider_id.startswith(OAUTH_PREFIX):
        workload = provider_id[len(OAUTH_PREFIX):]
        return CredentialProvider(
            provider_id=provider_id,
            secret_name=get_oauth_secret_name(workload),
            source_keys={
                "clientId": f"{workload}/oauth/clientId",
                "clientSecret": f"{workload}/oauth/clientSecret",
                "cookieSecret": f"{workload}/oauth/cookieSecret",
            },
        )
    try:
        return REGISTRY_PROVIDERS[provider_id]
    except KeyError:
        valid = ", ".join(sorted(REGISTRY_PROVIDERS))
        raise MalformedDescriptor(f"Unknown credential provider '{provider_id}'. Valid providers: {valid}")


def provider_for_secret(secret_name: str) -> Optional[str]:
    """Registry provider that produces a pull secret of this name, if any."""
    for provider in REGISTRY_PROVIDERS.values():
        if provider.secret_name == secret_name:
            return provider.provider_id
    return None


@dataclass(frozen=True)
class CredentialRequest:
    """Request to sync one provider's credential into one namespace."""

    provider_id: str
    namespace: NamespaceHandle
    refresh_interval: str = "1h"

    @property
    def key(self) -> Tuple[str, str]:
        return (self.provider_id, self.namespace.name)

    def to_schema(self) -> Dict:
        provider = get_provider(self.provider_id)
        return {
            "providerId": self.provider_id,
            "targetNamespace": self.namespace.name,
            "refreshInterval": self.refresh_interval,
            "sourceKeys": list(provider.source_keys.values()),
            "targetSecretShape": provider.target_secret_shape,
        }


@dataclass(frozen=True)
class CredentialAdvisory:
    """A consumer that stays pending until a credential materializes."""

    workload: str
    namespace: str
    secret_name: str
    message: str
    kind: str = "CredentialMissing"


class CredentialDistributor:
    """
    Emits ExternalSecret objects, one per (provider, namespace).

    Only the fleet orchestrator should call ``distribute``; the dedup map is
    shared state for the whole run.
    """

    def __init__(self, store_name: str, store_kind: str = "ClusterSecretStore", refresh_interval: str = "1h"):
        self.store_name = store_name
        self.store_kind = store_kind
        self.refresh_interval = refresh_interval
        self._issued: Dict[Tuple[str, str], ManagedObject] = {}
        self._requests: Dict[Tuple[str, str], CredentialRequest] = {}

    def distribute(self, request: CredentialRequest, gate: ReadinessToken) -> ManagedObject:
        """
        Emit (or return the already emitted) sync request for a credential.

        Args:
            request: Provider and target namespace
            gate: Secret-store readiness token

        Returns:
            The ExternalSecret managed object for (provider, namespace)

        Raises:
            DependencyUnresolved: The secret store is not ready
        """
        existing = self._issued.get(request.key)
        if existing is not None:
            logger.debug(f"[CREDS] {request.provider_id} already requested for {request.namespace.name}")
            return existing

        gate.require()
        provider = get_provider(request.provider_id)

        manifest = create_external_secret_manifest(
            secret_name=provider.secret_name,
            namespace=request.namespace.name,
            store_name=self.store_name,
            store_kind=self.store_kind,
            refresh_interval=request.refresh_interval,
            source_keys=provider.source_keys,
            template=provider.template(),
        )

        depends_on: Tuple = (gate,)
        if request.namespace.created:
            depends_on = (request.namespace.managed_object, gate)

        obj = ManagedObject(
            api_version=EXTERNAL_SECRETS_API_VERSION,
            kind="ExternalSecret",
            name=provider.secret_name,
            namespace=request.namespace.name,
            body=manifest,
            depends_on=depends_on,
        )
        self._issued[request.key] = obj
        self._requests[request.key] = request
        logger.info(f"[CREDS] Requested {provider.secret_name} in {request.namespace.name}")
        return obj

    def distribute_fleet(
        self,
        provider_ids: Iterable[str],
        namespaces: Iterable[NamespaceHandle],
        gate: ReadinessToken
    ) -> List[ManagedObject]:
        """Emit one request per provider per namespace."""
        namespaces = list(namespaces)
        objects = []
        for provider_id in provider_ids:
            for namespace in namespaces:
                objects.append(self.distribute(
                    CredentialRequest(provider_id, namespace, self.refresh_interval),
                    gate,
                ))
        return objects

    def for_namespace(self, namespace: str) -> List[ManagedObject]:
        """All credential objects requested into a namespace."""
        return [obj for (_, ns), obj in self._issued.items() if ns == namespace]

    @property
    def issued(self) -> List[ManagedObject]:
        return list(self._issued.values())

    def schemas(self) -> List[Dict]:
        """Credential-sync request schemas, in request order."""
        return [request.to_schema() for request in self._requests.values()]
