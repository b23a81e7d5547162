"""
Infrastructure References

Opaque handles to the shared subsystems every workload is wired against.
References that sit behind a validating admission webhook carry the
subsystem's readiness token; objects that need them depend on that token.
"""

from dataclasses import dataclass, replace
from typing import Dict, Optional, Tuple
import logging

from .objects import ReadinessToken
from .readiness import GATEWAY_SUBSYSTEM, SECRET_STORE_SUBSYSTEM, TLS_ISSUER_SUBSYSTEM

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuerRef:
    """cert-manager ClusterIssuer used for route certificates."""

    name: str
    readiness: Optional[ReadinessToken] = None
    subsystem: str = TLS_ISSUER_SUBSYSTEM


@dataclass(frozen=True)
class DnsZoneRef:
    """Cloudflare zone plus the shared tunnel hostname records point at."""

    zone_id: str
    tunnel_hostname: str
    proxied: bool = True


@dataclass(frozen=True)
class GatewayRef:
    """Shared Gateway API gateway every route attaches to."""

    name: str
    namespace: str
    section_name: Optional[str] = None
    readiness: Optional[ReadinessToken] = None
    subsystem: str = GATEWAY_SUBSYSTEM


@dataclass(frozen=True)
class SecretStoreRef:
    """External Secrets store credentials are synced from."""

    name: str
    kind: str = "ClusterSecretStore"
    readiness: Optional[ReadinessToken] = None
    subsystem: str = SECRET_STORE_SUBSYSTEM


@dataclass(frozen=True)
class AuthBackendRef:
    """Shared forward-auth backend (e.g. Authelia)."""

    address: str
    response_headers: Tuple[str, ...] = ()
    trust_forward_header: bool = True


@dataclass(frozen=True)
class InfrastructureRefs:
    """The set of shared references; any of them may be absent."""

    tls_issuer: Optional[IssuerRef] = None
    dns_zone: Optional[DnsZoneRef] = None
    gateway: Optional[GatewayRef] = None
    secret_store: Optional[SecretStoreRef] = None
    auth_backend: Optional[AuthBackendRef] = None

    @property
    def gated_subsystems(self) -> Tuple[str, ...]:
        """Subsystems whose readiness must be resolved before composing."""
        gated = (self.gateway, self.tls_issuer, self.secret_store)
        return tuple(ref.subsystem for ref in gated if ref is not None)

    def with_readiness(self, tokens: Dict[str, ReadinessToken]) -> "InfrastructureRefs":
        """Copy with readiness tokens attached to the gated references."""
        updates = {}
        for field_name in ("gateway", "tls_issuer", "secret_store"):
            ref = getattr(self, field_name)
            if ref is not None and ref.subsystem in tokens:
                updates[field_name] = replace(ref, readiness=tokens[ref.subsystem])
        return replace(self, **updates)


def refs_from_settings(settings) -> InfrastructureRefs:
    """Build references from environment-level configuration."""
    tls_issuer = IssuerRef(settings.tls_cluster_issuer) if settings.tls_cluster_issuer else None

    dns_zone = None
    if settings.cloudflare_zone_id:
        if settings.cloudflare_tunnel_hostname:
            dns_zone = DnsZoneRef(
                zone_id=settings.cloudflare_zone_id,
                tunnel_hostname=settings.cloudflare_tunnel_hostname,
                proxied=settings.dns_proxied,
            )
        else:
            logger.warning("CLOUDFLARE_ZONE_ID is set without CLOUDFLARE_TUNNEL_HOSTNAME; DNS records disabled")

    gateway = GatewayRef(
        name=settings.gateway_name,
        namespace=settings.gateway_namespace,
        section_name=settings.gateway_section_name or None,
    ) if settings.gateway_name else None

    secret_store = SecretStoreRef(
        name=settings.secret_store_name,
        kind=settings.secret_store_kind,
    ) if settings.secret_store_name else None

    auth_backend = AuthBackendRef(
        address=settings.forward_auth_address,
        response_headers=tuple(settings.forward_auth_headers),
        trust_forward_header=settings.forward_auth_trust_forward_header,
    ) if settings.forward_auth_address else None

    return InfrastructureRefs(
        tls_issuer=tls_issuer,
        dns_zone=dns_zone,
        gateway=gateway,
        secret_store=secret_store,
        auth_backend=auth_backend,
    )
