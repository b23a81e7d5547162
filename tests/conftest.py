"""
Test configuration and fixtures for pytest.

Fixtures include: ready/not-ready readiness tokens, fully wired infrastructure
references, a homelab context, a namespace resolver and a descriptor factory.
"""

import sys
import os
from pathlib import Path
import pytest

# Add the project root to sys.path
project_dir = Path(__file__).parent.parent
sys.path.insert(0, str(project_dir))

AUTHELIA_ADDRESS = "http://authelia.authelia.svc.cluster.local:9091/api/authz/auth-request"
TUNNEL_HOSTNAME = "tunnel-abc.example.net"


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    # Set test environment variables BEFORE any settings are loaded
    os.environ["ENVIRONMENT"] = "test"
    os.environ["DOMAIN"] = "example.com"
    os.environ["CLOUDFLARE_ZONE_ID"] = "zone-123"
    os.environ["CLOUDFLARE_TUNNEL_HOSTNAME"] = TUNNEL_HOSTNAME
    os.environ["FORWARD_AUTH_ADDRESS"] = AUTHELIA_ADDRESS
    os.environ["READINESS_ASSUME_READY"] = "true"

    from homelab.config import get_settings
    get_settings.cache_clear()

    # Register custom markers
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "kubernetes: mark test as requiring the kubernetes client")


@pytest.fixture
def ready_tokens():
    """Ready tokens for every gated subsystem."""
    from homelab.services.provisioning import ReadinessToken
    return {
        name: ReadinessToken(subsystem=name, ready=True, attempts=1)
        for name in ("traefik", "cert-manager", "external-secrets")
    }


@pytest.fixture
def full_refs(ready_tokens):
    """Every shared reference configured, with ready tokens attached."""
    from homelab.services.provisioning import (
        AuthBackendRef,
        DnsZoneRef,
        GatewayRef,
        InfrastructureRefs,
        IssuerRef,
        SecretStoreRef,
    )
    refs = InfrastructureRefs(
        tls_issuer=IssuerRef("letsencrypt-prod"),
        dns_zone=DnsZoneRef(zone_id="zone-123", tunnel_hostname=TUNNEL_HOSTNAME),
        gateway=GatewayRef(name="homelab-gateway", namespace="traefik-system"),
        secret_store=SecretStoreRef(name="pulumi-esc"),
        auth_backend=AuthBackendRef(
            address=AUTHELIA_ADDRESS,
            response_headers=("Remote-User", "Remote-Groups", "Remote-Name", "Remote-Email"),
        ),
    )
    return refs.with_readiness(ready_tokens)


@pytest.fixture
def context(full_refs):
    """Homelab context with every shared reference."""
    from homelab.services.provisioning import build_context
    return build_context(full_refs, environment="test")


@pytest.fixture
def resolver():
    from homelab.services.provisioning import NamespaceResolver
    return NamespaceResolver("test")


@pytest.fixture
def make_descriptor():
    """Factory for workload descriptors with sensible defaults."""
    from homelab.schemas import WorkloadDescriptor

    def _make(**overrides):
        fields = {
            "name": "demo",
            "image": "nginx:1.25",
            "domain": "demo.example.com",
            "port": 8080,
        }
        fields.update(overrides)
        return WorkloadDescriptor(**fields)

    return _make
