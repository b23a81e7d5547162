"""
Kubernetes Module

- KubernetesClient: probes subsystem readiness and applies managed objects
- helpers: pure manifest builders for every kind the provisioner emits

Nothing in helpers talks to a cluster; only the client does.
"""

from .client import KubernetesClient, get_k8s_client, is_admission_rejection
from .helpers import (
    # Labels
    get_selector_labels,
    get_standard_labels,
    # Core kinds
    create_namespace_manifest,
    create_pvc_manifest,
    create_app_container,
    create_oauth_proxy_container,
    create_deployment_manifest,
    create_service_manifest,
    # Custom resources
    create_forward_auth_middleware,
    create_http_route_manifest,
    create_external_secret_manifest,
    # External records
    create_dns_record,
)

__all__ = [
    # Client
    "KubernetesClient",
    "get_k8s_client",
    "is_admission_rejection",
    # Labels
    "get_selector_labels",
    "get_standard_labels",
    # Core kinds
    "create_namespace_manifest",
    "create_pvc_manifest",
    "create_app_container",
    "create_oauth_proxy_container",
    "create_deployment_manifest",
    "create_service_manifest",
    # Custom resources
    "create_forward_auth_middleware",
    "create_http_route_manifest",
    "create_external_secret_manifest",
    # External records
    "create_dns_record",
]
