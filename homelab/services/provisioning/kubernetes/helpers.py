"""
Kubernetes Manifest Helpers

Pure functions building the desired state of every object kind the
provisioner emits. Core kinds use the typed ``kubernetes.client`` models;
custom resources (HTTPRoute, Middleware, ExternalSecret) are plain dicts in
their API group's shape. Nothing here talks to a cluster.

Key components:
- Namespace with Pod Security Standards labels
- Storage claim, runner Deployment and ClusterIP Service
- Gateway API HTTPRoute bound to the shared gateway
- Traefik forwardAuth Middleware
- ExternalSecret credential-sync requests
- Cloudflare CNAME record payloads
"""

from kubernetes import client
from typing import Any, Dict, List, Optional
import json
import logging

logger = logging.getLogger(__name__)

MANAGED_BY = "homelab-provisioner"

GATEWAY_API_VERSION = "gateway.networking.k8s.io/v1"
TRAEFIK_API_VERSION = "traefik.io/v1alpha1"
EXTERNAL_SECRETS_API_VERSION = "external-secrets.io/v1beta1"

ISSUER_ANNOTATION = "cert-manager.io/cluster-issuer"

DEFAULT_RESOURCES = {
    "requests": {"cpu": "100m", "memory": "128Mi"},
    "limits": {"cpu": "500m", "memory": "512Mi"},
}

OAUTH_PROXY_IMAGE = "quay.io/oauth2-proxy/oauth2-proxy:v7.6.0"
OAUTH_PROXY_PORT = 4180

STORAGE_VOLUME = "storage"


# =============================================================================
# Labels
# =============================================================================

def get_selector_labels(name: str) -> Dict[str, str]:
    """
    Labels selecting a workload's pods.

    The runner's selector and the service's selector both come from here so
    they can never drift apart.
    """
    return {"app": name}


def get_standard_labels(name: str, environment: str) -> Dict[str, str]:
    """
    Get standard labels for workload resources.

    Args:
        name: Workload name
        environment: Stack/environment name

    Returns:
        Dict of labels
    """
    return {
        **get_selector_labels(name),
        "environment": environment,
        "app.kubernetes.io/managed-by": MANAGED_BY,
    }


# =============================================================================
# Namespace
# =============================================================================

def create_namespace_manifest(name: str, environment: str) -> client.V1Namespace:
    """
    Create Namespace manifest with baseline isolation labels.

    Pod Security Standards are enforced at "restricted" level.
    """
    return client.V1Namespace(
        api_version="v1",
        kind="Namespace",
        metadata=client.V1ObjectMeta(
            name=name,
            labels={
                **get_standard_labels(name, environment),
                "pod-security.kubernetes.io/enforce": "restricted",
                "pod-security.kubernetes.io/audit": "restricted",
                "pod-security.kubernetes.io/warn": "restricted",
            }
        )
    )


# =============================================================================
# PVC Manifest
# =============================================================================

def get_claim_name(name: str) -> str:
    return f"{name}-storage"


def create_pvc_manifest(
    name: str,
    namespace: str,
    size: str,
    storage_class: str,
    access_mode: str = "ReadWriteOnce"
) -> client.V1PersistentVolumeClaim:
    """
    Create PVC manifest for workload storage.

    Args:
        name: Workload name
        namespace: Kubernetes namespace
        size: Storage size (e.g. "10Gi")
        storage_class: StorageClass to use
        access_mode: Access mode (default: ReadWriteOnce)

    Returns:
        V1PersistentVolumeClaim manifest
    """
    return client.V1PersistentVolumeClaim(
        api_version="v1",
        kind="PersistentVolumeClaim",
        metadata=client.V1ObjectMeta(
            name=get_claim_name(name),
            namespace=namespace,
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            storage_class_name=storage_class,
            access_modes=[access_mode],
            resources=client.V1ResourceRequirements(
                requests={"storage": size}
            )
        )
    )


# =============================================================================
# Runner Deployment
# =============================================================================

def _restricted_container_security_context() -> client.V1SecurityContext:
    # Required to admit pods into a "restricted" namespace
    return client.V1SecurityContext(
        allow_privilege_escalation=False,
        run_as_non_root=True,
        capabilities=client.V1Capabilities(drop=["ALL"]),
        seccomp_profile=client.V1SeccompProfile(type="RuntimeDefault")
    )


def create_app_container(
    image: str,
    port: int,
    env: Optional[List[Dict[str, str]]] = None,
    resources: Optional[Dict[str, Dict[str, str]]] = None,
    mount_path: Optional[str] = None
) -> client.V1Container:
    """
    Create the main application container.

    Args:
        image: Container image
        port: Port the app listens on
        env: List of {"name", "value"} pairs
        resources: {"requests": {...}, "limits": {...}}; defaults applied if None
        mount_path: Mount path for the storage volume, if any

    Returns:
        V1Container
    """
    resources = resources or DEFAULT_RESOURCES
    container = client.V1Container(
        name="app",
        image=image,
        ports=[
            client.V1ContainerPort(
                container_port=port,
                name="http"
            )
        ],
        env=[client.V1EnvVar(name=e["name"], value=e["value"]) for e in (env or [])],
        resources=client.V1ResourceRequirements(
            requests=resources.get("requests") or None,
            limits=resources.get("limits") or None
        ),
        security_context=_restricted_container_security_context()
    )

    if mount_path:
        container.volume_mounts = [
            client.V1VolumeMount(
                name=STORAGE_VOLUME,
                mount_path=mount_path
            )
        ]

    return container


def build_oauth_proxy_args(
    port: int,
    provider: str,
    allowed_emails: List[str],
    oidc_issuer_url: Optional[str] = None
) -> List[str]:
    """
    Build oauth2-proxy arguments.

    NOTE: allowed emails are enforced by domain only ("admin@example.com"
    admits everyone at example.com), and "--email-domain=*" is always present.
    This mirrors the existing deployment behaviour and is a known limitation.
    """
    args = [
        f"--http-address=0.0.0.0:{OAUTH_PROXY_PORT}",
        f"--upstream=http://localhost:{port}",
        "--email-domain=*",
        "--cookie-secure=true",
        "--cookie-httponly=true",
        "--set-xauthrequest=true",
    ]

    if provider in ("google", "github"):
        args.append(f"--provider={provider}")
    elif provider == "oidc" and oidc_issuer_url:
        args.append("--provider=oidc")
        args.append(f"--oidc-issuer-url={oidc_issuer_url}")

    if allowed_emails:
        args.append("--authenticated-emails-file=/dev/null")
        for email in allowed_emails:
            args.append(f"--email-domain={email.split('@')[1]}")

    return args


def create_oauth_proxy_container(
    port: int,
    secret_name: str,
    provider: str,
    allowed_emails: List[str],
    oidc_issuer_url: Optional[str] = None
) -> client.V1Container:
    """
    Create the oauth2-proxy sidecar container.

    Client credentials are read from the synced ``secret_name`` Secret.
    """
    def from_secret(env_name: str, key: str) -> client.V1EnvVar:
        return client.V1EnvVar(
            name=env_name,
            value_from=client.V1EnvVarSource(
                secret_key_ref=client.V1SecretKeySelector(name=secret_name, key=key)
            )
        )

    return client.V1Container(
        name="oauth-proxy",
        image=OAUTH_PROXY_IMAGE,
        ports=[
            client.V1ContainerPort(
                container_port=OAUTH_PROXY_PORT,
                name="oauth-http"
            )
        ],
        args=build_oauth_proxy_args(port, provider, allowed_emails, oidc_issuer_url),
        env=[
            from_secret("OAUTH2_PROXY_CLIENT_ID", "clientId"),
            from_secret("OAUTH2_PROXY_CLIENT_SECRET", "clientSecret"),
            from_secret("OAUTH2_PROXY_COOKIE_SECRET", "cookieSecret"),
        ],
        resources=client.V1ResourceRequirements(
            requests={"cpu": "10m", "memory": "32Mi"},
            limits={"cpu": "100m", "memory": "128Mi"}
        ),
        security_context=_restricted_container_security_context()
    )


def create_deployment_manifest(
    name: str,
    namespace: str,
    environment: str,
    containers: List[client.V1Container],
    replicas: int = 1,
    image_pull_secrets: Optional[List[str]] = None,
    claim_name: Optional[str] = None,
    run_as_user: int = 1000,
    run_as_group: int = 1000,
    fs_group: int = 1000
) -> client.V1Deployment:
    """
    Create the workload runner Deployment.

    Args:
        name: Workload name
        namespace: Kubernetes namespace
        environment: Stack/environment name (label)
        containers: Pod containers (sidecar first, then app)
        replicas: Desired replica count
        image_pull_secrets: Names of pull secrets
        claim_name: PVC to mount as the "storage" volume
        run_as_user / run_as_group / fs_group: Pod security context

    Returns:
        V1Deployment manifest
    """
    selector_labels = get_selector_labels(name)

    pod_spec = client.V1PodSpec(
        containers=containers,
        security_context=client.V1PodSecurityContext(
            run_as_non_root=True,
            run_as_user=run_as_user,
            run_as_group=run_as_group,
            fs_group=fs_group
        )
    )

    if claim_name:
        pod_spec.volumes = [
            client.V1Volume(
                name=STORAGE_VOLUME,
                persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                    claim_name=claim_name
                )
            )
        ]

    if image_pull_secrets:
        pod_spec.image_pull_secrets = [
            client.V1LocalObjectReference(name=secret) for secret in image_pull_secrets
        ]

    return client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=get_standard_labels(name, environment)
        ),
        spec=client.V1DeploymentSpec(
            replicas=replicas,
            selector=client.V1LabelSelector(
                match_labels=selector_labels
            ),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=dict(selector_labels)),
                spec=pod_spec
            )
        )
    )


# =============================================================================
# Service
# =============================================================================

def create_service_manifest(
    name: str,
    namespace: str,
    target_port: int
) -> client.V1Service:
    """
    Create ClusterIP Service exposing port 80 for a workload.

    Args:
        name: Workload name
        namespace: Kubernetes namespace
        target_port: Container port traffic is forwarded to

    Returns:
        V1Service manifest
    """
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
        ),
        spec=client.V1ServiceSpec(
            type="ClusterIP",
            selector=get_selector_labels(name),
            ports=[
                client.V1ServicePort(
                    port=80,
                    target_port=target_port,
                    protocol="TCP",
                    name="http"
                )
            ]
        )
    )


# =============================================================================
# Forward Auth Middleware and HTTPRoute
# =============================================================================

def get_middleware_name(name: str) -> str:
    return f"{name}-forwardauth"


def create_forward_auth_middleware(
    name: str,
    namespace: str,
    address: str,
    response_headers: List[str],
    trust_forward_header: bool = True
) -> Dict[str, Any]:
    """
    Create a Traefik forwardAuth Middleware in the workload namespace.

    HTTPRoute ExtensionRef filters can only reference same-namespace objects,
    so every forward-auth workload gets its own copy.
    """
    return {
        "apiVersion": TRAEFIK_API_VERSION,
        "kind": "Middleware",
        "metadata": {
            "name": get_middleware_name(name),
            "namespace": namespace,
        },
        "spec": {
            "forwardAuth": {
                "address": address,
                "trustForwardHeader": trust_forward_header,
                "authResponseHeaders": list(response_headers),
            }
        },
    }


def create_http_route_manifest(
    name: str,
    namespace: str,
    domain: str,
    service_name: str,
    gateway_name: str,
    gateway_namespace: str,
    section_name: Optional[str] = None,
    middleware_name: Optional[str] = None,
    cluster_issuer: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create a Gateway API HTTPRoute binding a domain to a workload service.

    Args:
        name: Workload name
        namespace: Kubernetes namespace
        domain: Hostname to route
        service_name: Backend service (port 80)
        gateway_name / gateway_namespace: Shared gateway parent
        section_name: Optional gateway listener name
        middleware_name: forwardAuth Middleware to attach as ExtensionRef filter
        cluster_issuer: cert-manager ClusterIssuer, set as annotation

    Returns:
        HTTPRoute manifest dict
    """
    parent_ref = {
        "name": gateway_name,
        "namespace": gateway_namespace,
        "kind": "Gateway",
    }
    if section_name:
        parent_ref["sectionName"] = section_name

    rule: Dict[str, Any] = {
        "matches": [
            {"path": {"type": "PathPrefix", "value": "/"}}
        ],
        "backendRefs": [
            {"name": service_name, "port": 80}
        ],
    }
    if middleware_name:
        rule["filters"] = [
            {
                "type": "ExtensionRef",
                "extensionRef": {
                    "group": "traefik.io",
                    "kind": "Middleware",
                    "name": middleware_name,
                },
            }
        ]

    metadata: Dict[str, Any] = {"name": name, "namespace": namespace}
    if cluster_issuer:
        metadata["annotations"] = {ISSUER_ANNOTATION: cluster_issuer}

    return {
        "apiVersion": GATEWAY_API_VERSION,
        "kind": "HTTPRoute",
        "metadata": metadata,
        "spec": {
            "parentRefs": [parent_ref],
            "hostnames": [domain],
            "rules": [rule],
        },
    }


# =============================================================================
# ExternalSecret (credential sync)
# =============================================================================

def build_dockerconfigjson(registry: str, username_key: str, token_key: str) -> str:
    """
    Render the .dockerconfigjson template for an ExternalSecret.

    Values are ExternalSecret (Go) template expressions resolved by the
    operator; the structure is serialized here, at the boundary.
    """
    auth = f'{{{{ printf "%s:%s" .{username_key} .{token_key} | b64enc }}}}'
    rendered = json.dumps({
        "auths": {
            registry: {
                "username": f"{{{{ .{username_key} }}}}",
                "password": f"{{{{ .{token_key} }}}}",
                "auth": "__AUTH__",
            }
        }
    })
    # The printf quotes must reach the template engine unescaped
    return rendered.replace("__AUTH__", auth)


def create_external_secret_manifest(
    secret_name: str,
    namespace: str,
    store_name: str,
    store_kind: str,
    refresh_interval: str,
    source_keys: Dict[str, str],
    template: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Create an ExternalSecret syncing remote keys into a namespaced Secret.

    Args:
        secret_name: Name of both the ExternalSecret and the target Secret
        namespace: Target namespace
        store_name / store_kind: Secret store reference
        refresh_interval: Sync cadence (e.g. "1h")
        source_keys: secretKey -> remote key
        template: Optional target template (type + data)

    Returns:
        ExternalSecret manifest dict
    """
    target: Dict[str, Any] = {
        "name": secret_name,
        "creationPolicy": "Owner",
    }
    if template:
        target["template"] = template

    return {
        "apiVersion": EXTERNAL_SECRETS_API_VERSION,
        "kind": "ExternalSecret",
        "metadata": {
            "name": secret_name,
            "namespace": namespace,
        },
        "spec": {
            "refreshInterval": refresh_interval,
            "secretStoreRef": {
                "name": store_name,
                "kind": store_kind,
            },
            "target": target,
            "data": [
                {"secretKey": secret_key, "remoteRef": {"key": remote_key}}
                for secret_key, remote_key in source_keys.items()
            ],
        },
    }


# =============================================================================
# DNS Record
# =============================================================================

def create_dns_record(
    name: str,
    zone_id: str,
    domain: str,
    target: str,
    proxied: bool = True
) -> Dict[str, Any]:
    """
    Create a Cloudflare CNAME record payload for a workload.

    Args:
        name: Workload name (used in the record comment)
        zone_id: Cloudflare zone
        domain: Record name (the workload's domain)
        target: Shared tunnel hostname the record points at
        proxied: Proxy through Cloudflare

    Returns:
        Record dict; "zoneId" is split off when calling the API
    """
    return {
        "zoneId": zone_id,
        "type": "CNAME",
        "name": domain,
        "content": target,
        "proxied": proxied,
        "ttl": 1,  # automatic
        "comment": f"Managed by homelab - {name}",
    }
