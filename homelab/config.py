from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    # Stack/environment name, stamped on namespace and runner labels
    environment: str = "homelab"

    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # Base domain (no protocol), e.g. "example.com"
    domain: str = ""

    # ==========================================================================
    # Cloudflare DNS Configuration
    # ==========================================================================
    # Zone in which workload CNAME records are created. Empty disables DNS records.
    cloudflare_zone_id: str = ""
    # Shared tunnel hostname every workload record points at
    # Format: "<tunnel-id>.cfargotunnel.com"
    cloudflare_tunnel_hostname: str = ""
    cloudflare_api_token: str = ""
    cloudflare_api_base: str = "https://api.cloudflare.com/client/v4"
    dns_proxied: bool = True  # Proxy through Cloudflare (IPv4 + IPv6)

    # ==========================================================================
    # TLS Configuration
    # ==========================================================================
    # cert-manager ClusterIssuer name. Empty disables the issuer annotation.
    tls_cluster_issuer: str = "letsencrypt-prod"

    # ==========================================================================
    # Gateway Configuration
    # ==========================================================================
    gateway_name: str = "homelab-gateway"
    gateway_namespace: str = "traefik-system"
    gateway_section_name: str = ""  # Empty attaches routes to every listener
    gateway_controller_deployment: str = "traefik"

    # ==========================================================================
    # Forward Authentication (Authelia)
    # ==========================================================================
    # Empty means no shared auth backend; forward-auth workloads are rejected
    forward_auth_address: str = ""
    forward_auth_response_headers: str = "Remote-User,Remote-Groups,Remote-Name,Remote-Email"
    forward_auth_trust_forward_header: bool = True

    # ==========================================================================
    # External Secrets Configuration
    # ==========================================================================
    # ClusterSecretStore name. Empty disables credential distribution.
    secret_store_name: str = "pulumi-esc"
    secret_store_kind: str = "ClusterSecretStore"
    credential_refresh_interval: str = "1h"
    # Comma-separated registry providers synced into every workload namespace
    fleet_pull_secret_providers: str = "ghcr"
    default_namespace: str = "default"

    # ==========================================================================
    # Storage Settings
    # ==========================================================================
    default_storage_class: str = "local-path"
    storage_access_mode: str = "ReadWriteOnce"

    # ==========================================================================
    # Readiness Gate Settings
    # ==========================================================================
    readiness_max_attempts: int = 10
    readiness_min_wait: float = 1.0  # Seconds before the first re-check
    readiness_max_wait: float = 30.0  # Upper bound for exponential backoff
    # Skip cluster probes entirely (offline manifest rendering)
    readiness_assume_ready: bool = False

    # ==========================================================================
    # Fleet Discovery
    # ==========================================================================
    # YAML file with a "workloads" list, or a directory of descriptor files
    fleet_path: str = "fleet"

    @property
    def forward_auth_headers(self) -> List[str]:
        """Parsed list of headers forwarded from the auth backend."""
        return [h.strip() for h in self.forward_auth_response_headers.split(",") if h.strip()]

    @property
    def fleet_providers(self) -> List[str]:
        """Parsed list of fleet-wide pull secret providers."""
        return [p.strip() for p in self.fleet_pull_secret_providers.split(",") if p.strip()]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False  # Allow lowercase env vars to match uppercase field names


@lru_cache()
def get_settings():
    return Settings()
