from pydantic import BaseModel, Field, field_validator
from enum import Enum
from typing import Optional, List, Dict, Literal
import re

# DNS-1123 label: lowercase alphanumerics and '-', starting and ending alphanumeric
_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_DOMAIN = re.compile(r"^(?=.{1,253}$)([a-z0-9]([-a-z0-9]*[a-z0-9])?\.)+[a-z]{2,63}$")


class AuthMode(str, Enum):
    """How requests to a workload are authenticated."""

    NONE = "none"
    FORWARD = "forward"  # Delegate to the shared auth backend via a forwardAuth filter

    def __str__(self) -> str:
        return self.value


class StorageSpec(BaseModel):
    size: str = Field(..., description="Requested capacity, e.g. '10Gi'")
    mount_path: str = Field(..., description="Mount path inside the app container")
    storage_class: Optional[str] = Field(None, description="StorageClass (defaults from settings)")

    class Config:
        frozen = True

    @field_validator('mount_path')
    @classmethod
    def validate_mount_path(cls, v):
        if not v.startswith('/'):
            raise ValueError('mount_path must be absolute')
        return v


class ResourceSpec(BaseModel):
    requests: Dict[str, str] = Field(default_factory=dict)
    limits: Dict[str, str] = Field(default_factory=dict)

    class Config:
        frozen = True


class SecurityContextSpec(BaseModel):
    run_as_user: int = 1000
    run_as_group: int = 1000
    fs_group: int = 1000

    class Config:
        frozen = True


class EnvVar(BaseModel):
    name: str
    value: str

    class Config:
        frozen = True


class OAuthSidecarSpec(BaseModel):
    """oauth2-proxy sidecar in front of the app container."""

    provider: Literal["google", "github", "oidc"]
    allowed_emails: List[str] = Field(default_factory=list)
    oidc_issuer_url: Optional[str] = None

    class Config:
        frozen = True

    @field_validator('allowed_emails')
    @classmethod
    def validate_emails(cls, v):
        for email in v:
            if email.count('@') != 1:
                raise ValueError(f"Invalid email address: {email}")
        return v


class WorkloadDescriptor(BaseModel):
    """Declarative description of one exposed workload."""

    name: str = Field(..., description="Workload name (also the namespace name)")
    image: str = Field(..., description="Container image reference")
    domain: str = Field(..., description="Fully qualified domain name")
    port: int = Field(..., ge=1, le=65535, description="Container port")
    replicas: int = Field(default=1, ge=0)
    auth: AuthMode = AuthMode.NONE
    storage: Optional[StorageSpec] = None
    image_pull_secrets: List[str] = Field(default_factory=list)
    resources: Optional[ResourceSpec] = None
    env: List[EnvVar] = Field(default_factory=list)
    security_context: SecurityContextSpec = Field(default_factory=SecurityContextSpec)
    oauth: Optional[OAuthSidecarSpec] = None
    namespace: Optional[str] = Field(None, description="Pre-created namespace to deploy into")

    class Config:
        frozen = True
        extra = "forbid"

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if len(v) > 63 or not _DNS_LABEL.match(v):
            raise ValueError('name must be a DNS-1123 label (lowercase alphanumerics and "-", max 63 chars)')
        return v

    @field_validator('domain')
    @classmethod
    def validate_domain(cls, v):
        v = v.strip().lower()
        if not _DOMAIN.match(v):
            raise ValueError(f"Invalid domain: {v}")
        return v

    @field_validator('namespace')
    @classmethod
    def validate_namespace(cls, v):
        if v is not None and not _DNS_LABEL.match(v):
            raise ValueError('namespace must be a DNS-1123 label')
        return v

    @property
    def has_pull_secrets(self) -> bool:
        return bool(self.image_pull_secrets)
