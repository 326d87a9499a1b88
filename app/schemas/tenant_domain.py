"""Tenant domain Pydantic schemas."""

from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.utils.domain_validator import normalize_domain


class DomainType(str, Enum):
    SUBDOMAIN = "subdomain"
    CUSTOM = "custom"
    BOTH = "both"


class DomainStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"
    SUSPENDED = "suspended"


class Protocol(str, Enum):
    HTTP = "http"
    HTTPS = "https"
    BOTH = "both"


class VerificationMethod(str, Enum):
    DNS = "dns"
    FILE = "file"
    EMAIL = "email"


class VerificationStatus(str, Enum):
    """Verification state machine: unverified -> pending -> verified."""

    UNVERIFIED = "unverified"
    PENDING = "pending"
    VERIFIED = "verified"


# --- Configuration blocks ---


class SslConfig(BaseModel):
    """TLS settings for a domain."""

    enabled: bool = True
    certificate: str | None = Field(None, description="Certificate reference")
    expiry_date: datetime | None = None
    auto_renew: bool = True


class CacheHeader(BaseModel):
    path: str
    max_age: int
    cache_control: str


class PerformanceConfig(BaseModel):
    """Edge caching and compression settings."""

    enabled: bool = False
    cache_headers: list[CacheHeader] = Field(default_factory=list)
    compression_enabled: bool = True
    minify_enabled: bool = True


class CorsConfig(BaseModel):
    """CORS policy; defaults are permissive."""

    allowed_origins: list[str] = Field(default_factory=lambda: ["*"])
    allowed_methods: list[str] = Field(
        default_factory=lambda: ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]
    )
    allowed_headers: list[str] = Field(
        default_factory=lambda: ["Content-Type", "Authorization", "X-Tenant-ID"]
    )
    credentials: bool = True


class DnsProviderConfig(BaseModel):
    provider: str | None = Field(None, description="e.g. cloudflare, route53")
    zone_id: str | None = None
    record_id: str | None = None
    last_sync_date: datetime | None = None


class DnsRecordEntry(BaseModel):
    """A DNS record supplied for (or required by) verification."""

    type: Literal["A", "CNAME", "TXT", "MX"]
    name: str
    value: str
    ttl: int = 300


# --- Requests ---


class RegisterDomainRequest(BaseModel):
    """Request schema for registering a domain to a tenant."""

    tenant_id: str = Field(..., min_length=1, max_length=100)
    domain: str = Field(..., description="Hostname (e.g., shop.example.com)")
    domain_type: DomainType
    protocol: Protocol = Protocol.HTTPS
    is_default: bool = False
    is_primary: bool = False
    redirect_to: str | None = None
    ssl_config: SslConfig | None = None
    cors_config: CorsConfig | None = None
    notes: str | None = None

    @field_validator("domain")
    @classmethod
    def normalize(cls, v: str) -> str:
        """Hostnames are case-insensitive; format is checked by the service."""
        return normalize_domain(v)


class UpdateDomainRequest(BaseModel):
    """Partial update; omitted fields keep their stored value."""

    domain_type: DomainType | None = None
    status: DomainStatus | None = None
    protocol: Protocol | None = None
    is_default: bool | None = None
    is_primary: bool | None = None
    redirect_to: str | None = None
    ssl_config: SslConfig | None = None
    performance_config: PerformanceConfig | None = None
    cors_config: CorsConfig | None = None
    dns_provider: DnsProviderConfig | None = None
    notes: str | None = None


class VerifyDomainRequest(BaseModel):
    """Request schema for a verification attempt."""

    method: VerificationMethod = VerificationMethod.DNS
    dns_records: list[DnsRecordEntry] | None = None


# --- Responses ---


class VerificationInfo(BaseModel):
    verified: bool
    status: VerificationStatus
    method: VerificationMethod
    token: str | None
    verified_at: datetime | None
    dns_records: list[DnsRecordEntry]


class TenantDomainResponse(BaseModel):
    """Full tenant domain record."""

    id: UUID
    tenant_id: str
    domain: str
    domain_type: DomainType
    status: DomainStatus
    is_default: bool
    is_primary: bool
    protocol: Protocol
    redirect_to: str | None
    ssl_config: SslConfig
    verification: VerificationInfo
    performance_config: PerformanceConfig
    cors_config: CorsConfig
    dns_provider: DnsProviderConfig
    notes: str | None
    access_count: int
    last_access_date: datetime | None
    created_at: datetime | None
    updated_at: datetime | None


class TenantDomainListResponse(BaseModel):
    items: list[TenantDomainResponse]
    total: int


class DomainTypeCounts(BaseModel):
    subdomain: int = 0
    custom: int = 0
    both: int = 0


class TenantDomainStats(BaseModel):
    """Aggregate counters for one tenant's domains."""

    total: int
    active: int
    verified: int
    by_type: DomainTypeCounts
    total_access: int
    last_access: datetime | None


class DnsInstruction(BaseModel):
    record_type: str = "TXT"
    name: str
    value: str | None
    ttl: int = 300


class FileInstruction(BaseModel):
    file_name: str
    content: str | None
    url: str


class EmailInstruction(BaseModel):
    recipients: list[str]
    subject: str
    verification_link: str | None


class VerificationChallenges(BaseModel):
    dns: DnsInstruction
    file: FileInstruction
    email: EmailInstruction


class VerificationInstructions(BaseModel):
    """Challenge artifacts derived from the stored verification token."""

    model_config = ConfigDict(from_attributes=True)

    domain: str
    verification_token: str | None
    verification_method: VerificationMethod
    verification_status: VerificationStatus
    instructions: VerificationChallenges
