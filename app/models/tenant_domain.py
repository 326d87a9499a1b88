"""TenantDomain model: one row per hostname registered to a tenant."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JsonBlob = JSON().with_variant(JSONB(), "postgresql")


class TenantDomain(Base):
    """Represents a hostname mapped to exactly one tenant."""

    __tablename__ = "tenant_domains"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )

    # Owning tenant
    tenant_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )

    # Hostname (globally unique, stored lower-case)
    domain: Mapped[str] = mapped_column(
        String(253),
        nullable=False,
    )

    # subdomain | custom | both
    domain_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    # active | inactive | pending | suspended
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="active",
    )

    # Per-tenant singleton flags
    is_default: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    is_primary: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    # http | https | both
    protocol: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="https",
    )

    redirect_to: Mapped[str | None] = mapped_column(
        String(253),
        nullable=True,
    )

    # Verification state
    verification_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="unverified",
    )
    verified: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    verification_method: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="dns",
    )
    verification_token: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    verified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    dns_records: Mapped[list[dict[str, Any]]] = mapped_column(
        JsonBlob,
        nullable=False,
        default=list,
    )
    email_confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Configuration blobs
    ssl_config: Mapped[dict[str, Any]] = mapped_column(
        JsonBlob,
        nullable=False,
        default=dict,
    )
    performance_config: Mapped[dict[str, Any]] = mapped_column(
        JsonBlob,
        nullable=False,
        default=dict,
    )
    cors_config: Mapped[dict[str, Any]] = mapped_column(
        JsonBlob,
        nullable=False,
        default=dict,
    )
    dns_provider: Mapped[dict[str, Any]] = mapped_column(
        JsonBlob,
        nullable=False,
        default=dict,
    )

    notes: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Access tracking (only ever incremented by the store)
    access_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    last_access_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # Indexes
    __table_args__ = (
        UniqueConstraint("domain", name="uq_tenant_domains_domain"),
        # At most one default and one primary domain per tenant
        Index(
            "uq_tenant_domains_default",
            "tenant_id",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default"),
        ),
        Index(
            "uq_tenant_domains_primary",
            "tenant_id",
            unique=True,
            postgresql_where=text("is_primary"),
            sqlite_where=text("is_primary"),
        ),
        Index("ix_tenant_domains_tenant_id", "tenant_id"),
        Index("ix_tenant_domains_tenant_domain", "tenant_id", "domain"),
        Index("ix_tenant_domains_tenant_type", "tenant_id", "domain_type"),
        Index("ix_tenant_domains_tenant_default", "tenant_id", "is_default"),
        Index("ix_tenant_domains_tenant_primary", "tenant_id", "is_primary"),
        Index("ix_tenant_domains_status", "status"),
        Index("ix_tenant_domains_verified", "verified"),
    )

    def __repr__(self) -> str:
        return (
            f"<TenantDomain(tenant_id={self.tenant_id}, domain={self.domain}, "
            f"status={self.status})>"
        )


# Full-text search over domain and notes (PostgreSQL only)
Index(
    "ix_tenant_domains_search",
    func.to_tsvector(
        "simple",
        TenantDomain.domain + " " + func.coalesce(TenantDomain.notes, ""),
    ),
    postgresql_using="gin",
).ddl_if(dialect="postgresql")
