"""SQLAlchemy models."""

from app.models.tenant_domain import TenantDomain

__all__ = [
    "TenantDomain",
]
