"""Tenant domain registry: domain-to-tenant mapping, default/primary flags and verification."""

import logging
import secrets
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import status
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

from app.config import settings
from app.models.tenant_domain import TenantDomain
from app.schemas.tenant_domain import (
    CorsConfig,
    DomainStatus,
    DomainType,
    DomainTypeCounts,
    PerformanceConfig,
    RegisterDomainRequest,
    SslConfig,
    TenantDomainStats,
    UpdateDomainRequest,
    VerificationInstructions,
    VerificationMethod,
    VerificationStatus,
    VerifyDomainRequest,
)
from app.services.ses_client import ses_client
from app.services.verification import (
    EMAIL_SUBJECT,
    build_email_verification_link,
    build_verification_email,
    build_verification_instructions,
    email_recipients,
    run_verification_check,
    validate_email_verification_token,
)
from app.utils.domain_validator import normalize_domain, validate_domain

logger = logging.getLogger(__name__)

# Blobs merged key by key on update
NESTED_FIELDS = {"ssl_config", "performance_config", "cors_config", "dns_provider"}
# Fields an update may explicitly clear
NULLABLE_FIELDS = {"redirect_to", "notes"}


class TenantDomainError(Exception):
    """Base exception for registry operations."""

    code = "TENANT_DOMAIN_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidDomainFormat(TenantDomainError):
    code = "INVALID_DOMAIN_FORMAT"
    status_code = status.HTTP_400_BAD_REQUEST


class DomainAlreadyExists(TenantDomainError):
    code = "DOMAIN_ALREADY_EXISTS"
    status_code = status.HTTP_409_CONFLICT


class DomainNotFound(TenantDomainError):
    code = "DOMAIN_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class PrimaryOrDefaultDomainProtected(TenantDomainError):
    code = "DOMAIN_PROTECTED"
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidVerificationLink(TenantDomainError):
    code = "INVALID_VERIFICATION_LINK"
    status_code = status.HTTP_400_BAD_REQUEST


def generate_verification_token() -> str:
    """256-bit random token, hex encoded (64 characters)."""
    return secrets.token_hex(32)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_domain_conflict(error: IntegrityError) -> bool:
    """Whether an IntegrityError came from the unique constraint on domain."""
    message = str(error.orig)
    return "uq_tenant_domains_domain" in message or "tenant_domains.domain" in message


async def _lock_tenant_flags(db: AsyncSession, tenant_id: str) -> None:
    """
    Serialize default/primary changes for one tenant.

    Takes a transaction-scoped advisory lock on PostgreSQL, released on
    commit or rollback. SQLite already serializes writers.
    """
    if db.get_bind().dialect.name == "postgresql":
        await db.execute(select(func.pg_advisory_xact_lock(func.hashtext(tenant_id))))


async def _clear_flag(
    db: AsyncSession,
    tenant_id: str,
    flag: InstrumentedAttribute,
    keep_domain: str | None = None,
) -> None:
    """Unset a per-tenant singleton flag on every domain except keep_domain."""
    stmt = update(TenantDomain).where(
        TenantDomain.tenant_id == tenant_id,
        flag.is_(True),
    )
    if keep_domain is not None:
        stmt = stmt.where(TenantDomain.domain != keep_domain)

    await db.execute(
        stmt.values({flag: False}).execution_options(synchronize_session="fetch")
    )


async def register_domain(db: AsyncSession, request: RegisterDomainRequest) -> TenantDomain:
    """
    Register a hostname to a tenant.

    Uniqueness is enforced by the store's unique constraint; the pre-check
    only gives the common case a clean error. Flag sweeps run before the
    insert so there is never a moment with two defaults or two primaries.

    Args:
        db: Database session
        request: Registration request

    Returns:
        Created domain record

    Raises:
        InvalidDomainFormat: If the hostname is malformed or too long
        DomainAlreadyExists: If any tenant already holds the hostname
    """
    domain_name = normalize_domain(request.domain)
    is_valid, error_msg = validate_domain(domain_name)
    if not is_valid:
        logger.warning(f"Invalid domain for registration: {request.domain!r}")
        raise InvalidDomainFormat(error_msg or "Invalid domain format", {"domain": domain_name})

    existing = await db.execute(
        select(TenantDomain.id).where(TenantDomain.domain == domain_name)
    )
    if existing.scalar_one_or_none() is not None:
        logger.info(f"Domain already registered: {domain_name}")
        raise DomainAlreadyExists(
            f"Domain {domain_name} is already registered",
            {"domain": domain_name},
        )

    if request.is_default or request.is_primary:
        await _lock_tenant_flags(db, request.tenant_id)
    if request.is_default:
        await _clear_flag(db, request.tenant_id, TenantDomain.is_default)
    if request.is_primary:
        await _clear_flag(db, request.tenant_id, TenantDomain.is_primary)

    record = TenantDomain(
        id=uuid4(),
        tenant_id=request.tenant_id,
        domain=domain_name,
        domain_type=request.domain_type.value,
        status=DomainStatus.ACTIVE.value,
        is_default=request.is_default,
        is_primary=request.is_primary,
        protocol=request.protocol.value,
        redirect_to=request.redirect_to,
        ssl_config=(request.ssl_config or SslConfig()).model_dump(mode="json"),
        verification_status=VerificationStatus.UNVERIFIED.value,
        verified=False,
        verification_method=VerificationMethod.DNS.value,
        verification_token=generate_verification_token(),
        dns_records=[],
        performance_config=PerformanceConfig().model_dump(mode="json"),
        cors_config=(request.cors_config or CorsConfig()).model_dump(mode="json"),
        dns_provider={},
        notes=request.notes,
        access_count=0,
    )

    try:
        db.add(record)
        await db.flush()
    except IntegrityError as e:
        if _is_domain_conflict(e):
            # Race condition - registered by another request
            logger.warning(f"Race condition registering domain: {domain_name}")
            raise DomainAlreadyExists(
                f"Domain {domain_name} is already registered",
                {"domain": domain_name},
            ) from e
        raise

    await db.refresh(record)

    logger.info(
        f"Registered domain {domain_name} for tenant {request.tenant_id} "
        f"(default={request.is_default}, primary={request.is_primary})"
    )
    return record


async def list_tenant_domains(
    db: AsyncSession,
    tenant_id: str,
    domain_type: DomainType | None = None,
) -> tuple[list[TenantDomain], int]:
    """
    List a tenant's domains, optionally filtered by type.

    Returns:
        Tuple of (domain list, total count)
    """
    query = select(TenantDomain).where(TenantDomain.tenant_id == tenant_id)
    if domain_type is not None:
        query = query.where(TenantDomain.domain_type == domain_type.value)

    result = await db.execute(query.order_by(TenantDomain.created_at, TenantDomain.domain))
    domains = list(result.scalars().all())
    return domains, len(domains)


async def resolve_domain(db: AsyncSession, domain: str) -> TenantDomain | None:
    """
    Resolve an active hostname to its record, counting the access.

    The increment and the read are one UPDATE ... RETURNING statement, so
    concurrent resolutions never lose counts.

    Args:
        db: Database session
        domain: Hostname to resolve

    Returns:
        Domain record, or None if unknown or not active
    """
    stmt = (
        update(TenantDomain)
        .where(
            TenantDomain.domain == normalize_domain(domain),
            TenantDomain.status == DomainStatus.ACTIVE.value,
        )
        .values(
            access_count=TenantDomain.access_count + 1,
            last_access_date=_utcnow(),
        )
        .returning(TenantDomain)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def _find_flagged_domain(
    db: AsyncSession,
    tenant_id: str,
    flag: InstrumentedAttribute,
) -> TenantDomain | None:
    result = await db.execute(
        select(TenantDomain).where(
            TenantDomain.tenant_id == tenant_id,
            flag.is_(True),
            TenantDomain.status == DomainStatus.ACTIVE.value,
        )
    )
    return result.scalar_one_or_none()


async def find_default_domain(db: AsyncSession, tenant_id: str) -> TenantDomain | None:
    """Get the tenant's active default domain."""
    return await _find_flagged_domain(db, tenant_id, TenantDomain.is_default)


async def find_primary_domain(db: AsyncSession, tenant_id: str) -> TenantDomain | None:
    """Get the tenant's active primary domain."""
    return await _find_flagged_domain(db, tenant_id, TenantDomain.is_primary)


async def get_tenant_domain(db: AsyncSession, tenant_id: str, domain: str) -> TenantDomain:
    """
    Get one domain record owned by a tenant.

    Raises:
        DomainNotFound: If the tenant holds no such domain
    """
    domain_name = normalize_domain(domain)
    result = await db.execute(
        select(TenantDomain).where(
            TenantDomain.tenant_id == tenant_id,
            TenantDomain.domain == domain_name,
        )
    )
    record = result.scalar_one_or_none()

    if record is None:
        raise DomainNotFound(
            f"Domain {domain_name} not found for tenant {tenant_id}",
            {"tenant_id": tenant_id, "domain": domain_name},
        )
    return record


async def update_tenant_domain(
    db: AsyncSession,
    tenant_id: str,
    domain: str,
    request: UpdateDomainRequest,
) -> TenantDomain:
    """
    Apply a partial update to a domain.

    Setting is_default or is_primary unsets the flag on the tenant's other
    domains first. Nested config blocks are merged key by key. Verification
    state is not writable here.

    Raises:
        DomainNotFound: If the tenant holds no such domain
    """
    patch = request.model_dump(exclude_unset=True, mode="json")

    if "is_default" in patch or "is_primary" in patch:
        await _lock_tenant_flags(db, tenant_id)

    record = await get_tenant_domain(db, tenant_id, domain)

    if patch.get("is_default"):
        await _clear_flag(db, tenant_id, TenantDomain.is_default, keep_domain=record.domain)
    if patch.get("is_primary"):
        await _clear_flag(db, tenant_id, TenantDomain.is_primary, keep_domain=record.domain)

    for field, value in patch.items():
        if value is None:
            if field not in NULLABLE_FIELDS:
                continue
        elif field in NESTED_FIELDS:
            value = {**(getattr(record, field) or {}), **value}
        setattr(record, field, value)

    await db.flush()
    await db.refresh(record)

    logger.info(f"Updated domain {record.domain} for tenant {tenant_id}: {sorted(patch)}")
    return record


async def _send_verification_email(record: TenantDomain) -> None:
    """
    Send the email challenge to the domain's administrative mailboxes.

    Mailboxes are sent to one at a time. An SESError on a later mailbox
    leaves the earlier emails delivered, and since the verification token
    is unchanged their links stay valid after the rollback.
    """
    link = build_email_verification_link(record)
    html, text = build_verification_email(record, link)

    for recipient in email_recipients(record.domain):
        await ses_client.send_email(
            source=settings.VERIFICATION_FROM_EMAIL,
            to=recipient,
            subject=EMAIL_SUBJECT,
            html=html,
            text=text,
        )

    logger.info(f"Verification email sent for {record.domain}")


async def verify_tenant_domain(
    db: AsyncSession,
    tenant_id: str,
    domain: str,
    request: VerifyDomainRequest,
) -> TenantDomain:
    """
    Run a verification attempt.

    The method and any supplied DNS records are stored whatever the outcome.
    A failed check is not an error: the record comes back with
    verified=False. A verified domain never goes back to unverified; a
    passing re-check only re-stamps verified_at.

    For the email method, a failed check sends (or re-sends) the challenge
    email; the check passes once a recipient opens the link.

    Args:
        db: Database session
        tenant_id: Owning tenant
        domain: Domain to verify
        request: Method and optional DNS records

    Returns:
        Updated domain record

    Raises:
        DomainNotFound: If the tenant holds no such domain
        SESError: If the email challenge could not be sent
    """
    record = await get_tenant_domain(db, tenant_id, domain)

    if not record.verification_token:
        record.verification_token = generate_verification_token()

    record.verification_method = request.method.value
    if request.dns_records is not None:
        record.dns_records = [r.model_dump(mode="json") for r in request.dns_records]

    passed = await run_verification_check(request.method, record)

    if passed:
        record.verified = True
        record.verification_status = VerificationStatus.VERIFIED.value
        record.verified_at = _utcnow()
        record.status = DomainStatus.ACTIVE.value
        logger.info(f"Domain {record.domain} verified via {request.method.value}")
    elif not record.verified:
        record.verification_status = VerificationStatus.PENDING.value
        if request.method == VerificationMethod.EMAIL:
            await _send_verification_email(record)

    await db.flush()
    await db.refresh(record)
    return record


async def confirm_email_verification(db: AsyncSession, token: str) -> TenantDomain:
    """
    Complete an email challenge from a confirmation link.

    Raises:
        InvalidVerificationLink: If the link is invalid, expired or stale
        DomainNotFound: If the domain no longer exists
    """
    payload = validate_email_verification_token(token)
    if payload is None:
        raise InvalidVerificationLink("Verification link is invalid or expired")

    tenant_id, domain_name = payload["tenant_id"], payload["domain"]
    record = await get_tenant_domain(db, tenant_id, domain_name)

    if not secrets.compare_digest(record.verification_token or "", payload["token"]):
        logger.warning(f"Stale email verification link for {domain_name}")
        raise InvalidVerificationLink(
            "Verification link does not match the current token",
            {"domain": domain_name},
        )

    if record.email_confirmed_at is None:
        record.email_confirmed_at = _utcnow()

    return await verify_tenant_domain(
        db,
        tenant_id,
        domain_name,
        VerifyDomainRequest(method=VerificationMethod.EMAIL),
    )


async def _set_flag(
    db: AsyncSession,
    tenant_id: str,
    domain: str,
    flag: InstrumentedAttribute,
) -> TenantDomain:
    await _lock_tenant_flags(db, tenant_id)
    record = await get_tenant_domain(db, tenant_id, domain)

    await _clear_flag(db, tenant_id, flag)
    setattr(record, flag.key, True)

    await db.flush()
    await db.refresh(record)

    logger.info(f"Domain {record.domain} is now {flag.key} for tenant {tenant_id}")
    return record


async def set_default_domain(db: AsyncSession, tenant_id: str, domain: str) -> TenantDomain:
    """Make a domain the tenant's only default domain."""
    return await _set_flag(db, tenant_id, domain, TenantDomain.is_default)


async def set_primary_domain(db: AsyncSession, tenant_id: str, domain: str) -> TenantDomain:
    """Make a domain the tenant's only primary domain."""
    return await _set_flag(db, tenant_id, domain, TenantDomain.is_primary)


async def remove_tenant_domain(db: AsyncSession, tenant_id: str, domain: str) -> None:
    """
    Delete a domain.

    Default and primary domains are protected; promote another domain (or
    clear the flag) first. Flags are never reassigned automatically.

    Raises:
        DomainNotFound: If the tenant holds no such domain
        PrimaryOrDefaultDomainProtected: If the domain is default or primary
    """
    await _lock_tenant_flags(db, tenant_id)
    record = await get_tenant_domain(db, tenant_id, domain)

    if record.is_primary or record.is_default:
        raise PrimaryOrDefaultDomainProtected(
            "Cannot delete primary or default domain",
            {"is_default": record.is_default, "is_primary": record.is_primary},
        )

    await db.delete(record)
    await db.flush()

    logger.info(f"Domain {record.domain} removed for tenant {tenant_id}")


async def get_tenant_stats(db: AsyncSession, tenant_id: str) -> TenantDomainStats:
    """Aggregate counters over a tenant's domains."""
    domains, total = await list_tenant_domains(db, tenant_id)

    by_type = DomainTypeCounts()
    for d in domains:
        setattr(by_type, d.domain_type, getattr(by_type, d.domain_type) + 1)

    access_dates = [d.last_access_date for d in domains if d.last_access_date is not None]

    return TenantDomainStats(
        total=total,
        active=sum(1 for d in domains if d.status == DomainStatus.ACTIVE.value),
        verified=sum(1 for d in domains if d.verified),
        by_type=by_type,
        total_access=sum(d.access_count for d in domains),
        last_access=max(access_dates) if access_dates else None,
    )


async def get_verification_instructions(
    db: AsyncSession,
    tenant_id: str,
    domain: str,
) -> VerificationInstructions:
    """Challenge artifacts for a domain; changes nothing."""
    record = await get_tenant_domain(db, tenant_id, domain)
    return build_verification_instructions(record)


async def search_domains(
    db: AsyncSession,
    query: str,
    tenant_id: str | None = None,
    limit: int = 50,
) -> list[TenantDomain]:
    """Case-insensitive substring search over domain names and notes."""
    stmt = select(TenantDomain).where(
        or_(
            TenantDomain.domain.icontains(query, autoescape=True),
            TenantDomain.notes.icontains(query, autoescape=True),
        )
    )
    if tenant_id is not None:
        stmt = stmt.where(TenantDomain.tenant_id == tenant_id)

    result = await db.execute(stmt.order_by(TenantDomain.domain).limit(limit))
    return list(result.scalars().all())
