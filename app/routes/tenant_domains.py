"""Tenant domain API routes."""

import logging
from typing import NoReturn

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_session
from app.models.tenant_domain import TenantDomain
from app.schemas.common import raise_api_error
from app.schemas.tenant_domain import (
    DomainType,
    RegisterDomainRequest,
    TenantDomainListResponse,
    TenantDomainResponse,
    TenantDomainStats,
    UpdateDomainRequest,
    VerificationInfo,
    VerificationInstructions,
    VerifyDomainRequest,
)
from app.services import tenant_domain_service
from app.services.ses_client import SESError
from app.services.tenant_domain_service import TenantDomainError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenant-domains")


def _raise_registry_error(error: TenantDomainError) -> NoReturn:
    raise_api_error(
        code=error.code,
        message=error.message,
        status_code=error.status_code,
        details=error.details,
    )


def _not_found(what: str) -> NoReturn:
    raise_api_error(
        code="DOMAIN_NOT_FOUND",
        message=what,
        status_code=status.HTTP_404_NOT_FOUND,
    )


def to_response(record: TenantDomain) -> TenantDomainResponse:
    """Shape a stored record into the API representation."""
    return TenantDomainResponse(
        id=record.id,
        tenant_id=record.tenant_id,
        domain=record.domain,
        domain_type=record.domain_type,
        status=record.status,
        is_default=record.is_default,
        is_primary=record.is_primary,
        protocol=record.protocol,
        redirect_to=record.redirect_to,
        ssl_config=record.ssl_config or {},
        verification=VerificationInfo(
            verified=record.verified,
            status=record.verification_status,
            method=record.verification_method,
            token=record.verification_token,
            verified_at=record.verified_at,
            dns_records=record.dns_records or [],
        ),
        performance_config=record.performance_config or {},
        cors_config=record.cors_config or {},
        dns_provider=record.dns_provider or {},
        notes=record.notes,
        access_count=record.access_count,
        last_access_date=record.last_access_date,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


@router.post(
    "",
    response_model=TenantDomainResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_domain(
    request: RegisterDomainRequest,
    db: AsyncSession = Depends(get_session),
) -> TenantDomainResponse:
    """
    Register a domain to a tenant.

    **Request Body:**
    ```json
    {
      "tenant_id": "t1",
      "domain": "demo.example.com",
      "domain_type": "custom",
      "is_default": true,
      "is_primary": true
    }
    ```

    **Response:**
    - 201 Created: Domain registered, verification token issued
    - 400 Bad Request: Invalid hostname (`INVALID_DOMAIN_FORMAT`)
    - 409 Conflict: Hostname held by any tenant (`DOMAIN_ALREADY_EXISTS`)

    Registering with `is_default` or `is_primary` moves that flag from the
    tenant's current holder to the new domain.
    """
    try:
        record = await tenant_domain_service.register_domain(db, request)
    except TenantDomainError as e:
        _raise_registry_error(e)

    return to_response(record)


@router.get("/search", response_model=TenantDomainListResponse)
async def search_domains(
    q: str = Query(..., min_length=1, description="Substring of domain or notes"),
    tenant_id: str | None = Query(None, description="Restrict to one tenant"),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_session),
) -> TenantDomainListResponse:
    """Search domains by name or notes (case-insensitive)."""
    records = await tenant_domain_service.search_domains(db, q, tenant_id, limit)
    return TenantDomainListResponse(
        items=[to_response(r) for r in records],
        total=len(records),
    )


@router.get("/verify-email", response_model=TenantDomainResponse)
async def confirm_email_verification(
    token: str = Query(..., description="Token from the verification email"),
    db: AsyncSession = Depends(get_session),
) -> TenantDomainResponse:
    """
    Confirmation link target for the email challenge.

    **Response:**
    - 200 OK: Domain verified
    - 400 Bad Request: Link invalid, expired or superseded
    - 404 Not Found: Domain no longer registered
    """
    try:
        record = await tenant_domain_service.confirm_email_verification(db, token)
    except TenantDomainError as e:
        _raise_registry_error(e)

    return to_response(record)


@router.get("/tenant/{tenant_id}", response_model=TenantDomainListResponse)
async def list_tenant_domains(
    tenant_id: str,
    type: DomainType | None = Query(None, description="Filter by domain type"),
    db: AsyncSession = Depends(get_session),
) -> TenantDomainListResponse:
    """List a tenant's domains, optionally filtered by `type`."""
    records, total = await tenant_domain_service.list_tenant_domains(db, tenant_id, type)
    return TenantDomainListResponse(
        items=[to_response(r) for r in records],
        total=total,
    )


@router.get("/tenant/{tenant_id}/default", response_model=TenantDomainResponse)
async def get_default_domain(
    tenant_id: str,
    db: AsyncSession = Depends(get_session),
) -> TenantDomainResponse:
    """Get the tenant's active default domain."""
    record = await tenant_domain_service.find_default_domain(db, tenant_id)
    if record is None:
        _not_found(f"No default domain for tenant {tenant_id}")
    return to_response(record)


@router.get("/tenant/{tenant_id}/primary", response_model=TenantDomainResponse)
async def get_primary_domain(
    tenant_id: str,
    db: AsyncSession = Depends(get_session),
) -> TenantDomainResponse:
    """Get the tenant's active primary domain."""
    record = await tenant_domain_service.find_primary_domain(db, tenant_id)
    if record is None:
        _not_found(f"No primary domain for tenant {tenant_id}")
    return to_response(record)


@router.get("/tenant/{tenant_id}/stats", response_model=TenantDomainStats)
async def get_tenant_stats(
    tenant_id: str,
    db: AsyncSession = Depends(get_session),
) -> TenantDomainStats:
    """Counts by status, verification and type, plus access totals."""
    return await tenant_domain_service.get_tenant_stats(db, tenant_id)


@router.get("/domain/{domain}", response_model=TenantDomainResponse)
async def resolve_domain(
    domain: str,
    db: AsyncSession = Depends(get_session),
) -> TenantDomainResponse:
    """
    Resolve a hostname to its tenant.

    Only `active` domains resolve. Each successful lookup increments the
    domain's `access_count` and stamps `last_access_date`.
    """
    record = await tenant_domain_service.resolve_domain(db, domain)
    if record is None:
        _not_found(f"Domain {domain} not found")
    return to_response(record)


@router.get("/{tenant_id}/{domain}/verification", response_model=VerificationInstructions)
async def get_verification_instructions(
    tenant_id: str,
    domain: str,
    db: AsyncSession = Depends(get_session),
) -> VerificationInstructions:
    """
    Get the DNS, file and email challenges for a domain.

    **Example DNS configuration:**
    ```
    _verification.example.com  TXT  "<verification token>"
    ```
    """
    try:
        return await tenant_domain_service.get_verification_instructions(db, tenant_id, domain)
    except TenantDomainError as e:
        _raise_registry_error(e)


@router.get("/{tenant_id}/{domain}", response_model=TenantDomainResponse)
async def get_tenant_domain(
    tenant_id: str,
    domain: str,
    db: AsyncSession = Depends(get_session),
) -> TenantDomainResponse:
    """Get one domain owned by a tenant."""
    try:
        record = await tenant_domain_service.get_tenant_domain(db, tenant_id, domain)
    except TenantDomainError as e:
        _raise_registry_error(e)

    return to_response(record)


@router.patch("/{tenant_id}/{domain}/verify", response_model=TenantDomainResponse)
async def verify_domain(
    tenant_id: str,
    domain: str,
    request: VerifyDomainRequest,
    db: AsyncSession = Depends(get_session),
) -> TenantDomainResponse:
    """
    Attempt verification with the given method (`dns`, `file` or `email`).

    A failed check is still a 200 response: inspect `verification.verified`.
    For `email`, a failed check sends the challenge email to the domain's
    admin, webmaster and postmaster mailboxes.
    """
    try:
        record = await tenant_domain_service.verify_tenant_domain(db, tenant_id, domain, request)
    except TenantDomainError as e:
        _raise_registry_error(e)
    except SESError as e:
        logger.error(f"SES error sending verification email for {domain}: {e}")
        raise_api_error(
            code="VERIFICATION_EMAIL_FAILED",
            message=str(e),
            status_code=status.HTTP_502_BAD_GATEWAY,
        )

    return to_response(record)


@router.patch("/{tenant_id}/{domain}/set-default", response_model=TenantDomainResponse)
async def set_default_domain(
    tenant_id: str,
    domain: str,
    db: AsyncSession = Depends(get_session),
) -> TenantDomainResponse:
    """Make this the tenant's default domain (the previous one is unset)."""
    try:
        record = await tenant_domain_service.set_default_domain(db, tenant_id, domain)
    except TenantDomainError as e:
        _raise_registry_error(e)

    return to_response(record)


@router.patch("/{tenant_id}/{domain}/set-primary", response_model=TenantDomainResponse)
async def set_primary_domain(
    tenant_id: str,
    domain: str,
    db: AsyncSession = Depends(get_session),
) -> TenantDomainResponse:
    """Make this the tenant's primary domain (the previous one is unset)."""
    try:
        record = await tenant_domain_service.set_primary_domain(db, tenant_id, domain)
    except TenantDomainError as e:
        _raise_registry_error(e)

    return to_response(record)


@router.patch("/{tenant_id}/{domain}", response_model=TenantDomainResponse)
async def update_domain(
    tenant_id: str,
    domain: str,
    request: UpdateDomainRequest,
    db: AsyncSession = Depends(get_session),
) -> TenantDomainResponse:
    """
    Partially update a domain.

    Omitted fields keep their value; nested config blocks are merged.
    Setting `is_default` or `is_primary` to true moves the flag here.
    """
    try:
        record = await tenant_domain_service.update_tenant_domain(db, tenant_id, domain, request)
    except TenantDomainError as e:
        _raise_registry_error(e)

    return to_response(record)


@router.delete("/{tenant_id}/{domain}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_domain(
    tenant_id: str,
    domain: str,
    db: AsyncSession = Depends(get_session),
) -> Response:
    """
    Delete a domain.

    **Response:**
    - 204 No Content: Domain removed
    - 400 Bad Request: Domain is default or primary (`DOMAIN_PROTECTED`)
    - 404 Not Found: Tenant holds no such domain
    """
    try:
        await tenant_domain_service.remove_tenant_domain(db, tenant_id, domain)
    except TenantDomainError as e:
        _raise_registry_error(e)

    return Response(status_code=status.HTTP_204_NO_CONTENT)
