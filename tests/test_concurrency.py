"""Concurrent registry calls from independent sessions."""

import asyncio
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.tenant_domain import TenantDomain
from app.schemas.tenant_domain import DomainType, RegisterDomainRequest
from app.services.tenant_domain_service import (
    DomainAlreadyExists,
    register_domain,
    resolve_domain,
    set_default_domain,
)


async def _committed(factory: async_sessionmaker[AsyncSession], operation):
    """Run one operation in its own transaction, like one HTTP request."""
    async with factory() as session:
        try:
            result = await operation(session)
            await session.commit()
            return result
        except Exception:
            await session.rollback()
            raise


class TestConcurrentRegistration:
    async def test_one_winner_per_domain(self, session_factory):
        domain = f"race.{uuid4().hex[:8]}.example.com"

        def attempt(tenant_id: str):
            request = RegisterDomainRequest(
                tenant_id=tenant_id,
                domain=domain,
                domain_type=DomainType.CUSTOM,
            )
            return _committed(session_factory, lambda s: register_domain(s, request))

        results = await asyncio.gather(
            attempt(f"t-{uuid4().hex[:8]}"),
            attempt(f"t-{uuid4().hex[:8]}"),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, TenantDomain)]
        conflicts = [r for r in results if isinstance(r, DomainAlreadyExists)]
        assert len(successes) == 1
        assert len(conflicts) == 1

        async with session_factory() as session:
            count = await session.execute(
                select(func.count()).select_from(TenantDomain).where(TenantDomain.domain == domain)
            )
            assert count.scalar_one() == 1


class TestConcurrentResolution:
    async def test_no_lost_counts(self, session_factory):
        tenant = f"t-{uuid4().hex[:8]}"
        domain = f"busy.{uuid4().hex[:8]}.example.com"
        await _committed(
            session_factory,
            lambda s: register_domain(
                s,
                RegisterDomainRequest(tenant_id=tenant, domain=domain, domain_type=DomainType.CUSTOM),
            ),
        )

        resolutions = 10
        results = await asyncio.gather(*[
            _committed(session_factory, lambda s: resolve_domain(s, domain))
            for _ in range(resolutions)
        ])
        assert all(r is not None for r in results)

        async with session_factory() as session:
            record = (await session.execute(
                select(TenantDomain).where(TenantDomain.domain == domain)
            )).scalar_one()
            assert record.access_count == resolutions


class TestConcurrentDefaultChanges:
    async def test_single_default_after_races(self, session_factory):
        tenant = f"t-{uuid4().hex[:8]}"
        domains = [f"d{i}.{uuid4().hex[:8]}.example.com" for i in range(4)]
        for name in domains:
            await _committed(
                session_factory,
                lambda s, name=name: register_domain(
                    s,
                    RegisterDomainRequest(tenant_id=tenant, domain=name, domain_type=DomainType.SUBDOMAIN),
                ),
            )

        await asyncio.gather(*[
            _committed(session_factory, lambda s, name=name: set_default_domain(s, tenant, name))
            for name in domains
        ])

        async with session_factory() as session:
            result = await session.execute(
                select(TenantDomain.domain).where(
                    TenantDomain.tenant_id == tenant,
                    TenantDomain.is_default.is_(True),
                )
            )
            defaults = result.scalars().all()
            assert len(defaults) == 1
            assert defaults[0] in domains
