"""Tests for verification checks, instructions and email confirmation links."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import dns.exception
import dns.name
import dns.resolver
import httpx
import jwt
import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.tenant_domain import TenantDomain
from app.schemas.tenant_domain import (
    DomainType,
    RegisterDomainRequest,
    VerificationMethod,
    VerifyDomainRequest,
)
from app.services import verification
from app.services.tenant_domain_service import (
    InvalidVerificationLink,
    confirm_email_verification,
    register_domain,
    verify_tenant_domain,
)
from app.services.verification import (
    VERIFICATION_CHECKS,
    build_verification_instructions,
    check_dns_record,
    check_email_confirmation,
    check_verification_file,
    generate_email_verification_token,
    run_verification_check,
    validate_email_verification_token,
)

TOKEN = "a" * 64


def _record(**overrides) -> TenantDomain:
    """In-memory record; checks and instructions never touch the store."""
    values = {
        "tenant_id": "t1",
        "domain": "shop.example.com",
        "domain_type": "custom",
        "verification_token": TOKEN,
        "verification_method": "dns",
        "verification_status": "unverified",
        "email_confirmed_at": None,
    }
    values.update(overrides)
    return TenantDomain(**values)


def _txt(*chunks: bytes) -> SimpleNamespace:
    return SimpleNamespace(strings=chunks)


class TestDnsCheck:
    async def test_matching_txt_record(self):
        resolve = AsyncMock(return_value=[_txt(b"unrelated"), _txt(TOKEN[:32].encode(), TOKEN[32:].encode())])
        with patch("dns.asyncresolver.resolve", resolve):
            assert await check_dns_record(_record()) is True

        assert resolve.await_args.args[:2] == ("_verification.shop.example.com", "TXT")

    async def test_no_matching_value(self):
        with patch("dns.asyncresolver.resolve", AsyncMock(return_value=[_txt(b"other")])):
            assert await check_dns_record(_record()) is False

    @pytest.mark.parametrize(
        "error",
        [
            dns.resolver.NXDOMAIN(),
            dns.resolver.NoAnswer(),
            dns.resolver.NoNameservers(),
            dns.exception.Timeout(),
            dns.name.NameTooLong(),
        ],
    )
    async def test_lookup_failure_is_a_failed_check(self, error):
        with patch("dns.asyncresolver.resolve", AsyncMock(side_effect=error)):
            assert await check_dns_record(_record()) is False


class TestFileCheck:
    async def test_served_token(self):
        fetch = AsyncMock(return_value=httpx.Response(200, text=f"{TOKEN}\n"))
        with patch.object(verification, "_fetch_verification_file", fetch):
            assert await check_verification_file(_record()) is True

        fetch.assert_awaited_once_with(
            "https://shop.example.com/.well-known/domain-verification.txt"
        )

    async def test_wrong_content(self):
        fetch = AsyncMock(return_value=httpx.Response(200, text="something else"))
        with patch.object(verification, "_fetch_verification_file", fetch):
            assert await check_verification_file(_record()) is False

    async def test_missing_file(self):
        fetch = AsyncMock(return_value=httpx.Response(404, text=TOKEN))
        with patch.object(verification, "_fetch_verification_file", fetch):
            assert await check_verification_file(_record()) is False

    async def test_unreachable_host(self):
        fetch = AsyncMock(side_effect=httpx.ConnectError("connection refused"))
        with patch.object(verification, "_fetch_verification_file", fetch):
            assert await check_verification_file(_record()) is False


class TestEmailCheck:
    async def test_unconfirmed(self):
        assert await check_email_confirmation(_record()) is False

    async def test_confirmed(self):
        record = _record(email_confirmed_at=datetime.now(timezone.utc))
        assert await check_email_confirmation(record) is True


class TestDispatch:
    def test_every_method_has_a_check(self):
        assert set(VERIFICATION_CHECKS) == set(VerificationMethod)

    async def test_dispatches_by_method(self):
        dns_check = AsyncMock(return_value=True)
        file_check = AsyncMock(return_value=False)
        with patch.dict(
            VERIFICATION_CHECKS,
            {VerificationMethod.DNS: dns_check, VerificationMethod.FILE: file_check},
        ):
            record = _record()
            assert await run_verification_check(VerificationMethod.DNS, record) is True
            assert await run_verification_check(VerificationMethod.FILE, record) is False

        dns_check.assert_awaited_once_with(record)
        file_check.assert_awaited_once_with(record)


class TestInstructions:
    def test_all_challenges(self):
        instructions = build_verification_instructions(_record())

        assert instructions.domain == "shop.example.com"
        assert instructions.verification_token == TOKEN
        assert instructions.verification_method == VerificationMethod.DNS

        dns_step = instructions.instructions.dns
        assert dns_step.record_type == "TXT"
        assert dns_step.name == "_verification.shop.example.com"
        assert dns_step.value == TOKEN
        assert dns_step.ttl == 300

        file_step = instructions.instructions.file
        assert file_step.file_name == "domain-verification.txt"
        assert file_step.content == TOKEN
        assert file_step.url == "https://shop.example.com/.well-known/domain-verification.txt"

        email_step = instructions.instructions.email
        assert email_step.recipients == [
            "admin@shop.example.com",
            "webmaster@shop.example.com",
            "postmaster@shop.example.com",
        ]
        assert email_step.subject == "Domain Verification Required"
        assert email_step.verification_link.startswith(
            f"{settings.APP_BASE_URL}/api/tenant-domains/verify-email?token="
        )

    def test_link_token_round_trips(self):
        instructions = build_verification_instructions(_record())
        token = instructions.instructions.email.verification_link.split("token=", 1)[1]

        payload = validate_email_verification_token(token)

        assert payload["tenant_id"] == "t1"
        assert payload["domain"] == "shop.example.com"
        assert payload["token"] == TOKEN


class TestEmailVerificationToken:
    def test_has_expiry(self):
        token = generate_email_verification_token("t1", "shop.example.com", TOKEN)
        payload = jwt.decode(token, settings.VERIFICATION_SECRET, algorithms=["HS256"])
        assert "exp" in payload
        assert "iat" in payload

    def test_expired(self):
        payload = {
            "tenant_id": "t1",
            "domain": "shop.example.com",
            "token": TOKEN,
            "exp": datetime.now(timezone.utc) - timedelta(hours=1),
        }
        token = jwt.encode(payload, settings.VERIFICATION_SECRET, algorithm="HS256")
        assert validate_email_verification_token(token) is None

    def test_wrong_secret(self):
        token = jwt.encode(
            {"tenant_id": "t1", "domain": "shop.example.com", "token": TOKEN},
            "wrong-secret-wrong-secret-wrong-secret",
            algorithm="HS256",
        )
        assert validate_email_verification_token(token) is None

    def test_missing_claims(self):
        token = jwt.encode(
            {"tenant_id": "t1"},
            settings.VERIFICATION_SECRET,
            algorithm="HS256",
        )
        assert validate_email_verification_token(token) is None

    def test_garbage(self):
        assert validate_email_verification_token("not-a-token") is None


class TestEmailRoundTrip:
    async def _register(self, db: AsyncSession) -> TenantDomain:
        return await register_domain(
            db,
            RegisterDomainRequest(
                tenant_id=f"t-{uuid4().hex[:8]}",
                domain=f"mail.{uuid4().hex[:8]}.example.com",
                domain_type=DomainType.CUSTOM,
            ),
        )

    async def test_confirmation_link_completes_verification(self, db: AsyncSession, mock_ses_client):
        record = await self._register(db)

        pending = await verify_tenant_domain(
            db,
            record.tenant_id,
            record.domain,
            VerifyDomainRequest(method=VerificationMethod.EMAIL),
        )
        assert pending.verified is False
        assert pending.verification_status == "pending"

        link_token = generate_email_verification_token(
            record.tenant_id, record.domain, record.verification_token
        )
        verified = await confirm_email_verification(db, link_token)

        assert verified.verified is True
        assert verified.verification_status == "verified"
        assert verified.verification_method == "email"
        assert verified.email_confirmed_at is not None
        assert verified.verified_at is not None
        # No further challenge once the link was used
        assert mock_ses_client.send_email.await_count == 3

    async def test_stale_link(self, db: AsyncSession, mock_ses_client):
        record = await self._register(db)
        link_token = generate_email_verification_token(record.tenant_id, record.domain, "b" * 64)

        with pytest.raises(InvalidVerificationLink):
            await confirm_email_verification(db, link_token)

        await db.refresh(record)
        assert record.email_confirmed_at is None
        assert record.verified is False

    async def test_invalid_link(self, db: AsyncSession):
        with pytest.raises(InvalidVerificationLink):
            await confirm_email_verification(db, "garbage")
