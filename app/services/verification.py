"""Domain ownership checks, challenge artifacts and email confirmation links."""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

import dns.asyncresolver
import dns.exception
import httpx
import jwt
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import settings
from app.models.tenant_domain import TenantDomain
from app.schemas.tenant_domain import (
    DnsInstruction,
    EmailInstruction,
    FileInstruction,
    VerificationChallenges,
    VerificationInstructions,
    VerificationMethod,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

EMAIL_SUBJECT = "Domain Verification Required"
EMAIL_MAILBOXES = ("admin", "webmaster", "postmaster")
DNS_RECORD_TTL = 300


def dns_challenge_name(domain: str) -> str:
    """Name of the TXT record that must carry the token."""
    return f"{settings.DNS_VERIFICATION_PREFIX}.{domain}"


def verification_file_url(domain: str) -> str:
    return f"https://{domain}/.well-known/{settings.VERIFICATION_FILE_NAME}"


def email_recipients(domain: str) -> list[str]:
    return [f"{mailbox}@{domain}" for mailbox in EMAIL_MAILBOXES]


# --- Email confirmation links ---


def generate_email_verification_token(
    tenant_id: str,
    domain: str,
    verification_token: str,
) -> str:
    """
    Generate a signed JWT for an email verification link.

    Args:
        tenant_id: Owning tenant
        domain: Domain being verified
        verification_token: The domain's current verification token

    Returns:
        JWT token string
    """
    now = datetime.now(timezone.utc)
    payload = {
        "tenant_id": tenant_id,
        "domain": domain,
        "token": verification_token,
        "iat": now,
        "exp": now + timedelta(hours=settings.VERIFICATION_LINK_TTL_HOURS),
    }
    return jwt.encode(payload, settings.VERIFICATION_SECRET, algorithm="HS256")


def validate_email_verification_token(token: str) -> dict | None:
    """
    Validate and decode an email verification JWT.

    Returns:
        Decoded payload dict if valid, None if invalid/expired
    """
    try:
        payload = jwt.decode(
            token,
            settings.VERIFICATION_SECRET,
            algorithms=["HS256"],
        )
    except jwt.ExpiredSignatureError:
        logger.warning("Email verification link expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid email verification link: {e}")
        return None

    if not all(payload.get(key) for key in ("tenant_id", "domain", "token")):
        logger.warning("Email verification link is missing claims")
        return None
    return payload


def build_email_verification_link(record: TenantDomain) -> str | None:
    if not record.verification_token:
        return None
    token = generate_email_verification_token(
        record.tenant_id, record.domain, record.verification_token
    )
    return f"{settings.APP_BASE_URL}/api/tenant-domains/verify-email?token={token}"


def build_verification_email(record: TenantDomain, link: str) -> tuple[str, str]:
    """Return (html, text) bodies for the email challenge."""
    text = (
        f"Someone requested to connect {record.domain} to their account.\n\n"
        f"If you manage this domain, confirm ownership by opening:\n{link}\n\n"
        f"The link expires in {settings.VERIFICATION_LINK_TTL_HOURS} hours."
    )
    html = (
        f"<p>Someone requested to connect <strong>{record.domain}</strong> "
        f"to their account.</p>"
        f"<p>If you manage this domain, confirm ownership: "
        f'<a href="{link}">verify {record.domain}</a></p>'
        f"<p>The link expires in {settings.VERIFICATION_LINK_TTL_HOURS} hours.</p>"
    )
    return html, text


# --- Checks ---


async def check_dns_record(record: TenantDomain) -> bool:
    """Pass iff a TXT record at the challenge name carries the token."""
    name = dns_challenge_name(record.domain)
    try:
        answer = await dns.asyncresolver.resolve(
            name, "TXT", lifetime=settings.DNS_LOOKUP_TIMEOUT
        )
    except dns.exception.DNSException as e:
        # Any resolver or name error is a failed check, never a server error
        logger.info(f"DNS verification lookup failed for {name}: {e}")
        return False

    for rdata in answer:
        value = b"".join(rdata.strings).decode("utf-8", errors="ignore")
        if value == record.verification_token:
            return True

    logger.info(f"No TXT record at {name} matches the verification token")
    return False


@retry(
    retry=retry_if_exception_type(httpx.TransportError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    reraise=True,
)
async def _fetch_verification_file(url: str) -> httpx.Response:
    async with httpx.AsyncClient(
        follow_redirects=True,
        timeout=settings.VERIFICATION_HTTP_TIMEOUT,
    ) as client:
        return await client.get(url)


async def check_verification_file(record: TenantDomain) -> bool:
    """Pass iff the well-known file is served with the token as its body."""
    url = verification_file_url(record.domain)
    try:
        response = await _fetch_verification_file(url)
    except httpx.HTTPError as e:
        logger.info(f"Could not fetch verification file {url}: {e}")
        return False

    if response.status_code != 200:
        logger.info(f"Verification file {url} returned {response.status_code}")
        return False

    return response.text.strip() == record.verification_token


async def check_email_confirmation(record: TenantDomain) -> bool:
    """Pass iff a recipient has opened the confirmation link."""
    return record.email_confirmed_at is not None


VerificationCheck = Callable[[TenantDomain], Awaitable[bool]]

VERIFICATION_CHECKS: dict[VerificationMethod, VerificationCheck] = {
    VerificationMethod.DNS: check_dns_record,
    VerificationMethod.FILE: check_verification_file,
    VerificationMethod.EMAIL: check_email_confirmation,
}


async def run_verification_check(
    method: VerificationMethod,
    record: TenantDomain,
) -> bool:
    """Dispatch to the check registered for the method."""
    check = VERIFICATION_CHECKS[method]
    passed = await check(record)
    logger.info(
        f"Verification check {method.value} for {record.domain}: "
        f"{'passed' if passed else 'failed'}"
    )
    return passed


# --- Instructions ---


def build_verification_instructions(record: TenantDomain) -> VerificationInstructions:
    """
    Build the challenge artifacts for every verification method.

    Read-only: derived from the stored token, nothing is persisted.

    Args:
        record: Domain record with its verification token

    Returns:
        DNS, file and email instructions plus the current method/state
    """
    token = record.verification_token

    return VerificationInstructions(
        domain=record.domain,
        verification_token=token,
        verification_method=VerificationMethod(record.verification_method),
        verification_status=VerificationStatus(record.verification_status),
        instructions=VerificationChallenges(
            dns=DnsInstruction(
                record_type="TXT",
                name=dns_challenge_name(record.domain),
                value=token,
                ttl=DNS_RECORD_TTL,
            ),
            file=FileInstruction(
                file_name=settings.VERIFICATION_FILE_NAME,
                content=token,
                url=verification_file_url(record.domain),
            ),
            email=EmailInstruction(
                recipients=email_recipients(record.domain),
                subject=EMAIL_SUBJECT,
                verification_link=build_email_verification_link(record),
            ),
        ),
    )
