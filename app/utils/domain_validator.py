"""Hostname validation utilities."""

import re
from typing import Tuple

MAX_DOMAIN_LENGTH = 253

# RFC 1035 style: dot-separated labels of 1-63 alphanumerics or hyphens,
# no leading/trailing hyphen
DOMAIN_REGEX = re.compile(
    r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)*"
    r"[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)


def normalize_domain(domain: str) -> str:
    """Strip whitespace and lower-case a hostname."""
    return domain.strip().lower()


def validate_domain(domain: str) -> Tuple[bool, str | None]:
    """
    Validate hostname format.

    Args:
        domain: Hostname to validate (e.g., "demo.example.com")

    Returns:
        Tuple of (is_valid, error_message)
        If valid, error_message is None
    """
    if not domain:
        return False, "Domain name is required"

    if not DOMAIN_REGEX.match(domain):
        return False, "Invalid domain format"

    if len(domain) > MAX_DOMAIN_LENGTH:
        return False, f"Domain name too long (max {MAX_DOMAIN_LENGTH} characters)"

    return True, None
