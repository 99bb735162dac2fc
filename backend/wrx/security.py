"""
Security utilities for URL validation, slug sanitization and link passwords.
Blocks private IPs, localhost, and dangerous URLs.
"""

import ipaddress
import re
from typing import Optional, Tuple
from urllib.parse import urlparse

import bcrypt

from .config import Settings
from .exceptions import InvalidSlugError, ValidationError
from .logging_config import get_logger
from .utils import is_reserved_slug

logger = get_logger(__name__)

# Private/reserved IP ranges
PRIVATE_IP_RANGES = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),  # Link-local
    ipaddress.ip_network("::1/128"),  # IPv6 localhost
    ipaddress.ip_network("fc00::/7"),  # IPv6 private
    ipaddress.ip_network("fe80::/10"),  # IPv6 link-local
]

BLOCKED_DOMAINS = {
    "localhost",
    "localhost.localdomain",
    "local",
}

MAX_URL_LENGTH = 2048

SLUG_PATTERN = re.compile(r'^[A-Za-z0-9-]+$')

# bcrypt only looks at the first 72 bytes of input
MAX_PASSWORD_BYTES = 72


def is_private_ip(ip_str: str) -> bool:
    """Check if an IP address is private, localhost, or reserved."""
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(ip in network for network in PRIVATE_IP_RANGES)


def is_domain_blocked(domain: str) -> bool:
    """Check if a domain or any of its parents is in the blocklist."""
    domain_lower = domain.lower()
    if domain_lower in BLOCKED_DOMAINS:
        return True
    return any(domain_lower.endswith("." + blocked) for blocked in BLOCKED_DOMAINS)


def validate_url_security(url: str) -> Tuple[bool, Optional[str]]:
    """
    Validate a destination URL.

    Returns:
        Tuple of (is_safe, error_message)
        If is_safe is True, error_message is None
    """
    if not url:
        return False, "URL is required"

    if len(url) > MAX_URL_LENGTH:
        return False, f"URL too long (max {MAX_URL_LENGTH} characters)"

    try:
        parsed = urlparse(url.strip())
        host = parsed.hostname
    except ValueError:
        return False, "Invalid URL format"

    scheme = parsed.scheme.lower()
    if scheme not in ("http", "https"):
        return False, f"Invalid URL scheme '{scheme}'. Only http and https are allowed"

    if not host:
        return False, "Could not extract host from URL"

    if parsed.username or parsed.password or "\x00" in url:
        return False, "Invalid URL format"

    if is_domain_blocked(host):
        logger.warning(f"Blocked domain attempted: {host}")
        return False, "This domain is not allowed"

    if is_private_ip(host):
        logger.warning(f"Private IP attempted: {host}")
        return False, "URLs pointing to private/local addresses are not allowed"

    return True, None


def validate_custom_slug(slug: str, settings: Settings) -> str:
    """
    Validate a user-chosen slug and return it with surrounding whitespace removed.
    Raises InvalidSlugError on length, character or reserved-word violations.
    """
    slug = (slug or "").strip()
    min_len = settings.MIN_SLUG_LENGTH
    max_len = settings.MAX_SLUG_LENGTH

    if len(slug) < min_len or len(slug) > max_len:
        raise InvalidSlugError(f"Slug must be between {min_len} and {max_len} characters")

    if not SLUG_PATTERN.match(slug):
        raise InvalidSlugError("Slug can only contain letters, numbers, and hyphens")

    if is_reserved_slug(slug, settings.RESERVED_SLUGS):
        logger.warning(f"Attempted reserved slug: {slug}")
        raise InvalidSlugError("This slug is reserved")

    return slug


def hash_password(password: str, rounds: int = 12) -> str:
    """Hash a link password with a salted bcrypt digest."""
    raw = password.encode("utf-8")
    if not raw:
        raise ValidationError("Password must not be empty")
    if len(raw) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(raw, bcrypt.gensalt(rounds=rounds)).decode("ascii")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its bcrypt hash in constant time."""
    raw = password.encode("utf-8")
    if not raw or len(raw) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(raw, password_hash.encode("ascii"))
    except (ValueError, UnicodeEncodeError):
        logger.warning("Stored password hash is malformed")
        return False
