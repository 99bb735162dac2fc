import secrets
import string
from dataclasses import dataclass
from urllib.parse import urlparse
from typing import Optional
from datetime import datetime, timezone
from user_agents import parse as parse_user_agent  # type: ignore

SLUG_ALPHABET = string.ascii_letters + string.digits


@dataclass
class VisitorInfo:
    """Request metadata stored with each click."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    referrer: Optional[str] = None
    country: Optional[str] = None
    device: str = "Desktop"
    browser: str = "Other"
    os: str = "Other"


def generate_slug(length: int = 7) -> str:
    """Generate a random slug from [A-Za-z0-9]. Does not check availability."""
    return ''.join(secrets.choice(SLUG_ALPHABET) for _ in range(length))


def is_reserved_slug(slug: str, reserved: list[str]) -> bool:
    """Check if a slug collides with a reserved path segment."""
    return slug.lower() in {r.lower() for r in reserved}


REFERRER_SHORT_HOSTS = {"t.co": "Twitter", "fb.me": "Facebook", "fb.com": "Facebook"}
REFERRER_SOURCES = (
    ("google", "Google"),
    ("facebook", "Facebook"),
    ("twitter", "Twitter"),
    ("instagram", "Instagram"),
    ("linkedin", "LinkedIn"),
    ("youtube", "YouTube"),
)


def referrer_source(referrer: Optional[str]) -> str:
    """Group a stored referrer under a well-known source name or its hostname."""
    if not referrer:
        return "Direct"
    try:
        hostname = (urlparse(referrer).hostname or "").lower()
    except ValueError:
        return "Other"
    if not hostname:
        return "Other"
    if hostname in REFERRER_SHORT_HOSTS:
        return REFERRER_SHORT_HOSTS[hostname]
    for needle, source in REFERRER_SOURCES:
        if needle in hostname:
            return source
    return hostname


def _browser_name(family: str) -> str:
    family = family.lower()
    if "edge" in family:
        return "Edge"
    if "chrome" in family or "chromium" in family:
        return "Chrome"
    if "firefox" in family:
        return "Firefox"
    if "safari" in family:
        return "Safari"
    return "Other"


def _os_name(family: str) -> str:
    family = family.lower()
    if "windows" in family:
        return "Windows"
    if family == "ios" or "iphone" in family or "ipad" in family:
        return "iOS"
    if "mac" in family:
        return "macOS"
    if "android" in family:
        return "Android"
    if "linux" in family or "ubuntu" in family or "fedora" in family:
        return "Linux"
    return "Other"


def detect_device(user_agent_string: Optional[str]) -> tuple[str, str, str]:
    """
    Classify a user agent into (device, browser, os).
    Best-effort; unknown agents fall back to ("Desktop", "Other", "Other").
    """
    if not user_agent_string:
        return "Desktop", "Other", "Other"

    try:
        user_agent = parse_user_agent(user_agent_string)
    except Exception:
        return "Desktop", "Other", "Other"

    if user_agent.is_bot:
        device = "Bot"
    elif user_agent.is_tablet:
        device = "Tablet"
    elif user_agent.is_mobile:
        device = "Mobile"
    else:
        device = "Desktop"

    return device, _browser_name(user_agent.browser.family), _os_name(user_agent.os.family)


def sanitize_referer(referer: Optional[str]) -> Optional[str]:
    """Sanitize and truncate referer URL."""
    if not referer:
        return None

    # Remove query parameters for privacy
    try:
        parsed = urlparse(referer)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    sanitized = f"{parsed.scheme}://{parsed.netloc}{parsed.path}"
    return sanitized[:500]


def parse_visitor(
    user_agent: Optional[str],
    ip_address: Optional[str] = None,
    referrer: Optional[str] = None,
    country: Optional[str] = None,
) -> VisitorInfo:
    """Build click metadata from raw request headers."""
    device, browser, os_name = detect_device(user_agent)
    country_code = country.strip().upper() if country else None
    if country_code and (len(country_code) != 2 or country_code == "XX"):
        country_code = None
    return VisitorInfo(
        ip_address=ip_address or None,
        user_agent=user_agent[:512] if user_agent else None,
        referrer=sanitize_referer(referrer),
        country=country_code,
        device=device,
        browser=browser,
        os=os_name,
    )


def format_short_url(base_url: str, slug: str) -> str:
    """Format a slug into a full URL."""
    return f"{base_url.rstrip('/')}/{slug}"


def utc_now() -> datetime:
    """Return timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def normalize_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to timezone-aware UTC (assume naive is UTC)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
