"""
Redirect eligibility rules for links.

Checks run in a fixed order and stop at the first failure: existence,
deactivation, expiry, click cap, then the password checks that depend on
caller input.
"""

import enum
from datetime import datetime
from typing import Callable, Optional

from .exceptions import (
    LinkGoneError,
    LinkNotFoundError,
    PasswordMismatchError,
    PasswordRequiredError,
)
from .models import Link
from .utils import normalize_utc


class LinkState(str, enum.Enum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    CLICK_CAP_REACHED = "click_cap_reached"
    PASSWORD_REQUIRED = "password_required"
    PASSWORD_MISMATCH = "password_mismatch"
    RESOLVABLE = "resolvable"


GONE_MESSAGES = {
    LinkState.INACTIVE: "This link has been deactivated",
    LinkState.EXPIRED: "This link has expired",
    LinkState.CLICK_CAP_REACHED: "This link has reached its maximum number of clicks",
}


def check_availability(link: Optional[Link], now: datetime) -> LinkState:
    """Content-free checks: existence, active flag and expiry."""
    if link is None:
        return LinkState.NOT_FOUND
    if not link.is_active:
        return LinkState.INACTIVE
    expires_at = normalize_utc(link.expires_at)
    if expires_at is not None and expires_at < now:
        return LinkState.EXPIRED
    return LinkState.RESOLVABLE


def evaluate(
    link: Optional[Link],
    password: Optional[str],
    now: datetime,
    verify: Callable[[str, str], bool],
) -> LinkState:
    """Return the redirect state of a link for the supplied password."""
    state = check_availability(link, now)
    if state is not LinkState.RESOLVABLE:
        return state

    if link.max_clicks is not None and (link.clicks_count or 0) >= link.max_clicks:
        return LinkState.CLICK_CAP_REACHED

    if link.password_hash:
        if not password:
            return LinkState.PASSWORD_REQUIRED
        if not verify(password, link.password_hash):
            return LinkState.PASSWORD_MISMATCH

    return LinkState.RESOLVABLE


def raise_for_state(state: LinkState, slug: str) -> None:
    """Raise the API error for a non-resolvable state."""
    if state is LinkState.RESOLVABLE:
        return
    if state is LinkState.NOT_FOUND:
        raise LinkNotFoundError()
    if state in GONE_MESSAGES:
        raise LinkGoneError(GONE_MESSAGES[state])
    if state is LinkState.PASSWORD_REQUIRED:
        raise PasswordRequiredError(slug)
    raise PasswordMismatchError()
