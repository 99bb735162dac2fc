"""
Domain errors raised by the service layer.
Each error carries the HTTP status and a stable code used by the API handler.
"""

from typing import Optional


class LinkError(Exception):
    """Base class for link errors surfaced to API clients."""

    status_code = 400
    code = "error"
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class LinkNotFoundError(LinkError):
    status_code = 404
    code = "not_found"
    default_message = "Link not found"


class LinkGoneError(LinkError):
    """Link exists but is inactive, expired, or has reached its click cap."""

    status_code = 410
    code = "gone"
    default_message = "This link is no longer available"


class PasswordRequiredError(LinkError):
    status_code = 401
    code = "password_required"
    default_message = "This link is password protected"

    def __init__(self, slug: str, message: Optional[str] = None):
        self.slug = slug
        super().__init__(message)


class PasswordMismatchError(LinkError):
    status_code = 403
    code = "invalid_password"
    default_message = "Invalid password"


class ValidationError(LinkError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid input"


class InvalidSlugError(ValidationError):
    default_message = "Invalid slug"


class DuplicateSlugError(LinkError):
    status_code = 409
    code = "conflict"
    default_message = "This slug is already taken"


class SlugExhaustedError(LinkError):
    status_code = 503
    code = "slug_exhausted"
    default_message = "Unable to generate a unique slug. Please try again."


class TierLimitError(LinkError):
    status_code = 403
    code = "tier_limit"
    default_message = "Link limit reached for your plan"
