from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List
from datetime import datetime
import re
from .security import validate_url_security

URL_PATTERN = re.compile(
    r'^https?://'  # http:// or https://
    r'(?:(?:[A-Z0-9](?:[A-Z0-9-]{0,61}[A-Z0-9])?\.)+[A-Z]{2,63}\.?|'  # domain
    r'\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})'  # or IP
    r'(?::\d+)?'  # optional port
    r'(?:/?|[/?]\S+)$', re.IGNORECASE)


def check_destination_url(v: str) -> str:
    v = v.strip()
    if not URL_PATTERN.match(v):
        raise ValueError('Invalid URL format. Must start with http:// or https://')

    # Security validation - block private IPs, localhost, dangerous URLs
    is_safe, error = validate_url_security(v)
    if not is_safe:
        raise ValueError(error or 'URL failed security validation')
    return v


class LinkCreate(BaseModel):
    """Request schema for creating a short link."""

    original_url: str = Field(..., description="The URL to shorten")
    slug: Optional[str] = Field(None, description="Custom slug (optional)")
    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = Field(None, max_length=500)
    expires_at: Optional[datetime] = Field(None, description="Expiry timestamp (optional)")
    password: Optional[str] = Field(
        None,
        min_length=4,
        max_length=64,
        description="Password to protect the link (optional)"
    )
    max_clicks: Optional[int] = Field(
        None,
        ge=1,
        description="Maximum number of redirects before the link stops resolving (optional)"
    )

    @field_validator('original_url')
    @classmethod
    def validate_url(cls, v):
        return check_destination_url(v)


class LinkUpdate(BaseModel):
    """Partial update of a link. The slug cannot be changed."""

    original_url: Optional[str] = None
    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = Field(None, max_length=500)
    expires_at: Optional[datetime] = None
    password: Optional[str] = Field(
        None,
        min_length=4,
        max_length=64,
        description="New password; null or an empty string removes protection"
    )
    max_clicks: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None

    @field_validator('password', mode='before')
    @classmethod
    def empty_password_clears(cls, v):
        return None if v == "" else v

    @field_validator('original_url')
    @classmethod
    def validate_url(cls, v):
        if v is None:
            return v
        return check_destination_url(v)


class LinkResponse(BaseModel):
    """A link as returned to its owner."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    slug: str
    short_url: str
    original_url: str
    title: Optional[str] = None
    description: Optional[str] = None
    requires_password: bool = False
    expires_at: Optional[datetime] = None
    max_clicks: Optional[int] = None
    clicks_count: int = 0
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LinkListResponse(BaseModel):
    data: List[LinkResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class ClickResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    clicked_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    referrer: Optional[str] = None
    country: Optional[str] = None
    device: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None


class LinkStatsResponse(BaseModel):
    """Click analytics for a link."""

    total_clicks: int
    unique_clicks: int
    recent_clicks: List[ClickResponse]
    by_country: dict[str, int]
    by_device: dict[str, int]
    by_browser: dict[str, int]
    by_referrer: dict[str, int]


class DailyClicks(BaseModel):
    date: str
    clicks: int


class TopLink(BaseModel):
    id: str
    title: str
    slug: str
    clicks: int


class AnalyticsResponse(BaseModel):
    """Click analytics across all links of a profile."""

    time_range: str
    total_links: int
    total_clicks: int
    clicks_change: float
    clicks_by_day: List[DailyClicks]
    top_links: List[TopLink]
    by_country: dict[str, int]
    by_device: dict[str, int]
    by_referrer: dict[str, int]


class SlugAvailabilityResponse(BaseModel):
    available: bool
    reason: Optional[str] = None


class ProfileResponse(BaseModel):
    id: str
    email: str
    tier: str
    links_count: int
    max_links: int


class LinkPreviewResponse(BaseModel):
    """Public metadata of a link, returned without redirecting."""

    slug: str
    title: Optional[str] = None
    description: Optional[str] = None


class PasswordCheckRequest(BaseModel):
    password: str = ""


class PasswordCheckResponse(BaseModel):
    valid: bool


class PasswordRequiredResponse(BaseModel):
    message: str
    requiresPassword: bool = True
    slug: str


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    code: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: bool
    redis: bool
    version: str
