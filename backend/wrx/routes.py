from math import ceil
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.orm import Session

from .auth import get_current_profile, require_api_key
from .config import Settings, get_settings
from .database import get_db
from .models import ApiKey, Link, Profile
from .redis_client import RedisService
from .schemas import (
    AnalyticsResponse,
    ClickResponse,
    ErrorResponse,
    LinkCreate,
    LinkListResponse,
    LinkResponse,
    LinkStatsResponse,
    LinkUpdate,
    ProfileResponse,
    SlugAvailabilityResponse,
)
from .services import LinkService
from .utils import format_short_url
from .logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter()


def get_client_ip(request: Request) -> str:
    """Extract client IP, considering Cloudflare and proxy headers."""
    cf_ip = request.headers.get("CF-Connecting-IP")
    if cf_ip:
        return cf_ip.strip()

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()

    return request.client.host if request.client else "unknown"


def get_link_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
) -> LinkService:
    return LinkService(db, settings)


def to_link_response(link: Link, settings: Settings) -> LinkResponse:
    return LinkResponse(
        id=link.id,
        user_id=link.user_id,
        slug=link.slug,
        short_url=format_short_url(settings.BASE_URL, link.slug),
        original_url=link.original_url,
        title=link.title,
        description=link.description,
        requires_password=link.requires_password,
        expires_at=link.expires_at,
        max_clicks=link.max_clicks,
        clicks_count=link.clicks_count or 0,
        is_active=link.is_active,
        created_at=link.created_at,
        updated_at=link.updated_at,
    )


@router.post(
    "/links",
    response_model=LinkResponse,
    status_code=201,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        429: {"model": ErrorResponse}
    }
)
async def create_link(
    request: Request,
    data: LinkCreate,
    api_key: ApiKey = Depends(require_api_key),
    service: LinkService = Depends(get_link_service),
    settings: Settings = Depends(get_settings)
):
    """Create a new shortened link."""
    client_ip = get_client_ip(request)

    allowed, remaining = RedisService.check_rate_limit(client_ip, api_key.rate_limit)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Please try again later.",
            headers={"X-RateLimit-Remaining": "0"}
        )

    link = service.create_link(api_key.owner, data)
    return to_link_response(link, settings)


@router.get("/links", response_model=LinkListResponse)
async def list_links(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = Query(None, max_length=100),
    is_active: Optional[bool] = None,
    sort_by: str = Query("created_at", pattern="^(created_at|clicks|title)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    owner: Profile = Depends(get_current_profile),
    service: LinkService = Depends(get_link_service),
    settings: Settings = Depends(get_settings)
):
    """List the caller's links."""
    links, total = service.list_links(
        owner,
        page=page,
        limit=limit,
        search=search,
        is_active=is_active,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return LinkListResponse(
        data=[to_link_response(link, settings) for link in links],
        total=total,
        page=page,
        limit=limit,
        total_pages=ceil(total / limit),
    )


@router.get(
    "/links/{link_id}",
    response_model=LinkResponse,
    responses={404: {"model": ErrorResponse}}
)
async def get_link(
    link_id: str,
    owner: Profile = Depends(get_current_profile),
    service: LinkService = Depends(get_link_service),
    settings: Settings = Depends(get_settings)
):
    return to_link_response(service.get_link(owner, link_id), settings)


@router.patch(
    "/links/{link_id}",
    response_model=LinkResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}}
)
async def update_link(
    link_id: str,
    data: LinkUpdate,
    owner: Profile = Depends(get_current_profile),
    service: LinkService = Depends(get_link_service),
    settings: Settings = Depends(get_settings)
):
    """Update a link. The slug is immutable."""
    link = service.update_link(owner, link_id, data)
    return to_link_response(link, settings)


@router.delete(
    "/links/{link_id}",
    status_code=204,
    responses={404: {"model": ErrorResponse}}
)
async def delete_link(
    link_id: str,
    owner: Profile = Depends(get_current_profile),
    service: LinkService = Depends(get_link_service)
):
    service.delete_link(owner, link_id)
    return Response(status_code=204)


@router.get(
    "/links/{link_id}/stats",
    response_model=LinkStatsResponse,
    responses={404: {"model": ErrorResponse}}
)
async def get_link_stats(
    link_id: str,
    owner: Profile = Depends(get_current_profile),
    service: LinkService = Depends(get_link_service)
):
    """Get click analytics for a link."""
    stats = service.get_stats(owner, link_id)
    stats["recent_clicks"] = [ClickResponse.model_validate(c) for c in stats["recent_clicks"]]
    return LinkStatsResponse(**stats)


@router.get("/analytics", response_model=AnalyticsResponse)
async def get_analytics(
    time_range: str = Query("30d", pattern="^(7d|30d|90d|all)$"),
    owner: Profile = Depends(get_current_profile),
    service: LinkService = Depends(get_link_service)
):
    """Click analytics across all of the caller's links."""
    return service.get_analytics(owner, time_range)


@router.get("/check/{slug}", response_model=SlugAvailabilityResponse, response_model_exclude_none=True)
async def check_slug_availability(
    slug: str,
    service: LinkService = Depends(get_link_service)
):
    """Check if a custom slug is available."""
    return service.check_slug(slug)


@router.get("/me", response_model=ProfileResponse)
async def get_me(
    owner: Profile = Depends(get_current_profile),
    service: LinkService = Depends(get_link_service)
):
    """Current profile with its plan usage."""
    limits = service.check_limits(owner)
    return ProfileResponse(
        id=owner.id,
        email=owner.email,
        tier=owner.tier,
        links_count=limits["links_count"],
        max_links=limits["max_links"],
    )
