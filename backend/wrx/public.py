"""
Public short-link endpoints: redirect, preview and password check.
These run without authentication and read links across all owners.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from .config import Settings, get_settings
from .database import get_db
from .routes import get_client_ip
from .schemas import (
    ErrorResponse,
    LinkPreviewResponse,
    PasswordCheckRequest,
    PasswordCheckResponse,
    PasswordRequiredResponse,
)
from .services import RedirectService
from .utils import is_reserved_slug, parse_visitor

router = APIRouter()


def get_redirect_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings)
) -> RedirectService:
    return RedirectService(db, settings)


def reserved_response() -> JSONResponse:
    return JSONResponse(status_code=404, content={"message": "Not found"})


@router.get(
    "/{slug}",
    responses={
        301: {"description": "Redirect to the destination URL"},
        401: {"model": PasswordRequiredResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        410: {"model": ErrorResponse}
    }
)
async def redirect_to_url(
    slug: str,
    request: Request,
    password: Optional[str] = None,
    service: RedirectService = Depends(get_redirect_service),
    settings: Settings = Depends(get_settings)
):
    """Redirect a slug to its original URL."""
    if is_reserved_slug(slug, settings.RESERVED_SLUGS):
        return reserved_response()

    visitor = parse_visitor(
        request.headers.get("user-agent"),
        ip_address=get_client_ip(request),
        referrer=request.headers.get("referer") or request.headers.get("referrer"),
        country=request.headers.get("CF-IPCountry"),
    )
    url = service.resolve(slug, password, visitor)

    # 301 for permanent redirect (better for SEO), 302 for temporary
    return RedirectResponse(url=url, status_code=301)


@router.get(
    "/{slug}/preview",
    response_model=LinkPreviewResponse,
    responses={404: {"model": ErrorResponse}, 410: {"model": ErrorResponse}}
)
async def preview_link(
    slug: str,
    service: RedirectService = Depends(get_redirect_service),
    settings: Settings = Depends(get_settings)
):
    """Link metadata without redirecting or counting a click."""
    if is_reserved_slug(slug, settings.RESERVED_SLUGS):
        return reserved_response()

    link = service.preview(slug)
    return LinkPreviewResponse(slug=link.slug, title=link.title, description=link.description)


@router.post(
    "/{slug}/verify-password",
    response_model=PasswordCheckResponse,
    responses={404: {"model": ErrorResponse}}
)
async def verify_link_password(
    slug: str,
    data: PasswordCheckRequest,
    service: RedirectService = Depends(get_redirect_service),
    settings: Settings = Depends(get_settings)
):
    """Check a password for a protected link without redirecting."""
    if is_reserved_slug(slug, settings.RESERVED_SLUGS):
        return reserved_response()

    return PasswordCheckResponse(valid=service.check_password(slug, data.password))
