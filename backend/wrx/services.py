from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional
import time

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import Settings
from .exceptions import (
    DuplicateSlugError,
    LinkGoneError,
    LinkNotFoundError,
    SlugExhaustedError,
    TierLimitError,
    ValidationError,
)
from .logging_config import get_logger
from .models import Click, Link, Profile
from .policy import GONE_MESSAGES, LinkState, check_availability, evaluate, raise_for_state
from .repository import LinkRepository
from .schemas import LinkCreate, LinkUpdate
from .security import hash_password, validate_custom_slug, verify_password
from .utils import (
    VisitorInfo,
    generate_slug,
    is_reserved_slug,
    normalize_utc,
    referrer_source,
    utc_now,
)

logger = get_logger(__name__)

# Constants for retry logic on random slug insert collisions
MAX_RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY = 0.05  # seconds

# Analytics windows in days; "all" has no lower bound
TIME_RANGES = {"7d": 7, "30d": 30, "90d": 90, "all": None}
DEFAULT_CHART_DAYS = 30
TOP_LINKS = 5


def _aggregate(clicks: Iterable[Click], field: str, limit: Optional[int] = None) -> dict[str, int]:
    counts = Counter(getattr(click, field) or "Unknown" for click in clicks)
    return dict(counts.most_common(limit))


def _percent_change(current: int, previous: int) -> float:
    if previous:
        return round((current - previous) / previous * 100, 1)
    return 100.0 if current else 0.0


class LinkService:
    """Owner-scoped link management."""

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings
        self.links = LinkRepository(db)

    def acquire_unique_slug(self) -> str:
        """
        Draw random slugs until one is not in use.
        The check is only a pre-filter; the unique index decides on insert.
        """
        for _ in range(self.settings.SLUG_MAX_ATTEMPTS):
            candidate = generate_slug(self.settings.SLUG_LENGTH)
            if not self.links.slug_exists(candidate):
                return candidate
        logger.error(f"Failed to generate unique slug after {self.settings.SLUG_MAX_ATTEMPTS} attempts")
        raise SlugExhaustedError()

    def check_limits(self, owner: Profile) -> dict[str, Any]:
        max_links = self.settings.max_links_for(owner.tier)
        return {
            "tier": owner.tier,
            "links_count": self.links.count_for_user(owner.id),
            "max_links": max_links,
        }

    def create_link(self, owner: Profile, data: LinkCreate) -> Link:
        """
        Create a new shortened link for owner.
        Random slug collisions on insert are retried; custom slug collisions are not.
        """
        limits = self.check_limits(owner)
        if limits["max_links"] >= 0 and limits["links_count"] >= limits["max_links"]:
            logger.info(f"Link limit reached for {owner.id} ({limits['tier']})")
            raise TierLimitError()

        expires_at = normalize_utc(data.expires_at)
        if expires_at and expires_at <= utc_now():
            raise ValidationError("Expiration date must be in the future")

        custom_slug = None
        if data.slug is not None:
            custom_slug = validate_custom_slug(data.slug, self.settings)
            if self.links.slug_exists(custom_slug):
                raise DuplicateSlugError()

        password_hash = (
            hash_password(data.password, self.settings.BCRYPT_ROUNDS) if data.password else None
        )

        for attempt in range(MAX_RETRY_ATTEMPTS):
            slug = custom_slug or self.acquire_unique_slug()
            try:
                link = self.links.create(
                    user_id=owner.id,
                    slug=slug,
                    original_url=data.original_url,
                    title=data.title,
                    description=data.description,
                    password_hash=password_hash,
                    expires_at=expires_at,
                    max_clicks=data.max_clicks,
                    clicks_count=0,
                    is_active=True,
                )
            except DuplicateSlugError as e:
                if custom_slug:
                    raise
                collision = e
                if attempt == MAX_RETRY_ATTEMPTS - 1:
                    break
                delay = RETRY_BASE_DELAY * (2 ** attempt)
                logger.info(f"Slug collision, retrying in {delay}s (attempt {attempt + 1})")
                time.sleep(delay)
                continue

            logger.info(f"Created link: {slug} -> {data.original_url[:50]}")
            return link

        logger.error(f"Random slug collided on every insert ({MAX_RETRY_ATTEMPTS} attempts)")
        raise SlugExhaustedError() from collision

    def list_links(self, owner: Profile, **filters: Any) -> tuple[list[Link], int]:
        return self.links.list_for_user(owner.id, **filters)

    def get_link(self, owner: Profile, link_id: str) -> Link:
        link = self.links.find_by_id(link_id, owner.id)
        if not link:
            raise LinkNotFoundError()
        return link

    def update_link(self, owner: Profile, link_id: str, data: LinkUpdate) -> Link:
        link = self.get_link(owner, link_id)
        changes = data.model_dump(exclude_unset=True)

        if "password" in changes:
            password = changes.pop("password")
            changes["password_hash"] = (
                hash_password(password, self.settings.BCRYPT_ROUNDS) if password else None
            )

        if "expires_at" in changes:
            changes["expires_at"] = normalize_utc(changes["expires_at"])

        for field in ("original_url", "is_active"):
            if field in changes and changes[field] is None:
                raise ValidationError(f"{field} cannot be null")

        link = self.links.update(link, **changes)
        logger.info(f"Updated link {link.slug}: {sorted(changes)}")
        return link

    def delete_link(self, owner: Profile, link_id: str) -> None:
        link = self.get_link(owner, link_id)
        self.links.delete(link)
        logger.info(f"Deleted link {link_id}")

    def get_stats(self, owner: Profile, link_id: str) -> dict[str, Any]:
        link = self.get_link(owner, link_id)
        clicks = self.links.recent_clicks(link.id, limit=100)
        return {
            "total_clicks": link.clicks_count,
            "unique_clicks": self.links.unique_visitors(link.id),
            "recent_clicks": clicks,
            "by_country": _aggregate(clicks, "country"),
            "by_device": _aggregate(clicks, "device"),
            "by_browser": _aggregate(clicks, "browser"),
            "by_referrer": _aggregate(clicks, "referrer"),
        }

    def get_analytics(
        self,
        owner: Profile,
        time_range: str = "30d",
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """
        Account-wide click analytics over a trailing window.
        clicks_change compares the window with the one immediately before it;
        it is 0 for "all".
        """
        if time_range not in TIME_RANGES:
            raise ValidationError(f"Unknown time range: {time_range}")

        now = normalize_utc(now) or utc_now()
        days = TIME_RANGES[time_range]
        since = now - timedelta(days=days) if days else None

        clicks = self.links.clicks_for_user(owner.id, since=since)
        total_clicks = len(clicks)

        clicks_change = 0.0
        if since is not None:
            previous = self.links.count_clicks_for_user(
                owner.id, since=since - timedelta(days=days), until=since
            )
            clicks_change = _percent_change(total_clicks, previous)

        per_day = Counter(
            normalize_utc(click.clicked_at).date() for click in clicks if click.clicked_at
        )
        chart_days = days or DEFAULT_CHART_DAYS
        clicks_by_day = []
        for offset in range(chart_days - 1, -1, -1):
            day = (now - timedelta(days=offset)).date()
            clicks_by_day.append({"date": day.isoformat(), "clicks": per_day.get(day, 0)})

        top_links = [
            {
                "id": link.id,
                "title": link.title or link.slug,
                "slug": link.slug,
                "clicks": link.clicks_count or 0,
            }
            for link in self.links.top_links(owner.id, limit=TOP_LINKS)
        ]

        referrers = Counter(referrer_source(click.referrer) for click in clicks)

        return {
            "time_range": time_range,
            "total_links": self.links.count_for_user(owner.id),
            "total_clicks": total_clicks,
            "clicks_change": clicks_change,
            "clicks_by_day": clicks_by_day,
            "top_links": top_links,
            "by_country": _aggregate(clicks, "country", limit=5),
            "by_device": _aggregate(clicks, "device"),
            "by_referrer": dict(referrers.most_common(5)),
        }

    def check_slug(self, slug: str) -> dict[str, Any]:
        """Report whether a custom slug could be used."""
        if is_reserved_slug(slug, self.settings.RESERVED_SLUGS):
            return {"available": False, "reason": "reserved"}
        try:
            validate_custom_slug(slug, self.settings)
        except ValidationError:
            return {"available": False, "reason": "invalid"}
        if self.links.slug_exists(slug):
            return {"available": False, "reason": "taken"}
        return {"available": True}


class ClickRecorder:
    """Writes the click row and the counter increment as one transaction."""

    def __init__(self, db: Session):
        self.db = db
        self.links = LinkRepository(db)

    def record(self, link_id: str, visitor: VisitorInfo) -> bool:
        """
        Record one click. Raises LinkGoneError when a concurrent redirect used the
        last allowed click. Datastore failures are logged and reported as False.
        """
        try:
            if not self.links.increment_clicks(link_id):
                self.db.rollback()
                raise LinkGoneError(GONE_MESSAGES[LinkState.CLICK_CAP_REACHED])
            self.links.add_click(
                link_id=link_id,
                ip_address=visitor.ip_address,
                user_agent=visitor.user_agent,
                referrer=visitor.referrer,
                country=visitor.country,
                device=visitor.device,
                browser=visitor.browser,
                os=visitor.os,
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record click for link {link_id}: {e}")
            return False
        return True


class RedirectService:
    """Public, unauthenticated resolution of slugs."""

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings
        self.links = LinkRepository(db)
        self.recorder = ClickRecorder(db)

    def resolve(
        self,
        slug: str,
        password: Optional[str],
        visitor: VisitorInfo,
        now: Optional[datetime] = None,
    ) -> str:
        """Apply the redirect policy, record the click and return the destination."""
        link = self.links.find_by_slug(slug)
        state = evaluate(link, password, now or utc_now(), verify_password)
        if state is not LinkState.RESOLVABLE:
            logger.info(f"Redirect refused for {slug}: {state.value}")
        raise_for_state(state, slug)

        destination = link.original_url
        link_id = link.id
        self.recorder.record(link_id, visitor)
        return destination

    def preview(self, slug: str, now: Optional[datetime] = None) -> Link:
        link = self.links.find_by_slug(slug)
        raise_for_state(check_availability(link, now or utc_now()), slug)
        return link

    def check_password(self, slug: str, password: str) -> bool:
        link = self.links.find_by_slug(slug)
        if not link:
            raise LinkNotFoundError()
        if not link.password_hash:
            return True
        return verify_password(password or "", link.password_hash)
