"""
Database access for links and clicks.
All slug uniqueness and click counting guarantees are enforced here by the datastore.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .exceptions import DuplicateSlugError
from .logging_config import get_logger
from .models import Click, Link

logger = get_logger(__name__)

SORT_COLUMNS = {
    "created_at": Link.created_at,
    "clicks": Link.clicks_count,
    "title": Link.title,
}


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so a search term matches literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class LinkRepository:
    """CRUD access to links and their click rows."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, **fields: Any) -> Link:
        """
        Insert a link. The unique index on slug is the only guarantee against
        two concurrent creations of the same slug.
        """
        link = Link(**fields)
        self.db.add(link)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"Slug collision on insert: {fields.get('slug')} ({e.orig})")
            raise DuplicateSlugError() from e
        self.db.refresh(link)
        return link

    def find_by_slug(self, slug: str, user_id: Optional[str] = None) -> Optional[Link]:
        """Find a link by slug; unscoped when user_id is None."""
        query = self.db.query(Link).filter(Link.slug == slug)
        if user_id is not None:
            query = query.filter(Link.user_id == user_id)
        return query.first()

    def find_by_id(self, link_id: str, user_id: str) -> Optional[Link]:
        return self.db.query(Link).filter(
            Link.id == link_id,
            Link.user_id == user_id
        ).first()

    def slug_exists(self, slug: str) -> bool:
        return self.db.query(Link.id).filter(Link.slug == slug).first() is not None

    def count_for_user(self, user_id: str) -> int:
        return self.db.query(func.count(Link.id)).filter(Link.user_id == user_id).scalar() or 0

    def list_for_user(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> tuple[list[Link], int]:
        """Return one page of a user's links and the total matching count."""
        query = self.db.query(Link).filter(Link.user_id == user_id)

        if search:
            pattern = f"%{escape_like(search)}%"
            query = query.filter(or_(
                Link.title.ilike(pattern, escape="\\"),
                Link.slug.ilike(pattern, escape="\\"),
                Link.original_url.ilike(pattern, escape="\\"),
            ))

        if is_active is not None:
            query = query.filter(Link.is_active == is_active)

        total = query.count()

        column = SORT_COLUMNS.get(sort_by, Link.created_at)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        links = (
            query.order_by(ordering, Link.id)
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return links, total

    def update(self, link: Link, **fields: Any) -> Link:
        for key, value in fields.items():
            setattr(link, key, value)
        self.db.commit()
        self.db.refresh(link)
        return link

    def delete(self, link: Link) -> None:
        self.db.delete(link)
        self.db.commit()

    def increment_clicks(self, link_id: str) -> bool:
        """
        Atomically add one click unless the click cap has been reached.
        Does not commit. Returns False when no row was updated.
        """
        stmt = (
            update(Link)
            .where(Link.id == link_id)
            .where(or_(Link.max_clicks.is_(None), Link.clicks_count < Link.max_clicks))
            .values(clicks_count=Link.clicks_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def add_click(self, **fields: Any) -> Click:
        """Stage a click row. Does not commit."""
        click = Click(**fields)
        self.db.add(click)
        return click

    def recent_clicks(self, link_id: str, limit: int = 100) -> list[Click]:
        return (
            self.db.query(Click)
            .filter(Click.link_id == link_id)
            .order_by(Click.clicked_at.desc(), Click.id.desc())
            .limit(limit)
            .all()
        )

    def unique_visitors(self, link_id: str) -> int:
        return self.db.query(func.count(func.distinct(Click.ip_address))).filter(
            Click.link_id == link_id
        ).scalar() or 0

    def _user_clicks(self, user_id: str, since: Optional[datetime], until: Optional[datetime]):
        query = self.db.query(Click).join(Link, Click.link_id == Link.id).filter(Link.user_id == user_id)
        if since is not None:
            query = query.filter(Click.clicked_at >= since)
        if until is not None:
            query = query.filter(Click.clicked_at < until)
        return query

    def clicks_for_user(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[Click]:
        """Clicks on any of the user's links within [since, until)."""
        return self._user_clicks(user_id, since, until).all()

    def count_clicks_for_user(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        return self._user_clicks(user_id, since, until).count()

    def top_links(self, user_id: str, limit: int = 5) -> list[Link]:
        return (
            self.db.query(Link)
            .filter(Link.user_id == user_id)
            .order_by(Link.clicks_count.desc(), Link.created_at.desc(), Link.id)
            .limit(limit)
            .all()
        )
