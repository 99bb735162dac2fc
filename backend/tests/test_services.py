"""
Tests for link creation, click recording and redirect resolution services.
"""

import re
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pydantic
import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

sys.path.insert(0, str(Path(__file__).parent.parent))

from wrx.auth import create_profile
from wrx.exceptions import (
    DuplicateSlugError,
    InvalidSlugError,
    LinkGoneError,
    LinkNotFoundError,
    PasswordMismatchError,
    PasswordRequiredError,
    SlugExhaustedError,
    TierLimitError,
    ValidationError,
)
from wrx.models import Click, Link
from wrx.repository import LinkRepository
from wrx.schemas import LinkCreate, LinkUpdate
from wrx.services import ClickRecorder, LinkService, RedirectService
from wrx.utils import VisitorInfo, utc_now


def visitor():
    return VisitorInfo(ip_address="203.0.113.7", device="Mobile", browser="Safari", os="iOS")


def clicks_of(db, link_id):
    db.expire_all()
    return db.query(Link).filter(Link.id == link_id).one().clicks_count


class TestCreateLink:

    def test_random_slug(self, test_db, test_settings, owner):
        link = LinkService(test_db, test_settings).create_link(
            owner, LinkCreate(original_url="https://example.com")
        )
        assert re.fullmatch(r"[A-Za-z0-9]{6,8}", link.slug)
        assert link.clicks_count == 0
        assert link.is_active is True
        assert link.user_id == owner.id

    def test_custom_slug(self, test_db, test_settings, owner):
        link = LinkService(test_db, test_settings).create_link(
            owner, LinkCreate(original_url="https://example.com", slug="Spring-Sale")
        )
        assert link.slug == "Spring-Sale"

    def test_custom_slug_too_short(self, test_db, test_settings, owner):
        with pytest.raises(InvalidSlugError):
            LinkService(test_db, test_settings).create_link(
                owner, LinkCreate(original_url="https://example.com", slug="ab")
            )

    def test_custom_slug_is_validation_error(self, test_db, test_settings, owner):
        with pytest.raises(ValidationError):
            LinkService(test_db, test_settings).create_link(
                owner, LinkCreate(original_url="https://example.com", slug="bad_slug!")
            )

    def test_duplicate_custom_slug(self, test_db, test_settings, owner):
        service = LinkService(test_db, test_settings)
        service.create_link(owner, LinkCreate(original_url="https://example.com", slug="promo"))
        with pytest.raises(DuplicateSlugError):
            service.create_link(owner, LinkCreate(original_url="https://example.org", slug="promo"))

    def test_duplicate_slug_race_caught_by_constraint(self, test_db, test_settings, owner, monkeypatch):
        """Two creations that both pass the pre-check: exactly one wins."""
        service = LinkService(test_db, test_settings)
        monkeypatch.setattr(LinkRepository, "slug_exists", lambda self, slug: False)

        service.create_link(owner, LinkCreate(original_url="https://example.com", slug="promo"))
        with pytest.raises(DuplicateSlugError):
            service.create_link(owner, LinkCreate(original_url="https://example.org", slug="promo"))

        assert test_db.query(Link).filter(Link.slug == "promo").count() == 1

    def test_slug_exhausted(self, test_db, test_settings, owner, monkeypatch):
        calls = []

        def always_taken(self, slug):
            calls.append(slug)
            return True

        monkeypatch.setattr(LinkRepository, "slug_exists", always_taken)
        with pytest.raises(SlugExhaustedError):
            LinkService(test_db, test_settings).create_link(
                owner, LinkCreate(original_url="https://example.com")
            )
        assert len(calls) == test_settings.SLUG_MAX_ATTEMPTS

    def test_random_slug_insert_collision_retried(self, test_db, test_settings, owner, make_link, monkeypatch):
        make_link(slug="Taken01")
        candidates = iter(["Taken01", "Fresh02"])
        monkeypatch.setattr("wrx.services.generate_slug", lambda length: next(candidates))
        monkeypatch.setattr(LinkRepository, "slug_exists", lambda self, slug: False)

        link = LinkService(test_db, test_settings).create_link(
            owner, LinkCreate(original_url="https://example.com")
        )
        assert link.slug == "Fresh02"

    def test_random_slug_collides_on_every_insert(self, test_db, test_settings, owner, make_link, monkeypatch):
        make_link(slug="Taken01")
        monkeypatch.setattr("wrx.services.generate_slug", lambda length: "Taken01")
        monkeypatch.setattr("wrx.services.RETRY_BASE_DELAY", 0)
        monkeypatch.setattr(LinkRepository, "slug_exists", lambda self, slug: False)

        with pytest.raises(SlugExhaustedError):
            LinkService(test_db, test_settings).create_link(
                owner, LinkCreate(original_url="https://example.com")
            )
        assert test_db.query(Link).count() == 1

    def test_password_is_hashed(self, test_db, test_settings, owner):
        link = LinkService(test_db, test_settings).create_link(
            owner, LinkCreate(original_url="https://example.com", password="secret123")
        )
        assert link.password_hash is not None
        assert link.password_hash != "secret123"
        assert link.requires_password is True

    def test_expiry_must_be_in_future(self, test_db, test_settings, owner):
        with pytest.raises(ValidationError):
            LinkService(test_db, test_settings).create_link(
                owner,
                LinkCreate(original_url="https://example.com", expires_at=utc_now() - timedelta(hours=1))
            )

    def test_tier_limit(self, test_db, test_settings, make_link):
        free = create_profile(test_db, "free@example.com", tier="free")
        for i in range(test_settings.max_links_for("free")):
            make_link(slug=f"free-{i}", user_id=free.id)

        with pytest.raises(TierLimitError):
            LinkService(test_db, test_settings).create_link(
                free, LinkCreate(original_url="https://example.com")
            )

    def test_enterprise_is_unlimited(self, test_db, test_settings):
        big = create_profile(test_db, "big@example.com", tier="enterprise")
        limits = LinkService(test_db, test_settings).check_limits(big)
        assert limits["max_links"] == -1
        LinkService(test_db, test_settings).create_link(big, LinkCreate(original_url="https://example.com"))


class TestManageLinks:

    def test_get_is_owner_scoped(self, test_db, test_settings, make_link):
        other = create_profile(test_db, "other@example.com")
        link = make_link(slug="mine")
        with pytest.raises(LinkNotFoundError):
            LinkService(test_db, test_settings).get_link(other, link.id)

    def test_update_fields(self, test_db, test_settings, owner, make_link):
        link = make_link(slug="edit-me")
        updated = LinkService(test_db, test_settings).update_link(
            owner, link.id, LinkUpdate(title="New title", is_active=False, max_clicks=10)
        )
        assert updated.title == "New title"
        assert updated.is_active is False
        assert updated.max_clicks == 10
        assert updated.slug == "edit-me"

    def test_update_password_and_remove(self, test_db, test_settings, owner, make_link):
        service = LinkService(test_db, test_settings)
        link = make_link(slug="pw-link")
        assert service.update_link(owner, link.id, LinkUpdate(password="hunter22")).requires_password
        assert not service.update_link(owner, link.id, LinkUpdate(password=None)).requires_password

    def test_update_password_length_and_clearing(self, test_db, test_settings, owner, make_link):
        with pytest.raises(pydantic.ValidationError):
            LinkUpdate(password="abc")

        service = LinkService(test_db, test_settings)
        link = make_link(slug="pw-clear", password="hunter22")
        cleared = LinkUpdate(password="")
        assert "password" in cleared.model_fields_set
        assert not service.update_link(owner, link.id, cleared).requires_password

    def test_update_rejects_null_url(self, test_db, test_settings, owner, make_link):
        link = make_link(slug="keep-url")
        with pytest.raises(ValidationError):
            LinkService(test_db, test_settings).update_link(owner, link.id, LinkUpdate(original_url=None))

    def test_delete_removes_clicks(self, test_db, test_settings, owner, make_link):
        link = make_link(slug="bye")
        ClickRecorder(test_db).record(link.id, visitor())
        LinkService(test_db, test_settings).delete_link(owner, link.id)
        assert test_db.query(Link).count() == 0
        assert test_db.query(Click).count() == 0

    def test_list_filters_and_sorts(self, test_db, test_settings, owner, make_link):
        make_link(slug="alpha", title="Alpha")
        make_link(slug="beta", title="Beta", is_active=False)
        make_link(slug="gamma", title="Gamma")
        service = LinkService(test_db, test_settings)

        links, total = service.list_links(owner, sort_by="title", sort_order="asc")
        assert total == 3
        assert [link.slug for link in links] == ["alpha", "beta", "gamma"]

        links, total = service.list_links(owner, is_active=True)
        assert total == 2

        links, total = service.list_links(owner, search="amm")
        assert [link.slug for link in links] == ["gamma"]

        links, total = service.list_links(owner, page=2, limit=2, sort_by="title", sort_order="asc")
        assert total == 3
        assert [link.slug for link in links] == ["gamma"]

    def test_list_search_matches_wildcards_literally(self, test_db, test_settings, owner, make_link):
        make_link(slug="half-off", title="50% off")
        make_link(slug="five-hundred", title="500 off")
        make_link(slug="snake", title="a_b")
        make_link(slug="plain", title="axb")
        service = LinkService(test_db, test_settings)

        links, _ = service.list_links(owner, search="50%")
        assert [link.slug for link in links] == ["half-off"]

        links, _ = service.list_links(owner, search="a_b")
        assert [link.slug for link in links] == ["snake"]

    def test_stats(self, test_db, test_settings, owner, make_link):
        link = make_link(slug="stats")
        recorder = ClickRecorder(test_db)
        recorder.record(link.id, visitor())
        recorder.record(link.id, visitor())
        recorder.record(link.id, VisitorInfo(ip_address="198.51.100.1", country="DE"))

        stats = LinkService(test_db, test_settings).get_stats(owner, link.id)
        assert stats["total_clicks"] == 3
        assert stats["unique_clicks"] == 2
        assert len(stats["recent_clicks"]) == 3
        assert stats["by_device"] == {"Mobile": 2, "Desktop": 1}
        assert stats["by_country"] == {"Unknown": 2, "DE": 1}

    def test_check_slug(self, test_db, test_settings, make_link):
        make_link(slug="taken")
        service = LinkService(test_db, test_settings)
        assert service.check_slug("free-one") == {"available": True}
        assert service.check_slug("taken")["reason"] == "taken"
        assert service.check_slug("api")["reason"] == "reserved"
        assert service.check_slug("x")["reason"] == "invalid"


class TestClickRecorder:

    def test_records_click_and_increments(self, test_db, make_link):
        link = make_link()
        assert ClickRecorder(test_db).record(link.id, visitor()) is True

        assert clicks_of(test_db, link.id) == 1
        click = test_db.query(Click).one()
        assert click.link_id == link.id
        assert click.device == "Mobile"
        assert click.ip_address == "203.0.113.7"

    def test_cap_reached_by_concurrent_redirect(self, test_db, make_link):
        """The increment itself refuses to pass max_clicks."""
        link = make_link(max_clicks=1)
        recorder = ClickRecorder(test_db)
        assert recorder.record(link.id, visitor()) is True
        with pytest.raises(LinkGoneError):
            recorder.record(link.id, visitor())

        assert clicks_of(test_db, link.id) == 1
        assert test_db.query(Click).count() == 1

    def test_datastore_failure_leaves_no_partial_state(self, test_db, make_link, monkeypatch):
        link = make_link()

        def broken_insert(self, **fields):
            raise OperationalError("INSERT INTO clicks", {}, Exception("disk I/O error"))

        monkeypatch.setattr(LinkRepository, "add_click", broken_insert)
        assert ClickRecorder(test_db).record(link.id, visitor()) is False

        assert clicks_of(test_db, link.id) == 0
        assert test_db.query(Click).count() == 0

    def test_no_lost_updates_across_sessions(self, file_engine):
        Session = sessionmaker(bind=file_engine)
        setup = Session()
        profile = create_profile(setup, "race@example.com")
        link = LinkRepository(setup).create(user_id=profile.id, slug="race", original_url="https://example.com")
        link_id = link.id

        # Both sessions hold a stale copy of the link before incrementing
        first, second = Session(), Session()
        assert first.get(Link, link_id).clicks_count == 0
        assert second.get(Link, link_id).clicks_count == 0
        assert ClickRecorder(first).record(link_id, visitor()) is True
        assert ClickRecorder(second).record(link_id, visitor()) is True

        assert clicks_of(setup, link_id) == 2
        for session in (setup, first, second):
            session.close()

    def test_concurrent_redirects_count_exactly(self, file_engine):
        Session = sessionmaker(bind=file_engine)
        setup = Session()
        profile = create_profile(setup, "burst@example.com")
        link_id = LinkRepository(setup).create(
            user_id=profile.id, slug="burst", original_url="https://example.com"
        ).id

        workers = 8
        results = []
        barrier = threading.Barrier(workers)

        def hit():
            db = Session()
            try:
                barrier.wait()
                results.append(ClickRecorder(db).record(link_id, visitor()))
            finally:
                db.close()

        threads = [threading.Thread(target=hit) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == [True] * workers
        assert clicks_of(setup, link_id) == workers
        assert setup.query(Click).count() == workers
        setup.close()


class TestRedirectService:

    def test_resolve_counts_one_click(self, test_db, test_settings, make_link):
        link = make_link(original_url="https://example.com/landing")
        url = RedirectService(test_db, test_settings).resolve("promo", None, visitor())
        assert url == "https://example.com/landing"
        assert clicks_of(test_db, link.id) == 1

    def test_resolve_unknown(self, test_db, test_settings):
        with pytest.raises(LinkNotFoundError):
            RedirectService(test_db, test_settings).resolve("nope", None, visitor())

    def test_resolve_is_not_owner_scoped(self, test_db, test_settings, make_link):
        stranger = create_profile(test_db, "stranger@example.com")
        make_link(slug="theirs", user_id=stranger.id)
        assert RedirectService(test_db, test_settings).resolve("theirs", None, visitor())

    def test_resolve_password(self, test_db, test_settings, make_link):
        link = make_link(password="secret123")
        service = RedirectService(test_db, test_settings)

        with pytest.raises(PasswordRequiredError):
            service.resolve("promo", None, visitor())
        with pytest.raises(PasswordMismatchError):
            service.resolve("promo", "wrong", visitor())
        assert clicks_of(test_db, link.id) == 0

        service.resolve("promo", "secret123", visitor())
        assert clicks_of(test_db, link.id) == 1

    def test_resolve_slug_is_case_sensitive(self, test_db, test_settings, make_link):
        make_link(slug="Promo")
        with pytest.raises(LinkNotFoundError):
            RedirectService(test_db, test_settings).resolve("promo", None, visitor())

    def test_preview_and_check_password_never_count(self, test_db, test_settings, make_link):
        link = make_link(password="secret123", title="Sale")
        service = RedirectService(test_db, test_settings)

        assert service.preview("promo").title == "Sale"
        assert service.check_password("promo", "secret123") is True
        assert service.check_password("promo", "wrong") is False
        assert clicks_of(test_db, link.id) == 0

    def test_preview_enforces_expiry(self, test_db, test_settings, make_link):
        make_link(expires_at=utc_now() - timedelta(minutes=1))
        with pytest.raises(LinkGoneError):
            RedirectService(test_db, test_settings).preview("promo")

    def test_check_password_without_protection(self, test_db, test_settings, make_link):
        make_link()
        assert RedirectService(test_db, test_settings).check_password("promo", "") is True

    def test_check_password_unknown(self, test_db, test_settings):
        with pytest.raises(LinkNotFoundError):
            RedirectService(test_db, test_settings).check_password("nope", "x")


class TestAnalytics:

    NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)

    @pytest.fixture
    def clicked(self, test_db, make_link):
        alpha = make_link(slug="alpha", title="Alpha", clicks_count=5)
        beta = make_link(slug="beta", clicks_count=2)
        stranger = create_profile(test_db, "stranger@example.com")
        other = make_link(slug="other", user_id=stranger.id, clicks_count=50)

        repo = LinkRepository(test_db)
        for link, ago, referrer, country, device in [
            (alpha, timedelta(hours=1), "https://www.google.com/search", "NL", "Mobile"),
            (alpha, timedelta(days=2), None, None, "Desktop"),
            (beta, timedelta(days=3), "https://t.co/xyz", None, "Desktop"),
            (alpha, timedelta(days=10), None, None, "Desktop"),
            (other, timedelta(hours=1), None, "US", "Desktop"),
        ]:
            repo.add_click(
                link_id=link.id,
                clicked_at=self.NOW - ago,
                referrer=referrer,
                country=country,
                device=device,
            )
        test_db.commit()

    def test_seven_day_window(self, test_db, test_settings, owner, clicked):
        data = LinkService(test_db, test_settings).get_analytics(owner, "7d", now=self.NOW)

        assert data["total_links"] == 2
        assert data["total_clicks"] == 3
        assert data["clicks_change"] == 200.0

        assert len(data["clicks_by_day"]) == 7
        assert data["clicks_by_day"][0]["date"] == "2026-03-09"
        assert data["clicks_by_day"][-1] == {"date": "2026-03-15", "clicks": 1}
        assert sum(day["clicks"] for day in data["clicks_by_day"]) == 3

        assert [link["slug"] for link in data["top_links"]] == ["alpha", "beta"]
        assert data["top_links"][1]["title"] == "beta"
        assert data["top_links"][0]["clicks"] == 5

        assert data["by_referrer"] == {"Google": 1, "Direct": 1, "Twitter": 1}
        assert data["by_country"] == {"Unknown": 2, "NL": 1}
        assert data["by_device"] == {"Desktop": 2, "Mobile": 1}

    def test_all_time(self, test_db, test_settings, owner, clicked):
        data = LinkService(test_db, test_settings).get_analytics(owner, "all", now=self.NOW)
        assert data["total_clicks"] == 4
        assert data["clicks_change"] == 0.0
        assert len(data["clicks_by_day"]) == 30

    def test_no_previous_clicks(self, test_db, test_settings, owner, clicked):
        data = LinkService(test_db, test_settings).get_analytics(owner, "30d", now=self.NOW)
        assert data["total_clicks"] == 4
        assert data["clicks_change"] == 100.0

    def test_empty_account(self, test_db, test_settings, owner):
        data = LinkService(test_db, test_settings).get_analytics(owner, now=self.NOW)
        assert data["total_links"] == 0
        assert data["total_clicks"] == 0
        assert data["clicks_change"] == 0.0
        assert data["top_links"] == []

    def test_unknown_range(self, test_db, test_settings, owner):
        with pytest.raises(ValidationError):
            LinkService(test_db, test_settings).get_analytics(owner, "1y")
