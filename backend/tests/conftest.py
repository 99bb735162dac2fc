"""
Pytest fixtures for WRX links tests.
Provides test database, mock Redis, settings, and FastAPI test client.
"""

import os
import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

# Settings are read on import; point the app at an in-memory database
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["DEBUG"] = "false"

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from unittest.mock import patch

from fastapi.testclient import TestClient

from wrx.auth import create_profile, issue_api_key
from wrx.config import Settings
from wrx.database import Base
from wrx.repository import LinkRepository
from wrx.security import hash_password


class MockRedisService:
    """Mock Redis service for testing."""

    _rate_limits = {}

    @classmethod
    def reset(cls):
        cls._rate_limits = {}

    @staticmethod
    def check_rate_limit(ip: str, limit=None) -> tuple:
        count = MockRedisService._rate_limits.get(ip, 0)
        limit = limit or 30
        if count >= limit:
            return False, 0
        MockRedisService._rate_limits[ip] = count + 1
        return True, limit - count - 1

    @staticmethod
    def health_check() -> bool:
        return True


@pytest.fixture(autouse=True)
def mock_redis():
    """Automatically mock Redis for all tests."""
    MockRedisService.reset()
    with patch("wrx.routes.RedisService", MockRedisService):
        with patch("wrx.main.RedisService", MockRedisService):
            yield MockRedisService


@pytest.fixture
def test_settings():
    """Settings with a cheap bcrypt cost factor."""
    return Settings(_env_file=None, BCRYPT_ROUNDS=4, BASE_URL="https://wrx.test")


@pytest.fixture(scope="function")
def engine():
    """SQLite in-memory engine shared by every session in a test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def file_engine(tmp_path):
    """File-backed SQLite engine, so separate sessions get separate connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def test_db(engine):
    """Create a test database session."""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def owner(test_db):
    return create_profile(test_db, "owner@example.com", tier="pro")


@pytest.fixture
def auth_headers(test_db, owner):
    key, _ = issue_api_key(test_db, owner, name="tests")
    return {"X-API-Key": key}


@pytest.fixture
def make_link(test_db, owner):
    """Insert a link directly, bypassing the creation rules."""

    def _make(slug="promo", original_url="https://example.com", password=None, user_id=None, **fields):
        return LinkRepository(test_db).create(
            user_id=user_id or owner.id,
            slug=slug,
            original_url=original_url,
            password_hash=hash_password(password, 4) if password else None,
            **fields
        )

    return _make


@pytest.fixture(scope="function")
def client(test_db, test_settings, mock_redis):
    """Create a FastAPI test client with mocked dependencies."""
    from wrx.main import app
    from wrx.database import get_db
    from wrx.config import get_settings

    def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: test_settings

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def sample_url():
    """Sample URL for testing."""
    return "https://example.com/some/long/path?query=value"
