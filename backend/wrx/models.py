import uuid

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text, BigInteger, Index, ForeignKey
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base

# SQLite only auto-increments INTEGER primary keys
AutoIncrementId = BigInteger().with_variant(Integer(), "sqlite")


def new_uuid() -> str:
    return str(uuid.uuid4())


class Profile(Base):
    """Account that owns links. Mirrors the auth provider's user record."""

    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=new_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    tier = Column(String(20), default="free", nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    links = relationship("Link", back_populates="owner", cascade="all, delete-orphan")
    api_keys = relationship("ApiKey", back_populates="owner", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Profile(email={self.email}, tier={self.tier})>"


class Link(Base):
    """Model for storing shortened links."""

    __tablename__ = "links"

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    slug = Column(String(50), unique=True, nullable=False, index=True)
    original_url = Column(Text, nullable=False)
    title = Column(String(255), nullable=True)
    description = Column(String(500), nullable=True)
    password_hash = Column(String(128), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    max_clicks = Column(Integer, nullable=True)
    clicks_count = Column(BigInteger, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    owner = relationship("Profile", back_populates="links")
    clicks = relationship("Click", back_populates="link", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_links_user_created', 'user_id', 'created_at'),
        Index('idx_links_expires_at', 'expires_at'),
    )

    @property
    def requires_password(self) -> bool:
        return self.password_hash is not None

    def __repr__(self):
        return f"<Link(slug={self.slug}, url={self.original_url[:50]}...)>"


class Click(Base):
    """Model for storing click analytics. Rows are append-only."""

    __tablename__ = "clicks"

    id = Column(AutoIncrementId, primary_key=True, autoincrement=True)
    link_id = Column(String(36), ForeignKey("links.id", ondelete="CASCADE"), nullable=False, index=True)
    clicked_at = Column(DateTime(timezone=True), server_default=func.now())
    ip_address = Column(String(45), nullable=True)  # IPv4 or IPv6
    user_agent = Column(String(512), nullable=True)
    referrer = Column(String(500), nullable=True)
    country = Column(String(2), nullable=True)  # ISO country code from Cloudflare
    device = Column(String(20), nullable=True)
    browser = Column(String(50), nullable=True)
    os = Column(String(50), nullable=True)

    link = relationship("Link", back_populates="clicks")

    __table_args__ = (
        Index('idx_link_clicked', 'link_id', 'clicked_at'),
    )

    def __repr__(self):
        return f"<Click(link_id={self.link_id}, at={self.clicked_at})>"


class ApiKey(Base):
    """API key used to authenticate management requests on behalf of a profile."""

    __tablename__ = "api_keys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key_hash = Column(String(64), unique=True, nullable=False, index=True)  # SHA-256
    name = Column(String(100), nullable=True)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    rate_limit = Column(Integer, default=1000, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_used_at = Column(DateTime(timezone=True), nullable=True)

    owner = relationship("Profile", back_populates="api_keys")

    def __repr__(self):
        return f"<ApiKey(name={self.name}, user_id={self.user_id})>"
