from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from pathlib import Path


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Resolve backend/.env relative to this file so settings load correctly
        env_file=str(Path(__file__).resolve().parents[1] / ".env"),
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "WRX Links"
    APP_VERSION: str = "2.0.0"
    DEBUG: bool = False
    BASE_URL: str = "https://wrx.io"
    CORS_ORIGINS: list[str] = ["*"]

    # Database
    DATABASE_URL: Optional[str] = None
    DEV_MODE: bool = False
    MYSQL_HOST: str = "localhost"
    MYSQL_PORT: int = 3306
    MYSQL_USER: str = "wrx"
    MYSQL_PASSWORD: str = "your_secure_password"
    MYSQL_DATABASE: str = "wrx"

    # Redis
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str = ""

    # Slug settings
    SLUG_LENGTH: int = Field(7, ge=6, le=8)
    MIN_SLUG_LENGTH: int = 3
    MAX_SLUG_LENGTH: int = 50
    SLUG_MAX_ATTEMPTS: int = 10

    # Password protection
    BCRYPT_ROUNDS: int = Field(12, ge=4, le=31)

    # Rate Limiting
    RATE_LIMIT_PER_HOUR: int = 30

    # Maximum links per subscription tier, -1 means unlimited
    TIER_MAX_LINKS: dict[str, int] = {
        "free": 10,
        "pro": 500,
        "enterprise": -1,
    }

    # Path segments that cannot be used as slugs
    RESERVED_SLUGS: list[str] = [
        "api", "health", "docs", "redoc", "openapi.json",
        "favicon.ico", "robots.txt",
    ]

    def max_links_for(self, tier: Optional[str]) -> int:
        """Link quota for a tier; unknown tiers get the free quota."""
        return self.TIER_MAX_LINKS.get(tier or "free", self.TIER_MAX_LINKS["free"])

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        if self.DEV_MODE:
            db_file = Path(__file__).resolve().parents[1] / "dev.db"
            return f"sqlite:///{db_file}"
        return (
            f"mysql+pymysql://{self.MYSQL_USER}:{self.MYSQL_PASSWORD}"
            f"@{self.MYSQL_HOST}:{self.MYSQL_PORT}/{self.MYSQL_DATABASE}"
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
