import redis
from typing import Optional
from .config import settings
from .logging_config import get_logger

logger = get_logger(__name__)

# Redis connection pool; connections are opened lazily on first command
pool = redis.ConnectionPool(
    host=settings.REDIS_HOST,
    port=settings.REDIS_PORT,
    db=settings.REDIS_DB,
    password=settings.REDIS_PASSWORD or None,
    decode_responses=True,
    max_connections=20
)

redis_client = redis.Redis(connection_pool=pool)


class RedisService:
    """Redis service for rate limiting link creation."""

    RATE_LIMIT_PREFIX = "ratelimit:ip:"
    RATE_LIMIT_TTL = 3600  # 1 hour

    @staticmethod
    def check_rate_limit(ip: str, limit: Optional[int] = None) -> tuple[bool, int]:
        """
        Check and increment rate limit for an IP.
        Returns (is_allowed, remaining_requests).
        """
        if limit is None:
            limit = settings.RATE_LIMIT_PER_HOUR

        key = f"{RedisService.RATE_LIMIT_PREFIX}{ip}"

        try:
            # INCR creates the key at 1; set the window TTL on first use
            current = int(redis_client.incr(key))
            if current == 1:
                redis_client.expire(key, RedisService.RATE_LIMIT_TTL)
        except redis.RedisError as e:
            # If Redis fails, allow the request
            logger.warning(f"Rate limit check failed for {ip}: {e}")
            return True, limit

        if current > limit:
            return False, 0
        return True, limit - current

    @staticmethod
    def health_check() -> bool:
        """Check Redis connection health."""
        try:
            return bool(redis_client.ping())
        except redis.RedisError:
            return False
