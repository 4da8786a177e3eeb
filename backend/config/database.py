"""
Durable Store Connection

Owns the redis.asyncio client behind the durable cache. The routes must
keep answering without Redis, so nothing here is allowed to abort startup:
an unreachable server still yields a client (calls fail and degrade one by
one until it comes back) and a missing REDIS_URL yields none.
"""

from typing import Optional

from redis import asyncio as aioredis
import structlog

from config.settings import settings

logger = structlog.get_logger(__name__)


class DatabaseManager:
    """Lazily connected Redis client shared by every worker coroutine"""

    def __init__(self):
        self.redis_client: Optional[aioredis.Redis] = None

    def _build_client(self, url: str) -> aioredis.Redis:
        # Short socket timeout: a slow Redis must not eat the upstream request budget
        return aioredis.from_url(
            url,
            password=settings.redis_password,
            decode_responses=True,
            max_connections=10,
            socket_connect_timeout=2,
            socket_timeout=2,
            health_check_interval=30,
        )

    async def initialize(self):
        """Create the Redis client and check it answers PING"""
        url = settings.redis_url
        if not url:
            logger.info("durable_store_not_configured")
            return

        try:
            self.redis_client = self._build_client(url)
        except ValueError as e:
            logger.error("durable_store_url_invalid", error=str(e))
            return

        try:
            await self.redis_client.ping()
        except Exception as e:
            logger.error("durable_store_unreachable", error=str(e), error_type=type(e).__name__)
            logger.warning("continuing_with_degraded_durable_store", environment=settings.environment)
            return

        logger.info("durable_store_connected")

    async def get_redis_client(self) -> Optional[aioredis.Redis]:
        return self.redis_client

    async def close(self):
        client, self.redis_client = self.redis_client, None
        if client is not None:
            await client.aclose()
            logger.info("durable_store_closed")


db_manager = DatabaseManager()
