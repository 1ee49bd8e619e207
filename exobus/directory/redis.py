"""Redis-backed module directory.

Descriptors are stored as JSON values of a single Redis hash keyed by module
id, so every host sharing the Redis instance sees the same module list.
"""

import asyncio
import logging
from typing import Any
from urllib.parse import urlparse, urlunparse

from exobus.directory.base import ModuleDescriptor

logger = logging.getLogger("exobus.directory")


def _sanitize_url(url: str) -> str:
    """Mask password in Redis URL for logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username}:****@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return f"{parsed.hostname}:{parsed.port or 6379}"
    except Exception:
        return "<url>"


class RedisModuleDirectory:
    """Module directory persisted in a Redis hash."""

    def __init__(self, redis_url: str, key: str = "exobus:modules") -> None:
        """Initialize the directory.

        Args:
            redis_url: Redis connection URL.
            key: Hash holding one descriptor per module id.
        """
        self._url = redis_url
        self._url_safe = _sanitize_url(redis_url)
        self.key = key
        self._redis: Any = None
        self._conn_lock = asyncio.Lock()

    @property
    def redis_url(self) -> str:
        return self._url

    async def _get_client(self) -> Any:
        try:
            from redis.asyncio import Redis
        except ImportError as e:
            raise ImportError("Install redis: pip install exobus[redis]") from e

        async with self._conn_lock:
            if self._redis is None:
                client = Redis.from_url(self._url, decode_responses=True)
                try:
                    await client.ping()
                except Exception:
                    await client.aclose()
                    raise
                self._redis = client
                logger.info(f"Connected to Redis at {self._url_safe}")
            return self._redis

    async def resolve(self, module_id: str) -> ModuleDescriptor | None:
        redis = await self._get_client()
        data = await redis.hget(self.key, module_id)
        if data is None:
            return None
        return ModuleDescriptor.model_validate_json(data)

    async def list(self) -> list[ModuleDescriptor]:
        redis = await self._get_client()
        values = await redis.hvals(self.key)
        descriptors = []
        for data in values:
            try:
                descriptors.append(ModuleDescriptor.model_validate_json(data))
            except ValueError as e:
                logger.warning(
                    f"Skipping invalid module descriptor in {self.key}: {e}",
                    extra={"error": str(e)},
                )
        return descriptors

    async def add(self, descriptor: ModuleDescriptor) -> None:
        redis = await self._get_client()
        await redis.hset(self.key, descriptor.module_id, descriptor.model_dump_json())

    async def remove(self, module_id: str) -> bool:
        redis = await self._get_client()
        return bool(await redis.hdel(self.key, module_id))

    async def clear(self) -> None:
        """Delete the whole directory (for testing)."""
        redis = await self._get_client()
        await redis.delete(self.key)

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Closed Redis connection")
