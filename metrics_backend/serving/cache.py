"""
Redis Cache Module

Cache capability used by every component:
- Connection pooling
- JSON page serialization
- No module-level client: callers create one and inject it
"""

import json
from typing import Any, AsyncIterator, List, Optional, Protocol

import structlog
from redis.asyncio import Redis, ConnectionPool

from metrics_backend.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class CachePipeline(Protocol):
    """Queued commands, sent in one round trip by ``execute``."""

    def get(self, name: str) -> Any: ...

    def set(self, name: str, value: Any, ex: Optional[int] = None) -> Any: ...

    def expire(self, name: str, time: int) -> Any: ...

    def exists(self, *names: str) -> Any: ...

    def ttl(self, name: str) -> Any: ...

    async def execute(self) -> List[Any]: ...

    async def __aenter__(self) -> "CachePipeline": ...

    async def __aexit__(self, *exc_info: Any) -> None: ...


class CacheClient(Protocol):
    """
    Subset of ``redis.asyncio.Redis`` the backend relies on.

    Any object providing these coroutines (a real Redis client, a cluster
    client or an in-memory double) can be injected.
    """

    async def get(self, name: str) -> Any: ...

    async def mget(self, keys: List[str], *args: str) -> List[Any]: ...

    async def set(self, name: str, value: Any, ex: Optional[int] = None) -> Any: ...

    async def expire(self, name: str, time: int) -> Any: ...

    async def exists(self, *names: str) -> int: ...

    async def ttl(self, name: str) -> int: ...

    async def delete(self, *names: str) -> int: ...

    def scan_iter(self, match: Optional[str] = None, count: Optional[int] = None) -> AsyncIterator[Any]: ...

    def pipeline(self, transaction: bool = True) -> CachePipeline: ...


async def create_redis(settings: Optional[Settings] = None) -> Redis:
    """Create a pooled Redis client and verify the connection"""
    settings = settings or get_settings()

    pool = ConnectionPool.from_url(
        settings.redis.get_url(),
        max_connections=settings.redis.max_connections,
        socket_timeout=settings.redis.socket_timeout,
        decode_responses=settings.redis.decode_responses,
    )
    client = Redis(connection_pool=pool)

    try:
        await client.ping()
        logger.info("Redis connection established", host=settings.redis.host, db=settings.redis.db)
    except Exception as e:
        logger.error("Redis connection failed", error=str(e))
        await client.aclose()
        await pool.disconnect()
        raise

    return client


async def close_redis(client: Redis) -> None:
    """Close a client created by ``create_redis`` along with its pool"""
    await client.aclose()
    await client.connection_pool.disconnect()
    logger.info("Redis connection closed")


def serialize_page(value: Any) -> str:
    """Serialize a dataset page for storage"""
    return json.dumps(value, default=str, separators=(",", ":"))


def deserialize_page(raw: Any) -> Optional[Any]:
    """
    Deserialize a stored value.

    Returns:
        Parsed JSON, the raw string if it is not JSON, or None when absent
    """
    if raw is None:
        return None

    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")

    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw
