"""
Serving Module
"""
from .cache import (
    CacheClient,
    CachePipeline,
    create_redis,
    close_redis,
    serialize_page,
    deserialize_page,
)

__all__ = [
    "CacheClient",
    "CachePipeline",
    "create_redis",
    "close_redis",
    "serialize_page",
    "deserialize_page",
]
