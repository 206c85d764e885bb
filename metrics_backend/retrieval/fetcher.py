"""
Parallel Retrieval Engine

Concurrency-bounded multi-key fetch from the cache with:
- One MGET per chunk, chunks dispatched concurrently
- Results joined back in caller key order
- Optional EXISTS pre-check for sparsely populated key spaces
- Optional dictionary decoding of fetched pages
- Pattern scan, TTL inspection, bulk delete and archive export
"""

import asyncio
import json
import math
import re
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar, Union

import structlog
from prometheus_client import Counter, Histogram
from redis.exceptions import RedisError

from metrics_backend.codec import Dictionary, decode_page
from metrics_backend.codec.dictionary import RECORDS_SUFFIX
from metrics_backend.config import Settings, get_settings
from metrics_backend.errors import RetrievalError
from metrics_backend.serving.cache import CacheClient, deserialize_page

logger = structlog.get_logger(__name__)

T = TypeVar("T")


# =============================================================================
# METRICS
# =============================================================================

KEYS_FETCHED = Counter(
    "metrics_backend_keys_fetched_total",
    "Total number of keys requested from the cache",
    ["status"],
)

CHUNK_FETCH_TIME = Histogram(
    "metrics_backend_chunk_fetch_seconds",
    "Time spent on one multi-get chunk",
)


def chunk_keys(keys: Sequence[str], concurrency: int, max_chunk_size: int) -> List[List[str]]:
    """
    Split keys into at most ``concurrency`` chunks of near-equal size.

    Chunks never exceed ``max_chunk_size`` keys, so very large requests
    produce more chunks than ``concurrency``; those wait for a free slot.
    """
    if concurrency <= 0:
        raise ValueError("concurrency must be positive")
    if not keys:
        return []
    size = max(1, min(max_chunk_size, math.ceil(len(keys) / concurrency)))
    return [list(keys[i:i + size]) for i in range(0, len(keys), size)]


class ParallelFetcher:
    """
    Multi-key reader over an injected cache client.

    A missing key is reported as ``None``; it never raises and never stops
    the other keys from being read. A transport failure in any chunk fails
    the whole call with ``RetrievalError`` (no partial results).

    Example:
        fetcher = ParallelFetcher(redis_client)
        pages = await fetcher.fetch_many(["m1_t1_2024_01", "m1_t1_2024_02"], concurrency=4)
    """

    def __init__(
        self,
        client: CacheClient,
        dictionary: Optional[Dictionary] = None,
        settings: Optional[Settings] = None,
    ):
        self.client = client
        self.dictionary = dictionary
        self.settings = settings or get_settings()

    async def _run_chunks(
        self,
        chunks: List[List[str]],
        concurrency: int,
        operation: str,
        fn: Callable[[List[str]], Awaitable[List[T]]],
    ) -> List[T]:
        semaphore = asyncio.Semaphore(concurrency)

        async def run(chunk: List[str]) -> List[T]:
            async with semaphore:
                return await fn(chunk)

        results = await asyncio.gather(*(run(chunk) for chunk in chunks), return_exceptions=True)

        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            transport = [f for f in failures if isinstance(f, (RedisError, OSError))]
            if len(transport) != len(failures):
                # Not a transport problem: surface it untouched
                raise next(f for f in failures if f not in transport)
            completed = len(results) - len(failures)
            logger.error(
                "Retrieval chunk failed",
                operation=operation,
                failed_chunks=len(failures),
                completed_chunks=completed,
                error=str(transport[0]),
            )
            raise RetrievalError(
                f"{operation} failed on {len(failures)} of {len(results)} chunks",
                completed_chunks=completed,
                cause=transport[0],
            ) from transport[0]

        merged: List[T] = []
        for part in results:
            merged.extend(part)
        return merged

    async def _mget(self, chunk: List[str]) -> List[Any]:
        with CHUNK_FETCH_TIME.time():
            raw = await self.client.mget(chunk)

        pages = []
        for value in raw:
            page = deserialize_page(value)
            if page is not None and self.dictionary is not None:
                page = decode_page(page, self.dictionary)
            pages.append(page)
        return pages

    async def _pipelined(self, chunk: List[str], command: str) -> List[Any]:
        async with self.client.pipeline(transaction=False) as pipe:
            for key in chunk:
                getattr(pipe, command)(key)
            return await pipe.execute()

    async def fetch_many(
        self,
        keys: Sequence[str],
        concurrency: Optional[int] = None,
        skip_absent: bool = False,
    ) -> Dict[str, Optional[Any]]:
        """
        Fetch the pages stored under ``keys``.

        Args:
            keys: Cache keys, in the order the result should follow
            concurrency: Max multi-gets in flight (defaults to settings)
            skip_absent: Run an EXISTS pass first and only MGET present keys

        Returns:
            Mapping of key -> page, ``None`` for absent keys, in input order
        """
        if concurrency is None:
            concurrency = self.settings.retrieval.concurrency
        keys = list(keys)

        to_fetch = keys
        if skip_absent:
            present = await self.exists_many(keys, concurrency)
            to_fetch = [key for key, found in zip(keys, present) if found]
            logger.debug("Existence pre-check", requested=len(keys), present=len(to_fetch))

        chunks = chunk_keys(to_fetch, concurrency, self.settings.retrieval.max_chunk_size)
        pages = await self._run_chunks(chunks, concurrency, "fetch_many", self._mget)
        fetched = dict(zip(to_fetch, pages))

        result = {key: fetched.get(key) for key in keys}
        hits = sum(1 for page in result.values() if page is not None)
        KEYS_FETCHED.labels(status="hit").inc(hits)
        KEYS_FETCHED.labels(status="miss").inc(len(result) - hits)

        logger.info(
            "Fetched keys",
            requested=len(keys),
            found=hits,
            chunks=len(chunks),
            concurrency=concurrency,
        )
        return result

    async def exists_many(self, keys: Sequence[str], concurrency: Optional[int] = None) -> List[bool]:
        """Pipelined EXISTS per key, in input order"""
        if concurrency is None:
            concurrency = self.settings.retrieval.concurrency
        chunks = chunk_keys(list(keys), concurrency, self.settings.retrieval.max_chunk_size)

        async def exists(chunk: List[str]) -> List[Any]:
            return await self._pipelined(chunk, "exists")

        counts = await self._run_chunks(chunks, concurrency, "exists_many", exists)
        return [bool(count) for count in counts]

    async def key_ttls(self, keys: Sequence[str], concurrency: Optional[int] = None) -> Dict[str, int]:
        """
        Remaining TTL per key in seconds.

        Redis conventions apply: ``-2`` for a missing key, ``-1`` for a key
        without expiry.
        """
        if concurrency is None:
            concurrency = self.settings.retrieval.concurrency
        keys = list(keys)
        chunks = chunk_keys(keys, concurrency, self.settings.retrieval.max_chunk_size)

        async def ttls(chunk: List[str]) -> List[Any]:
            return await self._pipelined(chunk, "ttl")

        values = await self._run_chunks(chunks, concurrency, "key_ttls", ttls)
        return {key: int(ttl) for key, ttl in zip(keys, values)}

    async def scan_keys(self, pattern: str) -> List[str]:
        """All keys matching a glob pattern (SCAN, never KEYS)"""
        keys: Dict[str, None] = {}
        try:
            async for key in self.client.scan_iter(match=pattern, count=self.settings.retrieval.scan_count):
                if isinstance(key, bytes):
                    key = key.decode("utf-8")
                # SCAN may return a key more than once
                keys[key] = None
        except (RedisError, OSError) as e:
            raise RetrievalError(f"Scan failed for pattern {pattern!r}", completed_chunks=0, cause=e) from e

        logger.info("Scanned keys", pattern=pattern, found=len(keys))
        return list(keys)

    async def fetch_pattern(self, pattern: str, concurrency: Optional[int] = None) -> Dict[str, Optional[Any]]:
        """Scan for ``pattern`` and fetch every matching key"""
        keys = await self.scan_keys(pattern)
        if not keys:
            return {}
        return await self.fetch_many(keys, concurrency)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching ``pattern``; returns the number removed"""
        keys = await self.scan_keys(pattern)
        if not keys:
            logger.info("No keys found matching pattern", pattern=pattern)
            return 0

        deleted = 0
        size = self.settings.retrieval.max_chunk_size
        try:
            for i in range(0, len(keys), size):
                deleted += await self.client.delete(*keys[i:i + size])
        except (RedisError, OSError) as e:
            raise RetrievalError(
                f"Delete failed for pattern {pattern!r}",
                completed_chunks=i // size,
                cause=e,
            ) from e

        logger.info("Deleted keys matching pattern", pattern=pattern, deleted=deleted)
        return deleted

    async def export_pages(
        self,
        pattern: str,
        directory: Union[str, Path],
        name: Optional[str] = None,
    ) -> Path:
        """
        Archive matching keys as ``<name>_records.json``.

        The file holds a JSON array of ``{"key", "value"}`` envelopes, the
        layout read by the dictionary file workflow and file aggregation.
        Absent keys (expired between scan and fetch) are skipped.
        """
        pages = await self.fetch_pattern(pattern)
        envelopes = [{"key": key, "value": page} for key, page in pages.items() if page is not None]

        stem = name or re.sub(r"[^A-Za-z0-9_.-]", "", pattern) or "export"
        path = Path(directory) / f"{stem}{RECORDS_SUFFIX}"
        path.parent.mkdir(parents=True, exist_ok=True)

        await asyncio.to_thread(path.write_text, json.dumps(envelopes), encoding="utf-8")
        logger.info("Pages exported", pattern=pattern, pages=len(envelopes), path=str(path))
        return path
