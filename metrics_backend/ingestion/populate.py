"""
Bulk Population Engine

Seeds the cache with synthetic dataset pages.
Supports:
- Key-space driven population (Cartesian product of query axes)
- Volume-driven population (N random partitions)
- Pipelined batches of SET + EXPIRE, one round trip per batch
- Resume from a reported offset after a failed or cancelled run
"""

import asyncio
import itertools
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

import structlog
from prometheus_client import Counter, Histogram
from pydantic import BaseModel
from redis.exceptions import RedisError

from metrics_backend.codec import Dictionary, encode_page
from metrics_backend.config import Settings, get_settings
from metrics_backend.errors import PopulationError
from metrics_backend.keyspace import DimensionalTuple, KeyAxes, KeyScheme, build_key
from metrics_backend.serving.cache import CacheClient, serialize_page

logger = structlog.get_logger(__name__)


# =============================================================================
# METRICS
# =============================================================================

KEYS_WRITTEN = Counter(
    "metrics_backend_keys_written_total",
    "Total number of cache keys written by bulk population",
    ["scheme"],
)

BATCHES_FAILED = Counter(
    "metrics_backend_population_batches_failed_total",
    "Total number of population batches that failed",
)

BATCH_WRITE_TIME = Histogram(
    "metrics_backend_batch_write_seconds",
    "Time spent executing one population pipeline",
)


Record = Dict[str, Any]
RecordFactory = Callable[[DimensionalTuple], Union[Record, List[Record]]]
TupleFactory = Callable[[int], DimensionalTuple]
ProgressCallback = Callable[[int], None]


class PopulationResult(BaseModel):
    """Result of a population run"""
    count: int
    elapsed_ms: float
    batches: int
    offset: int = 0
    ttl: int
    scheme: KeyScheme
    started_at: datetime
    completed_at: datetime

    @property
    def next_offset(self) -> int:
        """Offset to pass when continuing the same key sequence"""
        return self.offset + self.count


class BulkPopulator:
    """
    Batched, TTL-bounded writer of dataset pages.

    Every key is written with ``SET`` followed by ``EXPIRE`` on the same
    pipeline; permanent keys are never produced. The first failing batch
    aborts the run and raises ``PopulationError`` carrying the number of
    keys already written, so the caller can resume with that offset.

    Example:
        populator = BulkPopulator(redis_client)
        axes = KeyAxes(metric_ids=["m1"], tenant_ids=["t1"], years=[2024], months=["01"])
        result = await populator.populate(axes, CampaignRecordFactory(), batch_size=2, ttl=60)
    """

    def __init__(
        self,
        client: CacheClient,
        scheme: Optional[KeyScheme] = None,
        dictionary: Optional[Dictionary] = None,
        settings: Optional[Settings] = None,
    ):
        self.client = client
        self.settings = settings or get_settings()
        self.scheme = KeyScheme(scheme or self.settings.keyspace.default_scheme)
        self.dictionary = dictionary

    def _key(self, coords: DimensionalTuple) -> str:
        return build_key(coords, self.scheme, self.settings.keyspace.hash_length)

    def _page(self, record_factory: RecordFactory, coords: DimensionalTuple) -> str:
        page = record_factory(coords)
        if isinstance(page, dict):
            page = [page]
        if self.dictionary is not None:
            page = encode_page(page, self.dictionary)
        return serialize_page(page)

    async def _write_batch(self, batch: List[Tuple[str, str]], ttl: int) -> None:
        async with self.client.pipeline(transaction=False) as pipe:
            for key, payload in batch:
                pipe.set(key, payload)
                pipe.expire(key, ttl)
            await pipe.execute()

    async def _run(
        self,
        items: Iterator[Tuple[str, DimensionalTuple]],
        record_factory: RecordFactory,
        batch_size: int,
        ttl: int,
        offset: int,
        on_progress: Optional[ProgressCallback],
    ) -> PopulationResult:
        if ttl <= 0:
            raise ValueError("ttl must be a positive number of seconds")
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")

        started_at = datetime.now(timezone.utc)
        start = time.perf_counter()
        count = 0
        batches = 0

        log = logger.bind(scheme=self.scheme.value, batch_size=batch_size, ttl=ttl, offset=offset)
        log.info("Population started")

        try:
            while True:
                chunk = list(itertools.islice(items, batch_size))
                if not chunk:
                    break

                batch = [(key, self._page(record_factory, coords)) for key, coords in chunk]

                try:
                    with BATCH_WRITE_TIME.time():
                        await self._write_batch(batch, ttl)
                except (RedisError, OSError) as e:
                    BATCHES_FAILED.inc()
                    log.error("Population batch failed", completed=count, batch=batches + 1, error=str(e))
                    raise PopulationError(
                        f"Batch {batches + 1} failed after {count} keys",
                        completed=count,
                        cause=e,
                    ) from e

                count += len(batch)
                batches += 1
                KEYS_WRITTEN.labels(scheme=self.scheme.value).inc(len(batch))
                log.info("Inserted keys so far", count=count, batches=batches)

                if on_progress is not None:
                    on_progress(count)
        except asyncio.CancelledError:
            log.warning("Population cancelled", completed=count, next_offset=offset + count)
            raise

        elapsed_ms = (time.perf_counter() - start) * 1000
        log.info("Population completed", count=count, elapsed_ms=round(elapsed_ms, 2))

        return PopulationResult(
            count=count,
            elapsed_ms=elapsed_ms,
            batches=batches,
            offset=offset,
            ttl=ttl,
            scheme=self.scheme,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
        )

    async def populate(
        self,
        axes: KeyAxes,
        record_factory: RecordFactory,
        batch_size: Optional[int] = None,
        ttl: Optional[int] = None,
        offset: int = 0,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PopulationResult:
        """
        Populate every key of the expanded key space.

        Args:
            axes: Query axes to expand
            record_factory: Builds the page stored under each tuple
            batch_size: Keys per pipeline (defaults to settings)
            ttl: Expiry in seconds applied to every key (defaults to settings)
            offset: Number of leading keys to skip (resume point)
            on_progress: Called with the running count after each batch

        Returns:
            PopulationResult with the count written and elapsed milliseconds
        """
        tuples = itertools.islice(axes.tuples(), offset, None)
        items = ((self._key(coords), coords) for coords in tuples)

        return await self._run(
            items,
            record_factory,
            self.settings.population.batch_size if batch_size is None else batch_size,
            ttl if ttl is not None else self.settings.population.ttl_seconds,
            offset,
            on_progress,
        )

    async def populate_volume(
        self,
        target_count: int,
        tuple_factory: TupleFactory,
        record_factory: RecordFactory,
        batch_size: Optional[int] = None,
        ttl: Optional[int] = None,
        offset: int = 0,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PopulationResult:
        """
        Populate ``target_count`` keys from generated tuples.

        ``tuple_factory`` receives the absolute key index, so a resumed run
        continues the same numbering.
        """
        items = (
            (self._key(coords), coords)
            for coords in (tuple_factory(index) for index in range(offset, target_count))
        )

        return await self._run(
            items,
            record_factory,
            self.settings.population.batch_size if batch_size is None else batch_size,
            ttl if ttl is not None else self.settings.population.ttl_seconds,
            offset,
            on_progress,
        )
