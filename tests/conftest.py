"""
Test Suite Configuration
"""
import fnmatch
import math
from typing import Any, Dict, List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from metrics_backend.config import Settings
from metrics_backend.config.settings import (
    AggregationSettings,
    PopulationSettings,
    RetrievalSettings,
)


class FakeClock:
    """Manually advanced clock in seconds"""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePipeline:
    """Queues commands and replays them against the fake client on execute"""

    def __init__(self, client: "FakeRedis"):
        self.client = client
        self.commands: List[tuple] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.commands.clear()

    def _queue(self, name: str, *args: Any, **kwargs: Any) -> "FakePipeline":
        self.commands.append((name, args, kwargs))
        return self

    def get(self, name):
        return self._queue("get", name)

    def set(self, name, value, ex=None):
        return self._queue("set", name, value, ex=ex)

    def expire(self, name, time):
        return self._queue("expire", name, time)

    def exists(self, *names):
        return self._queue("exists", *names)

    def ttl(self, name):
        return self._queue("ttl", name)

    async def execute(self) -> List[Any]:
        commands, self.commands = self.commands, []
        self.client._maybe_fail("execute")
        self.client.pipeline_sizes.append(len(commands))

        results = []
        for name, args, kwargs in commands:
            results.append(getattr(self.client, f"_{name}")(*args, **kwargs))
        return results


class FakeRedis:
    """
    In-memory stand-in for ``redis.asyncio.Redis`` (decode_responses=True).

    Expiry is evaluated against an injected clock. ``fail_on(command, after)``
    makes a command raise ``ConnectionError`` once it has succeeded ``after``
    times.
    """

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self.data: Dict[str, str] = {}
        self.expiry: Dict[str, float] = {}
        self.calls: Dict[str, int] = {}
        self.failures: Dict[str, int] = {}
        self.pipeline_sizes: List[int] = []

    def fail_on(self, command: str, after: int = 0) -> None:
        self.failures[command] = after

    def _maybe_fail(self, command: str) -> None:
        count = self.calls.get(command, 0)
        self.calls[command] = count + 1
        if command in self.failures and count >= self.failures[command]:
            raise RedisConnectionError(f"Simulated failure on {command}")

    def _alive(self, name: str) -> bool:
        deadline = self.expiry.get(name)
        if deadline is not None and self.clock() >= deadline:
            self.data.pop(name, None)
            self.expiry.pop(name, None)
        return name in self.data

    # Synchronous implementations shared by the client and its pipelines

    def _get(self, name):
        return self.data[name] if self._alive(name) else None

    def _set(self, name, value, ex=None):
        self.data[name] = value if isinstance(value, str) else str(value)
        self.expiry.pop(name, None)
        if ex is not None:
            self.expiry[name] = self.clock() + ex
        return True

    def _expire(self, name, time):
        if not self._alive(name):
            return False
        self.expiry[name] = self.clock() + time
        return True

    def _exists(self, *names):
        return sum(1 for name in names if self._alive(name))

    def _ttl(self, name):
        if not self._alive(name):
            return -2
        if name not in self.expiry:
            return -1
        return math.ceil(self.expiry[name] - self.clock())

    # Async client surface

    async def get(self, name):
        self._maybe_fail("get")
        return self._get(name)

    async def mget(self, keys, *args):
        self._maybe_fail("mget")
        return [self._get(key) for key in [*keys, *args]]

    async def set(self, name, value, ex=None):
        self._maybe_fail("set")
        return self._set(name, value, ex=ex)

    async def expire(self, name, time):
        self._maybe_fail("expire")
        return self._expire(name, time)

    async def exists(self, *names):
        self._maybe_fail("exists")
        return self._exists(*names)

    async def ttl(self, name):
        self._maybe_fail("ttl")
        return self._ttl(name)

    async def delete(self, *names):
        self._maybe_fail("delete")
        removed = 0
        for name in names:
            if self._alive(name):
                removed += 1
            self.data.pop(name, None)
            self.expiry.pop(name, None)
        return removed

    async def scan_iter(self, match=None, count=None):
        self._maybe_fail("scan")
        for name in sorted(self.data):
            if self._alive(name) and (match is None or fnmatch.fnmatchcase(name, match)):
                yield name

    def pipeline(self, transaction=True):
        return FakePipeline(self)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(now=1_700_000_000.0)


@pytest.fixture
def fake_redis(clock) -> FakeRedis:
    """In-memory cache client with a controllable clock"""
    return FakeRedis(clock)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        APP_ENV="testing",
        population=PopulationSettings(batch_size=2, ttl_seconds=60, records_per_key=3, seed=7),
        retrieval=RetrievalSettings(concurrency=4, max_chunk_size=50, scan_count=10),
        aggregation=AggregationSettings(concurrency=2),
    )


@pytest.fixture
def region_records() -> List[Dict[str, Any]]:
    """Records with one non-numeric metric value"""
    return [
        {"region": "A", "sales": "10"},
        {"region": "A", "sales": "5"},
        {"region": "B", "sales": "x"},
    ]


@pytest.fixture
def campaign_pages() -> List[List[Dict[str, Any]]]:
    """Two small dataset pages of campaign rows"""
    return [
        [
            {"channel": "Paid Search", "platform": "Google Ads", "year": 2024, "metricValue1": "100.50"},
            {"channel": "Paid Social", "platform": "Meta", "year": 2024, "metricValue1": "20.00"},
        ],
        [
            {"channel": "Paid Search", "platform": "Google Ads", "year": 2024, "metricValue1": "9.50"},
            {"channel": "Organic", "year": 2024, "metricValue1": "1"},
        ],
    ]
