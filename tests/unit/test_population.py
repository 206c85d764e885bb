"""
Unit Tests - Bulk Population
"""
import json

import pytest

from metrics_backend.codec import build_dictionary
from metrics_backend.data import RandomTupleFactory
from metrics_backend.errors import PopulationError
from metrics_backend.ingestion import BulkPopulator
from metrics_backend.keyspace import KeyAxes, KeyScheme, build_key
from metrics_backend.retrieval import ParallelFetcher


def region_factory(coords):
    return [{"metric": coords.metric_id, "month": coords.month, "sales": "10"}]


class TestPopulate:
    """Tests for key-space driven population"""

    async def test_single_key_expires(self, fake_redis, clock, test_settings):
        populator = BulkPopulator(fake_redis, settings=test_settings)
        axes = KeyAxes(metric_ids=["m1"], tenant_ids=["t1"], years=[2024], months=["01"])

        result = await populator.populate(axes, region_factory, batch_size=2, ttl=60)

        assert result.count == 1
        assert result.ttl == 60
        assert result.elapsed_ms >= 0
        assert await fake_redis.ttl("m1_t1_2024_01") == 60

        fetcher = ParallelFetcher(fake_redis, settings=test_settings)
        before = await fetcher.fetch_many(["m1_t1_2024_01"])
        assert before["m1_t1_2024_01"] == [{"metric": "m1", "month": "01", "sales": "10"}]

        clock.advance(61)
        after = await fetcher.fetch_many(["m1_t1_2024_01"])
        assert after == {"m1_t1_2024_01": None}

    async def test_every_key_has_ttl(self, fake_redis, test_settings):
        populator = BulkPopulator(fake_redis, settings=test_settings)
        axes = KeyAxes(metric_ids=["m1", "m2"], tenant_ids=["t1"], years=[2024], months=["01", "02", "03"])

        result = await populator.populate(axes, region_factory, batch_size=4, ttl=120)

        assert result.count == 6
        assert result.batches == 2
        assert fake_redis.pipeline_sizes == [8, 4]
        for key in axes.keys():
            assert 0 < await fake_redis.ttl(key) <= 120

    async def test_settings_defaults(self, fake_redis, test_settings):
        populator = BulkPopulator(fake_redis, settings=test_settings)
        axes = KeyAxes(metric_ids=["m1"], months=["01", "02", "03"])

        result = await populator.populate(axes, region_factory)

        assert result.ttl == test_settings.population.ttl_seconds
        assert result.batches == 2

    async def test_scheme(self, fake_redis, test_settings):
        populator = BulkPopulator(fake_redis, scheme=KeyScheme.VERBOSE, settings=test_settings)
        axes = KeyAxes(metric_ids=["m1"], tenant_ids=["t1"], years=[2024], months=["01"])

        await populator.populate(axes, region_factory, ttl=60)

        assert "metric:m1:tenant:t1:year:2024:month:01:dimensions:-" in fake_redis.data

    async def test_single_record_wrapped_in_list(self, fake_redis, test_settings):
        populator = BulkPopulator(fake_redis, settings=test_settings)
        axes = KeyAxes(metric_ids=["m1"])

        await populator.populate(axes, lambda coords: {"sales": "1"}, ttl=60)

        assert json.loads(fake_redis.data["m1_-_-_-"]) == [{"sales": "1"}]

    async def test_dictionary_encoding(self, fake_redis, test_settings):
        dictionary = build_dictionary([[{"metric": "m1", "month": "01", "sales": "10"}]])
        populator = BulkPopulator(fake_redis, dictionary=dictionary, settings=test_settings)
        axes = KeyAxes(metric_ids=["m1"], months=["01"])

        await populator.populate(axes, region_factory, ttl=60)

        stored = json.loads(fake_redis.data["m1_-_-_01"])
        assert stored == [{"1": 1, "2": 2, "3": 3}]

        fetcher = ParallelFetcher(fake_redis, dictionary=dictionary, settings=test_settings)
        pages = await fetcher.fetch_many(["m1_-_-_01"])
        assert pages["m1_-_-_01"] == [{"metric": "m1", "month": "01", "sales": "10"}]

    @pytest.mark.parametrize("ttl", [0, -1])
    async def test_non_positive_ttl_rejected(self, fake_redis, test_settings, ttl):
        populator = BulkPopulator(fake_redis, settings=test_settings)
        with pytest.raises(ValueError):
            await populator.populate(KeyAxes(metric_ids=["m1"]), region_factory, ttl=ttl)
        assert fake_redis.data == {}

    @pytest.mark.parametrize("batch_size", [0, -5])
    async def test_non_positive_batch_size_rejected(self, fake_redis, test_settings, batch_size):
        populator = BulkPopulator(fake_redis, settings=test_settings)
        with pytest.raises(ValueError):
            await populator.populate(KeyAxes(metric_ids=["m1"]), region_factory, batch_size=batch_size)
        with pytest.raises(ValueError):
            await populator.populate_volume(
                3, RandomTupleFactory(["m1"], seed=1), region_factory, batch_size=batch_size
            )
        assert fake_redis.data == {}

    async def test_progress_callback(self, fake_redis, test_settings):
        populator = BulkPopulator(fake_redis, settings=test_settings)
        axes = KeyAxes(metric_ids=["m1"], months=["01", "02", "03", "04", "05"])
        progress = []

        await populator.populate(axes, region_factory, batch_size=2, ttl=60, on_progress=progress.append)

        assert progress == [2, 4, 5]


class TestPopulateFailures:
    """Tests for batch failure and resume"""

    async def test_failed_batch_aborts_and_reports_completed(self, fake_redis, test_settings):
        populator = BulkPopulator(fake_redis, settings=test_settings)
        axes = KeyAxes(metric_ids=["m1"], months=["01", "02", "03", "04", "05"])
        fake_redis.fail_on("execute", after=1)

        with pytest.raises(PopulationError) as exc_info:
            await populator.populate(axes, region_factory, batch_size=2, ttl=60)

        assert exc_info.value.completed == 2
        assert exc_info.value.to_failure().details == {"completed": 2}
        assert sorted(fake_redis.data) == ["m1_-_-_01", "m1_-_-_02"]
        # No further batches attempted
        assert fake_redis.calls["execute"] == 2

    async def test_resume_from_offset(self, fake_redis, test_settings):
        populator = BulkPopulator(fake_redis, settings=test_settings)
        axes = KeyAxes(metric_ids=["m1"], months=["01", "02", "03", "04", "05"])
        fake_redis.fail_on("execute", after=1)

        with pytest.raises(PopulationError) as exc_info:
            await populator.populate(axes, region_factory, batch_size=2, ttl=60)

        fake_redis.failures.clear()
        result = await populator.populate(
            axes, region_factory, batch_size=2, ttl=60, offset=exc_info.value.completed
        )

        assert result.count == 3
        assert result.next_offset == 5
        assert sorted(fake_redis.data) == sorted(axes.keys())


class TestPopulateVolume:
    """Tests for volume-driven population"""

    async def test_target_count(self, fake_redis, test_settings):
        populator = BulkPopulator(fake_redis, settings=test_settings)
        tuples = RandomTupleFactory(["m1", "m2"], tenant_count=5, seed=1)

        result = await populator.populate_volume(7, tuples, region_factory, batch_size=3, ttl=30)

        assert result.count == 7
        assert result.batches == 3
        assert len(fake_redis.data) == 7
        ttls = [await fake_redis.ttl(key) for key in list(fake_redis.data)]
        assert all(0 < ttl <= 30 for ttl in ttls)

    async def test_offset_continues_numbering(self, fake_redis, test_settings):
        populator = BulkPopulator(fake_redis, settings=test_settings)
        tuples = RandomTupleFactory(["m1"], tenant_count=1, years=[2024], months=["01"], dimensions=["campaign"])

        result = await populator.populate_volume(5, tuples, region_factory, ttl=30, offset=3)

        assert result.count == 2
        assert sorted(fake_redis.data) == [
            build_key(tuples(3)),
            build_key(tuples(4)),
        ]
