"""
Unit Tests - Group-By Aggregation
"""
import json
import math
import random

import polars as pl
import pytest

from metrics_backend.codec import build_dictionary, encode_page
from metrics_backend.errors import AggregationError, RetrievalError
from metrics_backend.serving.cache import serialize_page
from metrics_backend.transformation import (
    AggregationGroup,
    CacheSource,
    FileSource,
    GroupAccumulator,
    GroupByAggregator,
    aggregate,
    find_sources,
    groups_to_frame,
    merge_groups,
    parse_metric,
    sort_groups,
    write_output,
)


def as_sums(groups, metric):
    return {group.key: group.sums[metric] for group in groups}


class TestParseMetric:
    """Tests for metric value parsing"""

    @pytest.mark.parametrize("value,expected", [
        ("10", 10.0),
        (" 2.5 ", 2.5),
        (3, 3.0),
        (1.25, 1.25),
    ])
    def test_numeric(self, value, expected):
        assert parse_metric(value) == expected

    @pytest.mark.parametrize("value", [None, "x", "", True, "nan", "inf", float("nan"), [1]])
    def test_rejected(self, value):
        assert parse_metric(value) is None


class TestAggregate:
    """Tests for in-memory aggregation"""

    def test_non_numeric_contributes_zero(self, region_records):
        groups = aggregate([region_records], ["region"], ["sales"])
        assert [group.to_dict() for group in groups] == [
            {"region": "A", "sales": 15.0},
            {"region": "B", "sales": 0.0},
        ]

    def test_missing_group_field_uses_sentinel(self):
        records = [{"region": "A", "sales": "1"}, {"sales": "2"}, {"region": None, "sales": "3"}]
        groups = aggregate([records], ["region"], ["sales"])

        assert [group.key for group in groups] == ["A", "Unknown region"]
        assert groups[1].sums["sales"] == 5.0
        assert groups[1].count == 2

    def test_multi_field_key(self, campaign_pages):
        groups = aggregate(campaign_pages, ["channel", "platform"], ["metricValue1"])

        assert [group.key for group in groups] == [
            "Paid Search|Google Ads",
            "Paid Social|Meta",
            "Organic|Unknown platform",
        ]
        assert groups[0].sums["metricValue1"] == pytest.approx(110.0)

    def test_first_seen_order(self):
        records = [{"k": "b", "v": 1}, {"k": "a", "v": 1}, {"k": "b", "v": 1}]
        assert [g.key for g in aggregate([records], ["k"], ["v"])] == ["b", "a"]

    def test_empty_sources(self):
        assert aggregate([], ["region"], ["sales"]) == []

    def test_envelope_pages(self):
        page = [{"key": "m1_t1_2024_01", "value": [{"region": "A", "sales": "4"}]}]
        groups = aggregate([page], ["region"], ["sales"])
        assert groups[0].to_dict() == {"region": "A", "sales": 4.0}

    def test_bare_record_page_dropped(self):
        accumulator = GroupAccumulator(["region"], ["sales"])
        accumulator.add_page({"region": "A", "sales": "1"}, source="sources[0]")

        assert accumulator.groups == {}
        assert accumulator.dropped_pages == 1
        assert aggregate([{"region": "A", "sales": "1"}], ["region"], ["sales"]) == []

    def test_non_record_items_skipped(self):
        accumulator = GroupAccumulator(["region"], ["sales"])
        accumulator.add_page([{"region": "A", "sales": "1"}, "junk", 7, {"key": "k", "value": [None]}])

        assert accumulator.records == 1
        assert accumulator.skipped_items == 3
        assert accumulator.dropped_pages == 0

    def test_idempotent(self, campaign_pages):
        first = aggregate(campaign_pages, ["channel"], ["metricValue1"])
        second = aggregate(campaign_pages, ["channel"], ["metricValue1"])
        assert [g.to_dict() for g in first] == [g.to_dict() for g in second]

    def test_source_order_independent(self):
        rng = random.Random(3)
        pages = [
            [{"region": rng.choice("ABC"), "sales": str(rng.randint(0, 100))} for _ in range(20)]
            for _ in range(6)
        ]
        expected = as_sums(aggregate(pages, ["region"], ["sales"]), "sales")

        for _ in range(5):
            shuffled = pages[:]
            rng.shuffle(shuffled)
            sums = as_sums(aggregate(shuffled, ["region"], ["sales"]), "sales")
            assert sums.keys() == expected.keys()
            for key, total in sums.items():
                assert math.isclose(total, expected[key])


class TestMergeGroups:
    """Tests for merge_groups"""

    def test_sums_same_keys(self):
        left = {"A": AggregationGroup("A", {"region": "A"}, {"sales": 1.0}, 1)}
        right = {
            "B": AggregationGroup("B", {"region": "B"}, {"sales": 2.0}, 1),
            "A": AggregationGroup("A", {"region": "A"}, {"sales": 3.0}, 2),
        }

        merged = merge_groups([left, right])

        assert list(merged) == ["A", "B"]
        assert merged["A"].sums == {"sales": 4.0}
        assert merged["A"].count == 3
        # Inputs untouched
        assert left["A"].sums == {"sales": 1.0}

    def test_commutative(self):
        a = {"A": AggregationGroup("A", {}, {"sales": 1.5}, 1)}
        b = {"A": AggregationGroup("A", {}, {"sales": 2.5}, 1)}
        assert merge_groups([a, b])["A"].sums == merge_groups([b, a])["A"].sums


class TestSources:
    """Tests for lazily loaded sources"""

    async def test_missing_file(self, tmp_path):
        loaded = await FileSource(tmp_path / "missing_records.json").load()
        assert loaded.page is None

    async def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad_records.json"
        path.write_text("{not json")
        with pytest.raises(AggregationError):
            await FileSource(path).load()

    async def test_cache_source_decodes(self, fake_redis, region_records):
        dictionary = build_dictionary([region_records])
        await fake_redis.set("m1_t1_2024_01", serialize_page(encode_page(region_records, dictionary)))

        loaded = await CacheSource(fake_redis, "m1_t1_2024_01", dictionary).load()

        assert loaded.page == region_records

    async def test_cache_source_absent(self, fake_redis):
        loaded = await CacheSource(fake_redis, "nothing").load()
        assert loaded.page is None

    async def test_cache_source_transport_failure(self, fake_redis):
        fake_redis.fail_on("get")
        with pytest.raises(RetrievalError):
            await CacheSource(fake_redis, "m1_t1_2024_01").load()

    def test_find_sources(self, tmp_path):
        for name in ["metric1_a_records.json", "metric1_b_records.json", "metric2_records.json", "metric1.txt"]:
            (tmp_path / name).write_text("[]")
        sources = find_sources(tmp_path, "metric1")
        assert [s.path.name for s in sources] == ["metric1_a_records.json", "metric1_b_records.json"]

    def test_find_sources_missing_directory(self, tmp_path):
        assert find_sources(tmp_path / "nope", "metric1") == []


class TestGroupByAggregator:
    """Tests for the concurrent aggregation engine"""

    async def test_mixed_sources(self, tmp_path, fake_redis, test_settings, region_records):
        (tmp_path / "part_records.json").write_text(json.dumps(
            [{"key": "k", "value": [{"region": "A", "sales": "100"}]}]
        ))
        await fake_redis.set("cached", serialize_page([{"region": "C", "sales": "7"}]))

        sources = [
            region_records,
            FileSource(tmp_path / "part_records.json"),
            FileSource(tmp_path / "missing_records.json"),
            CacheSource(fake_redis, "cached"),
        ]
        result = await GroupByAggregator(settings=test_settings).run(sources, ["region"], ["sales"])

        assert result.rows() == [
            {"region": "A", "sales": 115.0},
            {"region": "B", "sales": 0.0},
            {"region": "C", "sales": 7.0},
        ]
        assert result.source_count == 4
        assert result.record_count == 5
        assert result.invalid_values == {"sales": 1}
        assert result.total_ms >= result.processing_ms >= 0

    async def test_matches_sequential(self, campaign_pages, test_settings):
        result = await GroupByAggregator(concurrency=1, settings=test_settings).run(
            campaign_pages, ["channel"], ["metricValue1"]
        )
        expected = aggregate(campaign_pages, ["channel"], ["metricValue1"])
        assert result.rows() == [g.to_dict() for g in expected]

    async def test_run_pattern(self, tmp_path, campaign_pages, test_settings):
        for i, page in enumerate(campaign_pages):
            (tmp_path / f"metric1_{i}_records.json").write_text(json.dumps(page))

        result = await GroupByAggregator(settings=test_settings).run_pattern(
            tmp_path, "metric1", ["channel"], ["metricValue1"]
        )

        assert result.source_count == 2
        assert result.rows()[0] == {"channel": "Paid Search", "metricValue1": pytest.approx(110.0)}

    async def test_empty(self, test_settings):
        result = await GroupByAggregator(settings=test_settings).run([], ["region"], ["sales"])
        assert result.groups == []
        assert result.record_count == 0

    @pytest.mark.parametrize("concurrency", [0, -1])
    def test_invalid_concurrency(self, test_settings, concurrency):
        with pytest.raises(ValueError):
            GroupByAggregator(concurrency=concurrency, settings=test_settings)

    def test_empty_separator_rejected(self, test_settings):
        with pytest.raises(ValueError):
            GroupByAggregator(separator="", settings=test_settings)
        assert GroupByAggregator(separator="/", settings=test_settings).separator == "/"

    async def test_unusable_pages_counted(self, fake_redis, test_settings):
        await fake_redis.set("garbled", "not json")
        sources = [
            CacheSource(fake_redis, "garbled"),
            {"region": "A", "sales": "1"},
            [{"region": "B", "sales": "2"}, "junk"],
        ]

        result = await GroupByAggregator(settings=test_settings).run(sources, ["region"], ["sales"])

        assert result.rows() == [{"region": "B", "sales": 2.0}]
        assert result.record_count == 1
        assert result.dropped_pages == 2
        assert result.skipped_items == 1


class TestOutput:
    """Tests for sorting and writing results"""

    def test_sort_groups(self, region_records):
        groups = aggregate([region_records], ["region"], ["sales"])
        assert [g.key for g in sort_groups(groups, "sales")] == ["B", "A"]
        assert [g.key for g in sort_groups(groups, "sales", descending=True)] == ["A", "B"]

    def test_sort_groups_missing_column_last(self):
        groups = [
            AggregationGroup("x", {}, {}, 1),
            AggregationGroup("a", {"name": "a"}, {}, 1),
        ]
        assert [g.key for g in sort_groups(groups, "name", descending=True)] == ["a", "x"]

    def test_write_output(self, tmp_path, region_records):
        groups = aggregate([region_records], ["region"], ["sales"])

        path = write_output(groups, tmp_path / "out", timestamped=False)

        assert path.name == "grouped_metrics_results.json"
        assert json.loads(path.read_text()) == [
            {"region": "A", "sales": 15.0},
            {"region": "B", "sales": 0.0},
        ]

    def test_write_output_timestamped(self, tmp_path):
        path = write_output([], tmp_path, name="results")
        assert path.name.startswith("results_")
        assert json.loads(path.read_text()) == []

    def test_groups_to_frame(self, region_records):
        frame = groups_to_frame(aggregate([region_records], ["region"], ["sales"]))
        assert isinstance(frame, pl.DataFrame)
        assert frame["region"].to_list() == ["A", "B"]
        assert frame["sales"].to_list() == [15.0, 0.0]

    def test_groups_to_frame_empty(self):
        assert groups_to_frame([]).is_empty()
