"""
Group-By Aggregation Engine

Streaming group-by/sum over dataset pages that are already in memory, read
lazily from archived record files, or fetched from the cache.

Grouping is exact-match equality on a fixed list of fields; the group key is
the field values joined with ``|``. A record missing a group-by field lands in
an ``Unknown <field>`` bucket instead of being dropped. Metric values are
parsed as floats; missing or unparsable values add ``0`` and are counted and
logged as a warning.

Independent sources may be processed concurrently. Partial group maps are
merged in source order, so output order is first-seen group key. Sums do not
depend on merge order except for floating-point rounding at the last digits.
"""

import asyncio
import json
import math
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import polars as pl
import structlog
from redis.exceptions import RedisError

from metrics_backend.codec import Dictionary, decode_page
from metrics_backend.codec.dictionary import is_envelope
from metrics_backend.config import Settings, get_settings
from metrics_backend.errors import AggregationError, RetrievalError
from metrics_backend.serving.cache import CacheClient, deserialize_page

logger = structlog.get_logger(__name__)

DEFAULT_SEPARATOR = "|"


def unknown_label(field_name: str) -> str:
    """Sentinel bucket for records missing a group-by field"""
    return f"Unknown {field_name}"


def parse_metric(value: Any) -> Optional[float]:
    """
    Parse a metric value as a finite float.

    Returns:
        The number, or None if the value is missing, boolean, non-numeric,
        NaN or infinite
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


@dataclass
class AggregationGroup:
    """One group-by bucket"""
    key: str
    fields: Dict[str, Any]
    sums: Dict[str, float]
    count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Flat output row: group-by values followed by metric sums"""
        return {**self.fields, **self.sums}

    def copy(self) -> "AggregationGroup":
        return AggregationGroup(self.key, dict(self.fields), dict(self.sums), self.count)


class GroupAccumulator:
    """Partial group map for one or more sources"""

    def __init__(
        self,
        group_by: Sequence[str],
        metrics: Sequence[str],
        separator: str = DEFAULT_SEPARATOR,
    ):
        self.group_by = list(group_by)
        self.metrics = list(metrics)
        self.separator = separator
        self.groups: Dict[str, AggregationGroup] = {}
        self.records = 0
        self.dropped_pages = 0
        self.skipped_items = 0
        self.missing: Counter = Counter()
        self.invalid: Counter = Counter()

    def add_record(self, record: Dict[str, Any]) -> None:
        values = []
        for name in self.group_by:
            value = record.get(name)
            values.append(unknown_label(name) if value is None else value)

        key = self.separator.join(str(v) for v in values)
        group = self.groups.get(key)
        if group is None:
            group = AggregationGroup(
                key=key,
                fields=dict(zip(self.group_by, values)),
                sums={metric: 0.0 for metric in self.metrics},
            )
            self.groups[key] = group

        for metric in self.metrics:
            raw = record.get(metric)
            number = parse_metric(raw)
            if number is None:
                if raw is None:
                    self.missing[metric] += 1
                else:
                    self.invalid[metric] += 1
                continue
            group.sums[metric] += number

        group.count += 1
        self.records += 1

    def add_page(self, page: Any, source: Optional[str] = None) -> None:
        """
        Add every record of a page.

        ``None`` is an absent page and adds nothing. Anything that is neither
        a record list nor an envelope is dropped whole, and non-record items
        inside a page are skipped; both are counted and logged.
        """
        if page is None:
            return
        if not isinstance(page, list) and not is_envelope(page):
            self.dropped_pages += 1
            logger.warning("Dataset page dropped", source=source, page_type=type(page).__name__)
            return

        skipped = 0
        for item in [page] if is_envelope(page) else page:
            for record in item["value"] if is_envelope(item) else [item]:
                if isinstance(record, dict):
                    self.add_record(record)
                else:
                    skipped += 1

        if skipped:
            self.skipped_items += skipped
            logger.warning("Non-record items skipped", source=source, skipped=skipped)


def merge_groups(partials: Iterable[Dict[str, AggregationGroup]]) -> Dict[str, AggregationGroup]:
    """
    Merge partial group maps by summing same-keyed metrics.

    Iteration order of the result is first-seen key across ``partials``.
    Inputs are not modified.
    """
    merged: Dict[str, AggregationGroup] = {}
    for partial in partials:
        for key, group in partial.items():
            target = merged.get(key)
            if target is None:
                merged[key] = group.copy()
                continue
            for metric, total in group.sums.items():
                target.sums[metric] = target.sums.get(metric, 0.0) + total
            target.count += group.count
    return merged


def _log_coercions(missing: Counter, invalid: Counter) -> None:
    if missing or invalid:
        logger.warning(
            "Metric values counted as zero",
            missing=dict(missing),
            non_numeric=dict(invalid),
        )


def aggregate(
    sources: Iterable[Any],
    group_by: Sequence[str],
    metrics: Sequence[str],
    separator: str = DEFAULT_SEPARATOR,
) -> List[AggregationGroup]:
    """
    Group and sum in-memory dataset pages.

    Args:
        sources: Dataset pages (record lists, envelopes, or lists of envelopes)
        group_by: Fields whose values form the group key
        metrics: Fields summed per group

    Returns:
        Groups in first-seen order; empty for an empty source set
    """
    accumulator = GroupAccumulator(group_by, metrics, separator)
    for index, page in enumerate(sources):
        accumulator.add_page(page, source=f"sources[{index}]")
    _log_coercions(accumulator.missing, accumulator.invalid)
    return list(accumulator.groups.values())


# =============================================================================
# SOURCES
# =============================================================================

@dataclass
class SourceLoad:
    """A loaded page plus the time spent getting it"""
    page: Any
    read_ms: float = 0.0
    parse_ms: float = 0.0


class FileSource:
    """Archived ``*_records.json`` file, read only when aggregated"""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def __repr__(self) -> str:
        return f"FileSource({str(self.path)!r})"

    async def load(self) -> SourceLoad:
        start = time.perf_counter()
        try:
            text = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        except FileNotFoundError:
            logger.warning("File does not exist", path=str(self.path))
            return SourceLoad(page=None)
        except OSError as e:
            raise AggregationError(f"Cannot read source file: {self.path}", cause=e) from e
        read_ms = (time.perf_counter() - start) * 1000

        start = time.perf_counter()
        try:
            page = json.loads(text)
        except json.JSONDecodeError as e:
            raise AggregationError(f"Source file is not valid JSON: {self.path}", cause=e) from e
        parse_ms = (time.perf_counter() - start) * 1000

        return SourceLoad(page=page, read_ms=read_ms, parse_ms=parse_ms)


class CacheSource:
    """Page stored under one cache key, fetched when aggregated"""

    def __init__(self, client: CacheClient, key: str, dictionary: Optional[Dictionary] = None):
        self.client = client
        self.key = key
        self.dictionary = dictionary

    def __repr__(self) -> str:
        return f"CacheSource({self.key!r})"

    async def load(self) -> SourceLoad:
        start = time.perf_counter()
        try:
            raw = await self.client.get(self.key)
        except (RedisError, OSError) as e:
            raise RetrievalError(f"Cannot fetch cache key {self.key!r}", completed_chunks=0, cause=e) from e
        read_ms = (time.perf_counter() - start) * 1000

        if raw is None:
            logger.debug("Cache key absent", key=self.key)
            return SourceLoad(page=None, read_ms=read_ms)

        start = time.perf_counter()
        page = deserialize_page(raw)
        if self.dictionary is not None:
            page = decode_page(page, self.dictionary)
        parse_ms = (time.perf_counter() - start) * 1000

        return SourceLoad(page=page, read_ms=read_ms, parse_ms=parse_ms)


def find_sources(directory: Union[str, Path], pattern: str) -> List[FileSource]:
    """JSON files in ``directory`` whose name contains ``pattern``, sorted by name"""
    directory = Path(directory)
    if not directory.is_dir():
        logger.warning("Source directory does not exist", directory=str(directory))
        return []
    return [
        FileSource(p)
        for p in sorted(directory.iterdir())
        if p.is_file() and pattern in p.name and p.name.endswith(".json")
    ]


# =============================================================================
# ENGINE
# =============================================================================

@dataclass
class AggregationResult:
    """Groups plus run statistics"""
    groups: List[AggregationGroup]
    record_count: int = 0
    source_count: int = 0
    missing_values: Dict[str, int] = field(default_factory=dict)
    invalid_values: Dict[str, int] = field(default_factory=dict)
    dropped_pages: int = 0
    skipped_items: int = 0
    file_read_ms: float = 0.0
    parse_ms: float = 0.0
    processing_ms: float = 0.0
    total_ms: float = 0.0

    def rows(self) -> List[Dict[str, Any]]:
        return [group.to_dict() for group in self.groups]


class GroupByAggregator:
    """
    Aggregation over a mix of in-memory pages and lazy sources.

    Up to ``concurrency`` sources are loaded and grouped at once, each into
    its own partial map; partials are merged in source order at the end.

    Example:
        aggregator = GroupByAggregator(concurrency=4)
        result = await aggregator.run(
            find_sources("data", "metric1"),
            group_by=["channel", "platform"],
            metrics=["metricValue1", "metricValue2"],
        )
    """

    def __init__(
        self,
        concurrency: Optional[int] = None,
        separator: Optional[str] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.concurrency = settings.aggregation.concurrency if concurrency is None else concurrency
        self.separator = settings.aggregation.separator if separator is None else separator
        if self.concurrency <= 0:
            raise ValueError("concurrency must be positive")
        if not self.separator:
            raise ValueError("separator must not be empty")

    async def _process(
        self,
        index: int,
        source: Any,
        group_by: Sequence[str],
        metrics: Sequence[str],
        semaphore: asyncio.Semaphore,
    ) -> Tuple[GroupAccumulator, SourceLoad]:
        async with semaphore:
            if hasattr(source, "load"):
                loaded = await source.load()
                label = repr(source)
            else:
                loaded = SourceLoad(page=source)
                label = f"sources[{index}]"

            accumulator = GroupAccumulator(group_by, metrics, self.separator)
            accumulator.add_page(loaded.page, source=label)
            return accumulator, loaded

    async def run(
        self,
        sources: Iterable[Any],
        group_by: Sequence[str],
        metrics: Sequence[str],
    ) -> AggregationResult:
        """
        Aggregate every source.

        Args:
            sources: Pages, ``FileSource``s and/or ``CacheSource``s
            group_by: Fields whose values form the group key
            metrics: Fields summed per group

        Returns:
            AggregationResult with groups in first-seen order
        """
        start = time.perf_counter()
        sources = list(sources)
        semaphore = asyncio.Semaphore(self.concurrency)

        processing_start = time.perf_counter()
        partials = await asyncio.gather(
            *(
                self._process(index, source, group_by, metrics, semaphore)
                for index, source in enumerate(sources)
            )
        )
        merged = merge_groups(accumulator.groups for accumulator, _ in partials)
        processing_ms = (time.perf_counter() - processing_start) * 1000

        missing: Counter = Counter()
        invalid: Counter = Counter()
        for accumulator, _ in partials:
            missing.update(accumulator.missing)
            invalid.update(accumulator.invalid)
        _log_coercions(missing, invalid)

        result = AggregationResult(
            groups=list(merged.values()),
            record_count=sum(accumulator.records for accumulator, _ in partials),
            source_count=len(sources),
            missing_values=dict(missing),
            invalid_values=dict(invalid),
            dropped_pages=sum(accumulator.dropped_pages for accumulator, _ in partials),
            skipped_items=sum(accumulator.skipped_items for accumulator, _ in partials),
            file_read_ms=sum(loaded.read_ms for _, loaded in partials),
            parse_ms=sum(loaded.parse_ms for _, loaded in partials),
            processing_ms=processing_ms,
            total_ms=(time.perf_counter() - start) * 1000,
        )

        logger.info(
            "Aggregation completed",
            sources=result.source_count,
            records=result.record_count,
            groups=len(result.groups),
            dropped_pages=result.dropped_pages,
            total_ms=round(result.total_ms, 2),
            file_read_ms=round(result.file_read_ms, 2),
            parse_ms=round(result.parse_ms, 2),
        )
        return result

    async def run_pattern(
        self,
        directory: Union[str, Path],
        pattern: str,
        group_by: Sequence[str],
        metrics: Sequence[str],
    ) -> AggregationResult:
        """Aggregate every JSON file in ``directory`` matching ``pattern``"""
        return await self.run(find_sources(directory, pattern), group_by, metrics)


# =============================================================================
# OUTPUT
# =============================================================================

def sort_groups(groups: Sequence[AggregationGroup], by: str, descending: bool = False) -> List[AggregationGroup]:
    """
    Explicit sort stage over a group-by field or metric.

    Numbers sort before strings; groups without the column go last.
    """
    def sort_key(group: AggregationGroup):
        value = group.to_dict()[by]
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return (0, value, "")
        return (1, 0, str(value))

    present = [g for g in groups if g.to_dict().get(by) is not None]
    absent = [g for g in groups if g.to_dict().get(by) is None]
    return sorted(present, key=sort_key, reverse=descending) + absent


def groups_to_frame(groups: Sequence[AggregationGroup]) -> pl.DataFrame:
    """Polars view of the output rows"""
    rows = [group.to_dict() for group in groups]
    if not rows:
        return pl.DataFrame()
    return pl.from_dicts(rows, infer_schema_length=None)


def write_output(
    groups: Sequence[AggregationGroup],
    directory: Union[str, Path],
    name: str = "grouped_metrics_results",
    timestamped: bool = True,
) -> Path:
    """
    Write groups as a JSON array of flat objects.

    With ``timestamped`` the file name carries the UTC generation time,
    e.g. ``grouped_metrics_results_20240101T120000.json``.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    if timestamped:
        name = f"{name}_{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S')}"
    path = directory / f"{name}.json"

    path.write_text(json.dumps([group.to_dict() for group in groups], indent=2, default=str), encoding="utf-8")
    logger.info("Aggregation output written", path=str(path), groups=len(groups))
    return path
