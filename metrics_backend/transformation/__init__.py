"""
Group-By Aggregation Module
"""
from .aggregation import (
    AggregationGroup,
    AggregationResult,
    GroupAccumulator,
    GroupByAggregator,
    FileSource,
    CacheSource,
    aggregate,
    merge_groups,
    parse_metric,
    find_sources,
    sort_groups,
    groups_to_frame,
    write_output,
    unknown_label,
)

__all__ = [
    "AggregationGroup",
    "AggregationResult",
    "GroupAccumulator",
    "GroupByAggregator",
    "FileSource",
    "CacheSource",
    "aggregate",
    "merge_groups",
    "parse_metric",
    "find_sources",
    "sort_groups",
    "groups_to_frame",
    "write_output",
    "unknown_label",
]
