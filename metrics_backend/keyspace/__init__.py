"""
Key-Space Addressing Module
"""
from .schemes import (
    KeyScheme,
    DimensionalTuple,
    KeyAxes,
    build_key,
    parse_key,
    expand_keys,
    iter_tuples,
    dimension_hash,
)

__all__ = [
    "KeyScheme",
    "DimensionalTuple",
    "KeyAxes",
    "build_key",
    "parse_key",
    "expand_keys",
    "iter_tuples",
    "dimension_hash",
]
