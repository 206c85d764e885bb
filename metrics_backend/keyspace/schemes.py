"""
Cache Key Addressing

Deterministic construction and parsing of cache keys from dimensional tuples.

Three encodings coexist and are separate namespaces; the caller always names
the scheme, it is never guessed from a key:

    VERBOSE    metric:m1:tenant:t1:year:2024:month:01:dimensions:[campaign,platform]
    SHORTENED  m1_t1_2024_01_[campaign,platform]
    HASHED     m1_t1_2024_01_5f2b9c1e

Empty axes expand to a single ``None`` coordinate rather than an empty
product, so a query with no dimension filter still addresses one key per
remaining coordinate. ``None`` is written as ``-``.
"""

import hashlib
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple, Union
from urllib.parse import unquote

from metrics_backend.errors import KeyParseError

NULL_TOKEN = "-"
DEFAULT_HASH_LENGTH = 8

VERBOSE_RESERVED = ":,[]"
SHORT_RESERVED = "_,[]"

# Parsed years are int only for canonical ASCII digit strings ("2024", "0");
# anything else, "0123" included, comes back as the original string.
Year = Union[int, str]
DimensionSet = Tuple[str, ...]


class KeyScheme(str, Enum):
    """Supported key encodings"""
    VERBOSE = "verbose"
    SHORTENED = "shortened"
    HASHED = "hashed"


@dataclass(frozen=True)
class DimensionalTuple:
    """Coordinates of one dataset partition"""
    metric_id: Optional[str] = None
    tenant_id: Optional[str] = None
    year: Optional[Year] = None
    month: Optional[str] = None
    dimension_set: Optional[DimensionSet] = None

    def __post_init__(self):
        # Lists are accepted for convenience but the tuple stays hashable
        if self.dimension_set is not None and not isinstance(self.dimension_set, tuple):
            object.__setattr__(self, "dimension_set", tuple(self.dimension_set))


def _escape(value, reserved: str) -> str:
    text = str(value).replace("%", "%25")
    for ch in reserved:
        text = text.replace(ch, f"%{ord(ch):02X}")
    if text == NULL_TOKEN:
        return "%2D"
    return text


def _component(value, reserved: str) -> str:
    if value is None:
        return NULL_TOKEN
    return _escape(value, reserved)


def _parse_component(token: str) -> Optional[str]:
    if token == NULL_TOKEN:
        return None
    return unquote(token)


def _parse_year(token: str) -> Optional[Year]:
    value = _parse_component(token)
    if value is not None and value.isascii() and value.isdigit() and str(int(value)) == value:
        return int(value)
    return value


def _dimension_list(dimension_set: DimensionSet, reserved: str) -> str:
    if any(label == "" for label in dimension_set):
        raise ValueError("Dimension labels must be non-empty")
    return "[" + ",".join(_escape(label, reserved) for label in dimension_set) + "]"


def _parse_dimension_list(token: str) -> DimensionSet:
    if not (token.startswith("[") and token.endswith("]")):
        raise KeyParseError(f"Malformed dimension list: {token!r}")
    inner = token[1:-1]
    if not inner:
        return ()
    return tuple(unquote(label) for label in inner.split(","))


def dimension_hash(dimension_set: Optional[DimensionSet], length: int = DEFAULT_HASH_LENGTH) -> str:
    """
    Fixed-width content hash of a dimension set.

    Labels are sorted first so the hash identifies the set, not the order
    it was listed in. MD5 is used as a fingerprint only.
    """
    if dimension_set is None:
        payload = NULL_TOKEN
    else:
        payload = ",".join(sorted(_escape(label, SHORT_RESERVED) for label in dimension_set))
    return hashlib.md5(payload.encode("utf-8")).hexdigest()[:length]


def build_key(
    coords: DimensionalTuple,
    scheme: KeyScheme = KeyScheme.SHORTENED,
    hash_length: int = DEFAULT_HASH_LENGTH,
) -> str:
    """
    Build the cache key for a dimensional tuple.

    Args:
        coords: Partition coordinates
        scheme: Key encoding
        hash_length: Hex digits kept for HASHED keys

    Returns:
        Cache key string
    """
    scheme = KeyScheme(scheme)

    if scheme is KeyScheme.VERBOSE:
        dims = (
            NULL_TOKEN
            if coords.dimension_set is None
            else _dimension_list(coords.dimension_set, VERBOSE_RESERVED)
        )
        return ":".join([
            "metric", _component(coords.metric_id, VERBOSE_RESERVED),
            "tenant", _component(coords.tenant_id, VERBOSE_RESERVED),
            "year", _component(coords.year, VERBOSE_RESERVED),
            "month", _component(coords.month, VERBOSE_RESERVED),
            "dimensions", dims,
        ])

    parts = [
        _component(coords.metric_id, SHORT_RESERVED),
        _component(coords.tenant_id, SHORT_RESERVED),
        _component(coords.year, SHORT_RESERVED),
        _component(coords.month, SHORT_RESERVED),
    ]

    if scheme is KeyScheme.HASHED:
        parts.append(dimension_hash(coords.dimension_set, hash_length))
    elif coords.dimension_set is not None:
        parts.append(_dimension_list(coords.dimension_set, SHORT_RESERVED))

    return "_".join(parts)


def parse_key(key: str, scheme: KeyScheme = KeyScheme.SHORTENED) -> DimensionalTuple:
    """
    Recover the dimensional tuple from a VERBOSE or SHORTENED key.

    Raises:
        KeyParseError: For HASHED keys, whose dimension labels cannot be
            recovered, and for keys that do not have the scheme's shape
    """
    scheme = KeyScheme(scheme)

    if scheme is KeyScheme.HASHED:
        raise KeyParseError(
            "Hashed keys are not reversible to dimension labels",
            details={"key": key},
        )

    if scheme is KeyScheme.VERBOSE:
        parts = key.split(":")
        labels = parts[0::2]
        if len(parts) != 10 or labels != ["metric", "tenant", "year", "month", "dimensions"]:
            raise KeyParseError(f"Not a verbose key: {key!r}", details={"key": key})
        _, metric, _, tenant, _, year, _, month, _, dims = parts
    else:
        parts = key.split("_")
        if len(parts) == 4:
            metric, tenant, year, month = parts
            dims = NULL_TOKEN
        elif len(parts) == 5 and parts[4].startswith("["):
            metric, tenant, year, month, dims = parts
        else:
            raise KeyParseError(f"Not a shortened key: {key!r}", details={"key": key})

    return DimensionalTuple(
        metric_id=_parse_component(metric),
        tenant_id=_parse_component(tenant),
        year=_parse_year(year),
        month=_parse_component(month),
        dimension_set=None if dims == NULL_TOKEN else _parse_dimension_list(dims),
    )


def _axis(values: Optional[Iterable]) -> list:
    values = list(values) if values is not None else []
    return values or [None]


@dataclass
class KeyAxes:
    """
    Query shape: one list of values per tuple coordinate.

    Empty or missing axes count as ``[None]``.
    """
    metric_ids: Sequence[Optional[str]] = field(default_factory=list)
    tenant_ids: Sequence[Optional[str]] = field(default_factory=list)
    years: Sequence[Optional[Year]] = field(default_factory=list)
    months: Sequence[Optional[str]] = field(default_factory=list)
    dimension_sets: Sequence[Optional[Sequence[str]]] = field(default_factory=list)

    @property
    def size(self) -> int:
        """Number of tuples in the Cartesian product"""
        total = 1
        for axis in self._axes():
            total *= len(axis)
        return total

    def _axes(self) -> List[list]:
        return [
            _axis(self.metric_ids),
            _axis(self.tenant_ids),
            _axis(self.years),
            _axis(self.months),
            _axis(self.dimension_sets),
        ]

    def tuples(self) -> Iterator[DimensionalTuple]:
        """Lazily expand the axes, metric-major"""
        for metric, tenant, year, month, dims in itertools.product(*self._axes()):
            yield DimensionalTuple(
                metric_id=metric,
                tenant_id=tenant,
                year=year,
                month=month,
                dimension_set=tuple(dims) if dims is not None else None,
            )

    def keys(self, scheme: KeyScheme = KeyScheme.SHORTENED) -> Iterator[str]:
        """Lazily expand the axes into cache keys"""
        for coords in self.tuples():
            yield build_key(coords, scheme)


def iter_tuples(
    metric_ids: Optional[Iterable[str]] = None,
    tenant_ids: Optional[Iterable[str]] = None,
    years: Optional[Iterable[Year]] = None,
    months: Optional[Iterable[str]] = None,
    dimension_sets: Optional[Iterable[Sequence[str]]] = None,
) -> Iterator[DimensionalTuple]:
    """Generator form of the Cartesian expansion"""
    axes = KeyAxes(
        metric_ids=_axis(metric_ids),
        tenant_ids=_axis(tenant_ids),
        years=_axis(years),
        months=_axis(months),
        dimension_sets=_axis(dimension_sets),
    )
    return axes.tuples()


def expand_keys(
    metric_ids: Optional[Iterable[str]] = None,
    tenant_ids: Optional[Iterable[str]] = None,
    years: Optional[Iterable[Year]] = None,
    months: Optional[Iterable[str]] = None,
    dimension_sets: Optional[Iterable[Sequence[str]]] = None,
    scheme: KeyScheme = KeyScheme.SHORTENED,
) -> List[str]:
    """
    Expand query axes into the full Cartesian product of cache keys.

    No deduplication is performed; callers bound axis cardinalities.
    """
    return [
        build_key(coords, scheme)
        for coords in iter_tuples(metric_ids, tenant_ids, years, months, dimension_sets)
    ]
