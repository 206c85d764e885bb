"""
Synthetic Data Generator

Record factories used to seed the cache with realistic campaign metrics.
Includes:
- Seed pools of dimension labels (organizations, campaigns, platforms, channels)
- Campaign metric rows for one metric/year/month partition
- Flat metric/value rows built from seed pools
- Random tuple sampling for volume-based population
"""

import json
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import structlog
from faker import Faker

from metrics_backend.keyspace import DimensionalTuple

logger = structlog.get_logger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

MONTHS = ["01", "02", "03", "04", "05", "06", "07", "08", "09", "10", "11", "12"]
YEARS = [2023, 2024]

DIMENSIONS = ["organization", "campaign", "platform", "channel"]

# (field, low, high) for metricValue1..8
METRIC_RANGES = [
    ("metricValue1", 100, 500),
    ("metricValue2", 10, 100),
    ("metricValue3", 50, 300),
    ("metricValue4", 200, 600),
    ("metricValue5", 100, 700),
    ("metricValue6", 50, 350),
    ("metricValue7", 100, 450),
    ("metricValue8", 200, 800),
]


def quarter_of(month: Union[str, int, None]) -> Optional[str]:
    """Calendar quarter label for a month number"""
    if month is None:
        return None
    number = int(month)
    if not 1 <= number <= 12:
        raise ValueError(f"Invalid month: {month}")
    return f"Q{(number - 1) // 3 + 1}"


@dataclass
class SeedPools:
    """Dimension label pools sampled by the record factories"""
    organizations: List[str] = field(default_factory=list)
    campaigns: List[str] = field(default_factory=list)
    campaign_groups: List[str] = field(default_factory=list)
    platforms: List[str] = field(default_factory=list)
    channels: List[str] = field(default_factory=list)
    products: List[str] = field(default_factory=list)

    @classmethod
    def default(cls, size: int = 50) -> "SeedPools":
        """Deterministic pools with ``size`` organizations"""
        return cls(
            organizations=[f"Campbell & Company {i + 1}" for i in range(size)],
            campaigns=[f"campaign{i + 1}" for i in range(10)],
            campaign_groups=["brand", "search", "display", "other"],
            platforms=["Google Ads", "Meta", "Bing", "Google Local Services"],
            channels=["Paid Search", "Paid Social", "Organic", "Referral"],
            products=["Install", "Repair", "Maintenance", "Inspection"],
        )

    @classmethod
    def from_directory(cls, directory: Union[str, Path]) -> "SeedPools":
        """
        Load pools from a folder of JSON files.

        Each ``<pool>.json`` file holds an array of objects; the values of
        the field with the same name as the file become the pool, e.g.
        ``campaign.json`` -> ``[{"campaign": "..."}, ...]``. Plain string
        arrays are accepted too.
        """
        directory = Path(directory)
        loaded: Dict[str, List[str]] = {}

        for path in sorted(directory.glob("*.json")):
            rows = json.loads(path.read_text(encoding="utf-8"))
            name = path.stem
            if rows and isinstance(rows[0], dict):
                values = [row[name] for row in rows if row.get(name) is not None]
            else:
                values = [row for row in rows if row is not None]
            loaded[name] = [str(v) for v in values]

        pools = cls.default()
        mapping = {
            "organization": "organizations",
            "campaign": "campaigns",
            "campaignGroup": "campaign_groups",
            "platform": "platforms",
            "channel": "channels",
            "product": "products",
        }
        for source, attr in mapping.items():
            if loaded.get(source):
                setattr(pools, attr, loaded[source])

        logger.info("Seed pools loaded", directory=str(directory), pools=sorted(loaded))
        return pools


# =============================================================================
# GENERATORS
# =============================================================================

class CampaignRecordFactory:
    """
    Campaign metric rows for one partition.

    Called with a dimensional tuple, returns ``records_per_key`` rows whose
    year/month/quarter come from the tuple and whose dimension fields and
    metric values are synthetic.
    """

    def __init__(
        self,
        pools: Optional[SeedPools] = None,
        records_per_key: int = 100,
        seed: Optional[int] = None,
    ):
        self.pools = pools or SeedPools.default()
        self.records_per_key = records_per_key
        self.fake = Faker()
        self.rng = np.random.default_rng(seed)
        self.random = random.Random(seed)
        if seed is not None:
            self.fake.seed_instance(seed)

    def _record(self, coords: DimensionalTuple) -> Dict[str, Any]:
        year = coords.year
        month = coords.month
        organization = self.random.choice(self.pools.organizations)

        record = {
            "tenantId": coords.tenant_id or self.fake.hexify("^" * 24),
            "parentOrganization": self.fake.company(),
            "organization": organization,
            "locationGroup": self.fake.bs().split()[0].title(),
            "location": self.fake.city(),
            "marketSegment": self.random.choice(["Residential", "Commercial", "General"]),
            "channelId": self.fake.pystr(min_chars=8, max_chars=8),
            "channel": self.random.choice(self.pools.channels),
            "platformId": self.fake.pystr(min_chars=8, max_chars=8),
            "platform": self.random.choice(self.pools.platforms),
            "campaignTypeId": self.fake.pystr(min_chars=8, max_chars=8),
            "campaignType": self.fake.word(),
            "campaignGroup": self.random.choice(self.pools.campaign_groups),
            "campaign": self.random.choice(self.pools.campaigns),
            "year": year,
            "quarter": quarter_of(month),
            "month": f"{month} {year}" if month is not None else None,
            "week": f"Week {self.random.randint(1, 52)}",
            "day": f"Day {self.random.randint(1, 31)}",
        }

        for name, low, high in METRIC_RANGES:
            # Stored as fixed-point strings, parsed back during aggregation
            record[name] = f"{self.rng.uniform(low, high):.2f}"

        if coords.metric_id is not None:
            record["metricId"] = coords.metric_id

        return record

    def __call__(self, coords: DimensionalTuple) -> List[Dict[str, Any]]:
        return [self._record(coords) for _ in range(self.records_per_key)]


class MetricRowFactory:
    """
    Flat ``{year, month, campaign, campaignGroup, product, metric, value}`` rows.

    Missing pools fall back to ``Unknown <field>`` labels.
    """

    def __init__(
        self,
        pools: Optional[SeedPools] = None,
        records_per_key: int = 100,
        seed: Optional[int] = None,
    ):
        self.pools = pools or SeedPools.default()
        self.records_per_key = records_per_key
        self.rng = np.random.default_rng(seed)

    def _pick(self, pool: Sequence[str], fallback: str, n: int) -> List[str]:
        if not pool:
            return [fallback] * n
        return [pool[i] for i in self.rng.integers(0, len(pool), n)]

    def __call__(self, coords: DimensionalTuple) -> List[Dict[str, Any]]:
        n = self.records_per_key
        campaigns = self._pick(self.pools.campaigns, "Unknown Campaign", n)
        groups = self._pick(self.pools.campaign_groups, "Unknown Group", n)
        products = self._pick(self.pools.products, "Unknown Product", n)
        values = self.rng.integers(0, 1000, n)

        return [
            {
                "year": coords.year,
                "month": coords.month,
                "campaign": campaigns[i],
                "campaignGroup": groups[i],
                "product": products[i],
                "metric": coords.metric_id,
                "value": int(values[i]),
            }
            for i in range(n)
        ]


class RandomTupleFactory:
    """
    Random partition coordinates for volume-based population.

    ``index`` is the running key count and is appended to the tenant so
    every generated key is unique.
    """

    def __init__(
        self,
        metric_ids: Sequence[str],
        tenant_count: int = 100,
        years: Sequence[int] = tuple(YEARS),
        months: Sequence[str] = tuple(MONTHS),
        dimensions: Sequence[str] = tuple(DIMENSIONS),
        seed: Optional[int] = None,
    ):
        if not metric_ids:
            raise ValueError("At least one metric id is required")
        self.metric_ids = list(metric_ids)
        self.tenant_count = tenant_count
        self.years = list(years)
        self.months = list(months)
        self.dimensions = list(dimensions)
        self.random = random.Random(seed)

    def __call__(self, index: int) -> DimensionalTuple:
        tenant = self.random.randint(1, self.tenant_count)
        return DimensionalTuple(
            metric_id=self.random.choice(self.metric_ids),
            tenant_id=f"tenant{tenant}-{index}",
            year=self.random.choice(self.years),
            month=self.random.choice(self.months),
            dimension_set=(self.random.choice(self.dimensions),),
        )
