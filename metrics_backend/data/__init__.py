"""
Data Generation Module
"""
from .generators import (
    SeedPools,
    CampaignRecordFactory,
    MetricRowFactory,
    RandomTupleFactory,
    quarter_of,
)

__all__ = [
    "SeedPools",
    "CampaignRecordFactory",
    "MetricRowFactory",
    "RandomTupleFactory",
    "quarter_of",
]
