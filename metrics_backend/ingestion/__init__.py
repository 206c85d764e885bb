"""
Bulk Population Module
"""
from .populate import BulkPopulator, PopulationResult

__all__ = [
    "BulkPopulator",
    "PopulationResult",
]
