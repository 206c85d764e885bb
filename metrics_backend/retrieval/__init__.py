"""
Parallel Retrieval Module
"""
from .fetcher import ParallelFetcher, chunk_keys

__all__ = [
    "ParallelFetcher",
    "chunk_keys",
]
