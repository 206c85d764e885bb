"""
Metrics Cache Backend

Bulk population, parallel retrieval, dictionary compression and group-by
aggregation of dimensional metric datasets stored in Redis.
"""

__version__ = "1.0.0"
