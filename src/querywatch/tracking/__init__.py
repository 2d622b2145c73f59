"""
Per-request tracking: N+1 detection and request aggregation.
"""

from .aggregator import RequestAggregator, RequestContext, process_memory_mb
from .tracker import GENERIC_SUGGESTION, PatternTracker

__all__ = [
    "GENERIC_SUGGESTION",
    "PatternTracker",
    "RequestAggregator",
    "RequestContext",
    "process_memory_mb",
]
