"""
Aggregator Engine module.

This module contains the node registry, the caches, the console/pipeline
poller and the aggregation engine that ties them to the remote clients.
"""

from .cache import KeyedCache
from .engine import AggregationEngine
from .janitor import CacheJanitor
from .poller import ConsolePoller
from .registry import NodeRegistry

__all__ = [
    "AggregationEngine",
    "CacheJanitor",
    "ConsolePoller",
    "KeyedCache",
    "NodeRegistry",
]
