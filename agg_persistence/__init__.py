"""
Aggregator Persistence module.

This module contains store implementations for the node registry.
SQLite is the durable default; the in-memory store serves ephemeral
deployments and tests.

The persistence layer depends on agg_common for domain models and interfaces.
"""

from .memory_repository import InMemoryNodeRepository
from .sqlite_repository import SQLiteNodeRepository

__all__ = ["InMemoryNodeRepository", "SQLiteNodeRepository"]
