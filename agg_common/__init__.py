"""
Aggregator Common module.

This module contains shared domain models, the error taxonomy and the
node store interface used across the aggregator components (adapters,
engine, persistence, server).

The common module has no dependencies on other agg_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .errors import (
    AggregatorError,
    AuthRejected,
    DuplicateError,
    NotFound,
    RemoteError,
    Unreachable,
    ValidationError,
)
from .models import (
    Build,
    ConsoleChunk,
    Job,
    JobStatus,
    Node,
    PipelineOverview,
    RemoteTarget,
    View,
)
from .repository import NodeRepository

__all__ = [
    "AggregatorError",
    "AuthRejected",
    "Build",
    "ConsoleChunk",
    "DuplicateError",
    "Job",
    "JobStatus",
    "Node",
    "NodeRepository",
    "NotFound",
    "PipelineOverview",
    "RemoteError",
    "RemoteTarget",
    "Unreachable",
    "ValidationError",
    "View",
]
