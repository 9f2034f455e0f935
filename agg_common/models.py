"""
Data models for the unified node -> view -> job -> build hierarchy.

These models represent the domain objects used throughout the application,
independent of the remote system family and of the storage mechanism.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class JobStatus(str, Enum):
    """Normalized job status across all remote families."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNKNOWN = "unknown"


class BuildRelation(str, Enum):
    """Navigation from a known build to its neighbour."""

    PREVIOUS = "previous"
    NEXT = "next"


@dataclass
class Node:
    """
    Represents a registered remote CI server.

    The credential is write-only: it is excluded from repr() and from every
    serialized form. Only the registry reads it, to build a RemoteTarget.
    """

    id: str
    host: str
    port: int
    account: str
    kind: str = "jenkins"
    name: str | None = None
    credential: str | None = field(default=None, repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime | None = None

    def public_copy(self) -> "Node":
        """Return a copy with the credential removed."""
        return Node(
            id=self.id,
            host=self.host,
            port=self.port,
            account=self.account,
            kind=self.kind,
            name=self.name,
            credential=None,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert node to dictionary format (for API responses)."""
        return {
            "id": self.id,
            "host": self.host,
            "port": self.port,
            "account": self.account,
            "kind": self.kind,
            "name": self.name,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class RemoteTarget:
    """
    Connection record for one remote call.

    Resolved once per call from the registry (or from caller-supplied
    credentials for an unregistered target) and handed to the adapter.
    """

    host: str
    port: int
    account: str
    password: str | None = field(default=None, repr=False)
    kind: str = "jenkins"
    scheme: str = "http"
    node_id: str | None = None

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


@dataclass
class View:
    """A named grouping of jobs on one node."""

    id: str
    name: str
    node_id: str | None = None
    jobs: list[str] = field(default_factory=list)
    description: str | None = None
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "node_id": self.node_id,
            "jobs": list(self.jobs),
            "description": self.description,
            "url": self.url,
        }


@dataclass
class Job:
    """A buildable unit within a view."""

    name: str
    status: JobStatus = JobStatus.UNKNOWN
    view_id: str | None = None
    last_build_id: int | None = None
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "view_id": self.view_id,
            "last_build_id": self.last_build_id,
            "url": self.url,
        }


@dataclass
class Build:
    """
    One execution of a job.

    A build is immutable once it has finished (result set and no longer
    building); only its console grows while it runs.
    """

    id: int
    job_name: str
    started_at: datetime | None = None
    result: str | None = None
    building: bool = False
    previous_id: int | None = None
    next_id: int | None = None
    duration_ms: int | None = None

    @property
    def finished(self) -> bool:
        return self.result is not None and not self.building

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_name": self.job_name,
            "started_at": _iso(self.started_at),
            "result": self.result,
            "building": self.building,
            "previous_id": self.previous_id,
            "next_id": self.next_id,
            "duration_ms": self.duration_ms,
        }


@dataclass
class ConsoleChunk:
    """Console text from an offset up to next_offset."""

    text: str
    next_offset: int
    complete: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "next_offset": self.next_offset,
            "complete": self.complete,
        }


@dataclass
class ConsoleSnapshot:
    """
    Console bytes retrieved so far for one build.

    Covers the byte range [start, end) of the remote log. Transient: lives in
    the engine's cache only. data grows in place as polls append to it.
    """

    start: int
    data: bytearray
    complete: bool

    def append(self, data: bytes, complete: bool) -> None:
        self.data.extend(data)
        self.complete = self.complete or complete

    @property
    def end(self) -> int:
        return self.start + len(self.data)

    def covers(self, offset: int) -> bool:
        return self.start <= offset <= self.end

    def chunk_from(self, offset: int) -> ConsoleChunk:
        text = self.data[offset - self.start :].decode("utf-8", errors="replace")
        return ConsoleChunk(text=text, next_offset=self.end, complete=self.complete)


@dataclass
class PipelineStage:
    id: str
    name: str
    status: str
    started_at: datetime | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "started_at": _iso(self.started_at),
            "duration_ms": self.duration_ms,
        }


@dataclass
class PipelineOverview:
    """Aggregate of stage statuses for one build."""

    build_id: int
    status: str
    stages: list[PipelineStage] = field(default_factory=list)
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "build_id": self.build_id,
            "status": self.status,
            "stages": [stage.to_dict() for stage in self.stages],
            "duration_ms": self.duration_ms,
        }


@dataclass
class PipelineLog:
    """Console text of a single pipeline stage."""

    stage_id: str
    text: str
    length: int
    has_more: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "text": self.text,
            "length": self.length,
            "has_more": self.has_more,
        }


@dataclass
class ViewList:
    """
    Views of one node.

    stale=True means the list was served from cache because the node could
    not be reached; error then describes the failure.
    """

    node_id: str
    views: list[View]
    stale: bool = False
    error: dict[str, Any] | None = None
    fetched_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "views": [view.to_dict() for view in self.views],
            "stale": self.stale,
            "error": self.error,
            "fetched_at": _iso(self.fetched_at),
        }


@dataclass
class ViewDetail:
    """One view, with the same stale annotation as ViewList."""

    view: View
    stale: bool = False
    error: dict[str, Any] | None = None
    fetched_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.view.to_dict(),
            "stale": self.stale,
            "error": self.error,
            "fetched_at": _iso(self.fetched_at),
        }


@dataclass
class JobList:
    """Jobs of one view, with the same stale annotation as ViewList."""

    node_id: str
    view_id: str
    jobs: list[Job]
    stale: bool = False
    error: dict[str, Any] | None = None
    fetched_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "view_id": self.view_id,
            "jobs": [job.to_dict() for job in self.jobs],
            "stale": self.stale,
            "error": self.error,
            "fetched_at": _iso(self.fetched_at),
        }


@dataclass
class JobControlResult:
    """Outcome of a start/stop request; triggered is False for no-ops."""

    job_name: str
    status: JobStatus
    triggered: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "status": self.status.value,
            "triggered": self.triggered,
        }


@dataclass
class NodeJobs:
    """Per-node entry of a fan-out query: either jobs or an error."""

    node_id: str
    jobs: list[Job] | None = None
    error: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "ok": self.ok,
            "jobs": [job.to_dict() for job in self.jobs]
            if self.jobs is not None
            else None,
            "error": self.error,
        }


@dataclass
class AggregateJobs:
    nodes: list[NodeJobs] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"nodes": [entry.to_dict() for entry in self.nodes]}
