"""
Remote client capability interface.

Every remote CI family (Jenkins, ...) gets one RemoteClient implementation.
The engine picks the implementation by the node's declared kind and talks
to all of them through this interface only.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from agg_common.errors import NotFound
from agg_common.models import (
    Build,
    BuildRelation,
    ConsoleChunk,
    Job,
    PipelineLog,
    PipelineOverview,
    RemoteTarget,
    View,
)

BuildRef = int | str


class RemoteClient(ABC):
    """
    Capability set every remote family must provide.

    Each call receives the connection record and a bounded timeout, and
    either returns a result or raises Unreachable, AuthRejected, NotFound or
    RemoteError. Implementations must be stateless per call: no mutable
    connection state is shared between calls, so one instance can serve
    concurrent calls for different nodes.
    """

    kind: str = "base"

    @abstractmethod
    async def list_views(self, target: RemoteTarget, *, timeout: float) -> list[View]:
        pass

    @abstractmethod
    async def get_view(
        self, target: RemoteTarget, view_id: str, *, timeout: float
    ) -> View:
        pass

    @abstractmethod
    async def create_view(
        self,
        target: RemoteTarget,
        name: str,
        jobs: Sequence[str] = (),
        description: str | None = None,
        *,
        timeout: float,
    ) -> View:
        pass

    @abstractmethod
    async def update_view(
        self,
        target: RemoteTarget,
        view_id: str,
        new_name: str | None = None,
        add_jobs: Sequence[str] = (),
        remove_jobs: Sequence[str] = (),
        description: str | None = None,
        *,
        timeout: float,
    ) -> View:
        pass

    @abstractmethod
    async def delete_view(
        self, target: RemoteTarget, view_id: str, *, timeout: float
    ) -> None:
        pass

    @abstractmethod
    async def list_jobs(
        self, target: RemoteTarget, view_id: str, *, timeout: float
    ) -> list[Job]:
        pass

    @abstractmethod
    async def get_job(
        self, target: RemoteTarget, job_name: str, *, timeout: float
    ) -> Job:
        pass

    @abstractmethod
    async def start_job(
        self,
        target: RemoteTarget,
        job_name: str,
        parameters: dict[str, Any] | None = None,
        *,
        timeout: float,
    ) -> None:
        pass

    @abstractmethod
    async def stop_job(
        self, target: RemoteTarget, job_name: str, *, timeout: float
    ) -> None:
        pass

    @abstractmethod
    async def get_console(
        self,
        target: RemoteTarget,
        job_name: str,
        build: BuildRef,
        offset: int,
        *,
        timeout: float,
    ) -> ConsoleChunk:
        """
        Fetch console text of a build starting at a byte offset.

        Returns:
            ConsoleChunk whose text starts exactly at offset, whose
            next_offset is the remote log size after this read, and whose
            complete flag is set only once the build has finished
        """
        pass

    @abstractmethod
    async def get_pipeline_overview(
        self, target: RemoteTarget, job_name: str, build: BuildRef, *, timeout: float
    ) -> PipelineOverview:
        pass

    @abstractmethod
    async def get_pipeline_console(
        self,
        target: RemoteTarget,
        job_name: str,
        build: BuildRef,
        stage_id: str,
        *,
        timeout: float,
    ) -> PipelineLog:
        pass

    @abstractmethod
    async def get_build(
        self, target: RemoteTarget, job_name: str, build: BuildRef, *, timeout: float
    ) -> Build:
        pass

    @abstractmethod
    async def delete_build(
        self, target: RemoteTarget, job_name: str, build_id: int, *, timeout: float
    ) -> None:
        pass

    async def get_relative_build(
        self,
        target: RemoteTarget,
        job_name: str,
        build_id: int,
        relation: BuildRelation,
        *,
        timeout: float,
    ) -> Build:
        """
        Fetch the build before or after build_id.

        Raises:
            NotFound: If build_id has no neighbour in that direction
        """
        current = await self.get_build(target, job_name, build_id, timeout=timeout)
        neighbour = (
            current.previous_id
            if relation is BuildRelation.PREVIOUS
            else current.next_id
        )
        if neighbour is None:
            raise NotFound(
                f"Build {build_id} of {job_name} has no {relation.value} build",
                node_id=target.node_id,
            )
        return await self.get_build(target, job_name, neighbour, timeout=timeout)
