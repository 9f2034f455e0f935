"""
Aggregation engine: the unified node -> view -> job -> build API.

The engine resolves a node's credentials from the registry once per call,
dispatches to the RemoteClient for the node's kind, bounds every remote call
with a timeout and merges the results into the unified model. It owns every
cache entry; adapters never see the caches.

Failure policy:
- reads fall back to the last known good cached value, annotated stale,
  when the node is unreachable or answers with a server error
- mutations never degrade: any failure propagates and nothing is cached
- nothing is retried at this layer
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import Any, TypeVar

from agg_adapters.base import BuildRef, RemoteClient
from agg_common.errors import (
    AggregatorError,
    NotFound,
    RemoteError,
    Unreachable,
    ValidationError,
)
from agg_common.models import (
    AggregateJobs,
    Build,
    BuildRelation,
    ConsoleChunk,
    ConsoleSnapshot,
    Job,
    JobControlResult,
    JobList,
    JobStatus,
    Node,
    NodeJobs,
    PipelineLog,
    PipelineOverview,
    RemoteTarget,
    View,
    ViewDetail,
    ViewList,
)

from .cache import CacheKey, KeyedCache
from .poller import DEFAULT_POLL_TTL, ConsolePoller
from .registry import NodeRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_REMOTE_TIMEOUT = 10.0
DEFAULT_VIEW_CACHE_TTL = 30.0
LAST_BUILD = "lastBuild"

# Read failures that may be answered from a stale cache entry
DEGRADABLE_ERRORS = (Unreachable, RemoteError)


class AggregationEngine:
    """
    Unified operations over every registered node.

    Caches:
    - lists: view lists, view details and job lists (TTL, stale fallback)
    - builds: finished builds whose neighbours are known (no TTL)
    - consoles: per-build ConsoleSnapshot (poll TTL)
    - poller: coalesced console/pipeline/build fetches (poll TTL)
    - refreshes: in-flight list loads shared by concurrent readers
    """

    def __init__(
        self,
        registry: NodeRegistry,
        clients: dict[str, RemoteClient],
        timeout: float = DEFAULT_REMOTE_TIMEOUT,
        view_cache_ttl: float = DEFAULT_VIEW_CACHE_TTL,
        poll_ttl: float = DEFAULT_POLL_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the engine.

        Args:
            registry: Node registry resolving ids to credentials
            clients: Remote client per node kind
            timeout: Seconds each remote call may take before it counts as
                     Unreachable
            view_cache_ttl: Seconds view and job lists stay fresh
            poll_ttl: Seconds console, pipeline and build lookups are reused
            clock: Monotonic time source (injectable for tests)
        """
        self.registry = registry
        self.clients = clients
        self.timeout = timeout
        self._lists = KeyedCache(ttl=view_cache_ttl, clock=clock)
        self._builds = KeyedCache(ttl=None, clock=clock)
        self._consoles = KeyedCache(ttl=poll_ttl, clock=clock)
        self.poller = ConsolePoller(ttl=poll_ttl, clock=clock)
        self._refreshes = ConsolePoller(ttl=view_cache_ttl, clock=clock)
        self._generations: dict[str, int] = {}

        registry.add_listener(self.invalidate_node)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @staticmethod
    def _node_key(target: RemoteTarget) -> str:
        if target.node_id:
            return target.node_id
        return f"adhoc:{target.account}@{target.host}:{target.port}"

    def _client_for(self, target: RemoteTarget) -> RemoteClient:
        client = self.clients.get(target.kind)
        if client is None:
            raise ValidationError(
                f"No adapter for node kind {target.kind}", node_id=target.node_id
            )
        return client

    async def _resolve(
        self, node_id: str | None, override: RemoteTarget | None = None
    ) -> tuple[RemoteTarget, RemoteClient]:
        """
        Resolve the connection record for a call.

        Registered nodes always use their registry credentials. Caller
        supplied credentials are used only when they point at a target that
        is not registered.
        """
        if node_id:
            try:
                target = await self.registry.resolve_target(node_id)
            except NotFound:
                if override is None:
                    raise
                target = override
        elif override is not None:
            registered = await self.registry.find_by_address(
                override.host, override.port, override.account
            )
            if registered is not None:
                target = await self.registry.resolve_target(registered.id)
            else:
                logger.debug(
                    f"Using caller credentials for unregistered target "
                    f"{override.account}@{override.host}:{override.port}"
                )
                target = override
        else:
            raise ValidationError("Either a node id or a target address is required")
        return target, self._client_for(target)

    async def _call(
        self, target: RemoteTarget, operation: str, call: Awaitable[T]
    ) -> T:
        """Run one adapter call under the engine timeout."""
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"{operation} on {target.base_url} timed out after {self.timeout}s"
            )
            raise Unreachable(
                f"{operation} on {target.base_url} timed out after {self.timeout}s",
                node_id=target.node_id,
            ) from None
        except AggregatorError as e:
            if e.node_id is None:
                e.node_id = target.node_id
            logger.warning(f"{operation} on {target.base_url} failed: {e.kind}: {e}")
            raise

    def _generation(self, node_key: str) -> int:
        return self._generations.get(node_key, 0)

    def _invalidate_lists(self, node_key: str) -> None:
        self._generations[node_key] = self._generation(node_key) + 1
        self._lists.invalidate_prefix(node_key)
        # Later readers must not join a load that started before the mutation
        self._refreshes.invalidate_prefix(node_key)

    async def _cached_read(
        self,
        key: CacheKey,
        node_key: str,
        loader: Callable[[], Awaitable[Any]],
    ) -> tuple[Any, datetime, AggregatorError | None]:
        """
        Read through the list cache with stale fallback.

        Concurrent refreshes of one key share a single remote load, so while
        a node is down every waiting caller gets the same failure after one
        timeout and falls back to the stale entry together.

        Returns:
            (value, fetched_at, error) where error is set when value is a
            stale entry served because the refresh failed
        """
        entry = self._lists.get(key)
        if entry is not None and self._lists.is_fresh(entry):
            value, fetched_at = entry.value
            return value, fetched_at, None

        async def refresh() -> tuple[Any, datetime]:
            generation = self._generation(node_key)
            value = await loader()
            fetched_at = datetime.now(UTC)
            # A mutation that landed while we were fetching wins
            if self._generation(node_key) == generation:
                self._lists.set(key, (value, fetched_at))
            return value, fetched_at

        try:
            value, fetched_at = await self._refreshes.coalesce(key, refresh)
        except DEGRADABLE_ERRORS as e:
            entry = self._lists.get(key)
            if entry is None:
                raise
            logger.warning(f"Serving stale cache for {key}: {e}")
            stale_value, fetched_at = entry.value
            return stale_value, fetched_at, e
        return value, fetched_at, None

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def add_node(
        self,
        host: str,
        port: int,
        account: str,
        credential: str | None = None,
        kind: str = "jenkins",
        name: str | None = None,
    ) -> Node:
        if kind not in self.clients:
            raise ValidationError(f"Unsupported node kind: {kind}")
        node = Node(
            id="",
            host=host,
            port=port,
            account=account,
            kind=kind,
            name=name,
            credential=credential,
        )
        node_id = await self.registry.add(node)
        return await self.registry.get(node_id)

    async def list_nodes(
        self,
        host: str | None = None,
        account: str | None = None,
        kind: str | None = None,
    ) -> list[Node]:
        return await self.registry.list(host=host, account=account, kind=kind)

    async def get_node(self, node_id: str) -> Node:
        return await self.registry.get(node_id)

    async def update_node(self, node_id: str, patch: dict[str, Any]) -> Node:
        kind = patch.get("kind")
        if kind is not None and kind not in self.clients:
            raise ValidationError(f"Unsupported node kind: {kind}")
        return await self.registry.update(node_id, patch)

    async def remove_node(self, node_id: str) -> None:
        # The registry notifies invalidate_node
        await self.registry.remove(node_id)

    async def invalidate_node(self, node_id: str) -> None:
        """Drop every cached view, job, build, console and pipeline entry of a node."""
        self._invalidate_lists(node_id)
        self._builds.invalidate_prefix(node_id)
        self._consoles.invalidate_prefix(node_id)
        self.poller.invalidate_prefix(node_id)
        logger.info(f"Invalidated cached state for node {node_id}")

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def list_views(self, node_id: str) -> ViewList:
        target, client = await self._resolve(node_id)

        async def load() -> list[View]:
            views = await self._call(
                target, "list_views", client.list_views(target, timeout=self.timeout)
            )
            for view in views:
                view.node_id = node_id
            return views

        views, fetched_at, error = await self._cached_read(
            (node_id, "views"), node_id, load
        )
        return ViewList(
            node_id=node_id,
            views=list(views),
            stale=error is not None,
            error=error.to_dict() if error else None,
            fetched_at=fetched_at,
        )

    async def get_view(self, node_id: str, view_id: str) -> ViewDetail:
        target, client = await self._resolve(node_id)

        async def load() -> View:
            view = await self._call(
                target,
                "get_view",
                client.get_view(target, view_id, timeout=self.timeout),
            )
            view.node_id = node_id
            return view

        view, fetched_at, error = await self._cached_read(
            (node_id, "view", view_id), node_id, load
        )
        return ViewDetail(
            view=view,
            stale=error is not None,
            error=error.to_dict() if error else None,
            fetched_at=fetched_at,
        )

    async def create_view(
        self,
        node_id: str,
        name: str,
        jobs: Sequence[str] = (),
        description: str | None = None,
    ) -> View:
        if not name or not name.strip():
            raise ValidationError("View name must not be empty", node_id=node_id)
        target, client = await self._resolve(node_id)
        view = await self._call(
            target,
            "create_view",
            client.create_view(
                target, name, list(jobs), description, timeout=self.timeout
            ),
        )
        self._invalidate_lists(node_id)
        view.node_id = node_id
        return view

    async def update_view(
        self,
        node_id: str,
        view_id: str,
        new_name: str | None = None,
        add_jobs: Sequence[str] = (),
        remove_jobs: Sequence[str] = (),
        description: str | None = None,
    ) -> View:
        target, client = await self._resolve(node_id)
        view = await self._call(
            target,
            "update_view",
            client.update_view(
                target,
                view_id,
                new_name,
                list(add_jobs),
                list(remove_jobs),
                description,
                timeout=self.timeout,
            ),
        )
        self._invalidate_lists(node_id)
        view.node_id = node_id
        return view

    async def delete_view(self, node_id: str, view_id: str) -> None:
        target, client = await self._resolve(node_id)
        await self._call(
            target, "delete_view", client.delete_view(target, view_id, timeout=self.timeout)
        )
        self._invalidate_lists(node_id)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def list_jobs(self, node_id: str, view_id: str) -> JobList:
        target, client = await self._resolve(node_id)

        async def load() -> list[Job]:
            jobs = await self._call(
                target,
                "list_jobs",
                client.list_jobs(target, view_id, timeout=self.timeout),
            )
            for job in jobs:
                job.view_id = view_id
            return jobs

        jobs, fetched_at, error = await self._cached_read(
            (node_id, "jobs", view_id), node_id, load
        )
        return JobList(
            node_id=node_id,
            view_id=view_id,
            jobs=list(jobs),
            stale=error is not None,
            error=error.to_dict() if error else None,
            fetched_at=fetched_at,
        )

    async def _node_jobs(self, node_id: str) -> NodeJobs:
        """Every job of one node, across its views, for the fan-out query."""
        try:
            view_list = await self.list_views(node_id)
        except Exception as e:
            return NodeJobs(node_id=node_id, error=self._error_entry(node_id, e))

        # One failing view keeps the jobs of the others
        job_lists = await asyncio.gather(
            *(self.list_jobs(node_id, view.id) for view in view_list.views),
            return_exceptions=True,
        )

        jobs: dict[str, Job] = {}
        error = view_list.error
        for job_list in job_lists:
            if isinstance(job_list, Exception):
                error = error or self._error_entry(node_id, job_list)
                continue
            if isinstance(job_list, BaseException):
                raise job_list
            error = error or job_list.error
            for job in job_list.jobs:
                jobs.setdefault(job.name, job)
        return NodeJobs(node_id=node_id, jobs=list(jobs.values()), error=error)

    @staticmethod
    def _error_entry(node_id: str, error: Exception) -> dict[str, Any]:
        if isinstance(error, AggregatorError):
            return error.to_dict()
        logger.error(
            f"Unexpected error listing jobs of node {node_id}: {error}", exc_info=error
        )
        return {"kind": "error", "message": str(error), "retryable": False}

    async def list_all_jobs(self) -> AggregateJobs:
        """
        Fan out over every registered node.

        One task per node; a slow node only delays the response by its own
        timeouts, and a failing node becomes an error entry instead of
        failing the whole call.
        """
        nodes = await self.registry.list()
        results = await asyncio.gather(*(self._node_jobs(node.id) for node in nodes))
        failed = sum(1 for entry in results if not entry.ok)
        if failed:
            logger.info(f"list_all_jobs: {failed}/{len(results)} nodes reported errors")
        return AggregateJobs(nodes=list(results))

    async def _control(
        self,
        action: str,
        job_name: str,
        node_id: str | None,
        override: RemoteTarget | None,
        parameters: dict[str, Any] | None = None,
    ) -> JobControlResult:
        if not job_name:
            raise ValidationError("Job name must not be empty", node_id=node_id)
        target, client = await self._resolve(node_id, override)
        node_key = self._node_key(target)

        # Start/stop of the same job are serialized so a double click cannot
        # trigger two builds.
        async with self._lists.lock((node_key, "control", job_name)):
            job = await self._call(
                target, "get_job", client.get_job(target, job_name, timeout=self.timeout)
            )
            running = job.status is JobStatus.RUNNING

            if action == "start":
                if running:
                    logger.info(f"{job_name} on {target.base_url} already running")
                    return JobControlResult(job_name, JobStatus.RUNNING, triggered=False)
                await self._call(
                    target,
                    "start_job",
                    client.start_job(target, job_name, parameters, timeout=self.timeout),
                )
                new_status = JobStatus.RUNNING
            else:
                if not running:
                    logger.info(f"{job_name} on {target.base_url} not running")
                    return JobControlResult(job_name, job.status, triggered=False)
                await self._call(
                    target, "stop_job", client.stop_job(target, job_name, timeout=self.timeout)
                )
                new_status = JobStatus.IDLE

        self._invalidate_lists(node_key)
        self.poller.invalidate_prefix(node_key, job_name)
        return JobControlResult(job_name, new_status, triggered=True)

    async def start_job(
        self,
        job_name: str,
        node_id: str | None = None,
        override: RemoteTarget | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> JobControlResult:
        """
        Trigger a job unless it is already running.

        Returns the running status both for a fresh trigger and for a job
        that was already running (triggered tells them apart).
        """
        return await self._control("start", job_name, node_id, override, parameters)

    async def stop_job(
        self,
        job_name: str,
        node_id: str | None = None,
        override: RemoteTarget | None = None,
    ) -> JobControlResult:
        """Abort the running build of a job; a no-op if nothing runs."""
        return await self._control("stop", job_name, node_id, override)

    # ------------------------------------------------------------------
    # Builds
    # ------------------------------------------------------------------

    def _remember_build(self, node_key: str, build: Build) -> None:
        # Finished builds are immutable except for next_id, which changes
        # when the next build starts; cache only once that link exists.
        if build.finished and build.next_id is not None:
            self._builds.set((node_key, build.job_name, build.id), build)

    async def _resolve_build_id(
        self,
        target: RemoteTarget,
        client: RemoteClient,
        job_name: str,
        build: BuildRef | None,
    ) -> int:
        if build is None:
            build = LAST_BUILD
        if isinstance(build, int):
            return build
        if build.isdigit():
            return int(build)

        node_key = self._node_key(target)
        resolved = await self.poller.fetch(
            (node_key, job_name, build, "build"),
            lambda: self._call(
                target,
                "get_build",
                client.get_build(target, job_name, build, timeout=self.timeout),
            ),
        )
        return resolved.id

    async def get_build(
        self,
        node_id: str,
        view_id: str | None,
        job_name: str,
        build: BuildRef | None = None,
    ) -> Build:
        target, client = await self._resolve(node_id)
        if isinstance(build, int):
            cached = self._builds.get_fresh((node_id, job_name, build))
            if cached is not None:
                return cached

        result = await self._call(
            target,
            "get_build",
            client.get_build(
                target, job_name, LAST_BUILD if build is None else build, timeout=self.timeout
            ),
        )
        self._remember_build(node_id, result)
        return result

    async def get_relative_build(
        self,
        node_id: str,
        view_id: str | None,
        job_name: str,
        build_id: int,
        relation: BuildRelation,
    ) -> Build:
        """
        Navigate to the previous or next build.

        Raises:
            NotFound: If build_id has no neighbour in that direction
        """
        current = self._builds.get_fresh((node_id, job_name, build_id))
        if current is not None:
            neighbour = (
                current.previous_id
                if relation is BuildRelation.PREVIOUS
                else current.next_id
            )
            if neighbour is None:
                raise NotFound(
                    f"Build {build_id} of {job_name} has no {relation.value} build",
                    node_id=node_id,
                )
            return await self.get_build(node_id, view_id, job_name, neighbour)

        target, client = await self._resolve(node_id)
        result = await self._call(
            target,
            "get_relative_build",
            client.get_relative_build(
                target, job_name, build_id, relation, timeout=self.timeout
            ),
        )
        self._remember_build(node_id, result)
        return result

    async def delete_build(
        self, node_id: str, view_id: str | None, job_name: str, build_id: int
    ) -> None:
        target, client = await self._resolve(node_id)
        await self._call(
            target,
            "delete_build",
            client.delete_build(target, job_name, build_id, timeout=self.timeout),
        )
        # Neighbour links of the surrounding builds change too
        self._builds.invalidate_prefix(node_id, job_name)
        self._consoles.invalidate_prefix(node_id, job_name, build_id)
        self.poller.invalidate_prefix(node_id, job_name)
        self._invalidate_lists(node_id)
        logger.info(f"Deleted build {job_name}#{build_id} on node {node_id}")

    # ------------------------------------------------------------------
    # Console and pipeline
    # ------------------------------------------------------------------

    async def get_console(
        self,
        node_id: str | None,
        view_id: str | None,
        job_name: str,
        build: BuildRef | None = None,
        offset: int = 0,
        override: RemoteTarget | None = None,
    ) -> ConsoleChunk:
        """
        Console text of a build from a byte offset.

        Meant for repeated polling: pass the previous next_offset back as
        offset. The returned text always starts exactly at offset, and
        complete is set only once the remote reports the build finished.
        """
        if offset < 0:
            raise ValidationError(f"Console offset must be >= 0, got {offset}")
        target, client = await self._resolve(node_id, override)
        node_key = self._node_key(target)
        build_id = await self._resolve_build_id(target, client, job_name, build)
        key = (node_key, job_name, build_id)

        def fetch(start: int) -> Awaitable[ConsoleChunk]:
            return self.poller.fetch(
                (node_key, job_name, build_id, "console", start),
                lambda: self._call(
                    target,
                    "get_console",
                    client.get_console(
                        target, job_name, build_id, start, timeout=self.timeout
                    ),
                ),
            )

        entry = self._consoles.get(key)
        snapshot: ConsoleSnapshot | None = entry.value if entry else None
        extend = snapshot is not None and snapshot.covers(offset)

        if extend and (snapshot.complete or self._consoles.is_fresh(entry)):
            return snapshot.chunk_from(offset)

        # Concurrent pollers of the same range share one remote call and its
        # outcome through the poller.
        start = snapshot.end if extend else offset
        chunk = await fetch(start)
        data = chunk.text.encode("utf-8")

        if start + len(data) != chunk.next_offset:
            # The remote counts offsets differently from our UTF-8 bytes;
            # serve the raw chunk and keep no snapshot.
            self._consoles.invalidate(key)
            if start != offset:
                chunk = await fetch(offset)
            return chunk

        snapshot = self._merge_console(key, start, data, chunk.complete)
        if snapshot.covers(offset):
            return snapshot.chunk_from(offset)
        # The snapshot was dropped while the fetch was in flight
        return await fetch(offset)

    def _merge_console(
        self, key: CacheKey, start: int, data: bytes, complete: bool
    ) -> ConsoleSnapshot:
        """Fold the byte range [start, start + len(data)) into the build's snapshot."""
        entry = self._consoles.get(key)
        current: ConsoleSnapshot | None = entry.value if entry else None
        if current is None or not current.covers(start):
            snapshot = ConsoleSnapshot(start=start, data=bytearray(data), complete=complete)
            self._consoles.set(key, snapshot)
            return snapshot

        # Callers that shared the fetch merge the same range one after another
        overlap = current.end - start
        if len(data) >= overlap:
            current.append(data[overlap:], complete)
            self._consoles.set(key, current)
        return current

    async def get_pipeline_overview(
        self,
        node_id: str,
        view_id: str | None,
        job_name: str,
        build: BuildRef | None = None,
    ) -> PipelineOverview:
        target, client = await self._resolve(node_id)
        build_id = await self._resolve_build_id(target, client, job_name, build)
        return await self.poller.fetch(
            (node_id, job_name, build_id, "pipeline"),
            lambda: self._call(
                target,
                "get_pipeline_overview",
                client.get_pipeline_overview(
                    target, job_name, build_id, timeout=self.timeout
                ),
            ),
        )

    async def get_pipeline_console(
        self,
        node_id: str,
        view_id: str | None,
        job_name: str,
        stage_id: str,
        build: BuildRef | None = None,
    ) -> PipelineLog:
        if not stage_id:
            raise ValidationError("Pipeline stage id is required", node_id=node_id)
        target, client = await self._resolve(node_id)
        build_id = await self._resolve_build_id(target, client, job_name, build)
        return await self.poller.fetch(
            (node_id, job_name, build_id, "stage", stage_id),
            lambda: self._call(
                target,
                "get_pipeline_console",
                client.get_pipeline_console(
                    target, job_name, build_id, stage_id, timeout=self.timeout
                ),
            ),
        )

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def evict_expired(self) -> int:
        """Drop cache entries past their maximum age; returns the count."""
        return (
            self._lists.evict_expired()
            + self._consoles.evict_expired()
            + self.poller.evict_expired()
        )

    async def close(self) -> None:
        """Cancel outstanding polls and drop every cache entry."""
        await self.poller.close()
        await self._refreshes.close()
        for cache in (self._lists, self._builds, self._consoles):
            cache.invalidate_where(lambda key: True)
        logger.info("Aggregation engine closed")
