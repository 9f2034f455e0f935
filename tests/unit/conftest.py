"""
Shared fixtures for the unit tests.

FakeRemoteClient stands in for a remote CI server: it keeps views, jobs,
builds and console logs in memory and counts every call, so engine tests can
assert how many remote requests were made.
"""

import asyncio
from collections import Counter
from collections.abc import Sequence

import pytest

from agg_adapters.base import BuildRef, RemoteClient
from agg_common.errors import NotFound, Unreachable
from agg_common.models import (
    Build,
    ConsoleChunk,
    Job,
    JobStatus,
    PipelineLog,
    PipelineOverview,
    PipelineStage,
    RemoteTarget,
    View,
)
from agg_engine.engine import AggregationEngine
from agg_engine.registry import NodeRegistry
from agg_persistence.memory_repository import InMemoryNodeRepository


class FakeRemoteClient(RemoteClient):
    kind = "jenkins"

    def __init__(self) -> None:
        self.views: dict[str, list[str]] = {}
        self.jobs: dict[str, JobStatus] = {}
        self.builds: dict[str, dict[int, Build]] = {}
        self.consoles: dict[tuple[str, int], bytes] = {}
        self.running_builds: set[tuple[str, int]] = set()
        self.pipelines: dict[tuple[str, int], PipelineOverview] = {}
        self.unreachable_hosts: set[str] = set()
        self.delay = 0.0
        self.calls: Counter = Counter()
        self.targets: list[RemoteTarget] = []

    async def _enter(self, name: str, target: RemoteTarget) -> None:
        self.calls[name] += 1
        self.targets.append(target)
        if self.delay:
            await asyncio.sleep(self.delay)
        if target.host in self.unreachable_hosts:
            raise Unreachable(f"{target.host} is down")

    # -- helpers for tests ------------------------------------------------

    def add_view(self, name: str, jobs: dict[str, JobStatus]) -> None:
        self.views[name] = list(jobs)
        self.jobs.update(jobs)

    def add_build(
        self,
        job_name: str,
        build_id: int,
        result: str | None = "SUCCESS",
        console: bytes = b"",
    ) -> None:
        builds = self.builds.setdefault(job_name, {})
        builds[build_id] = Build(
            id=build_id, job_name=job_name, result=result, building=result is None
        )
        self._relink(job_name)
        self.consoles[(job_name, build_id)] = console
        if result is None:
            self.running_builds.add((job_name, build_id))

    def _relink(self, job_name: str) -> None:
        ids = sorted(self.builds.get(job_name, {}))
        for index, build_id in enumerate(ids):
            build = self.builds[job_name][build_id]
            build.previous_id = ids[index - 1] if index > 0 else None
            build.next_id = ids[index + 1] if index + 1 < len(ids) else None

    def _job(self, name: str, view_id: str | None = None) -> Job:
        if name not in self.jobs:
            raise NotFound(f"job {name} not found")
        builds = self.builds.get(name) or {}
        return Job(
            name=name,
            status=self.jobs[name],
            view_id=view_id,
            last_build_id=max(builds) if builds else None,
        )

    def _build_id(self, job_name: str, build: BuildRef) -> int:
        builds = self.builds.get(job_name) or {}
        if build == "lastBuild":
            if not builds:
                raise NotFound(f"{job_name} has no builds")
            return max(builds)
        build_id = int(build)
        if build_id not in builds:
            raise NotFound(f"{job_name}#{build_id} not found")
        return build_id

    # -- RemoteClient -----------------------------------------------------

    async def list_views(self, target, *, timeout):
        await self._enter("list_views", target)
        return [View(id=name, name=name, jobs=list(jobs)) for name, jobs in self.views.items()]

    async def get_view(self, target, view_id, *, timeout):
        await self._enter("get_view", target)
        if view_id not in self.views:
            raise NotFound(f"view {view_id} not found")
        return View(id=view_id, name=view_id, jobs=list(self.views[view_id]))

    async def create_view(
        self,
        target,
        name: str,
        jobs: Sequence[str] = (),
        description: str | None = None,
        *,
        timeout,
    ):
        await self._enter("create_view", target)
        self.views[name] = list(jobs)
        return View(id=name, name=name, jobs=list(jobs), description=description)

    async def update_view(
        self,
        target,
        view_id,
        new_name=None,
        add_jobs=(),
        remove_jobs=(),
        description=None,
        *,
        timeout,
    ):
        await self._enter("update_view", target)
        if view_id not in self.views:
            raise NotFound(f"view {view_id} not found")
        jobs = self.views.pop(view_id)
        jobs = [job for job in jobs if job not in remove_jobs] + list(add_jobs)
        name = new_name or view_id
        self.views[name] = jobs
        return View(id=name, name=name, jobs=jobs, description=description)

    async def delete_view(self, target, view_id, *, timeout):
        await self._enter("delete_view", target)
        if view_id not in self.views:
            raise NotFound(f"view {view_id} not found")
        del self.views[view_id]

    async def list_jobs(self, target, view_id, *, timeout):
        await self._enter("list_jobs", target)
        if view_id not in self.views:
            raise NotFound(f"view {view_id} not found")
        return [self._job(name, view_id) for name in self.views[view_id]]

    async def get_job(self, target, job_name, *, timeout):
        await self._enter("get_job", target)
        return self._job(job_name)

    async def start_job(self, target, job_name, parameters=None, *, timeout):
        await self._enter("start_job", target)
        self._job(job_name)
        self.jobs[job_name] = JobStatus.RUNNING
        next_id = max(self.builds.get(job_name) or {0: None}) + 1
        self.add_build(job_name, next_id, result=None)

    async def stop_job(self, target, job_name, *, timeout):
        await self._enter("stop_job", target)
        self._job(job_name)
        self.jobs[job_name] = JobStatus.IDLE

    async def get_console(self, target, job_name, build, offset, *, timeout):
        await self._enter("get_console", target)
        build_id = self._build_id(job_name, build)
        data = self.consoles.get((job_name, build_id), b"")
        return ConsoleChunk(
            text=data[offset:].decode("utf-8"),
            next_offset=len(data),
            complete=(job_name, build_id) not in self.running_builds,
        )

    async def get_pipeline_overview(self, target, job_name, build, *, timeout):
        await self._enter("get_pipeline_overview", target)
        build_id = self._build_id(job_name, build)
        overview = self.pipelines.get((job_name, build_id))
        if overview is None:
            return PipelineOverview(
                build_id=build_id,
                status="SUCCESS",
                stages=[PipelineStage(id="6", name="Build", status="SUCCESS")],
            )
        return overview

    async def get_pipeline_console(self, target, job_name, build, stage_id, *, timeout):
        await self._enter("get_pipeline_console", target)
        self._build_id(job_name, build)
        text = f"log of stage {stage_id}\n"
        return PipelineLog(stage_id=stage_id, text=text, length=len(text))

    async def get_build(self, target, job_name, build, *, timeout):
        await self._enter("get_build", target)
        build_id = self._build_id(job_name, build)
        stored = self.builds[job_name][build_id]
        return Build(
            id=stored.id,
            job_name=stored.job_name,
            result=stored.result,
            building=stored.building,
            previous_id=stored.previous_id,
            next_id=stored.next_id,
        )

    async def delete_build(self, target, job_name, build_id, *, timeout):
        await self._enter("delete_build", target)
        self._build_id(job_name, build_id)
        del self.builds[job_name][build_id]
        self.consoles.pop((job_name, build_id), None)
        self._relink(job_name)


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_client() -> FakeRemoteClient:
    return FakeRemoteClient()


@pytest.fixture
def registry() -> NodeRegistry:
    return NodeRegistry(InMemoryNodeRepository(), supported_kinds={"jenkins"})


@pytest.fixture
def engine(registry, fake_client, clock) -> AggregationEngine:
    return AggregationEngine(
        registry,
        {"jenkins": fake_client},
        timeout=1.0,
        view_cache_ttl=30.0,
        poll_ttl=3.0,
        clock=clock,
    )


@pytest.fixture
async def node_id(engine) -> str:
    node = await engine.add_node(
        host="ci.example.com", port=8080, account="svc", credential="s3cret"
    )
    return node.id

