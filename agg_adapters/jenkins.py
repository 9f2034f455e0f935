"""
Jenkins implementation of the remote client interface.

Talks to the Jenkins JSON API (plus the Pipeline Stage View "wfapi"
endpoints) with requests. Every call opens its own Session, so the CSRF
crumb and its session cookie never leak between calls or nodes. The
blocking requests calls run in a worker thread.
"""

import asyncio
import json
import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import requests

from agg_common.errors import AuthRejected, NotFound, RemoteError, Unreachable
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

from .base import BuildRef, RemoteClient

logger = logging.getLogger(__name__)

LIST_VIEW_MODE = "hudson.model.ListView"
JOB_TREE = "name,url,color,inQueue,lastBuild[number]"
VIEW_TREE = f"name,url,description,jobs[{JOB_TREE}]"
BUILD_TREE = (
    "number,timestamp,result,building,duration,"
    "previousBuild[number],nextBuild[number]"
)


def status_from_color(color: str | None) -> JobStatus:
    """
    Map a Jenkins ball colour to a normalized job status.

    Colours with an "_anime" suffix mean a build is in progress. Unknown
    colours map to UNKNOWN rather than being guessed.
    """
    if not color:
        return JobStatus.UNKNOWN
    if color.endswith("_anime"):
        return JobStatus.RUNNING
    if color == "blue":
        return JobStatus.SUCCEEDED
    if color in ("red", "yellow"):
        return JobStatus.FAILED
    if color in ("notbuilt", "disabled", "aborted", "grey"):
        return JobStatus.IDLE
    return JobStatus.UNKNOWN


def job_path(job_name: str) -> str:
    """Build the URL path of a job, expanding folders ("a/b" -> /job/a/job/b)."""
    return "".join(f"/job/{quote(part, safe='')}" for part in job_name.split("/"))


def view_path(view_id: str) -> str:
    return f"/view/{quote(view_id, safe='')}"


def build_path(job_name: str, build: BuildRef) -> str:
    return f"{job_path(job_name)}/{quote(str(build), safe='')}"


def _from_millis(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(value / 1000, tz=UTC)


class JenkinsClient(RemoteClient):
    """
    RemoteClient for Jenkins masters.

    Failure mapping:
    - connection errors and timeouts -> Unreachable
    - HTTP 401/403 -> AuthRejected
    - HTTP 404 -> NotFound
    - any other non-2xx/3xx answer or unparsable body -> RemoteError
    """

    kind = "jenkins"

    def __init__(self, max_retries: int = 1, verify_tls: bool = True):
        """
        Initialize the client.

        Args:
            max_retries: Extra attempts for GET requests that failed to
                         connect. POST requests are never retried.
            verify_tls: Verify certificates for https targets
        """
        self.max_retries = max(0, max_retries)
        self.verify_tls = verify_tls

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _session(self, target: RemoteTarget) -> requests.Session:
        session = requests.Session()
        if target.password is not None:
            session.auth = (target.account, target.password)
        session.headers["Accept"] = "application/json"
        session.verify = self.verify_tls
        return session

    def _raise_for_status(
        self, response: requests.Response, target: RemoteTarget, path: str
    ) -> None:
        status = response.status_code
        if status < 400:
            return
        if status in (401, 403):
            raise AuthRejected(
                f"{target.base_url} rejected credentials for {target.account}",
                node_id=target.node_id,
            )
        if status == 404:
            raise NotFound(f"{path} not found on {target.base_url}", node_id=target.node_id)
        excerpt = (response.text or "").strip()[:200]
        raise RemoteError(
            status,
            f"{target.base_url}{path} answered {status}: {excerpt}",
            node_id=target.node_id,
        )

    def _request(
        self,
        session: requests.Session,
        target: RemoteTarget,
        method: str,
        path: str,
        timeout: float,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> requests.Response:
        """
        Issue one HTTP request, retrying only idempotent GETs that could not
        connect.
        """
        url = f"{target.base_url}{path}"
        attempts = 1 + (self.max_retries if method == "GET" else 0)
        last_error: Exception | None = None

        for attempt in range(attempts):
            try:
                response = session.request(
                    method,
                    url,
                    params=params,
                    data=data,
                    headers=headers,
                    timeout=timeout,
                    allow_redirects=method == "GET",
                )
            except requests.Timeout as e:
                raise Unreachable(
                    f"{target.base_url} timed out after {timeout}s",
                    node_id=target.node_id,
                ) from e
            except requests.ConnectionError as e:
                last_error = e
                logger.debug(
                    f"{method} {url} failed to connect (attempt {attempt + 1}/{attempts})"
                )
                continue
            except requests.RequestException as e:
                raise RemoteError(0, f"{method} {url} failed: {e}", node_id=target.node_id) from e

            self._raise_for_status(response, target, path)
            return response

        raise Unreachable(
            f"{target.base_url} unreachable: {last_error}", node_id=target.node_id
        ) from last_error

    def _get_json(
        self,
        session: requests.Session,
        target: RemoteTarget,
        path: str,
        timeout: float,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = self._request(session, target, "GET", path, timeout, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise RemoteError(
                response.status_code,
                f"{target.base_url}{path} returned invalid JSON",
                node_id=target.node_id,
            ) from e

    def _crumb_headers(
        self, session: requests.Session, target: RemoteTarget, timeout: float
    ) -> dict[str, str]:
        """Fetch a CSRF crumb; nodes with CSRF protection off have no issuer."""
        try:
            body = self._get_json(session, target, "/crumbIssuer/api/json", timeout)
        except NotFound:
            return {}
        field_name = body.get("crumbRequestField")
        crumb = body.get("crumb")
        if not field_name or not crumb:
            return {}
        return {field_name: crumb}

    def _post(
        self,
        session: requests.Session,
        target: RemoteTarget,
        path: str,
        timeout: float,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> requests.Response:
        headers = self._crumb_headers(session, target, timeout)
        return self._request(
            session, target, "POST", path, timeout, params=params, data=data, headers=headers
        )

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_job(body: dict[str, Any], view_id: str | None = None) -> Job:
        last_build = body.get("lastBuild") or {}
        status = status_from_color(body.get("color"))
        # A queued build counts as running so a repeated start is a no-op
        if body.get("inQueue"):
            status = JobStatus.RUNNING
        return Job(
            name=body["name"],
            status=status,
            view_id=view_id,
            last_build_id=last_build.get("number"),
            url=body.get("url"),
        )

    @staticmethod
    def _parse_view(body: dict[str, Any], target: RemoteTarget) -> View:
        return View(
            id=body["name"],
            name=body["name"],
            node_id=target.node_id,
            jobs=[job["name"] for job in body.get("jobs") or []],
            description=body.get("description"),
            url=body.get("url"),
        )

    @staticmethod
    def _parse_build(body: dict[str, Any], job_name: str) -> Build:
        previous_build = body.get("previousBuild") or {}
        next_build = body.get("nextBuild") or {}
        return Build(
            id=body["number"],
            job_name=job_name,
            started_at=_from_millis(body.get("timestamp")),
            result=body.get("result"),
            building=bool(body.get("building")),
            previous_id=previous_build.get("number"),
            next_id=next_build.get("number"),
            duration_ms=body.get("duration"),
        )

    # ------------------------------------------------------------------
    # Synchronous implementations (run in a worker thread)
    # ------------------------------------------------------------------

    def _fetch_view(
        self,
        session: requests.Session,
        target: RemoteTarget,
        view_id: str,
        timeout: float,
    ) -> dict[str, Any]:
        return self._get_json(
            session,
            target,
            f"{view_path(view_id)}/api/json",
            timeout,
            params={"tree": VIEW_TREE},
        )

    def _list_views(self, target: RemoteTarget, timeout: float) -> list[View]:
        with self._session(target) as session:
            body = self._get_json(
                session,
                target,
                "/api/json",
                timeout,
                params={"tree": "views[name,url,description,jobs[name]]"},
            )
        return [self._parse_view(view, target) for view in body.get("views") or []]

    def _get_view(self, target: RemoteTarget, view_id: str, timeout: float) -> View:
        with self._session(target) as session:
            body = self._fetch_view(session, target, view_id, timeout)
        return self._parse_view(body, target)

    def _create_view(
        self,
        target: RemoteTarget,
        name: str,
        jobs: Sequence[str],
        description: str | None,
        timeout: float,
    ) -> View:
        with self._session(target) as session:
            self._post(
                session,
                target,
                "/createView",
                timeout,
                data={
                    "name": name,
                    "mode": LIST_VIEW_MODE,
                    "json": json.dumps({"name": name, "mode": LIST_VIEW_MODE}),
                },
            )
            for job_name in jobs:
                self._post(
                    session,
                    target,
                    f"{view_path(name)}/addJobToView",
                    timeout,
                    params={"name": job_name},
                )
            if description is not None:
                self._post(
                    session,
                    target,
                    f"{view_path(name)}/submitDescription",
                    timeout,
                    data={"description": description},
                )
            body = self._fetch_view(session, target, name, timeout)
        logger.info(f"Created view {name} on {target.base_url}")
        return self._parse_view(body, target)

    def _update_view(
        self,
        target: RemoteTarget,
        view_id: str,
        new_name: str | None,
        add_jobs: Sequence[str],
        remove_jobs: Sequence[str],
        description: str | None,
        timeout: float,
    ) -> View:
        current = view_id
        with self._session(target) as session:
            if new_name and new_name != view_id:
                self._post(
                    session,
                    target,
                    f"{view_path(view_id)}/doRename",
                    timeout,
                    params={"newName": new_name},
                )
                current = new_name
            for job_name in add_jobs:
                self._post(
                    session,
                    target,
                    f"{view_path(current)}/addJobToView",
                    timeout,
                    params={"name": job_name},
                )
            for job_name in remove_jobs:
                self._post(
                    session,
                    target,
                    f"{view_path(current)}/removeJobFromView",
                    timeout,
                    params={"name": job_name},
                )
            if description is not None:
                self._post(
                    session,
                    target,
                    f"{view_path(current)}/submitDescription",
                    timeout,
                    data={"description": description},
                )
            body = self._fetch_view(session, target, current, timeout)
        logger.info(f"Updated view {view_id} on {target.base_url}")
        return self._parse_view(body, target)

    def _delete_view(self, target: RemoteTarget, view_id: str, timeout: float) -> None:
        with self._session(target) as session:
            self._post(session, target, f"{view_path(view_id)}/doDelete", timeout)
        logger.info(f"Deleted view {view_id} on {target.base_url}")

    def _list_jobs(self, target: RemoteTarget, view_id: str, timeout: float) -> list[Job]:
        with self._session(target) as session:
            body = self._fetch_view(session, target, view_id, timeout)
        return [self._parse_job(job, view_id) for job in body.get("jobs") or []]

    def _get_job(self, target: RemoteTarget, job_name: str, timeout: float) -> Job:
        with self._session(target) as session:
            body = self._get_json(
                session,
                target,
                f"{job_path(job_name)}/api/json",
                timeout,
                params={"tree": JOB_TREE},
            )
        return self._parse_job(body)

    def _start_job(
        self,
        target: RemoteTarget,
        job_name: str,
        parameters: dict[str, Any] | None,
        timeout: float,
    ) -> None:
        endpoint = "buildWithParameters" if parameters else "build"
        with self._session(target) as session:
            self._post(
                session,
                target,
                f"{job_path(job_name)}/{endpoint}",
                timeout,
                data=parameters or None,
            )
        logger.info(f"Triggered {job_name} on {target.base_url}")

    def _stop_job(self, target: RemoteTarget, job_name: str, timeout: float) -> None:
        with self._session(target) as session:
            self._post(session, target, f"{job_path(job_name)}/lastBuild/stop", timeout)
        logger.info(f"Stopped {job_name} on {target.base_url}")

    def _get_console(
        self,
        target: RemoteTarget,
        job_name: str,
        build: BuildRef,
        offset: int,
        timeout: float,
    ) -> ConsoleChunk:
        with self._session(target) as session:
            response = self._request(
                session,
                target,
                "GET",
                f"{build_path(job_name, build)}/logText/progressiveText",
                timeout,
                params={"start": offset},
            )
        content = response.content or b""
        try:
            next_offset = int(response.headers.get("X-Text-Size", ""))
        except ValueError:
            next_offset = offset + len(content)
        more_data = response.headers.get("X-More-Data", "").lower() == "true"
        return ConsoleChunk(
            text=content.decode("utf-8", errors="replace"),
            next_offset=next_offset,
            complete=not more_data,
        )

    def _get_pipeline_overview(
        self, target: RemoteTarget, job_name: str, build: BuildRef, timeout: float
    ) -> PipelineOverview:
        with self._session(target) as session:
            body = self._get_json(
                session, target, f"{build_path(job_name, build)}/wfapi/describe", timeout
            )
        stages = [
            PipelineStage(
                id=str(stage.get("id")),
                name=stage.get("name", ""),
                status=stage.get("status", "UNKNOWN"),
                started_at=_from_millis(stage.get("startTimeMillis")),
                duration_ms=stage.get("durationMillis"),
            )
            for stage in body.get("stages") or []
        ]
        return PipelineOverview(
            build_id=int(body.get("id", build if isinstance(build, int) else 0)),
            status=body.get("status", "UNKNOWN"),
            stages=stages,
            duration_ms=body.get("durationMillis"),
        )

    def _get_pipeline_console(
        self,
        target: RemoteTarget,
        job_name: str,
        build: BuildRef,
        stage_id: str,
        timeout: float,
    ) -> PipelineLog:
        path = (
            f"{build_path(job_name, build)}/execution/node/"
            f"{quote(stage_id, safe='')}/wfapi/log"
        )
        with self._session(target) as session:
            body = self._get_json(session, target, path, timeout)
        text = body.get("text") or ""
        return PipelineLog(
            stage_id=str(body.get("nodeId", stage_id)),
            text=text,
            length=int(body.get("length", len(text))),
            has_more=bool(body.get("hasMore")),
        )

    def _get_build(
        self, target: RemoteTarget, job_name: str, build: BuildRef, timeout: float
    ) -> Build:
        with self._session(target) as session:
            body = self._get_json(
                session,
                target,
                f"{build_path(job_name, build)}/api/json",
                timeout,
                params={"tree": BUILD_TREE},
            )
        return self._parse_build(body, job_name)

    def _delete_build(
        self, target: RemoteTarget, job_name: str, build_id: int, timeout: float
    ) -> None:
        with self._session(target) as session:
            self._post(session, target, f"{build_path(job_name, build_id)}/doDelete", timeout)
        logger.info(f"Deleted build {job_name}#{build_id} on {target.base_url}")

    # ------------------------------------------------------------------
    # RemoteClient interface
    # ------------------------------------------------------------------

    async def list_views(self, target: RemoteTarget, *, timeout: float) -> list[View]:
        return await asyncio.to_thread(self._list_views, target, timeout)

    async def get_view(
        self, target: RemoteTarget, view_id: str, *, timeout: float
    ) -> View:
        return await asyncio.to_thread(self._get_view, target, view_id, timeout)

    async def create_view(
        self,
        target: RemoteTarget,
        name: str,
        jobs: Sequence[str] = (),
        description: str | None = None,
        *,
        timeout: float,
    ) -> View:
        return await asyncio.to_thread(
            self._create_view, target, name, jobs, description, timeout
        )

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
        return await asyncio.to_thread(
            self._update_view,
            target,
            view_id,
            new_name,
            add_jobs,
            remove_jobs,
            description,
            timeout,
        )

    async def delete_view(
        self, target: RemoteTarget, view_id: str, *, timeout: float
    ) -> None:
        await asyncio.to_thread(self._delete_view, target, view_id, timeout)

    async def list_jobs(
        self, target: RemoteTarget, view_id: str, *, timeout: float
    ) -> list[Job]:
        return await asyncio.to_thread(self._list_jobs, target, view_id, timeout)

    async def get_job(
        self, target: RemoteTarget, job_name: str, *, timeout: float
    ) -> Job:
        return await asyncio.to_thread(self._get_job, target, job_name, timeout)

    async def start_job(
        self,
        target: RemoteTarget,
        job_name: str,
        parameters: dict[str, Any] | None = None,
        *,
        timeout: float,
    ) -> None:
        await asyncio.to_thread(self._start_job, target, job_name, parameters, timeout)

    async def stop_job(
        self, target: RemoteTarget, job_name: str, *, timeout: float
    ) -> None:
        await asyncio.to_thread(self._stop_job, target, job_name, timeout)

    async def get_console(
        self,
        target: RemoteTarget,
        job_name: str,
        build: BuildRef,
        offset: int,
        *,
        timeout: float,
    ) -> ConsoleChunk:
        return await asyncio.to_thread(
            self._get_console, target, job_name, build, offset, timeout
        )

    async def get_pipeline_overview(
        self, target: RemoteTarget, job_name: str, build: BuildRef, *, timeout: float
    ) -> PipelineOverview:
        return await asyncio.to_thread(
            self._get_pipeline_overview, target, job_name, build, timeout
        )

    async def get_pipeline_console(
        self,
        target: RemoteTarget,
        job_name: str,
        build: BuildRef,
        stage_id: str,
        *,
        timeout: float,
    ) -> PipelineLog:
        return await asyncio.to_thread(
            self._get_pipeline_console, target, job_name, build, stage_id, timeout
        )

    async def get_build(
        self, target: RemoteTarget, job_name: str, build: BuildRef, *, timeout: float
    ) -> Build:
        return await asyncio.to_thread(self._get_build, target, job_name, build, timeout)

    async def delete_build(
        self, target: RemoteTarget, job_name: str, build_id: int, *, timeout: float
    ) -> None:
        await asyncio.to_thread(self._delete_build, target, job_name, build_id, timeout)
