"""
Unit tests for agg_adapters.jenkins module.

Tests the Jenkins status mapping, the HTTP error mapping and the request
shapes, with requests.Session mocked out.
"""

from unittest.mock import MagicMock, Mock, patch

import pytest
import requests

from agg_adapters import get_client
from agg_adapters.jenkins import (
    JenkinsClient,
    build_path,
    job_path,
    status_from_color,
    view_path,
)
from agg_common.errors import AuthRejected, NotFound, RemoteError, Unreachable, ValidationError
from agg_common.models import BuildRelation, JobStatus, RemoteTarget

TARGET = RemoteTarget(host="ci.example.com", port=8080, account="svc", password="s3cret", node_id="n1")


def make_response(status_code=200, json_body=None, content=b"", headers=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.headers = headers or {}
    response.content = content
    response.text = text
    if json_body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = json_body
    return response


@pytest.fixture
def session():
    """A mocked requests.Session usable as a context manager."""
    mock_session = MagicMock()
    mock_session.__enter__.return_value = mock_session
    mock_session.headers = {}
    with patch("agg_adapters.jenkins.requests.Session", return_value=mock_session):
        yield mock_session


@pytest.fixture
def client():
    return JenkinsClient(max_retries=1)


class TestStatusMapping:
    """Test suite for status_from_color."""

    @pytest.mark.parametrize(
        "color,expected",
        [
            ("blue", JobStatus.SUCCEEDED),
            ("red", JobStatus.FAILED),
            ("yellow", JobStatus.FAILED),
            ("blue_anime", JobStatus.RUNNING),
            ("red_anime", JobStatus.RUNNING),
            ("notbuilt", JobStatus.IDLE),
            ("disabled", JobStatus.IDLE),
            ("aborted", JobStatus.IDLE),
            ("grey", JobStatus.IDLE),
            ("chartreuse", JobStatus.UNKNOWN),
            (None, JobStatus.UNKNOWN),
        ],
    )
    def test_status_from_color(self, color, expected):
        assert status_from_color(color) is expected


class TestPaths:
    """Test suite for URL path helpers."""

    def test_job_path_expands_folders(self):
        assert job_path("team/app") == "/job/team/job/app"

    def test_paths_are_quoted(self):
        assert view_path("My View") == "/view/My%20View"
        assert build_path("app", 12) == "/job/app/12"
        assert build_path("app", "lastBuild") == "/job/app/lastBuild"


class TestErrorMapping:
    """Test suite for HTTP failure mapping."""

    @pytest.mark.parametrize(
        "status,error",
        [(401, AuthRejected), (403, AuthRejected), (404, NotFound), (500, RemoteError)],
    )
    def test_status_codes(self, client, session, status, error):
        session.request.return_value = make_response(status, text="nope")

        with pytest.raises(error) as exc_info:
            client._list_views(TARGET, 5)

        assert exc_info.value.node_id == "n1"

    def test_remote_error_keeps_code(self, client, session):
        session.request.return_value = make_response(503, text="maintenance")

        with pytest.raises(RemoteError) as exc_info:
            client._list_views(TARGET, 5)

        assert exc_info.value.code == 503

    def test_timeout_is_unreachable_without_retry(self, client, session):
        session.request.side_effect = requests.Timeout("slow")

        with pytest.raises(Unreachable):
            client._list_views(TARGET, 5)

        assert session.request.call_count == 1

    def test_connection_error_retried_for_get(self, client, session):
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(Unreachable):
            client._list_views(TARGET, 5)

        assert session.request.call_count == 2

    def test_connection_error_recovers_on_retry(self, client, session):
        session.request.side_effect = [
            requests.ConnectionError("refused"),
            make_response(json_body={"views": []}),
        ]

        assert client._list_views(TARGET, 5) == []

    def test_post_never_retried(self, client, session):
        crumb = make_response(json_body={"crumbRequestField": "Jenkins-Crumb", "crumb": "abc"})
        session.request.side_effect = [crumb, requests.ConnectionError("reset")]

        with pytest.raises(Unreachable):
            client._delete_view(TARGET, "Nightly", 5)

        assert session.request.call_count == 2

    def test_invalid_json_is_remote_error(self, client, session):
        session.request.return_value = make_response(200, json_body=None)

        with pytest.raises(RemoteError):
            client._list_views(TARGET, 5)


class TestReads:
    """Test suite for read operations."""

    def test_session_uses_basic_auth(self, client, session):
        session.request.return_value = make_response(json_body={"views": []})

        client._list_views(TARGET, 5)

        assert session.auth == ("svc", "s3cret")

    def test_list_views(self, client, session):
        session.request.return_value = make_response(
            json_body={
                "views": [
                    {"name": "All", "url": "http://ci/view/All/", "jobs": [{"name": "build"}]},
                    {"name": "Empty", "jobs": []},
                ]
            }
        )

        views = client._list_views(TARGET, 5)

        assert [v.id for v in views] == ["All", "Empty"]
        assert views[0].jobs == ["build"]
        assert views[0].node_id == "n1"
        args, kwargs = session.request.call_args
        assert args == ("GET", "http://ci.example.com:8080/api/json")
        assert kwargs["timeout"] == 5

    def test_list_jobs(self, client, session):
        session.request.return_value = make_response(
            json_body={
                "name": "All",
                "jobs": [
                    {"name": "build", "color": "blue", "lastBuild": {"number": 7}},
                    {"name": "deploy", "color": "red_anime"},
                    {"name": "queued", "color": "blue", "inQueue": True},
                ],
            }
        )

        jobs = client._list_jobs(TARGET, "All", 5)

        assert [(j.name, j.status) for j in jobs] == [
            ("build", JobStatus.SUCCEEDED),
            ("deploy", JobStatus.RUNNING),
            ("queued", JobStatus.RUNNING),
        ]
        assert jobs[0].last_build_id == 7
        assert jobs[0].view_id == "All"

    def test_get_build(self, client, session):
        session.request.return_value = make_response(
            json_body={
                "number": 5,
                "timestamp": 1700000000000,
                "result": "SUCCESS",
                "building": False,
                "duration": 3000,
                "previousBuild": {"number": 4},
                "nextBuild": None,
            }
        )

        build = client._get_build(TARGET, "app", 5, 5)

        assert build.id == 5
        assert build.finished
        assert build.previous_id == 4
        assert build.next_id is None
        assert build.started_at.year == 2023

    def test_console_uses_size_headers(self, client, session):
        session.request.return_value = make_response(
            content=b"more output\n",
            headers={"X-Text-Size": "112", "X-More-Data": "true"},
        )

        chunk = client._get_console(TARGET, "app", 5, 100, 5)

        assert chunk.text == "more output\n"
        assert chunk.next_offset == 112
        assert chunk.complete is False
        _, kwargs = session.request.call_args
        assert kwargs["params"] == {"start": 100}

    def test_console_complete_without_more_data(self, client, session):
        session.request.return_value = make_response(
            content=b"done\n", headers={"X-Text-Size": "5"}
        )

        chunk = client._get_console(TARGET, "app", 5, 0, 5)

        assert chunk.complete is True

    def test_pipeline_overview(self, client, session):
        session.request.return_value = make_response(
            json_body={
                "id": "9",
                "status": "IN_PROGRESS",
                "durationMillis": 1000,
                "stages": [
                    {"id": "6", "name": "Checkout", "status": "SUCCESS", "durationMillis": 200},
                    {"id": "12", "name": "Test", "status": "IN_PROGRESS"},
                ],
            }
        )

        overview = client._get_pipeline_overview(TARGET, "app", 9, 5)

        assert overview.build_id == 9
        assert [s.name for s in overview.stages] == ["Checkout", "Test"]
        assert overview.stages[0].duration_ms == 200

    def test_pipeline_console(self, client, session):
        session.request.return_value = make_response(
            json_body={"nodeId": "12", "text": "running tests", "length": 13, "hasMore": True}
        )

        log = client._get_pipeline_console(TARGET, "app", 9, "12", 5)

        assert log.stage_id == "12"
        assert log.has_more is True
        args, _ = session.request.call_args
        assert args[1].endswith("/job/app/9/execution/node/12/wfapi/log")


class TestMutations:
    """Test suite for POST operations and the CSRF crumb."""

    def test_start_job_sends_crumb(self, client, session):
        session.request.side_effect = [
            make_response(json_body={"crumbRequestField": "Jenkins-Crumb", "crumb": "abc"}),
            make_response(201),
        ]

        client._start_job(TARGET, "app", None, 5)

        method, url = session.request.call_args.args
        assert method == "POST"
        assert url == "http://ci.example.com:8080/job/app/build"
        assert session.request.call_args.kwargs["headers"] == {"Jenkins-Crumb": "abc"}
        assert session.request.call_args.kwargs["allow_redirects"] is False

    def test_start_job_with_parameters(self, client, session):
        session.request.side_effect = [
            make_response(404),
            make_response(201),
        ]

        client._start_job(TARGET, "app", {"BRANCH": "main"}, 5)

        _, url = session.request.call_args.args
        assert url.endswith("/job/app/buildWithParameters")
        assert session.request.call_args.kwargs["data"] == {"BRANCH": "main"}
        assert session.request.call_args.kwargs["headers"] == {}

    def test_stop_job(self, client, session):
        session.request.side_effect = [make_response(404), make_response(302)]

        client._stop_job(TARGET, "app", 5)

        _, url = session.request.call_args.args
        assert url.endswith("/job/app/lastBuild/stop")

    def test_delete_build(self, client, session):
        session.request.side_effect = [make_response(404), make_response(302)]

        client._delete_build(TARGET, "app", 3, 5)

        _, url = session.request.call_args.args
        assert url.endswith("/job/app/3/doDelete")

    def test_create_view(self, client, session):
        session.request.side_effect = [
            make_response(404),  # crumb
            make_response(302),  # createView
            make_response(404),  # crumb
            make_response(200),  # addJobToView
            make_response(json_body={"name": "Release", "jobs": [{"name": "deploy"}]}),
        ]

        view = client._create_view(TARGET, "Release", ["deploy"], None, 5)

        assert view.id == "Release"
        assert view.jobs == ["deploy"]
        create_call = session.request.call_args_list[1]
        assert create_call.args[1].endswith("/createView")
        assert create_call.kwargs["data"]["mode"] == "hudson.model.ListView"


class TestAsyncInterface:
    """Test suite for the async RemoteClient wrappers."""

    @pytest.mark.asyncio
    async def test_get_relative_build(self, client, session):
        session.request.side_effect = [
            make_response(json_body={"number": 5, "result": "SUCCESS", "previousBuild": {"number": 4}}),
            make_response(json_body={"number": 4, "result": "FAILURE", "nextBuild": {"number": 5}}),
        ]

        build = await client.get_relative_build(
            TARGET, "app", 5, BuildRelation.PREVIOUS, timeout=5
        )

        assert build.id == 4
        assert build.result == "FAILURE"

    @pytest.mark.asyncio
    async def test_get_relative_build_without_neighbour(self, client, session):
        session.request.return_value = make_response(json_body={"number": 5, "result": "SUCCESS"})

        with pytest.raises(NotFound):
            await client.get_relative_build(TARGET, "app", 5, BuildRelation.NEXT, timeout=5)


class TestAdapterLookup:
    """Test suite for adapter selection by node kind."""

    def test_jenkins(self):
        assert isinstance(get_client("jenkins"), JenkinsClient)

    def test_unknown_kind(self):
        with pytest.raises(ValidationError):
            get_client("gitlab")
