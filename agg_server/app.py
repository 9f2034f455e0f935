import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from agg_adapters import ADAPTER_KINDS, default_clients
from agg_common.errors import (
    AggregatorError,
    AuthRejected,
    DuplicateError,
    NotFound,
    RemoteError,
    Unreachable,
    ValidationError,
)
from agg_common.models import BuildRelation
from agg_engine.engine import AggregationEngine
from agg_engine.janitor import CacheJanitor
from agg_engine.registry import NodeRegistry
from agg_persistence.sqlite_repository import SQLiteNodeRepository

from .config import load_settings
from .schemas import (
    ConsoleRequest,
    JobControl,
    NodeCreate,
    NodeRef,
    NodeUpdate,
    ViewCreate,
    ViewUpdate,
)

logger = logging.getLogger(__name__)

# Global instances (initialized at startup)
repository: SQLiteNodeRepository | None = None
engine: AggregationEngine | None = None
janitor: CacheJanitor | None = None

ERROR_STATUS: dict[type[AggregatorError], int] = {
    NotFound: 404,
    DuplicateError: 409,
    ValidationError: 422,
    AuthRejected: 502,
    RemoteError: 502,
    Unreachable: 504,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI app.

    Handles startup and shutdown events:
    - Startup: open the node registry store, build the engine, start the
      cache janitor
    - Shutdown: stop the janitor, close the store
    """
    global repository, engine, janitor

    settings = load_settings()
    logger.info(f"Opening node registry at {settings.db_path}")
    repository = SQLiteNodeRepository(settings.db_path)
    await repository.initialize()

    registry = NodeRegistry(repository, supported_kinds=set(ADAPTER_KINDS))
    engine = AggregationEngine(
        registry,
        default_clients(),
        timeout=settings.remote_timeout,
        view_cache_ttl=settings.view_cache_ttl,
        poll_ttl=settings.poll_cache_ttl,
    )
    janitor = CacheJanitor(engine, interval=settings.janitor_interval)
    await janitor.start()

    yield

    await janitor.stop()
    await engine.close()
    if repository:
        await repository.close()


app = FastAPI(lifespan=lifespan)


def get_engine() -> AggregationEngine:
    """
    Get the global engine instance.

    Raises:
        RuntimeError: If the engine is not initialized
    """
    if engine is None:
        raise RuntimeError("Engine not initialized")
    return engine


def ok(data: Any = None) -> dict[str, Any]:
    """Wrap a result in the response envelope."""
    return {"success": True, "data": data}


def status_for(exc: AggregatorError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS:
            return ERROR_STATUS[error_type]
    return 500


@app.exception_handler(AggregatorError)
async def aggregator_error_handler(request: Request, exc: AggregatorError) -> JSONResponse:
    return JSONResponse(
        status_code=status_for(exc),
        content={"success": False, "data": exc.to_dict()},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "data": {
                "kind": ValidationError.kind,
                "message": "Invalid request",
                "retryable": False,
                "errors": jsonable_encoder(exc.errors()),
            },
        },
    )


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


# ============================================================================
# Nodes
# ============================================================================


@app.post("/server/node")
async def add_node(
    body: NodeCreate, eng: AggregationEngine = Depends(get_engine)
) -> dict[str, Any]:
    """Register a node; the password is stored but never returned."""
    node = await eng.add_node(
        host=body.host,
        port=body.port,
        account=body.account,
        credential=body.password,
        kind=body.kind,
        name=body.name,
    )
    return ok(node.to_dict())


@app.get("/server/node")
@app.get("/server/nodes")
async def list_nodes(
    host: str | None = None,
    account: str | None = None,
    kind: str | None = None,
    eng: AggregationEngine = Depends(get_engine),
) -> dict[str, Any]:
    nodes = await eng.list_nodes(host=host, account=account, kind=kind)
    return ok([node.to_dict() for node in nodes])


@app.put("/server/node")
async def update_node(
    body: NodeUpdate, eng: AggregationEngine = Depends(get_engine)
) -> dict[str, Any]:
    node = await eng.update_node(body.id, body.patch())
    return ok(node.to_dict())


@app.delete("/server/node/{node_id}")
async def delete_node(
    node_id: str, eng: AggregationEngine = Depends(get_engine)
) -> dict[str, Any]:
    await eng.remove_node(node_id)
    return ok({"id": node_id})


# ============================================================================
# Views
# ============================================================================


@app.post("/server/node_view/get/view")
async def get_views(
    body: NodeRef, eng: AggregationEngine = Depends(get_engine)
) -> dict[str, Any]:
    views = await eng.list_views(body.node_id)
    return ok(views.to_dict())


@app.post("/server/node_view/{node_id}/view")
async def add_view(
    node_id: str, body: ViewCreate, eng: AggregationEngine = Depends(get_engine)
) -> dict[str, Any]:
    view = await eng.create_view(node_id, body.name, body.jobs, body.description)
    return ok(view.to_dict())


@app.get("/server/node_view/{node_id}/view/{view_id}")
async def get_view(
    node_id: str, view_id: str, eng: AggregationEngine = Depends(get_engine)
) -> dict[str, Any]:
    view = await eng.get_view(node_id, view_id)
    return ok(view.to_dict())


@app.put("/server/node_view/{node_id}/view/{view_id}")
async def update_view(
    node_id: str,
    view_id: str,
    body: ViewUpdate,
    eng: AggregationEngine = Depends(get_engine),
) -> dict[str, Any]:
    view = await eng.update_view(
        node_id,
        view_id,
        new_name=body.name,
        add_jobs=body.add_jobs,
        remove_jobs=body.remove_jobs,
        description=body.description,
    )
    return ok(view.to_dict())


@app.delete("/server/node_view/{node_id}/view/{view_id}")
async def delete_view(
    node_id: str, view_id: str, eng: AggregationEngine = Depends(get_engine)
) -> dict[str, Any]:
    await eng.delete_view(node_id, view_id)
    return ok({"node_id": node_id, "view_id": view_id})


# ============================================================================
# Jobs
# ============================================================================


@app.post("/server/view_jobs/get/job")
async def list_jobs(
    node_id: str = Query(alias="nodeId"),
    view_id: str = Query(alias="viewId"),
    eng: AggregationEngine = Depends(get_engine),
) -> dict[str, Any]:
    jobs = await eng.list_jobs(node_id, view_id)
    return ok(jobs.to_dict())


@app.get("/server/view_jobs/all")
async def list_all_jobs(eng: AggregationEngine = Depends(get_engine)) -> dict[str, Any]:
    """Jobs of every node; unreachable nodes appear as per-node errors."""
    result = await eng.list_all_jobs()
    return ok(result.to_dict())


@app.post("/server/view_jobs/start/job")
async def start_job(
    body: JobControl, eng: AggregationEngine = Depends(get_engine)
) -> dict[str, Any]:
    result = await eng.start_job(
        body.job_name,
        node_id=body.node_id,
        override=body.override(),
        parameters=body.parameters,
    )
    return ok(result.to_dict())


@app.post("/server/view_jobs/stop/job")
async def stop_job(
    body: JobControl, eng: AggregationEngine = Depends(get_engine)
) -> dict[str, Any]:
    result = await eng.stop_job(
        body.job_name, node_id=body.node_id, override=body.override()
    )
    return ok(result.to_dict())


@app.post("/server/view_console/get")
async def get_console(
    body: ConsoleRequest, eng: AggregationEngine = Depends(get_engine)
) -> dict[str, Any]:
    """
    Console text from an offset. Poll again with data.next_offset until
    data.complete is true.
    """
    chunk = await eng.get_console(
        body.node_id,
        body.view_id,
        body.job_name,
        build=body.build_id,
        offset=body.offset,
        override=body.override(),
    )
    return ok(chunk.to_dict())


# ============================================================================
# Builds and pipelines
# ============================================================================


@app.get("/server/node_view/{node_id}/view/{view_id}/build/previous")
async def previous_build(
    node_id: str,
    view_id: str,
    job: str,
    build: int,
    eng: AggregationEngine = Depends(get_engine),
) -> dict[str, Any]:
    result = await eng.get_relative_build(
        node_id, view_id, job, build, BuildRelation.PREVIOUS
    )
    return ok(result.to_dict())


@app.get("/server/node_view/{node_id}/view/{view_id}/build/next")
async def next_build(
    node_id: str,
    view_id: str,
    job: str,
    build: int,
    eng: AggregationEngine = Depends(get_engine),
) -> dict[str, Any]:
    result = await eng.get_relative_build(
        node_id, view_id, job, build, BuildRelation.NEXT
    )
    return ok(result.to_dict())


@app.get("/server/node_view/{node_id}/view/{view_id}/build/{build_id}")
async def get_build(
    node_id: str,
    view_id: str,
    build_id: int,
    job: str,
    eng: AggregationEngine = Depends(get_engine),
) -> dict[str, Any]:
    result = await eng.get_build(node_id, view_id, job, build_id)
    return ok(result.to_dict())


@app.delete("/server/node_view/{node_id}/view/{view_id}/build/{build_id}")
async def delete_build(
    node_id: str,
    view_id: str,
    build_id: int,
    job: str,
    eng: AggregationEngine = Depends(get_engine),
) -> dict[str, Any]:
    await eng.delete_build(node_id, view_id, job, build_id)
    return ok({"job": job, "build_id": build_id})


@app.get("/server/node_view/{node_id}/view/{view_id}/pipeline/overview")
async def pipeline_overview(
    node_id: str,
    view_id: str,
    job: str,
    build: int | None = None,
    eng: AggregationEngine = Depends(get_engine),
) -> dict[str, Any]:
    overview = await eng.get_pipeline_overview(node_id, view_id, job, build)
    return ok(overview.to_dict())


@app.get("/server/node_view/{node_id}/view/{view_id}/pipeline/console")
async def pipeline_console(
    node_id: str,
    view_id: str,
    job: str,
    stage: str,
    build: int | None = None,
    eng: AggregationEngine = Depends(get_engine),
) -> dict[str, Any]:
    log = await eng.get_pipeline_console(node_id, view_id, job, stage, build)
    return ok(log.to_dict())
