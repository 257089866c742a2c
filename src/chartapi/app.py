from __future__ import annotations

import os
from contextlib import asynccontextmanager

import anyio
from fastapi import Body, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .chart_contract import (
    ChartCreatedResponseV1,
    ChartCreateRequestV1,
    ChartListResponseV1,
    ChartUpsertRequestV1,
    ChartV1,
    EditingGraphResponseV1,
    ErrorBody,
    ErrorResponse,
    FeedbackRequestV1,
    FeedbackResultV1,
    GraphChangeRequestV1,
    GraphDocumentV1,
    NodeEditRequestV1,
    PermissionsResponseV1,
    PublishRequestV1,
    ResourceListResponseV1,
    UpdateResultV1,
    UpsertResultV1,
    UserListResponseV1,
)
from .chart_service import ChartService
from .chart_store import ChartStore, ChartStoreError

REQUEST_TIMEOUT_SECONDS = float(os.getenv("CHARTAPI_REQUEST_TIMEOUT_SECONDS", "15"))
MAX_REQUEST_BYTES = int(os.getenv("CHARTAPI_MAX_REQUEST_BYTES", "1048576"))

_LOCAL_DEV_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:9000",
    "http://127.0.0.1:9000",
]


def _env_bool(name: str, *, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _cors_config() -> tuple[list[str], bool]:
    origins = [origin.strip() for origin in os.getenv("CHARTAPI_CORS_ORIGINS", "").split(",") if origin.strip()]
    allow_credentials = _env_bool("CHARTAPI_CORS_ALLOW_CREDENTIALS", default=False)
    if not origins:
        origins = list(_LOCAL_DEV_ORIGINS)
    if allow_credentials and "*" in origins:
        raise RuntimeError("CHARTAPI_CORS_ALLOW_CREDENTIALS requires explicit non-wildcard origins.")
    return origins, allow_credentials


chart_store = ChartStore.from_env()
chart_service = ChartService(chart_store)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    chart_store.open()
    try:
        yield
    finally:
        chart_store.close()


app = FastAPI(
    title="ChartAPI",
    description=(
        "Collaborative chart editing API. Charts own a published graph, an optional "
        "draft (editing) graph and an append-only publish history."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

_cors_origins, _cors_allow_credentials = _cors_config()
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=_cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def _chart_http_error(exc: ChartStoreError) -> HTTPException:
    body = ErrorResponse(
        error=ErrorBody(code=exc.code, message=exc.message, details=exc.details)
    )
    return HTTPException(status_code=exc.status_code, detail=body.model_dump()["error"])


def _http_error(status_code: int, code: str, message: str) -> HTTPException:
    return _chart_http_error(ChartStoreError(status_code=status_code, code=code, message=message))


def _chart_not_found(chart_id: str) -> HTTPException:
    return _http_error(404, "CHART_NOT_FOUND", f"Chart '{chart_id}' was not found.")


def _acting_user(x_user_id: str | None) -> str | None:
    value = (x_user_id or "").strip()
    return value or None


@app.middleware("http")
async def request_limits_and_timeout(request, call_next):
    content_length = request.headers.get("content-length")
    if content_length is not None:
        try:
            if int(content_length) > MAX_REQUEST_BYTES:
                return JSONResponse(status_code=413, content={"detail": "Request body too large."})
        except ValueError:
            return JSONResponse(status_code=400, content={"detail": "Invalid Content-Length header."})

    try:
        with anyio.fail_after(REQUEST_TIMEOUT_SECONDS):
            return await call_next(request)
    except TimeoutError:
        return JSONResponse(status_code=504, content={"detail": "Request timed out."})


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/charts/mine", response_model=ChartListResponseV1, tags=["charts"])
def list_my_charts(x_user_id: str | None = Header(default=None)) -> ChartListResponseV1:
    try:
        return ChartListResponseV1(charts=chart_service.list_mine(_acting_user(x_user_id)))
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc


@app.get("/v1/charts/catalog", response_model=ChartListResponseV1, tags=["charts"])
def list_catalog_charts() -> ChartListResponseV1:
    try:
        return ChartListResponseV1(charts=chart_service.list_catalog())
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc


@app.get("/v1/charts/top", response_model=ChartListResponseV1, tags=["charts"])
def list_top_charts(n: int = Query(default=10, ge=1, le=100)) -> ChartListResponseV1:
    try:
        return ChartListResponseV1(charts=chart_service.find_top_by_downloads(n))
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc


@app.get("/v1/charts", response_model=ChartListResponseV1, tags=["charts"])
def get_many_charts(ids: list[str] = Query(default=[])) -> ChartListResponseV1:
    try:
        return ChartListResponseV1(charts=chart_service.get_many(ids))
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc


@app.post(
    "/v1/charts",
    response_model=ChartCreatedResponseV1,
    status_code=201,
    tags=["charts"],
    responses=_ERROR_RESPONSES,
)
def insert_chart(
    request: ChartCreateRequestV1,
    x_user_id: str | None = Header(default=None),
) -> ChartCreatedResponseV1:
    try:
        chart_id = chart_service.insert(request.name, request.description, _acting_user(x_user_id))
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc
    return ChartCreatedResponseV1(chartId=chart_id)


@app.put("/v1/charts", response_model=UpsertResultV1, tags=["charts"], responses=_ERROR_RESPONSES)
def upsert_chart(
    request: ChartUpsertRequestV1,
    x_user_id: str | None = Header(default=None),
) -> UpsertResultV1:
    try:
        return chart_service.upsert(request, _acting_user(x_user_id))
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc


@app.get("/v1/charts/{chart_id}", response_model=ChartV1, tags=["charts"], responses=_ERROR_RESPONSES)
def get_chart(chart_id: str) -> ChartV1:
    try:
        chart = chart_service.get(chart_id)
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc
    if chart is None:
        raise _chart_not_found(chart_id)
    return chart


@app.delete("/v1/charts/{chart_id}", response_model=UpdateResultV1, tags=["charts"], responses=_ERROR_RESPONSES)
def remove_chart(chart_id: str, x_user_id: str | None = Header(default=None)) -> UpdateResultV1:
    try:
        removed = chart_service.remove(chart_id, _acting_user(x_user_id))
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc
    if removed is None:
        raise _chart_not_found(chart_id)
    return UpdateResultV1(updated=removed)


@app.get("/v1/charts/{chart_id}/permissions", response_model=PermissionsResponseV1, tags=["charts"])
def get_chart_permissions(chart_id: str, x_user_id: str | None = Header(default=None)) -> PermissionsResponseV1:
    user_id = _acting_user(x_user_id)
    try:
        return PermissionsResponseV1(
            chartId=chart_id,
            canEdit=chart_service.can_edit(chart_id, user_id),
            isOwner=chart_service.is_owner(chart_id, user_id),
        )
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc


@app.get(
    "/v1/charts/{chart_id}/editing-graph",
    response_model=EditingGraphResponseV1,
    tags=["graphs"],
    responses=_ERROR_RESPONSES,
)
def get_editing_graph(chart_id: str) -> EditingGraphResponseV1:
    try:
        graph_id = chart_service.get_editing_graph_id(chart_id)
        graph = chart_service.get_graph(graph_id) if graph_id is not None else None
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc
    if graph_id is None or graph is None:
        raise _http_error(404, "GRAPH_NOT_FOUND", f"Chart '{chart_id}' has no resolvable editing graph.")
    return EditingGraphResponseV1(chartId=chart_id, graphId=graph_id, graph=graph)


@app.put(
    "/v1/charts/{chart_id}/editing-graph",
    response_model=UpdateResultV1,
    tags=["graphs"],
    responses=_ERROR_RESPONSES,
)
def update_editing_graph(
    chart_id: str,
    graph: dict = Body(...),
    x_user_id: str | None = Header(default=None),
) -> UpdateResultV1:
    try:
        updated = chart_service.update_editing_graph(chart_id, graph, _acting_user(x_user_id))
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc
    if updated is None:
        if chart_service.get(chart_id) is None:
            raise _chart_not_found(chart_id)
        raise _http_error(403, "CHART_ACCESS_DENIED", f"Editing graph of chart '{chart_id}' cannot be updated.")
    return UpdateResultV1(updated=updated)


@app.put(
    "/v1/charts/{chart_id}/editing-graph/nodes/{node_id}",
    response_model=GraphDocumentV1,
    tags=["graphs"],
    responses=_ERROR_RESPONSES,
)
def edit_node(
    chart_id: str,
    node_id: str,
    request: NodeEditRequestV1,
    x_user_id: str | None = Header(default=None),
) -> GraphDocumentV1:
    try:
        graph = chart_service.edit_node(chart_id, node_id, request, _acting_user(x_user_id))
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc
    if graph is None:
        raise _http_error(404, "NODE_NOT_EDITABLE", f"Node '{node_id}' of chart '{chart_id}' cannot be edited.")
    return graph


@app.post(
    "/v1/charts/{chart_id}/publish",
    response_model=UpdateResultV1,
    tags=["graphs"],
    responses={**_ERROR_RESPONSES, 409: {"model": ErrorResponse}},
)
def publish_editing_graph(
    chart_id: str,
    request: PublishRequestV1,
    x_user_id: str | None = Header(default=None),
) -> UpdateResultV1:
    try:
        published = chart_service.publish(
            chart_id,
            request.comments,
            _acting_user(x_user_id),
            version=request.version,
        )
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc
    if published is False:
        if chart_service.get(chart_id) is None:
            raise _chart_not_found(chart_id)
        if _acting_user(x_user_id) is None:
            raise _http_error(403, "CHART_ACCESS_DENIED", "A user must be logged in to publish a chart.")
        raise _http_error(409, "CHART_NOTHING_TO_PUBLISH", f"Chart '{chart_id}' has no editing graph to publish.")
    return UpdateResultV1(updated=published)


@app.post(
    "/v1/charts/{chart_id}/graph-changes",
    response_model=UpdateResultV1,
    tags=["graphs"],
    responses=_ERROR_RESPONSES,
)
def record_graph_change(
    chart_id: str,
    request: GraphChangeRequestV1,
    x_user_id: str | None = Header(default=None),
) -> UpdateResultV1:
    try:
        updated = chart_service.record_graph_change(
            chart_id,
            request.graphId,
            request.version,
            request.comments,
            _acting_user(x_user_id),
        )
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc
    if updated is None:
        raise _http_error(403, "CHART_ACCESS_DENIED", "A user must be logged in to change a chart's graph.")
    return UpdateResultV1(updated=updated)


@app.post("/v1/charts/{chart_id}/downloads", response_model=UpdateResultV1, tags=["charts"])
def increment_chart_downloads(chart_id: str) -> UpdateResultV1:
    try:
        return UpdateResultV1(updated=chart_service.increment_downloads(chart_id))
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc


@app.get(
    "/v1/charts/{chart_id}/resources",
    response_model=ResourceListResponseV1,
    tags=["charts"],
    responses=_ERROR_RESPONSES,
)
def get_chart_resources(chart_id: str) -> ResourceListResponseV1:
    try:
        resources = chart_service.collect_resources(chart_id)
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc
    if resources is None:
        raise _chart_not_found(chart_id)
    return ResourceListResponseV1(chartId=chart_id, resources=resources)


@app.get(
    "/v1/charts/{chart_id}/users",
    response_model=UserListResponseV1,
    tags=["charts"],
    responses=_ERROR_RESPONSES,
)
def get_chart_users(chart_id: str) -> UserListResponseV1:
    try:
        users = chart_service.collect_contributing_users(chart_id)
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc
    if users is None:
        raise _chart_not_found(chart_id)
    return UserListResponseV1(chartId=chart_id, userIds=users)


@app.put(
    "/v1/charts/{chart_id}/feedback",
    response_model=FeedbackResultV1,
    tags=["charts"],
    responses=_ERROR_RESPONSES,
)
def set_chart_feedback(
    chart_id: str,
    request: FeedbackRequestV1,
    x_user_id: str | None = Header(default=None),
) -> FeedbackResultV1:
    if _acting_user(x_user_id) != request.userId:
        raise _http_error(403, "FEEDBACK_USER_MISMATCH", "Feedback can only be given as the current user.")
    try:
        ok = chart_service.set_feedback(chart_id, request.userId, request.feedback, request.clear)
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc
    return FeedbackResultV1(ok=ok)


@app.get("/v1/graphs/{graph_id}", response_model=GraphDocumentV1, tags=["graphs"], responses=_ERROR_RESPONSES)
def get_graph(graph_id: str) -> GraphDocumentV1:
    try:
        graph = chart_service.get_graph(graph_id)
    except ChartStoreError as exc:
        raise _chart_http_error(exc) from exc
    if graph is None:
        raise _http_error(404, "GRAPH_NOT_FOUND", f"Graph '{graph_id}' was not found.")
    return graph
