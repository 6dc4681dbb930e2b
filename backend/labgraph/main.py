from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .db import get_conn
from .errors import LabGraphError, NotFoundError
from .repository import (
    EntityType,
    cleanup_orphans,
    delete_entity as repo_delete_entity,
    find_entity,
    insert_entity,
    list_entities as repo_list_entities,
    parse_entity_type,
    update_entity as repo_update_entity,
)
from .schemas import (
    CleanupResult,
    CriticalPathResult,
    Entity,
    EntityCreate,
    EntityProjection,
    EntityUpdate,
    Link,
    LinkCreate,
    LinkGraph,
    MentionFindRequest,
    MentionMatch,
    MentionScanRequest,
    MentionScanResponse,
    ReferenceResolveRequest,
    Segment,
    TaskDependency,
    TaskDependencyCreate,
    Workflow,
    WorkflowCreate,
    WorkflowUpdate,
)
from .services import link_graph, task_dependencies
from .services.mentions import (
    MentionCandidate,
    candidates_from_store,
    find_mentions,
    render_with_mentions,
    resolve_bracket_refs,
    sync_note_links,
)

logger = logging.getLogger(__name__)


def configure_logging():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("Starting LabGraph API")
    yield


app = FastAPI(title="LabGraph API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv(
            "CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
        ).split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_body(message: str, details: Any = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": message}
    if details is not None:
        body["details"] = jsonable_encoder(details)
    return body


@app.exception_handler(LabGraphError)
async def labgraph_error_handler(request: Request, exc: LabGraphError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s", exc.message, request.method, request.url.path)
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, exc.details))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content=_error_body("Validation error", exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content=_error_body(str(exc.detail)))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=_error_body("Internal server error"))


@app.get("/api/health")
def health():
    return {"status": "ok"}


def _split_ids(values: List[str]) -> List[str]:
    out: List[str] = []
    for value in values:
        out.extend(part.strip() for part in value.split(",") if part.strip())
    return out


# --- Entity Store ---


@app.get("/api/entities/{entity_type}", response_model=List[Entity])
def list_entities(entity_type: str, limit: Optional[int] = None):
    kind = parse_entity_type(entity_type)
    with get_conn() as conn:
        return repo_list_entities(conn, kind, limit=limit)


@app.post("/api/entities/{entity_type}", response_model=Entity, status_code=201)
def create_entity(entity_type: str, payload: EntityCreate):
    kind = parse_entity_type(entity_type)
    with get_conn() as conn:
        entity = insert_entity(conn, kind, payload.title, payload.attributes, entity_id=payload.id)
        if kind == EntityType.NOTE:
            sync_note_links(conn, entity["id"], entity["attributes"].get("content"))
        return entity


@app.get("/api/entities/{entity_type}/{entity_id}", response_model=Entity)
def get_entity(entity_type: str, entity_id: str):
    kind = parse_entity_type(entity_type)
    with get_conn() as conn:
        entity = find_entity(conn, kind, entity_id)
        if entity is None:
            raise NotFoundError(f"{kind.value} {entity_id} not found")
        return entity


@app.patch("/api/entities/{entity_type}/{entity_id}", response_model=Entity)
def update_entity(entity_type: str, entity_id: str, payload: EntityUpdate):
    kind = parse_entity_type(entity_type)
    with get_conn() as conn:
        entity = repo_update_entity(conn, kind, entity_id, payload.title, payload.attributes)
        if kind == EntityType.NOTE and "content" in payload.attributes:
            sync_note_links(conn, entity_id, entity["attributes"].get("content"))
        return entity


@app.delete("/api/entities/{entity_type}/{entity_id}")
def delete_entity(entity_type: str, entity_id: str):
    kind = parse_entity_type(entity_type)
    with get_conn() as conn:
        removed = repo_delete_entity(conn, kind, entity_id)
        return {"status": "deleted", "removed": removed}


# --- Link Graph ---


@app.get("/api/links", response_model=List[Link], response_model_exclude_none=True)
def list_links(
    source_type: Optional[str] = Query(None, alias="sourceType"),
    source_id: Optional[str] = Query(None, alias="sourceId"),
    target_type: Optional[str] = Query(None, alias="targetType"),
    target_id: Optional[str] = Query(None, alias="targetId"),
    limit: Optional[int] = None,
):
    with get_conn() as conn:
        return link_graph.list_links(
            conn,
            limit=limit,
            source_type=source_type,
            source_id=source_id,
            target_type=target_type,
            target_id=target_id,
        )


@app.get(
    "/api/links/backlinks/{entity_type}/{entity_id}",
    response_model=List[Link],
    response_model_exclude_none=True,
)
def get_backlinks(entity_type: str, entity_id: str):
    with get_conn() as conn:
        return link_graph.get_backlinks(conn, entity_type, entity_id)


@app.get(
    "/api/links/outgoing/{entity_type}/{entity_id}",
    response_model=List[Link],
    response_model_exclude_none=True,
)
def get_outgoing(entity_type: str, entity_id: str):
    with get_conn() as conn:
        return link_graph.get_outgoing(conn, entity_type, entity_id)


@app.post("/api/links", response_model=Link, status_code=201, response_model_exclude_none=True)
def create_link(payload: LinkCreate):
    with get_conn() as conn:
        return link_graph.create_link(
            conn,
            payload.source_type,
            payload.source_id,
            payload.target_type,
            payload.target_id,
            metadata=payload.metadata,
        )


@app.delete("/api/links/{link_id}", status_code=204)
def delete_link(link_id: str):
    with get_conn() as conn:
        link_graph.delete_link(conn, link_id)
    return Response(status_code=204)


@app.get("/api/links/graph", response_model=LinkGraph, response_model_exclude_none=True)
def get_link_graph(
    entity_type: Optional[str] = Query(None, alias="entityType"),
    max_depth: Optional[int] = Query(None, alias="maxDepth"),
    limit: Optional[int] = None,
):
    with get_conn() as conn:
        return link_graph.get_graph(conn, entity_type=entity_type, max_depth=max_depth, limit=limit)


@app.get("/api/links/search/{query}", response_model=List[EntityProjection])
def search_linkable(query: str, limit: Optional[int] = None, type: Optional[str] = None):
    with get_conn() as conn:
        return link_graph.search(conn, query, limit=limit, entity_type=type)


# --- Task dependencies ---


@app.get(
    "/api/task-dependencies/task/{task_id}",
    response_model=List[TaskDependency],
    response_model_exclude_none=True,
)
def get_task_dependencies(task_id: str):
    with get_conn() as conn:
        return task_dependencies.get_by_task(conn, task_id)


@app.post(
    "/api/task-dependencies",
    response_model=TaskDependency,
    status_code=201,
    response_model_exclude_none=True,
)
def create_task_dependency(payload: TaskDependencyCreate):
    with get_conn() as conn:
        return task_dependencies.create_dependency(
            conn, payload.from_task_id, payload.to_task_id, payload.dependency_type
        )


@app.delete("/api/task-dependencies/{dependency_id}", status_code=204)
def delete_task_dependency(dependency_id: str):
    with get_conn() as conn:
        task_dependencies.delete_dependency(conn, dependency_id)
    return Response(status_code=204)


@app.get("/api/task-dependencies/critical-path", response_model=CriticalPathResult)
def get_critical_path(task_ids: List[str] = Query([], alias="taskIds")):
    with get_conn() as conn:
        result = task_dependencies.critical_path_for_tasks(conn, _split_ids(task_ids))
        return result.to_dict()


# --- Workflows ---


@app.get("/api/task-flow-management/workflows", response_model=List[Workflow])
def list_workflows():
    with get_conn() as conn:
        return task_dependencies.list_workflows(conn)


@app.post("/api/task-flow-management/workflows", response_model=Workflow, status_code=201)
def create_workflow(payload: WorkflowCreate):
    with get_conn() as conn:
        return task_dependencies.create_workflow(
            conn,
            payload.name,
            payload.type,
            payload.task_ids,
            description=payload.description,
            metadata=payload.metadata,
        )


@app.get("/api/task-flow-management/workflows/{workflow_id}", response_model=Workflow)
def get_workflow(workflow_id: str):
    with get_conn() as conn:
        return task_dependencies.get_workflow(conn, workflow_id)


@app.put("/api/task-flow-management/workflows/{workflow_id}", response_model=Workflow)
def update_workflow(workflow_id: str, payload: WorkflowUpdate):
    with get_conn() as conn:
        return task_dependencies.update_workflow(
            conn, workflow_id, payload.model_dump(exclude_unset=True)
        )


@app.delete("/api/task-flow-management/workflows/{workflow_id}", status_code=204)
def delete_workflow(workflow_id: str):
    with get_conn() as conn:
        task_dependencies.delete_workflow(conn, workflow_id)
    return Response(status_code=204)


@app.get(
    "/api/task-flow-management/workflows/{workflow_id}/critical-path",
    response_model=CriticalPathResult,
)
def get_workflow_critical_path(workflow_id: str):
    with get_conn() as conn:
        return task_dependencies.workflow_critical_path(conn, workflow_id).to_dict()


# --- Mentions ---


@app.post("/api/mentions/find", response_model=List[MentionMatch])
def find_text_mentions(payload: MentionFindRequest):
    candidates = [
        MentionCandidate(
            entity_type=parse_entity_type(c.entity_type).value,
            entity_id=c.entity_id,
            name=c.name,
            synonyms=tuple(c.synonyms),
        )
        for c in payload.candidates
    ]
    return [m.to_dict() for m in find_mentions(payload.text, candidates)]


@app.post("/api/mentions/scan", response_model=MentionScanResponse)
def scan_text_mentions(payload: MentionScanRequest):
    with get_conn() as conn:
        candidates = candidates_from_store(conn, payload.entity_types)
    matches = find_mentions(payload.text, candidates)
    return {
        "matches": [m.to_dict() for m in sorted(matches, key=lambda m: m.start)],
        "segments": [s.to_dict() for s in render_with_mentions(payload.text, matches)],
    }


@app.post(
    "/api/mentions/resolve-references",
    response_model=List[Segment],
    response_model_exclude_none=True,
)
def resolve_references(payload: ReferenceResolveRequest):
    with get_conn() as conn:
        notes = repo_list_entities(conn, EntityType.NOTE)
    return [s.to_dict() for s in resolve_bracket_refs(payload.text, notes)]


# --- Maintenance ---


@app.post("/api/maintenance/cleanup", response_model=CleanupResult)
def maintenance_cleanup():
    with get_conn() as conn:
        return cleanup_orphans(conn)
