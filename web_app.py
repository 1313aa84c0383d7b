"""Web API for tarely: workspaces, tasks, completion of recurring tasks, and config."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import task_service
import workspace_service
from config import load as load_config
from date_utils import format_instant, parse_instant, utc_now
from recurrence import EXHAUSTED, RECURRENCE_PRESETS, compute_next_occurrence, parse_rule, recurrence_label
from task_service import ConcurrentUpdateError

app = FastAPI(title="Tarely", version="1.0")
logger = logging.getLogger("tarely.api")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """When config.debug is True, log API request method, path and status."""
    debug = load_config().debug
    if debug:
        qs = request.url.query
        logger.warning("[API] %s %s%s", request.method, request.url.path, "?" + qs if qs else "")
    response = await call_next(request)
    if debug:
        logger.warning("[API] %s %s -> %s", request.method, request.url.path, response.status_code)
    return response


@app.exception_handler(ConcurrentUpdateError)
async def _concurrent_update(request: Request, exc: ConcurrentUpdateError) -> JSONResponse:
    logger.info("[API] conflict on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def _require_api_key(x_api_key: str | None = Header(None, alias="X-API-Key")) -> None:
    """Dependency: when an API key is configured, X-API-Key must match it (401 otherwise)."""
    key = (load_config().api_key or "").strip()
    if not key:
        return
    if not x_api_key or x_api_key.strip() != key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key. Use X-API-Key header.")


api = APIRouter(prefix="/api", dependencies=[Depends(_require_api_key)])


# --- API schemas ---


class ConfigUpdate(BaseModel):
    web_ui_port: int = Field(8081, ge=1, le=65535)
    database_path: str = ""
    api_key: str = ""
    debug: bool = False
    log_level: str = "INFO"


class WorkspaceCreate(BaseModel):
    name: str
    description: str | None = None
    icon: str | None = None


class TaskCreate(BaseModel):
    workspace_id: str
    title: str
    description: str | None = None
    importance: int | None = None
    due_date: str | None = None
    recurrence: dict[str, Any] | None = None
    source: str = "manual"


class VersionBody(BaseModel):
    expected_version: int | None = None


class PreviewRequest(BaseModel):
    rule: dict[str, Any]
    basis: str | None = None
    now: str | None = None


# --- Config ---


@api.get("/config", response_model=ConfigUpdate)
def get_config() -> ConfigUpdate:
    return ConfigUpdate(**load_config().model_dump())


@api.put("/config")
def put_config(body: ConfigUpdate) -> dict[str, str]:
    c = load_config()
    try:
        updated = c.model_validate({**c.model_dump(), **body.model_dump()})
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    updated.save()
    return {"status": "saved"}


# --- Workspaces ---


@api.get("/workspaces")
def api_list_workspaces():
    return workspace_service.list_workspaces()


@api.post("/workspaces", status_code=201)
def api_create_workspace(body: WorkspaceCreate):
    try:
        return workspace_service.create_workspace(body.name, description=body.description, icon=body.icon)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@api.get("/workspaces/{workspace_id}")
def api_get_workspace(workspace_id: str):
    w = workspace_service.get_workspace(workspace_id)
    if w is None:
        raise HTTPException(status_code=404, detail="Workspace not found")
    return w


@api.put("/workspaces/{workspace_id}")
def api_update_workspace(workspace_id: str, body: dict):
    try:
        w = workspace_service.update_workspace(
            workspace_id,
            name=body.get("name"),
            description=body.get("description"),
            icon=body.get("icon"),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if w is None:
        raise HTTPException(status_code=404, detail="Workspace not found")
    return w


@api.delete("/workspaces/{workspace_id}")
def api_delete_workspace(workspace_id: str):
    if not workspace_service.delete_workspace(workspace_id):
        raise HTTPException(status_code=404, detail="Workspace not found")
    return {"status": "deleted"}


@api.get("/workspaces/{workspace_id}/counts")
def api_workspace_counts(workspace_id: str):
    """Active / dormant / completed task counts (dormant recurring tasks are not counted as active)."""
    if workspace_service.get_workspace(workspace_id) is None:
        raise HTTPException(status_code=404, detail="Workspace not found")
    return task_service.workspace_task_counts(workspace_id)


# --- Tasks ---


@api.get("/tasks")
def api_list_tasks(
    workspace_id: str | None = None,
    completed: bool | None = None,
    include_dormant: bool = False,
    search: str | None = None,
    sort_by: str = "created_at",
    order: str = "desc",
    limit: int = 500,
):
    """List tasks. Recurring tasks waiting for their next occurrence are hidden unless include_dormant=true."""
    try:
        return task_service.list_tasks(
            workspace_id,
            completed=completed,
            include_dormant=include_dormant,
            search=search,
            sort_by=sort_by,
            order=order,
            limit=min(limit, 1000),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@api.post("/tasks", status_code=201)
def api_create_task(body: TaskCreate):
    try:
        return task_service.create_task(
            body.workspace_id,
            body.title,
            description=body.description,
            importance=body.importance,
            due_date=body.due_date,
            recurrence=body.recurrence,
            source=body.source,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@api.get("/tasks/{task_id}")
def api_get_task(task_id: str):
    t = task_service.get_task(task_id)
    if t is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return t


@api.patch("/tasks/{task_id}")
def api_update_task(task_id: str, body: dict):
    """Partial update. A key that is absent is left unchanged; "recurrence": null removes the rule."""
    _UNSET = task_service._UNSET
    try:
        t = task_service.update_task(
            task_id,
            title=body.get("title"),
            description=body.get("description"),
            importance=body["importance"] if "importance" in body else _UNSET,
            due_date=(body["due_date"] or None) if "due_date" in body else _UNSET,
            recurrence=body["recurrence"] if "recurrence" in body else _UNSET,
            expected_version=body.get("expected_version"),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if t is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return t


@api.delete("/tasks/{task_id}")
def api_delete_task(task_id: str):
    if not task_service.delete_task(task_id):
        raise HTTPException(status_code=404, detail="Task not found")
    return {"status": "deleted"}


@api.post("/tasks/{task_id}/complete")
def api_complete_task(task_id: str, body: VersionBody | None = None):
    """Complete a task; a recurring task advances to its next occurrence instead."""
    t = task_service.complete_task(task_id, expected_version=body.expected_version if body else None)
    if t is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return t


@api.post("/tasks/{task_id}/restore")
def api_restore_task(task_id: str, body: VersionBody | None = None):
    t = task_service.restore_task(task_id, expected_version=body.expected_version if body else None)
    if t is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return t


@api.get("/tasks/{task_id}/history")
def api_task_history(task_id: str, limit: int = 100):
    if task_service.get_task(task_id) is None:
        raise HTTPException(status_code=404, detail="Task not found")
    return task_service.get_task_history(task_id, limit=min(limit, 1000))


# --- Recurrence ---


@api.get("/recurrence/presets")
def api_recurrence_presets():
    return [{"label": p.label, "rule": p.rule.to_wire()} for p in RECURRENCE_PRESETS]


@api.post("/recurrence/preview")
def api_recurrence_preview(body: PreviewRequest):
    """Next occurrence of a rule from a basis (default: now). Nothing is stored."""
    try:
        rule = parse_rule(body.rule)
        if rule is None:
            raise ValueError("rule is required")
        now = parse_instant(body.now) or utc_now()
        basis = parse_instant(body.basis) or now
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    result = compute_next_occurrence(basis, rule, now)
    exhausted = result is EXHAUSTED
    return {
        "next_occurrence": None if exhausted else format_instant(result),
        "exhausted": exhausted,
        "label": recurrence_label(rule),
    }


app.include_router(api)
