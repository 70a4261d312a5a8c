"""FastAPI web server for aichat-gateway."""

import asyncio
import itertools
import json
import logging
import shutil
import uuid
from contextlib import aclosing
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from fastapi import Body, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import (
    get_chat_limits,
    get_claude_command,
    get_claude_extra_args,
    get_context_messages,
    get_default_project,
    get_default_workdir,
    get_query_budget,
    get_storage_path,
)
from .core import ROLES
from .errors import GatewayError, ValidationFailed
from .export import session_to_json, session_to_markdown
from .gateway import ChatGateway
from .process import ProcessAdapter
from .query import QueryEngine, Scope, compile_filter, list_patterns
from .store import SessionStore

logger = logging.getLogger(__name__)

app = FastAPI(title="aichat-gateway", version=__version__)

# Component caches (populated on first request)
_store: SessionStore | None = None
_engine: QueryEngine | None = None
_gateway: ChatGateway | None = None


def _get_store() -> SessionStore:
    """Lazily initialize and cache the session store."""
    global _store
    if _store is None:
        _store = SessionStore(get_storage_path())
        logger.info("Session storage at %s", _store.root)
    return _store


def _get_engine() -> QueryEngine:
    global _engine
    if _engine is None:
        _engine = QueryEngine(_get_store(), get_query_budget())
    return _engine


def _get_gateway() -> ChatGateway:
    global _gateway
    if _gateway is None:
        _gateway = ChatGateway(
            _get_store(),
            ProcessAdapter(get_claude_command(), get_chat_limits()),
            context_messages=get_context_messages(),
            extra_args=get_claude_extra_args(),
            default_cwd=get_default_workdir(),
        )
    return _gateway


# ── Request bodies ───────────────────────────────────────────────


class ProjectCreate(BaseModel):
    id: str


class SessionCreate(BaseModel):
    project: str | None = None
    id: str | None = None
    title: str | None = None
    model: str | None = None
    parameters: dict[str, Any] | None = None
    cwd: str | None = None


class ChatRequest(BaseModel):
    message: str
    stream: bool = False


class QueryValidate(BaseModel):
    query: str


class QueryRequest(BaseModel):
    query: str
    projects: list[str] = Field(default_factory=list)
    sessions: list[str] = Field(default_factory=list, description="'project/session_id' or bare session id")
    slurp: bool = False
    max_steps: int | None = Field(None, ge=1)
    timeout: float | None = Field(None, gt=0)
    max_results: int | None = Field(None, ge=1)


# ── Envelope ─────────────────────────────────────────────────────


def _meta(**extra) -> dict:
    return {
        "request_id": uuid.uuid4().hex,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **extra,
    }


def _ok(data, **meta) -> dict:
    return {"success": True, "data": data, "meta": _meta(**meta)}


def _error_response(error: GatewayError, status: int | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status or error.status,
        content={"success": False, "error": error.to_dict(), "meta": _meta()},
    )


@app.exception_handler(GatewayError)
async def _handle_gateway_error(request: Request, exc: GatewayError):
    if exc.status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return _error_response(exc)


@app.exception_handler(RequestValidationError)
async def _handle_validation_error(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return _error_response(ValidationFailed("; ".join(problems) or "Invalid request"))


@app.exception_handler(StarletteHTTPException)
async def _handle_http_error(request: Request, exc: StarletteHTTPException):
    error = GatewayError(str(exc.detail))
    error.code = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
    return _error_response(error, exc.status_code)


@app.exception_handler(Exception)
async def _handle_unexpected(request: Request, exc: Exception):
    logger.exception("Unhandled error for %s %s", request.method, request.url.path)
    return _error_response(GatewayError("Internal server error"))


# ── Helpers ──────────────────────────────────────────────────────


def _resolve_project(session_id: str, project: str | None) -> str:
    """Use the given project, or find the one holding the session."""
    if project:
        return project
    return _get_store().locate_session(session_id)


def _sort_sessions(sessions: list, sort: str) -> list:
    if sort == "newest":
        sessions.sort(key=lambda s: s.updated_at or s.created_at or _epoch(), reverse=True)
    elif sort == "oldest":
        sessions.sort(key=lambda s: s.created_at or _epoch())
    elif sort == "messages":
        sessions.sort(key=lambda s: s.message_count, reverse=True)
    elif sort == "title":
        sessions.sort(key=lambda s: s.title.lower())
    else:
        raise ValidationFailed(f"Unknown sort {sort!r}; expected newest, oldest, messages or title")
    return sessions


def _has_message(session, content: str | None, role: str | None) -> bool:
    needle = content.lower() if content else None
    for message in _get_store().iter_messages(session.project, session.id):
        if role and message.role != role:
            continue
        if needle is None or needle in message.text.lower():
            return True
    return False


def _session_page(
    sessions: list,
    search: str | None,
    sort: str,
    limit: int,
    offset: int,
    content: str | None = None,
    role: str | None = None,
) -> dict:
    if search:
        search_lower = search.lower()
        sessions = [s for s in sessions if search_lower in s.title.lower()]
    if role is not None and role not in ROLES:
        raise ValidationFailed(f"Unknown role {role!r}; expected {', '.join(ROLES)}")
    if content or role:
        sessions = [s for s in sessions if _has_message(s, content, role)]
    _sort_sessions(sessions, sort)
    total = len(sessions)
    page = sessions[offset: offset + limit]
    return _ok([s.to_dict() for s in page], total=total, limit=limit, offset=offset)


def _message_page(project: str, session_id: str, limit: int, offset: int) -> dict:
    store = _get_store()
    session = store.get_session(project, session_id)
    page = itertools.islice(store.iter_messages(project, session_id), offset, offset + limit)
    return _ok([m.to_dict() for m in page], total=session.message_count, limit=limit, offset=offset)


def _parse_session_refs(refs: list[str]) -> tuple:
    parsed = []
    for ref in refs:
        if "/" in ref:
            project, _, session_id = ref.partition("/")
            parsed.append((project, session_id))
        else:
            parsed.append((_get_store().locate_session(ref), ref))
    return tuple(parsed)


async def _ndjson(events: AsyncIterator[dict]) -> AsyncIterator[str]:
    async with aclosing(events):
        async for event in events:
            yield json.dumps(event, ensure_ascii=False) + "\n"


def _epoch():
    """Return a datetime at epoch for sorting fallback."""
    return datetime(1970, 1, 1, tzinfo=timezone.utc)


# ── Routes ───────────────────────────────────────────────────────


@app.get("/api/v1/health")
async def health():
    """Report that the service is up and where it stores data."""
    store = _get_store()
    return _ok({"status": "ok", "version": __version__, "storage": str(store.root)})


@app.get("/api/v1/projects")
def list_projects():
    projects = _get_store().list_projects()
    return _ok([p.to_dict() for p in projects], total=len(projects))


@app.post("/api/v1/projects", status_code=201)
def create_project(body: ProjectCreate):
    project = _get_store().create_project(body.id)
    return _ok(project.to_dict())


@app.get("/api/v1/projects/{project}")
def get_project(project: str):
    return _ok(_get_store().get_project(project).to_dict())


@app.get("/api/v1/projects/{project}/stats")
def project_stats(project: str):
    """Return session, message and token totals for one project."""
    return _ok(_get_store().project_stats(project).to_dict())


@app.delete("/api/v1/projects/{project}")
def delete_project(project: str):
    deleted = _get_store().delete_project(project)
    return _ok({"id": project, "deleted": deleted})


@app.get("/api/v1/projects/{project}/sessions")
def list_project_sessions(
    project: str,
    search: str | None = Query(None, description="Search in titles"),
    sort: str = Query("newest", description="Sort: newest, oldest, messages, title"),
    content: str | None = Query(None, description="Only sessions with a message containing this text"),
    role: str | None = Query(None, description="Only sessions with a message from this role"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    sessions = _get_store().list_sessions(project)
    return _session_page(sessions, search, sort, limit, offset, content, role)


@app.get("/api/v1/sessions")
def list_sessions(
    project: str | None = Query(None, description="Project to list; all projects when omitted"),
    search: str | None = Query(None, description="Search in titles"),
    sort: str = Query("newest", description="Sort: newest, oldest, messages, title"),
    content: str | None = Query(None, description="Only sessions with a message containing this text"),
    role: str | None = Query(None, description="Only sessions with a message from this role"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """Return a page of sessions from one project or from all of them."""
    store = _get_store()
    if project:
        sessions = store.list_sessions(project)
    else:
        sessions = [s for p in store.list_projects() for s in store.list_sessions(p.id)]
    return _session_page(sessions, search, sort, limit, offset, content, role)


@app.post("/api/v1/sessions", status_code=201)
def create_session(body: SessionCreate):
    metadata = body.model_dump(exclude={"project", "id"}, exclude_none=True)
    session = _get_store().create_session(
        body.project or get_default_project(), metadata, session_id=body.id
    )
    return _ok(session.to_dict())


@app.get("/api/v1/sessions/{session_id}")
def get_session(session_id: str, project: str | None = Query(None)):
    """Return a session with its full message log."""
    store = _get_store()
    project = _resolve_project(session_id, project)
    session = store.get_session(project, session_id)
    messages = store.get_messages(project, session_id)
    return _ok({**session.to_dict(), "messages": [m.to_dict() for m in messages]})


@app.put("/api/v1/sessions/{session_id}")
def update_session(
    session_id: str,
    patch: dict[str, Any] = Body(...),
    project: str | None = Query(None),
):
    project = _resolve_project(session_id, project)
    session = _get_store().update_metadata(project, session_id, patch)
    return _ok(session.to_dict())


@app.delete("/api/v1/sessions/{session_id}")
def delete_session(session_id: str, project: str | None = Query(None)):
    """Delete a session; deleting a missing one succeeds as a no-op."""
    store = _get_store()
    if not project:
        try:
            project = store.locate_session(session_id)
        except GatewayError:
            return _ok({"id": session_id, "deleted": False})
    deleted = store.delete_session(project, session_id)
    return _ok({"id": session_id, "deleted": deleted})


@app.get("/api/v1/sessions/{session_id}/messages")
async def get_session_messages(
    session_id: str,
    project: str | None = Query(None),
    q: str | None = Query(None, description="Filter applied to each message"),
    slurp: bool = Query(False, description="Apply the filter once to the array of all messages"),
    limit: int = Query(1000, ge=1, le=10000),
    offset: int = Query(0, ge=0),
):
    """Return the message log, optionally run through a filter."""
    project = await asyncio.to_thread(_resolve_project, session_id, project)

    if q is None:
        return await asyncio.to_thread(_message_page, project, session_id, limit, offset)

    scope = Scope(sessions=((project, session_id),))
    result = await asyncio.to_thread(_get_engine().execute, q, scope, None, slurp)
    return _ok(result.results, query=result.stats())


@app.get("/api/v1/sessions/{session_id}/export")
def export_session(
    session_id: str,
    project: str | None = Query(None),
    format: str = Query("md", description="Export format: md or json"),
):
    """Export a session as Markdown or JSON."""
    store = _get_store()
    project = _resolve_project(session_id, project)
    session = store.get_session(project, session_id)
    messages = store.iter_messages(project, session_id)

    safe_title = "".join(c if c.isalnum() or c in "-_ " else "" for c in session.title)[:50] or session.id

    if format == "json":
        content = session_to_json(session, messages)
        return Response(
            content=content,
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{safe_title}.json"'},
        )
    if format == "md":
        content = session_to_markdown(session, messages)
        return Response(
            content=content,
            media_type="text/markdown",
            headers={"Content-Disposition": f'attachment; filename="{safe_title}.md"'},
        )
    raise ValidationFailed(f"Unknown export format {format!r}; expected md or json")


@app.post("/api/v1/sessions/{session_id}/chat")
async def chat(session_id: str, body: ChatRequest, project: str | None = Query(None)):
    """Send a message to the claude CLI and persist both sides of the turn."""
    project = await asyncio.to_thread(_resolve_project, session_id, project)
    gateway = _get_gateway()

    if not body.stream:
        result = await gateway.complete_turn(project, session_id, body.message)
        return _ok(result.to_dict())

    turn = await gateway.open_turn(project, session_id, body.message)
    return StreamingResponse(
        _ndjson(gateway.run_turn(turn)),
        media_type="application/x-ndjson",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/api/v1/query")
async def run_query(body: QueryRequest):
    """Run a filter across many sessions."""
    sessions = await asyncio.to_thread(_parse_session_refs, body.sessions)
    scope = Scope(projects=tuple(body.projects), sessions=sessions)
    budget = get_query_budget().narrowed(body.max_steps, body.timeout, body.max_results)
    result = await asyncio.to_thread(_get_engine().execute, body.query, scope, budget, body.slurp)
    return _ok(result.results, query=result.stats())


@app.post("/api/v1/query/validate")
def validate_query(body: QueryValidate):
    """Compile a filter without running it."""
    compile_filter(body.query)
    return _ok({"valid": True, "query": body.query})


@app.get("/api/v1/query/patterns")
def query_patterns(category: str | None = Query(None, description="messages, content, statistics or search")):
    patterns = list_patterns(category)
    return _ok(
        {"patterns": {p.name: p.to_dict() for p in patterns}, "category": category or "all"},
        total=len(patterns),
    )


@app.get("/api/v1/chat/status")
async def chat_status():
    """Report whether the claude CLI can be found and which turns are running."""
    gateway = _get_gateway()
    active = gateway.active_processes()
    executable = gateway.adapter.command[0]
    return _ok({
        "cli_command": executable,
        "cli_available": shutil.which(executable) is not None,
        "active_processes": len(active),
        "processes": [a.to_dict() for a in active],
    })


@app.post("/api/v1/chat/kill/{process_id}")
async def kill_chat_process(process_id: int):
    """Terminate the CLI behind a running turn."""
    active = await _get_gateway().kill(process_id)
    return _ok({**active.to_dict(), "killed": True})
