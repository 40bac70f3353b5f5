"""FastAPI app for docbind document sessions."""

from __future__ import annotations

import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.diagnostics import build_diagnostics
from app.record_client import HttpRecordStore
from app.session import DocumentSession
from app.settings import Settings, load_settings
from app.stores import MemoryCommentIndex, MemoryRecordStore, MemoryTemplateStore, RecordStoreError
from edit_coordinator import NotEditableError
from template_model import TemplateValidationError, validate_template_raw


settings: Settings = load_settings()
logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger("docbind.api")

app = FastAPI(title="docbind")


def _build_record_store(conf: Settings) -> Any:
    if conf.record_store_url:
        return HttpRecordStore(
            conf.record_store_url,
            token=conf.record_store_token,
            timeout=conf.record_store_timeout,
        )
    return MemoryRecordStore()


record_store: Any = _build_record_store(settings)
template_store = MemoryTemplateStore()
comment_index = MemoryCommentIndex()
sessions: Dict[str, DocumentSession] = {}


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    logger.info("%s %s %s total_ms=%.1f", request.method, request.url.path, response.status_code, total_ms)
    return response


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _result_response(result: dict) -> JSONResponse:
    status = 200 if result.get("ok") else 409
    return JSONResponse(jsonable_encoder({"warnings": [], **result}), status_code=status)


@app.exception_handler(RecordStoreError)
async def record_store_error_handler(request: Request, exc: RecordStoreError):
    status = exc.status if exc.status and exc.status < 500 else 502
    return _error_response(exc.code, exc.message, exc.path, status=status)


@app.exception_handler(TemplateValidationError)
async def template_error_handler(request: Request, exc: TemplateValidationError):
    body = {"ok": False, "errors": exc.errors, "warnings": []}
    return JSONResponse(jsonable_encoder(body), status_code=400)


@app.exception_handler(NotEditableError)
async def not_editable_handler(request: Request, exc: NotEditableError):
    return _error_response(exc.code, exc.message, exc.path, status=400)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


def _get_session(session_id: str) -> DocumentSession | None:
    return sessions.get(session_id)


def _session_missing(session_id: str) -> JSONResponse:
    return _error_response("SESSION_NOT_FOUND", "Session not found", "session_id", {"session_id": session_id}, status=404)


def _node_missing(node_id: Any) -> JSONResponse:
    return _error_response("NODE_NOT_FOUND", "Node not found", "node_id", {"node_id": node_id}, status=404)


async def _body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


@app.post("/templates")
async def create_template(request: Request):
    body = await _body(request)
    raw = body.get("template") if isinstance(body.get("template"), dict) else body
    normalized, errors, warnings = validate_template_raw(raw, settings.title_slot_id)
    if errors:
        return JSONResponse(jsonable_encoder({"ok": False, "errors": errors, "warnings": warnings}), status_code=400)
    existing = template_store.get(normalized["id"])
    saved = template_store.update(normalized["id"], normalized) if existing else template_store.create(normalized)
    return _ok_response({"template": saved}, warnings, status=200 if existing else 201)


@app.get("/templates/{template_id}")
async def get_template(template_id: str):
    item = template_store.get(template_id)
    if item is None:
        return _error_response("TEMPLATE_NOT_FOUND", "Template not found", "template_id", status=404)
    return _ok_response({"template": item})


@app.post("/sessions")
async def create_session(request: Request):
    body = await _body(request)
    template = body.get("template")
    if not isinstance(template, dict):
        template_id = body.get("template_id")
        template = template_store.get(template_id) if isinstance(template_id, str) else None
        if template is None:
            return _error_response("TEMPLATE_NOT_FOUND", "Template not found", "template_id", status=404)
    table_id = body.get("table_id")
    record_id = body.get("record_id")
    if not isinstance(table_id, str) or not table_id:
        return _error_response("TABLE_ID_REQUIRED", "table_id required", "table_id")
    if not isinstance(record_id, str) or not record_id:
        return _error_response("RECORD_ID_REQUIRED", "record_id required", "record_id")
    session = DocumentSession(template, table_id, record_id, record_store, settings, comment_index)
    document = await session.resolve()
    sessions[session.session_id] = session
    logger.info("session_created session=%s template=%s record=%s", session.session_id, session.template.get("id"), record_id)
    return _ok_response({"session_id": session.session_id, "document": document}, status=201)


@app.get("/sessions/{session_id}/document")
async def get_document(session_id: str):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    return _ok_response({"document": await session.document()})


@app.post("/sessions/{session_id}/refresh")
async def refresh_document(session_id: str):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    session.refresh()
    return _ok_response({"document": await session.resolve()})


@app.post("/sessions/{session_id}/edits")
async def commit_edit(session_id: str, request: Request):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    body = await _body(request)
    node_id = body.get("node_id")
    if not isinstance(node_id, str) or "text" not in body:
        return _error_response("EDIT_INVALID", "node_id and text required", "node_id")
    try:
        result = await session.edit(node_id, body.get("text"))
    except KeyError:
        return _node_missing(node_id)
    return _result_response(result)


@app.post("/sessions/{session_id}/toggle")
async def toggle_field(session_id: str, request: Request):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    node_id = (await _body(request)).get("node_id")
    try:
        result = await session.toggle(node_id)
    except KeyError:
        return _node_missing(node_id)
    return _result_response(result)


@app.post("/sessions/{session_id}/select")
async def select_option(session_id: str, request: Request):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    body = await _body(request)
    node_id = body.get("node_id")
    try:
        result = await session.select(node_id, body.get("option"))
    except KeyError:
        return _node_missing(node_id)
    return _result_response(result)


@app.post("/sessions/{session_id}/undo")
async def undo(session_id: str):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    return _result_response(await session.undo())


@app.post("/sessions/{session_id}/redo")
async def redo(session_id: str):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    return _result_response(await session.redo())


@app.get("/sessions/{session_id}/history")
async def history(session_id: str):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    return _ok_response({"history": session.undo_log.history()})


@app.get("/sessions/{session_id}/changes")
async def changes(session_id: str):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    return _ok_response({"changes": session.changes()})


def _change_missing(change_id: str) -> JSONResponse:
    return _error_response("CHANGE_NOT_FOUND", "Change not found", "change_id", {"change_id": change_id}, status=404)


@app.post("/sessions/{session_id}/changes/{change_id}/resync")
async def resync_change(session_id: str, change_id: str):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    result = await session.resync(change_id)
    if any(issue["code"] == "CHANGE_NOT_FOUND" for issue in result.get("errors") or []):
        return _change_missing(change_id)
    return _result_response(result)


@app.delete("/sessions/{session_id}/changes/{change_id}")
async def discard_change(session_id: str, change_id: str):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    if not session.discard(change_id):
        return _change_missing(change_id)
    return _ok_response({"changes": session.changes()})


@app.get("/sessions/{session_id}/options")
async def field_options(session_id: str, node_id: str):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    try:
        options = await session.options_for(node_id)
    except KeyError:
        return _node_missing(node_id)
    return _ok_response({"options": options})


@app.get("/sessions/{session_id}/diagnostics")
async def diagnostics(session_id: str):
    session = _get_session(session_id)
    if session is None:
        return _session_missing(session_id)
    return _ok_response({"diagnostics": build_diagnostics(session)})
