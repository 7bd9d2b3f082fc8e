# src/main.py
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Dict, List
from uuid import uuid4

from fastapi import FastAPI, BackgroundTasks, Depends, File, Form, HTTPException, Request, UploadFile
from pydantic import BaseModel

import asyncpg

import config
from db import get_pool, ensure_schema, PatientStore, PostgresPatientStore, StoreError
from loader import commit_rows
from logging_config import setup_logging
from mapping import normalize_admission_date, resolve_facility_context
from models import (
    ImportSession, SessionStatus, ValidationResult, ImportResult, ParseIssue,
)
from quality import validate_rows
from source import SourceError, read_source_bytes, read_source_url

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(use_json=config.LOG_JSON, log_level=config.LOG_LEVEL)
    pool = await get_pool()
    await ensure_schema(pool)
    app.state.store = PostgresPatientStore(pool)
    logger.info("[import] service ready db=%s@%s", config.PG_DB, config.PG_HOST)
    try:
        yield
    finally:
        await pool.close()


app = FastAPI(title="Ward Round Import Service", version="1.0.0", lifespan=lifespan)

# In-memory import sessions; one operator, lost on restart
sessions: Dict[str, ImportSession] = {}


class ValidateResponse(BaseModel):
    sessionId: str
    status: SessionStatus
    admissionDate: str
    facility: str
    parseErrors: List[ParseIssue] = []
    validation: ValidationResult


class CommitResponse(BaseModel):
    sessionId: str
    status: SessionStatus
    message: str


class ImportStatus(BaseModel):
    sessionId: str
    status: SessionStatus
    progress: int = 0
    message: Optional[str] = None
    result: Optional[ImportResult] = None


def get_store(request: Request) -> PatientStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Patient store is not available")
    return store


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _touch(session: ImportSession, **changes) -> None:
    for k, v in changes.items():
        setattr(session, k, v)
    session.updatedAt = _now()


def _get_session(session_id: str) -> ImportSession:
    session = sessions.get(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Import session not found")
    return session


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "ward-import"}


@app.post("/imports/validate", response_model=ValidateResponse)
async def validate_import(
    file: Optional[UploadFile] = File(None),
    url: Optional[str] = Form(None),
    date: Optional[str] = Form(None),
    facility: Optional[str] = Form(None),
    store: PatientStore = Depends(get_store),
):
    url = (url or "").strip()
    if (file is None) == (not url):
        raise HTTPException(status_code=400, detail="Provide exactly one of file or url")

    admission_date = normalize_admission_date(date, _now().date().isoformat())
    try:
        facility_context = resolve_facility_context(facility, config.DEFAULT_FACILITY)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown facility: {facility}")

    try:
        if file is not None:
            read = read_source_bytes(await file.read())
            source = file.filename or "upload"
        else:
            read = await read_source_url(url)
            source = url
    except SourceError as e:
        logger.warning("[import] source rejected code=%s: %s", e.code, e)
        raise HTTPException(status_code=400, detail={"code": e.code, "message": str(e)})

    now = _now()
    session = ImportSession(
        sessionId=str(uuid4()),
        status=SessionStatus.validating,
        admissionDate=admission_date,
        facility=facility_context,
        source=source,
        parseErrors=read.parseErrors,
        message="Validating",
        createdAt=now,
        updatedAt=now,
    )
    sessions[session.sessionId] = session
    log_extra = {"session_id": session.sessionId}
    logger.info("[import] validate session=%s source=%s rows=%d date=%s facility=%s",
                session.sessionId, source, len(read.rows), admission_date, facility_context.value, extra=log_extra)

    try:
        validation = await validate_rows(store, read.rows, admission_date, facility_context, read.lineNumbers)
    except (StoreError, asyncpg.InterfaceError) as e:
        _touch(session, status=SessionStatus.invalid, message=str(e))
        logger.error("[import] validate failed session=%s: %s", session.sessionId, e, extra=log_extra)
        raise HTTPException(status_code=502, detail=f"Patient lookup failed: {e}")
    except Exception as e:
        _touch(session, status=SessionStatus.invalid, message=f"Validation aborted: {e}")
        logger.exception("[import] validate aborted session=%s", session.sessionId, extra=log_extra)
        raise

    status = SessionStatus.valid if validation.valid else SessionStatus.invalid
    _touch(session, status=status, validation=validation,
           message=f"{validation.summary.errorCount} errors, {validation.summary.warningCount} warnings")

    return ValidateResponse(
        sessionId=session.sessionId,
        status=status,
        admissionDate=admission_date,
        facility=facility_context.value,
        parseErrors=read.parseErrors,
        validation=validation,
    )


@app.post("/imports/{session_id}/commit", response_model=CommitResponse)
async def commit_import(
    session_id: str,
    background_tasks: BackgroundTasks,
    force: bool = False,
    store: PatientStore = Depends(get_store),
):
    session = _get_session(session_id)
    if session.status == SessionStatus.valid:
        pass
    elif session.status == SessionStatus.invalid and force and session.validation is not None:
        logger.warning("[import] forced commit session=%s errors=%d",
                       session_id, session.validation.summary.errorCount, extra={"session_id": session_id})
    else:
        raise HTTPException(status_code=409, detail=f"Session is {session.status.value}; cannot commit")

    _touch(session, status=SessionStatus.committing, progress=0, message="Commit started")
    background_tasks.add_task(run_commit, session_id, store)
    return CommitResponse(sessionId=session_id, status=SessionStatus.committing, message="Commit started")


@app.get("/imports/{session_id}/status", response_model=ImportStatus)
async def get_import_status(session_id: str):
    session = _get_session(session_id)
    return ImportStatus(
        sessionId=session_id,
        status=session.status,
        progress=session.progress,
        message=session.message,
        result=session.result,
    )


@app.get("/imports/{session_id}", response_model=ImportSession)
async def get_import_details(session_id: str):
    return _get_session(session_id)


async def run_commit(session_id: str, store: PatientStore):
    session = sessions[session_id]
    validation = session.validation
    # a forced commit still leaves out rows that carry errors
    error_rows = {e.row for e in validation.errors}
    rows = [pr for pr in validation.parsedRows if pr.row not in error_rows]
    total = len(rows)
    log_extra = {"session_id": session_id}

    def on_progress(done: int) -> None:
        _touch(session, progress=int(done * 100 / total), message=f"committed {done}/{total}")

    logger.info("[import] commit start session=%s rows=%d skipped=%d",
                session_id, total, len(validation.parsedRows) - total, extra=log_extra)
    try:
        result = await commit_rows(store, rows, on_progress=on_progress)
    except Exception as e:
        _touch(session, status=SessionStatus.partial, message=f"Commit aborted: {e}")
        logger.exception("[import] commit aborted session=%s", session_id, extra=log_extra)
        return

    status = SessionStatus.completed if result.success else SessionStatus.partial
    _touch(session, status=status, progress=100, result=result,
           message=f"imported {result.importedCount}, failed {result.failedCount}")
    logger.info("[import] commit done session=%s status=%s imported=%d failed=%d",
                session_id, status.value, result.importedCount, result.failedCount, extra=log_extra)
