"""API router for the workbook import workflow: upload, preview, save, resume."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from pydantic import BaseModel

from app.core import session_manager
from app.core.settings import get_settings
from app.models.database import get_session_factory
from app.services.batch_builder import EXCEL_EXTENSIONS, WorkbookParseError, parse_workbook
from app.services.import_orchestrator import (
    ImportAbortedError,
    ImportJobNotFoundError,
    IssuerConflictError,
    create_import_job,
    get_job_status,
    resume_import_job,
    run_import_job,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/workbook-import", tags=["workbook-import"])


class SectionUpdate(BaseModel):
    section: str
    rows: Any


def _conflict_detail(exc: IssuerConflictError) -> Dict[str, Any]:
    return {
        "message": str(exc),
        "job_id": exc.job_id,
        "existing_issuer": exc.existing,
    }


def _aborted_detail(exc: ImportAbortedError) -> Dict[str, Any]:
    return {"message": str(exc), "job_id": exc.job_id, "last_step": exc.last_step}


def _preview_payload(session_id: str, session_data: Dict[str, Any]) -> Dict[str, Any]:
    batch = session_data.get("batch", {})
    return {
        "session_id": session_id,
        "filename": session_data.get("filename"),
        "file_size": session_data.get("file_size"),
        "summary": session_data.get("summary", {}),
        "warnings": batch.get("warnings", []),
        "plan": batch.get("plan", {}),
        "batch": batch,
    }


@router.post("/upload")
async def upload_workbook(file: UploadFile = File(...)):
    filename = file.filename or ""
    if not filename.lower().endswith(EXCEL_EXTENSIONS + (".csv",)):
        raise HTTPException(status_code=400, detail="Only Excel (.xlsx, .xls) or CSV files are supported")

    content = await file.read()
    settings = get_settings()
    if len(content) > settings.max_upload_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds the {settings.max_upload_mb} MB upload limit",
        )

    try:
        batch = await asyncio.to_thread(parse_workbook, content, filename)
    except WorkbookParseError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - generic safeguard
        logger.exception("Failed to parse %s", filename)
        raise HTTPException(status_code=500, detail=f"Failed to process file: {exc}") from exc

    session_id = session_manager.create_preview_session(filename, len(content), batch)
    return _preview_payload(session_id, session_manager.require_session(session_id))


@router.get("/preview/{session_id}")
async def get_workbook_preview(session_id: str):
    return _preview_payload(session_id, session_manager.require_session(session_id))


@router.post("/update/{session_id}")
async def update_workbook_preview(session_id: str, payload: SectionUpdate):
    batch = session_manager.load_batch(session_id)
    try:
        batch.replace_section(payload.section, payload.rows)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    session_manager.store_batch(session_id, batch)
    return _preview_payload(session_id, session_manager.require_session(session_id))


@router.post("/save/{session_id}")
async def save_workbook(
    session_id: str,
    override: bool = Query(False),
    session_factory=Depends(get_session_factory),
):
    session_data = session_manager.require_session(session_id)
    batch = session_manager.load_batch(session_id)

    job_id = await asyncio.to_thread(
        create_import_job,
        batch,
        session_data.get("filename", ""),
        int(session_data.get("file_size") or 0),
        override,
        session_factory,
    )
    try:
        result = await asyncio.to_thread(run_import_job, job_id, session_factory)
    except IssuerConflictError as exc:
        raise HTTPException(status_code=409, detail=_conflict_detail(exc)) from exc
    except ImportAbortedError as exc:
        raise HTTPException(status_code=500, detail=_aborted_detail(exc)) from exc

    session_manager.delete_session(session_id)
    return result.to_dict()


@router.get("/jobs/{job_id}")
async def get_import_job(job_id: str, session_factory=Depends(get_session_factory)):
    try:
        return await asyncio.to_thread(get_job_status, job_id, session_factory)
    except ImportJobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/jobs/{job_id}/resume")
async def resume_job(
    job_id: str,
    override: Optional[bool] = Query(None),
    session_factory=Depends(get_session_factory),
):
    try:
        result = await asyncio.to_thread(resume_import_job, job_id, override, session_factory)
    except ImportJobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except IssuerConflictError as exc:
        raise HTTPException(status_code=409, detail=_conflict_detail(exc)) from exc
    except ImportAbortedError as exc:
        raise HTTPException(status_code=500, detail=_aborted_detail(exc)) from exc
    return result.to_dict()
