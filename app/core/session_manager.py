"""In-memory store for parsed workbooks awaiting review.

An upload is parsed once; the resulting import batch is kept here under a
preview session id until the user saves it (or discards it). Edits made on the
preview screen replace sections of the stored batch.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, MutableMapping, Optional

from fastapi import HTTPException, status

from app.services.batch_builder import ImportBatch

PreviewSession = Dict[str, Any]
SessionStore = MutableMapping[str, PreviewSession]


_session_store: SessionStore = {}


def create_preview_session(filename: str, file_size: int, batch: ImportBatch) -> str:
    """Store a freshly parsed batch and return its preview session id."""
    session_id = str(uuid.uuid4())
    _session_store[session_id] = {
        "filename": filename,
        "file_size": file_size,
        "batch": batch.to_dict(),
        "summary": batch.summary(),
        "created_at": datetime.utcnow().isoformat(),
    }
    return session_id


def get_session(session_id: str) -> Optional[PreviewSession]:
    return _session_store.get(session_id)


def require_session(session_id: str) -> PreviewSession:
    """Fetch a preview session, raising a 404 if it expired or never existed."""
    if session_id not in _session_store:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found",
        )
    return _session_store[session_id]


def load_batch(session_id: str) -> ImportBatch:
    return ImportBatch.from_dict(require_session(session_id)["batch"])


def store_batch(session_id: str, batch: ImportBatch) -> None:
    session = require_session(session_id)
    session["batch"] = batch.to_dict()
    session["summary"] = batch.summary()


def delete_session(session_id: str) -> None:
    _session_store.pop(session_id, None)


def list_sessions() -> Iterable[str]:
    return tuple(_session_store.keys())
