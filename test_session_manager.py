import pytest
from fastapi import HTTPException

from app.core import session_manager
from app.services.batch_builder import build_import_batch


def test_preview_session_lifecycle(acme_sheets):
    batch = build_import_batch(acme_sheets, future_window=5, min_score=3)
    session_id = session_manager.create_preview_session("acme.xlsx", 42, batch)

    assert session_id in session_manager.list_sessions()
    stored = session_manager.require_session(session_id)
    assert stored["filename"] == "acme.xlsx"
    assert stored["summary"]["transactions"] == 1
    assert session_manager.load_batch(session_id).to_dict() == batch.to_dict()

    batch.transactions = []
    session_manager.store_batch(session_id, batch)
    assert session_manager.require_session(session_id)["summary"]["transactions"] == 0

    session_manager.delete_session(session_id)
    assert session_manager.get_session(session_id) is None
    with pytest.raises(HTTPException) as excinfo:
        session_manager.require_session(session_id)
    assert excinfo.value.status_code == 404
