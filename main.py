"""
Shareholder Registry FastAPI Application
Workbook import, registry entry and ledger views
"""

import logging
import os

from fastapi import FastAPI
import uvicorn

from app.core import session_manager
from app.core.settings import get_settings
from app.models.database import init_db
from app.routers.ledger import router as ledger_router
from app.routers.registry import router as registry_router
from app.routers.workbook_import import router as workbook_import_router


logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Shareholder Registry")

app.include_router(workbook_import_router)
app.include_router(registry_router)
app.include_router(ledger_router)


@app.on_event("startup")
async def create_tables():
    init_db()


@app.get("/api/debug-sessions")
async def list_debug_sessions():
    """List preview session IDs (debug only)"""
    return {"sessions": list(session_manager.list_sessions())}


@app.get("/api/debug-session/{session_id}")
async def debug_session(session_id: str):
    """Debug endpoint to see a preview session"""
    session_data = session_manager.get_session(session_id)
    if session_data is None:
        return {"error": "Session not found"}

    batch = session_data.get("batch", {})
    transactions = batch.get("transactions", [])
    return {
        "session_exists": True,
        "filename": session_data.get("filename"),
        "created_at": session_data.get("created_at"),
        "summary": session_data.get("summary", {}),
        "transaction_rule": batch.get("plan", {}).get("transaction_rule"),
        "sample_transaction": transactions[0] if transactions else {},
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    host = os.getenv("HOST", "0.0.0.0")
    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=os.getenv("UVICORN_RELOAD", "0") == "1"
    )
