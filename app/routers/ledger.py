"""Control book, record-keeping and statement views computed from the transfer journal."""
from __future__ import annotations

import asyncio
from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from app.models.database import get_session_factory
from app.services import ledger, registry_service
from app.services.registry_service import RegistryNotFoundError

router = APIRouter(prefix="/api/issuers/{issuer_id}", tags=["ledger"])


def _load_control_book(
    issuer_id: int,
    cusip: Optional[str],
    date_from: Optional[date],
    date_to: Optional[date],
    session_factory,
) -> Dict[str, Any]:
    issuer = registry_service.get_issuer(issuer_id, session_factory)
    rows = registry_service.list_transactions(issuer_id, session_factory=session_factory)
    selected = ledger.filter_transactions(rows, cusip=cusip, date_from=date_from, date_to=date_to)
    security = registry_service.get_security(issuer_id, cusip, session_factory) if cusip else None
    return {
        "issuer": issuer,
        "security": security,
        "groups": ledger.aggregate_ledger(selected),
        "totals": ledger.ledger_totals(selected),
    }


def _load_recordkeeping(
    issuer_id: int,
    cusip: Optional[str],
    date_from: Optional[date],
    date_to: Optional[date],
    session_factory,
) -> Dict[str, Any]:
    rows = registry_service.list_transactions(issuer_id, session_factory=session_factory)
    selected = ledger.filter_transactions(rows, cusip=cusip, date_from=date_from, date_to=date_to)
    securities = registry_service.list_securities(issuer_id, session_factory)
    if cusip:
        securities = [security for security in securities if security["cusip"] == cusip]
    return {
        "summary": ledger.outstanding_by_cusip(selected, securities),
        "totals": ledger.ledger_totals(selected),
        "transactions": selected,
    }


def _load_statement(issuer_id: int, shareholder_id: int, as_of: Optional[date], session_factory) -> Dict[str, Any]:
    shareholder = registry_service.get_shareholder(issuer_id, shareholder_id, session_factory)
    rows = registry_service.list_transactions(issuer_id, session_factory=session_factory)
    templates = registry_service.list_restriction_templates(issuer_id, session_factory)
    return ledger.build_statement(shareholder, rows, templates, as_of)


async def _run(func, *args):
    try:
        return await asyncio.to_thread(func, *args)
    except RegistryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def _csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/control-book")
async def control_book(
    issuer_id: int,
    cusip: Optional[str] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    session_factory=Depends(get_session_factory),
):
    data = await _run(_load_control_book, issuer_id, cusip, date_from, date_to, session_factory)
    return {
        "issuer_id": issuer_id,
        "cusip": cusip,
        "security": data["security"],
        "groups": [group.to_dict() for group in data["groups"]],
        "totals": data["totals"],
    }


@router.get("/control-book.csv")
async def control_book_csv(
    issuer_id: int,
    cusip: Optional[str] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    session_factory=Depends(get_session_factory),
):
    data = await _run(_load_control_book, issuer_id, cusip, date_from, date_to, session_factory)
    content = ledger.control_book_csv(data["groups"], data["security"], data["issuer"]["issuer_name"])
    return _csv_response(content, f"control_book_{cusip or 'all'}.csv")


@router.get("/recordkeeping")
async def recordkeeping(
    issuer_id: int,
    cusip: Optional[str] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    session_factory=Depends(get_session_factory),
):
    return await _run(_load_recordkeeping, issuer_id, cusip, date_from, date_to, session_factory)


@router.get("/recordkeeping.csv")
async def recordkeeping_csv(
    issuer_id: int,
    cusip: Optional[str] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    session_factory=Depends(get_session_factory),
):
    data = await _run(_load_recordkeeping, issuer_id, cusip, date_from, date_to, session_factory)
    return _csv_response(ledger.recordkeeping_csv(data["transactions"]), "recordkeeping_book.csv")


@router.get("/statements/{shareholder_id}")
async def shareholder_statement(
    issuer_id: int,
    shareholder_id: int,
    as_of: Optional[date] = Query(None),
    session_factory=Depends(get_session_factory),
):
    return await _run(_load_statement, issuer_id, shareholder_id, as_of, session_factory)
