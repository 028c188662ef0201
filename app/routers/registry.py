"""API router for issuers, securities, shareholders, transactions and restrictions."""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from app.models.database import get_session_factory
from app.services import registry_service
from app.services.registry_service import RegistryNotFoundError

router = APIRouter(prefix="/api", tags=["registry"])


class IssuerCreate(BaseModel):
    issuer_name: str
    display_name: Optional[str] = None
    address: Optional[str] = None
    telephone: Optional[str] = None
    tax_id: Optional[str] = None
    incorporation: Optional[str] = None
    underwriter: Optional[str] = None
    share_info: Optional[str] = None
    notes: Optional[str] = None
    separation_ratio: Optional[str] = None
    exchange_platform: Optional[str] = None
    description: Optional[str] = None


class SecurityCreate(BaseModel):
    cusip: str
    class_name: Optional[str] = None
    issue_name: Optional[str] = None
    issue_ticker: Optional[str] = None
    trading_platform: Optional[str] = None
    total_authorized_shares: Optional[int] = None
    status: Optional[str] = "ACTIVE"


class ShareholderCreate(BaseModel):
    account_number: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None
    taxpayer_id: Optional[str] = None
    tin_status: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    holder_type: Optional[str] = None
    lei: Optional[str] = None
    dob: Optional[str] = None
    ofac_date: Optional[str] = None


class TransactionCreate(BaseModel):
    transaction_type: str
    cusip: str
    share_quantity: int
    shareholder_id: Optional[int] = None
    restriction_id: Optional[int] = None
    transaction_date: Optional[str] = None
    certificate_type: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None


class RestrictionTemplateCreate(BaseModel):
    restriction_type: Optional[str] = None
    description: Optional[str] = None
    code: Optional[str] = None
    legend: Optional[str] = None
    is_active: bool = True


class RestrictionApply(BaseModel):
    shareholder_id: Optional[int] = None
    restriction_id: Optional[int] = None
    cusip: Optional[str] = None
    restricted_shares: Optional[int] = None
    restriction_date: Optional[str] = None
    expiration_date: Optional[str] = None
    notes: Optional[str] = None


class SplitRatioUpdate(BaseModel):
    class_a_ratio: str
    rights_ratio: str


async def _call(func: Callable[..., Any], *args: Any) -> Any:
    """Run a blocking registry call and map its errors to HTTP responses."""
    try:
        return await asyncio.to_thread(func, *args)
    except RegistryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _payload(model: BaseModel) -> dict:
    return model.model_dump(exclude_none=True)


@router.get("/issuers")
async def list_issuers(session_factory=Depends(get_session_factory)):
    return {"issuers": await _call(registry_service.list_issuers, session_factory)}


@router.post("/issuers", status_code=201)
async def create_issuer(payload: IssuerCreate, session_factory=Depends(get_session_factory)):
    return await _call(registry_service.create_issuer, _payload(payload), session_factory)


@router.get("/issuers/{issuer_id}")
async def get_issuer(issuer_id: int, session_factory=Depends(get_session_factory)):
    return await _call(registry_service.get_issuer, issuer_id, session_factory)


@router.get("/issuers/{issuer_id}/securities")
async def list_securities(issuer_id: int, session_factory=Depends(get_session_factory)):
    return {"securities": await _call(registry_service.list_securities, issuer_id, session_factory)}


@router.post("/issuers/{issuer_id}/securities", status_code=201)
async def create_security(issuer_id: int, payload: SecurityCreate, session_factory=Depends(get_session_factory)):
    return await _call(registry_service.create_security, issuer_id, _payload(payload), session_factory)


@router.get("/issuers/{issuer_id}/shareholders")
async def list_shareholders(issuer_id: int, session_factory=Depends(get_session_factory)):
    return {"shareholders": await _call(registry_service.list_shareholders, issuer_id, session_factory)}


@router.post("/issuers/{issuer_id}/shareholders", status_code=201)
async def create_shareholder(
    issuer_id: int,
    payload: ShareholderCreate,
    session_factory=Depends(get_session_factory),
):
    return await _call(registry_service.create_shareholder, issuer_id, _payload(payload), session_factory)


@router.get("/issuers/{issuer_id}/transactions")
async def list_transactions(
    issuer_id: int,
    cusip: Optional[str] = Query(None),
    session_factory=Depends(get_session_factory),
):
    rows = await _call(registry_service.list_transactions, issuer_id, cusip, session_factory)
    return {"transactions": rows}


@router.post("/issuers/{issuer_id}/transactions", status_code=201)
async def create_transaction(
    issuer_id: int,
    payload: TransactionCreate,
    session_factory=Depends(get_session_factory),
):
    return await _call(registry_service.create_transaction, issuer_id, _payload(payload), session_factory)


@router.get("/issuers/{issuer_id}/restriction-templates")
async def list_restriction_templates(issuer_id: int, session_factory=Depends(get_session_factory)):
    templates = await _call(registry_service.list_restriction_templates, issuer_id, session_factory)
    return {"restriction_templates": templates}


@router.post("/issuers/{issuer_id}/restriction-templates", status_code=201)
async def create_restriction_template(
    issuer_id: int,
    payload: RestrictionTemplateCreate,
    session_factory=Depends(get_session_factory),
):
    return await _call(registry_service.create_restriction_template, issuer_id, _payload(payload), session_factory)


@router.get("/issuers/{issuer_id}/restrictions")
async def list_restrictions(issuer_id: int, session_factory=Depends(get_session_factory)):
    return {"restrictions": await _call(registry_service.list_restrictions, issuer_id, session_factory)}


@router.post("/issuers/{issuer_id}/restrictions", status_code=201)
async def apply_restriction(
    issuer_id: int,
    payload: RestrictionApply,
    session_factory=Depends(get_session_factory),
):
    return await _call(registry_service.apply_restriction, issuer_id, _payload(payload), session_factory)


@router.get("/issuers/{issuer_id}/split-ratio")
async def get_split_ratio(issuer_id: int, session_factory=Depends(get_session_factory)):
    return await _call(registry_service.get_split_ratio, issuer_id, session_factory)


@router.put("/issuers/{issuer_id}/split-ratio")
async def update_split_ratio(
    issuer_id: int,
    payload: SplitRatioUpdate,
    session_factory=Depends(get_session_factory),
):
    return await _call(
        registry_service.update_split_ratio,
        issuer_id,
        payload.class_a_ratio,
        payload.rights_ratio,
        session_factory,
    )
