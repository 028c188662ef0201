"""Registry reads and manual entry outside the workbook import."""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func

from app.models.database import (
    Issuer,
    RestrictionTemplate,
    SessionLocal,
    Security,
    Shareholder,
    ShareholderRestriction,
    Split,
    Transfer,
)
from app.services.ledger import credit_debit_label
from app.services.normalizers import coerce_date, normalize_string, parse_fraction, parse_quantity
from app.services.split_ratio import format_ratio_text, parse_separation_ratio, validate_ratio_input

logger = logging.getLogger(__name__)

ISSUER_FIELDS = (
    "issuer_name", "display_name", "address", "telephone", "tax_id", "incorporation",
    "underwriter", "share_info", "notes", "forms_sl_status", "timeframe_for_separation",
    "separation_ratio", "exchange_platform", "timeframe_for_bc", "us_counsel",
    "offshore_counsel", "description",
)
SECURITY_FIELDS = ("cusip", "class_name", "issue_name", "issue_ticker", "trading_platform", "status")
SHAREHOLDER_FIELDS = (
    "account_number", "first_name", "last_name", "address", "city", "state", "zip",
    "country", "taxpayer_id", "tin_status", "email", "phone", "holder_type", "lei",
)
SHAREHOLDER_JOIN_FIELDS = (
    "first_name", "last_name", "address", "city", "state", "zip", "country", "taxpayer_id", "email",
)


class RegistryNotFoundError(LookupError):
    pass


def to_dict(instance: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for column in instance.__table__.columns:
        value = getattr(instance, column.name)
        if isinstance(value, (date, datetime)):
            value = value.isoformat()
        payload[column.name] = value
    return payload


def _require_issuer(db, issuer_id: int) -> Issuer:
    issuer = db.get(Issuer, issuer_id)
    if issuer is None:
        raise RegistryNotFoundError(f"Issuer {issuer_id} not found")
    return issuer


def _clean(data: Dict[str, Any], names) -> Dict[str, Any]:
    return {name: normalize_string(data.get(name)) for name in names if name in data}


def _commit_new(db, instance) -> Dict[str, Any]:
    try:
        db.add(instance)
        db.commit()
        db.refresh(instance)
        return to_dict(instance)
    except Exception:
        db.rollback()
        raise


# --- Issuers -----------------------------------------------------------------


def list_issuers(session_factory=SessionLocal) -> List[Dict[str, Any]]:
    db = session_factory()
    try:
        return [to_dict(issuer) for issuer in db.query(Issuer).order_by(Issuer.issuer_name).all()]
    finally:
        db.close()


def get_issuer(issuer_id: int, session_factory=SessionLocal) -> Dict[str, Any]:
    db = session_factory()
    try:
        return to_dict(_require_issuer(db, issuer_id))
    finally:
        db.close()


def create_issuer(data: Dict[str, Any], session_factory=SessionLocal) -> Dict[str, Any]:
    values = _clean(data, ISSUER_FIELDS)
    name = values.get("issuer_name")
    if not name:
        raise ValueError("issuer_name is required")
    values.setdefault("display_name", name)

    db = session_factory()
    try:
        duplicate = db.query(Issuer.id).filter(func.lower(Issuer.issuer_name) == name.lower()).first()
        if duplicate is not None:
            raise ValueError(f"Issuer '{name}' already exists")
        created = _commit_new(db, Issuer(**values))
    finally:
        db.close()
    logger.info("Created issuer %s (%s)", created["id"], name)
    return created


# --- Securities --------------------------------------------------------------


def list_securities(issuer_id: int, session_factory=SessionLocal) -> List[Dict[str, Any]]:
    db = session_factory()
    try:
        _require_issuer(db, issuer_id)
        rows = db.query(Security).filter(Security.issuer_id == issuer_id).order_by(Security.id).all()
        return [to_dict(row) for row in rows]
    finally:
        db.close()


def get_security(issuer_id: int, cusip: str, session_factory=SessionLocal) -> Optional[Dict[str, Any]]:
    db = session_factory()
    try:
        row = db.query(Security).filter(Security.issuer_id == issuer_id, Security.cusip == cusip).first()
        return to_dict(row) if row else None
    finally:
        db.close()


def create_security(issuer_id: int, data: Dict[str, Any], session_factory=SessionLocal) -> Dict[str, Any]:
    values = _clean(data, SECURITY_FIELDS)
    if not values.get("cusip"):
        raise ValueError("cusip is required")
    values.setdefault("class_name", "Unknown")
    values["total_authorized_shares"] = parse_quantity(data.get("total_authorized_shares"))
    if values["total_authorized_shares"] < 0:
        raise ValueError("total_authorized_shares cannot be negative")

    db = session_factory()
    try:
        _require_issuer(db, issuer_id)
        duplicate = (
            db.query(Security.id)
            .filter(Security.issuer_id == issuer_id, Security.cusip == values["cusip"])
            .first()
        )
        if duplicate is not None:
            raise ValueError(f"Security with CUSIP {values['cusip']} already exists for this issuer")
        return _commit_new(db, Security(issuer_id=issuer_id, **values))
    finally:
        db.close()


# --- Shareholders ------------------------------------------------------------


def list_shareholders(issuer_id: int, session_factory=SessionLocal) -> List[Dict[str, Any]]:
    db = session_factory()
    try:
        _require_issuer(db, issuer_id)
        rows = db.query(Shareholder).filter(Shareholder.issuer_id == issuer_id).order_by(Shareholder.id).all()
        return [to_dict(row) for row in rows]
    finally:
        db.close()


def get_shareholder(issuer_id: int, shareholder_id: int, session_factory=SessionLocal) -> Dict[str, Any]:
    db = session_factory()
    try:
        row = db.get(Shareholder, shareholder_id)
        if row is None or row.issuer_id != issuer_id:
            raise RegistryNotFoundError(f"Shareholder {shareholder_id} not found")
        return to_dict(row)
    finally:
        db.close()


def create_shareholder(issuer_id: int, data: Dict[str, Any], session_factory=SessionLocal) -> Dict[str, Any]:
    values = _clean(data, SHAREHOLDER_FIELDS)
    if not values.get("account_number"):
        raise ValueError("account_number is required")
    values["dob"] = coerce_date(data.get("dob"))
    values["ofac_date"] = coerce_date(data.get("ofac_date"))

    db = session_factory()
    try:
        _require_issuer(db, issuer_id)
        return _commit_new(db, Shareholder(issuer_id=issuer_id, **values))
    finally:
        db.close()


# --- Transactions ------------------------------------------------------------


def create_transaction(issuer_id: int, data: Dict[str, Any], session_factory=SessionLocal) -> Dict[str, Any]:
    """Manual transfer-journal entry. The direction follows the transaction type."""
    transaction_type = normalize_string(data.get("transaction_type"))
    cusip = normalize_string(data.get("cusip"))
    if not transaction_type:
        raise ValueError("transaction_type is required")
    if not cusip:
        raise ValueError("cusip is required")
    quantity = parse_quantity(data.get("share_quantity"))
    if quantity < 0:
        raise ValueError("share_quantity cannot be negative")

    db = session_factory()
    try:
        _require_issuer(db, issuer_id)
        shareholder_id = data.get("shareholder_id")
        account = None
        if shareholder_id is not None:
            shareholder = db.get(Shareholder, shareholder_id)
            if shareholder is None or shareholder.issuer_id != issuer_id:
                raise ValueError(f"Shareholder {shareholder_id} does not belong to issuer {issuer_id}")
            account = shareholder.account_number
        security = db.query(Security).filter(Security.issuer_id == issuer_id, Security.cusip == cusip).first()

        transfer = Transfer(
            issuer_id=issuer_id,
            shareholder_id=shareholder_id,
            restriction_id=data.get("restriction_id"),
            cusip=cusip,
            issue_name=security.issue_name if security else None,
            issue_ticker=security.issue_ticker if security else None,
            trading_platform=security.trading_platform if security else None,
            security_type=security.class_name if security else None,
            shareholder_account=account,
            transaction_type=transaction_type,
            credit_debit=credit_debit_label(transaction_type),
            share_quantity=quantity,
            transaction_date=coerce_date(data.get("transaction_date")) or date.today(),
            certificate_type=normalize_string(data.get("certificate_type")) or "Book Entry",
            status=(normalize_string(data.get("status")) or "ACTIVE").upper(),
            notes=normalize_string(data.get("notes")) or "NIL",
        )
        created = _commit_new(db, transfer)
    finally:
        db.close()
    logger.info("Recorded %s of %d shares on %s for issuer %s", transaction_type, quantity, cusip, issuer_id)
    return created


def list_transactions(
    issuer_id: int,
    cusip: Optional[str] = None,
    session_factory=SessionLocal,
) -> List[Dict[str, Any]]:
    """Transfers with the holder's name and address joined in."""
    db = session_factory()
    try:
        _require_issuer(db, issuer_id)
        query = (
            db.query(Transfer, Shareholder)
            .outerjoin(Shareholder, Transfer.shareholder_id == Shareholder.id)
            .filter(Transfer.issuer_id == issuer_id)
        )
        if cusip:
            query = query.filter(Transfer.cusip == cusip)
        rows = []
        for transfer, shareholder in query.order_by(Transfer.transaction_date, Transfer.id).all():
            row = to_dict(transfer)
            for name in SHAREHOLDER_JOIN_FIELDS:
                row[name] = getattr(shareholder, name) if shareholder else None
            rows.append(row)
        return rows
    finally:
        db.close()


# --- Restrictions ------------------------------------------------------------


def list_restriction_templates(issuer_id: int, session_factory=SessionLocal) -> List[Dict[str, Any]]:
    db = session_factory()
    try:
        _require_issuer(db, issuer_id)
        rows = (
            db.query(RestrictionTemplate)
            .filter(RestrictionTemplate.issuer_id == issuer_id)
            .order_by(RestrictionTemplate.restriction_type)
            .all()
        )
        return [to_dict(row) for row in rows]
    finally:
        db.close()


def create_restriction_template(issuer_id: int, data: Dict[str, Any], session_factory=SessionLocal) -> Dict[str, Any]:
    # "code"/"legend" are accepted for older clients
    restriction_type = normalize_string(data.get("restriction_type") or data.get("code"))
    description = normalize_string(data.get("description") or data.get("legend"))
    if not restriction_type or not description:
        raise ValueError("restriction_type and description are required")

    db = session_factory()
    try:
        _require_issuer(db, issuer_id)
        return _commit_new(db, RestrictionTemplate(
            issuer_id=issuer_id,
            restriction_type=restriction_type,
            description=description,
            is_active=bool(data.get("is_active", True)),
        ))
    finally:
        db.close()


def list_restrictions(issuer_id: int, session_factory=SessionLocal) -> List[Dict[str, Any]]:
    db = session_factory()
    try:
        _require_issuer(db, issuer_id)
        query = (
            db.query(ShareholderRestriction, RestrictionTemplate, Shareholder)
            .join(RestrictionTemplate, ShareholderRestriction.restriction_id == RestrictionTemplate.id)
            .join(Shareholder, ShareholderRestriction.shareholder_id == Shareholder.id)
            .filter(ShareholderRestriction.issuer_id == issuer_id)
            .order_by(ShareholderRestriction.id)
        )
        rows = []
        for applied, template, shareholder in query.all():
            row = to_dict(applied)
            row["restriction_type"] = template.restriction_type
            row["description"] = template.description
            row["account_number"] = shareholder.account_number
            row["shareholder_name"] = " ".join(
                part for part in (shareholder.first_name, shareholder.last_name) if part
            )
            rows.append(row)
        return rows
    finally:
        db.close()


def apply_restriction(issuer_id: int, data: Dict[str, Any], session_factory=SessionLocal) -> Dict[str, Any]:
    missing = [
        name for name in ("shareholder_id", "restriction_id", "cusip", "restricted_shares")
        if data.get(name) in (None, "")
    ]
    if missing:
        raise ValueError(f"Missing required fields: {', '.join(missing)}")
    restricted = parse_quantity(data.get("restricted_shares"))
    if restricted <= 0:
        raise ValueError("restricted_shares must be greater than 0")

    db = session_factory()
    try:
        _require_issuer(db, issuer_id)
        shareholder = db.get(Shareholder, data["shareholder_id"])
        if shareholder is None or shareholder.issuer_id != issuer_id:
            raise ValueError(f"Shareholder {data['shareholder_id']} does not belong to issuer {issuer_id}")
        template = db.get(RestrictionTemplate, data["restriction_id"])
        if template is None or template.issuer_id != issuer_id:
            raise ValueError(f"Restriction template {data['restriction_id']} does not belong to issuer {issuer_id}")
        return _commit_new(db, ShareholderRestriction(
            issuer_id=issuer_id,
            shareholder_id=shareholder.id,
            restriction_id=template.id,
            cusip=str(data["cusip"]).strip(),
            restricted_shares=restricted,
            restriction_date=coerce_date(data.get("restriction_date")) or date.today(),
            expiration_date=coerce_date(data.get("expiration_date")),
            notes=normalize_string(data.get("notes")),
        ))
    finally:
        db.close()


# --- Split ratio -------------------------------------------------------------


def get_split_ratio(issuer_id: int, session_factory=SessionLocal) -> Dict[str, Any]:
    db = session_factory()
    try:
        issuer = _require_issuer(db, issuer_id)
        split = (
            db.query(Split)
            .filter(Split.issuer_id == issuer_id)
            .order_by(Split.id.desc())
            .first()
        )
        if split is not None:
            class_a, rights = split.class_a_ratio, split.rights_ratio
        else:
            parsed = parse_separation_ratio(issuer.separation_ratio)
            class_a, rights = parsed.class_a_ratio, parsed.rights_ratio
        return {
            "issuer_id": issuer_id,
            "class_a_ratio": class_a,
            "rights_ratio": rights,
            "separation_ratio": issuer.separation_ratio or format_ratio_text(class_a, rights),
        }
    finally:
        db.close()


def update_split_ratio(
    issuer_id: int,
    class_a_ratio: Any,
    rights_ratio: Any,
    session_factory=SessionLocal,
) -> Dict[str, Any]:
    errors = {
        name: message
        for name, message in (
            ("class_a_ratio", validate_ratio_input(class_a_ratio)),
            ("rights_ratio", validate_ratio_input(rights_ratio)),
        )
        if message
    }
    if errors:
        raise ValueError("; ".join(f"{name}: {message}" for name, message in errors.items()))
    class_a = parse_fraction(class_a_ratio)
    rights = parse_fraction(rights_ratio)

    db = session_factory()
    try:
        issuer = _require_issuer(db, issuer_id)
        split = db.query(Split).filter(Split.issuer_id == issuer_id).order_by(Split.id.desc()).first()
        if split is None:
            split = Split(issuer_id=issuer_id)
            db.add(split)
        split.class_a_ratio = class_a
        split.rights_ratio = rights
        issuer.separation_ratio = format_ratio_text(class_a, rights)
        issuer.updated_at = datetime.utcnow()
        db.commit()
        text = issuer.separation_ratio
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    logger.info("Updated split ratio for issuer %s: %s", issuer_id, text)
    return {"issuer_id": issuer_id, "class_a_ratio": class_a, "rights_ratio": rights, "separation_ratio": text}
