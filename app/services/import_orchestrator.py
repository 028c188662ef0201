"""Persist an import batch in dependency order as a resumable job.

Each save step runs in its own database transaction together with the job's
cursor update, so an interrupted import continues from the first incomplete
step. Every inserted row carries an ``import_key`` built from the job id, the
entity, the row index and its natural key; rows whose key already exists are
skipped, which makes re-running a step harmless.
"""
from __future__ import annotations

import logging
import mimetypes
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy import func

from app.models.database import (
    Document,
    ImportJob,
    Issuer,
    Officer,
    RecordkeepingEntry,
    SessionLocal,
    Security,
    Shareholder,
    Split,
    Transfer,
)
from app.services.batch_builder import ImportBatch, dedupe_securities
from app.services.ledger import credit_debit_label
from app.services.normalizers import coerce_date, parse_fraction
from app.services.row_extractor import IssuerRow, ShareholderRow

logger = logging.getLogger(__name__)

STEPS = (
    "issuer",
    "splits",
    "securities",
    "officers",
    "shareholders",
    "transactions",
    "recordkeeping",
    "documents",
)

STEP_LABELS = {
    "issuer": "Issuer",
    "splits": "Splits",
    "securities": "Securities",
    "officers": "Officers",
    "shareholders": "Shareholders",
    "transactions": "Transactions",
    "recordkeeping": "Recordkeeping",
    "documents": "Documents",
}

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_CONFLICT = "conflict"
STATUS_COMPLETED = "completed"
STATUS_COMPLETED_WITH_ERRORS = "completed_with_errors"
STATUS_FAILED = "failed"

SUCCESS_MESSAGE = "All data saved successfully!"
PARTIAL_MESSAGE = "Import completed with some errors"

IN_QUERY_CHUNK_SIZE = 900


class IssuerConflictError(Exception):
    """An issuer with the same name exists and no override was requested."""

    def __init__(self, job_id: str, existing: Dict[str, Any]):
        super().__init__(f"Issuer '{existing.get('issuer_name')}' already exists")
        self.job_id = job_id
        self.existing = existing


class ImportAbortedError(Exception):
    def __init__(self, job_id: str, message: str, last_step: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id
        self.last_step = last_step


class ImportJobNotFoundError(LookupError):
    pass


@dataclass
class EntityResult:
    ok: int = 0
    skipped: int = 0
    failed: List[Dict[str, Any]] = field(default_factory=list)

    def fail(self, index: Optional[int], row: Any, error: Any) -> None:
        self.failed.append({"index": index, "row": row, "error": str(error)})

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "skipped": self.skipped, "failed": list(self.failed)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EntityResult":
        data = data or {}
        return cls(ok=int(data.get("ok", 0)), skipped=int(data.get("skipped", 0)),
                   failed=list(data.get("failed") or []))


@dataclass
class ImportResult:
    job_id: str
    issuer_id: Optional[int]
    status: str
    message: str
    added_records: List[str]
    results: Dict[str, EntityResult]
    warnings: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == STATUS_COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "issuer_id": self.issuer_id,
            "status": self.status,
            "success": self.success,
            "message": self.message,
            "added_records": list(self.added_records),
            "results": {name: result.to_dict() for name, result in self.results.items()},
            "warnings": list(self.warnings),
        }


@dataclass
class _StepContext:
    job_id: str
    issuer_id: Optional[int]
    override: bool
    batch: ImportBatch
    filename: str
    file_size: int


def import_key(job_id: str, entity: str, index: int, natural_key: Any) -> str:
    return f"{job_id}:{entity}:{index}:{natural_key or ''}"


def _chunked(values: Iterable[str], size: int = IN_QUERY_CHUNK_SIZE) -> Iterable[List[str]]:
    chunk: List[str] = []
    for value in values:
        chunk.append(value)
        if len(chunk) == size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def _existing_keys(db, model, keys: Iterable[str]) -> Set[str]:
    found: Set[str] = set()
    for chunk in _chunked(list(keys)):
        rows = db.query(model.import_key).filter(model.import_key.in_(chunk)).all()
        found.update(row[0] for row in rows)
    return found


def key_exists(db, model, key: str) -> bool:
    return db.query(model.id).filter(model.import_key == key).first() is not None


def _issuer_to_dict(issuer: Issuer) -> Dict[str, Any]:
    payload = {item.name: getattr(issuer, item.name) for item in fields(IssuerRow)}
    payload["id"] = issuer.id
    return payload


def _per_row_insert(db, result: EntityResult, model, keyed_rows, build) -> None:
    """Insert rows one savepoint at a time; a bad row only fails itself."""
    keys = [key for key, _index, _row in keyed_rows]
    existing = _existing_keys(db, model, keys)
    for key, index, row in keyed_rows:
        if key in existing:
            result.skipped += 1
            continue
        try:
            with db.begin_nested():
                instance = build(row)
                instance.import_key = key
                db.add(instance)
                db.flush()
        except Exception as exc:
            logger.warning("Failed to insert %s row %s: %s", model.__tablename__, index, exc)
            result.fail(index, row.to_dict(), exc)
            continue
        result.ok += 1


def _bulk_insert(db, result: EntityResult, model, keyed_rows, build) -> None:
    """Insert all new rows in one flush; a failure is recorded once for the batch."""
    existing = _existing_keys(db, model, [key for key, _index, _row in keyed_rows])
    instances = []
    for key, _index, row in keyed_rows:
        if key in existing:
            result.skipped += 1
            continue
        instance = build(row)
        instance.import_key = key
        instances.append(instance)
    if not instances:
        return
    try:
        with db.begin_nested():
            db.add_all(instances)
            db.flush()
    except Exception as exc:
        logger.warning("Bulk insert into %s failed: %s", model.__tablename__, exc)
        result.fail(None, None, exc)
        return
    result.ok += len(instances)


# --- Steps -------------------------------------------------------------------


def _save_issuer(db, ctx: _StepContext) -> EntityResult:
    result = EntityResult()
    values = {key: value for key, value in ctx.batch.issuer.items() if value not in (None, "")}
    name = values.get("issuer_name")
    if not name:
        raise ImportAbortedError(ctx.job_id, "Could not determine issuer: no issuer name in workbook", "issuer")

    existing = (
        db.query(Issuer)
        .filter(func.lower(Issuer.issuer_name) == name.strip().lower())
        .order_by(Issuer.id)
        .first()
    )
    if existing is not None and ctx.issuer_id != existing.id:
        if not ctx.override:
            raise IssuerConflictError(ctx.job_id, _issuer_to_dict(existing))
        for key, value in values.items():
            setattr(existing, key, value)
        existing.updated_at = datetime.utcnow()
        db.flush()
        ctx.issuer_id = existing.id
        logger.info("Issuer '%s' overridden in place (id=%s)", name, existing.id)
        result.ok = 1
        return result

    if existing is not None:
        result.skipped = 1
        return result

    issuer = Issuer(**values)
    db.add(issuer)
    db.flush()
    if issuer.id is None:
        raise ImportAbortedError(ctx.job_id, "Issuer id could not be determined after insert", "issuer")
    ctx.issuer_id = issuer.id
    result.ok = 1
    return result


def _save_splits(db, ctx: _StepContext) -> EntityResult:
    result = EntityResult()

    def build(row):
        class_a = parse_fraction(row.class_a_ratio)
        rights = parse_fraction(row.rights_ratio)
        if class_a is None or rights is None:
            raise ValueError(f"Invalid split ratio {row.class_a_ratio!r} / {row.rights_ratio!r}")
        return Split(issuer_id=ctx.issuer_id, transaction_type=row.transaction_type,
                     class_a_ratio=class_a, rights_ratio=rights)

    keyed = [
        (import_key(ctx.job_id, "splits", index, row.transaction_type), index, row)
        for index, row in enumerate(ctx.batch.splits)
    ]
    _per_row_insert(db, result, Split, keyed, build)
    return result


def _save_securities(db, ctx: _StepContext) -> EntityResult:
    result = EntityResult()
    rows = dedupe_securities(ctx.batch.securities)
    present = {
        cusip for (cusip,) in db.query(Security.cusip).filter(Security.issuer_id == ctx.issuer_id).all()
    }

    keyed = []
    for index, row in enumerate(rows):
        if row.cusip in present:
            result.skipped += 1
            continue
        keyed.append((import_key(ctx.job_id, "securities", index, row.cusip), index, row))

    def build(row):
        return Security(
            issuer_id=ctx.issuer_id,
            cusip=row.cusip,
            class_name=row.class_name,
            issue_name=row.issue_name,
            issue_ticker=row.issue_ticker,
            trading_platform=row.trading_platform,
            total_authorized_shares=row.total_authorized_shares or 0,
            status=row.status,
        )

    _per_row_insert(db, result, Security, keyed, build)
    return result


def _save_officers(db, ctx: _StepContext) -> EntityResult:
    result = EntityResult()
    keyed = [
        (import_key(ctx.job_id, "officers", index, row.officer_name), index, row)
        for index, row in enumerate(ctx.batch.officers)
    ]
    _per_row_insert(db, result, Officer, keyed, lambda row: Officer(
        issuer_id=ctx.issuer_id,
        officer_name=row.officer_name,
        officer_position=row.officer_position,
    ))
    return result


def _merge_shareholders(rows: List[ShareholderRow]) -> List[ShareholderRow]:
    """Collapse repeated accounts; later non-empty values fill in earlier ones."""
    merged: Dict[str, ShareholderRow] = {}
    for row in rows:
        current = merged.get(row.account_number)
        if current is None:
            merged[row.account_number] = ShareholderRow.from_dict(row.to_dict())
            continue
        for name, value in row.to_dict().items():
            if value not in (None, "") and getattr(current, name) in (None, ""):
                setattr(current, name, value)
    return list(merged.values())


def _save_shareholders(db, ctx: _StepContext) -> EntityResult:
    result = EntityResult()
    accounts = [row for row in ctx.batch.shareholders if row.account_number]
    result.skipped += len(ctx.batch.shareholders) - len(accounts)
    unique = _merge_shareholders(accounts)
    result.skipped += len(accounts) - len(unique)

    present = {
        account
        for (account,) in db.query(Shareholder.account_number)
        .filter(Shareholder.issuer_id == ctx.issuer_id)
        .all()
    }
    keyed = []
    for index, row in enumerate(unique):
        key = import_key(ctx.job_id, "shareholders", index, row.account_number)
        if row.account_number in present and not key_exists(db, Shareholder, key):
            result.skipped += 1
            continue
        keyed.append((key, index, row))

    def build(row: ShareholderRow) -> Shareholder:
        return Shareholder(
            issuer_id=ctx.issuer_id,
            account_number=row.account_number,
            first_name=row.first_name,
            last_name=row.last_name,
            lei=row.lei,
            holder_type=row.holder_type,
            address=row.address,
            city=row.city,
            state=row.state,
            zip=row.zip,
            country=row.country,
            taxpayer_id=row.taxpayer_id,
            tin_status=row.tin_status,
            email=row.email,
            phone=row.phone,
            ownership_percentage=row.ownership_percentage or 0,
            ofac_date=coerce_date(row.ofac_date),
            dob=coerce_date(row.dob),
        )

    _bulk_insert(db, result, Shareholder, keyed, build)
    return result


def shareholder_id_map(db, issuer_id: int, job_id: str) -> Dict[str, int]:
    """Account number to shareholder id; rows from this job win over older ones."""
    mapping: Dict[str, int] = {}
    rows = (
        db.query(Shareholder.account_number, Shareholder.id, Shareholder.import_key)
        .filter(Shareholder.issuer_id == issuer_id)
        .order_by(Shareholder.id)
        .all()
    )
    prefix = f"{job_id}:shareholders:"
    for account, shareholder_id, key in rows:
        if not account:
            continue
        if account not in mapping or (key or "").startswith(prefix):
            mapping[account] = shareholder_id
    return mapping


def _save_transactions(db, ctx: _StepContext) -> EntityResult:
    result = EntityResult()
    mapping = shareholder_id_map(db, ctx.issuer_id, ctx.job_id)
    unmatched = 0

    def build(row):
        nonlocal unmatched
        shareholder_id = mapping.get(row.shareholder_account)
        if shareholder_id is None:
            unmatched += 1
        return Transfer(
            issuer_id=ctx.issuer_id,
            shareholder_id=shareholder_id,
            cusip=row.cusip,
            issue_name=row.issue_name,
            issue_ticker=row.issue_ticker,
            trading_platform=row.trading_platform,
            security_type=row.security_type,
            issuance_type=row.issuance_type,
            shareholder_account=row.shareholder_account,
            transaction_type=row.transaction_type,
            credit_debit=credit_debit_label(row.transaction_type),
            share_quantity=int(row.share_quantity or 0),
            transaction_date=coerce_date(row.transaction_date),
            certificate_type=row.certificate_type,
            status=row.status,
            notes=row.notes,
            raw_row=row.raw_row,
        )

    keyed = [
        (import_key(ctx.job_id, "transactions", index, row.shareholder_account), index, row)
        for index, row in enumerate(ctx.batch.transactions)
    ]
    _bulk_insert(db, result, Transfer, keyed, build)
    if unmatched:
        logger.info("%d transactions saved without a matching shareholder", unmatched)
    return result


def _save_recordkeeping(db, ctx: _StepContext) -> EntityResult:
    result = EntityResult()
    keyed = [
        (import_key(ctx.job_id, "recordkeeping", index, row.cusip), index, row)
        for index, row in enumerate(ctx.batch.recordkeeping)
    ]
    _per_row_insert(db, result, RecordkeepingEntry, keyed, lambda row: RecordkeepingEntry(
        issuer_id=ctx.issuer_id,
        cusip=row.cusip,
        issue_name=row.issue_name,
        issue_ticker=row.issue_ticker,
        trading_platform=row.trading_platform,
        security_type=row.security_type,
        total_authorized_shares=row.total_authorized_shares,
    ))
    return result


def _save_documents(db, ctx: _StepContext) -> EntityResult:
    result = EntityResult()
    if not ctx.filename:
        return result
    key = import_key(ctx.job_id, "documents", 0, ctx.filename)
    if key_exists(db, Document, key):
        result.skipped = 1
        return result
    file_type = mimetypes.guess_type(ctx.filename)[0] or "application/octet-stream"
    try:
        with db.begin_nested():
            db.add(Document(
                issuer_id=ctx.issuer_id,
                document_type="Import Workbook",
                document_name=ctx.filename,
                file_size=ctx.file_size,
                file_type=file_type,
                import_key=key,
            ))
            db.flush()
    except Exception as exc:
        logger.warning("Failed to record document for %s: %s", ctx.filename, exc)
        result.fail(0, {"document_name": ctx.filename}, exc)
        return result
    result.ok = 1
    return result


STEP_HANDLERS: Dict[str, Callable[[Any, _StepContext], EntityResult]] = {
    "issuer": _save_issuer,
    "splits": _save_splits,
    "securities": _save_securities,
    "officers": _save_officers,
    "shareholders": _save_shareholders,
    "transactions": _save_transactions,
    "recordkeeping": _save_recordkeeping,
    "documents": _save_documents,
}


# --- Job lifecycle -----------------------------------------------------------


def create_import_job(
    batch: ImportBatch,
    filename: str = "",
    file_size: int = 0,
    override: bool = False,
    session_factory=SessionLocal,
) -> str:
    job_id = str(uuid.uuid4())
    db = session_factory()
    try:
        db.add(ImportJob(
            id=job_id,
            filename=filename,
            file_size=file_size,
            status=STATUS_PENDING,
            cursor=0,
            override=override,
            payload=batch.to_dict(),
            results={},
        ))
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    logger.info("Created import job %s for '%s'", job_id, filename)
    return job_id


def _load_job(db, job_id: str) -> ImportJob:
    job = db.get(ImportJob, job_id)
    if job is None:
        raise ImportJobNotFoundError(f"Import job '{job_id}' not found")
    return job


def _set_job_state(session_factory, job_id: str, **values: Any) -> None:
    db = session_factory()
    try:
        job = _load_job(db, job_id)
        for key, value in values.items():
            setattr(job, key, value)
        job.updated_at = datetime.utcnow()
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _build_result(job: ImportJob) -> ImportResult:
    results = {name: EntityResult.from_dict((job.results or {}).get(name)) for name in STEPS
               if name in (job.results or {})}
    added = [
        f"{STEP_LABELS[name]}: {result.ok}"
        for name, result in results.items()
        if result.ok
    ]
    message = SUCCESS_MESSAGE if job.status == STATUS_COMPLETED else PARTIAL_MESSAGE
    if job.status in (STATUS_FAILED, STATUS_CONFLICT) and job.error:
        message = job.error
    warnings = list((job.payload or {}).get("warnings") or [])
    return ImportResult(
        job_id=job.id,
        issuer_id=job.issuer_id,
        status=job.status,
        message=message,
        added_records=added,
        results=results,
        warnings=warnings,
    )


def _run_step(session_factory, job_id: str, step_index: int) -> EntityResult:
    """Run one step and advance the cursor in the same transaction."""
    step = STEPS[step_index]
    db = session_factory()
    try:
        job = _load_job(db, job_id)
        ctx = _StepContext(
            job_id=job.id,
            issuer_id=job.issuer_id,
            override=bool(job.override),
            batch=ImportBatch.from_dict(job.payload or {}),
            filename=job.filename or "",
            file_size=int(job.file_size or 0),
        )
        result = STEP_HANDLERS[step](db, ctx)

        results = dict(job.results or {})
        results[step] = result.to_dict()
        job.results = results
        job.issuer_id = ctx.issuer_id
        job.cursor = step_index + 1
        job.updated_at = datetime.utcnow()
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    logger.info(
        "Import job %s step %s: ok=%d skipped=%d failed=%d",
        job_id, step, result.ok, result.skipped, len(result.failed),
    )
    return result


def run_import_job(job_id: str, session_factory=SessionLocal) -> ImportResult:
    db = session_factory()
    try:
        job = _load_job(db, job_id)
        cursor = int(job.cursor or 0)
        status = job.status
    finally:
        db.close()

    if status in (STATUS_COMPLETED, STATUS_COMPLETED_WITH_ERRORS):
        return get_import_result(job_id, session_factory)

    _set_job_state(session_factory, job_id, status=STATUS_RUNNING, error=None)
    for step_index in range(cursor, len(STEPS)):
        try:
            _run_step(session_factory, job_id, step_index)
        except IssuerConflictError as exc:
            _set_job_state(session_factory, job_id, status=STATUS_CONFLICT, error=str(exc))
            logger.info("Import job %s paused on issuer conflict: %s", job_id, exc)
            raise
        except ImportAbortedError as exc:
            _set_job_state(session_factory, job_id, status=STATUS_FAILED, error=str(exc))
            logger.error("Import job %s aborted at step %s: %s", job_id, STEPS[step_index], exc)
            raise
        except Exception as exc:
            logger.exception("Import job %s failed at step %s", job_id, STEPS[step_index])
            message = f"Step '{STEPS[step_index]}' failed: {exc}"
            _set_job_state(session_factory, job_id, status=STATUS_FAILED, error=message)
            last_step = STEPS[step_index - 1] if step_index else None
            raise ImportAbortedError(job_id, message, last_step) from exc

    db = session_factory()
    try:
        job = _load_job(db, job_id)
        any_failed = any((entry or {}).get("failed") for entry in (job.results or {}).values())
    finally:
        db.close()

    final_status = STATUS_COMPLETED_WITH_ERRORS if any_failed else STATUS_COMPLETED
    _set_job_state(session_factory, job_id, status=final_status)
    result = get_import_result(job_id, session_factory)
    logger.info("Import job %s finished: %s (%s)", job_id, final_status, ", ".join(result.added_records))
    return result


def resume_import_job(
    job_id: str,
    override: Optional[bool] = None,
    session_factory=SessionLocal,
) -> ImportResult:
    """Continue a job from its cursor; ``override`` answers an issuer conflict."""
    if override is not None:
        _set_job_state(session_factory, job_id, override=override)
    return run_import_job(job_id, session_factory)


def save_batch(
    batch: ImportBatch,
    filename: str = "",
    file_size: int = 0,
    override: bool = False,
    session_factory=SessionLocal,
) -> ImportResult:
    job_id = create_import_job(batch, filename, file_size, override, session_factory)
    return run_import_job(job_id, session_factory)


def get_import_result(job_id: str, session_factory=SessionLocal) -> ImportResult:
    db = session_factory()
    try:
        return _build_result(_load_job(db, job_id))
    finally:
        db.close()


def get_job_status(job_id: str, session_factory=SessionLocal) -> Dict[str, Any]:
    db = session_factory()
    try:
        job = _load_job(db, job_id)
        cursor = int(job.cursor or 0)
        return {
            "job_id": job.id,
            "issuer_id": job.issuer_id,
            "filename": job.filename,
            "status": job.status,
            "cursor": cursor,
            "next_step": STEPS[cursor] if cursor < len(STEPS) else None,
            "override": bool(job.override),
            "results": dict(job.results or {}),
            "error": job.error,
            "created_at": job.created_at.isoformat() if job.created_at else None,
            "updated_at": job.updated_at.isoformat() if job.updated_at else None,
        }
    finally:
        db.close()
