"""Read an uploaded workbook and merge every sheet into one import batch."""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from app.core.settings import get_settings
from app.services import row_extractor as rx
from app.services.normalizers import parse_quantity
from app.services.sheet_classifier import (
    ISSUER,
    OFFICERS,
    RECORDKEEPING,
    RECORDKEEPING_BOOK,
    SECURITIES,
    SHAREHOLDERS,
    WorkbookPlan,
    plan_workbook,
)
from app.services.split_ratio import parse_separation_ratio

logger = logging.getLogger(__name__)

EXCEL_EXTENSIONS = (".xlsx", ".xlsm", ".xls")
CSV_ENCODINGS = ("utf-8", "cp1252", "latin-1")

SECTION_TYPES = {
    "securities": rx.SecurityRow,
    "officers": rx.OfficerRow,
    "shareholders": rx.ShareholderRow,
    "transactions": rx.TransactionRow,
    "recordkeeping": rx.RecordkeepingRow,
    "splits": rx.SplitRow,
}

Sheet = Tuple[str, List[List[Any]]]


class WorkbookParseError(ValueError):
    """The upload could not be read as a workbook."""


def _frame_to_grid(frame: pd.DataFrame) -> List[List[Any]]:
    cleaned = frame.astype(object).where(pd.notna(frame), "")
    return cleaned.values.tolist()


def read_workbook(content: bytes, filename: str) -> List[Sheet]:
    """Return ``(sheet_name, grid)`` pairs in workbook order."""
    if not content:
        raise WorkbookParseError("Uploaded file is empty")

    name = (filename or "").lower()
    if name.endswith(EXCEL_EXTENSIONS):
        try:
            frames = pd.read_excel(io.BytesIO(content), sheet_name=None, header=None, dtype=object)
        except Exception as exc:
            raise WorkbookParseError(f"Unable to read workbook '{filename}': {exc}") from exc
        return [(str(sheet_name), _frame_to_grid(frame)) for sheet_name, frame in frames.items()]

    if name.endswith(".csv"):
        for encoding in CSV_ENCODINGS:
            try:
                frame = pd.read_csv(io.BytesIO(content), header=None, dtype=object, encoding=encoding)
            except UnicodeDecodeError:
                continue
            except Exception as exc:
                raise WorkbookParseError(f"Unable to read CSV '{filename}': {exc}") from exc
            return [(filename.rsplit(".", 1)[0], _frame_to_grid(frame))]
        raise WorkbookParseError("Unable to decode CSV file with supported encodings")

    raise WorkbookParseError("Only Excel (.xlsx, .xls) or CSV files are supported")


@dataclass
class ImportBatch:
    issuer: Dict[str, Any] = field(default_factory=dict)
    securities: List[rx.SecurityRow] = field(default_factory=list)
    officers: List[rx.OfficerRow] = field(default_factory=list)
    shareholders: List[rx.ShareholderRow] = field(default_factory=list)
    transactions: List[rx.TransactionRow] = field(default_factory=list)
    recordkeeping: List[rx.RecordkeepingRow] = field(default_factory=list)
    splits: List[rx.SplitRow] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    plan: Dict[str, Any] = field(default_factory=dict)

    def summary(self) -> Dict[str, int]:
        return {
            "issuer": 1 if self.issuer.get("issuer_name") else 0,
            "securities": len(self.securities),
            "officers": len(self.officers),
            "shareholders": len(self.shareholders),
            "transactions": len(self.transactions),
            "recordkeeping": len(self.recordkeeping),
            "splits": len(self.splits),
            "warnings": len(self.warnings),
        }

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "issuer": dict(self.issuer),
            "warnings": list(self.warnings),
            "plan": dict(self.plan),
        }
        for section in SECTION_TYPES:
            payload[section] = [row.to_dict() for row in getattr(self, section)]
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportBatch":
        batch = cls(
            issuer=dict(data.get("issuer") or {}),
            warnings=list(data.get("warnings") or []),
            plan=dict(data.get("plan") or {}),
        )
        for section, row_type in SECTION_TYPES.items():
            setattr(batch, section, [row_type.from_dict(item) for item in data.get(section) or []])
        return batch

    def replace_section(self, section: str, rows: Any) -> None:
        """Swap one section for edited preview data."""
        if section == "issuer":
            if not isinstance(rows, dict):
                raise ValueError("Issuer section must be an object")
            self.issuer = rx.IssuerRow.from_dict(rows).to_dict()
            return
        row_type = SECTION_TYPES.get(section)
        if row_type is None:
            raise ValueError(f"Unknown section '{section}'")
        if not isinstance(rows, list):
            raise ValueError(f"Section '{section}' must be a list")
        try:
            parsed = [row_type.from_dict(item) for item in rows]
        except TypeError as exc:
            raise ValueError(f"Invalid rows for section '{section}': {exc}") from exc
        if section == "transactions":
            for index, row in enumerate(parsed):
                row.share_quantity = parse_quantity(row.share_quantity)
                if row.share_quantity < 0:
                    raise ValueError(f"Transaction {index + 1}: share quantity cannot be negative")
        setattr(self, section, parsed)


def _merge_security(existing: rx.SecurityRow, incoming: rx.SecurityRow) -> None:
    for name, value in incoming.to_dict().items():
        if value in (None, "") or (name == "class_name" and value == rx.UNKNOWN_CLASS):
            continue
        setattr(existing, name, value)


def dedupe_securities(rows: Sequence[rx.SecurityRow]) -> List[rx.SecurityRow]:
    """One record per CUSIP: the first sighting keeps its slot, later values win."""
    by_cusip: Dict[str, rx.SecurityRow] = {}
    for row in rows:
        current = by_cusip.get(row.cusip)
        if current is None:
            by_cusip[row.cusip] = rx.SecurityRow.from_dict(row.to_dict())
        else:
            _merge_security(current, row)
    return list(by_cusip.values())


def _securities_from_transactions(transactions: Sequence[rx.TransactionRow]) -> List[rx.SecurityRow]:
    derived = []
    for row in transactions:
        if not row.cusip:
            continue
        derived.append(rx.SecurityRow(
            cusip=row.cusip,
            class_name=row.security_type or rx.UNKNOWN_CLASS,
            issue_name=row.issue_name,
            issue_ticker=row.issue_ticker,
            trading_platform=row.trading_platform,
        ))
    return derived


def _missing_shareholders(batch: ImportBatch) -> List[rx.ShareholderRow]:
    known = {row.account_number for row in batch.shareholders}
    missing: List[rx.ShareholderRow] = []
    for row in batch.transactions:
        account = row.shareholder_account
        if account and account not in known:
            known.add(account)
            missing.append(rx.ShareholderRow(account_number=account))
    return missing


def _split_from_issuer(issuer: Dict[str, Any]) -> Optional[rx.SplitRow]:
    text = issuer.get("separation_ratio")
    if not text:
        return None
    ratio = parse_separation_ratio(text)
    return rx.SplitRow(class_a_ratio=ratio.class_a_ratio, rights_ratio=ratio.rights_ratio)


def build_import_batch(sheets: Sequence[Sheet], future_window: Optional[int] = None,
                       min_score: Optional[int] = None) -> ImportBatch:
    settings = get_settings()
    future_window = settings.future_year_window if future_window is None else future_window
    min_score = settings.tx_sheet_min_score if min_score is None else min_score

    plan: WorkbookPlan = plan_workbook(sheets, min_score)
    batch = ImportBatch(plan=plan.to_dict())
    securities: List[rx.SecurityRow] = []

    for sheet_plan, (name, rows) in zip(plan.sheets, sheets):
        categories = sheet_plan.categories
        if ISSUER in categories:
            batch.issuer.update(rx.extract_issuer(rows))
        if SECURITIES in categories:
            securities.extend(rx.extract_securities(rows))
        if OFFICERS in categories:
            batch.officers.extend(rx.extract_officers(rows))
        if SHAREHOLDERS in categories:
            batch.shareholders.extend(rx.extract_shareholders(rows))
        if RECORDKEEPING in categories:
            summary = rx.extract_recordkeeping_summary(rows)
            batch.recordkeeping.extend(summary.recordkeeping)
            securities.extend(summary.securities)
        if RECORDKEEPING_BOOK in categories:
            book = rx.extract_recordkeeping_book(rows, sheet_name=name, future_window=future_window)
            batch.transactions.extend(book.transactions)
            batch.shareholders.extend(book.shareholders)
            batch.warnings.extend(book.warnings)
        if sheet_plan.is_transaction_sheet:
            journal = rx.extract_transactions(rows, sheet_name=name, future_window=future_window)
            batch.transactions.extend(journal.transactions)
            batch.warnings.extend(journal.warnings)

    batch.securities = dedupe_securities(securities)
    listed = {row.cusip for row in batch.securities}
    derived = [row for row in _securities_from_transactions(batch.transactions) if row.cusip not in listed]
    batch.securities.extend(dedupe_securities(derived))
    batch.shareholders.extend(_missing_shareholders(batch))

    split = _split_from_issuer(batch.issuer)
    if split is not None:
        batch.splits.append(split)

    if not batch.issuer.get("issuer_name"):
        batch.warnings.append("No issuer name found in workbook")
    return batch


def parse_workbook(content: bytes, filename: str) -> ImportBatch:
    sheets = read_workbook(content, filename)
    batch = build_import_batch(sheets)
    logger.info(
        "Parsed '%s' (%d sheets, transaction sheet rule=%s): %s",
        filename,
        len(sheets),
        batch.plan.get("transaction_rule"),
        batch.summary(),
    )
    return batch
