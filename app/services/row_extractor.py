"""Turn classified sheet grids into typed row records.

Every extractor takes the sheet's row-major grid (header at index 0, ``""`` for
empty cells) and returns plain dataclasses. The sparse "context" columns of a
transfer journal (CUSIP, issue name, ticker ...) are resolved with an explicit
fold, :func:`carry_context`, instead of mutable state shared across rows.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.services.ledger import check_direction, credit_debit_label
from app.services.normalizers import (
    DEFAULT_FUTURE_YEAR_WINDOW,
    cell_at,
    cell_text,
    find_header_index,
    format_db_date,
    is_blank_row,
    is_context_value,
    parse_cell_date,
    parse_percentage,
    parse_quantity,
)

logger = logging.getLogger(__name__)

Grid = List[List[Any]]

DEFAULT_NOTES = "NIL"
DEFAULT_CERTIFICATE_TYPE = "Book Entry"
DEFAULT_STATUS = "ACTIVE"
UNKNOWN_TRANSACTION_TYPE = "UNKNOWN"
UNKNOWN_CLASS = "Unknown"

CONTEXT_FIELDS = (
    "cusip",
    "issue_name",
    "issue_ticker",
    "trading_platform",
    "security_type",
    "issuance_type",
)

ISSUER_FIELD_MAP: Dict[str, str] = {
    "spac name": "issuer_name",
    "issuer name": "issuer_name",
    "company name": "issuer_name",
    "address": "address",
    "headquarters": "address",
    "telephone": "telephone",
    "phone": "telephone",
    "contact": "telephone",
    "tax id": "tax_id",
    "ein": "tax_id",
    "incorporation": "incorporation",
    "place of incorporation": "incorporation",
    "jurisdiction": "incorporation",
    "underwriter": "underwriter",
    "lead underwriter": "underwriter",
    "share information": "share_info",
    "share info": "share_info",
    "authorized shares": "share_info",
    "security types being issued": "share_info",
    "class a ipo issuance": "share_info",
    "class b ipo issuance": "share_info",
    "warrant ipo issuance": "share_info",
    "notes": "notes",
    "remarks": "notes",
    "redemptions": "notes",
    "forms sl status": "forms_sl_status",
    "form sl status": "forms_sl_status",
    "form s-1": "forms_sl_status",
    "timeframe for separation": "timeframe_for_separation",
    "separation ratio": "separation_ratio",
    "exchange": "exchange_platform",
    "exchange platform": "exchange_platform",
    "trading platform": "exchange_platform",
    "listing exchange": "exchange_platform",
    "timeframe for bc": "timeframe_for_bc",
    "business combination timeframe": "timeframe_for_bc",
    "us counsel": "us_counsel",
    "u.s. counsel": "us_counsel",
    "offshore counsel": "offshore_counsel",
    "description": "description",
    "summary": "description",
}

# Header keyword lists, tried in order by find_header_index.
ISSUE_NAME_KEYS = ("issue name", "issue")
TICKER_KEYS = ("ticker", "issue ticker")
PLATFORM_KEYS = ("platform", "trading platform")
CUSIP_KEYS = ("cusip", "issue cusip")
SECURITY_TYPE_KEYS = ("security type", "class")
ISSUANCE_TYPE_KEYS = ("issuance type", "issuance", "type of issuance")
CREDIT_DEBIT_KEYS = ("credit/debit", "credit", "debit")
CREDIT_DATE_KEYS = ("credit date",)
DEBIT_DATE_KEYS = ("debit date",)
TX_DATE_KEYS = ("transaction date", "date")
CERTIFICATE_KEYS = ("certificate", "cert")
STATUS_KEYS = ("status",)
NOTES_KEYS = ("notes", "memo", "remarks")


# --- Row records -------------------------------------------------------------


@dataclass
class RowRecord:
    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in (data or {}).items() if key in known})


@dataclass
class IssuerRow(RowRecord):
    issuer_name: Optional[str] = None
    display_name: Optional[str] = None
    address: Optional[str] = None
    telephone: Optional[str] = None
    tax_id: Optional[str] = None
    incorporation: Optional[str] = None
    underwriter: Optional[str] = None
    share_info: Optional[str] = None
    notes: Optional[str] = None
    forms_sl_status: Optional[str] = None
    timeframe_for_separation: Optional[str] = None
    separation_ratio: Optional[str] = None
    exchange_platform: Optional[str] = None
    timeframe_for_bc: Optional[str] = None
    us_counsel: Optional[str] = None
    offshore_counsel: Optional[str] = None
    description: Optional[str] = None


@dataclass
class SecurityRow(RowRecord):
    cusip: str
    class_name: str = UNKNOWN_CLASS
    issue_name: str = ""
    issue_ticker: str = ""
    trading_platform: str = ""
    total_authorized_shares: Optional[int] = None
    status: str = DEFAULT_STATUS


@dataclass
class OfficerRow(RowRecord):
    officer_name: str
    officer_position: str = UNKNOWN_CLASS


@dataclass
class ShareholderRow(RowRecord):
    account_number: str
    first_name: str = ""
    last_name: str = ""
    lei: str = ""
    holder_type: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = ""
    taxpayer_id: str = ""
    tin_status: str = ""
    email: str = ""
    phone: str = ""
    ownership_percentage: Optional[float] = None
    ofac_date: Optional[str] = None
    dob: Optional[str] = None


@dataclass
class TransactionRow(RowRecord):
    cusip: str
    transaction_type: str
    credit_debit: str
    share_quantity: int
    transaction_date: Optional[str]
    shareholder_account: str = ""
    issue_name: str = ""
    issue_ticker: str = ""
    trading_platform: str = ""
    security_type: str = ""
    issuance_type: str = ""
    certificate_type: str = DEFAULT_CERTIFICATE_TYPE
    status: str = DEFAULT_STATUS
    notes: str = DEFAULT_NOTES
    sheet_credit_debit: str = ""
    raw_row: List[str] = field(default_factory=list)


@dataclass
class RecordkeepingRow(RowRecord):
    cusip: str
    issue_name: str = ""
    issue_ticker: str = ""
    trading_platform: str = ""
    security_type: str = ""
    total_authorized_shares: Optional[int] = None


@dataclass
class SplitRow(RowRecord):
    class_a_ratio: Any = None
    rights_ratio: Any = None
    transaction_type: str = "DWAC Withdrawal"


@dataclass
class SheetExtraction:
    """Everything one extractor pulled from one sheet."""
    issuer: Dict[str, Any] = field(default_factory=dict)
    securities: List[SecurityRow] = field(default_factory=list)
    officers: List[OfficerRow] = field(default_factory=list)
    shareholders: List[ShareholderRow] = field(default_factory=list)
    transactions: List[TransactionRow] = field(default_factory=list)
    recordkeeping: List[RecordkeepingRow] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


# --- Context fold ------------------------------------------------------------


def carry_context(
    context: Dict[str, str],
    values: Dict[str, Any],
) -> Tuple[Dict[str, str], Dict[str, str]]:
    """Resolve one row's context columns against the last valid values.

    Returns ``(new_context, resolved)``. A blank, ``NA``, ``N/A`` or ``-`` cell
    resolves to the carried value; any other value is adopted and carried on.
    """
    new_context = dict(context)
    resolved: Dict[str, str] = {}
    for name in CONTEXT_FIELDS:
        value = values.get(name, "")
        if is_context_value(value):
            text = cell_text(value)
            resolved[name] = text
            new_context[name] = text
        else:
            resolved[name] = context.get(name, "")
    return new_context, resolved


# --- Helpers -----------------------------------------------------------------


def _headers(rows: Grid) -> List[str]:
    return [cell_text(header).lower() for header in (rows[0] if rows else [])]


def _text(row: Sequence[Any], index: int) -> str:
    return cell_text(cell_at(row, index))


def _raw_text(row: Sequence[Any]) -> List[str]:
    return [cell_text(cell) for cell in row]


def _date_text(value: Any, future_window: int) -> Optional[str]:
    return format_db_date(parse_cell_date(value, future_window=future_window))


def _optional_int(value: Any) -> Optional[int]:
    if cell_text(value) == "":
        return None
    return parse_quantity(value)


def _resolve_transaction_date(
    row: Sequence[Any],
    credit_idx: int,
    debit_idx: int,
    tx_idx: int,
    future_window: int,
) -> Optional[str]:
    # credit date, then debit date, then the generic transaction date column
    for index in (credit_idx, debit_idx, tx_idx):
        raw = cell_at(row, index)
        if cell_text(raw) != "":
            return _date_text(raw, future_window)
    return None


# --- Extractors --------------------------------------------------------------


def extract_issuer(rows: Grid) -> Dict[str, Any]:
    """Read key/value rows (``"Issuer Name" | "Acme Corp"``) into issuer fields."""
    issuer: Dict[str, Any] = {}
    for row in rows:
        if len(row) < 2:
            continue
        key = cell_text(row[0]).replace(":", "").strip().lower()
        value = cell_text(row[1])
        if not key or not value:
            continue
        mapped = ISSUER_FIELD_MAP.get(key)
        if not mapped:
            continue
        issuer[mapped] = value
        if mapped == "issuer_name":
            issuer["display_name"] = value
    return issuer


def extract_securities(rows: Grid) -> List[SecurityRow]:
    headers = _headers(rows)
    idx_issue_name = find_header_index(headers, ISSUE_NAME_KEYS)
    idx_ticker = find_header_index(headers, TICKER_KEYS)
    idx_platform = find_header_index(headers, PLATFORM_KEYS)
    idx_cusip = find_header_index(headers, ("cusip",))
    idx_type = find_header_index(headers, SECURITY_TYPE_KEYS)
    idx_authorized = find_header_index(headers, ("total securities issued", "authorized shares"))

    securities: List[SecurityRow] = []
    for row in rows[1:]:
        if is_blank_row(row):
            continue
        cusip = _text(row, idx_cusip)
        if not cusip:
            continue
        securities.append(SecurityRow(
            cusip=cusip,
            class_name=_text(row, idx_type) or UNKNOWN_CLASS,
            issue_name=_text(row, idx_issue_name) or _text(row, 0),
            issue_ticker=_text(row, idx_ticker),
            trading_platform=_text(row, idx_platform),
            total_authorized_shares=_optional_int(cell_at(row, idx_authorized)),
        ))
    return securities


def extract_officers(rows: Grid) -> List[OfficerRow]:
    headers = _headers(rows)
    idx_name = find_header_index(headers, ("name", "officer", "director"))
    idx_position = find_header_index(headers, ("position", "title", "role"))

    officers: List[OfficerRow] = []
    for row in rows[1:]:
        if is_blank_row(row):
            continue
        name = _text(row, idx_name) or _text(row, 0)
        if not name:
            continue
        officers.append(OfficerRow(officer_name=name, officer_position=_text(row, idx_position) or UNKNOWN_CLASS))
    return officers


def extract_shareholders(rows: Grid) -> List[ShareholderRow]:
    headers = _headers(rows)
    idx_account = find_header_index(headers, ("account", "account number"))
    idx_first = find_header_index(headers, ("first name", "first"))
    idx_last = find_header_index(headers, ("last name", "last"))

    shareholders: List[ShareholderRow] = []
    for row in rows[1:]:
        if is_blank_row(row):
            continue
        account = _text(row, idx_account) or _text(row, 0)
        if not account:
            continue
        shareholders.append(ShareholderRow(
            account_number=account,
            first_name=_text(row, idx_first),
            last_name=_text(row, idx_last),
        ))
    return shareholders


def extract_recordkeeping_summary(rows: Grid) -> SheetExtraction:
    """Record-keeping summary rows, plus one ACTIVE security per CUSIP seen."""
    headers = _headers(rows)
    idx_issue_name = find_header_index(headers, ISSUE_NAME_KEYS)
    idx_ticker = find_header_index(headers, TICKER_KEYS)
    idx_platform = find_header_index(headers, ("trading platform", "platform", "exchange"))
    idx_cusip = find_header_index(headers, CUSIP_KEYS)
    idx_type = find_header_index(headers, SECURITY_TYPE_KEYS)
    idx_authorized = find_header_index(headers, ("total securities issued", "authorized shares"))

    extraction = SheetExtraction()
    seen_cusips = set()
    for row in rows[1:]:
        if is_blank_row(row):
            continue
        cusip = _text(row, idx_cusip)
        if not cusip:
            continue
        record = RecordkeepingRow(
            cusip=cusip,
            issue_name=_text(row, idx_issue_name),
            issue_ticker=_text(row, idx_ticker),
            trading_platform=_text(row, idx_platform),
            security_type=_text(row, idx_type),
            total_authorized_shares=_optional_int(cell_at(row, idx_authorized)),
        )
        extraction.recordkeeping.append(record)
        if cusip in seen_cusips:
            continue
        seen_cusips.add(cusip)
        extraction.securities.append(SecurityRow(
            cusip=cusip,
            class_name=record.security_type or UNKNOWN_CLASS,
            issue_name=record.issue_name,
            issue_ticker=record.issue_ticker,
            trading_platform=record.trading_platform,
            total_authorized_shares=record.total_authorized_shares,
        ))
    return extraction


@dataclass
class _TransactionColumns:
    issue_name: int
    ticker: int
    platform: int
    cusip: int
    security_type: int
    issuance_type: int
    account: int
    tx_type: int
    credit_debit: int
    credit_date: int
    debit_date: int
    tx_date: int
    quantity: int
    certificate: int
    status: int
    notes: int

    @classmethod
    def from_headers(cls, headers: List[str], account_keys: Sequence[str], tx_type_keys: Sequence[str],
                     quantity_keys: Sequence[str]) -> "_TransactionColumns":
        return cls(
            issue_name=find_header_index(headers, ISSUE_NAME_KEYS),
            ticker=find_header_index(headers, TICKER_KEYS),
            platform=find_header_index(headers, PLATFORM_KEYS),
            cusip=find_header_index(headers, CUSIP_KEYS),
            security_type=find_header_index(headers, SECURITY_TYPE_KEYS),
            issuance_type=find_header_index(headers, ISSUANCE_TYPE_KEYS),
            account=find_header_index(headers, account_keys),
            tx_type=find_header_index(headers, tx_type_keys),
            credit_debit=find_header_index(headers, CREDIT_DEBIT_KEYS),
            credit_date=find_header_index(headers, CREDIT_DATE_KEYS),
            debit_date=find_header_index(headers, DEBIT_DATE_KEYS),
            tx_date=find_header_index(headers, TX_DATE_KEYS),
            quantity=find_header_index(headers, quantity_keys),
            certificate=find_header_index(headers, CERTIFICATE_KEYS),
            status=find_header_index(headers, STATUS_KEYS),
            notes=find_header_index(headers, NOTES_KEYS),
        )


def _build_transaction(
    row: Sequence[Any],
    columns: _TransactionColumns,
    context: Dict[str, str],
    future_window: int,
    sheet_name: str,
    row_number: int,
    warnings: List[str],
) -> Tuple[Dict[str, str], TransactionRow]:
    new_context, resolved = carry_context(context, {
        "cusip": cell_at(row, columns.cusip),
        "issue_name": cell_at(row, columns.issue_name),
        "issue_ticker": cell_at(row, columns.ticker),
        "trading_platform": cell_at(row, columns.platform),
        "security_type": cell_at(row, columns.security_type),
        "issuance_type": cell_at(row, columns.issuance_type),
    })

    transaction_type = _text(row, columns.tx_type) or resolved["issuance_type"] or UNKNOWN_TRANSACTION_TYPE
    sheet_direction = _text(row, columns.credit_debit)
    mismatch = check_direction(transaction_type, sheet_direction)
    if mismatch:
        message = f"{sheet_name} row {row_number}: {mismatch}"
        logger.warning("Credit/debit mismatch: %s", message)
        warnings.append(message)

    quantity = parse_quantity(cell_at(row, columns.quantity))
    if quantity < 0:
        message = f"{sheet_name} row {row_number}: negative quantity {quantity} stored as {abs(quantity)}"
        logger.warning("Negative share quantity: %s", message)
        warnings.append(message)
        quantity = abs(quantity)

    raw_status = _text(row, columns.status).upper()
    status = raw_status if raw_status and raw_status != "-" else DEFAULT_STATUS

    record = TransactionRow(
        cusip=resolved["cusip"],
        transaction_type=transaction_type,
        credit_debit=credit_debit_label(transaction_type),
        share_quantity=quantity,
        transaction_date=_resolve_transaction_date(
            row, columns.credit_date, columns.debit_date, columns.tx_date, future_window
        ),
        shareholder_account=_text(row, columns.account),
        issue_name=resolved["issue_name"],
        issue_ticker=resolved["issue_ticker"],
        trading_platform=resolved["trading_platform"],
        security_type=resolved["security_type"],
        issuance_type=resolved["issuance_type"],
        certificate_type=_text(row, columns.certificate) or DEFAULT_CERTIFICATE_TYPE,
        status=status,
        notes=_text(row, columns.notes) or DEFAULT_NOTES,
        sheet_credit_debit=sheet_direction,
        raw_row=_raw_text(row),
    )
    return new_context, record


def extract_transactions(
    rows: Grid,
    sheet_name: str = "",
    future_window: int = DEFAULT_FUTURE_YEAR_WINDOW,
) -> SheetExtraction:
    """Transfer-journal rows from the located transaction sheet."""
    columns = _TransactionColumns.from_headers(
        _headers(rows),
        account_keys=("account", "holder", "shareholder"),
        tx_type_keys=("transaction type", "activity", "txn type", "type of issuance", "type of transaction"),
        quantity_keys=("quantity", "qty", "shares", "total securities processed", "total securities issued"),
    )
    extraction = SheetExtraction()
    context: Dict[str, str] = {}
    for offset, row in enumerate(rows[1:], start=2):
        if is_blank_row(row):
            continue
        context, record = _build_transaction(
            row, columns, context, future_window, sheet_name, offset, extraction.warnings
        )
        extraction.transactions.append(record)

    logger.info("Extracted %d transactions from sheet '%s'", len(extraction.transactions), sheet_name)
    return extraction


def extract_recordkeeping_book(
    rows: Grid,
    sheet_name: str = "",
    future_window: int = DEFAULT_FUTURE_YEAR_WINDOW,
) -> SheetExtraction:
    """A combined book: each row is a transaction and the holder it belongs to."""
    headers = _headers(rows)
    columns = _TransactionColumns.from_headers(
        headers,
        account_keys=("account", "account no", "account number"),
        tx_type_keys=("transaction type", "activity", "txn type"),
        quantity_keys=("quantity", "qty", "shares", "total securities issued"),
    )
    idx_first = find_header_index(headers, ("first name", "shareholder first name"))
    idx_last = find_header_index(headers, ("last name", "shareholder/entity last name"))
    idx_lei = find_header_index(headers, ("lei",))
    idx_holder_type = find_header_index(headers, ("holder type",))
    idx_address = find_header_index(headers, ("address",))
    idx_city = find_header_index(headers, ("city",))
    idx_state = find_header_index(headers, ("state",))
    idx_zip = find_header_index(headers, ("zip", "postal"))
    idx_country = find_header_index(headers, ("country",))
    idx_tax_id = find_header_index(headers, ("taxpayer id", "tin"))
    idx_tin_status = find_header_index(headers, ("tin status",))
    idx_email = find_header_index(headers, ("email",))
    idx_phone = find_header_index(headers, ("phone", "contact"))
    idx_ownership = find_header_index(headers, ("% ownership", "ownership"))
    idx_ofac = find_header_index(headers, ("ofac", "ofac date"))
    idx_dob = find_header_index(headers, ("dob", "date of birth"))

    extraction = SheetExtraction()
    context: Dict[str, str] = {}
    for offset, row in enumerate(rows[1:], start=2):
        if is_blank_row(row):
            continue
        context, record = _build_transaction(
            row, columns, context, future_window, sheet_name, offset, extraction.warnings
        )
        extraction.transactions.append(record)

        extraction.shareholders.append(ShareholderRow(
            account_number=_text(row, columns.account),
            first_name=_text(row, idx_first),
            last_name=_text(row, idx_last),
            lei=_text(row, idx_lei),
            holder_type=_text(row, idx_holder_type),
            address=_text(row, idx_address),
            city=_text(row, idx_city),
            state=_text(row, idx_state),
            zip=_text(row, idx_zip),
            country=_text(row, idx_country),
            taxpayer_id=_text(row, idx_tax_id),
            tin_status=_text(row, idx_tin_status),
            email=_text(row, idx_email),
            phone=_text(row, idx_phone),
            ownership_percentage=parse_percentage(cell_at(row, idx_ownership)) if idx_ownership >= 0 else None,
            ofac_date=_date_text(cell_at(row, idx_ofac), future_window) if idx_ofac >= 0 else None,
            dob=_date_text(cell_at(row, idx_dob), future_window) if idx_dob >= 0 else None,
        ))

    logger.info(
        "Extracted %d transactions and %d shareholders from record-keeping book '%s'",
        len(extraction.transactions),
        len(extraction.shareholders),
        sheet_name,
    )
    return extraction

