"""Ledger aggregation shared by the control book, record-keeping and statement views.

Transactions are plain mappings (the shape produced by
``registry_service.list_transactions``). Share quantities are never negative;
the direction comes from the transaction type through :func:`is_credit_type`,
the only credit/debit rule used anywhere in the application.
"""
from __future__ import annotations

import csv
import io
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from app.services.normalizers import coerce_date, format_db_date

DEBIT_TRANSACTION_TYPES = frozenset({"DWAC Withdrawal", "Transfer Debit"})
_DEBIT_TYPES_FOLDED = frozenset(name.lower() for name in DEBIT_TRANSACTION_TYPES)

CREDIT = "Credit"
DEBIT = "Debit"
NO_RESTRICTIONS_TEXT = "No restrictions apply to these shares."

CONTROL_BOOK_HEADERS = [
    "Issue Name",
    "Issue Ticker",
    "Issue CUSIP",
    "Transaction Date",
    "Security Type",
    "Issued Security (#)",
    "Type of Issuance",
    "Total Outstanding Shares (#)",
    "Total Authorized Shares (#)",
]

RECORDKEEPING_HEADERS = [
    ("Issue Name", "issue_name"),
    ("Issue Ticker", "issue_ticker"),
    ("Trading Platform", "trading_platform"),
    ("CUSIP", "cusip"),
    ("Security Type", "security_type"),
    ("Issuance Type", "issuance_type"),
    ("Shareholder Account", "shareholder_account"),
    ("Shareholder First Name", "first_name"),
    ("Shareholder Last Name", "last_name"),
    ("Address", "address"),
    ("City", "city"),
    ("State", "state"),
    ("Zip", "zip"),
    ("Country", "country"),
    ("Taxpayer ID", "taxpayer_id"),
    ("Email", "email"),
    ("Transaction Type", "transaction_type"),
    ("Credit/Debit", "credit_debit"),
    ("Transaction Date", "transaction_date"),
    ("Quantity", "share_quantity"),
    ("Certificate Type", "certificate_type"),
    ("Status", "status"),
    ("Notes", "notes"),
]


def is_credit_type(transaction_type: Any) -> bool:
    """Every type is a credit except DWAC withdrawals and transfer debits."""
    name = str(transaction_type or "").strip().lower()
    return name not in _DEBIT_TYPES_FOLDED


def is_credit(row: Mapping[str, Any]) -> bool:
    return is_credit_type(row.get("transaction_type"))


def credit_debit_label(transaction_type: Any) -> str:
    return CREDIT if is_credit_type(transaction_type) else DEBIT


def signed_delta(row: Mapping[str, Any]) -> int:
    quantity = int(row.get("share_quantity") or 0)
    return quantity if is_credit(row) else -quantity


def check_direction(transaction_type: Any, explicit: Any) -> Optional[str]:
    """Compare a sheet's explicit credit/debit cell with the type-derived direction."""
    stated = str(explicit or "").strip().lower()
    if not stated:
        return None
    expected = credit_debit_label(transaction_type)
    if stated.startswith(expected.lower()):
        return None
    return (
        f"credit/debit '{explicit}' disagrees with transaction type "
        f"'{transaction_type}'; using {expected}"
    )


def transaction_date_of(row: Mapping[str, Any]) -> Optional[date]:
    return coerce_date(row.get("transaction_date")) or coerce_date(row.get("created_at"))


def filter_transactions(
    rows: Iterable[Mapping[str, Any]],
    cusip: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> List[Mapping[str, Any]]:
    """Narrow the ledger input before grouping.

    Running totals computed afterwards describe the filtered subset only, so the
    figures on screen match a filtered export.
    """
    selected = []
    for row in rows:
        if cusip and str(row.get("cusip") or "") != cusip:
            continue
        when = transaction_date_of(row)
        if date_from and (when is None or when < date_from):
            continue
        if date_to and (when is None or when > date_to):
            continue
        selected.append(row)
    return selected


@dataclass(frozen=True)
class LedgerGroup:
    transaction_date: Optional[date]
    transaction_type: str
    delta: int
    count: int
    running_total: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "transaction_type": self.transaction_type,
            "credit_debit": credit_debit_label(self.transaction_type),
            "delta": self.delta,
            "count": self.count,
            "running_total": self.running_total,
        }


def _group_sort_key(key: Tuple[Optional[date], str]) -> Tuple[date, str]:
    when, transaction_type = key
    return (when or date.min, transaction_type)


def aggregate_ledger(rows: Iterable[Mapping[str, Any]]) -> List[LedgerGroup]:
    """Group by (date, type), net the signed deltas and attach running totals."""
    deltas: Dict[Tuple[Optional[date], str], int] = defaultdict(int)
    counts: Dict[Tuple[Optional[date], str], int] = defaultdict(int)
    for row in rows:
        key = (transaction_date_of(row), str(row.get("transaction_type") or ""))
        deltas[key] += signed_delta(row)
        counts[key] += 1

    groups: List[LedgerGroup] = []
    running = 0
    for key in sorted(deltas, key=_group_sort_key):
        running += deltas[key]
        groups.append(LedgerGroup(
            transaction_date=key[0],
            transaction_type=key[1],
            delta=deltas[key],
            count=counts[key],
            running_total=running,
        ))
    return groups


def ledger_totals(rows: Iterable[Mapping[str, Any]]) -> Dict[str, int]:
    credits = debits = count = 0
    for row in rows:
        count += 1
        quantity = int(row.get("share_quantity") or 0)
        if is_credit(row):
            credits += quantity
        else:
            debits += quantity
    return {
        "transaction_count": count,
        "total_credits": credits,
        "total_debits": debits,
        "net_shares": credits - debits,
    }


def outstanding_by_cusip(
    rows: Iterable[Mapping[str, Any]],
    securities: Sequence[Mapping[str, Any]],
) -> List[Dict[str, Any]]:
    """Record-keeping summary: shares outstanding against authorized per CUSIP."""
    outstanding: Dict[str, int] = defaultdict(int)
    for row in rows:
        outstanding[str(row.get("cusip") or "")] += signed_delta(row)

    summary: List[Dict[str, Any]] = []
    listed = set()
    for security in securities:
        cusip = str(security.get("cusip") or "")
        listed.add(cusip)
        total = outstanding.get(cusip, 0)
        authorized = security.get("total_authorized_shares")
        percentage = round(total / authorized * 100, 2) if authorized else None
        summary.append({
            "cusip": cusip,
            "issue_name": security.get("issue_name") or "",
            "issue_ticker": security.get("issue_ticker") or "",
            "class_name": security.get("class_name") or "",
            "total_outstanding_shares": total,
            "total_authorized_shares": authorized,
            "outstanding_percentage": percentage,
        })

    for cusip in sorted(set(outstanding) - listed):
        summary.append({
            "cusip": cusip,
            "issue_name": "",
            "issue_ticker": "",
            "class_name": "",
            "total_outstanding_shares": outstanding[cusip],
            "total_authorized_shares": None,
            "outstanding_percentage": None,
        })
    return summary


def _restriction_text(
    transactions: Sequence[Mapping[str, Any]],
    restriction_templates: Sequence[Mapping[str, Any]],
) -> str:
    active = {
        template.get("id"): template
        for template in restriction_templates
        if template.get("is_active", True)
    }
    for row in transactions:
        template = active.get(row.get("restriction_id"))
        if template and template.get("description"):
            return str(template["description"])
    return NO_RESTRICTIONS_TEXT


def build_statement(
    shareholder: Mapping[str, Any],
    rows: Iterable[Mapping[str, Any]],
    restriction_templates: Sequence[Mapping[str, Any]] = (),
    as_of: Optional[date] = None,
) -> Dict[str, Any]:
    """A shareholder's holdings per CUSIP as of a date, with running balances."""
    as_of = as_of or date.today()
    shareholder_id = shareholder.get("id")
    by_cusip: Dict[str, List[Mapping[str, Any]]] = defaultdict(list)
    for row in rows:
        if row.get("shareholder_id") != shareholder_id:
            continue
        when = transaction_date_of(row)
        if when is not None and when > as_of:
            continue
        by_cusip[str(row.get("cusip") or "")].append(row)

    holdings: List[Dict[str, Any]] = []
    for cusip in sorted(by_cusip):
        ordered = sorted(
            by_cusip[cusip],
            key=lambda row: (transaction_date_of(row) or date.min, str(row.get("transaction_type") or "")),
        )
        running = 0
        entries = []
        for row in ordered:
            delta = signed_delta(row)
            running += delta
            entries.append({
                "transaction_date": format_db_date(transaction_date_of(row)),
                "transaction_type": row.get("transaction_type"),
                "credit_debit": credit_debit_label(row.get("transaction_type")),
                "share_quantity": int(row.get("share_quantity") or 0),
                "delta": delta,
                "running_total": running,
            })
        if running <= 0:
            continue
        first = ordered[0]
        holdings.append({
            "cusip": cusip,
            "issue_name": first.get("issue_name") or "",
            "security_type": first.get("security_type") or "",
            "shares": running,
            "restrictions_text": _restriction_text(ordered, restriction_templates),
            "transactions": entries,
        })

    name = " ".join(
        part for part in (shareholder.get("first_name"), shareholder.get("last_name")) if part
    )
    return {
        "shareholder_id": shareholder_id,
        "account_number": shareholder.get("account_number"),
        "name": name,
        "as_of": as_of.isoformat(),
        "holdings": holdings,
        "total_shares": sum(item["shares"] for item in holdings),
    }


def control_book_csv(
    groups: Sequence[LedgerGroup],
    security: Optional[Mapping[str, Any]] = None,
    issuer_name: str = "",
) -> str:
    security = security or {}
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CONTROL_BOOK_HEADERS)
    for group in groups:
        writer.writerow([
            security.get("issue_name") or issuer_name,
            security.get("issue_ticker") or "",
            security.get("cusip") or "",
            format_db_date(group.transaction_date) or "",
            security.get("class_name") or "",
            group.delta,
            group.transaction_type,
            group.running_total,
            security.get("total_authorized_shares") or "",
        ])
    return buffer.getvalue()


def recordkeeping_csv(rows: Iterable[Mapping[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow([header for header, _ in RECORDKEEPING_HEADERS])
    for row in rows:
        values = []
        for _, key in RECORDKEEPING_HEADERS:
            value = row.get(key)
            if key == "transaction_date":
                value = format_db_date(transaction_date_of(row))
            elif key == "credit_debit":
                value = credit_debit_label(row.get("transaction_type"))
            values.append("" if value is None else value)
        writer.writerow(values)
    return buffer.getvalue()
