"""Decide which entity extractors run for each sheet of an uploaded workbook."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from app.services.normalizers import cell_text, find_header_index

logger = logging.getLogger(__name__)

ISSUER = "issuer"
SECURITIES = "securities"
OFFICERS = "officers"
SHAREHOLDERS = "shareholders"
RECORDKEEPING = "recordkeeping"
RECORDKEEPING_BOOK = "recordkeeping_book"

SHEET_CATEGORY_PATTERNS: Dict[str, re.Pattern] = {
    ISSUER: re.compile(r"issuer|company|spac", re.IGNORECASE),
    SECURITIES: re.compile(r"security|cusip|securities", re.IGNORECASE),
    OFFICERS: re.compile(r"officer|director|management", re.IGNORECASE),
    SHAREHOLDERS: re.compile(r"shareholder|holder", re.IGNORECASE),
    RECORDKEEPING: re.compile(r"^record\b|record keeping|record-keeping|recordkeeping", re.IGNORECASE),
    RECORDKEEPING_BOOK: re.compile(r"recordkeeping book", re.IGNORECASE),
}

# Each group counts once towards a sheet's transaction score.
TRANSACTION_KEYWORD_GROUPS: Tuple[Tuple[str, ...], ...] = (
    ("transaction type", "txn type", "type of transaction", "activity"),
    ("credit/debit", "credit", "debit"),
    ("quantity", "qty", "shares", "total securities processed"),
    ("transaction date", "credit date", "debit date", "date"),
    ("account", "holder", "shareholder"),
    ("cusip",),
)

# A journal names its movement: a transaction type or a credit/debit column.
REQUIRED_TRANSACTION_GROUPS = TRANSACTION_KEYWORD_GROUPS[:2]

TRANSACTION_SHEET_POSITION = 1

RULE_CONTENT = "content"
RULE_POSITION = "position"
RULE_NONE = "none"

Grid = List[List[Any]]


@dataclass
class SheetPlan:
    name: str
    index: int
    categories: List[str] = field(default_factory=list)
    is_transaction_sheet: bool = False
    transaction_score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "index": self.index,
            "categories": list(self.categories),
            "is_transaction_sheet": self.is_transaction_sheet,
            "transaction_score": self.transaction_score,
        }


@dataclass
class WorkbookPlan:
    sheets: List[SheetPlan]
    transaction_rule: str = RULE_NONE

    @property
    def transaction_sheet(self) -> Optional[SheetPlan]:
        for sheet in self.sheets:
            if sheet.is_transaction_sheet:
                return sheet
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_rule": self.transaction_rule,
            "sheets": [sheet.to_dict() for sheet in self.sheets],
        }


def classify_sheet_name(sheet_name: str) -> List[str]:
    """Return every category whose pattern matches the sheet name."""
    name = str(sheet_name or "").strip()
    return [category for category, pattern in SHEET_CATEGORY_PATTERNS.items() if pattern.search(name)]


def score_transaction_headers(headers: Optional[Sequence[Any]]) -> int:
    if not headers:
        return 0
    normalized = [cell_text(header).lower() for header in headers]
    return sum(1 for group in TRANSACTION_KEYWORD_GROUPS if find_header_index(normalized, group) != -1)


def has_transaction_columns(headers: Optional[Sequence[Any]]) -> bool:
    if not headers:
        return False
    normalized = [cell_text(header).lower() for header in headers]
    return any(find_header_index(normalized, group) != -1 for group in REQUIRED_TRANSACTION_GROUPS)


def locate_transaction_sheet(
    sheets: Sequence[Tuple[str, Grid]],
    min_score: int,
    excluded: Sequence[int] = (),
    fallback_excluded: Sequence[int] = (),
) -> Tuple[Optional[int], str, Dict[int, int]]:
    """Pick the sheet holding the transfer journal.

    The header row with the most transaction keyword groups wins (earliest sheet
    on ties) when it reaches ``min_score`` and has a transaction type or
    credit/debit column. Otherwise the second sheet is used
    by convention, unless that sheet is in ``fallback_excluded``.
    """
    scores: Dict[int, int] = {}
    best_index: Optional[int] = None
    best_score = 0
    for index, (_name, rows) in enumerate(sheets):
        if index in excluded or not rows:
            continue
        score = score_transaction_headers(rows[0])
        scores[index] = score
        if score > best_score and has_transaction_columns(rows[0]):
            best_index, best_score = index, score

    if best_index is not None and best_score >= min_score:
        return best_index, RULE_CONTENT, scores

    position = TRANSACTION_SHEET_POSITION
    if len(sheets) > position and position not in excluded and position not in fallback_excluded:
        return position, RULE_POSITION, scores
    return None, RULE_NONE, scores


def plan_workbook(sheets: Sequence[Tuple[str, Grid]], min_score: int) -> WorkbookPlan:
    plans = [
        SheetPlan(name=name, index=index, categories=classify_sheet_name(name))
        for index, (name, _rows) in enumerate(sheets)
    ]
    book_sheets = [plan.index for plan in plans if RECORDKEEPING_BOOK in plan.categories]

    named_sheets = [plan.index for plan in plans if plan.categories]
    tx_index, rule, scores = locate_transaction_sheet(
        sheets, min_score, excluded=book_sheets, fallback_excluded=named_sheets
    )
    for plan in plans:
        plan.transaction_score = scores.get(plan.index, 0)
        if tx_index is not None and plan.index == tx_index:
            plan.is_transaction_sheet = True

    if tx_index is None:
        logger.info("No transaction sheet located (%d sheets)", len(plans))
    else:
        logger.info(
            "Transaction sheet '%s' selected by %s rule (score %d)",
            plans[tx_index].name,
            rule,
            plans[tx_index].transaction_score,
        )
    for plan in plans:
        logger.debug("Sheet '%s' categories=%s", plan.name, plan.categories)

    return WorkbookPlan(sheets=plans, transaction_rule=rule)
