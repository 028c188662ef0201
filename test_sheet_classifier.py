from app.services.batch_builder import build_import_batch
from app.services.sheet_classifier import (
    ISSUER,
    OFFICERS,
    RECORDKEEPING,
    RECORDKEEPING_BOOK,
    RULE_CONTENT,
    RULE_NONE,
    RULE_POSITION,
    SECURITIES,
    SHAREHOLDERS,
    classify_sheet_name,
    has_transaction_columns,
    locate_transaction_sheet,
    plan_workbook,
    score_transaction_headers,
)

JOURNAL_HEADER = ["Cusip", "Transaction Type", "Credit/Debit", "Quantity", "Transaction Date", "Account"]


def test_classify_sheet_name_can_match_several_categories():
    assert classify_sheet_name("Issuer Info") == [ISSUER]
    assert classify_sheet_name("CUSIP list") == [SECURITIES]
    assert classify_sheet_name("Holders") == [SHAREHOLDERS]
    assert classify_sheet_name("Company Officers") == [ISSUER, OFFICERS]
    assert classify_sheet_name("Recordkeeping Book") == [RECORDKEEPING, RECORDKEEPING_BOOK]
    assert classify_sheet_name("Sheet2") == []


def test_score_counts_each_keyword_group_once():
    assert score_transaction_headers(JOURNAL_HEADER) == 6
    assert score_transaction_headers(["Credit Date", "Debit Date", "Credit/Debit"]) == 2
    assert score_transaction_headers(["Issuer Name", "Acme Corp"]) == 0
    assert score_transaction_headers(None) == 0


def test_content_rule_beats_position():
    sheets = [
        ("Issuer", [["Issuer Name", "Acme"]]),
        ("Notes", [["Remarks"], ["n/a"]]),
        ("Ledger 2024", [JOURNAL_HEADER]),
    ]
    index, rule, scores = locate_transaction_sheet(sheets, min_score=3)
    assert (index, rule) == (2, RULE_CONTENT)
    assert scores[2] == 6


def test_ties_go_to_the_earliest_sheet():
    sheets = [("A", [JOURNAL_HEADER]), ("B", [JOURNAL_HEADER])]
    index, rule, _ = locate_transaction_sheet(sheets, min_score=3)
    assert (index, rule) == (0, RULE_CONTENT)


def test_falls_back_to_second_sheet_when_nothing_scores():
    sheets = [("Issuer", [["Issuer Name", "Acme"]]), ("Sheet2", [["Col A", "Col B"]])]
    index, rule, _ = locate_transaction_sheet(sheets, min_score=3)
    assert (index, rule) == (1, RULE_POSITION)


def test_no_transaction_sheet_in_single_sheet_workbook():
    index, rule, _ = locate_transaction_sheet([("Issuer", [["Issuer Name", "Acme"]])], min_score=3)
    assert (index, rule) == (None, RULE_NONE)


def test_plan_excludes_recordkeeping_book_and_named_fallback():
    sheets = [
        ("Issuer", [["Issuer Name", "Acme"]]),
        ("Securities", [["Issue Name", "CUSIP", "Security Type"]]),
        ("Recordkeeping Book", [JOURNAL_HEADER]),
    ]
    plan = plan_workbook(sheets, min_score=3)
    assert plan.transaction_sheet is None
    assert plan.transaction_rule == RULE_NONE
    assert plan.sheets[2].categories == [RECORDKEEPING, RECORDKEEPING_BOOK]


def test_plan_marks_located_sheet(acme_sheets):
    plan = plan_workbook(acme_sheets, min_score=3)
    assert plan.transaction_sheet.name == "Journal"
    assert plan.transaction_rule == RULE_CONTENT
    assert plan.to_dict()["sheets"][1]["is_transaction_sheet"] is True


def test_holder_register_is_not_a_journal():
    register = [
        ["Account", "First Name", "Last Name", "Shares Held", "CUSIP", "Date of Birth"],
        ["ACC-1", "Jane", "Roe", "500", "123456789", "01/02/1980"],
    ]
    sheets = [("Issuer Info", [["Issuer Name", "Acme"]]), ("Shareholders", register)]
    assert score_transaction_headers(register[0]) >= 3
    assert not has_transaction_columns(register[0])

    plan = plan_workbook(sheets, min_score=3)
    assert plan.transaction_sheet is None
    assert plan.transaction_rule == RULE_NONE


def test_holder_register_yields_shareholders_not_transactions():
    sheets = [
        ("Issuer Info", [["Issuer Name", "Acme"]]),
        ("Shareholders", [
            ["Account", "First Name", "Last Name", "Shares Held", "CUSIP", "Date of Birth"],
            ["ACC-1", "Jane", "Roe", "500", "123456789", "01/02/1980"],
        ]),
    ]
    batch = build_import_batch(sheets, future_window=5, min_score=3)
    assert batch.transactions == []
    assert [row.account_number for row in batch.shareholders] == ["ACC-1"]
