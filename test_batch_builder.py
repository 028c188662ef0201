import pytest

from app.services.batch_builder import (
    ImportBatch,
    WorkbookParseError,
    build_import_batch,
    dedupe_securities,
    parse_workbook,
    read_workbook,
)
from app.services.row_extractor import SecurityRow


def test_dedupe_securities_keeps_first_slot_and_last_values():
    rows = [
        SecurityRow(cusip="111", issue_name="Alpha"),
        SecurityRow(cusip="222", issue_name="Beta"),
        SecurityRow(cusip="111", issue_name="Alpha Renamed", issue_ticker=""),
    ]
    deduped = dedupe_securities(rows)
    assert [row.cusip for row in deduped] == ["111", "222"]
    assert deduped[0].issue_name == "Alpha Renamed"


def test_build_batch_for_two_sheet_workbook(acme_sheets):
    batch = build_import_batch(acme_sheets, future_window=5, min_score=3)
    assert batch.issuer["issuer_name"] == "Acme Corp"
    assert [row.cusip for row in batch.securities] == ["123456789"]
    assert [row.account_number for row in batch.shareholders] == ["ACC-1"]
    assert len(batch.transactions) == 1
    transaction = batch.transactions[0]
    assert transaction.shareholder_account == "ACC-1"
    assert transaction.share_quantity == 1000
    assert transaction.transaction_date == "01/01/2024"
    assert batch.plan["transaction_rule"] == "content"


def test_cusip_seen_on_two_sheets_is_recorded_once():
    sheets = [
        ("Issuer", [["Issuer Name", "Acme"]]),
        ("Securities", [["Issue Name", "CUSIP", "Security Type"], ["Alpha", "111", "Units"]]),
        ("Record Keeping", [["Issue Name", "CUSIP", "Total Securities Issued"], ["Alpha Units", "111", "500"]]),
    ]
    batch = build_import_batch(sheets, future_window=5, min_score=3)
    assert len(batch.securities) == 1
    assert batch.securities[0].issue_name == "Alpha Units"
    assert batch.securities[0].class_name == "Units"
    assert len(batch.recordkeeping) == 1


def test_shareholders_accumulate_without_dedup():
    holders = [["Account", "First Name"], ["ACC-1", "Jane"]]
    sheets = [("Issuer", [["Issuer Name", "Acme"]]), ("Holders", holders), ("Shareholders", holders)]
    batch = build_import_batch(sheets, future_window=5, min_score=3)
    assert [row.account_number for row in batch.shareholders] == ["ACC-1", "ACC-1"]


def test_separation_ratio_becomes_split_row():
    sheets = [("Issuer", [["Issuer Name", "Acme"], ["Separation Ratio", "1 UNIT = 1 CLASS A SHARE AND 1/3 WARRANT"]])]
    batch = build_import_batch(sheets, future_window=5, min_score=3)
    assert len(batch.splits) == 1
    assert batch.splits[0].class_a_ratio == 1.0
    assert batch.splits[0].rights_ratio == pytest.approx(1 / 3)


def test_missing_issuer_name_is_a_warning():
    batch = build_import_batch([("Sheet1", [["a", "b"]])], future_window=5, min_score=3)
    assert "No issuer name found in workbook" in batch.warnings


def test_read_workbook_round_trips_cells(make_workbook):
    content = make_workbook({
        "Issuer Info": [["Issuer Name", "Acme Corp"]],
        "Journal": [["Cusip", "Quantity"], ["123456789", None]],
    })
    sheets = read_workbook(content, "registry.xlsx")
    assert [name for name, _ in sheets] == ["Issuer Info", "Journal"]
    journal = sheets[1][1]
    assert journal[1][0] == "123456789"
    assert journal[1][1] == ""


def test_parse_workbook_from_xlsx(make_workbook, acme_sheets):
    content = make_workbook(dict(acme_sheets))
    batch = parse_workbook(content, "acme.xlsx")
    assert batch.summary()["transactions"] == 1
    assert batch.summary()["issuer"] == 1


def test_unreadable_workbook_raises_parse_error():
    with pytest.raises(WorkbookParseError):
        read_workbook(b"definitely not a spreadsheet", "broken.xlsx")
    with pytest.raises(WorkbookParseError):
        read_workbook(b"x", "notes.txt")
    with pytest.raises(WorkbookParseError):
        read_workbook(b"", "empty.xlsx")


def test_batch_serialization_and_section_edits(acme_sheets):
    batch = build_import_batch(acme_sheets, future_window=5, min_score=3)
    restored = ImportBatch.from_dict(batch.to_dict())
    assert restored.to_dict() == batch.to_dict()

    edited = dict(restored.transactions[0].to_dict(), share_quantity="2,000")
    restored.replace_section("transactions", [edited])
    assert restored.transactions[0].share_quantity == 2000

    with pytest.raises(ValueError):
        restored.replace_section("transactions", [dict(edited, share_quantity=-5)])
    with pytest.raises(ValueError):
        restored.replace_section("widgets", [])
    with pytest.raises(ValueError):
        restored.replace_section("securities", [{"issue_name": "no cusip"}])


def test_recordkeeping_book_runs_summary_and_book_extractors():
    sheets = [
        ("Issuer Info", [["Issuer Name", "Acme Corp"]]),
        ("Recordkeeping Book", [
            ["Issue Name", "CUSIP", "Authorized Shares", "Account", "Transaction Type", "Quantity",
             "Transaction Date"],
            ["Acme Units", "123456789", "10,000", "ACC-1", "IPO", "500", "01/02/2024"],
        ]),
    ]
    batch = build_import_batch(sheets, future_window=5, min_score=3)

    assert batch.plan["transaction_rule"] == "none"
    assert [(row.transaction_type, row.share_quantity) for row in batch.transactions] == [("IPO", 500)]
    assert [row.account_number for row in batch.shareholders] == ["ACC-1"]
    assert len(batch.recordkeeping) == 1
    assert batch.recordkeeping[0].total_authorized_shares == 10000
    assert [(row.cusip, row.total_authorized_shares) for row in batch.securities] == [("123456789", 10000)]
