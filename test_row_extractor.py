from app.services.row_extractor import (
    TransactionRow,
    carry_context,
    extract_issuer,
    extract_officers,
    extract_recordkeeping_book,
    extract_recordkeeping_summary,
    extract_securities,
    extract_shareholders,
    extract_transactions,
)


def test_carry_context_fills_gaps_with_last_valid_value():
    context = {}
    resolved = []
    for value in ["A", "", "", "B"]:
        context, values = carry_context(context, {"cusip": value})
        resolved.append(values["cusip"])
    assert resolved == ["A", "A", "A", "B"]


def test_carry_context_treats_placeholders_as_missing():
    context, first = carry_context({}, {"cusip": "111", "issue_name": "Alpha"})
    context, second = carry_context(context, {"cusip": "N/A", "issue_name": "-"})
    assert second["cusip"] == "111"
    assert second["issue_name"] == "Alpha"
    assert context["cusip"] == "111"


def test_carry_context_does_not_mutate_input():
    original = {"cusip": "111"}
    carry_context(original, {"cusip": "222"})
    assert original == {"cusip": "111"}


def test_extract_issuer_reads_key_value_rows():
    rows = [
        ["Issuer Name:", "Acme Corp"],
        ["Headquarters", "1 Main St"],
        ["EIN", 123456789],
        ["Separation Ratio", "1 UNIT = 1 CLASS A SHARE AND 1/2 REDEEMABLE WARRANT"],
        ["Favourite colour", "Blue"],
        ["Underwriter", ""],
    ]
    issuer = extract_issuer(rows)
    assert issuer["issuer_name"] == "Acme Corp"
    assert issuer["display_name"] == "Acme Corp"
    assert issuer["address"] == "1 Main St"
    assert issuer["tax_id"] == "123456789"
    assert "underwriter" not in issuer
    assert len(issuer) == 5


JOURNAL = [
    ["CUSIP", "Issue Name", "Transaction Type", "Credit/Debit", "Credit Date",
     "Transaction Date", "Quantity", "Account", "Notes", "Status"],
    ["111", "Alpha Units", "IPO", "Credit", "01/05/2024", "02/01/2024", "1,000", "ACC-1", "", "active"],
    ["", "", "DWAC Withdrawal", "Debit", "", "3/1/24", "250", "ACC-1", "moved", "-"],
    ["", "", "", "", "", "", "", "", "", ""],
    ["222", "NA", "Transfer Credit", "Credit", "", 45352, "10", "ACC-2", "", ""],
]


def test_extract_transactions_resolves_context_dates_and_defaults():
    extraction = extract_transactions(JOURNAL, sheet_name="Journal")
    rows = extraction.transactions
    assert len(rows) == 3
    assert all(isinstance(row, TransactionRow) for row in rows)

    first, second, third = rows
    assert (first.cusip, first.issue_name) == ("111", "Alpha Units")
    assert first.transaction_date == "01/05/2024"
    assert first.share_quantity == 1000
    assert first.notes == "NIL"
    assert first.status == "ACTIVE"
    assert first.certificate_type == "Book Entry"
    assert first.shareholder_account == "ACC-1"

    assert (second.cusip, second.issue_name) == ("111", "Alpha Units")
    assert second.transaction_date == "03/01/2024"
    assert second.credit_debit == "Debit"
    assert second.status == "ACTIVE"
    assert second.notes == "moved"

    assert (third.cusip, third.issue_name) == ("222", "Alpha Units")
    assert third.transaction_date == "03/01/2024"
    assert extraction.warnings == []


def test_direction_mismatch_keeps_type_rule_and_warns():
    rows = [
        ["CUSIP", "Transaction Type", "Credit/Debit", "Quantity", "Account"],
        ["111", "DWAC Withdrawal", "Credit", "5", "ACC-1"],
    ]
    extraction = extract_transactions(rows, sheet_name="Journal")
    assert extraction.transactions[0].credit_debit == "Debit"
    assert extraction.transactions[0].sheet_credit_debit == "Credit"
    assert len(extraction.warnings) == 1
    assert "Journal row 2" in extraction.warnings[0]


def test_negative_quantity_is_stored_positive_with_warning():
    rows = [["CUSIP", "Transaction Type", "Quantity"], ["111", "Transfer Debit", "-40"]]
    extraction = extract_transactions(rows)
    assert extraction.transactions[0].share_quantity == 40
    assert "negative quantity" in extraction.warnings[0]


def test_transaction_type_falls_back_to_issuance_type_then_unknown():
    with_issuance = extract_transactions([
        ["CUSIP", "Issuance Type", "Quantity", "Account"],
        ["111", "IPO", "10", "A1"],
        ["111", "", "5", "A2"],
    ]).transactions
    assert [row.transaction_type for row in with_issuance] == ["IPO", "IPO"]

    without = extract_transactions([["CUSIP", "Quantity"], ["111", "10"]]).transactions
    assert without[0].transaction_type == "UNKNOWN"
    assert without[0].credit_debit == "Credit"


def test_extract_securities_officers_and_shareholders():
    securities = extract_securities([
        ["Issue Name", "Ticker", "Platform", "CUSIP", "Security Type"],
        ["Alpha Units", "ALPU", "NASDAQ", "111", "Units"],
        ["No cusip", "X", "", "", ""],
        ["Alpha Rights", "ALPR", "NASDAQ", "222", ""],
    ])
    assert [row.cusip for row in securities] == ["111", "222"]
    assert securities[1].class_name == "Unknown"

    officers = extract_officers([["Name", "Title"], ["Jane Roe", "CEO"], ["John Doe", ""]])
    assert [(row.officer_name, row.officer_position) for row in officers] == [
        ("Jane Roe", "CEO"),
        ("John Doe", "Unknown"),
    ]

    holders = extract_shareholders([["Account", "First Name", "Last Name"], ["ACC-1", "Jane", "Roe"], ["", "", ""]])
    assert len(holders) == 1
    assert holders[0].first_name == "Jane"


def test_recordkeeping_summary_adds_one_active_security_per_cusip():
    extraction = extract_recordkeeping_summary([
        ["Issue Name", "CUSIP", "Security Type", "Total Securities Issued"],
        ["Alpha", "111", "Class A", "5,000"],
        ["Alpha", "111", "Class A", "6,000"],
    ])
    assert len(extraction.recordkeeping) == 2
    assert len(extraction.securities) == 1
    assert extraction.securities[0].status == "ACTIVE"
    assert extraction.securities[0].total_authorized_shares == 5000


def test_recordkeeping_book_yields_transactions_and_shareholders():
    extraction = extract_recordkeeping_book([
        ["CUSIP", "Transaction Type", "Quantity", "Account", "First Name", "Last Name", "City", "DOB"],
        ["111", "IPO", "100", "ACC-1", "Jane", "Roe", "Austin", "1/2/1980"],
    ], sheet_name="Recordkeeping Book")
    assert len(extraction.transactions) == 1
    holder = extraction.shareholders[0]
    assert (holder.account_number, holder.first_name, holder.city) == ("ACC-1", "Jane", "Austin")
    assert holder.dob == "01/02/1980"
