from datetime import date, datetime

from app.services.normalizers import (
    cell_text,
    coerce_date,
    excel_serial_to_date,
    find_header_index,
    is_blank_row,
    is_context_value,
    normalize_string,
    parse_cell_date,
    parse_fraction,
    parse_percentage,
    parse_quantity,
)
from app.services.split_ratio import format_ratio_text, parse_separation_ratio, validate_ratio_input

TODAY = date(2026, 1, 1)


def test_parse_fraction_rounds_to_one_decimal():
    assert parse_fraction("1/2") == 0.5
    assert parse_fraction("1/3") == 0.3
    assert parse_fraction("2/3") == 0.7
    assert parse_fraction(" 3 / 4 ") == 0.8
    assert parse_fraction("0.25") == 0.3
    assert parse_fraction(2) == 2.0


def test_parse_fraction_invalid_inputs_return_none():
    for value in ("1/0", "abc", "", None, "1/2/3", "x/2", "inf", float("nan")):
        assert parse_fraction(value) is None


def test_excel_serial_to_date_matches_calendar():
    assert excel_serial_to_date(25569, today=TODAY) == datetime(1970, 1, 1)
    assert excel_serial_to_date(45292, today=TODAY) == datetime(2024, 1, 1)
    assert excel_serial_to_date(45292.5, today=TODAY) == datetime(2024, 1, 1, 12, 0)
    assert excel_serial_to_date("45292", today=TODAY) == datetime(2024, 1, 1)


def test_excel_serial_to_date_outside_window_is_none():
    assert excel_serial_to_date(1, today=TODAY) is None
    assert excel_serial_to_date(60000, today=TODAY) is None
    assert excel_serial_to_date("not a date", today=TODAY) is None
    assert excel_serial_to_date("", today=TODAY) is None
    assert excel_serial_to_date(None) is None


def test_excel_serial_future_window_is_configurable():
    # 2031-01-01
    serial = 47849
    assert excel_serial_to_date(serial, today=TODAY) == datetime(2031, 1, 1)
    assert excel_serial_to_date(serial, future_window=1, today=TODAY) is None


def test_find_header_index_tries_keywords_in_order():
    headers = ["Credit Date", "Debit Date", "Account No"]
    assert find_header_index(headers, ("debit date", "credit date")) == 1
    assert find_header_index(headers, ("account",)) == 2
    assert find_header_index(headers, ("quantity",)) == -1
    assert find_header_index([], ("account",)) == -1


def test_parse_quantity_defaults_to_zero():
    assert parse_quantity("1,000") == 1000
    assert parse_quantity(" 2 500 ") == 2500
    assert parse_quantity(12.9) == 12
    assert parse_quantity("abc") == 0
    assert parse_quantity("") == 0
    assert parse_quantity(None) == 0


def test_parse_cell_date_variants():
    assert parse_cell_date("1/2/24") == date(2024, 1, 2)
    assert parse_cell_date("01/15/2024") == date(2024, 1, 15)
    assert parse_cell_date(datetime(2024, 3, 4, 9, 30)) == date(2024, 3, 4)
    assert parse_cell_date(45292, today=TODAY) == date(2024, 1, 1)
    assert parse_cell_date("13/45/2024") is None
    assert parse_cell_date("") is None


def test_coerce_date_reads_iso_and_us_formats():
    assert coerce_date("2024-01-05T10:00:00") == date(2024, 1, 5)
    assert coerce_date("02/03/2024") == date(2024, 2, 3)
    assert coerce_date(None) is None


def test_cell_helpers():
    assert cell_text(1000.0) == "1000"
    assert cell_text(float("nan")) == ""
    assert cell_text("  ACC-1 ") == "ACC-1"
    assert normalize_string("null") is None
    assert is_blank_row(["", None, float("nan")])
    assert not is_blank_row(["", "x"])
    assert parse_percentage("12.5%") == 12.5


def test_context_placeholders():
    for placeholder in ("", "NA", "n/a", "-", None):
        assert not is_context_value(placeholder)
    assert is_context_value("123456789")


def test_separation_ratio_parsing_and_formatting():
    ratio = parse_separation_ratio("1 UNIT = 1 CLASS A SHARE AND 1/2 REDEEMABLE WARRANT")
    assert (ratio.class_a_ratio, ratio.rights_ratio) == (1.0, 0.5)
    assert parse_separation_ratio(None).rights_ratio == 0.5
    assert format_ratio_text("1", "1/2") == "1 UNIT = 1 CLASS A SHARE AND 1/2 REDEEMABLE WARRANT"
    assert format_ratio_text("1", "1/0") == "Invalid ratio values"


def test_validate_ratio_input_messages():
    assert validate_ratio_input("") == "This field is required"
    assert validate_ratio_input("1/0") == "Denominator cannot be zero"
    assert validate_ratio_input("abc") == "Please enter a valid number"
    assert validate_ratio_input("5000") == "Value seems too large"
    assert validate_ratio_input("1/2") is None
