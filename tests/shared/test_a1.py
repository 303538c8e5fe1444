from __future__ import annotations

import pytest

from graphexcel.errors import InvalidRangeFormat
from graphexcel.shared.a1 import (
    MAX_COLUMNS,
    MAX_ROWS,
    column_index_to_label,
    column_label_to_index,
    parse_cell,
    parse_range,
    split_sheet_and_address,
)


def test_column_roundtrip() -> None:
    assert column_label_to_index("A") == 1
    assert column_label_to_index("Z") == 26
    assert column_label_to_index("AA") == 27
    assert column_label_to_index("XFD") == MAX_COLUMNS
    assert column_index_to_label(1) == "A"
    assert column_index_to_label(26) == "Z"
    assert column_index_to_label(27) == "AA"
    assert column_index_to_label(702) == "ZZ"
    assert column_index_to_label(703) == "AAA"


def test_column_roundtrip_covers_every_excel_column() -> None:
    for index in range(1, MAX_COLUMNS + 1):
        assert column_label_to_index(column_index_to_label(index)) == index


def test_column_helpers_reject_invalid() -> None:
    with pytest.raises(InvalidRangeFormat):
        column_index_to_label(0)
    with pytest.raises(InvalidRangeFormat):
        column_label_to_index("A1")


def test_parse_single_cell() -> None:
    parsed = parse_range("B5")
    assert parsed.sheet_name is None
    assert (parsed.start.column, parsed.start.row) == (2, 5)
    assert parsed.start == parsed.end
    assert parsed.is_single_cell
    assert parsed.address == "B5"


def test_parse_rectangle() -> None:
    parsed = parse_range("A1:C10")
    assert (parsed.start.column, parsed.start.row) == (1, 1)
    assert (parsed.end.column, parsed.end.row) == (3, 10)
    assert parsed.row_count == 10
    assert parsed.column_count == 3
    assert parsed.cell_count == 30
    assert parsed.raw == "A1:C10"


def test_parse_sheet_qualified() -> None:
    parsed = parse_range("Budget!A1:B2")
    assert parsed.sheet_name == "Budget"
    assert parsed.address == "A1:B2"
    assert parsed.qualified_address == "Budget!A1:B2"


def test_parse_quoted_sheet_name() -> None:
    parsed = parse_range("'Q1 Budget'!A1:B2")
    assert parsed.sheet_name == "Q1 Budget"
    assert parse_range("'Bob''s'!C3").sheet_name == "Bob's"


def test_parse_lowercase_is_normalized() -> None:
    parsed = parse_range("b2:d4")
    assert parsed.address == "B2:D4"


def test_parse_whole_columns() -> None:
    parsed = parse_range("A:C")
    assert (parsed.start.column, parsed.start.row) == (1, 1)
    assert (parsed.end.column, parsed.end.row) == (3, MAX_ROWS)


def test_parse_whole_rows() -> None:
    parsed = parse_range("1:5")
    assert (parsed.start.column, parsed.start.row) == (1, 1)
    assert (parsed.end.column, parsed.end.row) == (MAX_COLUMNS, 5)


def test_parse_reversed_range_is_normalized() -> None:
    parsed = parse_range("C10:A1")
    assert parsed.address == "A1:C10"
    assert parse_range("A10:C1").address == "A1:C10"


@pytest.mark.parametrize(
    "value",
    [
        "",
        "   ",
        "1A",
        "A1:",
        ":B2",
        "A1:B2:C3",
        "A0",
        "A1:B",
        "A1048577",
        "XFE1",
        "Sheet1!Other!A1",
        "!A1",
        "A-1",
    ],
)
def test_parse_rejects_invalid(value: str) -> None:
    with pytest.raises(InvalidRangeFormat):
        parse_range(value)


def test_invalid_range_is_value_error() -> None:
    with pytest.raises(ValueError, match="Invalid range format"):
        parse_range("not a range")


def test_split_sheet_and_address() -> None:
    assert split_sheet_and_address("Sheet1!A1:D10") == ("Sheet1", "A1:D10")
    assert split_sheet_and_address("A1:D10") == (None, "A1:D10")
    assert split_sheet_and_address("a!b!C1") == ("a", "b!C1")


def test_parse_cell() -> None:
    assert parse_cell("aa10").label == "AA10"
    with pytest.raises(InvalidRangeFormat, match="Invalid cell address"):
        parse_cell("10AA")
