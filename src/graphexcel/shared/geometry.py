from __future__ import annotations

from ..errors import InvalidRangeFormat
from .a1 import MAX_ROWS, CellCoordinate, ParsedRange


def same_sheet(a: ParsedRange, b: ParsedRange) -> bool:
    """Return False only when both ranges name a sheet and the names differ.

    A range without a sheet qualifier matches any sheet; coordinates alone
    decide in that case.
    """
    if a.sheet_name and b.sheet_name and a.sheet_name != b.sheet_name:
        return False
    return True


def overlaps(a: ParsedRange, b: ParsedRange) -> bool:
    """Return whether two ranges share at least one cell."""
    if not same_sheet(a, b):
        return False
    return not (
        a.end.column < b.start.column
        or b.end.column < a.start.column
        or a.end.row < b.start.row
        or b.end.row < a.start.row
    )


def contains(inner: ParsedRange, outer: ParsedRange) -> bool:
    """Return whether ``inner`` lies entirely within ``outer``."""
    if not same_sheet(inner, outer):
        return False
    return (
        inner.start.column >= outer.start.column
        and inner.end.column <= outer.end.column
        and inner.start.row >= outer.start.row
        and inner.end.row <= outer.end.row
    )


def table_append_target(table_range: ParsedRange, row_count: int) -> ParsedRange:
    """Return the rectangle that rows appended below a table will occupy.

    Args:
        table_range: Current table address, header row included.
        row_count: Number of rows to append.

    Returns:
        Range directly under the table spanning the table's columns.

    Raises:
        InvalidRangeFormat: If the appended rows would run past the last row.
    """
    if row_count < 1:
        raise ValueError("row_count must be positive.")
    first_row = table_range.end.row + 1
    last_row = table_range.end.row + row_count
    if last_row > MAX_ROWS:
        raise InvalidRangeFormat(
            f"Appending {row_count} rows to {table_range.qualified_address} "
            f"exceeds row {MAX_ROWS}."
        )
    start = CellCoordinate(column=table_range.start.column, row=first_row)
    end = CellCoordinate(column=table_range.end.column, row=last_row)
    address = f"{start.label}:{end.label}"
    raw = f"{table_range.sheet_name}!{address}" if table_range.sheet_name else address
    return ParsedRange(sheet_name=table_range.sheet_name, start=start, end=end, raw=raw)
