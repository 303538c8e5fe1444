from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field

from ..errors import InvalidRangeFormat

MAX_ROWS = 1_048_576
MAX_COLUMNS = 16_384

_CELL_PATTERN = re.compile(r"^([A-Z]+)(\d+)$")
_COLUMN_LABEL_PATTERN = re.compile(r"^[A-Z]+$")
_ROW_PATTERN = re.compile(r"^\d+$")


class CellCoordinate(BaseModel):
    """1-based cell position in A1 notation."""

    model_config = ConfigDict(frozen=True)

    column: int = Field(..., ge=1)
    row: int = Field(..., ge=1)

    @property
    def label(self) -> str:
        return f"{column_index_to_label(self.column)}{self.row}"


class ParsedRange(BaseModel):
    """Rectangular range with an optional sheet qualifier."""

    model_config = ConfigDict(frozen=True)

    sheet_name: str | None = None
    start: CellCoordinate
    end: CellCoordinate
    raw: str

    @property
    def row_count(self) -> int:
        return self.end.row - self.start.row + 1

    @property
    def column_count(self) -> int:
        return self.end.column - self.start.column + 1

    @property
    def cell_count(self) -> int:
        return self.row_count * self.column_count

    @property
    def is_single_cell(self) -> bool:
        return self.start == self.end

    @property
    def address(self) -> str:
        """Normalized address without the sheet qualifier."""
        if self.is_single_cell:
            return self.start.label
        return f"{self.start.label}:{self.end.label}"

    @property
    def qualified_address(self) -> str:
        if self.sheet_name is None:
            return self.address
        return f"{self.sheet_name}!{self.address}"


def column_label_to_index(label: str) -> int:
    """Convert Excel-style column label (A/AA) to 1-based index."""
    normalized = label.strip().upper()
    if not _COLUMN_LABEL_PATTERN.match(normalized):
        raise InvalidRangeFormat(f"Invalid column label: {label}")
    index = 0
    for char in normalized:
        index = index * 26 + (ord(char) - ord("A") + 1)
    return index


def column_index_to_label(index: int) -> str:
    """Convert 1-based column index to Excel-style column label."""
    if index < 1:
        raise InvalidRangeFormat("Column index must be positive.")
    chunks: list[str] = []
    current = index
    while current > 0:
        current -= 1
        chunks.append(chr(ord("A") + (current % 26)))
        current //= 26
    return "".join(reversed(chunks))


def split_sheet_and_address(value: str) -> tuple[str | None, str]:
    """Split ``Sheet1!A1:D10`` into ``("Sheet1", "A1:D10")``.

    Only the first ``!`` is significant. A value without ``!`` has no sheet.
    Quoted sheet names (``'Q1 Budget'!A1``) are unquoted.

    Args:
        value: Raw, possibly sheet-qualified range.

    Returns:
        Tuple of (sheet name or None, address).
    """
    text = value.strip()
    sheet, sep, address = text.partition("!")
    if not sep:
        return None, text
    return _unquote_sheet(sheet), address.strip()


def parse_cell(value: str) -> CellCoordinate:
    """Parse a single A1 cell reference.

    Raises:
        InvalidRangeFormat: If the reference is not ``COL ROW`` or is out of bounds.
    """
    candidate = value.strip().upper()
    match = _CELL_PATTERN.match(candidate)
    if not match:
        raise InvalidRangeFormat(f"Invalid cell address: {value}")
    column = _checked_column(match.group(1), value)
    row = _checked_row(match.group(2), value)
    return CellCoordinate(column=column, row=row)


def parse_range(value: str) -> ParsedRange:
    """Parse an Excel range into structured coordinates.

    Supported address forms are ``A1:C10``, ``B5``, ``A:C`` (whole columns)
    and ``1:5`` (whole rows), each optionally prefixed with ``Sheet!``.
    Reversed ranges such as ``C10:A1`` are normalized so that start is the
    top-left corner.

    Args:
        value: Raw range string.

    Returns:
        Parsed range.

    Raises:
        InvalidRangeFormat: If the string matches none of the supported forms.
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidRangeFormat(f"Invalid range format: {value!r}")
    sheet_name, address = split_sheet_and_address(value)
    if sheet_name is not None and not sheet_name:
        raise InvalidRangeFormat(f"Invalid range format: {value} (empty sheet name)")
    start, end = _parse_address(address, raw=value)
    start, end = _normalize_corners(start, end)
    return ParsedRange(sheet_name=sheet_name, start=start, end=end, raw=value)


def _parse_address(address: str, *, raw: str) -> tuple[CellCoordinate, CellCoordinate]:
    """Parse the address part of a range into its two corners."""
    parts = address.upper().split(":")
    if len(parts) == 1:
        cell = _parse_cell_for_range(parts[0], raw)
        return cell, cell
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise InvalidRangeFormat(f"Invalid range format: {raw}")
    left, right = parts
    if _COLUMN_LABEL_PATTERN.match(left) and _COLUMN_LABEL_PATTERN.match(right):
        return (
            CellCoordinate(column=_checked_column(left, raw), row=1),
            CellCoordinate(column=_checked_column(right, raw), row=MAX_ROWS),
        )
    if _ROW_PATTERN.match(left) and _ROW_PATTERN.match(right):
        return (
            CellCoordinate(column=1, row=_checked_row(left, raw)),
            CellCoordinate(column=MAX_COLUMNS, row=_checked_row(right, raw)),
        )
    return _parse_cell_for_range(left, raw), _parse_cell_for_range(right, raw)


def _parse_cell_for_range(value: str, raw: str) -> CellCoordinate:
    try:
        return parse_cell(value)
    except InvalidRangeFormat as exc:
        raise InvalidRangeFormat(f"Invalid range format: {raw} ({exc})") from exc


def _normalize_corners(
    start: CellCoordinate, end: CellCoordinate
) -> tuple[CellCoordinate, CellCoordinate]:
    if start.column <= end.column and start.row <= end.row:
        return start, end
    return (
        CellCoordinate(
            column=min(start.column, end.column), row=min(start.row, end.row)
        ),
        CellCoordinate(
            column=max(start.column, end.column), row=max(start.row, end.row)
        ),
    )


def _checked_column(label: str, raw: str) -> int:
    column = column_label_to_index(label)
    if column > MAX_COLUMNS:
        raise InvalidRangeFormat(
            f"Column {label} is beyond the last Excel column XFD: {raw}"
        )
    return column


def _checked_row(digits: str, raw: str) -> int:
    row = int(digits)
    if row < 1 or row > MAX_ROWS:
        raise InvalidRangeFormat(f"Row {row} is outside 1..{MAX_ROWS}: {raw}")
    return row


def _unquote_sheet(sheet: str) -> str:
    candidate = sheet.strip()
    if len(candidate) >= 2 and candidate.startswith("'") and candidate.endswith("'"):
        return candidate[1:-1].replace("''", "'")
    return candidate
