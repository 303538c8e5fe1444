from __future__ import annotations

from .a1 import (
    MAX_COLUMNS,
    MAX_ROWS,
    CellCoordinate,
    ParsedRange,
    column_index_to_label,
    column_label_to_index,
    parse_cell,
    parse_range,
    split_sheet_and_address,
)
from .geometry import contains, overlaps, same_sheet, table_append_target

__all__ = [
    "MAX_COLUMNS",
    "MAX_ROWS",
    "CellCoordinate",
    "ParsedRange",
    "column_index_to_label",
    "column_label_to_index",
    "contains",
    "overlaps",
    "parse_cell",
    "parse_range",
    "same_sheet",
    "split_sheet_and_address",
    "table_append_target",
]
