from __future__ import annotations

from typing import Any

from .errors import RequestValidationError
from .shared.a1 import ParsedRange


def ensure_workbook_reference(
    drive_id: str | None,
    item_id: str | None,
    drive_name: str | None,
    item_name: str | None,
) -> None:
    """Require either both ids or both names for the target workbook.

    Raises:
        RequestValidationError: If neither pair is complete.
    """
    if drive_id and item_id:
        return
    if drive_name and item_name:
        return
    raise RequestValidationError(
        "Either driveId and itemId or driveName and itemName are required"
    )


def ensure_matrix(values: list[list[Any]], *, field: str = "values") -> list[list[Any]]:
    """Check that ``values`` is a non-empty rectangular 2-D array.

    Args:
        values: Candidate rows.
        field: Field name used in error messages.

    Returns:
        The same rows, unchanged.

    Raises:
        RequestValidationError: If the array is empty, has an empty row or is ragged.
    """
    if not values:
        raise RequestValidationError(f"{field} must be a non-empty array")
    width = len(values[0])
    if width == 0:
        raise RequestValidationError(f"{field} rows must not be empty")
    for index, row in enumerate(values):
        if len(row) != width:
            raise RequestValidationError(
                f"{field} must be rectangular: row {index} has {len(row)} "
                f"columns, expected {width}"
            )
    return values


def ensure_values_fit_range(values: list[list[Any]], target: ParsedRange) -> None:
    """Require ``values`` to have exactly the range's rows and columns.

    Raises:
        RequestValidationError: If the dimensions differ.
    """
    ensure_matrix(values)
    rows = len(values)
    columns = len(values[0])
    if (rows, columns) == (target.row_count, target.column_count):
        return
    if target.is_single_cell:
        raise RequestValidationError(
            f"Single cell range {target.address} expects a 1x1 values array, "
            f"got {rows}x{columns}"
        )
    raise RequestValidationError(
        f"Values dimensions {rows}x{columns} do not match range "
        f"{target.address} ({target.row_count}x{target.column_count})"
    )
