"""Permission-checked pass-through to Excel workbooks on Microsoft Graph."""

from __future__ import annotations

from .errors import GatewayError, InvalidRangeFormat
from .resolver import NameResolver
from .service import ExcelService, WorkbookTarget
from .shared.a1 import ParsedRange, parse_range

__all__ = [
    "ExcelService",
    "GatewayError",
    "InvalidRangeFormat",
    "NameResolver",
    "ParsedRange",
    "WorkbookTarget",
    "parse_range",
]
