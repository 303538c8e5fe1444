from __future__ import annotations

from typing import Literal

RangeDecisionCode = Literal[
    "RANGE_LOCKED",
    "RANGE_ALLOWED",
    "RANGE_NOT_ALLOWED",
    "VALIDATION_ERROR",
]
ResourceType = Literal["workbook", "worksheet", "range", "table"]
PermissionKind = Literal["read", "write", "admin"]
RequestedPermission = Literal["READ", "WRITE", "READ_TABLE", "WRITE_TABLE"]
