"""Structured audit events for workbook access."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
import logging
from typing import Any, Literal
import uuid

from pydantic import BaseModel, Field

AuditOperation = Literal["READ", "WRITE", "PERMISSION_CHECK", "AUTHENTICATION", "SYSTEM"]

audit_logger = logging.getLogger("graphexcel.audit")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


class AuditContext(BaseModel):
    """Per-call caller information attached to every audit entry."""

    request_id: str = Field(default_factory=_new_id)
    user: str = "anonymous"
    client: str | None = None
    timestamp: str = Field(default_factory=_now_iso)


class AuditEntry(BaseModel):
    """Single audit record."""

    id: str = Field(default_factory=_new_id)
    timestamp: str = Field(default_factory=_now_iso)
    operation: AuditOperation
    user: str = "system"
    request_id: str | None = None
    client: str | None = None
    workbook_id: str | None = None
    worksheet_id: str | None = None
    range: str | None = None
    table: str | None = None
    requested_permission: str | None = None
    granted: bool | None = None
    reason: str | None = None
    old_values: list[list[Any]] | None = None
    new_values: list[list[Any]] | None = None
    cells_modified: int | None = None
    cell_count: int | None = None
    success: bool | None = None
    error: str | None = None
    event: str | None = None
    details: dict[str, Any] | None = None


AuditSink = Callable[[AuditEntry], None]


def log_sink(entry: AuditEntry) -> None:
    """Write the entry as one JSON line on the audit logger."""
    audit_logger.info(entry.model_dump_json(exclude_none=True))


class AuditLogger:
    """Builds audit entries and hands them to a sink."""

    def __init__(self, sink: AuditSink | None = None) -> None:
        self.sink = sink or log_sink

    def log_read(
        self,
        context: AuditContext,
        *,
        workbook_id: str | None,
        worksheet_id: str | None = None,
        range_ref: str | None = None,
        table: str | None = None,
        cell_count: int | None = None,
        success: bool,
        error: str | None = None,
    ) -> str:
        return self._emit(
            AuditEntry(
                operation="READ",
                workbook_id=workbook_id,
                worksheet_id=worksheet_id,
                range=range_ref,
                table=table,
                cell_count=cell_count,
                success=success,
                error=error,
                **_caller(context),
            )
        )

    def log_write(
        self,
        context: AuditContext,
        *,
        workbook_id: str | None,
        worksheet_id: str | None = None,
        range_ref: str | None = None,
        table: str | None = None,
        old_values: list[list[Any]] | None = None,
        new_values: list[list[Any]] | None = None,
        cells_modified: int | None = None,
        success: bool,
        error: str | None = None,
    ) -> str:
        return self._emit(
            AuditEntry(
                operation="WRITE",
                workbook_id=workbook_id,
                worksheet_id=worksheet_id,
                range=range_ref,
                table=table,
                old_values=old_values,
                new_values=new_values,
                cells_modified=cells_modified,
                success=success,
                error=error,
                **_caller(context),
            )
        )

    def log_permission_check(
        self,
        context: AuditContext,
        *,
        requested_permission: str,
        granted: bool,
        reason: str,
        workbook_id: str | None = None,
        worksheet_id: str | None = None,
        range_ref: str | None = None,
        table: str | None = None,
    ) -> str:
        return self._emit(
            AuditEntry(
                operation="PERMISSION_CHECK",
                workbook_id=workbook_id,
                worksheet_id=worksheet_id,
                range=range_ref,
                table=table,
                requested_permission=requested_permission,
                granted=granted,
                reason=reason,
                **_caller(context),
            )
        )

    def log_auth_event(
        self, event: str, *, success: bool, error: str | None = None
    ) -> str:
        return self._emit(
            AuditEntry(operation="AUTHENTICATION", event=event, success=success, error=error)
        )

    def log_system_event(
        self, event: str, *, details: dict[str, Any] | None = None
    ) -> str:
        return self._emit(AuditEntry(operation="SYSTEM", event=event, details=details))

    def _emit(self, entry: AuditEntry) -> str:
        self.sink(entry)
        return entry.id


def _caller(context: AuditContext) -> dict[str, Any]:
    return {
        "user": context.user,
        "request_id": context.request_id,
        "client": context.client,
    }
