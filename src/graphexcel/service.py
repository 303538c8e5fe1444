"""Request orchestration for workbook reads and writes.

``ExcelService`` composes the name resolver, the capability model, the range
policy, the Graph client, audit logging and rate limiting for every call. All
collaborators are injected so the service can be built against fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Literal

from pydantic import BaseModel, Field

from .access.permissions import CapabilityPolicy, PermissionResult
from .access.range_policy import RangeDecision, RangePolicy, qualify_range
from .access.types import RequestedPermission
from .audit import AuditContext, AuditLogger
from .errors import (
    AccessDeniedError,
    AuthenticationError,
    GatewayError,
    PolicyValidationError,
    RangeDeniedError,
    RateLimitExceeded,
    RequestValidationError,
)
from .graph.auth import TokenProvider
from .graph.client import GraphClient
from .rate_limit import InMemoryRateLimiter
from .resolver import NameResolver
from .shared.a1 import ParsedRange, parse_range
from .shared.geometry import table_append_target
from .validation import ensure_matrix, ensure_values_fit_range, ensure_workbook_reference

logger = logging.getLogger(__name__)

BatchOperationType = Literal["read_range", "write_range", "read_table", "add_table_rows"]


class WorkbookTarget(BaseModel):
    """Workbook and worksheet a request addresses, by id or by name."""

    drive_id: str | None = None
    item_id: str | None = None
    drive_name: str | None = None
    item_name: str | None = None
    worksheet_id: str | None = None
    worksheet_name: str | None = None


class Dimensions(BaseModel):
    rows: int
    columns: int


class WorkbookInfo(BaseModel):
    id: str
    name: str
    drive_id: str


class WorksheetInfo(BaseModel):
    id: str
    name: str
    position: int | None = None
    visibility: str | None = None


class RangeData(BaseModel):
    """Values read from a worksheet range."""

    range: str
    values: list[list[Any]] = Field(default_factory=list)
    formulas: list[list[Any]] | None = None
    text: list[list[Any]] | None = None
    dimensions: Dimensions


class WriteResult(BaseModel):
    """Outcome of a range write."""

    range: str
    values: list[list[Any]] = Field(default_factory=list)
    dimensions: Dimensions
    cells_modified: int
    audit_id: str


class TableInfo(BaseModel):
    id: str | None = None
    name: str | None = None
    address: str | None = None


class TableData(BaseModel):
    """Header row, data rows and address of an Excel table."""

    table: TableInfo
    headers: list[Any] = Field(default_factory=list)
    rows: list[list[Any]] = Field(default_factory=list)
    values: list[list[Any]] = Field(default_factory=list)
    dimensions: Dimensions


class TableRowsResult(BaseModel):
    """Outcome of appending rows to a table."""

    table: str
    appended_range: str
    rows_added: int
    index: int | None = None
    audit_id: str


class BatchOperation(WorkbookTarget):
    """Single step of a batch request."""

    type: BatchOperationType  # noqa: A003
    range: str | None = None
    values: list[list[Any]] | None = None
    table_name: str | None = None
    rows: list[list[Any]] | None = None


class BatchItemResult(BaseModel):
    index: int
    operation: str
    success: bool = True
    data: dict[str, Any]


class BatchItemError(BaseModel):
    index: int
    operation: str
    error: str
    status_code: int


class BatchSummary(BaseModel):
    total: int
    successful: int
    failed: int


class BatchResult(BaseModel):
    """Collected results of a batch run.

    ``status_code`` is 200 when every operation succeeded, 207 when some
    failed and 400 when none succeeded.
    """

    status: Literal["success", "partial_success"]
    status_code: int
    results: list[BatchItemResult] = Field(default_factory=list)
    errors: list[BatchItemError] = Field(default_factory=list)
    summary: BatchSummary


class HealthReport(BaseModel):
    status: Literal["healthy"] = "healthy"
    token: dict[str, Any] | None = None
    resolver_cache: dict[str, int]
    range_policy: dict[str, int]


@dataclass(frozen=True)
class ResolvedTarget:
    drive_id: str
    item_id: str
    worksheet_id: str | None
    worksheet_name: str | None


class ExcelService:
    """Per-process context that runs gateway operations."""

    def __init__(
        self,
        *,
        graph: GraphClient,
        resolver: NameResolver,
        range_policy: RangePolicy,
        capabilities: CapabilityPolicy | None = None,
        audit: AuditLogger | None = None,
        general_limiter: InMemoryRateLimiter | None = None,
        write_limiter: InMemoryRateLimiter | None = None,
        tokens: TokenProvider | None = None,
        user: str = "anonymous",
        client: str | None = None,
    ) -> None:
        self.graph = graph
        self.resolver = resolver
        self.range_policy = range_policy
        self.capabilities = capabilities or CapabilityPolicy()
        self.audit = audit or AuditLogger()
        self.general_limiter = general_limiter
        self.write_limiter = write_limiter
        self.tokens = tokens
        self.user = user
        self.client = client

    async def aclose(self) -> None:
        await self.graph.aclose()

    def new_context(self) -> AuditContext:
        """Build the audit context for one incoming call."""
        return AuditContext(user=self.user, client=self.client)

    async def list_workbooks(
        self,
        *,
        drive_id: str | None = None,
        drive_name: str | None = None,
        context: AuditContext | None = None,
    ) -> list[WorkbookInfo]:
        """List Excel files visible to the caller.

        Without a drive, every drive of the configured site is searched.
        """
        context = context or self.new_context()
        self._enforce(self.general_limiter, context)
        if drive_id:
            drive_ids = [drive_id]
        elif drive_name:
            drive_ids = [await self.resolver.resolve_drive_id(drive_name)]
        else:
            drive_ids = [str(drive["id"]) for drive in await self.graph.list_drives()]
        workbooks: list[WorkbookInfo] = []
        for current in drive_ids:
            for item in await self.graph.search_workbooks(current):
                item_id = str(item["id"])
                if self.capabilities.can_access_workbook(context.user, item_id):
                    workbooks.append(
                        WorkbookInfo(id=item_id, name=str(item["name"]), drive_id=current)
                    )
        self.audit.log_system_event(
            "WORKBOOKS_RETRIEVED",
            details={"count": len(workbooks), "user": context.user},
        )
        return workbooks

    async def list_worksheets(
        self, target: WorkbookTarget, *, context: AuditContext | None = None
    ) -> list[WorksheetInfo]:
        context = context or self.new_context()
        self._enforce(self.general_limiter, context)
        resolved = await self._resolve(target, require_worksheet=False)
        if not self.capabilities.can_access_workbook(context.user, resolved.item_id):
            raise AccessDeniedError(
                "Access denied to workbook", reason="No access to this workbook"
            )
        sheets = await self.graph.list_worksheets(resolved.drive_id, resolved.item_id)
        worksheets = [
            WorksheetInfo(
                id=str(sheet["id"]),
                name=str(sheet["name"]),
                position=sheet.get("position"),
                visibility=sheet.get("visibility"),
            )
            for sheet in sheets
            if self.capabilities.can_access_worksheet(
                context.user, resolved.item_id, str(sheet["id"])
            )
        ]
        logger.info(
            "Retrieved %s worksheets from workbook %s", len(worksheets), resolved.item_id
        )
        return worksheets

    async def read_range(
        self,
        target: WorkbookTarget,
        range_ref: str,
        *,
        context: AuditContext | None = None,
    ) -> RangeData:
        """Read a range after the capability check.

        Args:
            target: Workbook and optional worksheet reference.
            range_ref: Range address, optionally ``Sheet!``-qualified.
            context: Audit context for this call.

        Returns:
            Values, formulas and text of the range.
        """
        context = context or self.new_context()
        self._enforce(self.general_limiter, context)
        parsed = parse_range(range_ref)
        resolved = await self._resolve(target, sheet_name=parsed.sheet_name)
        worksheet_id = _require(resolved.worksheet_id)
        check = self.capabilities.can_read_range(
            context.user, resolved.item_id, worksheet_id, parsed.address
        )
        self._record_check(context, "READ", check, resolved, range_ref=parsed.address)
        if not check.allowed:
            raise AccessDeniedError(
                f"Read access denied: {check.reason}", reason=check.reason
            )
        try:
            data = await self.graph.get_range(
                resolved.drive_id, resolved.item_id, worksheet_id, parsed.address
            )
        except GatewayError as exc:
            self.audit.log_read(
                context,
                workbook_id=resolved.item_id,
                worksheet_id=worksheet_id,
                range_ref=parsed.address,
                success=False,
                error=exc.message,
            )
            raise
        result = _range_data(data, parsed)
        self.audit.log_read(
            context,
            workbook_id=resolved.item_id,
            worksheet_id=worksheet_id,
            range_ref=result.range,
            cell_count=result.dimensions.rows * result.dimensions.columns,
            success=True,
        )
        return result

    async def write_range(
        self,
        target: WorkbookTarget,
        range_ref: str,
        values: list[list[Any]],
        *,
        context: AuditContext | None = None,
    ) -> WriteResult:
        """Write ``values`` into a range.

        The write passes the rate limits, the values shape check, the
        capability check and the range policy before Graph is called.

        Raises:
            RequestValidationError: If ``values`` does not fit the range.
            AccessDeniedError: If the capability model refuses the write.
            RangeDeniedError: If the range policy refuses the write.
            PolicyValidationError: If the range policy cannot be evaluated.
        """
        context = context or self.new_context()
        self._enforce(self.general_limiter, context)
        self._enforce(self.write_limiter, context)
        parsed = parse_range(range_ref)
        ensure_values_fit_range(values, parsed)
        resolved = await self._resolve(target, sheet_name=parsed.sheet_name)
        worksheet_id = _require(resolved.worksheet_id)
        check = self.capabilities.can_write_range(
            context.user, resolved.item_id, worksheet_id, parsed.address
        )
        self._record_check(context, "WRITE", check, resolved, range_ref=parsed.address)
        if not check.allowed:
            raise AccessDeniedError(
                f"Write access denied: {check.reason}", reason=check.reason
            )
        policy_range = qualify_range(parsed.address, resolved.worksheet_name)
        decision = self.range_policy.validate_write(policy_range)
        self._apply_decision(context, decision, resolved, range_ref=policy_range)

        old_values = await self._current_values(resolved, parsed.address)
        try:
            data = await self.graph.patch_range(
                resolved.drive_id, resolved.item_id, worksheet_id, parsed.address, values
            )
        except GatewayError as exc:
            self.audit.log_write(
                context,
                workbook_id=resolved.item_id,
                worksheet_id=worksheet_id,
                range_ref=parsed.address,
                old_values=old_values,
                new_values=values,
                success=False,
                error=exc.message,
            )
            raise
        audit_id = self.audit.log_write(
            context,
            workbook_id=resolved.item_id,
            worksheet_id=worksheet_id,
            range_ref=parsed.address,
            old_values=old_values,
            new_values=values,
            cells_modified=parsed.cell_count,
            success=True,
        )
        written = _range_data(data, parsed)
        logger.info(
            "Wrote %s cells to %s in workbook %s",
            parsed.cell_count,
            parsed.address,
            resolved.item_id,
        )
        return WriteResult(
            range=written.range,
            values=written.values or values,
            dimensions=written.dimensions,
            cells_modified=parsed.cell_count,
            audit_id=audit_id,
        )

    async def read_table(
        self,
        target: WorkbookTarget,
        table_name: str,
        *,
        context: AuditContext | None = None,
    ) -> TableData:
        context = context or self.new_context()
        self._enforce(self.general_limiter, context)
        resolved = await self._resolve(target)
        worksheet_id = _require(resolved.worksheet_id)
        check = self.capabilities.can_read_table(
            context.user, resolved.item_id, worksheet_id, table_name
        )
        self._record_check(context, "READ_TABLE", check, resolved, table=table_name)
        if not check.allowed:
            raise AccessDeniedError(
                f"Table read access denied: {check.reason}", reason=check.reason
            )
        try:
            table = await self.graph.get_table(
                resolved.drive_id, resolved.item_id, worksheet_id, table_name
            )
            data = await self.graph.get_table_range(
                resolved.drive_id, resolved.item_id, worksheet_id, table_name
            )
        except GatewayError as exc:
            self.audit.log_read(
                context,
                workbook_id=resolved.item_id,
                worksheet_id=worksheet_id,
                table=table_name,
                success=False,
                error=exc.message,
            )
            raise
        values = list(data.get("values") or [])
        result = TableData(
            table=TableInfo(
                id=table.get("id"), name=table.get("name"), address=data.get("address")
            ),
            headers=list(values[0]) if values else [],
            rows=values[1:],
            values=values,
            dimensions=Dimensions(
                rows=int(data.get("rowCount", len(values))),
                columns=int(
                    data.get("columnCount", len(values[0]) if values else 0)
                ),
            ),
        )
        self.audit.log_read(
            context,
            workbook_id=resolved.item_id,
            worksheet_id=worksheet_id,
            table=table_name,
            cell_count=result.dimensions.rows * result.dimensions.columns,
            success=True,
        )
        return result

    async def add_table_rows(
        self,
        target: WorkbookTarget,
        table_name: str,
        rows: list[list[Any]],
        *,
        context: AuditContext | None = None,
    ) -> TableRowsResult:
        """Append ``rows`` below a table.

        The range policy is checked against the rectangle the new rows will
        occupy, computed from the table's current address.
        """
        context = context or self.new_context()
        self._enforce(self.general_limiter, context)
        self._enforce(self.write_limiter, context)
        ensure_matrix(rows, field="rows")
        resolved = await self._resolve(target)
        worksheet_id = _require(resolved.worksheet_id)
        check = self.capabilities.can_write_table(
            context.user, resolved.item_id, worksheet_id, table_name
        )
        self._record_check(context, "WRITE_TABLE", check, resolved, table=table_name)
        if not check.allowed:
            raise AccessDeniedError(
                f"Table write access denied: {check.reason}", reason=check.reason
            )
        table_range = await self.graph.get_table_range(
            resolved.drive_id, resolved.item_id, worksheet_id, table_name
        )
        current = parse_range(str(table_range.get("address", "")))
        if len(rows[0]) != current.column_count:
            raise RequestValidationError(
                f"rows have {len(rows[0])} columns but table {table_name} "
                f"has {current.column_count}"
            )
        append_target = table_append_target(current, len(rows))
        policy_range = qualify_range(append_target.address, resolved.worksheet_name)
        decision = self.range_policy.validate_write(policy_range)
        self._apply_decision(context, decision, resolved, range_ref=policy_range)
        try:
            data = await self.graph.add_table_rows(
                resolved.drive_id, resolved.item_id, worksheet_id, table_name, rows
            )
        except GatewayError as exc:
            self.audit.log_write(
                context,
                workbook_id=resolved.item_id,
                worksheet_id=worksheet_id,
                table=table_name,
                new_values=rows,
                success=False,
                error=exc.message,
            )
            raise
        audit_id = self.audit.log_write(
            context,
            workbook_id=resolved.item_id,
            worksheet_id=worksheet_id,
            range_ref=append_target.address,
            table=table_name,
            new_values=rows,
            cells_modified=append_target.cell_count,
            success=True,
        )
        return TableRowsResult(
            table=table_name,
            appended_range=policy_range,
            rows_added=len(rows),
            index=data.get("index"),
            audit_id=audit_id,
        )

    def validate_write(
        self,
        range_ref: str,
        worksheet_name: str | None = None,
        *,
        context: AuditContext | None = None,
    ) -> RangeDecision:
        """Evaluate the range policy for a write without touching Graph."""
        context = context or self.new_context()
        self._enforce(self.general_limiter, context)
        decision = self.range_policy.validate_write(range_ref, worksheet_name)
        self.audit.log_permission_check(
            context,
            requested_permission="WRITE",
            granted=decision.allowed,
            reason=decision.reason,
            worksheet_id=worksheet_name,
            range_ref=range_ref,
        )
        return decision

    async def run_batch(
        self,
        operations: list[BatchOperation],
        *,
        context: AuditContext | None = None,
    ) -> BatchResult:
        """Run operations in order and collect per-step outcomes.

        A failed step does not stop the batch unless it failed to
        authenticate, in which case the remaining steps are skipped.

        Raises:
            RequestValidationError: If ``operations`` is empty.
        """
        if not operations:
            raise RequestValidationError("Invalid operations array")
        context = context or self.new_context()
        results: list[BatchItemResult] = []
        errors: list[BatchItemError] = []
        for index, operation in enumerate(operations):
            try:
                outcome = await self._run_operation(operation, context)
            except GatewayError as exc:
                logger.error("Batch operation %s failed: %s", index, exc.message)
                errors.append(
                    BatchItemError(
                        index=index,
                        operation=operation.type,
                        error=exc.message,
                        status_code=exc.status_code,
                    )
                )
                if isinstance(exc, AuthenticationError):
                    break
                continue
            results.append(
                BatchItemResult(
                    index=index, operation=operation.type, data=outcome.model_dump()
                )
            )
        if not errors:
            status_code = 200
        elif results:
            status_code = 207
        else:
            status_code = 400
        return BatchResult(
            status="success" if not errors else "partial_success",
            status_code=status_code,
            results=results,
            errors=errors,
            summary=BatchSummary(
                total=len(operations), successful=len(results), failed=len(errors)
            ),
        )

    def health(self) -> HealthReport:
        return HealthReport(
            token=self.tokens.token_info() if self.tokens is not None else None,
            resolver_cache=self.resolver.cache_stats(),
            range_policy=self.range_policy.entry_counts(),
        )

    async def _run_operation(
        self, operation: BatchOperation, context: AuditContext
    ) -> BaseModel:
        target = WorkbookTarget.model_validate(
            operation.model_dump(include=set(WorkbookTarget.model_fields))
        )
        if operation.type == "read_range":
            return await self.read_range(
                target, _field(operation.range, "range"), context=context
            )
        if operation.type == "write_range":
            return await self.write_range(
                target,
                _field(operation.range, "range"),
                _field(operation.values, "values"),
                context=context,
            )
        if operation.type == "read_table":
            return await self.read_table(
                target, _field(operation.table_name, "table_name"), context=context
            )
        return await self.add_table_rows(
            target,
            _field(operation.table_name, "table_name"),
            _field(operation.rows, "rows"),
            context=context,
        )

    async def _resolve(
        self,
        target: WorkbookTarget,
        *,
        sheet_name: str | None = None,
        require_worksheet: bool = True,
    ) -> ResolvedTarget:
        """Turn names in ``target`` into Graph ids.

        ``worksheet_id``, ``worksheet_name`` and the range's sheet prefix must
        all point at the same worksheet. The returned worksheet name is the one
        Graph reports, so the range policy sees the sheet that is written.

        Raises:
            RequestValidationError: If the worksheet references disagree.
        """
        ensure_workbook_reference(
            target.drive_id, target.item_id, target.drive_name, target.item_name
        )
        if target.drive_id and target.item_id:
            drive_id, item_id = target.drive_id, target.item_id
        else:
            drive_id = await self.resolver.resolve_drive_id(target.drive_name or "")
            item_id = await self.resolver.resolve_item_id(
                drive_id, target.item_name or ""
            )
        worksheet_id = target.worksheet_id
        for name in (target.worksheet_name, sheet_name):
            if not name:
                continue
            named_id = await self.resolver.resolve_worksheet_id(
                drive_id, item_id, name
            )
            if worksheet_id is None:
                worksheet_id = named_id
            elif named_id != worksheet_id:
                raise RequestValidationError(
                    f"Worksheet {name} does not match the requested worksheet"
                )
        if worksheet_id is None:
            if require_worksheet:
                raise RequestValidationError(
                    "worksheetId, worksheetName or a sheet-qualified range is required"
                )
            return ResolvedTarget(
                drive_id=drive_id, item_id=item_id, worksheet_id=None, worksheet_name=None
            )
        worksheet_name = await self.resolver.resolve_worksheet_name(
            drive_id, item_id, worksheet_id
        )
        return ResolvedTarget(
            drive_id=drive_id,
            item_id=item_id,
            worksheet_id=worksheet_id,
            worksheet_name=worksheet_name,
        )

    def _enforce(
        self, limiter: InMemoryRateLimiter | None, context: AuditContext
    ) -> None:
        if limiter is None:
            return
        key = context.client or context.user
        if limiter.allow(key):
            return
        retry_after = limiter.retry_after(key)
        logger.warning("Rate limit exceeded for %s; retry after %ss", key, retry_after)
        raise RateLimitExceeded(
            "Too many requests, please try again later.", retry_after=retry_after
        )

    def _record_check(
        self,
        context: AuditContext,
        permission: RequestedPermission,
        result: PermissionResult,
        resolved: ResolvedTarget,
        *,
        range_ref: str | None = None,
        table: str | None = None,
    ) -> None:
        self.audit.log_permission_check(
            context,
            requested_permission=permission,
            granted=result.allowed,
            reason=result.reason,
            workbook_id=resolved.item_id,
            worksheet_id=resolved.worksheet_id,
            range_ref=range_ref,
            table=table,
        )

    def _apply_decision(
        self,
        context: AuditContext,
        decision: RangeDecision,
        resolved: ResolvedTarget,
        *,
        range_ref: str,
    ) -> None:
        """Raise the matching error when the range policy refuses a write."""
        if decision.allowed:
            return
        logger.warning(
            "Range write denied: range=%s worksheet=%s reason=%s",
            range_ref,
            resolved.worksheet_name,
            decision.reason,
        )
        self.audit.log_permission_check(
            context,
            requested_permission="WRITE",
            granted=False,
            reason=decision.reason,
            workbook_id=resolved.item_id,
            worksheet_id=resolved.worksheet_id,
            range_ref=range_ref,
        )
        if decision.code == "VALIDATION_ERROR":
            raise PolicyValidationError(decision.reason)
        raise RangeDeniedError(
            decision.reason, code=decision.code, allowed_ranges=decision.allowed_ranges
        )

    async def _current_values(
        self, resolved: ResolvedTarget, address: str
    ) -> list[list[Any]] | None:
        """Read the values about to be overwritten, for the audit trail."""
        try:
            data = await self.graph.get_range(
                resolved.drive_id, resolved.item_id, _require(resolved.worksheet_id), address
            )
        except GatewayError as exc:
            logger.warning("Could not read current values of %s: %s", address, exc.message)
            return None
        values = data.get("values")
        return list(values) if values is not None else None


def _range_data(data: dict[str, Any], parsed: ParsedRange) -> RangeData:
    values = list(data.get("values") or [])
    return RangeData(
        range=str(data.get("address") or parsed.address),
        values=values,
        formulas=data.get("formulas"),
        text=data.get("text"),
        dimensions=Dimensions(
            rows=int(data.get("rowCount", parsed.row_count)),
            columns=int(data.get("columnCount", parsed.column_count)),
        ),
    )


def _require(value: str | None) -> str:
    if not value:
        raise RequestValidationError("worksheetId or worksheetName is required")
    return value


def _field(value: Any, name: str) -> Any:
    if value is None:
        raise RequestValidationError(f"{name} is required for this operation")
    return value
