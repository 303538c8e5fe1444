from __future__ import annotations

from collections.abc import Awaitable, Callable
import logging
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .access.types import RangeDecisionCode
from .errors import GatewayError
from .service import (
    BatchItemError,
    BatchItemResult,
    BatchOperation,
    BatchSummary,
    ExcelService,
    HealthReport,
    RangeData,
    TableData,
    TableRowsResult,
    WorkbookInfo,
    WorkbookTarget,
    WorksheetInfo,
    WriteResult,
)
from .validation import ensure_matrix, ensure_workbook_reference

logger = logging.getLogger(__name__)

InputT = TypeVar("InputT", bound=BaseModel)


class _WorkbookToolInput(BaseModel):
    """Workbook reference shared by tool inputs."""

    drive_id: str | None = None
    item_id: str | None = None
    drive_name: str | None = None
    item_name: str | None = None

    @model_validator(mode="after")
    def _require_workbook(self) -> _WorkbookToolInput:
        ensure_workbook_reference(
            self.drive_id, self.item_id, self.drive_name, self.item_name
        )
        return self

    def target(self) -> WorkbookTarget:
        return WorkbookTarget.model_validate(
            self.model_dump(include=set(WorkbookTarget.model_fields))
        )


class _WorksheetToolInput(_WorkbookToolInput):
    worksheet_id: str | None = None
    worksheet_name: str | None = None


class ListWorkbooksToolInput(BaseModel):
    """MCP tool input for listing workbooks."""

    drive_id: str | None = None
    drive_name: str | None = None


class ListWorkbooksToolOutput(BaseModel):
    """MCP tool output for listing workbooks."""

    workbooks: list[WorkbookInfo] = Field(default_factory=list)


class ListWorksheetsToolInput(_WorkbookToolInput):
    """MCP tool input for listing worksheets."""


class ListWorksheetsToolOutput(BaseModel):
    """MCP tool output for listing worksheets."""

    worksheets: list[WorksheetInfo] = Field(default_factory=list)


class ReadRangeToolInput(_WorksheetToolInput):
    """MCP tool input for reading a range."""

    range: str  # noqa: A003


class ReadRangeToolOutput(RangeData):
    """MCP tool output for reading a range."""


class WriteRangeToolInput(_WorksheetToolInput):
    """MCP tool input for writing a range."""

    range: str  # noqa: A003
    values: list[list[Any]]

    @field_validator("values")
    @classmethod
    def _check_values(cls, value: list[list[Any]]) -> list[list[Any]]:
        return ensure_matrix(value)


class WriteRangeToolOutput(WriteResult):
    """MCP tool output for writing a range."""


class ReadTableToolInput(_WorksheetToolInput):
    """MCP tool input for reading a table."""

    table_name: str = Field(..., min_length=1, max_length=255)


class ReadTableToolOutput(TableData):
    """MCP tool output for reading a table."""


class AddTableRowsToolInput(_WorksheetToolInput):
    """MCP tool input for appending table rows."""

    table_name: str = Field(..., min_length=1, max_length=255)
    rows: list[list[Any]]

    @field_validator("rows")
    @classmethod
    def _check_rows(cls, value: list[list[Any]]) -> list[list[Any]]:
        return ensure_matrix(value, field="rows")


class AddTableRowsToolOutput(TableRowsResult):
    """MCP tool output for appending table rows."""


class ValidateWriteToolInput(BaseModel):
    """MCP tool input for a range policy dry run."""

    range: str  # noqa: A003
    worksheet_name: str | None = None


class ValidateWriteToolOutput(BaseModel):
    """MCP tool output for a range policy dry run."""

    allowed: bool
    reason: str
    code: RangeDecisionCode
    allowed_ranges: list[str] = Field(default_factory=list)


class BatchToolInput(BaseModel):
    """MCP tool input for batch operations."""

    operations: list[BatchOperation]


class BatchToolOutput(BaseModel):
    """MCP tool output for batch operations."""

    status: Literal["success", "partial_success"]
    status_code: int
    results: list[BatchItemResult] = Field(default_factory=list)
    errors: list[BatchItemError] = Field(default_factory=list)
    summary: BatchSummary


class HealthToolInput(BaseModel):
    """MCP tool input for the health check."""


class HealthToolOutput(HealthReport):
    """MCP tool output for the health check."""


class ErrorToolOutput(BaseModel):
    """Tool output returned instead of raising for gateway errors."""

    status: Literal["error"] = "error"
    status_code: int
    error: dict[str, Any]

    @classmethod
    def from_error(cls, exc: GatewayError) -> ErrorToolOutput:
        payload = exc.to_payload()
        return cls(status_code=exc.status_code, error=payload["error"])

    @classmethod
    def from_validation_error(cls, exc: ValidationError) -> ErrorToolOutput:
        details = [
            {
                "field": ".".join(str(part) for part in item["loc"]),
                "message": item["msg"],
            }
            for item in exc.errors()
        ]
        return cls(
            status_code=400,
            error={
                "code": 400,
                "type": "VALIDATION_FAILED",
                "message": "Request data is invalid",
                "details": details,
            },
        )


async def run_list_workbooks_tool(
    payload: ListWorkbooksToolInput, *, service: ExcelService
) -> ListWorkbooksToolOutput:
    """Run the workbook listing tool handler.

    Args:
        payload: Tool input payload.
        service: Gateway service.

    Returns:
        Tool output payload.
    """
    workbooks = await service.list_workbooks(
        drive_id=payload.drive_id, drive_name=payload.drive_name
    )
    return ListWorkbooksToolOutput(workbooks=workbooks)


async def run_list_worksheets_tool(
    payload: ListWorksheetsToolInput, *, service: ExcelService
) -> ListWorksheetsToolOutput:
    worksheets = await service.list_worksheets(payload.target())
    return ListWorksheetsToolOutput(worksheets=worksheets)


async def run_read_range_tool(
    payload: ReadRangeToolInput, *, service: ExcelService
) -> ReadRangeToolOutput:
    """Run the range read tool handler.

    Args:
        payload: Tool input payload.
        service: Gateway service.

    Returns:
        Tool output payload.
    """
    result = await service.read_range(payload.target(), payload.range)
    return ReadRangeToolOutput.model_validate(result.model_dump())


async def run_write_range_tool(
    payload: WriteRangeToolInput, *, service: ExcelService
) -> WriteRangeToolOutput:
    """Run the range write tool handler.

    Args:
        payload: Tool input payload.
        service: Gateway service.

    Returns:
        Tool output payload.
    """
    result = await service.write_range(payload.target(), payload.range, payload.values)
    return WriteRangeToolOutput.model_validate(result.model_dump())


async def run_read_table_tool(
    payload: ReadTableToolInput, *, service: ExcelService
) -> ReadTableToolOutput:
    result = await service.read_table(payload.target(), payload.table_name)
    return ReadTableToolOutput.model_validate(result.model_dump())


async def run_add_table_rows_tool(
    payload: AddTableRowsToolInput, *, service: ExcelService
) -> AddTableRowsToolOutput:
    result = await service.add_table_rows(
        payload.target(), payload.table_name, payload.rows
    )
    return AddTableRowsToolOutput.model_validate(result.model_dump())


async def run_validate_write_tool(
    payload: ValidateWriteToolInput, *, service: ExcelService
) -> ValidateWriteToolOutput:
    decision = service.validate_write(payload.range, payload.worksheet_name)
    return ValidateWriteToolOutput.model_validate(decision.model_dump())


async def run_batch_tool(
    payload: BatchToolInput, *, service: ExcelService
) -> BatchToolOutput:
    result = await service.run_batch(payload.operations)
    return BatchToolOutput.model_validate(result.model_dump())


async def run_health_tool(
    payload: HealthToolInput, *, service: ExcelService
) -> HealthToolOutput:
    return HealthToolOutput.model_validate(service.health().model_dump())


async def invoke_tool(
    handler: Callable[..., Awaitable[BaseModel]],
    input_model: type[InputT],
    arguments: dict[str, Any],
    *,
    service: ExcelService,
) -> BaseModel:
    """Validate tool arguments and run a handler.

    Gateway errors and invalid arguments become an ``ErrorToolOutput``. Any
    other exception is logged with its traceback and re-raised.

    Args:
        handler: ``run_*_tool`` coroutine function.
        input_model: Input model the arguments are validated against.
        arguments: Raw tool arguments.
        service: Gateway service.

    Returns:
        Handler output or error output.
    """
    try:
        payload = input_model.model_validate(arguments)
    except ValidationError as exc:
        logger.warning("Invalid %s arguments: %s", input_model.__name__, exc)
        return ErrorToolOutput.from_validation_error(exc)
    try:
        return await handler(payload, service=service)
    except GatewayError as exc:
        logger.warning(
            "%s failed with %s: %s", handler.__name__, exc.status_code, exc.message
        )
        return ErrorToolOutput.from_error(exc)
    except Exception:
        logger.exception("Unexpected error in %s", handler.__name__)
        raise
