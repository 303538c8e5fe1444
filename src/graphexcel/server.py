from __future__ import annotations

import argparse
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
import importlib
import logging
from pathlib import Path
from types import ModuleType
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field

from .access.permissions import CapabilityPolicy, load_permissions
from .access.range_policy import JsonFilePolicySource, RangePolicy
from .audit import AuditLogger, audit_logger
from .config import GraphSettings, get_settings
from .graph.auth import TokenProvider, build_msal_app
from .graph.client import GraphClient
from .rate_limit import InMemoryRateLimiter, RateLimit
from .resolver import NameResolver
from .service import BatchOperation, ExcelService
from .tools import (
    AddTableRowsToolInput,
    AddTableRowsToolOutput,
    BatchToolInput,
    BatchToolOutput,
    ErrorToolOutput,
    HealthToolInput,
    HealthToolOutput,
    ListWorkbooksToolInput,
    ListWorkbooksToolOutput,
    ListWorksheetsToolInput,
    ListWorksheetsToolOutput,
    ReadRangeToolInput,
    ReadRangeToolOutput,
    ReadTableToolInput,
    ReadTableToolOutput,
    ValidateWriteToolInput,
    ValidateWriteToolOutput,
    WriteRangeToolInput,
    WriteRangeToolOutput,
    invoke_tool,
    run_add_table_rows_tool,
    run_batch_tool,
    run_health_tool,
    run_list_workbooks_tool,
    run_list_worksheets_tool,
    run_read_range_tool,
    run_read_table_tool,
    run_validate_write_tool,
    run_write_range_tool,
)

if TYPE_CHECKING:  # pragma: no cover - typing only
    from mcp.server.fastmcp import FastMCP

logger = logging.getLogger(__name__)

Transport = Literal["stdio", "sse", "streamable-http"]


class ServerConfig(BaseModel):
    """Configuration for the MCP server process."""

    range_permissions: Path = Field(
        default=Path("rangePermissions.json"),
        description="JSON file with allowedRanges/lockedRanges.",
    )
    permissions: Path | None = Field(
        default=None, description="Optional capability permissions JSON."
    )
    user: str = Field(
        default="anonymous", description="Identity used for permission checks."
    )
    log_level: str = Field(default="INFO", description="Logging level.")
    log_file: Path | None = Field(default=None, description="Optional log file path.")
    audit_log: Path | None = Field(
        default=None, description="Optional file for audit JSON lines."
    )
    transport: Transport = Field(default="stdio", description="MCP transport.")
    host: str = Field(default="127.0.0.1", description="Bind host for HTTP transports.")
    port: int = Field(default=8000, ge=1, le=65535, description="Bind port.")
    cache_ttl: float = Field(default=600.0, gt=0, description="Name cache TTL seconds.")
    rate_limit_max: int = Field(default=100, ge=1)
    rate_limit_window: float = Field(default=900.0, gt=0)
    write_rate_limit_max: int = Field(default=20, ge=1)
    write_rate_limit_window: float = Field(default=300.0, gt=0)


def main(argv: list[str] | None = None) -> int:
    """Run the MCP server entrypoint.

    Args:
        argv: Optional CLI arguments for testing.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    config = _parse_args(argv)
    _configure_logging(config)
    try:
        run_server(config)
    except Exception as exc:  # pragma: no cover - surface runtime errors
        logger.error("MCP server failed: %s", exc)
        return 1
    return 0


def run_server(config: ServerConfig) -> None:
    """Start the MCP server.

    Args:
        config: Server configuration.
    """
    _import_mcp()
    service = _build_service(config, get_settings())
    logger.info(
        "Range permissions: %s (%s)",
        config.range_permissions,
        service.range_policy.entry_counts(),
    )
    service.audit.log_system_event(
        "SERVER_STARTED", details={"transport": config.transport}
    )
    app = _create_app(service, config)
    app.run(transport=config.transport)


def _parse_args(argv: list[str] | None) -> ServerConfig:
    """Parse CLI arguments into server config.

    Args:
        argv: Optional CLI argument list.

    Returns:
        Parsed server configuration.
    """
    parser = argparse.ArgumentParser(
        description="Microsoft Graph Excel gateway (MCP server)."
    )
    parser.add_argument(
        "--range-permissions",
        type=Path,
        default=Path("rangePermissions.json"),
        help="Allowed/locked range policy file.",
    )
    parser.add_argument(
        "--permissions", type=Path, help="Optional capability permissions file."
    )
    parser.add_argument(
        "--user", default="anonymous", help="Identity used for permission checks."
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    )
    parser.add_argument("--log-file", type=Path, help="Optional log file path.")
    parser.add_argument("--audit-log", type=Path, help="Optional audit log file path.")
    parser.add_argument(
        "--transport",
        choices=["stdio", "sse", "streamable-http"],
        default="stdio",
        help="MCP transport (stdio/sse/streamable-http).",
    )
    parser.add_argument("--host", default="127.0.0.1", help="HTTP bind host.")
    parser.add_argument("--port", type=int, default=8000, help="HTTP bind port.")
    parser.add_argument(
        "--cache-ttl", type=float, default=600.0, help="Name cache TTL in seconds."
    )
    parser.add_argument("--rate-limit-max", type=int, default=100)
    parser.add_argument("--rate-limit-window", type=float, default=900.0)
    parser.add_argument("--write-rate-limit-max", type=int, default=20)
    parser.add_argument("--write-rate-limit-window", type=float, default=300.0)
    args = parser.parse_args(argv)
    return ServerConfig(
        range_permissions=args.range_permissions,
        permissions=args.permissions,
        user=args.user,
        log_level=args.log_level,
        log_file=args.log_file,
        audit_log=args.audit_log,
        transport=args.transport,
        host=args.host,
        port=args.port,
        cache_ttl=args.cache_ttl,
        rate_limit_max=args.rate_limit_max,
        rate_limit_window=args.rate_limit_window,
        write_rate_limit_max=args.write_rate_limit_max,
        write_rate_limit_window=args.write_rate_limit_window,
    )


def _configure_logging(config: ServerConfig) -> None:
    """Configure logging for the server process.

    Args:
        config: Server configuration.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.log_file is not None:
        handlers.append(logging.FileHandler(config.log_file))
    logging.basicConfig(
        level=config.log_level.upper(),
        handlers=handlers,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if config.audit_log is not None:
        audit_handler = logging.FileHandler(config.audit_log)
        audit_handler.setFormatter(logging.Formatter("%(message)s"))
        audit_logger.addHandler(audit_handler)
        audit_logger.setLevel(logging.INFO)


def _import_mcp() -> ModuleType:
    """Import the MCP SDK module or raise a helpful error.

    Returns:
        Imported MCP module.
    """
    try:
        return importlib.import_module("mcp")
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "MCP SDK is not installed. Install with `pip install graph-excel-gateway`."
        ) from exc


def _build_service(config: ServerConfig, settings: GraphSettings) -> ExcelService:
    """Wire the gateway collaborators from configuration.

    Args:
        config: Server configuration.
        settings: Azure AD and Graph settings.

    Returns:
        Ready-to-use service.
    """
    audit = AuditLogger()
    tokens = TokenProvider(
        build_msal_app(settings), scope=settings.graph_scope, audit=audit
    )
    graph = GraphClient(
        tokens,
        base_url=settings.graph_base_url,
        timeout=settings.timeout_seconds,
        site_id=settings.site_id,
        site_hostname=settings.site_hostname,
        site_path=settings.site_path,
    )
    return ExcelService(
        graph=graph,
        resolver=NameResolver(graph, ttl_seconds=config.cache_ttl),
        range_policy=RangePolicy(JsonFilePolicySource(config.range_permissions)),
        capabilities=CapabilityPolicy(load_permissions(config.permissions)),
        audit=audit,
        general_limiter=InMemoryRateLimiter(
            limit=RateLimit(
                max_requests=config.rate_limit_max,
                window_seconds=config.rate_limit_window,
            )
        ),
        write_limiter=InMemoryRateLimiter(
            limit=RateLimit(
                max_requests=config.write_rate_limit_max,
                window_seconds=config.write_rate_limit_window,
            )
        ),
        tokens=tokens,
        user=config.user,
        client="mcp",
    )


def _create_app(service: ExcelService, config: ServerConfig) -> FastMCP:
    """Create the MCP FastMCP application.

    Args:
        service: Gateway service the tools call into.
        config: Server configuration.

    Returns:
        FastMCP application instance.
    """
    from mcp.server.fastmcp import FastMCP

    app = FastMCP(
        "Graph Excel Gateway",
        json_response=True,
        host=config.host,
        port=config.port,
        lifespan=_service_lifespan(service),
    )
    _register_tools(app, service)
    return app


def _service_lifespan(
    service: ExcelService,
) -> Callable[[Any], AbstractAsyncContextManager[dict[str, Any]]]:
    """Build a lifespan that closes the Graph HTTP client after the last session.

    HTTP transports enter the lifespan once per session, so the client is
    closed only when no session is left open.

    Args:
        service: Gateway service whose Graph client is closed.

    Returns:
        Lifespan factory accepted by FastMCP.
    """
    active = 0

    @asynccontextmanager
    async def _lifespan(_app: Any) -> AsyncIterator[dict[str, Any]]:
        nonlocal active
        active += 1
        try:
            yield {}
        finally:
            active -= 1
            if active == 0:
                logger.info("Closing Graph client")
                await service.aclose()

    return _lifespan


def _register_tools(app: FastMCP, service: ExcelService) -> None:
    """Register MCP tools for the server.

    Args:
        app: FastMCP application instance.
        service: Gateway service the tools call into.
    """

    async def _list_workbooks_tool(
        drive_id: str | None = None, drive_name: str | None = None
    ) -> ListWorkbooksToolOutput | ErrorToolOutput:
        """List Excel workbooks the caller may access.

        Args:
            drive_id: Optional drive id to search.
            drive_name: Optional drive name to search.

        Returns:
            Workbooks found, or an error payload.
        """
        return await invoke_tool(  # type: ignore[return-value]
            run_list_workbooks_tool,
            ListWorkbooksToolInput,
            {"drive_id": drive_id, "drive_name": drive_name},
            service=service,
        )

    app.tool(name="excel_list_workbooks")(_list_workbooks_tool)

    async def _list_worksheets_tool(
        drive_id: str | None = None,
        item_id: str | None = None,
        drive_name: str | None = None,
        item_name: str | None = None,
    ) -> ListWorksheetsToolOutput | ErrorToolOutput:
        """List worksheets of a workbook.

        Args:
            drive_id: Drive id (with item_id).
            item_id: Workbook item id.
            drive_name: Drive name (with item_name).
            item_name: Workbook file name.

        Returns:
            Worksheets, or an error payload.
        """
        return await invoke_tool(  # type: ignore[return-value]
            run_list_worksheets_tool,
            ListWorksheetsToolInput,
            {
                "drive_id": drive_id,
                "item_id": item_id,
                "drive_name": drive_name,
                "item_name": item_name,
            },
            service=service,
        )

    app.tool(name="excel_list_worksheets")(_list_worksheets_tool)

    async def _read_range_tool(
        range: str,  # noqa: A002
        drive_id: str | None = None,
        item_id: str | None = None,
        drive_name: str | None = None,
        item_name: str | None = None,
        worksheet_id: str | None = None,
        worksheet_name: str | None = None,
    ) -> ReadRangeToolOutput | ErrorToolOutput:
        """Read values from a worksheet range.

        Args:
            range: Address such as 'A1:C10' or 'Sheet1!A1:C10'.
            drive_id: Drive id (with item_id).
            item_id: Workbook item id.
            drive_name: Drive name (with item_name).
            item_name: Workbook file name.
            worksheet_id: Worksheet id.
            worksheet_name: Worksheet name; the range prefix is used when omitted.

        Returns:
            Range values, formulas and text, or an error payload.
        """
        return await invoke_tool(  # type: ignore[return-value]
            run_read_range_tool,
            ReadRangeToolInput,
            {
                "range": range,
                **_target_arguments(
                    drive_id, item_id, drive_name, item_name, worksheet_id, worksheet_name
                ),
            },
            service=service,
        )

    app.tool(name="excel_read_range")(_read_range_tool)

    async def _write_range_tool(
        range: str,  # noqa: A002
        values: list[list[Any]],
        drive_id: str | None = None,
        item_id: str | None = None,
        drive_name: str | None = None,
        item_name: str | None = None,
        worksheet_id: str | None = None,
        worksheet_name: str | None = None,
    ) -> WriteRangeToolOutput | ErrorToolOutput:
        """Write values into a worksheet range.

        The range must lie inside an allowed range and must not touch a locked
        range. The values array must match the range dimensions exactly.

        Args:
            range: Address such as 'B2:C3' or 'Budget!B2:C3'.
            values: Rectangular 2-D array of cell values.
            drive_id: Drive id (with item_id).
            item_id: Workbook item id.
            drive_name: Drive name (with item_name).
            item_name: Workbook file name.
            worksheet_id: Worksheet id.
            worksheet_name: Worksheet name; the range prefix is used when omitted.

        Returns:
            Written range and audit id, or an error payload.
        """
        return await invoke_tool(  # type: ignore[return-value]
            run_write_range_tool,
            WriteRangeToolInput,
            {
                "range": range,
                "values": values,
                **_target_arguments(
                    drive_id, item_id, drive_name, item_name, worksheet_id, worksheet_name
                ),
            },
            service=service,
        )

    app.tool(name="excel_write_range")(_write_range_tool)

    async def _read_table_tool(
        table_name: str,
        drive_id: str | None = None,
        item_id: str | None = None,
        drive_name: str | None = None,
        item_name: str | None = None,
        worksheet_id: str | None = None,
        worksheet_name: str | None = None,
    ) -> ReadTableToolOutput | ErrorToolOutput:
        """Read an Excel table with its header row.

        Args:
            table_name: Table name.
            drive_id: Drive id (with item_id).
            item_id: Workbook item id.
            drive_name: Drive name (with item_name).
            item_name: Workbook file name.
            worksheet_id: Worksheet id.
            worksheet_name: Worksheet name.

        Returns:
            Table headers and rows, or an error payload.
        """
        return await invoke_tool(  # type: ignore[return-value]
            run_read_table_tool,
            ReadTableToolInput,
            {
                "table_name": table_name,
                **_target_arguments(
                    drive_id, item_id, drive_name, item_name, worksheet_id, worksheet_name
                ),
            },
            service=service,
        )

    app.tool(name="excel_read_table")(_read_table_tool)

    async def _add_table_rows_tool(
        table_name: str,
        rows: list[list[Any]],
        drive_id: str | None = None,
        item_id: str | None = None,
        drive_name: str | None = None,
        item_name: str | None = None,
        worksheet_id: str | None = None,
        worksheet_name: str | None = None,
    ) -> AddTableRowsToolOutput | ErrorToolOutput:
        """Append rows to an Excel table.

        Args:
            table_name: Table name.
            rows: Rows to append; each row must have the table's column count.
            drive_id: Drive id (with item_id).
            item_id: Workbook item id.
            drive_name: Drive name (with item_name).
            item_name: Workbook file name.
            worksheet_id: Worksheet id.
            worksheet_name: Worksheet name.

        Returns:
            Appended range and audit id, or an error payload.
        """
        return await invoke_tool(  # type: ignore[return-value]
            run_add_table_rows_tool,
            AddTableRowsToolInput,
            {
                "table_name": table_name,
                "rows": rows,
                **_target_arguments(
                    drive_id, item_id, drive_name, item_name, worksheet_id, worksheet_name
                ),
            },
            service=service,
        )

    app.tool(name="excel_add_table_rows")(_add_table_rows_tool)

    async def _validate_write_tool(
        range: str,  # noqa: A002
        worksheet_name: str | None = None,
    ) -> ValidateWriteToolOutput | ErrorToolOutput:
        """Check whether a range may be written, without writing.

        Args:
            range: Address such as 'B2:C3' or 'Budget!B2:C3'.
            worksheet_name: Sheet applied when the range has no prefix.

        Returns:
            Policy decision with reason and allowed ranges.
        """
        return await invoke_tool(  # type: ignore[return-value]
            run_validate_write_tool,
            ValidateWriteToolInput,
            {"range": range, "worksheet_name": worksheet_name},
            service=service,
        )

    app.tool(name="excel_validate_write")(_validate_write_tool)

    async def _batch_tool(
        operations: list[BatchOperation],
    ) -> BatchToolOutput | ErrorToolOutput:
        """Run several read/write operations in order.

        Args:
            operations: Steps with 'type' set to read_range, write_range,
                read_table or add_table_rows plus that step's arguments.

        Returns:
            Per-step results and errors with a 200/207/400 status code.
        """
        return await invoke_tool(  # type: ignore[return-value]
            run_batch_tool,
            BatchToolInput,
            {"operations": operations},
            service=service,
        )

    app.tool(name="excel_batch")(_batch_tool)

    async def _health_tool() -> HealthToolOutput | ErrorToolOutput:
        """Report token state, name cache sizes and range policy size."""
        return await invoke_tool(  # type: ignore[return-value]
            run_health_tool, HealthToolInput, {}, service=service
        )

    app.tool(name="excel_health")(_health_tool)


def _target_arguments(
    drive_id: str | None,
    item_id: str | None,
    drive_name: str | None,
    item_name: str | None,
    worksheet_id: str | None,
    worksheet_name: str | None,
) -> dict[str, Any]:
    return {
        "drive_id": drive_id,
        "item_id": item_id,
        "drive_name": drive_name,
        "item_name": item_name,
        "worksheet_id": worksheet_id,
        "worksheet_name": worksheet_name,
    }
