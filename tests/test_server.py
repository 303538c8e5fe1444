from __future__ import annotations

from collections.abc import Awaitable, Callable
import importlib
import json
import logging
from pathlib import Path
from typing import Any, cast

import anyio
import pytest

from graphexcel import server
from graphexcel.audit import audit_logger
from graphexcel.config import GraphSettings
from graphexcel.tools import ErrorToolOutput, ReadRangeToolOutput

ToolFunc = Callable[..., Awaitable[object]]


class DummyApp:
    def __init__(self) -> None:
        self.tools: dict[str, ToolFunc] = {}

    def tool(self, *, name: str) -> Callable[[ToolFunc], ToolFunc]:
        def decorator(func: ToolFunc) -> ToolFunc:
            self.tools[name] = func
            return func

        return decorator


async def _call_async(func: ToolFunc, kwargs: dict[str, object]) -> object:
    return await func(**kwargs)


def _settings() -> GraphSettings:
    return GraphSettings(
        tenant_id="tenant",
        client_id="client",
        client_secret="secret",
        _env_file=None,  # type: ignore[call-arg]
    )


def test_parse_args_defaults() -> None:
    config = server._parse_args([])
    assert config.range_permissions == Path("rangePermissions.json")
    assert config.permissions is None
    assert config.user == "anonymous"
    assert config.log_level == "INFO"
    assert config.transport == "stdio"
    assert config.cache_ttl == 600.0
    assert config.rate_limit_max == 100
    assert config.write_rate_limit_max == 20


def test_parse_args_with_options(tmp_path: Path) -> None:
    config = server._parse_args(
        [
            "--range-permissions",
            str(tmp_path / "ranges.json"),
            "--permissions",
            str(tmp_path / "permissions.json"),
            "--user",
            "alice@example.com",
            "--log-level",
            "DEBUG",
            "--audit-log",
            str(tmp_path / "audit.log"),
            "--transport",
            "streamable-http",
            "--port",
            "9001",
            "--cache-ttl",
            "30",
            "--write-rate-limit-max",
            "5",
        ]
    )
    assert config.range_permissions == tmp_path / "ranges.json"
    assert config.permissions == tmp_path / "permissions.json"
    assert config.user == "alice@example.com"
    assert config.log_level == "DEBUG"
    assert config.audit_log == tmp_path / "audit.log"
    assert config.transport == "streamable-http"
    assert config.port == 9001
    assert config.cache_ttl == 30.0
    assert config.write_rate_limit_max == 5


def test_import_mcp_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    def _raise(_: str) -> None:
        raise ModuleNotFoundError("mcp")

    monkeypatch.setattr(importlib, "import_module", _raise)
    with pytest.raises(RuntimeError):
        server._import_mcp()


def test_register_tools_names(service_factory: Any) -> None:
    app = DummyApp()
    server._register_tools(cast(Any, app), service_factory())
    assert set(app.tools) == {
        "excel_list_workbooks",
        "excel_list_worksheets",
        "excel_read_range",
        "excel_write_range",
        "excel_read_table",
        "excel_add_table_rows",
        "excel_validate_write",
        "excel_batch",
        "excel_health",
    }


def test_registered_read_range_tool(service_factory: Any, fake_graph: Any) -> None:
    app = DummyApp()
    server._register_tools(cast(Any, app), service_factory())
    result = anyio.run(
        _call_async,
        app.tools["excel_read_range"],
        {"range": "A1", "drive_id": "d1", "item_id": "i1", "worksheet_name": "Budget"},
    )
    assert isinstance(result, ReadRangeToolOutput)
    assert fake_graph.called("get_range") == [("get_range", "d1", "i1", "w2", "A1")]


def test_registered_write_tool_returns_error_payload(service_factory: Any) -> None:
    app = DummyApp()
    server._register_tools(cast(Any, app), service_factory(allowed=["Budget!A1:B2"]))
    result = anyio.run(
        _call_async,
        app.tools["excel_write_range"],
        {
            "range": "Budget!C3",
            "values": [["x"]],
            "drive_name": "Documents",
            "item_name": "Budget.xlsx",
        },
    )
    assert isinstance(result, ErrorToolOutput)
    assert result.error["type"] == "RANGE_NOT_ALLOWED"
    assert result.error["allowedRanges"] == ["Budget!A1:B2"]


def test_configure_logging_with_files(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    config = server.ServerConfig(
        log_file=tmp_path / "server.log", audit_log=tmp_path / "audit.log"
    )
    captured: dict[str, object] = {}

    def _basic_config(**kwargs: object) -> None:
        captured.update(kwargs)

    monkeypatch.setattr(logging, "basicConfig", _basic_config)
    monkeypatch.setattr(audit_logger, "handlers", [])
    server._configure_logging(config)
    handlers = cast(list[logging.Handler], captured["handlers"])
    assert any(isinstance(handler, logging.FileHandler) for handler in handlers)
    assert len(audit_logger.handlers) == 1
    audit_logger.handlers[0].close()


def test_build_service_wires_config(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    ranges = tmp_path / "ranges.json"
    ranges.write_text(
        json.dumps({"allowedRanges": ["Sheet1!A1:B2"], "lockedRanges": []}),
        encoding="utf-8",
    )
    monkeypatch.setattr(server, "build_msal_app", lambda settings: object())
    config = server.ServerConfig(range_permissions=ranges, user="bob", cache_ttl=5)
    service = server._build_service(config, _settings())
    assert service.user == "bob"
    assert service.client == "mcp"
    assert service.resolver.ttl_seconds == 5
    assert service.range_policy.entry_counts() == {"allowed": 1, "locked": 0}
    assert service.write_limiter is not None
    assert service.write_limiter.limit.max_requests == 20


def test_run_server_runs_app(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    created: dict[str, object] = {}

    class _App:
        def run(self, *, transport: str) -> None:
            created["transport"] = transport

    def fake_create_app(service: Any, config: server.ServerConfig) -> _App:
        created["service"] = service
        return _App()

    monkeypatch.setattr(server, "_import_mcp", lambda: None)
    monkeypatch.setattr(server, "get_settings", _settings)
    monkeypatch.setattr(server, "build_msal_app", lambda settings: object())
    monkeypatch.setattr(server, "_create_app", fake_create_app)
    server.run_server(server.ServerConfig(range_permissions=tmp_path / "missing.json"))
    assert created["transport"] == "stdio"
    assert created["service"] is not None


def test_lifespan_closes_graph_after_last_session(
    service_factory: Any, fake_graph: Any
) -> None:
    lifespan = server._service_lifespan(service_factory())
    states: list[bool] = []

    async def _sessions() -> None:
        async with lifespan(None):
            async with lifespan(None):
                pass
            states.append(fake_graph.closed)
        states.append(fake_graph.closed)

    anyio.run(_sessions)
    assert states == [False, True]


def test_create_app_passes_lifespan(
    monkeypatch: pytest.MonkeyPatch, service_factory: Any
) -> None:
    captured: dict[str, Any] = {}

    class _FastMCP(DummyApp):
        def __init__(self, name: str, **kwargs: Any) -> None:
            super().__init__()
            captured["name"] = name
            captured.update(kwargs)

    fastmcp = pytest.importorskip("mcp.server.fastmcp")
    monkeypatch.setattr(fastmcp, "FastMCP", _FastMCP)
    app = server._create_app(service_factory(), server.ServerConfig(port=9100))
    assert captured["json_response"] is True
    assert captured["port"] == 9100
    assert callable(captured["lifespan"])
    assert "excel_health" in cast(DummyApp, app).tools
