from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from graphexcel.access.permissions import (
    CapabilityPolicy,
    PermissionDefaults,
    PermissionDocument,
)
from graphexcel.access.range_policy import RangePolicy, StaticPolicySource
from graphexcel.audit import AuditEntry, AuditLogger
from graphexcel.errors import GatewayError
from graphexcel.rate_limit import InMemoryRateLimiter
from graphexcel.resolver import NameResolver
from graphexcel.service import ExcelService


class FakeGraph:
    """In-memory stand-in for GraphClient with one drive and one workbook."""

    def __init__(self) -> None:
        self.drives = [{"id": "d1", "name": "Documents"}]
        self.items = {
            "d1": [
                {"id": "i1", "name": "Budget.xlsx"},
                {"id": "i2", "name": "readme.txt"},
            ]
        }
        self.worksheets = {
            "i1": [
                {"id": "w1", "name": "Sheet1", "position": 0, "visibility": "Visible"},
                {"id": "w2", "name": "Budget", "position": 1, "visibility": "Visible"},
            ]
        }
        self.tables = {"Sales": {"id": "t1", "name": "Sales", "address": "Budget!A1:C3"}}
        self.table_values = [["Region", "Q1", "Q2"], ["North", 1, 2], ["South", 3, 4]]
        self.calls: list[tuple[Any, ...]] = []
        self.failures: dict[str, GatewayError] = {}
        self.closed = False

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if name in self.failures:
            raise self.failures[name]

    async def aclose(self) -> None:
        self.closed = True

    def called(self, name: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == name]

    async def list_drives(self) -> list[dict[str, Any]]:
        self._record("list_drives")
        return self.drives

    async def list_items(self, drive_id: str) -> list[dict[str, Any]]:
        self._record("list_items", drive_id)
        return self.items.get(drive_id, [])

    async def search_workbooks(self, drive_id: str) -> list[dict[str, Any]]:
        self._record("search_workbooks", drive_id)
        return [
            item for item in self.items.get(drive_id, []) if item["name"].endswith(".xlsx")
        ]

    async def list_worksheets(self, drive_id: str, item_id: str) -> list[dict[str, Any]]:
        self._record("list_worksheets", drive_id, item_id)
        return self.worksheets.get(item_id, [])

    async def get_range(
        self, drive_id: str, item_id: str, worksheet_id: str, address: str
    ) -> dict[str, Any]:
        self._record("get_range", drive_id, item_id, worksheet_id, address)
        return {
            "address": f"{worksheet_id}!{address}",
            "values": [["old"]],
            "formulas": [["old"]],
            "text": [["old"]],
            "rowCount": 1,
            "columnCount": 1,
        }

    async def patch_range(
        self,
        drive_id: str,
        item_id: str,
        worksheet_id: str,
        address: str,
        values: list[list[Any]],
    ) -> dict[str, Any]:
        self._record("patch_range", drive_id, item_id, worksheet_id, address, values)
        return {
            "address": f"{worksheet_id}!{address}",
            "values": values,
            "rowCount": len(values),
            "columnCount": len(values[0]),
        }

    async def get_table(
        self, drive_id: str, item_id: str, worksheet_id: str, table_name: str
    ) -> dict[str, Any]:
        self._record("get_table", drive_id, item_id, worksheet_id, table_name)
        table = self.tables[table_name]
        return {"id": table["id"], "name": table["name"]}

    async def get_table_range(
        self, drive_id: str, item_id: str, worksheet_id: str, table_name: str
    ) -> dict[str, Any]:
        self._record("get_table_range", drive_id, item_id, worksheet_id, table_name)
        return {
            "address": self.tables[table_name]["address"],
            "values": self.table_values,
            "rowCount": len(self.table_values),
            "columnCount": len(self.table_values[0]),
        }

    async def add_table_rows(
        self,
        drive_id: str,
        item_id: str,
        worksheet_id: str,
        table_name: str,
        rows: list[list[Any]],
    ) -> dict[str, Any]:
        self._record("add_table_rows", drive_id, item_id, worksheet_id, table_name, rows)
        return {"index": len(self.table_values) - 1, "values": rows}


ServiceFactory = Callable[..., ExcelService]


@pytest.fixture
def fake_graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture
def audit_entries() -> list[AuditEntry]:
    return []


@pytest.fixture
def service_factory(
    fake_graph: FakeGraph, audit_entries: list[AuditEntry]
) -> ServiceFactory:
    def _build(
        *,
        allowed: list[str] | None = None,
        locked: list[str] | None = None,
        document: PermissionDocument | None = None,
        general_limiter: InMemoryRateLimiter | None = None,
        write_limiter: InMemoryRateLimiter | None = None,
        user: str = "alice@example.com",
    ) -> ExcelService:
        return ExcelService(
            graph=fake_graph,  # type: ignore[arg-type]
            resolver=NameResolver(fake_graph),
            range_policy=RangePolicy(StaticPolicySource(allowed, locked)),
            capabilities=CapabilityPolicy(
                document
                or PermissionDocument(defaults=PermissionDefaults(allow_write_all=True))
            ),
            audit=AuditLogger(sink=audit_entries.append),
            general_limiter=general_limiter,
            write_limiter=write_limiter,
            user=user,
            client="test",
        )

    return _build
