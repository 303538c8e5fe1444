from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import anyio
import httpx
import pytest

from graphexcel.errors import GraphApiError, ServiceUnavailableError
from graphexcel.graph.client import GraphClient

BASE_URL = "https://graph.microsoft.com/v1.0"


class FakeTokens:
    def __init__(self) -> None:
        self.issued = 0
        self.invalidated = 0

    async def get_token(self) -> str:
        self.issued += 1
        return f"token-{self.issued}"

    def invalidate(self) -> None:
        self.invalidated += 1


def _client(
    handler: Callable[[httpx.Request], httpx.Response],
    tokens: FakeTokens | None = None,
    **kwargs: Any,
) -> GraphClient:
    return GraphClient(
        tokens or FakeTokens(),
        base_url=BASE_URL,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


def test_list_drives_uses_configured_site() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"value": [{"id": "d1", "name": "Documents"}]})

    client = _client(handler, site_id="site-1")
    drives = anyio.run(client.list_drives)
    assert drives == [{"id": "d1", "name": "Documents"}]
    assert requests[0].url.path == "/v1.0/sites/site-1/drives"
    assert requests[0].url.params["$select"] == "id,name"
    assert requests[0].headers["Authorization"] == "Bearer token-1"


def test_site_id_lookup_is_memoized() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path.endswith("/drives"):
            return httpx.Response(200, json={"value": []})
        return httpx.Response(200, json={"id": "contoso,abc,def"})

    client = _client(
        handler, site_hostname="contoso.sharepoint.com", site_path="/sites/Finance"
    )

    async def _run() -> None:
        await client.list_drives()
        await client.list_drives()

    anyio.run(_run)
    assert paths == [
        "/v1.0/sites/contoso.sharepoint.com:/sites/Finance",
        "/v1.0/sites/contoso,abc,def/drives",
        "/v1.0/sites/contoso,abc,def/drives",
    ]


def test_list_items_and_search_workbooks() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1.0/drives/d1/root/children"
        assert request.url.params["$top"] == "999"
        return httpx.Response(
            200,
            json={
                "value": [
                    {"id": "i1", "name": "Budget.xlsx"},
                    {"id": "i2", "name": "notes.docx"},
                    {"id": "i3", "name": "Macros.XLSM"},
                ]
            },
        )

    client = _client(handler)
    workbooks = anyio.run(client.search_workbooks, "d1")
    assert [item["id"] for item in workbooks] == ["i1", "i3"]


def test_patch_range_sends_values() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["path"] = request.url.path
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"address": "Sheet1!B2:C2", "values": [[1, 2]]})

    client = _client(handler)
    data = anyio.run(client.patch_range, "d1", "i1", "{W-1}", "B2:C2", [[1, 2]])
    assert data["address"] == "Sheet1!B2:C2"
    assert captured["method"] == "PATCH"
    assert captured["path"] == (
        "/v1.0/drives/d1/items/i1/workbook/worksheets/{W-1}/range(address='B2:C2')"
    )
    assert captured["body"] == {"values": [[1, 2]]}


def test_add_table_rows_posts_values() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["path"] = request.url.path
        captured["body"] = json.loads(request.content)
        return httpx.Response(201, json={"index": 4, "values": [["a", 1]]})

    client = _client(handler)
    data = anyio.run(client.add_table_rows, "d1", "i1", "w1", "Sales", [["a", 1]])
    assert data["index"] == 4
    assert captured["method"] == "POST"
    assert captured["path"].endswith("/worksheets/w1/tables/Sales/rows")
    assert captured["body"] == {"values": [["a", 1]]}


def test_unauthorized_response_is_retried_once_with_new_token() -> None:
    tokens = FakeTokens()
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["Authorization"])
        if len(seen) == 1:
            return httpx.Response(401, json={"error": {"code": "InvalidAuthenticationToken"}})
        return httpx.Response(200, json={"value": []})

    client = _client(handler, tokens)
    assert anyio.run(client.list_worksheets, "d1", "i1") == []
    assert seen == ["Bearer token-1", "Bearer token-2"]
    assert tokens.invalidated == 1


def test_repeated_unauthorized_is_raised() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"code": "InvalidAuthenticationToken"}})

    client = _client(handler)
    with pytest.raises(GraphApiError) as excinfo:
        anyio.run(client.list_worksheets, "d1", "i1")
    assert excinfo.value.status_code == 401


@pytest.mark.parametrize(
    ("upstream", "code", "expected"),
    [
        (404, "itemNotFound", 404),
        (403, "accessDenied", 403),
        (400, "InvalidArgument", 400),
        (429, "TooManyRequests", 429),
        (503, "serviceNotAvailable", 502),
        (500, None, 502),
        (409, "nameAlreadyExists", 500),
    ],
)
def test_graph_errors_are_mapped(upstream: int, code: str | None, expected: int) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body: dict[str, Any] = {"error": {"message": "upstream says no"}}
        if code is not None:
            body["error"]["code"] = code
        return httpx.Response(upstream, json=body)

    client = _client(handler)
    with pytest.raises(GraphApiError) as excinfo:
        anyio.run(client.get_range, "d1", "i1", "w1", "A1")
    assert excinfo.value.status_code == expected
    assert excinfo.value.upstream_status == upstream
    assert excinfo.value.graph_code == code
    assert "upstream says no" in excinfo.value.message


def test_non_json_error_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="Bad Gateway")

    client = _client(handler)
    with pytest.raises(GraphApiError) as excinfo:
        anyio.run(client.get_table, "d1", "i1", "w1", "Sales")
    assert excinfo.value.graph_code is None
    assert excinfo.value.status_code == 502


def test_transport_failure_is_service_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(ServiceUnavailableError) as excinfo:
        anyio.run(client.list_items, "d1")
    assert excinfo.value.status_code == 503


def test_owned_http_client_is_reopened_after_close() -> None:
    client = GraphClient(FakeTokens(), base_url=BASE_URL, timeout=3.0)
    first = client._client()
    assert first.timeout.connect == 3.0
    anyio.run(client.aclose)
    assert first.is_closed
    second = client._client()
    assert second is not first
    anyio.run(client.aclose)
    assert second.is_closed


def test_injected_http_client_is_closed_not_replaced() -> None:
    injected = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))
    )
    client = GraphClient(FakeTokens(), base_url=BASE_URL, http_client=injected)
    anyio.run(client.aclose)
    assert injected.is_closed
    assert client._client() is injected
