"""Async Microsoft Graph client for workbook endpoints."""

from __future__ import annotations

import logging
from typing import Any, Protocol
from urllib.parse import quote

import httpx

from ..errors import GraphApiError, ServiceUnavailableError

logger = logging.getLogger(__name__)

EXCEL_EXTENSIONS = (".xlsx", ".xlsm", ".xltx", ".xltm")


class BearerTokenSource(Protocol):
    async def get_token(self) -> str: ...

    def invalidate(self) -> None: ...


class GraphClient:
    """Thin wrapper over the Graph drive and workbook endpoints.

    Every request carries a bearer token from ``tokens``. A 401 response
    invalidates the cached token and the request is retried once.
    """

    def __init__(
        self,
        tokens: BearerTokenSource,
        *,
        base_url: str = "https://graph.microsoft.com/v1.0",
        timeout: float = 15.0,
        site_id: str | None = None,
        site_hostname: str | None = None,
        site_path: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.tokens = tokens
        self.base_url = base_url.rstrip("/")
        self.site_hostname = site_hostname
        self.site_path = site_path
        self.timeout = timeout
        self._site_id = site_id
        self._http = http_client
        self._owns_http = http_client is None

    async def aclose(self) -> None:
        """Close the HTTP client.

        A client created here is opened again on the next request; an injected
        client stays closed.
        """
        if self._http is None:
            return
        await self._http.aclose()
        if self._owns_http:
            self._http = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    async def get_site_id(self) -> str:
        """Return the configured SharePoint site id, looking it up once if needed."""
        if self._site_id:
            return self._site_id
        if self.site_hostname and self.site_path:
            path = f"/sites/{self.site_hostname}:{self.site_path}"
        elif self.site_hostname:
            path = f"/sites/{self.site_hostname}"
        else:
            path = "/sites/root"
        data = await self._request("GET", path, params={"$select": "id"})
        self._site_id = str(data["id"])
        logger.info("Resolved SharePoint site id %s", self._site_id)
        return self._site_id

    async def list_drives(self) -> list[dict[str, Any]]:
        site_id = await self.get_site_id()
        data = await self._request(
            "GET", f"/sites/{_seg(site_id)}/drives", params={"$select": "id,name"}
        )
        return list(data.get("value", []))

    async def list_items(self, drive_id: str) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            f"/drives/{_seg(drive_id)}/root/children",
            params={"$select": "id,name", "$top": "999"},
        )
        return list(data.get("value", []))

    async def search_workbooks(self, drive_id: str) -> list[dict[str, Any]]:
        """Return root-level items of a drive whose names look like workbooks."""
        items = await self.list_items(drive_id)
        return [
            item
            for item in items
            if str(item.get("name", "")).lower().endswith(EXCEL_EXTENSIONS)
        ]

    async def list_worksheets(
        self, drive_id: str, item_id: str
    ) -> list[dict[str, Any]]:
        data = await self._request(
            "GET", f"{_workbook(drive_id, item_id)}/worksheets"
        )
        return list(data.get("value", []))

    async def get_range(
        self, drive_id: str, item_id: str, worksheet_id: str, address: str
    ) -> dict[str, Any]:
        return await self._request(
            "GET", _range_path(drive_id, item_id, worksheet_id, address)
        )

    async def patch_range(
        self,
        drive_id: str,
        item_id: str,
        worksheet_id: str,
        address: str,
        values: list[list[Any]],
    ) -> dict[str, Any]:
        return await self._request(
            "PATCH",
            _range_path(drive_id, item_id, worksheet_id, address),
            json={"values": values},
        )

    async def get_table(
        self, drive_id: str, item_id: str, worksheet_id: str, table_name: str
    ) -> dict[str, Any]:
        return await self._request(
            "GET", _table_path(drive_id, item_id, worksheet_id, table_name)
        )

    async def get_table_range(
        self, drive_id: str, item_id: str, worksheet_id: str, table_name: str
    ) -> dict[str, Any]:
        return await self._request(
            "GET", f"{_table_path(drive_id, item_id, worksheet_id, table_name)}/range"
        )

    async def add_table_rows(
        self,
        drive_id: str,
        item_id: str,
        worksheet_id: str,
        table_name: str,
        rows: list[list[Any]],
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{_table_path(drive_id, item_id, worksheet_id, table_name)}/rows",
            json={"values": rows},
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._send(method, path, params=params, json=json)
        if response.status_code == 401:
            logger.info("Graph returned 401 for %s %s; refreshing token", method, path)
            self.tokens.invalidate()
            response = await self._send(method, path, params=params, json=json)
        if response.is_error:
            raise _graph_error(response)
        if not response.content:
            return {}
        return dict(response.json())

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None,
        json: dict[str, Any] | None,
    ) -> httpx.Response:
        token = await self.tokens.get_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        try:
            return await self._client().request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.TransportError as exc:
            logger.error("Graph request failed: %s %s: %s", method, path, exc)
            raise ServiceUnavailableError(
                f"Microsoft Graph is unavailable: {exc}"
            ) from exc


def _graph_error(response: httpx.Response) -> GraphApiError:
    graph_code: str | None = None
    message = response.reason_phrase or "Graph request failed"
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        graph_code = payload["error"].get("code")
        message = payload["error"].get("message") or message
    logger.warning(
        "Graph error %s (%s): %s", response.status_code, graph_code, message
    )
    return GraphApiError(
        f"Graph API error: {message}",
        upstream_status=response.status_code,
        graph_code=graph_code,
    )


def _seg(value: str) -> str:
    return quote(value, safe="")


def _workbook(drive_id: str, item_id: str) -> str:
    return f"/drives/{_seg(drive_id)}/items/{_seg(item_id)}/workbook"


def _range_path(drive_id: str, item_id: str, worksheet_id: str, address: str) -> str:
    return (
        f"{_workbook(drive_id, item_id)}/worksheets/{_seg(worksheet_id)}"
        f"/range(address='{address}')"
    )


def _table_path(
    drive_id: str, item_id: str, worksheet_id: str, table_name: str
) -> str:
    return (
        f"{_workbook(drive_id, item_id)}/worksheets/{_seg(worksheet_id)}"
        f"/tables/{_seg(table_name)}"
    )
