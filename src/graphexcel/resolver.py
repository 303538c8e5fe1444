from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
import logging
import time
from typing import Any, Protocol

from .errors import NotFoundError, RequestValidationError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 10 * 60


class GraphDirectory(Protocol):
    """Listing calls the resolver needs from Microsoft Graph."""

    async def list_drives(self) -> list[dict[str, Any]]: ...

    async def list_items(self, drive_id: str) -> list[dict[str, Any]]: ...

    async def list_worksheets(
        self, drive_id: str, item_id: str
    ) -> list[dict[str, Any]]: ...


@dataclass
class CacheEntry:
    value: str
    timestamp: float


class NameResolver:
    """Resolve drive, item and worksheet names to Graph ids.

    Each scope has its own cache. Entries are fresh for ``ttl_seconds``; a miss
    or stale entry triggers a full listing and a case-insensitive exact match.
    Stale entries are overwritten on the next lookup and never evicted
    otherwise, so the caches grow with the number of distinct names seen.
    Concurrent lookups of the same uncached key each list independently.
    Worksheet names are also cached by id so a target given by id can be
    checked against the sheet named in its range.
    """

    def __init__(
        self,
        directory: GraphDirectory,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = directory
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.drive_cache: dict[str, CacheEntry] = {}
        self.item_cache: dict[tuple[str, str], CacheEntry] = {}
        self.worksheet_cache: dict[tuple[str, str], CacheEntry] = {}
        self.worksheet_name_cache: dict[tuple[str, str], CacheEntry] = {}

    def is_fresh(self, entry: CacheEntry) -> bool:
        return (self.clock() - entry.timestamp) < self.ttl_seconds

    async def resolve_drive_id(self, drive_name: str) -> str:
        """Return the id of the site drive named ``drive_name``.

        Raises:
            RequestValidationError: If the name is empty.
            NotFoundError: If no drive matches.
        """
        if not drive_name:
            raise RequestValidationError("driveName is required")
        cached = self.drive_cache.get(drive_name)
        if cached is not None and self.is_fresh(cached):
            return cached.value
        drives = await self.directory.list_drives()
        match = _find_by_name(drives, drive_name)
        if match is None:
            raise _not_found("Drive not found", "drive", drives, context=drive_name)
        self.drive_cache[drive_name] = CacheEntry(value=match, timestamp=self.clock())
        return match

    async def resolve_item_id(self, drive_id: str, item_name: str) -> str:
        """Return the id of the root-level item ``item_name`` in a drive.

        Raises:
            RequestValidationError: If an argument is empty.
            NotFoundError: If no item matches.
        """
        if not drive_id:
            raise RequestValidationError("driveId is required")
        if not item_name:
            raise RequestValidationError("itemName is required")
        key = (drive_id, item_name)
        cached = self.item_cache.get(key)
        if cached is not None and self.is_fresh(cached):
            return cached.value
        items = await self.directory.list_items(drive_id)
        match = _find_by_name(items, item_name)
        if match is None:
            raise _not_found(
                "File not found in this drive", "item", items, context=item_name
            )
        self.item_cache[key] = CacheEntry(value=match, timestamp=self.clock())
        return match

    async def resolve_worksheet_id(
        self, drive_id: str, item_id: str, worksheet_name: str
    ) -> str:
        """Return the id of worksheet ``worksheet_name`` in a workbook.

        Raises:
            RequestValidationError: If an argument is empty.
            NotFoundError: If no worksheet matches.
        """
        if not worksheet_name:
            raise RequestValidationError(
                "worksheetName is required to resolve worksheetId"
            )
        if not drive_id or not item_id:
            raise RequestValidationError("driveId and itemId are required")
        key = (item_id, worksheet_name)
        cached = self.worksheet_cache.get(key)
        if cached is not None and self.is_fresh(cached):
            return cached.value
        worksheets = await self.directory.list_worksheets(drive_id, item_id)
        self._remember_names(item_id, worksheets)
        match = _find_by_name(worksheets, worksheet_name)
        if match is None:
            raise _not_found(
                "Worksheet not found", "worksheet", worksheets, context=worksheet_name
            )
        self.worksheet_cache[key] = CacheEntry(value=match, timestamp=self.clock())
        return match

    async def resolve_worksheet_name(
        self, drive_id: str, item_id: str, worksheet_id: str
    ) -> str:
        """Return the name Graph reports for worksheet ``worksheet_id``.

        Names are learned from every worksheet listing, so a sheet resolved by
        name a moment ago is answered from the cache.

        Raises:
            NotFoundError: If the workbook has no worksheet with that id.
        """
        key = (item_id, worksheet_id)
        cached = self.worksheet_name_cache.get(key)
        if cached is not None and self.is_fresh(cached):
            return cached.value
        worksheets = await self.directory.list_worksheets(drive_id, item_id)
        self._remember_names(item_id, worksheets)
        for sheet in worksheets:
            if str(sheet["id"]) == worksheet_id:
                return str(sheet.get("name", ""))
        raise _not_found(
            "Worksheet not found", "worksheet", worksheets, context=worksheet_id
        )

    def cache_stats(self) -> dict[str, int]:
        return {
            "drives": len(self.drive_cache),
            "items": len(self.item_cache),
            "worksheets": len(self.worksheet_cache),
        }

    def clear(self) -> None:
        self.drive_cache.clear()
        self.item_cache.clear()
        self.worksheet_cache.clear()
        self.worksheet_name_cache.clear()

    def _remember_names(
        self, item_id: str, worksheets: Sequence[dict[str, Any]]
    ) -> None:
        now = self.clock()
        for sheet in worksheets:
            key = (item_id, str(sheet["id"]))
            self.worksheet_name_cache[key] = CacheEntry(
                value=str(sheet.get("name", "")), timestamp=now
            )


def _find_by_name(entries: Sequence[dict[str, Any]], name: str) -> str | None:
    wanted = name.lower()
    for entry in entries:
        if str(entry.get("name", "")).lower() == wanted:
            return str(entry["id"])
    return None


def _not_found(
    message: str, scope: str, entries: Sequence[dict[str, Any]], *, context: str
) -> NotFoundError:
    available = [str(entry.get("name", "")) for entry in entries]
    logger.warning("%s: %s. Available: %s", message, context, available)
    return NotFoundError(
        f"{message}: {context}. Available {scope}s: {available}",
        scope=scope,
        available=available,
    )
