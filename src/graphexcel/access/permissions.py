from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, Field

from .types import PermissionKind, ResourceType

logger = logging.getLogger(__name__)


class ResourceGrant(BaseModel):
    """Users granted access to one resource."""

    readers: list[str] = Field(default_factory=list)
    writers: list[str] = Field(default_factory=list)
    admins: list[str] = Field(default_factory=list)
    locked: bool = False


class PermissionDefaults(BaseModel):
    """Fallback behaviour when no explicit grant exists."""

    allow_read_all: bool = True
    allow_write_all: bool = False
    inherit_from_parent: bool = True


class PermissionDocument(BaseModel):
    """Capability grants keyed by resource.

    Worksheet keys are ``"<workbook>:<worksheet>"``; range and table keys add a
    third segment (``"<workbook>:<worksheet>:A1:C10"``).
    """

    admins: list[str] = Field(default_factory=list)
    workbooks: dict[str, ResourceGrant] = Field(default_factory=dict)
    worksheets: dict[str, ResourceGrant] = Field(default_factory=dict)
    ranges: dict[str, ResourceGrant] = Field(default_factory=dict)
    tables: dict[str, ResourceGrant] = Field(default_factory=dict)
    defaults: PermissionDefaults = Field(default_factory=PermissionDefaults)


class PermissionResult(BaseModel):
    """Capability decision."""

    allowed: bool
    reason: str


def load_permissions(path: Path | None) -> PermissionDocument:
    """Load a permission document from JSON, or return the defaults.

    Args:
        path: Optional JSON file path.

    Returns:
        Parsed permission document.
    """
    if path is None:
        return PermissionDocument()
    return PermissionDocument.model_validate_json(path.read_text(encoding="utf-8"))


class CapabilityPolicy:
    """Read/write capability checks across workbook, worksheet, range and table scopes."""

    def __init__(self, document: PermissionDocument | None = None) -> None:
        self.document = document or PermissionDocument()

    def is_admin(self, user: str) -> bool:
        return user in self.document.admins

    def can_access_workbook(self, user: str, workbook_id: str) -> bool:
        if self.is_admin(user):
            return True
        grant = self.document.workbooks.get(workbook_id)
        if grant is not None:
            return user in grant.readers or user in grant.writers or user in grant.admins
        return self.document.defaults.allow_read_all

    def can_access_worksheet(
        self, user: str, workbook_id: str, worksheet_id: str
    ) -> bool:
        if self.is_admin(user):
            return True
        grant = self.document.worksheets.get(_key(workbook_id, worksheet_id))
        if grant is not None:
            return user in grant.readers or user in grant.writers
        if self.document.defaults.inherit_from_parent:
            return self.can_access_workbook(user, workbook_id)
        return self.document.defaults.allow_read_all

    def can_read_range(
        self, user: str, workbook_id: str, worksheet_id: str, range_ref: str
    ) -> PermissionResult:
        if self.is_admin(user):
            return PermissionResult(allowed=True, reason="Admin access")
        grant = self.document.ranges.get(_key(workbook_id, worksheet_id, range_ref))
        if grant is not None:
            if user in grant.readers or user in grant.writers:
                return PermissionResult(allowed=True, reason="Explicit range permission")
            return PermissionResult(allowed=False, reason="No permission for this range")
        if self.document.defaults.inherit_from_parent and self.can_access_worksheet(
            user, workbook_id, worksheet_id
        ):
            return PermissionResult(allowed=True, reason="Inherited from worksheet")
        if self.document.defaults.allow_read_all:
            return PermissionResult(allowed=True, reason="Default read access")
        return PermissionResult(allowed=False, reason="No read permission")

    def can_write_range(
        self, user: str, workbook_id: str, worksheet_id: str, range_ref: str
    ) -> PermissionResult:
        if self.is_admin(user):
            return PermissionResult(allowed=True, reason="Admin access")
        grant = self.document.ranges.get(_key(workbook_id, worksheet_id, range_ref))
        if grant is not None:
            if grant.locked:
                return PermissionResult(allowed=False, reason="Range is locked")
            if user in grant.writers:
                return PermissionResult(
                    allowed=True, reason="Explicit range write permission"
                )
            return PermissionResult(
                allowed=False, reason="No write permission for this range"
            )
        return self._inherited_write(user, workbook_id, worksheet_id)

    def can_read_table(
        self, user: str, workbook_id: str, worksheet_id: str, table_name: str
    ) -> PermissionResult:
        if self.is_admin(user):
            return PermissionResult(allowed=True, reason="Admin access")
        grant = self.document.tables.get(_key(workbook_id, worksheet_id, table_name))
        if grant is not None:
            if user in grant.readers or user in grant.writers:
                return PermissionResult(allowed=True, reason="Explicit table permission")
            return PermissionResult(allowed=False, reason="No permission for this table")
        if self.document.defaults.inherit_from_parent and self.can_access_worksheet(
            user, workbook_id, worksheet_id
        ):
            return PermissionResult(allowed=True, reason="Inherited from worksheet")
        return PermissionResult(
            allowed=self.document.defaults.allow_read_all, reason="Default access"
        )

    def can_write_table(
        self, user: str, workbook_id: str, worksheet_id: str, table_name: str
    ) -> PermissionResult:
        if self.is_admin(user):
            return PermissionResult(allowed=True, reason="Admin access")
        grant = self.document.tables.get(_key(workbook_id, worksheet_id, table_name))
        if grant is not None:
            if grant.locked:
                return PermissionResult(allowed=False, reason="Table is locked")
            if user in grant.writers:
                return PermissionResult(
                    allowed=True, reason="Explicit table write permission"
                )
            return PermissionResult(
                allowed=False, reason="No write permission for this table"
            )
        return self._inherited_write(user, workbook_id, worksheet_id)

    def add_permission(
        self,
        resource_type: ResourceType,
        resource_id: str,
        user: str,
        permission: PermissionKind,
    ) -> None:
        """Grant ``permission`` on a resource to ``user``.

        Library API for programs that edit a policy in memory; the MCP tools
        only read grants. Changes are not written back to the JSON file.
        """
        grants = self._grants_for(resource_type)
        grant = grants.setdefault(resource_id, ResourceGrant())
        members = _members(grant, permission)
        if user not in members:
            members.append(user)
            logger.info(
                "Added %s permission for %s to %s %s",
                permission,
                user,
                resource_type,
                resource_id,
            )

    def remove_permission(
        self,
        resource_type: ResourceType,
        resource_id: str,
        user: str,
        permission: PermissionKind,
    ) -> None:
        """Revoke ``permission`` on a resource from ``user`` if present.

        Library API, like ``add_permission``.
        """
        grant = self._grants_for(resource_type).get(resource_id)
        if grant is None:
            return
        members = _members(grant, permission)
        if user in members:
            members.remove(user)
            logger.info(
                "Removed %s permission for %s from %s %s",
                permission,
                user,
                resource_type,
                resource_id,
            )

    def user_permissions(self, user: str) -> dict[str, object]:
        """Summarize every explicit grant held by ``user``.

        Library API for admin scripts; no MCP tool exposes it.
        """
        summary: dict[str, object] = {"is_admin": self.is_admin(user)}
        for resource_type in ("workbook", "worksheet", "range", "table"):
            grants = self._grants_for(resource_type)
            entry: dict[str, list[str]] = {"read": [], "write": []}
            if resource_type == "workbook":
                entry["admin"] = []
            for resource_id, grant in grants.items():
                if user in grant.readers:
                    entry["read"].append(resource_id)
                if user in grant.writers:
                    entry["write"].append(resource_id)
                if "admin" in entry and user in grant.admins:
                    entry["admin"].append(resource_id)
            summary[f"{resource_type}s"] = entry
        return summary

    def _inherited_write(
        self, user: str, workbook_id: str, worksheet_id: str
    ) -> PermissionResult:
        worksheet = self.document.worksheets.get(_key(workbook_id, worksheet_id))
        if worksheet is not None:
            if worksheet.locked:
                return PermissionResult(allowed=False, reason="Worksheet is locked")
            if user in worksheet.writers:
                return PermissionResult(
                    allowed=True, reason="Worksheet write permission"
                )
        workbook = self.document.workbooks.get(workbook_id)
        if workbook is not None and user in workbook.writers:
            return PermissionResult(allowed=True, reason="Workbook write permission")
        if self.document.defaults.allow_write_all:
            return PermissionResult(allowed=True, reason="Default write access")
        return PermissionResult(allowed=False, reason="No write permission")

    def _grants_for(self, resource_type: str) -> dict[str, ResourceGrant]:
        grants: dict[str, dict[str, ResourceGrant]] = {
            "workbook": self.document.workbooks,
            "worksheet": self.document.worksheets,
            "range": self.document.ranges,
            "table": self.document.tables,
        }
        if resource_type not in grants:
            raise ValueError(f"Invalid resource type: {resource_type}")
        return grants[resource_type]


def _members(grant: ResourceGrant, permission: str) -> list[str]:
    if permission == "read":
        return grant.readers
    if permission == "write":
        return grant.writers
    if permission == "admin":
        return grant.admins
    raise ValueError(f"Invalid permission: {permission}")


def _key(*parts: str) -> str:
    return ":".join(parts)
