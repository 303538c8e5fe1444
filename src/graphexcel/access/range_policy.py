from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..shared.a1 import ParsedRange, parse_range
from ..shared.geometry import contains, overlaps
from .types import RangeDecisionCode

logger = logging.getLogger(__name__)


class RangePermissions(BaseModel):
    """Allowed/locked range lists as stored in the policy document."""

    model_config = ConfigDict(populate_by_name=True)

    allowed_ranges: list[str] = Field(default_factory=list, alias="allowedRanges")
    locked_ranges: list[str] = Field(default_factory=list, alias="lockedRanges")


class RangeDecision(BaseModel):
    """Outcome of a write validation."""

    allowed: bool
    reason: str
    code: RangeDecisionCode
    allowed_ranges: list[str] = Field(default_factory=list)


@runtime_checkable
class PolicySource(Protocol):
    """Supplies the current range permissions."""

    def current_policy(self) -> RangePermissions: ...


class StaticPolicySource:
    """In-memory policy source."""

    def __init__(
        self,
        allowed_ranges: list[str] | None = None,
        locked_ranges: list[str] | None = None,
    ) -> None:
        self.permissions = RangePermissions(
            allowed_ranges=list(allowed_ranges or []),
            locked_ranges=list(locked_ranges or []),
        )

    def current_policy(self) -> RangePermissions:
        return self.permissions


class JsonFilePolicySource:
    """Policy source that re-reads a JSON document on every call.

    The document looks like ``{"allowedRanges": [...], "lockedRanges": [...]}``.
    An unreadable or invalid document yields empty lists, which denies every
    write until the file is fixed.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def current_policy(self) -> RangePermissions:
        try:
            text = self.path.read_text(encoding="utf-8")
            permissions = RangePermissions.model_validate_json(text)
        except (OSError, ValidationError) as exc:
            logger.error("Failed to load range permissions from %s: %s", self.path, exc)
            return RangePermissions()
        logger.debug(
            "Range permissions loaded: allowed=%s locked=%s",
            len(permissions.allowed_ranges),
            len(permissions.locked_ranges),
        )
        return permissions


class RangePolicy:
    """Locked/allowed range policy applied before writes."""

    def __init__(self, source: PolicySource) -> None:
        self.source = source

    def validate_write(
        self, requested_range: str, worksheet_context: str | None = None
    ) -> RangeDecision:
        """Decide whether a range may be written.

        Locked ranges are checked first and win over allowed ranges. A request
        is allowed only when an allowed range fully contains it.

        Args:
            requested_range: Range from the request, optionally sheet-qualified.
            worksheet_context: Sheet name applied when the range has no ``!``.

        Returns:
            Decision with allowed flag, reason and code.
        """
        permissions = self.source.current_policy()
        allowed_ranges = list(permissions.allowed_ranges)
        full_range = qualify_range(requested_range, worksheet_context)
        try:
            requested = parse_range(full_range)
            for locked in permissions.locked_ranges:
                if overlaps(requested, parse_range(locked)):
                    return RangeDecision(
                        allowed=False,
                        reason=f"Range overlaps with locked range: {locked}",
                        code="RANGE_LOCKED",
                        allowed_ranges=allowed_ranges,
                    )
            for candidate in allowed_ranges:
                parsed = parse_range(candidate)
                if _admits(requested, parsed):
                    return RangeDecision(
                        allowed=True,
                        reason=f"Range is within allowed range: {candidate}",
                        code="RANGE_ALLOWED",
                        allowed_ranges=allowed_ranges,
                    )
        except ValueError as exc:
            logger.error(
                "Range validation error: range=%s worksheet=%s error=%s",
                requested_range,
                worksheet_context,
                exc,
            )
            return RangeDecision(
                allowed=False,
                reason=f"Validation error: {exc}",
                code="VALIDATION_ERROR",
                allowed_ranges=allowed_ranges,
            )
        return RangeDecision(
            allowed=False,
            reason="Range is not within any allowed ranges",
            code="RANGE_NOT_ALLOWED",
            allowed_ranges=allowed_ranges,
        )

    def entry_counts(self) -> dict[str, int]:
        permissions = self.source.current_policy()
        return {
            "allowed": len(permissions.allowed_ranges),
            "locked": len(permissions.locked_ranges),
        }


def qualify_range(requested_range: str, worksheet_context: str | None) -> str:
    """Prefix a bare range with the worksheet name from the request context."""
    if "!" in requested_range or not worksheet_context:
        return requested_range
    return f"{worksheet_context}!{requested_range}"


def _admits(requested: ParsedRange, allowed: ParsedRange) -> bool:
    return overlaps(requested, allowed) and contains(requested, allowed)
