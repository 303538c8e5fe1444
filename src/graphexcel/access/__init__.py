"""Access control: range policy and capability permissions."""

from __future__ import annotations

from .permissions import (
    CapabilityPolicy,
    PermissionDefaults,
    PermissionDocument,
    PermissionResult,
    ResourceGrant,
    load_permissions,
)
from .range_policy import (
    JsonFilePolicySource,
    PolicySource,
    RangeDecision,
    RangePermissions,
    RangePolicy,
    StaticPolicySource,
    qualify_range,
)
from .types import RangeDecisionCode

__all__ = [
    "CapabilityPolicy",
    "JsonFilePolicySource",
    "PermissionDefaults",
    "PermissionDocument",
    "PermissionResult",
    "PolicySource",
    "RangeDecision",
    "RangeDecisionCode",
    "RangePermissions",
    "RangePolicy",
    "ResourceGrant",
    "StaticPolicySource",
    "load_permissions",
    "qualify_range",
]
