"""Microsoft Graph access: token acquisition and the workbook HTTP client."""

from __future__ import annotations

from .auth import TokenProvider, build_msal_app
from .client import GraphClient

__all__ = ["GraphClient", "TokenProvider", "build_msal_app"]
