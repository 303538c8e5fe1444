"""Client-credentials token acquisition for Microsoft Graph."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
import functools
import logging
import time
from typing import Any, Protocol

import anyio
import msal

from ..audit import AuditLogger
from ..config import GraphSettings
from ..errors import AuthenticationError

logger = logging.getLogger(__name__)

TOKEN_REFRESH_BUFFER_SECONDS = 5 * 60


class ClientCredentialApp(Protocol):
    """Subset of ``msal.ConfidentialClientApplication`` used here."""

    def acquire_token_for_client(
        self, scopes: list[str], **kwargs: Any
    ) -> dict[str, Any] | None: ...


def build_msal_app(settings: GraphSettings) -> ClientCredentialApp:
    """Create the MSAL confidential client for the configured tenant."""
    return msal.ConfidentialClientApplication(
        client_id=settings.client_id,
        client_credential=settings.client_secret,
        authority=settings.authority,
    )


class TokenProvider:
    """Caches a Graph bearer token and refreshes it before expiry.

    Concurrent callers that find the token stale wait on one lock, and only
    the first performs the refresh.
    """

    def __init__(
        self,
        app: ClientCredentialApp,
        *,
        scope: str = "https://graph.microsoft.com/.default",
        audit: AuditLogger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.app = app
        self.scope = scope
        self.audit = audit
        self.clock = clock
        self._access_token: str | None = None
        self._expires_at: float | None = None
        self._lock: anyio.Lock | None = None
        self.acquire_count = 0

    async def get_token(self) -> str:
        """Return a bearer token, acquiring a new one when needed.

        Raises:
            AuthenticationError: If Azure AD refuses the client credentials.
        """
        token = self._usable_token()
        if token is not None:
            return token
        if self._lock is None:
            self._lock = anyio.Lock()
        async with self._lock:
            token = self._usable_token()
            if token is not None:
                return token
            return await self._acquire()

    def invalidate(self) -> None:
        self._access_token = None
        self._expires_at = None
        logger.debug("Access token cache cleared")

    def is_token_valid(self) -> bool:
        return (
            self._access_token is not None
            and self._expires_at is not None
            and self.clock() < self._expires_at
        )

    def token_info(self) -> dict[str, Any]:
        """Token state without the token itself."""
        expires_at = (
            datetime.fromtimestamp(self._expires_at, tz=timezone.utc).isoformat()
            if self._expires_at is not None
            else None
        )
        return {
            "has_token": self._access_token is not None,
            "expires_at": expires_at,
            "is_valid": self.is_token_valid(),
        }

    def _usable_token(self) -> str | None:
        if self._access_token is None or self._expires_at is None:
            return None
        if self.clock() >= self._expires_at - TOKEN_REFRESH_BUFFER_SECONDS:
            return None
        return self._access_token

    async def _acquire(self) -> str:
        work = functools.partial(self.app.acquire_token_for_client, scopes=[self.scope])
        result = await anyio.to_thread.run_sync(work)
        self.acquire_count += 1
        if not result or "access_token" not in result:
            description = _describe_failure(result)
            logger.error("Failed to acquire access token: %s", description)
            if self.audit is not None:
                self.audit.log_auth_event("AUTH_FAILED", success=False, error=description)
            raise AuthenticationError(f"Authentication failed: {description}")
        self._access_token = str(result["access_token"])
        self._expires_at = self.clock() + float(result.get("expires_in", 3600))
        logger.info("Access token acquired successfully")
        if self.audit is not None:
            self.audit.log_auth_event("TOKEN_ACQUIRED", success=True)
        return self._access_token


def _describe_failure(result: dict[str, Any] | None) -> str:
    if not result:
        return "empty response from token endpoint"
    description = result.get("error_description") or result.get("error")
    return str(description or "no access_token in response")
