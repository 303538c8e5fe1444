"""Environment-driven settings for Microsoft Graph access."""

from __future__ import annotations

from functools import lru_cache
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GraphSettings(BaseSettings):
    """Azure AD credentials and SharePoint site location."""

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", populate_by_name=True
    )

    tenant_id: str = Field(
        ..., alias="AZURE_TENANT_ID", description="Azure AD tenant ID."
    )
    client_id: str = Field(
        ..., alias="AZURE_CLIENT_ID", description="App registration client ID."
    )
    client_secret: str = Field(
        ..., alias="AZURE_CLIENT_SECRET", description="App registration secret."
    )
    graph_base_url: str = Field(
        "https://graph.microsoft.com/v1.0",
        alias="GRAPH_API_BASE_URL",
        description="Microsoft Graph base URL including the API version.",
    )
    login_endpoint: str = Field(
        "login.microsoftonline.com",
        alias="LOGIN_ENDPOINT",
        description="Azure AD authority host.",
    )
    site_id: str | None = Field(
        None,
        alias="SHAREPOINT_SITE_ID",
        description="SharePoint site id; takes precedence over hostname/path.",
    )
    site_hostname: str | None = Field(
        None,
        alias="SHAREPOINT_HOSTNAME",
        description="SharePoint hostname, e.g. contoso.sharepoint.com.",
    )
    site_path: str | None = Field(
        None,
        alias="SHAREPOINT_SITE_PATH",
        description="Server-relative site path, e.g. /sites/Finance.",
    )
    timeout_seconds: float = Field(
        15.0, alias="GRAPH_TIMEOUT_SECONDS", description="Graph request timeout."
    )

    @field_validator("graph_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("site_path")
    @classmethod
    def _normalize_site_path(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return "/" + value.strip().strip("/")

    @property
    def authority(self) -> str:
        return f"https://{self.login_endpoint}/{self.tenant_id}"

    @property
    def graph_scope(self) -> str:
        host = urlparse(self.graph_base_url).netloc or "graph.microsoft.com"
        return f"https://{host}/.default"


@lru_cache
def get_settings() -> GraphSettings:
    """Return cached settings instance."""

    return GraphSettings()  # type: ignore[call-arg]
