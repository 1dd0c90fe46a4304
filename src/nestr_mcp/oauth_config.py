"""OAuth configuration resolved from the environment.

The upstream provider exposes its OAuth endpoints next to the REST API, so every
endpoint is derived from ``NESTR_API_BASE``. This server also publishes the
protected-resource (RFC 9728) and authorization-server (RFC 8414) metadata
documents that MCP clients use for discovery.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import AuthorizationServerMetadata, ResourceMetadata

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://app.nestr.io/api"
DEFAULT_RESOURCE_URL = "https://mcp.nestr.io/mcp"
DEFAULT_SCOPES = ["user", "nest"]
RESOURCE_DOCUMENTATION = "https://mcp.nestr.io"

PRODUCTION_STORAGE_DIR = "/data"
LOCAL_STORAGE_DIR = ".data"

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"


class NestrAppConfig(BaseSettings):
    """Process configuration from environment variables and ``.env``."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    nestr_api_base: str = DEFAULT_API_BASE
    mcp_resource_url: str = DEFAULT_RESOURCE_URL
    nestr_oauth_client_id: str | None = None
    nestr_oauth_client_secret: str | None = None
    nestr_oauth_timeout_seconds: float = 30.0
    oauth_storage_dir: str | None = None
    oauth_encryption_key: str | None = None
    nestr_mcp_env: str = "development"
    nestr_mcp_base_url: str | None = None
    nestr_mcp_host: str = "127.0.0.1"
    nestr_mcp_port: int = 8000
    nestr_mcp_path: str = "/mcp"
    nestr_mcp_log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.nestr_mcp_env.strip().lower() == "production"


def load_config() -> NestrAppConfig:
    """Load configuration from the environment and the .env file."""
    load_dotenv()
    return NestrAppConfig()


@dataclass(frozen=True)
class OAuthConfig:
    """Upstream endpoints and this server's identity toward the provider."""

    authorization_endpoint: str
    token_endpoint: str
    device_authorization_endpoint: str
    resource_identifier: str
    client_id: str | None = None
    client_secret: str | None = None
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    timeout: float = 30.0

    @property
    def scope_string(self) -> str:
        return " ".join(self.scopes)


def _provider_base(api_base: str) -> str:
    """Strip the ``/api`` suffix, falling back to the default on malformed input."""
    candidate = (api_base or "").strip().rstrip("/")
    parts = urlsplit(candidate)
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        logger.warning("Ignoring malformed NESTR_API_BASE %r, using %s", api_base, DEFAULT_API_BASE)
        candidate = DEFAULT_API_BASE
    return re.sub(r"/api$", "", candidate)


def get_oauth_config(app_config: NestrAppConfig) -> OAuthConfig:
    """Derive the OAuth configuration. Pure apart from reading ``app_config``."""
    provider_base = _provider_base(app_config.nestr_api_base)
    return OAuthConfig(
        # /dialog/oauth is the consent UI; the provider's backend endpoint is not public.
        authorization_endpoint=f"{provider_base}/dialog/oauth",
        token_endpoint=f"{provider_base}/oauth/token",
        device_authorization_endpoint=f"{provider_base}/oauth/device",
        resource_identifier=app_config.mcp_resource_url or DEFAULT_RESOURCE_URL,
        client_id=app_config.nestr_oauth_client_id or None,
        client_secret=app_config.nestr_oauth_client_secret or None,
        scopes=list(DEFAULT_SCOPES),
        timeout=app_config.nestr_oauth_timeout_seconds,
    )


def resolve_storage_dir(app_config: NestrAppConfig) -> Path:
    """Directory holding the OAuth JSON files."""
    if app_config.oauth_storage_dir:
        return Path(app_config.oauth_storage_dir)
    if app_config.is_production:
        return Path(PRODUCTION_STORAGE_DIR)
    return Path(LOCAL_STORAGE_DIR)


def resolve_base_url(app_config: NestrAppConfig) -> str:
    """Public base URL of this server, used as issuer and for the callback URL."""
    if app_config.nestr_mcp_base_url:
        return app_config.nestr_mcp_base_url.rstrip("/")
    host = app_config.nestr_mcp_host
    host_for_url = "localhost" if host in {"0.0.0.0", "127.0.0.1"} else host
    return f"http://{host_for_url}:{app_config.nestr_mcp_port}"


def protected_resource_metadata(config: OAuthConfig, base_url: str) -> dict[str, Any]:
    """RFC 9728 metadata. This server is its own authorization server."""
    document = ResourceMetadata(
        resource=config.resource_identifier,
        authorization_servers=[base_url],
        bearer_methods_supported=["header"],
        scopes_supported=list(config.scopes),
        resource_documentation=RESOURCE_DOCUMENTATION,
    )
    return document.model_dump(mode="json", exclude_none=True)


def authorization_server_metadata(config: OAuthConfig, base_url: str) -> dict[str, Any]:
    """RFC 8414 metadata for this server acting as a PKCE-capable proxy."""
    document = AuthorizationServerMetadata(
        issuer=base_url,
        authorization_endpoint=f"{base_url}/oauth/authorize",
        token_endpoint=f"{base_url}/oauth/token",
        registration_endpoint=f"{base_url}/oauth/register",
        device_authorization_endpoint=f"{base_url}/oauth/device",
        response_types_supported=["code"],
        grant_types_supported=["authorization_code", "refresh_token", DEVICE_CODE_GRANT_TYPE],
        # The provider has no PKCE support; verification happens in this proxy.
        code_challenge_methods_supported=["S256"],
        token_endpoint_auth_methods_supported=["client_secret_post", "client_secret_basic", "none"],
        scopes_supported=list(config.scopes),
    )
    return document.model_dump(mode="json", exclude_none=True)
