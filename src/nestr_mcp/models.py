"""Pydantic models for OAuth records and upstream token responses."""

from __future__ import annotations

import time
from typing import Any

from mcp.shared.auth import (
    OAuthClientInformationFull,
    OAuthClientMetadata,
    OAuthMetadata,
    ProtectedResourceMetadata,
)
from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field

DEFAULT_GRANT_TYPES = ["authorization_code", "refresh_token"]
DEFAULT_RESPONSE_TYPES = ["code"]


class ClientRegistrationRequest(OAuthClientMetadata):
    """Client metadata submitted to the dynamic registration endpoint (RFC 7591)."""


class RegisteredClient(OAuthClientInformationFull):
    """A dynamically registered OAuth client. Never modified after registration."""

    model_config = ConfigDict(frozen=True)

    client_id: str

    @property
    def is_public(self) -> bool:
        return not self.client_secret

    @property
    def redirect_uri_strings(self) -> list[str]:
        return [str(uri) for uri in self.redirect_uris or []]

    def registration_response(self) -> dict[str, Any]:
        """Return the RFC 7591 client information response."""
        return self.model_dump(mode="json", exclude_none=True)


class AuthorizationServerMetadata(OAuthMetadata):
    """RFC 8414 document for this proxy, including the RFC 8628 device endpoint."""

    # Compared byte for byte with the ``iss`` callback parameter (RFC 9207).
    issuer: str  # type: ignore[assignment]
    device_authorization_endpoint: AnyHttpUrl | None = None


class ResourceMetadata(ProtectedResourceMetadata):
    """RFC 9728 document naming this server as its own authorization server."""

    authorization_servers: list[str] = Field(..., min_length=1)  # type: ignore[assignment]


class PendingAuthorization(BaseModel):
    """In-flight authorization request, keyed by the upstream ``state``."""

    state: str
    redirect_uri: str
    client_id: str
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    scope: str | None = None
    client_consumer: str | None = None
    final_redirect: str | None = None
    created_at: float = Field(default_factory=time.time)

    @property
    def is_delegated(self) -> bool:
        """True when the code belongs to a registered PKCE client, not this server."""
        return self.code_challenge is not None


class AuthorizationCodeBinding(BaseModel):
    """PKCE challenge retained per authorization code across the callback redirect."""

    code: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str = "S256"
    created_at: float = Field(default_factory=time.time)


class StoredSession(BaseModel):
    """Upstream tokens held by this server on behalf of a browser user."""

    session_id: str
    access_token: str
    refresh_token: str | None = None
    expires_at: float
    scope: str | None = None
    user_id: str | None = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    def is_expired(self, now: float, buffer: float = 0.0) -> bool:
        return now >= self.expires_at - buffer

    def as_public_dict(self) -> dict[str, Any]:
        """Return a redacted view suitable for logging or diagnostics."""
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "scope": self.scope,
            "expires_at": int(self.expires_at),
            "has_refresh_token": bool(self.refresh_token),
            "created_at": int(self.created_at),
            "updated_at": int(self.updated_at),
        }


class TokenResponse(BaseModel):
    """OAuth token response from the upstream provider."""

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    access_token: str
    token_type: str = "Bearer"
    expires_in: int | None = None
    refresh_token: str | None = None
    scope: str | None = None
    user_id: str | None = None
