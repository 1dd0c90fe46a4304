"""OAuth error types shared by the stores, the orchestrator and the HTTP routes."""

from __future__ import annotations

from typing import Any


class OAuthError(Exception):
    """Protocol error reported to the caller as an RFC 6749 error body."""

    def __init__(self, error: str, description: str | None = None, status_code: int = 400):
        self.error = error
        self.description = description
        self.status_code = status_code
        super().__init__(description or error)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidClientMetadataError(OAuthError):
    """Dynamic client registration rejected (RFC 7591 section 3.2.2)."""

    def __init__(self, description: str, error: str = "invalid_client_metadata"):
        super().__init__(error, description, status_code=400)


class OAuthNotConfiguredError(OAuthError):
    """This server has no upstream client id, so it cannot talk to the provider."""

    def __init__(self) -> None:
        super().__init__(
            "server_error",
            "OAuth is not configured. Set the NESTR_OAUTH_CLIENT_ID environment variable.",
            status_code=500,
        )


class UpstreamAuthorizationError(OAuthError):
    """The upstream provider redirected back with an error instead of a code."""

    def __init__(self, error: str, description: str | None = None):
        super().__init__(error, description, status_code=400)


class StorageError(OAuthError):
    """A store could not persist its state to disk."""

    def __init__(self, description: str):
        super().__init__("temporarily_unavailable", description, status_code=503)


class InvalidEncryptionKeyError(ValueError):
    """OAUTH_ENCRYPTION_KEY is not a base64-encoded 32-byte key."""


class SessionDecryptionError(Exception):
    """Encrypted session data is malformed or failed authentication."""
