"""Stdio mode authentication - a single credential from the environment or .env."""

from __future__ import annotations

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StdioNestrAuthContext(BaseSettings):
    """Stdio mode: one Nestr credential for the whole process.

    ``NESTR_OAUTH_TOKEN`` respects the user's own permissions, while
    ``NESTR_API_KEY`` has full workspace access. When both are set the API key
    is used.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    nestr_api_key: str = ""
    nestr_oauth_token: str = ""

    @model_validator(mode="after")
    def validate_credentials(self) -> StdioNestrAuthContext:
        """Validate that a credential is configured."""
        if not self.nestr_api_key.strip() and not self.nestr_oauth_token.strip():
            raise ValueError(
                "Nestr authentication not configured. "
                "Set NESTR_OAUTH_TOKEN or NESTR_API_KEY, or run 'nestr-mcp-setup'."
            )
        return self

    @property
    def auth_token(self) -> str:
        return (self.nestr_api_key or self.nestr_oauth_token).strip()

    @property
    def uses_api_key(self) -> bool:
        return bool(self.nestr_api_key.strip())
