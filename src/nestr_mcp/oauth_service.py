"""HTTP client for the upstream Nestr OAuth endpoints."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from .errors import OAuthNotConfiguredError
from .models import TokenResponse
from .oauth_config import OAuthConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpstreamResponse:
    """An upstream reply passed back to the caller without modification."""

    status_code: int
    content: bytes
    media_type: str = "application/json"

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> UpstreamResponse:
        media_type = response.headers.get("content-type", "application/json").split(";")[0]
        return cls(response.status_code, response.content, media_type.strip())


class NestrOAuthService:
    """The only component that talks to the upstream identity provider.

    Every request is made with this server's own upstream client credentials
    and callback URL. The provider has no PKCE support, so no PKCE parameters
    are ever sent.
    """

    def __init__(
        self,
        config: OAuthConfig,
        callback_url: str,
        *,
        timeout: float | None = None,
    ):
        self.config = config
        self.callback_url = callback_url
        self.timeout = config.timeout if timeout is None else timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.config.client_id)

    def _require_client_id(self) -> str:
        if not self.config.client_id:
            raise OAuthNotConfiguredError()
        return self.config.client_id

    def _with_credentials(self, fields: Mapping[str, str | None]) -> dict[str, str]:
        data = {"client_id": self._require_client_id()}
        if self.config.client_secret:
            data["client_secret"] = self.config.client_secret
        data.update({key: value for key, value in fields.items() if value})
        return data

    async def _post_form(self, url: str, data: Mapping[str, str]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, data=data, headers={"Accept": "application/json"})

    def build_authorization_url(
        self,
        state: str,
        *,
        scope: str | None = None,
        client_consumer: str | None = None,
    ) -> str:
        """Build the upstream consent URL redirecting back to this server's callback."""
        params = {
            "response_type": "code",
            "client_id": self._require_client_id(),
            "redirect_uri": self.callback_url,
            "state": state,
            "scope": scope or self.config.scope_string,
        }
        if client_consumer:
            params["client_consumer"] = client_consumer
        return f"{self.config.authorization_endpoint}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenResponse:
        """
        Exchange an authorization code for tokens.

        Raises:
            httpx.HTTPStatusError: If the provider rejects the code
        """
        data = self._with_credentials(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": self.callback_url}
        )
        response = await self._post_form(self.config.token_endpoint, data)
        response.raise_for_status()
        return TokenResponse.model_validate(response.json())

    async def refresh_tokens(self, refresh_token: str) -> TokenResponse:
        """
        Obtain fresh tokens with a refresh token.

        Raises:
            httpx.HTTPStatusError: If the provider rejects the refresh token
        """
        data = self._with_credentials(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )
        response = await self._post_form(self.config.token_endpoint, data)
        response.raise_for_status()
        return TokenResponse.model_validate(response.json())

    async def proxy_token_request(self, fields: Mapping[str, Any]) -> UpstreamResponse:
        """POST a token request with this server's credentials and relay the reply."""
        data = self._with_credentials(fields)
        logger.info("Proxying %s token request to upstream", data.get("grant_type"))
        response = await self._post_form(self.config.token_endpoint, data)
        return UpstreamResponse.from_httpx(response)

    async def request_device_authorization(
        self, scope: str | None = None, client_consumer: str | None = None
    ) -> UpstreamResponse:
        data = {
            "client_id": self._require_client_id(),
            "scope": scope or self.config.scope_string,
        }
        if client_consumer:
            data["client_consumer"] = client_consumer
        logger.info("Requesting device code from upstream (consumer: %s)", client_consumer)
        response = await self._post_form(self.config.device_authorization_endpoint, data)
        return UpstreamResponse.from_httpx(response)
