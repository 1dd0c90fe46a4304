"""OAuth 2.1 authorization proxy between MCP clients and the Nestr provider.

The provider does not support PKCE, so this server sits in front of it: MCP
clients talk PKCE, dynamic registration and the device flow to this server,
while this server talks plain authorization-code OAuth to the provider using
its own client credentials. Two flows share the callback:

* the browser flow, where this server exchanges the code itself and keeps the
  tokens in a session, and
* the delegated flow, where the code is forwarded to the registered client,
  which later redeems it at the token endpoint with its PKCE verifier.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import time
from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any

from mcp.server.auth.provider import construct_redirect_uri
from pydantic import ValidationError

from .errors import (
    InvalidClientMetadataError,
    OAuthError,
    OAuthNotConfiguredError,
    UpstreamAuthorizationError,
)
from .models import (
    AuthorizationCodeBinding,
    ClientRegistrationRequest,
    PendingAuthorization,
    RegisteredClient,
    StoredSession,
    TokenResponse,
)
from .oauth_config import DEVICE_CODE_GRANT_TYPE, OAuthConfig
from .oauth_service import NestrOAuthService, UpstreamResponse
from .storage import (
    DYNAMIC_CLIENT_PREFIX,
    Clock,
    ClientRegistry,
    CodeBindingStore,
    PendingAuthorizationStore,
    SessionStore,
)

logger = logging.getLogger(__name__)

SUPPORTED_CHALLENGE_METHOD = "S256"


# ----------------------------------------------------------------------
# PKCE helpers
# ----------------------------------------------------------------------


def generate_code_verifier() -> str:
    """Return a 64 character PKCE code verifier."""
    return secrets.token_urlsafe(48)


def generate_code_challenge(verifier: str) -> str:
    """Return the S256 challenge: base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_pkce(verifier: str, challenge: str, method: str = SUPPORTED_CHALLENGE_METHOD) -> bool:
    """Check a verifier against its challenge. Only S256 is accepted."""
    if method != SUPPORTED_CHALLENGE_METHOD:
        return False
    expected = generate_code_challenge(verifier)
    return secrets.compare_digest(expected.encode("utf-8"), challenge.encode("utf-8"))


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def _effective_consumer(client_consumer: str | None, client: RegisteredClient | None) -> str | None:
    consumer = client_consumer or (client.client_name if client else None)
    return consumer.lower() if consumer else None


def _relative_path(path: str | None) -> str | None:
    # Only same-origin paths; "//host" is protocol-relative.
    if path and path.startswith("/") and not path.startswith("//") and "\\" not in path:
        return path
    if path:
        logger.warning("Ignoring non-relative final redirect %r", path)
    return None


# ----------------------------------------------------------------------
# Flow requests and outcomes
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class BrowserFlow:
    """A user signing in to this server directly from a browser."""

    final_redirect: str | None = None


@dataclass(frozen=True)
class DelegatedFlow:
    """A registered MCP client obtaining a code for itself."""

    client_id: str
    redirect_uri: str | None = None
    response_type: str | None = None
    scope: str | None = None
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    client_consumer: str | None = None


AuthorizationFlow = BrowserFlow | DelegatedFlow


@dataclass(frozen=True)
class ClientRedirect:
    """Callback outcome for a delegated flow: send the browser back to the client."""

    url: str


@dataclass(frozen=True)
class BrowserSession:
    """Callback outcome for a browser flow: tokens stored under a new session."""

    session: StoredSession
    tokens: TokenResponse
    final_redirect: str | None = None


@dataclass(frozen=True)
class TokenRequest:
    """Parameters accepted by the token endpoint."""

    grant_type: str | None = None
    code: str | None = None
    redirect_uri: str | None = None
    refresh_token: str | None = None
    device_code: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    code_verifier: str | None = None
    client_consumer: str | None = None

    @classmethod
    def from_form(cls, form: Mapping[str, Any], **overrides: str | None) -> TokenRequest:
        """Build from form fields, ignoring blanks and unknown keys."""
        values: dict[str, str | None] = {}
        for field in fields(cls):
            value = form.get(field.name)
            if value:
                values[field.name] = str(value)
        values.update({key: value for key, value in overrides.items() if value})
        return cls(**values)


# ----------------------------------------------------------------------
# Orchestrator
# ----------------------------------------------------------------------


class AuthorizationOrchestrator:
    """Protocol state machine tying the stores to the upstream provider."""

    def __init__(
        self,
        config: OAuthConfig,
        *,
        clients: ClientRegistry,
        pending: PendingAuthorizationStore,
        codes: CodeBindingStore,
        sessions: SessionStore,
        upstream: NestrOAuthService,
        issuer: str,
        clock: Clock = time.time,
    ):
        self.config = config
        self.clients = clients
        self.pending = pending
        self.codes = codes
        self.sessions = sessions
        self.upstream = upstream
        self.issuer = issuer
        self._clock = clock

    # -- registration ---------------------------------------------------

    async def register_client(
        self, metadata: ClientRegistrationRequest | Mapping[str, Any]
    ) -> RegisteredClient:
        if not isinstance(metadata, ClientRegistrationRequest):
            try:
                metadata = ClientRegistrationRequest.model_validate(metadata)
            except ValidationError as exc:
                first = exc.errors()[0]
                # A malformed entry sits below the list, at ("redirect_uris", index).
                error = (
                    "invalid_redirect_uri"
                    if first["loc"][:1] == ("redirect_uris",) and len(first["loc"]) > 1
                    else "invalid_client_metadata"
                )
                raise InvalidClientMetadataError(str(first["msg"]), error=error) from exc
        return await self.clients.register(metadata)

    # -- authorization --------------------------------------------------

    async def start_authorization(self, flow: AuthorizationFlow) -> str:
        """Record the pending request and return the upstream authorization URL."""
        match flow:
            case BrowserFlow(final_redirect=final_redirect):
                return await self._start_browser_flow(final_redirect)
            case DelegatedFlow():
                return await self._start_delegated_flow(flow)
        raise TypeError(f"Unsupported authorization flow: {flow!r}")

    async def _start_browser_flow(self, final_redirect: str | None) -> str:
        if not self.upstream.is_configured:
            raise OAuthNotConfiguredError()

        state = generate_state()
        url = self.upstream.build_authorization_url(state)
        await self.pending.store(
            PendingAuthorization(
                state=state,
                redirect_uri=self.upstream.callback_url,
                client_id=self.config.client_id or "",
                scope=self.config.scope_string,
                final_redirect=_relative_path(final_redirect),
                created_at=self._clock(),
            )
        )
        logger.info("Browser user initiating auth flow")
        return url

    async def _start_delegated_flow(self, flow: DelegatedFlow) -> str:
        client = self.clients.get(flow.client_id)
        if client is None:
            raise OAuthError("invalid_client", f"Unknown client_id: {flow.client_id}")
        if not flow.redirect_uri:
            raise OAuthError("invalid_request", "redirect_uri is required")
        if not self.clients.validate_redirect_uri(client.client_id, flow.redirect_uri):
            raise OAuthError("invalid_redirect_uri", "redirect_uri does not match registered URIs")
        if flow.response_type != "code":
            raise OAuthError("unsupported_response_type", "Only response_type=code is supported")
        if not flow.code_challenge:
            raise OAuthError("invalid_request", "code_challenge is required (PKCE)")

        method = flow.code_challenge_method or SUPPORTED_CHALLENGE_METHOD
        if method != SUPPORTED_CHALLENGE_METHOD:
            raise OAuthError("invalid_request", "Only code_challenge_method=S256 is supported")

        # The caller's own state is echoed back to it, so it doubles as our key.
        if flow.state and self.pending.contains(flow.state):
            raise OAuthError("invalid_request", "state is already in use by a pending authorization")
        state = flow.state or generate_state()

        consumer = _effective_consumer(flow.client_consumer, client)
        pending = PendingAuthorization(
            state=state,
            redirect_uri=flow.redirect_uri,
            client_id=client.client_id,
            code_challenge=flow.code_challenge,
            code_challenge_method=method,
            scope=flow.scope or client.scope or self.config.scope_string,
            client_consumer=consumer,
            created_at=self._clock(),
        )
        url = self.upstream.build_authorization_url(
            state, scope=pending.scope, client_consumer=consumer
        )
        await self.pending.store(pending)
        logger.info("MCP client %s initiating auth flow (consumer: %s)", client.client_id, consumer)
        return url

    async def complete_authorization(
        self,
        code: str | None,
        state: str | None,
        *,
        error: str | None = None,
        error_description: str | None = None,
    ) -> ClientRedirect | BrowserSession:
        """Handle the provider's redirect back to this server's callback."""
        if error:
            logger.warning("Upstream authorization failed: %s (%s)", error, error_description)
            raise UpstreamAuthorizationError(error, error_description)
        if not code or not state:
            raise OAuthError("invalid_request", "Missing required parameters (code or state).")

        pending = await self.pending.consume(state)
        if pending is None:
            raise OAuthError(
                "invalid_request", "Your authorization session has expired. Please try again."
            )

        if pending.is_delegated:
            await self.codes.store(
                AuthorizationCodeBinding(
                    code=code,
                    client_id=pending.client_id,
                    redirect_uri=pending.redirect_uri,
                    code_challenge=pending.code_challenge or "",
                    code_challenge_method=pending.code_challenge_method
                    or SUPPORTED_CHALLENGE_METHOD,
                    created_at=self._clock(),
                )
            )
            logger.info("Redirecting code to MCP client %s", pending.client_id)
            url = construct_redirect_uri(pending.redirect_uri, code=code, state=state, iss=self.issuer)
            return ClientRedirect(url)

        tokens = await self.upstream.exchange_code(code)
        session = await self.sessions.create_from_tokens(tokens)
        logger.info("Browser user authenticated, session %s", session.session_id)
        return BrowserSession(session=session, tokens=tokens, final_redirect=pending.final_redirect)

    # -- device flow ----------------------------------------------------

    async def device_authorization(
        self,
        client_id: str | None = None,
        scope: str | None = None,
        client_consumer: str | None = None,
    ) -> UpstreamResponse:
        client = None
        if client_id and client_id.startswith(DYNAMIC_CLIENT_PREFIX):
            client = self.clients.get(client_id)
            if client is None:
                raise OAuthError("invalid_client", "Unknown client", status_code=401)
        consumer = _effective_consumer(client_consumer, client)
        return await self.upstream.request_device_authorization(scope, consumer)

    # -- token endpoint -------------------------------------------------

    def _authenticate_client(self, request: TokenRequest) -> RegisteredClient:
        client = self.clients.get(request.client_id)
        if client is None:
            raise OAuthError("invalid_client", "Unknown client", status_code=401)
        if not self.clients.validate_credentials(client.client_id, request.client_secret):
            raise OAuthError("invalid_client", "Invalid client credentials", status_code=401)
        return client

    def _is_registered_client(self, client_id: str | None) -> bool:
        if not client_id:
            return False
        return client_id.startswith(DYNAMIC_CLIENT_PREFIX) or self.clients.get(client_id) is not None

    async def token(self, request: TokenRequest) -> UpstreamResponse:
        """Dispatch a token request on its grant type and relay the provider's reply."""
        match request.grant_type:
            case None:
                raise OAuthError("invalid_request", "Missing required parameter: grant_type")
            case "authorization_code":
                return await self._authorization_code_grant(request)
            case "refresh_token":
                return await self._refresh_token_grant(request)
            case grant_type if grant_type == DEVICE_CODE_GRANT_TYPE:
                return await self._device_code_grant(request)
            case _:
                raise OAuthError(
                    "unsupported_grant_type",
                    f"Grant type '{request.grant_type}' is not supported",
                )

    async def _authorization_code_grant(self, request: TokenRequest) -> UpstreamResponse:
        if not request.code:
            raise OAuthError("invalid_request", "Missing required parameter: code")

        client = None
        if self._is_registered_client(request.client_id):
            client = self._authenticate_client(request)
        if not request.code_verifier:
            raise OAuthError("invalid_request", "code_verifier is required for PKCE")

        # Browser-flow codes are redeemed during the callback, so every code
        # presented here must carry the challenge bound to it at that point.
        binding = await self.codes.consume(request.code)
        if binding is None:
            raise OAuthError("invalid_grant", "Authorization code is invalid or expired")
        if request.client_id and request.client_id != binding.client_id:
            raise OAuthError("invalid_grant", "Authorization code was issued to another client")
        if request.redirect_uri and request.redirect_uri != binding.redirect_uri:
            raise OAuthError("invalid_grant", "redirect_uri does not match the authorization request")
        if not verify_pkce(request.code_verifier, binding.code_challenge, binding.code_challenge_method):
            raise OAuthError("invalid_grant", "PKCE verification failed")
        client = client or self.clients.get(binding.client_id)

        consumer = _effective_consumer(request.client_consumer, client)
        return await self.upstream.proxy_token_request(
            {
                "grant_type": "authorization_code",
                "code": request.code,
                "redirect_uri": self.upstream.callback_url,
                "client_consumer": consumer,
            }
        )

    async def _refresh_token_grant(self, request: TokenRequest) -> UpstreamResponse:
        if not request.refresh_token:
            raise OAuthError("invalid_request", "Missing required parameter: refresh_token")
        if request.client_id and request.client_id.startswith(DYNAMIC_CLIENT_PREFIX):
            self._authenticate_client(request)
        return await self.upstream.proxy_token_request(
            {"grant_type": "refresh_token", "refresh_token": request.refresh_token}
        )

    async def _device_code_grant(self, request: TokenRequest) -> UpstreamResponse:
        if not request.device_code:
            raise OAuthError("invalid_request", "Missing required parameter: device_code")
        return await self.upstream.proxy_token_request(
            {
                "grant_type": DEVICE_CODE_GRANT_TYPE,
                "device_code": request.device_code,
                "client_consumer": request.client_consumer,
            }
        )

    # -- sessions -------------------------------------------------------

    async def get_session(self, session_id: str) -> StoredSession | None:
        return await self.sessions.get(session_id)

    async def end_session(self, session_id: str) -> bool:
        removed = await self.sessions.remove(session_id)
        if removed:
            logger.info("Ended session %s", session_id)
        return removed
