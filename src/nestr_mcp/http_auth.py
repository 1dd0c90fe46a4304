"""HTTP mode authentication - OAuth routes and the bearer challenge."""

from __future__ import annotations

import base64
import binascii
import functools
import html
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any
from urllib.parse import quote, unquote_plus

import httpx
from starlette.datastructures import Headers
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp, Receive, Scope, Send

from .errors import OAuthError, StorageError, UpstreamAuthorizationError
from .oauth_config import OAuthConfig, authorization_server_metadata, protected_resource_metadata
from .oauth_flow import (
    AuthorizationOrchestrator,
    BrowserFlow,
    BrowserSession,
    ClientRedirect,
    DelegatedFlow,
    TokenRequest,
)
from .oauth_service import UpstreamResponse

logger = logging.getLogger(__name__)

SERVICE_NAME = "nestr-mcp"
SESSION_COOKIE = "nestr_session"
API_KEY_HEADER = "x-nestr-api-key"
NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}
METADATA_CACHE_HEADERS = {"Cache-Control": "public, max-age=3600"}

Handler = Callable[["OAuthRoutes", Request], Awaitable[Response]]


def get_auth_token(headers: Mapping[str, str]) -> str | None:
    """Return the caller's API key or bearer token. The API key wins if both are sent."""
    api_key = headers.get(API_KEY_HEADER)
    if api_key and api_key.strip():
        return api_key.strip()

    scheme, _, token = headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


def oauth_error_response(exc: OAuthError) -> JSONResponse:
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=NO_STORE_HEADERS)


def upstream_response(upstream: UpstreamResponse) -> Response:
    return Response(
        upstream.content,
        status_code=upstream.status_code,
        media_type=upstream.media_type,
        headers=NO_STORE_HEADERS,
    )


def _html_page(title: str, message: str, *, link: str, link_text: str, status_code: int) -> HTMLResponse:
    content = f"""<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <title>{html.escape(title)}</title>
  </head>
  <body style="font-family: system-ui, sans-serif; padding: 40px; text-align: center;">
    <h1>{html.escape(title)}</h1>
    <p>{html.escape(message)}</p>
    <p><a href="{html.escape(link)}">{html.escape(link_text)}</a></p>
  </body>
</html>
"""
    return HTMLResponse(content, status_code=status_code)


def _basic_credentials(request: Request) -> tuple[str | None, str | None]:
    """Client credentials from an HTTP Basic header (RFC 6749 section 2.3.1)."""
    scheme, _, encoded = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "basic":
        return None, None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise OAuthError("invalid_client", "Malformed HTTP Basic credentials", 401) from exc
    client_id, separator, client_secret = decoded.partition(":")
    if not separator or not client_id:
        raise OAuthError("invalid_client", "Malformed HTTP Basic credentials", 401)
    return unquote_plus(client_id), unquote_plus(client_secret)


def _form_value(form: Mapping[str, Any], name: str) -> str | None:
    value = form.get(name)
    return str(value) if value else None


def _oauth_json_endpoint(handler: Handler) -> Handler:
    """Render protocol, storage and upstream failures as OAuth JSON errors."""

    @functools.wraps(handler)
    async def wrapper(self: OAuthRoutes, request: Request) -> Response:
        try:
            return await handler(self, request)
        except OAuthError as exc:
            if isinstance(exc, StorageError):
                logger.error("Storage failure on %s: %s", request.url.path, exc)
            return oauth_error_response(exc)
        except httpx.HTTPError as exc:
            logger.error("Upstream request failed on %s: %s", request.url.path, exc)
            return oauth_error_response(
                OAuthError("server_error", "Failed to reach the authorization server", 502)
            )

    return wrapper


class OAuthRoutes:
    """Starlette handlers exposing the authorization proxy over HTTP."""

    def __init__(
        self,
        orchestrator: AuthorizationOrchestrator,
        config: OAuthConfig,
        base_url: str,
        *,
        secure_cookies: bool = False,
    ) -> None:
        self.orchestrator = orchestrator
        self.config = config
        self.base_url = base_url.rstrip("/")
        self.secure_cookies = secure_cookies

    def get_routes(self) -> list[Route]:
        return [
            Route("/health", self.health, methods=["GET"]),
            Route(
                "/.well-known/oauth-protected-resource",
                self.protected_resource_metadata,
                methods=["GET"],
            ),
            Route(
                "/.well-known/oauth-authorization-server",
                self.authorization_server_metadata,
                methods=["GET"],
            ),
            Route("/oauth/register", self.register, methods=["POST"]),
            Route("/oauth/authorize", self.authorize, methods=["GET"]),
            Route("/oauth/callback", self.callback, methods=["GET"]),
            Route("/oauth/device", self.device, methods=["POST"]),
            Route("/oauth/token", self.token, methods=["POST"]),
            Route("/oauth/session", self.session, methods=["GET"]),
            Route("/oauth/logout", self.logout, methods=["POST"]),
        ]

    async def health(self, request: Request) -> Response:
        return JSONResponse({"status": "ok", "service": SERVICE_NAME})

    async def protected_resource_metadata(self, request: Request) -> Response:
        return JSONResponse(
            protected_resource_metadata(self.config, self.base_url),
            headers=METADATA_CACHE_HEADERS,
        )

    async def authorization_server_metadata(self, request: Request) -> Response:
        return JSONResponse(
            authorization_server_metadata(self.config, self.base_url),
            headers=METADATA_CACHE_HEADERS,
        )

    @_oauth_json_endpoint
    async def register(self, request: Request) -> Response:
        """Dynamic client registration (RFC 7591)."""
        try:
            body = await request.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            raise OAuthError("invalid_client_metadata", "Request body must be a JSON object")

        client = await self.orchestrator.register_client(body)
        return JSONResponse(client.registration_response(), status_code=201, headers=NO_STORE_HEADERS)

    @_oauth_json_endpoint
    async def authorize(self, request: Request) -> Response:
        """Start either flow; requests carrying ``client_id`` are delegated."""
        query = request.query_params
        client_id = query.get("client_id")
        if client_id:
            flow: BrowserFlow | DelegatedFlow = DelegatedFlow(
                client_id=client_id,
                redirect_uri=query.get("redirect_uri"),
                response_type=query.get("response_type"),
                scope=query.get("scope"),
                state=query.get("state"),
                code_challenge=query.get("code_challenge"),
                code_challenge_method=query.get("code_challenge_method"),
                client_consumer=query.get("client_consumer"),
            )
        else:
            flow = BrowserFlow(final_redirect=query.get("redirect_uri"))

        url = await self.orchestrator.start_authorization(flow)
        return RedirectResponse(url, status_code=302)

    async def callback(self, request: Request) -> Response:
        """Handle the provider's redirect. Failures are rendered for a human."""
        query = request.query_params
        code, state = query.get("code"), query.get("state")
        try:
            outcome = await self.orchestrator.complete_authorization(
                code,
                state,
                error=query.get("error"),
                error_description=query.get("error_description"),
            )
        except UpstreamAuthorizationError as exc:
            return _html_page(
                "Authorization Failed",
                exc.description or exc.error,
                link="/",
                link_text="Return to home",
                status_code=400,
            )
        except StorageError as exc:
            logger.error("Storage failure during callback: %s", exc)
            return _html_page(
                "Temporarily Unavailable",
                "The server could not save your authorization. Please try again shortly.",
                link="/oauth/authorize",
                link_text="Try Again",
                status_code=503,
            )
        except OAuthError as exc:
            title = "Session Expired" if code and state else "Invalid Callback"
            return _html_page(
                title,
                exc.description or exc.error,
                link="/oauth/authorize",
                link_text="Start Over",
                status_code=exc.status_code,
            )
        except httpx.HTTPError as exc:
            logger.error("Token exchange failed: %s", exc)
            return _html_page(
                "Token Exchange Failed",
                "Failed to exchange authorization code for tokens.",
                link="/oauth/authorize",
                link_text="Try Again",
                status_code=502,
            )

        match outcome:
            case ClientRedirect(url=url):
                return RedirectResponse(url, status_code=302)
            case BrowserSession(session=session, tokens=tokens, final_redirect=final_redirect):
                # The fragment keeps the token out of server logs.
                target = (final_redirect or "/").split("#", 1)[0]
                response = RedirectResponse(
                    f"{target}#token={quote(tokens.access_token, safe='')}", status_code=302
                )
                response.set_cookie(
                    SESSION_COOKIE,
                    session.session_id,
                    path="/",
                    httponly=True,
                    secure=self.secure_cookies,
                    samesite="lax",
                )
                return response
        raise TypeError(f"Unexpected callback outcome: {outcome!r}")

    @_oauth_json_endpoint
    async def device(self, request: Request) -> Response:
        """Device authorization (RFC 8628), proxied to the provider."""
        form = await request.form()
        upstream = await self.orchestrator.device_authorization(
            client_id=_form_value(form, "client_id"),
            scope=_form_value(form, "scope"),
            client_consumer=_form_value(form, "client_consumer"),
        )
        return upstream_response(upstream)

    @_oauth_json_endpoint
    async def token(self, request: Request) -> Response:
        client_id, client_secret = _basic_credentials(request)
        form = await request.form()
        token_request = TokenRequest.from_form(
            form, client_id=client_id, client_secret=client_secret
        )
        upstream = await self.orchestrator.token(token_request)
        return upstream_response(upstream)

    @_oauth_json_endpoint
    async def session(self, request: Request) -> Response:
        """Describe the browser session identified by the session cookie."""
        session_id = request.cookies.get(SESSION_COOKIE)
        if not session_id:
            return JSONResponse({"detail": "Not signed in."}, status_code=401)

        session = await self.orchestrator.get_session(session_id)
        if session is None:
            return JSONResponse({"detail": "Session not found or expired."}, status_code=404)
        return JSONResponse({"session": session.as_public_dict()}, headers=NO_STORE_HEADERS)

    @_oauth_json_endpoint
    async def logout(self, request: Request) -> Response:
        session_id = request.cookies.get(SESSION_COOKIE)
        removed = await self.orchestrator.end_session(session_id) if session_id else False
        response = JSONResponse({"logged_out": removed}, headers=NO_STORE_HEADERS)
        response.delete_cookie(SESSION_COOKIE, path="/")
        return response


class BearerChallengeMiddleware:
    """Reject unauthenticated MCP requests with an RFC 9728 bearer challenge.

    Clients that receive the challenge fetch the protected-resource metadata
    named in ``WWW-Authenticate`` and start the OAuth flow from there.
    """

    def __init__(self, app: ASGIApp, *, mcp_path: str, base_url: str) -> None:
        self.app = app
        self.mcp_path = "/" + mcp_path.strip("/")
        self.resource_metadata_url = f"{base_url.rstrip('/')}/.well-known/oauth-protected-resource"

    def _protects(self, path: str) -> bool:
        return path == self.mcp_path or path.startswith(self.mcp_path + "/")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            scope["type"] != "http"
            or scope.get("method") == "OPTIONS"
            or not self._protects(scope.get("path", ""))
            or get_auth_token(Headers(scope=scope))
        ):
            await self.app(scope, receive, send)
            return

        response = JSONResponse(
            {
                "jsonrpc": "2.0",
                "error": {
                    "code": -32001,
                    "message": (
                        "Authentication required. Provide either X-Nestr-API-Key header "
                        "or Authorization: Bearer <token> header."
                    ),
                },
                "id": None,
            },
            status_code=401,
            headers={"WWW-Authenticate": f'Bearer resource_metadata="{self.resource_metadata_url}"'},
        )
        await response(scope, receive, send)
