"""Middleware for HTTP mode - per-request credentials from the HTTP headers."""

from collections.abc import Callable
from typing import Any

from fastmcp.exceptions import ToolError
from fastmcp.server.dependencies import get_http_headers
from fastmcp.server.middleware import Middleware, MiddlewareContext

from .http_auth import get_auth_token


class HttpClientMiddleware(Middleware):
    """Middleware for HTTP mode - resolves the caller's Nestr credential.

    Each request carries either an ``X-Nestr-API-Key`` header or an OAuth
    bearer token obtained through this server's authorization proxy. The token
    is passed on to the Nestr API as is; the provider validates it.

    The credential is stored in ``ctx.get_state("auth_token")``. A request
    without one raises ``ToolError``.
    """

    def _resolve_token(self) -> str:
        token = get_auth_token(get_http_headers(include_all=True))
        if token is None:
            raise ToolError(
                "Authentication required. Provide either X-Nestr-API-Key header "
                "or Authorization: Bearer <token> header."
            )
        return token

    async def on_call_tool(self, context: MiddlewareContext, call_next: Callable[..., Any]):
        token = self._resolve_token()
        if context.fastmcp_context:
            context.fastmcp_context.set_state("auth_token", token)
        return await call_next(context)

    async def on_read_resource(self, context: MiddlewareContext, call_next: Callable[..., Any]):
        token = self._resolve_token()
        if context.fastmcp_context:
            context.fastmcp_context.set_state("auth_token", token)
        return await call_next(context)
