"""Middleware for stdio mode - .env-based authentication."""

from collections.abc import Callable
from typing import Any

from fastmcp.server.middleware import Middleware, MiddlewareContext

from .stdio_auth import StdioNestrAuthContext


class StdioClientMiddleware(Middleware):
    """Middleware for stdio mode - injects the process-wide Nestr credential.

    The credential is validated once at startup, so every tool call and
    resource read sees it in ``ctx.get_state("auth_token")``.
    """

    def __init__(self, context: StdioNestrAuthContext) -> None:
        self.context = context

    def _inject(self, context: MiddlewareContext) -> None:
        if context.fastmcp_context:
            context.fastmcp_context.set_state("auth_token", self.context.auth_token)

    async def on_call_tool(self, context: MiddlewareContext, call_next: Callable[..., Any]):
        self._inject(context)
        return await call_next(context)

    async def on_read_resource(self, context: MiddlewareContext, call_next: Callable[..., Any]):
        self._inject(context)
        return await call_next(context)
