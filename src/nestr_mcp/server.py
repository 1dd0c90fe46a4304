"""Nestr MCP Server - Main entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import uvicorn
from fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.routing import Mount

from .http_auth import BearerChallengeMiddleware, OAuthRoutes
from .oauth_config import (
    NestrAppConfig,
    OAuthConfig,
    get_oauth_config,
    load_config,
    resolve_base_url,
    resolve_storage_dir,
)
from .oauth_flow import AuthorizationOrchestrator
from .oauth_service import NestrOAuthService
from .reaper import Reaper
from .storage import ClientRegistry, CodeBindingStore, PendingAuthorizationStore, SessionStore

logger = logging.getLogger(__name__)

SERVER_NAME = "Nestr"


@dataclass
class OAuthComponents:
    """Every OAuth store and service, built once per process and shared."""

    app_config: NestrAppConfig
    config: OAuthConfig
    base_url: str
    clients: ClientRegistry
    pending: PendingAuthorizationStore
    codes: CodeBindingStore
    sessions: SessionStore
    upstream: NestrOAuthService
    orchestrator: AuthorizationOrchestrator
    reaper: Reaper
    routes: OAuthRoutes

    async def start(self) -> None:
        """Load every store from disk and start the background sweep."""
        await self.clients.load()
        await self.pending.load()
        await self.codes.load()
        await self.sessions.load()
        self.reaper.start()
        logger.info("OAuth proxy ready at %s (storage: %s)", self.base_url, self.clients.storage_dir)

    async def stop(self) -> None:
        await self.reaper.stop()


def build_oauth_components(app_config: NestrAppConfig) -> OAuthComponents:
    """Construct and wire the OAuth stores, orchestrator, reaper and routes."""
    config = get_oauth_config(app_config)
    base_url = resolve_base_url(app_config)
    storage_dir = resolve_storage_dir(app_config)

    if not config.client_id:
        logger.warning("NESTR_OAUTH_CLIENT_ID is not set; OAuth flows will be rejected")
    if not app_config.oauth_encryption_key:
        logger.warning("OAUTH_ENCRYPTION_KEY is not set; OAuth sessions are stored in plain text")

    upstream = NestrOAuthService(config, f"{base_url}/oauth/callback")
    clients = ClientRegistry(storage_dir, default_scope=config.scope_string)
    pending = PendingAuthorizationStore(storage_dir)
    codes = CodeBindingStore(storage_dir)
    sessions = SessionStore(
        storage_dir,
        encryption_key=app_config.oauth_encryption_key,
        refresher=upstream.refresh_tokens,
    )
    orchestrator = AuthorizationOrchestrator(
        config,
        clients=clients,
        pending=pending,
        codes=codes,
        sessions=sessions,
        upstream=upstream,
        issuer=base_url,
    )
    routes = OAuthRoutes(
        orchestrator, config, base_url, secure_cookies=base_url.startswith("https://")
    )

    return OAuthComponents(
        app_config=app_config,
        config=config,
        base_url=base_url,
        clients=clients,
        pending=pending,
        codes=codes,
        sessions=sessions,
        upstream=upstream,
        orchestrator=orchestrator,
        reaper=Reaper(pending, codes, sessions),
        routes=routes,
    )


def create_server(transport_mode: str = "stdio", oauth: OAuthComponents | None = None) -> FastMCP:
    """Create and configure FastMCP server for the specified transport mode.

    Args:
        transport_mode: Either "stdio" or "http"
        oauth: OAuth components whose routes are served next to the MCP
            endpoint (HTTP mode only)

    Returns:
        Configured FastMCP instance
    """
    transport_mode = transport_mode.lower()

    if transport_mode == "http":
        # HTTP mode: each request brings its own API key or OAuth token
        from .http_middleware import HttpClientMiddleware

        mcp = FastMCP(SERVER_NAME)
        mcp.add_middleware(HttpClientMiddleware())

        if oauth is not None:
            for route in oauth.routes.get_routes():
                methods = sorted((route.methods or set()) - {"HEAD"})
                mcp.custom_route(route.path, methods=methods)(route.endpoint)

    else:
        # Stdio mode: one credential from the environment or .env
        from .stdio_auth import StdioNestrAuthContext
        from .stdio_middleware import StdioClientMiddleware

        context = StdioNestrAuthContext()

        mcp = FastMCP(SERVER_NAME)
        mcp.add_middleware(StdioClientMiddleware(context))

    return mcp


def _normalise_path(path: str) -> str:
    return "/" + path.strip("/")


def create_http_app(app_config: NestrAppConfig | None = None) -> Starlette:
    """Build the HTTP application: MCP endpoint, OAuth routes and bearer challenge."""
    app_config = app_config or load_config()
    oauth = build_oauth_components(app_config)
    mcp_path = _normalise_path(app_config.nestr_mcp_path)

    mcp = create_server("http", oauth=oauth)
    mcp_app = mcp.http_app(path=mcp_path)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await oauth.start()
        try:
            async with mcp_app.lifespan(app):
                yield
        finally:
            await oauth.stop()

    app = Starlette(
        routes=[Mount("/", app=mcp_app)],
        middleware=[
            Middleware(BearerChallengeMiddleware, mcp_path=mcp_path, base_url=oauth.base_url)
        ],
        lifespan=lifespan,
    )
    app.state.oauth = oauth
    return app


async def revoke_client(app_config: NestrAppConfig, client_id: str) -> bool:
    """Delete a dynamically registered client from the registry on disk.

    Run while the HTTP server is stopped; a running server keeps its own copy
    of the registry and would write the client back on its next registration.
    """
    clients = ClientRegistry(resolve_storage_dir(app_config))
    await clients.load()
    return await clients.revoke(client_id)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main():
    """Main entry point for the Nestr MCP server."""
    parser = argparse.ArgumentParser(description="Nestr MCP Server")
    parser.add_argument(
        "--transport",
        type=str,
        choices=["stdio", "http"],
        default="stdio",
        help="Transport mode: stdio (default) or http",
    )
    parser.add_argument(
        "--revoke-client",
        metavar="CLIENT_ID",
        help="Delete a dynamically registered OAuth client and exit",
    )
    args = parser.parse_args()

    app_config = load_config()
    configure_logging(app_config.nestr_mcp_log_level)

    if args.revoke_client:
        if asyncio.run(revoke_client(app_config, args.revoke_client)):
            print(f"Revoked OAuth client {args.revoke_client}")
        else:
            print(f"No registered OAuth client {args.revoke_client}")
            raise SystemExit(1)
        return

    if args.transport == "http":
        # HTTP server mode
        app = create_http_app(app_config)
        uvicorn.run(
            app,
            host=app_config.nestr_mcp_host,
            port=app_config.nestr_mcp_port,
            log_level=app_config.nestr_mcp_log_level.lower(),
        )
    else:
        # Stdio mode (default)
        mcp = create_server("stdio")
        mcp.run()


if __name__ == "__main__":
    main()
