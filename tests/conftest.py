"""Pytest configuration and shared fixtures."""

import httpx
import pytest
import respx
from starlette.applications import Starlette

from nestr_mcp.http_auth import OAuthRoutes
from nestr_mcp.oauth_config import NestrAppConfig, get_oauth_config
from nestr_mcp.oauth_flow import AuthorizationOrchestrator
from nestr_mcp.oauth_service import NestrOAuthService
from nestr_mcp.storage import ClientRegistry, CodeBindingStore, PendingAuthorizationStore, SessionStore
from tests.helpers import BASE_URL, CALLBACK_URL
from tests.stubs.nestr_oauth_stub import PROVIDER_BASE, NestrOAuthStubber


class FakeClock:
    """Controllable replacement for ``time.time``."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage_dir(tmp_path):
    return tmp_path / "oauth"


@pytest.fixture
def app_config(storage_dir):
    """Provide a Nestr configuration pointing at the stubbed provider."""
    return NestrAppConfig(
        _env_file=None,
        nestr_api_base=f"{PROVIDER_BASE}/api",
        mcp_resource_url=f"{BASE_URL}/mcp",
        nestr_oauth_client_id="nestr-client",
        nestr_oauth_client_secret="nestr-secret",
        oauth_storage_dir=str(storage_dir),
        oauth_encryption_key=None,
        nestr_mcp_base_url=BASE_URL,
        nestr_mcp_path="/mcp",
    )


@pytest.fixture
def oauth_config(app_config):
    return get_oauth_config(app_config)


@pytest.fixture
def upstream(oauth_config):
    return NestrOAuthService(oauth_config, CALLBACK_URL)


@pytest.fixture
async def clients(storage_dir, clock):
    registry = ClientRegistry(storage_dir, default_scope="user nest", clock=clock)
    await registry.load()
    return registry


@pytest.fixture
async def pending(storage_dir, clock):
    store = PendingAuthorizationStore(storage_dir, clock=clock)
    await store.load()
    return store


@pytest.fixture
async def codes(storage_dir, clock):
    store = CodeBindingStore(storage_dir, clock=clock)
    await store.load()
    return store


@pytest.fixture
async def sessions(storage_dir, clock, upstream):
    store = SessionStore(storage_dir, refresher=upstream.refresh_tokens, clock=clock)
    await store.load()
    return store


@pytest.fixture
def orchestrator(oauth_config, clients, pending, codes, sessions, upstream, clock):
    return AuthorizationOrchestrator(
        oauth_config,
        clients=clients,
        pending=pending,
        codes=codes,
        sessions=sessions,
        upstream=upstream,
        issuer=BASE_URL,
        clock=clock,
    )


@pytest.fixture
def respx_mock():
    """Provide a respx mock router for provider HTTP requests."""
    with respx.mock(base_url=PROVIDER_BASE, assert_all_called=False) as respx_mock:
        yield respx_mock


@pytest.fixture
def nestr_oauth(respx_mock):
    """Provide a stubbed Nestr OAuth provider."""
    return NestrOAuthStubber(respx_mock)


@pytest.fixture
async def http_client(orchestrator, oauth_config):
    """HTTP client wired to the OAuth routes in-process."""
    routes = OAuthRoutes(orchestrator, oauth_config, BASE_URL)
    app = Starlette(routes=routes.get_routes())
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
        yield client
