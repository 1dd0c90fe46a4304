"""Tests for the setup wizard's device sign-in and .env writing."""

from dotenv import dotenv_values
from httpx import Response

from nestr_mcp.oauth_config import DEVICE_CODE_GRANT_TYPE, NestrAppConfig
from nestr_mcp.scripts.setup_auth import _ask, _choose, _run_device_flow, _set_keys
from tests.stubs.nestr_oauth_stub import DEVICE_AUTHORIZATION, PROVIDER_BASE, TOKENS, form_of


def _app_config():
    return NestrAppConfig(
        _env_file=None,
        nestr_api_base=f"{PROVIDER_BASE}/api",
        nestr_oauth_client_id="nestr-client",
    )


def _fast_device(**overrides):
    return {**DEVICE_AUTHORIZATION, "interval": 0.01, **overrides}


class TestDeviceFlow:
    """Test polling the token endpoint until the user approves."""

    async def test_polls_until_approved(self, nestr_oauth, respx_mock):
        device_route = nestr_oauth.stub_device_endpoint(_fast_device())
        token_route = respx_mock.post("/oauth/token").mock(
            side_effect=[
                Response(400, json={"error": "authorization_pending"}),
                Response(200, json=TOKENS),
            ]
        )

        tokens = await _run_device_flow(_app_config())

        assert tokens.access_token == "nestr-access-token"
        assert token_route.call_count == 2
        assert form_of(device_route.calls.last.request)["client_consumer"] == "nestr-mcp"
        form = form_of(token_route.calls.last.request)
        assert form["grant_type"] == DEVICE_CODE_GRANT_TYPE
        assert form["device_code"] == "device-code-123"
        assert "client_secret" not in form

    async def test_denied(self, nestr_oauth, capsys):
        nestr_oauth.stub_device_endpoint(_fast_device())
        nestr_oauth.stub_token_error("access_denied")

        assert await _run_device_flow(_app_config()) is None
        assert "access_denied" in capsys.readouterr().out

    async def test_device_request_rejected(self, nestr_oauth, capsys):
        nestr_oauth.stub_device_endpoint({"error": "invalid_client"}, status_code=401)

        assert await _run_device_flow(_app_config()) is None
        assert "status 401" in capsys.readouterr().out

    async def test_expired_code(self, nestr_oauth, capsys):
        nestr_oauth.stub_device_endpoint(_fast_device(expires_in=0.001))
        nestr_oauth.stub_token_error("authorization_pending")

        assert await _run_device_flow(_app_config()) is None
        assert "expired" in capsys.readouterr().out


class TestSetKeys:
    """Test persisting wizard answers."""

    def test_skips_unset_values(self, tmp_path):
        env_path = tmp_path / ".env"
        env_path.touch()

        _set_keys(env_path, (("NESTR_API_KEY", "key-1"), ("NESTR_OAUTH_TOKEN", None)))

        assert dotenv_values(env_path) == {"NESTR_API_KEY": "key-1"}


class TestPrompts:
    """Test the wizard's menu and question helpers."""

    def test_choose_retries_until_valid(self, monkeypatch, capsys):
        answers = iter(["9", "x", "2"])
        monkeypatch.setattr("builtins.input", lambda prompt: next(answers))

        assert _choose("Pick one:", [("first", "a"), ("second", "b")]) == "b"
        assert "Invalid selection" in capsys.readouterr().out

    def test_ask_keeps_default_on_blank(self, monkeypatch):
        monkeypatch.setattr("builtins.input", lambda prompt: "  ")
        assert _ask("Port", "8000") == "8000"

    def test_ask_required_repeats(self, monkeypatch):
        answers = iter(["", "value"])
        monkeypatch.setattr("builtins.input", lambda prompt: next(answers))
        assert _ask("Client ID", required=True) == "value"

    def test_ask_secret_uses_getpass(self, monkeypatch):
        monkeypatch.setattr("nestr_mcp.scripts.setup_auth.getpass", lambda prompt: "s3cret")
        assert _ask("Secret", secret=True) == "s3cret"
