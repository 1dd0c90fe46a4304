"""Local configuration wizard for Nestr MCP transports."""

from __future__ import annotations

import asyncio
import shutil
import time
from collections.abc import Iterable, Sequence
from getpass import getpass
from pathlib import Path
from typing import TypeVar

import httpx
from dotenv import dotenv_values, set_key

from ..models import TokenResponse
from ..oauth_config import DEVICE_CODE_GRANT_TYPE, NestrAppConfig, get_oauth_config
from ..session_crypto import generate_encryption_key

STDIO = "stdio"
HTTP = "http"
DEVICE_FLOW_TIMEOUT_SECONDS = 600
SETUP_CLIENT_CONSUMER = "nestr-mcp"

HTTP_SETTINGS = (
    ("NESTR_MCP_HOST", "Server host", "127.0.0.1"),
    ("NESTR_MCP_PORT", "Server port", "8000"),
    ("NESTR_MCP_BASE_URL", "Public base URL, blank for auto", None),
    ("NESTR_MCP_PATH", "Path prefix", "/mcp"),
    ("MCP_RESOURCE_URL", "Resource identifier", "https://mcp.nestr.io/mcp"),
    ("OAUTH_STORAGE_DIR", "OAuth storage directory, blank for default", None),
)

T = TypeVar("T")


def main() -> None:
    """Run the interactive setup wizard for local Nestr MCP configuration."""
    print("=" * 60)
    print("Nestr MCP - Local Setup Wizard")
    print("=" * 60)
    print()
    print("This wizard helps configure environment variables for stdio or http transport.")
    print("It will copy .env.example to .env (if needed) and update the relevant settings.")
    print()

    modes = _prompt_modes()
    if not modes:
        print("No transport selected. Exiting.")
        return

    env_path = _ensure_env_file()
    existing = dotenv_values(str(env_path)) if env_path.exists() else {}

    print()
    print("Step 1: Nestr API")
    print("-" * 60)
    api_base = _ask(
        "Nestr API base URL (NESTR_API_BASE)",
        existing.get("NESTR_API_BASE") or "https://app.nestr.io/api",
    )
    _set_keys(env_path, (("NESTR_API_BASE", api_base),))

    if STDIO in modes:
        _configure_stdio(env_path, existing, api_base)

    if HTTP in modes:
        _configure_http(env_path, existing)

    print("=" * 60)
    print("Configuration complete!")
    selected = " & ".join(sorted(modes))
    print(f"Updated .env for transport mode(s): {selected}")
    print("=" * 60)


def _choose(title: str, options: Sequence[tuple[str, T]]) -> T:
    """Show a numbered menu and return the value of the picked option."""
    print(title)
    for number, (label, _) in enumerate(options, start=1):
        print(f"  {number}) {label}")
    print()

    numbers = [str(number) for number in range(1, len(options) + 1)]
    while True:
        picked = input(f"Enter choice [1-{len(options)}]: ").strip()
        if picked in numbers:
            return options[int(picked) - 1][1]
        print(f"Invalid selection. Please enter one of {', '.join(numbers)}.")


def _prompt_modes() -> set[str]:
    return _choose(
        "Select transport mode to configure:",
        [
            ("stdio  (single-user credential stored locally)", {STDIO}),
            ("http   (multi-user server with OAuth proxy)", {HTTP}),
            ("both", {STDIO, HTTP}),
        ],
    )


def _ask(
    label: str,
    default: str | None = None,
    *,
    required: bool = False,
    secret: bool = False,
) -> str | None:
    """Read one answer. Blank input keeps ``default``; secrets are not echoed."""
    hint = ""
    if default:
        hint = " [press Enter to keep existing]" if secret else f" [{default}]"
    read = getpass if secret else input

    while True:
        answer = read(f"{label}{hint}: ").strip()
        if answer or default or not required:
            return answer or default
        print("This value is required.")


def _ensure_env_file() -> Path:
    """Ensure .env exists, copying from .env.example if available."""
    env_path = Path.cwd() / ".env"
    example_path = Path.cwd() / ".env.example"
    if env_path.exists():
        return env_path

    if example_path.exists():
        shutil.copy(example_path, env_path)
        print(f"Created {env_path.name} from {example_path.name}")
    else:
        env_path.touch()
        print(f"Created empty {env_path.name} (no .env.example found)")
    return env_path


def _configure_stdio(env_path: Path, existing: dict[str, str | None], api_base: str | None) -> None:
    """Store a single credential for stdio mode."""
    print()
    choice = _choose(
        "Step 2 (stdio): Choose how to authenticate",
        [
            ("OAuth sign-in with a device code (recommended, respects your permissions)", "device"),
            ("Paste an existing OAuth token", "token"),
            ("Workspace API key (full workspace access)", "api_key"),
        ],
    )

    if choice == "api_key":
        print("Create a key in your workspace: Settings > Integrations > Workspace API access.")
        api_key = _ask(
            "Nestr API key (NESTR_API_KEY)", existing.get("NESTR_API_KEY"), required=True, secret=True
        )
        _set_keys(env_path, (("NESTR_API_KEY", api_key),))
        print()
        print("✓ API key saved to .env")
        print()
        return

    if choice == "token":
        token = _ask(
            "OAuth token (NESTR_OAUTH_TOKEN)", existing.get("NESTR_OAUTH_TOKEN"), required=True, secret=True
        )
        _set_keys(env_path, (("NESTR_OAUTH_TOKEN", token),))
        print()
        print("✓ OAuth token saved to .env")
        print()
        return

    client_id = _ask(
        "Nestr OAuth client ID (NESTR_OAUTH_CLIENT_ID)", existing.get("NESTR_OAUTH_CLIENT_ID"), required=True
    )
    client_secret = _ask(
        "Nestr OAuth client secret (optional)", existing.get("NESTR_OAUTH_CLIENT_SECRET"), secret=True
    )
    app_config = NestrAppConfig(
        nestr_api_base=api_base or "https://app.nestr.io/api",
        nestr_oauth_client_id=client_id,
        nestr_oauth_client_secret=client_secret,
    )

    try:
        token_data = asyncio.run(_run_device_flow(app_config))
    except (httpx.HTTPError, ValueError) as exc:
        print(f"Error: Device sign-in failed: {exc}")
        return

    if token_data is None:
        return

    _set_keys(env_path, (("NESTR_OAUTH_TOKEN", token_data.access_token),))
    print()
    print("✓ OAuth token saved to .env")
    if token_data.expires_in:
        print(f"The token expires in {token_data.expires_in // 60} minutes; rerun this wizard to renew it.")
    print()


def _configure_http(env_path: Path, existing: dict[str, str | None]) -> None:
    """Prompt for HTTP transport environment settings."""
    print()
    print("Step 2 (http): Configure HTTP transport settings")
    print("-" * 60)

    client_id = _ask("Nestr OAuth client ID (NESTR_OAUTH_CLIENT_ID)", existing.get("NESTR_OAUTH_CLIENT_ID"))
    answers = [
        ("NESTR_OAUTH_CLIENT_ID", client_id),
        (
            "NESTR_OAUTH_CLIENT_SECRET",
            _ask(
                "Nestr OAuth client secret (NESTR_OAUTH_CLIENT_SECRET)",
                existing.get("NESTR_OAUTH_CLIENT_SECRET"),
                secret=True,
            ),
        ),
    ]
    for key, label, fallback in HTTP_SETTINGS:
        answers.append((key, _ask(f"{label} ({key})", existing.get(key) or fallback)))

    encryption_key = existing.get("OAUTH_ENCRYPTION_KEY")
    if encryption_key:
        print("Keeping existing OAUTH_ENCRYPTION_KEY.")
    elif input("Generate an encryption key for stored sessions? [Y/n]: ").strip().lower() in {"", "y", "yes"}:
        encryption_key = generate_encryption_key()
        print("Generated OAUTH_ENCRYPTION_KEY. Back it up: sessions cannot be read without it.")
    answers.append(("OAUTH_ENCRYPTION_KEY", encryption_key))

    _set_keys(env_path, answers)

    print()
    print("✓ HTTP environment values updated.")
    if not client_id:
        print("Note: without NESTR_OAUTH_CLIENT_ID only API-key and bearer-token requests work.")
    print("Start the server with: nestr-mcp --transport http")
    print()


def _set_keys(env_path: Path, pairs: Iterable[tuple[str, str | None]]) -> None:
    """Persist non-empty key/value pairs to the .env file."""
    for key, value in pairs:
        if value is None:
            continue
        set_key(str(env_path), key, value)


async def _run_device_flow(app_config: NestrAppConfig) -> TokenResponse | None:
    """Sign in with the device authorization grant (RFC 8628) and return the tokens."""
    config = get_oauth_config(app_config)
    credentials = {"client_id": config.client_id or ""}
    if config.client_secret:
        credentials["client_secret"] = config.client_secret

    async with httpx.AsyncClient(timeout=config.timeout) as client:
        response = await client.post(
            config.device_authorization_endpoint,
            data={
                "client_id": credentials["client_id"],
                "scope": config.scope_string,
                "client_consumer": SETUP_CLIENT_CONSUMER,
            },
        )
        if response.status_code != 200:
            print(f"Error: Device authorization failed with status {response.status_code}")
            print(response.text)
            return None

        device = response.json()
        verification_uri = device.get("verification_uri_complete") or device.get("verification_uri")
        print()
        print("Open the following URL in your browser and approve access:")
        print(f"  {verification_uri}")
        if device.get("user_code"):
            print(f"Enter this code if asked: {device['user_code']}")
        print()
        print("Waiting for approval...")

        interval = float(device.get("interval") or 5)
        expires_in = float(device.get("expires_in") or DEVICE_FLOW_TIMEOUT_SECONDS)
        deadline = time.monotonic() + expires_in

        while time.monotonic() < deadline:
            await asyncio.sleep(interval)
            response = await client.post(
                config.token_endpoint,
                data={
                    **credentials,
                    "grant_type": DEVICE_CODE_GRANT_TYPE,
                    "device_code": device["device_code"],
                },
            )
            if response.status_code == 200:
                return TokenResponse.model_validate(response.json())

            error = response.json().get("error") if response.content else None
            if error == "authorization_pending":
                continue
            if error == "slow_down":
                interval += 5
                continue

            print(f"Error: Device sign-in failed: {error or response.status_code}")
            return None

    print("Error: The device code expired before it was approved.")
    return None


if __name__ == "__main__":
    main()
