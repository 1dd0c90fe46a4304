"""Tests for the session store: persistence, encryption, refresh and sweep."""

import asyncio
import json
import stat

import pytest

from nestr_mcp.errors import InvalidEncryptionKeyError, StorageError
from nestr_mcp.models import StoredSession, TokenResponse
from nestr_mcp.session_crypto import SessionCipher, generate_encryption_key
from nestr_mcp.storage import SessionStore
from tests.stubs.nestr_oauth_stub import form_of


def _tokens(**overrides):
    data = {
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "expires_in": 3600,
        "scope": "user nest",
    }
    data.update(overrides)
    return TokenResponse.model_validate(data)


def _session(clock, session_id="sess-1", **overrides):
    data = {
        "session_id": session_id,
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "expires_at": clock() + 3600,
        "created_at": clock(),
        "updated_at": clock(),
    }
    data.update(overrides)
    return StoredSession(**data)


class TestSessionPersistence:
    """Test plain-text session storage."""

    async def test_create_from_tokens(self, sessions, clock, storage_dir):
        session = await sessions.create_from_tokens(_tokens(user_id=7))

        assert session.access_token == "access-1"
        assert session.expires_at == clock() + 3600
        assert session.user_id == "7"

        data = json.loads((storage_dir / "oauth-sessions.json").read_text())
        assert data[session.session_id]["access_token"] == "access-1"
        assert not (storage_dir / "oauth-sessions.enc").exists()

    async def test_missing_expires_in_defaults_to_an_hour(self, sessions, clock):
        session = await sessions.create_from_tokens(_tokens(expires_in=None))
        assert session.expires_at == clock() + 3600

    async def test_session_ids_are_unique(self, sessions):
        first = await sessions.create_from_tokens(_tokens())
        second = await sessions.create_from_tokens(_tokens())
        assert first.session_id != second.session_id

    async def test_remove(self, sessions, clock):
        await sessions.store(_session(clock))

        assert await sessions.remove("sess-1") is True
        assert await sessions.get("sess-1") is None
        assert await sessions.remove("sess-1") is False

    async def test_failed_write_is_not_kept_in_memory(self, sessions, clock, monkeypatch):
        def fail(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("nestr_mcp.storage._write_file", fail)

        with pytest.raises(StorageError):
            await sessions.store(_session(clock))
        assert "sess-1" not in sessions

    async def test_update_keeps_refresh_token_when_not_rotated(self, sessions, clock):
        await sessions.store(_session(clock))
        clock.advance(10)

        updated = await sessions.update(
            "sess-1", _tokens(access_token="access-2", refresh_token=None, expires_in=60)
        )

        assert updated.access_token == "access-2"
        assert updated.refresh_token == "refresh-1"
        assert updated.expires_at == clock() + 60
        assert updated.updated_at == clock()


class TestSessionRefresh:
    """Test refresh-on-read near expiry."""

    async def test_fresh_session_returned_without_refresh(self, sessions, clock, nestr_oauth):
        route = nestr_oauth.stub_token_endpoint()
        await sessions.store(_session(clock))

        session = await sessions.get("sess-1")

        assert session.access_token == "access-1"
        assert route.call_count == 0

    async def test_refresh_within_expiry_buffer(self, sessions, clock, nestr_oauth):
        route = nestr_oauth.stub_token_endpoint()
        await sessions.store(_session(clock))
        clock.advance(3600 - 30)

        session = await sessions.get("sess-1")

        assert session.access_token == "nestr-access-token"
        assert session.refresh_token == "nestr-refresh-token"
        assert session.expires_at == clock() + 3600
        form = form_of(route.calls.last.request)
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "refresh-1"
        assert form["client_id"] == "nestr-client"
        assert form["client_secret"] == "nestr-secret"

    async def test_failed_refresh_deletes_session(self, sessions, clock, nestr_oauth):
        nestr_oauth.stub_token_error(status_code=400)
        await sessions.store(_session(clock))
        clock.advance(3600)

        assert await sessions.get("sess-1") is None
        assert "sess-1" not in sessions

    async def test_network_failure_deletes_session(self, sessions, clock, nestr_oauth):
        nestr_oauth.stub_token_network_error()
        await sessions.store(_session(clock))
        clock.advance(3600)

        assert await sessions.get("sess-1") is None
        assert "sess-1" not in sessions

    async def test_invalid_refresh_payload_deletes_session(self, sessions, clock, nestr_oauth):
        nestr_oauth.stub_token_endpoint({"token_type": "Bearer"})
        await sessions.store(_session(clock))
        clock.advance(3600)

        assert await sessions.get("sess-1") is None

    async def test_expired_without_refresh_token_deleted_without_network(
        self, sessions, clock, nestr_oauth
    ):
        route = nestr_oauth.stub_token_endpoint()
        await sessions.store(_session(clock, refresh_token=None))
        clock.advance(3600 - 10)

        assert await sessions.get("sess-1") is None
        assert "sess-1" not in sessions
        assert route.call_count == 0

    async def test_concurrent_reads_refresh_once(self, sessions, clock, nestr_oauth):
        route = nestr_oauth.stub_token_endpoint()
        await sessions.store(_session(clock))
        clock.advance(3600)

        results = await asyncio.gather(*(sessions.get("sess-1") for _ in range(5)))

        assert route.call_count == 1
        assert {session.access_token for session in results} == {"nestr-access-token"}


class TestSessionSweep:
    """Test removal of sessions that can no longer be renewed."""

    async def test_sweep_removes_only_unrenewable_expired_sessions(self, sessions, clock):
        await sessions.store(_session(clock, "expired-no-refresh", refresh_token=None))
        await sessions.store(_session(clock, "expired-with-refresh"))
        await sessions.store(_session(clock, "live-no-refresh", refresh_token=None, expires_at=clock() + 7200))
        clock.advance(3601)

        assert await sessions.sweep() == 1
        assert "expired-no-refresh" not in sessions
        assert "expired-with-refresh" in sessions
        assert "live-no-refresh" in sessions

    async def test_empty_refresh_token_counts_as_unrenewable(self, sessions, clock):
        await sessions.store(_session(clock, "blank-refresh", refresh_token=""))
        clock.advance(3601)

        assert await sessions.sweep() == 1
        assert "blank-refresh" not in sessions


class TestSessionEncryption:
    """Test encryption at rest and migration from plain text."""

    async def test_encrypted_store_writes_only_encrypted_file(self, storage_dir, clock):
        key = generate_encryption_key()
        store = SessionStore(storage_dir, encryption_key=key, clock=clock)
        await store.load()
        await store.store(_session(clock))

        enc_path = storage_dir / "oauth-sessions.enc"
        assert enc_path.exists()
        assert not (storage_dir / "oauth-sessions.json").exists()
        assert stat.S_IMODE(enc_path.stat().st_mode) == 0o600
        assert "access-1" not in enc_path.read_text()

        data = json.loads(SessionCipher(key).decrypt(enc_path.read_text()))
        assert data["sess-1"]["access_token"] == "access-1"

    async def test_encrypted_sessions_survive_reload(self, storage_dir, clock):
        key = generate_encryption_key()
        store = SessionStore(storage_dir, encryption_key=key, clock=clock)
        await store.load()
        await store.store(_session(clock))

        reloaded = SessionStore(storage_dir, encryption_key=key, clock=clock)
        await reloaded.load()
        session = await reloaded.get("sess-1")
        assert session.access_token == "access-1"

    async def test_plaintext_sessions_migrated_when_key_configured(self, storage_dir, clock):
        plain = SessionStore(storage_dir, clock=clock)
        await plain.load()
        await plain.store(_session(clock, "sess-1"))
        await plain.store(_session(clock, "sess-2", access_token="access-2"))
        original = json.loads((storage_dir / "oauth-sessions.json").read_text())

        key = generate_encryption_key()
        encrypted = SessionStore(storage_dir, encryption_key=key, clock=clock)
        await encrypted.load()

        assert not (storage_dir / "oauth-sessions.json").exists()
        enc_text = (storage_dir / "oauth-sessions.enc").read_text()
        assert json.loads(SessionCipher(key).decrypt(enc_text)) == original
        assert len(encrypted) == 2

    async def test_corrupt_plaintext_not_migrated_or_deleted(self, storage_dir, clock):
        storage_dir.mkdir(parents=True)
        plain_path = storage_dir / "oauth-sessions.json"
        plain_path.write_text("{corrupt")

        store = SessionStore(storage_dir, encryption_key=generate_encryption_key(), clock=clock)
        await store.load()

        assert plain_path.exists()
        assert not (storage_dir / "oauth-sessions.enc").exists()
        assert len(store) == 0

    async def test_wrong_key_starts_empty(self, storage_dir, clock):
        store = SessionStore(storage_dir, encryption_key=generate_encryption_key(), clock=clock)
        await store.load()
        await store.store(_session(clock))

        other = SessionStore(storage_dir, encryption_key=generate_encryption_key(), clock=clock)
        await other.load()
        assert len(other) == 0

    async def test_encrypted_file_ignored_without_key(self, storage_dir, clock):
        store = SessionStore(storage_dir, encryption_key=generate_encryption_key(), clock=clock)
        await store.load()
        await store.store(_session(clock))

        plain = SessionStore(storage_dir, clock=clock)
        await plain.load()
        assert len(plain) == 0

    async def test_malformed_key_is_fatal(self, storage_dir, clock):
        store = SessionStore(storage_dir, encryption_key="too-short", clock=clock)
        with pytest.raises(InvalidEncryptionKeyError):
            await store.load()
