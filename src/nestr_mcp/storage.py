"""Disk-backed OAuth stores: registered clients, pending authorizations and sessions.

Every store keeps an in-memory mirror that is loaded once at startup and
rewritten to its JSON file in full on every mutation. Writes go through a
temporary file and ``os.replace`` so a crash never leaves a half-written file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import secrets
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from pathlib import Path
from typing import Any, ClassVar, Generic, TypeVar
from urllib.parse import urlsplit

import httpx
from pydantic import BaseModel, ValidationError

from .errors import InvalidClientMetadataError, SessionDecryptionError, StorageError
from .models import (
    DEFAULT_GRANT_TYPES,
    DEFAULT_RESPONSE_TYPES,
    AuthorizationCodeBinding,
    ClientRegistrationRequest,
    PendingAuthorization,
    RegisteredClient,
    StoredSession,
    TokenResponse,
)
from .session_crypto import SessionCipher

logger = logging.getLogger(__name__)

CLIENTS_FILENAME = "oauth-clients.json"
PENDING_AUTH_FILENAME = "pending-auth.json"
PENDING_CODES_FILENAME = "pending-codes.json"
SESSIONS_FILENAME = "oauth-sessions.json"
ENCRYPTED_SESSIONS_FILENAME = "oauth-sessions.enc"

PENDING_AUTHORIZATION_TTL_SECONDS = 5 * 60
TOKEN_EXPIRY_BUFFER_SECONDS = 60
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
DYNAMIC_CLIENT_PREFIX = "mcp-"
LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1"})

Clock = Callable[[], float]
TokenRefresher = Callable[[str], Awaitable[TokenResponse]]
RecordT = TypeVar("RecordT", bound=BaseModel)


def _write_file(path: Path, text: str, mode: int = 0o600) -> None:
    """Atomically replace ``path`` with ``text``, readable by the owner only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(text)
    os.chmod(tmp_path, mode)
    os.replace(tmp_path, path)


def validate_redirect_uris(redirect_uris: Sequence[str]) -> None:
    """Reject registrations whose redirect URIs are neither HTTPS nor loopback."""
    if not redirect_uris:
        raise InvalidClientMetadataError("redirect_uris is required and must be a non-empty array")

    for uri in redirect_uris:
        try:
            parts = urlsplit(uri)
            hostname = parts.hostname
        except ValueError:
            hostname = None
            parts = None
        if parts is None or not parts.scheme or not hostname or parts.fragment:
            raise InvalidClientMetadataError(
                f"Invalid redirect URI: {uri}", error="invalid_redirect_uri"
            )
        if parts.scheme != "https" and hostname not in LOOPBACK_HOSTS:
            raise InvalidClientMetadataError(
                f"Redirect URI must be localhost or HTTPS: {uri}", error="invalid_redirect_uri"
            )


def _restore(records: dict[str, Any], key: str, previous: Any) -> None:
    """Undo an in-memory write whose file write failed."""
    if previous is None:
        records.pop(key, None)
    else:
        records[key] = previous


def _redirect_uri_matches(registered: str, requested: str) -> bool:
    if registered == requested:
        return True

    try:
        reg = urlsplit(registered)
        req = urlsplit(requested)
        reg_host, req_host = reg.hostname, req.hostname
        _ = (reg.port, req.port)  # raises on an out-of-range port
    except ValueError:
        return False
    # Registered URIs are stored normalised, so "https://host" reads "https://host/".
    same_path = (reg.path or "/") == (req.path or "/") and reg.query == req.query
    if same_path and reg.scheme == req.scheme and reg.netloc == req.netloc:
        return True
    # Loopback redirects may use any port (RFC 8252 section 7.3), e.g. CLI tools.
    return reg_host in LOOPBACK_HOSTS and reg_host == req_host and reg.scheme == req.scheme and same_path


class _JsonFileStore:
    """Common file handling for the JSON-backed stores."""

    filename: ClassVar[str]

    def __init__(self, storage_dir: Path | str, *, clock: Clock = time.time) -> None:
        self.storage_dir = Path(storage_dir)
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self.storage_dir / self.filename

    def _read_json(self, path: Path, *, strict: bool) -> dict[str, Any]:
        """Read a JSON object from disk. ``strict`` turns corruption into StorageError."""
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("expected a JSON object")
        except (OSError, ValueError) as exc:
            logger.error("Failed to load %s: %s", path, exc)
            if strict:
                raise StorageError(f"Failed to load {path.name}") from exc
            return {}
        return data

    async def _write_text(self, path: Path, text: str) -> None:
        try:
            await asyncio.to_thread(_write_file, path, text)
        except OSError as exc:
            logger.error("Failed to save %s: %s", path, exc)
            raise StorageError(f"Failed to persist {path.name}") from exc

    @staticmethod
    def _parse_records(
        model: type[RecordT], key_field: str, data: Mapping[str, Any]
    ) -> dict[str, RecordT]:
        records: dict[str, RecordT] = {}
        for key, raw in data.items():
            try:
                records[key] = model.model_validate({**raw, key_field: key})
            except (TypeError, ValidationError) as exc:
                logger.warning("Skipping invalid %s record %s: %s", model.__name__, key, exc)
        return records

    @staticmethod
    def _dump_records(records: Mapping[str, BaseModel]) -> str:
        data = {key: record.model_dump(mode="json") for key, record in records.items()}
        return json.dumps(data, indent=2)


class ClientRegistry(_JsonFileStore):
    """Dynamically registered OAuth clients (RFC 7591), keyed by client id."""

    filename = CLIENTS_FILENAME

    def __init__(
        self,
        storage_dir: Path | str,
        *,
        default_scope: str | None = None,
        clock: Clock = time.time,
    ) -> None:
        super().__init__(storage_dir, clock=clock)
        self._default_scope = default_scope
        self._clients: dict[str, RegisteredClient] = {}

    def __len__(self) -> int:
        return len(self._clients)

    async def load(self) -> None:
        data = await asyncio.to_thread(self._read_json, self.path, strict=True)
        clients = self._parse_records(RegisteredClient, "client_id", data)
        async with self._lock:
            self._clients = clients
        logger.info("Loaded %d registered OAuth clients", len(clients))

    async def register(
        self,
        metadata: ClientRegistrationRequest,
        *,
        client_secret: str | None = None,
    ) -> RegisteredClient:
        """Validate and persist a new client, issuing its id and secret."""
        validate_redirect_uris([str(uri) for uri in metadata.redirect_uris or []])

        auth_method = metadata.token_endpoint_auth_method or "client_secret_post"
        if client_secret is None and auth_method != "none":
            client_secret = secrets.token_urlsafe(32)

        client = RegisteredClient.model_validate(
            {
                **metadata.model_dump(exclude_none=True),
                "client_id": f"{DYNAMIC_CLIENT_PREFIX}{uuid.uuid4()}",
                "client_secret": client_secret,
                "client_id_issued_at": int(self._clock()),
                "client_secret_expires_at": 0 if client_secret else None,
                "client_name": metadata.client_name or "MCP Client",
                "grant_types": metadata.grant_types or list(DEFAULT_GRANT_TYPES),
                "response_types": metadata.response_types or list(DEFAULT_RESPONSE_TYPES),
                "token_endpoint_auth_method": auth_method,
                "scope": metadata.scope or self._default_scope,
            }
        )

        async with self._lock:
            self._clients[client.client_id] = client
            try:
                await self._write_text(self.path, self._dump_records(self._clients))
            except StorageError:
                self._clients.pop(client.client_id, None)
                raise

        logger.info("Registered OAuth client %s (%s)", client.client_id, client.client_name)
        return client

    def get(self, client_id: str | None) -> RegisteredClient | None:
        if not client_id:
            return None
        return self._clients.get(client_id)

    def validate_redirect_uri(self, client_id: str, uri: str) -> bool:
        client = self.get(client_id)
        if client is None:
            return False
        return any(_redirect_uri_matches(registered, uri) for registered in client.redirect_uri_strings)

    def validate_credentials(self, client_id: str, client_secret: str | None) -> bool:
        client = self.get(client_id)
        if client is None:
            return False
        if client.is_public:
            return True
        if not client_secret:
            return False
        return secrets.compare_digest(client.client_secret or "", client_secret)

    async def revoke(self, client_id: str) -> bool:
        """Delete a registered client. Returns False if it was unknown."""
        async with self._lock:
            client = self._clients.pop(client_id, None)
            if client is None:
                return False
            await self._write_text(self.path, self._dump_records(self._clients))
        logger.info("Revoked OAuth client %s", client_id)
        return True


class _TimeBoxedStore(_JsonFileStore, Generic[RecordT]):
    """Single-use records that expire a fixed time after ``created_at``."""

    model: ClassVar[type[BaseModel]]
    key_field: ClassVar[str]

    def __init__(
        self,
        storage_dir: Path | str,
        *,
        ttl_seconds: float = PENDING_AUTHORIZATION_TTL_SECONDS,
        clock: Clock = time.time,
    ) -> None:
        super().__init__(storage_dir, clock=clock)
        self.ttl_seconds = ttl_seconds
        self._records: dict[str, RecordT] = {}

    def __len__(self) -> int:
        return len(self._records)

    def _is_expired(self, record: RecordT, now: float) -> bool:
        return now - record.created_at >= self.ttl_seconds  # type: ignore[attr-defined]

    async def load(self) -> None:
        data = await asyncio.to_thread(self._read_json, self.path, strict=False)
        now = self._clock()
        records = {
            key: record
            for key, record in self._parse_records(self.model, self.key_field, data).items()
            if not self._is_expired(record, now)  # type: ignore[arg-type]
        }
        async with self._lock:
            self._records = records  # type: ignore[assignment]

    async def store(self, record: RecordT) -> None:
        key = getattr(record, self.key_field)
        async with self._lock:
            previous = self._records.get(key)
            self._records[key] = record
            try:
                await self._write_text(self.path, self._dump_records(self._records))
            except StorageError:
                _restore(self._records, key, previous)
                raise

    def contains(self, key: str) -> bool:
        record = self._records.get(key)
        return record is not None and not self._is_expired(record, self._clock())

    async def consume(self, key: str) -> RecordT | None:
        """Remove and return the record; expired records are removed but not returned."""
        now = self._clock()
        async with self._lock:
            record = self._records.pop(key, None)
            if record is None:
                return None
            await self._write_text(self.path, self._dump_records(self._records))
        if self._is_expired(record, now):
            logger.info("Discarded expired %s record", self.model.__name__)
            return None
        return record

    async def sweep(self) -> int:
        now = self._clock()
        async with self._lock:
            expired = [key for key, record in self._records.items() if self._is_expired(record, now)]
            for key in expired:
                del self._records[key]
            if expired:
                await self._write_text(self.path, self._dump_records(self._records))
        return len(expired)


class PendingAuthorizationStore(_TimeBoxedStore[PendingAuthorization]):
    """In-flight authorization requests keyed by ``state``."""

    filename = PENDING_AUTH_FILENAME
    model = PendingAuthorization
    key_field = "state"


class CodeBindingStore(_TimeBoxedStore[AuthorizationCodeBinding]):
    """PKCE challenges keyed by the authorization code handed to a delegated client."""

    filename = PENDING_CODES_FILENAME
    model = AuthorizationCodeBinding
    key_field = "code"


class SessionStore(_JsonFileStore):
    """Upstream tokens held for browser sessions, optionally encrypted at rest.

    With an encryption key the whole session map is stored as a single
    AES-256-GCM blob in ``oauth-sessions.enc``; without one, as plain JSON in
    ``oauth-sessions.json``. A plain-text file left by an earlier run is
    migrated to the encrypted file on load once a key is configured.
    """

    filename = SESSIONS_FILENAME
    encrypted_filename = ENCRYPTED_SESSIONS_FILENAME

    def __init__(
        self,
        storage_dir: Path | str,
        *,
        encryption_key: str | None = None,
        refresher: TokenRefresher | None = None,
        refresh_buffer: float = TOKEN_EXPIRY_BUFFER_SECONDS,
        clock: Clock = time.time,
    ) -> None:
        super().__init__(storage_dir, clock=clock)
        self._encryption_key = encryption_key or None
        self._cipher: SessionCipher | None = None
        self._refresher = refresher
        self._refresh_buffer = refresh_buffer
        self._sessions: dict[str, StoredSession] = {}
        self._refresh_locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    @property
    def encrypted_path(self) -> Path:
        return self.storage_dir / self.encrypted_filename

    @property
    def is_encrypted(self) -> bool:
        return self._encryption_key is not None

    def _get_cipher(self) -> SessionCipher:
        # A malformed key surfaces here, on first use, as InvalidEncryptionKeyError.
        if self._cipher is None:
            assert self._encryption_key is not None
            self._cipher = SessionCipher(self._encryption_key)
        return self._cipher

    # ------------------------------------------------------------------
    # Loading and persistence
    # ------------------------------------------------------------------

    async def load(self) -> None:
        sessions = await asyncio.to_thread(self._read_sessions)
        async with self._lock:
            self._sessions = sessions
        logger.info(
            "Loaded %d OAuth sessions (%s)",
            len(sessions),
            "encrypted" if self.is_encrypted else "plain text",
        )

    def _read_sessions(self) -> dict[str, StoredSession]:
        if not self.is_encrypted:
            if self.encrypted_path.exists():
                logger.warning(
                    "%s exists but OAUTH_ENCRYPTION_KEY is not set; encrypted sessions ignored",
                    self.encrypted_path,
                )
            data = self._read_json(self.path, strict=False)
            return self._parse_records(StoredSession, "session_id", data)

        cipher = self._get_cipher()
        if not self.encrypted_path.exists():
            if self.path.exists():
                return self._migrate_plaintext(cipher)
            return {}

        try:
            blob = self.encrypted_path.read_text(encoding="utf-8")
            data = json.loads(cipher.decrypt(blob))
            if not isinstance(data, dict):
                raise ValueError("expected a JSON object")
        except (OSError, ValueError, SessionDecryptionError) as exc:
            logger.error("Failed to load encrypted OAuth sessions, starting empty: %s", exc)
            return {}
        return self._parse_records(StoredSession, "session_id", data)

    def _migrate_plaintext(self, cipher: SessionCipher) -> dict[str, StoredSession]:
        """Encrypt a plain-text session file from an earlier run, then delete it."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("expected a JSON object")
        except (OSError, ValueError) as exc:
            logger.error("Not migrating unreadable %s, leaving it in place: %s", self.path, exc)
            return {}

        sessions = self._parse_records(StoredSession, "session_id", data)
        try:
            _write_file(self.encrypted_path, cipher.encrypt(self._dump_records(sessions)))
        except OSError as exc:
            logger.error("Failed to write %s during migration: %s", self.encrypted_path, exc)
            raise StorageError(f"Failed to persist {self.encrypted_filename}") from exc
        # Only once the encrypted copy is on disk.
        self.path.unlink()
        logger.info("Migrated %d OAuth sessions to encrypted storage", len(sessions))
        return sessions

    async def _persist(self) -> None:
        text = self._dump_records(self._sessions)
        if self.is_encrypted:
            await self._write_text(self.encrypted_path, self._get_cipher().encrypt(text))
        else:
            await self._write_text(self.path, text)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def store(self, session: StoredSession) -> None:
        async with self._lock:
            previous = self._sessions.get(session.session_id)
            self._sessions[session.session_id] = session
            try:
                await self._persist()
            except StorageError:
                _restore(self._sessions, session.session_id, previous)
                raise

    async def create_from_tokens(
        self, tokens: TokenResponse, *, user_id: str | None = None
    ) -> StoredSession:
        """Create a session with a fresh id from an upstream token response."""
        now = self._clock()
        session = StoredSession(
            session_id=str(uuid.uuid4()),
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=now + (tokens.expires_in or DEFAULT_TOKEN_LIFETIME_SECONDS),
            scope=tokens.scope,
            user_id=user_id or tokens.user_id,
            created_at=now,
            updated_at=now,
        )
        await self.store(session)
        return session

    async def get(self, session_id: str) -> StoredSession | None:
        """Return a live session, refreshing it once if it is about to expire."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if not session.is_expired(self._clock(), self._refresh_buffer):
            return session

        lock = self._refresh_locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if not session.is_expired(self._clock(), self._refresh_buffer):
                return session

            if not session.refresh_token or self._refresher is None:
                logger.info("Session %s expired without a refresh token", session_id)
                await self.remove(session_id)
                return None

            try:
                tokens = await self._refresher(session.refresh_token)
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("Refreshing session %s failed: %s", session_id, exc)
                await self.remove(session_id)
                return None

            return await self.update(session_id, tokens)

    async def update(self, session_id: str, tokens: TokenResponse) -> StoredSession | None:
        """Replace a session's tokens after a refresh."""
        async with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                return None
            now = self._clock()
            updated = current.model_copy(
                update={
                    "access_token": tokens.access_token,
                    "refresh_token": tokens.refresh_token or current.refresh_token,
                    "expires_at": now + (tokens.expires_in or DEFAULT_TOKEN_LIFETIME_SECONDS),
                    "scope": tokens.scope or current.scope,
                    "user_id": tokens.user_id or current.user_id,
                    "updated_at": now,
                }
            )
            self._sessions[session_id] = updated
            await self._persist()
        return updated

    async def remove(self, session_id: str) -> bool:
        async with self._lock:
            self._refresh_locks.pop(session_id, None)
            removed = self._sessions.pop(session_id, None)
            if removed is None:
                return False
            await self._persist()
        return True

    async def sweep(self) -> int:
        """Remove sessions that are expired and cannot be renewed."""
        now = self._clock()
        async with self._lock:
            reaped = [
                session_id
                for session_id, session in self._sessions.items()
                if not session.refresh_token and session.is_expired(now)
            ]
            for session_id in reaped:
                del self._sessions[session_id]
                self._refresh_locks.pop(session_id, None)
            if reaped:
                await self._persist()
        return len(reaped)
