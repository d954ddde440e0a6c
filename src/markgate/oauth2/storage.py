# OAuth2 credential storage.
# Created: 2026-10-06
#
# A TTL-keyed key-value layer with two backends (in-memory, Redis) and the
# CredentialStore on top of it, which owns the key namespaces:
#
#   client:<id>      registered clients (no TTL)
#   authcode:<code>  authorization codes (5 min)
#   refresh:<token>  refresh tokens (refresh TTL)
#   session:<id>     upstream sessions, tokens encrypted (session TTL)
#   user:<user_id>   user -> session id index (session TTL)
#   oauth:<state>    upstream PKCE/CSRF state (5 min)

from __future__ import annotations

import json
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from markgate.oauth2.errors import EncryptionKeyMissing, StorageError
from markgate.oauth2.models import (
    AuthorizationCode,
    OAuthClient,
    PKCEState,
    RefreshToken,
    UpstreamSession,
)
from markgate.security.crypto import TokenDecryptionError, decrypt_token, encrypt_token

logger = logging.getLogger(__name__)

CODE_TTL = 5 * 60
STATE_TTL = 5 * 60
DEFAULT_SESSION_TTL = 14 * 24 * 3600


class KeyValueStore(ABC):
    """Async key-value store with per-key TTL.

    ``pop`` must be atomic: of two concurrent pops of the same key, exactly one
    returns the value.
    """

    @abstractmethod
    async def get(self, key: str) -> Any | None: ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float | None = None) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def pop(self, key: str) -> Any | None:
        """Delete *key* and return its prior value (None if absent)."""

    async def close(self) -> None:
        return None


class MemoryKeyValueStore(KeyValueStore):
    """In-process store. Values are kept JSON-encoded, like a remote store.

    An expired entry is dropped when it is next touched. Writes also sweep
    all expired entries, at most once per *sweep_interval* seconds.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = 60.0,
    ):
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return raw

    async def get(self, key: str) -> Any | None:
        with self._lock:
            raw = self._live(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        now = self._clock()
        expires_at = now + ttl if ttl is not None else None
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            self._data[key] = (json.dumps(value), expires_at)

    async def delete(self, key: str) -> bool:
        with self._lock:
            live = self._live(key) is not None
            self._data.pop(key, None)
        return live

    async def pop(self, key: str) -> Any | None:
        with self._lock:
            raw = self._live(key)
            self._data.pop(key, None)
        return json.loads(raw) if raw is not None else None

    def _sweep(self, now: float) -> int:
        stale = [k for k, (_, exp) in self._data.items() if exp is not None and now >= exp]
        for k in stale:
            del self._data[k]
        self._next_sweep = now + self._sweep_interval
        if stale:
            logger.debug("Swept %d expired entries", len(stale))
        return len(stale)

    def purge_expired(self) -> int:
        """Drop expired entries. Returns the number removed."""
        with self._lock:
            return self._sweep(self._clock())

    def __len__(self) -> int:
        return len(self._data)


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store. ``pop`` uses GETDEL (Redis >= 6.2)."""

    def __init__(self, client: aioredis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str, timeout: float = 5.0) -> RedisKeyValueStore:
        client = aioredis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client)

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            logger.error("Redis GET failed for %s: %s", key.split(":", 1)[0], exc)
            raise StorageError() from exc
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ex = max(1, math.ceil(ttl)) if ttl is not None else None
        try:
            await self._redis.set(key, json.dumps(value), ex=ex)
        except RedisError as exc:
            logger.error("Redis SET failed for %s: %s", key.split(":", 1)[0], exc)
            raise StorageError() from exc

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._redis.delete(key))
        except RedisError as exc:
            logger.error("Redis DEL failed for %s: %s", key.split(":", 1)[0], exc)
            raise StorageError() from exc

    async def pop(self, key: str) -> Any | None:
        try:
            raw = await self._redis.getdel(key)
        except RedisError as exc:
            logger.error("Redis GETDEL failed for %s: %s", key.split(":", 1)[0], exc)
            raise StorageError() from exc
        return json.loads(raw) if raw is not None else None

    async def close(self) -> None:
        await self._redis.aclose()


class CredentialStore:
    """Typed access to every OAuth record kind.

    Upstream session tokens are encrypted before they reach the key-value
    backend and decrypted only on read.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        encryption_key: str | None = None,
        session_ttl: int = DEFAULT_SESSION_TTL,
    ):
        self.kv = kv
        self._encryption_key = encryption_key
        self.session_ttl = session_ttl

    def _key(self) -> str:
        if not self._encryption_key:
            raise EncryptionKeyMissing()
        return self._encryption_key

    # -- clients ---------------------------------------------------------

    async def save_client(self, client: OAuthClient) -> None:
        await self.kv.set(f"client:{client.client_id}", client.to_dict())

    async def get_client(self, client_id: str) -> OAuthClient | None:
        data = await self.kv.get(f"client:{client_id}")
        return OAuthClient.from_dict(data) if data else None

    # -- authorization codes ---------------------------------------------

    async def save_auth_code(self, code: AuthorizationCode) -> None:
        await self.kv.set(f"authcode:{code.code}", code.to_dict(), ttl=CODE_TTL)

    async def get_auth_code(self, code: str) -> AuthorizationCode | None:
        data = await self.kv.get(f"authcode:{code}")
        return AuthorizationCode.from_dict(data) if data else None

    async def take_auth_code(self, code: str) -> AuthorizationCode | None:
        """Atomically fetch and delete an authorization code."""
        data = await self.kv.pop(f"authcode:{code}")
        return AuthorizationCode.from_dict(data) if data else None

    async def delete_auth_code(self, code: str) -> bool:
        return await self.kv.delete(f"authcode:{code}")

    # -- refresh tokens --------------------------------------------------

    async def save_refresh_token(self, token: RefreshToken, ttl: float) -> None:
        await self.kv.set(f"refresh:{token.token}", token.to_dict(), ttl=ttl)

    async def get_refresh_token(self, token: str) -> RefreshToken | None:
        data = await self.kv.get(f"refresh:{token}")
        return RefreshToken.from_dict(data) if data else None

    async def delete_refresh_token(self, token: str) -> bool:
        return await self.kv.delete(f"refresh:{token}")

    # -- upstream sessions -----------------------------------------------

    async def save_session(self, session: UpstreamSession) -> None:
        key = self._key()
        data = session.to_dict()
        data["access_token"] = encrypt_token(session.access_token, key)
        if session.refresh_token:
            data["refresh_token"] = encrypt_token(session.refresh_token, key)
        await self.kv.set(f"session:{session.session_id}", data, ttl=self.session_ttl)
        await self.kv.set(f"user:{session.user_id}", session.session_id, ttl=self.session_ttl)

    async def get_session(self, session_id: str) -> UpstreamSession | None:
        data = await self.kv.get(f"session:{session_id}")
        if not data:
            return None
        key = self._key()
        try:
            data["access_token"] = decrypt_token(data["access_token"], key)
            if data.get("refresh_token"):
                data["refresh_token"] = decrypt_token(data["refresh_token"], key)
        except TokenDecryptionError:
            # Written under another encryption key; unusable, so drop it.
            logger.warning("Discarding undecryptable session %s...", session_id[:8])
            await self.delete_session(session_id)
            return None
        return UpstreamSession.from_dict(data)

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and, if it still points here, its user index entry."""
        data = await self.kv.pop(f"session:{session_id}")
        if not data:
            return False
        index_key = f"user:{data['user_id']}"
        if await self.kv.get(index_key) == session_id:
            await self.kv.delete(index_key)
        return True

    async def get_session_id_for_user(self, user_id: str) -> str | None:
        return await self.kv.get(f"user:{user_id}")

    async def delete_sessions_for_user(self, user_id: str) -> bool:
        """Logout by user id."""
        session_id = await self.kv.pop(f"user:{user_id}")
        if not session_id:
            return False
        await self.kv.delete(f"session:{session_id}")
        return True

    # -- upstream PKCE / CSRF state --------------------------------------

    async def save_oauth_state(self, state: PKCEState) -> None:
        await self.kv.set(f"oauth:{state.state}", state.to_dict(), ttl=STATE_TTL)

    async def peek_oauth_state(self, state: str) -> PKCEState | None:
        """Read a pending state without consuming it."""
        data = await self.kv.get(f"oauth:{state}")
        return PKCEState.from_dict(data) if data else None

    async def take_oauth_state(self, state: str) -> PKCEState | None:
        """Atomically fetch and delete a pending state."""
        data = await self.kv.pop(f"oauth:{state}")
        return PKCEState.from_dict(data) if data else None


def create_key_value_store(redis_url: str | None, timeout: float = 5.0) -> KeyValueStore:
    """Redis when a URL is configured, otherwise in-memory."""
    if redis_url:
        logger.info("Using Redis credential storage")
        return RedisKeyValueStore.from_url(redis_url, timeout=timeout)
    logger.warning("MARKGATE_REDIS_URL not set; credentials are kept in memory only")
    return MemoryKeyValueStore()
