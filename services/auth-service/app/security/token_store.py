"""Refresh-token revocation and one-time token storage.

Both backends keep three kinds of records, each with its own TTL:

* revoked refresh-token ids (``jti``), checked on refresh;
* the live refresh-token ids of every account, so logout can revoke them all;
* one-time token records (password reset, email verification), keyed by the
  SHA-256 digest of the token and consumed on first use.
"""

from __future__ import annotations

import json
import logging
import time
from threading import Lock
from typing import Any, Protocol

from redis import Redis
from redis.exceptions import RedisError

from ..config import Settings

logger = logging.getLogger(__name__)


class TokenStore(Protocol):
    def revoke(self, jti: str, ttl_seconds: int) -> bool: ...

    def is_revoked(self, jti: str) -> bool: ...

    def track_refresh(self, account_id: str, jti: str, ttl_seconds: int) -> None: ...

    def revoke_account_tokens(self, account_id: str, ttl_seconds: int) -> int: ...

    def put_one_time(self, purpose: str, token_hash: str, payload: dict[str, Any], ttl_seconds: int) -> None: ...

    def pop_one_time(self, purpose: str, token_hash: str) -> dict[str, Any] | None: ...


class InMemoryTokenStore:
    """Thread-safe process-local token store.

    Expired records are swept on writes, at most once per ``sweep_interval``
    seconds, so the dictionaries stay bounded by the live token population.
    """

    def __init__(self, *, sweep_interval: float = 60.0) -> None:
        self._revoked: dict[str, float] = {}
        self._tracked: dict[str, dict[str, float]] = {}
        self._one_time: dict[tuple[str, str], tuple[float, dict[str, Any]]] = {}
        self._sweep_interval = sweep_interval
        self._next_sweep = 0.0
        self._lock = Lock()

    def _sweep(self, now: float) -> None:
        # caller holds the lock
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval
        for jti in [jti for jti, expires_at in self._revoked.items() if expires_at <= now]:
            del self._revoked[jti]
        for account_id in list(self._tracked):
            live = {jti: expires_at for jti, expires_at in self._tracked[account_id].items() if expires_at > now}
            if live:
                self._tracked[account_id] = live
            else:
                del self._tracked[account_id]
        for key in [key for key, (expires_at, _) in self._one_time.items() if expires_at <= now]:
            del self._one_time[key]

    def revoke(self, jti: str, ttl_seconds: int) -> bool:
        """Revoke ``jti``; returns ``False`` when it was already revoked."""
        now = time.time()
        with self._lock:
            self._sweep(now)
            expires_at = self._revoked.get(jti)
            if expires_at is not None and expires_at > now:
                return False
            self._revoked[jti] = now + ttl_seconds
            return True

    def is_revoked(self, jti: str) -> bool:
        now = time.time()
        with self._lock:
            expires_at = self._revoked.get(jti)
            if expires_at is None:
                return False
            if expires_at <= now:
                del self._revoked[jti]
                return False
            return True

    def track_refresh(self, account_id: str, jti: str, ttl_seconds: int) -> None:
        now = time.time()
        with self._lock:
            self._sweep(now)
            self._tracked.setdefault(account_id, {})[jti] = now + ttl_seconds

    def revoke_account_tokens(self, account_id: str, ttl_seconds: int) -> int:
        now = time.time()
        with self._lock:
            live = [jti for jti, expires_at in self._tracked.pop(account_id, {}).items() if expires_at > now]
            for jti in live:
                self._revoked[jti] = now + ttl_seconds
        return len(live)

    def put_one_time(self, purpose: str, token_hash: str, payload: dict[str, Any], ttl_seconds: int) -> None:
        now = time.time()
        with self._lock:
            self._sweep(now)
            self._one_time[(purpose, token_hash)] = (now + ttl_seconds, dict(payload))

    def pop_one_time(self, purpose: str, token_hash: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._one_time.pop((purpose, token_hash), None)
        if entry is None:
            return None
        expires_at, payload = entry
        if expires_at <= time.time():
            return None
        return payload


class RedisTokenStore:
    """Token store shared across processes through Redis keys with expiries."""

    def __init__(self, client: Redis, *, key_prefix: str = "auth") -> None:
        self._client = client
        self._key_prefix = key_prefix

    def _key(self, *parts: str) -> str:
        return ":".join((self._key_prefix, *parts))

    def revoke(self, jti: str, ttl_seconds: int) -> bool:
        # SET NX makes the first revoker win when two refreshes race
        return bool(self._client.set(self._key("revoked", jti), "1", ex=max(1, ttl_seconds), nx=True))

    def is_revoked(self, jti: str) -> bool:
        return bool(self._client.exists(self._key("revoked", jti)))

    def track_refresh(self, account_id: str, jti: str, ttl_seconds: int) -> None:
        key = self._key("refresh", account_id)
        pipe = self._client.pipeline()
        pipe.sadd(key, jti)
        pipe.expire(key, max(1, ttl_seconds))
        pipe.execute()

    def revoke_account_tokens(self, account_id: str, ttl_seconds: int) -> int:
        key = self._key("refresh", account_id)
        # read and clear in one MULTI so a concurrent login is not dropped unrevoked
        pipe = self._client.pipeline(transaction=True)
        pipe.smembers(key)
        pipe.delete(key)
        members, _ = pipe.execute()
        if not members:
            return 0
        pipe = self._client.pipeline()
        for member in members:
            jti = member.decode("utf-8") if isinstance(member, bytes) else member
            pipe.set(self._key("revoked", jti), "1", ex=max(1, ttl_seconds))
        pipe.execute()
        return len(members)

    def put_one_time(self, purpose: str, token_hash: str, payload: dict[str, Any], ttl_seconds: int) -> None:
        self._client.set(self._key(purpose, token_hash), json.dumps(payload), ex=max(1, ttl_seconds))

    def pop_one_time(self, purpose: str, token_hash: str) -> dict[str, Any] | None:
        key = self._key(purpose, token_hash)
        pipe = self._client.pipeline(transaction=True)
        pipe.get(key)
        pipe.delete(key)
        raw, _ = pipe.execute()
        if raw is None:
            return None
        return json.loads(raw)


def build_token_store(settings: Settings) -> TokenStore:
    """Instantiate the configured token store backend, preferring Redis when available."""
    if settings.token_store_backend == "redis" and settings.redis_url:
        try:
            client = Redis.from_url(settings.redis_url)
            # ensure connectivity early to fail fast and fall back
            client.ping()
            logger.info("token store configured for redis backend")
            return RedisTokenStore(client)
        except RedisError as exc:
            logger.warning("redis token store unavailable, falling back to in-memory: %s", exc)

    logger.info("token store using in-memory backend")
    return InMemoryTokenStore()
