"""
ScanMaster - Session Store

Ephemeral, TTL-bounded storage shared by every node of the fleet:
- Session records (one per principal, keyed by principal id)
- Password-version cache entries
- Per-credential revocation markers (keyed by jti)

Backends:
- RedisSessionStore: redis.asyncio, JSON payloads, per-key atomic commands
- MemorySessionStore: process-local dict with expiry (development and tests)

The Principal Store remains the source of truth for password versions;
this store only caches them, and never lets a cached version go backwards.
"""

import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Protocol, Tuple, Union

import redis.asyncio as aioredis
from loguru import logger
from pydantic import BaseModel, Field
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from scanmaster.config import settings
from scanmaster.errors import Internal, NotFound, Timeout, Unavailable


TTL = Union[int, float, timedelta]

SESSION_KEY = "session:principal:{}"
PASSWORD_VERSION_KEY = "password_version:{}"
REVOKED_KEY = "revoked:token:{}"


class SessionData(BaseModel):
    """
    Server-side session record for a logged-in principal.

    Attributes:
        principal_id: Owner of the session
        roles: Role names at login/refresh time
        permissions: "resource:action" keys at login/refresh time
        login_time: When the session was created
        last_active: Last successful validation or refresh
        access_jti: jti of the most recently issued access credential
        refresh_jti: jti of the refresh credential issued alongside it
    """
    principal_id: int
    username: str
    email: str = ""
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    login_time: datetime = Field(default_factory=datetime.utcnow)
    last_active: datetime = Field(default_factory=datetime.utcnow)
    client_ip: str = ""
    user_agent: str = ""
    access_jti: str = ""
    refresh_jti: str = ""


def ttl_seconds(ttl: TTL) -> int:
    """Whole seconds for a TTL, never less than one."""
    if isinstance(ttl, timedelta):
        ttl = ttl.total_seconds()
    return max(1, int(ttl))


class SessionStore(Protocol):
    """Operations every Session Store backend provides."""

    async def store_session(self, principal_id: int, data: SessionData, ttl: TTL) -> None: ...

    async def get_session(self, principal_id: int) -> SessionData: ...

    async def delete_session(self, principal_id: int) -> None: ...

    async def delete_all_sessions_for(self, principal_id: int) -> None: ...

    async def list_sessions(self, principal_id: int) -> List[SessionData]: ...

    async def touch_session(self, principal_id: int, ttl: TTL) -> SessionData: ...

    async def store_password_version(self, principal_id: int, version: int, ttl: TTL) -> int: ...

    async def get_password_version(self, principal_id: int) -> int: ...

    async def delete_password_version(self, principal_id: int) -> None: ...

    async def mark_revoked(self, jti: str, ttl: TTL) -> None: ...

    async def is_revoked(self, jti: str) -> bool: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class MemorySessionStore:
    """
    In-process Session Store.

    Entries expire on read, and every write past the sweep interval drops
    all expired entries. Only suitable for a single process; a fleet must
    share a RedisSessionStore.

    Args:
        clock: Monotonic time source in seconds (injectable for tests)
        sweep_interval: Minimum seconds between expiry sweeps
    """

    def __init__(self, clock=time.monotonic, sweep_interval: float = 60.0):
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._entries: Dict[str, Tuple[object, float]] = {}
        self._lock = threading.RLock()
        self._next_sweep = clock() + sweep_interval

    def size(self) -> int:
        """Number of stored entries, expired or not."""
        with self._lock:
            return len(self._entries)

    def _put(self, key: str, value, ttl: TTL) -> None:
        now = self._clock()
        if now >= self._next_sweep:
            self._sweep(now)
        self._entries[key] = (value, now + ttl_seconds(ttl))

    def _sweep(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self._sweep_interval
        if expired:
            logger.debug("Swept {} expired session store entries", len(expired))

    def _get(self, key: str):
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def store_session(self, principal_id: int, data: SessionData, ttl: TTL) -> None:
        with self._lock:
            self._put(SESSION_KEY.format(principal_id), data.model_copy(deep=True), ttl)

    async def get_session(self, principal_id: int) -> SessionData:
        with self._lock:
            data = self._get(SESSION_KEY.format(principal_id))
        if data is None:
            raise NotFound(f"session for principal {principal_id} not found")
        return data.model_copy(deep=True)

    async def delete_session(self, principal_id: int) -> None:
        with self._lock:
            self._entries.pop(SESSION_KEY.format(principal_id), None)

    async def delete_all_sessions_for(self, principal_id: int) -> None:
        await self.delete_session(principal_id)

    async def list_sessions(self, principal_id: int) -> List[SessionData]:
        try:
            return [await self.get_session(principal_id)]
        except NotFound:
            return []

    async def touch_session(self, principal_id: int, ttl: TTL) -> SessionData:
        key = SESSION_KEY.format(principal_id)
        with self._lock:
            data = self._get(key)
            if data is None:
                raise NotFound(f"session for principal {principal_id} not found")
            data.last_active = datetime.utcnow()
            self._put(key, data, ttl)
            return data.model_copy(deep=True)

    async def store_password_version(self, principal_id: int, version: int, ttl: TTL) -> int:
        key = PASSWORD_VERSION_KEY.format(principal_id)
        with self._lock:
            current = self._get(key)
            if current is not None and current > version:
                version = current
            self._put(key, version, ttl)
            return version

    async def get_password_version(self, principal_id: int) -> int:
        with self._lock:
            version = self._get(PASSWORD_VERSION_KEY.format(principal_id))
        if version is None:
            raise NotFound(f"password version for principal {principal_id} not cached")
        return version

    async def delete_password_version(self, principal_id: int) -> None:
        with self._lock:
            self._entries.pop(PASSWORD_VERSION_KEY.format(principal_id), None)

    async def mark_revoked(self, jti: str, ttl: TTL) -> None:
        with self._lock:
            self._put(REVOKED_KEY.format(jti), True, ttl)

    async def is_revoked(self, jti: str) -> bool:
        with self._lock:
            return self._get(REVOKED_KEY.format(jti)) is not None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()


# Keeps the cached version monotonic: never overwrite a higher value
_STORE_VERSION_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and tonumber(current) > tonumber(ARGV[1]) then
    redis.call('EXPIRE', KEYS[1], ARGV[2])
    return tonumber(current)
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[2])
return tonumber(ARGV[1])
"""


class RedisSessionStore:
    """
    Redis-backed Session Store shared by every node.

    Timeouts surface as Timeout, connection failures as Unavailable.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        key_prefix: Optional[str] = None,
        socket_timeout: Optional[float] = None,
        client=None,
    ):
        self._url = url or settings.REDIS_URL
        self._key_prefix = settings.REDIS_KEY_PREFIX if key_prefix is None else key_prefix
        timeout = socket_timeout or settings.STORE_TIMEOUT_SECONDS
        self._redis = client or aioredis.from_url(
            self._url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=True,
        )
        self._store_version = self._redis.register_script(_STORE_VERSION_SCRIPT)
        logger.info("Redis session store configured (prefix {})", self._key_prefix)

    def _key(self, template: str, ident) -> str:
        return f"{self._key_prefix}{template.format(ident)}"

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except RedisTimeoutError as exc:
            raise Timeout(f"session store: {operation} timed out") from exc
        except RedisConnectionError as exc:
            raise Unavailable(f"session store: {operation}: {exc}") from exc
        except RedisError as exc:
            raise Internal(f"session store: {operation}: {exc}") from exc

    async def store_session(self, principal_id: int, data: SessionData, ttl: TTL) -> None:
        with self._guard("store session"):
            await self._redis.set(
                self._key(SESSION_KEY, principal_id),
                data.model_dump_json(),
                ex=ttl_seconds(ttl),
            )

    async def get_session(self, principal_id: int) -> SessionData:
        with self._guard("get session"):
            raw = await self._redis.get(self._key(SESSION_KEY, principal_id))
        if raw is None:
            raise NotFound(f"session for principal {principal_id} not found")
        return SessionData.model_validate_json(raw)

    async def delete_session(self, principal_id: int) -> None:
        with self._guard("delete session"):
            await self._redis.delete(self._key(SESSION_KEY, principal_id))

    async def delete_all_sessions_for(self, principal_id: int) -> None:
        await self.delete_session(principal_id)

    async def list_sessions(self, principal_id: int) -> List[SessionData]:
        try:
            return [await self.get_session(principal_id)]
        except NotFound:
            return []

    async def touch_session(self, principal_id: int, ttl: TTL) -> SessionData:
        data = await self.get_session(principal_id)
        data.last_active = datetime.utcnow()
        with self._guard("touch session"):
            # XX: never resurrect a session deleted in the meantime
            written = await self._redis.set(
                self._key(SESSION_KEY, principal_id),
                data.model_dump_json(),
                ex=ttl_seconds(ttl),
                xx=True,
            )
        if not written:
            raise NotFound(f"session for principal {principal_id} not found")
        return data

    async def store_password_version(self, principal_id: int, version: int, ttl: TTL) -> int:
        with self._guard("store password version"):
            stored = await self._store_version(
                keys=[self._key(PASSWORD_VERSION_KEY, principal_id)],
                args=[int(version), ttl_seconds(ttl)],
            )
        return int(stored)

    async def get_password_version(self, principal_id: int) -> int:
        with self._guard("get password version"):
            raw = await self._redis.get(self._key(PASSWORD_VERSION_KEY, principal_id))
        if raw is None:
            raise NotFound(f"password version for principal {principal_id} not cached")
        try:
            return int(raw)
        except ValueError as exc:
            raise Internal(f"session store: corrupt password version {raw!r}") from exc

    async def delete_password_version(self, principal_id: int) -> None:
        with self._guard("delete password version"):
            await self._redis.delete(self._key(PASSWORD_VERSION_KEY, principal_id))

    async def mark_revoked(self, jti: str, ttl: TTL) -> None:
        with self._guard("mark revoked"):
            await self._redis.set(self._key(REVOKED_KEY, jti), "1", ex=ttl_seconds(ttl))

    async def is_revoked(self, jti: str) -> bool:
        with self._guard("check revoked"):
            return bool(await self._redis.exists(self._key(REVOKED_KEY, jti)))

    async def ping(self) -> bool:
        with self._guard("ping"):
            return bool(await self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()


def create_session_store(backend: Optional[str] = None) -> SessionStore:
    """
    Build the configured Session Store backend.

    Args:
        backend: "redis" or "memory" (defaults to SESSION_BACKEND)
    """
    backend = (backend or settings.SESSION_BACKEND).lower()
    if backend == "redis":
        return RedisSessionStore()
    if backend == "memory":
        logger.warning("Using in-memory session store; sessions are not shared across processes")
        return MemorySessionStore()
    raise ValueError(f"unknown SESSION_BACKEND {backend!r}")
