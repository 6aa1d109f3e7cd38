# src/clinic_backend/sessions.py

import asyncio
import contextlib
import logging
import time
import typing
from abc import ABC, abstractmethod

from fastapi import Request
from redis.asyncio import Redis
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from .config import Settings
from .session_data import SessionData

logger = logging.getLogger(__name__)

Clock = typing.Callable[[], float]


class SessionStore(ABC):
    """Keyed store of server-side sessions.

    Expiry is inactivity based and enforced on ``load``. ``lock`` gives
    mutual exclusion for one session id only; different ids never contend.
    """

    def __init__(self, clock: Clock = time.time):
        self.clock = clock

    @abstractmethod
    async def load(self, session_id: str) -> typing.Optional[SessionData]:
        ...

    @abstractmethod
    async def save(self, session: SessionData) -> None:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        ...

    @abstractmethod
    def lock(self, session_id: str) -> typing.AsyncContextManager[None]:
        ...

    @abstractmethod
    async def purge_expired(self) -> int:
        ...

    async def close(self) -> None:
        return None


# --- In-Memory Session Store Implementation ---
class InMemorySessionStore(SessionStore):
    def __init__(self, clock: Clock = time.time):
        super().__init__(clock)
        self._sessions: typing.Dict[str, SessionData] = {}
        self._locks: typing.Dict[str, asyncio.Lock] = {}
        self._lock_users: typing.Dict[str, int] = {}

    async def load(self, session_id: str) -> typing.Optional[SessionData]:
        stored = self._sessions.get(session_id)
        if stored is None:
            return None
        if stored.is_expired(self.clock()):
            logger.debug("Session %s... expired on access", session_id[:8])
            self._sessions.pop(session_id, None)
            return None
        # Handlers mutate their own copy; nothing is visible to other
        # requests until save().
        return stored.snapshot()

    async def save(self, session: SessionData) -> None:
        self._sessions[session.session_id] = session.snapshot()

    async def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    @contextlib.asynccontextmanager
    async def lock(self, session_id: str) -> typing.AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                del self._locks[session_id]

    async def purge_expired(self) -> int:
        now = self.clock()
        expired = [sid for sid, session in self._sessions.items() if session.is_expired(now)]
        for sid in expired:
            self._sessions.pop(sid, None)
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)


# --- Redis Session Store Implementation ---
class RedisSessionStore(SessionStore):
    """Process-external store; Redis key TTLs double as the inactivity expiry."""

    def __init__(
            self,
            redis_url: str = "redis://localhost:6379/0",
            prefix: str = "clinic:session",
            lock_timeout: float = 30.0,
            lock_wait: float = 10.0,
            clock: Clock = time.time,
            redis_client: typing.Optional[Redis] = None,
    ):
        super().__init__(clock)
        self._prefix = prefix
        self._lock_timeout = lock_timeout
        self._lock_wait = lock_wait
        self._client = redis_client or Redis.from_url(redis_url, decode_responses=True)

    def _session_key(self, session_id: str) -> str:
        return f"{self._prefix}:{session_id}"

    def _lock_key(self, session_id: str) -> str:
        return f"{self._prefix}:lock:{session_id}"

    async def load(self, session_id: str) -> typing.Optional[SessionData]:
        raw = await self._client.get(self._session_key(session_id))
        if raw is None:
            return None
        session = SessionData.model_validate_json(raw)
        if session.is_expired(self.clock()):
            await self.delete(session_id)
            return None
        return session

    async def save(self, session: SessionData) -> None:
        ttl = max(1, int(session.expires_at() - self.clock()))
        await self._client.set(self._session_key(session.session_id), session.model_dump_json(), ex=ttl)

    async def delete(self, session_id: str) -> None:
        await self._client.delete(self._session_key(session_id))

    @contextlib.asynccontextmanager
    async def lock(self, session_id: str) -> typing.AsyncIterator[None]:
        async with self._client.lock(
                self._lock_key(session_id),
                timeout=self._lock_timeout,
                blocking_timeout=self._lock_wait,
        ):
            yield

    async def purge_expired(self) -> int:
        # Redis evicts expired keys itself.
        return 0

    async def close(self) -> None:
        await self._client.aclose()


def build_session_store(settings: Settings) -> SessionStore:
    if settings.SESSION_BACKEND == "redis":
        return RedisSessionStore(redis_url=settings.REDIS_URL, prefix=settings.SESSION_REDIS_PREFIX)
    return InMemorySessionStore()


async def sweep_expired_sessions(store: SessionStore, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            purged = await store.purge_expired()
        except Exception:
            logger.exception("Session sweep failed")
            continue
        if purged:
            logger.info("Session sweep removed %d expired session(s)", purged)


# --- Session Middleware ---
class SessionMiddleware(BaseHTTPMiddleware):
    """Attach a server-side session to every request.

    The session is resolved from the cookie and held under its per-session
    lock for the whole request. A fresh session is only stored, and the
    cookie only emitted, once a handler writes to it.
    """

    def __init__(self, app, store: SessionStore, settings: Settings):
        super().__init__(app)
        self.store = store
        self.settings = settings

    async def dispatch(self, request, call_next):
        session_id = request.cookies.get(self.settings.SESSION_COOKIE_NAME)
        if not session_id:
            return await self._handle(request, call_next, self._new_session())

        async with self.store.lock(session_id):
            session = await self.store.load(session_id)
            if session is None:
                session = self._new_session()
            return await self._handle(request, call_next, session)

    def _new_session(self) -> SessionData:
        return SessionData.create(
            max_inactive_interval=self.settings.SESSION_DEFAULT_MAX_INACTIVE_SECONDS,
            now=self.store.clock(),
        )

    async def _persist(self, session: SessionData) -> bool:
        """Write the session back to the store; True when it should have a cookie."""
        if session.invalidated:
            if not session.is_new:
                await self.store.delete(session.session_id)
            return False
        if session.is_new and not session.modified:
            return False
        session.touch(self.store.clock())
        await self.store.save(session)
        return True

    async def _handle(self, request, call_next, session: SessionData) -> StarletteResponse:
        request.state.session = session
        try:
            response: StarletteResponse = await call_next(request)
        except Exception:
            # Changes made before the failure still count, e.g. a consumed login nonce.
            await self._persist(session)
            raise

        keep_cookie = await self._persist(session)
        if session.invalidated:
            response.delete_cookie(
                self.settings.SESSION_COOKIE_NAME,
                path="/",
                secure=self.settings.SESSION_COOKIE_SECURE,
                httponly=True,
                samesite=self.settings.SESSION_COOKIE_SAMESITE,
            )
            return response
        if not keep_cookie:
            return response

        response.set_cookie(
            self.settings.SESSION_COOKIE_NAME,
            session.session_id,
            max_age=session.max_inactive_interval,
            path="/",
            httponly=True,
            secure=self.settings.SESSION_COOKIE_SECURE,
            samesite=self.settings.SESSION_COOKIE_SAMESITE,
        )
        return response


def get_session(request: Request) -> SessionData:
    return request.state.session
