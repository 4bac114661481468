"""
Session Store
Transient per-call relay state keyed by carrier call sid, with expiry so
sessions abandoned by a crashed or silent connection do not live forever.
"""

import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

from pydantic import BaseModel, Field

from callbridge.core.config import settings
from callbridge.core.logging import get_logger
from callbridge.services.redis_service import get_redis

logger = get_logger(__name__)


class SessionState(BaseModel):
    """Serializable view of one in-progress call"""
    call_sid: str
    stream_sid: Optional[str] = None
    tenant_id: Optional[str] = None
    agent_id: Optional[str] = None
    direction: str = "inbound"
    status: str = "awaiting_stream_start"
    conversation_id: Optional[str] = None
    transferred: bool = False
    started_at: float = Field(default_factory=time.time)


class SessionStore(ABC):
    """
    Registry of live sessions.

    A missing key is not an error: callers fall back to the tenant store's
    call correlation index.
    """

    def __init__(self, ttl_seconds: int):
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    async def put(self, call_sid: str, state: SessionState) -> None:
        pass

    @abstractmethod
    async def get(self, call_sid: str) -> Optional[SessionState]:
        pass

    @abstractmethod
    async def remove(self, call_sid: str) -> None:
        pass

    @abstractmethod
    async def touch(self, call_sid: str) -> bool:
        """Restart the expiry clock of a live session. False if it is gone."""
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


class InMemorySessionStore(SessionStore):
    """Single-process session store. Expired entries are evicted lazily and by purge_expired()."""

    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.monotonic):
        super().__init__(ttl_seconds)
        self._clock = clock
        self._sessions: Dict[str, Tuple[SessionState, float]] = {}

    async def put(self, call_sid: str, state: SessionState) -> None:
        self._sessions[call_sid] = (state.model_copy(), self._clock() + self.ttl_seconds)

    async def get(self, call_sid: str) -> Optional[SessionState]:
        item = self._sessions.get(call_sid)
        if item is None:
            return None
        state, expires_at = item
        if self._clock() >= expires_at:
            del self._sessions[call_sid]
            logger.info(f"Session {call_sid} expired")
            return None
        return state.model_copy()

    async def remove(self, call_sid: str) -> None:
        self._sessions.pop(call_sid, None)

    async def touch(self, call_sid: str) -> bool:
        if await self.get(call_sid) is None:
            return False
        state, _ = self._sessions[call_sid]
        self._sessions[call_sid] = (state, self._clock() + self.ttl_seconds)
        return True

    async def count(self) -> int:
        self.purge_expired()
        return len(self._sessions)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [sid for sid, (_, expires_at) in self._sessions.items() if now >= expires_at]
        for call_sid in expired:
            del self._sessions[call_sid]
        if expired:
            logger.info(f"Evicted {len(expired)} abandoned session(s)")
        return len(expired)


class RedisSessionStore(SessionStore):
    """Session store shared between instances; Redis handles expiry."""

    def __init__(self, ttl_seconds: int, prefix: str = "callbridge:session"):
        super().__init__(ttl_seconds)
        self.prefix = prefix

    def _key(self, call_sid: str) -> str:
        return f"{self.prefix}:{call_sid}"

    async def put(self, call_sid: str, state: SessionState) -> None:
        client = await get_redis()
        await client.setex(self._key(call_sid), self.ttl_seconds, state.model_dump_json())

    async def get(self, call_sid: str) -> Optional[SessionState]:
        client = await get_redis()
        raw = await client.get(self._key(call_sid))
        return SessionState.model_validate_json(raw) if raw else None

    async def remove(self, call_sid: str) -> None:
        client = await get_redis()
        await client.delete(self._key(call_sid))

    async def touch(self, call_sid: str) -> bool:
        client = await get_redis()
        return bool(await client.expire(self._key(call_sid), self.ttl_seconds))

    async def count(self) -> int:
        client = await get_redis()
        total = 0
        async for _ in client.scan_iter(match=f"{self.prefix}:*"):
            total += 1
        return total


# Singleton
_session_store: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    """Get or create the session store singleton"""
    global _session_store
    if _session_store is None:
        if settings.storage_backend.lower() == "redis":
            _session_store = RedisSessionStore(settings.session_ttl_seconds)
        else:
            _session_store = InMemorySessionStore(settings.session_ttl_seconds)
    return _session_store


def set_session_store(store: Optional[SessionStore]) -> None:
    global _session_store
    _session_store = store
