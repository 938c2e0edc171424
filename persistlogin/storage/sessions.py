from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

import redis.asyncio as aioredis
from redis import Redis

from persistlogin.storage.models import HostSession


def _serialize_session(session: HostSession) -> str:
    return json.dumps(
        {
            "id": session.id,
            "user_id": session.user_id,
            "flags": session.flags,
            "created_at": session.created_at.isoformat(),
            "expires_at": session.expires_at.isoformat(),
        }
    )


def _deserialize_session(raw: str) -> HostSession:
    data = json.loads(raw)
    user_id = data.get("user_id")
    return HostSession(
        id=data["id"],
        user_id=int(user_id) if user_id is not None else None,
        flags=dict(data.get("flags") or {}),
        created_at=datetime.fromisoformat(data["created_at"]),
        expires_at=datetime.fromisoformat(data["expires_at"]),
    )


def _ttl_seconds(expires_at: datetime) -> int:
    """Clamp to at least one second; Redis rejects zero or negative TTLs."""
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


class SessionBackend(Protocol):
    async def get(self, session_id: str) -> Optional[HostSession]: ...

    async def save(self, session: HostSession) -> None: ...

    async def delete(self, session_id: str) -> None: ...

    async def close(self) -> None: ...


class MemorySessionBackend:
    """Process-local host sessions for tests and single-worker development."""

    def __init__(self) -> None:
        self._sessions: Dict[str, str] = {}
        self._lock = threading.Lock()

    async def get(self, session_id: str) -> Optional[HostSession]:
        with self._lock:
            raw = self._sessions.get(session_id)
        if raw is None:
            return None
        session = _deserialize_session(raw)
        if session.expires_at <= datetime.now(timezone.utc):
            await self.delete(session_id)
            return None
        return session

    async def save(self, session: HostSession) -> None:
        with self._lock:
            self._sessions[session.id] = _serialize_session(session)

    async def delete(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    async def close(self) -> None:
        with self._lock:
            self._sessions.clear()


class RedisSessionBackend:
    """Redis-held host sessions shared across workers."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _key(session_id: str) -> str:
        return f"auth:host_session:{session_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary event loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, session_id: str) -> Optional[HostSession]:
        raw = await self.client.get(self._key(session_id))
        if not raw:
            return None
        return _deserialize_session(raw)

    async def save(self, session: HostSession) -> None:
        await self.client.set(
            self._key(session.id),
            _serialize_session(session),
            ex=_ttl_seconds(session.expires_at),
        )

    async def delete(self, session_id: str) -> None:
        await self.client.delete(self._key(session_id))

    async def close(self) -> None:
        await self.client.aclose()
