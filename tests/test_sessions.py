from datetime import datetime, timedelta, timezone

from persistlogin.storage.models import HostSession
from persistlogin.storage.sessions import (
    MemorySessionBackend,
    _deserialize_session,
    _serialize_session,
    _ttl_seconds,
)


def test_session_serialization_keeps_identity_and_flags():
    session = HostSession.new(ttl_minutes=5)
    session.user_id = 3
    session.flags["persistent"] = True
    restored = _deserialize_session(_serialize_session(session))
    assert restored.id == session.id
    assert restored.user_id == 3
    assert restored.flags == {"persistent": True}
    assert restored.expires_at == session.expires_at


def test_ttl_is_clamped_to_one_second():
    past = datetime.now(timezone.utc) - timedelta(minutes=1)
    assert _ttl_seconds(past) == 1


async def test_memory_backend_round_trip():
    backend = MemorySessionBackend()
    session = HostSession.new()
    session.user_id = 9
    await backend.save(session)
    loaded = await backend.get(session.id)
    assert loaded.user_id == 9
    # Stored copies are detached from the caller's object
    loaded.user_id = None
    assert (await backend.get(session.id)).user_id == 9
    await backend.delete(session.id)
    assert await backend.get(session.id) is None


async def test_memory_backend_drops_expired_sessions():
    backend = MemorySessionBackend()
    session = HostSession.new()
    session.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    await backend.save(session)
    assert await backend.get(session.id) is None
