from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Set


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    username: str
    roles: Set[str] = field(default_factory=set)
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class LoginGrant:
    """One persistent-login grant: a device's series and its current token hash."""

    user_id: int
    series_id: str
    token_hash: str
    fingerprint: str = ""
    created: int = 0

    @property
    def key(self) -> tuple[int, str]:
        return (self.user_id, self.series_id)


@dataclass
class HostSession:
    id: str
    created_at: datetime
    expires_at: datetime
    user_id: Optional[int] = None
    flags: Dict[str, bool] = field(default_factory=dict)

    @classmethod
    def new(cls, ttl_minutes: int = 60) -> "HostSession":
        now = _utcnow()
        return cls(
            id=uuid.uuid4().hex,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    @property
    def is_guest(self) -> bool:
        return self.user_id is None
