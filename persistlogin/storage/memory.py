from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from persistlogin.logging import get_logger
from persistlogin.storage.errors import ConstraintViolation, RotationConflict
from persistlogin.storage.models import LoginGrant, User


class MemoryStore:
    """In-memory user directory and grant store, snapshotted to a JSON file."""

    def __init__(self, fs_root: str = "/tmp/persistlogin") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, tuple[str, str]] = {}
        self.grants: Dict[Tuple[int, str], LoginGrant] = {}
        self._user_id_seq: int = 1
        # Thread lock for sequence counters to prevent race conditions
        self._seq_lock = threading.Lock()
        # RLock for all data operations; nested acquisition within one thread is allowed
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _next_user_id(self) -> int:
        with self._seq_lock:
            value = self._user_id_seq
            self._user_id_seq += 1
            return value

    # users
    def create_user(
        self,
        username: str,
        *,
        roles: Optional[Iterable[str]] = None,
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=self._next_user_id(),
                username=username,
                roles=set(roles or ()),
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.username == username), None)

    def get_user_roles(self, user_id: int) -> set[str]:
        with self._data_lock:
            user = self.users.get(user_id)
            return set(user.roles) if user else set()

    def set_user_roles(self, user_id: int, roles: Iterable[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.roles = set(roles)
            self._persist_state()
            return user

    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # persistent login grants
    def upsert_grant(
        self,
        user_id: int,
        series_id: str,
        token_hash: str,
        fingerprint: str,
        now: int,
        *,
        expected_token_hash: Optional[str] = None,
    ) -> LoginGrant:
        key = (user_id, series_id)
        with self._data_lock:
            existing = self.grants.get(key)
            if expected_token_hash is not None and (
                existing is None or existing.token_hash != expected_token_hash
            ):
                raise RotationConflict(
                    "grant rotated concurrently",
                    {"user_id": user_id},
                )
            if existing is None:
                grant = LoginGrant(
                    user_id=user_id,
                    series_id=series_id,
                    token_hash=token_hash,
                    fingerprint=fingerprint or "",
                    created=int(now),
                )
                self.grants[key] = grant
            else:
                existing.token_hash = token_hash
                existing.fingerprint = fingerprint or ""
                existing.created = int(now)
                grant = existing
            self._persist_state()
            return LoginGrant(**vars(grant))

    def find_grant(self, user_id: int, series_id: str) -> Optional[LoginGrant]:
        with self._data_lock:
            grant = self.grants.get((user_id, series_id))
            # Copies keep callers from mutating stored rows outside the lock
            return LoginGrant(**vars(grant)) if grant else None

    def list_user_grants(self, user_id: int) -> List[LoginGrant]:
        with self._data_lock:
            rows = [LoginGrant(**vars(g)) for g in self.grants.values() if g.user_id == user_id]
            return sorted(rows, key=lambda g: g.created, reverse=True)

    def delete_grant(self, user_id: int, series_id: str) -> bool:
        with self._data_lock:
            removed = self.grants.pop((user_id, series_id), None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_grants(self, user_id: int) -> int:
        with self._data_lock:
            stale = [key for key in self.grants if key[0] == user_id]
            for key in stale:
                self.grants.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_grants_older_than(self, cutoff: int) -> int:
        with self._data_lock:
            stale = [key for key, grant in self.grants.items() if grant.created <= cutoff]
            for key in stale:
                self.grants.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    def count_grants(self) -> int:
        with self._data_lock:
            return len(self.grants)

    def clear_grants(self) -> int:
        with self._data_lock:
            removed = len(self.grants)
            self.grants.clear()
            self._persist_state()
            return removed

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "grants": [self._serialize_grant(g) for g in self.grants.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            int(u["id"]): self._deserialize_user(u) for u in data.get("users", [])
        }
        self.credentials = {
            int(entry["user_id"]): (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.grants = {}
        for grant_data in data.get("grants", []):
            grant = self._deserialize_grant(grant_data)
            self.grants[grant.key] = grant
        self._user_id_seq = max(self.users, default=0) + 1
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "roles": sorted(user.roles),
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=int(data["id"]),
            username=data["username"],
            roles=set(data.get("roles", [])),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    @staticmethod
    def _serialize_grant(grant: LoginGrant) -> dict:
        return {
            "user_id": grant.user_id,
            "series_id": grant.series_id,
            "token_hash": grant.token_hash,
            "fingerprint": grant.fingerprint,
            "created": grant.created,
        }

    @staticmethod
    def _deserialize_grant(data: dict) -> LoginGrant:
        return LoginGrant(
            user_id=int(data["user_id"]),
            series_id=data["series_id"],
            token_hash=data["token_hash"],
            fingerprint=data.get("fingerprint") or "",
            created=int(data.get("created", 0)),
        )
