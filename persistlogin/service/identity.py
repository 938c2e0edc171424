from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from persistlogin.config import Settings
from persistlogin.logging import get_logger
from persistlogin.service.cookies import CookieJar
from persistlogin.storage.models import HostSession, User
from persistlogin.storage.sessions import SessionBackend

logger = get_logger(__name__)


class LoginOrigin(str, Enum):
    """How the identity of a login was established."""

    CREDENTIAL = "credential"
    PERSISTENT_COOKIE = "persistent_cookie"


@dataclass
class RequestContext:
    session: HostSession
    cookies: CookieJar
    client_address: Optional[str] = None
    user_agent: Optional[str] = None


class UserDirectory(Protocol):
    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_roles(self, user_id: int) -> set[str]: ...

    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]: ...


LoginListener = Callable[[RequestContext, User, LoginOrigin], Awaitable[None]]
LogoutListener = Callable[[RequestContext], Awaitable[None]]


class IdentityProvider:
    """Host session identity: credential login, pre-verified login and logout."""

    def __init__(
        self,
        directory: UserDirectory,
        sessions: SessionBackend,
        settings: Settings,
    ) -> None:
        self.directory = directory
        self.sessions = sessions
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._login_listeners: List[LoginListener] = []
        self._logout_listeners: List[LogoutListener] = []
        self.logger = logger

    def add_login_listener(self, listener: LoginListener) -> None:
        self._login_listeners.append(listener)

    def add_logout_listener(self, listener: LogoutListener) -> None:
        self._logout_listeners.append(listener)

    async def load_session(self, session_id: Optional[str]) -> HostSession:
        """Return the stored session for ``session_id`` or a fresh unsaved one."""
        if session_id:
            session = await self.sessions.get(session_id)
            if session:
                return session
        return HostSession.new(ttl_minutes=self.settings.session_ttl_minutes)

    async def _save(self, ctx: RequestContext) -> None:
        await self.sessions.save(ctx.session)
        if ctx.cookies.get(self.settings.session_cookie_name) != ctx.session.id:
            ctx.cookies.set(
                self.settings.session_cookie_name,
                ctx.session.id,
                max_age=self.settings.session_ttl_minutes * 60,
                httponly=True,
                secure=self.settings.cookie_secure,
                samesite="lax",
            )

    async def current_user(self, ctx: RequestContext) -> Optional[User]:
        if ctx.session.is_guest:
            return None
        user = self.directory.get_user(ctx.session.user_id)
        if not user or not user.is_active:
            return None
        return user

    async def set_flag(self, ctx: RequestContext, name: str, value: bool) -> None:
        if value:
            ctx.session.flags[name] = True
        else:
            ctx.session.flags.pop(name, None)
        await self._save(ctx)

    async def _establish(
        self, ctx: RequestContext, user: User, origin: LoginOrigin
    ) -> None:
        # A login always starts a new session; the presented id is discarded
        await self.sessions.delete(ctx.session.id)
        ctx.session = HostSession.new(ttl_minutes=self.settings.session_ttl_minutes)
        ctx.session.user_id = user.id
        await self._save(ctx)
        self.logger.info("login_established", user_id=user.id, origin=origin.value)
        for listener in self._login_listeners:
            await listener(ctx, user, origin)

    async def login(
        self, ctx: RequestContext, username: str, password: str
    ) -> Optional[User]:
        """Credential login; returns None on unknown user or bad password."""
        user = self.directory.get_user_by_username(username)
        if not user or not user.is_active or not self.verify_password(user.id, password):
            return None
        await self._establish(ctx, user, LoginOrigin.CREDENTIAL)
        return user

    async def accept_verified(self, ctx: RequestContext, user: User) -> None:
        """Adopt an identity whose proof was checked elsewhere (no password)."""
        await self._establish(ctx, user, LoginOrigin.PERSISTENT_COOKIE)

    async def logout(self, ctx: RequestContext, *, notify: bool = True) -> None:
        if notify:
            for listener in self._logout_listeners:
                await listener(ctx)
        user_id = ctx.session.user_id
        ctx.session.user_id = None
        ctx.session.flags.clear()
        await self._save(ctx)
        if user_id is not None:
            self.logger.info("logout", user_id=user_id, notified=notify)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: int, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.directory.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: int, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.directory.save_password(user_id, pwd_hash, algo)


__all__ = [
    "IdentityProvider",
    "LoginOrigin",
    "RequestContext",
    "UserDirectory",
]
