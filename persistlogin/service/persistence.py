from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Callable, List, Optional, Protocol, Tuple

from persistlogin.config import Settings
from persistlogin.logging import get_logger
from persistlogin.service.cookies import CookieCodec, CookiePayload
from persistlogin.service.errors import (
    FingerprintMismatch,
    InvalidToken,
    MalformedCookie,
    RoleIneligible,
    TheftSuspected,
    UnknownSeries,
)
from persistlogin.service.fingerprint import FingerprintProvider
from persistlogin.service.identity import IdentityProvider, LoginOrigin, RequestContext
from persistlogin.service.tokens import TokenGenerator
from persistlogin.storage.errors import RotationConflict
from persistlogin.storage.models import LoginGrant, User

logger = get_logger(__name__)


class GrantStore(Protocol):
    def upsert_grant(
        self,
        user_id: int,
        series_id: str,
        token_hash: str,
        fingerprint: str,
        now: int,
        *,
        expected_token_hash: Optional[str] = None,
    ) -> LoginGrant: ...

    def find_grant(self, user_id: int, series_id: str) -> Optional[LoginGrant]: ...

    def list_user_grants(self, user_id: int) -> List[LoginGrant]: ...

    def delete_grant(self, user_id: int, series_id: str) -> bool: ...

    def delete_user_grants(self, user_id: int) -> int: ...

    def delete_grants_older_than(self, cutoff: int) -> int: ...

    def count_grants(self) -> int: ...

    def clear_grants(self) -> int: ...


class AttemptResult(str, Enum):
    """Outcome of one persistent-cookie login attempt."""

    SKIPPED = "skipped"
    NO_COOKIE = "no_cookie"
    STALE = "stale"
    THEFT_SUSPECTED = "theft_suspected"
    INELIGIBLE = "ineligible"
    AUTHENTICATED = "authenticated"
    CONFLICT = "conflict"
    ERROR = "error"


class LoginPersistenceEngine:
    """Rotating series/token persistent login.

    Every cookie login validates the presented public key against the stored
    HMAC for its series and, on success, rotates the token in place. A known
    series with a wrong token means the cookie was copied: every grant of that
    user is revoked.
    """

    def __init__(
        self,
        store: GrantStore,
        identity: IdentityProvider,
        settings: Settings,
        *,
        tokens: Optional[TokenGenerator] = None,
        fingerprints: Optional[FingerprintProvider] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.identity = identity
        self.settings = settings
        self.tokens = tokens or TokenGenerator(
            settings.persist_secret, settings.hash_algorithm
        )
        self.fingerprints = fingerprints or FingerprintProvider(settings.hash_algorithm)
        self.codec = CookieCodec()
        self.clock = clock
        self.logger = logger
        self._pruned = False
        self._prune_lock = threading.Lock()
        identity.add_login_listener(self.logged_in)
        identity.add_logout_listener(self.logged_out)

    def _now(self) -> int:
        return int(self.clock())

    # role gate
    def check_roles(self, user: User) -> bool:
        allowed = self.settings.roles
        if not allowed:
            return True
        return bool(set(user.roles) & allowed)

    # cookie helpers
    def _fingerprint(self, ctx: RequestContext) -> str:
        if not self.settings.use_fingerprint:
            return ""
        return self.fingerprints.compute(ctx.client_address, ctx.user_agent)

    def _read_cookie(self, ctx: RequestContext) -> Optional[CookiePayload]:
        raw = ctx.cookies.get(self.settings.cookie_name)
        if not raw:
            return None
        try:
            return self.codec.parse(raw)
        except MalformedCookie as exc:
            self.logger.debug("persistent_login_cookie_malformed", reason=exc.message)
            return None

    def _issue_cookie(
        self, ctx: RequestContext, user_id: int, series_id: str, public: str
    ) -> None:
        ctx.cookies.set(
            self.settings.cookie_name,
            self.codec.encode(user_id, series_id, public),
            max_age=self.settings.cookie_max_age,
            path="/",
            httponly=True,
            secure=self.settings.cookie_secure,
            samesite=self.settings.cookie_samesite,
        )

    def _clear_cookie(self, ctx: RequestContext) -> None:
        ctx.cookies.clear(self.settings.cookie_name, path="/")

    # persist / rotate
    async def _persist(
        self,
        ctx: RequestContext,
        existing_series: Optional[str] = None,
        *,
        expected_token_hash: Optional[str] = None,
    ) -> bool:
        user = await self.identity.current_user(ctx)
        if user is None:
            return False
        if not self.check_roles(user):
            self.logger.info("persistent_login_role_ineligible", user_id=user.id)
            return False
        public, private = self.tokens.generate()
        series_id = existing_series or self.tokens.new_series()
        self.store.upsert_grant(
            user.id,
            series_id,
            private,
            self._fingerprint(ctx),
            self._now(),
            expected_token_hash=expected_token_hash,
        )
        self._issue_cookie(ctx, user.id, series_id, public)
        self.logger.info(
            "persistent_login_rotated" if existing_series else "persistent_login_created",
            user_id=user.id,
            series=series_id,
        )
        return True

    async def persist(
        self,
        ctx: RequestContext,
        existing_series: Optional[str] = None,
        *,
        expected_token_hash: Optional[str] = None,
    ) -> bool:
        """Create a grant (or rotate ``existing_series``) and issue its cookie.

        Returns False when nothing was persisted: guest, ineligible role, or a
        collaborator failure. Failures drop the request back to Guest.
        """
        try:
            return await self._persist(
                ctx, existing_series, expected_token_hash=expected_token_hash
            )
        except RotationConflict as exc:
            self.logger.warning(
                "persistent_login_rotation_conflict", detail=exc.detail
            )
            await self._fall_back_to_guest(ctx)
            return False
        except Exception as exc:
            self.logger.error(
                "persistent_login_persist_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._clear_cookie(ctx)
            await self._fall_back_to_guest(ctx)
            return False

    async def _fall_back_to_guest(self, ctx: RequestContext) -> None:
        # Listeners are skipped so the fallback never touches stored grants
        await self.identity.logout(ctx, notify=False)

    # cookie login
    def _verify(
        self, ctx: RequestContext, payload: CookiePayload
    ) -> Tuple[LoginGrant, User]:
        grant = self.store.find_grant(payload.user_id, payload.series_id)
        if grant is None:
            raise UnknownSeries("unknown persistent login series")
        if not self.tokens.validate(payload.public_key, grant.token_hash):
            raise InvalidToken("persistent login token mismatch")
        if self.settings.use_fingerprint and grant.fingerprint != self._fingerprint(ctx):
            raise FingerprintMismatch("persistent login fingerprint mismatch")
        user = self.identity.directory.get_user(payload.user_id)
        if not user or not user.is_active:
            raise RoleIneligible("persistent login user unavailable")
        if not self.check_roles(user):
            raise RoleIneligible("user roles no longer allow persistent login")
        return grant, user

    async def attempt_login(self, ctx: RequestContext) -> AttemptResult:
        if not ctx.session.is_guest:
            return AttemptResult.SKIPPED
        payload = self._read_cookie(ctx)
        if payload is None:
            return AttemptResult.NO_COOKIE

        try:
            grant, user = self._verify(ctx, payload)
        except UnknownSeries:
            self.logger.info("persistent_login_stale_cookie", user_id=payload.user_id)
            self._clear_cookie(ctx)
            return AttemptResult.STALE
        except TheftSuspected as exc:
            self.logger.warning(
                "persistent_login_theft_suspected",
                user_id=payload.user_id,
                series=payload.series_id,
                reason=type(exc).__name__,
            )
            self._clear_cookie(ctx)
            try:
                self.destroy_logins(payload.user_id)
            except Exception as destroy_exc:
                self.logger.error(
                    "persistent_login_revoke_failed",
                    user_id=payload.user_id,
                    error=str(destroy_exc),
                )
            return AttemptResult.THEFT_SUSPECTED
        except RoleIneligible as exc:
            self.logger.info(
                "persistent_login_ineligible", user_id=payload.user_id, reason=exc.message
            )
            return AttemptResult.INELIGIBLE
        except Exception as exc:
            self.logger.error(
                "persistent_login_lookup_failed",
                user_id=payload.user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return AttemptResult.ERROR

        try:
            await self.identity.accept_verified(ctx, user)
            await self.identity.set_flag(ctx, self.settings.persistent_id, True)
            await self._persist(
                ctx, payload.series_id, expected_token_hash=grant.token_hash
            )
        except RotationConflict:
            # The concurrent winner's response carries the fresh cookie; leave ours alone
            self.logger.warning(
                "persistent_login_rotation_conflict", user_id=user.id
            )
            await self._fall_back_to_guest(ctx)
            return AttemptResult.CONFLICT
        except Exception as exc:
            self.logger.error(
                "persistent_login_attempt_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await self._fall_back_to_guest(ctx)
            return AttemptResult.ERROR

        self.logger.info("persistent_login_authenticated", user_id=user.id)
        return AttemptResult.AUTHENTICATED

    # host hooks
    async def logged_in(
        self, ctx: RequestContext, user: User, origin: LoginOrigin
    ) -> None:
        if origin is not LoginOrigin.CREDENTIAL:
            return
        if not self.settings.automatic:
            return
        await self.persist(ctx)

    async def logged_out(self, ctx: RequestContext) -> None:
        payload = self._read_cookie(ctx)
        try:
            if payload is not None:
                self.store.delete_grant(payload.user_id, payload.series_id)
        except Exception as exc:
            self.logger.error(
                "persistent_login_logout_delete_failed",
                user_id=payload.user_id,
                error=str(exc),
            )
        finally:
            self._clear_cookie(ctx)

    # bulk maintenance
    def destroy_logins(self, user_id: int) -> int:
        removed = self.store.delete_user_grants(user_id)
        self.logger.info("persistent_logins_destroyed", user_id=user_id, removed=removed)
        return removed

    def prune_logins(self) -> int:
        cutoff = self._now() - self.settings.cookie_max_age
        try:
            removed = self.store.delete_grants_older_than(cutoff)
        except Exception as exc:
            self.logger.error("persistent_login_prune_failed", error=str(exc))
            return 0
        if removed:
            self.logger.info("persistent_logins_pruned", removed=removed, cutoff=cutoff)
        return removed

    async def handle_request(self, ctx: RequestContext) -> Optional[AttemptResult]:
        """Per-request entry point: one-time prune, then a cookie login attempt."""
        if not self._pruned:
            with self._prune_lock:
                run_prune = not self._pruned
                self._pruned = True
            if run_prune:
                self.prune_logins()
        if not ctx.session.is_guest:
            return None
        return await self.attempt_login(ctx)


__all__ = ["AttemptResult", "GrantStore", "LoginPersistenceEngine"]
