from __future__ import annotations

from dataclasses import dataclass

from fastapi import APIRouter, Depends, Request

from persistlogin.api.schemas import (
    Envelope,
    IdentityResponse,
    LoginRequest,
    LogoutResponse,
    PersistentLoginClearResponse,
    PersistentLoginStats,
)
from persistlogin.logging import get_logger
from persistlogin.service.errors import AuthenticationError, ForbiddenError, ServerError
from persistlogin.service.identity import RequestContext
from persistlogin.service.runtime import get_runtime
from persistlogin.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


@dataclass
class Principal:
    ctx: RequestContext
    user: User


def request_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "login_ctx", None)
    if ctx is None:
        # Only reachable when the session middleware is not installed
        raise ServerError("request context unavailable")
    return ctx


async def get_principal(ctx: RequestContext = Depends(request_context)) -> Principal:
    runtime = get_runtime()
    user = await runtime.identity.current_user(ctx)
    if not user:
        raise AuthenticationError("not authenticated")
    return Principal(ctx=ctx, user=user)


async def get_admin_principal(principal: Principal = Depends(get_principal)) -> Principal:
    if "admin" not in principal.user.roles:
        raise ForbiddenError("admin access required")
    return principal


def _identity(ctx: RequestContext, user: User) -> IdentityResponse:
    runtime = get_runtime()
    return IdentityResponse(
        user_id=user.id,
        username=user.username,
        roles=sorted(user.roles),
        persistent=bool(ctx.session.flags.get(runtime.settings.persistent_id)),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, ctx: RequestContext = Depends(request_context)):
    """Authenticate with username and password.

    With automatic persistence the login listener issues the persistent
    cookie; otherwise it is issued only when ``remember`` is set.

    Raises:
        401: If credentials are invalid
        500: If the login could not be recorded
    """
    runtime = get_runtime()
    if not ctx.session.is_guest:
        # Switching identity retires the cookie bound to the previous one
        await runtime.identity.logout(ctx)
    user = await runtime.identity.login(ctx, body.username, body.password)
    if not user:
        raise AuthenticationError("invalid credentials")
    if body.remember and not runtime.settings.automatic:
        await runtime.engine.persist(ctx)
    if ctx.session.is_guest:
        raise ServerError("unable to establish login")
    return Envelope(status="ok", data=_identity(ctx, user))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(ctx: RequestContext = Depends(request_context)):
    runtime = get_runtime()
    await runtime.identity.logout(ctx)
    return Envelope(status="ok", data=LogoutResponse())


@router.post("/auth/logout-everywhere", response_model=Envelope, tags=["auth"])
async def logout_everywhere(principal: Principal = Depends(get_principal)):
    """Revoke every persistent login of the current user, then log out."""
    runtime = get_runtime()
    removed = runtime.engine.destroy_logins(principal.user.id)
    await runtime.identity.logout(principal.ctx)
    return Envelope(status="ok", data=LogoutResponse(revoked_logins=removed))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_principal)):
    return Envelope(status="ok", data=_identity(principal.ctx, principal.user))


@router.get("/admin/persistent-logins", response_model=Envelope, tags=["admin"])
async def persistent_login_stats(principal: Principal = Depends(get_admin_principal)):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=PersistentLoginStats(total=runtime.store.count_grants())
    )


@router.delete("/admin/persistent-logins", response_model=Envelope, tags=["admin"])
async def clear_persistent_logins(principal: Principal = Depends(get_admin_principal)):
    """Administrative clear of every stored persistent login."""
    runtime = get_runtime()
    removed = runtime.store.clear_grants()
    logger.info(
        "persistent_logins_cleared", removed=removed, admin_id=principal.user.id
    )
    return Envelope(status="ok", data=PersistentLoginClearResponse(removed=removed))
