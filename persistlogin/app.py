from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from fastapi import FastAPI, Request

from persistlogin.api.error_handling import register_exception_handlers
from persistlogin.api.routes import router
from persistlogin.logging import get_logger, set_correlation_id
from persistlogin.service.cookies import CookieJar
from persistlogin.service.identity import RequestContext
from persistlogin.service.runtime import get_runtime
from persistlogin.storage.postgres import PostgresStore
from persistlogin.storage.sessions import RedisSessionBackend

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="persistlogin", version=__version__, lifespan=lifespan)


# Starlette runs the most recently added middleware first, so this one sits
# inside the correlation id middleware below.
@app.middleware("http")
async def persistent_login(request: Request, call_next):
    """Resolve the host session, run the persistent-login engine, flush cookies."""
    runtime = get_runtime()
    cookies = CookieJar(request.cookies)
    session = await runtime.identity.load_session(
        cookies.get(runtime.settings.session_cookie_name)
    )
    ctx = RequestContext(
        session=session,
        cookies=cookies,
        client_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    request.state.login_ctx = ctx
    await runtime.engine.handle_request(ctx)
    response = await call_next(request)
    cookies.apply(response)
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag logs and the response with the request's X-Request-ID."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Dependency checks for the grant store, session backend and filesystem."""
    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    if isinstance(runtime.store, PostgresStore):

        def _db_probe() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_probe)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        overall_healthy = overall_healthy and db_ok
    else:
        checks["database"] = {"status": "healthy", "type": "memory"}

    if isinstance(runtime.sessions, RedisSessionBackend):
        redis_ok = await _run_bounded("redis", runtime.sessions.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    fs_root = getattr(runtime.store, "fs_root", None)
    if fs_root:
        fs_path = Path(fs_root)

        def _fs_probe() -> None:
            if not fs_path.is_dir():
                raise FileNotFoundError(fs_path)
            health_file = fs_path / ".health_check"
            health_file.write_text(datetime.now(timezone.utc).isoformat())
            health_file.read_text()
            health_file.unlink(missing_ok=True)

        fs_ok = await _run_bounded("filesystem", _fs_probe)
        checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}
        overall_healthy = overall_healthy and fs_ok
    else:
        checks["filesystem"] = {"status": "not_configured"}

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
