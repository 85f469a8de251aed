from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI

from hardyauth.api.error_handling import register_exception_handlers
from hardyauth.api.routes import router
from hardyauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

SESSION_SWEEP_INTERVAL_SECONDS = 300

_sweep_task: asyncio.Task | None = None


async def _run_session_sweep(interval_seconds: int) -> None:
    from hardyauth.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            get_runtime().auth.sweep_expired_sessions()
        except Exception as exc:
            logger.warning("session_sweep_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweep_task
    from hardyauth.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(_run_session_sweep(SESSION_SWEEP_INTERVAL_SECONDS))

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Hardy Auth Core", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate ``X-Request-ID`` (or a fresh UUID) into logs and the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def healthz():
    return {"status": "ok", "version": __version__}
