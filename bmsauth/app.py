from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI

from bmsauth.api.error_handling import register_exception_handlers
from bmsauth.api.routes import router
from bmsauth.logging import get_logger, set_correlation_id
from bmsauth.storage.models import utcnow

logger = get_logger(__name__)

__version__ = "0.1.0"

SWEEP_INTERVAL_SECONDS = 300

_sweep_task: asyncio.Task | None = None


async def _run_expiry_sweep(interval_seconds: int) -> None:
    """Drop expired sessions, MFA tickets and throttle windows so the tables do not grow unbounded."""
    from bmsauth.service.runtime import get_runtime

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            runtime = get_runtime()
            sessions = runtime.store.delete_expired_sessions(utcnow())
            tickets = runtime.auth.cleanup_expired_tickets()
            windows = runtime.throttle.cleanup_expired()
            if sessions or tickets or windows:
                logger.info(
                    "expiry_sweep_completed",
                    sessions=sessions,
                    tickets=tickets,
                    throttle_windows=windows,
                )
    except asyncio.CancelledError:
        logger.info("expiry_sweep_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweep_task
    from bmsauth.service.runtime import get_runtime

    # Build the runtime up front so a missing AUTH_SECRET fails at startup.
    get_runtime()
    _sweep_task = asyncio.create_task(_run_expiry_sweep(SWEEP_INTERVAL_SECONDS))

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
    logger.info("runtime_shutdown_complete")


app = FastAPI(title="BMS Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with one id and echo it as X-Request-ID."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


def create_app() -> FastAPI:
    return app
