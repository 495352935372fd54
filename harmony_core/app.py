from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from harmony_core.api.error_handling import register_exception_handlers
from harmony_core.api.routes import router
from harmony_core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start and stop the registration-window sweeper with the app."""
    global _sweep_task
    from harmony_core.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_registration_sweep(runtime, runtime.settings.registration_sweep_interval_seconds)
    )

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def _run_registration_sweep(runtime, interval_seconds: int) -> None:
    """Evict stale registration windows and purge expired pending registrations."""
    interval = max(interval_seconds, 1)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                evicted = runtime.registration_limiter.sweep()
                purged = await asyncio.to_thread(runtime.auth.cleanup_expired_registrations)
                logger.debug("registration_sweep", evicted=evicted, purged=purged)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("registration_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("registration_sweep_cancelled")


app = FastAPI(title="Harmony Core", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Use the client's X-Request-ID or a fresh UUID as the log correlation id."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from harmony_core.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "healthy",
        "version": __version__,
        "store": "memory" if runtime.settings.use_memory_store else "postgres",
        "gateway_configured": runtime.settings.gateway_configured,
    }


def create_app() -> FastAPI:
    return app
