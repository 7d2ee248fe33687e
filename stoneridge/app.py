from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from stoneridge.api.error_handling import register_exception_handlers
from stoneridge.api.schemas import Envelope
from stoneridge.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the offer-expiry worker on startup and stop it on shutdown."""
    from stoneridge.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.offer_sweep_enabled:
        try:
            await runtime.offer_sweeper.start()
        except Exception as exc:
            logger.error("startup_offer_sweeper_failed", error=str(exc))

    yield

    try:
        await runtime.offer_sweeper.stop()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    """Build the application shell.

    Route modules are mounted by the hosting application; this factory only
    installs error rendering, request correlation and the worker lifecycle.
    """
    app = FastAPI(title="StoneRidge Marketplace", version=__version__, lifespan=lifespan)
    register_exception_handlers(app)

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Take X-Request-ID from the client or mint one, and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        from stoneridge.service.runtime import get_runtime

        runtime = get_runtime()
        return Envelope(
            status="ok",
            data={
                "version": __version__,
                "store": type(runtime.store).__name__,
                "offer_sweeper_running": runtime.offer_sweeper.running,
            },
        ).model_dump()

    return app
