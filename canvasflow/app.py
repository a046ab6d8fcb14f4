from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from canvasflow.api.error_handling import register_exception_handlers
from canvasflow.api.routes import router
from canvasflow.config import Settings
from canvasflow.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    from canvasflow.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", ai_configured=runtime.ai_client.is_configured)

    yield

    try:
        await get_runtime().aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="canvasflow", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origin_list,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-User-ID", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind the request id to every log event of the request.

    Taken from the ``X-Request-ID`` header when present, otherwise a new
    UUID, and echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def healthz():
    from canvasflow.service.runtime import get_runtime

    runtime = get_runtime()
    store_ok = runtime.store.check_health()
    cache_ok = await runtime.cache.check_health() if runtime.cache is not None else None
    healthy = store_ok and cache_ok is not False
    return {
        "status": "healthy" if healthy else "degraded",
        "version": __version__,
        "storage": "ok" if store_ok else "unavailable",
        "cache": "disabled" if cache_ok is None else ("ok" if cache_ok else "unavailable"),
        "ai": "configured" if runtime.ai_client.is_configured else "offline",
    }
