from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from idbadge.api.error_handling import register_exception_handlers
from idbadge.api.routes import router
from idbadge.logging import bind_request_id, get_logger

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from idbadge.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", store_type=type(runtime.store).__name__)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


app = FastAPI(title="idbadge", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def request_id_middleware(request, call_next):
    """Bind ``X-Request-ID`` (or a fresh id) to the request's logs and echo it back."""
    request_id = bind_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from idbadge.service.runtime import get_runtime

    runtime = get_runtime()
    store_ok = True
    try:
        await runtime.store.get("identity_id", "__healthz__")
    except Exception as exc:
        store_ok = False
        logger.error("healthz_store_failed", error_type=type(exc).__name__, error=str(exc))
    return {
        "status": "ok" if store_ok else "degraded",
        "version": __version__,
        "store": type(runtime.store).__name__,
    }
