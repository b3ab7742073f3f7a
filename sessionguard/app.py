from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from sessionguard.api.error_handling import register_exception_handlers
from sessionguard.api.routes import router
from sessionguard.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from sessionguard.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", audit_sink=runtime.settings.audit_sink.value)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="sessionguard", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with X-Request-ID (client supplied or generated) for log tracing."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    return {"status": "healthy", "version": __version__}


def create_app() -> FastAPI:
    return app
