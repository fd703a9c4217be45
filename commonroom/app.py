from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from commonroom.api.error_handling import register_exception_handlers
from commonroom.api.routes import router
from commonroom.config import get_settings
from commonroom.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    from commonroom.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.reply_worker.start()
    logger.info("app_started", ai_enabled=runtime.ai_enabled)

    yield

    # Let queued replies finish before the consumers are cancelled.
    try:
        await asyncio.wait_for(runtime.reply_worker.join(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("ai_reply_queue_drain_timeout")
    await runtime.reply_worker.stop()
    logger.info("app_stopped")


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app() -> FastAPI:
    app = FastAPI(title="Commonroom", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "API-Version"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag logs with X-Request-ID (or a fresh id) and echo it back."""
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
        if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
            response.headers.setdefault("Cache-Control", "no-store, private")
        response.headers.setdefault("API-Version", __version__)
        return response

    @app.get("/healthz")
    async def health() -> JSONResponse:
        """Report store connectivity and whether the AI gateway is configured."""
        from commonroom.service.runtime import get_runtime

        runtime = get_runtime()
        checks: Dict[str, Dict[str, Any]] = {}
        store_ok = True
        probe = getattr(runtime.store, "verify_connection", None)
        if probe is not None:
            try:
                await asyncio.wait_for(asyncio.to_thread(probe), HEALTH_CHECK_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.error("health_check_timeout", component="database")
                store_ok = False
            except Exception as exc:
                logger.error("health_check_database_failed", error=str(exc))
                store_ok = False
        checks["store"] = {
            "status": "healthy" if store_ok else "unhealthy",
            "type": type(runtime.store).__name__,
        }
        checks["ai_gateway"] = {
            "status": "configured" if runtime.ai_enabled else "disabled",
            "queued_replies": runtime.reply_worker.queue_depth,
        }
        body = {
            "status": "healthy" if store_ok else "unhealthy",
            "version": __version__,
            "checks": checks,
        }
        return JSONResponse(status_code=200 if store_ok else 503, content=body)

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
