from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from estate_auth.api.error_handling import register_exception_handlers
from estate_auth.api.routes import router
from estate_auth.config import Settings
from estate_auth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the lifecycle scheduler on startup and stop it on shutdown."""
    from estate_auth.service.runtime import get_runtime

    runtime = get_runtime()
    if runtime.settings.scheduler_enabled:
        try:
            await runtime.scheduler.start()
        except Exception as exc:
            logger.error("startup_scheduler_failed", error=str(exc))

    yield

    try:
        await runtime.scheduler.stop()
        if runtime.rate_limit_backend == "redis":
            await runtime.rate_limit_store.close()
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Estate Marketplace Identity", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return [origin.strip() for origin in _settings.cors_allow_origins.split(",") if origin.strip()]
    return ["http://localhost:3000", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with X-Request-ID (client supplied or generated) for log tracing."""
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
    if request.url.path.startswith("/auth/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Any:
    """Report storage and rate-limit backend reachability."""
    from estate_auth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        store_ok = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store")
        store_ok = False
    checks["store"] = {"healthy": bool(store_ok)}
    checks["rate_limit"] = {"healthy": True, "backend": runtime.rate_limit_backend}
    checks["scheduler"] = {"running": runtime.scheduler.running}

    healthy = all(check.get("healthy", True) for check in checks.values())
    body = {"status": "healthy" if healthy else "unhealthy", "version": __version__, "checks": checks}
    return JSONResponse(status_code=200 if healthy else 503, content=body)
