from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from authsession.api.error_handling import register_exception_handlers
from authsession.api.routes import router
from authsession.config import Settings
from authsession.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from authsession.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="AuthSession", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; no wildcard because cookies ride along
    return [
        _settings.frontend_url,
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID for logs and the X-Request-ID header.

    A client-supplied X-Request-ID is reused; otherwise a new UUID is generated.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith(_settings.api_prefix) or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.secure_cookies:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router, prefix=_settings.api_prefix)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and Redis reachability."""
    from authsession.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        store_ok = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        store_ok = False
    checks["store"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    redis_ok = True
    if runtime.cache is not None:
        try:
            redis_ok = await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="redis", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
            redis_ok = False
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if store_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
