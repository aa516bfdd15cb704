from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from adminflow.api.error_handling import register_exception_handlers
from adminflow.api.routes import router
from adminflow.config import Settings
from adminflow.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = _settings.app_version

# Reachable while the system is not installed
INSTALL_EXEMPT_PREFIXES = (
    "/api/install",
    "/healthz",
    "/static",
    "/uploads",
    "/_next",
    "/docs",
    "/redoc",
    "/openapi.json",
)

_NO_CACHE = "no-store, no-cache, must-revalidate, private"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from adminflow.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info(
        "startup_complete",
        installed=runtime.installation.is_installed(),
        engine=runtime.config_store.current().engine,
    )

    yield

    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except RuntimeError as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="AdminFlow Persistence Engine", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


def is_install_exempt(path: str) -> bool:
    return any(path == prefix or path.startswith(prefix + "/") for prefix in INSTALL_EXEMPT_PREFIXES)


@app.middleware("http")
async def enforce_installation(request: Request, call_next):
    """Answer 503 for every non-exempt route until installation completes."""
    if request.method.upper() == "OPTIONS" or is_install_exempt(request.url.path):
        return await call_next(request)
    from adminflow.service.runtime import get_runtime

    installed = await asyncio.to_thread(get_runtime().installation.is_installed)
    if installed:
        return await call_next(request)
    logger.info("request_blocked_not_installed", path=request.url.path, method=request.method)
    return JSONResponse(
        status_code=503,
        content={
            "error": "not_installed",
            "message": "System is not installed. Complete the installation first.",
            "redirectTo": "/install",
        },
        headers={"Cache-Control": _NO_CACHE, "Pragma": "no-cache", "Expires": "0"},
    )


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind the caller's ``X-Request-ID`` (or a fresh one) to logs and echo it back."""
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
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", _NO_CACHE)
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 6


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Liveness plus a bounded probe of the active engine."""
    from adminflow.service.runtime import get_runtime

    runtime = get_runtime()
    cfg = runtime.config_store.current()
    checks: Dict[str, Dict[str, Any]] = {}
    try:
        result = await asyncio.wait_for(
            asyncio.to_thread(runtime.verifier.verify, cfg), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        checks["database"] = {
            "status": "healthy" if result.ok else "unhealthy",
            "engine": cfg.engine,
            "info": result.info,
        }
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        checks["database"] = {"status": "unhealthy", "engine": cfg.engine, "info": "health probe timed out"}
    checks["installation"] = {"status": runtime.installation.state}
    healthy = checks["database"]["status"] == "healthy"
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
