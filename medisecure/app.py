from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from medisecure.api.error_handling import register_exception_handlers
from medisecure.api.routes import router
from medisecure.config import Settings
from medisecure.logging import get_logger, sanitize_error_message, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_cleanup_task: asyncio.Task | None = None


async def _run_state_cleanup(interval_seconds: int) -> None:
    """Periodically drop expired tickets, attempts and challenges held in memory."""
    from medisecure.service.runtime import get_runtime

    interval = max(interval_seconds, 30)
    try:
        while True:
            await asyncio.sleep(interval)
            cleaned = get_runtime().auth.cleanup_expired()
            if cleaned:
                logger.debug("auth_state_cleanup", cleaned=cleaned)
    except asyncio.CancelledError:
        logger.info("state_cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cleanup_task
    from medisecure.service.runtime import get_runtime

    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_state_cleanup(runtime.settings.state_cleanup_interval_seconds)
    )

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
    if runtime.cache is not None:
        await runtime.cache.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="MediSecure Auth Core", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return [origin.strip() for origin in _settings.cors_allow_origins.split(",") if origin.strip()]
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with the client's X-Request-ID or a fresh one."""
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
    # Tokens and health data must not sit in shared caches
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report Redis reachability and whether single sign-on is configured."""
    from medisecure.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {"store": {"status": "healthy", "type": "memory"}}
    overall_healthy = True

    if runtime.cache is not None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.cache.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
            )
            redis_ok = True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="redis")
            redis_ok = False
        except Exception as exc:
            logger.error("health_check_redis_failed", error=sanitize_error_message(str(exc)))
            redis_ok = False
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        overall_healthy = redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    checks["sso"] = {"status": "configured" if runtime.sso.configured else "not_configured"}
    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
