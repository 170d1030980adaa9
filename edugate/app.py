from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from edugate.api.error_handling import register_exception_handlers
from edugate.api.routes import router
from edugate.config import get_settings
from edugate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_sweep_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the periodic sweeper on startup; cancel it and close stores on shutdown."""
    global _sweep_task
    from edugate.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(runtime.sweep_forever())
    logger.info("sweeper_started", interval=runtime.settings.sweep_interval_seconds)

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    await runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="EduGate Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    origins = get_settings().cors_allow_origins
    if origins:
        return origins
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
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Use the client's X-Request-ID when present, otherwise a fresh one, and echo it back."""
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
    if request.url.path.startswith("/auth/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    from edugate.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        store_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        store_ok = False
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        store_ok = False
    checks["store"] = {"status": "healthy" if store_ok else "unhealthy"}

    if runtime.redis_rate_limits is not None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.redis_rate_limits.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            checks["redis"] = {"status": "healthy"}
        except Exception as exc:
            logger.error("health_check_redis_failed", error=str(exc))
            checks["redis"] = {"status": "unhealthy", "degraded": True}
    else:
        checks["redis"] = {"status": "not_configured"}

    healthy = store_ok
    payload = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if healthy else 503, content=payload)


def main() -> None:
    import uvicorn

    uvicorn.run("edugate.app:app", host="0.0.0.0", port=8000)


__all__ = ["app", "main"]
