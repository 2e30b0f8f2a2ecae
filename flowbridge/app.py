from __future__ import annotations

import asyncio
import contextlib
import platform
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from flowbridge.api.error_handling import register_exception_handlers
from flowbridge.api.routes import router
from flowbridge.config import Settings
from flowbridge.logging import get_logger, set_correlation_id
from flowbridge.storage.conversations import ConversationStore

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

_started_at = time.monotonic()
_cleanup_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start analytics, persisted instances and the cleanup loop; stop them on exit."""
    global _cleanup_task
    from flowbridge.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await runtime.analytics.start()
        if runtime.settings.auto_start_instances:
            started = await runtime.instances.start_all()
            logger.info("instances_started_on_startup", count=started)
        _cleanup_task = asyncio.create_task(
            _run_conversation_cleanup(
                runtime.conversations,
                runtime.settings.cleanup_interval_seconds,
                runtime.settings.conversation_retention_days,
            )
        )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc), error_type=type(exc).__name__)

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
            _cleanup_task = None
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Flowbridge", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    return [origin.strip() for origin in _settings.cors_origin.split(",") if origin.strip()]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-API-Key",
        "X-Admin-Key",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id (from X-Request-ID or generated)."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    logger.info("http_request", method=request.method, path=request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


# Applied to every response; the service only serves JSON
_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Content-Security-Policy": "default-src 'none'",
}


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=15552000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
        "environment": _settings.environment.value,
    }


@app.get("/version")
async def version() -> Dict[str, Any]:
    return {
        "version": __version__,
        "environment": _settings.environment.value,
        "pythonVersion": platform.python_version(),
        "uptime": round(time.monotonic() - _started_at, 3),
    }


async def _run_conversation_cleanup(
    conversations: ConversationStore, interval_seconds: int, retention_days: int
) -> None:
    """Background loop removing conversations idle longer than the retention period."""

    interval = max(interval_seconds, 300)
    try:
        while True:
            try:
                await conversations.prune(retention_days)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("conversation_cleanup_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("conversation_cleanup_task_cancelled")


def main() -> None:
    logger.info(
        "server_starting",
        host=_settings.host,
        port=_settings.port,
        environment=_settings.environment.value,
    )
    uvicorn.run(
        app,
        host=_settings.host,
        port=_settings.port,
        log_level=_settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
