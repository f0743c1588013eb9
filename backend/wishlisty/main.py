from collections import defaultdict
from time import perf_counter
import asyncio
import os
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.engine import make_url

from wishlisty.api.routes import notifications, relationships, reservations, ws
from wishlisty.core.config import settings
from wishlisty.core.errors import DomainError
from wishlisty.core.logger import configure_logging
from wishlisty.core.sweep_metrics import sweep_metrics
from wishlisty.db.session import Base, async_session_factory, engine
from wishlisty.models import models as _models  # noqa: F401
from wishlisty.services.container import build_services


logger = configure_logging()

app = FastAPI(
    title=settings.app_name,
    description="Reservations, notifications and relationship lifecycle for shared wishlists",
    version="0.1.0",
)

metrics = {
    "requests_total": 0,
    "errors_total": 0,
    "latency_total_ms": 0.0,
    "by_path": defaultdict(
        lambda: {"count": 0, "errors": 0, "latency_total_ms": 0.0}
    ),
}


cors_origins_raw = os.getenv("BACKEND_CORS_ORIGINS", "")
cors_origins = settings.backend_cors_origins

logger.info(
    "CORS origins raw=%s parsed=%s",
    cors_origins_raw if cors_origins_raw else "NOT SET",
    cors_origins,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.middleware("http")
async def tracing_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    start = perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        duration_ms = (perf_counter() - start) * 1000.0
        metrics["requests_total"] += 1
        metrics["errors_total"] += 1
        metrics["latency_total_ms"] += duration_ms
        path_metrics = metrics["by_path"][request.url.path]
        path_metrics["count"] += 1
        path_metrics["errors"] += 1
        path_metrics["latency_total_ms"] += duration_ms
        logger.exception(
            "Request failed id=%s method=%s path=%s duration_ms=%.2f",
            request_id,
            request.method,
            request.url.path,
            duration_ms,
        )
        raise

    duration_ms = (perf_counter() - start) * 1000.0
    metrics["requests_total"] += 1
    metrics["latency_total_ms"] += duration_ms
    path_metrics = metrics["by_path"][request.url.path]
    path_metrics["count"] += 1
    if response.status_code >= 500:
        metrics["errors_total"] += 1
        path_metrics["errors"] += 1
    path_metrics["latency_total_ms"] += duration_ms
    logger.info(
        "Request completed id=%s method=%s path=%s status=%s duration_ms=%.2f",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    response.headers["X-Request-Id"] = request_id
    return response


@app.on_event("startup")
async def on_startup() -> None:
    try:
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(_handle_async_exception)
    except RuntimeError:
        logger.warning("No running event loop during startup")

    try:
        db_url = make_url(settings.postgres_dsn)
        logger.info(
            "DB config driver=%s host=%s database=%s",
            db_url.get_backend_name(),
            db_url.host,
            db_url.database,
        )
    except Exception:
        logger.warning("DB config parse failed", exc_info=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(async_session_factory, settings)
    if settings.scheduler_enabled:
        app.state.services.scheduler.start()
    else:
        logger.info("Sweep scheduler disabled (SCHEDULER_ENABLED=false)")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    services = getattr(app.state, "services", None)
    if services is not None:
        services.scheduler.shutdown()


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.error("Domain failure on %s %s: %s", request.method, request.url.path, exc.message)
    else:
        logger.info(
            "Request rejected method=%s path=%s kind=%s detail=%s",
            request.method,
            request.url.path,
            exc.kind,
            exc.message,
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error", "kind": "internal_error"})


app.include_router(reservations.router)
app.include_router(notifications.router)
app.include_router(relationships.router)
app.include_router(ws.router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/health/db")
async def health_db():
    services = getattr(app.state, "services", None)
    session_factory = services.session_factory if services is not None else async_session_factory
    try:
        async with session_factory() as session:
            result = await session.execute(select(1))
            return {"status": "ok", "database": str(result.scalar())}
    except Exception as e:
        logger.exception("DB health check failed")
        return JSONResponse(status_code=500, content={"status": "error", "error": str(e)})


@app.get("/metrics")
async def get_metrics() -> dict[str, object]:
    by_path = {
        path: {
            "count": data["count"],
            "errors": data["errors"],
            "avg_latency_ms": (
                data["latency_total_ms"] / data["count"] if data["count"] else 0.0
            ),
        }
        for path, data in metrics["by_path"].items()
    }
    services = getattr(app.state, "services", None)
    return {
        "requests_total": metrics["requests_total"],
        "errors_total": metrics["errors_total"],
        "avg_latency_ms": (
            metrics["latency_total_ms"] / metrics["requests_total"]
            if metrics["requests_total"]
            else 0.0
        ),
        "by_path": by_path,
        "sweeps": sweep_metrics.snapshot(),
        "sweep_lock": services.sweep_lock.snapshot() if services is not None else None,
        "scheduler_running": services.scheduler.running if services is not None else False,
        "ws_online_users": await services.presence.online_count() if services is not None else 0,
    }


def _handle_async_exception(loop, context) -> None:
    message = context.get("message", "Async error")
    exc = context.get("exception")
    if exc:
        logger.error("Async error: %s", message, exc_info=exc)
    else:
        logger.error("Async error: %s", message)
