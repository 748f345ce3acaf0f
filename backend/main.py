# main.py — Exprsn Core API
# Features:
# - Request correlation IDs and timing headers
# - Security headers
# - Platform error rendering ({success, error, message})
# - Report scheduler started and stopped with the app
# - Health check covering the database, git and the scheduler

import os
import json
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

import errors
from database import init_db, close_db, check_connection, engine
from git_ops import git_version
from git_workspace import GIT_WORKSPACE_ROOT
from report_exports import REPORT_EXPORT_ROOT
from report_scheduler import scheduler
from telemetry import setup_telemetry

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("exprsn")

VERSION = "1.0.0"
REPORT_SCHEDULER_ENABLED = os.getenv("REPORT_SCHEDULER_ENABLED", "true").lower() == "true"


def _check_startup_config() -> bool:
    """Log every misconfiguration found; True when none"""
    problems = []

    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        problems.append("JWT_SECRET_KEY is not set or shorter than 32 characters; tokens will not survive a restart")

    if git_version() is None:
        problems.append("git executable not found; repository and artifact sync endpoints will fail")

    for label, path in (("GIT_WORKSPACE_ROOT", GIT_WORKSPACE_ROOT), ("REPORT_EXPORT_ROOT", REPORT_EXPORT_ROOT)):
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            problems.append(f"{label} {path} is not writable: {e}")

    for p in problems:
        logger.warning(p)
    return not problems


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting Exprsn Core v{VERSION}")
    await init_db()
    _check_startup_config()
    # No-op unless OTEL_EXPORTER_OTLP_ENDPOINT is set
    setup_telemetry(app, engine)
    if REPORT_SCHEDULER_ENABLED:
        registered = await scheduler.initialize()
        logger.info(f"Report scheduler running {registered} jobs")
    yield
    scheduler.shutdown()
    await close_db()
    logger.info("Exprsn Core stopped")


app = FastAPI(
    title="Exprsn Core",
    description="Low-code artifact sync, Git collaboration, report scheduling, migrations and project planning",
    version=VERSION,
    lifespan=lifespan,
)

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)


# ============================================================
# MIDDLEWARE
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    request.state.correlation_id = request.headers.get("X-Correlation-ID") or request_id

    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = request.state.correlation_id
    response.headers["X-Response-Time"] = f"{elapsed:.4f}s"
    logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed:.3f}s) [rid={request_id[:8]}]")
    return response


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _request_id(request: Request):
    return getattr(request.state, "request_id", None)


@app.exception_handler(errors.PlatformError)
async def platform_error_handler(request: Request, exc: errors.PlatformError):
    if exc.http_status >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={**exc.to_dict(), "request_id": _request_id(request)})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        item = {"type": str(err.get("type", "unknown")), "loc": list(err.get("loc", [])), "msg": str(err.get("msg", ""))}
        if "input" in err:
            try:
                json.dumps(err["input"])
                item["input"] = err["input"]
            except (TypeError, ValueError):
                item["input"] = str(err["input"])
        details.append(item)

    return JSONResponse(status_code=422, content={
        "success": False,
        "error": "VALIDATION_ERROR",
        "message": "Request validation failed",
        "detail": details,
        "request_id": _request_id(request),
    })


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={
        "success": False,
        "error": "INTERNAL_ERROR",
        "message": "Internal server error",
        "request_id": _request_id(request),
    })


# ============================================================
# ROUTERS
# ============================================================

from routers import (  # noqa: E402
    artifacts, repositories, git_auth, reports, migrations, projects, documents,
)

for module in (artifacts, repositories, git_auth, reports, migrations, projects, documents):
    app.include_router(module.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    db_status = await check_connection()
    git = git_version()
    return {
        "status": "healthy" if db_status == "connected" and git else "degraded",
        "version": VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
        "git": git or "unavailable",
        "services": {
            "api": "operational",
            "scheduler": "operational" if scheduler.initialized else "stopped",
            "scheduledJobs": len(scheduler.jobs),
        },
    }


@app.get("/")
async def root():
    return {
        "name": "Exprsn Core",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") == "development",
    )
