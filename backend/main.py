# main.py — TaskDesk API
# Features:
# - Request correlation IDs and timing
# - Security headers
# - Uniform {success, message, data} envelope for every error
# - Health check with DB verification
# - Default administrator bootstrap

import json
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

import config
from auth import AuthService
from database import Database, get_database
from errors import AppError, AuthError, ERROR_CATALOGUE
from notifier import LoggingMailer
from telemetry import setup_telemetry

# Logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("taskdesk")


def _check_startup_config():
    """Log configuration that is unsafe outside development"""
    warnings = []
    if config.ENVIRONMENT == "production":
        if config.AUTH_DEBUG:
            warnings.append("AUTH_DEBUG is on: 401 responses expose the failure reason")
        if config.DATABASE_URL.startswith("sqlite"):
            warnings.append("DATABASE_URL points at SQLite in production")
    if not config.ADMIN_EMAIL or not config.ADMIN_PASSWORD:
        warnings.append("ADMIN_EMAIL / ADMIN_PASSWORD not set, no default administrator will be created")

    for w in warnings:
        logger.warning(w)
    return len(warnings) == 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {config.APP_NAME} v{config.APP_VERSION}...")
    database = Database()
    await database.create_all()
    app.state.database = database
    app.state.mailer = LoggingMailer()

    async with database.session() as db:
        await AuthService.ensure_default_admin(db)

    _check_startup_config()
    setup_telemetry(app)
    yield
    logger.info(f"Shutting down {config.APP_NAME}...")
    await database.dispose()


app = FastAPI(
    title=config.APP_NAME,
    description="Multi-user task tracking with role and ownership based access control",
    version=config.APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ============================================================
# CORS
# ============================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    correlation_id = request.headers.get("X-Correlation-ID", request_id)
    request.state.request_id = request_id
    request.state.correlation_id = correlation_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = correlation_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"

    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# MIDDLEWARE: Security Headers
# ============================================================

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _envelope(request: Request, status_code: int, message: str, code: str, data=None) -> JSONResponse:
    content = {
        "success": False,
        "message": message,
        "code": code,
        "request_id": getattr(request.state, "request_id", None),
    }
    if data is not None:
        content["data"] = data
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    data = exc.data
    if isinstance(exc, AuthError):
        logger.info(f"Authentication rejected on {request.url.path}: {exc.reason.value}")
        data = {"reason": exc.reason.value} if config.AUTH_DEBUG else None
    return _envelope(request, exc.http_status, exc.message, exc.code, data)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Sanitise errors to ensure JSON serialisability
    errors = []
    for err in exc.errors():
        clean_err = {
            "type": str(err.get("type", "unknown")),
            "loc": list(err.get("loc", [])),
            "msg": str(err.get("msg", "")),
        }
        if "input" in err:
            try:
                json.dumps(err["input"])
                clean_err["input"] = err["input"]
            except (TypeError, ValueError):
                clean_err["input"] = str(err["input"])
        errors.append(clean_err)

    entry = ERROR_CATALOGUE["TD-REQ-002"]
    return _envelope(request, entry["http_status"], entry["message"], "TD-REQ-002", errors)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    entry = ERROR_CATALOGUE["TD-SYS-001"]
    return _envelope(request, entry["http_status"], entry["message"], "TD-SYS-001")


# ============================================================
# ROUTERS
# ============================================================

from routers import auth, users, tasks, notifications

app.include_router(auth.router)
app.include_router(users.router)
app.include_router(tasks.router)
app.include_router(notifications.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check(database: Database = Depends(get_database)):
    """Health check with database connectivity verification"""
    try:
        await database.ping()
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    return {
        "success": True,
        "data": {
            "status": "healthy" if db_status == "connected" else "degraded",
            "version": config.APP_VERSION,
            "environment": config.ENVIRONMENT,
            "database": db_status,
        },
    }


@app.get("/")
async def root():
    return {
        "success": True,
        "data": {
            "name": config.APP_NAME,
            "version": config.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        },
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=config.PORT,
        reload=config.ENVIRONMENT == "development",
    )
