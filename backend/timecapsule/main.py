"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from timecapsule.auth.routes import router as auth_router
from timecapsule.capsules.routes import router as capsules_router
from timecapsule.config import get_settings
from timecapsule.db.session import dispose_engine, get_session, init_db
from timecapsule.kv.store import purge_expired
from timecapsule.limiter import limiter

log = logging.getLogger(__name__)

API_VERSION = "1.0.0"

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# httpx logs every request URL at INFO
_QUIET_LOGGERS = ("httpx", "httpcore")


def _setup_logging() -> None:
    """Send timecapsule.* logs to stderr and, if log_file is set, to that file too."""
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    formatter = logging.Formatter(_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    log_file = settings.log_file.strip()
    file_error: Optional[OSError] = None
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            file_error = e

    package_log = logging.getLogger("timecapsule")
    package_log.setLevel(level)
    package_log.handlers.clear()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        package_log.addHandler(handler)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if file_error is not None:
        package_log.warning("Could not open log file %s: %s", log_file, file_error)
    elif log_file:
        package_log.info("Logging to file %s", log_file)


_setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the store table and drop expired entries on startup; close the pool on shutdown."""
    log.info("Startup: initializing key-value store")
    await init_db()
    async with get_session() as session:
        purged = await purge_expired(session)
    log.info("Startup complete (%d expired entries purged)", purged)
    yield
    await dispose_engine()
    log.info("Shutdown")


app = FastAPI(title="Memory Time Capsule API", version=API_VERSION, lifespan=lifespan)

settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """nosniff, no framing, and no Referer so magic tokens in viewer URLs do not leak onward."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "no-referrer"
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render errors as {"error": ...}; dict details are returned as they are."""
    if exc.status_code == 404 and exc.detail == "Not Found":
        content = {"error": "Not Found", "path": request.url.path}
    elif isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Missing or malformed request fields are a 400 naming the fields."""
    fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
    log.info("Rejected request to %s: invalid %s", request.url.path, fields)
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "message": f"Invalid fields: {fields}"},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Unhandled errors (upstream failures, corrupt records) become a JSON 500."""
    if isinstance(exc, HTTPException):
        raise exc
    log.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal Server Error", "message": str(exc)},
    )


app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(auth_router)
app.include_router(capsules_router)


@app.get("/health")
@limiter.exempt
def health() -> JSONResponse:
    """Health check. Exempt from rate limiting."""
    return JSONResponse(
        content={"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
    )


@app.get("/api")
@limiter.exempt
def api_info() -> dict:
    """Service name, version and endpoint groups."""
    return {
        "message": "Memory Time Capsule API",
        "version": API_VERSION,
        "endpoints": {
            "health": "/health",
            "auth": "/api/auth/*",
            "capsule": "/api/capsule/*",
            "dashboard": "/api/capsule/dashboard/*",
        },
    }
