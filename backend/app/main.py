"""OrderDesk application: order tracking API plus the background print dispatcher."""

import json
import logging
import sys
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from app.api.routes import api_router
from app.core.config import settings
from app.core.exceptions import OrderDeskError
from app.core.rate_limit import limiter
from app.db.base import Base
from app.db.session import SessionLocal, engine
from app.services.print_dispatcher_service import PrintDispatcher, get_dispatcher, set_dispatcher

VERSION = "1.0.0"
UNLOGGED_PATHS = frozenset({"/", "/health", "/health/ready", "/docs", "/openapi.json"})


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log shippers."""

    def format(self, record):
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        request_id = getattr(record, "request_id", None)
        if request_id:
            entry["request_id"] = request_id
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging() -> None:
    """Readable lines while debugging, JSON to stdout otherwise."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    root_logger.handlers.clear()

    if settings.debug:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)


configure_logging()
logger = logging.getLogger(__name__)
request_logger = logging.getLogger("requests")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # JSON API only: nothing may be framed or scripted in
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each API call with its status and duration, tagged with a request id.

    A caller supplied ``X-Request-ID`` is kept so kitchen tablets can correlate
    their retries; otherwise one is generated. Either way it is echoed back.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        if request.url.path in UNLOGGED_PATHS:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response

        client_ip = request.client.host if request.client else "unknown"
        label = f"{request.method} {request.url.path}"
        extra = {"request_id": request_id}
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            request_logger.exception(
                "%s from %s raised after %.3fs", label, client_ip, time.perf_counter() - started, extra=extra
            )
            raise

        elapsed = time.perf_counter() - started
        level = logging.WARNING if response.status_code >= 400 else logging.INFO
        request_logger.log(
            level, "%s from %s -> %d in %.3fs", label, client_ip, response.status_code, elapsed, extra=extra
        )
        response.headers["X-Request-ID"] = request_id
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s %s", settings.app_name, VERSION)

    if settings.database_url.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)

    dispatcher = None
    if settings.print_dispatcher_enabled:
        dispatcher = PrintDispatcher(SessionLocal)
        await dispatcher.start()
        set_dispatcher(dispatcher)
    else:
        logger.info("Print dispatcher disabled; jobs will stay queued")

    try:
        yield
    finally:
        if dispatcher is not None:
            await dispatcher.stop()
            set_dispatcher(None)
        logger.info("Stopped %s", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    description="Restaurant order status tracking and kitchen/receipt printing",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(OrderDeskError)
async def order_desk_error_handler(request: Request, exc: OrderDeskError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)
# Registered last so it wraps the others
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=600,
)

app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
def health_check():
    return {"status": "healthy", "version": VERSION}


@app.get("/health/ready")
def readiness_check():
    """Database reachability and print worker state."""
    checks = {}

    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        logger.error("Readiness database check failed: %s", e)
        checks["database"] = "unhealthy"
    finally:
        db.close()

    dispatcher = get_dispatcher()
    if dispatcher is None:
        checks["print_dispatcher"] = {"running": False, "workers": {}}
    else:
        checks["print_dispatcher"] = dispatcher.get_stats()

    return {
        "status": "ready" if checks["database"] == "healthy" else "degraded",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }


@app.get("/")
def root():
    return {"message": f"{settings.app_name} API", "health": "/health"}
