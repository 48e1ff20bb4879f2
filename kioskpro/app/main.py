import time
import uuid
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from psycopg import errors as pg_errors

from .config import settings
from .db import close_pool, db_configured, get_conn
from .deps import get_session
from .logs import json_log
from .routers import (
    audit,
    auth,
    cash_registers,
    categories,
    dashboard,
    finances,
    inventory,
    pos,
    products,
    purchases,
    reports,
    sales,
    settings as settings_routes,
    suppliers,
    users,
)

SERVICE_NAME = "kioskpro-api"

# Everything except /auth needs a live session.
SESSION_ROUTERS = (
    users.router,
    categories.router,
    products.router,
    inventory.router,
    suppliers.router,
    purchases.router,
    sales.router,
    pos.router,
    cash_registers.router,
    dashboard.router,
    finances.router,
    reports.router,
    settings_routes.router,
    audit.router,
)

# Constraint and cast errors are client mistakes, not server faults.
PG_ERROR_RESPONSES = {
    pg_errors.InvalidTextRepresentation: (400, "invalid value"),  # e.g. a malformed UUID in the path
    pg_errors.ForeignKeyViolation: (400, "invalid reference"),
    pg_errors.CheckViolation: (400, "constraint violation"),
    pg_errors.UniqueViolation: (409, "conflict"),
}

app = FastAPI(title="KioskPro API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error_response(status_code: int, detail: str, exc: Exception, **extra) -> JSONResponse:
    content = {"detail": detail, **extra}
    if settings.expose_errors:
        content["error"] = str(exc)
    return JSONResponse(status_code=status_code, content=content)


def _pg_error_handler(status_code: int, detail: str):
    def _handle(_req: Request, exc: Exception):
        return _error_response(status_code, detail, exc)

    return _handle


for _exc_type, (_status, _detail) in PG_ERROR_RESPONSES.items():
    app.add_exception_handler(_exc_type, _pg_error_handler(_status, _detail))


@app.exception_handler(RequestValidationError)
def _validation_failed(_req: Request, exc: RequestValidationError):
    content = {"detail": "validation failed"}
    if settings.expose_errors:
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _internal_error(req: Request, exc: Exception):
    rid = _request_id(req)
    json_log("error", "http.request.unhandled", request_id=rid, method=req.method, path=req.url.path, error=str(exc))
    return _error_response(500, "internal error", exc, request_id=rid)


@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    fields = {
        "request_id": rid,
        "method": request.method,
        "path": request.url.path,
        "client_ip": request.client.host if request.client else None,
    }
    try:
        response = await call_next(request)
    except Exception as exc:
        json_log("error", "http.request.error", duration_ms=int((time.time() - started) * 1000), error=str(exc), **fields)
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    # Probes hit /health* every few seconds.
    if not fields["path"].startswith("/health"):
        json_log(
            "info",
            "http.request",
            status_code=response.status_code,
            duration_ms=int((time.time() - started) * 1000),
            **fields,
        )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
for _router in SESSION_ROUTERS:
    app.include_router(_router, dependencies=[Depends(get_session)])


def _probe_db():
    """Returns (ok, error) for a trivial round trip; never raises."""
    if not db_configured():
        return False, "database not configured"
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
    except Exception as exc:
        return False, str(exc)
    return True, None


@app.on_event("startup")
def _startup():
    if not db_configured():
        json_log("warning", "startup.db_unconfigured", env=settings.env)
        return
    ok, err = _probe_db()
    if ok:
        json_log("info", "startup.db_probe_ok", env=settings.env, version=settings.api_version)
    else:
        json_log("warning", "startup.db_probe_failed", env=settings.env, error=err)


@app.on_event("shutdown")
def _shutdown():
    close_pool()


def _db_checked(req: Request, healthy_status: str):
    ok, err = _probe_db()
    content = {
        "status": healthy_status if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else ("down" if db_configured() else "unconfigured"),
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": _request_id(req),
    }
    if ok:
        return content
    if settings.expose_errors:
        content["error"] = err
    return JSONResponse(status_code=503, content=content)


@app.get("/")
def root():
    return {"status": "ok", "service": SERVICE_NAME}


@app.get("/health")
def health(req: Request):
    return _db_checked(req, "ok")


@app.get("/health/ready")
def health_ready(req: Request):
    return _db_checked(req, "ready")


@app.get("/health/live")
def health_live(req: Request):
    return {"status": "ok", "env": settings.env, "service": SERVICE_NAME, "request_id": _request_id(req)}


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "timezone": settings.timezone,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
