from fastapi import FastAPI, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from .routers.bills import router as bills_router
from .routers.stock import router as stock_router
from .routers.payments import router as payments_router
from .routers.auth import router as auth_router
from .routers.invites import router as invites_router, public_router as invites_public_router
from .config import settings
from .deps import require_org_access
from .db import get_admin_conn, close_pools
from .errors import EngineError, TransactionTimeout
from .logs import json_log

app = FastAPI(title="PantryPal POS Billing API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)
SERVICE_NAME = "pantrypal-billing"

HTTP_ERROR_CODES = {400: "BadRequest", 401: "AuthFailure", 403: "Forbidden", 404: "NotFound", 405: "MethodNotAllowed"}


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error(status_code: int, code: str, message: str, exc: Exception = None, **extra) -> JSONResponse:
    content = {"ok": False, "error": code, "message": message, **extra}
    if exc is not None and settings.debug_errors:
        content["debug"] = str(exc)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


@app.exception_handler(EngineError)
def _engine_error(req: Request, exc: EngineError):
    if exc.status_code >= 500:
        json_log("warning", "engine.error", request_id=_current_request_id(req), path=req.url.path, error=exc.code)
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(StarletteHTTPException)
def _http_exception(_req: Request, exc: StarletteHTTPException):
    code = HTTP_ERROR_CODES.get(exc.status_code, "HTTPError")
    return _error(exc.status_code, code, str(exc.detail))


# Map common DB constraint/cast errors to 4xx so clients get actionable responses
# instead of generic 500s.
@app.exception_handler(pg_errors.InvalidTextRepresentation)
def _invalid_text_representation(_req: Request, exc: Exception):
    # e.g. a malformed uuid in the path
    return _error(400, "ValidationError", "invalid value", exc)


@app.exception_handler(pg_errors.ForeignKeyViolation)
def _foreign_key_violation(_req: Request, exc: Exception):
    return _error(400, "ValidationError", "invalid reference", exc)


@app.exception_handler(pg_errors.UniqueViolation)
def _unique_violation(_req: Request, exc: Exception):
    return _error(409, "StateConflict", "conflict", exc)


@app.exception_handler(pg_errors.CheckViolation)
def _check_violation(_req: Request, exc: Exception):
    return _error(400, "ValidationError", "constraint violation", exc)


@app.exception_handler(pg_errors.QueryCanceled)
@app.exception_handler(pg_errors.LockNotAvailable)
def _transaction_timeout(req: Request, exc: Exception):
    json_log("warning", "db.transaction_timeout", request_id=_current_request_id(req), path=req.url.path, error=str(exc))
    err = TransactionTimeout()
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    extra = {}
    if hasattr(exc, "errors"):
        extra["errors"] = [{"loc": e.get("loc"), "msg": e.get("msg")} for e in exc.errors()]
    return _error(400, "ValidationError", "validation failed", **extra)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    return _error(500, "InternalError", "internal error", exc, request_id=rid)


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    client_ip = (request.client.host if request.client else None)

    try:
        response = await call_next(request)
    except Exception as exc:
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            client_ip=client_ip,
            duration_ms=dur_ms,
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if not path.startswith("/health"):
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            duration_ms=dur_ms,
        )
    return response

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(auth_router)
app.include_router(payments_router)
app.include_router(invites_public_router)
app.include_router(bills_router, dependencies=[Depends(require_org_access)])
app.include_router(stock_router, dependencies=[Depends(require_org_access)])
app.include_router(invites_router, dependencies=[Depends(require_org_access)])


@app.on_event("startup")
def _startup():
    try:
        with get_admin_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    except Exception as exc:
        json_log("warning", "startup.db_probe_failed", env=settings.env, error=str(exc))


@app.on_event("shutdown")
def _shutdown():
    close_pools()


def _db_health():
    try:
        with get_admin_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, str(exc)


def _health_body(req: Request, status: str, db: str) -> dict:
    return {
        "status": status,
        "env": settings.env,
        "db": db,
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "request_id": _current_request_id(req),
    }


@app.get("/health")
def health(req: Request):
    ok, err = _db_health()
    if not ok:
        content = _health_body(req, "degraded", "down")
        if settings.debug_errors:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    out = _health_body(req, "ok", "ok")
    out["started_at"] = STARTED_AT_UTC.isoformat()
    return out


@app.get("/health/live")
def health_live(req: Request):
    return {
        "status": "ok",
        "env": settings.env,
        "service": SERVICE_NAME,
        "request_id": _current_request_id(req),
    }


@app.get("/health/ready")
def health_ready(req: Request):
    ok, err = _db_health()
    if not ok:
        content = _health_body(req, "degraded", "down")
        if settings.debug_errors:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return _health_body(req, "ready", "ok")


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
