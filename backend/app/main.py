from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from .routers.operations import router as operations_router
from .routers.sync import router as sync_router
from .routers.events import router as events_router
from .broadcast import hub
from .config import settings
from .db import get_conn, close_pools
from .idempotency import IdempotencyKeyMismatch
from .jsonlog import json_log as _json_log
from .operations import BusinessRuleError

app = FastAPI(title="Conejo POS Sync API", version=settings.api_version)
SERVICE_NAME = "conejo-pos-sync"
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


# Business rejections are terminal for the terminal's queue (4xx); anything that
# might succeed on retry with the same idempotency key must stay 5xx.
@app.exception_handler(BusinessRuleError)
def _business_rule_error(req: Request, exc: BusinessRuleError):
    _json_log(
        "info",
        "operation.rejected",
        request_id=_current_request_id(req),
        path=req.url.path,
        status_code=exc.status_code,
        detail=exc.detail,
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "retryable": False})


@app.exception_handler(IdempotencyKeyMismatch)
def _idempotency_key_mismatch(req: Request, exc: IdempotencyKeyMismatch):
    _json_log("warning", "idempotency.key_mismatch", request_id=_current_request_id(req), key=exc.key, detail=exc.detail)
    return JSONResponse(status_code=422, content={"detail": exc.detail, "retryable": False})


# Constraint/cast errors that slip past the handlers' own checks are business
# rejections too: the same payload will fail the same way on every retry.
_CONSTRAINT_ERRORS = {
    pg_errors.InvalidTextRepresentation: (400, "invalid value"),
    pg_errors.ForeignKeyViolation: (400, "invalid reference"),
    pg_errors.UniqueViolation: (409, "conflict"),
    pg_errors.CheckViolation: (400, "constraint violation"),
    pg_errors.NumericValueOutOfRange: (422, "amount out of range"),
    pg_errors.DataError: (422, "invalid value"),
}


def _constraint_error(req: Request, exc: Exception):
    status_code, detail = next(
        (_CONSTRAINT_ERRORS[cls] for cls in type(exc).__mro__ if cls in _CONSTRAINT_ERRORS),
        (400, "invalid request"),
    )
    _json_log("info", "db.constraint_error", request_id=_current_request_id(req), path=req.url.path, detail=detail)
    content = {"detail": detail, "retryable": False}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=status_code, content=content)


for _exc_type in _CONSTRAINT_ERRORS:
    app.add_exception_handler(_exc_type, _constraint_error)


@app.exception_handler(pg_errors.LockNotAvailable)
@app.exception_handler(pg_errors.DeadlockDetected)
@app.exception_handler(pg_errors.SerializationFailure)
def _transient_db_error(req: Request, exc: Exception):
    # A duplicate waited too long on the in-flight original, or lost a lock race.
    # Nothing was committed; the same key can be retried.
    _json_log("warning", "db.transient_error", request_id=_current_request_id(req), path=req.url.path, error=str(exc))
    return JSONResponse(
        status_code=503,
        content={"detail": "temporarily unavailable, retry", "retryable": True},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed", "retryable": False}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    _json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = {"detail": "internal error", "request_id": rid, "retryable": True}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)

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
        _json_log(
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
    if path != "/health":
        dur_ms = int((time.time() - started) * 1000)
        _json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            idempotency_key=request.headers.get("Idempotency-Key"),
            replayed=response.headers.get("Idempotent-Replayed"),
            duration_ms=dur_ms,
        )
    return response

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Idempotent-Replayed", "Idempotency-Key", "X-Request-Id"],
)
app.include_router(operations_router)
app.include_router(sync_router)
app.include_router(events_router)


@app.on_event("startup")
def _startup():
    ok, err = _db_health()
    if ok:
        _json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    else:
        _json_log("warning", "startup.db_probe_failed", env=settings.env, error=err)


@app.on_event("shutdown")
def _shutdown():
    close_pools()


def _db_health():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, str(exc)


def _service_info(req: Request) -> dict:
    return {
        "service": SERVICE_NAME,
        "env": settings.env,
        "version": settings.api_version,
        "request_id": _current_request_id(req),
    }


def _db_probe_response(req: Request, ready_status: str):
    ok, err = _db_health()
    if ok:
        return {**_service_info(req), "status": ready_status, "db": "ok"}
    content = {**_service_info(req), "status": "degraded", "db": "down"}
    if settings.env in {"local", "dev"}:
        content["error"] = err
    return JSONResponse(status_code=503, content=content)


@app.get("/health")
def health(req: Request):
    return _db_probe_response(req, "ok")


@app.get("/health/live")
def health_live(req: Request):
    # No DB round trip: liveness only says the process is serving.
    return {**_service_info(req), "status": "ok"}


@app.get("/health/ready")
def health_ready(req: Request):
    return _db_probe_response(req, "ready")


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
        "broadcast_clients": hub.client_count(),
        "broadcast_seq": hub.current_seq,
    }
