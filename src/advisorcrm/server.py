from __future__ import annotations

import logging
import time
import uuid

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from . import db
from .api_admin import router as admin_router
from .api_crud import get_settings, router as crud_router
from .errors import FeedError, IdentityError, PermissionDenied, StoreError
from .ratelimit import limiter

logger = logging.getLogger("advisorcrm.api")

app = FastAPI(title="Advisor CRM API", version="0.1.0")
app.state.limiter = limiter


def _request_id_from_request(request: Request) -> str:
    return getattr(request.state, "request_id", "") or request.headers.get("X-Request-ID", "")


def _error_response(status_code: int, message: str, **extra: object) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_exception_handler(request: Request, _: RateLimitExceeded) -> JSONResponse:
    return _error_response(429, "Rate limit exceeded")


@app.exception_handler(HTTPException)
async def _http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        message = str(detail.get("message") or detail.get("error") or "Request failed")
    else:
        message = str(detail)
    return _error_response(exc.status_code, message)


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(422, "Request validation failed", detail=_jsonable_errors(exc))


@app.exception_handler(StoreError)
async def _store_exception_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.warning("store failure rid=%s path=%s: %s", _request_id_from_request(request), request.url.path, exc)
    return _error_response(502, str(exc) or "Database error")


@app.exception_handler(PermissionDenied)
async def _permission_exception_handler(request: Request, exc: PermissionDenied) -> JSONResponse:
    return _error_response(403, str(exc) or "No permitido")


@app.exception_handler(IdentityError)
async def _identity_exception_handler(request: Request, exc: IdentityError) -> JSONResponse:
    return _error_response(exc.status_code, str(exc))


@app.exception_handler(FeedError)
async def _feed_exception_handler(request: Request, exc: FeedError) -> JSONResponse:
    return _error_response(exc.status_code, str(exc))


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled server exception rid=%s method=%s path=%s",
        _request_id_from_request(request),
        request.method,
        request.url.path,
    )
    return _error_response(500, "Unexpected error")


def _jsonable_errors(exc: RequestValidationError) -> list[dict[str, object]]:
    # ctx may carry exception objects that are not JSON serialisable
    return [{k: v for k, v in err.items() if k in ("loc", "msg", "type")} for err in exc.errors()]


@app.middleware("http")
async def _request_context_middleware(request: Request, call_next):
    request.state.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    start = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start) * 1000.0
    response.headers["X-Request-ID"] = request.state.request_id
    logger.info(
        "%s %s -> %s in %.2fms rid=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request.state.request_id,
    )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(crud_router)
app.include_router(admin_router)


@app.get("/")
def root():
    return {"ok": True}


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.get("/readyz")
def readyz():
    conn = None
    try:
        conn = db.get_connection(get_settings())
        return {"ok": True}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"Database unavailable: {exc.__class__.__name__}") from exc
    finally:
        if conn is not None:
            conn.close()
