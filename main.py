"""authgate - identity and session service."""

import logging
import time
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from authgate.config import get_settings
from authgate.errors import AuthError, FieldError, InternalError, RateLimitedError, ValidationError
from authgate.routers import auth_router, two_factor_router
from authgate.schemas.response import ErrorDetail, ErrorResponse
from authgate.services.auth import get_identity_service

# Logging
logger = logging.getLogger("authgate")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    for warning in settings.validate():
        logger.warning("Config: %s", warning)
    logger.info("authgate started (%s)", settings.APP_ENV)
    yield
    get_identity_service().notifier.shutdown()


app = FastAPI(title="authgate", version="0.1.0", lifespan=lifespan)


# --- Security headers middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        return response


# --- Request size limit middleware ---
class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    MAX_BODY_SIZE = 64 * 1024  # auth payloads are small

    async def dispatch(self, request: Request, call_next) -> Response:
        content_length = request.headers.get("content-length")
        if content_length and int(content_length) > self.MAX_BODY_SIZE:
            return JSONResponse(
                status_code=413,
                content=ErrorResponse(message="Request body too large").model_dump(exclude_none=True),
            )
        return await call_next(request)


# --- Request / audit logging middleware ---
class AuditLogMiddleware(BaseHTTPMiddleware):
    AUDIT_PREFIXES = ("/api/auth/sign-", "/api/auth/reset-password", "/api/auth/delete-user", "/api/auth/two-factor/")

    async def dispatch(self, request: Request, call_next) -> Response:
        start = time.time()
        path = request.url.path
        method = request.method
        logger.info("Incoming request: %s %s", method, path)

        response = await call_next(request)
        duration_ms = (time.time() - start) * 1000

        level = logging.INFO
        if response.status_code >= 500:
            level = logging.ERROR
        elif response.status_code >= 400:
            level = logging.WARNING
        logger.log(level, "Response sent: %s %s [%d] - %.0fms", method, path, response.status_code, duration_ms)

        # Log sensitive operations
        if method in ("POST", "DELETE") and path.startswith(self.AUDIT_PREFIXES):
            logger.info(
                "AUDIT %s %s -> %d from %s",
                method,
                path,
                response.status_code,
                request.client.host if request.client else "unknown",
            )

        return response


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestSizeLimitMiddleware)
app.add_middleware(AuditLogMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
    allow_credentials=True,
)

# API routers
app.include_router(auth_router)
app.include_router(two_factor_router)


# --- Error responses ---
def error_response(request: Request, error: AuthError, cause: BaseException | None = None) -> JSONResponse:
    """Log a failure and render it in the normalized error shape."""
    cause = cause or error
    if error.status_code >= 500:
        logger.error("%s %s - %s", request.method, request.url.path, error.message, exc_info=cause)
    else:
        logger.warning("%s %s - %s", request.method, request.url.path, error.message)

    body = ErrorResponse(
        message=error.message,
        errors=[ErrorDetail(field=e.field, message=e.message) for e in error.errors],
    )
    if not get_settings().is_production:
        body.trace = "".join(traceback.format_exception(type(cause), cause, cause.__traceback__))

    headers = {}
    if isinstance(error, RateLimitedError):
        headers["Retry-After"] = str(error.retry_after)
    return JSONResponse(
        status_code=error.status_code,
        content=body.model_dump(mode="json", exclude_none=True),
        headers=headers,
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Typed workflow failures."""
    return error_response(request, exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies and parameters become 400 with field-level detail."""
    errors = [
        FieldError(field=".".join(str(p) for p in err["loc"] if p not in ("body", "query")), message=err["msg"])
        for err in exc.errors()
    ]
    return error_response(request, ValidationError("Invalid request", errors), exc)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Framework-level HTTP errors (unknown route, wrong method) in the normalized shape."""
    error = AuthError(str(exc.detail))
    error.status_code = exc.status_code
    return error_response(request, error, exc)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected is an InternalError; details stay in the log."""
    return error_response(request, InternalError(), exc)


# --- Health check ---
@app.get("/api/health")
def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok", "app": "authgate", "version": "0.1.0"}
