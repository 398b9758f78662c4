"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.exception_handlers import http_exception_handler, request_validation_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from fhirstore.config import settings
from fhirstore.errors import FhirError
from fhirstore.routes import fhir
from fhirstore.schemas.outcome import FHIR_JSON, operation_outcome

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events for startup/shutdown."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("FHIR store starting (debug=%s)", settings.debug)

    yield  # Application runs here

    logger.info("FHIR store shutting down")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


app = FastAPI(
    title="FHIR Store",
    description="Versioned FHIR resource storage with search, history and bundle exchange",
    version="0.1.0",
    lifespan=lifespan,
)

# Security headers middleware (applied to all responses)
app.add_middleware(SecurityHeadersMiddleware)

# Parse comma-separated origins from config
_cors_origins = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["X-API-Key", "Content-Type", "If-Match", "X-User-Id", "X-User-Roles"],
    expose_headers=["ETag", "Location"],
)

app.include_router(fhir.router)


def _outcome_response(status_code: int, outcome: dict, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=outcome, media_type=FHIR_JSON, headers=headers)


# OperationOutcome issue codes for framework-raised HTTP errors
_HTTP_ISSUE_CODES = {
    401: "login",
    403: "forbidden",
    404: "not-found",
    405: "not-supported",
}


@app.exception_handler(FhirError)
async def fhir_error_handler(request: Request, exc: FhirError) -> JSONResponse:
    return _outcome_response(
        exc.status_code,
        operation_outcome(exc.message, code=exc.code, severity=exc.severity, details=exc.issues),
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> Response:
    """Render framework HTTP errors under /fhir as OperationOutcome."""
    if not request.url.path.startswith("/fhir"):
        return await http_exception_handler(request, exc)

    code = _HTTP_ISSUE_CODES.get(exc.status_code, "processing")
    return _outcome_response(
        exc.status_code,
        operation_outcome(str(exc.detail), code=code),
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
    """Render request validation failures under /fhir as 400 OperationOutcome."""
    if not request.url.path.startswith("/fhir"):
        return await request_validation_exception_handler(request, exc)

    details = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        details.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return _outcome_response(
        400,
        operation_outcome("Invalid request", code="invalid", details=details),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _outcome_response(500, operation_outcome("An unexpected error occurred"))


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": "FHIR Store API",
        "version": "0.1.0",
        "docs": "/docs",
    }
