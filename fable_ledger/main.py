"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

from fable_ledger.api.admin_routes import router as admin_router
from fable_ledger.api.dependencies import get_payment_provider, get_token_verifier
from fable_ledger.api.routes import router
from fable_ledger.config import settings
from fable_ledger.db.migration_runner import run_migrations
from fable_ledger.db.session import close_engines, get_engine
from fable_ledger.exceptions import (
    AdminRequiredError,
    AllowanceExhaustedError,
    ContestNotVotableError,
    DailyVoteAlreadyClaimedError,
    InsufficientCreditsError,
    LedgerError,
    OperationTimeoutError,
    PaymentNotConfirmedError,
    PaymentProviderError,
    ResourceNotFoundError,
    StorageConflictError,
    UnauthenticatedError,
    WebhookVerificationError,
)
from fable_ledger.models.api import ErrorBody, ErrorResponse
from fable_ledger.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from fable_ledger.observability.tracing import instrument_fastapi, instrument_sqlalchemy

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)

# Checked in order; subclasses before their bases
ERROR_STATUS_CODES: list[tuple[type[LedgerError], int]] = [
    (UnauthenticatedError, status.HTTP_401_UNAUTHORIZED),
    (AdminRequiredError, status.HTTP_403_FORBIDDEN),
    (ResourceNotFoundError, status.HTTP_404_NOT_FOUND),
    (AllowanceExhaustedError, status.HTTP_409_CONFLICT),
    (DailyVoteAlreadyClaimedError, status.HTTP_409_CONFLICT),
    (ContestNotVotableError, status.HTTP_409_CONFLICT),
    (InsufficientCreditsError, status.HTTP_402_PAYMENT_REQUIRED),
    (PaymentNotConfirmedError, status.HTTP_402_PAYMENT_REQUIRED),
    (WebhookVerificationError, status.HTTP_400_BAD_REQUEST),
    (PaymentProviderError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StorageConflictError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (OperationTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
]


def status_code_for(exc: LedgerError) -> int:
    """HTTP status for a domain error; 500 for anything unmapped."""
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)

    instrument_sqlalchemy(get_engine())

    # Build process-wide collaborators once
    verifier = get_token_verifier()
    get_payment_provider()
    logger.info(
        "collaborators_ready",
        firebase_project_configured=bool(settings.firebase_project_id),
        uid_aliases=len(verifier.aliases),
        stripe_configured=bool(settings.stripe_api_key),
    )

    yield

    logger.info("application_shutting_down")
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Render domain errors as the discriminated failure body."""
    status_code = status_code_for(exc)
    metrics.record_error(type(exc).__name__, request.url.path)

    log = logger.error if status_code >= 500 else logger.info
    log(
        "request_rejected",
        path=request.url.path,
        method=request.method,
        code=exc.code,
        status_code=status_code,
        error=str(exc),
    )

    body = ErrorResponse(
        error=ErrorBody(code=exc.code, message=str(exc), retryable=exc.retryable)
    )
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, UnauthenticatedError) else None
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Log detailed validation errors and return them in the failure body."""
    sanitized_errors: list[dict[str, Any]] = []
    for error in exc.errors():
        sanitized: dict[str, Any] = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        # ctx may contain non-serializable objects
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )

    body = ErrorResponse(
        error=ErrorBody(
            code="validation_error",
            message="; ".join(str(e["msg"]) for e in sanitized_errors) or "Invalid request",
        )
    )
    content = body.model_dump()
    content["detail"] = sanitized_errors
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=content)


# Setup tracing
setup_tracing()
instrument_fastapi(app)


class ProxyHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to handle X-Forwarded-Proto from a reverse proxy."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        forwarded_proto = request.headers.get("X-Forwarded-Proto")
        if forwarded_proto:
            request.scope["scheme"] = forwarded_proto

        return await call_next(request)


app.add_middleware(ProxyHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing and a bound request id."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

    endpoint = request.url.path
    method = request.method
    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=endpoint)
        try:
            response = await call_next(request)
            duration = time.time() - start_time

            metrics.record_http_request(endpoint, method, response.status_code, duration)
            logger.info(
                "request_completed",
                method=method,
                path=endpoint,
                status_code=response.status_code,
                duration_seconds=duration,
            )

            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            duration = time.time() - start_time
            metrics.record_http_request(endpoint, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")

            logger.error(
                "request_failed",
                method=method,
                path=endpoint,
                error=str(e),
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


app.include_router(router)
app.include_router(admin_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fable_ledger.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
