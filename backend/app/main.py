import uuid

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.api.routes import credits, generations, health, webhooks
from app.errors import DomainError
from app.logging import configure_logging
from app.models.contracts import ErrorResponse

configure_logging()

logger = structlog.get_logger()

app = FastAPI(
    title="Decoria API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url=None,
)


def _error_response(request: Request, status_code: int, body: ErrorResponse) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))
    response.headers["X-Request-ID"] = getattr(
        request.state, "request_id", request.headers.get("X-Request-ID", "")
    )
    return response


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Attach a unique request ID to every request for log correlation.

    Sets the ID in structlog context vars (appears in all log entries for the
    request) and returns it in the X-Request-ID response header so clients
    can report it when debugging errors.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(DomainError)
async def domain_exception_handler(request: Request, exc: DomainError) -> JSONResponse:
    """Map the domain error taxonomy onto HTTP status codes."""
    log = logger.warning if exc.status_code >= 500 else logger.info
    log(
        "request_failed",
        path=request.url.path,
        method=request.method,
        code=exc.code,
        status_code=exc.status_code,
        message=exc.message,
    )
    return _error_response(
        request,
        exc.status_code,
        ErrorResponse(
            error=exc.code, message=exc.message, retryable=exc.retryable, detail=exc.detail
        ),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Return ErrorResponse JSON for Pydantic validation errors.

    FastAPI's default 422 returns {"detail": [...]}, which doesn't match
    our ErrorResponse contract.
    """
    messages = []
    for err in exc.errors():
        loc = " → ".join(str(part) for part in err["loc"])
        messages.append(f"{loc}: {err['msg']}")
    return _error_response(
        request,
        422,
        ErrorResponse(error="validation_error", message="; ".join(messages), retryable=False),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return consistent ErrorResponse JSON for unhandled exceptions."""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return _error_response(
        request,
        500,
        ErrorResponse(
            error="internal_error", message="An unexpected error occurred", retryable=True
        ),
    )


app.include_router(health.router)
app.include_router(generations.router, prefix="/api/v1")
app.include_router(credits.router, prefix="/api/v1")
app.include_router(webhooks.router, prefix="/api/v1")
