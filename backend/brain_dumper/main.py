"""
FastAPI application with middleware, error mapping and routers.
"""
import os
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
import structlog

from .config import settings
from .core.exceptions import (
    AuthenticationExpired, BrainDumperError, NoAvailableSlot, PartialCommitFailure, ProposalNotFound,
    ProviderNotFound, SyncCursorExpired, TaskNotFound, TransientNetworkError, ValidationError
)
from .core.logging_config import configure_logging, LoggingContext
from .database import models
from .database.base import engine
from .middleware.correlation import CorrelationIDMiddleware

configure_logging(
    log_level=settings.LOG_LEVEL,
    service_name="brain-dumper-scheduler",
    version=settings.APP_VERSION,
    enable_json=settings.LOG_JSON,
    log_file=None if os.getenv("TESTING") else settings.LOG_FILE
)

logger = structlog.get_logger(__name__)

# Most specific first
ERROR_STATUS = [
    (PartialCommitFailure, 207),
    (AuthenticationExpired, 401),
    (ValidationError, 400),
    (TaskNotFound, 404),
    (ProposalNotFound, 404),
    (ProviderNotFound, 404),
    (NoAvailableSlot, 409),
    (SyncCursorExpired, 409),
    (TransientNetworkError, 503),
]


def status_for(exc: BrainDumperError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up Brain Dumper scheduling service")
    models.Base.metadata.create_all(bind=engine)
    logger.info("Database tables created/verified")
    yield
    logger.info("Shutting down Brain Dumper scheduling service")


app = FastAPI(
    title=settings.APP_NAME,
    description="Calendar sync and task scheduling engine",
    version=settings.APP_VERSION,
    docs_url="/api/v1/docs",
    redoc_url="/api/v1/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Request/response logging under the request's correlation id."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        correlation_id = getattr(request.state, "correlation_id", None) or str(uuid.uuid4())
        request_id = str(uuid.uuid4())

        with LoggingContext(correlation_id=correlation_id, request_id=request_id):
            logger.info(
                "Request started",
                method=request.method,
                path=request.url.path,
                client_ip=request.client.host if request.client else None
            )
            try:
                response = await call_next(request)
            except Exception as exc:
                logger.error(
                    "Request failed",
                    method=request.method,
                    path=request.url.path,
                    duration_ms=round((time.time() - start_time) * 1000, 2),
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True
                )
                return JSONResponse(
                    status_code=500,
                    content={"error": "Internal server error", "correlation_id": correlation_id},
                    headers={"X-Correlation-ID": correlation_id, "X-Request-ID": request_id}
                )

            logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.time() - start_time) * 1000, 2)
            )
            response.headers["X-Request-ID"] = request_id
            return response


# Starlette runs the last added middleware first; correlation must wrap logging
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": settings.APP_VERSION
    }


@app.exception_handler(BrainDumperError)
async def brain_dumper_exception_handler(request: Request, exc: BrainDumperError):
    """Map engine errors onto HTTP statuses."""
    status_code = status_for(exc)
    correlation_id = getattr(request.state, "correlation_id", None)

    if isinstance(exc, PartialCommitFailure):
        content = exc.result.model_dump(mode="json")
    else:
        content = {"detail": exc.message or "Internal server error", "error": type(exc).__name__}

    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Request failed with engine error",
        path=request.url.path,
        status_code=status_code,
        error_type=type(exc).__name__,
        error=exc.message
    )
    headers = {"X-Correlation-ID": correlation_id} if correlation_id else None
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = []
    for error in exc.errors():
        loc = [str(item) for item in error.get("loc", []) if item != "body"]
        errors.append({
            "field": ".".join(loc),
            "message": error.get("msg", "Validation error"),
            "type": error.get("type", "")
        })

    logger.warning("Validation error", errors=errors, path=request.url.path, method=request.method)
    detail = "; ".join(f"{e['field']}: {e['message']}" if e["field"] else e["message"] for e in errors)
    return JSONResponse(status_code=422, content={"detail": detail or "Validation error", "errors": errors})


from .api.v1 import api_router
app.include_router(api_router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "brain_dumper.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_config=None
    )
