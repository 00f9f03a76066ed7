import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.core.config import settings
from app.core.errors import (
    ExperimentError,
    InsufficientDataError,
    InvalidAllocationError,
    NotFoundError,
    StateConflictError,
)
from app.core.logging_config import setup_logging
from app.routers import events, experiments, health, power, stats

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

ERROR_STATUS: list[tuple[type[Exception], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidAllocationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (StateConflictError, status.HTTP_409_CONFLICT),
    (InsufficientDataError, status.HTTP_409_CONFLICT),
]


@app.exception_handler(ExperimentError)
async def experiment_error_handler(request: Request, exc: ExperimentError) -> JSONResponse:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return JSONResponse(status_code=code, content={"detail": str(exc)})
    logger.exception("Unhandled experiment error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def internal_validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    # Request bodies fail as RequestValidationError; this is a server-built model
    logger.exception("Model validation failed on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "Internal server error"})


# Routers
app.include_router(health.router)
app.include_router(experiments.router, prefix=settings.API_V1_PREFIX)
app.include_router(events.router, prefix=settings.API_V1_PREFIX)
app.include_router(stats.router, prefix=settings.API_V1_PREFIX)
app.include_router(power.router, prefix=settings.API_V1_PREFIX)
