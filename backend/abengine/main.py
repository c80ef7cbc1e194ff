"""Main FastAPI application."""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import asyncio

from abengine.config import get_settings
from abengine.middleware.logging import LoggingMiddleware, get_logger
from abengine.api import experiments, flags, health
from abengine.database import engine, Base
from abengine.services.errors import (
    AllocationError,
    ConcurrencyError,
    ExperimentError,
    ExperimentNotFoundError,
    FlagNotFoundError,
    InsufficientDataError,
    InvalidStateError,
    StatisticalError,
    ValidationError,
)
from abengine.services.experiments import get_experiment_service
from abengine.services.scheduler import AllocationScheduler

settings = get_settings()
logger = get_logger()

# Background reallocation task
scheduler_task = None

ERROR_STATUS_CODES = {
    ValidationError: 400,
    StatisticalError: 400,
    ExperimentNotFoundError: 404,
    FlagNotFoundError: 404,
    InvalidStateError: 409,
    ConcurrencyError: 409,
    InsufficientDataError: 422,
    AllocationError: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    global scheduler_task

    # Startup
    Base.metadata.create_all(bind=engine)
    logger.info("database_tables_verified")

    scheduler = AllocationScheduler(get_experiment_service(), settings.scheduler_poll_seconds)
    scheduler_task = asyncio.create_task(scheduler.run_forever())

    yield  # App runs here

    # Shutdown
    if scheduler_task:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass
    logger.info("shutting_down", service=settings.app_name)


# Create FastAPI app
app = FastAPI(
    title="abengine",
    description="Experimentation engine with sticky assignment, significance testing and adaptive allocation",
    version="0.1.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

# CORS middleware - Allow frontend origins
allowed_origins = [
    "http://localhost:5173",  # Local development
    "http://localhost:3000",  # Alternative local port
    settings.frontend_url,     # Production frontend
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Trace-ID"]
)

# Logging middleware
app.add_middleware(LoggingMiddleware)


@app.exception_handler(ExperimentError)
async def experiment_error_handler(request: Request, exc: ExperimentError):
    """Map engine errors to HTTP status codes."""
    status_code = 500
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            status_code = code
            break

    logger.warning(
        "experiment_error",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        status_code=status_code
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__}
    )


# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(experiments.router, tags=["experiments"])
app.include_router(flags.router, tags=["feature-flags"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "abengine",
        "version": "0.1.0",
        "docs": "/docs" if settings.debug else "disabled",
        "endpoints": {
            "health": "/health",
            "experiments": "POST /experiments",
            "assign": "POST /experiments/{id}/assign",
            "events": "POST /experiments/{id}/events",
            "flags": "POST /flags/evaluate"
        }
    }


# uvicorn abengine.main:app --reload
