"""
FastAPI Backend for the generation orchestrator
"""

import logging
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import time
import uuid

from config import settings

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if settings.DEBUG else logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=False,
)

logger = structlog.get_logger()

from pipeline.error_handler import ErrorCode, PipelineError
from pipeline.orchestrator import create_orchestrator
from services.job_store import FileDurableStore, JobStore


ERROR_STATUS_CODES = {
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.UNKNOWN_MODEL: 400,
    ErrorCode.JOB_NOT_FOUND: 404,
    ErrorCode.SEGMENT_NOT_FOUND: 404,
    ErrorCode.JOB_ALREADY_PROCESSING: 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("application_startup", message="FastAPI application starting up")

    if not settings.replicate_token:
        logger.warning("replicate_token_missing", message="REPLICATE_API_TOKEN is not set")

    job_store = JobStore(FileDurableStore(settings.JOBS_DIR))
    job_store.start()
    app.state.job_store = job_store
    app.state.orchestrator = create_orchestrator(job_store)
    logger.info("orchestrator_ready", jobs_dir=settings.JOBS_DIR)

    yield

    await app.state.orchestrator.shutdown()
    await job_store.stop()
    logger.info("application_shutdown", message="FastAPI application shutting down")


# Initialize FastAPI app
app = FastAPI(
    title="Generation Orchestrator API",
    description="Backend API for chained keyframe, video and voice generation",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Bind a request id into the log context and time the request"""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)

    started = time.perf_counter()
    logger.debug("request_started", method=request.method)
    response = await call_next(request)

    response.headers["X-Request-ID"] = request_id
    logger.info(
        "request_completed",
        method=request.method,
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 1),
    )
    return response


@app.exception_handler(PipelineError)
async def pipeline_exception_handler(request: Request, exc: PipelineError):
    """Map pipeline errors to HTTP responses"""
    exc.log_error()
    return JSONResponse(
        status_code=ERROR_STATUS_CODES.get(exc.code, 502),
        content=exc.to_dict(),
    )


# Global error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions"""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_type=type(exc).__name__
    )

    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred. Please try again later.",
            "details": {"error": str(exc)} if settings.DEBUG else {},
            "user_message": "An error occurred. Please try again or contact support."
        }
    )


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Liveness plus the number of jobs with a running task"""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    return {
        "status": "healthy",
        "service": "generation-orchestrator",
        "version": "1.0.0",
        "active_jobs": len(orchestrator.active_jobs) if orchestrator else 0
    }


# Include routers
from routers import generation

app.include_router(generation.router)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information"""
    return {
        "message": "Generation Orchestrator API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "submit_job": "/api/jobs",
            "job_status": "/api/jobs/{job_id}",
            "retry_segment": "/api/jobs/{job_id}/segments/{index}/retry",
            "cancel_job": "/api/jobs/{job_id}/cancel",
            "keyframes": "/api/keyframes",
            "conflict_check": "/api/conflicts/check",
            "conflict_regenerate": "/api/conflicts/regenerate"
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
