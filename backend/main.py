"""
FastAPI Backend for Script-to-Video orchestration
"""

import logging
import os
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager
import time

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=False,
)

logger = structlog.get_logger()

# Import settings
from config import settings
from pipeline.error_handler import PipelineError


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("application_startup", message="FastAPI application starting up")

    from database import SessionLocal, init_db
    from pipeline.orchestrator import create_pipeline_orchestrator
    from services.key_store import SqlKeyStore
    from workers.scheduler import PollingScheduler

    # Initialize database
    try:
        init_db()
        logger.info("database_tables_created", message="Database initialized successfully")
    except Exception as e:
        logger.error("database_init_error", error=str(e))

    key_store = SqlKeyStore(SessionLocal)
    app.state.key_store = key_store
    app.state.orchestrator = create_pipeline_orchestrator(SessionLocal, key_store=key_store)
    app.state.scheduler = None

    # Loops can run here or in the standalone worker (worker.py), not both
    if settings.ENABLE_POLLING_SCHEDULER:
        scheduler = PollingScheduler(app.state.orchestrator)
        app.state.scheduler = scheduler
        try:
            scheduler.resume_in_flight()
        except Exception as e:
            logger.error("polling_resume_failed", error=str(e))

    yield

    if app.state.scheduler is not None:
        await app.state.scheduler.shutdown()

    from redis_client import redis_client
    redis_client.close()

    logger.info("application_shutdown", message="FastAPI application shutting down")


# Initialize FastAPI app
app = FastAPI(
    title="Script-to-Video API",
    description="Turns scripts into independently generated scenes and merges them into one video",
    version="1.0.0",
    lifespan=lifespan,
    swagger_ui_parameters={
        "persistAuthorization": True,
    }
)


# Configure OpenAPI schema to include API key authentication
def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema

    from fastapi.openapi.utils import get_openapi

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )

    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "ApiKeyAuth": {
            "type": "apiKey",
            "in": "header",
            "name": "X-API-Key",
            "description": "API key for authentication. Use the value from your .env file (API_KEY)"
        }
    }
    # Apply security globally to all endpoints
    openapi_schema["security"] = [{"ApiKeyAuth": []}]

    app.openapi_schema = openapi_schema
    return app.openapi_schema

app.openapi = custom_openapi

# CORS middleware configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list or ["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# API Authentication middleware - applies to all /api/ routes
@app.middleware("http")
async def api_authentication_middleware(request: Request, call_next):
    """Authenticate all /api/ routes with API key"""
    # Skip authentication for non-API routes
    if not request.url.path.startswith("/api/"):
        return await call_next(request)

    # Skip authentication for CORS preflight requests
    if request.method == "OPTIONS":
        return await call_next(request)

    # Import here to avoid circular imports
    import auth

    if not auth.get_api_key_from_env():
        # No API key configured - development mode
        return await call_next(request)

    # Get API key from header or query parameter
    api_key = request.headers.get("X-API-Key") or request.query_params.get("api_key")

    if not api_key:
        return JSONResponse(
            status_code=401,
            content={
                "error": "Unauthorized",
                "message": "API key missing. Provide X-API-Key header or ?api_key=YOUR_KEY",
                "detail": "Authentication required for /api/ endpoints"
            },
            headers={"WWW-Authenticate": "ApiKey"}
        )

    # Admin keys are accepted everywhere; admin routes check them again
    if not (auth.check_api_key(api_key) or auth.check_admin_key(api_key)):
        return JSONResponse(
            status_code=401,
            content={
                "error": "Unauthorized",
                "message": "Invalid API key",
                "detail": "The provided API key is not valid"
            },
            headers={"WWW-Authenticate": "ApiKey"}
        )

    return await call_next(request)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests"""
    start_time = time.time()

    logger.info(
        "request_started",
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None
    )

    try:
        response = await call_next(request)
        process_time = time.time() - start_time

        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time=f"{process_time:.3f}s"
        )

        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.error(
            "request_failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            process_time=f"{process_time:.3f}s"
        )
        raise


# Orchestration errors carry their own HTTP status and structured details
@app.exception_handler(PipelineError)
async def pipeline_exception_handler(request: Request, exc: PipelineError):
    exc.log_error()
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.to_dict()})


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
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
            "details": str(exc) if app.debug else None
        }
    )


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint

    Returns:
        dict: Health status of the API
    """
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "healthy",
        "service": "script-to-video",
        "version": "1.0.0",
        "polling_loops": len(scheduler.running_loops()) if scheduler else 0
    }


# Include routers
from routers import api_keys, projects, scenes, websocket

app.include_router(scenes.router)
app.include_router(projects.router)
app.include_router(api_keys.router)
app.include_router(websocket.router)

# Locally stored scene clips are served by the API itself
if settings.STORAGE_BACKEND.lower() == "local":
    os.makedirs(settings.LOCAL_STORAGE_PATH, exist_ok=True)
    app.mount("/assets", StaticFiles(directory=settings.LOCAL_STORAGE_PATH), name="assets")


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information"""
    return {
        "message": "Script-to-Video API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "create_project": "/api/projects",
            "analyze": "/api/projects/{project_id}/analyze",
            "generate": "/api/projects/{project_id}/generate",
            "scene_generate": "/api/scenes/generate",
            "scene_status": "/api/scenes/status",
            "merge": "/api/projects/{project_id}/merge",
            "merge_status": "/api/projects/{project_id}/merge-status",
            "admin_keys": "/api/admin/keys",
            "websocket": "/ws/projects/{project_id}"
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
