"""
FastAPI Application Entry Point

This module initializes the FastAPI application with:
- Centralized logging configuration
- Trace ID middleware for request tracking
- CORS middleware
- The segment registry (built once per app, kept on app.state)
- API routers
"""

from typing import Optional

# IMPORTANT: Initialize logging BEFORE importing other app modules
# This ensures all loggers inherit the correct configuration
from practice_crm.core.config import Settings, get_settings
from practice_crm.core.logging_config import get_logger, setup_logging

_settings = get_settings()
setup_logging(log_level=_settings.LOG_LEVEL, log_dir=_settings.LOG_DIR)

logger = get_logger(__name__)

# Now import other modules (after logging is configured)
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from practice_crm.api.v1.routers import api_v1_router
from practice_crm.api.v1.routes.segments import http_error
from practice_crm.core.exceptions import SegmentValidationError
from practice_crm.core.trace_middleware import TraceIDMiddleware
from practice_crm.services.client_population import ClientPopulation, build_population
from practice_crm.services.segment_registry import SegmentRegistry, seed_system_segments
from practice_crm.services.segment_store import SegmentStore


def build_registry(settings: Settings, population: Optional[ClientPopulation] = None) -> SegmentRegistry:
    population = population if population is not None else build_population(settings)
    store_path = settings.segment_store_path
    store = SegmentStore(store_path) if store_path is not None else None
    registry = SegmentRegistry(population, store=store)
    if settings.SEED_SYSTEM_SEGMENTS:
        seed_system_segments(registry)
    logger.info(f"Segment registry ready: segments={len(registry)} store={store_path or '-'}")
    return registry


def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[SegmentRegistry] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application instance.

    Middleware order matters: TraceIDMiddleware is added first so every
    later middleware and route logs with the request's trace id.
    """
    settings = settings or _settings
    logger.info("Creating FastAPI application...")

    app = FastAPI(title="Practice CRM Segments API", version="v1")
    app.state.segment_registry = registry if registry is not None else build_registry(settings)

    app.add_middleware(TraceIDMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        # Same body as validation errors raised by the registry
        err = http_error(SegmentValidationError.from_errors(exc.errors(), default_loc="body"))
        logger.warning(f"Request validation failed: {request.method} {request.url.path} {err.detail['message']}")
        return JSONResponse(status_code=err.status_code, content={"detail": err.detail})

    app.include_router(api_v1_router, prefix="/api/v1")

    logger.info("FastAPI application created successfully")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("practice_crm.main:app", host="0.0.0.0", port=8000)
