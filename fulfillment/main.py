from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from fulfillment.config.logging import setup_logging
from fulfillment.config.settings import settings
from fulfillment.v1.core.exceptions import (
    FulfillmentException,
    RequestContextMiddleware,
    fulfillment_exception_handler,
    general_exception_handler,
    http_exception_handler,
)
from fulfillment.v1.healthz import router as health_router
from fulfillment.v1.jobs.registry_init import load_stage_processors
from fulfillment.v1.jobs.routes import admin_router, cron_router


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Durable multi-stage fulfillment job queue",
        version=settings.version,
        debug=settings.debug,
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(FulfillmentException, fulfillment_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(cron_router, prefix="/v1")
    app.include_router(admin_router, prefix="/v1")

    # Register stage processors (frozen outside development)
    load_stage_processors(settings)

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fulfillment.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
