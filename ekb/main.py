# main.py
"""Application entry point: vector and query services in one FastAPI app"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from ekb.api import query_endpoints, vector_endpoints
from ekb.api.middleware import RequestIDMiddleware
from ekb.api.schemas import HealthResponse
from ekb.config import Settings, settings
from ekb.database.session import init_models
from ekb.infrastructure.embedding_services import validate_embedding_dimension
from ekb.services.factory import ServiceContainer, build_container
from ekb.services.logger_config import setup_logging

logger = logging.getLogger(settings.LOGGER_NAME)


def create_app(config: Settings = settings, container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the FastAPI application.

    A prebuilt container replaces the one normally wired from configuration.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager"""
        # --- Startup ---
        setup_logging(config.LOG_LEVEL, config.LOG_FILE_PATH)
        logger.info("Starting application...")

        services = container or build_container(config)
        await init_models(services.engine)

        # Fatal on mismatch: aborts startup
        await validate_embedding_dimension(services.embedding_service, config.VECTOR_DIM)

        app.state.container = services
        if services.consumer is not None:
            services.consumer.start(asyncio.get_running_loop())
        logger.info("Services initialized")

        yield

        # --- Shutdown ---
        logger.info("Shutting down application...")
        if services.consumer is not None:
            await asyncio.to_thread(services.consumer.stop)
        await services.engine.dispose()
        logger.info("Application shutdown complete")

    app = FastAPI(title=config.APP_TITLE, version=config.APP_VERSION, lifespan=lifespan)
    app.add_middleware(RequestIDMiddleware)

    # Include API routes
    app.include_router(vector_endpoints.router)
    app.include_router(query_endpoints.router)

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="healthy", service=config.SERVICE_NAME, timestamp=int(time.time()))

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
