"""Main FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gateway_service.api.routes import router, set_gateway
from gateway_service.config import get_settings
from gateway_service.core.logging import get_logger, setup_logging
from gateway_service.gateway import Gateway

settings = get_settings()

setup_logging(
    service_name=settings.service_name,
    service_version=settings.service_version,
    log_level=settings.log_level,
    log_format=settings.log_format,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting Gateway Service...")
    gateway = Gateway(settings)
    try:
        await gateway.start()
        set_gateway(gateway)
        logger.info("Gateway Service started successfully")
    except Exception as e:
        logger.error(f"Failed to start Gateway Service: {e}")
        await gateway.shutdown()
        raise

    yield

    logger.info("Shutting down Gateway Service...")
    set_gateway(None)
    try:
        await gateway.shutdown()
        logger.info("Gateway Service shutdown complete")
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


app = FastAPI(
    title="Gateway Service",
    description="Dynamic tool gateway: routes catalog tool calls to on-demand MCP backends",
    version="0.1.0",
    lifespan=lifespan,
)

if settings.allowed_origin_list:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Gateway Service",
        "version": settings.service_version,
        "status": "running",
    }


def run() -> None:
    """Console entry point."""
    import uvicorn

    uvicorn.run(
        "gateway_service.main:app",
        host="0.0.0.0",
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
