import uvicorn
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.containers import AppContainer
from api.middleware.error_handling import (
    ErrorHandlingMiddleware,
    custody_exception_handler,
    queue_full_handler,
)
from api.routers import monitoring, ownership, reconciliation, transfers
from core.config.settings import Environment
from core.logging import configure_logging, get_api_logger_safe
from core.utils.exceptions import CustodyLedgerException
from core.utils.time_utils import utc_now
from services.transfers.service import SettlementQueueFullError

logger = get_api_logger_safe("api.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("Starting custody ledger API server")
    container = app.state.container
    started = []

    try:
        db_manager = container.db_manager()
        await db_manager.init()
        await container.custodian_gateway().initialize()
        for service in container.lifespan_services():
            await service.start()
            started.append(service)
        logger.info("API services initialized successfully", services=len(started))
    except Exception as e:
        logger.error("Failed to initialize API services", error=str(e))
        raise

    yield

    logger.info("Shutting down custody ledger API server")
    try:
        for service in reversed(started):
            await service.stop()
        await container.custodian_gateway().shutdown()
        await container.db_manager().shutdown()
        logger.info("API services stopped successfully")
    except Exception as e:
        logger.error("Error during API shutdown", error=str(e))


def _build_uvicorn_log_config() -> dict:
    """Minimal log config that leaves our structlog handlers in place.

    Only levels and propagation are set; uvicorn applies this dictConfig at
    startup and explicit handler lists would clear the API channel handlers.
    """
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "loggers": {
            "uvicorn": {"level": "INFO", "propagate": False},
            "uvicorn.error": {"level": "INFO", "propagate": False},
            "uvicorn.access": {"level": "INFO", "propagate": False},
            "fastapi": {"level": "INFO", "propagate": False},
        },
    }


def create_app(container: Optional[AppContainer] = None) -> FastAPI:
    """Creates and configures the FastAPI application"""
    container = container or AppContainer()
    settings = container.settings()

    app = FastAPI(
        title="Custody Ledger API",
        version=settings.version,
        description="""
        # Custody Ledger API

        Operations surface for custodial settlement of executed trades.

        ## Features
        - **Settlement**: submit executed trades, inspect transfers, retry failed settlements
        - **Audit**: per-transfer audit trail, history and summaries
        - **Ownership**: platform / register / custodian holdings verification
        - **Reconciliation**: full, per-user and per-product runs, auto-correction
        - **Monitoring**: stuck-transfer statistics and on-demand sweeps
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.container = container

    configure_logging(settings)

    # Use DI: shared Prometheus registry from container
    app.state.prom_registry = container.prometheus_registry()

    container.wire(modules=[
        "api.dependencies",
        "api.routers.transfers",
        "api.routers.ownership",
        "api.routers.reconciliation",
        "api.routers.monitoring",
    ])

    app.add_exception_handler(CustodyLedgerException, custody_exception_handler)
    app.add_exception_handler(SettlementQueueFullError, queue_full_handler)
    app.add_middleware(ErrorHandlingMiddleware)

    cors_origins = settings.api.cors_origins
    if settings.environment == Environment.PRODUCTION and "*" in cors_origins:
        raise ValueError(
            "CORS wildcard (*) not allowed in production. "
            "Specify exact origins in API__CORS_ORIGINS environment variable."
        )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=settings.api.cors_methods,
        allow_headers=settings.api.cors_headers,
    )

    app.include_router(transfers.router, prefix="/api/v1")
    app.include_router(ownership.router, prefix="/api/v1")
    app.include_router(reconciliation.router, prefix="/api/v1")
    app.include_router(monitoring.router, prefix="/api/v1")

    @app.get("/health", tags=["Health"])
    async def health_check():
        database_ok = await container.db_manager().verify_connection()
        return {
            "status": "healthy" if database_ok else "unhealthy",
            "service": "custody-ledger-api",
            "version": settings.version,
            "custodian": container.custodian_gateway().name,
            "timestamp": utc_now().isoformat(),
        }

    @app.get("/metrics", tags=["Monitoring"])  # Exposed for Prometheus scraping
    def metrics():
        try:
            data = generate_latest(app.state.prom_registry)
            return Response(content=data, media_type=CONTENT_TYPE_LATEST)
        except Exception as e:
            logger.error("Failed to generate Prometheus metrics", error=str(e))
            return Response(content=b"", media_type=CONTENT_TYPE_LATEST)

    @app.get("/", tags=["Root"])
    def root():
        return {
            "service": "Custody Ledger API",
            "version": settings.version,
            "docs": "/docs",
            "health": "/health",
            "api_prefix": "/api/v1",
            "endpoints": {
                "transfers": "/api/v1/transfers",
                "ownership": "/api/v1/ownership",
                "reconciliation": "/api/v1/reconciliation",
                "monitoring": "/api/v1/monitoring",
            },
        }

    return app


def run():
    """Main function to run the API server"""
    app = create_app()
    settings = app.state.container.settings()
    uvicorn.run(
        app,
        host=settings.api.host,
        port=settings.api.port,
        log_level="info",
        access_log=True,
        log_config=_build_uvicorn_log_config(),
        reload=False,
    )


if __name__ == "__main__":
    run()
