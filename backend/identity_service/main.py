"""FastAPI application factory and main entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from identity_service import models  # noqa: F401  registers tables on Base.metadata
from identity_service.api.v1.router import api_router
from identity_service.common.request_id import RequestIDMiddleware
from identity_service.core.config import settings
from identity_service.core.dependencies import build_key_cache
from identity_service.core.errors import (
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from identity_service.core.logging import get_logger, setup_logging
from identity_service.core.security_headers import SecurityHeadersMiddleware
from identity_service.db.base import Base
from identity_service.db.engine import engine

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    # One Apple key cache per process
    app.state.apple_key_cache = build_key_cache()
    # Create tables (in production, use migrations)
    if settings.ENV == "dev":
        Base.metadata.create_all(bind=engine)
    logger.info("Identity service started", extra={"env": settings.ENV})
    yield
    # Shutdown
    app.state.apple_key_cache.clear()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version="1.0.0",
        description="Federated sign-in, account linking and session API for the mobile app",
        openapi_url="/openapi.json" if settings.ENV != "prod" else None,
        docs_url="/docs" if settings.ENV != "prod" else None,
        redoc_url="/redoc" if settings.ENV != "prod" else None,
        lifespan=lifespan,
    )

    # Add middleware (order matters - last added is outermost)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add exception handlers
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include API routers
    app.include_router(api_router, prefix=settings.API_PREFIX)

    @app.get("/health", tags=["Health"])
    async def health():
        """Liveness probe."""
        return {"status": "ok"}

    return app


# Create app instance
app = create_app()
