"""
FastAPI application entry point.

This module builds the FastAPI application, configures middleware, wires the
import pipeline onto ``app.state`` and registers the routers.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routers import imports
from .core.config import settings
from .core.logging_config import configure_logging
from .domain.imports.pipeline import ImportPipeline

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level, debug=settings.debug)

logger = logging.getLogger(__name__)


def build_default_pipeline() -> ImportPipeline:
    """Pipeline backed by the configured database and the SQL customer store."""
    from .db.session import get_session_local
    from .domain.customers.store import SqlCustomerStore
    from .domain.imports.audit import LoggingAuditSink

    session_factory = get_session_local()
    return ImportPipeline(
        session_factory,
        SqlCustomerStore(session_factory),
        audit_sink=LoggingAuditSink(),
        settings=settings,
    )


def create_app(pipeline: Optional[ImportPipeline] = None) -> FastAPI:
    """
    Build the application.

    Tests pass their own ``pipeline``; otherwise one is built at startup
    against the configured database.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle - startup and shutdown events."""
        owns_pipeline = False
        if app.state.pipeline is None:
            if os.getenv("SKIP_DB_INIT") == "1":
                logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
            else:
                from .db.session import init_db

                try:
                    init_db()
                    logger.info("Import tables ready")
                except Exception:
                    logger.exception("Failed to initialize database tables; the service cannot start")
                    raise
            app.state.pipeline = build_default_pipeline()
            owns_pipeline = True

        yield  # Application runs here

        if owns_pipeline:
            app.state.pipeline.close()

    app = FastAPI(
        title="Customer Import API",
        version="1.0.0",
        description="Bulk customer import: upload, map, validate, commit and roll back spreadsheet batches",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline

    # Allow origins from environment variable or defaults for development
    allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    allowed_origins = [origin.strip() for origin in allowed_origins]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(imports.router)

    @app.get("/")
    async def root():
        """Root endpoint returning API information."""
        return {
            "message": "Customer Import API",
            "version": "1.0.0"
        }

    @app.get("/health")
    async def health_check():
        """Liveness probe."""
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "service": "customer-import-api"
        }

    return app


app = create_app()
