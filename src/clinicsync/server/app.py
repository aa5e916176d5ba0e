"""FastAPI application for the clinicsync reference server.

This module creates and configures the FastAPI application with:
- REST API for collection reads and batch writes
- WebSocket endpoint streaming collection changes

Usage:
    uvicorn clinicsync.server.app:app_factory --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from clinicsync import __version__
from clinicsync.server.api.router import router as api_router
from clinicsync.server.database import Database
from clinicsync.server.ws import ChangeHub

# Configuration from environment variables with defaults
DB_PATH = Path(os.environ.get("CLINICSYNC_DB_PATH", "clinicsync-server.db"))
LOG_PATH = Path(os.environ.get("CLINICSYNC_LOG_PATH", "clinicsync-server.log"))
API_TOKEN = os.environ.get("CLINICSYNC_API_TOKEN")

logger = logging.getLogger(__name__)


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_path: Path | None = None, level: int = logging.INFO) -> None:
    """Send ``clinicsync`` logs to stdout, plus a file when ``log_path`` is set.

    The file also receives uvicorn's own loggers so that request logs and
    sync logs end up side by side.
    """
    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_path is not None:
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    package_logger = logging.getLogger("clinicsync")
    package_logger.setLevel(level)
    for handler in handlers:
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)

    if log_path is not None:
        for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
            logging.getLogger(name).addHandler(handlers[-1])


def create_app(db: Database, hub: ChangeHub | None = None) -> FastAPI:
    """Build the application around an existing database.

    Tests pass an in-memory ``Database``; ``app_factory`` passes the one
    configured through the environment.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("clinicsync server %s starting (database: %s)", __version__, db.path)
        yield
        logger.info("clinicsync server shutting down")

    application = FastAPI(
        title="clinicsync server",
        description="Reference remote store for offline-first clinic records",
        version=__version__,
        lifespan=lifespan,
    )

    application.state.db = db
    application.state.hub = hub or ChangeHub()

    application.include_router(api_router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    setup_logging(LOG_PATH)
    db = Database(DB_PATH)
    if API_TOKEN:
        db.register_token(API_TOKEN, "environment")
    else:
        logger.warning("CLINICSYNC_API_TOKEN is not set; only stored tokens are accepted")
    return create_app(db)
