"""FastAPI application for the DRMS offline sync service.

This module wires the local store, queue, conflict handling and, when asked
to, a running sync engine into the operator API.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import uvicorn
from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker

from drms_sync import __version__
from drms_sync.api import sync_router
from drms_sync.config import Settings, get_settings
from drms_sync.core.database import create_local_engine, create_session_factory, init_db
from drms_sync.sync.conflict_resolver import ConflictResolver
from drms_sync.sync.conflict_store import ConflictStore
from drms_sync.sync.engine import SyncEngine
from drms_sync.sync.network_monitor import NetworkMonitor
from drms_sync.sync.queue import SyncQueue
from drms_sync.sync.transport import HttpSyncTransport
from drms_sync.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    sync_engine: Optional[SyncEngine] = None,
    start_engine: bool = False,
) -> FastAPI:
    """Create the operator application.

    Args:
        settings: Application settings
        session_factory: Session factory for an existing local database
        sync_engine: Engine to expose; its queue and resolver are reused
        start_engine: Build (if needed) and run an engine for the app lifetime

    Returns:
        Configured application
    """
    settings = settings or get_settings()

    if sync_engine is not None:
        queue = sync_engine.queue
        resolver = sync_engine.resolver
        store = resolver.store
    else:
        if session_factory is None:
            db_engine = create_local_engine(settings.database_url)
            init_db(db_engine)
            session_factory = create_session_factory(db_engine)
        queue = SyncQueue(session_factory, settings)
        store = ConflictStore(session_factory)
        resolver = ConflictResolver(store, settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan handler."""
        logger.info("app_starting", app_name=settings.app_name, version=__version__)

        transport: Optional[HttpSyncTransport] = None
        if start_engine:
            if app.state.sync_engine is None:
                transport = HttpSyncTransport(settings)
                monitor = NetworkMonitor(
                    probe=transport.check_health,
                    check_interval_seconds=settings.connectivity_check_interval_seconds,
                )
                app.state.sync_engine = SyncEngine(
                    queue, transport, resolver, monitor, settings=settings
                )
            await app.state.sync_engine.start()

        yield

        logger.info("app_stopping")
        if start_engine and app.state.sync_engine is not None:
            await app.state.sync_engine.stop()
        if transport is not None:
            await transport.aclose()

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        description="Offline-first sync queue, conflict audit and operator tools",
        docs_url="/docs" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.sync_queue = queue
    app.state.conflict_store = store
    app.state.conflict_resolver = resolver
    app.state.sync_engine = sync_engine

    app.include_router(sync_router)

    @app.get("/health", tags=["health"])
    async def health() -> dict:
        """Liveness probe."""
        return {"status": "healthy", "version": __version__}

    return app


def main() -> None:
    """Run the operator API with a live sync engine."""
    settings = get_settings()
    setup_logging(settings)
    app = create_app(settings, start_engine=True)
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_config=None)


if __name__ == "__main__":
    main()
