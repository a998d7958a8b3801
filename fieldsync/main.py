from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fieldsync.core.config import Settings, SyncTuning, settings
from fieldsync.core.database import build_engine, build_session_factory, init_db
from fieldsync.core.log_buffer import configure_logging
from fieldsync.api.v1 import sync
from fieldsync.integrations.remote import RemoteStore, RestRemoteStore
from fieldsync.services.connectivity import (
    ConnectivityMonitor, HttpProbeNetworkStatusSource, NetworkStatusSource,
    PushNetworkStatusSource
)
from fieldsync.services.local_store import SqlAlchemyLocalStore
from fieldsync.services.sync import SyncCoordinator
from fieldsync.websocket.connectivity_updates import ConnectivityBroadcaster

logger = logging.getLogger(__name__)


def build_network_source(app_settings: Settings) -> NetworkStatusSource:
    if app_settings.CONNECTIVITY_SOURCE == "probe":
        probe_url = app_settings.CONNECTIVITY_PROBE_URL or app_settings.REMOTE_API_URL
        return HttpProbeNetworkStatusSource(
            probe_url,
            interval=app_settings.CONNECTIVITY_PROBE_INTERVAL_SECONDS,
            timeout=app_settings.CONNECTIVITY_PROBE_TIMEOUT_SECONDS
        )
    return PushNetworkStatusSource()


def build_remote_store(app_settings: Settings) -> RemoteStore:
    return RestRemoteStore(
        app_settings.REMOTE_API_URL,
        api_key=app_settings.REMOTE_API_KEY,
        routes_resource=app_settings.REMOTE_ROUTES_RESOURCE,
        readings_resource=app_settings.REMOTE_READINGS_RESOURCE,
        transport_timeout=app_settings.SYNC_SESSION_DEADLINE_SECONDS
    )


def create_app(
    app_settings: Optional[Settings] = None,
    remote_store: Optional[RemoteStore] = None,
    network_source: Optional[NetworkStatusSource] = None
) -> FastAPI:
    """
    Build the control API.

    The sync components are created inside the lifespan so that they live on
    the server's event loop. ``remote_store`` and ``network_source`` replace
    the ones derived from settings.
    """
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.log_buffer = configure_logging(
            app_settings.LOG_LEVEL, app_settings.LOG_BUFFER_SIZE
        )

        # Initialize database
        engine = build_engine(app_settings.DATABASE_URL, app_settings.DATABASE_ECHO)
        await init_db(engine)

        source = network_source or build_network_source(app_settings)
        remote = remote_store or build_remote_store(app_settings)
        coordinator = SyncCoordinator(
            ConnectivityMonitor(source, app_settings.CONNECTIVITY_DEBOUNCE_SECONDS),
            SqlAlchemyLocalStore(build_session_factory(engine)),
            remote,
            SyncTuning.from_settings(app_settings)
        )

        app.state.network_source = source
        app.state.coordinator = coordinator
        app.state.broadcaster = ConnectivityBroadcaster()
        unsubscribe = coordinator.on_connectivity_change(app.state.broadcaster.broadcast)

        if app_settings.READER_ID:
            await coordinator.start(app_settings.READER_ID)

        logger.info(f"{app_settings.APP_NAME} ready")

        yield

        unsubscribe()
        await coordinator.stop()
        await remote.close()
        await engine.dispose()

    app = FastAPI(
        title=app_settings.APP_NAME,
        description="Offline-first sync core for field meter readers",
        version="1.0.0",
        lifespan=lifespan
    )

    # Configure CORS for the local shell
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(sync.router, prefix="/api/v1/sync", tags=["sync"])

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "version": "1.0.0"}

    return app


app = create_app()


def run():
    uvicorn.run(
        "fieldsync.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    run()
