"""Main entry point for the Zyper daemon."""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from zyper_daemon import __version__
from zyper_daemon.api.console import router as console_router
from zyper_daemon.api.files import router as files_router
from zyper_daemon.api.health import router as health_router
from zyper_daemon.api.instances import router as instances_router
from zyper_daemon.api.middleware import (
    setup_error_handling,
    setup_logging_middleware,
    setup_metrics_middleware,
)
from zyper_daemon.api.versions import router as versions_router
from zyper_daemon.core.config import Settings
from zyper_daemon.hub import ConsoleHub
from zyper_daemon.provisioning import InstanceManager
from zyper_daemon.startup import VersionCatalog
from zyper_daemon.store import InstanceStore
from zyper_daemon.supervisor import ProcessSupervisor, ResourceManager
from zyper_daemon.supervisor.process_manager import Launcher
from zyper_daemon.utils.logging import setup_logging

logger = structlog.get_logger()

DEFAULT_PORT = 8080


async def _refresh_stats(app: FastAPI) -> None:
    """Persist host statistics into the node document periodically."""
    interval = app.state.settings.stats_interval_seconds
    while True:
        try:
            await asyncio.sleep(interval)
            stats = ResourceManager.get_system_stats(len(app.state.supervisor.running_ids))
            app.state.store.update_metadata(stats=stats)
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error("Error refreshing node stats", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    store: InstanceStore = app.state.store
    logger.info(
        "Starting Zyper daemon",
        version=__version__,
        node_id=store.get_meta("nodeId"),
        instances=len(store.ids()),
    )
    if not (app.state.settings.node_key or store.get_meta("nodeKey")):
        logger.warning("No node key configured, API is unauthenticated")

    stats_task = asyncio.create_task(_refresh_stats(app))

    yield

    logger.info("Shutting down Zyper daemon")
    stats_task.cancel()
    try:
        await stats_task
    except asyncio.CancelledError:
        pass

    try:
        await app.state.supervisor.shutdown()
    except Exception:
        logger.exception("Error stopping servers")

    await app.state.hub.close()
    await app.state.versions.close()


def create_app(settings: Optional[Settings] = None, launcher: Optional[Launcher] = None) -> FastAPI:
    """Create FastAPI application."""
    if settings is None:
        settings = Settings()

    setup_logging(settings.log_level, settings.log_format)

    app = FastAPI(
        title="Zyper Daemon",
        version=__version__,
        description="Node agent that runs and supervises game server instances",
        lifespan=lifespan,
    )

    store = InstanceStore(Path(settings.config_path))
    hub = ConsoleHub(settings)
    supervisor = ProcessSupervisor(store, hub=hub, settings=settings, launcher=launcher)

    app.state.settings = settings
    app.state.store = store
    app.state.hub = hub
    app.state.supervisor = supervisor
    app.state.instances = InstanceManager(store, supervisor, settings)
    app.state.versions = VersionCatalog()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    setup_error_handling(app)
    setup_logging_middleware(app)
    setup_metrics_middleware(app)

    app.include_router(health_router, tags=["health"])
    app.include_router(instances_router, tags=["instances"])
    app.include_router(files_router, tags=["files"])
    app.include_router(versions_router, tags=["versions"])
    app.include_router(console_router, tags=["console"])

    if settings.metrics_enabled:
        app.mount("/metrics", make_asgi_app())

    return app


def resolve_port(settings: Settings) -> int:
    """Environment first, then the node document, then 8080."""
    if settings.port:
        return settings.port
    store = InstanceStore(Path(settings.config_path))
    return int(store.get_meta("port") or DEFAULT_PORT)


def run(settings: Optional[Settings] = None) -> None:
    """Run the application."""
    settings = settings or Settings()

    config = uvicorn.Config(
        create_app(settings),
        host=settings.host,
        port=resolve_port(settings),
        log_config=None,  # We handle logging ourselves
        access_log=False,  # Handled by middleware
    )

    server = uvicorn.Server(config)
    server.run()


if __name__ == "__main__":
    run()
