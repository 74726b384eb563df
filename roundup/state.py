# roundup/state.py

import asyncio
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .config import logger
from .db import create_engine, create_session_factory, init_db
from .services.catalog import CatalogRepository
from .services.download_client import DownloadClient, build_download_client
from .services.download_store import DownloadStore
from .services.download_tracker import DownloadTracker
from .services.reconciler import WatchlistReconciler
from .services.search_logic import Aggregator, build_scrapers


@dataclass
class Application:
    """Process-wide configuration plus the long-lived components built from it."""

    database_url: str
    client_config: dict[str, Any]
    plex_config: dict[str, Any]
    schedule_config: dict[str, Any]
    search_config: dict[str, Any]

    engine: AsyncEngine | None = None
    session_factory: async_sessionmaker[AsyncSession] | None = None
    gateway: DownloadClient | None = None
    reconciler: WatchlistReconciler | None = None
    tracker: DownloadTracker | None = None
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: list[asyncio.Task[None]] = field(default_factory=list)


async def post_init(application: Application) -> None:
    """
    Prepares the database and wires the engine's components together.
    Nothing is resumed from memory: in-flight work is read back from the
    active_downloads table by the tracker on its first pass.
    """
    logger.info("--- Initialising database and services ---")
    application.engine = create_engine(application.database_url)
    await init_db(application.engine)
    application.session_factory = create_session_factory(application.engine)

    catalog = CatalogRepository(application.session_factory)
    store = DownloadStore(application.session_factory)
    application.gateway = build_download_client(application.client_config)
    aggregator = Aggregator(build_scrapers(application.search_config))

    application.reconciler = WatchlistReconciler(
        catalog,
        store,
        aggregator,
        application.gateway,
        application.search_config,
        plex_config=application.plex_config,
        max_concurrent_targets=application.schedule_config["max_concurrent_targets"],
    )
    application.tracker = DownloadTracker(
        store,
        application.gateway,
        client_config=application.client_config,
        plex_config=application.plex_config,
    )
    logger.info("--- Services ready ---")


def start_loops(application: Application) -> list[asyncio.Task[None]]:
    """Starts the reconciliation and tracking loops as independent tasks."""
    if application.reconciler is None or application.tracker is None:
        raise RuntimeError("post_init must run before the loops are started.")
    schedule = application.schedule_config
    application.tasks = [
        asyncio.create_task(
            application.reconciler.run_forever(
                schedule["reconcile_interval_seconds"], application.stop_event
            ),
            name="reconcile-loop",
        ),
        asyncio.create_task(
            application.tracker.run_forever(
                schedule["tracker_interval_seconds"], application.stop_event
            ),
            name="tracker-loop",
        ),
    ]
    logger.info(
        f"Reconciling every {schedule['reconcile_interval_seconds'] // 60} minutes, "
        f"tracking every {schedule['tracker_interval_seconds']} seconds."
    )
    return application.tasks


async def post_shutdown(application: Application, grace_seconds: float = 10.0) -> None:
    """
    Signals both loops to stop, cancels whatever is still running after a
    grace period, then releases the daemon client and the database engine.
    """
    logger.info("--- Shutting down: Signalling loops to stop ---")
    application.stop_event.set()

    pending = [task for task in application.tasks if not task.done()]
    if pending:
        _, still_running = await asyncio.wait(pending, timeout=grace_seconds)
        if still_running:
            logger.info(f"Cancelling {len(still_running)} running loop tasks...")
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

    if application.gateway is not None:
        await application.gateway.aclose()
    if application.engine is not None:
        await application.engine.dispose()

    logger.info("--- All loops stopped. Shutdown complete. ---")
