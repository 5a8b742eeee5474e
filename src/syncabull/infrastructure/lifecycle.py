"""Process lifecycle: startup, wiring, signal handling and graceful shutdown.

Startup order matters:
1. logging (so everything after it is logged the configured way)
2. Google client config check + SQLite path validation (fail fast with a clear message)
3. database engine + tables
4. engine settings from the app_settings table (environment still wins)
5. build the components with the FINAL settings
6. destination root + stale temp file cleanup

Shutdown (SIGINT/SIGTERM) sets one asyncio.Event. The engine stops enumerating between pages,
the scheduler stops dispatching and gives in-flight downloads shutdown_timeout seconds.
Then the HTTP pool and the database are closed, always, even if startup failed halfway.
"""

import asyncio
import logging
import signal
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from syncabull.application.services import (
    AppSettingsService,
    AssetDownloader,
    ItemStore,
    LibraryEnumerator,
    RetryPolicy,
    TokenManager,
)
from syncabull.application.workers import DownloadScheduler, SyncEngine
from syncabull.config import Settings, get_settings
from syncabull.domain.exceptions import ConfigurationError
from syncabull.domain.ports import ILibraryClient, ITokenEndpoint
from syncabull.infrastructure.integrations import (
    GoogleOAuthClient,
    GooglePhotosClient,
    HttpClientPool,
)
from syncabull.infrastructure.observability import configure_logging
from syncabull.infrastructure.persistence import Database
from syncabull.infrastructure.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


# Hey future me, this validates SQLite paths BEFORE we try creating the DB engine. SQLite needs
# to create -journal/-wal/-shm files next to the .db file, so the whole directory must be
# writable. We DON'T pre-create the .db file - SQLite initializes it on first connect.
# Returns early for PostgreSQL and :memory:.
def _validate_sqlite_path(settings: Settings) -> None:
    """Validate SQLite database path accessibility before engine creation.

    Raises:
        ConfigurationError: If the directory can't be created or written
    """
    db_path = settings._get_sqlite_db_path()
    if db_path is None:
        return

    try:
        if db_path.parent and str(db_path.parent) != ".":
            db_path.parent.mkdir(parents=True, exist_ok=True)
            logger.debug("Ensured SQLite parent directory exists: %s", db_path.parent)
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to create SQLite database directory '{db_path.parent}': {exc}. "
            "Update DATABASE_URL or adjust directory permissions."
        ) from exc

    try:
        test_file = db_path.parent / f".{db_path.stem}_write_test"
        test_file.write_bytes(b"test")
        test_file.unlink()
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to write files in database directory '{db_path.parent}': {exc}. "
            "SQLite requires write permissions to create database and journal files."
        ) from exc


@dataclass
class Application:
    """Every long-lived component of a running process."""

    settings: Settings
    db: Database
    retry_policy: RetryPolicy
    token_manager: TokenManager
    item_store: ItemStore
    enumerator: LibraryEnumerator
    downloader: AssetDownloader
    scheduler: DownloadScheduler
    engine: SyncEngine


def build_application(
    settings: Settings,
    db: Database,
    library_client: ILibraryClient | None = None,
    token_endpoint: ITokenEndpoint | None = None,
) -> Application:
    """Wire the components together.

    Args:
        settings: Final settings (after DB overrides)
        db: Initialized database
        library_client: Remote library, defaults to GooglePhotosClient
        token_endpoint: OAuth endpoint, defaults to GoogleOAuthClient
    """
    sync = settings.sync
    retry_policy = RetryPolicy.from_settings(sync)
    library_client = library_client or GooglePhotosClient(settings)
    token_endpoint = token_endpoint or GoogleOAuthClient(settings)

    token_manager = TokenManager(
        db,
        token_endpoint,
        retry_policy,
        refresh_margin_seconds=sync.token_refresh_margin_seconds,
    )
    item_store = ItemStore(db, max_attempts=sync.max_attempts)
    enumerator = LibraryEnumerator(
        db,
        library_client,
        item_store,
        retry_policy,
        page_size=sync.page_size,
        stop_when_caught_up=sync.stop_when_caught_up,
    )
    bandwidth = (
        RateLimiter.for_bandwidth(sync.max_download_speed) if sync.max_download_speed else None
    )
    downloader = AssetDownloader(sync.destination_root, bandwidth_limiter=bandwidth)
    scheduler = DownloadScheduler(
        item_store,
        library_client,
        downloader,
        retry_policy,
        concurrency=sync.concurrency,
        asset_url_ttl_seconds=sync.asset_url_ttl_seconds,
        asset_url_refresh_margin_seconds=sync.asset_url_refresh_margin_seconds,
        idle_poll_seconds=sync.idle_poll_seconds,
        shutdown_timeout=settings.observability.shutdown_timeout,
    )
    engine = SyncEngine(
        db,
        token_manager,
        item_store,
        enumerator,
        scheduler,
        cycle_interval_seconds=sync.cycle_interval_seconds,
    )
    return Application(
        settings=settings,
        db=db,
        retry_policy=retry_policy,
        token_manager=token_manager,
        item_store=item_store,
        enumerator=enumerator,
        downloader=downloader,
        scheduler=scheduler,
        engine=engine,
    )


async def _apply_db_overrides(settings: Settings, db: Database) -> Settings:
    async with db.session_scope() as session:
        sync = await AppSettingsService(session).apply_sync_overrides(settings.sync)
    if sync is settings.sync:
        return settings
    return settings.model_copy(update={"sync": sync})


# Listen future me, @asynccontextmanager makes this a CONTEXT MANAGER: everything before
# `yield` is startup, everything after is shutdown. The try/finally ensures cleanup ALWAYS
# runs, even if startup crashes halfway (e.g. bad DB setting after the engine was created).
@asynccontextmanager
async def lifespan(
    settings: Settings | None = None,
    library_client: ILibraryClient | None = None,
    token_endpoint: ITokenEndpoint | None = None,
) -> AsyncGenerator[Application, None]:
    """Start up, yield the wired Application, shut down."""
    settings = settings or get_settings()

    configure_logging(
        log_level=settings.log_level,
        json_format=settings.observability.log_json_format,
        app_name=settings.app_name,
    )
    logger.info("Starting %s (%s)", settings.app_name, settings.app_env)

    db: Database | None = None
    try:
        if token_endpoint is None and not settings.google.is_configured:
            raise ConfigurationError(
                "Google OAuth client is not configured. "
                "Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET."
            )
        _validate_sqlite_path(settings)

        db = Database(settings)
        await db.create_tables()
        logger.info("Database initialized: %s", settings.database.url)

        settings = await _apply_db_overrides(settings, db)
        app = build_application(settings, db, library_client, token_endpoint)
        await app.downloader.prepare()
        logger.info(
            "Backing up to %s with %d workers",
            settings.sync.destination_root,
            settings.sync.concurrency,
        )

        yield app

    except Exception as e:
        logger.exception("Error during startup or run: %s", e)
        raise
    finally:
        logger.info("Shutting down")
        await HttpClientPool.close()
        if db is not None:
            await db.close()
            logger.info("Database connection closed")


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    """Set `stop_event` on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()

    def _request_stop(signame: str) -> None:
        if stop_event.is_set():
            return
        logger.info("Received %s, stopping", signame)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, sig.name)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler; Ctrl+C still raises there
            logger.debug("Signal handler for %s not supported on this platform", sig.name)


async def run(settings: Settings | None = None) -> None:
    """Run the engine until SIGINT/SIGTERM."""
    stop_event = asyncio.Event()
    async with lifespan(settings) as app:
        install_signal_handlers(stop_event)
        await app.engine.run_forever(stop_event)
