"""LuachDaemon: wires storage, calendar access and services into a process.

Startup sequence:
1. Configure structured logging
2. Open the database pool and run Alembic migrations
3. Build the projector, retry policies, resolver and token provider
4. Build the sync orchestrator and the event / progression services
5. Start the year progression scheduler

Shutdown reverses the order: scheduler, token provider, database pool.
"""

from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import quote

from luach.config import LuachConfig, load_config
from luach.core.logging import configure_logging
from luach.credentials import GoogleTokenProvider
from luach.db import Database, db_params_from_url
from luach.events import EventService
from luach.google_calendar import CalendarClient, CalendarResolver, GoogleCalendarClient
from luach.migrations import run_migrations
from luach.progression import ProgressionService
from luach.projector import DateProjector, ProjectionCache
from luach.retry import external_policy, store_policy
from luach.scheduler import ProgressionScheduler, SweepSummary
from luach.store import PostgresEventStore
from luach.sync import SyncOrchestrator
from luach.window import WindowCalculator

logger = logging.getLogger(__name__)


class LuachDaemon:
    def __init__(self, config: LuachConfig) -> None:
        self.config = config
        self.db: Database | None = None
        self.store: PostgresEventStore | None = None
        self.token_provider: GoogleTokenProvider | None = None
        self.events: EventService | None = None
        self.progression: ProgressionService | None = None
        self.scheduler: ProgressionScheduler | None = None

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> LuachDaemon:
        return cls(load_config(config_dir))

    def _build_database(self) -> Database:
        db_config = self.config.db
        if db_config.dsn:
            return Database.from_params(
                db_params_from_url(db_config.dsn),
                db_name=db_config.name,
                min_pool_size=db_config.min_pool_size,
                max_pool_size=db_config.max_pool_size,
            )
        database = Database.from_env(db_config.name)
        database.min_pool_size = db_config.min_pool_size
        database.max_pool_size = db_config.max_pool_size
        return database

    def _build_db_url(self) -> str:
        """Build SQLAlchemy-compatible DB URL from the Database settings."""
        db = self.db
        assert db is not None
        url = (
            f"postgresql://{quote(db.user, safe='')}:{quote(db.password, safe='')}"
            f"@{db.host}:{db.port}/{db.db_name}"
        )
        if db.ssl:
            url += f"?sslmode={db.ssl}"
        return url

    def _client_factory(self, access_token: str) -> CalendarClient:
        return GoogleCalendarClient(access_token, timeout=self.config.google.request_timeout_s)

    async def connect(self) -> None:
        """Open the pool and build every service without starting the scheduler."""
        self.db = self._build_database()
        pool = await self.db.connect()
        await run_migrations(self._build_db_url())
        self.store = PostgresEventStore(pool)

        google = self.config.google
        if not google.client_id or not google.client_secret:
            logger.warning(
                "Google OAuth client credentials are not configured; token refresh will fail"
            )
        self.token_provider = GoogleTokenProvider(
            self.store,
            client_id=google.client_id or "",
            client_secret=google.client_secret or "",
            timeout=google.request_timeout_s,
        )

        projector = DateProjector(cache=ProjectionCache(self.config.cache_size))
        windows = WindowCalculator(projector)
        external_retry = external_policy(self.config.external_retry)
        resolver = CalendarResolver(self.store, calendar_name=self.config.calendar_name)
        orchestrator = SyncOrchestrator(
            self.store,
            resolver,
            projector,
            external_retry=external_retry,
            store_retry=store_policy(self.config.store_retry),
        )
        self.events = EventService(
            self.store, orchestrator, windows, resolver, external_retry=external_retry
        )
        self.progression = ProgressionService(self.store, orchestrator, windows)
        self.scheduler = ProgressionScheduler(
            self.config.scheduler,
            self.store,
            self.token_provider,
            self.progression,
            self._client_factory,
        )

    async def start(self) -> None:
        configure_logging(
            level=self.config.logging.level,
            fmt=self.config.logging.format,
            log_root=self.config.logging.log_root,
        )
        await self.connect()
        assert self.scheduler is not None
        self.scheduler.start()
        logger.info("Luach daemon started")

    async def run_sweep(self) -> SweepSummary | None:
        if self.scheduler is None:
            raise RuntimeError("LuachDaemon is not connected; call connect() first")
        return await self.scheduler.run_sweep()

    async def shutdown(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.token_provider is not None:
            await self.token_provider.aclose()
        if self.db is not None:
            await self.db.close()
        logger.info("Luach daemon stopped")
