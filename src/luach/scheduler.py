"""Background sweeps that keep every subscribed user's events caught up.

The scheduler runs one sweep immediately on start and then one per
interval.  A sweep lists the users with sync enabled and processes them in
batches of ``max_concurrent_users``; a batch fully settles before the next
one starts.  A sweep that comes due while the previous one is still running
is skipped.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TypeVar

from opentelemetry import trace

from luach.config import SchedulerConfig
from luach.core.logging import reset_user_context, set_user_context
from luach.credentials import TokenProvider
from luach.google_calendar import CalendarClient
from luach.models import SyncUser
from luach.progression import ProgressionService, UserProgressionResult
from luach.retry import Sleep
from luach.store import EventStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[str], CalendarClient]


@dataclass
class SweepSummary:
    started_at: datetime
    finished_at: datetime | None = None
    users_total: int = 0
    users_processed: int = 0
    users_skipped: int = 0
    users_failed: int = 0
    events_updated: int = 0
    events_failed: int = 0
    batch_sizes: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SchedulerStatus:
    enabled: bool
    running: bool
    busy: bool
    interval_seconds: float
    run_count: int
    last_run: datetime | None
    error_count: int
    users_skipped: int


class ProgressionScheduler:
    def __init__(
        self,
        config: SchedulerConfig,
        store: EventStore,
        token_provider: TokenProvider,
        progression: ProgressionService,
        client_factory: ClientFactory,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._config = config
        self._store = store
        self._token_provider = token_provider
        self._progression = progression
        self._client_factory = client_factory
        self._sleep = sleep
        self._tracer = trace.get_tracer("luach")

        self._loop_task: asyncio.Task | None = None
        self._sweep_tasks: set[asyncio.Task] = set()
        self._trigger_event = asyncio.Event()
        self._busy = False

        self.run_count = 0
        self.last_run: datetime | None = None
        self.error_count = 0
        self.users_skipped = 0

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def busy(self) -> bool:
        return self._busy

    def start(self) -> bool:
        """Start the sweep loop. Returns False when disabled or already running."""
        if not self._config.enabled:
            logger.info("Year progression scheduler is disabled")
            return False
        if self.running:
            logger.debug("Year progression scheduler already running")
            return False
        self._loop_task = asyncio.create_task(self._run_loop(), name="luach-progression-loop")
        logger.info(
            "Year progression scheduler started (interval=%ss, width=%d)",
            self._config.interval_seconds,
            self._config.max_concurrent_users,
        )
        return True

    async def stop(self) -> None:
        """Stop the loop and wait for any in-flight sweep to finish."""
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
        self._loop_task = None

        if self._sweep_tasks:
            await asyncio.gather(*self._sweep_tasks, return_exceptions=True)
        logger.info("Year progression scheduler stopped")

    def trigger(self) -> None:
        """Request an immediate sweep from the running loop."""
        self._trigger_event.set()

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            enabled=self._config.enabled,
            running=self.running,
            busy=self._busy,
            interval_seconds=self._config.interval_seconds,
            run_count=self.run_count,
            last_run=self.last_run,
            error_count=self.error_count,
            users_skipped=self.users_skipped,
        )

    async def _run_loop(self) -> None:
        while True:
            task = asyncio.create_task(self._guarded_sweep(), name="luach-progression-sweep")
            self._sweep_tasks.add(task)
            task.add_done_callback(self._sweep_tasks.discard)

            try:
                await asyncio.wait_for(
                    self._trigger_event.wait(), timeout=self._config.interval_seconds
                )
                self._trigger_event.clear()
                logger.debug("Immediate progression sweep requested")
            except TimeoutError:
                pass

    async def _guarded_sweep(self) -> None:
        try:
            await self.run_sweep()
        except Exception:
            # Already counted and logged by run_sweep.
            pass

    async def run_sweep(self) -> SweepSummary | None:
        """Run one sweep over all eligible users.

        Returns ``None`` without doing anything when a sweep is already running.
        """
        if self._busy:
            logger.info("Progression sweep already in progress; skipping")
            return None

        self._busy = True
        try:
            with self._tracer.start_as_current_span("luach.progression.sweep") as span:
                summary = await self._sweep()
                span.set_attribute("luach.users.total", summary.users_total)
                span.set_attribute("luach.users.failed", summary.users_failed)
        except Exception:
            self.error_count += 1
            logger.error("Progression sweep failed", exc_info=True)
            raise
        finally:
            self._busy = False

        self.run_count += 1
        self.last_run = summary.finished_at
        self.users_skipped += summary.users_skipped
        self.error_count += summary.users_failed + summary.users_skipped
        logger.info(
            "Progression sweep finished: %d users, %d processed, %d skipped, %d failed, "
            "%d events updated, %d events failed",
            summary.users_total,
            summary.users_processed,
            summary.users_skipped,
            summary.users_failed,
            summary.events_updated,
            summary.events_failed,
        )
        return summary

    async def _sweep(self) -> SweepSummary:
        summary = SweepSummary(started_at=datetime.now(UTC))
        users = await self._store.list_users_with_sync_enabled()
        summary.users_total = len(users)

        batches = self.create_batches(users, self._config.max_concurrent_users)
        for index, batch in enumerate(batches):
            if index > 0 and self._config.batch_pause_seconds > 0:
                await self._sleep(self._config.batch_pause_seconds)
            summary.batch_sizes.append(len(batch))

            outcomes = await asyncio.gather(
                *(self._process_user(user) for user in batch),
                return_exceptions=True,
            )
            for user, outcome in zip(batch, outcomes, strict=True):
                self._record_outcome(summary, user, outcome)

        summary.finished_at = datetime.now(UTC)
        return summary

    async def _process_user(self, user: SyncUser) -> UserProgressionResult | None:
        token = set_user_context(user.user_id)
        try:
            with self._tracer.start_as_current_span("luach.progression.user") as span:
                span.set_attribute("luach.user_id", user.user_id)
                access_token = await self._token_provider.get_valid_access_token(user.user_id)
                if access_token is None:
                    logger.warning("No valid access token for user %s; skipping", user.user_id)
                    return None

                client = self._client_factory(access_token)
                try:
                    return await self._progression.process_user(
                        user.user_id, client=client, calendar_id=user.calendar_id
                    )
                finally:
                    await client.aclose()
        finally:
            reset_user_context(token)

    @staticmethod
    def _record_outcome(
        summary: SweepSummary,
        user: SyncUser,
        outcome: UserProgressionResult | BaseException | None,
    ) -> None:
        if outcome is None:
            summary.users_skipped += 1
            summary.errors.append(f"{user.user_id}: no valid access token")
        elif isinstance(outcome, BaseException):
            summary.users_failed += 1
            summary.errors.append(f"{user.user_id}: {outcome}")
            logger.error(
                "Progression failed for user %s",
                user.user_id,
                exc_info=(type(outcome), outcome, outcome.__traceback__),
            )
        else:
            summary.users_processed += 1
            summary.events_updated += outcome.events_updated
            summary.events_failed += outcome.events_failed
            summary.errors.extend(f"{user.user_id}: {error}" for error in outcome.errors)

    @staticmethod
    def create_batches(items: Sequence[T], size: int) -> list[list[T]]:
        if size < 1:
            raise ValueError("batch size must be at least 1")
        return [list(items[i : i + size]) for i in range(0, len(items), size)]
