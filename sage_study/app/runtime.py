"""Bootstrap logic wiring the study components together."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sage_study.app.settings import AppSettings
from sage_study.db import get_session_factory, run_migrations_if_needed
from sage_study.db.scheduling import SchedulingStateStore
from sage_study.services.remote_scheduler import RemoteSchedulerClient, build_remote_scheduler
from sage_study.study.session import StudySessionManager
from sage_study.study.srs import Scheduler
from sage_study.study.stats import StatsService
from sage_study.study.sync import ReconciliationResult, ReviewSynchronizer


LOGGER = logging.getLogger(__name__)


def configure_logging(log_level: str) -> None:
    """Set up project-wide logging configuration."""
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        level=log_level,
    )


@dataclass
class StudyRuntime:
    """Long-lived components shared by every learner's sessions."""

    settings: AppSettings
    store: SchedulingStateStore
    scheduler: Scheduler
    remote: Optional[RemoteSchedulerClient] = None
    synchronizer: Optional[ReviewSynchronizer] = None

    def session_manager(
        self,
        learner_id: str,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> StudySessionManager:
        return StudySessionManager(
            self.store,
            learner_id,
            scheduler=self.scheduler,
            synchronizer=self.synchronizer,
            clock=clock,
            tz=self.settings.learner_timezone,
            new_cards_per_day=self.settings.new_cards_per_day,
            reviews_per_day=self.settings.reviews_per_day,
            session_card_limit=self.settings.session_card_limit,
        )

    def stats_service(self, *, clock: Optional[Callable[[], datetime]] = None) -> StatsService:
        return StatsService(
            self.store,
            tz=self.settings.learner_timezone,
            mastery_threshold=self.settings.mastery_stability_days,
            new_cards_per_day=self.settings.new_cards_per_day,
            reviews_per_day=self.settings.reviews_per_day,
            clock=clock,
        )

    async def sync_pending(self, learner_id: Optional[str] = None) -> list[ReconciliationResult]:
        if self.synchronizer is None:
            LOGGER.info("Remote scheduler is not configured; nothing to sync.")
            return []
        return await self.synchronizer.sync_pending(learner_id)

    async def aclose(self) -> None:
        if self.remote is not None:
            await self.remote.aclose()


def build_runtime(
    settings: AppSettings,
    *,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    remote: Optional[RemoteSchedulerClient] = None,
) -> StudyRuntime:
    """Create the runtime for ``settings``, migrating the database when enabled."""
    configure_logging(settings.log_level)
    LOGGER.info("%s is starting in %s mode.", settings.app_name, settings.app_env)

    if session_factory is None:
        try:
            run_migrations_if_needed()
        except Exception:
            LOGGER.exception("Database migrations failed. Aborting startup.")
            raise
        session_factory = get_session_factory()

    store = SchedulingStateStore(session_factory)
    if remote is None:
        remote = build_remote_scheduler(
            settings.remote_scheduler_url,
            timeout=settings.remote_scheduler_timeout,
            auth_token=settings.remote_scheduler_token,
        )
    synchronizer = None
    if remote is not None:
        synchronizer = ReviewSynchronizer(store, remote, max_attempts=settings.sync_max_attempts)

    return StudyRuntime(
        settings=settings,
        store=store,
        scheduler=Scheduler(settings.scheduler_config()),
        remote=remote,
        synchronizer=synchronizer,
    )
