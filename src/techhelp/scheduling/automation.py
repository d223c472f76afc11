"""Periodic discover-then-generate runner driven by ``AutomationSettings``."""

from __future__ import annotations

import logging
from datetime import datetime

from techhelp.errors import AutomationDisabledError
from techhelp.research.discovery import TopicDiscoverer
from techhelp.scheduling.batch import BatchScheduler, BatchSummary, Thresholds, TopicRequest
from techhelp.storage.models import AutomationSettings, BatchRun, JobStatus, RunMode
from techhelp.storage.repository import ContentStore
from techhelp.utils import as_utc, next_run_for_frequency, utcnow

logger = logging.getLogger(__name__)


class ScheduledRunner:
    def __init__(
        self,
        store: ContentStore,
        discoverer: TopicDiscoverer,
        scheduler: BatchScheduler,
    ) -> None:
        self._store = store
        self._discoverer = discoverer
        self._scheduler = scheduler

    def is_due(self, now: datetime | None = None) -> bool:
        config = self._store.automation_settings()
        if not config.enabled:
            return False
        return config.next_run_at is None or config.next_run_at <= as_utc(now or utcnow())

    def run_once(self, *, manual: bool = False, run_id: int | None = None) -> BatchSummary:
        config = self._store.automation_settings()
        if not manual and not config.enabled:
            raise AutomationDisabledError("Automation is not enabled")

        run_id = run_id or self._scheduler.start_run(RunMode.SCHEDULED).id
        started = utcnow()
        self._store.update_settings(AutomationSettings, last_run_at=started)
        try:
            topics = self._discoverer.discover(config.articles_per_run, config.target_categories)
        except Exception as exc:
            logger.exception("Topic discovery failed for scheduled run %d", run_id)
            self._store.update(
                BatchRun,
                run_id,
                status=JobStatus.FAILED.value,
                error_message=str(exc)[:500],
                completed_at=utcnow(),
            )
            return BatchSummary(run_id=run_id, status=JobStatus.FAILED.value)

        summary = self._scheduler.run_topics(
            [TopicRequest(t.topic, t.category_id) for t in topics],
            mode=RunMode.SCHEDULED,
            thresholds=Thresholds(config.min_quality_score, config.min_factual_score),
            run_id=run_id,
        )
        next_run = next_run_for_frequency(config.frequency, started)
        self._store.update_settings(AutomationSettings, next_run_at=next_run)
        logger.info("Scheduled run %d finished; next run at %s", run_id, next_run)
        return summary

    def tick(self) -> BatchSummary | None:
        """Run once if the schedule says so; for cron-style callers."""
        if not self.is_due():
            return None
        return self.run_once()
