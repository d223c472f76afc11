"""Sequential fan-out of the pipeline over topic lists and queue slots."""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from datetime import date
from typing import Callable, Iterator

from techhelp.config import Settings
from techhelp.pipeline.engine import PipelineEngine, PipelineResult
from techhelp.storage.models import (
    ArticleStatus,
    BatchRun,
    JobStatus,
    NightlyRun,
    QueueStatus,
    RunMode,
    RunStatus,
)
from techhelp.storage.repository import ContentStore
from techhelp.utils import utcnow

logger = logging.getLogger(__name__)

_QUEUE_OUTCOME = {
    RunStatus.COMPLETED.value: QueueStatus.COMPLETED,
    RunStatus.SKIPPED.value: QueueStatus.SKIPPED,
    RunStatus.FAILED.value: QueueStatus.FAILED,
}


@dataclass
class Thresholds:
    min_quality: int = 7
    min_factual: int = 7


@dataclass
class TopicRequest:
    topic: str
    category_id: int | None = None


@dataclass
class BatchSummary:
    run_id: int
    status: str
    generated: int = 0
    published: int = 0
    failed: int = 0
    skipped: int = 0


def should_publish(result: PipelineResult, thresholds: Thresholds) -> bool:
    """Auto-publish only when both scores clear their thresholds."""
    return (
        result.status == RunStatus.COMPLETED.value
        and result.article is not None
        and result.quality_score is not None
        and result.factual_score is not None
        and result.quality_score >= thresholds.min_quality
        and result.factual_score >= thresholds.min_factual
    )


def _stop_kind(run_model: type) -> str:
    return "nightly" if run_model is NightlyRun else "automation"


class BatchScheduler:
    """Run topics one at a time with pacing and a cooperative stop check."""

    def __init__(
        self,
        engine: PipelineEngine,
        store: ContentStore,
        settings: Settings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._engine = engine
        self._store = store
        self._settings = settings
        self._sleep = sleep

    def start_run(self, mode: RunMode = RunMode.BATCH) -> BatchRun:
        return self._store.add(BatchRun(mode=RunMode(mode).value))

    def run_topics(
        self,
        topics: list[TopicRequest],
        *,
        mode: RunMode = RunMode.BATCH,
        thresholds: Thresholds | None = None,
        run_id: int | None = None,
    ) -> BatchSummary:
        """Ad-hoc mode: topics run in the order given."""
        run_id = run_id or self.start_run(mode).id
        logger.info("Batch run %d: %d topics", run_id, len(topics))

        def units() -> Iterator[TopicRequest]:
            yield from topics

        return self._drive(
            units(),
            run_model=BatchRun,
            run_id=run_id,
            mode=mode,
            thresholds=thresholds or Thresholds(),
            finalize=True,
        )

    def drain_queue(
        self,
        run_date: date | None,
        batch_number: int | None,
        *,
        run_model: type[BatchRun] | type[NightlyRun] = BatchRun,
        run_id: int | None = None,
        mode: RunMode = RunMode.BATCH,
        thresholds: Thresholds | None = None,
        finalize: bool = True,
    ) -> BatchSummary:
        """Queue mode: pending items of one slot in ascending priority.

        ``run_date=None, batch_number=None`` addresses the manual queue.
        """
        if run_id is None:
            run_id = self.start_run(mode).id
        self._store.reclaim_stale(run_date, batch_number, self._settings.queue_lease_minutes)
        pending = self._store.count_items(run_date, batch_number, QueueStatus.PENDING)
        logger.info(
            "Draining queue %s/batch %s: %d pending (run %d)",
            run_date,
            batch_number,
            pending,
            run_id,
        )

        def units() -> Iterator:
            while True:
                item = self._store.claim_next(run_date, batch_number)
                if item is None:
                    return
                yield item

        return self._drive(
            units(),
            run_model=run_model,
            run_id=run_id,
            mode=mode,
            thresholds=thresholds or Thresholds(),
            finalize=finalize,
        )

    # ------------------------------------------------------------------

    def _drive(
        self,
        units: Iterator,
        *,
        run_model: type,
        run_id: int,
        mode: RunMode,
        thresholds: Thresholds,
        finalize: bool,
    ) -> BatchSummary:
        kind = _stop_kind(run_model)
        summary = BatchSummary(run_id=run_id, status=JobStatus.RUNNING.value)
        first = True
        while True:
            # Checked before claiming so a stop never strands a leased item
            if self._store.is_stop_requested(kind, run_id):
                return self._stop(run_model, run_id, kind, summary)
            unit = next(units, None)
            if unit is None:
                break
            if not first:
                self._sleep(self._settings.item_delay_seconds)
            first = False
            self._process(unit, run_model, run_id, mode, thresholds, summary)

        summary.status = JobStatus.COMPLETED.value
        if finalize:
            self._store.update(
                run_model, run_id, status=JobStatus.COMPLETED.value, completed_at=utcnow()
            )
            self._store.log_action("batch_run", details=asdict(summary))
        logger.info(
            "Run %d done: %d generated, %d published, %d failed, %d skipped",
            run_id,
            summary.generated,
            summary.published,
            summary.failed,
            summary.skipped,
        )
        return summary

    def _process(
        self,
        unit: object,
        run_model: type,
        run_id: int,
        mode: RunMode,
        thresholds: Thresholds,
        summary: BatchSummary,
    ) -> None:
        queue_item_id = unit.id if not isinstance(unit, TopicRequest) else None
        try:
            result = self._engine.run(unit.topic, category_id=unit.category_id, mode=mode)
            published = should_publish(result, thresholds)
            if published:
                self._store.set_article_status(result.article.id, ArticleStatus.PUBLISHED.value)
        except Exception as exc:
            logger.exception("Unit %r failed outside the pipeline", unit.topic)
            result = PipelineResult(run_id=0, status=RunStatus.FAILED.value, reason=str(exc))
            published = False

        if result.status == RunStatus.COMPLETED.value:
            summary.generated += 1
            deltas = {"articles_generated": 1}
            if published:
                summary.published += 1
                deltas["articles_published"] = 1
        elif result.status == RunStatus.SKIPPED.value:
            summary.skipped += 1
            deltas = {"articles_skipped": 1}
        else:
            summary.failed += 1
            deltas = {"articles_failed": 1}
        self._store.increment(run_model, run_id, **deltas)

        if queue_item_id is not None:
            self._store.finish_item(
                queue_item_id,
                _QUEUE_OUTCOME[result.status],
                article_id=result.article.id if result.article else None,
                error_message=None if result.status == RunStatus.COMPLETED.value else result.reason,
            )

    def _stop(self, run_model: type, run_id: int, kind: str, summary: BatchSummary) -> BatchSummary:
        logger.warning("Run %d stopped on request", run_id)
        self._store.update(run_model, run_id, status=JobStatus.STOPPED.value, completed_at=utcnow())
        self._store.clear_stop(kind, run_id)
        summary.status = JobStatus.STOPPED.value
        self._store.log_action("batch_run", "stopped", details=asdict(summary))
        return summary
