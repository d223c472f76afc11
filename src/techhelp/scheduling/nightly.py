"""The nightly builder: research every category, dedup, queue, then generate.

Batch 1 runs every phase. Batches 2 and 3 are later invocations on the same
day that skip straight to draining their slice of the queue.

Phases:
  B  deep research per category
  C  cross-category dedup against the corpus
  D  optional creation of missing categories
  E  partition into three priority tiers and enqueue
  F  drain this batch's queue through the batch scheduler
"""

from __future__ import annotations

import json
import logging
import time
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Callable

from techhelp.config import Settings
from techhelp.errors import AutomationDisabledError, TechHelpError
from techhelp.pipeline.dedup import DuplicateDetector
from techhelp.research.deep_research import CategoryResearcher
from techhelp.scheduling.batch import BatchScheduler, Thresholds
from techhelp.storage.models import (
    Category,
    JobStatus,
    NightlyBuilderSettings,
    NightlyRun,
    QueueItem,
    RunMode,
)
from techhelp.storage.repository import ContentStore
from techhelp.utils import next_scheduled_run, slugify, today_in, utcnow

logger = logging.getLogger(__name__)

STOP_KIND = "nightly"


@dataclass
class Candidate:
    topic: str
    category_id: int
    priority: int  # position in that category's research list


def partition_topics(topics: list, first: int = 30, second: int = 50) -> dict[int, list]:
    """Split one category's ordered topics into batch tiers 1, 2 and 3."""
    return {
        1: topics[:first],
        2: topics[first : first + second],
        3: topics[first + second :],
    }


class _Stopped(Exception):
    """Raised internally when a stop request is honoured between phases."""


class NightlyBuilder:
    def __init__(
        self,
        store: ContentStore,
        settings: Settings,
        *,
        researcher: CategoryResearcher,
        detector: DuplicateDetector,
        scheduler: BatchScheduler,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._settings = settings
        self._researcher = researcher
        self._detector = detector
        self._scheduler = scheduler
        self._sleep = sleep

    def start(self, batch_number: int) -> NightlyRun:
        status = JobStatus.RESEARCHING if batch_number == 1 else JobStatus.GENERATING
        return self._store.add(NightlyRun(batch_number=batch_number, status=status.value))

    def run(
        self,
        batch_number: int = 1,
        *,
        manual: bool = False,
        run_id: int | None = None,
    ) -> NightlyRun | None:
        """Execute one nightly batch; returns the finished run row.

        A stop request that is already pending when the builder starts is
        consumed and the batch is skipped (``None`` unless a run row was
        pre-created by the caller).
        """
        if batch_number not in (1, 2, 3):
            raise ValueError(f"batch_number must be 1, 2 or 3, not {batch_number}")
        config = self._store.nightly_settings()
        if not manual and not config.enabled:
            raise AutomationDisabledError("Nightly builder is disabled")

        if config.stop_requested:
            logger.warning("Stop was pending before nightly batch %d; skipping", batch_number)
            self._store.clear_stop(STOP_KIND, run_id)
            if run_id is None:
                return None
            return self._store.update(
                NightlyRun,
                run_id,
                status=JobStatus.SKIPPED.value,
                error_message="Stop requested before start",
                completed_at=utcnow(),
            )

        run_id = run_id or self.start(batch_number).id
        self._store.update_settings(NightlyBuilderSettings, last_run_at=utcnow())
        run_date = today_in(self._settings.run_timezone)
        logger.info("Nightly batch %d started (run %d, %s)", batch_number, run_id, run_date)

        try:
            if batch_number == 1:
                self._build_queue(run_id, config)
            self._store.update(NightlyRun, run_id, status=JobStatus.GENERATING.value)
            summary = self._scheduler.drain_queue(
                run_date,
                batch_number,
                run_model=NightlyRun,
                run_id=run_id,
                mode=RunMode.NIGHTLY,
                thresholds=Thresholds(config.min_quality_score, config.min_factual_score),
                finalize=False,
            )
            if summary.status == JobStatus.STOPPED.value:
                return self._store.get(NightlyRun, run_id)
        except _Stopped:
            return self._store.get(NightlyRun, run_id)
        except Exception as exc:
            logger.exception("Nightly batch %d failed", batch_number)
            return self._store.update(
                NightlyRun,
                run_id,
                status=JobStatus.FAILED.value,
                error_message=str(exc)[:500],
                completed_at=utcnow(),
            )

        self._store.update_settings(
            NightlyBuilderSettings,
            next_run_at=next_scheduled_run(self._settings.nightly_schedule_utc),
        )
        self._store.log_action(
            "nightly_builder", details={"run_id": run_id, "batch": batch_number}
        )
        return self._store.update(
            NightlyRun, run_id, status=JobStatus.COMPLETED.value, completed_at=utcnow()
        )

    # ------------------------------------------------------------------

    def _checkpoint(self, run_id: int, phase: str, **progress: object) -> None:
        """Honour a stop request between units; persists progress either way."""
        if not self._store.is_stop_requested(STOP_KIND, run_id):
            if progress:
                self._store.update(NightlyRun, run_id, **progress)
            return
        logger.warning("Nightly run %d stopped before %s", run_id, phase)
        self._store.update(
            NightlyRun,
            run_id,
            status=JobStatus.STOPPED.value,
            completed_at=utcnow(),
            **progress,
        )
        self._store.clear_stop(STOP_KIND, run_id)
        raise _Stopped(phase)

    def _build_queue(self, run_id: int, config: NightlyBuilderSettings) -> None:
        categories = self._store.list_categories()
        if not categories:
            raise TechHelpError("No categories found")
        if config.target_categories:
            categories = [c for c in categories if c.id in config.target_categories]
        articles = self._store.list_articles()

        # Phase B
        candidates: list[Candidate] = []
        details: dict[str, dict] = {}
        processed = 0
        for index, category in enumerate(categories):
            self._checkpoint(
                run_id,
                f"category {category.name}",
                categories_processed=processed,
                topics_found=len(candidates),
                details_json=json.dumps(details),
            )
            if index:
                self._sleep(self._settings.category_delay_seconds)
            existing = [a.title for a in articles if a.category_id == category.id]
            try:
                topics = self._researcher.research_topics(
                    category.name, category.description, existing, config.topics_per_category
                )
            except Exception as exc:
                logger.exception("Research failed for category %s", category.name)
                details[category.name] = {"error": str(exc)[:300]}
            else:
                candidates.extend(
                    Candidate(topic=t, category_id=category.id, priority=i)
                    for i, t in enumerate(topics)
                )
                details[category.name] = {
                    "topics_found": len(topics),
                    "existing_articles": len(existing),
                }
            processed += 1

        found = len(candidates)
        progress = dict(
            categories_processed=processed,
            topics_found=found,
            details_json=json.dumps(details),
        )

        # Phase C
        self._checkpoint(run_id, "dedup", **progress)
        deduped = self._dedup(candidates, [a.title for a in articles])
        progress["topics_after_dedup"] = len(deduped)

        # Phase D
        self._checkpoint(run_id, "category creation", **progress)
        if config.allow_category_creation:
            created, extra = self._create_missing_categories(
                categories, config.topics_per_category, details
            )
            deduped.extend(extra)
            progress.update(
                categories_created=created,
                topics_found=found + len(extra),
                topics_after_dedup=len(deduped),
                details_json=json.dumps(details),
            )

        # Phase E
        self._checkpoint(run_id, "queue split", **progress)
        counts = self._enqueue(deduped)
        logger.info("Queued batch 1: %d, batch 2: %d, batch 3: %d", counts[1], counts[2], counts[3])

    def _dedup(self, candidates: list[Candidate], titles: list[str]) -> list[Candidate]:
        kept = Counter(self._detector.filter_topics([c.topic for c in candidates], titles))
        deduped = []
        for candidate in candidates:
            if kept[candidate.topic] > 0:
                kept[candidate.topic] -= 1
                deduped.append(candidate)
        return deduped

    def _create_missing_categories(
        self, categories: list[Category], topics_per_category: int, details: dict
    ) -> tuple[int, list[Candidate]]:
        try:
            suggestions = self._researcher.suggest_missing_categories(categories)
        except Exception:
            logger.exception("Missing-category research failed")
            return 0, []

        names = {c.name.lower() for c in categories}
        slugs = {c.slug for c in categories}
        created = 0
        extra: list[Candidate] = []
        for suggestion in suggestions:
            slug = slugify(suggestion.slug or suggestion.name)
            if not slug or suggestion.name.lower() in names or slug in slugs:
                continue
            category = self._store.create_category(
                suggestion.name, slug, suggestion.description, suggestion.icon
            )
            names.add(category.name.lower())
            slugs.add(slug)
            created += 1
            logger.info("Created category %s", category.name)

            self._sleep(self._settings.category_delay_seconds)
            try:
                topics = self._researcher.research_topics(
                    category.name, category.description, [], topics_per_category
                )
            except Exception as exc:
                logger.exception("Research failed for new category %s", category.name)
                details[category.name] = {"error": str(exc)[:300], "new_category": True}
                continue
            extra.extend(
                Candidate(topic=t, category_id=category.id, priority=i)
                for i, t in enumerate(topics)
            )
            details[category.name] = {"topics_found": len(topics), "new_category": True}
        return created, extra

    def _enqueue(self, deduped: list[Candidate]) -> dict[int, int]:
        by_category: dict[int, list[Candidate]] = defaultdict(list)
        for candidate in deduped:
            by_category[candidate.category_id].append(candidate)

        run_date = today_in(self._settings.run_timezone)
        items: list[QueueItem] = []
        counts = {1: 0, 2: 0, 3: 0}
        for topics in by_category.values():
            tiers = partition_topics(
                topics, self._settings.batch1_per_category, self._settings.batch2_per_category
            )
            for batch_number, tier in tiers.items():
                counts[batch_number] += len(tier)
                items.extend(
                    QueueItem(
                        run_date=run_date,
                        batch_number=batch_number,
                        topic=c.topic,
                        category_id=c.category_id,
                        priority=c.priority,
                    )
                    for c in tier
                )
        self._store.enqueue(items)
        return counts
