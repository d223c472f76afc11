"""Tests for the batch scheduler and the periodic scheduled runner."""

from __future__ import annotations

from datetime import date, timedelta
from unittest.mock import MagicMock

import pytest

from techhelp.config import Settings
from techhelp.errors import AutomationDisabledError
from techhelp.llm.schemas import DiscoveredTopic, QualityReview
from techhelp.pipeline.engine import PipelineEngine, PipelineResult
from techhelp.scheduling.automation import ScheduledRunner
from techhelp.scheduling.batch import BatchScheduler, Thresholds, TopicRequest, should_publish
from techhelp.storage.models import (
    Article,
    AutomationSettings,
    BatchRun,
    QueueItem,
    QueueStatus,
)
from techhelp.storage.repository import ContentStore
from techhelp.utils import utcnow
from tests.conftest import FakeCapability

_DAY = date(2025, 3, 1)


def _skipped(topic: str, **kwargs: object) -> PipelineResult:
    return PipelineResult(run_id=1, status="skipped", reason="Duplicate topic")


@pytest.fixture
def scheduler(
    engine: PipelineEngine, store: ContentStore, settings: Settings, sleeps: list[float]
) -> BatchScheduler:
    return BatchScheduler(engine, store, settings, sleep=sleeps.append)


def _mock_scheduler(
    store: ContentStore, settings: Settings, side_effect
) -> tuple[BatchScheduler, MagicMock]:
    engine = MagicMock()
    engine.run.side_effect = side_effect
    return BatchScheduler(engine, store, settings, sleep=lambda s: None), engine


# ---------------------------------------------------------------------------
# ad-hoc topic lists
# ---------------------------------------------------------------------------


class TestRunTopics:
    def test_one_failure_does_not_stop_the_batch(
        self,
        scheduler: BatchScheduler,
        store: ContentStore,
        fake_client: FakeCapability,
        sleeps: list[float],
        settings: Settings,
    ) -> None:
        settings.stage_delay_seconds = 0
        fake_client.fail_markers.add("Bluetooth")
        topics = [
            TopicRequest("How to reset an iPhone"),
            TopicRequest("Fix Bluetooth pairing on Mac"),
            TopicRequest("Set up parental controls on Android"),
        ]

        summary = scheduler.run_topics(topics)

        assert (summary.generated, summary.failed, summary.skipped) == (2, 1, 0)
        assert summary.status == "completed"
        run = store.get(BatchRun, summary.run_id)
        assert run.status == "completed"
        assert run.articles_generated == 2
        assert run.articles_failed == 1
        assert run.completed_at is not None
        # Item pacing between units only, stage pacing disabled above
        assert [s for s in sleeps if s] == [5, 5]

    def test_publishes_only_when_both_scores_pass(
        self, scheduler: BatchScheduler, store: ContentStore, fake_client: FakeCapability
    ) -> None:
        fake_client.structured[QualityReview] = [
            QualityReview(quality_score=9),
            QualityReview(quality_score=6),
        ]

        summary = scheduler.run_topics(
            [TopicRequest("How to reset an iPhone"), TopicRequest("Fix slow WiFi at home")],
            thresholds=Thresholds(min_quality=7, min_factual=7),
        )

        assert summary.published == 1
        statuses = {a.title: a.status for a in store.list_articles()}
        assert statuses == {
            "How to reset an iPhone": "published",
            "Fix slow WiFi at home": "needs_review",
        }
        published = store.list_articles("published")[0]
        assert published.published_at is not None
        assert store.get(BatchRun, summary.run_id).articles_published == 1

    def test_stop_between_units(self, store: ContentStore, settings: Settings) -> None:
        calls = []

        def run_and_stop_after_two(topic: str, **kwargs: object) -> PipelineResult:
            calls.append(topic)
            if len(calls) == 2:
                store.request_stop("automation", run.id)
            return _skipped(topic)

        scheduler, engine = _mock_scheduler(store, settings, run_and_stop_after_two)
        run = scheduler.start_run()

        summary = scheduler.run_topics(
            [TopicRequest(f"Topic number {n}") for n in range(5)], run_id=run.id
        )

        assert summary.status == "stopped"
        assert engine.run.call_count == 2
        row = store.get(BatchRun, run.id)
        assert row.status == "stopped"
        assert row.articles_skipped == 2
        assert row.stop_requested is False

    def test_unexpected_engine_error_counts_as_failure(
        self, store: ContentStore, settings: Settings
    ) -> None:
        scheduler, _ = _mock_scheduler(store, settings, RuntimeError("database went away"))

        summary = scheduler.run_topics([TopicRequest("How to reset an iPhone")])

        assert summary.failed == 1
        assert summary.status == "completed"


def test_should_publish_requires_completed_article() -> None:
    article = Article(title="T", slug="t")
    passing = PipelineResult(
        run_id=1, status="completed", article=article, quality_score=7, factual_score=7
    )

    assert should_publish(passing, Thresholds())
    assert not should_publish(passing, Thresholds(min_quality=8))
    assert not should_publish(PipelineResult(run_id=1, status="skipped"), Thresholds())


# ---------------------------------------------------------------------------
# queue draining
# ---------------------------------------------------------------------------


class TestDrainQueue:
    def test_drains_in_priority_order_and_records_outcomes(
        self, scheduler: BatchScheduler, store: ContentStore
    ) -> None:
        store.enqueue(
            [
                QueueItem(run_date=_DAY, batch_number=1, topic="Fix slow WiFi at home", priority=1),
                QueueItem(run_date=_DAY, batch_number=1, topic="How to reset an iPhone", priority=0),
                QueueItem(run_date=_DAY, batch_number=2, topic="Not in this batch", priority=0),
            ]
        )

        summary = scheduler.drain_queue(_DAY, 1)

        assert summary.generated == 2
        items = {i.topic: i for i in store.list_queue()}
        first = items["How to reset an iPhone"]
        second = items["Fix slow WiFi at home"]
        assert first.status == second.status == "completed"
        assert first.processed_at <= second.processed_at
        assert store.get(Article, first.article_id).title == "How to reset an iPhone"
        assert items["Not in this batch"].status == "pending"

    def test_stop_leaves_remaining_items_pending(
        self, store: ContentStore, settings: Settings
    ) -> None:
        store.enqueue([QueueItem(topic=f"Manual topic {n}") for n in range(5)])
        processed = []

        def run_and_stop_after_two(topic: str, **kwargs: object) -> PipelineResult:
            processed.append(topic)
            if len(processed) == 2:
                store.request_stop("automation")
            return _skipped(topic)

        scheduler, _ = _mock_scheduler(store, settings, run_and_stop_after_two)

        summary = scheduler.drain_queue(None, None)

        assert summary.status == "stopped"
        assert store.count_items(None, None, QueueStatus.SKIPPED) == 2
        assert store.count_items(None, None, QueueStatus.PENDING) == 3
        assert store.count_items(None, None, QueueStatus.PROCESSING) == 0
        assert store.automation_settings().stop_requested is False

    def test_failed_item_keeps_error(self, store: ContentStore, settings: Settings) -> None:
        store.enqueue([QueueItem(topic="Manual topic")])
        scheduler, _ = _mock_scheduler(
            store,
            settings,
            lambda topic, **kw: PipelineResult(run_id=1, status="failed", reason="upstream 500"),
        )

        scheduler.drain_queue(None, None)

        item = store.list_queue()[0]
        assert item.status == "failed"
        assert item.error_message == "upstream 500"

    def test_writing_failure_on_middle_item(
        self,
        scheduler: BatchScheduler,
        store: ContentStore,
        fake_client: FakeCapability,
        sleeps: list[float],
        settings: Settings,
    ) -> None:
        settings.stage_delay_seconds = 0
        topics = [
            "How to reset an iPhone",
            "Fix Bluetooth pairing on Mac",
            "Set up parental controls on Android",
        ]
        store.enqueue(
            [
                QueueItem(run_date=_DAY, batch_number=1, topic=topic, priority=n)
                for n, topic in enumerate(topics)
            ]
        )
        fake_client.fail_markers.add("on the topic: Fix Bluetooth pairing on Mac")

        summary = scheduler.drain_queue(_DAY, 1)

        run = store.get(BatchRun, summary.run_id)
        assert (run.articles_generated, run.articles_failed) == (2, 1)
        assert run.status == "completed"
        items = {i.topic: i for i in store.list_queue()}
        assert items[topics[0]].status == "completed"
        assert items[topics[2]].status == "completed"
        assert items[topics[1]].status == "failed"
        assert "scripted failure" in items[topics[1]].error_message
        assert items[topics[1]].article_id is None
        failed_run = next(r for r in store.list_runs() if r.topic == topics[1])
        assert failed_run.status == "failed"
        assert [s for s in sleeps if s] == [5, 5]

    def test_stale_leases_are_reclaimed_first(
        self, store: ContentStore, settings: Settings
    ) -> None:
        store.enqueue([QueueItem(topic="Abandoned manual topic")])
        item = store.claim_next(None, None)
        store.update(QueueItem, item.id, leased_at=utcnow() - timedelta(minutes=30))
        scheduler, engine = _mock_scheduler(store, settings, _skipped)

        scheduler.drain_queue(None, None)

        engine.run.assert_called_once()
        assert store.get(QueueItem, item.id).status == "skipped"


# ---------------------------------------------------------------------------
# scheduled runner
# ---------------------------------------------------------------------------


class TestScheduledRunner:
    def _runner(self, store: ContentStore, settings: Settings, topics) -> tuple:
        discoverer = MagicMock()
        if isinstance(topics, Exception):
            discoverer.discover.side_effect = topics
        else:
            discoverer.discover.return_value = topics
        scheduler, engine = _mock_scheduler(store, settings, _skipped)
        return ScheduledRunner(store, discoverer, scheduler), discoverer, engine

    def test_disabled_automation_refuses_scheduled_run(
        self, store: ContentStore, settings: Settings
    ) -> None:
        runner, discoverer, _ = self._runner(store, settings, [])

        with pytest.raises(AutomationDisabledError):
            runner.run_once()
        discoverer.discover.assert_not_called()
        assert runner.tick() is None

    def test_run_once_discovers_and_generates(
        self, store: ContentStore, settings: Settings
    ) -> None:
        store.update_settings(
            AutomationSettings,
            enabled=True,
            articles_per_run=2,
            frequency="every_6_hours",
            target_categories_json="[3]",
        )
        topics = [
            DiscoveredTopic(topic="How to reset an iPhone", category_id=3),
            DiscoveredTopic(topic="Fix slow WiFi at home"),
        ]
        runner, discoverer, engine = self._runner(store, settings, topics)

        summary = runner.run_once()

        discoverer.discover.assert_called_once_with(2, [3])
        assert engine.run.call_count == 2
        assert summary.skipped == 2
        config = store.automation_settings()
        assert config.last_run_at is not None
        assert config.next_run_at - config.last_run_at == timedelta(hours=6)
        assert store.get(BatchRun, summary.run_id).mode == "scheduled"

    def test_discovery_failure_fails_the_run(
        self, store: ContentStore, settings: Settings
    ) -> None:
        runner, _, engine = self._runner(store, settings, RuntimeError("search down"))

        summary = runner.run_once(manual=True)

        assert summary.status == "failed"
        row = store.get(BatchRun, summary.run_id)
        assert row.status == "failed"
        assert "search down" in row.error_message
        engine.run.assert_not_called()

    def test_is_due(self, store: ContentStore, settings: Settings) -> None:
        runner, _, _ = self._runner(store, settings, [])
        assert not runner.is_due()

        store.update_settings(AutomationSettings, enabled=True)
        assert runner.is_due()

        store.update_settings(AutomationSettings, next_run_at=utcnow() + timedelta(hours=1))
        assert not runner.is_due()
