"""The six-stage pipeline that turns one topic into one stored article.

Every stage transition is written to the ``PipelineRun`` row before the stage
does its work, so pollers always see where a run is. Any exception aborts the
run as ``failed``; a duplicate topic ends it as ``skipped``.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable

from techhelp.config import Settings
from techhelp.errors import SlugConflictError, StructuredOutputError
from techhelp.llm.client import CapabilityClient
from techhelp.llm.prompts import render
from techhelp.llm.schemas import ArticleDraft, FactualScore, QualityReview
from techhelp.pipeline.dedup import DuplicateDetector
from techhelp.storage.models import (
    Article,
    ArticleStatus,
    Category,
    PipelineRun,
    RunMode,
    RunStatus,
)
from techhelp.storage.repository import ContentStore
from techhelp.utils import slugify

logger = logging.getLogger(__name__)

DUPLICATE_REASON = "Duplicate topic"
MAX_TAGS = 8


@dataclass
class PipelineResult:
    run_id: int
    status: str  # completed | failed | skipped
    article: Article | None = None
    quality_score: int | None = None
    factual_score: int | None = None
    reason: str | None = None


@dataclass
class _Scores:
    factual: int
    quality: int


class PipelineEngine:
    """Drive a topic through check, research, outline, write, verify and optimize."""

    def __init__(
        self,
        client: CapabilityClient,
        store: ContentStore,
        settings: Settings,
        *,
        detector: DuplicateDetector | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._store = store
        self._settings = settings
        self._detector = detector or DuplicateDetector(client, settings, sleep=sleep)
        self._sleep = sleep

    def run(
        self,
        topic: str,
        *,
        category_id: int | None = None,
        mode: RunMode = RunMode.MANUAL,
        run_id: int | None = None,
    ) -> PipelineResult:
        """Run the whole pipeline; never raises for stage failures.

        ``run_id`` lets a caller pre-create the run row (to hand its id to a
        poller) before the work starts.
        """
        if run_id is None:
            run_id = self._store.create_run(topic, RunMode(mode).value).id
        logger.info("Run %d started for topic %r", run_id, topic)
        try:
            return self._execute(run_id, topic, category_id)
        except Exception as exc:
            logger.exception("Run %d failed", run_id)
            message = str(exc)[:500] or exc.__class__.__name__
            self._store.advance_run(run_id, RunStatus.FAILED, error_message=message)
            self._store.log_action(
                "generate_article", "failed", details={"topic": topic, "error": message}
            )
            return PipelineResult(run_id=run_id, status=RunStatus.FAILED.value, reason=message)

    # ------------------------------------------------------------------

    def _execute(self, run_id: int, topic: str, category_id: int | None) -> PipelineResult:
        self._store.advance_run(run_id, RunStatus.CHECKING)
        check = self._detector.check_topic(topic, self._store.list_article_titles())
        if check.is_duplicate:
            logger.info(
                "Run %d skipped: %r matches %r (%d)",
                run_id,
                topic,
                check.matched_title,
                check.similarity,
            )
            self._store.advance_run(run_id, RunStatus.SKIPPED, error_message=DUPLICATE_REASON)
            self._store.log_action(
                "generate_article",
                "skipped",
                details={"topic": topic, "similar_to": check.matched_title},
            )
            return PipelineResult(
                run_id=run_id, status=RunStatus.SKIPPED.value, reason=DUPLICATE_REASON
            )

        self._pause()
        run = self._research(run_id, topic)
        self._pause()
        run = self._outline(run, topic)
        self._pause()
        categories = self._store.list_categories()
        draft = self._write(run, topic, categories, category_id)
        self._pause()
        factual = self._verify(run_id, draft)
        self._pause()
        quality = self._optimize(run_id, draft)

        article = self._persist(
            run, draft, _Scores(factual=factual, quality=quality), categories, category_id
        )
        metrics = {
            "quality_score": quality,
            "factual_score": factual,
            "sources_count": len(run.research_sources),
        }
        self._store.advance_run(
            run_id,
            RunStatus.COMPLETED,
            current_step=run.total_steps,
            article_id=article.id,
            metrics_json=json.dumps(metrics),
        )
        self._store.log_action(
            "generate_article",
            article_id=article.id,
            details={"topic": topic, "title": article.title, **metrics},
        )
        logger.info("Run %d completed: article %d (%s)", run_id, article.id, article.status)
        return PipelineResult(
            run_id=run_id,
            status=RunStatus.COMPLETED.value,
            article=article,
            quality_score=quality,
            factual_score=factual,
        )

    def _pause(self) -> None:
        self._sleep(self._settings.stage_delay_seconds)

    def _research(self, run_id: int, topic: str) -> PipelineRun:
        self._store.advance_run(run_id, RunStatus.RESEARCHING)
        grounded = self._client.complete_grounded(
            render("research.j2", topic=topic, site_name=self._settings.site_name)
        )
        return self._store.update(
            PipelineRun,
            run_id,
            research_notes=grounded.text,
            research_sources_json=json.dumps(grounded.sources),
        )

    def _outline(self, run: PipelineRun, topic: str) -> PipelineRun:
        self._store.advance_run(run.id, RunStatus.OUTLINING)
        outline = self._client.complete(
            render("outline.j2", topic=topic, research=run.research_notes)
        )
        return self._store.update(PipelineRun, run.id, generated_outline=outline)

    def _write(
        self,
        run: PipelineRun,
        topic: str,
        categories: list[Category],
        category_id: int | None,
    ) -> ArticleDraft:
        self._store.advance_run(run.id, RunStatus.WRITING)
        prompt = render(
            "write_article.j2",
            topic=topic,
            research=run.research_notes,
            outline=run.generated_outline,
            categories=categories,
            category_id=category_id,
            site_name=self._settings.site_name,
        )
        return self._client.extract_structured(
            prompt,
            ArticleDraft,
            model=self._settings.model_writer,
            max_tokens=self._settings.writer_max_tokens,
        )

    def _verify(self, run_id: int, draft: ArticleDraft) -> int:
        """Grounded fact check, then a separate call to reduce it to a score."""
        self._store.advance_run(run_id, RunStatus.VERIFYING)
        narrative = self._client.complete_grounded(
            render("verify_facts.j2", title=draft.title, content=draft.content[:4000])
        )
        try:
            return self._client.extract_structured(
                render("factual_score.j2", title=draft.title, report=narrative.text),
                FactualScore,
                model=self._settings.model_lite,
                max_tokens=500,
            ).factual_score
        except StructuredOutputError as exc:
            logger.warning("Run %d: factual score unreadable (%s), using default", run_id, exc)
            return self._settings.default_score

    def _optimize(self, run_id: int, draft: ArticleDraft) -> int:
        self._store.advance_run(run_id, RunStatus.OPTIMIZING)
        try:
            review = self._client.extract_structured(
                render("quality_gate.j2", draft=draft), QualityReview
            )
        except StructuredOutputError as exc:
            logger.warning("Run %d: quality review unreadable (%s), using default", run_id, exc)
            return self._settings.default_score

        if review.improved_seo_title:
            draft.seo_title = review.improved_seo_title
        if review.improved_seo_description:
            draft.seo_description = review.improved_seo_description
        for tag in review.additional_tags:
            if tag not in draft.tags and len(draft.tags) < MAX_TAGS:
                draft.tags.append(tag)
        return review.quality_score

    def _persist(
        self,
        run: PipelineRun,
        draft: ArticleDraft,
        scores: _Scores,
        categories: list[Category],
        pinned_category: int | None,
    ) -> Article:
        known = {c.id for c in categories}
        category_id = pinned_category
        if category_id is None and draft.category_id in known:
            category_id = draft.category_id

        status = (
            ArticleStatus.NEEDS_REVIEW
            if scores.quality < self._settings.needs_review_below
            else ArticleStatus.DRAFT
        )
        slug = slugify(draft.slug) or slugify(draft.title) or slugify(run.topic)
        fields = dict(
            title=draft.title,
            slug=slug,
            excerpt=draft.excerpt,
            content=draft.content,
            category_id=category_id,
            status=status.value,
            read_time=draft.read_time,
            tags_json=json.dumps(draft.tags[:MAX_TAGS]),
            seo_title=draft.seo_title or draft.title,
            seo_description=draft.seo_description or draft.excerpt,
            ai_generated=True,
            sources_json=run.research_sources_json,
        )
        try:
            return self._store.insert_article(**fields)
        except SlugConflictError:
            fields["slug"] = f"{slug}-{int(time.time() * 1000)}"
            logger.info("Slug %s taken, retrying as %s", slug, fields["slug"])
            return self._store.insert_article(**fields)
