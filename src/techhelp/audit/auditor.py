"""Full-corpus content audit: duplicate demotion plus batched issue analysis."""

from __future__ import annotations

import logging
import time
from typing import Callable

from techhelp.audit.fixer import changed_fields
from techhelp.config import Settings
from techhelp.errors import CapabilityError, StructuredOutputError
from techhelp.llm.client import CapabilityClient
from techhelp.llm.prompts import render
from techhelp.llm.schemas import AuditReport, AutoFixResult, Issue
from techhelp.pipeline.dedup import find_corpus_duplicates
from techhelp.storage.models import (
    Article,
    ArticleStatus,
    AuditFinding,
    AuditRun,
    FindingStatus,
    FindingType,
    JobStatus,
)
from techhelp.storage.repository import ContentStore
from techhelp.utils import utcnow

logger = logging.getLogger(__name__)


class ContentAuditor:
    """Re-scan every article, record findings and optionally auto-fix minor issues."""

    def __init__(
        self,
        client: CapabilityClient,
        store: ContentStore,
        settings: Settings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._store = store
        self._settings = settings
        self._sleep = sleep

    def start(self, auto_fix: bool = True) -> AuditRun:
        return self._store.add(AuditRun(auto_fix=auto_fix))

    def run(self, auto_fix: bool = True, *, run_id: int | None = None) -> AuditRun:
        run_id = run_id or self.start(auto_fix).id
        logger.info("Audit %d started (auto_fix=%s)", run_id, auto_fix)
        try:
            articles = self._store.list_articles()
            self._flag_duplicates(run_id, articles)
            self._scan(run_id, articles, auto_fix)
        except Exception as exc:
            logger.exception("Audit %d failed", run_id)
            return self._store.update(
                AuditRun,
                run_id,
                status=JobStatus.FAILED.value,
                error_message=str(exc)[:500],
                completed_at=utcnow(),
            )

        run = self._store.update(
            AuditRun, run_id, status=JobStatus.COMPLETED.value, completed_at=utcnow()
        )
        self._store.log_action(
            "content_audit",
            details={
                "run_id": run_id,
                "scanned": run.articles_scanned,
                "issues": run.issues_found,
                "duplicates": run.duplicates_found,
            },
        )
        return run

    # ------------------------------------------------------------------

    def _flag_duplicates(self, run_id: int, articles: list[Article]) -> None:
        pairs = find_corpus_duplicates(articles)
        demoted = 0
        for pair in pairs:
            original, duplicate = pair.original, pair.duplicate
            self._store.add_finding(
                run_id,
                article_id=duplicate.id,
                article_title=duplicate.title,
                related_article_id=original.id,
                related_article_title=original.title,
                type=FindingType.DUPLICATE.value,
                severity="critical",
                description=f'Duplicate or near-duplicate of "{original.title}" ({pair.reason} match)',
                suggestion="Consider merging these articles or removing the duplicate.",
            )
            published = ArticleStatus.PUBLISHED.value
            if duplicate.status == published:
                self._store.set_article_status(duplicate.id, ArticleStatus.DRAFT.value)
                demoted += 1
                self._store.add_finding(
                    run_id,
                    article_id=duplicate.id,
                    article_title=duplicate.title,
                    related_article_id=original.id,
                    related_article_title=original.title,
                    type=FindingType.AUTO_ACTION.value,
                    severity="warning",
                    description=(
                        f'Automatically set to draft because it duplicates "{original.title}"'
                    ),
                    suggestion="Review and decide whether to merge, edit, or delete.",
                    fix_applied="Set status from published to draft",
                    status=FindingStatus.RESOLVED.value,
                    resolved_at=utcnow(),
                )
        if pairs:
            logger.info("Audit %d: %d duplicate pairs, %d demoted", run_id, len(pairs), demoted)
        self._store.update(AuditRun, run_id, duplicates_found=len(pairs), set_to_draft=demoted)

    def _scan(self, run_id: int, articles: list[Article], auto_fix: bool) -> None:
        size = self._settings.audit_batch_size
        for start in range(0, len(articles), size):
            if start:
                self._sleep(self._settings.audit_batch_delay_seconds)
            batch = articles[start : start + size]
            try:
                report = self._client.extract_structured(
                    render("audit_analyze.j2", articles=batch),
                    AuditReport,
                    system=render("audit_system.j2"),
                )
            except Exception:
                logger.exception("Audit %d: batch at offset %d failed", run_id, start)
                self._store.increment(
                    AuditRun, run_id, articles_scanned=len(batch), batches_failed=1
                )
                continue

            by_id = {a.id: a for a in batch}
            for entry in report.articles:
                article = by_id.get(entry.article_id)
                if article is not None and entry.issues:
                    self._record(run_id, article, entry.issues, auto_fix)
            self._store.increment(AuditRun, run_id, articles_scanned=len(batch))

    def _record(self, run_id: int, article: Article, issues: list[Issue], auto_fix: bool) -> None:
        fixable: list[tuple[Issue, AuditFinding]] = []
        for issue in issues:
            finding = self._store.add_finding(
                run_id,
                article_id=article.id,
                article_title=article.title,
                type=issue.type,
                severity=issue.severity,
                description=issue.description,
                suggestion=issue.suggestion,
                auto_fixable=issue.auto_fixable,
            )
            if issue.auto_fixable:
                fixable.append((issue, finding))
        self._store.increment(AuditRun, run_id, issues_found=len(issues))

        if auto_fix and fixable:
            self._auto_fix(run_id, article, fixable)

    def _auto_fix(
        self, run_id: int, article: Article, fixable: list[tuple[Issue, AuditFinding]]
    ) -> None:
        try:
            result = self._client.extract_structured(
                render("audit_autofix.j2", article=article, issues=[i for i, _ in fixable]),
                AutoFixResult,
                max_tokens=self._settings.writer_max_tokens,
            )
        except (StructuredOutputError, CapabilityError) as exc:
            logger.warning("Audit %d: auto-fix for article %d failed: %s", run_id, article.id, exc)
            return

        changes = changed_fields(article, result)
        if not changes:
            return
        self._store.update_article(article.id, **changes)
        applied = "; ".join(result.fixes_applied) or "Applied minor fixes"
        now = utcnow()
        for _, finding in fixable:
            self._store.update(
                AuditFinding,
                finding.id,
                status=FindingStatus.RESOLVED.value,
                fix_applied=applied,
                resolved_at=now,
            )
        self._store.add_finding(
            run_id,
            article_id=article.id,
            article_title=article.title,
            type=FindingType.AUTO_FIX.value,
            severity="info",
            description=f"Auto-fixed {len(fixable)} issue(s): {', '.join(sorted(changes))} updated",
            fix_applied=applied,
            status=FindingStatus.RESOLVED.value,
            resolved_at=now,
        )
        self._store.increment(AuditRun, run_id, auto_fixed=len(fixable))
