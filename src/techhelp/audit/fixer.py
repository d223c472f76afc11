"""Apply AI-authored fixes to individual audit findings."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from techhelp.config import Settings
from techhelp.errors import NotFoundError, TechHelpError
from techhelp.llm.client import CapabilityClient
from techhelp.llm.prompts import render
from techhelp.llm.schemas import FindingFix
from techhelp.storage.models import Article, AuditFinding, AuditRun, FindingStatus, FindingType
from techhelp.storage.repository import ContentStore
from techhelp.utils import utcnow

logger = logging.getLogger(__name__)

TRUNCATION_MARKERS = (
    "incomplete",
    "truncat",
    "cut off",
    "cuts off",
    "abruptly ends",
    "mid-sentence",
    "mid-header",
)
NO_CHANGE_NOTE = "No changes could be applied, manual review needed"
# Findings that describe an action or a pairing, not a text problem
_NOT_TEXT_FIXABLE = {
    FindingType.DUPLICATE.value,
    FindingType.AUTO_ACTION.value,
    FindingType.AUTO_FIX.value,
}


def changed_fields(article: Article, fixed: object) -> dict[str, str]:
    """Fields of ``fixed`` that are non-empty and differ from ``article``."""
    changes = {}
    for name in ("title", "excerpt", "content"):
        value = getattr(fixed, name, None)
        if value and value != getattr(article, name):
            changes[name] = value
    return changes


def is_truncation(finding: AuditFinding) -> bool:
    description = finding.description.lower()
    return finding.type == FindingType.QUALITY.value and any(
        marker in description for marker in TRUNCATION_MARKERS
    )


@dataclass
class FixOutcome:
    finding_id: int
    fixed: bool
    description: str
    already_resolved: bool = False


@dataclass
class FixAllSummary:
    audit_run_id: int
    attempted: int = 0
    fixed: int = 0
    unchanged: int = 0
    failed: int = 0


class FindingFixer:
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

    def apply_fix(self, finding_id: int) -> FixOutcome:
        """Fix one finding in place.

        A resolved finding is returned untouched, so repeated calls never
        apply the same fix twice.
        """
        finding = self._store.get(AuditFinding, finding_id)
        if finding.status == FindingStatus.RESOLVED.value:
            return FixOutcome(
                finding_id=finding_id,
                fixed=False,
                description=finding.fix_applied or "Already resolved",
                already_resolved=True,
            )
        if finding.article_id is None:
            raise NotFoundError(f"Finding {finding_id} has no article")
        if finding.type in _NOT_TEXT_FIXABLE:
            raise TechHelpError(f"Finding {finding_id} ({finding.type}) needs manual review")

        article = self._store.get(Article, finding.article_id)
        if is_truncation(finding):
            logger.info("Finding %d: regenerating truncated article %d", finding_id, article.id)
            result = self._client.extract_structured(
                render("audit_complete_truncated.j2", article=article, finding=finding),
                FindingFix,
                model=self._settings.model_writer,
                max_tokens=self._settings.writer_max_tokens,
            )
        else:
            result = self._client.extract_structured(
                render("audit_apply_fix.j2", article=article, finding=finding),
                FindingFix,
                max_tokens=self._settings.writer_max_tokens,
            )

        changes = changed_fields(article, result)
        if not changes:
            self._store.update(AuditFinding, finding_id, fix_applied=NO_CHANGE_NOTE)
            logger.info("Finding %d: model produced no change, left open", finding_id)
            return FixOutcome(finding_id=finding_id, fixed=False, description=NO_CHANGE_NOTE)

        description = result.fix_description or "Applied AI-suggested fix"
        self._store.update_article(article.id, **changes)
        self._store.update(
            AuditFinding,
            finding_id,
            status=FindingStatus.RESOLVED.value,
            fix_applied=description,
            resolved_at=utcnow(),
        )
        self._store.log_action(
            "apply_fix",
            article_id=article.id,
            details={"finding_id": finding_id, "fields": sorted(changes)},
        )
        return FixOutcome(finding_id=finding_id, fixed=True, description=description)

    def fix_all(self, audit_run_id: int) -> FixAllSummary:
        """Apply every open, fixable finding of a run; failures are counted, not raised."""
        self._store.get(AuditRun, audit_run_id)
        findings = [
            f
            for f in self._store.list_findings(audit_run_id, FindingStatus.OPEN.value)
            if f.article_id is not None and f.suggestion and f.type not in _NOT_TEXT_FIXABLE
        ]
        summary = FixAllSummary(audit_run_id=audit_run_id)
        self._store.update(AuditRun, audit_run_id, fix_all_status="fixing")

        for index, finding in enumerate(findings):
            if index:
                self._sleep(self._settings.audit_batch_delay_seconds)
            summary.attempted += 1
            try:
                outcome = self.apply_fix(finding.id)
            except Exception:
                logger.exception("Fix failed for finding %d", finding.id)
                summary.failed += 1
                continue
            if outcome.fixed:
                summary.fixed += 1
            else:
                summary.unchanged += 1

        self._store.update(AuditRun, audit_run_id, fix_all_status="fixed")
        logger.info(
            "Fix-all for audit %d: %d fixed, %d unchanged, %d failed",
            audit_run_id,
            summary.fixed,
            summary.unchanged,
            summary.failed,
        )
        return summary
