"""The Content Store: one repository over categories, articles and job state."""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import TypeVar

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, col, select

from techhelp.errors import InvalidTransitionError, NotFoundError, SlugConflictError
from techhelp.storage.database import get_engine, get_session
from techhelp.storage.models import (
    STAGE_ORDER,
    TERMINAL_STATUSES,
    AgentLog,
    Article,
    ArticleStatus,
    AuditFinding,
    AuditRun,
    AutomationSettings,
    BatchRun,
    Category,
    NightlyBuilderSettings,
    NightlyRun,
    PipelineRun,
    QueueItem,
    QueueStatus,
    RunStatus,
)
from techhelp.utils import utcnow

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=SQLModel)

# Settings row and per-run row that together carry a stop request
STOP_CHANNELS: dict[str, tuple[type[SQLModel], type[SQLModel]]] = {
    "automation": (AutomationSettings, BatchRun),
    "nightly": (NightlyBuilderSettings, NightlyRun),
}


def can_transition(current: str, new: str) -> bool:
    """Runs only move forward through the stage order or jump to a terminal state."""
    current_status = RunStatus(current)
    new_status = RunStatus(new)
    if current_status in TERMINAL_STATUSES:
        return False
    if new_status in TERMINAL_STATUSES:
        return True
    return STAGE_ORDER.index(new_status) > STAGE_ORDER.index(current_status)


class ContentStore:
    """Persistence for domain data and for every run, queue and audit record."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        get_engine(db_path)

    def session(self) -> Session:
        return get_session(self._db_path)

    # ------------------------------------------------------------------
    # generic row helpers
    # ------------------------------------------------------------------

    def add(self, row: M) -> M:
        with self.session() as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def get(self, model: type[M], row_id: int) -> M:
        with self.session() as session:
            row = session.get(model, row_id)
            if row is None:
                raise NotFoundError(f"{model.__name__} {row_id} not found")
            return row

    def update(self, model: type[M], row_id: int, **fields: object) -> M:
        with self.session() as session:
            row = session.get(model, row_id)
            if row is None:
                raise NotFoundError(f"{model.__name__} {row_id} not found")
            for name, value in fields.items():
                setattr(row, name, value)
            if hasattr(row, "updated_at") and "updated_at" not in fields:
                row.updated_at = utcnow()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def increment(self, model: type[M], row_id: int, **deltas: int) -> None:
        """Atomically add ``deltas`` to integer counter columns."""
        values = {name: getattr(model, name) + delta for name, delta in deltas.items()}
        with self.session() as session:
            session.exec(update(model).where(model.id == row_id).values(**values))
            session.commit()

    # ------------------------------------------------------------------
    # categories
    # ------------------------------------------------------------------

    def list_categories(self) -> list[Category]:
        with self.session() as session:
            stmt = select(Category).order_by(Category.sort_order, Category.name)
            return list(session.exec(stmt).all())

    def create_category(
        self, name: str, slug: str, description: str = "", icon: str = "Lightbulb"
    ) -> Category:
        with self.session() as session:
            last = session.exec(select(func.max(Category.sort_order))).one()
            category = Category(
                name=name,
                slug=slug,
                description=description,
                icon=icon,
                sort_order=(last or 0) + 1,
            )
            session.add(category)
            session.commit()
            session.refresh(category)
            return category

    # ------------------------------------------------------------------
    # articles
    # ------------------------------------------------------------------

    def list_articles(self, status: str | None = None) -> list[Article]:
        with self.session() as session:
            stmt = select(Article).order_by(Article.created_at, Article.id)
            if status is not None:
                stmt = stmt.where(Article.status == status)
            return list(session.exec(stmt).all())

    def list_article_titles(self) -> list[str]:
        with self.session() as session:
            return list(session.exec(select(Article.title)).all())

    def insert_article(self, **fields: object) -> Article:
        """Insert an article; a duplicate slug raises :class:`SlugConflictError`."""
        article = Article(**fields)
        with self.session() as session:
            session.add(article)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                if "slug" in str(exc.orig):
                    raise SlugConflictError(article.slug) from exc
                raise
            session.refresh(article)
            return article

    def update_article(self, article_id: int, **fields: object) -> Article:
        return self.update(Article, article_id, **fields)

    def set_article_status(self, article_id: int, status: str) -> Article:
        fields: dict = {"status": status}
        if status == ArticleStatus.PUBLISHED.value:
            fields["published_at"] = utcnow()
        return self.update(Article, article_id, **fields)

    def search_published(self, terms: list[str], limit: int = 10) -> list[Article]:
        """Published articles whose title, excerpt or body mention any term."""
        if not terms:
            return []
        clauses = []
        for term in terms:
            pattern = f"%{term}%"
            clauses.extend(
                [
                    col(Article.title).ilike(pattern),
                    col(Article.excerpt).ilike(pattern),
                    col(Article.content).ilike(pattern),
                ]
            )
        stmt = (
            select(Article)
            .where(Article.status == ArticleStatus.PUBLISHED.value)
            .where(or_(*clauses))
            .order_by(col(Article.view_count).desc())
            .limit(limit)
        )
        with self.session() as session:
            return list(session.exec(stmt).all())

    def find_article_with_title(self, fragment: str) -> Article | None:
        # LIKE wildcards in a topic must not widen the match
        fragment = fragment.replace("%", "").replace("_", "").strip()
        if not fragment:
            return None
        with self.session() as session:
            stmt = select(Article).where(col(Article.title).ilike(f"%{fragment}%")).limit(1)
            return session.exec(stmt).first()

    # ------------------------------------------------------------------
    # pipeline runs
    # ------------------------------------------------------------------

    def create_run(self, topic: str, mode: str) -> PipelineRun:
        return self.add(PipelineRun(topic=topic, mode=mode))

    def advance_run(self, run_id: int, status: RunStatus, **fields: object) -> PipelineRun:
        """Move a run to ``status``, refusing backwards or post-terminal moves."""
        run = self.get(PipelineRun, run_id)
        if not can_transition(run.status, status.value):
            raise InvalidTransitionError(f"Run {run_id}: {run.status} -> {status.value}")
        fields["status"] = status.value
        if status in STAGE_ORDER:
            fields["current_step"] = STAGE_ORDER.index(status)
        if status in TERMINAL_STATUSES:
            fields["completed_at"] = utcnow()
        return self.update(PipelineRun, run_id, **fields)

    def has_active_run_like(self, topic: str) -> bool:
        fragment = topic[:30]
        terminal = [s.value for s in TERMINAL_STATUSES]
        stmt = (
            select(PipelineRun.id)
            .where(col(PipelineRun.status).not_in(terminal))
            .where(col(PipelineRun.topic).ilike(f"%{fragment}%"))
            .limit(1)
        )
        with self.session() as session:
            return session.exec(stmt).first() is not None

    def list_runs(self, limit: int = 20) -> list[PipelineRun]:
        with self.session() as session:
            stmt = select(PipelineRun).order_by(col(PipelineRun.id).desc()).limit(limit)
            return list(session.exec(stmt).all())

    # ------------------------------------------------------------------
    # activity log
    # ------------------------------------------------------------------

    def log_action(
        self,
        action: str,
        status: str = "success",
        *,
        article_id: int | None = None,
        details: dict | None = None,
    ) -> None:
        self.add(
            AgentLog(
                action=action,
                status=status,
                article_id=article_id,
                details_json=json.dumps(details or {}, default=str),
            )
        )

    # ------------------------------------------------------------------
    # settings singletons and stop flags
    # ------------------------------------------------------------------

    def _settings(self, model: type[M]) -> M:
        with self.session() as session:
            row = session.exec(select(model).limit(1)).first()
            if row is None:
                row = model()
                session.add(row)
                session.commit()
                session.refresh(row)
            return row

    def automation_settings(self) -> AutomationSettings:
        return self._settings(AutomationSettings)

    def nightly_settings(self) -> NightlyBuilderSettings:
        return self._settings(NightlyBuilderSettings)

    def update_settings(self, model: type[M], **fields: object) -> M:
        row = self._settings(model)
        return self.update(model, row.id, **fields)

    def request_stop(self, kind: str, run_id: int | None = None) -> None:
        """Ask running jobs of ``kind`` (or only run ``run_id``) to stop."""
        settings_model, run_model = STOP_CHANNELS[kind]
        if run_id is None:
            self.update_settings(settings_model, stop_requested=True)
        else:
            self.update(run_model, run_id, stop_requested=True)
        logger.info("Stop requested for %s%s", kind, f" run {run_id}" if run_id else "")

    def is_stop_requested(self, kind: str, run_id: int | None = None) -> bool:
        settings_model, run_model = STOP_CHANNELS[kind]
        if self._settings(settings_model).stop_requested:
            return True
        return run_id is not None and self.get(run_model, run_id).stop_requested

    def clear_stop(self, kind: str, run_id: int | None = None) -> None:
        settings_model, run_model = STOP_CHANNELS[kind]
        self.update_settings(settings_model, stop_requested=False)
        if run_id is not None:
            self.update(run_model, run_id, stop_requested=False)

    # ------------------------------------------------------------------
    # queue
    # ------------------------------------------------------------------

    @staticmethod
    def _slot(stmt, run_date: date | None, batch_number: int | None):
        if run_date is None:
            stmt = stmt.where(col(QueueItem.run_date).is_(None))
        else:
            stmt = stmt.where(QueueItem.run_date == run_date)
        if batch_number is None:
            return stmt.where(col(QueueItem.batch_number).is_(None))
        return stmt.where(QueueItem.batch_number == batch_number)

    def enqueue(self, items: list[QueueItem], chunk_size: int = 100) -> int:
        for start in range(0, len(items), chunk_size):
            with self.session() as session:
                session.add_all(items[start : start + chunk_size])
                session.commit()
        return len(items)

    def claim_next(self, run_date: date | None, batch_number: int | None) -> QueueItem | None:
        """Lease the highest-priority pending item of a slot, or return None."""
        while True:
            with self.session() as session:
                stmt = self._slot(
                    select(QueueItem.id).where(QueueItem.status == QueueStatus.PENDING.value),
                    run_date,
                    batch_number,
                ).order_by(QueueItem.priority, QueueItem.id)
                item_id = session.exec(stmt.limit(1)).first()
                if item_id is None:
                    return None
                claimed = session.exec(
                    update(QueueItem)
                    .where(QueueItem.id == item_id)
                    .where(QueueItem.status == QueueStatus.PENDING.value)
                    .values(status=QueueStatus.PROCESSING.value, leased_at=utcnow())
                )
                session.commit()
                if claimed.rowcount == 1:
                    return session.get(QueueItem, item_id)
            # Another worker took it; try the next one

    def finish_item(
        self,
        item_id: int,
        status: QueueStatus,
        *,
        article_id: int | None = None,
        error_message: str | None = None,
    ) -> QueueItem:
        return self.update(
            QueueItem,
            item_id,
            status=status.value,
            article_id=article_id,
            error_message=error_message,
            processed_at=utcnow(),
        )

    def reclaim_stale(
        self,
        run_date: date | None,
        batch_number: int | None,
        lease_minutes: int,
        now: datetime | None = None,
    ) -> tuple[int, int]:
        """Sweep expired ``processing`` leases of a slot.

        An item whose article already exists is completed, anything else goes
        back to ``pending``. Returns ``(completed, requeued)``.
        """
        cutoff = (now or utcnow()) - timedelta(minutes=lease_minutes)
        with self.session() as session:
            stmt = self._slot(
                select(QueueItem)
                .where(QueueItem.status == QueueStatus.PROCESSING.value)
                .where(col(QueueItem.leased_at) < cutoff),
                run_date,
                batch_number,
            )
            stale = list(session.exec(stmt).all())

        completed = requeued = 0
        for item in stale:
            article = self.find_article_with_title(item.topic[:40])
            if article is not None:
                self.finish_item(item.id, QueueStatus.COMPLETED, article_id=article.id)
                completed += 1
            else:
                self.update(QueueItem, item.id, status=QueueStatus.PENDING.value, leased_at=None)
                requeued += 1
        if stale:
            logger.warning(
                "Reclaimed %d stale queue items (%d completed, %d requeued)",
                len(stale),
                completed,
                requeued,
            )
        return completed, requeued

    def count_items(
        self,
        run_date: date | None,
        batch_number: int | None,
        status: QueueStatus | None = None,
    ) -> int:
        stmt = self._slot(select(func.count()).select_from(QueueItem), run_date, batch_number)
        if status is not None:
            stmt = stmt.where(QueueItem.status == status.value)
        with self.session() as session:
            return session.exec(stmt).one()

    def list_queue(self, status: QueueStatus | None = None, limit: int = 100) -> list[QueueItem]:
        stmt = select(QueueItem).order_by(
            col(QueueItem.run_date).desc(), QueueItem.batch_number, QueueItem.priority
        )
        if status is not None:
            stmt = stmt.where(QueueItem.status == status.value)
        with self.session() as session:
            return list(session.exec(stmt.limit(limit)).all())

    # ------------------------------------------------------------------
    # audit
    # ------------------------------------------------------------------

    def add_finding(self, audit_run_id: int, **fields: object) -> AuditFinding:
        return self.add(AuditFinding(audit_run_id=audit_run_id, **fields))

    def list_findings(
        self, audit_run_id: int, status: str | None = None
    ) -> list[AuditFinding]:
        stmt = select(AuditFinding).where(AuditFinding.audit_run_id == audit_run_id)
        if status is not None:
            stmt = stmt.where(AuditFinding.status == status)
        with self.session() as session:
            return list(session.exec(stmt.order_by(AuditFinding.id)).all())

    def latest_audit_run(self) -> AuditRun | None:
        with self.session() as session:
            stmt = select(AuditRun).order_by(col(AuditRun.id).desc()).limit(1)
            return session.exec(stmt).first()
