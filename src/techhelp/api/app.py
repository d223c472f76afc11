"""FastAPI application exposing the pipeline triggers and polling endpoints.

Long-running work is handed to ``BackgroundTasks``; the response carries the
id of the run row that the caller polls for progress.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from techhelp.api.deps import get_services, require_admin
from techhelp.api.ratelimit import SlidingWindowLimiter, enforce_ask_limit
from techhelp.api.schemas import (
    Accepted,
    ArticleOut,
    AskRequest,
    AskResponse,
    AuditRequest,
    DiscoverRequest,
    DiscoverResponse,
    FixResponse,
    GenerateRequest,
    GenerateResponse,
    NightlyRequest,
    SchedulerRequest,
    StopResponse,
)
from techhelp.config import get_settings
from techhelp.errors import (
    AutomationDisabledError,
    CapabilityError,
    NotFoundError,
    TechHelpError,
)
from techhelp.log import configure_logging
from techhelp.scheduling.batch import Thresholds
from techhelp.services import Services, build_services
from techhelp.storage.models import (
    AuditFinding,
    AuditRun,
    BatchRun,
    NightlyRun,
    PipelineRun,
    QueueItem,
    QueueStatus,
    RunMode,
)
from techhelp.storage.repository import STOP_CHANNELS

logger = logging.getLogger(__name__)

admin = APIRouter(dependencies=[Depends(require_admin)])
public = APIRouter()


# ---------------------------------------------------------------------------
# generation
# ---------------------------------------------------------------------------


@admin.post("/generate", response_model=GenerateResponse)
def generate(
    body: GenerateRequest,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
):
    """Run the pipeline for one topic (synchronously unless ``background``)."""
    mode = RunMode(body.mode)
    if body.background:
        run = services.store.create_run(body.topic, mode.value)
        background.add_task(
            services.engine.run,
            body.topic,
            category_id=body.category_id,
            mode=mode,
            run_id=run.id,
        )
        return GenerateResponse(run_id=run.id, status=run.status)

    result = services.engine.run(body.topic, category_id=body.category_id, mode=mode)
    return GenerateResponse(
        run_id=result.run_id,
        status=result.status,
        skipped=result.status == "skipped",
        reason=result.reason,
        article=ArticleOut.from_row(result.article) if result.article else None,
        quality_score=result.quality_score,
        factual_score=result.factual_score,
    )


@admin.post("/discover", response_model=DiscoverResponse)
def discover_topics(
    body: DiscoverRequest,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
):
    topics = services.discoverer.discover(body.count, body.target_categories)
    if not body.auto_make or not topics:
        return DiscoverResponse(topics=topics)

    queued = services.discoverer.enqueue(topics)
    config = services.store.automation_settings()
    run = services.scheduler.start_run(RunMode.BATCH)
    background.add_task(
        services.scheduler.drain_queue,
        None,
        None,
        run_id=run.id,
        mode=RunMode.BATCH,
        thresholds=Thresholds(config.min_quality_score, config.min_factual_score),
    )
    return DiscoverResponse(topics=topics, queued=queued, batch_run_id=run.id)


@admin.post("/scheduler/run", response_model=Accepted, status_code=status.HTTP_202_ACCEPTED)
def run_scheduler(
    body: SchedulerRequest,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
):
    if not body.manual and not services.store.automation_settings().enabled:
        raise AutomationDisabledError("Automation is not enabled")
    run = services.scheduler.start_run(RunMode.SCHEDULED)
    background.add_task(services.runner.run_once, manual=body.manual, run_id=run.id)
    return Accepted(run_id=run.id, kind="batch")


@admin.post("/nightly", response_model=Accepted, status_code=status.HTTP_202_ACCEPTED)
def run_nightly_builder(
    body: NightlyRequest,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
):
    if not body.manual and not services.store.nightly_settings().enabled:
        raise AutomationDisabledError("Nightly builder is disabled")
    run = services.nightly.start(body.batch)
    background.add_task(services.nightly.run, body.batch, manual=body.manual, run_id=run.id)
    return Accepted(run_id=run.id, kind="nightly")


@admin.post("/stop/{kind}", response_model=StopResponse)
def request_stop(kind: str, run_id: int | None = None, services: Services = Depends(get_services)):
    if kind not in STOP_CHANNELS:
        raise NotFoundError(f"Unknown job kind: {kind}")
    services.store.request_stop(kind, run_id)
    return StopResponse(kind=kind, run_id=run_id)


# ---------------------------------------------------------------------------
# audit
# ---------------------------------------------------------------------------


@admin.post("/audit", response_model=Accepted, status_code=status.HTTP_202_ACCEPTED)
def run_content_audit(
    body: AuditRequest,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
):
    run = services.auditor.start(body.auto_fix)
    background.add_task(services.auditor.run, body.auto_fix, run_id=run.id)
    return Accepted(run_id=run.id, kind="audit")


@admin.post("/audit/findings/{finding_id}/fix", response_model=FixResponse)
def apply_fix(finding_id: int, services: Services = Depends(get_services)):
    outcome = services.fixer.apply_fix(finding_id)
    return FixResponse(
        finding_id=outcome.finding_id,
        fixed=outcome.fixed,
        description=outcome.description,
        already_resolved=outcome.already_resolved,
    )


@admin.post(
    "/audit/runs/{run_id}/fix-all", response_model=Accepted, status_code=status.HTTP_202_ACCEPTED
)
def fix_all(run_id: int, background: BackgroundTasks, services: Services = Depends(get_services)):
    services.store.get(AuditRun, run_id)
    background.add_task(services.fixer.fix_all, run_id)
    return Accepted(run_id=run_id, kind="audit", message="Fix all started in background")


# ---------------------------------------------------------------------------
# polling
# ---------------------------------------------------------------------------


@admin.get("/runs/{run_id}", response_model=PipelineRun)
def get_run(run_id: int, services: Services = Depends(get_services)):
    return services.store.get(PipelineRun, run_id)


@admin.get("/batch-runs/{run_id}", response_model=BatchRun)
def get_batch_run(run_id: int, services: Services = Depends(get_services)):
    return services.store.get(BatchRun, run_id)


@admin.get("/nightly/runs/{run_id}", response_model=NightlyRun)
def get_nightly_run(run_id: int, services: Services = Depends(get_services)):
    return services.store.get(NightlyRun, run_id)


@admin.get("/audit/runs/{run_id}", response_model=AuditRun)
def get_audit_run(run_id: int, services: Services = Depends(get_services)):
    return services.store.get(AuditRun, run_id)


@admin.get("/audit/runs/{run_id}/findings", response_model=list[AuditFinding])
def list_findings(
    run_id: int,
    finding_status: str | None = Query(None, alias="status"),
    services: Services = Depends(get_services),
):
    services.store.get(AuditRun, run_id)
    return services.store.list_findings(run_id, finding_status)


@admin.get("/queue", response_model=list[QueueItem])
def list_queue(
    item_status: QueueStatus | None = Query(None, alias="status"),
    limit: int = 100,
    services: Services = Depends(get_services),
):
    return services.store.list_queue(item_status, limit=min(limit, 500))


# ---------------------------------------------------------------------------
# public
# ---------------------------------------------------------------------------


@public.get("/health")
def health():
    return {"status": "healthy"}


@public.post("/ask", response_model=AskResponse, dependencies=[Depends(enforce_ask_limit)])
def ask_question(
    body: AskRequest,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
):
    result = services.answerer.ask(body.question, [m.model_dump() for m in body.history])
    if result.generation_topic:
        logger.info("Question triggered generation for %r", result.generation_topic)
        background.add_task(services.engine.run, result.generation_topic, mode=RunMode.MANUAL)
    return AskResponse(
        answer=result.answer,
        has_relevant_articles=result.has_relevant_articles,
        recommended_articles=result.recommended_articles,
        article_generation_triggered=result.generation_topic is not None,
    )


# ---------------------------------------------------------------------------
# error mapping
# ---------------------------------------------------------------------------


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return _error(status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(CapabilityError)
    async def upstream(request: Request, exc: CapabilityError):
        if exc.status_code == 429:
            return _error(
                status.HTTP_503_SERVICE_UNAVAILABLE,
                "Our AI is currently busy. Please try again in a moment.",
            )
        return _error(status.HTTP_502_BAD_GATEWAY, "AI service temporarily unavailable.")

    @app.exception_handler(TechHelpError)
    async def conflict(request: Request, exc: TechHelpError):
        return _error(status.HTTP_409_CONFLICT, str(exc))

    @app.exception_handler(ValueError)
    async def bad_request(request: Request, exc: ValueError):
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))


def create_app(services: Services | None = None) -> FastAPI:
    """Application factory; ``uvicorn --factory techhelp.api.app:create_app``."""
    if services is None:
        settings = get_settings()
        configure_logging(settings.log_level)
        services = build_services(settings)

    app = FastAPI(
        title="TechHelp content pipeline",
        description="Research, write, audit and answer for a tech-help knowledge base",
        version="0.1.0",
    )
    app.state.services = services
    app.state.ask_limiter = SlidingWindowLimiter(
        services.settings.ask_rate_limit_requests,
        services.settings.ask_rate_limit_window_seconds,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_error_handlers(app)
    app.include_router(public)
    app.include_router(admin)
    return app
