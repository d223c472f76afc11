"""Wire every component from one ``Settings`` object."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from techhelp.assistant.answerer import QuestionAnswerer
from techhelp.audit.auditor import ContentAuditor
from techhelp.audit.fixer import FindingFixer
from techhelp.config import Settings
from techhelp.llm.client import CapabilityClient
from techhelp.pipeline.dedup import DuplicateDetector
from techhelp.pipeline.engine import PipelineEngine
from techhelp.research.deep_research import CategoryResearcher
from techhelp.research.discovery import TopicDiscoverer
from techhelp.scheduling.automation import ScheduledRunner
from techhelp.scheduling.batch import BatchScheduler
from techhelp.scheduling.nightly import NightlyBuilder
from techhelp.storage.repository import ContentStore


@dataclass
class Services:
    settings: Settings
    store: ContentStore
    client: CapabilityClient
    engine: PipelineEngine
    scheduler: BatchScheduler
    discoverer: TopicDiscoverer
    nightly: NightlyBuilder
    runner: ScheduledRunner
    auditor: ContentAuditor
    fixer: FindingFixer
    answerer: QuestionAnswerer


def build_services(
    settings: Settings,
    *,
    client: CapabilityClient | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Services:
    store = ContentStore(settings.db_path)
    client = client or CapabilityClient(settings, sleep=sleep)
    detector = DuplicateDetector(client, settings, sleep=sleep)
    engine = PipelineEngine(client, store, settings, detector=detector, sleep=sleep)
    scheduler = BatchScheduler(engine, store, settings, sleep=sleep)
    discoverer = TopicDiscoverer(client, store, settings)
    return Services(
        settings=settings,
        store=store,
        client=client,
        engine=engine,
        scheduler=scheduler,
        discoverer=discoverer,
        nightly=NightlyBuilder(
            store,
            settings,
            researcher=CategoryResearcher(client, settings),
            detector=detector,
            scheduler=scheduler,
            sleep=sleep,
        ),
        runner=ScheduledRunner(store, discoverer, scheduler),
        auditor=ContentAuditor(client, store, settings, sleep=sleep),
        fixer=FindingFixer(client, store, settings, sleep=sleep),
        answerer=QuestionAnswerer(client, store, settings),
    )
