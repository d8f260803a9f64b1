from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import async_sessionmaker

from config.settings import Settings
from config.settings import settings as default_settings
from services.analysis.allowlist import ModelAllowlist
from services.analysis.dispatcher import Dispatcher
from services.analysis.pool import WorkerPool
from services.analysis.queue import JobQueue
from services.database import utcnow
from services.llm.router import LLMRouter


@dataclass
class AnalysisPipeline:
    settings: Settings
    allowlist: ModelAllowlist
    queue: JobQueue
    dispatcher: Dispatcher
    pool: WorkerPool


def build_pipeline(
    settings: Settings | None = None,
    session_factory: async_sessionmaker | None = None,
    router: LLMRouter | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> AnalysisPipeline:
    """Wire allowlist, queue, dispatcher and worker pool from one configuration."""
    settings = settings or default_settings
    if router is None:
        from services.llm import llm_router

        router = llm_router
    allowlist = ModelAllowlist.from_settings(settings)
    queue = JobQueue(session_factory=session_factory, settings=settings, clock=clock)
    dispatcher = Dispatcher(queue, router, allowlist, settings=settings)
    pool = WorkerPool(queue, dispatcher, settings=settings)
    return AnalysisPipeline(settings=settings, allowlist=allowlist, queue=queue, dispatcher=dispatcher, pool=pool)
