import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import DetailHint, Settings
from config.settings import settings as default_settings
from services.analysis.errors import LeaseLostError
from services.analysis.ledger import RunSummary, append_run
from services.analysis.retry import FailureDecision, decide_after_failure
from services.analysis.validator import CanonicalMetadata
from services.database import (
    ENQUEUEABLE_STATES,
    AnalysisJob,
    Photo,
    PhotoState,
    Priority,
    RunType,
    async_session,
    utcnow,
)

log = logging.getLogger(__name__)

REJECT_IN_FLIGHT = "alreadyInFlight"
REJECT_NOT_FOUND = "notFound"


@dataclass
class EnqueueOptions:
    preferred_models: list[str] = field(default_factory=list)  # empty = configured defaults
    priority: Priority = Priority.NORMAL
    run_type: RunType = RunType.INITIAL
    reset_retry_count: bool = False  # caller's explicit choice on re-runs
    detail: DetailHint | None = None  # None = settings.default_detail
    context: str = ""  # e.g. capture location or EXIF summary from the upload side


@dataclass
class EnqueueResult:
    accepted: bool
    reason: str | None = None
    job_id: int | None = None


@dataclass
class ClaimedJob:
    """A job leased to one worker. The lease token guards every later write."""

    job_id: int
    photo_id: str
    content_ref: str
    run_type: RunType
    preferred_models: list[str]
    detail: str
    context: str
    lease_token: str
    worker_id: str
    leased_until: datetime


class JobQueue:
    """Priority queue of analysis jobs, one in-flight job per photo.

    Enqueue, claim and the in_progress -> {finished, queued, failed}
    transitions are serialized through one lock, and each is a single
    transaction whose conditional updates keep it correct across processes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory or async_session
        self.settings = settings or default_settings
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def lease_duration(self) -> timedelta:
        return timedelta(seconds=self.settings.lease_timeout_seconds)

    def now(self) -> datetime:
        return self._clock()

    # --- Enqueue ---

    async def enqueue(self, photo_id: str, options: EnqueueOptions | None = None) -> EnqueueResult:
        """Accept a job unless one is already queued or running for this photo."""
        options = options or EnqueueOptions()
        async with self._lock, self._session_factory() as session:
            now = self.now()
            values = {"state": PhotoState.QUEUED, "updated_at": now}
            if options.reset_retry_count:
                values["retry_count"] = 0

            # Check-and-mark in one statement
            result = await session.execute(
                update(Photo)
                .where(Photo.id == photo_id, Photo.state.in_(ENQUEUEABLE_STATES))
                .values(**values)
            )
            if result.rowcount != 1:
                await session.rollback()
                exists = await session.scalar(select(Photo.id).where(Photo.id == photo_id))
                reason = REJECT_IN_FLIGHT if exists else REJECT_NOT_FOUND
                log.info(f"Rejected enqueue for {photo_id}: {reason}")
                return EnqueueResult(accepted=False, reason=reason)

            job = AnalysisJob(
                photo_id=photo_id,
                priority=options.priority.rank,
                run_type=options.run_type,
                preferred_models=list(options.preferred_models),
                detail=(options.detail or self.settings.default_detail).value,
                context=options.context,
                available_at=now,
                created_at=now,
            )
            session.add(job)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                log.warning(f"Rejected enqueue for {photo_id}: job row already present")
                return EnqueueResult(accepted=False, reason=REJECT_IN_FLIGHT)

        log.info(
            f"Enqueued job {job.id} for {photo_id} "
            f"(priority={options.priority.value}, run_type={options.run_type.value})"
        )
        return EnqueueResult(accepted=True, job_id=job.id)

    # --- Dequeue ---

    async def claim(self, worker_id: str) -> ClaimedJob | None:
        """Lease the next eligible job: strict priority, FIFO within a tier."""
        async with self._lock, self._session_factory() as session:
            now = self.now()
            job = await session.scalar(
                select(AnalysisJob)
                .where(AnalysisJob.leased_until.is_(None), AnalysisJob.available_at <= now)
                .order_by(AnalysisJob.priority.desc(), AnalysisJob.id)
                .limit(1)
            )
            if job is None:
                return None

            token = uuid4().hex
            leased_until = now + self.lease_duration
            result = await session.execute(
                update(AnalysisJob)
                .where(AnalysisJob.id == job.id, AnalysisJob.leased_until.is_(None))
                .values(lease_token=token, leased_until=leased_until, worker_id=worker_id, started_at=now)
            )
            if result.rowcount != 1:
                # Another process claimed it first
                await session.rollback()
                return None

            await session.execute(
                update(Photo)
                .where(Photo.id == job.photo_id)
                .values(state=PhotoState.IN_PROGRESS, updated_at=now)
            )
            content_ref = await session.scalar(select(Photo.content_ref).where(Photo.id == job.photo_id))
            claimed = ClaimedJob(
                job_id=job.id,
                photo_id=job.photo_id,
                content_ref=content_ref or "",
                run_type=job.run_type,
                preferred_models=list(job.preferred_models or []),
                detail=job.detail,
                context=job.context or "",
                lease_token=token,
                worker_id=worker_id,
                leased_until=leased_until,
            )
            await session.commit()

        log.info(f"Worker {worker_id} claimed job {claimed.job_id} for {claimed.photo_id}")
        return claimed

    async def renew_lease(self, job: ClaimedJob) -> bool:
        """Push the lease forward; False means the job was reclaimed."""
        async with self._lock, self._session_factory() as session:
            leased_until = self.now() + self.lease_duration
            result = await session.execute(
                update(AnalysisJob)
                .where(AnalysisJob.id == job.job_id, AnalysisJob.lease_token == job.lease_token)
                .values(leased_until=leased_until)
            )
            await session.commit()
        if result.rowcount == 1:
            job.leased_until = leased_until
            return True
        return False

    # --- Transitions out of in_progress ---

    async def complete(self, job: ClaimedJob, metadata: CanonicalMetadata, run: RunSummary) -> None:
        """in_progress -> finished: canonical fields, model_used and the run record in one commit."""
        async with self._lock, self._session_factory() as session:
            now = self.now()
            await self._release(session, job.job_id, job.lease_token)
            await session.execute(
                update(Photo)
                .where(Photo.id == job.photo_id)
                .values(
                    state=PhotoState.FINISHED,
                    caption=metadata.caption,
                    description=metadata.description,
                    keywords=list(metadata.keywords),
                    classification=metadata.classification_value(),
                    poi_analysis=metadata.poi_analysis,
                    collectible_insights=metadata.collectible_insights,
                    extra_fields=metadata.extra_fields or None,
                    model_used=run.model_used,
                    last_error=None,
                    analyzed_at=now,
                    updated_at=now,
                )
            )
            run.timestamp = run.timestamp or now
            await append_run(session, job.photo_id, run)
            await session.commit()
        log.info(f"Job {job.job_id} finished for {job.photo_id} (model={run.model_used})")

    async def fail(self, job: ClaimedJob, run: RunSummary, error: str, retryable: bool = True) -> FailureDecision:
        """in_progress -> queued (with backoff) or failed, recording the run."""
        async with self._lock, self._session_factory() as session:
            decision = await self.apply_failure(
                session, job.job_id, job.photo_id, job.lease_token, run, error, retryable
            )
            await session.commit()
        return decision

    async def apply_failure(
        self,
        session: AsyncSession,
        job_id: int,
        photo_id: str,
        lease_token: str,
        run: RunSummary,
        error: str,
        retryable: bool = True,
        expired_before: datetime | None = None,
    ) -> FailureDecision:
        """Shared failure edge for workers and the lease reaper. Caller holds the lock and commits.

        expired_before restricts the edge to a lease that is still expired, so a
        lease renewed in the meantime is left alone.
        """
        now = self.now()
        lease = self._lease_clause(job_id, lease_token, expired_before)
        retry_count = await session.scalar(select(Photo.retry_count).where(Photo.id == photo_id)) or 0
        decision = decide_after_failure(
            retry_count,
            self.settings.max_retries,
            self.settings.backoff_base_seconds,
            self.settings.backoff_cap_seconds,
            retryable=retryable,
        )

        if decision.terminal:
            await self._release(session, job_id, lease_token, expired_before)
        else:
            result = await session.execute(
                update(AnalysisJob)
                .where(*lease)
                .values(
                    lease_token=None,
                    leased_until=None,
                    worker_id=None,
                    run_type=decision.run_type,
                    available_at=now + timedelta(seconds=decision.delay_seconds),
                )
            )
            if result.rowcount != 1:
                raise LeaseLostError(f"Lease on job {job_id} for {photo_id} was lost")

        await session.execute(
            update(Photo)
            .where(Photo.id == photo_id)
            .values(
                state=decision.next_state,
                retry_count=decision.retry_count,
                last_error=error[:2000],
                updated_at=now,
            )
        )
        run.timestamp = run.timestamp or now
        await append_run(session, photo_id, run)

        if decision.terminal:
            log.error(f"Job {job_id} for {photo_id} failed permanently after {decision.retry_count} failed runs: {error}")
        else:
            log.warning(
                f"Job {job_id} for {photo_id} failed (retry {decision.retry_count}/{self.settings.max_retries}), "
                f"re-queued in {decision.delay_seconds:.0f}s: {error}"
            )
        return decision

    @staticmethod
    def _lease_clause(job_id: int, lease_token: str, expired_before: datetime | None = None) -> list:
        clause = [AnalysisJob.id == job_id, AnalysisJob.lease_token == lease_token]
        if expired_before is not None:
            clause.append(AnalysisJob.leased_until < expired_before)
        return clause

    async def _release(
        self, session: AsyncSession, job_id: int, lease_token: str, expired_before: datetime | None = None
    ) -> None:
        result = await session.execute(
            delete(AnalysisJob).where(*self._lease_clause(job_id, lease_token, expired_before))
        )
        if result.rowcount != 1:
            raise LeaseLostError(f"Lease on job {job_id} was lost")

    # --- Introspection ---

    async def expired_leases(self) -> list[AnalysisJob]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AnalysisJob)
                .where(AnalysisJob.leased_until.is_not(None), AnalysisJob.leased_until < self.now())
                .order_by(AnalysisJob.id)
            )
            return list(result.scalars().all())

    async def stats(self) -> dict:
        async with self._session_factory() as session:
            queued = await session.scalar(
                select(func.count()).select_from(AnalysisJob).where(AnalysisJob.leased_until.is_(None))
            )
            running = await session.scalar(
                select(func.count()).select_from(AnalysisJob).where(AnalysisJob.leased_until.is_not(None))
            )
        return {"queued": queued or 0, "in_progress": running or 0}

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    def session(self) -> AsyncSession:
        return self._session_factory()
