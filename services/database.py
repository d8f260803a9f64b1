from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from config.settings import settings

engine = create_async_engine(settings.database_url, echo=False)
async_session = async_sessionmaker(engine, expire_on_commit=False)


def utcnow() -> datetime:
    return datetime.now(UTC)


def isoformat_utc(value: datetime | None) -> str | None:
    """ISO 8601 with an explicit UTC offset. SQLite hands datetimes back naive."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


class Base(DeclarativeBase):
    pass


# --- Enums ---


class PhotoState(StrEnum):
    UNANALYZED = "unanalyzed"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    FAILED = "failed"


class RunType(StrEnum):
    INITIAL = "initial"
    RETRY = "retry"
    MANUAL_RERUN = "manual-rerun"


class Priority(StrEnum):
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return 1 if self is Priority.HIGH else 0


class RunOutcome(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    LEASE_EXPIRED = "lease_expired"


# States from which a new job may be accepted
ENQUEUEABLE_STATES = (PhotoState.UNANALYZED, PhotoState.FINISHED, PhotoState.FAILED)


# --- Models ---


class Photo(Base):
    """The analysis record of one photo. Rows are created by the upload side."""

    __tablename__ = "photos"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    content_ref: Mapped[str] = mapped_column(Text, default="")  # URL, data: URL or local path
    state: Mapped[PhotoState] = mapped_column(
        SAEnum(PhotoState, values_callable=lambda e: [m.value for m in e]),
        default=PhotoState.UNANALYZED,
    )

    # Canonical fields, always written together
    caption: Mapped[str] = mapped_column(Text, default="")
    description: Mapped[str] = mapped_column(Text, default="")
    keywords: Mapped[list] = mapped_column(JSON, default=list)
    classification: Mapped[Any] = mapped_column(JSON, nullable=True)
    poi_analysis: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    collectible_insights: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    extra_fields: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    model_used: Mapped[str | None] = mapped_column(String(100), nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    analyzed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AnalysisJob(Base):
    """A queued or running analysis job. Deleted when the photo reaches finished/failed."""

    __tablename__ = "analysis_jobs"
    __table_args__ = (UniqueConstraint("photo_id", name="uq_analysis_jobs_photo"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)  # FIFO order
    photo_id: Mapped[str] = mapped_column(String(255), ForeignKey("photos.id"))
    priority: Mapped[int] = mapped_column(Integer, default=0)  # Priority.rank
    run_type: Mapped[RunType] = mapped_column(
        SAEnum(RunType, values_callable=lambda e: [m.value for m in e]),
        default=RunType.INITIAL,
    )
    preferred_models: Mapped[list] = mapped_column(JSON, default=list)  # empty = configured defaults
    detail: Mapped[str] = mapped_column(String(10), default="auto")
    context: Mapped[str] = mapped_column(Text, default="")  # caller hints rendered into the prompt

    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    lease_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    leased_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class RunRecord(Base):
    """One entry of a photo's model history. Insert-only."""

    __tablename__ = "run_records"
    __table_args__ = (UniqueConstraint("photo_id", "sequence", name="uq_run_records_photo_seq"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    photo_id: Mapped[str] = mapped_column(String(255), ForeignKey("photos.id"))
    sequence: Mapped[int] = mapped_column(Integer)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    run_type: Mapped[RunType] = mapped_column(
        SAEnum(RunType, values_callable=lambda e: [m.value for m in e]),
    )
    outcome: Mapped[RunOutcome] = mapped_column(
        SAEnum(RunOutcome, values_callable=lambda e: [m.value for m in e]),
    )
    models_used: Mapped[list] = mapped_column(JSON, default=list)
    skipped_models: Mapped[list] = mapped_column(JSON, default=list)
    attempts: Mapped[list] = mapped_column(JSON, default=list)  # [{model, status, error_kind, error}]
    model_used: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Snapshot of what this run produced
    caption: Mapped[str] = mapped_column(Text, default="")
    keywords: Mapped[list] = mapped_column(JSON, default=list)
    classification: Mapped[Any] = mapped_column(JSON, nullable=True)


async def init_db(bind=None):
    bind = bind or engine
    if bind.url.get_backend_name() == "sqlite" and bind.url.database:
        Path(bind.url.database).parent.mkdir(parents=True, exist_ok=True)
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncSession:
    async with async_session() as session:
        yield session


async def register_photo(session: AsyncSession, photo_id: str, content_ref: str) -> Photo:
    """Create the analysis record for a newly uploaded photo (idempotent)."""
    photo = await session.get(Photo, photo_id)
    if photo is None:
        photo = Photo(id=photo_id, content_ref=content_ref, state=PhotoState.UNANALYZED)
        session.add(photo)
    elif content_ref and photo.content_ref != content_ref:
        photo.content_ref = content_ref
        photo.updated_at = utcnow()
    await session.commit()
    return photo
