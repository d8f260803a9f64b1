import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.database import RunOutcome, RunRecord, RunType, isoformat_utc, utcnow

log = logging.getLogger(__name__)


@dataclass
class AttemptResult:
    """Outcome of one model invocation inside a run."""

    model: str
    status: str  # "succeeded" | "failed" | "skipped"
    error_kind: str | None = None  # configuration | provider | validation
    error: str | None = None

    def as_dict(self) -> dict:
        out = {"model": self.model, "status": self.status}
        if self.error_kind:
            out["error_kind"] = self.error_kind
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class RunSummary:
    """What one run tried and produced, ready to be appended to the ledger."""

    run_type: RunType
    outcome: RunOutcome
    models_used: list[str] = field(default_factory=list)
    skipped_models: list[str] = field(default_factory=list)
    attempts: list[AttemptResult] = field(default_factory=list)
    model_used: str | None = None
    caption: str = ""
    keywords: list[str] = field(default_factory=list)
    classification: Any = None
    timestamp: datetime | None = None


async def append_run(session: AsyncSession, photo_id: str, run: RunSummary) -> RunRecord:
    """Append a run to the photo's history. There is no update or delete counterpart.

    Runs inside the caller's transaction; the caller owns the photo's job, so
    appends for one photo never race.
    """
    last = await session.scalar(select(func.max(RunRecord.sequence)).where(RunRecord.photo_id == photo_id))
    record = RunRecord(
        photo_id=photo_id,
        sequence=(last or 0) + 1,
        timestamp=run.timestamp or utcnow(),
        run_type=run.run_type,
        outcome=run.outcome,
        models_used=list(run.models_used),
        skipped_models=list(run.skipped_models),
        attempts=[a.as_dict() for a in run.attempts],
        model_used=run.model_used,
        caption=run.caption,
        keywords=list(run.keywords),
        classification=run.classification,
    )
    session.add(record)
    await session.flush()
    log.info(f"Recorded run #{record.sequence} for {photo_id}: {run.run_type.value} -> {run.outcome.value}")
    return record


async def list_runs(session: AsyncSession, photo_id: str) -> list[RunRecord]:
    result = await session.execute(
        select(RunRecord).where(RunRecord.photo_id == photo_id).order_by(RunRecord.sequence)
    )
    return list(result.scalars().all())


def serialize_run(record: RunRecord) -> dict:
    return {
        "sequence": record.sequence,
        "timestamp": isoformat_utc(record.timestamp),
        "runType": record.run_type.value,
        "outcome": record.outcome.value,
        "modelsUsed": record.models_used or [],
        "skippedModels": record.skipped_models or [],
        "modelUsed": record.model_used,
        "attempts": record.attempts or [],
        "caption": record.caption,
        "keywords": record.keywords or [],
        "classification": record.classification,
    }
