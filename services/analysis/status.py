from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.analysis.ledger import list_runs, serialize_run
from services.database import Photo, isoformat_utc


async def get_status(session: AsyncSession, photo_id: str) -> dict | None:
    """Poll view of one photo. Read-only; safe to call at any frequency.

    Canonical fields are never cleared by a re-queue or a failure, so once a
    consumer has seen a finished result it only changes through a later
    successful run.
    """
    photo = await session.scalar(select(Photo).where(Photo.id == photo_id))
    if photo is None:
        return None

    return {
        "photoId": photo.id,
        "state": photo.state.value,
        "caption": photo.caption or "",
        "description": photo.description or "",
        "keywords": list(photo.keywords or []),
        "classification": photo.classification,
        "poiAnalysis": photo.poi_analysis,
        "collectibleInsights": photo.collectible_insights,
        "modelUsed": photo.model_used,
        "retryCount": photo.retry_count,
        "lastError": photo.last_error,
        "extraFields": dict(photo.extra_fields or {}),
        "updatedAt": isoformat_utc(photo.updated_at),
    }


async def get_history(session: AsyncSession, photo_id: str) -> list[dict] | None:
    exists = await session.scalar(select(Photo.id).where(Photo.id == photo_id))
    if exists is None:
        return None
    return [serialize_run(r) for r in await list_runs(session, photo_id)]
