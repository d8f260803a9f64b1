import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import DetailHint, settings
from services.analysis.pipeline import AnalysisPipeline, build_pipeline
from services.analysis.queue import REJECT_IN_FLIGHT, REJECT_NOT_FOUND, EnqueueOptions
from services.analysis.status import get_history, get_status
from services.database import Priority, RunType, get_session, init_db, register_photo
from services.llm import llm_router

logging.basicConfig(level=getattr(logging, settings.log_level))
log = logging.getLogger(__name__)

pipeline: AnalysisPipeline = build_pipeline(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    health = await llm_router.health()
    log.info(f"LLM providers: {health}")
    if settings.run_workers_in_api:
        pipeline.pool.start()
    yield
    await pipeline.pool.stop()


app = FastAPI(
    title="Photo AI",
    description="Asynchronous AI analysis of uploaded photos",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Health ---


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "llm_providers": await llm_router.health(),
        "workers_running": pipeline.pool.running,
        "queue": await pipeline.queue.stats(),
    }


@app.get("/models")
async def list_models():
    return {
        "models": pipeline.allowlist.models,
        "defaults": pipeline.allowlist.default_models(),
    }


# --- Photo registration (called by the upload side) ---


class RegisterPhotoRequest(BaseModel):
    model_config = {"populate_by_name": True}

    photo_id: str = Field(alias="photoId", min_length=1)
    content_ref: str = Field(alias="contentRef", min_length=1)


@app.post("/photos", status_code=201)
async def create_photo(req: RegisterPhotoRequest, session: AsyncSession = Depends(get_session)):
    photo = await register_photo(session, req.photo_id, req.content_ref)
    return {"photoId": photo.id, "state": photo.state.value}


# --- Analysis ---


class EnqueueRequest(BaseModel):
    model_config = {"populate_by_name": True}

    preferred_models: list[str] | None = Field(default=None, alias="preferredModels")
    priority: Priority = Priority.NORMAL
    run_type: RunType = Field(default=RunType.INITIAL, alias="runType")
    reset_retry_count: bool = Field(default=False, alias="resetRetryCount")
    detail: DetailHint | None = None
    context: str = Field(default="", max_length=2000)


@app.post("/photos/{photo_id}/analysis", status_code=202)
async def enqueue_analysis(photo_id: str, response: Response, req: EnqueueRequest | None = None):
    """Queue AI analysis for a photo. Poll GET on the same path for the result."""
    req = req or EnqueueRequest()
    result = await pipeline.queue.enqueue(
        photo_id,
        EnqueueOptions(
            preferred_models=req.preferred_models or [],
            priority=req.priority,
            run_type=req.run_type,
            reset_retry_count=req.reset_retry_count,
            detail=req.detail,
            context=req.context,
        ),
    )
    if not result.accepted:
        if result.reason == REJECT_NOT_FOUND:
            response.status_code = 404
        elif result.reason == REJECT_IN_FLIGHT:
            response.status_code = 409
    body = {"accepted": result.accepted}
    if result.reason:
        body["reason"] = result.reason
    if result.job_id is not None:
        body["jobId"] = result.job_id
    return body


@app.get("/photos/{photo_id}/analysis")
async def poll_analysis(photo_id: str, response: Response, session: AsyncSession = Depends(get_session)):
    status = await get_status(session, photo_id)
    if status is None:
        raise HTTPException(404, "Photo not found")
    response.headers["Cache-Control"] = "no-store"
    return status


@app.get("/photos/{photo_id}/analysis/history")
async def analysis_history(photo_id: str, session: AsyncSession = Depends(get_session)):
    history = await get_history(session, photo_id)
    if history is None:
        raise HTTPException(404, "Photo not found")
    return {"photoId": photo_id, "modelHistory": history}
