import logging
from dataclasses import dataclass

from config.settings import Settings
from config.settings import settings as default_settings
from services.analysis.allowlist import ModelAllowlist
from services.analysis.errors import AnalysisError, LeaseLostError, ModelNotAllowedError
from services.analysis.ledger import AttemptResult, RunSummary
from services.analysis.prompts import SYSTEM_PROMPT, build_analysis_prompt
from services.analysis.queue import ClaimedJob, JobQueue
from services.analysis.validator import CanonicalMetadata, validate
from services.database import PhotoState, RunOutcome
from services.llm.base import VisionRequest
from services.llm.router import LLMRouter

log = logging.getLogger(__name__)


@dataclass
class RunResult:
    """What a worker did with one claimed job."""

    photo_id: str
    state: PhotoState | None  # None when the lease was lost and nothing was committed
    model_used: str | None = None
    models_used: list[str] | None = None


class Dispatcher:
    """Runs one claimed job: tries allowed models in order until one returns a usable result.

    Attempt-level errors (provider, validation, disallowed model) are absorbed
    here and recorded on the run; only the job's resulting state leaves.
    """

    def __init__(
        self,
        queue: JobQueue,
        router: LLMRouter,
        allowlist: ModelAllowlist,
        settings: Settings | None = None,
    ):
        self.queue = queue
        self.router = router
        self.allowlist = allowlist
        self.settings = settings or default_settings

    def candidates(self, job: ClaimedJob) -> tuple[list[str], list[str]]:
        requested = job.preferred_models or self.allowlist.default_models()
        allowed, skipped = self.allowlist.filter(requested)
        for model in skipped:
            log.warning(f"Skipping model '{model}' for {job.photo_id}: not on the allowlist")
        return allowed, skipped

    async def run(self, job: ClaimedJob) -> RunResult:
        allowed, skipped = self.candidates(job)
        run = RunSummary(
            run_type=job.run_type,
            outcome=RunOutcome.FAILED,
            skipped_models=skipped,
            attempts=[
                AttemptResult(model=m, status="skipped", error_kind="configuration", error="model not allowed")
                for m in skipped
            ],
        )

        if not allowed:
            error = "No allowed model to try" + (f" (skipped: {', '.join(skipped)})" if skipped else "")
            log.error(f"Job {job.job_id} for {job.photo_id}: {error}")
            return await self._fail(job, run, error, retryable=False)

        last_error = ""
        for model in allowed:
            if not await self.queue.renew_lease(job):
                log.warning(f"Lease on job {job.job_id} for {job.photo_id} lost before trying {model}")
                return RunResult(photo_id=job.photo_id, state=None, models_used=run.models_used)

            run.models_used.append(model)
            try:
                metadata = await self._attempt(job, model)
            except AnalysisError as e:
                last_error = f"{model}: {e}"
                run.attempts.append(AttemptResult(model=model, status="failed", error_kind=e.kind, error=str(e)))
                log.warning(f"Attempt with {model} failed for {job.photo_id} ({e.kind}): {e}")
                continue

            run.attempts.append(AttemptResult(model=model, status="succeeded"))
            run.outcome = RunOutcome.SUCCEEDED
            run.model_used = model
            run.caption = metadata.caption
            run.keywords = list(metadata.keywords)
            run.classification = metadata.classification_value()
            try:
                await self.queue.complete(job, metadata, run)
            except LeaseLostError as e:
                log.warning(f"Discarding result for {job.photo_id}: {e}")
                return RunResult(photo_id=job.photo_id, state=None, models_used=run.models_used)
            return RunResult(
                photo_id=job.photo_id,
                state=PhotoState.FINISHED,
                model_used=model,
                models_used=run.models_used,
            )

        return await self._fail(job, run, f"All models failed; last error: {last_error}")

    async def _attempt(self, job: ClaimedJob, model: str) -> CanonicalMetadata:
        if not self.allowlist.is_model_allowed(model):
            # filter() already removed these; never let one reach a provider
            raise ModelNotAllowedError(f"Refusing to call non-allowlisted model '{model}'")

        request = VisionRequest(
            content_ref=job.content_ref,
            system=SYSTEM_PROMPT,
            prompt=build_analysis_prompt(job.context),
            model=model,
            detail=job.detail,
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
            timeout=self.settings.provider_timeout_seconds,
        )
        response = await self.router.analyze_image(request)
        return validate(response.content)

    async def _fail(self, job: ClaimedJob, run: RunSummary, error: str, retryable: bool = True) -> RunResult:
        try:
            decision = await self.queue.fail(job, run, error, retryable=retryable)
        except LeaseLostError as e:
            log.warning(f"Could not record failure for {job.photo_id}: {e}")
            return RunResult(photo_id=job.photo_id, state=None, models_used=run.models_used)
        return RunResult(photo_id=job.photo_id, state=decision.next_state, models_used=run.models_used)
