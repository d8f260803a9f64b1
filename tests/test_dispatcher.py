import json

from services.analysis.errors import ProviderError
from services.analysis.queue import EnqueueOptions
from services.analysis.reaper import reclaim_expired
from services.analysis.status import get_history, get_status
from services.database import PhotoState


async def drain(pipeline, worker_id="w1", limit=20):
    """Run jobs until the queue has nothing eligible."""
    results = []
    for _ in range(limit):
        result = await pipeline.pool.run_once(worker_id)
        if result is None:
            break
        results.append(result)
    return results


async def test_end_to_end_single_photo(pipeline, add_photo, session_factory, fake_provider):
    await add_photo("p1")
    assert (await pipeline.queue.enqueue("p1", EnqueueOptions(preferred_models=["gpt-vision-a"]))).accepted

    result = await pipeline.pool.run_once("w1")
    assert result.state is PhotoState.FINISHED
    assert result.model_used == "gpt-vision-a"

    async with session_factory() as session:
        status = await get_status(session, "p1")
        history = await get_history(session, "p1")
    assert status["state"] == "finished"
    assert status["caption"] == "A cat"
    assert status["keywords"] == ["cat", "pet", "animal"]
    assert status["modelUsed"] == "gpt-vision-a"
    assert status["retryCount"] == 0
    assert fake_provider.calls == ["gpt-vision-a"]

    assert len(history) == 1
    assert history[0]["outcome"] == "succeeded"
    assert history[0]["runType"] == "initial"
    assert history[0]["modelsUsed"] == ["gpt-vision-a"]
    assert history[0]["modelUsed"] == "gpt-vision-a"


async def test_falls_back_to_next_model_on_provider_error(pipeline, add_photo, session_factory, fake_provider):
    fake_provider.script["gpt-vision-a"] = RuntimeError("503 from upstream")
    fake_provider.script["vision-b"] = json.dumps({"caption": "A dog", "keywords": ["dog"]})
    await add_photo("p1")
    await pipeline.queue.enqueue("p1")

    result = await pipeline.pool.run_once("w1")
    assert result.state is PhotoState.FINISHED
    assert result.model_used == "vision-b"
    assert result.models_used == ["gpt-vision-a", "vision-b"]

    async with session_factory() as session:
        [run] = await get_history(session, "p1")
    assert run["attempts"][0]["status"] == "failed"
    assert run["attempts"][0]["error_kind"] == "provider"
    assert run["attempts"][1] == {"model": "vision-b", "status": "succeeded"}


async def test_validation_failure_counts_as_a_failed_attempt(pipeline, add_photo, session_factory, fake_provider):
    fake_provider.script["gpt-vision-a"] = "I cannot help with that."
    await add_photo("p1")
    await pipeline.queue.enqueue("p1")

    result = await pipeline.pool.run_once("w1")
    assert result.model_used == "vision-b"

    async with session_factory() as session:
        [run] = await get_history(session, "p1")
    assert run["attempts"][0]["error_kind"] == "validation"


async def test_preferred_models_override_defaults(pipeline, add_photo, fake_provider):
    await add_photo("p1")
    await pipeline.queue.enqueue("p1", EnqueueOptions(preferred_models=["vision-b"]))
    result = await pipeline.pool.run_once("w1")
    assert result.model_used == "vision-b"
    assert fake_provider.calls == ["vision-b"]


async def test_always_failing_job_runs_exactly_max_retries_plus_one_times(
    make_pipeline, add_photo, session_factory, fake_provider
):
    pipeline = make_pipeline(max_retries=2)
    fake_provider.script["gpt-vision-a"] = ProviderError("down")
    await add_photo("p1")
    await pipeline.queue.enqueue("p1", EnqueueOptions(preferred_models=["gpt-vision-a"]))

    results = await drain(pipeline)
    assert [r.state for r in results] == [PhotoState.QUEUED, PhotoState.QUEUED, PhotoState.FAILED]
    assert fake_provider.calls == ["gpt-vision-a"] * 3

    async with session_factory() as session:
        status = await get_status(session, "p1")
        history = await get_history(session, "p1")
    assert status["state"] == "failed"
    assert status["retryCount"] == 3
    assert "down" in status["lastError"]
    assert [h["runType"] for h in history] == ["initial", "retry", "retry"]
    assert {h["outcome"] for h in history} == {"failed"}
    assert await pipeline.queue.stats() == {"queued": 0, "in_progress": 0}


async def test_disallowed_models_fail_without_provider_calls(pipeline, add_photo, session_factory, fake_provider):
    await add_photo("p1")
    await pipeline.queue.enqueue("p1", EnqueueOptions(preferred_models=["gpt-not-allowed", "other-model"]))

    result = await pipeline.pool.run_once("w1")
    assert result.state is PhotoState.FAILED
    assert fake_provider.calls == []

    async with session_factory() as session:
        status = await get_status(session, "p1")
        [run] = await get_history(session, "p1")
    assert "No allowed model" in status["lastError"]
    assert run["skippedModels"] == ["gpt-not-allowed", "other-model"]
    assert run["modelsUsed"] == []
    assert {a["status"] for a in run["attempts"]} == {"skipped"}


async def test_disallowed_entries_are_skipped_but_allowed_ones_run(pipeline, add_photo, fake_provider):
    await add_photo("p1")
    await pipeline.queue.enqueue("p1", EnqueueOptions(preferred_models=["gpt-not-allowed", "vision-b"]))
    result = await pipeline.pool.run_once("w1")
    assert result.state is PhotoState.FINISHED
    assert fake_provider.calls == ["vision-b"]


async def test_worker_with_reclaimed_lease_does_nothing(pipeline, add_photo, session_factory, clock, fake_provider):
    await add_photo("p1")
    await pipeline.queue.enqueue("p1")
    job = await pipeline.queue.claim("w1")

    clock.advance(pipeline.settings.lease_timeout_seconds + 1)
    assert await reclaim_expired(pipeline.queue) == 1

    result = await pipeline.dispatcher.run(job)
    assert result.state is None
    assert fake_provider.calls == []

    async with session_factory() as session:
        status = await get_status(session, "p1")
        history = await get_history(session, "p1")
    assert status["state"] == "queued"
    assert [h["outcome"] for h in history] == ["lease_expired"]


async def test_result_is_discarded_when_lease_expires_mid_call(
    pipeline, add_photo, session_factory, clock, fake_provider
):
    async def slow_then_reclaimed(request):
        clock.advance(pipeline.settings.lease_timeout_seconds + 1)
        await reclaim_expired(pipeline.queue)
        return json.dumps({"caption": "Too late"})

    fake_provider.script["gpt-vision-a"] = slow_then_reclaimed
    await add_photo("p1")
    await pipeline.queue.enqueue("p1")

    result = await pipeline.pool.run_once("w1")
    assert result.state is None

    async with session_factory() as session:
        status = await get_status(session, "p1")
        history = await get_history(session, "p1")
    assert status["caption"] == ""
    assert status["state"] == "queued"
    assert status["retryCount"] == 1
    assert [h["outcome"] for h in history] == ["lease_expired"]


async def test_unknown_fields_are_readable_through_status(pipeline, add_photo, session_factory, fake_provider):
    fake_provider.default = json.dumps({"caption": "A cat", "mood": "calm", "colors": ["orange"]})
    await add_photo("p1")
    await pipeline.queue.enqueue("p1")
    await pipeline.pool.run_once("w1")

    async with session_factory() as session:
        status = await get_status(session, "p1")
    assert status["extraFields"] == {"mood": "calm", "colors": ["orange"]}


async def test_context_is_rendered_into_the_prompt(pipeline, add_photo, fake_provider):
    await add_photo("p1")
    await pipeline.queue.enqueue("p1", EnqueueOptions(context="Taken near Lyon, France"))
    await pipeline.pool.run_once("w1")

    [request] = fake_provider.requests
    assert request.prompt.endswith("Context:\nTaken near Lyon, France")


async def test_prompt_has_no_context_section_by_default(pipeline, add_photo, fake_provider):
    await add_photo("p1")
    await pipeline.queue.enqueue("p1")
    await pipeline.pool.run_once("w1")

    [request] = fake_provider.requests
    assert "Context:" not in request.prompt


async def test_timestamps_carry_utc_offset(pipeline, add_photo, session_factory):
    await add_photo("p1")
    await pipeline.queue.enqueue("p1")
    await pipeline.pool.run_once("w1")

    async with session_factory() as session:
        status = await get_status(session, "p1")
        [run] = await get_history(session, "p1")
    assert status["updatedAt"].endswith("+00:00")
    assert run["timestamp"] == "2026-01-01T12:00:00+00:00"
