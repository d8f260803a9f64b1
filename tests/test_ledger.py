import json

from services.analysis.ledger import AttemptResult, RunSummary, append_run, list_runs
from services.analysis.queue import EnqueueOptions
from services.analysis.status import get_history, get_status
from services.database import RunOutcome, RunType


async def test_append_assigns_increasing_sequence(add_photo, session_factory):
    await add_photo("p1")
    async with session_factory() as session:
        first = await append_run(session, "p1", RunSummary(run_type=RunType.INITIAL, outcome=RunOutcome.FAILED))
        second = await append_run(
            session,
            "p1",
            RunSummary(
                run_type=RunType.RETRY,
                outcome=RunOutcome.SUCCEEDED,
                models_used=["m1"],
                attempts=[AttemptResult(model="m1", status="succeeded")],
                model_used="m1",
            ),
        )
        await session.commit()
    assert (first.sequence, second.sequence) == (1, 2)

    async with session_factory() as session:
        runs = await list_runs(session, "p1")
    assert [r.sequence for r in runs] == [1, 2]
    assert runs[1].attempts == [{"model": "m1", "status": "succeeded"}]


async def test_sequences_are_per_photo(add_photo, session_factory):
    await add_photo("a")
    await add_photo("b")
    async with session_factory() as session:
        await append_run(session, "a", RunSummary(run_type=RunType.INITIAL, outcome=RunOutcome.FAILED))
        b = await append_run(session, "b", RunSummary(run_type=RunType.INITIAL, outcome=RunOutcome.FAILED))
        await session.commit()
    assert b.sequence == 1


async def test_rerun_appends_and_leaves_earlier_entries_untouched(pipeline, add_photo, session_factory, fake_provider):
    fake_provider.script["gpt-vision-a"] = [
        json.dumps({"caption": "A cat", "keywords": ["cat"]}),
        json.dumps({"caption": "A sleeping cat", "keywords": ["cat", "sleep"]}),
    ]
    await add_photo("p1")
    await pipeline.queue.enqueue("p1")
    await pipeline.pool.run_once("w1")

    async with session_factory() as session:
        before = await get_history(session, "p1")

    rerun = await pipeline.queue.enqueue("p1", EnqueueOptions(run_type=RunType.MANUAL_RERUN))
    assert rerun.accepted
    await pipeline.pool.run_once("w1")

    async with session_factory() as session:
        after = await get_history(session, "p1")
        status = await get_status(session, "p1")
    assert after[0] == before[0]
    assert after[0]["caption"] == "A cat"
    assert after[1]["caption"] == "A sleeping cat"
    assert after[1]["runType"] == "manual-rerun"
    assert status["caption"] == "A sleeping cat"
    assert status["keywords"] == ["cat", "sleep"]


async def test_history_of_unknown_photo_is_none(session_factory):
    async with session_factory() as session:
        assert await get_history(session, "missing") is None
        assert await get_status(session, "missing") is None
