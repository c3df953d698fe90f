"""Engine lifecycle tests.

Covers start/stop of the background loops, startup recovery of stale claims,
eager triggers and automatic restart of crashed workers.
"""

import asyncio

import pytest
import pytest_asyncio
from fakes import age_job, sample_payload

from atelier import engine as engine_module
from atelier.cli import reset_stuck
from atelier.engine import Engine
from atelier.models.job import FailureKind, JobStatus
from atelier.repositories.job import ClaimFilter


@pytest_asyncio.fixture
async def engine(store, dispatcher, reconciler, prompt_queue):
    engine = Engine(
        store,
        dispatcher,
        reconciler,
        prompt_queue,
        dispatch_interval_seconds=60,
        prompt_interval_seconds=60,
        reconcile_interval_seconds=60,
    )
    yield engine
    await engine.stop()


async def wait_for(predicate, timeout: float = 5.0) -> None:
    async def poll():
        while not await predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_start_recovers_stale_claims_and_runs_loops(
    engine, store, provider, session_factory
):
    stale = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")
    await store.claim_next(ClaimFilter(), limit=1)
    await age_job(session_factory, stale.id, seconds=300)
    fresh = await store.enqueue(sample_payload(), owner_id="owner-2", row_id="row-2")

    await engine.start()
    assert engine.running
    assert sorted(engine.workers) == ["dispatch", "prompt", "reconcile"]

    async def fresh_dispatched():
        return (await store.get(fresh.id)).status in (JobStatus.SUBMITTED, JobStatus.RUNNING)

    await wait_for(fresh_dispatched)

    stale = await store.get(stale.id)
    assert stale.status == JobStatus.QUEUED
    assert stale.attempts == 1

    await engine.stop()
    assert not engine.running
    assert engine.workers == {}


@pytest.mark.asyncio
async def test_reconcile_loop_can_be_left_to_external_scheduler(engine):
    engine.reconcile_in_process = False

    await engine.start()

    assert sorted(engine.workers) == ["dispatch", "prompt"]


@pytest.mark.asyncio
async def test_enqueue_triggers_dispatch_without_waiting(engine, provider):
    job = await engine.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")

    assert job.status == JobStatus.QUEUED
    await asyncio.gather(*list(engine.triggers))
    assert provider.submissions == [str(job.id)]


@pytest.mark.asyncio
async def test_crashed_worker_is_restarted(engine, monkeypatch):
    monkeypatch.setattr(engine_module, "RESTART_DELAY", 0)
    calls = []

    async def flaky():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("loop crashed")
        await asyncio.sleep(3600)

    engine._start_worker("flaky", flaky)

    async def restarted():
        return len(calls) == 2

    await wait_for(restarted)
    assert not engine.workers["flaky"].done()


@pytest.mark.asyncio
async def test_reset_cli_dry_run(monkeypatch, store, database_url, capsys):
    job = await store.enqueue(sample_payload(), owner_id="owner-1", row_id="row-1")
    await store.transition(
        job.id,
        {JobStatus.QUEUED},
        JobStatus.FAILED,
        error="Provider unavailable",
        failure_kind=FailureKind.UNAVAILABLE,
    )
    monkeypatch.setenv("DATABASE_URL", database_url)
    monkeypatch.setenv("APP_ENV", "test")

    exit_code = await reset_stuck.async_main(["--dry-run", "--owner", "owner-1"])

    assert exit_code == 0
    output = capsys.readouterr().out
    assert "Jobs reset to queued: 1" in output
    assert "[DRY RUN]" in output
    assert (await store.get(job.id)).status == JobStatus.FAILED
