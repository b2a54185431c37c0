"""
Tests for engine.scheduler.

Tests cover:
- Due configs are executed and recurring ones re-armed from the tick time
- on_demand configs are never selected or rescheduled
- Quota denials skip a config without touching next_run_at
- Failures in one config do not stop the tick
- Completion notifications
- APScheduler wiring
"""

import asyncio
from datetime import timedelta

import pytest
from conftest import seed_config, subscribe, utc

from visibility_tracker.engine.orchestrator import RunOrchestrator
from visibility_tracker.engine.quota import QuotaGuard
from visibility_tracker.engine.scheduler import TICK_JOB_ID, Scheduler
from visibility_tracker.exceptions import DatabaseQueryError
from visibility_tracker.providers import ALL_PROVIDERS
from visibility_tracker.storage import RunStatus

NOW = utc(2025, 3, 10, 6, 0)
PROMPTS = ["Best mortgage broker?", "Cheapest mortgage?"]


@pytest.fixture
def scheduler(store, fake_adapters, recording_notifier):
    return Scheduler(
        store,
        RunOrchestrator(store, fake_adapters),
        QuotaGuard(store),
        recording_notifier,
        ALL_PROVIDERS,
    )


@pytest.mark.asyncio
async def test_weekly_config_runs_and_is_rescheduled(store, scheduler, recording_notifier):
    subscribe(store)
    _, _, config = seed_config(store, PROMPTS, next_run_at=NOW - timedelta(minutes=5))

    processed = await scheduler.tick(NOW)

    assert processed == 1
    (run,) = await store.list_runs_for_config(config.id)
    assert run.status == RunStatus.COMPLETED
    assert len(await store.list_results(run.id)) == len(PROMPTS) * len(ALL_PROVIDERS)
    assert (await store.get_tracking_config(config.id)).next_run_at == NOW + timedelta(days=7)

    (event,) = recording_notifier.events
    assert event.run_id == run.id
    assert event.status == "completed"
    assert event.prompt_count == 2
    assert event.domain_name == "Interhyp"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("interval", "expected"),
    [("daily", utc(2025, 3, 11, 6, 0)), ("monthly", utc(2025, 4, 10, 6, 0))],
)
async def test_next_run_at_follows_interval(store, scheduler, interval, expected):
    subscribe(store)
    _, _, config = seed_config(store, PROMPTS, interval=interval, next_run_at=NOW)

    await scheduler.tick(NOW)

    assert (await store.get_tracking_config(config.id)).next_run_at == expected


@pytest.mark.asyncio
async def test_config_not_yet_due_is_ignored(store, scheduler):
    subscribe(store)
    _, _, config = seed_config(store, PROMPTS, next_run_at=NOW + timedelta(seconds=1))

    assert await scheduler.tick(NOW) == 0
    assert await store.list_runs_for_config(config.id) == []


@pytest.mark.asyncio
async def test_on_demand_config_is_never_selected(store, scheduler):
    subscribe(store)
    stamped = NOW - timedelta(days=1)
    _, _, config = seed_config(store, PROMPTS, interval="on_demand", next_run_at=stamped)

    assert await scheduler.tick(NOW) == 0
    assert await scheduler.tick(NOW + timedelta(minutes=1)) == 0
    assert await store.list_runs_for_config(config.id) == []
    assert (await store.get_tracking_config(config.id)).next_run_at == stamped


@pytest.mark.asyncio
async def test_quota_denial_skips_config(store, scheduler, recording_notifier):
    # No subscription: paid owner without allowance
    _, _, config = seed_config(store, PROMPTS, next_run_at=NOW)

    assert await scheduler.tick(NOW) == 0
    assert await store.list_runs_for_config(config.id) == []
    assert (await store.get_tracking_config(config.id)).next_run_at == NOW
    assert recording_notifier.events == []


@pytest.mark.asyncio
async def test_trial_lookup_grants_trial_allowance(store, fake_adapters, recording_notifier):
    scheduler = Scheduler(
        store,
        RunOrchestrator(store, fake_adapters),
        QuotaGuard(store),
        recording_notifier,
        ALL_PROVIDERS,
        is_trial=lambda owner_id: owner_id == "trial-owner",
    )
    seed_config(store, PROMPTS, owner_id="trial-owner", next_run_at=NOW)

    assert await scheduler.tick(NOW) == 1


@pytest.mark.asyncio
async def test_failed_run_keeps_schedule(store, scheduler, recording_notifier, monkeypatch):
    subscribe(store)
    _, _, config = seed_config(store, PROMPTS, next_run_at=NOW)

    async def broken_insert(result):
        raise DatabaseQueryError("disk full")

    monkeypatch.setattr(store, "insert_result", broken_insert)

    assert await scheduler.tick(NOW) == 1
    (run,) = await store.list_runs_for_config(config.id)
    assert run.status == RunStatus.FAILED
    assert (await store.get_tracking_config(config.id)).next_run_at == NOW
    assert recording_notifier.events[0].status == "failed"


@pytest.mark.asyncio
async def test_one_broken_config_does_not_stop_tick(store, scheduler, monkeypatch):
    subscribe(store)
    _, _, broken = seed_config(store, PROMPTS, next_run_at=NOW - timedelta(hours=1))
    _, _, healthy = seed_config(store, PROMPTS, next_run_at=NOW)
    real_create_run = store.create_run

    async def create_run(config_id, started_at):
        if config_id == broken.id:
            raise DatabaseQueryError("locked")
        return await real_create_run(config_id, started_at)

    monkeypatch.setattr(store, "create_run", create_run)

    assert await scheduler.tick(NOW) == 1
    assert len(await store.list_runs_for_config(healthy.id)) == 1


@pytest.mark.asyncio
async def test_missing_prompt_set_is_skipped(store, scheduler, monkeypatch):
    subscribe(store)
    seed_config(store, PROMPTS, next_run_at=NOW)

    async def no_prompt_set(prompt_set_id):
        return None

    monkeypatch.setattr(store, "get_prompt_set", no_prompt_set)

    assert await scheduler.tick(NOW) == 0


@pytest.mark.asyncio
async def test_build_scheduler_registers_tick_job(scheduler):
    aps = scheduler.build_scheduler(poll_seconds=30)

    job = aps.get_job(TICK_JOB_ID)
    assert job is not None
    assert job.trigger.interval == timedelta(seconds=30)
    assert job.max_instances == 1
    assert job.coalesce is True


@pytest.mark.asyncio
async def test_run_forever_ticks_until_stopped(store, scheduler):
    subscribe(store)
    _, _, config = seed_config(store, PROMPTS, next_run_at=utc(2025, 1, 1))
    stop = asyncio.Event()

    task = asyncio.create_task(scheduler.run_forever(poll_seconds=3600, stop_event=stop))
    for _ in range(100):
        await asyncio.sleep(0.05)
        runs = await store.list_runs_for_config(config.id)
        if runs and runs[0].status != RunStatus.RUNNING:
            break
    stop.set()
    await task

    (run,) = await store.list_runs_for_config(config.id)
    assert run.status == RunStatus.COMPLETED
