from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from agentflow.runtime.errors import AgentNotFoundError, ScheduleNotFoundError, ValidationError
from agentflow.runtime.scheduler import Poller, ScheduleManager, compute_next_run, validate_cron
from agentflow.runtime.types import JobFilter, ScheduleUpdate
from tests.unit.runtime.support import START, Stack


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_next_run_is_evaluated_in_schedule_timezone() -> None:
    # 09:00 UTC is 04:00 in New York before DST starts on 2026-03-08.
    assert compute_next_run("0 9 * * *", "America/New_York", START) == _utc(2026, 3, 2, 14, 0)
    assert compute_next_run("0 9 * * *", "America/New_York", _utc(2026, 3, 8, 12, 0)) == _utc(2026, 3, 8, 13, 0)


def test_next_run_is_strictly_after_reference() -> None:
    assert compute_next_run("0 9 * * *", "UTC", START) == _utc(2026, 3, 3, 9, 0)
    naive = datetime(2026, 3, 2, 8, 59)
    assert compute_next_run("0 9 * * *", "UTC", naive) == START


@pytest.mark.parametrize("cron_expression, tz", [("every day", "UTC"), ("0 9 * * *", "Mars/Olympus"), ("", "UTC")])
def test_validate_cron_rejects_bad_definitions(cron_expression: str, tz: str) -> None:
    with pytest.raises(ValidationError):
        validate_cron(cron_expression, tz)


@pytest.mark.asyncio
async def test_create_schedule_sets_next_run(stack: Stack) -> None:
    schedule = await stack.service.create_schedule(
        agent_id="order-sync", user_id="user-1", cron_expression=" */15 * * * * ", name="sync"
    )
    assert schedule.id
    assert schedule.cron_expression == "*/15 * * * *"
    assert schedule.next_run == START + timedelta(minutes=15)
    assert (await stack.service.get_schedule(schedule.id)).name == "sync"
    with pytest.raises(AgentNotFoundError):
        await stack.service.create_schedule(agent_id="ghost", user_id="user-1", cron_expression="* * * * *")
    with pytest.raises(ScheduleNotFoundError):
        await stack.service.get_schedule("nope")


@pytest.mark.asyncio
async def test_due_schedule_becomes_one_job_and_missed_runs_are_not_replayed(stack: Stack) -> None:
    await stack.give_credentials()
    schedule = await stack.service.create_schedule(
        agent_id="order-sync", user_id="user-1", cron_expression="0 * * * *", payload={"full": True}, priority=2
    )
    assert await stack.service.schedules.promote_due() == []

    stack.clock.advance(3 * 3600 + 60)
    job_ids = await stack.service.schedules.promote_due()
    assert len(job_ids) == 1
    job = await stack.service.get_job(job_ids[0])
    assert (job.source, job.schedule_id, job.payload, job.priority) == ("schedule", schedule.id, {"full": True}, 2)

    stored = await stack.service.get_schedule(schedule.id)
    assert stored.run_count == 1
    assert stored.last_run == stack.clock.now
    assert stored.next_run == _utc(2026, 3, 2, 13, 0)


@pytest.mark.asyncio
async def test_competing_pollers_promote_a_run_once(stack: Stack) -> None:
    await stack.give_credentials()
    schedule = await stack.service.create_schedule(agent_id="order-sync", user_id="user-1", cron_expression="* * * * *")
    other = ScheduleManager(stack.schedules, stack.service.enqueue, clock=stack.clock)
    stack.clock.advance(60)

    results = await asyncio.gather(stack.service.schedules.promote_due(), other.promote_due())
    assert sum(len(ids) for ids in results) == 1
    assert not await stack.schedules.advance(schedule.id, schedule.next_run, stack.clock.now, stack.clock.now)
    assert len(await stack.store.list_jobs(JobFilter(agent_id="order-sync"))) == 1


@pytest.mark.asyncio
async def test_rejected_run_is_skipped_but_schedule_advances(stack: Stack) -> None:
    schedule = await stack.service.create_schedule(agent_id="order-sync", user_id="user-1", cron_expression="* * * * *")
    stack.clock.advance(60)
    assert await stack.service.schedules.promote_due() == []
    stored = await stack.service.get_schedule(schedule.id)
    assert stored.run_count == 1
    assert stored.next_run == stack.clock.now + timedelta(minutes=1)


@pytest.mark.asyncio
async def test_pause_and_resume(stack: Stack) -> None:
    await stack.give_credentials()
    schedule = await stack.service.create_schedule(agent_id="order-sync", user_id="user-1", cron_expression="* * * * *")
    paused = await stack.service.update_schedule(schedule.id, ScheduleUpdate(is_active=False))
    assert not paused.is_active
    stack.clock.advance(600)
    assert await stack.service.schedules.promote_due() == []

    resumed = await stack.service.update_schedule(schedule.id, ScheduleUpdate(is_active=True))
    assert resumed.next_run == stack.clock.now + timedelta(minutes=1)
    changed = await stack.service.update_schedule(schedule.id, ScheduleUpdate(cron_expression="0 0 * * *", name="nightly"))
    assert changed.name == "nightly"
    assert changed.next_run == _utc(2026, 3, 3, 0, 0)
    with pytest.raises(ValidationError):
        await stack.service.update_schedule(schedule.id, ScheduleUpdate(timezone="Nowhere/Land"))


@pytest.mark.asyncio
async def test_poller_tick_wakes_workers_and_promotes(stack: Stack) -> None:
    await stack.give_credentials()
    await stack.service.create_schedule(agent_id="order-sync", user_id="user-1", cron_expression="* * * * *")
    wakes: list[int] = []
    poller = Poller(wake=lambda: wakes.append(1), schedules=stack.service.schedules, interval_seconds=0.01)
    stack.clock.advance(60)
    assert len(await poller.tick()) == 1
    assert wakes == [1]


@pytest.mark.asyncio
async def test_poller_run_until_stopped() -> None:
    wakes: list[int] = []
    poller = Poller(wake=lambda: wakes.append(1), interval_seconds=0.01)
    task = asyncio.create_task(poller.run())
    await asyncio.sleep(0.05)
    poller.stop()
    await asyncio.wait_for(task, timeout=1)
    assert poller.stopped
    assert poller.ticks >= 1 and len(wakes) == poller.ticks
    with pytest.raises(ValueError):
        Poller(wake=lambda: None, interval_seconds=0)


@pytest.mark.asyncio
async def test_update_changes_max_retries_of_generated_jobs(stack: Stack) -> None:
    await stack.give_credentials()
    schedule = await stack.service.create_schedule(
        agent_id="order-sync", user_id="user-1", cron_expression="* * * * *", max_retries=1
    )
    updated = await stack.service.update_schedule(schedule.id, ScheduleUpdate(max_retries=6))
    assert updated.max_retries == 6
    assert (await stack.service.update_schedule(schedule.id, ScheduleUpdate(priority=2))).max_retries == 6
    with pytest.raises(ValidationError):
        await stack.service.update_schedule(schedule.id, ScheduleUpdate(max_retries=-1))

    stack.clock.advance(60)
    [job_id] = await stack.service.schedules.promote_due()
    job = await stack.store.get(job_id)
    assert job is not None and job.max_retries == 6
