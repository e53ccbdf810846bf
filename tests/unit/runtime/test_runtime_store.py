from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from agentflow.runtime.errors import AlreadyTerminalError, ConcurrencyViolation, JobNotFoundError, ValidationError
from agentflow.runtime.store import OVERDUE_ERROR, RECLAIM_ERROR, InMemoryJobStore, ReclaimPolicy
from agentflow.runtime.types import Job, JobFilter, Resolution, WorkerState
from tests.unit.runtime.support import ManualClock


def _job(job_id: str, clock: ManualClock, **overrides: object) -> Job:
    values: dict[str, object] = {
        "id": job_id,
        "agent_id": "agent-1",
        "user_id": "user-1",
        "scheduled_at": clock.now,
        "created_at": clock.now,
    }
    values.update(overrides)
    return Job(**values)  # type: ignore[arg-type]


@given(
    job_count=st.integers(min_value=1, max_value=40),
    workers=st.integers(min_value=2, max_value=8),
    capacity=st.integers(min_value=1, max_value=6),
)
@settings(max_examples=25, deadline=None)
def test_property_parallel_claimers_never_share_a_job(job_count: int, workers: int, capacity: int) -> None:
    clock = ManualClock()
    store = InMemoryJobStore(clock=clock)
    for index in range(job_count):
        asyncio.run(store.enqueue(_job(f"job-{index}", clock)))

    def _claim(worker_index: int) -> list[str]:
        claimed: list[str] = []
        while True:
            batch = asyncio.run(store.claim_next(f"w-{worker_index}", capacity))
            if not batch:
                return claimed
            claimed.extend(job.id for job in batch)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(_claim, range(workers)))

    all_claimed = [job_id for batch in results for job_id in batch]
    assert len(all_claimed) == len(set(all_claimed)) == job_count


@pytest.mark.asyncio
async def test_claim_order_priority_then_fifo() -> None:
    clock = ManualClock()
    store = InMemoryJobStore(clock=clock)
    await store.enqueue(_job("low-old", clock, priority=0))
    clock.advance(1)
    await store.enqueue(_job("high-new", clock, priority=10))
    await store.enqueue(_job("low-new", clock, priority=0))
    await store.enqueue(_job("high-newer", clock, priority=10))
    claimed = await store.claim_next("w-1", 10)
    assert [job.id for job in claimed] == ["high-new", "high-newer", "low-old", "low-new"]
    assert all(job.status == "running" and job.worker_id == "w-1" for job in claimed)


@pytest.mark.asyncio
async def test_future_jobs_are_not_claimed_until_due() -> None:
    clock = ManualClock()
    store = InMemoryJobStore(clock=clock)
    await store.enqueue(_job("later", clock, scheduled_at=clock.now + timedelta(minutes=5)))
    assert await store.claim_next("w-1", 5) == []
    clock.advance(301)
    assert [job.id for job in await store.claim_next("w-1", 5)] == ["later"]


@pytest.mark.asyncio
async def test_capabilities_restrict_claims_to_served_providers() -> None:
    clock = ManualClock()
    store = InMemoryJobStore(clock=clock)
    await store.enqueue(_job("needs-shopify", clock, required_providers=["shopify"]))
    await store.enqueue(_job("needs-nothing", clock))
    claimed = await store.claim_next("w-1", 5, capabilities={"gmail"})
    assert [job.id for job in claimed] == ["needs-nothing"]
    claimed = await store.claim_next("w-2", 5, capabilities={"gmail", "shopify"})
    assert [job.id for job in claimed] == ["needs-shopify"]


@pytest.mark.asyncio
async def test_enqueue_validation() -> None:
    clock = ManualClock()
    store = InMemoryJobStore(clock=clock)
    with pytest.raises(ValidationError):
        await store.enqueue(_job("bad", clock, max_retries=-1))
    with pytest.raises(ValidationError):
        await store.enqueue(_job("bad", clock, agent_id=" "))
    with pytest.raises(ValidationError):
        await store.enqueue(_job("bad", clock, scheduled_at=clock.now.replace(tzinfo=None)))
    await store.enqueue(_job("dup", clock))
    with pytest.raises(ValidationError):
        await store.enqueue(_job("dup", clock))


@pytest.mark.asyncio
async def test_finalize_requires_current_holder() -> None:
    clock = ManualClock()
    store = InMemoryJobStore(clock=clock)
    await store.enqueue(_job("j", clock))
    await store.claim_next("w-1", 1)
    with pytest.raises(ConcurrencyViolation):
        await store.finalize("j", "w-2", Resolution(status="completed"))
    done = await store.finalize("j", "w-1", Resolution(status="completed", result={"ok": True}, duration_ms=12))
    assert done.status == "completed" and done.result == {"ok": True} and done.completed_at == clock.now
    with pytest.raises(ConcurrencyViolation):
        await store.finalize("j", "w-1", Resolution(status="failed"))
    with pytest.raises(JobNotFoundError):
        await store.finalize("missing", "w-1", Resolution(status="failed"))


@pytest.mark.asyncio
async def test_finalize_to_pending_increments_retry_and_reschedules() -> None:
    clock = ManualClock()
    store = InMemoryJobStore(clock=clock)
    await store.enqueue(_job("j", clock))
    await store.claim_next("w-1", 1)
    retry_at = clock.now + timedelta(seconds=60)
    job = await store.finalize("j", "w-1", Resolution(status="pending", last_error="HTTP 500", retry_at=retry_at))
    assert (job.status, job.retry_count, job.scheduled_at, job.worker_id) == ("pending", 1, retry_at, None)
    assert await store.claim_next("w-1", 1) == []


@pytest.mark.asyncio
async def test_cancel_pending_and_reject_terminal() -> None:
    clock = ManualClock()
    store = InMemoryJobStore(clock=clock)
    await store.enqueue(_job("pending", clock))
    cancelled = await store.cancel("pending", "user asked")
    assert cancelled.status == "cancelled" and cancelled.cancel_reason == "user asked"
    assert await store.claim_next("w-1", 5) == []
    with pytest.raises(AlreadyTerminalError):
        await store.cancel("pending")
    with pytest.raises(JobNotFoundError):
        await store.cancel("nope")


@pytest.mark.asyncio
async def test_reclaim_requeues_jobs_of_dead_workers() -> None:
    clock = ManualClock()
    store = InMemoryJobStore(reclaim_policy=ReclaimPolicy(stale_after_seconds=60, grace_seconds=30), clock=clock)
    await store.register_worker(WorkerState("dead", 5, last_heartbeat=clock.now, started_at=clock.now))
    await store.register_worker(WorkerState("alive", 5, last_heartbeat=clock.now, started_at=clock.now))
    await store.enqueue(_job("orphan", clock, max_retries=3))
    await store.enqueue(_job("held", clock, max_retries=3))
    await store.claim_next("dead", 1)
    await store.claim_next("alive", 1)

    clock.advance(90)
    await store.heartbeat("alive", 1, "busy")
    reclaimed = await store.reclaim_stale()
    assert [job.id for job in reclaimed] == ["orphan"]
    orphan = await store.get("orphan")
    assert orphan is not None
    assert (orphan.status, orphan.retry_count, orphan.last_error) == ("pending", 1, RECLAIM_ERROR)
    held = await store.get("held")
    assert held is not None and held.status == "running"


@pytest.mark.asyncio
async def test_reclaim_times_out_when_retries_exhausted() -> None:
    clock = ManualClock()
    store = InMemoryJobStore(clock=clock)
    await store.enqueue(_job("last-try", clock, max_retries=1))
    await store.claim_next("ghost", 1)
    clock.advance(120)
    reclaimed = await store.reclaim_stale()
    assert [job.status for job in reclaimed] == ["timeout"]


@pytest.mark.asyncio
async def test_recent_activity_and_listing() -> None:
    clock = ManualClock()
    store = InMemoryJobStore(clock=clock)
    first = clock.now
    await store.enqueue(_job("a", clock))
    clock.advance(10)
    await store.enqueue(_job("b", clock))
    await store.enqueue(_job("c", clock, user_id="user-2"))
    count, oldest = await store.recent_activity("user-1", "agent-1", first)
    assert (count, oldest) == (2, first)
    listed = await store.list_jobs(JobFilter(user_id="user-1"))
    assert [job.id for job in listed] == ["b", "a"]
    assert (await store.count_by_status()) == {"pending": 3}


@pytest.mark.asyncio
async def test_reclaim_requeues_overdue_job_of_live_worker() -> None:
    clock = ManualClock()
    policy = ReclaimPolicy(stale_after_seconds=60, grace_seconds=30, max_running_seconds=120)
    store = InMemoryJobStore(reclaim_policy=policy, clock=clock)
    await store.register_worker(WorkerState("stuck", 5, last_heartbeat=clock.now, started_at=clock.now))
    await store.enqueue(_job("wedged", clock, max_retries=3))
    await store.claim_next("stuck", 1)

    for _ in range(3):
        clock.advance(45)
        await store.heartbeat("stuck", 1, "busy")
        assert await store.reclaim_stale() == []

    clock.advance(45)
    await store.heartbeat("stuck", 1, "busy")
    [reclaimed] = await store.reclaim_stale()
    assert (reclaimed.id, reclaimed.status, reclaimed.last_error) == ("wedged", "pending", OVERDUE_ERROR)
    assert reclaimed.worker_id is None and reclaimed.retry_count == 1
