from __future__ import annotations

import pytest

from agentflow.runtime.errors import AgentInactiveError, JobNotFoundError, ValidationError
from agentflow.runtime.feedback import DISABLED_REASON, FeedbackPolicy, counts_as_failed
from agentflow.runtime.types import EnqueueRequest, Job, LedgerEntry, Resolution
from tests.unit.runtime.support import Stack, build_stack


async def _finished(stack: Stack, status: str = "completed") -> str:
    job_id = await stack.service.enqueue(EnqueueRequest(agent_id="order-sync", user_id="user-1"))
    await stack.store.claim_next("w-test", 1)
    await stack.store.finalize(job_id, "w-test", Resolution(status=status))  # type: ignore[arg-type]
    stack.clock.advance(1)
    return job_id


@pytest.mark.asyncio
async def test_three_failed_reports_out_of_five_deactivate_agent(stack: Stack) -> None:
    await stack.give_credentials()
    job_ids = [await _finished(stack) for _ in range(5)]

    first = await stack.service.record_feedback(job_ids[0], "user-1", "failed")
    second = await stack.service.record_feedback(job_ids[1], "user-1", "failed")
    assert (first.failures, second.failures) == (1, 2)
    assert not second.deactivated
    third = await stack.service.record_feedback(job_ids[2], "user-1", "failed", "wrong orders synced")
    assert third.considered == 5
    assert third.failures == 3
    assert third.deactivated

    agent = await stack.agents.get("order-sync")
    assert agent is not None and not agent.is_active
    assert agent.disabled_reason == DISABLED_REASON
    with pytest.raises(AgentInactiveError):
        await stack.service.enqueue(EnqueueRequest(agent_id="order-sync", user_id="user-1"))


@pytest.mark.asyncio
async def test_worked_feedback_overrides_failed_status(stack: Stack) -> None:
    await stack.give_credentials()
    failed = [await _finished(stack, "failed") for _ in range(2)]
    timed_out = await _finished(stack, "timeout")
    await _finished(stack)

    evaluation = await stack.service.record_feedback(failed[0], "user-1", "worked")
    assert evaluation.failures == 2
    assert not evaluation.deactivated
    evaluation = await stack.service.record_feedback(timed_out, "user-1", "failed")
    assert evaluation.failures == 2


@pytest.mark.asyncio
async def test_only_latest_window_is_considered() -> None:
    stack = build_stack(feedback=FeedbackPolicy(window=2, threshold=2))
    await stack.give_credentials()
    await _finished(stack, "failed")
    await _finished(stack)
    newest = await _finished(stack)
    evaluation = await stack.service.record_feedback(newest, "user-1", "failed")
    assert evaluation.considered == 2
    assert evaluation.failures == 1


@pytest.mark.asyncio
async def test_auto_disable_can_be_turned_off() -> None:
    stack = build_stack(feedback=FeedbackPolicy(window=1, threshold=1, auto_disable=False))
    await stack.give_credentials()
    job_id = await _finished(stack)
    evaluation = await stack.service.record_feedback(job_id, "user-1", "failed")
    assert evaluation.failures == 1 and not evaluation.deactivated
    agent = await stack.agents.get("order-sync")
    assert agent is not None and agent.is_active


@pytest.mark.asyncio
async def test_feedback_validation(stack: Stack) -> None:
    await stack.give_credentials()
    done = await _finished(stack)
    pending = await stack.service.enqueue(EnqueueRequest(agent_id="order-sync", user_id="user-1"))
    with pytest.raises(ValidationError):
        await stack.service.record_feedback(done, "user-1", "meh")  # type: ignore[arg-type]
    with pytest.raises(ValidationError):
        await stack.service.record_feedback(done, "someone-else", "failed")
    with pytest.raises(ValidationError):
        await stack.service.record_feedback(pending, "user-1", "failed")
    with pytest.raises(ValidationError):
        await stack.service.record_feedback(done, "user-1", "failed", "x" * 2001)
    with pytest.raises(JobNotFoundError):
        await stack.service.record_feedback("missing", "user-1", "failed")


def test_counts_as_failed_prefers_feedback() -> None:
    job = Job(id="j", agent_id="a", user_id="u", status="timeout")
    assert counts_as_failed(job, None)
    worked = LedgerEntry(job_id="j", agent_id="a", user_id="u", phase="feedback", data={"verdict": "worked"})
    assert not counts_as_failed(job, worked)
    with pytest.raises(ValueError):
        FeedbackPolicy(window=3, threshold=4)
