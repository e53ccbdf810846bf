from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from agentflow.runtime.errors import (
    AgentInactiveError,
    AgentNotFoundError,
    AlreadyTerminalError,
    JobNotFoundError,
    MissingCredentialsError,
    RateLimitExceeded,
    ValidationError,
)
from agentflow.runtime.rate_limit import RateLimitPolicy
from agentflow.runtime.types import AgentDescriptor, EnqueueRequest, WorkerState
from tests.unit.runtime.support import START, Stack, build_stack, shopify_agent


def _request(**overrides: object) -> EnqueueRequest:
    values: dict[str, object] = {"agent_id": "order-sync", "user_id": "user-1"}
    values.update(overrides)
    return EnqueueRequest(**values)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_enqueue_stores_pending_job_and_queued_entry(stack: Stack) -> None:
    await stack.give_credentials()
    job_id = await stack.service.enqueue(_request(payload={"a": 1}, priority=4))
    job = await stack.service.get_job(job_id)
    assert job.status == "pending"
    assert job.max_retries == 3
    assert job.required_providers == ["openai", "shopify"]
    assert job.scheduled_at == START
    history = await stack.ledger.history(job_id)
    assert [entry.phase for entry in history] == ["queued"]
    assert history[0].data["priority"] == 4
    assert history[0].data["source"] == "api"


@pytest.mark.asyncio
async def test_naive_scheduled_at_is_treated_as_utc(stack: Stack) -> None:
    await stack.give_credentials()
    job_id = await stack.service.enqueue(_request(scheduled_at=datetime(2026, 3, 3, 8, 0)))
    job = await stack.service.get_job(job_id)
    assert job.scheduled_at == START + timedelta(hours=23)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"agent_id": ""},
        {"user_id": "   "},
        {"payload": ["not", "an", "object"]},
        {"max_retries": -1},
        {"max_retries": True},
    ],
)
async def test_enqueue_rejects_invalid_requests(stack: Stack, overrides: dict) -> None:
    await stack.give_credentials()
    with pytest.raises(ValidationError):
        await stack.service.enqueue(_request(**overrides))
    assert await stack.store.count_by_status() == {}


@pytest.mark.asyncio
async def test_enqueue_unknown_or_inactive_agent(stack: Stack) -> None:
    await stack.give_credentials()
    with pytest.raises(AgentNotFoundError):
        await stack.service.enqueue(_request(agent_id="nope"))
    await stack.agents.deactivate("order-sync", "maintenance")
    with pytest.raises(AgentInactiveError) as excinfo:
        await stack.service.enqueue(_request())
    assert excinfo.value.reason == "maintenance"


@pytest.mark.asyncio
async def test_enqueue_lists_every_missing_provider(stack: Stack) -> None:
    with pytest.raises(MissingCredentialsError) as excinfo:
        await stack.service.enqueue(_request())
    assert excinfo.value.missing == ["openai", "shopify"]
    assert await stack.store.count_by_status() == {}


@pytest.mark.asyncio
async def test_expired_credential_counts_as_missing(stack: Stack) -> None:
    await stack.give_credentials()
    await stack.vault.store("user-1", "openai", "sk-old", expires_at=START + timedelta(minutes=1))
    stack.clock.advance(120)
    with pytest.raises(MissingCredentialsError) as excinfo:
        await stack.service.enqueue(_request())
    assert excinfo.value.missing == ["openai"]


@pytest.mark.asyncio
async def test_rate_limit_reports_retry_after_from_oldest_job() -> None:
    stack = build_stack(rate_limit=RateLimitPolicy(window_seconds=60, max_requests=2))
    await stack.give_credentials()
    await stack.service.enqueue(_request())
    stack.clock.advance(20)
    await stack.service.enqueue(_request())
    stack.clock.advance(10)
    with pytest.raises(RateLimitExceeded) as excinfo:
        await stack.service.enqueue(_request())
    assert excinfo.value.retry_after_seconds == 30

    stack.clock.advance(31)
    await stack.service.enqueue(_request())


@pytest.mark.asyncio
async def test_status_of_unknown_job(stack: Stack) -> None:
    with pytest.raises(JobNotFoundError):
        await stack.service.status("missing")


@pytest.mark.asyncio
async def test_cancel_records_reason_and_rejects_second_cancel(stack: Stack) -> None:
    await stack.give_credentials()
    job_id = await stack.service.enqueue(_request())
    job = await stack.service.cancel(job_id, "duplicate")
    assert job.status == "cancelled"
    view = await stack.service.status(job_id)
    assert view.error == "cancelled: duplicate"
    assert [entry.phase for entry in view.phases] == ["queued", "cancelled"]
    with pytest.raises(AlreadyTerminalError):
        await stack.service.cancel(job_id)


@pytest.mark.asyncio
async def test_register_agent_requires_http_url(stack: Stack) -> None:
    with pytest.raises(ValidationError):
        await stack.service.register_agent(AgentDescriptor(agent_id="x", webhook_url="ftp://host/hook"))
    saved = await stack.service.register_agent(shopify_agent(agent_id="digest", credentials=[]))
    assert (await stack.agents.get("digest")) is not None
    assert saved.agent_id == "digest"


@pytest.mark.asyncio
async def test_health_counts_live_workers_and_queue(stack: Stack) -> None:
    await stack.give_credentials()
    await stack.service.enqueue(_request())
    await stack.store.register_worker(WorkerState("fresh", 5, last_heartbeat=stack.clock.now))
    await stack.store.register_worker(WorkerState("stale", 5, last_heartbeat=START - timedelta(minutes=5)))
    health = await stack.service.health()
    assert health.live_workers == 1
    assert health.pending == 1 and health.running == 0
    assert health.to_dict()["status"] == "ok"
