from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from agentflow.runtime.dispatcher import DEFAULT_USER_AGENT, WebhookDispatcher
from agentflow.runtime.types import HTTPFailure, Job, NetworkFailure, ResolvedCredentials, Success, TimeoutFailure
from agentflow.runtime.vault import REDACTED
from tests.unit.runtime.support import OPENAI_KEY, SHOPIFY_TOKEN, WebhookRecorder, shopify_agent

CREDENTIALS = ResolvedCredentials(values={"shopify": SHOPIFY_TOKEN, "openai": OPENAI_KEY})


def _job() -> Job:
    return Job(id="job-1", agent_id="order-sync", user_id="user-1", payload={"order_id": 1042})


@pytest.mark.asyncio
async def test_success_posts_payload_with_injected_headers() -> None:
    recorder = WebhookRecorder(responses=[lambda request: httpx.Response(200, json={"synced": 3})])
    dispatcher = WebhookDispatcher(transport=recorder.transport())
    outcome = await dispatcher.invoke(shopify_agent(), _job(), CREDENTIALS)

    assert isinstance(outcome, Success)
    assert outcome.status_code == 200 and outcome.body == {"synced": 3}
    request = recorder.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://agents.example.com/order-sync"
    assert request.headers["X-Shopify-Access-Token"] == SHOPIFY_TOKEN
    assert request.headers["Authorization"] == f"Bearer {OPENAI_KEY}"
    assert request.headers["User-Agent"] == DEFAULT_USER_AGENT
    assert request.headers["Content-Type"] == "application/json"
    assert json.loads(request.content) == {"order_id": 1042}


@pytest.mark.asyncio
async def test_non_2xx_is_http_failure_with_scrubbed_body() -> None:
    recorder = WebhookRecorder(
        responses=[lambda request: httpx.Response(500, json={"detail": f"bad token {SHOPIFY_TOKEN}"})]
    )
    dispatcher = WebhookDispatcher(transport=recorder.transport())
    outcome = await dispatcher.invoke(shopify_agent(), _job(), CREDENTIALS)
    assert isinstance(outcome, HTTPFailure)
    assert outcome.status_code == 500
    assert outcome.body == {"detail": f"bad token {REDACTED}"}


@pytest.mark.asyncio
async def test_echoed_secret_in_success_body_is_redacted() -> None:
    recorder = WebhookRecorder(responses=[lambda request: httpx.Response(200, text=f"echo {OPENAI_KEY}")])
    dispatcher = WebhookDispatcher(transport=recorder.transport())
    outcome = await dispatcher.invoke(shopify_agent(), _job(), CREDENTIALS)
    assert isinstance(outcome, Success)
    assert outcome.body == {"text": f"echo {REDACTED}"}


@pytest.mark.asyncio
async def test_slow_webhook_times_out_at_agent_deadline() -> None:
    async def _slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(2)
        return httpx.Response(200, json={})

    recorder = WebhookRecorder(responses=[_slow])
    dispatcher = WebhookDispatcher(transport=recorder.transport())
    outcome = await dispatcher.invoke(shopify_agent(timeout_seconds=0.05), _job(), CREDENTIALS)
    assert isinstance(outcome, TimeoutFailure)
    assert outcome.timeout_ms == 50
    assert outcome.duration_ms >= outcome.timeout_ms


@pytest.mark.asyncio
async def test_network_error_message_never_contains_secret() -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError(f"refused while sending {SHOPIFY_TOKEN}", request=request)

    recorder = WebhookRecorder(responses=[_refuse])
    dispatcher = WebhookDispatcher(transport=recorder.transport())
    outcome = await dispatcher.invoke(shopify_agent(), _job(), CREDENTIALS)
    assert isinstance(outcome, NetworkFailure)
    assert outcome.error.startswith("ConnectError")
    assert SHOPIFY_TOKEN not in outcome.error


def test_timeout_falls_back_to_default() -> None:
    dispatcher = WebhookDispatcher(default_timeout_seconds=12)
    assert dispatcher.timeout_for(shopify_agent(timeout_seconds=None)) == 12.0
    assert dispatcher.timeout_for(shopify_agent(timeout_seconds=3)) == 3.0
    with pytest.raises(ValueError):
        WebhookDispatcher(default_timeout_seconds=0)


def test_agent_timeout_is_capped() -> None:
    dispatcher = WebhookDispatcher(default_timeout_seconds=30, max_timeout_seconds=120)
    assert dispatcher.timeout_for(shopify_agent(timeout_seconds=7200)) == 120.0
    assert dispatcher.max_timeout_seconds == 120.0
    with pytest.raises(ValueError):
        WebhookDispatcher(default_timeout_seconds=60, max_timeout_seconds=30)
