"""Shared in-memory runtime stack for unit tests."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from agentflow.runtime.backoff import BackoffPolicy
from agentflow.runtime.dispatcher import WebhookDispatcher
from agentflow.runtime.feedback import FeedbackMonitor, FeedbackPolicy
from agentflow.runtime.ledger import InMemoryExecutionLedger
from agentflow.runtime.persistence.repositories import (
    AgentDirectory,
    InMemoryAgentDirectory,
    InMemoryCredentialRepository,
)
from agentflow.runtime.rate_limit import RateLimitPolicy, RateLimiter
from agentflow.runtime.scheduler import InMemoryScheduleStore
from agentflow.runtime.service import RuntimeService
from agentflow.runtime.store import InMemoryJobStore, ReclaimPolicy
from agentflow.runtime.types import AgentDescriptor, CredentialRequirement
from agentflow.runtime.vault import CredentialVault, generate_key
from agentflow.runtime.worker import Worker, WorkerSettings

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

SHOPIFY_TOKEN = "shpat_live_9f8e7d6c5b4a"
OPENAI_KEY = "sk-test-0123456789abcdef"


class ManualClock:
    """Deterministic clock advanced explicitly by tests."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@dataclass
class WebhookRecorder:
    """httpx.MockTransport handler that records requests and replays scripted responses."""

    responses: list[Callable[[httpx.Request], Any]] = field(default_factory=list)
    requests: list[httpx.Request] = field(default_factory=list)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            responder = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
            result = responder(request)
            if hasattr(result, "__await__"):
                result = await result
            return result
        return httpx.Response(200, json={"ok": True})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def shopify_agent(**overrides: Any) -> AgentDescriptor:
    values: dict[str, Any] = {
        "agent_id": "order-sync",
        "name": "Order Sync",
        "webhook_url": "https://agents.example.com/order-sync",
        "credentials": [
            CredentialRequirement(
                provider="shopify",
                field_name="X-Shopify-Access-Token",
                format_template="{{token}}",
            ),
            CredentialRequirement(provider="openai"),
        ],
        "timeout_seconds": 5.0,
    }
    values.update(overrides)
    return AgentDescriptor(**values)


@dataclass
class Stack:
    clock: ManualClock
    store: InMemoryJobStore
    agents: InMemoryAgentDirectory
    credentials: InMemoryCredentialRepository
    vault: CredentialVault
    ledger: InMemoryExecutionLedger
    schedules: InMemoryScheduleStore
    webhook: WebhookRecorder
    dispatcher: WebhookDispatcher
    service: RuntimeService
    feedback: FeedbackMonitor

    def worker(self, worker_id: str = "worker-1", *, agents: AgentDirectory | None = None, **settings: Any) -> Worker:
        options: dict[str, Any] = {"capacity": 5, "poll_interval_seconds": 0.01, "heartbeat_interval_seconds": 0.01}
        options.update(settings)
        return Worker(
            store=self.store,
            agents=agents or self.agents,
            vault=self.vault,
            dispatcher=self.dispatcher,
            ledger=self.ledger,
            backoff=BackoffPolicy(base_delay_seconds=60, max_delay_seconds=1800),
            settings=WorkerSettings(**options),
            worker_id=worker_id,
            clock=self.clock,
        )

    async def give_credentials(self, user_id: str = "user-1") -> None:
        await self.vault.store(user_id, "shopify", SHOPIFY_TOKEN)
        await self.vault.store(user_id, "openai", OPENAI_KEY)


def build_stack(*, rate_limit: RateLimitPolicy | None = None, feedback: FeedbackPolicy | None = None) -> Stack:
    clock = ManualClock()
    store = InMemoryJobStore(reclaim_policy=ReclaimPolicy(stale_after_seconds=60, grace_seconds=60), clock=clock)
    agents = InMemoryAgentDirectory([shopify_agent()])
    credentials = InMemoryCredentialRepository()
    vault = CredentialVault(credentials, generate_key(), clock=clock)
    ledger = InMemoryExecutionLedger()
    schedules = InMemoryScheduleStore()
    webhook = WebhookRecorder()
    dispatcher = WebhookDispatcher(default_timeout_seconds=5, transport=webhook.transport())
    monitor = FeedbackMonitor(store, ledger, agents, feedback)
    service = RuntimeService(
        store=store,
        agents=agents,
        vault=vault,
        ledger=ledger,
        schedules=schedules,
        feedback=monitor,
        rate_limiter=RateLimiter(store, rate_limit or RateLimitPolicy(max_requests=1000), clock=clock),
        default_max_retries=3,
        clock=clock,
    )
    return Stack(
        clock=clock,
        store=store,
        agents=agents,
        credentials=credentials,
        vault=vault,
        ledger=ledger,
        schedules=schedules,
        webhook=webhook,
        dispatcher=dispatcher,
        service=service,
        feedback=monitor,
    )
