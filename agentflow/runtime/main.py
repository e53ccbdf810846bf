"""Runtime bootstrap and dependency container."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from agentflow.config.models import AgentFlowConfig
from agentflow.db import ConfigurationError, create_engine, create_session_factory
from agentflow.runtime.backoff import BackoffPolicy
from agentflow.runtime.dispatcher import WebhookDispatcher
from agentflow.runtime.feedback import FeedbackMonitor, FeedbackPolicy
from agentflow.runtime.ledger import ExecutionLedger, InMemoryExecutionLedger, SqlExecutionLedger
from agentflow.runtime.persistence.repositories import (
    AgentDirectory,
    CredentialRepository,
    InMemoryAgentDirectory,
    InMemoryCredentialRepository,
    SqlAgentDirectory,
    SqlCredentialRepository,
)
from agentflow.runtime.rate_limit import RateLimitPolicy, RateLimiter
from agentflow.runtime.scheduler import InMemoryScheduleStore, Poller, ScheduleStore, SqlScheduleStore
from agentflow.runtime.service import RuntimeService
from agentflow.runtime.store import InMemoryJobStore, JobStore, ReclaimPolicy, SqlJobStore
from agentflow.runtime.types import utc_now
from agentflow.runtime.vault import CredentialVault, generate_key
from agentflow.runtime.worker import Worker, WorkerPool, WorkerSettings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentFlowRuntime:
    """Assemble runtime services and expose lifecycle methods."""

    config: AgentFlowConfig
    store: JobStore
    agents: AgentDirectory
    credentials: CredentialRepository
    vault: CredentialVault
    ledger: ExecutionLedger
    schedules: ScheduleStore
    dispatcher: WebhookDispatcher
    service: RuntimeService
    pool: WorkerPool
    poller: Poller
    engine: AsyncEngine | None = None
    started: bool = False
    _tasks: list[asyncio.Task[Any]] = field(default_factory=list)

    async def start(self) -> None:
        """Launch the pool and poller as background tasks; each worker registers itself."""
        if self.started:
            return
        self._tasks = [
            asyncio.create_task(self.pool.run(), name="agentflow-workers"),
            asyncio.create_task(self.poller.run(), name="agentflow-poller"),
        ]
        self.started = True
        logger.info("AgentFlow runtime started workers=%d", len(self.pool.workers))

    async def stop(self) -> None:
        """Signal stop, wait for in-flight dispatches to drain, then release connections."""
        if self.started:
            self.poller.stop()
            self.pool.stop()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []
            self.started = False
            logger.info("AgentFlow runtime stopped")
        await self.aclose()

    async def aclose(self) -> None:
        """Dispose pooled database connections; the engine reconnects on next use."""
        if self.engine is not None:
            await self.engine.dispose()

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.stop()

    def build_http_app(self, *, run_workers: bool = True) -> Any:
        from agentflow.http.app import create_app

        return create_app(self.service, runtime=self, run_workers=run_workers)


def _vault_key(config: AgentFlowConfig, *, persistent: bool) -> str:
    key = config.vault.encryption_key.strip()
    if key:
        return key
    if persistent:
        raise ConfigurationError(
            "vault.encryption_key is required with a database; set AGENTFLOW_VAULT__ENCRYPTION_KEY"
        )
    logger.warning("No vault.encryption_key configured; using an ephemeral key for in-memory stores")
    return generate_key()


def build_runtime(
    config: AgentFlowConfig,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> AgentFlowRuntime:
    """Factory for the runtime; in-memory stores when no database URL is configured."""
    reclaim = ReclaimPolicy(
        stale_after_seconds=config.worker.stale_after_seconds,
        grace_seconds=config.worker.reclaim_grace_seconds,
        max_running_seconds=config.dispatcher.max_timeout_seconds,
    )
    persistent = session_factory is not None or bool(config.database.url)
    vault_key = _vault_key(config, persistent=persistent)
    engine: AsyncEngine | None = None
    if session_factory is None and config.database.url:
        engine = create_engine(
            config.database.url,
            pool_size=config.database.pool_size,
            max_overflow=config.database.max_overflow,
            echo=config.database.echo,
        )
        session_factory = create_session_factory(engine)

    store: JobStore
    agents: AgentDirectory
    credentials: CredentialRepository
    ledger: ExecutionLedger
    schedules: ScheduleStore
    if session_factory is not None:
        store = SqlJobStore(session_factory, reclaim_policy=reclaim, clock=clock)
        agents = SqlAgentDirectory(session_factory)
        credentials = SqlCredentialRepository(session_factory)
        ledger = SqlExecutionLedger(session_factory)
        schedules = SqlScheduleStore(session_factory)
    else:
        store = InMemoryJobStore(reclaim_policy=reclaim, clock=clock)
        agents = InMemoryAgentDirectory()
        credentials = InMemoryCredentialRepository()
        ledger = InMemoryExecutionLedger()
        schedules = InMemoryScheduleStore()

    vault = CredentialVault(credentials, vault_key, clock=clock)
    dispatcher = WebhookDispatcher(
        default_timeout_seconds=config.dispatcher.default_timeout_seconds,
        max_timeout_seconds=config.dispatcher.max_timeout_seconds,
        user_agent=config.dispatcher.user_agent,
        transport=transport,
    )
    rate_limiter = None
    if config.rate_limit.enabled:
        rate_limiter = RateLimiter(
            store,
            RateLimitPolicy(
                enabled=True,
                window_seconds=config.rate_limit.window_seconds,
                max_requests=config.rate_limit.max_requests,
            ),
            clock=clock,
        )
    feedback = FeedbackMonitor(
        store,
        ledger,
        agents,
        FeedbackPolicy(
            window=config.feedback.window,
            threshold=config.feedback.threshold,
            auto_disable=config.feedback.auto_disable,
        ),
    )
    service = RuntimeService(
        store=store,
        agents=agents,
        vault=vault,
        ledger=ledger,
        schedules=schedules,
        feedback=feedback,
        rate_limiter=rate_limiter,
        default_max_retries=config.retry.default_max_retries,
        stale_after_seconds=config.worker.stale_after_seconds,
        schedule_batch_size=config.scheduler.batch_size,
        clock=clock,
    )
    backoff = BackoffPolicy(
        base_delay_seconds=config.retry.base_delay_seconds,
        max_delay_seconds=config.retry.max_delay_seconds,
    )
    settings = WorkerSettings(
        capacity=config.worker.capacity,
        poll_interval_seconds=config.worker.poll_interval_seconds,
        heartbeat_interval_seconds=config.worker.heartbeat_interval_seconds,
        capabilities=frozenset(config.worker.capabilities) if config.worker.capabilities is not None else None,
    )
    pool = WorkerPool.build(
        config.worker.count,
        lambda: Worker(
            store=store,
            agents=agents,
            vault=vault,
            dispatcher=dispatcher,
            ledger=ledger,
            backoff=backoff,
            settings=settings,
            clock=clock,
        ),
    )
    poller = Poller(
        wake=pool.wake,
        schedules=service.schedules,
        interval_seconds=config.scheduler.poll_interval_seconds,
    )
    return AgentFlowRuntime(
        config=config,
        store=store,
        agents=agents,
        credentials=credentials,
        vault=vault,
        ledger=ledger,
        schedules=schedules,
        dispatcher=dispatcher,
        service=service,
        pool=pool,
        poller=poller,
        engine=engine,
    )
