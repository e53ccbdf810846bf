"""Runtime service: the single core behind the HTTP API and the CLI."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from agentflow.runtime.errors import (
    AgentInactiveError,
    AgentNotFoundError,
    JobNotFoundError,
    MissingCredentialsError,
    ValidationError,
)
from agentflow.runtime.feedback import FeedbackEvaluation, FeedbackMonitor
from agentflow.runtime.ledger import ExecutionLedger
from agentflow.runtime.persistence.repositories import AgentDirectory
from agentflow.runtime.rate_limit import RateLimiter
from agentflow.runtime.scheduler import ScheduleManager, ScheduleStore
from agentflow.runtime.store import JobStore
from agentflow.runtime.types import (
    AgentDescriptor,
    Credential,
    CredentialSummary,
    EnqueueRequest,
    FeedbackVerdict,
    HealthView,
    Job,
    JobFilter,
    JobStatusView,
    LedgerEntry,
    Schedule,
    ScheduleUpdate,
    utc_now,
)
from agentflow.runtime.vault import CredentialVault

logger = logging.getLogger(__name__)


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be a non-empty string")
    return value.strip()


class RuntimeService:
    """Enqueue, status, cancel, schedule and feedback operations."""

    def __init__(
        self,
        *,
        store: JobStore,
        agents: AgentDirectory,
        vault: CredentialVault,
        ledger: ExecutionLedger,
        schedules: ScheduleStore,
        feedback: FeedbackMonitor,
        rate_limiter: RateLimiter | None = None,
        default_max_retries: int = 3,
        stale_after_seconds: float = 60.0,
        schedule_batch_size: int = 100,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._agents = agents
        self._vault = vault
        self._ledger = ledger
        self._feedback = feedback
        self._rate_limiter = rate_limiter
        self._default_max_retries = default_max_retries
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._clock = clock
        self.schedules = ScheduleManager(schedules, self.enqueue, clock=clock, batch_size=schedule_batch_size)

    async def enqueue(self, request: EnqueueRequest) -> str:
        """Validate and insert one job; every rejection is synchronous.

        Raises:
            ValidationError, AgentNotFoundError, AgentInactiveError,
            MissingCredentialsError, RateLimitExceeded.
        """
        agent_id = _require_text(request.agent_id, "agent_id")
        user_id = _require_text(request.user_id, "user_id")
        if not isinstance(request.payload, dict):
            raise ValidationError("payload must be a JSON object")
        max_retries = self._default_max_retries if request.max_retries is None else request.max_retries
        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
            raise ValidationError("max_retries must be a non-negative integer")
        descriptor = await self._agents.get(agent_id)
        if descriptor is None:
            raise AgentNotFoundError(agent_id)
        if not descriptor.is_active:
            raise AgentInactiveError(agent_id, descriptor.disabled_reason)
        missing = await self._vault.missing_for(user_id, descriptor.credentials, tenant_id=request.tenant_id)
        if missing:
            raise MissingCredentialsError(missing)
        if self._rate_limiter is not None:
            await self._rate_limiter.check(user_id, agent_id, tenant_id=request.tenant_id)

        now = self._clock()
        scheduled_at = request.scheduled_at or now
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
        job = Job(
            id=str(uuid4()),
            tenant_id=request.tenant_id,
            agent_id=agent_id,
            user_id=user_id,
            priority=request.priority,
            scheduled_at=scheduled_at,
            payload=dict(request.payload),
            max_retries=max_retries,
            created_at=now,
            required_providers=descriptor.required_providers,
            source=request.source,
            schedule_id=request.schedule_id,
        )
        job_id = await self._store.enqueue(job)
        await self._ledger.append(
            LedgerEntry(
                job_id=job_id,
                tenant_id=job.tenant_id,
                agent_id=agent_id,
                user_id=user_id,
                phase="queued",
                timestamp=now,
                data={
                    "priority": job.priority,
                    "source": job.source,
                    "scheduled_at": scheduled_at.isoformat(),
                    "max_retries": max_retries,
                },
            )
        )
        logger.info(
            "Enqueued job %s agent=%s user=%s priority=%d source=%s",
            job_id,
            agent_id,
            user_id,
            job.priority,
            job.source,
        )
        return job_id

    async def get_job(self, job_id: str) -> Job:
        job = await self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def status(self, job_id: str) -> JobStatusView:
        job = await self.get_job(job_id)
        error: str | None = None
        if job.status in ("failed", "timeout"):
            error = job.last_error
        elif job.status == "cancelled":
            error = f"cancelled: {job.cancel_reason}" if job.cancel_reason else "cancelled"
        return JobStatusView(
            job_id=job.id,
            status=job.status,
            output=job.result if job.status == "completed" else None,
            error=error,
            duration_ms=job.duration_ms,
            retry_count=job.retry_count,
            phases=await self._ledger.history(job.id),
        )

    async def list_jobs(self, filters: JobFilter) -> list[Job]:
        return await self._store.list_jobs(filters)

    async def cancel(self, job_id: str, reason: str | None = None) -> Job:
        """Cancel a pending or running job; running jobs stop cooperatively."""
        job = await self._store.cancel(job_id, reason)
        await self._ledger.append(
            LedgerEntry(
                job_id=job.id,
                tenant_id=job.tenant_id,
                agent_id=job.agent_id,
                user_id=job.user_id,
                phase="cancelled",
                timestamp=self._clock(),
                data={"reason": reason},
            )
        )
        logger.info("Job %s -> cancelled (%s)", job.id, reason or "no reason")
        return job

    async def create_schedule(
        self,
        *,
        agent_id: str,
        user_id: str,
        cron_expression: str,
        timezone_name: str = "UTC",
        name: str = "",
        payload: dict[str, Any] | None = None,
        priority: int = 0,
        max_retries: int | None = None,
        tenant_id: str = "default",
    ) -> Schedule:
        agent_id = _require_text(agent_id, "agent_id")
        user_id = _require_text(user_id, "user_id")
        if await self._agents.get(agent_id) is None:
            raise AgentNotFoundError(agent_id)
        return await self.schedules.create(
            Schedule(
                id="",
                tenant_id=tenant_id,
                agent_id=agent_id,
                user_id=user_id,
                name=name,
                cron_expression=_require_text(cron_expression, "cron_expression"),
                timezone=timezone_name or "UTC",
                payload=dict(payload or {}),
                priority=priority,
                max_retries=max_retries,
            )
        )

    async def update_schedule(self, schedule_id: str, changes: ScheduleUpdate) -> Schedule:
        return await self.schedules.update(schedule_id, changes)

    async def get_schedule(self, schedule_id: str) -> Schedule:
        return await self.schedules.get(schedule_id)

    async def record_feedback(
        self,
        job_id: str,
        user_id: str,
        verdict: FeedbackVerdict,
        comment: str | None = None,
    ) -> FeedbackEvaluation:
        return await self._feedback.record_feedback(job_id, user_id, verdict, comment)

    async def register_agent(self, descriptor: AgentDescriptor) -> AgentDescriptor:
        _require_text(descriptor.agent_id, "agent_id")
        _require_text(descriptor.webhook_url, "webhook_url")
        if not descriptor.webhook_url.startswith(("http://", "https://")):
            raise ValidationError("webhook_url must be an http(s) URL")
        return await self._agents.save(replace(descriptor, credentials=list(descriptor.credentials)))

    async def store_credential(
        self,
        user_id: str,
        provider: str,
        plaintext: str,
        *,
        expires_at: datetime | None = None,
        tenant_id: str = "default",
    ) -> Credential:
        return await self._vault.store(
            _require_text(user_id, "user_id"),
            _require_text(provider, "provider"),
            plaintext,
            expires_at=expires_at,
            tenant_id=tenant_id,
        )

    async def list_credentials(self, user_id: str, *, tenant_id: str = "default") -> list[CredentialSummary]:
        return await self._vault.list_for(_require_text(user_id, "user_id"), tenant_id=tenant_id)

    async def revoke_credential(self, user_id: str, provider: str, *, tenant_id: str = "default") -> None:
        await self._vault.revoke(
            _require_text(user_id, "user_id"),
            _require_text(provider, "provider"),
            tenant_id=tenant_id,
        )

    async def health(self) -> HealthView:
        now = self._clock()
        workers = await self._store.list_workers()
        live = [w for w in workers if w.status != "offline" and now - w.last_heartbeat <= self._stale_after]
        counts = await self._store.count_by_status()
        return HealthView(
            workers=workers,
            live_workers=len(live),
            pending=counts.get("pending", 0),
            running=counts.get("running", 0),
        )
