"""Job store: the durable backlog and the worker table.

The claim statement is the only concurrency control point of the runtime.
Every mutation is a single conditional update on the job's current status,
so two workers can never hold the same job.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Protocol
from uuid import UUID, uuid4

from sqlalchemy import ColumnElement, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentflow.runtime.errors import (
    AlreadyTerminalError,
    ConcurrencyViolation,
    JobNotFoundError,
    ValidationError,
)
from agentflow.runtime.persistence.models import JobModel, WorkerModel
from agentflow.runtime.types import (
    ACTIVE_STATUSES,
    Job,
    JobFilter,
    Resolution,
    WorkerState,
    WorkerStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

RECLAIM_ERROR = "worker heartbeat lost"
OVERDUE_ERROR = "job exceeded maximum running time"
_RESOLUTION_STATUSES = frozenset({"pending", "completed", "failed", "timeout"})
_FEEDBACK_STATUSES = ("completed", "failed", "timeout")


@dataclass(slots=True)
class ReclaimPolicy:
    """When a running job counts as abandoned.

    A job is abandoned when its worker stopped heartbeating, or, with
    ``max_running_seconds`` set, when it has been running longer than that
    plus the grace period whatever its worker's state.
    """

    stale_after_seconds: float = 60.0
    grace_seconds: float = 60.0
    max_running_seconds: float | None = None

    def overdue_before(self, now: datetime) -> datetime | None:
        if self.max_running_seconds is None:
            return None
        return now - timedelta(seconds=self.max_running_seconds + self.grace_seconds)


class JobStore(Protocol):
    """Durable backlog contract shared by the SQL and in-memory stores."""

    async def enqueue(self, job: Job) -> str: ...

    async def get(self, job_id: str) -> Job | None: ...

    async def list_jobs(self, filters: JobFilter) -> list[Job]: ...

    async def claim_next(
        self,
        worker_id: str,
        capacity: int,
        capabilities: Iterable[str] | None = None,
        *,
        reclaim: bool = True,
    ) -> list[Job]: ...

    async def reclaim_stale(self) -> list[Job]: ...

    async def finalize(self, job_id: str, worker_id: str, resolution: Resolution) -> Job: ...

    async def cancel(self, job_id: str, reason: str | None = None) -> Job: ...

    async def recent_activity(
        self, user_id: str, agent_id: str, since: datetime, *, tenant_id: str = "default"
    ) -> tuple[int, datetime | None]: ...

    async def recent_terminal(self, agent_id: str, limit: int) -> list[Job]: ...

    async def count_by_status(self) -> dict[str, int]: ...

    async def register_worker(self, state: WorkerState) -> None: ...

    async def heartbeat(self, worker_id: str, active_jobs: int, status: WorkerStatus = "idle") -> None: ...

    async def mark_offline(self, worker_id: str) -> None: ...

    async def list_workers(self) -> list[WorkerState]: ...


def validate_new_job(job: Job) -> None:
    """Reject malformed jobs before they reach the backlog."""
    if not isinstance(job.agent_id, str) or not job.agent_id.strip():
        raise ValidationError("agent_id must be a non-empty string")
    if not isinstance(job.user_id, str) or not job.user_id.strip():
        raise ValidationError("user_id must be a non-empty string")
    if isinstance(job.max_retries, bool) or not isinstance(job.max_retries, int) or job.max_retries < 0:
        raise ValidationError("max_retries must be a non-negative integer")
    if isinstance(job.priority, bool) or not isinstance(job.priority, int):
        raise ValidationError("priority must be an integer")
    if not isinstance(job.payload, dict):
        raise ValidationError("payload must be a JSON object")
    if job.scheduled_at.tzinfo is None:
        raise ValidationError("scheduled_at must be timezone-aware")


def _check_resolution(resolution: Resolution) -> None:
    if resolution.status not in _RESOLUTION_STATUSES:
        raise ValueError(f"cannot finalize a job into status '{resolution.status}'")


def _parse_job_id(job_id: str) -> UUID | None:
    try:
        return UUID(str(job_id))
    except ValueError:
        return None


def _job_from_model(model: JobModel) -> Job:
    return Job(
        id=str(model.id),
        tenant_id=model.tenant_id,
        agent_id=model.agent_id,
        user_id=model.user_id,
        status=model.status,  # type: ignore[arg-type]
        priority=model.priority,
        scheduled_at=model.scheduled_at,
        payload=dict(model.payload or {}),
        retry_count=model.retry_count,
        max_retries=model.max_retries,
        last_error=model.last_error,
        created_at=model.created_at,
        started_at=model.started_at,
        completed_at=model.completed_at,
        worker_id=model.worker_id,
        result=model.result,
        duration_ms=model.duration_ms,
        required_providers=list(model.required_providers or []),
        source=model.source,  # type: ignore[arg-type]
        schedule_id=str(model.schedule_id) if model.schedule_id is not None else None,
        cancel_reason=model.cancel_reason,
    )


def _claim_order(job: Job) -> tuple[int, datetime]:
    return (-job.priority, job.created_at)


def _worker_from_model(model: WorkerModel) -> WorkerState:
    return WorkerState(
        worker_id=model.worker_id,
        status=model.status,  # type: ignore[arg-type]
        capacity=model.capacity,
        active_jobs=model.active_jobs,
        capabilities=frozenset(model.capabilities) if model.capabilities is not None else None,
        last_heartbeat=model.last_heartbeat,
        started_at=model.started_at,
    )


class SqlJobStore:
    """PostgreSQL job store built on conditional UPDATE ... RETURNING."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        reclaim_policy: ReclaimPolicy | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._reclaim_policy = reclaim_policy or ReclaimPolicy()
        self._clock = clock

    async def enqueue(self, job: Job) -> str:
        validate_new_job(job)
        job_id = _parse_job_id(job.id) if job.id else uuid4()
        if job_id is None:
            raise ValidationError("job id must be a UUID")
        model = JobModel(
            id=job_id,
            tenant_id=job.tenant_id,
            agent_id=job.agent_id,
            user_id=job.user_id,
            status="pending",
            priority=job.priority,
            scheduled_at=job.scheduled_at,
            payload=job.payload,
            retry_count=0,
            max_retries=job.max_retries,
            required_providers=sorted(job.required_providers),
            source=job.source,
            schedule_id=_parse_job_id(job.schedule_id) if job.schedule_id else None,
            created_at=job.created_at,
        )
        async with self._session_factory() as session:
            session.add(model)
            await session.commit()
        return str(job_id)

    async def get(self, job_id: str) -> Job | None:
        parsed = _parse_job_id(job_id)
        if parsed is None:
            return None
        async with self._session_factory() as session:
            model = await session.get(JobModel, parsed)
            return _job_from_model(model) if model is not None else None

    async def list_jobs(self, filters: JobFilter) -> list[Job]:
        stmt = select(JobModel)
        if filters.tenant_id is not None:
            stmt = stmt.where(JobModel.tenant_id == filters.tenant_id)
        if filters.status is not None:
            stmt = stmt.where(JobModel.status == filters.status)
        if filters.agent_id is not None:
            stmt = stmt.where(JobModel.agent_id == filters.agent_id)
        if filters.user_id is not None:
            stmt = stmt.where(JobModel.user_id == filters.user_id)
        stmt = stmt.order_by(JobModel.created_at.desc()).offset(max(0, filters.offset)).limit(max(1, filters.limit))
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_job_from_model(model) for model in result.scalars().all()]

    async def claim_next(
        self,
        worker_id: str,
        capacity: int,
        capabilities: Iterable[str] | None = None,
        *,
        reclaim: bool = True,
    ) -> list[Job]:
        if capacity <= 0:
            return []
        now = self._clock()
        eligible = select(JobModel.id).where(JobModel.status == "pending", JobModel.scheduled_at <= now)
        if capabilities is not None:
            eligible = eligible.where(JobModel.required_providers.contained_by(sorted(set(capabilities))))
        eligible = (
            eligible.order_by(JobModel.priority.desc(), JobModel.created_at.asc())
            .limit(capacity)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(JobModel)
            .where(JobModel.id.in_(eligible.scalar_subquery()))
            .values(status="running", worker_id=worker_id, started_at=now)
            .returning(JobModel)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            if reclaim:
                await self._reclaim(session, now)
            result = await session.execute(stmt)
            jobs = [_job_from_model(model) for model in result.scalars().all()]
            await session.commit()
        return sorted(jobs, key=_claim_order)

    async def reclaim_stale(self) -> list[Job]:
        async with self._session_factory() as session:
            reclaimed = await self._reclaim(session, self._clock())
            await session.commit()
        return reclaimed

    async def _reclaim(self, session: AsyncSession, now: datetime) -> list[Job]:
        policy = self._reclaim_policy
        stale_before = now - timedelta(seconds=policy.stale_after_seconds)
        grace_before = now - timedelta(seconds=policy.grace_seconds)
        live_workers = select(WorkerModel.worker_id).where(
            WorkerModel.status != "offline", WorkerModel.last_heartbeat >= stale_before
        )
        abandoned: ColumnElement[bool] = JobModel.worker_id.not_in(live_workers)
        overdue_before = policy.overdue_before(now)
        if overdue_before is not None:
            abandoned = or_(abandoned, JobModel.started_at <= overdue_before)
        stuck: tuple[ColumnElement[bool], ...] = (
            JobModel.status == "running",
            JobModel.started_at <= grace_before,
            abandoned,
        )
        reason = case((JobModel.worker_id.in_(live_workers), OVERDUE_ERROR), else_=RECLAIM_ERROR)
        requeue = (
            update(JobModel)
            .where(*stuck, JobModel.retry_count + 1 < JobModel.max_retries)
            .values(
                status="pending",
                retry_count=JobModel.retry_count + 1,
                worker_id=None,
                scheduled_at=now,
                last_error=reason,
            )
            .returning(JobModel)
            .execution_options(synchronize_session=False)
        )
        expire = (
            update(JobModel)
            .where(*stuck, JobModel.retry_count + 1 >= JobModel.max_retries)
            .values(status="timeout", completed_at=now, last_error=reason)
            .returning(JobModel)
            .execution_options(synchronize_session=False)
        )
        reclaimed: list[Job] = []
        for stmt in (requeue, expire):
            result = await session.execute(stmt)
            reclaimed.extend(_job_from_model(model) for model in result.scalars().all())
        for job in reclaimed:
            logger.warning("Reclaimed job %s (%s); now %s", job.id, job.last_error, job.status)
        return reclaimed

    async def finalize(self, job_id: str, worker_id: str, resolution: Resolution) -> Job:
        _check_resolution(resolution)
        parsed = _parse_job_id(job_id)
        if parsed is None:
            raise JobNotFoundError(job_id)
        now = self._clock()
        values: dict[str, Any] = {"last_error": resolution.last_error, "duration_ms": resolution.duration_ms}
        if resolution.status == "pending":
            values.update(
                status="pending",
                retry_count=JobModel.retry_count + 1,
                scheduled_at=resolution.retry_at or now,
                worker_id=None,
            )
        else:
            values.update(status=resolution.status, completed_at=now, result=resolution.result)
        stmt = (
            update(JobModel)
            .where(JobModel.id == parsed, JobModel.status == "running", JobModel.worker_id == worker_id)
            .values(**values)
            .returning(JobModel)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            model = (await session.execute(stmt)).scalar_one_or_none()
            job = _job_from_model(model) if model is not None else None
            await session.commit()
        if job is None:
            if await self.get(job_id) is None:
                raise JobNotFoundError(job_id)
            raise ConcurrencyViolation(job_id, worker_id)
        return job

    async def cancel(self, job_id: str, reason: str | None = None) -> Job:
        parsed = _parse_job_id(job_id)
        if parsed is None:
            raise JobNotFoundError(job_id)
        stmt = (
            update(JobModel)
            .where(JobModel.id == parsed, JobModel.status.in_(tuple(ACTIVE_STATUSES)))
            .values(status="cancelled", cancel_reason=reason, completed_at=self._clock())
            .returning(JobModel)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            model = (await session.execute(stmt)).scalar_one_or_none()
            job = _job_from_model(model) if model is not None else None
            await session.commit()
        if job is None:
            current = await self.get(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            raise AlreadyTerminalError(job_id, current.status)
        return job

    async def recent_activity(
        self, user_id: str, agent_id: str, since: datetime, *, tenant_id: str = "default"
    ) -> tuple[int, datetime | None]:
        stmt = select(func.count(JobModel.id), func.min(JobModel.created_at)).where(
            JobModel.tenant_id == tenant_id,
            JobModel.user_id == user_id,
            JobModel.agent_id == agent_id,
            JobModel.created_at >= since,
        )
        async with self._session_factory() as session:
            count, oldest = (await session.execute(stmt)).one()
        return int(count or 0), oldest

    async def recent_terminal(self, agent_id: str, limit: int) -> list[Job]:
        stmt = (
            select(JobModel)
            .where(JobModel.agent_id == agent_id, JobModel.status.in_(_FEEDBACK_STATUSES))
            .order_by(JobModel.completed_at.desc())
            .limit(max(1, limit))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_job_from_model(model) for model in result.scalars().all()]

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(JobModel.status, func.count(JobModel.id)).group_by(JobModel.status)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return {str(status): int(count) for status, count in rows}

    async def register_worker(self, state: WorkerState) -> None:
        async with self._session_factory() as session:
            await session.merge(
                WorkerModel(
                    worker_id=state.worker_id,
                    status=state.status,
                    capacity=state.capacity,
                    active_jobs=state.active_jobs,
                    capabilities=sorted(state.capabilities) if state.capabilities is not None else None,
                    last_heartbeat=state.last_heartbeat,
                    started_at=state.started_at,
                )
            )
            await session.commit()

    async def heartbeat(self, worker_id: str, active_jobs: int, status: WorkerStatus = "idle") -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(WorkerModel)
                .where(WorkerModel.worker_id == worker_id)
                .values(last_heartbeat=self._clock(), active_jobs=active_jobs, status=status)
            )
            await session.commit()
        if not result.rowcount:
            logger.warning("Heartbeat for unregistered worker %s ignored", worker_id)

    async def mark_offline(self, worker_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(WorkerModel)
                .where(WorkerModel.worker_id == worker_id)
                .values(status="offline", active_jobs=0)
            )
            await session.commit()

    async def list_workers(self) -> list[WorkerState]:
        async with self._session_factory() as session:
            result = await session.execute(select(WorkerModel).order_by(WorkerModel.started_at.asc()))
            return [_worker_from_model(model) for model in result.scalars().all()]


def _copy_job(job: Job) -> Job:
    return replace(
        job,
        payload=dict(job.payload),
        required_providers=list(job.required_providers),
        result=dict(job.result) if isinstance(job.result, dict) else job.result,
    )


class InMemoryJobStore:
    """In-memory job store for tests and single-process runs.

    Each operation runs entirely under one lock and never awaits while
    holding it, which gives the same all-or-nothing transitions as the
    conditional updates of the SQL store.
    """

    def __init__(self, *, reclaim_policy: ReclaimPolicy | None = None, clock: Clock = utc_now) -> None:
        self._jobs: dict[str, Job] = {}
        self._sequence: dict[str, int] = {}
        self._counter = itertools.count()
        self._workers: dict[str, WorkerState] = {}
        self._lock = threading.Lock()
        self._reclaim_policy = reclaim_policy or ReclaimPolicy()
        self._clock = clock

    async def enqueue(self, job: Job) -> str:
        validate_new_job(job)
        job_id = job.id or str(uuid4())
        stored = replace(
            _copy_job(job),
            id=job_id,
            status="pending",
            retry_count=0,
            started_at=None,
            completed_at=None,
            worker_id=None,
            required_providers=sorted(job.required_providers),
        )
        with self._lock:
            if job_id in self._jobs:
                raise ValidationError(f"job id already exists: {job_id}")
            self._jobs[job_id] = stored
            self._sequence[job_id] = next(self._counter)
        return job_id

    async def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return _copy_job(job) if job is not None else None

    async def list_jobs(self, filters: JobFilter) -> list[Job]:
        items = list(self._jobs.values())
        if filters.tenant_id is not None:
            items = [item for item in items if item.tenant_id == filters.tenant_id]
        if filters.status is not None:
            items = [item for item in items if item.status == filters.status]
        if filters.agent_id is not None:
            items = [item for item in items if item.agent_id == filters.agent_id]
        if filters.user_id is not None:
            items = [item for item in items if item.user_id == filters.user_id]
        items.sort(key=lambda item: self._sequence[item.id], reverse=True)
        start = max(0, filters.offset)
        return [_copy_job(item) for item in items[start : start + max(1, filters.limit)]]

    async def claim_next(
        self,
        worker_id: str,
        capacity: int,
        capabilities: Iterable[str] | None = None,
        *,
        reclaim: bool = True,
    ) -> list[Job]:
        if capacity <= 0:
            return []
        allowed = set(capabilities) if capabilities is not None else None
        with self._lock:
            now = self._clock()
            if reclaim:
                self._reclaim_locked(now)
            eligible = [
                job
                for job in self._jobs.values()
                if job.status == "pending"
                and job.scheduled_at <= now
                and (allowed is None or set(job.required_providers) <= allowed)
            ]
            eligible.sort(key=lambda job: (-job.priority, job.created_at, self._sequence[job.id]))
            claimed: list[Job] = []
            for job in eligible[:capacity]:
                job.status = "running"
                job.worker_id = worker_id
                job.started_at = now
                claimed.append(_copy_job(job))
        return claimed

    async def reclaim_stale(self) -> list[Job]:
        with self._lock:
            return self._reclaim_locked(self._clock())

    def _reclaim_locked(self, now: datetime) -> list[Job]:
        policy = self._reclaim_policy
        stale_before = now - timedelta(seconds=policy.stale_after_seconds)
        grace_before = now - timedelta(seconds=policy.grace_seconds)
        live = {
            worker.worker_id
            for worker in self._workers.values()
            if worker.status != "offline" and worker.last_heartbeat >= stale_before
        }
        overdue_before = policy.overdue_before(now)
        reclaimed: list[Job] = []
        for job in self._jobs.values():
            if job.status != "running" or job.started_at is None or job.started_at > grace_before:
                continue
            if job.worker_id in live:
                if overdue_before is None or job.started_at > overdue_before:
                    continue
                job.last_error = OVERDUE_ERROR
            else:
                job.last_error = RECLAIM_ERROR
            if job.retry_count + 1 < job.max_retries:
                job.status = "pending"
                job.retry_count += 1
                job.worker_id = None
                job.scheduled_at = now
            else:
                job.status = "timeout"
                job.completed_at = now
            logger.warning("Reclaimed job %s (%s); now %s", job.id, job.last_error, job.status)
            reclaimed.append(_copy_job(job))
        return reclaimed

    async def finalize(self, job_id: str, worker_id: str, resolution: Resolution) -> Job:
        _check_resolution(resolution)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status != "running" or job.worker_id != worker_id:
                raise ConcurrencyViolation(job_id, worker_id)
            now = self._clock()
            job.last_error = resolution.last_error
            job.duration_ms = resolution.duration_ms
            if resolution.status == "pending":
                job.status = "pending"
                job.retry_count += 1
                job.scheduled_at = resolution.retry_at or now
                job.worker_id = None
            else:
                job.status = resolution.status
                job.completed_at = now
                job.result = resolution.result
            return _copy_job(job)

    async def cancel(self, job_id: str, reason: str | None = None) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status not in ACTIVE_STATUSES:
                raise AlreadyTerminalError(job_id, job.status)
            job.status = "cancelled"
            job.cancel_reason = reason
            job.completed_at = self._clock()
            return _copy_job(job)

    async def recent_activity(
        self, user_id: str, agent_id: str, since: datetime, *, tenant_id: str = "default"
    ) -> tuple[int, datetime | None]:
        created = [
            job.created_at
            for job in self._jobs.values()
            if job.tenant_id == tenant_id
            and job.user_id == user_id
            and job.agent_id == agent_id
            and job.created_at >= since
        ]
        return len(created), min(created) if created else None

    async def recent_terminal(self, agent_id: str, limit: int) -> list[Job]:
        items = [
            job for job in self._jobs.values() if job.agent_id == agent_id and job.status in _FEEDBACK_STATUSES
        ]
        items.sort(key=lambda job: (job.completed_at or job.created_at, self._sequence[job.id]), reverse=True)
        return [_copy_job(job) for job in items[: max(1, limit)]]

    async def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for job in self._jobs.values():
            counts[job.status] = counts.get(job.status, 0) + 1
        return counts

    async def register_worker(self, state: WorkerState) -> None:
        with self._lock:
            self._workers[state.worker_id] = replace(state)

    async def heartbeat(self, worker_id: str, active_jobs: int, status: WorkerStatus = "idle") -> None:
        with self._lock:
            state = self._workers.get(worker_id)
            if state is None:
                logger.warning("Heartbeat for unregistered worker %s ignored", worker_id)
                return
            self._workers[worker_id] = replace(
                state, last_heartbeat=self._clock(), active_jobs=active_jobs, status=status
            )

    async def mark_offline(self, worker_id: str) -> None:
        with self._lock:
            state = self._workers.get(worker_id)
            if state is not None:
                self._workers[worker_id] = replace(state, status="offline", active_jobs=0)

    async def list_workers(self) -> list[WorkerState]:
        return sorted((replace(state) for state in self._workers.values()), key=lambda state: state.started_at)
