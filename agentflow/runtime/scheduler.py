"""Scheduler/poller: wakes workers and promotes due cron schedules into jobs."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter  # type: ignore[import-untyped]
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentflow.runtime.errors import AgentFlowError, ScheduleNotFoundError, ValidationError
from agentflow.runtime.persistence.models import ScheduleModel
from agentflow.runtime.types import EnqueueRequest, Schedule, ScheduleUpdate, utc_now

logger = logging.getLogger(__name__)

EnqueueFn = Callable[[EnqueueRequest], Awaitable[str]]


def validate_cron(cron_expression: str, timezone_name: str) -> None:
    if not isinstance(cron_expression, str) or not croniter.is_valid(cron_expression.strip()):
        raise ValidationError(f"invalid cron expression: {cron_expression!r}")
    try:
        ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"unknown timezone: {timezone_name!r}") from None


def compute_next_run(cron_expression: str, timezone_name: str, after: datetime) -> datetime:
    """Next fire time strictly after ``after``, evaluated in the schedule's timezone, returned in UTC."""
    validate_cron(cron_expression, timezone_name)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    local = after.astimezone(ZoneInfo(timezone_name))
    next_local = croniter(cron_expression.strip(), local).get_next(datetime)
    return next_local.astimezone(timezone.utc)


class ScheduleStore(Protocol):
    async def create(self, schedule: Schedule) -> Schedule: ...

    async def get(self, schedule_id: str) -> Schedule | None: ...

    async def save(self, schedule: Schedule) -> Schedule: ...

    async def due(self, now: datetime, limit: int = 100) -> list[Schedule]: ...

    async def advance(
        self, schedule_id: str, expected_next_run: datetime | None, next_run: datetime, fired_at: datetime
    ) -> bool: ...


def _schedule_from_model(model: ScheduleModel) -> Schedule:
    return Schedule(
        id=str(model.id),
        tenant_id=model.tenant_id,
        agent_id=model.agent_id,
        user_id=model.user_id,
        name=model.name,
        cron_expression=model.cron_expression,
        timezone=model.timezone,
        payload=dict(model.payload or {}),
        priority=model.priority,
        max_retries=model.max_retries,
        is_active=model.is_active,
        next_run=model.next_run,
        last_run=model.last_run,
        run_count=model.run_count,
    )


def _parse_schedule_id(schedule_id: str) -> UUID | None:
    try:
        return UUID(str(schedule_id))
    except ValueError:
        return None


class SqlScheduleStore:
    """Schedules stored in runtime_schedules; advance is a compare-and-set on next_run."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, schedule: Schedule) -> Schedule:
        model = ScheduleModel(
            id=_parse_schedule_id(schedule.id) or uuid4(),
            tenant_id=schedule.tenant_id,
            agent_id=schedule.agent_id,
            user_id=schedule.user_id,
            name=schedule.name,
            cron_expression=schedule.cron_expression,
            timezone=schedule.timezone,
            payload=schedule.payload,
            priority=schedule.priority,
            max_retries=schedule.max_retries,
            is_active=schedule.is_active,
            next_run=schedule.next_run,
            last_run=schedule.last_run,
            run_count=schedule.run_count,
        )
        async with self._session_factory() as session:
            session.add(model)
            await session.flush()
            await session.refresh(model)
            created = _schedule_from_model(model)
            await session.commit()
        return created

    async def get(self, schedule_id: str) -> Schedule | None:
        parsed = _parse_schedule_id(schedule_id)
        if parsed is None:
            return None
        async with self._session_factory() as session:
            model = await session.get(ScheduleModel, parsed)
            return _schedule_from_model(model) if model is not None else None

    async def save(self, schedule: Schedule) -> Schedule:
        parsed = _parse_schedule_id(schedule.id)
        async with self._session_factory() as session:
            model = await session.get(ScheduleModel, parsed) if parsed is not None else None
            if model is None:
                raise ScheduleNotFoundError(schedule.id)
            model.name = schedule.name
            model.cron_expression = schedule.cron_expression
            model.timezone = schedule.timezone
            model.payload = schedule.payload
            model.priority = schedule.priority
            model.max_retries = schedule.max_retries
            model.is_active = schedule.is_active
            model.next_run = schedule.next_run
            await session.flush()
            await session.refresh(model)
            saved = _schedule_from_model(model)
            await session.commit()
        return saved

    async def due(self, now: datetime, limit: int = 100) -> list[Schedule]:
        stmt = (
            select(ScheduleModel)
            .where(ScheduleModel.is_active.is_(True), ScheduleModel.next_run <= now)
            .order_by(ScheduleModel.next_run.asc())
            .limit(max(1, limit))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_schedule_from_model(model) for model in result.scalars().all()]

    async def advance(
        self, schedule_id: str, expected_next_run: datetime | None, next_run: datetime, fired_at: datetime
    ) -> bool:
        parsed = _parse_schedule_id(schedule_id)
        if parsed is None:
            return False
        stmt = update(ScheduleModel).where(ScheduleModel.id == parsed)
        if expected_next_run is None:
            stmt = stmt.where(ScheduleModel.next_run.is_(None))
        else:
            stmt = stmt.where(ScheduleModel.next_run == expected_next_run)
        stmt = stmt.values(next_run=next_run, last_run=fired_at, run_count=ScheduleModel.run_count + 1)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return bool(result.rowcount)


class InMemoryScheduleStore:
    """In-memory schedule store for tests and local runs."""

    def __init__(self) -> None:
        self._items: dict[str, Schedule] = {}
        self._lock = threading.Lock()

    async def create(self, schedule: Schedule) -> Schedule:
        stored = replace(schedule, id=schedule.id or str(uuid4()), payload=dict(schedule.payload))
        with self._lock:
            self._items[stored.id] = stored
        return replace(stored)

    async def get(self, schedule_id: str) -> Schedule | None:
        item = self._items.get(schedule_id)
        return replace(item) if item is not None else None

    async def save(self, schedule: Schedule) -> Schedule:
        with self._lock:
            existing = self._items.get(schedule.id)
            if existing is None:
                raise ScheduleNotFoundError(schedule.id)
            stored = replace(schedule, last_run=existing.last_run, run_count=existing.run_count)
            self._items[schedule.id] = stored
        return replace(stored)

    async def due(self, now: datetime, limit: int = 100) -> list[Schedule]:
        items = [
            item
            for item in self._items.values()
            if item.is_active and item.next_run is not None and item.next_run <= now
        ]
        items.sort(key=lambda item: item.next_run or now)
        return [replace(item) for item in items[: max(1, limit)]]

    async def advance(
        self, schedule_id: str, expected_next_run: datetime | None, next_run: datetime, fired_at: datetime
    ) -> bool:
        with self._lock:
            item = self._items.get(schedule_id)
            if item is None or item.next_run != expected_next_run:
                return False
            self._items[schedule_id] = replace(
                item, next_run=next_run, last_run=fired_at, run_count=item.run_count + 1
            )
            return True


class ScheduleManager:
    """Creates schedules and turns due ones into jobs."""

    def __init__(
        self,
        store: ScheduleStore,
        enqueue: EnqueueFn,
        *,
        clock: Callable[[], datetime] = utc_now,
        batch_size: int = 100,
    ) -> None:
        self._store = store
        self._enqueue = enqueue
        self._clock = clock
        self._batch_size = batch_size

    async def create(self, schedule: Schedule) -> Schedule:
        validate_cron(schedule.cron_expression, schedule.timezone)
        if schedule.max_retries is not None and schedule.max_retries < 0:
            raise ValidationError("max_retries must be a non-negative integer")
        next_run = compute_next_run(schedule.cron_expression, schedule.timezone, self._clock())
        created = await self._store.create(
            replace(schedule, cron_expression=schedule.cron_expression.strip(), next_run=next_run)
        )
        logger.info("Created schedule %s for agent %s next_run=%s", created.id, created.agent_id, next_run.isoformat())
        return created

    async def get(self, schedule_id: str) -> Schedule:
        schedule = await self._store.get(schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(schedule_id)
        return schedule

    async def update(self, schedule_id: str, changes: ScheduleUpdate) -> Schedule:
        current = await self.get(schedule_id)
        updated = replace(
            current,
            cron_expression=(changes.cron_expression or current.cron_expression).strip(),
            timezone=changes.timezone or current.timezone,
            name=changes.name if changes.name is not None else current.name,
            payload=changes.payload if changes.payload is not None else current.payload,
            priority=changes.priority if changes.priority is not None else current.priority,
            max_retries=changes.max_retries if changes.max_retries is not None else current.max_retries,
            is_active=changes.is_active if changes.is_active is not None else current.is_active,
        )
        if updated.max_retries is not None and updated.max_retries < 0:
            raise ValidationError("max_retries must be a non-negative integer")
        validate_cron(updated.cron_expression, updated.timezone)
        timing_changed = (
            updated.cron_expression != current.cron_expression
            or updated.timezone != current.timezone
            or (updated.is_active and not current.is_active)
        )
        if timing_changed or updated.next_run is None:
            updated.next_run = compute_next_run(updated.cron_expression, updated.timezone, self._clock())
        return await self._store.save(updated)

    async def promote_due(self, now: datetime | None = None) -> list[str]:
        """Enqueue one job per due schedule and return the new job ids.

        The schedule is advanced before the job is enqueued; a poller that
        loses the compare-and-set skips the schedule, so concurrent pollers
        never enqueue the same run twice. Missed runs are not replayed.
        """
        now = now or self._clock()
        job_ids: list[str] = []
        for schedule in await self._store.due(now, self._batch_size):
            try:
                next_run = compute_next_run(schedule.cron_expression, schedule.timezone, now)
            except ValidationError as exc:
                logger.warning("Schedule %s has an invalid definition: %s", schedule.id, exc)
                continue
            if not await self._store.advance(schedule.id, schedule.next_run, next_run, now):
                logger.debug("Schedule %s already advanced by another poller", schedule.id)
                continue
            request = EnqueueRequest(
                agent_id=schedule.agent_id,
                user_id=schedule.user_id,
                tenant_id=schedule.tenant_id,
                payload=dict(schedule.payload),
                priority=schedule.priority,
                max_retries=schedule.max_retries,
                source="schedule",
                schedule_id=schedule.id,
            )
            try:
                job_ids.append(await self._enqueue(request))
            except AgentFlowError as exc:
                logger.warning("Schedule %s run skipped: %s", schedule.id, exc)
        return job_ids


class Poller:
    """Time-driven loop owning its own stop token.

    Each tick wakes the worker pool and promotes due schedules.
    """

    def __init__(
        self,
        *,
        wake: Callable[[], None],
        schedules: ScheduleManager | None = None,
        interval_seconds: float = 5.0,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._wake = wake
        self._schedules = schedules
        self._interval_seconds = interval_seconds
        self._stop = asyncio.Event()
        self.ticks = 0

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    async def tick(self) -> list[str]:
        self.ticks += 1
        self._wake()
        if self._schedules is None:
            return []
        try:
            return await self._schedules.promote_due()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Schedule promotion failed")
            return []

    async def run(self) -> None:
        logger.info("Poller started interval=%.1fs", self._interval_seconds)
        while not self._stop.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Poller stopped")
