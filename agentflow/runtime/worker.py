"""Worker pool: claim, dispatch and finalize jobs.

Per-worker state machine::

    idle -> claiming -> dispatching -> finalizing -> idle
    (any) -> stopped

Each worker owns its WorkerState and persists it through the job store's
worker table; nothing is shared between workers except the store.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Literal
from urllib.parse import urlsplit
from uuid import uuid4

from agentflow.runtime.backoff import BackoffPolicy, should_retry
from agentflow.runtime.dispatcher import WebhookDispatcher
from agentflow.runtime.errors import (
    ConcurrencyViolation,
    CredentialCorruptError,
    MissingCredentialsError,
)
from agentflow.runtime.ledger import ExecutionLedger
from agentflow.runtime.persistence.repositories import AgentDirectory
from agentflow.runtime.store import JobStore
from agentflow.runtime.types import (
    HTTPFailure,
    Job,
    LedgerEntry,
    LedgerPhase,
    NetworkFailure,
    Outcome,
    Resolution,
    Success,
    TimeoutFailure,
    WorkerState,
    utc_now,
)
from agentflow.runtime.vault import CredentialVault

logger = logging.getLogger(__name__)

WorkerPhase = Literal["idle", "claiming", "dispatching", "finalizing", "stopped"]


def new_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


@dataclass(slots=True)
class WorkerSettings:
    capacity: int = 5
    poll_interval_seconds: float = 5.0
    heartbeat_interval_seconds: float = 15.0
    capabilities: frozenset[str] | None = None

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError("capacity must be >= 1")
        if self.poll_interval_seconds <= 0 or self.heartbeat_interval_seconds <= 0:
            raise ValueError("intervals must be positive")


def _response_size(body: Any) -> int:
    try:
        return len(json.dumps(body, default=str))
    except (TypeError, ValueError):
        return 0


class Worker:
    """One worker instance with bounded in-flight dispatches."""

    def __init__(
        self,
        *,
        store: JobStore,
        agents: AgentDirectory,
        vault: CredentialVault,
        dispatcher: WebhookDispatcher,
        ledger: ExecutionLedger,
        backoff: BackoffPolicy | None = None,
        settings: WorkerSettings | None = None,
        worker_id: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._agents = agents
        self._vault = vault
        self._dispatcher = dispatcher
        self._ledger = ledger
        self._backoff = backoff or BackoffPolicy()
        self._settings = settings or WorkerSettings()
        self._clock = clock
        now = clock()
        self.state = WorkerState(
            worker_id=worker_id or new_worker_id(),
            capacity=self._settings.capacity,
            capabilities=self._settings.capabilities,
            last_heartbeat=now,
            started_at=now,
        )
        self.phase: WorkerPhase = "idle"
        self._semaphore = asyncio.Semaphore(self._settings.capacity)
        self._in_flight: set[asyncio.Task[None]] = set()
        self._wake = asyncio.Event()
        self._stop = asyncio.Event()

    @property
    def worker_id(self) -> str:
        return self.state.worker_id

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def wake(self) -> None:
        self._wake.set()

    def stop(self) -> None:
        self._stop.set()
        self._wake.set()

    async def register(self) -> None:
        await self._store.register_worker(self.state)
        logger.info(
            "Worker %s registered capacity=%d capabilities=%s",
            self.worker_id,
            self.state.capacity,
            sorted(self.state.capabilities) if self.state.capabilities is not None else "any",
        )

    async def heartbeat(self) -> None:
        self._sync_state()
        self.state.last_heartbeat = self._clock()
        await self._store.heartbeat(self.worker_id, self.state.active_jobs, self.state.status)

    async def run(self) -> None:
        """Loop until stop(): claim on every wake-up or poll interval."""
        await self.register()
        heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        try:
            while not self._stop.is_set():
                try:
                    await self._claim_and_spawn()
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Worker %s claim cycle failed", self.worker_id)
                await self._wait_for_wake()
            if self._in_flight:
                await asyncio.gather(*self._in_flight, return_exceptions=True)
        except asyncio.CancelledError:
            in_flight = list(self._in_flight)
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            raise
        finally:
            heartbeat_task.cancel()
            await asyncio.gather(heartbeat_task, return_exceptions=True)
            self.phase = "stopped"
            self.state.status = "offline"
            self.state.active_jobs = 0
            await self._store.mark_offline(self.worker_id)
            logger.info("Worker %s stopped", self.worker_id)

    async def run_once(self) -> list[Job]:
        """Run one claim cycle and wait for every claimed job to be finalized."""
        claimed = await self._claim_and_spawn()
        tasks = [task for _, task in claimed]
        if tasks:
            await asyncio.gather(*tasks)
        return [job for job, _ in claimed]

    async def _wait_for_wake(self) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self._settings.poll_interval_seconds)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    async def _heartbeat_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._settings.heartbeat_interval_seconds)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                return
            try:
                await self.heartbeat()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Worker %s heartbeat failed", self.worker_id)

    def _sync_state(self) -> None:
        self.state.active_jobs = len(self._in_flight)
        self.state.status = "busy" if self._in_flight else "idle"
        if not self._in_flight and self.phase in ("dispatching", "finalizing"):
            self.phase = "idle"

    async def _claim_and_spawn(self) -> list[tuple[Job, asyncio.Task[None]]]:
        free = self._settings.capacity - len(self._in_flight)
        if free <= 0 or self._stop.is_set():
            return []
        self.phase = "claiming"
        try:
            for job in await self._store.reclaim_stale():
                phase: LedgerPhase = "retry" if job.status == "pending" else "timeout"
                await self._record(job, phase, {"error": job.last_error, "reclaimed_by": self.worker_id})
            jobs = await self._store.claim_next(
                self.worker_id, free, self._settings.capabilities, reclaim=False
            )
        finally:
            self.phase = "dispatching" if self._in_flight else "idle"
        claimed: list[tuple[Job, asyncio.Task[None]]] = []
        for job in jobs:
            logger.info("Job %s pending -> running (worker %s)", job.id, self.worker_id)
            task = asyncio.create_task(self._process(job))
            self._in_flight.add(task)
            task.add_done_callback(self._on_task_done)
            claimed.append((job, task))
        if claimed:
            self.phase = "dispatching"
        self._sync_state()
        return claimed

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._in_flight.discard(task)
        self._sync_state()
        if not self._stop.is_set():
            self._wake.set()

    async def _process(self, job: Job) -> None:
        async with self._semaphore:
            try:
                await self._execute(job)
            except asyncio.CancelledError:
                raise
            except ConcurrencyViolation as exc:
                logger.warning("Dropped finalize for job %s: %s", job.id, exc)
            except Exception as exc:
                logger.exception("Worker %s failed processing job %s", self.worker_id, job.id)
                await self._fail_unexpected(job, exc)

    async def _fail_unexpected(self, job: Job, exc: Exception) -> None:
        """Finalize a job whose processing raised; if that fails too, reclaim takes over."""
        try:
            await self._failure(
                job,
                f"internal error: {type(exc).__name__}",
                timed_out=False,
                duration_ms=None,
                data={"reason": "internal_error"},
            )
        except asyncio.CancelledError:
            raise
        except ConcurrencyViolation as violation:
            logger.warning("Dropped finalize for job %s: %s", job.id, violation)
        except Exception:
            logger.exception("Worker %s could not finalize job %s; left for reclaim", self.worker_id, job.id)

    async def _execute(self, job: Job) -> None:
        await self._record(job, "running", {"worker_id": self.worker_id, "attempt": job.retry_count + 1})
        descriptor = await self._agents.get(job.agent_id)
        if descriptor is None:
            await self._terminal(job, "failed", f"Agent not found: {job.agent_id}", data={"reason": "agent_not_found"})
            return
        if not descriptor.is_active:
            await self._terminal(job, "failed", f"Agent is inactive: {job.agent_id}", data={"reason": "agent_inactive"})
            return
        try:
            credentials = await self._vault.resolve_or_raise(
                job.user_id, descriptor.credentials, tenant_id=job.tenant_id
            )
        except MissingCredentialsError as exc:
            await self._terminal(
                job,
                "failed",
                str(exc),
                data={"reason": "missing_credentials", "missing": exc.missing},
            )
            return
        except CredentialCorruptError as exc:
            await self._failure(job, str(exc), timed_out=False, duration_ms=None, data={"reason": "credential_corrupt"})
            return
        if await self._cancelled(job):
            logger.info("Job %s was cancelled before dispatch; webhook not called", job.id)
            return
        timeout_ms = int(self._dispatcher.timeout_for(descriptor) * 1000)
        await self._record(
            job,
            "integration_call",
            {
                "webhook_host": urlsplit(descriptor.webhook_url).netloc,
                "timeout_ms": timeout_ms,
                "providers": sorted(credentials.values),
            },
        )
        outcome = await self._dispatcher.invoke(descriptor, job, credentials)
        del credentials
        if await self._cancelled(job):
            logger.info("Job %s was cancelled during dispatch; outcome discarded", job.id)
            return
        await self._apply_outcome(job, outcome)

    async def _cancelled(self, job: Job) -> bool:
        current = await self._store.get(job.id)
        return current is not None and current.status == "cancelled"

    async def _apply_outcome(self, job: Job, outcome: Outcome) -> None:
        self.phase = "finalizing"
        if isinstance(outcome, Success):
            result = outcome.body if isinstance(outcome.body, dict) else {"data": outcome.body}
            finalized = await self._store.finalize(
                job.id,
                self.worker_id,
                Resolution(status="completed", result=result, duration_ms=outcome.duration_ms),
            )
            logger.info("Job %s running -> completed in %dms", job.id, outcome.duration_ms)
            await self._record(
                finalized,
                "completed",
                {"status_code": outcome.status_code, "response_bytes": _response_size(outcome.body)},
                duration_ms=outcome.duration_ms,
            )
            return
        if isinstance(outcome, HTTPFailure):
            await self._failure(
                job,
                f"Webhook returned HTTP {outcome.status_code}",
                timed_out=False,
                duration_ms=outcome.duration_ms,
                data={"status_code": outcome.status_code},
            )
        elif isinstance(outcome, TimeoutFailure):
            await self._failure(
                job,
                f"Webhook timed out after {outcome.timeout_ms}ms",
                timed_out=True,
                duration_ms=outcome.duration_ms,
                data={"timeout_ms": outcome.timeout_ms},
            )
        elif isinstance(outcome, NetworkFailure):
            await self._failure(job, outcome.error, timed_out=False, duration_ms=outcome.duration_ms)
        else:
            raise TypeError(f"unknown outcome: {type(outcome).__name__}")

    async def _failure(
        self,
        job: Job,
        error: str,
        *,
        timed_out: bool,
        duration_ms: int | None,
        data: dict[str, Any] | None = None,
    ) -> None:
        details = dict(data or {})
        if not should_retry(job.retry_count, job.max_retries):
            await self._terminal(job, "timeout" if timed_out else "failed", error, duration_ms=duration_ms, data=details)
            return
        retry_at = self._backoff.next_attempt_at(job.retry_count, self._clock())
        finalized = await self._store.finalize(
            job.id,
            self.worker_id,
            Resolution(status="pending", last_error=error, duration_ms=duration_ms, retry_at=retry_at),
        )
        logger.warning(
            "Job %s failed (%s); retry %d/%d at %s",
            job.id,
            error,
            finalized.retry_count,
            job.max_retries,
            retry_at.isoformat(),
        )
        details.update(error=error, retry_count=finalized.retry_count, retry_at=retry_at.isoformat(), timed_out=timed_out)
        await self._record(finalized, "retry", details, duration_ms=duration_ms)

    async def _terminal(
        self,
        job: Job,
        status: Literal["failed", "timeout"],
        error: str,
        *,
        duration_ms: int | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        self.phase = "finalizing"
        finalized = await self._store.finalize(
            job.id,
            self.worker_id,
            Resolution(status=status, last_error=error, duration_ms=duration_ms),
        )
        logger.info("Job %s running -> %s: %s", job.id, status, error)
        await self._record(finalized, status, {"error": error, **(data or {})}, duration_ms=duration_ms)

    async def _record(
        self,
        job: Job,
        phase: LedgerPhase,
        data: dict[str, Any],
        *,
        duration_ms: int | None = None,
    ) -> None:
        entry = LedgerEntry(
            job_id=job.id,
            tenant_id=job.tenant_id,
            agent_id=job.agent_id,
            user_id=job.user_id,
            phase=phase,
            data=data,
            duration_ms=duration_ms,
            timestamp=self._clock(),
        )
        try:
            await self._ledger.append(entry)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Failed to append ledger phase %s for job %s", phase, job.id)


class WorkerPool:
    """A set of workers sharing one job store."""

    def __init__(self, workers: Iterable[Worker]) -> None:
        self._workers = list(workers)
        if not self._workers:
            raise ValueError("worker pool needs at least one worker")

    @classmethod
    def build(cls, count: int, factory: Callable[[], Worker]) -> WorkerPool:
        return cls(factory() for _ in range(max(1, count)))

    @property
    def workers(self) -> list[Worker]:
        return list(self._workers)

    def wake(self) -> None:
        for worker in self._workers:
            worker.wake()

    def stop(self) -> None:
        for worker in self._workers:
            worker.stop()

    async def run(self) -> None:
        await asyncio.gather(*(worker.run() for worker in self._workers))

    async def run_once(self) -> list[Job]:
        results = await asyncio.gather(*(worker.run_once() for worker in self._workers))
        return [job for claimed in results for job in claimed]

    def states(self) -> list[WorkerState]:
        return [worker.state for worker in self._workers]
