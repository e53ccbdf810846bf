"""Runtime data models shared by the job store, vault, dispatcher and workers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Union

JobStatus = Literal["pending", "running", "completed", "failed", "cancelled", "timeout"]
JobSource = Literal["api", "schedule", "cli"]
InjectMethod = Literal["header", "query", "body"]
CredentialStatus = Literal["active", "expired", "revoked", "error"]
WorkerStatus = Literal["idle", "busy", "offline"]
LedgerPhase = Literal[
    "queued",
    "running",
    "integration_call",
    "completed",
    "failed",
    "timeout",
    "retry",
    "cancelled",
    "feedback",
]
FeedbackVerdict = Literal["worked", "failed"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled", "timeout"})
ACTIVE_STATUSES: frozenset[str] = frozenset({"pending", "running"})

TOKEN_PLACEHOLDER = "{{token}}"
DEFAULT_FORMAT_TEMPLATE = "Bearer {{token}}"
DEFAULT_HEADER_FIELD = "Authorization"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class CredentialRequirement:
    """One credential an agent needs and how it is injected into the call."""

    provider: str
    required: bool = True
    inject_method: InjectMethod = "header"
    field_name: str | None = None
    format_template: str = DEFAULT_FORMAT_TEMPLATE

    @property
    def target_field(self) -> str:
        if self.field_name:
            return self.field_name
        if self.inject_method == "header":
            return DEFAULT_HEADER_FIELD
        return self.provider


@dataclass(slots=True)
class AgentDescriptor:
    """Read-only snapshot of how to invoke an agent."""

    agent_id: str
    webhook_url: str
    credentials: list[CredentialRequirement] = field(default_factory=list)
    timeout_seconds: float | None = None
    is_active: bool = True
    name: str = ""
    disabled_reason: str | None = None
    tenant_id: str = "default"

    @property
    def required_providers(self) -> list[str]:
        return sorted({item.provider for item in self.credentials if item.required})


@dataclass(slots=True)
class Credential:
    """Stored credential; encrypted_value is a vault token, never plaintext."""

    user_id: str
    provider: str
    encrypted_value: str = field(repr=False)
    status: CredentialStatus = "active"
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    id: str | None = None
    tenant_id: str = "default"

    def is_usable(self, now: datetime) -> bool:
        if self.status != "active":
            return False
        return self.expires_at is None or self.expires_at > now

    def summary(self, now: datetime) -> CredentialSummary:
        return CredentialSummary(
            provider=self.provider,
            status=self.status,
            usable=self.is_usable(now),
            expires_at=self.expires_at,
            last_used_at=self.last_used_at,
        )


@dataclass(slots=True)
class CredentialSummary:
    """Credential metadata for listings; holds no secret material."""

    provider: str
    status: CredentialStatus
    usable: bool
    expires_at: datetime | None = None
    last_used_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "status": self.status,
            "usable": self.usable,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }


@dataclass(slots=True)
class Job:
    """One requested execution of an agent webhook."""

    id: str
    agent_id: str
    user_id: str
    status: JobStatus = "pending"
    priority: int = 0
    scheduled_at: datetime = field(default_factory=utc_now)
    payload: dict[str, Any] = field(default_factory=dict)
    retry_count: int = 0
    max_retries: int = 3
    last_error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    worker_id: str | None = None
    result: dict[str, Any] | None = None
    duration_ms: int | None = None
    required_providers: list[str] = field(default_factory=list)
    source: JobSource = "api"
    schedule_id: str | None = None
    cancel_reason: str | None = None
    tenant_id: str = "default"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class JobFilter:
    """Filter options for listing jobs."""

    tenant_id: str | None = None
    status: JobStatus | None = None
    agent_id: str | None = None
    user_id: str | None = None
    offset: int = 0
    limit: int = 50


@dataclass(slots=True)
class EnqueueRequest:
    """Caller-supplied execution request."""

    agent_id: str
    user_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    scheduled_at: datetime | None = None
    max_retries: int | None = None
    source: JobSource = "api"
    schedule_id: str | None = None
    tenant_id: str = "default"


@dataclass(slots=True)
class Resolution:
    """How a running job leaves the running state.

    status "pending" means requeue: the store increments retry_count and
    makes the job eligible again at retry_at.
    """

    status: JobStatus
    result: dict[str, Any] | None = None
    last_error: str | None = None
    duration_ms: int | None = None
    retry_at: datetime | None = None


@dataclass(slots=True)
class LedgerEntry:
    """One phase transition of a job."""

    job_id: str
    agent_id: str
    user_id: str
    phase: LedgerPhase
    data: dict[str, Any] = field(default_factory=dict)
    duration_ms: int | None = None
    timestamp: datetime = field(default_factory=utc_now)
    id: str | None = None
    tenant_id: str = "default"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "agent_id": self.agent_id,
            "user_id": self.user_id,
            "phase": self.phase,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": self.duration_ms,
            "data": self.data,
        }


@dataclass(slots=True)
class WorkerState:
    """Liveness and load of one worker instance."""

    worker_id: str
    capacity: int
    capabilities: frozenset[str] | None = None
    status: WorkerStatus = "idle"
    active_jobs: int = 0
    last_heartbeat: datetime = field(default_factory=utc_now)
    started_at: datetime = field(default_factory=utc_now)

    @property
    def free_capacity(self) -> int:
        return max(0, self.capacity - self.active_jobs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "status": self.status,
            "capacity": self.capacity,
            "active_jobs": self.active_jobs,
            "capabilities": sorted(self.capabilities) if self.capabilities is not None else None,
            "last_heartbeat": self.last_heartbeat.isoformat(),
            "started_at": self.started_at.isoformat(),
        }


@dataclass(slots=True)
class Schedule:
    """Recurring execution of one agent for one user."""

    id: str
    agent_id: str
    user_id: str
    cron_expression: str
    timezone: str = "UTC"
    name: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    max_retries: int | None = None
    is_active: bool = True
    next_run: datetime | None = None
    last_run: datetime | None = None
    run_count: int = 0
    tenant_id: str = "default"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "user_id": self.user_id,
            "name": self.name,
            "cron_expression": self.cron_expression,
            "timezone": self.timezone,
            "payload": self.payload,
            "priority": self.priority,
            "max_retries": self.max_retries,
            "is_active": self.is_active,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "run_count": self.run_count,
        }


@dataclass(slots=True)
class ScheduleUpdate:
    """Partial update for a schedule; None leaves a field unchanged."""

    cron_expression: str | None = None
    timezone: str | None = None
    name: str | None = None
    payload: dict[str, Any] | None = None
    priority: int | None = None
    is_active: bool | None = None
    max_retries: int | None = None


@dataclass(slots=True)
class ResolvedCredentials:
    """Outcome of a vault lookup; values hold plaintext and are never printed."""

    values: dict[str, str] = field(default_factory=dict, repr=False)
    missing: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing


@dataclass(slots=True)
class InjectedRequest:
    """Outbound request parts after credential injection."""

    headers: dict[str, str] = field(default_factory=dict, repr=False)
    query: dict[str, str] = field(default_factory=dict, repr=False)
    body: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(slots=True)
class ValidationResult:
    """Validation output with optional error message."""

    valid: bool
    message: str | None = None


@dataclass(slots=True)
class Success:
    status_code: int
    body: Any
    duration_ms: int


@dataclass(slots=True)
class HTTPFailure:
    status_code: int
    duration_ms: int
    body: Any = None


@dataclass(slots=True)
class NetworkFailure:
    error: str
    duration_ms: int


@dataclass(slots=True)
class TimeoutFailure:
    duration_ms: int
    timeout_ms: int = 0


Outcome = Union[Success, HTTPFailure, NetworkFailure, TimeoutFailure]


@dataclass(slots=True)
class JobStatusView:
    """Caller-facing view of a job; retry churn shows only in phases."""

    job_id: str
    status: JobStatus
    output: dict[str, Any] | None = None
    error: str | None = None
    duration_ms: int | None = None
    retry_count: int = 0
    phases: list[LedgerEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "output": self.output,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "retry_count": self.retry_count,
            "phases": [entry.to_dict() for entry in self.phases],
        }


@dataclass(slots=True)
class HealthView:
    """Runtime health snapshot: live workers and queue depth."""

    workers: list[WorkerState]
    live_workers: int
    pending: int
    running: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "ok" if self.live_workers > 0 else "degraded",
            "live_workers": self.live_workers,
            "pending": self.pending,
            "running": self.running,
            "workers": [worker.to_dict() for worker in self.workers],
        }
