"""Execution runtime: job store, worker pool, vault, dispatcher and scheduler."""

from agentflow.runtime.backoff import BackoffPolicy, backoff_seconds, should_retry
from agentflow.runtime.dispatcher import WebhookDispatcher
from agentflow.runtime.errors import (
    AgentFlowError,
    AgentInactiveError,
    AgentNotFoundError,
    AlreadyTerminalError,
    ConcurrencyViolation,
    CredentialCorruptError,
    JobNotFoundError,
    MissingCredentialsError,
    RateLimitExceeded,
    ScheduleNotFoundError,
    ValidationError,
)
from agentflow.runtime.feedback import FeedbackMonitor, FeedbackPolicy
from agentflow.runtime.ledger import ExecutionLedger, InMemoryExecutionLedger, SqlExecutionLedger
from agentflow.runtime.main import AgentFlowRuntime, build_runtime
from agentflow.runtime.rate_limit import RateLimiter, RateLimitPolicy
from agentflow.runtime.scheduler import (
    InMemoryScheduleStore,
    Poller,
    ScheduleManager,
    SqlScheduleStore,
    compute_next_run,
)
from agentflow.runtime.service import RuntimeService
from agentflow.runtime.store import InMemoryJobStore, JobStore, ReclaimPolicy, SqlJobStore
from agentflow.runtime.types import (
    AgentDescriptor,
    CredentialRequirement,
    EnqueueRequest,
    Job,
    JobStatusView,
    LedgerEntry,
    Schedule,
)
from agentflow.runtime.vault import CredentialVault, build_injection
from agentflow.runtime.worker import Worker, WorkerPool, WorkerSettings

__all__ = [
    "AgentDescriptor",
    "AgentFlowError",
    "AgentFlowRuntime",
    "AgentInactiveError",
    "AgentNotFoundError",
    "AlreadyTerminalError",
    "BackoffPolicy",
    "ConcurrencyViolation",
    "CredentialCorruptError",
    "CredentialRequirement",
    "CredentialVault",
    "EnqueueRequest",
    "ExecutionLedger",
    "FeedbackMonitor",
    "FeedbackPolicy",
    "InMemoryExecutionLedger",
    "InMemoryJobStore",
    "InMemoryScheduleStore",
    "Job",
    "JobNotFoundError",
    "JobStatusView",
    "JobStore",
    "LedgerEntry",
    "MissingCredentialsError",
    "Poller",
    "RateLimitExceeded",
    "RateLimitPolicy",
    "RateLimiter",
    "ReclaimPolicy",
    "RuntimeService",
    "Schedule",
    "ScheduleManager",
    "ScheduleNotFoundError",
    "SqlExecutionLedger",
    "SqlJobStore",
    "SqlScheduleStore",
    "ValidationError",
    "WebhookDispatcher",
    "Worker",
    "WorkerPool",
    "WorkerSettings",
    "backoff_seconds",
    "build_injection",
    "build_runtime",
    "compute_next_run",
    "should_retry",
]
