"""Runtime exceptions.

Messages carry identifiers and provider names only, never credential values.
"""

from __future__ import annotations


class AgentFlowError(Exception):
    """Base exception for runtime operations."""

    code = "internal_error"


class ValidationError(AgentFlowError):
    """Raised when enqueue or schedule input is invalid."""

    code = "validation_error"


class AgentNotFoundError(AgentFlowError):
    code = "agent_not_found"

    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}")


class AgentInactiveError(AgentFlowError):
    code = "agent_inactive"

    def __init__(self, agent_id: str, reason: str | None = None) -> None:
        self.agent_id = agent_id
        self.reason = reason
        message = f"Agent is inactive: {agent_id}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class MissingCredentialsError(AgentFlowError):
    """Raised when a user lacks one or more required credentials."""

    code = "missing_credentials"

    def __init__(self, missing: list[str]) -> None:
        self.missing = sorted(missing)
        super().__init__(f"Missing required credentials: {', '.join(self.missing)}")


class RateLimitExceeded(AgentFlowError):
    code = "rate_limited"

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = max(1, int(retry_after_seconds))
        super().__init__(f"Rate limit exceeded; retry after {self.retry_after_seconds}s")


class CredentialCorruptError(AgentFlowError):
    """Raised when a stored credential cannot be decrypted."""

    code = "credential_corrupt"

    def __init__(self, provider: str | None = None) -> None:
        self.provider = provider
        if provider:
            super().__init__(f"Stored credential for provider '{provider}' could not be decrypted")
        else:
            super().__init__("Credential blob could not be decrypted")


class ConcurrencyViolation(AgentFlowError):
    """Raised when a job is finalized by a worker that no longer holds it."""

    code = "concurrency_violation"

    def __init__(self, job_id: str, worker_id: str) -> None:
        self.job_id = job_id
        self.worker_id = worker_id
        super().__init__(f"Job {job_id} is not running under worker {worker_id}")


class JobNotFoundError(AgentFlowError):
    code = "job_not_found"

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class AlreadyTerminalError(AgentFlowError):
    code = "already_terminal"

    def __init__(self, job_id: str, status: str) -> None:
        self.job_id = job_id
        self.status = status
        super().__init__(f"Job {job_id} is already {status}")


class ScheduleNotFoundError(AgentFlowError):
    code = "schedule_not_found"

    def __init__(self, schedule_id: str) -> None:
        self.schedule_id = schedule_id
        super().__init__(f"Schedule not found: {schedule_id}")


class CredentialNotFoundError(AgentFlowError):
    code = "credential_not_found"

    def __init__(self, user_id: str, provider: str) -> None:
        self.user_id = user_id
        self.provider = provider
        super().__init__(f"No {provider} credential stored for user {user_id}")
