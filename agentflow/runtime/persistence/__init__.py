"""Persistence models and repositories for the execution runtime."""

from agentflow.runtime.persistence.models import (
    AgentCredentialRequirementModel,
    AgentModel,
    JobModel,
    LedgerEntryModel,
    ScheduleModel,
    UserCredentialModel,
    WorkerModel,
)
from agentflow.runtime.persistence.repositories import (
    AgentDirectory,
    CredentialRepository,
    InMemoryAgentDirectory,
    InMemoryCredentialRepository,
    SqlAgentDirectory,
    SqlCredentialRepository,
)

__all__ = [
    "AgentCredentialRequirementModel",
    "AgentDirectory",
    "AgentModel",
    "CredentialRepository",
    "InMemoryAgentDirectory",
    "InMemoryCredentialRepository",
    "JobModel",
    "LedgerEntryModel",
    "ScheduleModel",
    "SqlAgentDirectory",
    "SqlCredentialRepository",
    "UserCredentialModel",
    "WorkerModel",
]
