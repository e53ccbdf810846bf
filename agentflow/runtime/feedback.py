"""User feedback on finished executions and feedback-driven auto-disable."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from agentflow.runtime.errors import JobNotFoundError, ValidationError
from agentflow.runtime.ledger import ExecutionLedger
from agentflow.runtime.persistence.repositories import AgentDirectory
from agentflow.runtime.store import JobStore
from agentflow.runtime.types import FeedbackVerdict, Job, LedgerEntry

logger = logging.getLogger(__name__)

DISABLED_REASON = "Consecutive failures reported by users"
MAX_COMMENT_LENGTH = 2000
_VERDICTS = ("worked", "failed")
_FAILED_STATUSES = ("failed", "timeout")


@dataclass(slots=True)
class FeedbackPolicy:
    """Deactivate an agent when ``threshold`` of its last ``window`` runs failed."""

    window: int = 5
    threshold: int = 3
    auto_disable: bool = True

    def __post_init__(self) -> None:
        if self.window < 1:
            raise ValueError("window must be >= 1")
        if not 1 <= self.threshold <= self.window:
            raise ValueError("threshold must be between 1 and window")


@dataclass(slots=True)
class FeedbackEvaluation:
    agent_id: str
    considered: int
    failures: int
    deactivated: bool = False


def counts_as_failed(job: Job, feedback: LedgerEntry | None) -> bool:
    """User feedback wins over the recorded status when present."""
    if feedback is not None:
        return feedback.data.get("verdict") == "failed"
    return job.status in _FAILED_STATUSES


class FeedbackMonitor:
    """Records feedback in the ledger and re-evaluates the agent's recent runs."""

    def __init__(
        self,
        store: JobStore,
        ledger: ExecutionLedger,
        agents: AgentDirectory,
        policy: FeedbackPolicy | None = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._agents = agents
        self._policy = policy or FeedbackPolicy()

    async def record_feedback(
        self,
        job_id: str,
        user_id: str,
        verdict: FeedbackVerdict,
        comment: str | None = None,
    ) -> FeedbackEvaluation:
        if verdict not in _VERDICTS:
            raise ValidationError("verdict must be 'worked' or 'failed'")
        if comment is not None and len(comment) > MAX_COMMENT_LENGTH:
            raise ValidationError(f"comment must be at most {MAX_COMMENT_LENGTH} characters")
        job = await self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.user_id != user_id:
            raise ValidationError("feedback must come from the user who ran the job")
        if job.status not in ("completed", "failed", "timeout"):
            raise ValidationError(f"cannot leave feedback on a {job.status} job")
        await self._ledger.append(
            LedgerEntry(
                job_id=job.id,
                tenant_id=job.tenant_id,
                agent_id=job.agent_id,
                user_id=user_id,
                phase="feedback",
                data={"verdict": verdict, "comment": comment},
            )
        )
        logger.info("Feedback %s recorded for job %s", verdict, job.id)
        return await self.evaluate(job.agent_id)

    async def evaluate(self, agent_id: str) -> FeedbackEvaluation:
        recent = await self._store.recent_terminal(agent_id, self._policy.window)
        feedback = await self._ledger.feedback_for([job.id for job in recent])
        failures = sum(1 for job in recent if counts_as_failed(job, feedback.get(job.id)))
        evaluation = FeedbackEvaluation(agent_id=agent_id, considered=len(recent), failures=failures)
        if self._policy.auto_disable and failures >= self._policy.threshold:
            evaluation.deactivated = await self._agents.deactivate(agent_id, DISABLED_REASON)
            if evaluation.deactivated:
                logger.warning(
                    "Agent %s deactivated: %d of last %d executions failed",
                    agent_id,
                    failures,
                    len(recent),
                )
        return evaluation
