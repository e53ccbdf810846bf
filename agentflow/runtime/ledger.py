"""Execution ledger: append-only phase history of jobs.

Entries are written inline by the worker so that a status read right after
a transition already sees the phase. Phase data never carries credential
values; callers pass only sizes, status codes and scrubbed errors.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Iterable, Protocol
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agentflow.runtime.persistence.models import LedgerEntryModel
from agentflow.runtime.types import LedgerEntry

logger = logging.getLogger(__name__)


class ExecutionLedger(Protocol):
    async def append(self, entry: LedgerEntry) -> LedgerEntry: ...

    async def history(self, job_id: str) -> list[LedgerEntry]: ...

    async def feedback_for(self, job_ids: Iterable[str]) -> dict[str, LedgerEntry]: ...


def _entry_from_model(model: LedgerEntryModel) -> LedgerEntry:
    return LedgerEntry(
        id=str(model.id),
        tenant_id=model.tenant_id,
        job_id=str(model.job_id),
        agent_id=model.agent_id,
        user_id=model.user_id,
        phase=model.phase,  # type: ignore[arg-type]
        timestamp=model.timestamp,
        duration_ms=model.duration_ms,
        data=dict(model.data or {}),
    )


class SqlExecutionLedger:
    """Ledger stored in the execution_ledger table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, entry: LedgerEntry) -> LedgerEntry:
        model = LedgerEntryModel(
            id=uuid4(),
            tenant_id=entry.tenant_id,
            job_id=UUID(entry.job_id),
            agent_id=entry.agent_id,
            user_id=entry.user_id,
            phase=entry.phase,
            timestamp=entry.timestamp,
            duration_ms=entry.duration_ms,
            data=entry.data,
        )
        async with self._session_factory() as session:
            session.add(model)
            await session.commit()
        logger.debug("Ledger %s phase=%s", entry.job_id, entry.phase)
        return replace(entry, id=str(model.id))

    async def history(self, job_id: str) -> list[LedgerEntry]:
        try:
            parsed = UUID(job_id)
        except ValueError:
            return []
        stmt = (
            select(LedgerEntryModel)
            .where(LedgerEntryModel.job_id == parsed)
            .order_by(LedgerEntryModel.timestamp.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_entry_from_model(model) for model in result.scalars().all()]

    async def feedback_for(self, job_ids: Iterable[str]) -> dict[str, LedgerEntry]:
        parsed = [UUID(job_id) for job_id in job_ids]
        if not parsed:
            return {}
        stmt = (
            select(LedgerEntryModel)
            .where(LedgerEntryModel.job_id.in_(parsed), LedgerEntryModel.phase == "feedback")
            .order_by(LedgerEntryModel.timestamp.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            latest: dict[str, LedgerEntry] = {}
            for model in result.scalars().all():
                latest[str(model.job_id)] = _entry_from_model(model)
        return latest


class InMemoryExecutionLedger:
    """In-memory ledger with the same interface as SqlExecutionLedger."""

    def __init__(self) -> None:
        self._entries: list[LedgerEntry] = []
        self._lock = threading.Lock()

    async def append(self, entry: LedgerEntry) -> LedgerEntry:
        stored = replace(entry, id=entry.id or str(uuid4()), data=dict(entry.data))
        with self._lock:
            self._entries.append(stored)
        return replace(stored)

    async def history(self, job_id: str) -> list[LedgerEntry]:
        return [replace(entry) for entry in self._entries if entry.job_id == job_id]

    async def feedback_for(self, job_ids: Iterable[str]) -> dict[str, LedgerEntry]:
        wanted = set(job_ids)
        latest: dict[str, LedgerEntry] = {}
        for entry in self._entries:
            if entry.phase == "feedback" and entry.job_id in wanted:
                latest[entry.job_id] = replace(entry)
        return latest

    def entries(self) -> list[LedgerEntry]:
        return [replace(entry) for entry in self._entries]
