"""Unit tests for engine URL handling and engine lifecycle (no database connection needed)."""

from __future__ import annotations

import pytest

from agentflow.config import AgentFlowConfig
from agentflow.db import ConfigurationError, create_engine
from agentflow.db.engine import DATABASE_URL_ENV, _normalize_url
from agentflow.runtime.main import build_runtime
from agentflow.runtime.vault import generate_key


class _RecordingEngine:
    def __init__(self) -> None:
        self.disposed = 0

    async def dispose(self) -> None:
        self.disposed += 1


def test_normalize_url_uses_asyncpg() -> None:
    assert _normalize_url(" postgresql://u:p@h/db ") == "postgresql+asyncpg://u:p@h/db"
    assert _normalize_url("postgresql+asyncpg://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"


@pytest.mark.parametrize("url", ["mysql://u:p@h/db", "sqlite:///x.db", "postgresql+psycopg2://u:p@h/db"])
def test_non_postgres_urls_are_rejected(url: str) -> None:
    with pytest.raises(ConfigurationError):
        _normalize_url(url)


def test_missing_url_names_environment_variable() -> None:
    with pytest.raises(ConfigurationError, match=DATABASE_URL_ENV):
        create_engine()


@pytest.mark.asyncio
async def test_create_engine_reads_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(DATABASE_URL_ENV, "postgresql://u:p@localhost:5432/agentflow")
    engine = create_engine()
    try:
        assert engine.url.drivername == "postgresql+asyncpg"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_runtime_keeps_and_disposes_its_engine() -> None:
    config = AgentFlowConfig.model_validate(
        {
            "database": {"url": "postgresql://u:p@localhost:5432/agentflow"},
            "vault": {"encryption_key": generate_key()},
        }
    )
    runtime = build_runtime(config)
    assert runtime.engine is not None
    assert runtime.engine.url.drivername == "postgresql+asyncpg"
    await runtime.aclose()

    recording = _RecordingEngine()
    runtime.engine = recording  # type: ignore[assignment]
    await runtime.stop()
    assert recording.disposed == 1


@pytest.mark.asyncio
async def test_in_memory_runtime_has_no_engine() -> None:
    runtime = build_runtime(AgentFlowConfig())
    assert runtime.engine is None
    await runtime.aclose()
