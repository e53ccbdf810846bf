"""AgentFlow database layer: Base, engine, session factory, exceptions."""

from agentflow.db.base import Base
from agentflow.db.engine import create_engine
from agentflow.db.exceptions import ConfigurationError, DatabaseError
from agentflow.db.session import create_session_factory

__all__ = [
    "Base",
    "create_engine",
    "create_session_factory",
    "DatabaseError",
    "ConfigurationError",
]
