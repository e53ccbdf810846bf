"""HTTP API for the AgentFlow runtime."""

from agentflow.http.app import create_app

__all__ = ["create_app"]
