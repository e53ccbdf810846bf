"""Webhook dispatcher: one outbound POST per call, under a hard deadline."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Mapping

import httpx

from agentflow.runtime.types import (
    AgentDescriptor,
    HTTPFailure,
    Job,
    NetworkFailure,
    Outcome,
    ResolvedCredentials,
    Success,
    TimeoutFailure,
)
from agentflow.runtime.vault import build_injection, scrub

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "AgentFlow/1.0"
MAX_TEXT_BODY_CHARS = 10_000


class WebhookDispatcher:
    """Invoke agent webhooks and normalize the response into an outcome.

    The dispatcher never retries; retry policy belongs to the worker.
    """

    def __init__(
        self,
        *,
        default_timeout_seconds: float = 30.0,
        max_timeout_seconds: float = 900.0,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.AsyncBaseTransport | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be positive")
        if max_timeout_seconds < default_timeout_seconds:
            raise ValueError("max_timeout_seconds must be >= default_timeout_seconds")
        self._default_timeout_seconds = float(default_timeout_seconds)
        self._max_timeout_seconds = float(max_timeout_seconds)
        self._user_agent = user_agent
        self._transport = transport
        self._monotonic = monotonic

    @property
    def max_timeout_seconds(self) -> float:
        return self._max_timeout_seconds

    def timeout_for(self, descriptor: AgentDescriptor) -> float:
        """Agent timeout when set, else the default; never above the cap."""
        if descriptor.timeout_seconds is not None and descriptor.timeout_seconds > 0:
            return min(float(descriptor.timeout_seconds), self._max_timeout_seconds)
        return self._default_timeout_seconds

    async def invoke(
        self,
        descriptor: AgentDescriptor,
        job: Job,
        credentials: ResolvedCredentials | Mapping[str, str],
    ) -> Outcome:
        values = credentials.values if isinstance(credentials, ResolvedCredentials) else dict(credentials)
        injected = build_injection(job.payload, descriptor.credentials, values)
        secrets = list(values.values())
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            **injected.headers,
        }
        timeout_seconds = self.timeout_for(descriptor)
        timeout_ms = int(timeout_seconds * 1000)
        started = self._monotonic()
        try:
            response = await asyncio.wait_for(
                self._post(descriptor.webhook_url, headers, injected.query, injected.body, timeout_seconds),
                timeout=timeout_seconds,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            elapsed = self._elapsed_ms(started)
            logger.info("Webhook call for job %s timed out after %dms", job.id, elapsed)
            return TimeoutFailure(duration_ms=max(elapsed, timeout_ms), timeout_ms=timeout_ms)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            error = scrub(f"{type(exc).__name__}: {exc}", secrets)
            logger.info("Webhook call for job %s failed: %s", job.id, type(exc).__name__)
            return NetworkFailure(error=error, duration_ms=self._elapsed_ms(started))
        duration_ms = self._elapsed_ms(started)
        body = scrub(self._safe_body(response), secrets)
        if 200 <= response.status_code < 300:
            return Success(status_code=response.status_code, body=body, duration_ms=duration_ms)
        return HTTPFailure(status_code=response.status_code, duration_ms=duration_ms, body=body)

    async def _post(
        self,
        url: str,
        headers: dict[str, str],
        query: dict[str, str],
        body: dict[str, Any],
        timeout_seconds: float,
    ) -> httpx.Response:
        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds), transport=self._transport) as client:
            return await client.post(url, headers=headers, params=query or None, json=body)

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int((self._monotonic() - started) * 1000))

    @staticmethod
    def _safe_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {"text": response.text[:MAX_TEXT_BODY_CHARS]}
