"""Enqueue gate: fixed-window count of recent jobs per (user, agent)."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from agentflow.runtime.errors import RateLimitExceeded
from agentflow.runtime.store import JobStore
from agentflow.runtime.types import utc_now


@dataclass(slots=True)
class RateLimitPolicy:
    enabled: bool = True
    window_seconds: float = 60.0
    max_requests: int = 100


class RateLimiter:
    """Stateless check against the job store; holds no counters of its own."""

    def __init__(
        self,
        store: JobStore,
        policy: RateLimitPolicy | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._policy = policy or RateLimitPolicy()
        self._clock = clock

    async def check(self, user_id: str, agent_id: str, *, tenant_id: str = "default") -> None:
        """Raise RateLimitExceeded when the window is already full.

        The retry-after hint is the time until the oldest job in the window
        leaves it.
        """
        policy = self._policy
        if not policy.enabled:
            return
        now = self._clock()
        window = timedelta(seconds=policy.window_seconds)
        count, oldest = await self._store.recent_activity(user_id, agent_id, now - window, tenant_id=tenant_id)
        if count < policy.max_requests:
            return
        if oldest is None:
            retry_after = policy.window_seconds
        else:
            retry_after = (oldest + window - now).total_seconds()
        raise RateLimitExceeded(max(1, math.ceil(retry_after)))
