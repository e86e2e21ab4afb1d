import asyncio
import json
import logging
import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Annotated

from fastapi import Header, Request

from serialboxd.core.exceptions import RateLimited

logger = logging.getLogger(__name__)


class HitLog:
    """Timestamps of the last ``limit`` accepted hits per key."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._logs: dict[str, deque[float]] = {}
        self._lock = asyncio.Lock()

    async def record(self, key: str, limit: int, window_seconds: int) -> float:
        """Accept a hit and return 0, or return the seconds left until the oldest hit ages out."""
        now = self._clock()
        async with self._lock:
            log = self._logs.get(key)
            if log is None or log.maxlen != limit:
                log = self._logs[key] = deque(log or (), maxlen=limit)
            if len(log) == limit:
                age = now - log[0]
                if age < window_seconds:
                    return window_seconds - age
            log.append(now)
            return 0.0

    async def forget(self) -> None:
        async with self._lock:
            self._logs.clear()


_hit_log = HitLog()


async def reset_rate_limiter_state() -> None:
    await _hit_log.forget()


async def _body_fields(request: Request, names: tuple[str, ...]) -> list[str]:
    if not names or "application/json" not in (request.headers.get("content-type") or "").lower():
        return []
    try:
        body = json.loads(await request.body() or b"{}")
    except ValueError:
        return []
    if not isinstance(body, dict):
        return []
    return [f"{name}={str(body[name]).strip().lower()}" for name in names if body.get(name) is not None]


@dataclass(frozen=True)
class RateLimit:
    """Route dependency allowing ``limit`` requests per ``window_seconds`` per client (and body fields)."""

    scope: str
    limit: int
    window_seconds: int
    json_fields: tuple[str, ...] = ()

    async def __call__(
        self,
        request: Request,
        x_forwarded_for: Annotated[str | None, Header(alias="X-Forwarded-For")] = None,
    ) -> None:
        client = (x_forwarded_for or "").split(",")[0].strip()
        if not client:
            client = request.client.host if request.client else "unknown"
        key = ":".join([self.scope, client, *await _body_fields(request, self.json_fields)])

        wait = await _hit_log.record(key, self.limit, self.window_seconds)
        if wait:
            logger.warning("Rate limit exceeded for %s (scope=%s)", client, self.scope)
            raise RateLimited(max(math.ceil(wait), 1))
