"""Bounded retries with a fixed delay between attempts."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

from caddy_manager.errors import NETWORK_HINT

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RetryOutcome:
    ok: bool
    value: Any
    attempts: int
    error: str | None = None
    hint: str | None = None


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class RetryExecutor:
    """Runs an operation up to ``max_attempts`` times.

    An attempt fails when the operation raises or when ``succeeded(result)`` is
    false. Callers must only pass idempotent operations: a webhook may be sent
    twice, a config block must never be appended twice.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        interval: float = 3.0,
        *,
        sleep: Callable[[float], None] = time.sleep,
        async_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.interval = max(0.0, float(interval))
        self._sleep = sleep
        self._async_sleep = async_sleep

    def _resolve(self, max_attempts: int | None, interval: float | None) -> tuple[int, float]:
        attempts = self.max_attempts if max_attempts is None else max(1, int(max_attempts))
        delay = self.interval if interval is None else max(0.0, float(interval))
        return attempts, delay

    def execute(
        self,
        operation: Callable[[], Any],
        *,
        max_attempts: int | None = None,
        interval: float | None = None,
        succeeded: Callable[[Any], bool] | None = None,
        label: str = "operation",
    ) -> RetryOutcome:
        attempts, delay = self._resolve(max_attempts, interval)
        last_error: str | None = None
        for attempt in range(1, attempts + 1):
            try:
                value = operation()
            except Exception as exc:
                last_error = _describe(exc)
            else:
                if succeeded is None or succeeded(value):
                    return RetryOutcome(ok=True, value=value, attempts=attempt)
                last_error = f"unsuccessful result: {value!r}"[:500]

            logger.warning(
                "Attempt failed",
                operation=label,
                attempt=attempt,
                max_attempts=attempts,
                error=last_error,
            )
            if attempt < attempts:
                self._sleep(delay)

        return RetryOutcome(ok=False, value=None, attempts=attempts, error=last_error, hint=NETWORK_HINT)

    async def execute_async(
        self,
        operation: Callable[[], Awaitable[Any]],
        *,
        max_attempts: int | None = None,
        interval: float | None = None,
        succeeded: Callable[[Any], bool] | None = None,
        label: str = "operation",
    ) -> RetryOutcome:
        attempts, delay = self._resolve(max_attempts, interval)
        last_error: str | None = None
        for attempt in range(1, attempts + 1):
            try:
                value = await operation()
            except Exception as exc:
                last_error = _describe(exc)
            else:
                if succeeded is None or succeeded(value):
                    return RetryOutcome(ok=True, value=value, attempts=attempt)
                last_error = f"unsuccessful result: {value!r}"[:500]

            logger.warning(
                "Attempt failed",
                operation=label,
                attempt=attempt,
                max_attempts=attempts,
                error=last_error,
            )
            if attempt < attempts:
                await self._async_sleep(delay)

        return RetryOutcome(ok=False, value=None, attempts=attempts, error=last_error, hint=NETWORK_HINT)
