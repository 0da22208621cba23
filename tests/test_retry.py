from __future__ import annotations

import pytest

from caddy_manager.errors import NETWORK_HINT
from caddy_manager.retry import RetryExecutor


def _executor(sleeps: list[float]) -> RetryExecutor:
    async def _async_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return RetryExecutor(max_attempts=3, interval=3.0, sleep=sleeps.append, async_sleep=_async_sleep)


def test_first_success_does_not_sleep() -> None:
    sleeps: list[float] = []
    outcome = _executor(sleeps).execute(lambda: "ok")
    assert outcome.ok and outcome.value == "ok" and outcome.attempts == 1
    assert sleeps == []


def test_exhaustion_sleeps_between_attempts_only() -> None:
    sleeps: list[float] = []
    calls = []

    def _fail() -> None:
        calls.append(1)
        raise ConnectionError("refused")

    outcome = _executor(sleeps).execute(_fail)

    assert not outcome.ok
    assert outcome.attempts == 3 and len(calls) == 3
    assert sleeps == [3.0, 3.0]
    assert "ConnectionError: refused" in outcome.error
    assert outcome.hint == NETWORK_HINT


def test_unsuccessful_result_is_retried_until_success() -> None:
    sleeps: list[float] = []
    values = iter([500, 502, 200])
    outcome = _executor(sleeps).execute(lambda: next(values), succeeded=lambda v: v == 200)
    assert outcome.ok and outcome.value == 200 and outcome.attempts == 3
    assert len(sleeps) == 2


def test_per_call_overrides() -> None:
    sleeps: list[float] = []
    outcome = _executor(sleeps).execute(lambda: 1 / 0, max_attempts=5, interval=0.5)
    assert outcome.attempts == 5
    assert sleeps == [0.5] * 4


@pytest.mark.asyncio
async def test_execute_async() -> None:
    sleeps: list[float] = []
    state = {"n": 0}

    async def _op() -> str:
        state["n"] += 1
        if state["n"] < 2:
            raise TimeoutError("slow")
        return "done"

    outcome = await _executor(sleeps).execute_async(_op)
    assert outcome.ok and outcome.value == "done" and outcome.attempts == 2
    assert sleeps == [3.0]
