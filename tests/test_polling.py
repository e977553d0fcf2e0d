import asyncio

import pytest

from adworker.pipeline.errors import PollTimeoutError, ProviderError, TaskFailedError
from adworker.pipeline.polling import PollResult, poll


class Counter:
    def __init__(self, results):
        self.results = list(results)
        self.calls = 0

    async def __call__(self, task_id):
        self.calls += 1
        return self.results.pop(0) if len(self.results) > 1 else self.results[0]


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []

    async def fake_sleep(seconds):
        recorded.append(seconds)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return recorded


@pytest.mark.asyncio
async def test_poll_returns_payload_when_completed(sleeps):
    check = Counter([PollResult.pending(), PollResult.pending(), PollResult.completed("https://v/1.mp4")])

    result = await poll("task-1", check, max_attempts=5, interval_ms=2000)

    assert result == "https://v/1.mp4"
    assert check.calls == 3
    assert sleeps == [2.0, 2.0]


@pytest.mark.asyncio
async def test_poll_times_out_after_exactly_max_attempts(sleeps):
    """Five pending checks, four waits between them, then a timeout naming the time waited."""
    check = Counter([PollResult.pending()])

    with pytest.raises(PollTimeoutError) as exc_info:
        await poll("task-2", check, max_attempts=5, interval_ms=100)

    assert check.calls == 5
    assert len(sleeps) == 4
    assert "5 attempts" in str(exc_info.value)
    assert "400ms spent waiting" in str(exc_info.value)
    assert isinstance(exc_info.value, TimeoutError)
    assert isinstance(exc_info.value, ProviderError)


@pytest.mark.asyncio
async def test_poll_stops_on_failure_with_reason(sleeps):
    check = Counter([PollResult.pending(), PollResult.failed("content policy violation")])

    with pytest.raises(TaskFailedError) as exc_info:
        await poll("task-3", check, max_attempts=10, interval_ms=100)

    assert "content policy violation" in str(exc_info.value)
    assert check.calls == 2


@pytest.mark.asyncio
async def test_poll_single_attempt_never_sleeps(sleeps):
    check = Counter([PollResult.pending()])

    with pytest.raises(PollTimeoutError):
        await poll("task-4", check, max_attempts=1, interval_ms=100)

    assert sleeps == []


@pytest.mark.asyncio
async def test_poll_rejects_zero_attempts():
    with pytest.raises(ValueError):
        await poll("task-5", Counter([PollResult.pending()]), max_attempts=0, interval_ms=100)
