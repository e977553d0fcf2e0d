import asyncio
import time

import pytest

from adworker.pipeline.errors import ProviderError, ValidationError
from adworker.pipeline.models import ProjectStatus
from adworker.queue import (
    DEAD_LETTER_KEY,
    DELAYED_KEY,
    PROCESSING_KEY,
    QUEUE_KEY,
    TaskQueue,
    backoff_delay,
)
from adworker.worker import register_handlers

from conftest import make_project


class Recorder:
    def __init__(self, errors=()):
        self.errors = list(errors)
        self.contexts = []
        self.payloads = []

    async def __call__(self, payload, ctx):
        self.payloads.append(payload)
        self.contexts.append(ctx)
        if self.errors:
            raise self.errors.pop(0)


@pytest.fixture
def queue(fake_redis):
    return TaskQueue(fake_redis, max_attempts=3, backoff_seconds=0)


@pytest.mark.asyncio
async def test_enqueue_records_metadata(queue, fake_redis):
    job_id = await queue.enqueue("generate-background", {"projectId": "p1"})

    meta = await queue.get_task_meta(job_id)
    assert fake_redis.lists[QUEUE_KEY] == [job_id]
    assert meta["status"] == "queued"
    assert meta["attempts"] == "0"
    assert meta["max_attempts"] == "3"
    assert await queue.get_queue_length() == 1


@pytest.mark.asyncio
async def test_successful_job_is_acked(queue, fake_redis):
    handler = Recorder()
    queue.on_job("generate-background", handler)
    job_id = await queue.enqueue("generate-background", {"projectId": "p1"})

    assert await queue.process_next(timeout=0)

    assert handler.payloads == [{"projectId": "p1"}]
    assert handler.contexts[0].job_id == job_id
    assert handler.contexts[0].attempt == 1
    assert handler.contexts[0].max_attempts == 3
    assert fake_redis.lists[PROCESSING_KEY] == []
    assert (await queue.get_task_meta(job_id))["status"] == "completed"


@pytest.mark.asyncio
async def test_empty_queue_returns_false(queue):
    assert await queue.process_next(timeout=0) is False


@pytest.mark.asyncio
async def test_retryable_failure_is_rescheduled_then_dead_lettered(queue, fake_redis):
    """Three attempts with the same job id, then the dead-letter list."""
    handler = Recorder(errors=[ProviderError("upstream 503")] * 3)
    queue.on_job("animate-image", handler)
    job_id = await queue.enqueue("animate-image", {"projectId": "p1"})

    for _ in range(3):
        assert await queue.process_next(timeout=0)

    assert [c.attempt for c in handler.contexts] == [1, 2, 3]
    assert {c.job_id for c in handler.contexts} == {job_id}
    assert fake_redis.lists[DEAD_LETTER_KEY] == [job_id]
    meta = await queue.get_task_meta(job_id)
    assert meta["status"] == "dead_letter"
    assert meta["last_error"] == "upstream 503"
    assert await queue.process_next(timeout=0) is False


@pytest.mark.asyncio
async def test_retry_waits_for_backoff(fake_redis):
    queue = TaskQueue(fake_redis, max_attempts=3, backoff_seconds=30)
    handler = Recorder(errors=[ProviderError("timeout")])
    queue.on_job("generate-background", handler)
    job_id = await queue.enqueue("generate-background", {"projectId": "p1"})

    await queue.process_next(timeout=0)

    assert job_id in fake_redis.zsets[DELAYED_KEY]
    assert await queue.process_next(timeout=0) is False

    assert await queue.promote_due_jobs(now=time.time() + 31) == 1
    assert await queue.process_next(timeout=0)
    assert handler.contexts[-1].attempt == 2


@pytest.mark.asyncio
async def test_non_retryable_failure_dead_letters_immediately(queue, fake_redis):
    handler = Recorder(errors=[ValidationError("No main image found")])
    queue.on_job("generate-background", handler)
    job_id = await queue.enqueue("generate-background", {"projectId": "p1"})

    await queue.process_next(timeout=0)

    assert len(handler.contexts) == 1
    assert fake_redis.lists[DEAD_LETTER_KEY] == [job_id]
    assert DELAYED_KEY not in fake_redis.zsets or job_id not in fake_redis.zsets[DELAYED_KEY]


@pytest.mark.asyncio
async def test_job_without_handler_is_dead_lettered(queue, fake_redis):
    job_id = await queue.enqueue("unknown-job", {})

    await queue.process_next(timeout=0)

    assert fake_redis.lists[DEAD_LETTER_KEY] == [job_id]


@pytest.mark.asyncio
async def test_stale_jobs_are_recovered(queue, fake_redis):
    job_id = await queue.enqueue("generate-background", {"projectId": "p1"})
    await queue.dequeue(timeout=0)

    assert await queue.recover_stale_tasks(now=time.time() + 10) == 0
    assert await queue.recover_stale_tasks(now=time.time() + 3600) == 1

    assert fake_redis.lists[QUEUE_KEY] == [job_id]
    assert fake_redis.lists[PROCESSING_KEY] == []


@pytest.mark.asyncio
async def test_stale_job_on_final_attempt_is_dead_lettered(fake_redis):
    queue = TaskQueue(fake_redis, max_attempts=1)
    job_id = await queue.enqueue("generate-background", {"projectId": "p1"})
    await queue.dequeue(timeout=0)

    assert await queue.recover_stale_tasks(now=time.time() + 3600) == 0

    assert fake_redis.lists[DEAD_LETTER_KEY] == [job_id]


@pytest.mark.asyncio
async def test_dead_letter_retry_resets_budget(queue, fake_redis):
    job_id = await queue.enqueue("generate-background", {"projectId": "p1"})
    await queue.dequeue(timeout=0)
    await queue.nack(job_id, "bad input", retryable=False)

    assert await queue.get_dead_letter_jobs() == [job_id]
    assert await queue.retry_dead_letter(job_id)
    assert await queue.retry_dead_letter("missing") is False

    meta = await queue.get_task_meta(job_id)
    assert meta["attempts"] == "0"
    assert fake_redis.lists[QUEUE_KEY] == [job_id]
    assert fake_redis.lists[DEAD_LETTER_KEY] == []


def test_backoff_grows_exponentially():
    assert backoff_delay(1, 5) == 5
    assert backoff_delay(2, 5) == 10
    assert backoff_delay(3, 5) == 20
    assert backoff_delay(20, 5) == 600


@pytest.mark.asyncio
async def test_queue_drives_background_stage(queue, projects, service):
    register_handlers(queue, service)
    project = await make_project(projects)
    await projects.transition(project.id, ProjectStatus.QUEUED)
    await queue.enqueue("generate-background", {"projectId": project.id})

    assert await queue.process_next(timeout=0)

    assert (await projects.get_project(project.id)).status == ProjectStatus.IMAGE_READY


@pytest.mark.asyncio
async def test_consumer_overlaps_slow_jobs(fake_redis):
    queue = TaskQueue(fake_redis, concurrency=2)
    started = []
    release = asyncio.Event()

    async def slow(payload, ctx):
        started.append(payload["n"])
        await release.wait()

    queue.on_job("animate-image", slow)
    await queue.enqueue("animate-image", {"n": 1})
    await queue.enqueue("animate-image", {"n": 2})

    stop = asyncio.Event()
    consumer = asyncio.create_task(queue.run_forever(stop, timeout=1))
    for _ in range(200):
        if len(started) == 2:
            break
        await asyncio.sleep(0.01)

    assert started == [1, 2]
    release.set()
    stop.set()
    await asyncio.wait_for(consumer, timeout=5)
    assert fake_redis.lists[PROCESSING_KEY] == []
    assert fake_redis.lists[QUEUE_KEY] == []


@pytest.mark.asyncio
async def test_consumer_respects_concurrency_limit(fake_redis):
    queue = TaskQueue(fake_redis, concurrency=1)
    started = []
    release = asyncio.Event()

    async def slow(payload, ctx):
        started.append(payload["n"])
        await release.wait()

    queue.on_job("animate-image", slow)
    await queue.enqueue("animate-image", {"n": 1})
    await queue.enqueue("animate-image", {"n": 2})

    stop = asyncio.Event()
    consumer = asyncio.create_task(queue.run_forever(stop, timeout=1))
    await asyncio.sleep(0.1)

    assert started == [1]
    assert await queue.get_queue_length() == 1
    stop.set()
    release.set()
    await asyncio.wait_for(consumer, timeout=5)
    assert started == [1]


@pytest.mark.asyncio
async def test_heartbeat_keeps_long_job_in_flight(queue, fake_redis):
    job_id = await queue.enqueue("animate-image", {"projectId": "p1"})
    await queue.dequeue(timeout=0)
    later = time.time() + 3000

    await queue.heartbeat(job_id, now=later)

    assert await queue.recover_stale_tasks(now=later + 60) == 0
    assert fake_redis.lists[PROCESSING_KEY] == [job_id]
    assert await queue.recover_stale_tasks(now=later + 601) == 1


@pytest.mark.asyncio
async def test_running_handler_refreshes_heartbeat(fake_redis):
    queue = TaskQueue(fake_redis, heartbeat_interval=0.01)
    seen = []

    async def slow(payload, ctx):
        meta_key = f"jobqueue:meta:{ctx.job_id}"
        before = float(fake_redis.hashes[meta_key]["heartbeat_at"])
        await asyncio.sleep(0.1)
        seen.append((before, float(fake_redis.hashes[meta_key]["heartbeat_at"])))

    queue.on_job("animate-image", slow)
    await queue.enqueue("animate-image", {"projectId": "p1"})

    assert await queue.process_next(timeout=0)

    before, after = seen[0]
    assert after > before
