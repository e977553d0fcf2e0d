"""
Redis-backed durable job queue with a per-job retry budget.

Uses the BLMOVE (reliable queue) pattern so a job is never lost:
  1. LPUSH → `jobqueue:jobs`                 (enqueue)
  2. BLMOVE → `jobqueue:processing`          (atomic dequeue + in-flight tracking)
  3. LREM from processing on success         (ack)
  4. On failure (nack):
       retryable and attempts left → `jobqueue:delayed` scored by due time
       otherwise                   → `jobqueue:dead_letter`
  5. Due delayed jobs are promoted back to `jobqueue:jobs`

Keys:
  jobqueue:jobs             — pending job ids (Redis list, FIFO)
  jobqueue:processing       — in-flight job ids (Redis list)
  jobqueue:delayed          — scheduled retries (Redis sorted set, score = due unix time)
  jobqueue:dead_letter      — permanently failed job ids (Redis list)
  jobqueue:meta:{job_id}    — per-job metadata (Redis hash, TTL 24h)

Delivery is at-least-once: a worker crash leaves the job in `processing`
and `recover_stale_tasks()` hands it out again under the same job id.
While a handler runs its `heartbeat_at` field is refreshed, so a long
but healthy job is never treated as stale.
"""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .config import Settings
from .pipeline.models import JobContext

logger = logging.getLogger(__name__)

QUEUE_KEY = "jobqueue:jobs"
PROCESSING_KEY = "jobqueue:processing"
DELAYED_KEY = "jobqueue:delayed"
DEAD_LETTER_KEY = "jobqueue:dead_letter"
META_PREFIX = "jobqueue:meta:"
META_TTL = 86400  # 24 hours — metadata auto-expires

MAX_ERROR_LENGTH = 500
MAX_BACKOFF_SECONDS = 600

JobHandler = Callable[[dict, JobContext], Awaitable[Any]]


def _str(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


def backoff_delay(attempt: int, base_seconds: float) -> float:
    """Exponential delay before retry number `attempt` + 1."""
    return min(MAX_BACKOFF_SECONDS, base_seconds * (2 ** max(0, attempt - 1)))


class TaskQueue:
    """
    Usage:
        queue = TaskQueue.from_settings(settings)
        queue.on_job("generate-background", handler)
        job_id = await queue.enqueue("generate-background", {"projectId": pid})
        await queue.run_forever()
    """

    def __init__(
        self,
        redis_client,
        max_attempts: int = 3,
        backoff_seconds: float = 5,
        stale_timeout: int = 600,
        heartbeat_interval: Optional[float] = None,
        concurrency: int = 1,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.redis = redis_client
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.stale_timeout = stale_timeout
        # Must stay well below stale_timeout or live jobs get redelivered
        self.heartbeat_interval = heartbeat_interval or max(1.0, stale_timeout / 4)
        self.concurrency = concurrency
        self._handlers: dict[str, JobHandler] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "TaskQueue":
        if not settings.redis_url:
            raise RuntimeError("REDIS_URL must be set")
        client = aioredis.from_url(settings.redis_url, decode_responses=True)
        return cls(
            client,
            max_attempts=settings.job_max_attempts,
            backoff_seconds=settings.job_backoff_seconds,
            stale_timeout=settings.stale_job_timeout_seconds,
            heartbeat_interval=settings.job_heartbeat_seconds,
            concurrency=settings.worker_concurrency,
        )

    def on_job(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    # ── Enqueue ──────────────────────────────────────────────────────────

    async def enqueue(
        self,
        job_type: str,
        payload: dict,
        max_attempts: Optional[int] = None,
    ) -> str:
        """Add a job to the back of the queue. Returns its job id."""
        job_id = str(uuid4())
        attempts = max_attempts or self.max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        meta = {
            "job_id": job_id,
            "task_type": job_type,
            "payload": json.dumps(payload),
            "enqueued_at": str(time.time()),
            "status": "queued",
            "attempts": "0",
            "max_attempts": str(attempts),
        }

        meta_key = f"{META_PREFIX}{job_id}"
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(meta_key, mapping=meta)
            pipe.expire(meta_key, META_TTL)
            # LPUSH = new items go to left; pop from right = FIFO
            pipe.lpush(QUEUE_KEY, job_id)
            await pipe.execute()

        logger.info(f"Enqueued job {job_id} (type={job_type}, max_attempts={attempts})")
        return job_id

    # ── Reliable Dequeue (BLMOVE) ────────────────────────────────────────

    async def dequeue(self, timeout: int = 5) -> Optional[str]:
        """
        Atomically move a job from pending to processing and count the
        attempt. Returns the job id or None on timeout.
        """
        result = await self.redis.blmove(
            QUEUE_KEY, PROCESSING_KEY,
            timeout=timeout,
            src="RIGHT", dest="LEFT",
        )
        if result is None:
            return None

        job_id = _str(result)
        meta_key = f"{META_PREFIX}{job_id}"
        await self.redis.hincrby(meta_key, "attempts", 1)
        now = str(time.time())
        await self.redis.hset(meta_key, mapping={
            "processing_started_at": now,
            "heartbeat_at": now,
            "status": "processing",
        })

        logger.info(f"Dequeued job {job_id} → processing")
        return job_id

    # ── Ack / Nack ───────────────────────────────────────────────────────

    async def ack(self, job_id: str) -> None:
        """Acknowledge successful completion — remove from the processing list."""
        await self.redis.lrem(PROCESSING_KEY, 1, job_id)
        await self.update_task_status(job_id, "completed")
        logger.info(f"Acked job {job_id}")

    async def nack(self, job_id: str, error_msg: str = "", retryable: bool = True) -> str:
        """
        Negative-acknowledge a failed job.

        Schedules a retry with exponential backoff while the job has
        attempts left and the error is retryable; otherwise moves it to the
        dead-letter list. Returns the new status.
        """
        meta = await self.get_task_meta(job_id) or {}
        attempts = int(meta.get("attempts", 0))
        max_attempts = int(meta.get("max_attempts", self.max_attempts))
        meta_key = f"{META_PREFIX}{job_id}"

        if error_msg:
            await self.redis.hset(meta_key, "last_error", error_msg[:MAX_ERROR_LENGTH])

        # Remove from processing list first
        await self.redis.lrem(PROCESSING_KEY, 1, job_id)

        if retryable and attempts < max_attempts:
            delay = backoff_delay(attempts, self.backoff_seconds)
            await self.redis.zadd(DELAYED_KEY, {job_id: time.time() + delay})
            await self.update_task_status(job_id, "retry_scheduled")
            logger.warning(
                f"Nacked job {job_id} (attempt {attempts}/{max_attempts}), retry in {delay:.0f}s"
            )
            return "retry_scheduled"

        await self.redis.lpush(DEAD_LETTER_KEY, job_id)
        await self.update_task_status(job_id, "dead_letter")
        reason = "non-retryable error" if not retryable else f"{attempts} attempts"
        logger.error(f"Job {job_id} moved to dead-letter queue after {reason}: {error_msg}")
        return "dead_letter"

    # ── Delayed Retries ──────────────────────────────────────────────────

    async def promote_due_jobs(self, now: Optional[float] = None) -> int:
        """Move scheduled retries whose due time has passed back to pending."""
        now = time.time() if now is None else now
        due = await self.redis.zrangebyscore(DELAYED_KEY, 0, now)
        promoted = 0
        for item in due:
            job_id = _str(item)
            # ZREM wins at most once across competing workers
            if await self.redis.zrem(DELAYED_KEY, job_id):
                await self.redis.lpush(QUEUE_KEY, job_id)
                await self.update_task_status(job_id, "queued")
                promoted += 1
        if promoted:
            logger.info(f"Promoted {promoted} delayed job(s) to the queue")
        return promoted

    # ── Stale Task Recovery ──────────────────────────────────────────────

    async def recover_stale_tasks(self, now: Optional[float] = None) -> int:
        """
        Requeue in-flight jobs whose heartbeat is older than the stale
        timeout (likely from a crashed worker). A job whose budget is already spent goes to the
        dead-letter list instead. Call on worker start-up and periodically.
        Returns the number of recovered jobs.
        """
        now = time.time() if now is None else now
        processing_items = await self.redis.lrange(PROCESSING_KEY, 0, -1)
        recovered = 0

        for item in processing_items:
            job_id = _str(item)
            meta = await self.get_task_meta(job_id)

            if not meta:
                # No metadata — orphan; remove from processing
                await self.redis.lrem(PROCESSING_KEY, 1, job_id)
                logger.warning(f"Removed orphaned job {job_id} from processing (no metadata)")
                continue

            last_seen = float(meta.get("heartbeat_at") or meta.get("processing_started_at") or 0)
            if last_seen <= 0 or (now - last_seen) <= self.stale_timeout:
                continue

            if int(meta.get("attempts", 0)) >= int(meta.get("max_attempts", self.max_attempts)):
                await self.nack(job_id, "Worker lost the job on its final attempt", retryable=False)
                continue

            await self.redis.lrem(PROCESSING_KEY, 1, job_id)
            await self.redis.lpush(QUEUE_KEY, job_id)
            await self.update_task_status(job_id, "queued")
            recovered += 1
            logger.warning(
                f"Recovered stale job {job_id} (silent for {int(now - last_seen)}s > {self.stale_timeout}s)"
            )

        if recovered:
            logger.info(f"Recovered {recovered} stale job(s) from processing queue")
        return recovered

    # ── Dead-Letter Inspection ───────────────────────────────────────────

    async def get_dead_letter_jobs(self, limit: int = 50) -> list[str]:
        """Return the most recent dead-letter job ids."""
        items = await self.redis.lrange(DEAD_LETTER_KEY, 0, limit - 1)
        return [_str(item) for item in items]

    async def retry_dead_letter(self, job_id: str) -> bool:
        """Manually retry a dead-letter job with a fresh attempt budget."""
        meta_key = f"{META_PREFIX}{job_id}"
        if not await self.redis.exists(meta_key):
            return False

        await self.redis.lrem(DEAD_LETTER_KEY, 1, job_id)
        await self.redis.hset(meta_key, "attempts", "0")
        await self.redis.lpush(QUEUE_KEY, job_id)
        await self.update_task_status(job_id, "queued")
        logger.info(f"Retried dead-letter job {job_id}")
        return True

    # ── Metadata Helpers ─────────────────────────────────────────────────

    async def get_queue_length(self) -> int:
        return await self.redis.llen(QUEUE_KEY)

    async def get_processing_count(self) -> int:
        return await self.redis.llen(PROCESSING_KEY)

    async def get_task_meta(self, job_id: str) -> Optional[dict]:
        """Get metadata for a queued/processing job."""
        data = await self.redis.hgetall(f"{META_PREFIX}{job_id}")
        if not data:
            return None
        return {_str(k): _str(v) for k, v in data.items()}

    async def update_task_status(self, job_id: str, status: str) -> None:
        await self.redis.hset(f"{META_PREFIX}{job_id}", "status", status)

    async def heartbeat(self, job_id: str, now: Optional[float] = None) -> None:
        """Mark an in-flight job as alive so stale recovery leaves it alone."""
        now = time.time() if now is None else now
        await self.redis.hset(f"{META_PREFIX}{job_id}", "heartbeat_at", str(now))

    # ── Consumer ─────────────────────────────────────────────────────────

    async def process_next(self, timeout: int = 5) -> bool:
        """
        Promote due retries, then run at most one job.
        Returns False when nothing was dequeued.
        """
        await self.promote_due_jobs()

        job_id = await self.dequeue(timeout=timeout)
        if job_id is None:
            return False

        await self.run_job(job_id)
        return True

    async def run_job(self, job_id: str) -> None:
        """Run the handler for a dequeued job, then ack or nack it."""
        meta = await self.get_task_meta(job_id)
        if not meta:
            await self.redis.lrem(PROCESSING_KEY, 1, job_id)
            logger.warning(f"Job {job_id} has no metadata (expired?), dropping")
            return

        job_type = meta.get("task_type", "")
        handler = self._handlers.get(job_type)
        if handler is None:
            await self.nack(job_id, f"No handler for job type '{job_type}'", retryable=False)
            return

        ctx = JobContext(
            job_id=job_id,
            attempt=int(meta.get("attempts", 1)),
            max_attempts=int(meta.get("max_attempts", self.max_attempts)),
        )

        beat = asyncio.create_task(self._keep_alive(job_id))
        try:
            payload = json.loads(meta.get("payload") or "{}")
            await handler(payload, ctx)
        except Exception as e:
            logger.error(f"Job {job_id} ({job_type}) failed on attempt {ctx.attempt}/{ctx.max_attempts}: {e}")
            await self.nack(job_id, str(e), retryable=getattr(e, "retryable", True))
        else:
            await self.ack(job_id)
        finally:
            beat.cancel()
            try:
                await beat
            except asyncio.CancelledError:
                pass

    async def _keep_alive(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.heartbeat(job_id)
            except RedisError as e:
                logger.warning(f"Heartbeat for job {job_id} failed: {e}")

    async def run_forever(
        self,
        stop: Optional[asyncio.Event] = None,
        timeout: int = 5,
        recovery_interval: Optional[float] = None,
    ) -> None:
        """
        Consume jobs until `stop` is set, running up to `concurrency` jobs
        at once. Redis outages are retried, not fatal. In-flight jobs are
        awaited before returning.
        """
        stop = stop or asyncio.Event()
        recovery_interval = recovery_interval or max(60.0, self.stale_timeout / 2)
        slots = asyncio.Semaphore(self.concurrency)
        in_flight: set[asyncio.Task] = set()
        logger.info(
            f"Queue consumer started (concurrency={self.concurrency}, "
            f"handlers: {', '.join(sorted(self._handlers))})"
        )

        def _finished(task: asyncio.Task) -> None:
            in_flight.discard(task)
            slots.release()
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"Job task crashed: {task.exception()!r}")

        last_recovery = 0.0
        while not stop.is_set():
            await slots.acquire()
            if stop.is_set():
                slots.release()
                break
            try:
                if time.monotonic() - last_recovery >= recovery_interval:
                    await self.recover_stale_tasks()
                    last_recovery = time.monotonic()
                await self.promote_due_jobs()
                job_id = await self.dequeue(timeout=timeout)
            except RedisError as e:
                slots.release()
                logger.error(f"Queue consumer Redis error: {e}. Retrying in 5s")
                await asyncio.sleep(5)
                continue

            if job_id is None:
                slots.release()
                continue

            task = asyncio.create_task(self.run_job(job_id))
            in_flight.add(task)
            task.add_done_callback(_finished)

        if in_flight:
            logger.info(f"Waiting for {len(in_flight)} in-flight job(s) to finish")
            await asyncio.gather(*in_flight, return_exceptions=True)
        logger.info("Queue consumer stopped")

    async def close(self) -> None:
        await self.redis.aclose()
