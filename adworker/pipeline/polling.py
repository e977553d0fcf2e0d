"""
Bounded polling for asynchronous provider tasks.

Waits are cooperative (`asyncio.sleep`), so one worker can keep several
polls in flight without parking a thread per job.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel

from .errors import PollTimeoutError, TaskFailedError

logger = logging.getLogger(__name__)


class PollState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PollResult(BaseModel):
    state: PollState
    payload: Optional[Any] = None
    reason: Optional[str] = None

    @classmethod
    def pending(cls) -> "PollResult":
        return cls(state=PollState.PENDING)

    @classmethod
    def completed(cls, payload: Any) -> "PollResult":
        return cls(state=PollState.COMPLETED, payload=payload)

    @classmethod
    def failed(cls, reason: str) -> "PollResult":
        return cls(state=PollState.FAILED, reason=reason)


CheckFn = Callable[[str], Awaitable[PollResult]]


async def poll(
    task_id: str,
    check_fn: CheckFn,
    max_attempts: int,
    interval_ms: int,
) -> Any:
    """
    Call `check_fn(task_id)` until the task reaches a terminal state.

    Returns the completed payload. Raises TaskFailedError as soon as the
    task reports failure, and PollTimeoutError after `max_attempts`
    consecutive pending checks. Sleeps `interval_ms` between checks only.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        result = await check_fn(task_id)

        if result.state == PollState.COMPLETED:
            logger.info(f"Task {task_id} completed after {attempt} check(s)")
            return result.payload

        if result.state == PollState.FAILED:
            reason = result.reason or "unknown error"
            logger.warning(f"Task {task_id} failed on check {attempt}: {reason}")
            raise TaskFailedError(f"Task {task_id} failed: {reason}")

        logger.info(f"Task {task_id} still pending (check {attempt}/{max_attempts})")
        if attempt < max_attempts:
            await asyncio.sleep(interval_ms / 1000)

    raise PollTimeoutError(
        f"Task {task_id} timed out after {max_attempts} attempts "
        f"({(max_attempts - 1) * interval_ms}ms spent waiting)"
    )
