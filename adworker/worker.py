"""
Queue consumer process.

Registers the pipeline stages as job handlers and consumes jobs until
interrupted. Runs standalone (`python -m adworker.worker`) or inside the
FastAPI app's lifespan (see main.py).
"""

import asyncio
import logging
import signal

from .config import Settings, configure_logging
from .pipeline.factory import build_pipeline
from .pipeline.models import JobContext, JobType
from .pipeline.orchestrator import VideoGenerationService
from .queue import TaskQueue

logger = logging.getLogger(__name__)


def register_handlers(queue: TaskQueue, service: VideoGenerationService) -> None:
    """Route every job type to the pipeline service."""
    for job_type in JobType:
        async def handle(payload: dict, ctx: JobContext, job_type: str = job_type.value):
            return await service.handle_job(job_type, payload, ctx)

        queue.on_job(job_type.value, handle)


async def run_worker(settings: Settings) -> None:
    pipeline = build_pipeline(settings)
    queue = TaskQueue.from_settings(settings)
    register_handlers(queue, pipeline.service)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    logger.info("Worker starting up...")
    try:
        await queue.run_forever(stop)
    finally:
        await queue.close()
        logger.info("Worker shut down")


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings)
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
