"""
Worker HTTP service.

The lifespan builds the pipeline, connects the job queue and runs the
queue consumer as a background task next to the API.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from redis.exceptions import RedisError

from .config import Settings, configure_logging
from .pipeline.factory import build_pipeline
from .pipeline.routes import project_router
from .queue import TaskQueue
from .worker import register_handlers

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 10


def create_app(
    settings: Optional[Settings] = None,
    queue: Optional[TaskQueue] = None,
    start_consumer: bool = True,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        cfg = settings or Settings.from_env()
        configure_logging(cfg)
        logger.info("Worker starting up...")

        pipeline = build_pipeline(cfg)
        app.state.settings = cfg
        app.state.pipeline = pipeline

        task_queue = queue
        if task_queue is None and cfg.redis_url:
            task_queue = TaskQueue.from_settings(cfg)
        if task_queue is None:
            logger.warning("No REDIS_URL: enqueue endpoints are disabled")
        app.state.queue = task_queue

        stop = asyncio.Event()
        consumer = None
        if task_queue is not None and start_consumer:
            register_handlers(task_queue, pipeline.service)
            consumer = asyncio.create_task(task_queue.run_forever(stop))
            logger.info("Queue consumer task launched")

        yield

        logger.info("Worker shutting down...")
        stop.set()
        if consumer is not None:
            try:
                await asyncio.wait_for(consumer, timeout=SHUTDOWN_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Consumer did not stop in time, cancelling")
                consumer.cancel()
        if task_queue is not None and queue is None:
            await task_queue.close()

    app = FastAPI(title="adworker", lifespan=lifespan)
    app.include_router(project_router)

    @app.get("/health")
    async def health_check():
        """Verify the worker is up and report queue depth."""
        cfg: Settings = app.state.settings
        body = {
            "status": "ok",
            "supabase_url_set": bool(cfg.supabase_url),
            "redis_url_set": bool(cfg.redis_url),
            "render_mode": cfg.render_mode,
        }
        task_queue = app.state.queue
        if task_queue is not None:
            try:
                body["queue_length"] = await task_queue.get_queue_length()
                body["processing_count"] = await task_queue.get_processing_count()
            except RedisError as e:
                body["status"] = "degraded"
                body["queue_error"] = str(e)
        return body

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("adworker.main:app", host="0.0.0.0", port=port)
