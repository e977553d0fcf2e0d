"""
User actions that hand work to the queue.

  request_background — start (or redo) scene generation: → QUEUED, enqueue
  request_animation  — approve the scene and enqueue the final render

The queue only needs an `enqueue(job_type, payload)` coroutine.
"""

import logging
from typing import Optional, Protocol

from .errors import PreconditionError, StateConflictError
from .models import EnqueueResponse, JobType, ProjectStatus, SettingsPatch
from .project_service import ProjectService

logger = logging.getLogger(__name__)

BACKGROUND_ENTRY_STATES = frozenset({
    ProjectStatus.DRAFT,
    ProjectStatus.IMAGE_READY,
    ProjectStatus.FAILED,
})


class JobQueue(Protocol):
    async def enqueue(self, job_type: str, payload: dict) -> str: ...


async def request_background(
    projects: ProjectService,
    queue: JobQueue,
    project_id: str,
    scene_prompt: Optional[str] = None,
) -> EnqueueResponse:
    """
    Allowed from DRAFT, IMAGE_READY (regenerate) and FAILED (retry).
    A new scene prompt is saved in the same write that moves the project
    to QUEUED.
    """
    patch = SettingsPatch(last_error=None, failed_at=None)
    if scene_prompt is not None:
        patch.scene_prompt = scene_prompt.strip() or None

    try:
        await projects.transition(
            project_id,
            ProjectStatus.QUEUED,
            expected=BACKGROUND_ENTRY_STATES,
            settings_patch=patch,
        )
    except StateConflictError as e:
        raise PreconditionError(f"Cannot generate a background now: {e}") from e

    try:
        job_id = await queue.enqueue(JobType.GENERATE_BACKGROUND.value, {"projectId": project_id})
    except Exception as e:
        logger.error(f"Enqueue failed for project {project_id}: {e}")
        await projects.fail(project_id, f"Could not queue background generation: {e}")
        raise

    logger.info(f"Background generation queued for project {project_id} (job {job_id})")
    return EnqueueResponse(project_id=project_id, job_id=job_id, status=ProjectStatus.QUEUED)


async def request_animation(
    projects: ProjectService,
    queue: JobQueue,
    project_id: str,
    prompt: Optional[str] = None,
) -> EnqueueResponse:
    """Allowed only from IMAGE_READY. The project stays there until a worker picks the job up."""
    project = await projects.get_project(project_id)
    if project.status != ProjectStatus.IMAGE_READY:
        raise PreconditionError(
            f"Project must be in IMAGE_READY status, current: {project.status.value}"
        )

    if prompt is not None:
        await projects.update_settings(project_id, SettingsPatch(prompt=prompt.strip() or None))

    job_id = await queue.enqueue(JobType.ANIMATE_IMAGE.value, {"projectId": project_id})
    logger.info(f"Animation queued for project {project_id} (job {job_id})")
    return EnqueueResponse(project_id=project_id, job_id=job_id, status=project.status)
