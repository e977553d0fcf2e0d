"""
FastAPI routes for the ad project lifecycle.

Project Endpoints:
  POST  /projects                              — Create a DRAFT project
  GET   /projects/{id}                         — Get project state
  PATCH /projects/{id}/settings                — Edit settings (merged)
  POST  /projects/{id}/generate-background     — Queue (re)generation of the scene
  POST  /projects/{id}/select-scene            — Make a previous scene active
  POST  /projects/{id}/animate                 — Approve the scene, queue the final video
  GET   /projects/{id}/assets                  — List produced assets

The app stores its Pipeline and TaskQueue on `app.state`.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from .actions import request_animation, request_background
from .errors import (
    NotFoundError,
    PipelineError,
    PreconditionError,
    StateConflictError,
    ValidationError,
)
from .factory import Pipeline
from .models import (
    AnimateRequest,
    Asset,
    AssetType,
    CreateProjectRequest,
    EnqueueResponse,
    Project,
    RegenerateBackgroundRequest,
    SelectSceneRequest,
    UserSettingsPatch,
)

logger = logging.getLogger(__name__)


def _pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


def _queue(request: Request):
    queue = getattr(request.app.state, "queue", None)
    if queue is None:
        raise HTTPException(status_code=503, detail="Job queue is not available")
    return queue


def _http_error(e: PipelineError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, (PreconditionError, StateConflictError)):
        return HTTPException(status_code=409, detail=str(e))
    logger.error(f"Project request failed: {e}")
    return HTTPException(status_code=502, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Project Router
# ═════════════════════════════════════════════════════════════════════════════

project_router = APIRouter(prefix="/projects", tags=["projects"])


# ── A. Create / Read ─────────────────────────────────────────────────────────

@project_router.post("", response_model=Project, status_code=201)
async def create_project(body: CreateProjectRequest, request: Request):
    try:
        return await _pipeline(request).projects.create_project(
            user_id=body.user_id,
            title=body.title,
            settings=body.settings,
        )
    except PipelineError as e:
        raise _http_error(e)


@project_router.get("/{project_id}", response_model=Project)
async def get_project(project_id: str, request: Request):
    try:
        return await _pipeline(request).projects.get_project(project_id)
    except PipelineError as e:
        raise _http_error(e)


@project_router.patch("/{project_id}/settings", response_model=Project)
async def update_settings(project_id: str, body: UserSettingsPatch, request: Request):
    """Merge the given keys into settings. Keys not sent are left untouched."""
    try:
        return await _pipeline(request).projects.update_settings(project_id, body)
    except PipelineError as e:
        raise _http_error(e)


# ── B. Background stage ──────────────────────────────────────────────────────

@project_router.post("/{project_id}/generate-background", response_model=EnqueueResponse, status_code=202)
async def generate_background(
    project_id: str,
    request: Request,
    body: Optional[RegenerateBackgroundRequest] = None,
):
    """
    Queue scene generation. Also used to regenerate from IMAGE_READY and
    to retry from FAILED.

    Errors:
      - 404: Unknown project
      - 409: Project is busy or already completed
    """
    queue = _queue(request)
    try:
        return await request_background(
            _pipeline(request).projects,
            queue,
            project_id,
            scene_prompt=body.scene_prompt if body else None,
        )
    except PipelineError as e:
        raise _http_error(e)


@project_router.post("/{project_id}/select-scene", response_model=Project)
async def select_scene(project_id: str, body: SelectSceneRequest, request: Request):
    """Point the project at one of its earlier scenes (undo a regeneration)."""
    try:
        return await _pipeline(request).projects.select_scene(project_id, body.asset_id)
    except PipelineError as e:
        raise _http_error(e)


# ── C. Animation stage ───────────────────────────────────────────────────────

@project_router.post("/{project_id}/animate", response_model=EnqueueResponse, status_code=202)
async def animate(
    project_id: str,
    request: Request,
    body: Optional[AnimateRequest] = None,
):
    """
    Approve the active scene and queue the final video.

    Errors:
      - 409: Project is not in IMAGE_READY
    """
    queue = _queue(request)
    try:
        return await request_animation(
            _pipeline(request).projects,
            queue,
            project_id,
            prompt=body.prompt if body else None,
        )
    except PipelineError as e:
        raise _http_error(e)


@project_router.get("/{project_id}/assets", response_model=list[Asset])
async def list_assets(
    project_id: str,
    request: Request,
    type: AssetType = Query(AssetType.IMAGE_SCENE),
):
    projects = _pipeline(request).projects
    try:
        await projects.get_project(project_id)
        return await projects.find_assets(project_id, type)
    except PipelineError as e:
        raise _http_error(e)
