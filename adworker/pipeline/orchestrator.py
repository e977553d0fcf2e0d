"""
VideoGenerationService — the two-stage, human-gated pipeline.

  Stage 1 (generate-background):
    Scene (Photoroom) → optional upscale (Stability) → store → scene asset
    → optional speech preview (Yandex) → IMAGE_READY, waits for the user
  Stage 2 (animate-image), only after approval:
    active scene → Kling animation (polled) → music → moviepy render
    → store → COMPLETED

Optional steps (upscale, speech, animation) degrade gracefully. Anything
else propagates to the queue; the stage marks the project FAILED only when
the error is not retryable or the attempt budget is spent.
"""

import asyncio
import logging
from datetime import datetime, timezone
from io import BytesIO
from pathlib import Path
from typing import Any, Optional

from PIL import Image

from ..config import Settings
from .animate import Animator
from .errors import (
    PipelineError,
    PreconditionError,
    StateConflictError,
    ValidationError,
)
from .models import (
    Asset,
    AssetType,
    JobContext,
    JobPayload,
    JobType,
    Project,
    ProjectSettings,
    ProjectStatus,
    SettingsPatch,
    get_dimensions,
)
from .polling import poll
from .project_service import ProjectService
from .render import PRIMARY_COLOR, CompositionInput, VideoCompositor
from .scene_gen import SceneGenerator
from .storage import BlobStorage
from .tts import MusicLibrary, SpeechSynthesizer
from .upscale import Upscaler

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New product"


def resolve_speech_text(settings: ProjectSettings) -> str:
    """`ttsText`, or the product name and selling points read out in order."""
    if settings.tts_text and settings.tts_text.strip():
        return settings.tts_text.strip()
    parts = [settings.product_name or "", *(settings.usps or [])]
    return ". ".join(p.strip() for p in parts if p and p.strip())


def _image_size(image_bytes: bytes) -> tuple[int, int]:
    with Image.open(BytesIO(image_bytes)) as image:
        return image.size


def _error_message(exc: Exception) -> str:
    if isinstance(exc, PipelineError):
        return str(exc)
    return f"Internal error ({type(exc).__name__}): {exc}"


# ═════════════════════════════════════════════════════════════════════════════
# Stage base — retry-aware failure policy
# ═════════════════════════════════════════════════════════════════════════════

class Stage:
    name = "stage"

    def __init__(self, projects: ProjectService):
        self.projects = projects

    async def run(self, project_id: str, ctx: JobContext) -> Optional[dict]:
        """
        Execute the stage. Returns a result dict, or None when the job was
        a duplicate and nothing was done. Re-raises every failure so the
        queue can retry or dead-letter it.
        """
        logger.info(
            f"START {self.name} for project {project_id} "
            f"(job {ctx.job_id}, attempt {ctx.attempt}/{ctx.max_attempts})"
        )
        try:
            return await self._execute(project_id, ctx)
        except PreconditionError as e:
            logger.error(f"{self.name} rejected for project {project_id}: {e}")
            raise
        except Exception as e:
            logger.error(
                f"{self.name} FAILED for project {project_id} "
                f"(attempt {ctx.attempt}/{ctx.max_attempts}): {e}",
                exc_info=True,
            )
            if ctx.is_final_attempt or not getattr(e, "retryable", True):
                logger.error("No retries left. Marking project as FAILED.")
                await self._mark_failed(project_id, e)
            else:
                logger.warning(f"Attempt {ctx.attempt} failed. Will retry...")
            raise

    async def _execute(self, project_id: str, ctx: JobContext) -> Optional[dict]:
        raise NotImplementedError

    async def _mark_failed(self, project_id: str, exc: Exception) -> None:
        try:
            await self.projects.fail(project_id, _error_message(exc))
        except PipelineError as db_error:
            logger.error(f"Failed to mark project {project_id} as FAILED: {db_error}")

    async def _enter(
        self,
        project: Project,
        ctx: JobContext,
        entry_states: frozenset,
        working_state: ProjectStatus,
    ) -> Optional[Project]:
        """
        Claim the project for this job by moving it into `working_state`.

        The transition is the serialization point between duplicate jobs:
        whoever wins the compare-and-swap owns the stage. A redelivery of
        the owning job resumes; anyone else gets None.
        """
        if project.status == working_state and project.settings.stage_job_id == ctx.job_id:
            logger.info(f"Resuming {self.name} for project {project.id} (attempt {ctx.attempt})")
            return project

        try:
            return await self.projects.transition(
                project.id,
                working_state,
                expected=entry_states,
                settings_patch=SettingsPatch(stage_job_id=ctx.job_id),
            )
        except StateConflictError as e:
            logger.warning(f"Skipping duplicate {self.name} job {ctx.job_id}: {e}")
            return None


# ═════════════════════════════════════════════════════════════════════════════
# Stage 1 — background generation
# ═════════════════════════════════════════════════════════════════════════════

class BackgroundStage(Stage):
    name = "generate-background"
    entry_states = frozenset({ProjectStatus.DRAFT, ProjectStatus.QUEUED})

    def __init__(
        self,
        projects: ProjectService,
        storage: BlobStorage,
        scene_generator: SceneGenerator,
        upscaler: Upscaler,
        synthesizer: SpeechSynthesizer,
        settings: Settings,
    ):
        super().__init__(projects)
        self.storage = storage
        self.scene_generator = scene_generator
        self.upscaler = upscaler
        self.synthesizer = synthesizer
        self.default_prompt = settings.default_scene_prompt

    async def _execute(self, project_id: str, ctx: JobContext) -> Optional[dict]:
        project = await self.projects.get_project(project_id)

        resuming = (
            project.status == ProjectStatus.GENERATING_IMAGE
            and project.settings.stage_job_id == ctx.job_id
        )
        if project.status not in self.entry_states and not resuming:
            logger.warning(
                f"Project {project_id} is already {project.status.value}; "
                f"nothing to do for job {ctx.job_id}"
            )
            return None

        # ── 1. Source image ──────────────────────────────────────────────
        settings = project.settings
        if not settings.main_image:
            raise ValidationError("No main image found")

        # ── 2. Claim ─────────────────────────────────────────────────────
        project = await self._enter(project, ctx, self.entry_states, ProjectStatus.GENERATING_IMAGE)
        if project is None:
            return None

        width, height = get_dimensions(settings.aspect_ratio)

        # ── 3. Scene ─────────────────────────────────────────────────────
        prompt = (settings.scene_prompt or "").strip() or self.default_prompt
        logger.info(f"Generating scene: \"{prompt[:50]}...\" at {width}x{height}")
        image = await self.scene_generator.generate(settings.main_image, prompt, width, height)
        provider = self.scene_generator.provider

        # ── 4. Upscale (best effort) ─────────────────────────────────────
        upscaled = False
        if self.upscaler.enabled:
            try:
                image = await self.upscaler.upscale(image)
                provider = f"{provider}+{self.upscaler.provider}"
                upscaled = True
            except PipelineError as e:
                logger.warning(f"Upscale failed, keeping the original scene: {e}")
        else:
            logger.warning("Upscaler not configured, skipping upscale")

        # ── 5. Store + scene asset ───────────────────────────────────────
        scene_url = await self.storage.upload(image, "image/png", "processed")
        out_width, out_height = _image_size(image)
        scene_asset = await self.projects.create_asset(
            project_id,
            AssetType.IMAGE_SCENE,
            provider,
            scene_url,
            meta={
                "prompt": prompt,
                "width": out_width,
                "height": out_height,
                "upscaled": upscaled,
                "jobId": ctx.job_id,
                "createdAt": datetime.now(timezone.utc).isoformat(),
            },
        )

        # ── 6. Speech preview (best effort) ──────────────────────────────
        speech_url = await self._speech_preview(project_id, settings)

        # ── 7. Human gate ────────────────────────────────────────────────
        await self.projects.transition(
            project_id,
            ProjectStatus.IMAGE_READY,
            expected=ProjectStatus.GENERATING_IMAGE,
            settings_patch=SettingsPatch(
                active_scene_asset_id=scene_asset.id,
                scene_prompt=prompt,
            ),
        )

        logger.info(f"{self.name} COMPLETE for project {project_id}")
        return {
            "scene_url": scene_url,
            "scene_asset_id": scene_asset.id,
            "speech_url": speech_url,
            "status": ProjectStatus.IMAGE_READY,
        }

    async def _speech_preview(self, project_id: str, settings: ProjectSettings) -> Optional[str]:
        text = resolve_speech_text(settings)
        if settings.tts_enabled is False or not text:
            logger.info("Speech disabled or no text, skipping preview")
            return None

        try:
            speech = await self.synthesizer.synthesize(text, settings.tts_voice)
            speech_url = await self.storage.upload(speech.audio, speech.mime_type, "audio")
            await self.projects.create_asset(
                project_id,
                AssetType.AUDIO_TTS,
                self.synthesizer.provider,
                speech_url,
                meta={"text": text, "voice": speech.voice},
            )
            return speech_url
        except PipelineError as e:
            logger.warning(f"Speech generation failed, continuing without audio: {e}")
            return None


# ═════════════════════════════════════════════════════════════════════════════
# Stage 2 — animation and final render
# ═════════════════════════════════════════════════════════════════════════════

class AnimationStage(Stage):
    name = "animate-image"
    entry_states = frozenset({ProjectStatus.IMAGE_READY})

    def __init__(
        self,
        projects: ProjectService,
        storage: BlobStorage,
        animator: Animator,
        compositor: VideoCompositor,
        music: MusicLibrary,
        settings: Settings,
    ):
        super().__init__(projects)
        self.storage = storage
        self.animator = animator
        self.compositor = compositor
        self.music = music
        self.default_prompt = settings.default_animation_prompt
        self.poll_interval_ms = settings.video_poll_delay_ms
        self.max_poll_attempts = settings.video_max_poll_attempts

    async def _execute(self, project_id: str, ctx: JobContext) -> Optional[dict]:
        project = await self.projects.get_project(project_id)

        resuming = (
            project.status == ProjectStatus.GENERATING_VIDEO
            and project.settings.stage_job_id == ctx.job_id
        )
        if project.status != ProjectStatus.IMAGE_READY and not resuming:
            raise PreconditionError(
                f"Project must be in IMAGE_READY status, current: {project.status.value}"
            )

        # ── 1. Claim ─────────────────────────────────────────────────────
        project = await self._enter(project, ctx, self.entry_states, ProjectStatus.GENERATING_VIDEO)
        if project is None:
            return None

        settings = project.settings
        width, height = get_dimensions(settings.aspect_ratio)

        # ── 2. Active scene ──────────────────────────────────────────────
        scene = await self._resolve_scene(project)
        logger.info(f"Using scene {scene.id}: {scene.storage_url}")

        # ── 3. Speech (optional) ─────────────────────────────────────────
        speech_assets = await self.projects.find_assets(project_id, AssetType.AUDIO_TTS)
        speech_url = speech_assets[0].storage_url if speech_assets else None

        # ── 4. Animation (best effort) ───────────────────────────────────
        prompt = (settings.prompt or "").strip() or self.default_prompt
        fragment_url = await self._animate(project_id, scene.storage_url, prompt)

        # ── 5. Music ─────────────────────────────────────────────────────
        music_url = self.music.url_for(settings.music_theme)

        # ── 6. Render ────────────────────────────────────────────────────
        composition = CompositionInput(
            title=settings.product_name or DEFAULT_TITLE,
            main_image=scene.storage_url,
            bg_video_url=fragment_url,
            usps=settings.usps or [],
            primary_color=settings.primary_color or PRIMARY_COLOR,
            audio_url=speech_url,
            background_music_url=music_url,
            width=width * 2,
            height=height * 2,
        )
        output_path = await self.compositor.render(composition)

        # ── 7. Upload deliverable / 8. clean up ──────────────────────────
        try:
            data = await asyncio.to_thread(output_path.read_bytes)
            final_url = await self.storage.upload(data, "video/mp4", "renders")
        finally:
            _remove_quietly(output_path)

        await self.projects.transition(
            project_id,
            ProjectStatus.COMPLETED,
            expected=ProjectStatus.GENERATING_VIDEO,
            result_video_url=final_url,
        )

        logger.info(f"{self.name} COMPLETE for project {project_id}: {final_url}")
        return {
            "result_video_url": final_url,
            "fragment_url": fragment_url,
            "status": ProjectStatus.COMPLETED,
        }

    async def _resolve_scene(self, project: Project) -> Asset:
        active_id = project.settings.active_scene_asset_id
        if active_id:
            asset = await self.projects.get_asset(active_id)
            if asset and asset.project_id == project.id and asset.type == AssetType.IMAGE_SCENE:
                return asset

        scenes = await self.projects.find_assets(project.id, AssetType.IMAGE_SCENE)
        if not scenes:
            raise ValidationError("Scene asset not found. Did you run generate-background first?")

        logger.warning(
            f"Active scene {active_id or '(unset)'} not found for project {project.id}, "
            f"using latest scene {scenes[0].id}"
        )
        return scenes[0]

    async def _animate(self, project_id: str, image_url: str, prompt: str) -> Optional[str]:
        try:
            task_id = await self.animator.submit(image_url, prompt)
            logger.info(f"Kling task {task_id} submitted, polling...")
            video_url = await poll(
                task_id, self.animator.check, self.max_poll_attempts, self.poll_interval_ms
            )
            video = await self.animator.download(video_url)
            fragment_url = await self.storage.upload(video, "video/mp4", "videos")
            await self.projects.create_asset(
                project_id,
                AssetType.VIDEO_FRAGMENT,
                self.animator.provider,
                fragment_url,
                meta={"prompt": prompt, "taskId": task_id},
            )
            logger.info(f"Kling animation ready: {fragment_url}")
            return fragment_url
        except Exception as e:
            logger.error(f"Kling failed: {e}. Will use static image in video.")
            return None


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not delete render artifact {path}: {e}")


# ═════════════════════════════════════════════════════════════════════════════
# Service façade
# ═════════════════════════════════════════════════════════════════════════════

class VideoGenerationService:
    """
    Entry point used by the queue worker.

    Usage:
        service = VideoGenerationService(background, animation)
        await service.handle_job("generate-background", {"projectId": pid}, ctx)
    """

    def __init__(self, background: BackgroundStage, animation: AnimationStage):
        self.background = background
        self.animation = animation

    async def generate_background(self, project_id: str, ctx: JobContext) -> Optional[dict]:
        return await self.background.run(project_id, ctx)

    async def animate_image(self, project_id: str, ctx: JobContext) -> Optional[dict]:
        return await self.animation.run(project_id, ctx)

    async def generate_video(self, project_id: str, ctx: JobContext) -> Optional[dict]:
        """Deprecated all-in-one flow: both stages in one job, no human gate."""
        logger.warning(
            f"Job type '{JobType.GENERATE_VIDEO.value}' is deprecated; "
            f"enqueue generate-background and animate-image instead"
        )
        background = await self.background.run(project_id, ctx)
        project = await self.background.projects.get_project(project_id)
        resuming = (
            project.status == ProjectStatus.GENERATING_VIDEO
            and project.settings.stage_job_id == ctx.job_id
        )
        if project.status != ProjectStatus.IMAGE_READY and not resuming:
            return background
        animation = await self.animation.run(project_id, ctx)
        return {**(background or {}), **(animation or {})}

    async def handle_job(self, job_type: str, payload: dict[str, Any], ctx: JobContext) -> Optional[dict]:
        try:
            kind = JobType(job_type)
        except ValueError:
            raise ValidationError(f"Unknown job type '{job_type}'")

        project_id = JobPayload.model_validate(payload).project_id

        if kind == JobType.GENERATE_BACKGROUND:
            return await self.generate_background(project_id, ctx)
        if kind == JobType.ANIMATE_IMAGE:
            return await self.animate_image(project_id, ctx)
        return await self.generate_video(project_id, ctx)
