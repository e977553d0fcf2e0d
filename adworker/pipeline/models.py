"""
Pydantic models and enums for the ad generation pipeline.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ── Project Status ───────────────────────────────────────────────────────────

class ProjectStatus(str, Enum):
    DRAFT = "DRAFT"
    QUEUED = "QUEUED"
    GENERATING_IMAGE = "GENERATING_IMAGE"
    IMAGE_READY = "IMAGE_READY"  # human gate: waits for approval
    GENERATING_VIDEO = "GENERATING_VIDEO"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Directed graph of allowed status moves. IMAGE_READY only leaves through an
# explicit user action (regenerate → QUEUED, approve → GENERATING_VIDEO).
TRANSITIONS: dict[ProjectStatus, frozenset] = {
    ProjectStatus.DRAFT: frozenset({
        ProjectStatus.QUEUED,
        ProjectStatus.GENERATING_IMAGE,
        ProjectStatus.FAILED,
    }),
    ProjectStatus.QUEUED: frozenset({
        ProjectStatus.GENERATING_IMAGE,
        ProjectStatus.FAILED,
    }),
    ProjectStatus.GENERATING_IMAGE: frozenset({
        ProjectStatus.IMAGE_READY,
        ProjectStatus.FAILED,
    }),
    ProjectStatus.IMAGE_READY: frozenset({
        ProjectStatus.QUEUED,
        ProjectStatus.GENERATING_VIDEO,
    }),
    ProjectStatus.GENERATING_VIDEO: frozenset({
        ProjectStatus.COMPLETED,
        ProjectStatus.FAILED,
    }),
    ProjectStatus.COMPLETED: frozenset(),
    ProjectStatus.FAILED: frozenset({ProjectStatus.QUEUED}),
}

IN_PROGRESS_STATUSES = frozenset({
    ProjectStatus.QUEUED,
    ProjectStatus.GENERATING_IMAGE,
    ProjectStatus.GENERATING_VIDEO,
})


def can_transition(current: ProjectStatus, target: ProjectStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


# ── Assets ───────────────────────────────────────────────────────────────────

class AssetType(str, Enum):
    IMAGE_CLEAN = "IMAGE_CLEAN"
    IMAGE_SCENE = "IMAGE_SCENE"
    IMAGE_UPSCALED = "IMAGE_UPSCALED"
    VIDEO_FRAGMENT = "VIDEO_FRAGMENT"
    AUDIO_TTS = "AUDIO_TTS"


class Asset(BaseModel):
    """Immutable record of one produced artifact."""
    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str
    type: AssetType
    provider: str
    storage_url: str
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


# ── Settings ─────────────────────────────────────────────────────────────────

ASPECT_RATIOS = ("16:9", "9:16", "1:1", "3:4")
MAX_SELLING_POINTS = 10

# Base generation sizes; the upscaler doubles them.
DIMENSIONS = {
    "16:9": (1024, 576),
    "9:16": (576, 1024),
    "1:1": (1024, 1024),
    "4:3": (1024, 768),
    "3:4": (768, 1024),
}


def get_dimensions(ratio: Optional[str]) -> tuple[int, int]:
    return DIMENSIONS.get(ratio or "9:16", DIMENSIONS["9:16"])


class ProjectSettings(BaseModel):
    """
    The project's settings bag as read from storage.

    Keys are camelCase on the wire. Unknown keys are ignored on read but
    survive in storage because writes are merges, not replacements.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    product_name: Optional[str] = Field(None, alias="productName")
    description: Optional[str] = None
    usps: list[str] = Field(default_factory=list)
    main_image: Optional[str] = Field(None, alias="mainImage")
    aspect_ratio: Optional[str] = Field(None, alias="aspectRatio")
    music_theme: Optional[str] = Field(None, alias="musicTheme")
    primary_color: Optional[str] = Field(None, alias="primaryColor")
    tts_text: Optional[str] = Field(None, alias="ttsText")
    tts_voice: Optional[str] = Field(None, alias="ttsVoice")
    tts_enabled: Optional[bool] = Field(None, alias="ttsEnabled")
    active_scene_asset_id: Optional[str] = Field(None, alias="activeSceneAssetId")
    prompt: Optional[str] = None
    scene_prompt: Optional[str] = Field(None, alias="scenePrompt")
    last_error: Optional[str] = Field(None, alias="lastError")
    failed_at: Optional[str] = Field(None, alias="failedAt")
    stage_job_id: Optional[str] = Field(None, alias="stageJobId")


class SettingsPatch(ProjectSettings):
    """
    A partial settings update over the fixed key set.

    Only explicitly-set keys are written, so unrelated keys are never
    clobbered by the merge.
    """
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    usps: Optional[list[str]] = None

    def to_patch(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)


class Project(BaseModel):
    id: str
    user_id: str
    title: str = ""
    status: ProjectStatus = ProjectStatus.DRAFT
    settings: ProjectSettings = Field(default_factory=ProjectSettings)
    settings_version: int = 0
    result_video_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ── Jobs ─────────────────────────────────────────────────────────────────────

class JobType(str, Enum):
    GENERATE_BACKGROUND = "generate-background"
    ANIMATE_IMAGE = "animate-image"
    GENERATE_VIDEO = "generate-video"  # deprecated all-in-one alias


class JobPayload(BaseModel):
    """Wire payload for both stages: the project id and nothing else."""
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(..., alias="projectId")


class JobContext(BaseModel):
    """Identity and retry position of the job driving a stage."""
    job_id: str
    attempt: int = 1
    max_attempts: int = 1

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


# ── API Request Models ───────────────────────────────────────────────────────

INTERNAL_SETTINGS = ("active_scene_asset_id", "last_error", "failed_at", "stage_job_id")


class UserSettingsPatch(SettingsPatch):
    """Settings a user may edit directly. Pipeline-owned keys are rejected."""

    @model_validator(mode="after")
    def _check(self) -> "UserSettingsPatch":
        internal = [
            type(self).model_fields[name].alias or name
            for name in INTERNAL_SETTINGS
            if name in self.model_fields_set
        ]
        if internal:
            raise ValueError(f"Settings keys managed by the pipeline: {', '.join(internal)}")
        if self.aspect_ratio and self.aspect_ratio not in ASPECT_RATIOS:
            raise ValueError(f"aspectRatio must be one of {', '.join(ASPECT_RATIOS)}")
        if self.usps and len(self.usps) > MAX_SELLING_POINTS:
            raise ValueError(f"Maximum {MAX_SELLING_POINTS} USPs allowed")
        if self.main_image and "://" not in self.main_image:
            raise ValueError("mainImage must be a valid URL with protocol (http:// or https://)")
        return self


class CreateProjectRequest(BaseModel):
    user_id: str
    title: str = Field("", max_length=200)
    settings: UserSettingsPatch = Field(default_factory=UserSettingsPatch)


class RegenerateBackgroundRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    scene_prompt: Optional[str] = Field(None, alias="scenePrompt", max_length=2000)


class AnimateRequest(BaseModel):
    prompt: Optional[str] = Field(None, max_length=500)


class SelectSceneRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    asset_id: str = Field(..., alias="assetId")


class EnqueueResponse(BaseModel):
    project_id: str
    job_id: str
    status: ProjectStatus
